import logging
import unicodedata
from typing import Any, Dict, List, Optional, Protocol

from starlette.concurrency import run_in_threadpool
from tenacity import retry, stop_after_attempt, wait_exponential

from .catalog_cache import CatalogCache
from .config import Settings
from .models import Product
from .normalizer import is_displayable, normalize_vector_match


logger = logging.getLogger("app.search")

MAX_RESULTS = 8
VECTOR_TOP_K = 15


class ProductSearch(Protocol):
    name: str

    async def search(self, term: str, web_only: bool = False) -> List[Product]:
        ...


def fold(text: Optional[str]) -> str:
    """Lowercase and strip diacritics ("Ciprés" -> "cipres")."""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", str(text))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.lower().split())


class LexicalSearch:
    """Substring match over the cached catalog snapshot."""

    name = "lexical"

    def __init__(self, cache: CatalogCache, limit: int = MAX_RESULTS):
        self.cache = cache
        self.limit = limit

    async def search(self, term: str, web_only: bool = False) -> List[Product]:
        needle = fold(term)
        if not needle:
            return []
        try:
            products = await self.cache.ensure_fresh()
        except Exception as e:
            logger.error("Lexical search could not read the catalog: %s", e)
            return []
        has_stock_data = self.cache.get().has_stock_data
        out: List[Product] = []
        for p in products:
            if not is_displayable(p, has_stock_data):
                continue
            haystacks = (fold(p.name), fold(p.reference), fold(p.description))
            if any(needle in h for h in haystacks):
                out.append(p)
                if len(out) >= self.limit:
                    break
        logger.info("Lexical search %r -> %d results", term, len(out))
        return out


def stock_filter(web_only: bool) -> Dict[str, Any]:
    web = {"stock_web": {"$gt": 0}}
    if web_only:
        return web
    return {"$or": [web, {"stock_fisico": {"$gt": 0}}]}


def _matches(response: Any) -> List[Any]:
    if isinstance(response, dict):
        return list(response.get("matches") or [])
    return list(getattr(response, "matches", None) or [])


def _match_field(match: Any, name: str) -> Any:
    if isinstance(match, dict):
        return match.get(name)
    return getattr(match, name, None)


class EmbeddingSearch:
    """Nearest-neighbour search against the Pinecone product index.

    Every neighbour Pinecone returns is passed through; there is no score floor.
    """

    name = "embedding"

    def __init__(self, openai_client: Any, index: Any, settings: Settings,
                 top_k: int = VECTOR_TOP_K, limit: int = MAX_RESULTS):
        self.openai = openai_client
        self.index = index
        self.settings = settings
        self.top_k = top_k
        self.limit = limit

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=0.5, min=0.5, max=4), reraise=True)
    async def embed(self, text: str) -> List[float]:
        resp = await self.openai.embeddings.create(
            model=self.settings.openai_embed_model,
            input=text,
            dimensions=self.settings.embed_dimensions,
        )
        return list(resp.data[0].embedding)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=0.5, min=0.5, max=4), reraise=True)
    async def _query(self, vector: List[float], web_only: bool) -> Any:
        kwargs: Dict[str, Any] = {
            "vector": vector,
            "top_k": self.top_k,
            "include_metadata": True,
            "include_values": False,
            "filter": stock_filter(web_only),
        }
        if self.settings.pinecone_namespace:
            kwargs["namespace"] = self.settings.pinecone_namespace
        return await run_in_threadpool(self.index.query, **kwargs)

    async def search(self, term: str, web_only: bool = False) -> List[Product]:
        if not (term or "").strip():
            return []
        try:
            vector = await self.embed(term)
            response = await self._query(vector, web_only)
        except Exception as e:
            logger.error("Vector search failed for %r: %s", term, e)
            return []
        out: List[Product] = []
        for match in _matches(response):
            product = normalize_vector_match(
                _match_field(match, "id"),
                _match_field(match, "metadata"),
                shop_base_url=self.settings.shop_base_url,
            )
            if product is None or not is_displayable(product, product.stock is not None):
                continue
            out.append(product)
            if len(out) >= self.limit:
                break
        logger.info("Vector search %r (web_only=%s) -> %d results", term, web_only, len(out))
        return out


def _price_text(p: Product) -> str:
    value = p.price_tax_incl if p.price_tax_incl is not None else p.price
    if value is None:
        return "Consultar"
    return f"{value:.2f} € (IVA incl.)"


def format_products_for_model(products: List[Product], term: str = "") -> str:
    """Tool-result text handed back to the model."""
    if not products:
        return f"No se encontraron productos disponibles para \"{term}\"." if term else "No se encontraron productos disponibles."
    lines = [f"Productos encontrados ({len(products)}):"]
    for i, p in enumerate(products, 1):
        parts = [f"{i}. {p.name or 'Sin nombre'}"]
        if p.reference:
            parts.append(f"Ref: {p.reference}")
        parts.append(f"Precio: {_price_text(p)}")
        parts.append(f"Stock: {p.stock if p.stock is not None else 'Consultar'}")
        if p.product_url:
            parts.append(f"URL: {p.product_url}")
        if p.image_url:
            parts.append(f"Imagen: {p.image_url}")
        lines.append(" | ".join(parts))
        if p.description:
            lines.append(f"   {p.description}")
    return "\n".join(lines)
