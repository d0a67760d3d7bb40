"""
Turn raw catalog records into canonical Product objects.

Two sources feed this module:
- PrestaShop webservice records (JSON output), whose localized fields and
  scalars come in several shapes depending on how the shop serializes them.
- Pinecone match metadata written by scripts/upload_catalog_index.py.

Shape handling is explicit: each decoder walks a fixed list of matchers and
reports whether any of them applied.
"""

import html
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import MalformedRecord
from .models import Product


logger = logging.getLogger("app.normalizer")

DESCRIPTION_LIMIT = 300
IMAGE_PROXY_PATH = "/api/articulos/image/{product_id}/{image_id}"

_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")


@dataclass
class Decoded:
    value: Any
    unparsed: bool = False


@dataclass
class SideTables:
    """Lookups fetched independently of the product listing, keyed by product id."""

    stock: Dict[str, int] = field(default_factory=dict)
    images: Dict[str, str] = field(default_factory=dict)
    prices_tax_incl: Dict[str, float] = field(default_factory=dict)
    tax_rates: Dict[str, float] = field(default_factory=dict)

    @property
    def has_stock_data(self) -> bool:
        return bool(self.stock)


def strip_html(text: Optional[str]) -> str:
    if not text:
        return ""
    t = _TAG_RE.sub(" ", str(text))
    t = html.unescape(t)
    return _SPACE_RE.sub(" ", t).strip()


def truncate(text: str, limit: int = DESCRIPTION_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


# --------------------------------------------------------------------
# Localized field decoding
# --------------------------------------------------------------------

def _entry_language(entry: Mapping[str, Any]) -> Optional[str]:
    for key in ("id", "languageId", "@id", "id_lang"):
        if key in entry and entry[key] is not None:
            return str(entry[key])
    return None


def _entry_value(entry: Mapping[str, Any]) -> Optional[str]:
    for key in ("value", "#"):
        if key in entry and entry[key] is not None:
            return str(entry[key])
    return None


def _pick_language(entries: List[Any], language_id: str) -> Optional[str]:
    usable: List[Tuple[Optional[str], str]] = []
    for entry in entries:
        if isinstance(entry, Mapping):
            value = _entry_value(entry)
            if value is not None:
                usable.append((_entry_language(entry), value))
        elif isinstance(entry, str):
            usable.append((None, entry))
    if not usable:
        return None
    for lang, value in usable:
        if lang == language_id and value.strip():
            return value
    for _, value in usable:
        if value.strip():
            return value
    return usable[0][1]


def _match_plain_string(value: Any, language_id: str) -> Optional[str]:
    if isinstance(value, str):
        return value
    return None


def _match_entry_list(value: Any, language_id: str) -> Optional[str]:
    if isinstance(value, list):
        return _pick_language(value, language_id)
    return None


def _match_language_wrapper(value: Any, language_id: str) -> Optional[str]:
    if isinstance(value, Mapping) and "language" in value:
        inner = value["language"]
        if isinstance(inner, Mapping):
            inner = [inner]
        if isinstance(inner, list):
            return _pick_language(inner, language_id)
    return None


def _match_hash_wrapper(value: Any, language_id: str) -> Optional[str]:
    if isinstance(value, Mapping) and "#" in value and value["#"] is not None:
        return str(value["#"])
    return None


LOCALIZED_MATCHERS: List[Callable[[Any, str], Optional[str]]] = [
    _match_plain_string,
    _match_entry_list,
    _match_language_wrapper,
    _match_hash_wrapper,
]


def decode_localized(value: Any, language_id: str = "1") -> Decoded:
    """Resolve a multi-language field: preferred language, then first present, then ""."""
    if value is None:
        return Decoded("")
    for matcher in LOCALIZED_MATCHERS:
        out = matcher(value, str(language_id))
        if out is not None:
            return Decoded(out)
    return Decoded("", unparsed=True)


# --------------------------------------------------------------------
# Scalar decoding
# --------------------------------------------------------------------

def _match_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _match_numeric_string(value: Any) -> Optional[float]:
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", "."))
        except ValueError:
            return None
    return None


def _match_wrapped(value: Any) -> Optional[float]:
    if isinstance(value, Mapping):
        for key in ("#", "value"):
            if key in value:
                inner = value[key]
                num = _match_number(inner)
                return num if num is not None else _match_numeric_string(inner)
    return None


SCALAR_MATCHERS: List[Callable[[Any], Optional[float]]] = [
    _match_number,
    _match_numeric_string,
    _match_wrapped,
]


def decode_scalar(value: Any) -> Decoded:
    """Decode a number that may arrive as int/float, numeric string or {"#": v}."""
    if value is None or value == "":
        return Decoded(None)
    for matcher in SCALAR_MATCHERS:
        out = matcher(value)
        if out is not None:
            return Decoded(out)
    return Decoded(None, unparsed=True)


def decode_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Mapping) and "#" in value:
        value = value["#"]
    return str(value).strip()


def decode_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    num = decode_scalar(value).value
    if num is not None:
        return num != 0
    return str(value).strip().lower() in {"true", "yes", "si", "sí"}


def _as_id(value: Any) -> Optional[str]:
    num = decode_scalar(value).value
    if num is not None:
        return str(int(num))
    text = decode_text(value)
    return text or None


# --------------------------------------------------------------------
# Prices
# --------------------------------------------------------------------

def tax_rate_for_group(group_id: Optional[str], tax_rates: Mapping[str, float], default_rate: float) -> float:
    if group_id is None or group_id == "0":
        return 0.0
    return float(tax_rates.get(group_id, default_rate))


def price_with_tax(price: float, iva_percent: float) -> float:
    return round(price * (1 + iva_percent / 100.0), 2)


# --------------------------------------------------------------------
# PrestaShop records
# --------------------------------------------------------------------

def _default_image(raw: Mapping[str, Any]) -> Optional[str]:
    image_id = _as_id(raw.get("id_default_image"))
    if image_id and image_id != "0":
        return image_id
    associations = raw.get("associations")
    if isinstance(associations, Mapping):
        images = associations.get("images")
        if isinstance(images, list) and images and isinstance(images[0], Mapping):
            return _as_id(images[0].get("id"))
    return None


def image_proxy_url(product_id: str, image_id: Optional[str]) -> Optional[str]:
    if not image_id:
        return None
    return IMAGE_PROXY_PATH.format(product_id=product_id, image_id=image_id)


def storefront_url(shop_base_url: str, product_id: str, link_rewrite: str) -> str:
    base = shop_base_url.rstrip("/")
    if link_rewrite:
        return f"{base}/{product_id}-{link_rewrite}.html"
    return f"{base}/index.php?id_product={product_id}&controller=product"


def normalize_product(
    raw: Mapping[str, Any],
    side_tables: SideTables,
    language_id: str = "1",
    default_tax_rate: float = 21.0,
    shop_base_url: str = "",
) -> Product:
    if not isinstance(raw, Mapping):
        raise MalformedRecord(f"expected an object, got {type(raw).__name__}")
    product_id = _as_id(raw.get("id"))
    if not product_id:
        raise MalformedRecord("record has no id")

    name = decode_localized(raw.get("name"), language_id)
    if name.unparsed:
        logger.warning("Unparsed name shape for product %s", product_id)

    short = decode_localized(raw.get("description_short"), language_id).value
    long_ = decode_localized(raw.get("description"), language_id).value
    description = truncate(strip_html(short) or strip_html(long_))

    price = decode_scalar(raw.get("price")).value
    price_tax_incl = side_tables.prices_tax_incl.get(product_id)
    if price_tax_incl is None and price is not None:
        group = _as_id(raw.get("id_tax_rules_group"))
        iva = tax_rate_for_group(group, side_tables.tax_rates, default_tax_rate)
        price_tax_incl = price_with_tax(price, iva)
    elif price_tax_incl is not None:
        price_tax_incl = round(float(price_tax_incl), 2)

    image_id = side_tables.images.get(product_id) or _default_image(raw)
    link_rewrite = decode_localized(raw.get("link_rewrite"), language_id).value

    return Product(
        id=product_id,
        reference=decode_text(raw.get("reference")),
        name=name.value.strip(),
        description=description,
        price=round(price, 2) if price is not None else None,
        price_tax_incl=price_tax_incl,
        stock=side_tables.stock.get(product_id),
        image_id=image_id,
        image_url=image_proxy_url(product_id, image_id),
        product_url=storefront_url(shop_base_url, product_id, link_rewrite) if shop_base_url else None,
        active=decode_flag(raw.get("active", True)),
    )


def normalize_catalog(
    raws: Iterable[Any],
    side_tables: SideTables,
    language_id: str = "1",
    default_tax_rate: float = 21.0,
    shop_base_url: str = "",
) -> List[Product]:
    """Normalize a batch; malformed records are logged and skipped."""
    out: List[Product] = []
    skipped = 0
    for raw in raws:
        try:
            out.append(normalize_product(raw, side_tables, language_id, default_tax_rate, shop_base_url))
        except MalformedRecord as e:
            skipped += 1
            logger.warning("Skipping catalog record: %s", e)
        except (TypeError, ValueError) as e:
            skipped += 1
            logger.warning("Skipping catalog record with bad values: %s", e)
    if skipped:
        logger.info("Normalized %d products, skipped %d", len(out), skipped)
    return out


def is_displayable(product: Product, has_stock_data: bool) -> bool:
    """Active, and in stock whenever the batch carries stock data."""
    if not product.active:
        return False
    if has_stock_data:
        return product.stock is not None and product.stock > 0
    return product.stock is None or product.stock > 0


# --------------------------------------------------------------------
# Pinecone metadata
# --------------------------------------------------------------------

def _first_text(meta: Mapping[str, Any], keys: Iterable[str]) -> str:
    for key in keys:
        val = meta.get(key)
        if val is None:
            continue
        text = str(val).strip()
        if text and text != "N/A":
            return text
    return ""


def _first_id(meta: Mapping[str, Any], keys: Iterable[str]) -> Optional[str]:
    # Pinecone hands numeric metadata back as floats (321 -> 321.0)
    for key in keys:
        if meta.get(key) in (None, "", "N/A"):
            continue
        ident = _as_id(meta[key])
        if ident:
            return ident
    return None


def normalize_vector_match(match_id: str, metadata: Optional[Mapping[str, Any]], shop_base_url: str = "") -> Optional[Product]:
    """Map one vector-index match to a Product; None when the metadata is unusable."""
    meta = metadata or {}
    product_id = _first_id(meta, ("id_articulo", "id_product", "id")) or str(match_id or "")
    if not product_id:
        return None
    reference = _first_text(meta, ("codigo_referencia", "reference"))
    name = _first_text(meta, ("denominacion_web", "denominacion_grupo", "denominacion_familia", "name"))
    description = truncate(strip_html(_first_text(
        meta, ("descripcion_de_cada_articulo", "descripcion_bandeja", "description")
    )))

    price = decode_scalar(meta.get("pvp", meta.get("price"))).value
    price_tax_incl = decode_scalar(meta.get("pvp_iva", meta.get("price_tax_incl"))).value
    if price_tax_incl is None and price is not None:
        iva = decode_scalar(meta.get("iva")).value
        price_tax_incl = price_with_tax(price, iva) if iva is not None else round(price, 2)

    stock_web = decode_scalar(meta.get("stock_web")).value
    stock_physical = decode_scalar(meta.get("stock_fisico")).value
    stock: Optional[int] = None
    if stock_web is not None or stock_physical is not None:
        stock = int((stock_web or 0) + (stock_physical or 0))

    image_id = _first_id(meta, ("id_imagen", "image_id"))
    url = _first_text(meta, ("url", "product_url"))
    if not url and shop_base_url and reference:
        url = f"{shop_base_url.rstrip('/')}/buscar?s={reference}"

    return Product(
        id=product_id,
        reference=reference,
        name=name or (f"Producto {reference}" if reference else ""),
        description=description,
        price=round(price, 2) if price is not None else None,
        price_tax_incl=round(price_tax_incl, 2) if price_tax_incl is not None else None,
        stock=stock,
        image_id=image_id,
        image_url=image_proxy_url(product_id, image_id),
        product_url=url or None,
        active=decode_flag(meta.get("activo", True)),
    )
