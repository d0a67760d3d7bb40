import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Settings
from .errors import NotConfigured, UpstreamError
from .normalizer import SideTables, decode_scalar, normalize_catalog
from .models import Product


logger = logging.getLogger("app.catalog_client")


class PrestaShopClient:
    """Async client for the shop's PrestaShop webservice (JSON output)."""

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.base_url = (settings.prestashop_api_url or "").rstrip("/")
        self.api_key = settings.prestashop_api_key or ""
        self.http = http_client or httpx.AsyncClient(timeout=settings.http_timeout_seconds)

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def aclose(self) -> None:
        await self.http.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _get_json(self, resource: str, params: Dict[str, str]) -> Any:
        query = {"output_format": "JSON"}
        query.update(params)
        r = await self.http.get(f"{self.base_url}/api/{resource}", params=query, auth=(self.api_key, ""))
        r.raise_for_status()
        return r.json()

    async def _list(self, resource: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        try:
            data = await self._get_json(resource, params)
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamError(f"PrestaShop {resource} request failed: {e}") from e
        # An empty listing comes back as [] instead of {"<resource>": []}
        if isinstance(data, dict):
            items = data.get(resource)
            if isinstance(items, list):
                return items
            if isinstance(items, dict):
                return [items]
        return []

    async def fetch_products(self) -> List[Dict[str, Any]]:
        return await self._list("products", {"display": "full"})

    async def fetch_stock(self) -> Dict[str, int]:
        rows = await self._list("stock_availables", {"display": "[id_product,id_product_attribute,quantity]"})
        stock: Dict[str, int] = {}
        for row in rows:
            pid = decode_scalar(row.get("id_product")).value
            attr = decode_scalar(row.get("id_product_attribute")).value
            qty = decode_scalar(row.get("quantity")).value
            if pid is None or qty is None:
                continue
            # Product-level row; combination rows are summed into it by PrestaShop already
            if attr not in (None, 0.0):
                continue
            stock[str(int(pid))] = int(qty)
        return stock

    async def fetch_default_images(self) -> Dict[str, str]:
        rows = await self._list("products", {"display": "[id,id_default_image]"})
        images: Dict[str, str] = {}
        for row in rows:
            pid = decode_scalar(row.get("id")).value
            image = decode_scalar(row.get("id_default_image")).value
            if pid is not None and image:
                images[str(int(pid))] = str(int(image))
        return images

    async def fetch_prices_tax_incl(self) -> Dict[str, float]:
        rows = await self._list(
            "products",
            {"display": "[id,price]", "price[price_tax_incl][use_tax]": "1"},
        )
        prices: Dict[str, float] = {}
        for row in rows:
            pid = decode_scalar(row.get("id")).value
            price = decode_scalar(row.get("price_tax_incl")).value
            if pid is not None and price is not None:
                prices[str(int(pid))] = round(price, 2)
        return prices

    async def _side_table(self, name: str, coro) -> Dict:
        try:
            return await coro
        except UpstreamError as e:
            logger.warning("Side table %s unavailable: %s", name, e)
            return {}

    async def load_catalog(self) -> Tuple[List[Product], bool]:
        """Fetch products and side tables, return (normalized products, has_stock_data).

        A failing product listing raises UpstreamError; failing side tables
        only leave the matching fields empty.
        """
        if not self.configured:
            raise NotConfigured("catalog")
        raws, stock, images, prices = await asyncio.gather(
            self.fetch_products(),
            self._side_table("stock", self.fetch_stock()),
            self._side_table("images", self.fetch_default_images()),
            self._side_table("prices", self.fetch_prices_tax_incl()),
        )
        tables = SideTables(
            stock=stock,
            images=images,
            prices_tax_incl=prices,
            tax_rates=self.settings.tax_rates,
        )
        products = normalize_catalog(
            raws,
            tables,
            language_id=self.settings.prestashop_language_id,
            default_tax_rate=self.settings.default_tax_rate,
            shop_base_url=self.settings.shop_base_url,
        )
        logger.info("Loaded %d products from PrestaShop (stock rows: %d)", len(products), len(stock))
        return products, tables.has_stock_data

    async def fetch_image(self, product_id: str, image_id: str) -> Tuple[bytes, str]:
        """Public storefront image first, then the authenticated webservice image."""
        attempts = []
        shop = self.settings.shop_base_url.rstrip("/")
        if shop:
            attempts.append((f"{shop}/{image_id}-large_default/{product_id}.jpg", None))
        if self.configured:
            attempts.append((f"{self.base_url}/api/images/products/{product_id}/{image_id}", (self.api_key, "")))
        last_error = "no image source configured"
        for url, auth in attempts:
            try:
                r = await self.http.get(url, auth=auth, follow_redirects=True)
            except httpx.HTTPError as e:
                last_error = str(e)
                continue
            content_type = r.headers.get("content-type", "")
            if r.status_code == 200 and r.content and content_type.startswith("image/"):
                return r.content, content_type
            last_error = f"status {r.status_code} ({content_type or 'no content-type'}) from {url}"
        raise UpstreamError(f"Image {product_id}/{image_id} unavailable: {last_error}")
