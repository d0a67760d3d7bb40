import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .models import Product


logger = logging.getLogger("app.catalog_cache")

CatalogLoader = Callable[[], Awaitable[Tuple[List[Product], bool]]]


@dataclass
class CatalogSnapshot:
    products: Dict[str, Product] = field(default_factory=dict)
    refreshed_at: float = 0.0
    has_stock_data: bool = False

    def ordered(self) -> List[Product]:
        return list(self.products.values())


class CatalogCache:
    """Whole-catalog snapshot refreshed when older than the TTL.

    Only one refresh runs at a time; callers that queued behind it reuse its
    outcome, successful or not. A failed refresh keeps serving the previous
    snapshot.
    """

    def __init__(self, loader: CatalogLoader, ttl_seconds: float, clock: Callable[[], float] = time.time):
        self.loader = loader
        self.ttl = float(ttl_seconds)
        self.clock = clock
        self._snapshot = CatalogSnapshot()
        self._lock = asyncio.Lock()
        self.refresh_count = 0
        self.attempt_count = 0

    @property
    def is_populated(self) -> bool:
        return bool(self._snapshot.products)

    @property
    def age_seconds(self) -> Optional[float]:
        if not self._snapshot.refreshed_at:
            return None
        return max(0.0, self.clock() - self._snapshot.refreshed_at)

    def get(self) -> CatalogSnapshot:
        return self._snapshot

    def is_stale(self) -> bool:
        if not self.is_populated:
            return True
        return (self.clock() - self._snapshot.refreshed_at) > self.ttl

    def invalidate(self) -> None:
        # Keeps the products so a failing refresh still has something to serve
        self._snapshot.refreshed_at = 0.0

    async def refresh(self) -> bool:
        """Refetch the whole catalog. Returns True when the snapshot was replaced."""
        started = self.clock()
        try:
            products, has_stock_data = await self.loader()
        except Exception as e:
            logger.error("Catalog refresh failed, keeping previous snapshot (%d products): %s",
                         len(self._snapshot.products), e)
            return False
        finally:
            self.attempt_count += 1
        if not products and self.is_populated:
            logger.warning("Catalog refresh returned no products, keeping previous snapshot")
            return False
        self._snapshot = CatalogSnapshot(
            products={p.id: p for p in products},
            refreshed_at=self.clock(),
            has_stock_data=has_stock_data,
        )
        self.refresh_count += 1
        logger.info("Catalog refreshed: %d products in %.2fs", len(products), self.clock() - started)
        return True

    async def ensure_fresh(self) -> List[Product]:
        if self.is_stale():
            seen = self.attempt_count
            async with self._lock:
                # Any attempt that finished while we waited counts, even a failed one
                if self.attempt_count == seen and self.is_stale():
                    await self.refresh()
        return self._snapshot.ordered()
