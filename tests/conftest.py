import json
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import httpx
import pytest

from app.catalog_cache import CatalogCache
from app.catalog_client import PrestaShopClient
from app.config import Settings
from app.conversation_store import ConversationStore
from app.llm_client import ModelTurn, ToolCall
from app.models import Product
from app.search import LexicalSearch
from app.services import Services


def make_product(pid: str, name: str, stock: Optional[int] = 5, active: bool = True, **kw) -> Product:
    return Product(
        id=pid,
        name=name,
        reference=kw.pop("reference", f"REF{pid}"),
        description=kw.pop("description", ""),
        price=kw.pop("price", 10.0),
        price_tax_incl=kw.pop("price_tax_incl", 12.1),
        stock=stock,
        active=active,
        image_id=kw.pop("image_id", None),
        image_url=kw.pop("image_url", None),
        product_url=kw.pop("product_url", f"https://shop.test/{pid}-p.html"),
    )


CATALOG = [
    make_product("1", "Ciprés Común", stock=12, description="Cupressus sempervirens en maceta"),
    make_product("2", "Tomate Cherry", stock=30, description="Planta de tomate para huerto"),
    make_product("3", "Ciprés de Leyland", stock=0),
    make_product("4", "Ciprés Azul", stock=4, active=False),
    make_product("5", "Sustrato Universal 50L", stock=8, reference="SUS50"),
]


def tool_call(term: Any, call_id: str = "call_1", web_only: bool = False, raw: Optional[str] = None) -> ToolCall:
    args = raw if raw is not None else json.dumps({"term": term, "web_only": web_only})
    return ToolCall(id=call_id, name="search_products", arguments=args)


class FakeLLM:
    """Replays scripted model turns; the last one repeats forever."""

    configured = True

    def __init__(self, turns: List[ModelTurn]):
        self.turns = list(turns)
        self.calls: List[List[Dict[str, Any]]] = []

    async def complete(self, messages, tools=None) -> ModelTurn:
        self.calls.append(list(messages))
        if len(self.turns) > 1:
            return self.turns.pop(0)
        return self.turns[0]


class FailingLLM:
    configured = True

    async def complete(self, messages, tools=None) -> ModelTurn:
        raise RuntimeError("upstream exploded")


class FakePersistence:
    def __init__(self, stored: Optional[Dict[tuple, list]] = None):
        self.stored = stored or {}
        self.saves: List[tuple] = []

    def save(self, device_id, session_date, messages) -> bool:
        self.saves.append((device_id, session_date, messages))
        return True

    def load(self, device_id, session_date):
        return list(self.stored.get((device_id, session_date), []))


class FakeSupabase:
    """Just enough of the supabase-py query builder for SupabasePersistence."""

    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None, fail: bool = False):
        self.rows = rows or []
        self.fail = fail
        self.upserts: List[Dict[str, Any]] = []
        self.filters: List[tuple] = []

    def table(self, name):
        self.table_name = name
        return self

    def upsert(self, row):
        self.upserts.append(row)
        return self

    def select(self, *cols):
        return self

    def eq(self, col, value):
        self.filters.append((col, value))
        return self

    def limit(self, n):
        return self

    def execute(self):
        if self.fail:
            raise ConnectionError("supabase down")
        return SimpleNamespace(data=self.rows)


def static_loader(products: List[Product], has_stock_data: bool = True):
    async def load():
        return list(products), has_stock_data
    return load


@pytest.fixture
def settings() -> Settings:
    return Settings(
        openai_api_key="sk-test",
        shop_base_url="https://shop.test",
        prestashop_api_url="https://shop.test",
        prestashop_api_key="KEY",
        rate_limit_max=0,
        tax_rates={"1": 21.0, "2": 10.0},
    )


def build_test_services(settings: Settings, llm, products=None, persistence=None, transport=None,
                        search_enabled: bool = True) -> Services:
    handler = transport or httpx.MockTransport(lambda request: httpx.Response(404))
    catalog_client = PrestaShopClient(settings, httpx.AsyncClient(transport=handler))
    cache = CatalogCache(static_loader(CATALOG if products is None else products), ttl_seconds=900)
    return Services(
        settings=settings,
        llm=llm,
        catalog_client=catalog_client,
        conversations=ConversationStore(persistence=persistence, tz=settings.timezone),
        system_prompt="Eres un asistente de pruebas.",
        catalog_cache=cache,
        search=LexicalSearch(cache) if search_enabled else None,
    )
