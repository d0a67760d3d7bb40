import logging
from dataclasses import dataclass
from typing import List, Optional

from fastapi import Request

from .catalog_cache import CatalogCache
from .catalog_client import PrestaShopClient
from .config import Settings
from .conversation_store import ConversationStore, create_supabase_persistence
from .llm_client import LLMClient, load_system_prompt
from .models import Product
from .search import EmbeddingSearch, LexicalSearch, ProductSearch


logger = logging.getLogger("app.services")


@dataclass
class Services:
    """Process-wide collaborators, built once in create_app and shared by handlers."""

    settings: Settings
    llm: LLMClient
    catalog_client: PrestaShopClient
    conversations: ConversationStore
    system_prompt: str
    catalog_cache: Optional[CatalogCache] = None
    search: Optional[ProductSearch] = None

    @property
    def search_strategy(self) -> Optional[str]:
        return self.search.name if self.search is not None else None

    async def search_products(self, term: str, web_only: bool = False) -> List[Product]:
        if self.search is None:
            return []
        return await self.search.search(term, web_only)

    async def aclose(self) -> None:
        await self.catalog_client.aclose()


def _create_pinecone_index(settings: Settings):
    from pinecone import Pinecone

    return Pinecone(api_key=settings.pinecone_api_key).Index(settings.pinecone_index)


def build_services(settings: Settings) -> Services:
    llm = LLMClient(settings)
    catalog_client = PrestaShopClient(settings)

    persistence = None
    if settings.persistence_configured:
        try:
            persistence = create_supabase_persistence(
                settings.supabase_url, settings.supabase_key, settings.supabase_table
            )
        except Exception as e:
            logger.error("Supabase unavailable, conversations stay in memory only: %s", e)
    conversations = ConversationStore(
        persistence=persistence,
        tz=settings.timezone,
        idle_seconds=settings.conversation_idle_seconds,
    )

    cache: Optional[CatalogCache] = None
    if catalog_client.configured:
        cache = CatalogCache(catalog_client.load_catalog, settings.catalog_ttl_seconds)

    search: Optional[ProductSearch] = None
    if settings.search_strategy == "embedding":
        if settings.pinecone_configured and llm.configured:
            try:
                search = EmbeddingSearch(llm.client, _create_pinecone_index(settings), settings)
            except Exception as e:
                logger.error("Pinecone unavailable, product search disabled: %s", e)
        else:
            logger.warning("Embedding search needs PINECONE_API_KEY and OPENAI_API_KEY; product search disabled")
    elif cache is not None:
        search = LexicalSearch(cache)
    else:
        logger.warning("PrestaShop API not configured; product search disabled")

    return Services(
        settings=settings,
        llm=llm,
        catalog_client=catalog_client,
        conversations=conversations,
        system_prompt=load_system_prompt(settings),
        catalog_cache=cache,
        search=search,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
