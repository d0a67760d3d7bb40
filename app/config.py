import json
import logging
import os
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel


logger = logging.getLogger("app.config")


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    if val is None or not val.strip():
        return default
    return val.strip()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r, using %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid number for %s=%r, using %s", name, raw, default)
        return default


def parse_tax_rates(raw: Optional[str]) -> Dict[str, float]:
    """Parse TAX_RATES_JSON ({"<tax group id>": percent}) into a str-keyed map."""
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("TAX_RATES_JSON is not valid JSON; ignoring")
        return {}
    if not isinstance(data, dict):
        logger.warning("TAX_RATES_JSON must be an object; ignoring")
        return {}
    rates: Dict[str, float] = {}
    for key, value in data.items():
        try:
            rates[str(key)] = float(value)
        except (TypeError, ValueError):
            logger.warning("Skipping tax rate %r=%r", key, value)
    return rates


def parse_origins(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [o.strip() for o in raw.split(",") if o.strip()]


class Settings(BaseModel):
    # LLM
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_base_url: Optional[str] = None
    openai_embed_model: str = "text-embedding-3-small"
    embed_dimensions: int = 512
    llm_timeout_seconds: float = 30.0
    llm_max_retries: int = 2
    llm_max_tokens: int = 700
    llm_temperature: float = 0.5
    system_prompt: Optional[str] = None
    prompt_path: str = "config/prompts/system_prompt.txt"

    # Vector index
    pinecone_api_key: Optional[str] = None
    pinecone_index: str = "products"
    pinecone_namespace: Optional[str] = None
    search_strategy: str = "lexical"

    # E-commerce platform
    prestashop_api_url: Optional[str] = None
    prestashop_api_key: Optional[str] = None
    prestashop_language_id: str = "1"
    shop_base_url: str = "https://plantasdehuerto.com"
    catalog_ttl_seconds: int = 900
    tax_rates: Dict[str, float] = {}
    default_tax_rate: float = 21.0
    http_timeout_seconds: float = 15.0

    # Persistence
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    supabase_table: str = "chat_sessions"

    # Widget / HTTP
    allowed_origins: List[str] = []
    bot_name: str = "Asistente Virtual"
    welcome_message: str = "¡Hola! ¿En qué puedo ayudarte?"
    primary_color: str = "#3D6B35"
    widget_position: str = "right"
    rate_limit_max: int = 30
    rate_limit_window: int = 60

    # Conversations
    timezone: str = "Europe/Madrid"
    conversation_idle_seconds: int = 7200
    history_window: int = 14
    max_tool_iterations: int = 6

    @property
    def llm_configured(self) -> bool:
        return bool(self.openai_api_key)

    @property
    def pinecone_configured(self) -> bool:
        return bool(self.pinecone_api_key and self.pinecone_index)

    @property
    def catalog_configured(self) -> bool:
        return bool(self.prestashop_api_url and self.prestashop_api_key)

    @property
    def persistence_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv()
        pinecone_key = _env_str("PINECONE_API_KEY")
        strategy = (_env_str("SEARCH_STRATEGY") or ("embedding" if pinecone_key else "lexical")).lower()
        if strategy not in {"lexical", "embedding"}:
            logger.warning("Unknown SEARCH_STRATEGY=%r, using lexical", strategy)
            strategy = "lexical"
        return cls(
            openai_api_key=_env_str("OPENAI_API_KEY"),
            openai_model=_env_str("OPENAI_MODEL_NAME", "gpt-4o-mini"),
            openai_base_url=_env_str("OPENAI_BASE_URL"),
            openai_embed_model=_env_str("OPENAI_EMBED_MODEL", "text-embedding-3-small"),
            embed_dimensions=_env_int("EMBED_DIMENSIONS", 512),
            llm_timeout_seconds=_env_float("LLM_TIMEOUT_SECONDS", 30.0),
            llm_max_retries=_env_int("LLM_MAX_RETRIES", 2),
            llm_max_tokens=_env_int("LLM_MAX_TOKENS", 700),
            llm_temperature=_env_float("LLM_TEMPERATURE", 0.5),
            system_prompt=_env_str("SYSTEM_PROMPT"),
            prompt_path=_env_str("PROMPT_PATH", "config/prompts/system_prompt.txt"),
            pinecone_api_key=pinecone_key,
            pinecone_index=_env_str("PINECONE_INDEX", "products"),
            pinecone_namespace=_env_str("PINECONE_NAMESPACE"),
            search_strategy=strategy,
            prestashop_api_url=_env_str("PRESTASHOP_API_URL"),
            prestashop_api_key=_env_str("PRESTASHOP_API_KEY"),
            prestashop_language_id=_env_str("PRESTASHOP_LANGUAGE_ID", "1"),
            shop_base_url=_env_str("SHOP_BASE_URL", "https://plantasdehuerto.com"),
            catalog_ttl_seconds=_env_int("CATALOG_TTL_SECONDS", 900),
            tax_rates=parse_tax_rates(_env_str("TAX_RATES_JSON")),
            default_tax_rate=_env_float("DEFAULT_TAX_RATE", 21.0),
            http_timeout_seconds=_env_float("HTTP_TIMEOUT_SECONDS", 15.0),
            supabase_url=_env_str("SUPABASE_URL"),
            supabase_key=_env_str("SUPABASE_KEY"),
            supabase_table=_env_str("SUPABASE_TABLE", "chat_sessions"),
            allowed_origins=parse_origins(_env_str("ALLOWED_ORIGINS")),
            bot_name=_env_str("BOT_NAME", "Asistente Virtual"),
            welcome_message=_env_str("BOT_WELCOME_MESSAGE", "¡Hola! ¿En qué puedo ayudarte?"),
            primary_color=_env_str("PRIMARY_COLOR", "#3D6B35"),
            widget_position=_env_str("WIDGET_POSITION", "right"),
            rate_limit_max=_env_int("RATE_LIMIT_MAX", 30),
            rate_limit_window=_env_int("RATE_LIMIT_WINDOW", 60),
            timezone=_env_str("TIMEZONE", "Europe/Madrid"),
            conversation_idle_seconds=_env_int("CONVERSATION_IDLE_SECONDS", 7200),
            history_window=_env_int("HISTORY_WINDOW", 14),
            max_tool_iterations=_env_int("MAX_TOOL_ITERATIONS", 6),
        )
