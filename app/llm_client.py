import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import Settings
from .errors import NotConfigured


logger = logging.getLogger("app.llm_client")

DEFAULT_SYSTEM_PROMPT = (
    "Eres el asistente virtual de una tienda online de plantas y jardinería. "
    "Responde de forma clara, amable y concisa en español. "
    "Cuando el cliente pregunte por productos usa la herramienta search_products "
    "y recomienda solo productos que aparezcan en sus resultados; nunca inventes precios ni stock."
)


def load_system_prompt(settings: Settings) -> str:
    """SYSTEM_PROMPT env var, then the prompt file, then the bundled default."""
    if settings.system_prompt:
        return settings.system_prompt
    path = settings.prompt_path
    if path and os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                text = f.read().strip()
            if text:
                return text
        except OSError as e:
            logger.warning("Could not read prompt file %s: %s", path, e)
    return DEFAULT_SYSTEM_PROMPT


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str


@dataclass
class ModelTurn:
    content: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)

    def as_message(self) -> Dict[str, Any]:
        """Assistant message to append to the context before the tool results."""
        msg: Dict[str, Any] = {"role": "assistant", "content": self.content or ""}
        if self.tool_calls:
            msg["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": tc.arguments},
                }
                for tc in self.tool_calls
            ]
        return msg


def create_openai_client(settings: Settings):
    from openai import AsyncOpenAI

    return AsyncOpenAI(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        timeout=settings.llm_timeout_seconds,
        max_retries=settings.llm_max_retries,
    )


class LLMClient:
    """Chat-completion calls with tool support."""

    def __init__(self, settings: Settings, client: Any = None):
        self.settings = settings
        self.client = client
        if self.client is None and settings.llm_configured:
            self.client = create_openai_client(settings)

    @property
    def configured(self) -> bool:
        return self.client is not None

    async def complete(self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]] = None) -> ModelTurn:
        if self.client is None:
            raise NotConfigured("LLM")
        kwargs: Dict[str, Any] = {
            "model": self.settings.openai_model,
            "messages": messages,
            "max_tokens": self.settings.llm_max_tokens,
            "temperature": self.settings.llm_temperature,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        resp = await self.client.chat.completions.create(**kwargs)
        msg = resp.choices[0].message
        calls = [
            ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments or "{}")
            for tc in (msg.tool_calls or [])
        ]
        if calls:
            logger.info("Model requested %d tool call(s): %s", len(calls),
                        json.dumps([c.name for c in calls]))
        return ModelTurn(content=msg.content, tool_calls=calls)
