"""
Tool-calling loop between the chat model and the product search.

The loop is an explicit state machine:

    THINKING  --(no tool calls)------------------> DONE
    THINKING  --(tool calls)--> SEARCHING --> THINKING
    THINKING  --(iteration cap reached)----------> DONE

Every model call counts as one iteration. When the cap is hit the latest
model content is used as the reply even if the model asked for more searches.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from .llm_client import ModelTurn, ToolCall
from .models import Message, Product
from .search import format_products_for_model


logger = logging.getLogger("app.orchestrator")

DEFAULT_MAX_ITERATIONS = 6
DEFAULT_HISTORY_WINDOW = 14
FALLBACK_REPLY = "Lo siento, no he podido completar la respuesta. ¿Puedes intentarlo de nuevo con otras palabras?"

SEARCH_TOOL_NAME = "search_products"

SEARCH_TOOL: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": SEARCH_TOOL_NAME,
        "description": (
            "Busca productos del catálogo de la tienda (plantas, semillas, herramientas, sustratos...). "
            "Devuelve nombre, referencia, precio con IVA, stock, enlace e imagen."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "term": {
                    "type": "string",
                    "description": "Término de búsqueda corto, por ejemplo 'tomate cherry' o 'ciprés'.",
                },
                "web_only": {
                    "type": "boolean",
                    "description": "true para buscar solo productos con stock para venta online.",
                },
            },
            "required": ["term"],
        },
    },
}

Completer = Callable[[List[Dict[str, Any]], Optional[List[Dict[str, Any]]]], Awaitable[ModelTurn]]
Searcher = Callable[[str, bool], Awaitable[List[Product]]]


class LoopState(str, Enum):
    THINKING = "thinking"
    SEARCHING = "searching"
    DONE = "done"


class SearchArguments(BaseModel):
    term: str = Field(min_length=1)
    web_only: bool = False


def parse_search_arguments(raw: Optional[str]) -> Optional[SearchArguments]:
    """Validate tool-call arguments; None when they do not fit the schema."""
    try:
        data = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    try:
        args = SearchArguments.model_validate(data)
    except ValidationError:
        return None
    args.term = args.term.strip()
    return args if args.term else None


@dataclass
class TurnResult:
    content: str
    products: List[Product] = field(default_factory=list)
    iterations: int = 0
    searches: List[str] = field(default_factory=list)
    capped: bool = False
    state: LoopState = LoopState.DONE


def build_context(
    system_prompt: str,
    history: List[Message],
    user_content: Union[str, List[Dict[str, Any]]],
    window: int = DEFAULT_HISTORY_WINDOW,
) -> List[Dict[str, Any]]:
    """System prompt, the last `window` stored messages, then the new user turn."""
    context: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    recent = history[-window:] if window > 0 else []
    for m in recent:
        context.append({"role": m.role, "content": m.content})
    context.append({"role": "user", "content": user_content})
    return context


class ToolLoop:
    def __init__(self, complete: Completer, search: Searcher, max_iterations: int = DEFAULT_MAX_ITERATIONS):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.complete = complete
        self.search = search
        self.max_iterations = max_iterations

    async def _execute(self, call: ToolCall, result: TurnResult) -> Dict[str, Any]:
        if call.name != SEARCH_TOOL_NAME:
            logger.warning("Model called unknown tool %r", call.name)
            return {"role": "tool", "tool_call_id": call.id, "content": f"Herramienta desconocida: {call.name}"}
        args = parse_search_arguments(call.arguments)
        if args is None:
            logger.warning("Malformed search arguments: %r", call.arguments)
            return {"role": "tool", "tool_call_id": call.id, "content": format_products_for_model([])}
        found = await self.search(args.term, args.web_only)
        result.searches.append(args.term)
        result.products.extend(found)
        return {"role": "tool", "tool_call_id": call.id, "content": format_products_for_model(found, args.term)}

    async def run(self, messages: List[Dict[str, Any]]) -> TurnResult:
        context = list(messages)
        result = TurnResult(content="", state=LoopState.THINKING)
        last_content: Optional[str] = None
        pending: List[ToolCall] = []

        while result.state is not LoopState.DONE:
            if result.state is LoopState.THINKING:
                turn = await self.complete(context, [SEARCH_TOOL])
                result.iterations += 1
                if turn.content and turn.content.strip():
                    last_content = turn.content.strip()
                if not turn.tool_calls:
                    # Interim text from earlier turns only counts when capped
                    last_content = (turn.content or "").strip() or None
                    result.state = LoopState.DONE
                elif result.iterations >= self.max_iterations:
                    logger.warning("Tool loop hit the cap of %d iterations", self.max_iterations)
                    result.capped = True
                    result.state = LoopState.DONE
                else:
                    context.append(turn.as_message())
                    pending = turn.tool_calls
                    result.state = LoopState.SEARCHING
            elif result.state is LoopState.SEARCHING:
                for call in pending:
                    context.append(await self._execute(call, result))
                pending = []
                result.state = LoopState.THINKING

        result.content = last_content or FALLBACK_REPLY
        return result
