import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from fastapi.responses import JSONResponse

from ..conversation_store import is_valid_device_id, resolve_device_id, utc_now
from ..errors import NotConfigured
from ..models import ChatRequest, ChatResponse, ClearRequest, HistoryResponse, Message
from ..orchestrator import ToolLoop, build_context
from ..services import Services, get_services


logger = logging.getLogger("app.routes.chat")

router = APIRouter()

MAX_IMAGE_CHARS = 8_000_000


def _image_url(image_base64: Optional[str]) -> Optional[str]:
    img = (image_base64 or "").strip()
    if not img:
        return None
    if img.startswith(("data:image/", "http://", "https://")):
        return img
    return "data:image/jpeg;base64," + img


def build_user_content(message: str, image_url: Optional[str]) -> Union[str, List[Dict[str, Any]]]:
    if not image_url:
        return message
    return [
        {"type": "text", "text": message},
        {"type": "image_url", "image_url": {"url": image_url}},
    ]


def _schedule_persist(services: Services, device_id: str, background_tasks: BackgroundTasks) -> None:
    store = services.conversations
    if store.persistence is None:
        return
    snap = store.snapshot(device_id)
    if snap is None:
        return
    session_date, payload = snap
    # Runs after the response has been sent
    background_tasks.add_task(store.persistence.save, device_id, session_date, payload)


@router.post("/chat", response_model=ChatResponse)
async def chat(body: ChatRequest, background_tasks: BackgroundTasks, services: Services = Depends(get_services)):
    message = (body.message or "").strip()
    if not message:
        return JSONResponse({"error": "El mensaje es requerido"}, status_code=400)
    if body.image_base64 and len(body.image_base64) > MAX_IMAGE_CHARS:
        return JSONResponse({"error": "La imagen es demasiado grande"}, status_code=400)

    device_id = resolve_device_id(body.device_id)
    if not services.llm.configured:
        return JSONResponse({"error": "El asistente no está configurado (falta OPENAI_API_KEY)"}, status_code=503)

    settings = services.settings
    store = services.conversations
    history = await store.load(device_id)
    user_ts = utc_now().isoformat()
    image_url = _image_url(body.image_base64)
    context = build_context(
        services.system_prompt,
        history,
        build_user_content(message, image_url),
        window=settings.history_window,
    )
    loop = ToolLoop(services.llm.complete, services.search_products, settings.max_tool_iterations)
    try:
        result = await loop.run(context)
    except NotConfigured as e:
        logger.error("Chat unavailable: %s", e)
        return JSONResponse({"error": "El asistente no está configurado"}, status_code=503)
    except Exception:
        logger.exception("Chat completion failed for device %s", device_id)
        return JSONResponse({"error": "Error al procesar el mensaje"}, status_code=500)

    logger.info("Chat turn for %s: %d iteration(s), searches=%s, products=%d",
                device_id, result.iterations, result.searches, len(result.products))

    stored_image = image_url if image_url and image_url.startswith(("http://", "https://")) else None
    await store.append(device_id, Message(role="user", content=message, timestamp=user_ts, image_url=stored_image))
    await store.append(device_id, Message(
        role="assistant",
        content=result.content,
        timestamp=utc_now().isoformat(),
        products=result.products or None,
    ))
    _schedule_persist(services, device_id, background_tasks)

    return ChatResponse(message=result.content, device_id=device_id, products=result.products)


@router.get("/chat/history", response_model=HistoryResponse)
async def chat_history(device_id: Optional[str] = Query(default=None, alias="deviceId"), services: Services = Depends(get_services)):
    store = services.conversations
    session_date = store.today().isoformat()
    if not is_valid_device_id(device_id):
        return HistoryResponse(messages=[], session_date=session_date, message_count=0)
    messages = await store.load(resolve_device_id(device_id))
    return HistoryResponse(messages=messages, session_date=session_date, message_count=len(messages))


@router.post("/chat/clear")
async def chat_clear(body: ClearRequest, services: Services = Depends(get_services)):
    device_id = resolve_device_id(body.device_id)
    services.conversations.clear(device_id)
    return {"success": True}
