import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from .config import Settings
from .middleware import RateLimitMiddleware, RequestLoggingMiddleware
from .models import WidgetConfig
from .routes.chat import router as chat_router
from .routes.images import router as images_router
from .services import Services, build_services, get_services


logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("app")

BASE_DIR = os.path.dirname(os.path.dirname(__file__))
PUBLIC_DIR = os.path.join(BASE_DIR, "public")


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or (services.settings if services else Settings.from_env())
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Chatbot starting: llm=%s search=%s persistence=%s",
            services.llm.configured, services.search_strategy, services.conversations.persistence_configured,
        )
        yield
        await services.aclose()

    app = FastAPI(title="retail-chatbot", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        max_requests=settings.rate_limit_max,
        window_seconds=settings.rate_limit_window,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        logger.info("Rejected %s %s: %s", request.method, request.url.path, exc.errors()[:1])
        return JSONResponse({"error": "Solicitud no válida"}, status_code=400)

    @app.get("/api/config", response_model=WidgetConfig)
    def widget_config():
        return WidgetConfig(
            bot_name=settings.bot_name,
            welcome_message=settings.welcome_message,
            primary_color=settings.primary_color,
            position=settings.widget_position,
        )

    @app.get("/health")
    def health(services: Services = Depends(get_services)):
        cache = services.catalog_cache
        age = cache.age_seconds if cache else None
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "catalogPopulated": bool(cache and cache.is_populated),
            "catalogAgeSeconds": round(age, 1) if age is not None else None,
            "persistenceConfigured": services.conversations.persistence_configured,
            "llmConfigured": services.llm.configured,
            "searchStrategy": services.search_strategy,
        }

    @app.get("/embed.js")
    def embed_js():
        return FileResponse(
            os.path.join(PUBLIC_DIR, "embed.js"),
            media_type="application/javascript",
            headers={"Cache-Control": "public, max-age=3600"},
        )

    app.include_router(chat_router, prefix="/api")
    app.include_router(images_router, prefix="/api")
    return app


app = create_app()
