import logging
import re

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response

from ..errors import UpstreamError
from ..services import Services, get_services


logger = logging.getLogger("app.routes.images")

router = APIRouter()

_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


@router.get("/articulos/image/{product_id}/{image_id}")
@router.get("/chat/image/{product_id}/{image_id}")
async def product_image(product_id: str, image_id: str, services: Services = Depends(get_services)):
    """Proxy a catalog image so the widget never needs shop credentials."""
    if not _ID_RE.match(product_id) or not _ID_RE.match(image_id):
        raise HTTPException(status_code=400, detail="Identificador no válido")
    try:
        content, content_type = await services.catalog_client.fetch_image(product_id, image_id)
    except UpstreamError as e:
        logger.warning("Image proxy miss: %s", e)
        raise HTTPException(status_code=404, detail="Imagen no encontrada")
    return Response(
        content=content,
        media_type=content_type,
        headers={"Cache-Control": "public, max-age=86400"},
    )
