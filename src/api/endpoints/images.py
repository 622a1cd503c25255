import structlog
from fastapi import APIRouter
from fastapi.responses import FileResponse

from src.config import settings
from src.core.exceptions import AppError
from src.schemas.images import (
    LocalizeHtmlRequest,
    LocalizeHtmlResponse,
    LocalizePreviewRequest,
    LocalizePreviewResponse,
)
from src.services import image_hosting
from src.services.entry_hooks import settings_config_provider
from src.services.image_localizer import ImageLocalizer

logger = structlog.get_logger()

router = APIRouter(prefix="/images")
assets_router = APIRouter(prefix=settings.images_url_path.rstrip("/"))


def get_localizer() -> ImageLocalizer:
    return ImageLocalizer(settings_config_provider)


@assets_router.get("/{key}")
async def get_image(key: str) -> FileResponse:
    if not image_hosting.is_valid_key(key):
        raise AppError(status_code=400, detail="Invalid image key")

    result = image_hosting.get_image_path(key)
    if not result:
        raise AppError(status_code=404, detail="Image not found")

    image_path, media_type = result
    return FileResponse(
        path=image_path,
        media_type=media_type,
        headers={"Cache-Control": "public, max-age=86400"},
    )


@router.post("/localize", response_model=LocalizeHtmlResponse)
async def localize_html(body: LocalizeHtmlRequest) -> LocalizeHtmlResponse:
    html = await get_localizer().process_html(body.html, body.url)
    if html is None:
        return LocalizeHtmlResponse(html=body.html, changed=False)
    return LocalizeHtmlResponse(html=html, changed=True)


@router.post("/localize/preview", response_model=LocalizePreviewResponse)
async def localize_preview(body: LocalizePreviewRequest) -> LocalizePreviewResponse:
    image_url = await get_localizer().process_single_image(body.image_url, body.url)
    if image_url is None:
        return LocalizePreviewResponse(image_url=body.image_url, changed=False)
    return LocalizePreviewResponse(image_url=image_url, changed=True)
