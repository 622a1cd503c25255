from collections.abc import Iterable

import structlog

from src.config import settings
from src.schemas.images import DownloadImagesConfig, Entry
from src.services.image_localizer import ConfigProvider, ImageLocalizer

logger = structlog.get_logger()

CONTENT_FIELD = "content"
PREVIEW_PICTURE_FIELD = "preview_picture"


def settings_config_provider() -> DownloadImagesConfig:
    return DownloadImagesConfig(
        download_images_enabled=settings.download_images_enabled,
        wallabag_url=settings.wallabag_url,
    )


class DownloadImagesHook:
    """Localize entry images right before the entry is inserted or updated.

    The persistence layer awaits ``pre_persist`` for new entries and
    ``pre_update`` for modified ones, passing the names of the fields that
    changed. Configuration is read on every call. The entry is mutated in
    place and also returned; a failure to localize never blocks the save.
    """

    def __init__(self, localizer: ImageLocalizer | None = None, config_provider: ConfigProvider | None = None) -> None:
        self._config_provider = config_provider or settings_config_provider
        self._localizer = localizer or ImageLocalizer(self._config_provider)

    def _enabled(self) -> bool:
        try:
            return self._config_provider().download_images_enabled
        except Exception as e:
            logger.error("config_unavailable", error=str(e))
            return False

    async def pre_persist(self, entry: Entry) -> Entry:
        if not self._enabled():
            return entry
        return await self._localize(entry, {CONTENT_FIELD, PREVIEW_PICTURE_FIELD})

    async def pre_update(self, entry: Entry, changed_fields: Iterable[str]) -> Entry:
        if not self._enabled():
            return entry
        fields = set(changed_fields) & {CONTENT_FIELD, PREVIEW_PICTURE_FIELD}
        if not fields:
            return entry
        return await self._localize(entry, fields)

    async def _localize(self, entry: Entry, fields: set[str]) -> Entry:
        if CONTENT_FIELD in fields:
            html = await self._localizer.process_html(entry.content, entry.url)
            if html is not None:
                entry.content = html

        if PREVIEW_PICTURE_FIELD in fields:
            preview_picture = await self._localizer.process_single_image(entry.preview_picture, entry.url)
            if preview_picture is not None:
                entry.preview_picture = preview_picture

        logger.debug("entry_images_processed", entry_id=entry.id, fields=sorted(fields))
        return entry
