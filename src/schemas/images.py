from pathlib import Path

from pydantic import BaseModel


class DownloadImagesConfig(BaseModel):
    download_images_enabled: bool = False
    wallabag_url: str = ""


class StoredImage(BaseModel):
    key: str
    path: Path
    media_type: str
    url: str


class Entry(BaseModel):
    id: int | None = None
    url: str
    content: str = ""
    preview_picture: str | None = None


class LocalizeHtmlRequest(BaseModel):
    html: str
    url: str


class LocalizeHtmlResponse(BaseModel):
    html: str
    changed: bool


class LocalizePreviewRequest(BaseModel):
    image_url: str
    url: str


class LocalizePreviewResponse(BaseModel):
    image_url: str
    changed: bool
