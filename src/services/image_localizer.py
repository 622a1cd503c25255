import asyncio
from collections.abc import Awaitable, Callable, Iterator

import structlog
from bs4 import BeautifulSoup, Tag

from src.config import settings
from src.core.exceptions import ImageStoreError
from src.schemas.images import DownloadImagesConfig, StoredImage
from src.services import image_fetcher

logger = structlog.get_logger()

ConfigProvider = Callable[[], DownloadImagesConfig]
Fetcher = Callable[[str, str, str], Awaitable[StoredImage | None]]

# attributes holding a single image URL, per tag
_URL_ATTRIBUTES = {
    "img": ("src", "data-src", "data-original"),
}
# attributes holding a srcset candidate list, per tag
_SRCSET_ATTRIBUTES = {
    "img": ("srcset", "data-srcset"),
    "source": ("srcset", "data-srcset"),
}
_ALL_SRCSET_NAMES = {"srcset", "data-srcset"}
_IMAGE_TAGS = ("img", "source")


def parse_srcset(value: str) -> list[tuple[str, str]]:
    """Split a srcset value into (url, descriptor) pairs.

    A candidate URL runs up to the next whitespace, so commas inside URLs
    (``/w_400,h_300/a.jpg``) are kept. A trailing comma on the URL ends the
    candidate; otherwise its descriptor runs to the next comma outside
    parentheses.
    """
    candidates = []
    pos, end = 0, len(value)
    while pos < end:
        while pos < end and (value[pos].isspace() or value[pos] == ","):
            pos += 1
        if pos >= end:
            break
        start = pos
        while pos < end and not value[pos].isspace():
            pos += 1
        url = value[start:pos]
        descriptor = ""
        if url.endswith(","):
            url = url.rstrip(",")
        else:
            start = pos
            depth = 0
            while pos < end:
                char = value[pos]
                if char == "(":
                    depth += 1
                elif char == ")" and depth:
                    depth -= 1
                elif char == "," and not depth:
                    break
                pos += 1
            descriptor = value[start:pos].strip()
        if url:
            candidates.append((url, descriptor))
    return candidates


def _join_srcset(candidates: list[tuple[str, str]]) -> str:
    return ", ".join(f"{url} {descriptor}" if descriptor else url for url, descriptor in candidates)


def _iter_image_urls(soup: BeautifulSoup) -> Iterator[str]:
    for tag in soup.find_all(_IMAGE_TAGS):
        for attr in _URL_ATTRIBUTES.get(tag.name, ()):
            value = tag.get(attr)
            if isinstance(value, str) and value.strip():
                yield value.strip()
        for attr in _SRCSET_ATTRIBUTES.get(tag.name, ()):
            value = tag.get(attr)
            if isinstance(value, str):
                for url, _ in parse_srcset(value):
                    yield url


def _is_url_attribute(attr: str) -> bool:
    return attr in ("src", "href") or attr.startswith("data-")


def _replace_in_tag(tag: Tag, replacements: dict[str, str]) -> int:
    count = 0
    for attr, value in list(tag.attrs.items()):
        if not isinstance(value, str):
            continue
        if attr in _ALL_SRCSET_NAMES:
            candidates = parse_srcset(value)
            if not any(url in replacements for url, _ in candidates):
                continue
            rewritten = [(replacements.get(url, url), descriptor) for url, descriptor in candidates]
            tag[attr] = _join_srcset(rewritten)
            count += sum(1 for url, _ in candidates if url in replacements)
        elif _is_url_attribute(attr) and value.strip() in replacements:
            tag[attr] = replacements[value.strip()]
            count += 1
    return count


class ImageLocalizer:
    """Rewrite image references of entries so they point at local copies.

    Both entry points return the new value, or None when nothing changed and
    the caller must leave the field alone.
    """

    def __init__(self, config_provider: ConfigProvider, fetcher: Fetcher | None = None) -> None:
        self._config_provider = config_provider
        self._fetcher = fetcher or image_fetcher.fetch_and_store

    async def process_html(self, html: str | None, page_url: str) -> str | None:
        if not html:
            return None

        try:
            soup = BeautifulSoup(html, "html.parser")
        except Exception as e:
            logger.error("html_parse_failed", page_url=page_url, error=str(e))
            return None

        urls = list(dict.fromkeys(_iter_image_urls(soup)))
        if not urls:
            return None

        wallabag_url = self._wallabag_url()
        if wallabag_url is None:
            return None
        replacements = await self._localize_all(urls, page_url, wallabag_url)
        if not replacements:
            return None

        substituted = 0
        for tag in soup.find_all(True):
            substituted += _replace_in_tag(tag, replacements)
        if not substituted:
            return None

        logger.info("html_images_localized", page_url=page_url, images=len(replacements), substitutions=substituted)
        return str(soup)

    async def process_single_image(self, image_url: str | None, page_url: str) -> str | None:
        if not image_url:
            return None

        wallabag_url = self._wallabag_url()
        if wallabag_url is None:
            return None
        try:
            local_url = await asyncio.wait_for(
                self._localize_one(image_url, page_url, wallabag_url),
                timeout=settings.process_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("image_localize_timeout", image_url=image_url[:200], page_url=page_url)
            return None
        return local_url

    def _wallabag_url(self) -> str | None:
        try:
            return self._config_provider().wallabag_url
        except Exception as e:
            logger.error("config_unavailable", error=str(e))
            return None

    async def _localize_one(self, image_url: str, page_url: str, wallabag_url: str) -> str | None:
        try:
            stored = await self._fetcher(image_url, page_url, wallabag_url)
        except ImageStoreError as e:
            logger.error("image_store_failed", image_url=image_url[:200], key=e.key, error=e.reason)
            return None
        except Exception as e:
            logger.error("image_localize_failed", image_url=image_url[:200], error=str(e))
            return None
        if stored is None:
            return None
        return stored.url

    async def _localize_all(self, urls: list[str], page_url: str, wallabag_url: str) -> dict[str, str]:
        semaphore = asyncio.Semaphore(max(1, settings.max_concurrent_downloads))

        async def _bounded(url: str) -> str | None:
            async with semaphore:
                return await self._localize_one(url, page_url, wallabag_url)

        tasks = {url: asyncio.create_task(_bounded(url)) for url in urls}
        _, pending = await asyncio.wait(tasks.values(), timeout=settings.process_timeout)
        if pending:
            logger.warning("image_localize_timeout", page_url=page_url, pending=len(pending), total=len(tasks))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        replacements: dict[str, str] = {}
        for url, task in tasks.items():
            if task.cancelled():
                continue
            local_url = task.result()
            if local_url and local_url != url:
                replacements[url] = local_url
        return replacements
