import ipaddress
from io import BytesIO
from pathlib import Path
from urllib.parse import urldefrag, urljoin, urlparse

import structlog
from PIL import Image
from resilient_httpx import AsyncProxyHttpClient, RetryPolicy

from src.config import settings
from src.schemas.images import StoredImage
from src.services import image_hosting

logger = structlog.get_logger()

_client: AsyncProxyHttpClient | None = None

_ALLOWED_SCHEMES = ("http", "https")


def _load_proxies_from_file(path: str) -> list[str]:
    file_path = Path(path)
    if not file_path.exists():
        logger.warning("proxy_file_not_found", path=path)
        return []
    proxies = []
    for line in file_path.read_text().splitlines():
        line = line.strip()
        if line:
            proxies.append(line)
    return proxies


def _build_proxy_pools() -> dict[str, list[str]]:
    pools: dict[str, list[str]] = {}
    for name, proxy_list in settings.proxies.items():
        pools.setdefault(name, []).extend(proxy_list)
    for name, file_path in settings.proxy_files.items():
        pools.setdefault(name, []).extend(_load_proxies_from_file(file_path))
    return {name: urls for name, urls in pools.items() if urls}


def get_http_client() -> AsyncProxyHttpClient:
    global _client
    if _client is None:
        pools = _build_proxy_pools()
        _client = AsyncProxyHttpClient(
            proxies=pools or None,
            proxy_strategy=settings.proxy_strategy,
            retry=RetryPolicy(max_attempts=settings.fetch_max_retries),
            timeout=settings.fetch_timeout,
            headers={"User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"},
            blacklist_threshold=settings.proxy_blacklist_threshold,
            blacklist_ttl=settings.proxy_blacklist_ttl,
            fallback_to_direct=True,
        )
    return _client


async def close_client() -> None:
    global _client
    if _client:
        await _client.aclose()
        _client = None


def _is_blocked_host(hostname: str) -> bool:
    """Refuse localhost names and literal loopback, private or reserved IPs.

    Only the literal host is checked; names that resolve to private
    addresses through DNS are not caught here.
    """
    if hostname == "localhost" or hostname.endswith(".localhost"):
        return True
    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved or ip.is_multicast or ip.is_unspecified


def _default_port(scheme: str) -> int:
    return 443 if scheme.lower() == "https" else 80


def _is_store_path(path: str, prefix: str) -> bool:
    return path.startswith(prefix) and image_hosting.is_valid_key(path[len(prefix) :])


def is_local_reference(image_url: str, wallabag_url: str = "") -> bool:
    """Tell whether ``image_url`` already points into our own image store.

    Root-relative store paths always count as local. Absolute URLs count only
    when they live on the same origin as ``wallabag_url`` and under its path,
    so instances installed in a subdirectory are recognized too.
    """
    try:
        parsed = urlparse(image_url.strip())
        base_parsed = urlparse(wallabag_url)
        store_path = settings.images_url_path.rstrip("/")
        base_prefix = base_parsed.path.rstrip("/") + store_path + "/"
        if not parsed.netloc:
            if parsed.scheme:
                return False
            return _is_store_path(parsed.path, store_path + "/") or _is_store_path(parsed.path, base_prefix)

        if not _is_store_path(parsed.path, base_prefix):
            return False
        if not parsed.hostname or not base_parsed.hostname:
            return False
        if parsed.hostname.lower() != base_parsed.hostname.lower():
            return False
        scheme = parsed.scheme or base_parsed.scheme
        if scheme.lower() != base_parsed.scheme.lower():
            return False
        parsed_port = parsed.port or _default_port(scheme)
        base_port = base_parsed.port or _default_port(base_parsed.scheme)
        return parsed_port == base_port
    except ValueError:
        return False


def resolve_image_url(image_url: str, page_url: str) -> str | None:
    """Resolve an image reference against the page it was found on.

    Returns the absolute http(s) URL without its fragment, or None when the
    reference cannot be fetched (data URIs, other schemes, no host, blocked
    hosts, unparsable input).
    """
    image_url = image_url.strip()
    if not image_url or image_url.lower().startswith("data:"):
        return None
    try:
        absolute_url = urldefrag(urljoin(page_url, image_url)).url
        parsed = urlparse(absolute_url)
        hostname = parsed.hostname
        _ = parsed.port
    except ValueError:
        return None
    if parsed.scheme.lower() not in _ALLOWED_SCHEMES or not hostname:
        return None
    if settings.block_private_hosts and _is_blocked_host(hostname):
        return None
    return absolute_url


def _is_image_content_type(content_type: str) -> bool:
    media_type = content_type.split(";")[0].strip().lower()
    if not media_type:
        return True
    return media_type.startswith("image/") or media_type in ("application/octet-stream", "binary/octet-stream")


def validate_image(image_bytes: bytes) -> str | None:
    img_format = image_hosting.detect_image_format(image_bytes)
    if img_format is None:
        return None
    try:
        with Image.open(BytesIO(image_bytes)) as img:
            img.verify()
    except Exception:
        return None
    return img_format


async def fetch_image(url: str, pool: str | None = None) -> bytes | None:
    client = get_http_client()
    try:
        async with client.stream("GET", url, pool=pool, follow_redirects=True) as response:
            response.raise_for_status()

            final_host = urlparse(str(response.url)).hostname
            if settings.block_private_hosts and final_host and _is_blocked_host(final_host):
                logger.warning("image_redirect_blocked", url=url, final_url=str(response.url))
                return None

            content_length = response.headers.get("Content-Length")
            if content_length and int(content_length) > settings.max_fetch_bytes:
                logger.warning("image_too_large", url=url, content_length=content_length)
                return None

            content_type = response.headers.get("Content-Type", "")
            if not _is_image_content_type(content_type):
                logger.warning("image_bad_content_type", url=url, content_type=content_type)
                return None

            chunks: list[bytes] = []
            total = 0
            async for chunk in response.aiter_bytes():
                total += len(chunk)
                if total > settings.max_fetch_bytes:
                    logger.warning("image_too_large", url=url, size=total)
                    return None
                chunks.append(chunk)
            return b"".join(chunks)
    except Exception as e:
        logger.error("image_fetch_failed", url=url, error=str(e))
        return None


async def fetch_and_store(
    image_url: str | None,
    page_url: str,
    wallabag_url: str = "",
    pool: str | None = None,
) -> StoredImage | None:
    """Download one image and keep a local copy of it.

    Returns the stored image, or None when the reference is not applicable
    (empty, data URI, already local, unresolvable) or the download or
    validation failed. Storage failures raise ImageStoreError.

    The returned coroutine is the handle callers await; nothing here depends
    on it being awaited right away.
    """
    if not image_url or is_local_reference(image_url, wallabag_url):
        return None

    absolute_url = resolve_image_url(image_url, page_url)
    if absolute_url is None:
        logger.debug("image_url_not_applicable", image_url=image_url[:200], page_url=page_url)
        return None

    existing = image_hosting.find(image_hosting.url_hash(absolute_url), wallabag_url)
    if existing is not None:
        logger.debug("image_already_stored", url=absolute_url, key=existing.key)
        return existing

    data = await fetch_image(absolute_url, pool=pool)
    if not data:
        return None

    img_format = validate_image(data)
    if img_format is None:
        logger.warning("image_invalid", url=absolute_url)
        return None

    if settings.max_image_size > 0:
        try:
            data = image_hosting.resize_image(data, img_format, settings.max_image_size)
        except Exception as e:
            logger.warning("image_resize_failed", url=absolute_url, error=str(e))

    key = image_hosting.make_key(absolute_url, img_format)
    return image_hosting.put(key, data, wallabag_url)
