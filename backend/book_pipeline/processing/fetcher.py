"""
Content Fetcher
═══════════════

Downloads a book's PDF from wherever it is hosted.

Share-link resolution (resolve_download_url):
  Google Drive  /file/d/<id>/view, /file/d/<id>/preview, /open?id=<id>
                  → https://drive.google.com/uc?export=download&id=<id>
  Dropbox       ?dl=0 → ?dl=1
  anything else → unchanged

Large Drive files answer the first request with an HTML "can't scan this
file for viruses" page carrying a confirm=<token> link; the fetcher repeats
the request with that token appended.

Every failure surfaces as FetchError: a missing or malformed URL, timeout,
transport error, non-2xx status, or an empty body.
"""

from __future__ import annotations

import logging
import re
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import httpx

from book_pipeline.core.errors import FetchError

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 60.0   # seconds
_USER_AGENT = "book-pipeline/1.0 (+content-fetcher)"

_DRIVE_HOSTS = frozenset({"drive.google.com", "docs.google.com"})
_DRIVE_FILE_ID = re.compile(r"/file/d/([A-Za-z0-9_-]+)")
_DRIVE_CONFIRM = re.compile(r"confirm=([A-Za-z0-9_-]+)")


# ---------------------------------------------------------------------------
# Share-link resolution
# ---------------------------------------------------------------------------

def _drive_download_url(file_id: str) -> str:
    return f"https://drive.google.com/uc?export=download&id={file_id}"


def resolve_download_url(url: str) -> str:
    """Rewrite known share/preview link shapes into direct-download URLs."""
    parsed = urlparse(url)
    host = parsed.netloc.lower()

    if host in _DRIVE_HOSTS:
        query = dict(parse_qsl(parsed.query))
        if parsed.path.startswith("/uc") and query.get("export") == "download":
            return url
        match = _DRIVE_FILE_ID.search(parsed.path)
        if match:
            return _drive_download_url(match.group(1))
        if parsed.path.startswith("/open") and query.get("id"):
            return _drive_download_url(query["id"])
        return url

    if host.endswith("dropbox.com"):
        query = parse_qsl(parsed.query, keep_blank_values=True)
        if ("dl", "0") in query:
            query = [(k, "1" if k == "dl" else v) for k, v in query]
            return urlunparse(parsed._replace(query=urlencode(query)))

    return url


def _is_drive_download(url: str) -> bool:
    return urlparse(url).netloc.lower() in _DRIVE_HOSTS


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------

class ContentFetcher:
    """
    Async HTTP downloader for document bytes.

    transport is injectable so tests can serve canned responses through
    httpx.MockTransport without any network access.
    """

    def __init__(
        self,
        timeout:   float = DEFAULT_FETCH_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport

    async def fetch(self, source_url: str) -> bytes:
        if not source_url:
            raise FetchError("No download URL for this book")
        try:
            url = resolve_download_url(source_url)
        except ValueError as exc:
            raise FetchError(f"Malformed download URL {source_url!r}: {exc}") from exc
        if url != source_url:
            logger.debug("Resolved share link | source=%s resolved=%s", source_url, url)

        async with httpx.AsyncClient(
            timeout=self._timeout,
            follow_redirects=True,
            headers={"User-Agent": _USER_AGENT},
            transport=self._transport,
        ) as client:
            response = await self._get(client, url)

            if _is_drive_download(url) and _looks_like_html(response):
                match = _DRIVE_CONFIRM.search(response.text)
                if match:
                    confirmed = f"{url}&confirm={match.group(1)}"
                    logger.info("Drive confirmation required | url=%s", url)
                    response = await self._get(client, confirmed)

        if not response.is_success:
            raise FetchError(f"HTTP {response.status_code} while downloading {url}")
        if not response.content:
            raise FetchError(f"Empty response body from {url}")

        logger.info("Fetched | url=%s bytes=%d", url, len(response.content))
        return response.content

    async def _get(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        try:
            return await client.get(url)
        except httpx.TimeoutException as exc:
            raise FetchError(f"Timed out after {self._timeout:.0f}s downloading {url}") from exc
        except httpx.InvalidURL as exc:
            raise FetchError(f"Malformed download URL {url!r}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"Transport error downloading {url}: {exc}") from exc


def _looks_like_html(response: httpx.Response) -> bool:
    return "text/html" in response.headers.get("content-type", "")
