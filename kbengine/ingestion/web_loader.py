"""
URL fetching for web-page sources.

HTML is reduced to readable text (scripts, styles and navigation stripped)
and the site name is taken from ``og:site_name`` or ``<title>``.

Failure classification drives rebuild policy:
- HTTP 404/410 and other 4xx responses: permanent ``SourceUnreachableError``
- timeouts, connection errors, 429 and 5xx: transient ``SourceUnreachableError``
- unsupported content type or oversized body: ``DocumentLoadError``
"""
import asyncio
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlparse

import aiohttp
import html2text
from bs4 import BeautifulSoup

from kbengine.exceptions import DocumentLoadError, SourceUnreachableError
from kbengine.logging_config import get_logger

log = get_logger(__name__)

_USER_AGENT = "kbengine/0.1 (+knowledge-base indexer)"
_MAX_REDIRECTS = 5
_ALLOWED_CONTENT_TYPES = {"text/html", "application/xhtml+xml", "text/plain", "text/markdown"}
_TRANSIENT_STATUSES = {408, 425, 429}

_h2t = html2text.HTML2Text()
_h2t.ignore_links = True
_h2t.ignore_images = True
_h2t.body_width = 0


@dataclass
class FetchedPage:
    url: str
    text: str
    title: Optional[str]
    site_name: Optional[str]
    size: int


def html_to_text(html: str) -> Tuple[str, Optional[str], Optional[str]]:
    """Return ``(text, title, site_name)`` for an HTML document."""
    soup = BeautifulSoup(html, "html.parser")

    title = soup.title.get_text(strip=True) if soup.title else None
    site_name = None
    og = soup.find("meta", attrs={"property": "og:site_name"})
    if og and og.get("content"):
        site_name = og["content"].strip()

    for tag in soup.find_all(["script", "style", "nav", "footer", "head", "noscript", "iframe"]):
        tag.decompose()
    text = _h2t.handle(str(soup)).strip()
    return text, title or None, site_name or title or None


async def fetch_page(url: str, timeout: float = 30.0, max_bytes: int = 5 * 1024 * 1024) -> FetchedPage:
    """Fetch ``url`` and convert it to plain text."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise DocumentLoadError(f"Unsupported URL: {url}")

    client_timeout = aiohttp.ClientTimeout(total=timeout)
    try:
        async with aiohttp.ClientSession(timeout=client_timeout, headers={"User-Agent": _USER_AGENT}) as session:
            async with session.get(url, allow_redirects=True, max_redirects=_MAX_REDIRECTS) as response:
                if response.status >= 400:
                    permanent = response.status < 500 and response.status not in _TRANSIENT_STATUSES
                    raise SourceUnreachableError(f"HTTP {response.status} fetching {url}", permanent=permanent)

                content_type = (response.headers.get("Content-Type") or "text/html").split(";")[0].strip().lower()
                if content_type not in _ALLOWED_CONTENT_TYPES:
                    raise DocumentLoadError(f"Unsupported Content-Type '{content_type}' for {url}")

                body = await response.content.read(max_bytes + 1)
                if len(body) > max_bytes:
                    raise DocumentLoadError(f"Response body exceeds {max_bytes} bytes for {url}")
                charset = response.charset or "utf-8"
    except (SourceUnreachableError, DocumentLoadError):
        raise
    except aiohttp.TooManyRedirects as e:
        raise SourceUnreachableError(f"Too many redirects for {url}: {e}", permanent=True) from e
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
        raise SourceUnreachableError(f"Failed to fetch {url}: {e or type(e).__name__}", permanent=False) from e

    raw = body.decode(charset, errors="replace")
    if content_type in ("text/plain", "text/markdown"):
        text, title, site_name = raw.strip(), None, parsed.netloc
    else:
        text, title, site_name = html_to_text(raw)

    log.info("url_fetched", url=url, bytes=len(body), content_type=content_type)
    return FetchedPage(url=url, text=text, title=title, site_name=site_name, size=len(body))
