"""
QR payload and short-link resolution.

QR codes on agency windows usually point at a shortener or a QR-management
service. validate_and_process_qr turns a raw payload into either a clean
destination URL or an opaque text value, with a confidence:

- 0.9: a URL (resolved when it was a known short link)
- 0.6: opaque text of at least qr_min_length characters
- 0.0: too short to mean anything
"""

import logging
import re
from typing import Optional
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup

from storefront_bot.agents.schemas import QRValidationResult
from storefront_bot.config import get_settings
from storefront_bot.errors import UrlFetchError
from storefront_bot.services.http_client import fetch_with_retry, http_session
from storefront_bot.utils.normalize import parse_url, strip_tracking_params, url_host

logger = logging.getLogger(__name__)

SHORT_LINK_HOSTS = {
    "bit.ly", "goo.gl", "tinyurl.com", "t.co", "ow.ly", "is.gd", "buff.ly",
    "rebrand.ly", "cutt.ly", "shorturl.at", "tiny.cc", "eqrco.de", "qrco.de",
    "qr.codes", "l.ead.me", "me-qr.com", "qrfy.io", "linktr.ee", "youtu.be",
}

MAX_REDIRECT_HOPS = 3

JS_REDIRECT_RE = re.compile(
    r"""(?:window\.|document\.|top\.)?location(?:\.href)?\s*(?:=|\.replace\(|\.assign\()\s*['"]([^'"]+)['"]""",
    re.IGNORECASE,
)
META_REFRESH_URL_RE = re.compile(r"url\s*=\s*['\"]?([^'\";]+)", re.IGNORECASE)


def is_short_link(url: str) -> bool:
    host = url_host(url)
    return any(host == short or host.endswith("." + short) for short in SHORT_LINK_HOSTS)


def find_html_redirect(html: str) -> Optional[str]:
    """
    Find a client-side redirect in a landing page.

    Looks at <meta http-equiv="refresh"> first, then at inline
    window.location assignments.
    """
    soup = BeautifulSoup(html, "html.parser")

    for meta in soup.find_all("meta"):
        if (meta.get("http-equiv") or "").lower() != "refresh":
            continue
        match = META_REFRESH_URL_RE.search(meta.get("content") or "")
        if match:
            return match.group(1).strip()

    for script in soup.find_all("script"):
        match = JS_REDIRECT_RE.search(script.string or "")
        if match:
            return match.group(1).strip()

    return None


async def resolve_short_url(url: str, client: Optional[httpx.AsyncClient] = None) -> str:
    """
    Follow a short link to its destination.

    Uses GET rather than HEAD because several QR services answer HEAD with
    405. When no HTTP redirect happened, the landing HTML is searched for a
    meta-refresh or JS redirect.

    Returns:
        Destination URL with tracking parameters stripped

    Raises:
        UrlFetchError: if the link cannot be fetched after retries
    """
    current = url
    async with http_session(client) as session:
        for _ in range(MAX_REDIRECT_HOPS):
            response = await fetch_with_retry(session, current)
            landed = str(response.url)

            if url_host(landed) != url_host(current):
                logger.info(f"Short link {current} redirected to {landed}")
                current = landed
                if not is_short_link(current):
                    break
                continue

            content_type = response.headers.get("content-type", "")
            target = find_html_redirect(response.text) if "html" in content_type else None
            if not target:
                current = landed
                break

            current = urljoin(landed, target)
            logger.info(f"Short link {url} uses an HTML redirect to {current}")
            if not is_short_link(current):
                break

    return strip_tracking_params(current)


async def validate_and_process_qr(
    payload: Optional[str],
    client: Optional[httpx.AsyncClient] = None,
    min_length: Optional[int] = None,
) -> QRValidationResult:
    """
    Turn a raw QR payload into a QRValidationResult.

    Args:
        payload: QR content as decoded (or as read by the vision model)
        client: Optional httpx client (tests)
        min_length: Override for settings.qr_min_length
    """
    if min_length is None:
        min_length = get_settings().qr_min_length

    text = (payload or "").strip()
    if len(text) < min_length:
        return QRValidationResult(is_valid=False, confidence=0.0, text=text or None)

    url = parse_url(text)
    if url is None:
        return QRValidationResult(is_valid=True, url_source="text", confidence=0.6, text=text)

    if not is_short_link(url):
        return QRValidationResult(is_valid=True, url=url, url_source="qr", confidence=0.9, text=text)

    try:
        resolved = await resolve_short_url(url, client=client)
    except UrlFetchError as e:
        logger.warning(f"Could not resolve short link {url}: {e}")
        return QRValidationResult(is_valid=True, url=url, url_source="qr", confidence=0.6, text=text)

    return QRValidationResult(is_valid=True, url=resolved, url_source="qr", confidence=0.9, text=text)
