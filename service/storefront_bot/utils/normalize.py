"""
Normalization utilities.

Ensures consistent format for phones, emails and URLs across photos and
providers.
"""

import re
from typing import Optional
from urllib.parse import urlparse, urlencode, parse_qsl, urlunparse

EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')

TRACKING_PARAMS = {"fbclid", "gclid", "_ga", "feature"}

YOUTUBE_HOSTS = {"youtube.com", "www.youtube.com", "m.youtube.com"}


def normalize_phone_number(phone: str, country_code: str = "+33") -> str:
    """
    Normalize a phone number to a comparable form.

    Input formats handled:
    - "06 12 34 56 78" -> "+33612345678"
    - "0033 6 12 34 56 78" -> "+33612345678"
    - "+33 (0)6.12.34.56.78" -> "+330612345678"
    - "612345678" -> "612345678" (left alone)

    A bare leading "0" is only expanded when the number has 9-10 characters,
    which is the length of a national number.
    """
    normalized = re.sub(r'[^\d+]', '', phone or '')

    if normalized.startswith('00'):
        normalized = '+' + normalized[2:]

    if normalized.startswith('0') and 9 <= len(normalized) <= 10:
        normalized = country_code + normalized[1:]

    return normalized


def count_digits(value: str) -> int:
    return sum(1 for c in value if c.isdigit())


def are_similar_phone_numbers(phone1: str, phone2: str, country_code: str = "+33") -> bool:
    """Equal, contained in one another, or equal once the international prefix is dropped."""
    normalized1 = normalize_phone_number(phone1, country_code)
    normalized2 = normalize_phone_number(phone2, country_code)

    if normalized1 == normalized2:
        return True

    if normalized1 in normalized2 or normalized2 in normalized1:
        return True

    without_prefix1 = re.sub(r'^\+\d{1,3}', '', normalized1)
    without_prefix2 = re.sub(r'^\+\d{1,3}', '', normalized2)
    return without_prefix1 == without_prefix2


def is_valid_email(value: str) -> bool:
    return bool(value) and bool(EMAIL_RE.match(value.strip()))


def ensure_scheme(value: str) -> str:
    value = value.strip()
    if re.match(r'^[a-zA-Z][a-zA-Z0-9+.-]*://', value):
        return value
    return "https://" + value


def parse_url(value: str) -> Optional[str]:
    """
    Return the value as an absolute http(s) URL, or None if it isn't one.

    Free text (spaces, no dot in the host) is not a URL.
    """
    if not value or not isinstance(value, str):
        return None

    value = re.sub(r'[\n\r\t]', '', value.strip())
    if not value or ' ' in value:
        return None

    candidate = ensure_scheme(value)
    parsed = urlparse(candidate)
    if parsed.scheme not in ("http", "https"):
        return None

    host = parsed.hostname or ""
    if "." not in host or host.startswith(".") or host.endswith("."):
        return None

    return candidate


def strip_tracking_params(url: str) -> str:
    """
    Drop analytics query parameters (utm_*, fbclid, gclid, _ga, feature).

    YouTube watch URLs collapse to their canonical "?v=" form.
    """
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()

    if host in YOUTUBE_HOSTS and parsed.path == "/watch":
        video_id = dict(parse_qsl(parsed.query)).get("v")
        if video_id:
            return f"https://www.youtube.com/watch?v={video_id}"

    kept = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not key.lower().startswith("utm_") and key.lower() not in TRACKING_PARAMS
    ]
    return urlunparse(parsed._replace(query=urlencode(kept), fragment=parsed.fragment))


def url_host(url: str) -> str:
    host = (urlparse(ensure_scheme(url)).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host
