from .normalize import (
    normalize_phone_number,
    are_similar_phone_numbers,
    is_valid_email,
    parse_url,
    strip_tracking_params,
    url_host,
)

__all__ = [
    "normalize_phone_number",
    "are_similar_phone_numbers",
    "is_valid_email",
    "parse_url",
    "strip_tracking_params",
    "url_host",
]
