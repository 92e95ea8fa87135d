"""
Pull a JSON object out of free-form model output.
"""

import json
from typing import Any

from storefront_bot.errors import ProviderResponseError


def find_balanced_object(text: str) -> str:
    """
    Return the first balanced {...} substring.

    Braces inside JSON strings are ignored, so `{"a": "}"}` comes back whole.
    """
    start = text.find("{")
    if start == -1:
        raise ProviderResponseError("No JSON object found in response")

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:index + 1]

    raise ProviderResponseError("Unbalanced JSON object in response")


def extract_json_object(text: str | None) -> dict[str, Any]:
    """Parse the first JSON object in text; any failure is a ProviderResponseError."""
    if not text:
        raise ProviderResponseError("Empty response")

    candidate = find_balanced_object(text)
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise ProviderResponseError(f"Invalid JSON in response: {e}") from e

    if not isinstance(data, dict):
        raise ProviderResponseError("Response JSON is not an object")
    return data
