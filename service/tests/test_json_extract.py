"""
Tests for JSON extraction from model output.
"""

import pytest
from storefront_bot.errors import ProviderResponseError
from storefront_bot.utils.json_extract import extract_json_object, find_balanced_object


class TestExtractJsonObject:
    """Tests for extract_json_object function."""

    def test_plain_object(self):
        assert extract_json_object('{"name": "Agence Dupont"}') == {"name": "Agence Dupont"}

    def test_object_wrapped_in_prose(self):
        """Markdown fences and commentary around the object are ignored."""
        text = 'Here you go:\n```json\n{"name": "Sol", "confidence": 0.8}\n```\nHope it helps'
        assert extract_json_object(text) == {"name": "Sol", "confidence": 0.8}

    def test_nested_and_braces_in_strings(self):
        """Braces inside strings don't end the object."""
        text = '{"name": "A}B", "details": {"nameMatch": true}} trailing {"x": 1}'
        assert extract_json_object(text) == {"name": "A}B", "details": {"nameMatch": True}}

    def test_escaped_quote_in_string(self):
        text = r'{"name": "L\"Immo {Centre}"}'
        assert extract_json_object(text) == {"name": 'L"Immo {Centre}'}

    @pytest.mark.parametrize("text", [None, "", "no json here", '{"name": "open'])
    def test_unusable_output(self, text):
        """Missing or unbalanced objects raise ProviderResponseError."""
        with pytest.raises(ProviderResponseError):
            extract_json_object(text)

    def test_invalid_json_inside_braces(self):
        with pytest.raises(ProviderResponseError):
            extract_json_object("{name: 'single quotes'}")

    def test_find_balanced_object_returns_first(self):
        assert find_balanced_object('x {"a": 1} {"b": 2}') == '{"a": 1}'
