"""
Tests for the vision provider chain.

Providers are fakes scripted with a list of outcomes; an Exception entry is
raised, a str entry is returned as the model text.
"""

import asyncio
import json
from types import SimpleNamespace

import httpx
import openai
import pytest

from storefront_bot.agents.schemas import AnalysisResult, PhotoEntry
from storefront_bot.errors import QuotaExceededError, TransientProviderError
from storefront_bot.services.image_analysis import (
    MAX_PRIMARY_ATTEMPTS,
    ImageAnalyzer,
    OpenAIVisionProvider,
    analyze_photos,
    guess_media_type,
)

STOREFRONT = json.dumps({
    "name": "Agence Dupont",
    "confidence": 0.9,
    "qr_data": None,
    "web_url": "www.agence-dupont.fr",
    "validation_score": 0.85,
    "validation_reasons": ["Signage visible", "Window listings"],
    "condition_score": 0.7,
    "objects_detected": ["sign", "window"],
    "phone_numbers": ["04 78 12 34 56"],
    "emails": [],
    "business_hours": "Lun-Ven 9h-19h",
})


class ScriptedProvider:
    def __init__(self, name, outcomes):
        self.name = name
        self.outcomes = list(outcomes)
        self.calls = 0

    async def describe(self, image_b64, media_type):
        self.calls += 1
        outcome = self.outcomes[min(self.calls, len(self.outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


async def fetch_jpeg(url):
    return b"\xff\xd8\xff\xe0fake-jpeg"


def make_analyzer(primary, secondary=None, qr_payload=None):
    return ImageAnalyzer(
        primary=primary,
        secondary=secondary,
        fetch_image=fetch_jpeg,
        qr_decoder=lambda image_bytes: qr_payload,
    )


class TestImageAnalyzer:
    """Tests for ImageAnalyzer.analyze."""

    async def test_primary_success(self):
        primary = ScriptedProvider("openai", [STOREFRONT])
        secondary = ScriptedProvider("anthropic", [STOREFRONT])

        result = await make_analyzer(primary, secondary).analyze("https://files.test/a")

        assert result.error is False
        assert result.name == "Agence Dupont"
        assert result.provider == "openai"
        assert result.phone_numbers == ["04 78 12 34 56"]
        assert secondary.calls == 0

    async def test_transient_errors_retried_then_fallback(self):
        """Primary exhausts its attempts, secondary is called exactly once."""
        primary = ScriptedProvider("openai", [TransientProviderError("503")])
        secondary = ScriptedProvider("anthropic", [STOREFRONT])

        result = await make_analyzer(primary, secondary).analyze("https://files.test/a")

        assert primary.calls == MAX_PRIMARY_ATTEMPTS
        assert secondary.calls == 1
        assert result.provider == "anthropic"
        assert result.error is False

    async def test_transient_then_success(self):
        primary = ScriptedProvider("openai", [TransientProviderError("timeout"), STOREFRONT])

        result = await make_analyzer(primary).analyze("https://files.test/a")

        assert primary.calls == 2
        assert result.provider == "openai"

    async def test_quota_is_not_retried(self):
        """429 goes straight to the fallback."""
        primary = ScriptedProvider("openai", [QuotaExceededError("429")])
        secondary = ScriptedProvider("anthropic", [STOREFRONT])

        result = await make_analyzer(primary, secondary).analyze("https://files.test/a")

        assert primary.calls == 1
        assert secondary.calls == 1
        assert result.provider == "anthropic"

    async def test_unparsable_primary_output(self):
        primary = ScriptedProvider("openai", ["Sorry, I can't see a storefront."])
        secondary = ScriptedProvider("anthropic", [STOREFRONT])

        result = await make_analyzer(primary, secondary).analyze("https://files.test/a")

        assert primary.calls == 1
        assert result.provider == "anthropic"

    async def test_both_fail(self):
        """Both providers failing yields an error result instead of raising."""
        primary = ScriptedProvider("openai", [TransientProviderError("503")])
        secondary = ScriptedProvider("anthropic", [TransientProviderError("overloaded")])

        result = await make_analyzer(primary, secondary).analyze("https://files.test/a")

        assert result.error is True
        assert result.error_message == "overloaded"
        assert result.confidence == 0
        assert secondary.calls == 1

    async def test_no_secondary(self):
        primary = ScriptedProvider("openai", [QuotaExceededError("quota")])

        result = await make_analyzer(primary).analyze("https://files.test/a")

        assert result.error is True
        assert result.error_message == "quota"

    async def test_download_failure(self):
        async def broken_fetch(url):
            raise httpx.ConnectError("unreachable")

        primary = ScriptedProvider("openai", [STOREFRONT])
        analyzer = ImageAnalyzer(primary=primary, fetch_image=broken_fetch, qr_decoder=lambda b: None)

        result = await analyzer.analyze("https://files.test/a")

        assert result.error is True
        assert primary.calls == 0

    async def test_model_error_fields_ignored(self):
        """A provider can't mark its own result as failed."""
        text = json.dumps({"name": "Sol", "error": True, "error_message": "x"})
        result = await make_analyzer(ScriptedProvider("openai", [text])).analyze("https://files.test/a")

        assert result.error is False
        assert result.error_message is None

    async def test_local_qr_fills_missing_payload(self):
        result = await make_analyzer(
            ScriptedProvider("openai", [STOREFRONT]), qr_payload="https://bit.ly/agence"
        ).analyze("https://files.test/a")

        assert result.qr_data == "https://bit.ly/agence"

    async def test_model_qr_wins_over_local(self):
        text = json.dumps({"name": "Sol", "qr_data": "https://sol.es"})
        result = await make_analyzer(
            ScriptedProvider("openai", [text]), qr_payload="https://other.es"
        ).analyze("https://files.test/a")

        assert result.qr_data == "https://sol.es"

    async def test_local_qr_decoder_failure(self):
        def broken_decoder(image_bytes):
            raise ValueError("corrupt image")

        analyzer = ImageAnalyzer(
            primary=ScriptedProvider("openai", [STOREFRONT]),
            fetch_image=fetch_jpeg,
            qr_decoder=broken_decoder,
        )
        result = await analyzer.analyze("https://files.test/a")

        assert result.error is False
        assert result.qr_data is None


class TestOpenAIVisionProvider:
    """Tests for SDK error mapping."""

    @staticmethod
    def provider_raising(exc):
        async def create(**kwargs):
            raise exc
        client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
        return OpenAIVisionProvider(client=client, model="gpt-4o")

    async def test_rate_limit_maps_to_quota(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        response = httpx.Response(429, request=request)
        provider = self.provider_raising(openai.RateLimitError("quota", response=response, body=None))

        with pytest.raises(QuotaExceededError):
            await provider.describe("aGk=", "image/jpeg")

    async def test_timeout_maps_to_transient(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        provider = self.provider_raising(openai.APITimeoutError(request=request))

        with pytest.raises(TransientProviderError):
            await provider.describe("aGk=", "image/jpeg")

    async def test_returns_message_text(self):
        async def create(**kwargs):
            message = SimpleNamespace(content=STOREFRONT)
            return SimpleNamespace(choices=[SimpleNamespace(message=message)])

        client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
        provider = OpenAIVisionProvider(client=client, model="gpt-4o")

        assert await provider.describe("aGk=", "image/jpeg") == STOREFRONT


class TestAnalyzePhotos:
    """Tests for analyze_photos fan-out."""

    async def test_results_follow_input_order(self):
        """Slow first photo still comes back first."""
        delays = {"https://files.test/p1": 0.05, "https://files.test/p2": 0, "https://files.test/p3": 0.01}

        class SlowAnalyzer:
            async def analyze(self, url):
                await asyncio.sleep(delays[url])
                return AnalysisResult(name=url.rsplit("/", 1)[-1], provider="openai")

        async def resolve(file_id):
            return f"https://files.test/{file_id}"

        photos = [PhotoEntry(file_id=f"p{i}") for i in (1, 2, 3)]
        analyzed = await analyze_photos(SlowAnalyzer(), photos, resolve, concurrency=3)

        assert [a.photo.file_id for a in analyzed] == ["p1", "p2", "p3"]
        assert [a.analysis.name for a in analyzed] == ["p1", "p2", "p3"]

    async def test_unresolvable_file(self):
        async def resolve(file_id):
            raise httpx.ConnectError("telegram down")

        class NeverCalled:
            async def analyze(self, url):
                raise AssertionError("should not analyze")

        analyzed = await analyze_photos(NeverCalled(), [PhotoEntry(file_id="p1")], resolve, concurrency=1)

        assert analyzed[0].analysis.error is True


class TestGuessMediaType:
    def test_png(self):
        assert guess_media_type(b"\x89PNG\r\n\x1a\n") == "image/png"

    def test_webp(self):
        assert guess_media_type(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "image/webp"

    def test_default_jpeg(self):
        assert guess_media_type(b"\xff\xd8\xff") == "image/jpeg"
