"""
Tests for website validation against a business name.

The classifier is a fake AsyncOpenAI and HTTP goes through MockTransport.
"""

import json
from types import SimpleNamespace

import httpx
import pytest

from storefront_bot.services.reconciliation import ReconciliationResult, resolve_urls
from storefront_bot.services.url_validator import (
    UrlValidator,
    extract_page_text,
    format_page_text,
    is_youtube_watch_url,
    looks_like_listing,
)

AGENCY_PAGE = """
<html>
  <head>
    <title>Agence Dupont - Immobilier Lyon</title>
    <meta name="description" content="Vente et location à Lyon">
    <script>var tracking = 1;</script>
  </head>
  <body>
    <h1>Agence Dupont</h1>
    <main><p>Votre agence immobilière depuis 1998.</p></main>
  </body>
</html>
"""


class FakeCompletions:
    def __init__(self, content):
        self.content = content
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if isinstance(self.content, Exception):
            raise self.content
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_openai(content):
    completions = FakeCompletions(content)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def html_client(html=AGENCY_PAGE, content_type="text/html; charset=utf-8", status=200):
    def handler(request):
        return httpx.Response(status, headers={"content-type": content_type}, text=html)
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


CLASSIFIER_MATCH = json.dumps({
    "isValid": True,
    "matchesBusiness": True,
    "confidence": 0.92,
    "webSummary": {"title": "Agence Dupont", "description": "", "location": "Lyon", "type": "agency"},
    "validationDetails": {
        "nameMatch": True,
        "addressMatch": False,
        "isRealEstateSite": True,
        "foundEvidence": ["Title contains the agency name"],
    },
})


class TestUrlHeuristics:
    """Tests for the host/path shortcuts."""

    def test_youtube_watch(self):
        assert is_youtube_watch_url("https://www.youtube.com/watch?v=abc")
        assert is_youtube_watch_url("https://youtu.be/abc")
        assert not is_youtube_watch_url("https://www.youtube.com/@agence")

    @pytest.mark.parametrize("url", [
        "https://www.idealista.com/inmueble/12345/",
        "https://bit.ly/abc",
        "https://agence-dupont.fr/annonce/appartement-t3",
    ])
    def test_listing_like(self, url):
        assert looks_like_listing(url)

    def test_agency_home_is_not_listing(self):
        assert not looks_like_listing("https://agence-dupont.fr/")


class TestExtractPageText:
    """Tests for extract_page_text and format_page_text."""

    def test_fields(self):
        page = extract_page_text(AGENCY_PAGE)
        assert page["title"] == "Agence Dupont - Immobilier Lyon"
        assert page["description"] == "Vente et location à Lyon"
        assert page["headings"] == "Agence Dupont"
        assert "depuis 1998" in page["body"]
        assert "tracking" not in page["body"]

    def test_body_truncated(self):
        page = extract_page_text("<html><body>" + "x" * 2000 + "</body></html>")
        assert len(page["body"]) == 500

    def test_format(self):
        text = format_page_text({"title": "T", "description": "D", "headings": "H", "body": "B"})
        assert text.startswith("Title: T\n")
        assert "Main content: B..." in text


class TestUrlValidator:
    """Tests for UrlValidator.validate."""

    async def test_malformed(self):
        openai, completions = fake_openai(CLASSIFIER_MATCH)
        result = await UrlValidator(openai_client=openai).validate("not a url", "Agence Dupont")
        assert result.is_valid is False
        assert completions.calls == []

    async def test_youtube_short_circuit(self):
        openai, completions = fake_openai(CLASSIFIER_MATCH)
        result = await UrlValidator(openai_client=openai).validate("https://youtu.be/abc", "Agence Dupont")
        assert result.is_valid is True
        assert result.matches_business is True
        assert result.confidence == 0.7
        assert completions.calls == []

    async def test_listing_short_circuit(self):
        openai, completions = fake_openai(CLASSIFIER_MATCH)
        result = await UrlValidator(openai_client=openai).validate(
            "https://www.seloger.com/annonces/achat/123.htm", "Agence Dupont"
        )
        assert result.is_valid is True
        assert result.confidence == 0.3
        assert completions.calls == []

    async def test_matching_site(self):
        """Fetched page is classified and the camelCase contract is parsed."""
        openai, completions = fake_openai(CLASSIFIER_MATCH)
        async with html_client() as client:
            validator = UrlValidator(openai_client=openai, http_client=client)
            result = await validator.validate("agence-dupont.fr", "Agence Dupont")

        assert result.is_valid is True
        assert result.matches_business is True
        assert result.confidence == 0.92
        assert result.validation_details.name_match is True
        assert result.web_summary.location == "Lyon"

        prompt = completions.calls[0]["messages"][0]["content"]
        assert "Agence Dupont - Immobilier Lyon" in prompt
        assert "https://agence-dupont.fr" in prompt

    async def test_non_html(self):
        openai, completions = fake_openai(CLASSIFIER_MATCH)
        async with html_client(html="%PDF", content_type="application/pdf") as client:
            validator = UrlValidator(openai_client=openai, http_client=client)
            result = await validator.validate("https://agence-dupont.fr/plaquette", "Agence Dupont")

        assert result.is_valid is False
        assert "application/pdf" in result.error
        assert completions.calls == []

    async def test_client_error_status(self):
        openai, _ = fake_openai(CLASSIFIER_MATCH)
        async with html_client(status=404) as client:
            validator = UrlValidator(openai_client=openai, http_client=client)
            result = await validator.validate("https://agence-dupont.fr/", "Agence Dupont")

        assert result.is_valid is False
        assert "404" in result.error

    async def test_unreachable_site(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        openai, _ = fake_openai(CLASSIFIER_MATCH)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            validator = UrlValidator(openai_client=openai, http_client=client)
            result = await validator.validate("https://agence-dupont.fr/", "Agence Dupont")

        assert result.is_valid is False
        assert result.error.startswith("Sitio no accesible")

    async def test_malformed_classifier_output(self):
        """Garbage from the classifier is a failed validation."""
        openai, _ = fake_openai("I think it matches!")
        async with html_client() as client:
            validator = UrlValidator(openai_client=openai, http_client=client)
            result = await validator.validate("https://agence-dupont.fr/", "Agence Dupont")

        assert result.is_valid is False
        assert result.confidence == 0.0

    async def test_classifier_exception(self):
        openai, _ = fake_openai(RuntimeError("boom"))
        async with html_client() as client:
            validator = UrlValidator(openai_client=openai, http_client=client)
            result = await validator.validate("https://agence-dupont.fr/", "Agence Dupont")

        assert result.is_valid is False
        assert "boom" in result.error


async def no_qr(payload):
    raise AssertionError("no QR payloads")


class TestBestWebsite:
    """Shortcut results ranked by resolve_urls alongside fetched sites."""

    async def test_listing_url_is_weak_but_usable(self):
        """A listing-shaped URL is the best website when it is the only one."""
        openai, completions = fake_openai(CLASSIFIER_MATCH)
        validator = UrlValidator(openai_client=openai)
        result = ReconciliationResult(name="Agence Dupont", web_urls=["https://www.agence-dupont.fr/annonce/123"])

        result = await resolve_urls(result, no_qr, validator.validate)

        assert result.best_web_url == "https://www.agence-dupont.fr/annonce/123"
        assert completions.calls == []

    async def test_agency_site_outranks_shortcuts(self):
        openai, _ = fake_openai(CLASSIFIER_MATCH)
        urls = [
            "https://www.agence-dupont.fr/annonce/123",
            "https://www.youtube.com/watch?v=abc",
            "https://agence-dupont.fr/",
        ]
        async with html_client() as client:
            validator = UrlValidator(openai_client=openai, http_client=client)
            result = await resolve_urls(
                ReconciliationResult(name="Agence Dupont", web_urls=list(urls)), no_qr, validator.validate
            )

        assert result.best_web_url == "https://agence-dupont.fr/"
        assert all(result.url_validations[url].is_valid for url in urls)
