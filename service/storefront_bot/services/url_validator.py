"""
Cross-check a website URL against a detected business name.

Flow:
1. Reject malformed URLs
2. Short-circuit video, portal and short-link hosts (no content analysis)
3. Fetch the page (≤3 attempts, growing timeout, browser UA, text/html only)
4. Extract title / meta description / H1s / first 500 chars of body
5. Ask an LLM classifier whether the page belongs to the business
"""

import logging
import re
from typing import Optional
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup
from openai import AsyncOpenAI
from pydantic import ValidationError

from storefront_bot.agents.prompts import URL_CLASSIFICATION_PROMPT
from storefront_bot.agents.schemas import UrlValidationResult, ValidationDetails
from storefront_bot.config import get_settings
from storefront_bot.errors import ProviderResponseError, UrlFetchError
from storefront_bot.services.http_client import fetch_with_retry, http_session
from storefront_bot.services.url_resolution import is_short_link
from storefront_bot.utils.json_extract import extract_json_object
from storefront_bot.utils.normalize import parse_url, url_host

logger = logging.getLogger(__name__)

LISTING_PORTAL_HOSTS = {
    "idealista.com", "fotocasa.es", "habitaclia.com", "pisos.com",
    "milanuncios.com", "seloger.com", "leboncoin.fr", "logic-immo.com",
    "bienici.com", "pap.fr", "rightmove.co.uk", "zillow.com",
}

LISTING_PATH_RE = re.compile(
    r"/(listing|listings|annonce|annonces|inmueble|inmuebles|propiedad|property|"
    r"properties|detail|ficha|bien|vente|venta|alquiler|location)[/\-_]",
    re.IGNORECASE,
)

PAGE_EXCERPT_CHARS = 500


def is_youtube_watch_url(url: str) -> bool:
    parsed = urlparse(url)
    host = url_host(url)
    if host == "youtu.be":
        return bool(parsed.path.strip("/"))
    return host.endswith("youtube.com") and parsed.path == "/watch" and "v=" in parsed.query


def looks_like_listing(url: str) -> bool:
    """Portal host, short link, or a path shaped like a single property page."""
    host = url_host(url)
    if any(host == portal or host.endswith("." + portal) for portal in LISTING_PORTAL_HOSTS):
        return True
    if is_short_link(url):
        return True
    return bool(LISTING_PATH_RE.search(urlparse(url).path + "/"))


def extract_page_text(html: str) -> dict[str, str]:
    """Title, meta description, H1s and the first chunk of body text."""
    soup = BeautifulSoup(html, "html.parser")

    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()

    title = soup.title.get_text(strip=True) if soup.title else ""
    meta = soup.find("meta", attrs={"name": "description"})
    description = (meta.get("content") or "").strip() if meta else ""
    headings = " ".join(h1.get_text(" ", strip=True) for h1 in soup.find_all("h1"))

    container = soup.find("main") or soup.body or soup
    body = re.sub(r"\s+", " ", container.get_text(" ", strip=True))

    return {
        "title": title,
        "description": description,
        "headings": headings,
        "body": body[:PAGE_EXCERPT_CHARS],
    }


def format_page_text(page: dict[str, str]) -> str:
    return (
        f"Title: {page['title']}\n"
        f"Description: {page['description']}\n"
        f"Headings: {page['headings']}\n"
        f"Main content: {page['body']}..."
    )


class UrlValidator:
    """Validates candidate agency URLs. Collaborators are injectable for tests."""

    def __init__(
        self,
        openai_client: Optional[AsyncOpenAI] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = get_settings()
        self.openai = openai_client or AsyncOpenAI(api_key=self.settings.openai_api_key)
        self.http_client = http_client

    async def classify(self, page_text: str, business_name: str, url: str = "") -> UrlValidationResult:
        """
        Ask the classifier whether page_text belongs to business_name.

        Malformed output is a validation failure, not an exception.
        """
        prompt = URL_CLASSIFICATION_PROMPT.format(
            business_name=business_name,
            url=url,
            page_text=page_text,
        )

        response = await self.openai.chat.completions.create(
            model=self.settings.openai_classifier_model,
            messages=[{"role": "user", "content": prompt}],
            response_format={"type": "json_object"},
            temperature=0.1,
            max_tokens=500,
        )
        content = response.choices[0].message.content

        try:
            data = extract_json_object(content)
            return UrlValidationResult.model_validate(data)
        except (ProviderResponseError, ValidationError) as e:
            logger.warning(f"Classifier returned unusable output for {url}: {e}")
            return UrlValidationResult.invalid(f"Respuesta del clasificador no válida: {e}")

    async def validate(self, url: str, business_name: str) -> UrlValidationResult:
        formatted = parse_url(url)
        if formatted is None:
            return UrlValidationResult.invalid("URL mal formada")

        if is_youtube_watch_url(formatted):
            return UrlValidationResult(
                is_valid=True,
                matches_business=True,
                confidence=0.7,
                validation_details=ValidationDetails(
                    found_evidence=["Video de apoyo (YouTube), no es el sitio de la agencia"]
                ),
            )

        if looks_like_listing(formatted):
            return UrlValidationResult(
                is_valid=True,
                matches_business=True,
                confidence=0.3,
                validation_details=ValidationDetails(
                    found_evidence=["URL de anuncio o enlace corto, evidencia débil"]
                ),
            )

        try:
            async with http_session(self.http_client) as session:
                response = await fetch_with_retry(session, formatted, escalate_timeout=True)
        except UrlFetchError as e:
            logger.warning(f"URL validation fetch failed: {e}")
            return UrlValidationResult.invalid(f"Sitio no accesible: {e}")

        if response.status_code >= 400:
            return UrlValidationResult.invalid(f"Sitio no accesible: {response.status_code}")

        content_type = response.headers.get("content-type", "")
        if "text/html" not in content_type:
            return UrlValidationResult.invalid(f"Contenido no HTML: {content_type or 'desconocido'}")

        page_text = format_page_text(extract_page_text(response.text))

        try:
            result = await self.classify(page_text, business_name, url=formatted)
        except Exception as e:
            logger.error(f"URL classifier call failed for {formatted}: {e}", exc_info=True)
            return UrlValidationResult.invalid(f"Error del clasificador: {e}")

        logger.info(
            f"URL {formatted} vs '{business_name}': valid={result.is_valid}, "
            f"matches={result.matches_business}, confidence={result.confidence}"
        )
        return result


_validator: Optional[UrlValidator] = None


def get_url_validator() -> UrlValidator:
    """Get or create the URL validator singleton."""
    global _validator
    if _validator is None:
        _validator = UrlValidator()
    return _validator


async def validate_real_estate_url(url: str, business_name: str) -> UrlValidationResult:
    return await get_url_validator().validate(url, business_name)
