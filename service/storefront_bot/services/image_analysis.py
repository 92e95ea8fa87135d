"""
Image analysis adapter.

One uniform contract in front of the vision providers:

    analyze(photo_url) -> AnalysisResult

- Primary: OpenAI vision. Retried (≤3 attempts, exponential backoff) on
  5xx / connection / timeout only; quota (429) and unparsable output fail
  fast.
- Secondary: Anthropic Claude vision, called once when the primary fails.
- Both failed: AnalysisResult(error=True, error_message=...). Never raises.

The image is downloaded once and shared by the providers and the local QR
decoder.
"""

import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol

import anthropic
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from storefront_bot.agents.prompts import IMAGE_ANALYSIS_PROMPT
from storefront_bot.agents.schemas import AnalysisResult, PhotoEntry
from storefront_bot.config import get_settings
from storefront_bot.errors import (
    QuotaExceededError,
    TransientProviderError,
    UrlFetchError,
)
from storefront_bot.services.http_client import fetch_with_retry, http_session
from storefront_bot.services.qr_decoder import decode_qr
from storefront_bot.utils.json_extract import extract_json_object

logger = logging.getLogger(__name__)

MAX_PRIMARY_ATTEMPTS = 3

# Tests swap this for tenacity.wait_none()
PROVIDER_RETRY_WAIT = wait_exponential(multiplier=2, min=2, max=10)


class VisionProvider(Protocol):
    name: str

    async def describe(self, image_b64: str, media_type: str) -> str:
        """Return the raw model text for one image."""


def guess_media_type(image_bytes: bytes) -> str:
    if image_bytes.startswith(b"\x89PNG"):
        return "image/png"
    if image_bytes[:4] == b"RIFF" and image_bytes[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


class OpenAIVisionProvider:
    name = "openai"

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        settings = get_settings()
        self.client = client or AsyncOpenAI(api_key=settings.openai_api_key)
        self.model = model or settings.openai_vision_model

    async def describe(self, image_b64: str, media_type: str) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[{
                    "role": "user",
                    "content": [
                        {"type": "text", "text": IMAGE_ANALYSIS_PROMPT},
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{media_type};base64,{image_b64}"},
                        },
                    ],
                }],
                temperature=0.2,
                max_tokens=1024,
            )
        except openai.RateLimitError as e:
            raise QuotaExceededError(f"OpenAI quota exceeded: {e}") from e
        except openai.InternalServerError as e:
            raise TransientProviderError(f"OpenAI {e.status_code}: {e}") from e
        except (openai.APITimeoutError, openai.APIConnectionError) as e:
            raise TransientProviderError(f"OpenAI unreachable: {e}") from e

        return response.choices[0].message.content or ""


class ClaudeVisionProvider:
    name = "anthropic"

    def __init__(self, client: Optional[AsyncAnthropic] = None, model: Optional[str] = None):
        settings = get_settings()
        self.client = client or AsyncAnthropic(api_key=settings.anthropic_api_key)
        self.model = model or settings.anthropic_vision_model

    async def describe(self, image_b64: str, media_type: str) -> str:
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=1024,
                messages=[{
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {"type": "base64", "media_type": media_type, "data": image_b64},
                        },
                        {"type": "text", "text": IMAGE_ANALYSIS_PROMPT},
                    ],
                }],
            )
        except anthropic.RateLimitError as e:
            raise QuotaExceededError(f"Anthropic quota exceeded: {e}") from e
        except anthropic.InternalServerError as e:
            raise TransientProviderError(f"Anthropic {e.status_code}: {e}") from e
        except (anthropic.APITimeoutError, anthropic.APIConnectionError) as e:
            raise TransientProviderError(f"Anthropic unreachable: {e}") from e

        return "".join(block.text for block in response.content if block.type == "text")


ImageFetcher = Callable[[str], Awaitable[bytes]]


async def download_image(url: str) -> bytes:
    """Fetch image bytes with timeout and transient retries."""
    async with http_session() as session:
        response = await fetch_with_retry(session, url)
    if response.status_code >= 400:
        raise UrlFetchError(f"Image download failed: {response.status_code}")
    return response.content


class ImageAnalyzer:
    """
    Primary/secondary provider chain with a uniform result.

    Args:
        primary: First provider tried (retried on transient errors)
        secondary: Fallback provider, called at most once per photo (optional)
        fetch_image: Coroutine returning image bytes for a URL
        qr_decoder: Callable decoding a QR payload from image bytes
    """

    def __init__(
        self,
        primary: VisionProvider,
        secondary: Optional[VisionProvider] = None,
        fetch_image: ImageFetcher = download_image,
        qr_decoder: Callable[[bytes], Optional[str]] = decode_qr,
    ):
        self.primary = primary
        self.secondary = secondary
        self.fetch_image = fetch_image
        self.qr_decoder = qr_decoder

    async def _run_provider(self, provider: VisionProvider, image_b64: str, media_type: str) -> AnalysisResult:
        text = await provider.describe(image_b64, media_type)
        data = extract_json_object(text)
        data.pop("error", None)
        data.pop("error_message", None)
        data["provider"] = provider.name
        return AnalysisResult.model_validate(data)

    async def _run_primary(self, image_b64: str, media_type: str) -> AnalysisResult:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(MAX_PRIMARY_ATTEMPTS),
            wait=PROVIDER_RETRY_WAIT,
            retry=retry_if_exception_type(TransientProviderError),
            reraise=True,
        ):
            with attempt:
                number = attempt.retry_state.attempt_number
                if number > 1:
                    logger.info(f"Retrying {self.primary.name} (attempt {number}/{MAX_PRIMARY_ATTEMPTS})")
                return await self._run_provider(self.primary, image_b64, media_type)

    def _merge_local_qr(self, result: AnalysisResult, image_bytes: bytes) -> AnalysisResult:
        if result.qr_data:
            return result
        try:
            payload = self.qr_decoder(image_bytes)
        except Exception as e:
            logger.warning(f"Local QR decoding failed: {e}")
            return result
        if payload:
            result.qr_data = payload
        return result

    async def analyze(self, photo_url: str) -> AnalysisResult:
        """Analyze one photo. Never raises."""
        try:
            image_bytes = await self.fetch_image(photo_url)
        except Exception as e:
            logger.error(f"Could not download photo for analysis: {e}")
            return AnalysisResult(error=True, error_message=f"No se pudo descargar la foto: {e}")

        image_b64 = base64.b64encode(image_bytes).decode("ascii")
        media_type = guess_media_type(image_bytes)

        try:
            result = await self._run_primary(image_b64, media_type)
            return self._merge_local_qr(result, image_bytes)
        except Exception as primary_error:
            logger.warning(f"{self.primary.name} failed: {primary_error}")
            last_error: Exception = primary_error

        if self.secondary is not None:
            try:
                logger.info(f"Falling back to {self.secondary.name}")
                result = await self._run_provider(self.secondary, image_b64, media_type)
                return self._merge_local_qr(result, image_bytes)
            except Exception as secondary_error:
                logger.error(f"{self.secondary.name} also failed: {secondary_error}")
                last_error = secondary_error

        return AnalysisResult(
            error=True,
            error_message=str(last_error) or "Error desconocido al analizar la imagen",
            confidence=0,
            validation_score=0,
        )


@dataclass
class AnalyzedPhoto:
    photo: PhotoEntry
    analysis: AnalysisResult
    elapsed_ms: int


async def analyze_photos(
    analyzer: ImageAnalyzer,
    photos: list[PhotoEntry],
    resolve_url: Callable[[str], Awaitable[str]],
    concurrency: Optional[int] = None,
) -> list[AnalyzedPhoto]:
    """
    Analyze every photo with bounded fan-out.

    Each result stays paired with its photo, and the returned list follows
    the input order whatever the completion order was.
    """
    limit = asyncio.Semaphore(concurrency or get_settings().analysis_concurrency)

    async def run(index: int, photo: PhotoEntry) -> AnalyzedPhoto:
        async with limit:
            started = time.monotonic()
            try:
                url = await resolve_url(photo.file_id)
            except Exception as e:
                logger.error(f"[Photo {index + 1}] Could not get file URL: {e}")
                analysis = AnalysisResult(error=True, error_message=f"No se pudo obtener la foto: {e}")
            else:
                analysis = await analyzer.analyze(url)
            elapsed = int((time.monotonic() - started) * 1000)
            logger.info(f"[Photo {index + 1}] analysed in {elapsed}ms by {analysis.provider or 'none'}")
            return AnalyzedPhoto(photo=photo, analysis=analysis, elapsed_ms=elapsed)

    return list(await asyncio.gather(*(run(i, p) for i, p in enumerate(photos))))


_analyzer: Optional[ImageAnalyzer] = None


def get_image_analyzer() -> ImageAnalyzer:
    """Get or create the analyzer singleton (fallback only with an Anthropic key)."""
    global _analyzer
    if _analyzer is None:
        settings = get_settings()
        secondary = ClaudeVisionProvider() if settings.anthropic_api_key else None
        _analyzer = ImageAnalyzer(primary=OpenAIVisionProvider(), secondary=secondary)
    return _analyzer
