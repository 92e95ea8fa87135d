"""
Field reconciliation.

Merges per-photo analysis results into one registration candidate:

- name with the highest confidence (ties keep the first seen)
- exactly one main photo (first facade-like photo)
- distinct QR payloads, resolved and filtered
- phones normalised and deduplicated by similarity
- emails filtered by format
- longest business-hours string
- best website, scored against the detected name
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from storefront_bot.agents.schemas import (
    AnalysisResult,
    PhotoEntry,
    QRValidationResult,
    UrlValidationResult,
)
from storefront_bot.config import get_settings
from storefront_bot.errors import NoMainPhotoError
from storefront_bot.services.url_validator import looks_like_listing
from storefront_bot.utils.normalize import (
    are_similar_phone_numbers,
    count_digits,
    is_valid_email,
    normalize_phone_number,
    parse_url,
)

logger = logging.getLogger(__name__)

MAIN_PHOTO_KEYWORDS = ("storefront", "facade", "building", "office")

PRIMARY_SITE_MARKERS = (
    "official website", "main site", "sitio oficial", "web principal", "página principal",
)

QRValidator = Callable[[str], Awaitable[QRValidationResult]]
UrlValidatorFn = Callable[[str, str], Awaitable[UrlValidationResult]]


@dataclass
class ReconciliationResult:
    name: Optional[str] = None
    name_confidence: float = 0.0
    main_photo: Optional[PhotoEntry] = None
    qr_payloads: list[str] = field(default_factory=list)
    web_urls: list[str] = field(default_factory=list)
    phone_numbers: list[str] = field(default_factory=list)
    emails: list[str] = field(default_factory=list)
    business_hours: Optional[str] = None
    provider: Optional[str] = None
    qr_results: dict[str, QRValidationResult] = field(default_factory=dict)
    url_validations: dict[str, UrlValidationResult] = field(default_factory=dict)
    best_web_url: Optional[str] = None

    @property
    def valid_qr_payloads(self) -> list[str]:
        return [qr for qr in self.qr_payloads if self.qr_results.get(qr) and self.qr_results[qr].is_valid]


def is_main_candidate(analysis: Optional[AnalysisResult]) -> bool:
    if analysis is None or analysis.error:
        return False
    return any(
        keyword in obj.lower()
        for obj in analysis.objects_detected
        for keyword in MAIN_PHOTO_KEYWORDS
    )


def select_best_name(analyses: list[AnalysisResult]) -> tuple[Optional[str], float]:
    """Highest-confidence non-empty name; a later name must be strictly better to win."""
    best_name: Optional[str] = None
    best_confidence = 0.0
    for analysis in analyses:
        if not analysis.name:
            continue
        confidence = analysis.confidence or 0.0
        if best_name is None or confidence > best_confidence:
            best_name = analysis.name
            best_confidence = confidence
    return best_name, best_confidence


def assign_main_photo(photos: list[PhotoEntry]) -> PhotoEntry:
    """
    Mark the first facade-like photo as main and every other photo as not main.

    Raises:
        NoMainPhotoError: if no photo qualifies (photos are left untouched)
    """
    main_index = next(
        (i for i, photo in enumerate(photos) if is_main_candidate(photo.analysis)),
        None,
    )
    if main_index is None:
        raise NoMainPhotoError("No storefront photo among the analysed photos")

    for i, photo in enumerate(photos):
        photo.is_main = i == main_index
    return photos[main_index]


def collect_qr_payloads(analyses: list[AnalysisResult], min_length: int) -> list[str]:
    payloads: list[str] = []
    for analysis in analyses:
        qr = (analysis.qr_data or "").strip()
        if len(qr) >= min_length and qr not in payloads:
            payloads.append(qr)
    return payloads


def collect_web_urls(analyses: list[AnalysisResult]) -> list[str]:
    urls: list[str] = []
    for analysis in analyses:
        if not analysis.web_url:
            continue
        url = parse_url(analysis.web_url)
        if url is None:
            logger.info(f"Ignoring malformed web URL: {analysis.web_url}")
            continue
        if url not in urls:
            urls.append(url)
    return urls


def merge_phone_numbers(
    numbers: list[str],
    country_code: str = "+33",
    min_digits: int = 9,
) -> list[str]:
    """Normalise, drop short numbers and keep the first of each similar group."""
    merged: list[str] = []
    for phone in numbers:
        normalized = normalize_phone_number(phone, country_code)
        if count_digits(normalized) < min_digits:
            continue
        if any(are_similar_phone_numbers(normalized, existing, country_code) for existing in merged):
            continue
        merged.append(normalized)
    return merged


def merge_emails(emails: list[str]) -> list[str]:
    merged: list[str] = []
    for email in emails:
        email = email.strip()
        if is_valid_email(email) and email not in merged:
            merged.append(email)
    return merged


def pick_business_hours(analyses: list[AnalysisResult]) -> Optional[str]:
    best: Optional[str] = None
    for analysis in analyses:
        hours = analysis.business_hours
        if hours and (best is None or len(hours) > len(best)):
            best = hours
    return best


def _name_words(value: str) -> set[str]:
    return {word for word in re.findall(r"\w+", value.lower()) if len(word) > 2}


def score_web_url(url: str, validation: UrlValidationResult, business_name: Optional[str]) -> float:
    """
    Rank a validated URL.

    min(confidence * 30, 30), +40 when the evidence says this is the agency's
    own site, +30 when the page title contains the full name (+15 when at
    least half of the name's words appear), halved for listing-like URLs.
    """
    score = min(validation.confidence * 30, 30)

    details = validation.validation_details
    evidence = " ".join(details.found_evidence).lower() if details else ""
    if any(marker in evidence for marker in PRIMARY_SITE_MARKERS):
        score += 40

    title = (validation.web_summary.title if validation.web_summary else "").lower()
    if business_name and title:
        if business_name.lower() in title:
            score += 30
        else:
            words = _name_words(business_name)
            if words and len(words & _name_words(title)) * 2 >= len(words):
                score += 15

    if looks_like_listing(url):
        score *= 0.5

    return score


def pick_best_web_url(
    validations: dict[str, UrlValidationResult],
    business_name: Optional[str],
) -> Optional[str]:
    """Best-scoring URL among those that are valid and match the business."""
    best_url: Optional[str] = None
    best_score = -1.0
    for url, validation in validations.items():
        if not (validation.is_valid and validation.matches_business):
            continue
        score = score_web_url(url, validation, business_name)
        logger.debug(f"Web URL score {score:.1f} for {url}")
        if score > best_score:
            best_url = url
            best_score = score
    return best_url


def reconcile(photos: list[PhotoEntry]) -> ReconciliationResult:
    """
    Merge the analyses attached to photos.

    Photos whose analysis failed are ignored. Sets is_main on every photo.

    Raises:
        NoMainPhotoError: if no analysed photo shows a storefront
    """
    settings = get_settings()
    analyses = [p.analysis for p in photos if p.analysis is not None and not p.analysis.error]

    main_photo = assign_main_photo(photos)
    name, confidence = select_best_name(analyses)

    phones = [phone for analysis in analyses for phone in analysis.phone_numbers]
    emails = [email for analysis in analyses for email in analysis.emails]
    providers = {analysis.provider for analysis in analyses}

    return ReconciliationResult(
        name=name,
        name_confidence=confidence,
        main_photo=main_photo,
        qr_payloads=collect_qr_payloads(analyses, settings.qr_min_length),
        web_urls=collect_web_urls(analyses),
        phone_numbers=merge_phone_numbers(phones, settings.default_country_code, settings.phone_min_digits),
        emails=merge_emails(emails),
        business_hours=pick_business_hours(analyses),
        provider="anthropic" if "anthropic" in providers else ("openai" if providers else None),
    )


async def resolve_urls(
    result: ReconciliationResult,
    validate_qr: QRValidator,
    validate_url: UrlValidatorFn,
) -> ReconciliationResult:
    """
    Resolve QR payloads and validate candidate websites in parallel.

    QR payloads that resolve to a URL join the website candidates. URLs are
    only validated when a business name is known.
    """
    if result.qr_payloads:
        qr_results = await asyncio.gather(*(validate_qr(qr) for qr in result.qr_payloads))
        result.qr_results = dict(zip(result.qr_payloads, qr_results))

    for qr_result in result.qr_results.values():
        if qr_result.is_valid and qr_result.url and qr_result.url not in result.web_urls:
            result.web_urls.append(qr_result.url)

    if result.name and result.web_urls:
        validations = await asyncio.gather(*(validate_url(url, result.name) for url in result.web_urls))
        result.url_validations = dict(zip(result.web_urls, validations))
        result.best_web_url = pick_best_web_url(result.url_validations, result.name)

    logger.info(
        f"Reconciled: name={result.name!r}, qrs={len(result.valid_qr_payloads)}, "
        f"urls={len(result.web_urls)}, best_url={result.best_web_url}"
    )
    return result
