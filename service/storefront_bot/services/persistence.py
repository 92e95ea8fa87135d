"""
Registration persistence (Supabase tables + Storage bucket).

Writes are best-effort and not transactional:
1. Upload main photo -> signed URL            (failure: PersistenceError)
2. Insert real_estates row                     (failure: PersistenceError)
3. Insert real_estate_contact_info row         (failure: warning)
4. One listings row per distinct valid QR      (failure: warning per item)

A failure before the real_estates row exists leaves nothing behind except
possibly an orphan blob, and the caller keeps the draft for a retry.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from supabase import Client
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from storefront_bot.agents.schemas import (
    DirectoryRecord,
    Listing,
    PhotoEntry,
    QRValidationResult,
    RealEstate,
    RealEstateContactInfo,
    RegistrationDraft,
)
from storefront_bot.config import get_settings
from storefront_bot.errors import PersistenceError
from storefront_bot.services.url_resolution import validate_and_process_qr
from storefront_bot.supabase_client import get_supabase_admin

logger = logging.getLogger(__name__)

REAL_ESTATES_TABLE = "real_estates"
LISTINGS_TABLE = "listings"
CONTACT_INFO_TABLE = "real_estate_contact_info"

UPLOAD_ATTEMPTS = 3

# Tests swap this for tenacity.wait_none()
UPLOAD_RETRY_WAIT = wait_exponential(multiplier=2, min=2, max=8)

PhotoDownloader = Callable[[str], Awaitable[bytes]]
QRValidator = Callable[[str], Awaitable[QRValidationResult]]


def _client(supabase: Optional[Client]) -> Client:
    return supabase or get_supabase_admin()


def upload_blob(
    data: bytes,
    filename: str,
    content_type: str = "image/jpeg",
    supabase: Optional[Client] = None,
) -> str:
    """
    Upload bytes to the photo bucket and return a long-lived signed URL.

    Raises:
        PersistenceError: if the signed URL could not be created
    """
    settings = get_settings()
    bucket = _client(supabase).storage.from_(settings.photo_bucket)

    bucket.upload(filename, data, {"content-type": content_type})
    signed = bucket.create_signed_url(filename, settings.signed_url_ttl_seconds)

    url = (signed.get("signedURL") or signed.get("signedUrl")) if signed else None
    if not url:
        raise PersistenceError(f"No signed URL returned for {filename}")

    logger.info(f"Uploaded {filename} to bucket {settings.photo_bucket}")
    return url


def create_real_estate(data: dict, supabase: Optional[Client] = None) -> RealEstate:
    result = _client(supabase).table(REAL_ESTATES_TABLE).insert(data).execute()
    if not result.data:
        raise PersistenceError("Real estate insert returned no row")
    return RealEstate(**result.data[0])


def create_contact_info(
    real_estate_id: str,
    phone_numbers: list[str],
    emails: list[str],
    business_hours: Optional[str],
    supabase: Optional[Client] = None,
) -> RealEstateContactInfo:
    result = _client(supabase).table(CONTACT_INFO_TABLE).insert({
        "real_estate_id": real_estate_id,
        "phone_numbers": phone_numbers,
        "emails": emails,
        "business_hours": business_hours,
    }).execute()
    if not result.data:
        raise PersistenceError("Contact info insert returned no row")
    return RealEstateContactInfo(**result.data[0])


def create_listing(
    real_estate_id: str,
    photo_url: str,
    qr_data: str,
    web_url: Optional[str],
    user_id: str,
    supabase: Optional[Client] = None,
) -> Listing:
    result = _client(supabase).table(LISTINGS_TABLE).insert({
        "real_estate_id": real_estate_id,
        "photo_url": photo_url,
        "qr_data": qr_data,
        "web_url": web_url,
        "is_active": True,
        "created_by": user_id,
        "updated_by": user_id,
    }).execute()
    if not result.data:
        raise PersistenceError(f"Listing insert returned no row for QR {qr_data}")
    return Listing(**result.data[0])


def listing_exists(real_estate_id: str, qr_data: str, supabase: Optional[Client] = None) -> bool:
    result = _client(supabase).table(LISTINGS_TABLE).select("id").eq(
        "real_estate_id", real_estate_id
    ).eq("qr_data", qr_data).limit(1).execute()
    return bool(result.data)


@dataclass
class PersistenceOutcome:
    real_estate: RealEstate
    contact_info: Optional[RealEstateContactInfo] = None
    listings: list[Listing] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


async def store_photo(photo: PhotoEntry, download: PhotoDownloader, supabase: Optional[Client] = None) -> str:
    """Download a Telegram photo and upload it, retrying the whole round trip."""
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(UPLOAD_ATTEMPTS),
        wait=UPLOAD_RETRY_WAIT,
        retry=retry_if_exception_type(Exception),
        reraise=True,
    ):
        with attempt:
            number = attempt.retry_state.attempt_number
            if number > 1:
                logger.info(f"Retrying photo upload (attempt {number}/{UPLOAD_ATTEMPTS})")
            data = await download(photo.file_id)
            return upload_blob(data, f"{uuid.uuid4()}.jpg", supabase=supabase)


async def collect_listing_candidates(
    photos: list[PhotoEntry],
    validate_qr: QRValidator,
) -> dict[str, tuple[PhotoEntry, QRValidationResult]]:
    """
    Map each distinct valid QR payload on a non-main photo to its best photo.

    The best photo is the one with the highest validation_score.
    """
    candidates: dict[str, tuple[PhotoEntry, QRValidationResult]] = {}
    for photo in photos:
        if photo.is_main or photo.analysis is None or not photo.analysis.qr_data:
            continue
        qr_data = photo.analysis.qr_data
        validation = await validate_qr(qr_data)
        if not validation.is_valid:
            continue
        existing = candidates.get(qr_data)
        score = photo.analysis.validation_score or 0
        if existing is None or score > (existing[0].analysis.validation_score or 0):
            candidates[qr_data] = (photo, validation)
    return candidates


async def _listing_web_url(
    photo: PhotoEntry,
    validation: QRValidationResult,
    validate_qr: QRValidator,
) -> Optional[str]:
    if validation.url:
        return validation.url
    if photo.analysis and photo.analysis.web_url:
        text_validation = await validate_qr(photo.analysis.web_url)
        if text_validation.is_valid and text_validation.url:
            return text_validation.url
    return None


async def persist_registration(
    draft: RegistrationDraft,
    user: DirectoryRecord,
    download: PhotoDownloader,
    supabase: Optional[Client] = None,
    validate_qr: QRValidator = validate_and_process_qr,
) -> PersistenceOutcome:
    """
    Store a confirmed draft.

    Args:
        draft: Draft with name, main photo and location
        user: Directory record of the operator (audit fields)
        download: Coroutine returning photo bytes for a Telegram file_id

    Raises:
        PersistenceError: if the draft is incomplete or the main photo or the
            real_estates row could not be stored
    """
    missing = draft.missing_fields()
    if missing:
        raise PersistenceError(f"Draft is missing: {', '.join(missing)}")

    main_photo = draft.main_photo
    analysis = main_photo.analysis

    try:
        photo_url = await store_photo(main_photo, download, supabase)
    except Exception as e:
        raise PersistenceError(f"Main photo upload failed: {e}") from e

    try:
        real_estate = create_real_estate({
            "user_id": user.id,
            "name": draft.name,
            "photo_url": photo_url,
            "web_url": draft.web_url,
            "latitude": draft.location.latitude,
            "longitude": draft.location.longitude,
            "is_active": True,
            "created_by": user.id,
            "updated_by": user.id,
            "validation_score": analysis.validation_score if analysis else None,
            "validation_reasons": analysis.validation_reasons if analysis else None,
            "condition_score": analysis.condition_score if analysis else None,
            "objects_detected": analysis.objects_detected if analysis else None,
        }, supabase)
    except PersistenceError:
        raise
    except Exception as e:
        raise PersistenceError(f"Real estate insert failed: {e}") from e

    logger.info(f"Created real estate id={real_estate.id} name={real_estate.name!r}")
    outcome = PersistenceOutcome(real_estate=real_estate)

    contact = draft.contact_info
    try:
        outcome.contact_info = create_contact_info(
            real_estate.id,
            contact.phone_numbers,
            contact.emails,
            contact.business_hours,
            supabase,
        )
    except Exception as e:
        logger.warning(f"Contact info not stored for real estate {real_estate.id}: {e}")
        outcome.warnings.append("No se pudo guardar la información de contacto")

    candidates = await collect_listing_candidates(draft.photos, validate_qr)
    for qr_data, (photo, validation) in candidates.items():
        try:
            if listing_exists(real_estate.id, qr_data, supabase):
                logger.info(f"Listing for QR {qr_data} already exists, skipping")
                continue
            listing_photo_url = await store_photo(photo, download, supabase)
            web_url = await _listing_web_url(photo, validation, validate_qr)
            listing = create_listing(real_estate.id, listing_photo_url, qr_data, web_url, user.id, supabase)
            outcome.listings.append(listing)
            logger.info(f"Created listing id={listing.id} for QR {qr_data}")
        except Exception as e:
            logger.error(f"Listing for QR {qr_data} failed: {e}", exc_info=True)
            outcome.warnings.append(f"No se pudo crear el anuncio del QR {qr_data}")

    return outcome
