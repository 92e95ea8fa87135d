import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class UserStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Step(str, Enum):
    IDLE = "idle"
    COLLECTING_PHOTOS = "collecting_photos"
    WAITING_NAME = "waiting_name"
    WAITING_CONFIRMATION = "waiting_confirmation"
    WAITING_LOCATION = "waiting_location"
    WAITING_FINAL_CONFIRM = "waiting_final_confirm"


# Directory

class DirectoryRecord(BaseModel):
    id: str
    telegram_id: str
    username: Optional[str] = None
    role: Role = Role.USER
    status: UserStatus = UserStatus.PENDING
    created_at: Optional[str] = None

    @field_validator("id", "telegram_id", mode="before")
    @classmethod
    def _as_str(cls, value):
        return str(value)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_approved(self) -> bool:
        return self.status == UserStatus.APPROVED


# Image analysis

class AnalysisResult(BaseModel):
    """Uniform per-photo result, whatever provider produced it."""
    name: Optional[str] = None
    confidence: Optional[float] = None
    qr_data: Optional[str] = None
    web_url: Optional[str] = None
    validation_score: Optional[float] = None
    validation_reasons: list[str] = Field(default_factory=list)
    condition_score: Optional[float] = None
    objects_detected: list[str] = Field(default_factory=list)
    phone_numbers: list[str] = Field(default_factory=list)
    emails: list[str] = Field(default_factory=list)
    business_hours: Optional[str] = None
    provider: Optional[str] = None
    error: bool = False
    error_message: Optional[str] = None

    @field_validator(
        "validation_reasons", "objects_detected", "phone_numbers", "emails",
        mode="before",
    )
    @classmethod
    def _none_to_list(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value.strip() else []
        return [str(item) for item in value if item]

    @field_validator("name", "qr_data", "web_url", "business_hours", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if value is None:
            return None
        value = str(value).strip()
        if not value or value.lower() in ("null", "none", "n/a"):
            return None
        return value

    @field_validator("confidence", "validation_score", "condition_score", mode="before")
    @classmethod
    def _numeric_or_none(cls, value):
        if value is None or value == "":
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None


# QR / URL validation

class QRValidationResult(BaseModel):
    is_valid: bool
    url: Optional[str] = None
    url_source: Optional[str] = None  # "qr" or "text"
    confidence: float = 0.0
    text: Optional[str] = None


class WebSummary(BaseModel):
    title: str = ""
    description: str = ""
    location: str = ""
    type: str = ""


class ValidationDetails(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name_match: bool = Field(default=False, alias="nameMatch")
    address_match: bool = Field(default=False, alias="addressMatch")
    is_real_estate_site: bool = Field(default=False, alias="isRealEstateSite")
    found_evidence: list[str] = Field(default_factory=list, alias="foundEvidence")


class UrlValidationResult(BaseModel):
    """Classifier contract; keys are camelCase on the wire."""
    model_config = ConfigDict(populate_by_name=True)

    is_valid: bool = Field(alias="isValid")
    matches_business: bool = Field(default=False, alias="matchesBusiness")
    confidence: float = 0.0
    web_summary: Optional[WebSummary] = Field(default=None, alias="webSummary")
    validation_details: Optional[ValidationDetails] = Field(
        default=None, alias="validationDetails"
    )
    error: Optional[str] = None

    @classmethod
    def invalid(cls, error: str) -> "UrlValidationResult":
        return cls(is_valid=False, matches_business=False, confidence=0.0, error=error)


# Registration draft (session scoped)

class Location(BaseModel):
    latitude: float
    longitude: float


class ContactInfo(BaseModel):
    phone_numbers: list[str] = Field(default_factory=list)
    emails: list[str] = Field(default_factory=list)
    business_hours: Optional[str] = None


class PhotoEntry(BaseModel):
    file_id: str
    is_main: Optional[bool] = None
    analysis: Optional[AnalysisResult] = None


class RegistrationDraft(BaseModel):
    photos: list[PhotoEntry] = Field(default_factory=list)
    name: Optional[str] = None
    name_confidence: Optional[float] = None
    qr: Optional[str] = None
    web_url: Optional[str] = None
    location: Optional[Location] = None
    contact_info: ContactInfo = Field(default_factory=ContactInfo)
    provider: Optional[str] = None
    awaiting_qr_input: bool = False
    started_at: float = Field(default_factory=time.time)
    last_update: float = Field(default_factory=time.time)

    @property
    def main_photo(self) -> Optional[PhotoEntry]:
        return next((p for p in self.photos if p.is_main is True), None)

    def touch(self) -> None:
        self.last_update = time.time()

    def missing_fields(self) -> list[str]:
        """Fields that still block the final confirmation."""
        missing = []
        if not self.name:
            missing.append("name")
        if self.main_photo is None:
            missing.append("main_photo")
        if self.location is None:
            missing.append("location")
        return missing


# Persisted entities

class StoredRow(BaseModel):
    """Row read back from Supabase; ids may arrive as ints or UUID strings."""

    @field_validator("id", "real_estate_id", "user_id", "created_by", "updated_by", mode="before", check_fields=False)
    @classmethod
    def _ids_as_str(cls, value):
        return None if value is None else str(value)


class RealEstate(StoredRow):
    id: str
    user_id: Optional[str] = None
    name: str
    photo_url: str
    web_url: Optional[str] = None
    latitude: float
    longitude: float
    is_active: bool = True
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    validation_score: Optional[float] = None
    validation_reasons: Optional[list[str]] = None
    condition_score: Optional[float] = None
    objects_detected: Optional[list[str]] = None


class Listing(StoredRow):
    id: str
    real_estate_id: str
    photo_url: str
    qr_data: Optional[str] = None
    web_url: Optional[str] = None
    is_active: bool = True
    created_by: Optional[str] = None
    updated_by: Optional[str] = None


class RealEstateContactInfo(StoredRow):
    id: str
    real_estate_id: str
    phone_numbers: list[str] = Field(default_factory=list)
    emails: list[str] = Field(default_factory=list)
    business_hours: Optional[str] = None
