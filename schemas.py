"""
Database Schemas for the Garage Marketplace

MongoDB collections are defined below using Pydantic models. Each top-level
class name is converted to lowercase for the collection name (User -> "user").

We will use these collections:
- user: customers, garage owners (with an embedded garage_info profile) and admins
- garage: garage listings with their service catalog and rating rollup
- booking: customer appointments at a garage
- review: one active review per customer per garage
- unresolved_webhook: payment notifications kept for manual follow-up
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(ObjectId())


class Role(str, Enum):
    CUSTOMER = "customer"
    GARAGE_OWNER = "garage_owner"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


ADMIN_ROLES = (Role.ADMIN.value, Role.SUPER_ADMIN.value)


class Lifecycle(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"
    NOT_REQUIRED = "not_required"


class VerificationStatus(str, Enum):
    REGISTRATION_STARTED = "registration_started"
    DOCUMENTS_UPLOADED = "documents_uploaded"
    PENDING_PAYMENT = "pending_payment"
    PAYMENT_COMPLETED = "payment_completed"
    UNDER_REVIEW = "under_review"
    MORE_INFO_NEEDED = "more_info_needed"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUSPENDED = "suspended"
    BANNED = "banned"


class PaymentPlan(str, Enum):
    BASIC = "basic"
    PREMIUM = "premium"
    YEARLY = "yearly"


class DocumentStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"
    EXPIRED = "expired"


DocumentType = Literal[
    "business_license",
    "certificate_of_incorporation",
    "tax_clearance",
    "insurance_certificate",
    "garage_agreement",
    "identity_proof",
    "address_proof",
    "professional_certification",
    "fire_safety_certificate",
    "environmental_permit",
    "zoning_permit",
    "other",
]

AgreementType = Literal[
    "terms_of_service",
    "garage_partnership_agreement",
    "commission_agreement",
    "data_processing_agreement",
    "quality_standards_agreement",
    "code_of_conduct",
    "payment_terms_agreement",
    "liability_waiver",
]

ReviewDecision = Literal["under_review", "approved", "rejected", "needs_info", "suspended", "banned", "payment_waived"]


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


ACTIVE_BOOKING_STATUSES = (
    BookingStatus.PENDING.value,
    BookingStatus.CONFIRMED.value,
    BookingStatus.IN_PROGRESS.value,
)


class _Embedded(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_assignment=True, validate_default=True)


# Garage owner profile (embedded in user.garage_info)

class Document(_Embedded):
    id: str = Field(default_factory=_new_id)
    document_type: DocumentType
    document_name: str
    document_url: str
    public_id: Optional[str] = Field(None, description="Blob store key used for deletion")
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    status: DocumentStatus = DocumentStatus.PENDING
    uploaded_at: datetime = Field(default_factory=_now)
    verified_at: Optional[datetime] = None
    verified_by: Optional[str] = None
    verification_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Agreement(_Embedded):
    id: str = Field(default_factory=_new_id)
    agreement_type: AgreementType
    agreement_name: Optional[str] = None
    agreement_url: Optional[str] = None
    signed_at: datetime = Field(default_factory=_now)
    signed_by: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    signature_type: Literal["digital", "typed", "uploaded"] = "digital"
    signature_value: Optional[str] = None
    full_name: Optional[str] = None
    version: Optional[str] = None
    is_active: bool = True


class AdminReview(_Embedded):
    id: str = Field(default_factory=_new_id)
    reviewed_by: Optional[str] = None
    reviewed_at: datetime = Field(default_factory=_now)
    decision: ReviewDecision
    comments: Optional[str] = None
    next_review_date: Optional[datetime] = None


class InfoRequest(_Embedded):
    requested_by: str
    requested_at: datetime = Field(default_factory=_now)
    requested_items: List[str] = Field(default_factory=list)
    description: str
    status: Literal["pending", "responded", "cancelled"] = "pending"


class VerificationProgress(_Embedded):
    documents_submitted: bool = False
    documents_verified: bool = False
    agreements_signed: bool = False
    payment_completed: bool = False


class BusinessHours(_Embedded):
    monday: str = "9:00 AM - 6:00 PM"
    tuesday: str = "9:00 AM - 6:00 PM"
    wednesday: str = "9:00 AM - 6:00 PM"
    thursday: str = "9:00 AM - 6:00 PM"
    friday: str = "9:00 AM - 6:00 PM"
    saturday: str = "10:00 AM - 4:00 PM"
    sunday: str = "Closed"


class GarageProfile(_Embedded):
    # Business
    business_name: str = Field(..., min_length=1)
    business_reg_number: str = Field(..., min_length=1)
    tax_id: Optional[str] = None
    years_of_experience: Optional[int] = None
    address: str
    city: Optional[str] = None
    state: Optional[str] = None
    country: str = "Ethiopia"
    zip_code: Optional[str] = None
    business_phone: str
    business_email: EmailStr
    website: Optional[str] = None
    service_categories: List[str] = Field(default_factory=list)
    specialized_brands: List[str] = Field(default_factory=list)
    specialties: List[str] = Field(default_factory=list)
    description: str = Field(..., min_length=20)
    license_number: str
    insurance_provider: Optional[str] = None
    insurance_number: Optional[str] = None
    business_hours: BusinessHours = Field(default_factory=BusinessHours)
    emergency_services: bool = False

    # Payment state
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_plan: PaymentPlan = PaymentPlan.BASIC
    payment_amount: Optional[int] = None
    payment_tx_ref: Optional[str] = None
    payment_date: Optional[datetime] = None
    payment_expiry: Optional[datetime] = None

    # Verification state
    verification_status: VerificationStatus = VerificationStatus.REGISTRATION_STARTED
    verification_progress: VerificationProgress = Field(default_factory=VerificationProgress)

    documents: List[Document] = Field(default_factory=list)
    agreements: List[Agreement] = Field(default_factory=list)
    admin_reviews: List[AdminReview] = Field(default_factory=list)
    info_requests: List[InfoRequest] = Field(default_factory=list)

    approval_number: Optional[str] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    rejection_details: List[Dict[str, str]] = Field(default_factory=list)
    next_review_date: Optional[datetime] = None
    is_active: bool = True

    version: int = Field(0, ge=0, description="Bumped on every persisted change")


class User(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    name: str = Field(..., min_length=2, max_length=60)
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hash of password")
    phone: str
    role: Role = Role.CUSTOMER
    is_active: bool = True
    lifecycle: Lifecycle = Lifecycle.ACTIVE
    archived_at: Optional[datetime] = None
    archived_with: Optional[str] = None
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    reset_password_token: Optional[str] = None
    reset_password_expire: Optional[datetime] = None
    garage_info: Optional[GarageProfile] = None


# Listings

class Service(_Embedded):
    id: str = Field(default_factory=_new_id)
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    duration: Optional[int] = Field(None, gt=0, description="Minutes")
    is_active: bool = True


class Address(BaseModel):
    street: str
    city: str
    state: Optional[str] = None
    country: str = "Ethiopia"
    postal_code: Optional[str] = None


class GeoPoint(BaseModel):
    type: Literal["Point"] = "Point"
    coordinates: List[float] = Field(..., min_length=2, max_length=2, description="[lng, lat]")


class Garage(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    owner_id: str = Field(..., description="Reference to user _id (garage owner)")
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    address: Address
    location: GeoPoint
    services: List[Service] = Field(default_factory=list)
    average_rating: float = Field(0, ge=0, le=5)
    total_reviews: int = Field(0, ge=0)
    is_verified: bool = False
    lifecycle: Lifecycle = Lifecycle.ACTIVE
    archived_at: Optional[datetime] = None
    archived_with: Optional[str] = None


class BookedService(BaseModel):
    service_id: str
    name: str
    price: float
    duration: Optional[int] = None


class BookingPayment(BaseModel):
    method: Literal["cash", "chapa"] = "chapa"
    status: Literal["pending", "paid", "failed", "refunded"] = "pending"
    tx_ref: Optional[str] = None
    provider_reference: Optional[str] = None
    amount_paid: Optional[float] = None
    paid_at: Optional[datetime] = None


class Booking(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    user_id: str
    garage_id: str
    services: List[BookedService] = Field(..., min_length=1)
    total_price: float = Field(..., ge=0)
    appointment_date: datetime
    status: BookingStatus = BookingStatus.PENDING
    payment: BookingPayment = Field(default_factory=BookingPayment)
    notes: Optional[str] = None
    lifecycle: Lifecycle = Lifecycle.ACTIVE
    archived_at: Optional[datetime] = None
    archived_with: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class Review(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    user_id: str
    garage_id: str
    booking_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: str = Field(..., min_length=1, max_length=500)
    is_verified: bool = False
    lifecycle: Lifecycle = Lifecycle.ACTIVE
    archived_at: Optional[datetime] = None
    archived_with: Optional[str] = None


class UnresolvedWebhook(BaseModel):
    reason: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    tx_ref: Optional[str] = None
    received_at: datetime = Field(default_factory=_now)
