import hashlib
import json
import logging
import re
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional, get_args

from bson import ObjectId
from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from fastapi.staticfiles import StaticFiles
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError
from pydantic.alias_generators import to_camel
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import documents
import verification
from accounts import find_account, load_profile, mutate_profile, save_profile
from config import load_settings
from database import (
    active_filter,
    archive_fields,
    as_utc,
    create_document,
    db,
    ensure_indexes,
    restore_fields,
    utcnow,
)
from errors import AppError, StaleProfile
from payments import PaymentGateway
from ratings import recompute_garage_rating
from schemas import (
    ACTIVE_BOOKING_STATUSES,
    ADMIN_ROLES,
    Address,
    Agreement,
    AgreementType,
    BookedService,
    Booking as BookingSchema,
    BookingPayment,
    BookingStatus,
    Document,
    DocumentType,
    Garage as GarageSchema,
    GarageProfile,
    GeoPoint,
    Lifecycle,
    Review as ReviewSchema,
    Role,
    Service,
    User as UserSchema,
)
from storage import LocalBlobStore, get_blob_store, validate_upload

logger = logging.getLogger(__name__)

settings = load_settings()
gateway = PaymentGateway(settings)
blob_store = get_blob_store(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
    yield


# App and CORS
app = FastAPI(title="Garage Marketplace API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
if isinstance(blob_store, LocalBlobStore):
    app.mount("/uploads", StaticFiles(directory=settings.upload_dir, check_dir=False), name="uploads")

# Auth setup
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


# Error responses

def error_body(message: str, errors: Optional[List[Dict[str, str]]] = None, debug: Any = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": False, "message": message}
    if errors:
        body["errors"] = errors
    if debug is not None and settings.is_development:
        body["debug"] = debug
    return body


def field_errors(errors) -> List[Dict[str, str]]:
    out = []
    for err in errors:
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        out.append({"field": ".".join(loc), "message": err.get("msg", "")})
    return out


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content=error_body(str(exc.detail)), headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content=error_body("Validation error", field_errors(exc.errors())))


@app.exception_handler(ValidationError)
async def model_validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content=error_body("Validation error", field_errors(exc.errors())))


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, debug=exc.detail))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=error_body("Internal server error", debug=str(exc)))


# Helpers

def ok(data: Any = None, message: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


def to_obj_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid id")


def sanitize(doc: Dict) -> Dict:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def sanitize_user(doc: Dict) -> Dict:
    d = sanitize(doc)
    for secret in ("password_hash", "reset_password_token", "reset_password_expire"):
        d.pop(secret, None)
    return d


def verify_password_policy(password: str) -> None:
    # at least 8 chars with upper, lower and a digit
    if len(password) < 8:
        raise HTTPException(status_code=400, detail="Password must be at least 8 characters long")
    if not re.search(r"[A-Z]", password):
        raise HTTPException(status_code=400, detail="Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        raise HTTPException(status_code=400, detail="Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        raise HTTPException(status_code=400, detail="Password must contain at least one number")


def hash_password(password: str) -> str:
    verify_password_policy(password)
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=settings.jwt_expire_days))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def token_for(user: Dict) -> str:
    return create_access_token({"sub": str(user["_id"]), "role": user.get("role")})


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def paginate(page: int, limit: int) -> Dict[str, int]:
    return {"skip": (page - 1) * limit, "limit": limit}


def get_current_user(token: str = Depends(oauth2_scheme)):
    credentials_exception = HTTPException(status_code=401, detail="Could not validate credentials")
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception
    user = db["user"].find_one({"_id": to_obj_id(user_id), "lifecycle": Lifecycle.ACTIVE.value})
    if not user or not user.get("is_active", True):
        raise credentials_exception
    return sanitize_user(user)


def require_role(*roles: str):
    def role_dep(current_user=Depends(get_current_user)):
        if current_user.get("role") not in roles:
            raise HTTPException(status_code=403, detail=f"User role {current_user.get('role')} is not authorized to access this route")
        return current_user
    return role_dep


require_admin = require_role(*ADMIN_ROLES)


def is_admin(user: Dict) -> bool:
    return user.get("role") in ADMIN_ROLES


def refresh_expiry(user_id: str) -> GarageProfile:
    return mutate_profile(db, user_id, lambda p: verification.expire_payment(p, utcnow()))


# Request models

class _Request(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterRequest(_Request):
    name: str = Field(..., min_length=2, max_length=60)
    email: EmailStr
    password: str
    phone: str = Field(..., min_length=7, max_length=20)


class LoginRequest(_Request):
    email: EmailStr
    password: str


class ForgotPasswordRequest(_Request):
    email: EmailStr


class ResetPasswordRequest(_Request):
    token: str
    password: str


class UpdateDetailsRequest(_Request):
    name: Optional[str] = Field(None, min_length=2, max_length=60)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, min_length=7, max_length=20)


class UpdatePasswordRequest(_Request):
    current_password: str
    new_password: str


class SignAgreementRequest(_Request):
    agreement_type: AgreementType
    full_name: str = Field(..., min_length=2)
    signature_type: Literal["digital", "typed"] = "typed"
    signature_value: Optional[str] = None
    version: str = "1.0"


class ServiceRequest(_Request):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    duration: Optional[int] = Field(None, gt=0)
    is_active: bool = True


class ServiceUpdateRequest(_Request):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    duration: Optional[int] = Field(None, gt=0)
    is_active: Optional[bool] = None


class GarageRequest(_Request):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    address: Address
    location: GeoPoint
    services: List[ServiceRequest] = Field(default_factory=list)


class GarageUpdateRequest(_Request):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    description: Optional[str] = None
    address: Optional[Address] = None
    location: Optional[GeoPoint] = None


class VerifyGarageRequest(_Request):
    is_verified: bool = True


class BookingCreateRequest(_Request):
    garage_id: str
    service_ids: List[str] = Field(..., min_length=1)
    appointment_date: datetime
    notes: Optional[str] = Field(None, max_length=500)
    payment_method: Literal["cash", "chapa"] = "cash"


class BookingUpdateRequest(_Request):
    status: Optional[BookingStatus] = None
    appointment_date: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=500)


class ReviewCreateRequest(_Request):
    garage_id: str
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: str = Field(..., min_length=1, max_length=500)
    booking_id: Optional[str] = None


class ReviewUpdateRequest(_Request):
    rating: Optional[int] = Field(None, ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: Optional[str] = Field(None, min_length=1, max_length=500)


class InitializePaymentRequest(_Request):
    plan: str = "basic"


class AdminDecision(_Request):
    expected_version: Optional[int] = Field(None, ge=0)
    comments: Optional[str] = None


class RejectRequest(AdminDecision):
    reason: str = Field(..., min_length=1)
    details: List[Dict[str, str]] = Field(default_factory=list)


class InfoRequestBody(AdminDecision):
    items: List[str] = Field(..., min_length=1)
    description: str = Field(..., min_length=1)


class SuspendRequest(AdminDecision):
    reason: str = Field(..., min_length=1)
    review_in_days: Optional[int] = Field(None, gt=0)


class BanRequest(AdminDecision):
    reason: str = Field(..., min_length=1)


class WaivePaymentRequest(AdminDecision):
    reason: Optional[str] = None


class DocumentDecisionRequest(AdminDecision):
    notes: Optional[str] = None
    reason: Optional[str] = None


# Auth Routes

@app.post("/auth/register", status_code=201)
def register(payload: RegisterRequest):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=409, detail="User already exists")
    user_doc = UserSchema(
        name=payload.name,
        email=email,
        phone=payload.phone,
        password_hash=hash_password(payload.password),
        role=Role.CUSTOMER,
    )
    try:
        uid = create_document("user", user_doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="User already exists")
    user = db["user"].find_one({"_id": ObjectId(uid)})
    logger.info("Customer registered: %s", uid)
    return ok({"token": token_for(user), "user": sanitize_user(user)}, "User registered successfully")


def _csv(value: Optional[str]) -> List[str]:
    return [s.strip() for s in value.split(",") if s.strip()] if value else []


def _read_upload(upload: UploadFile) -> bytes:
    data = upload.file.read()
    validate_upload(upload.filename or "file", upload.content_type, len(data))
    return data


def _store_upload(doc_type: str, upload: UploadFile, data: bytes) -> Document:
    blob = blob_store.upload(data, upload.filename)
    return Document(
        document_type=doc_type,
        document_name=upload.filename,
        document_url=blob.url,
        public_id=blob.public_id,
        file_size=blob.size,
        mime_type=upload.content_type,
    )


@app.post("/auth/register-garage", status_code=201)
def register_garage(
    request: Request,
    name: str = Form(...),
    email: str = Form(...),
    password: str = Form(...),
    phone: str = Form(...),
    business_name: str = Form(..., alias="businessName"),
    business_reg_number: str = Form(..., alias="businessRegNumber"),
    tax_id: Optional[str] = Form(None, alias="taxId"),
    years_of_experience: Optional[int] = Form(None, alias="yearsOfExperience"),
    address: str = Form(...),
    city: Optional[str] = Form(None),
    state: Optional[str] = Form(None),
    country: Optional[str] = Form(None),
    zip_code: Optional[str] = Form(None, alias="zipCode"),
    business_phone: str = Form(..., alias="businessPhone"),
    business_email: str = Form(..., alias="businessEmail"),
    website: Optional[str] = Form(None),
    service_categories: Optional[str] = Form(None, alias="serviceCategories"),
    specialized_brands: Optional[str] = Form(None, alias="specializedBrands"),
    specialties: Optional[str] = Form(None),
    description: str = Form(...),
    license_number: str = Form(..., alias="licenseNumber"),
    insurance_provider: Optional[str] = Form(None, alias="insuranceProvider"),
    insurance_number: Optional[str] = Form(None, alias="insuranceNumber"),
    emergency_services: bool = Form(False, alias="emergencyServices"),
    business_license: Optional[UploadFile] = File(None, alias="businessLicense"),
    certificate_of_incorporation: Optional[UploadFile] = File(None, alias="certificateOfIncorporation"),
    tax_clearance: Optional[UploadFile] = File(None, alias="taxClearance"),
    insurance_certificate: Optional[UploadFile] = File(None, alias="insuranceCertificate"),
    garage_agreement: Optional[UploadFile] = File(None, alias="garageAgreement"),
    identity_proof: Optional[UploadFile] = File(None, alias="identityProof"),
    address_proof: Optional[UploadFile] = File(None, alias="addressProof"),
    other_documents: Optional[List[UploadFile]] = File(None, alias="otherDocuments"),
):
    email = email.strip().lower()
    profile = GarageProfile(
        business_name=business_name,
        business_reg_number=business_reg_number,
        tax_id=tax_id,
        years_of_experience=years_of_experience,
        address=address,
        city=city,
        state=state,
        country=country or "Ethiopia",
        zip_code=zip_code,
        business_phone=business_phone,
        business_email=business_email,
        website=website,
        service_categories=_csv(service_categories),
        specialized_brands=_csv(specialized_brands),
        specialties=_csv(specialties),
        description=description,
        license_number=license_number,
        insurance_provider=insurance_provider,
        insurance_number=insurance_number,
        emergency_services=emergency_services,
    )
    user_doc = UserSchema(
        name=name,
        email=email,
        phone=phone,
        password_hash=hash_password(password),
        role=Role.GARAGE_OWNER,
        garage_info=profile,
    )
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=409, detail="User already exists")
    if db["user"].find_one({"garage_info.business_reg_number": business_reg_number}):
        raise HTTPException(status_code=409, detail="Business registration number already registered")

    files = [
        ("business_license", business_license),
        ("certificate_of_incorporation", certificate_of_incorporation),
        ("tax_clearance", tax_clearance),
        ("insurance_certificate", insurance_certificate),
        ("identity_proof", identity_proof),
        ("address_proof", address_proof),
    ] + [("other", f) for f in (other_documents or [])]
    files = [(t, f) for t, f in files if f is not None and f.filename]
    contents = [(t, f, _read_upload(f)) for t, f in files]
    agreement_data = _read_upload(garage_agreement) if garage_agreement is not None and garage_agreement.filename else None

    stored: List[Document] = []
    try:
        for doc_type, upload, data in contents:
            stored.append(_store_upload(doc_type, upload, data))
        profile = documents.attach_many(profile, stored)

        if agreement_data is not None:
            agreement_file = _store_upload("garage_agreement", garage_agreement, agreement_data)
            stored.append(agreement_file)
            profile = documents.sign(profile, Agreement(
                agreement_type="garage_partnership_agreement",
                agreement_name=agreement_file.document_name,
                agreement_url=agreement_file.document_url,
                ip_address=request.client.host if request.client else None,
                user_agent=request.headers.get("user-agent"),
                signature_type="uploaded",
                signature_value=agreement_file.document_url,
                full_name=name,
                version="1.0",
            ))

        user_doc.garage_info = profile
        uid = create_document("user", user_doc)
    except (AppError, DuplicateKeyError) as e:
        for document in stored:
            documents.cleanup_blob(blob_store, document)
        if isinstance(e, DuplicateKeyError):
            key = (e.details or {}).get("keyPattern") or {}
            if "garage_info.business_reg_number" in key:
                raise HTTPException(status_code=409, detail="Business registration number already registered")
            raise HTTPException(status_code=409, detail="User already exists")
        raise

    user = db["user"].find_one({"_id": ObjectId(uid)})
    saved = load_profile(user)
    logger.info("Garage owner registered: %s with %d documents", uid, len(saved.documents))
    return ok(
        {
            "token": token_for(user),
            "user": sanitize_user(user),
            "registrationStatus": verification.snapshot(saved),
        },
        "Garage registration submitted successfully",
    )


@app.post("/auth/login")
def login(payload: LoginRequest):
    invalid = HTTPException(status_code=401, detail="Invalid credentials")
    user = db["user"].find_one({"email": payload.email.lower(), "lifecycle": Lifecycle.ACTIVE.value})
    if not user or not user.get("is_active", True):
        raise invalid

    now = utcnow()
    lock_until = as_utc(user.get("lock_until"))
    if lock_until and lock_until > now:
        logger.warning("Login attempt on locked account %s", user["_id"])
        raise invalid

    if not verify_password(payload.password, user.get("password_hash", "")):
        attempts = user.get("login_attempts", 0) + 1
        update: Dict[str, Any] = {"login_attempts": attempts, "updated_at": now}
        if attempts >= settings.max_login_attempts:
            update = {"login_attempts": 0, "lock_until": now + timedelta(minutes=settings.lock_minutes), "updated_at": now}
            logger.warning("Account %s locked after %d failed logins", user["_id"], attempts)
        db["user"].update_one({"_id": user["_id"]}, {"$set": update})
        raise invalid

    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"login_attempts": 0, "lock_until": None, "last_login": now, "updated_at": now}},
    )
    return ok({"token": token_for(user), "token_type": "bearer", "user": sanitize_user(user)}, "Login successful")


@app.post("/auth/forgot-password")
def forgot_password(payload: ForgotPasswordRequest):
    message = "If that email is registered, a password reset link has been sent"
    user = db["user"].find_one({"email": payload.email.lower(), "lifecycle": Lifecycle.ACTIVE.value})
    if not user:
        return ok(message=message)
    token = secrets.token_hex(20)
    now = utcnow()
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "reset_password_token": hash_reset_token(token),
            "reset_password_expire": now + timedelta(minutes=settings.reset_token_minutes),
            "updated_at": now,
        }},
    )
    logger.info("Password reset requested for %s", user["_id"])
    # TODO: deliver the token by email once an outbound mail provider is configured
    if settings.is_development:
        return ok({"resetToken": token}, message)
    return ok(message=message)


@app.post("/auth/reset-password")
def reset_password(payload: ResetPasswordRequest):
    now = utcnow()
    user = db["user"].find_one({"reset_password_token": hash_reset_token(payload.token)})
    expire = as_utc(user.get("reset_password_expire")) if user else None
    if not user or not expire or expire < now:
        raise HTTPException(status_code=400, detail="Invalid or expired token")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "password_hash": hash_password(payload.password),
            "reset_password_token": None,
            "reset_password_expire": None,
            "login_attempts": 0,
            "lock_until": None,
            "updated_at": now,
        }},
    )
    return ok({"token": token_for(user)}, "Password reset successful")


@app.get("/auth/me")
def me(current_user=Depends(get_current_user)):
    return ok(current_user)


@app.put("/auth/updatedetails")
def update_details(payload: UpdateDetailsRequest, current_user=Depends(get_current_user)):
    changes = payload.model_dump(exclude_none=True)
    if "email" in changes:
        changes["email"] = changes["email"].lower()
        clash = db["user"].find_one({"email": changes["email"], "_id": {"$ne": to_obj_id(current_user["id"])}})
        if clash:
            raise HTTPException(status_code=409, detail="Email already in use")
    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update")
    changes["updated_at"] = utcnow()
    db["user"].update_one({"_id": to_obj_id(current_user["id"])}, {"$set": changes})
    user = db["user"].find_one({"_id": to_obj_id(current_user["id"])})
    return ok(sanitize_user(user), "Details updated")


@app.put("/auth/updatepassword")
def update_password(payload: UpdatePasswordRequest, current_user=Depends(get_current_user)):
    user = db["user"].find_one({"_id": to_obj_id(current_user["id"])})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if not verify_password(payload.current_password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Password is incorrect")
    new_hash = hash_password(payload.new_password)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"password_hash": new_hash, "updated_at": utcnow()}})
    return ok({"token": token_for(user)}, "Password updated")


@app.get("/auth/logout")
def logout(current_user=Depends(get_current_user)):
    # tokens are stateless; the client discards its copy
    return ok(message="Logged out")


@app.get("/auth/registration-status")
def registration_status(owner=Depends(require_role(Role.GARAGE_OWNER.value))):
    profile = refresh_expiry(owner["id"])
    status = profile.verification_status
    return ok({
        "verificationStatus": status,
        "paymentStatus": profile.payment_status,
        "message": verification.STATUS_MESSAGES.get(status, ""),
        "nextAction": verification.NEXT_ACTIONS.get(status),
        "progress": verification.registration_progress(profile),
        "verificationProgress": profile.verification_progress.model_dump(),
        "documents": documents.summary(profile),
        "canAccess": verification.can_access(profile),
        "approvalNumber": profile.approval_number,
        "infoRequests": [r.model_dump() for r in profile.info_requests if r.status == "pending"],
        "version": profile.version,
    })


@app.post("/auth/documents", status_code=201)
def upload_document(
    document_type: str = Form(..., alias="documentType"),
    file: UploadFile = File(...),
    owner=Depends(require_role(Role.GARAGE_OWNER.value)),
):
    current = load_profile(find_account(db, owner["id"]))
    if verification.is_terminal(current):
        raise HTTPException(status_code=400, detail=f"Cannot upload documents when status is: {current.verification_status}")
    if document_type not in get_args(DocumentType):
        raise HTTPException(status_code=400, detail=f"Invalid document type: {document_type}")
    document = _store_upload(document_type, file, _read_upload(file))
    try:
        profile = mutate_profile(db, owner["id"], lambda p: documents.attach(p, document))
    except AppError:
        documents.cleanup_blob(blob_store, document)
        raise
    return ok(
        {"document": document.model_dump(), "verificationStatus": profile.verification_status},
        "Document uploaded successfully",
    )


@app.get("/auth/documents")
def list_documents(owner=Depends(require_role(Role.GARAGE_OWNER.value))):
    profile = load_profile(find_account(db, owner["id"]))
    return ok(
        {"documents": [d.model_dump() for d in profile.documents], "summary": documents.summary(profile)}
    )


@app.delete("/auth/documents/{document_id}")
def delete_document(document_id: str, owner=Depends(require_role(Role.GARAGE_OWNER.value))):
    removed: List[Document] = []

    def change(p: GarageProfile) -> GarageProfile:
        updated, doc = documents.remove(p, document_id)
        removed[:] = [doc]
        return updated

    mutate_profile(db, owner["id"], change)
    blob_deleted = documents.cleanup_blob(blob_store, removed[0])
    return ok({"id": document_id, "blobDeleted": blob_deleted}, "Document deleted")


@app.post("/auth/agreements", status_code=201)
def sign_agreement(payload: SignAgreementRequest, request: Request, owner=Depends(require_role(Role.GARAGE_OWNER.value))):
    agreement = Agreement(
        agreement_type=payload.agreement_type,
        signed_by=owner["id"],
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        signature_type=payload.signature_type,
        signature_value=payload.signature_value or payload.full_name,
        full_name=payload.full_name,
        version=payload.version,
    )
    profile = mutate_profile(db, owner["id"], lambda p: documents.sign(p, agreement))
    return ok({"agreement": agreement.model_dump(), "agreementsSigned": profile.verification_progress.agreements_signed},
              "Agreement signed")


# Garage Routes

def _public_garage(doc: Dict) -> Dict:
    g = sanitize(doc)
    g["services"] = [s for s in g.get("services", []) if s.get("is_active", True)]
    return g


def _find_garage(garage_id: str, include_archived: bool = False) -> Dict:
    query: Dict[str, Any] = {"_id": to_obj_id(garage_id)}
    if not include_archived:
        query["lifecycle"] = Lifecycle.ACTIVE.value
    garage = db["garage"].find_one(query)
    if not garage:
        raise HTTPException(status_code=404, detail="Garage not found")
    return garage


def _require_garage_owner(garage: Dict, user: Dict) -> None:
    if garage.get("owner_id") != user["id"] and not is_admin(user):
        raise HTTPException(status_code=403, detail="Not authorized to manage this garage")


@app.get("/garages")
def list_garages(
    city: Optional[str] = None,
    is_verified: Optional[bool] = Query(None, alias="isVerified"),
    min_rating: Optional[float] = Query(None, alias="minRating", ge=0, le=5),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    q = active_filter()
    if city:
        q["address.city"] = {"$regex": f"^{re.escape(city)}$", "$options": "i"}
    if is_verified is not None:
        q["is_verified"] = is_verified
    if min_rating is not None:
        q["average_rating"] = {"$gte": min_rating}
    total = db["garage"].count_documents(q)
    p = paginate(page, limit)
    cursor = db["garage"].find(q).sort([("created_at", DESCENDING)]).skip(p["skip"]).limit(p["limit"])
    garages = [_public_garage(g) for g in cursor]
    return ok(garages, count=len(garages), total=total, page=page, pages=-(-total // limit))


@app.post("/garages", status_code=201)
def create_garage(payload: GarageRequest, current_user=Depends(require_role(Role.GARAGE_OWNER.value, *ADMIN_ROLES))):
    if not is_admin(current_user):
        profile = load_profile(find_account(db, current_user["id"]))
        if profile.verification_status != "approved":
            raise HTTPException(status_code=403, detail="Garage owner account must be approved before listing a garage")
    garage = GarageSchema(
        owner_id=current_user["id"],
        name=payload.name,
        description=payload.description,
        address=payload.address,
        location=payload.location,
        services=[Service(**s.model_dump()) for s in payload.services],
    )
    gid = create_document("garage", garage)
    logger.info("Garage %s created by %s", gid, current_user["id"])
    return ok(_public_garage(db["garage"].find_one({"_id": ObjectId(gid)})), "Garage created successfully")


@app.get("/garages/all/include-deleted")
def list_all_garages(admin=Depends(require_admin)):
    garages = [sanitize(g) for g in db["garage"].find({}).sort([("created_at", DESCENDING)])]
    return ok(garages, count=len(garages))


@app.get("/garages/search/location")
def search_garages_by_location(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius: float = Query(10, gt=0, description="Kilometres"),
):
    q = active_filter(location={
        "$near": {
            "$geometry": {"type": "Point", "coordinates": [lng, lat]},
            "$maxDistance": radius * 1000,
        }
    })
    garages = [_public_garage(g) for g in db["garage"].find(q)]
    return ok(garages, count=len(garages))


@app.get("/garages/{garage_id}")
def get_garage(garage_id: str):
    garage = _public_garage(_find_garage(garage_id))
    owner = db["user"].find_one({"_id": to_obj_id(garage["owner_id"])}) if ObjectId.is_valid(garage["owner_id"]) else None
    garage["owner"] = {"id": str(owner["_id"]), "name": owner["name"], "email": owner["email"]} if owner else None
    return ok(garage)


@app.put("/garages/{garage_id}")
def update_garage(garage_id: str, payload: GarageUpdateRequest, current_user=Depends(get_current_user)):
    garage = _find_garage(garage_id)
    _require_garage_owner(garage, current_user)
    changes = payload.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update")
    changes["updated_at"] = utcnow()
    db["garage"].update_one({"_id": garage["_id"]}, {"$set": changes})
    return ok(_public_garage(db["garage"].find_one({"_id": garage["_id"]})), "Garage updated successfully")


@app.delete("/garages/{garage_id}")
def soft_delete_garage(garage_id: str, current_user=Depends(get_current_user)):
    garage = _find_garage(garage_id)
    _require_garage_owner(garage, current_user)
    active = db["booking"].find_one(active_filter(garage_id=garage_id, status={"$in": list(ACTIVE_BOOKING_STATUSES)}))
    if active:
        raise HTTPException(
            status_code=400,
            detail="Cannot delete garage with active bookings. Please cancel or complete all bookings first.",
        )
    now = utcnow()
    db["garage"].update_one({"_id": garage["_id"]}, {"$set": archive_fields(now)})
    # not atomic with the garage write; rerunning the delete finishes the cascade
    result = db["booking"].update_many(
        active_filter(garage_id=garage_id, status={"$ne": BookingStatus.COMPLETED.value}),
        {"$set": {**archive_fields(now, cascade=f"garage:{garage_id}"), "status": BookingStatus.CANCELLED.value}},
    )
    logger.info("Garage %s archived, %d bookings cancelled", garage_id, result.modified_count)
    return ok({"bookingsCancelled": result.modified_count}, "Garage and associated bookings soft deleted")


@app.put("/garages/{garage_id}/restore")
def restore_garage(garage_id: str, admin=Depends(require_admin)):
    garage = _find_garage(garage_id, include_archived=True)
    if garage.get("lifecycle") != Lifecycle.ARCHIVED.value:
        raise HTTPException(status_code=400, detail="Garage is not deleted")
    now = utcnow()
    db["garage"].update_one({"_id": garage["_id"]}, {"$set": restore_fields(now)})
    result = db["booking"].update_many(
        {"garage_id": garage_id, "lifecycle": Lifecycle.ARCHIVED.value, "archived_with": f"garage:{garage_id}"},
        {"$set": restore_fields(now)},
    )
    return ok({"bookingsRestored": result.modified_count}, "Garage and associated bookings restored")


@app.delete("/garages/{garage_id}/hard")
def hard_delete_garage(garage_id: str, admin=Depends(require_admin)):
    garage = _find_garage(garage_id, include_archived=True)
    if db["booking"].count_documents({"garage_id": garage_id}) > 0:
        raise HTTPException(status_code=400, detail="Cannot permanently delete garage with booking history. Soft delete instead.")
    db["review"].delete_many({"garage_id": garage_id})
    db["garage"].delete_one({"_id": garage["_id"]})
    logger.info("Garage %s permanently deleted by %s", garage_id, admin["id"])
    return ok(message="Garage permanently deleted")


@app.put("/garages/{garage_id}/verify")
def verify_garage(garage_id: str, payload: VerifyGarageRequest, admin=Depends(require_admin)):
    garage = _find_garage(garage_id)
    db["garage"].update_one({"_id": garage["_id"]}, {"$set": {"is_verified": payload.is_verified, "updated_at": utcnow()}})
    state = "verified" if payload.is_verified else "unverified"
    return ok({"id": garage_id, "is_verified": payload.is_verified}, f"Garage {state} successfully")


@app.get("/garages/{garage_id}/bookings")
def garage_bookings(
    garage_id: str,
    status: Optional[BookingStatus] = None,
    current_user=Depends(get_current_user),
):
    garage = _find_garage(garage_id)
    _require_garage_owner(garage, current_user)
    q = active_filter(garage_id=garage_id)
    if status:
        q["status"] = status.value
    bookings = [sanitize(b) for b in db["booking"].find(q).sort([("appointment_date", DESCENDING)])]
    return ok(bookings, count=len(bookings))


@app.post("/garages/{garage_id}/services", status_code=201)
def add_service(garage_id: str, payload: ServiceRequest, current_user=Depends(get_current_user)):
    garage = _find_garage(garage_id)
    _require_garage_owner(garage, current_user)
    service = Service(**payload.model_dump())
    db["garage"].update_one(
        {"_id": garage["_id"]},
        {"$push": {"services": service.model_dump()}, "$set": {"updated_at": utcnow()}},
    )
    return ok(service.model_dump(), "Service added successfully")


@app.put("/garages/{garage_id}/services/{service_id}")
def update_service(garage_id: str, service_id: str, payload: ServiceUpdateRequest, current_user=Depends(get_current_user)):
    garage = _find_garage(garage_id)
    _require_garage_owner(garage, current_user)
    services = garage.get("services", [])
    match = next((s for s in services if s.get("id") == service_id), None)
    if match is None:
        raise HTTPException(status_code=404, detail="Service not found")
    updated = Service(**{**match, **payload.model_dump(exclude_none=True)})
    services = [updated.model_dump() if s.get("id") == service_id else s for s in services]
    db["garage"].update_one({"_id": garage["_id"]}, {"$set": {"services": services, "updated_at": utcnow()}})
    return ok(updated.model_dump(), "Service updated successfully")


@app.delete("/garages/{garage_id}/services/{service_id}")
def delete_service(garage_id: str, service_id: str, current_user=Depends(get_current_user)):
    garage = _find_garage(garage_id)
    _require_garage_owner(garage, current_user)
    if not any(s.get("id") == service_id for s in garage.get("services", [])):
        raise HTTPException(status_code=404, detail="Service not found")
    db["garage"].update_one(
        {"_id": garage["_id"]},
        {"$pull": {"services": {"id": service_id}}, "$set": {"updated_at": utcnow()}},
    )
    return ok(message="Service deleted successfully")


# Booking Routes

BOOKING_TRANSITIONS = {
    "pending": ("confirmed", "cancelled", "rejected"),
    "confirmed": ("in_progress", "cancelled"),
    "in_progress": ("completed",),
    "completed": (),
    "cancelled": (),
    "rejected": (),
}


def _find_booking(booking_id: str, include_archived: bool = False) -> Dict:
    query: Dict[str, Any] = {"_id": to_obj_id(booking_id)}
    if not include_archived:
        query["lifecycle"] = Lifecycle.ACTIVE.value
    booking = db["booking"].find_one(query)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


def _booking_party(booking: Dict, user: Dict) -> str:
    """Which side of the booking ``user`` is on: customer, garage or admin."""
    if is_admin(user):
        return "admin"
    if booking.get("user_id") == user["id"]:
        return "customer"
    garage = db["garage"].find_one({"_id": to_obj_id(booking["garage_id"])})
    if garage and garage.get("owner_id") == user["id"]:
        return "garage"
    raise HTTPException(status_code=403, detail="Not authorized to access this booking")


@app.post("/bookings", status_code=201)
def create_booking(payload: BookingCreateRequest, current_user=Depends(get_current_user)):
    garage = _find_garage(payload.garage_id)
    offered = {s["id"]: s for s in garage.get("services", []) if s.get("is_active", True)}
    missing = [sid for sid in payload.service_ids if sid not in offered]
    if missing:
        raise HTTPException(status_code=400, detail=f"Services not available: {', '.join(missing)}")
    appointment = as_utc(payload.appointment_date)
    if appointment <= utcnow():
        raise HTTPException(status_code=400, detail="Appointment date must be in the future")

    services = [
        BookedService(service_id=sid, name=offered[sid]["name"], price=offered[sid]["price"], duration=offered[sid].get("duration"))
        for sid in payload.service_ids
    ]
    booking = BookingSchema(
        user_id=current_user["id"],
        garage_id=payload.garage_id,
        services=services,
        total_price=sum(s.price for s in services),
        appointment_date=appointment,
        notes=payload.notes,
        payment=BookingPayment(method=payload.payment_method),
    )
    bid = create_document("booking", booking)
    return ok(sanitize(db["booking"].find_one({"_id": ObjectId(bid)})), "Booking created successfully")


@app.get("/bookings/my-bookings")
def my_bookings(current_user=Depends(get_current_user)):
    cursor = db["booking"].find(active_filter(user_id=current_user["id"])).sort([("appointment_date", DESCENDING)])
    bookings = [sanitize(b) for b in cursor]
    return ok(bookings, count=len(bookings))


@app.get("/bookings/all/include-deleted")
def all_bookings(admin=Depends(require_admin)):
    bookings = [sanitize(b) for b in db["booking"].find({}).sort([("created_at", DESCENDING)])]
    return ok(bookings, count=len(bookings))


@app.get("/bookings/{booking_id}")
def get_booking(booking_id: str, current_user=Depends(get_current_user)):
    booking = _find_booking(booking_id)
    _booking_party(booking, current_user)
    return ok(sanitize(booking))


@app.put("/bookings/{booking_id}")
def update_booking(booking_id: str, payload: BookingUpdateRequest, current_user=Depends(get_current_user)):
    booking = _find_booking(booking_id)
    party = _booking_party(booking, current_user)
    now = utcnow()
    changes: Dict[str, Any] = {}

    if payload.status is not None and payload.status.value != booking["status"]:
        target = payload.status.value
        if party == "customer" and target != BookingStatus.CANCELLED.value:
            raise HTTPException(status_code=403, detail="Customers may only cancel a booking")
        if target not in BOOKING_TRANSITIONS[booking["status"]]:
            raise HTTPException(status_code=400, detail=f"Cannot change booking from {booking['status']} to {target}")
        changes["status"] = target
        if target == BookingStatus.CANCELLED.value:
            changes["cancelled_at"] = now
        elif target == BookingStatus.COMPLETED.value:
            changes["completed_at"] = now

    if payload.appointment_date is not None:
        if booking["status"] != BookingStatus.PENDING.value:
            raise HTTPException(status_code=400, detail="Only pending bookings can be rescheduled")
        appointment = as_utc(payload.appointment_date)
        if appointment <= now:
            raise HTTPException(status_code=400, detail="Appointment date must be in the future")
        changes["appointment_date"] = appointment

    if payload.notes is not None:
        changes["notes"] = payload.notes

    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update")
    changes["updated_at"] = now
    db["booking"].update_one({"_id": booking["_id"]}, {"$set": changes})
    return ok(sanitize(db["booking"].find_one({"_id": booking["_id"]})), "Booking updated")


@app.delete("/bookings/{booking_id}")
def soft_delete_booking(booking_id: str, current_user=Depends(get_current_user)):
    booking = _find_booking(booking_id)
    if _booking_party(booking, current_user) == "garage":
        raise HTTPException(status_code=403, detail="Not authorized to delete this booking")
    db["booking"].update_one({"_id": booking["_id"]}, {"$set": archive_fields(utcnow())})
    return ok(message="Booking soft deleted")


@app.put("/bookings/{booking_id}/restore")
def restore_booking(booking_id: str, current_user=Depends(get_current_user)):
    booking = _find_booking(booking_id, include_archived=True)
    if _booking_party(booking, current_user) == "garage":
        raise HTTPException(status_code=403, detail="Not authorized to restore this booking")
    if booking.get("lifecycle") != Lifecycle.ARCHIVED.value:
        raise HTTPException(status_code=400, detail="Booking is not deleted")
    if not db["garage"].find_one(active_filter(_id=to_obj_id(booking["garage_id"]))):
        raise HTTPException(status_code=400, detail="Cannot restore a booking whose garage is deleted")
    db["booking"].update_one({"_id": booking["_id"]}, {"$set": restore_fields(utcnow())})
    return ok(message="Booking restored")


@app.delete("/bookings/{booking_id}/hard")
def hard_delete_booking(booking_id: str, admin=Depends(require_admin)):
    booking = _find_booking(booking_id, include_archived=True)
    db["booking"].delete_one({"_id": booking["_id"]})
    return ok(message="Booking permanently deleted")


# Review Routes

def _find_review(review_id: str) -> Dict:
    review = db["review"].find_one({"_id": to_obj_id(review_id), "lifecycle": Lifecycle.ACTIVE.value})
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    return review


@app.post("/reviews", status_code=201)
def create_review(payload: ReviewCreateRequest, current_user=Depends(get_current_user)):
    _find_garage(payload.garage_id)
    if db["review"].find_one(active_filter(user_id=current_user["id"], garage_id=payload.garage_id)):
        raise HTTPException(status_code=409, detail="You have already reviewed this garage")
    if payload.booking_id:
        booking = db["booking"].find_one({
            "_id": to_obj_id(payload.booking_id),
            "user_id": current_user["id"],
            "garage_id": payload.garage_id,
            "status": BookingStatus.COMPLETED.value,
        })
        if not booking:
            raise HTTPException(status_code=400, detail="Invalid booking or booking not completed")

    review = ReviewSchema(
        user_id=current_user["id"],
        garage_id=payload.garage_id,
        booking_id=payload.booking_id,
        rating=payload.rating,
        title=payload.title,
        comment=payload.comment,
        is_verified=bool(payload.booking_id),
    )
    try:
        rid = create_document("review", review)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="You have already reviewed this garage")
    average, total = recompute_garage_rating(db, payload.garage_id)
    return ok(
        sanitize(db["review"].find_one({"_id": ObjectId(rid)})),
        "Review created successfully",
        garageRating={"averageRating": average, "totalReviews": total},
    )


@app.get("/reviews/garage/{garage_id}")
def garage_reviews(garage_id: str, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100)):
    q = active_filter(garage_id=garage_id)
    total = db["review"].count_documents(q)
    p = paginate(page, limit)
    reviews = [sanitize(r) for r in db["review"].find(q).sort([("created_at", DESCENDING)]).skip(p["skip"]).limit(p["limit"])]
    user_ids = [to_obj_id(r["user_id"]) for r in reviews if ObjectId.is_valid(r["user_id"])]
    user_map = {str(u["_id"]): u["name"] for u in db["user"].find({"_id": {"$in": user_ids}})} if user_ids else {}
    for r in reviews:
        r["user_name"] = user_map.get(r["user_id"], "")
    return ok(reviews, count=len(reviews), total=total, page=page, pages=-(-total // limit))


@app.put("/reviews/{review_id}")
def update_review(review_id: str, payload: ReviewUpdateRequest, current_user=Depends(get_current_user)):
    review = _find_review(review_id)
    if review["user_id"] != current_user["id"]:
        raise HTTPException(status_code=403, detail="Not authorized")
    changes = payload.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update")
    changes["updated_at"] = utcnow()
    db["review"].update_one({"_id": review["_id"]}, {"$set": changes})
    if "rating" in changes and changes["rating"] != review["rating"]:
        recompute_garage_rating(db, review["garage_id"])
    return ok(sanitize(db["review"].find_one({"_id": review["_id"]})), "Review updated successfully")


@app.delete("/reviews/{review_id}")
def delete_review(review_id: str, current_user=Depends(get_current_user)):
    review = _find_review(review_id)
    if review["user_id"] != current_user["id"] and not is_admin(current_user):
        raise HTTPException(status_code=403, detail="Not authorized")
    db["review"].update_one({"_id": review["_id"]}, {"$set": archive_fields(utcnow())})
    recompute_garage_rating(db, review["garage_id"])
    return ok(message="Review deleted successfully")


# Payment Routes

@app.get("/payments/plans")
def payment_plans():
    plans = [
        {**plan.model_dump(), "currency": settings.currency, "duration": f"{plan.duration_days} days"}
        for plan in gateway.plans.all()
    ]
    return ok(plans)


@app.post("/payments/initialize")
def initialize_payment(payload: InitializePaymentRequest, owner=Depends(require_role(Role.GARAGE_OWNER.value))):
    account = find_account(db, owner["id"])
    session = gateway.initiate(db, account, payload.plan)
    return ok(
        {"checkout_url": session.checkout_url, "tx_ref": session.tx_ref, "amount": session.amount, "plan": session.plan},
        "Payment initialized successfully",
    )


@app.get("/payments/verify/{tx_ref}")
def verify_payment(tx_ref: str, current_user=Depends(get_current_user)):
    outcome = gateway.verify(db, tx_ref, current_user)
    return ok({**outcome.as_dict(), "verified": outcome.payment_status in verification.SETTLED})


@app.post("/payments/callback")
async def payment_webhook(request: Request):
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body) if raw_body else None
    except ValueError:
        payload = raw_body.decode("utf-8", errors="replace")
    outcome = await run_in_threadpool(
        gateway.reconcile, db, payload, request.headers.get("x-chapa-signature"), raw_body
    )
    return ok(outcome.as_dict(), outcome.message)


@app.get("/payments/callback")
def payment_redirect_callback(request: Request):
    outcome = gateway.reconcile(db, dict(request.query_params), poll=True)
    return ok(outcome.as_dict(), outcome.message)


@app.get("/payments/status")
def payment_status(owner=Depends(require_role(Role.GARAGE_OWNER.value))):
    profile = refresh_expiry(owner["id"])
    return ok(verification.snapshot(profile))


# Admin Routes

def decide(user_id: str, expected_version: Optional[int], transition) -> GarageProfile:
    """Apply an admin transition, refusing if the profile moved past ``expected_version``."""
    account = find_account(db, user_id)
    profile = load_profile(account)
    if expected_version is not None and expected_version != profile.version:
        raise StaleProfile()
    current = verification.expire_payment(profile, utcnow())
    return save_profile(db, account["_id"], transition(current), profile.version)


def _owner_view(user: Dict) -> Dict:
    u = sanitize_user(user)
    if user.get("garage_info"):
        profile = load_profile(user)
        u["progress"] = verification.registration_progress(profile)
        u["statusMessage"] = verification.STATUS_MESSAGES.get(profile.verification_status, "")
    return u


@app.get("/admin/garage-owners")
def admin_list_garage_owners(
    status: Optional[str] = None,
    payment_status: Optional[str] = Query(None, alias="paymentStatus"),
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin=Depends(require_admin),
):
    q = active_filter(role=Role.GARAGE_OWNER.value)
    if status:
        q["garage_info.verification_status"] = status
    if payment_status:
        q["garage_info.payment_status"] = payment_status
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        q["$or"] = [{"name": pattern}, {"email": pattern}, {"garage_info.business_name": pattern}]
    total = db["user"].count_documents(q)
    p = paginate(page, limit)
    owners = [_owner_view(u) for u in db["user"].find(q).sort([("created_at", DESCENDING)]).skip(p["skip"]).limit(p["limit"])]
    return ok(owners, count=len(owners), total=total, page=page, pages=-(-total // limit))


@app.get("/admin/garage-owners/{user_id}")
def admin_get_garage_owner(user_id: str, admin=Depends(require_admin)):
    user = find_account(db, to_obj_id(user_id))
    view = _owner_view(user)
    view["garages"] = [sanitize(g) for g in db["garage"].find({"owner_id": user_id})]
    return ok(view)


@app.put("/admin/garage-owners/{user_id}/review")
def admin_start_review(user_id: str, payload: AdminDecision, admin=Depends(require_admin)):
    profile = decide(user_id, payload.expected_version, lambda p: verification.start_review(p, admin["id"], utcnow()))
    return ok(profile.model_dump(), "Application moved to review")


@app.put("/admin/garage-owners/{user_id}/approve")
def admin_approve(user_id: str, payload: AdminDecision, admin=Depends(require_admin)):
    profile = decide(user_id, payload.expected_version, lambda p: verification.approve(p, admin["id"], payload.comments, utcnow()))
    logger.info("Garage owner %s approved by %s (%s)", user_id, admin["id"], profile.approval_number)
    return ok(profile.model_dump(), "Garage owner approved")


@app.put("/admin/garage-owners/{user_id}/reject")
def admin_reject(user_id: str, payload: RejectRequest, admin=Depends(require_admin)):
    profile = decide(
        user_id,
        payload.expected_version,
        lambda p: verification.reject(p, admin["id"], payload.reason, payload.details, utcnow()),
    )
    return ok(profile.model_dump(), "Garage owner rejected")


@app.put("/admin/garage-owners/{user_id}/request-info")
def admin_request_info(user_id: str, payload: InfoRequestBody, admin=Depends(require_admin)):
    profile = decide(
        user_id,
        payload.expected_version,
        lambda p: verification.request_more_info(p, admin["id"], payload.items, payload.description, utcnow()),
    )
    return ok(profile.model_dump(), "Additional information requested")


@app.put("/admin/garage-owners/{user_id}/suspend")
def admin_suspend(user_id: str, payload: SuspendRequest, admin=Depends(require_admin)):
    profile = decide(
        user_id,
        payload.expected_version,
        lambda p: verification.suspend(p, admin["id"], payload.reason, payload.review_in_days, utcnow()),
    )
    return ok(profile.model_dump(), "Garage owner suspended")


@app.put("/admin/garage-owners/{user_id}/ban")
def admin_ban(user_id: str, payload: BanRequest, admin=Depends(require_admin)):
    profile = decide(user_id, payload.expected_version, lambda p: verification.ban(p, admin["id"], payload.reason, utcnow()))
    return ok(profile.model_dump(), "Garage owner banned")


@app.put("/admin/garage-owners/{user_id}/waive-payment")
def admin_waive_payment(user_id: str, payload: WaivePaymentRequest, admin=Depends(require_admin)):
    profile = decide(
        user_id,
        payload.expected_version,
        lambda p: verification.waive_payment(p, admin["id"], payload.reason, utcnow()),
    )
    return ok(profile.model_dump(), "Payment waived")


@app.put("/admin/garage-owners/{user_id}/documents/{document_id}/verify")
def admin_verify_document(user_id: str, document_id: str, payload: DocumentDecisionRequest, admin=Depends(require_admin)):
    profile = decide(
        user_id,
        payload.expected_version,
        lambda p: documents.verify(p, document_id, admin["id"], payload.notes, utcnow()),
    )
    return ok({"documents": [d.model_dump() for d in profile.documents], "summary": documents.summary(profile)}, "Document verified")


@app.put("/admin/garage-owners/{user_id}/documents/{document_id}/reject")
def admin_reject_document(user_id: str, document_id: str, payload: DocumentDecisionRequest, admin=Depends(require_admin)):
    if not payload.reason:
        raise HTTPException(status_code=400, detail="A rejection reason is required")
    profile = decide(
        user_id,
        payload.expected_version,
        lambda p: documents.reject_document(p, document_id, admin["id"], payload.reason, utcnow()),
    )
    return ok({"documents": [d.model_dump() for d in profile.documents], "summary": documents.summary(profile)}, "Document rejected")


@app.get("/admin/stats")
def admin_stats(admin=Depends(require_admin)):
    owners = active_filter(role=Role.GARAGE_OWNER.value)
    by_status = {
        row["_id"]: row["count"]
        for row in db["user"].aggregate([
            {"$match": owners},
            {"$group": {"_id": "$garage_info.verification_status", "count": {"$sum": 1}}},
        ])
    }
    by_payment = {
        row["_id"]: row["count"]
        for row in db["user"].aggregate([
            {"$match": owners},
            {"$group": {"_id": "$garage_info.payment_status", "count": {"$sum": 1}}},
        ])
    }
    revenue = list(db["user"].aggregate([
        {"$match": {**owners, "garage_info.payment_status": "paid"}},
        {"$group": {"_id": None, "total": {"$sum": "$garage_info.payment_amount"}}},
    ]))
    return ok({
        "garageOwners": {
            "total": db["user"].count_documents(owners),
            "byVerificationStatus": by_status,
            "byPaymentStatus": by_payment,
        },
        "customers": db["user"].count_documents(active_filter(role=Role.CUSTOMER.value)),
        "garages": db["garage"].count_documents(active_filter()),
        "bookings": db["booking"].count_documents(active_filter()),
        "reviews": db["review"].count_documents(active_filter()),
        "revenue": {"amount": revenue[0]["total"] if revenue else 0, "currency": settings.currency},
    })


@app.delete("/admin/users/{user_id}")
def admin_archive_user(user_id: str, admin=Depends(require_admin)):
    if user_id == admin["id"]:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    user = find_account(db, to_obj_id(user_id))
    db["user"].update_one({"_id": user["_id"]}, {"$set": archive_fields(utcnow())})
    logger.info("Account %s archived by %s", user_id, admin["id"])
    return ok(message="User deleted")


@app.put("/admin/users/{user_id}/restore")
def admin_restore_user(user_id: str, admin=Depends(require_admin)):
    user = find_account(db, to_obj_id(user_id), include_archived=True)
    if user.get("lifecycle") != Lifecycle.ARCHIVED.value:
        raise HTTPException(status_code=400, detail="User is not deleted")
    db["user"].update_one({"_id": user["_id"]}, {"$set": restore_fields(utcnow())})
    return ok(message="User restored")


# Utility endpoints

@app.get("/")
def root():
    return {"message": "Garage Marketplace API running"}


@app.get("/test")
def test_database():
    try:
        collections = db.list_collection_names() if db is not None else []
        return {"backend": "ok", "database": "ok" if db is not None else "missing", "collections": collections}
    except Exception as e:
        return {"backend": "ok", "database": f"error: {e}"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
