"""Garage owner verification state machine.

Every change to ``payment_status`` or ``verification_status`` goes through one
of the transition functions below. Each takes the current
:class:`~schemas.GarageProfile` and returns an updated copy, or raises
:class:`~errors.InvalidTransition` when its precondition does not hold. The
functions never touch the database; persistence is ``accounts.save_profile``.
"""

import secrets
import string
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from errors import InvalidTransition
from schemas import AdminReview, GarageProfile, InfoRequest, PaymentStatus, VerificationStatus

PAYMENT_ELIGIBLE = (
    PaymentStatus.PENDING.value,
    PaymentStatus.FAILED.value,
    PaymentStatus.EXPIRED.value,
)
CONFIRMABLE = PAYMENT_ELIGIBLE + (PaymentStatus.PROCESSING.value,)
SETTLED = (PaymentStatus.PAID.value, PaymentStatus.NOT_REQUIRED.value)

PAYMENT_INITIATION_STATES = (
    VerificationStatus.REGISTRATION_STARTED.value,
    VerificationStatus.DOCUMENTS_UPLOADED.value,
    VerificationStatus.PENDING_PAYMENT.value,
    VerificationStatus.MORE_INFO_NEEDED.value,
)
APPROVABLE_STATES = (
    VerificationStatus.PAYMENT_COMPLETED.value,
    VerificationStatus.UNDER_REVIEW.value,
)
REVIEWABLE_STATES = (
    VerificationStatus.PAYMENT_COMPLETED.value,
    VerificationStatus.MORE_INFO_NEEDED.value,
    VerificationStatus.SUSPENDED.value,
)
TERMINAL_STATES = (
    VerificationStatus.REJECTED.value,
    VerificationStatus.BANNED.value,
)

STATUS_MESSAGES = {
    "registration_started": "Please complete your business details",
    "documents_uploaded": "Documents uploaded. Please complete payment",
    "pending_payment": "Waiting for payment confirmation",
    "payment_completed": "Payment received! Your application is under review",
    "under_review": "Admin is reviewing your application",
    "more_info_needed": "Additional information required",
    "approved": "Congratulations! Your garage is now active",
    "rejected": "Application rejected. Please contact support",
    "suspended": "Account suspended",
    "banned": "Account banned",
}

NEXT_ACTIONS = {
    "registration_started": "/register/documents",
    "documents_uploaded": "/payment",
    "pending_payment": "/payment/status",
    "payment_completed": "/dashboard",
    "under_review": "/dashboard",
    "more_info_needed": "/register/additional-info",
    "approved": "/dashboard",
    "rejected": "/contact-support",
    "suspended": "/contact-support",
    "banned": "/contact-support",
}


def is_terminal(profile: GarageProfile) -> bool:
    return profile.verification_status in TERMINAL_STATES


def payment_settled(profile: GarageProfile) -> bool:
    return profile.payment_status in SETTLED


def generate_approval_number() -> str:
    timestamp = _base36(int(time.time() * 1000))
    alphabet = string.ascii_uppercase + string.digits
    random = "".join(secrets.choice(alphabet) for _ in range(6))
    return f"GAR-{timestamp}-{random}"


def _base36(n: int) -> str:
    digits = string.digits + string.ascii_uppercase
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = digits[r] + out
    return out or "0"


def _require_not_terminal(profile: GarageProfile, action: str) -> None:
    if is_terminal(profile):
        raise InvalidTransition(f"Cannot {action}: application is {profile.verification_status}")


def _record(profile: GarageProfile, decision: str, actor: str, now: datetime, comments: Optional[str] = None,
            next_review_date: Optional[datetime] = None) -> None:
    profile.admin_reviews.append(
        AdminReview(
            reviewed_by=actor,
            reviewed_at=now,
            decision=decision,
            comments=comments,
            next_review_date=next_review_date,
        )
    )


# Self-service and payment driven transitions

def on_documents_attached(profile: GarageProfile) -> GarageProfile:
    """The only transition the document tracker may trigger."""
    updated = profile.model_copy(deep=True)
    updated.verification_progress.documents_submitted = True
    if updated.verification_status == VerificationStatus.REGISTRATION_STARTED.value:
        updated.verification_status = VerificationStatus.DOCUMENTS_UPLOADED
    return updated


def check_payment_eligibility(profile: GarageProfile) -> None:
    if profile.payment_status not in PAYMENT_ELIGIBLE:
        messages = {
            "paid": "Payment already completed",
            "processing": "Payment is being processed",
            "refunded": "Payment was refunded",
            "cancelled": "Payment was cancelled",
            "not_required": "Payment is not required for your account",
        }
        raise InvalidTransition(messages.get(profile.payment_status, "Payment not allowed at this stage"))
    # a suspended owner may still renew an expired subscription
    renewal = profile.payment_status == PaymentStatus.EXPIRED.value and not is_terminal(profile)
    if not renewal and profile.verification_status not in PAYMENT_INITIATION_STATES:
        raise InvalidTransition(f"Cannot process payment when status is: {profile.verification_status}")


def payment_allowed(profile: GarageProfile) -> bool:
    try:
        check_payment_eligibility(profile)
    except InvalidTransition:
        return False
    return True


def start_payment(profile: GarageProfile, plan: str, amount: int, tx_ref: str, now: datetime) -> GarageProfile:
    check_payment_eligibility(profile)
    updated = profile.model_copy(deep=True)
    updated.payment_status = PaymentStatus.PROCESSING
    updated.payment_tx_ref = tx_ref
    updated.payment_plan = plan
    updated.payment_amount = amount
    if updated.verification_status in (
        VerificationStatus.REGISTRATION_STARTED.value,
        VerificationStatus.DOCUMENTS_UPLOADED.value,
    ):
        updated.verification_status = VerificationStatus.PENDING_PAYMENT
    return updated


def confirm_payment(profile: GarageProfile, duration_days: int, now: datetime) -> GarageProfile:
    """Apply a confirmed provider success.

    Returns ``profile`` itself (not a copy) when the payment is already
    settled, so repeated deliveries are no-ops.
    """
    if payment_settled(profile):
        return profile
    if profile.payment_status not in CONFIRMABLE:
        raise InvalidTransition(f"Cannot confirm payment in status: {profile.payment_status}")

    updated = profile.model_copy(deep=True)
    updated.payment_status = PaymentStatus.PAID
    updated.payment_date = now
    updated.payment_expiry = now + timedelta(days=duration_days)
    updated.verification_progress.payment_completed = True
    if updated.verification_status in PAYMENT_INITIATION_STATES:
        updated.verification_status = VerificationStatus.PAYMENT_COMPLETED
    return updated


def fail_payment(profile: GarageProfile, now: datetime) -> GarageProfile:
    """Record a provider failure. A failure never downgrades a settled payment."""
    if payment_settled(profile) or profile.payment_status == PaymentStatus.FAILED.value:
        return profile
    if profile.payment_status not in CONFIRMABLE:
        raise InvalidTransition(f"Cannot fail payment in status: {profile.payment_status}")

    updated = profile.model_copy(deep=True)
    updated.payment_status = PaymentStatus.FAILED
    if updated.verification_status in PAYMENT_INITIATION_STATES:
        updated.verification_status = VerificationStatus.PENDING_PAYMENT
    return updated


def expire_payment(profile: GarageProfile, now: datetime) -> GarageProfile:
    """Mark a paid subscription whose expiry has passed as expired.

    An owner who is approved or waiting on an admin falls back to
    ``pending_payment`` and loses the active flag, so an approved account
    always holds a settled payment. Approval is granted again after renewal.
    """
    expiry = profile.payment_expiry
    if profile.payment_status != PaymentStatus.PAID.value or expiry is None:
        return profile
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=now.tzinfo)
    if expiry > now:
        return profile
    updated = profile.model_copy(deep=True)
    updated.payment_status = PaymentStatus.EXPIRED
    updated.verification_progress.payment_completed = False
    if updated.verification_status in APPROVABLE_STATES + (VerificationStatus.APPROVED.value,):
        updated.verification_status = VerificationStatus.PENDING_PAYMENT
        updated.is_active = False
    return updated


# Admin decisions

def waive_payment(profile: GarageProfile, actor: str, reason: Optional[str], now: datetime) -> GarageProfile:
    _require_not_terminal(profile, "waive payment")
    if payment_settled(profile):
        raise InvalidTransition(f"Payment already {profile.payment_status}")
    updated = profile.model_copy(deep=True)
    updated.payment_status = PaymentStatus.NOT_REQUIRED
    updated.verification_progress.payment_completed = True
    if updated.verification_status in PAYMENT_INITIATION_STATES:
        updated.verification_status = VerificationStatus.PAYMENT_COMPLETED
    _record(updated, "payment_waived", actor, now, reason)
    return updated


def start_review(profile: GarageProfile, actor: str, now: datetime) -> GarageProfile:
    if profile.verification_status not in REVIEWABLE_STATES:
        raise InvalidTransition(f"Cannot start review when status is: {profile.verification_status}")
    if not payment_settled(profile):
        raise InvalidTransition("Cannot start review: Payment not completed")
    updated = profile.model_copy(deep=True)
    updated.verification_status = VerificationStatus.UNDER_REVIEW
    _record(updated, "under_review", actor, now)
    return updated


def approve(profile: GarageProfile, actor: str, comments: Optional[str], now: datetime) -> GarageProfile:
    if not payment_settled(profile):
        raise InvalidTransition("Cannot approve: Payment not completed")
    if profile.verification_status not in APPROVABLE_STATES:
        raise InvalidTransition(f"Cannot approve when status is: {profile.verification_status}")

    updated = profile.model_copy(deep=True)
    updated.verification_status = VerificationStatus.APPROVED
    # approval numbers are never reissued
    if not updated.approval_number:
        updated.approval_number = generate_approval_number()
    updated.approved_at = now
    updated.approved_by = actor
    updated.is_active = True
    updated.next_review_date = None
    _record(updated, "approved", actor, now, comments)
    return updated


def reject(profile: GarageProfile, actor: str, reason: str, details: Optional[List[Dict[str, str]]], now: datetime) -> GarageProfile:
    _require_not_terminal(profile, "reject")
    updated = profile.model_copy(deep=True)
    updated.verification_status = VerificationStatus.REJECTED
    updated.rejected_at = now
    updated.rejected_by = actor
    updated.rejection_reason = reason
    updated.rejection_details = details or []
    _record(updated, "rejected", actor, now, reason)
    return updated


def request_more_info(profile: GarageProfile, actor: str, items: List[str], description: str, now: datetime) -> GarageProfile:
    _require_not_terminal(profile, "request information")
    updated = profile.model_copy(deep=True)
    updated.verification_status = VerificationStatus.MORE_INFO_NEEDED
    updated.info_requests.append(
        InfoRequest(requested_by=actor, requested_at=now, requested_items=items, description=description)
    )
    _record(updated, "needs_info", actor, now, description)
    return updated


def suspend(profile: GarageProfile, actor: str, reason: str, review_in_days: Optional[int], now: datetime) -> GarageProfile:
    _require_not_terminal(profile, "suspend")
    next_review = now + timedelta(days=review_in_days) if review_in_days else None
    updated = profile.model_copy(deep=True)
    updated.verification_status = VerificationStatus.SUSPENDED
    updated.is_active = False
    updated.next_review_date = next_review
    _record(updated, "suspended", actor, now, reason, next_review)
    return updated


def ban(profile: GarageProfile, actor: str, reason: str, now: datetime) -> GarageProfile:
    _require_not_terminal(profile, "ban")
    updated = profile.model_copy(deep=True)
    updated.verification_status = VerificationStatus.BANNED
    updated.is_active = False
    _record(updated, "banned", actor, now, reason)
    return updated


# Read models

def can_access(profile: GarageProfile) -> Dict[str, bool]:
    status = profile.verification_status
    return {
        "dashboard": status in ("approved", "under_review", "payment_completed"),
        "payment": payment_allowed(profile),
        "edit": status in ("registration_started", "more_info_needed"),
        "documents": not is_terminal(profile),
    }


def registration_progress(profile: GarageProfile) -> int:
    steps = [
        True,
        bool(profile.business_name and profile.business_reg_number),
        len(profile.documents) >= 1,
        payment_settled(profile),
        profile.verification_status == VerificationStatus.APPROVED.value,
    ]
    return round(sum(steps) / len(steps) * 100)


def snapshot(profile: GarageProfile) -> Dict[str, Any]:
    return {
        "paymentStatus": profile.payment_status,
        "verificationStatus": profile.verification_status,
        "paymentPlan": profile.payment_plan,
        "paymentAmount": profile.payment_amount,
        "paymentDate": profile.payment_date,
        "paymentExpiry": profile.payment_expiry,
        "paymentTxRef": profile.payment_tx_ref,
        "canAccess": can_access(profile),
        "version": profile.version,
    }
