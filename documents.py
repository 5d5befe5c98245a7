"""Compliance documents and signed agreements on a garage profile.

Like the verification transitions, these functions return an updated copy of
the profile and leave persistence to the caller. Attaching a document is the
only place that nudges ``verification_status``, and only out of
``registration_started``.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from errors import InvalidTransition, NotFound
from schemas import Agreement, Document, DocumentStatus, GarageProfile
from storage import BlobStore
from verification import is_terminal, on_documents_attached

logger = logging.getLogger(__name__)

REQUIRED_DOCUMENTS = ("business_license",)

# multipart field name -> document type
UPLOAD_FIELDS = {
    "businessLicense": "business_license",
    "certificateOfIncorporation": "certificate_of_incorporation",
    "taxClearance": "tax_clearance",
    "insuranceCertificate": "insurance_certificate",
    "identityProof": "identity_proof",
    "addressProof": "address_proof",
    "otherDocuments": "other",
}


def _find(profile: GarageProfile, document_id: str) -> Document:
    for doc in profile.documents:
        if doc.id == document_id:
            return doc
    raise NotFound("Document not found")


def required_documents_verified(profile: GarageProfile) -> bool:
    verified = {d.document_type for d in profile.documents if d.status == DocumentStatus.VERIFIED.value}
    return all(t in verified for t in REQUIRED_DOCUMENTS)


def attach(profile: GarageProfile, document: Document) -> GarageProfile:
    if is_terminal(profile):
        raise InvalidTransition(f"Cannot upload documents when status is: {profile.verification_status}")
    updated = on_documents_attached(profile)
    updated.documents.append(document.model_copy(update={"status": DocumentStatus.PENDING.value}))
    return updated


def attach_many(profile: GarageProfile, documents: List[Document]) -> GarageProfile:
    for document in documents:
        profile = attach(profile, document)
    return profile


def verify(profile: GarageProfile, document_id: str, verifier: str, notes: Optional[str], now: datetime) -> GarageProfile:
    _find(profile, document_id)
    updated = profile.model_copy(deep=True)
    doc = _find(updated, document_id)
    doc.status = DocumentStatus.VERIFIED
    doc.verified_at = now
    doc.verified_by = verifier
    doc.verification_notes = notes
    doc.rejection_reason = None
    updated.verification_progress.documents_verified = required_documents_verified(updated)
    return updated


def reject_document(profile: GarageProfile, document_id: str, verifier: str, reason: str, now: datetime) -> GarageProfile:
    _find(profile, document_id)
    updated = profile.model_copy(deep=True)
    doc = _find(updated, document_id)
    doc.status = DocumentStatus.REJECTED
    doc.verified_at = now
    doc.verified_by = verifier
    doc.rejection_reason = reason
    updated.verification_progress.documents_verified = required_documents_verified(updated)
    return updated


def remove(profile: GarageProfile, document_id: str) -> Tuple[GarageProfile, Document]:
    removed = _find(profile, document_id)
    updated = profile.model_copy(deep=True)
    updated.documents = [d for d in updated.documents if d.id != document_id]
    updated.verification_progress.documents_submitted = bool(updated.documents)
    updated.verification_progress.documents_verified = required_documents_verified(updated)
    return updated, removed


def cleanup_blob(blob_store: BlobStore, document: Document) -> bool:
    """Delete the stored file behind ``document``. Failures are logged, not raised."""
    if not document.public_id:
        return False
    try:
        blob_store.delete(document.public_id)
    except Exception:
        logger.exception("Failed to delete blob %s for document %s", document.public_id, document.id)
        return False
    return True


def sign(profile: GarageProfile, agreement: Agreement) -> GarageProfile:
    updated = profile.model_copy(deep=True)
    updated.agreements.append(agreement)
    updated.verification_progress.agreements_signed = True
    return updated


def summary(profile: GarageProfile) -> Dict[str, Any]:
    counts = {status.value: 0 for status in DocumentStatus}
    for doc in profile.documents:
        counts[doc.status] += 1
    return {
        "total": len(profile.documents),
        "byStatus": counts,
        "requiredVerified": required_documents_verified(profile),
        "agreements": len(profile.agreements),
    }
