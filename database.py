"""
MongoDB access for the garage marketplace.

``db`` is a module-level handle built from ``DATABASE_URL``/``DATABASE_NAME``, read
after ``.env`` has been loaded.
It stays ``None`` when the variables are not set so the API can still boot and
report the problem from ``/test``.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, GEOSPHERE, MongoClient

from config import load_environment
from schemas import Lifecycle

logger = logging.getLogger(__name__)

load_environment()
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL, tz_aware=True)
    db = _client[DATABASE_NAME]
else:
    logger.warning("DATABASE_URL or DATABASE_NAME not set, database unavailable")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored datetimes may come back naive; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id."""
    if db is None:
        raise RuntimeError("Database not available")
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


# Lifecycle (soft delete) helpers

def active_filter(**extra: Any) -> Dict[str, Any]:
    return {"lifecycle": Lifecycle.ACTIVE.value, **extra}


def archive_fields(now: datetime, cascade: Optional[str] = None) -> Dict[str, Any]:
    """``cascade`` names the parent archive that swept this document along."""
    return {"lifecycle": Lifecycle.ARCHIVED.value, "archived_at": now, "archived_with": cascade, "updated_at": now}


def restore_fields(now: datetime) -> Dict[str, Any]:
    return {"lifecycle": Lifecycle.ACTIVE.value, "archived_at": None, "archived_with": None, "updated_at": now}


def ensure_indexes(database) -> None:
    """Create the indexes the invariants rely on. Safe to run repeatedly."""
    user = database["user"]
    user.create_index([("email", ASCENDING)], unique=True)
    user.create_index(
        [("garage_info.payment_tx_ref", ASCENDING)],
        unique=True,
        partialFilterExpression={"garage_info.payment_tx_ref": {"$type": "string"}},
        name="uniq_payment_tx_ref",
    )
    user.create_index(
        [("garage_info.approval_number", ASCENDING)],
        unique=True,
        partialFilterExpression={"garage_info.approval_number": {"$type": "string"}},
        name="uniq_approval_number",
    )
    user.create_index(
        [("garage_info.business_reg_number", ASCENDING)],
        unique=True,
        partialFilterExpression={"garage_info.business_reg_number": {"$type": "string"}},
        name="uniq_business_reg_number",
    )
    user.create_index([("role", ASCENDING), ("garage_info.verification_status", ASCENDING)])

    garage = database["garage"]
    garage.create_index([("location", GEOSPHERE)])
    garage.create_index([("owner_id", ASCENDING), ("lifecycle", ASCENDING)])

    booking = database["booking"]
    booking.create_index([("garage_id", ASCENDING), ("status", ASCENDING)])
    booking.create_index([("user_id", ASCENDING), ("appointment_date", DESCENDING)])

    review = database["review"]
    review.create_index(
        [("user_id", ASCENDING), ("garage_id", ASCENDING)],
        unique=True,
        partialFilterExpression={"lifecycle": Lifecycle.ACTIVE.value},
        name="uniq_active_review_per_user_garage",
    )
    review.create_index([("garage_id", ASCENDING), ("created_at", DESCENDING)])
    logger.info("Database indexes ensured")
