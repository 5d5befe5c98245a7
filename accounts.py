"""Loading and saving garage owner profiles.

A garage owner's profile lives embedded in their ``user`` document under
``garage_info``. Writes are conditional on ``garage_info.version`` so two
concurrent writers can never silently overwrite each other: the loser gets
:class:`~errors.StaleProfile`.
"""

import logging
from typing import Any, Callable, Dict, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError

from database import utcnow
from errors import Conflict, NotFound, StaleProfile, ValidationFailed
from schemas import GarageProfile, Lifecycle, Role

logger = logging.getLogger(__name__)

MAX_SAVE_ATTEMPTS = 3


def as_object_id(value: Union[str, ObjectId]) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationFailed("Invalid id")


def find_account(database, user_id: Union[str, ObjectId], include_archived: bool = False) -> Dict[str, Any]:
    query: Dict[str, Any] = {"_id": as_object_id(user_id)}
    if not include_archived:
        query["lifecycle"] = Lifecycle.ACTIVE.value
    doc = database["user"].find_one(query)
    if not doc:
        raise NotFound("User not found")
    return doc


def load_profile(doc: Dict[str, Any]) -> GarageProfile:
    if doc.get("role") != Role.GARAGE_OWNER.value or not doc.get("garage_info"):
        raise NotFound("Garage profile not found")
    return GarageProfile(**doc["garage_info"])


def find_profile(database, user_id: Union[str, ObjectId]) -> GarageProfile:
    return load_profile(find_account(database, user_id))


def find_by_tx_ref(database, tx_ref: str) -> Optional[Dict[str, Any]]:
    return database["user"].find_one({"garage_info.payment_tx_ref": tx_ref})


def tx_ref_exists(database, tx_ref: str) -> bool:
    return find_by_tx_ref(database, tx_ref) is not None


def save_profile(database, user_id: Union[str, ObjectId], profile: GarageProfile, expected_version: int) -> GarageProfile:
    """Persist ``profile`` if the stored version still equals ``expected_version``.

    Returns the saved profile with its bumped version.

    Raises:
        StaleProfile: if someone else saved first.
        Conflict: if a unique field (tx_ref, approval number) collides.
    """
    saved = profile.model_copy(update={"version": expected_version + 1}, deep=True)
    try:
        result = database["user"].update_one(
            {"_id": as_object_id(user_id), "garage_info.version": expected_version},
            {"$set": {"garage_info": saved.model_dump(), "updated_at": utcnow()}},
        )
    except DuplicateKeyError as e:
        logger.error("Unique constraint violated saving profile for %s: %s", user_id, e)
        raise Conflict("Duplicate value on garage profile")
    if result.matched_count == 0:
        raise StaleProfile()
    return saved


def mutate_profile(database, user_id: Union[str, ObjectId], change: Callable[[GarageProfile], GarageProfile],
                   attempts: int = MAX_SAVE_ATTEMPTS) -> GarageProfile:
    """Re-read, apply ``change`` and save, retrying on version conflicts.

    Used where the caller has no version of its own to assert (webhooks,
    document uploads). ``change`` returning the same object means nothing to
    save.
    """
    for attempt in range(1, attempts + 1):
        current = find_profile(database, user_id)
        updated = change(current)
        if updated is current:
            return current
        try:
            return save_profile(database, user_id, updated, current.version)
        except StaleProfile:
            logger.info("Profile %s changed concurrently, retry %d/%d", user_id, attempt, attempts)
    raise StaleProfile()
