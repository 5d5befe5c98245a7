"""Garage rating rollup, recomputed from the active reviews on every change."""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Tuple

from bson import ObjectId

from database import utcnow
from schemas import Lifecycle

logger = logging.getLogger(__name__)


def round_rating(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def recompute_garage_rating(database, garage_id: str) -> Tuple[float, int]:
    pipeline = [
        {"$match": {"garage_id": garage_id, "lifecycle": Lifecycle.ACTIVE.value}},
        {"$group": {"_id": "$garage_id", "avg": {"$avg": "$rating"}, "count": {"$sum": 1}}},
    ]
    agg = list(database["review"].aggregate(pipeline))
    if agg:
        average, total = round_rating(agg[0]["avg"]), agg[0]["count"]
    else:
        average, total = 0.0, 0
    database["garage"].update_one(
        {"_id": ObjectId(garage_id)},
        {"$set": {"average_rating": average, "total_reviews": total, "updated_at": utcnow()}},
    )
    logger.info("Garage %s rating recomputed: %s over %d reviews", garage_id, average, total)
    return average, total
