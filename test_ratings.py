import pytest
from bson import ObjectId

from ratings import recompute_garage_rating, round_rating


def add_garage(db):
    return str(db["garage"].insert_one({"name": "Bole Garage", "average_rating": 0, "total_reviews": 0}).inserted_id)


def add_review(db, garage_id, rating, lifecycle="active"):
    db["review"].insert_one({
        "user_id": str(ObjectId()),
        "garage_id": garage_id,
        "rating": rating,
        "comment": "ok",
        "lifecycle": lifecycle,
    })


@pytest.mark.parametrize("value, expected", [
    (4.25, 4.3),
    (4.24, 4.2),
    (4.35, 4.4),
    (5, 5.0),
])
def test_round_rating_half_up(value, expected):
    assert round_rating(value) == expected


def test_recompute_rounds_mean(mongo):
    garage_id = add_garage(mongo)
    for rating in (4, 4, 4, 5):
        add_review(mongo, garage_id, rating)

    assert recompute_garage_rating(mongo, garage_id) == (4.3, 4)
    garage = mongo["garage"].find_one({"_id": ObjectId(garage_id)})
    assert garage["average_rating"] == 4.3
    assert garage["total_reviews"] == 4


def test_recompute_without_reviews_resets(mongo):
    garage_id = add_garage(mongo)
    mongo["garage"].update_one({"_id": ObjectId(garage_id)}, {"$set": {"average_rating": 3.5, "total_reviews": 2}})

    assert recompute_garage_rating(mongo, garage_id) == (0.0, 0)
    assert mongo["garage"].find_one({"_id": ObjectId(garage_id)})["total_reviews"] == 0


def test_archived_reviews_and_other_garages_are_excluded(mongo):
    garage_id = add_garage(mongo)
    other_id = add_garage(mongo)
    add_review(mongo, garage_id, 5)
    add_review(mongo, garage_id, 1, lifecycle="archived")
    add_review(mongo, other_id, 1)

    assert recompute_garage_rating(mongo, garage_id) == (5.0, 1)
