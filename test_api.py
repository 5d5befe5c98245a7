import json
import os
from datetime import timedelta

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from pymongo.errors import DuplicateKeyError

import main
from accounts import find_profile
from conftest import PASSWORD, auth, insert_owner, insert_user, profile_data
from database import as_utc, create_document, utcnow
from schemas import Address, Garage, GeoPoint, Service


def add_garage(owner, services=None):
    garage = Garage(
        owner_id=str(owner["_id"]),
        name="Bole Auto Care",
        address=Address(street="Bole Road", city="Addis Ababa"),
        location=GeoPoint(coordinates=[38.7578, 8.9806]),
        services=services or [Service(name="Oil change", price=800, duration=45)],
    )
    return create_document("garage", garage)


def add_booking(db, garage_id, status, user_id=None):
    return db["booking"].insert_one({
        "user_id": user_id or str(ObjectId()),
        "garage_id": garage_id,
        "status": status,
        "lifecycle": "active",
        "appointment_date": utcnow() + timedelta(days=1),
    }).inserted_id


def registration_form(**overrides):
    profile = profile_data()
    form = {
        "name": "Abebe Kebede",
        "email": f"{ObjectId()}@example.com",
        "password": PASSWORD,
        "phone": "+251911000000",
        "businessName": profile["business_name"],
        "businessRegNumber": profile["business_reg_number"],
        "address": profile["address"],
        "city": profile["city"],
        "businessPhone": profile["business_phone"],
        "businessEmail": profile["business_email"],
        "description": profile["description"],
        "licenseNumber": profile["license_number"],
        "serviceCategories": "engine, brakes",
    }
    form.update(overrides)
    return form


def stored_files(store):
    for _, _, files in os.walk(store.root):
        yield from files


def webhook(client, payload):
    return client.post(
        "/payments/callback",
        content=json.dumps(payload),
        headers={"Content-Type": "application/json"},
    )


# Auth

def test_register_login_and_me(client):
    res = client.post("/auth/register", json={
        "name": "Sara Tesfaye", "email": "Sara@Example.com", "password": PASSWORD, "phone": "+251922000000",
    })
    assert res.status_code == 201
    body = res.json()
    assert body["success"] is True
    assert body["data"]["user"]["email"] == "sara@example.com"
    assert body["data"]["user"]["role"] == "customer"
    assert "password_hash" not in body["data"]["user"]

    res = client.post("/auth/login", json={"email": "sara@example.com", "password": PASSWORD})
    assert res.status_code == 200
    token = res.json()["data"]["token"]

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["data"]["name"] == "Sara Tesfaye"


def test_register_duplicate_email(client):
    payload = {"name": "Sara", "email": "dup@example.com", "password": PASSWORD, "phone": "+251922000000"}
    assert client.post("/auth/register", json=payload).status_code == 201
    res = client.post("/auth/register", json=payload)
    assert res.status_code == 409
    assert res.json() == {"success": False, "message": "User already exists"}


def test_register_enforces_password_policy(client):
    res = client.post("/auth/register", json={
        "name": "Sara", "email": "weak@example.com", "password": "password1", "phone": "+251922000000",
    })
    assert res.status_code == 400
    assert res.json()["message"] == "Password must contain at least one uppercase letter"


def test_validation_errors_list_fields(client):
    res = client.post("/auth/register", json={"name": "Sara", "email": "not-an-email", "password": PASSWORD})
    assert res.status_code == 400
    body = res.json()
    assert body["message"] == "Validation error"
    assert {e["field"] for e in body["errors"]} >= {"email", "phone"}


def test_login_locks_after_repeated_failures(client, mongo):
    user = insert_user(mongo, email="lock@example.com")
    for _ in range(main.settings.max_login_attempts):
        res = client.post("/auth/login", json={"email": "lock@example.com", "password": "Wrong1234"})
        assert res.status_code == 401

    res = client.post("/auth/login", json={"email": "lock@example.com", "password": PASSWORD})
    assert res.status_code == 401
    assert res.json()["message"] == "Invalid credentials"
    stored = mongo["user"].find_one({"_id": user["_id"]})
    assert as_utc(stored["lock_until"]) > utcnow()


def test_forgot_and_reset_password(client, mongo, monkeypatch):
    monkeypatch.setattr(main.settings, "app_env", "development")
    insert_user(mongo, email="reset@example.com")

    res = client.post("/auth/forgot-password", json={"email": "reset@example.com"})
    token = res.json()["data"]["resetToken"]

    bad = client.post("/auth/reset-password", json={"token": "nope", "password": "N3wPassword"})
    assert bad.status_code == 400
    assert bad.json()["message"] == "Invalid or expired token"

    assert client.post("/auth/reset-password", json={"token": token, "password": "N3wPassword"}).status_code == 200
    assert client.post("/auth/login", json={"email": "reset@example.com", "password": "N3wPassword"}).status_code == 200
    # single use
    assert client.post("/auth/reset-password", json={"token": token, "password": "An0therOne"}).status_code == 400


def test_forgot_password_hides_unknown_accounts(client):
    res = client.post("/auth/forgot-password", json={"email": "ghost@example.com"})
    assert res.status_code == 200
    assert "data" not in res.json()


# Garage owner registration

def test_register_garage_with_license(client, mongo, blobs):
    res = client.post(
        "/auth/register-garage",
        data=registration_form(),
        files={"businessLicense": ("license.pdf", b"%PDF-1.4 license", "application/pdf")},
    )
    assert res.status_code == 201
    data = res.json()["data"]
    assert data["registrationStatus"]["verificationStatus"] == "documents_uploaded"
    assert data["registrationStatus"]["paymentStatus"] == "pending"

    profile = find_profile(mongo, data["user"]["id"])
    assert profile.service_categories == ["engine", "brakes"]
    assert [d.document_type for d in profile.documents] == ["business_license"]
    stored = profile.documents[0]
    assert stored.status == "pending"
    with open(f"{blobs.root}/{stored.public_id}", "rb") as f:
        assert f.read() == b"%PDF-1.4 license"


def test_register_garage_without_documents(client):
    res = client.post("/auth/register-garage", data=registration_form())
    assert res.status_code == 201
    assert res.json()["data"]["registrationStatus"]["verificationStatus"] == "registration_started"


def test_register_garage_rejects_bad_file_type(client, mongo):
    form = registration_form()
    res = client.post(
        "/auth/register-garage",
        data=form,
        files={"businessLicense": ("license.txt", b"plain text", "text/plain")},
    )
    assert res.status_code == 400
    assert "Invalid file type" in res.json()["message"]
    assert mongo["user"].count_documents({"email": form["email"]}) == 0


def test_register_garage_duplicate_registration_number(client, mongo):
    owner = insert_owner(mongo)
    reg_number = owner["garage_info"]["business_reg_number"]
    res = client.post("/auth/register-garage", data=registration_form(businessRegNumber=reg_number))
    assert res.status_code == 409
    assert res.json()["message"] == "Business registration number already registered"


@pytest.mark.parametrize("key_pattern, message", [
    ({"garage_info.business_reg_number": 1}, "Business registration number already registered"),
    ({"email": 1}, "User already exists"),
])
def test_register_garage_index_race_names_the_duplicate(client, mongo, monkeypatch, key_pattern, message):
    def lose_race(collection, data):
        raise DuplicateKeyError("E11000 duplicate key error", code=11000, details={"keyPattern": key_pattern})

    monkeypatch.setattr(main, "create_document", lose_race)
    form = registration_form()
    res = client.post("/auth/register-garage", data=form)
    assert res.status_code == 409
    assert res.json()["message"] == message
    assert mongo["user"].count_documents({"email": form["email"]}) == 0


def test_upload_and_delete_document(client, mongo, blobs):
    owner = insert_owner(mongo)
    res = client.post(
        "/auth/documents",
        data={"documentType": "tax_clearance"},
        files={"file": ("tax.png", b"\x89PNG", "image/png")},
        headers=auth(owner),
    )
    assert res.status_code == 201
    document = res.json()["data"]["document"]
    assert res.json()["data"]["verificationStatus"] == "documents_uploaded"

    listing = client.get("/auth/documents", headers=auth(owner)).json()["data"]
    assert listing["summary"]["total"] == 1

    res = client.delete(f"/auth/documents/{document['id']}", headers=auth(owner))
    assert res.json()["data"]["blobDeleted"] is True
    assert find_profile(mongo, owner["_id"]).documents == []


def test_upload_rejects_unknown_document_type(client, mongo, blobs):
    owner = insert_owner(mongo)
    res = client.post(
        "/auth/documents",
        data={"documentType": "selfie"},
        files={"file": ("me.png", b"\x89PNG", "image/png")},
        headers=auth(owner),
    )
    assert res.status_code == 400
    assert not list(stored_files(blobs))


def test_registration_status(client, mongo):
    owner = insert_owner(mongo, verification_status="documents_uploaded")
    data = client.get("/auth/registration-status", headers=auth(owner)).json()["data"]
    assert data["verificationStatus"] == "documents_uploaded"
    assert data["nextAction"] == "/payment"
    assert data["canAccess"]["payment"] is True


# Payments

def test_plans_are_listed(client):
    plans = {p["id"]: p for p in client.get("/payments/plans").json()["data"]}
    assert plans["basic"]["amount"] == 500
    assert plans["yearly"]["duration_days"] == 365
    assert plans["premium"]["features"]


def test_payment_scenario_end_to_end(client, mongo, chapa, blobs):
    res = client.post("/auth/register-garage", data=registration_form())
    assert res.status_code == 201
    registered = res.json()["data"]
    assert registered["registrationStatus"]["verificationStatus"] == "registration_started"
    headers = {"Authorization": f"Bearer {registered['token']}"}
    owner_id = registered["user"]["id"]

    res = client.post(
        "/auth/documents",
        data={"documentType": "business_license"},
        files={"file": ("license.pdf", b"%PDF-1.4 license", "application/pdf")},
        headers=headers,
    )
    assert res.status_code == 201
    assert res.json()["data"]["verificationStatus"] == "documents_uploaded"

    res = client.post("/payments/initialize", json={"plan": "basic"}, headers=headers)
    assert res.status_code == 200
    session = res.json()["data"]
    assert session["amount"] == 500
    assert session["checkout_url"].startswith("https://checkout.chapa.co/")
    assert find_profile(mongo, owner_id).verification_status == "pending_payment"

    res = webhook(client, {"tx_ref": session["tx_ref"], "status": "success"})
    assert res.status_code == 200
    assert res.json()["data"]["status"] == "applied"

    status = client.get("/payments/status", headers=headers).json()["data"]
    assert status["paymentStatus"] == "paid"
    assert status["verificationStatus"] == "payment_completed"

    profile = find_profile(mongo, owner_id)
    remaining = as_utc(profile.payment_expiry) - utcnow()
    assert timedelta(days=29, hours=23) < remaining <= timedelta(days=30)

    again = webhook(client, {"tx_ref": session["tx_ref"], "status": "success"})
    assert again.status_code == 200
    assert again.json()["data"]["status"] == "duplicate"
    assert find_profile(mongo, owner_id).version == profile.version


def test_lapsed_subscription_leaves_approval_until_renewed(client, mongo, chapa):
    admin = insert_user(mongo, role="admin")
    approved_at = utcnow() - timedelta(days=39)
    owner = insert_owner(
        mongo,
        payment_status="paid",
        verification_status="approved",
        payment_plan="basic",
        payment_date=approved_at,
        payment_expiry=approved_at + timedelta(days=30),
        approval_number="GAR-LAPSED-ABC123",
    )

    status = client.get("/payments/status", headers=auth(owner)).json()["data"]
    assert status["paymentStatus"] == "expired"
    assert status["verificationStatus"] == "pending_payment"
    assert status["canAccess"]["payment"] is True

    res = client.put(f"/admin/garage-owners/{owner['_id']}/approve", json={}, headers=auth(admin))
    assert res.status_code == 400

    session = client.post("/payments/initialize", json={"plan": "basic"}, headers=auth(owner)).json()["data"]
    webhook(client, {"tx_ref": session["tx_ref"], "status": "success"})
    res = client.put(f"/admin/garage-owners/{owner['_id']}/approve", json={}, headers=auth(admin))
    assert res.status_code == 200

    profile = find_profile(mongo, owner["_id"])
    assert profile.verification_status == "approved"
    assert profile.payment_status == "paid"
    assert profile.approval_number == "GAR-LAPSED-ABC123"


def test_customer_cannot_initialize_payment(client, mongo):
    customer = insert_user(mongo)
    res = client.post("/payments/initialize", json={"plan": "basic"}, headers=auth(customer))
    assert res.status_code == 403


def test_webhook_always_acknowledges(client, mongo):
    unmatched = webhook(client, {"tx_ref": "GAR-nobody-00000000-AAAAAA", "status": "success"})
    assert unmatched.status_code == 200
    assert unmatched.json()["data"]["status"] == "unmatched"

    garbage = client.post("/payments/callback", content=b"{not json", headers={"Content-Type": "application/json"})
    assert garbage.status_code == 200
    assert garbage.json()["data"]["status"] == "unresolved"
    assert mongo["unresolved_webhook"].count_documents({}) == 1


def test_redirect_callback_for_unknown_reference(client, chapa):
    res = client.get("/payments/callback", params={"trx_ref": "GAR-nobody", "status": "success"})
    assert res.status_code == 200
    assert res.json()["data"]["status"] == "unmatched"
    assert chapa.verified == []


def test_verify_endpoint(client, mongo, chapa):
    owner = insert_owner(mongo, verification_status="documents_uploaded")
    tx_ref = client.post("/payments/initialize", json={"plan": "premium"}, headers=auth(owner)).json()["data"]["tx_ref"]

    res = client.get(f"/payments/verify/{tx_ref}", headers=auth(owner))
    assert res.status_code == 200
    assert res.json()["data"]["verified"] is True
    assert client.get("/payments/verify/GAR-missing", headers=auth(owner)).status_code == 404


def test_gateway_timeout_is_reported(client, mongo, chapa):
    import httpx

    owner = insert_owner(mongo)
    chapa.error = httpx.ConnectTimeout("timed out")
    res = client.post("/payments/initialize", json={"plan": "basic"}, headers=auth(owner))
    assert res.status_code == 500
    assert res.json()["message"] == "Payment gateway timed out"
    assert find_profile(mongo, owner["_id"]).payment_status == "pending"


# Admin decisions

def test_approve_requires_payment(client, mongo):
    admin = insert_user(mongo, role="admin")
    owner = insert_owner(mongo, verification_status="payment_completed")

    res = client.put(f"/admin/garage-owners/{owner['_id']}/approve", json={}, headers=auth(admin))
    assert res.status_code == 400
    assert res.json()["message"] == "Cannot approve: Payment not completed"
    assert find_profile(mongo, owner["_id"]).verification_status == "payment_completed"


def test_approve_with_stale_version_conflicts(client, mongo):
    admin = insert_user(mongo, role="admin")
    owner = insert_owner(mongo, payment_status="paid", verification_status="payment_completed")
    url = f"/admin/garage-owners/{owner['_id']}/approve"

    stale = client.put(url, json={"expectedVersion": 3}, headers=auth(admin))
    assert stale.status_code == 409
    assert find_profile(mongo, owner["_id"]).approval_number is None

    res = client.put(url, json={"expectedVersion": 0, "comments": "All good"}, headers=auth(admin))
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["verification_status"] == "approved"
    assert data["approval_number"].startswith("GAR-")
    assert data["version"] == 1


def test_admin_routes_require_admin(client, mongo):
    owner = insert_owner(mongo)
    res = client.put(f"/admin/garage-owners/{owner['_id']}/approve", json={}, headers=auth(owner))
    assert res.status_code == 403


def test_admin_document_review(client, mongo, blobs):
    admin = insert_user(mongo, role="admin")
    owner = insert_owner(mongo)
    upload = client.post(
        "/auth/documents",
        data={"documentType": "business_license"},
        files={"file": ("license.pdf", b"%PDF", "application/pdf")},
        headers=auth(owner),
    ).json()["data"]["document"]
    url = f"/admin/garage-owners/{owner['_id']}/documents/{upload['id']}"

    assert client.put(f"{url}/reject", json={}, headers=auth(admin)).status_code == 400
    res = client.put(f"{url}/verify", json={"notes": "Matches registry"}, headers=auth(admin))
    assert res.status_code == 200
    assert res.json()["data"]["summary"]["requiredVerified"] is True


def test_waive_then_approve_owner_can_list_garage(client, mongo):
    admin = insert_user(mongo, role="admin")
    owner = insert_owner(mongo, verification_status="documents_uploaded")
    base = f"/admin/garage-owners/{owner['_id']}"

    assert client.put(f"{base}/waive-payment", json={"reason": "Pilot"}, headers=auth(admin)).status_code == 200
    assert client.put(f"{base}/approve", json={}, headers=auth(admin)).status_code == 200

    res = client.post("/garages", json={
        "name": "Bole Auto Care",
        "address": {"street": "Bole Road", "city": "Addis Ababa"},
        "location": {"type": "Point", "coordinates": [38.75, 8.98]},
        "services": [{"name": "Oil change", "price": 800}],
    }, headers=auth(owner))
    assert res.status_code == 201
    assert res.json()["data"]["owner_id"] == str(owner["_id"])


def test_unapproved_owner_cannot_list_garage(client, mongo):
    owner = insert_owner(mongo)
    res = client.post("/garages", json={
        "name": "Bole Auto Care",
        "address": {"street": "Bole Road", "city": "Addis Ababa"},
        "location": {"type": "Point", "coordinates": [38.75, 8.98]},
    }, headers=auth(owner))
    assert res.status_code == 403


# Reviews

def test_review_once_per_garage_and_rating_rollup(client, mongo):
    owner = insert_owner(mongo)
    garage_id = add_garage(owner)
    customer = insert_user(mongo)

    res = client.post("/reviews", json={"garageId": garage_id, "rating": 4, "comment": "Quick and fair"},
                      headers=auth(customer))
    assert res.status_code == 201
    assert res.json()["garageRating"] == {"averageRating": 4.0, "totalReviews": 1}
    review_id = res.json()["data"]["id"]

    dup = client.post("/reviews", json={"garageId": garage_id, "rating": 1, "comment": "Again"},
                      headers=auth(customer))
    assert dup.status_code == 409
    assert dup.json()["message"] == "You have already reviewed this garage"
    garage = mongo["garage"].find_one({"_id": ObjectId(garage_id)})
    assert (garage["average_rating"], garage["total_reviews"]) == (4.0, 1)

    other = insert_user(mongo)
    client.post("/reviews", json={"garageId": garage_id, "rating": 5, "comment": "Great"}, headers=auth(other))

    listed = client.get(f"/reviews/garage/{garage_id}").json()
    assert listed["total"] == 2
    assert {r["user_name"] for r in listed["data"]} == {"Test User"}

    assert client.delete(f"/reviews/{review_id}", headers=auth(customer)).status_code == 200
    garage = mongo["garage"].find_one({"_id": ObjectId(garage_id)})
    assert (garage["average_rating"], garage["total_reviews"]) == (5.0, 1)


def test_review_with_unfinished_booking_is_refused(client, mongo):
    owner = insert_owner(mongo)
    garage_id = add_garage(owner)
    customer = insert_user(mongo)
    booking_id = add_booking(mongo, garage_id, "confirmed", user_id=str(customer["_id"]))

    res = client.post("/reviews", json={
        "garageId": garage_id, "rating": 5, "comment": "Nice", "bookingId": str(booking_id),
    }, headers=auth(customer))
    assert res.status_code == 400


# Garages and bookings

def test_garage_soft_delete_cascade_and_restore(client, mongo):
    admin = insert_user(mongo, role="admin")
    owner = insert_owner(mongo)
    garage_id = add_garage(owner)
    pending = add_booking(mongo, garage_id, "pending")
    add_booking(mongo, garage_id, "completed")
    cancelled = add_booking(mongo, garage_id, "cancelled")

    blocked = client.delete(f"/garages/{garage_id}", headers=auth(owner))
    assert blocked.status_code == 400
    assert blocked.json()["message"].startswith("Cannot delete garage with active bookings")

    mongo["booking"].update_one({"_id": pending}, {"$set": {"status": "rejected"}})
    res = client.delete(f"/garages/{garage_id}", headers=auth(owner))
    assert res.status_code == 200
    assert res.json()["data"]["bookingsCancelled"] == 2
    assert client.get(f"/garages/{garage_id}").status_code == 404
    assert mongo["booking"].find_one({"_id": cancelled})["lifecycle"] == "archived"
    assert mongo["booking"].count_documents({"garage_id": garage_id, "lifecycle": "active"}) == 1

    res = client.put(f"/garages/{garage_id}/restore", headers=auth(admin))
    assert res.json()["data"]["bookingsRestored"] == 2
    assert client.get(f"/garages/{garage_id}").status_code == 200


def test_booking_lifecycle(client, mongo):
    owner = insert_owner(mongo)
    garage_id = add_garage(owner)
    service_id = mongo["garage"].find_one({"_id": ObjectId(garage_id)})["services"][0]["id"]
    customer = insert_user(mongo)
    when = (utcnow() + timedelta(days=2)).isoformat()

    res = client.post("/bookings", json={"garageId": garage_id, "serviceIds": [service_id], "appointmentDate": when},
                      headers=auth(customer))
    assert res.status_code == 201
    booking = res.json()["data"]
    assert booking["total_price"] == 800
    assert booking["status"] == "pending"

    # customers may only cancel
    res = client.put(f"/bookings/{booking['id']}", json={"status": "confirmed"}, headers=auth(customer))
    assert res.status_code == 403

    res = client.put(f"/bookings/{booking['id']}", json={"status": "confirmed"}, headers=auth(owner))
    assert res.json()["data"]["status"] == "confirmed"

    res = client.put(f"/bookings/{booking['id']}", json={"status": "completed"}, headers=auth(owner))
    assert res.status_code == 400

    mine = client.get("/bookings/my-bookings", headers=auth(customer)).json()
    assert mine["count"] == 1


def test_booking_in_the_past_is_refused(client, mongo):
    owner = insert_owner(mongo)
    garage_id = add_garage(owner)
    service_id = mongo["garage"].find_one({"_id": ObjectId(garage_id)})["services"][0]["id"]
    customer = insert_user(mongo)
    when = (utcnow() - timedelta(hours=1)).isoformat()

    res = client.post("/bookings", json={"garageId": garage_id, "serviceIds": [service_id], "appointmentDate": when},
                      headers=auth(customer))
    assert res.status_code == 400


@pytest.mark.parametrize("path", ["/", "/test"])
def test_utility_endpoints(client, path):
    assert client.get(path).status_code == 200


def test_indexes_are_created_on_startup(mongo, chapa, blobs, monkeypatch):
    created = []
    monkeypatch.setattr(main, "ensure_indexes", created.append)
    with TestClient(main.app):
        assert created == [mongo]


def test_admin_owner_listing_stats_and_user_archive(client, mongo):
    admin = insert_user(mongo, role="admin")
    paid = insert_owner(mongo, payment_status="paid", verification_status="payment_completed", payment_amount=500)
    insert_owner(mongo)
    customer = insert_user(mongo)

    listed = client.get("/admin/garage-owners", params={"paymentStatus": "paid"}, headers=auth(admin)).json()
    assert listed["total"] == 1
    assert listed["data"][0]["id"] == str(paid["_id"])
    assert listed["data"][0]["progress"] == 60

    stats = client.get("/admin/stats", headers=auth(admin)).json()["data"]
    assert stats["garageOwners"]["total"] == 2
    assert stats["garageOwners"]["byPaymentStatus"] == {"paid": 1, "pending": 1}
    assert stats["customers"] == 1
    assert stats["revenue"]["amount"] == 500

    assert client.delete(f"/admin/users/{admin['_id']}", headers=auth(admin)).status_code == 400
    assert client.delete(f"/admin/users/{customer['_id']}", headers=auth(admin)).status_code == 200
    assert client.get("/auth/me", headers=auth(customer)).status_code == 401
    assert client.put(f"/admin/users/{customer['_id']}/restore", headers=auth(admin)).status_code == 200
    assert client.get("/auth/me", headers=auth(customer)).status_code == 200
