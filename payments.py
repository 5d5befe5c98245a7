"""Chapa hosted-checkout integration for garage owner subscription fees.

:class:`ChapaClient` is a thin, logged wrapper around the provider's REST API.
:class:`PaymentGateway` ties it to the verification state machine:

* ``initiate`` opens a checkout session and binds its ``tx_ref`` to the
  account only after the provider accepted it.
* ``reconcile`` applies an asynchronous provider notification. It never
  raises: the provider must always get a 200, so every outcome (including
  errors) comes back as a :class:`ReconcileOutcome`.
* ``verify`` polls the provider on behalf of a user and lets errors surface.
"""

import hashlib
import hmac
import logging
import secrets
import string
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from accounts import find_by_tx_ref, load_profile, mutate_profile, tx_ref_exists
from config import Plan, Settings
from database import utcnow
from errors import ConfigError, Forbidden, GatewayError, InvalidTransition, NotFound, ValidationFailed
from schemas import ADMIN_ROLES, GarageProfile, UnresolvedWebhook
from verification import check_payment_eligibility, confirm_payment, fail_payment, payment_settled, start_payment

logger = logging.getLogger(__name__)

SUCCESS_SIGNALS = ("success", "completed", "successful")
FAILURE_SIGNALS = ("failed", "failure")


class PlanTable:
    def __init__(self, plans: Dict[str, Plan]):
        self._plans = plans

    def get(self, plan_id: str) -> Plan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise ValidationFailed("Invalid payment plan. Choose basic, premium, or yearly")
        return plan

    def all(self) -> List[Plan]:
        return list(self._plans.values())


@dataclass
class CheckoutSession:
    checkout_url: str
    tx_ref: str
    amount: int
    plan: str
    currency: str


@dataclass
class ProviderVerification:
    status: str
    tx_ref: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ReconcileOutcome:
    """Result of applying one provider notification.

    ``status`` is one of applied, duplicate, unmatched, unresolved, ignored,
    error.
    """

    status: str
    tx_ref: Optional[str] = None
    strategy: Optional[str] = None
    message: str = ""
    payment_status: Optional[str] = None
    verification_status: Optional[str] = None

    @property
    def acknowledged(self) -> bool:
        return self.status in ("applied", "duplicate")

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Reference extraction

def _top(key: str) -> Callable[[Dict[str, Any]], Any]:
    return lambda payload: payload.get(key)


def _nested(key: str) -> Callable[[Dict[str, Any]], Any]:
    def extract(payload: Dict[str, Any]) -> Any:
        data = payload.get("data")
        return data.get(key) if isinstance(data, dict) else None
    return extract


# Provider payloads are not uniform across event types; tried in order.
TX_REF_STRATEGIES: List[Tuple[str, Callable[[Dict[str, Any]], Any]]] = [
    ("tx_ref", _top("tx_ref")),
    ("trx_ref", _top("trx_ref")),
    ("reference", _top("reference")),
    ("data.tx_ref", _nested("tx_ref")),
    ("data.reference", _nested("reference")),
]


def extract_tx_ref(payload: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(tx_ref, strategy_name)`` for the first strategy yielding a non-empty string."""
    for name, strategy in TX_REF_STRATEGIES:
        value = strategy(payload)
        if isinstance(value, str) and value.strip():
            return value.strip(), name
    return None, None


def extract_status(payload: Dict[str, Any]) -> str:
    status = payload.get("status")
    if not isinstance(status, str):
        data = payload.get("data")
        status = data.get("status") if isinstance(data, dict) else None
    return status.strip().lower() if isinstance(status, str) else ""


def signature_valid(secret: str, raw_body: bytes, signature: Optional[str]) -> bool:
    if not signature:
        return False
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def generate_tx_ref(account_id: str, now: datetime) -> str:
    timestamp = str(int(now.timestamp() * 1000))[-8:]
    alphabet = string.ascii_uppercase + string.digits
    random = "".join(secrets.choice(alphabet) for _ in range(6))
    return f"GAR-{str(account_id)[-6:]}-{timestamp}-{random}"


class ChapaClient:
    """Typed, logged wrapper around Chapa's transaction API."""

    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        self._secret_key = settings.chapa_secret_key
        self._api_url = settings.chapa_api_url
        self._timeout = settings.payment_timeout_seconds
        self._client = client

    def _headers(self) -> Dict[str, str]:
        if not self._secret_key:
            raise GatewayError("Payment gateway is not configured")
        return {"Authorization": f"Bearer {self._secret_key}", "Content-Type": "application/json"}

    @staticmethod
    def _extract_error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        message = body.get("message") if isinstance(body, dict) else None
        return str(message) if message else f"HTTP {response.status_code}"

    def _send(self, execute):
        try:
            if self._client is not None:
                return execute(self._client)
            with httpx.Client(timeout=self._timeout) as client:
                return execute(client)
        except httpx.TimeoutException as e:
            logger.error("Chapa request timed out: %s", e)
            raise GatewayError("Payment gateway timed out", detail=str(e))
        except httpx.HTTPError as e:
            logger.error("Chapa request failed: %s", e)
            raise GatewayError(detail=str(e))

    def initialize(self, payload: Dict[str, Any]) -> str:
        headers = self._headers()

        def _execute(client: httpx.Client) -> str:
            response = client.post(f"{self._api_url}/transaction/initialize", json=payload, headers=headers)
            if response.status_code >= 400:
                message = self._extract_error_message(response)
                logger.warning("Chapa initialize rejected tx_ref=%s status=%s: %s",
                               payload.get("tx_ref"), response.status_code, message)
                raise GatewayError("Payment initialization failed", detail=message)

            body = response.json()
            if body.get("status") != "success":
                raise GatewayError("Payment initialization failed", detail=body.get("message"))
            checkout_url = (body.get("data") or {}).get("checkout_url")
            if not checkout_url:
                raise GatewayError("Payment initialization failed", detail="response missing checkout_url")

            logger.info("Chapa checkout initialized for tx_ref=%s", payload.get("tx_ref"))
            return checkout_url

        return self._send(_execute)

    def verify(self, tx_ref: str) -> ProviderVerification:
        headers = self._headers()

        def _execute(client: httpx.Client) -> ProviderVerification:
            response = client.get(f"{self._api_url}/transaction/verify/{tx_ref}", headers=headers)
            if response.status_code >= 400:
                message = self._extract_error_message(response)
                logger.warning("Chapa verify rejected tx_ref=%s status=%s: %s", tx_ref, response.status_code, message)
                raise GatewayError("Payment verification failed", detail=message)

            body = response.json()
            data = body.get("data") if isinstance(body.get("data"), dict) else {}
            # the top-level status describes the API call, data.status the transaction
            status = extract_status(data) or extract_status(body)
            logger.info("Chapa verify tx_ref=%s -> %s", tx_ref, status or "unknown")
            return ProviderVerification(status=status, tx_ref=tx_ref, data=data)

        return self._send(_execute)


class PaymentGateway:
    def __init__(self, settings: Settings, client: Optional[ChapaClient] = None):
        self.settings = settings
        self.plans = PlanTable(settings.plans)
        self.client = client or ChapaClient(settings)

    # Checkout

    def initiate(self, database, account: Dict[str, Any], plan_id: str, now: Optional[datetime] = None) -> CheckoutSession:
        now = now or utcnow()
        profile = load_profile(account)
        plan = self.plans.get(plan_id)
        check_payment_eligibility(profile)

        account_id = str(account["_id"])
        tx_ref = generate_tx_ref(account_id, now)
        if tx_ref_exists(database, tx_ref):
            raise ConfigError(f"Generated transaction reference {tx_ref} already exists")

        name_parts = (account.get("name") or "").split()
        checkout_url = self.client.initialize({
            "amount": str(plan.amount),
            "currency": self.settings.currency,
            "email": account["email"],
            "first_name": name_parts[0] if name_parts else "Garage",
            "last_name": " ".join(name_parts[1:]) or "Owner",
            "tx_ref": tx_ref,
            "callback_url": self.settings.chapa_callback_url,
            "return_url": self.settings.chapa_return_url,
            "customization": {"title": "Garage Listing", "description": plan.description[:50]},
            "meta": {"plan": plan.id, "account_id": account_id},
        })

        # the provider already holds tx_ref, so bind it to whatever the profile is now
        mutate_profile(database, account["_id"], lambda p: start_payment(p, plan.id, plan.amount, tx_ref, now))
        logger.info("Payment initiated for account %s plan=%s tx_ref=%s", account_id, plan.id, tx_ref)
        return CheckoutSession(
            checkout_url=checkout_url,
            tx_ref=tx_ref,
            amount=plan.amount,
            plan=plan.id,
            currency=self.settings.currency,
        )

    # Notifications

    def reconcile(self, database, payload: Any, signature: Optional[str] = None, raw_body: Optional[bytes] = None,
                  poll: bool = False) -> ReconcileOutcome:
        """Apply a provider notification. Never raises.

        With ``poll=True`` the payload is only trusted for its reference and the
        status is fetched from the provider instead (used for the browser
        redirect callback, which carries no signature).
        """
        tx_ref = None
        try:
            if not isinstance(payload, dict):
                return self._unresolved(database, "malformed payload", payload)

            if not poll:
                secret = self.settings.chapa_webhook_secret
                if secret:
                    if not signature_valid(secret, raw_body or b"", signature):
                        logger.warning("Webhook signature %s, not applying", "missing" if not signature else "invalid")
                        return self._unresolved(database, "invalid signature", payload, extract_tx_ref(payload)[0])
                else:
                    logger.warning("CHAPA_WEBHOOK_SECRET not set, webhook signature not checked")

            tx_ref, strategy = extract_tx_ref(payload)
            if tx_ref is None:
                return self._unresolved(database, "missing transaction reference", payload)
            logger.info("Webhook tx_ref=%s matched by strategy %s", tx_ref, strategy)

            account = find_by_tx_ref(database, tx_ref)
            if account is None:
                logger.warning("Webhook for unknown tx_ref=%s, acknowledging without changes", tx_ref)
                return ReconcileOutcome("unmatched", tx_ref, strategy, "No account holds this transaction reference")

            signal = self.client.verify(tx_ref).status if poll else extract_status(payload)
            outcome = self._apply(database, account, tx_ref, signal, utcnow())
            outcome.strategy = strategy
            logger.info("Webhook tx_ref=%s outcome=%s", tx_ref, outcome.status)
            return outcome
        except Exception as e:
            logger.exception("Error processing payment notification tx_ref=%s", tx_ref)
            self._record(database, f"processing error: {e}", payload, tx_ref)
            return ReconcileOutcome("error", tx_ref, message="Notification recorded for manual follow-up")

    def verify(self, database, tx_ref: str, requester: Dict[str, Any]) -> ReconcileOutcome:
        account = find_by_tx_ref(database, tx_ref)
        if account is None:
            raise NotFound("Payment not found")
        if requester.get("role") not in ADMIN_ROLES and str(account["_id"]) != requester.get("id"):
            raise Forbidden("Not authorized to verify this payment")

        result = self.client.verify(tx_ref)
        outcome = self._apply(database, account, tx_ref, result.status, utcnow())
        outcome.strategy = "verify"
        return outcome

    # Internals

    def _apply(self, database, account: Dict[str, Any], tx_ref: str, signal: str, now: datetime) -> ReconcileOutcome:
        profile = load_profile(account)

        if signal in SUCCESS_SIGNALS:
            duration = self.plans.get(profile.payment_plan).duration_days

            def transition(p: GarageProfile) -> GarageProfile:
                return confirm_payment(p, duration, now)
        elif signal in FAILURE_SIGNALS:
            if payment_settled(profile):
                return self._outcome("ignored", tx_ref, profile, "Failure after settled payment ignored")

            def transition(p: GarageProfile) -> GarageProfile:
                return fail_payment(p, now)
        else:
            return self._outcome("ignored", tx_ref, profile, f"No state change for provider status '{signal or 'unknown'}'")

        state = {"changed": False, "superseded": False}

        def change(p: GarageProfile) -> GarageProfile:
            state["superseded"] = p.payment_tx_ref != tx_ref
            if state["superseded"]:
                state["changed"] = False
                return p
            updated = transition(p)
            state["changed"] = updated is not p
            return updated

        try:
            saved = mutate_profile(database, account["_id"], change)
        except InvalidTransition as e:
            return self._outcome("ignored", tx_ref, profile, e.message)

        if state["superseded"]:
            return self._outcome("ignored", tx_ref, saved, "Transaction reference superseded by a newer attempt")
        if state["changed"]:
            return self._outcome("applied", tx_ref, saved, "Payment status updated")
        return self._outcome("duplicate", tx_ref, saved, "Already processed")

    @staticmethod
    def _outcome(status: str, tx_ref: str, profile: GarageProfile, message: str) -> ReconcileOutcome:
        return ReconcileOutcome(
            status=status,
            tx_ref=tx_ref,
            message=message,
            payment_status=profile.payment_status,
            verification_status=profile.verification_status,
        )

    def _unresolved(self, database, reason: str, payload: Any, tx_ref: Optional[str] = None) -> ReconcileOutcome:
        logger.warning("Unresolved payment notification: %s", reason)
        self._record(database, reason, payload, tx_ref)
        return ReconcileOutcome("unresolved", tx_ref, message=reason)

    @staticmethod
    def _record(database, reason: str, payload: Any, tx_ref: Optional[str]) -> None:
        body = payload if isinstance(payload, dict) else {"raw": repr(payload)[:2000]}
        try:
            database["unresolved_webhook"].insert_one(
                UnresolvedWebhook(reason=reason, payload=body, tx_ref=tx_ref).model_dump()
            )
        except Exception:
            logger.exception("Could not record unresolved webhook (%s)", reason)
