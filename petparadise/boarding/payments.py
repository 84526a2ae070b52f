"""Payment provider adapters.

The boarding core needs a provider to open, look up and expire hosted
checkout sessions, to refund captured payments, and to authenticate
webhook callbacks. ``StripeCheckoutProvider`` does this with the Stripe SDK;
``LocalCheckoutProvider`` is an offline stand-in used in development and
tests.
"""

from __future__ import annotations

import datetime as dt
import hashlib
import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any

import stripe

from .errors import PaymentProviderError, ValidationError

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300

# Stripe rejects an ``expires_at`` less than 30 minutes or more than 24 hours
# after the session is created on its side.
MIN_SESSION_MINUTES = 31
MAX_SESSION_MINUTES = 24 * 60


@dataclass
class CheckoutSession:
    session_id: str
    url: str
    expires_at: dt.datetime
    customer_id: str | None = None


@dataclass
class ProviderRefund:
    refund_id: str
    status: str


def to_cents(amount: Any) -> int:
    return int(round(float(amount) * 100))


def session_expiry(expires_in_minutes: int, now: dt.datetime | None = None) -> dt.datetime:
    """Whole-second expiry time inside the window Stripe accepts."""

    minutes = min(max(int(expires_in_minutes), MIN_SESSION_MINUTES), MAX_SESSION_MINUTES)
    now = now or dt.datetime.now(dt.timezone.utc)
    return (now + dt.timedelta(minutes=minutes)).replace(microsecond=0)


def sign_payload(payload: bytes | str, secret: str, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header for ``payload``."""

    if isinstance(payload, str):
        payload = payload.encode()
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def verify_signature(
    payload: bytes | str,
    header: str | None,
    secret: str,
    *,
    tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
) -> dict:
    """Check a signed webhook body and return the decoded event."""

    if isinstance(payload, bytes):
        payload = payload.decode("utf-8")
    if not header:
        raise ValidationError("Missing webhook signature")
    try:
        stripe.WebhookSignature.verify_header(payload, header, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise ValidationError("Invalid webhook signature") from exc
    try:
        return json.loads(payload)
    except ValueError as exc:
        raise ValidationError("Webhook body is not valid JSON") from exc


class PaymentProvider:
    """Interface implemented by payment adapters."""

    name = "base"

    def create_checkout_session(
        self,
        *,
        order_id: str,
        amount: Any,
        currency: str,
        description: str,
        customer_email: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        expires_in_minutes: int,
    ) -> CheckoutSession:
        raise NotImplementedError

    def expire_session(self, session_id: str) -> None:
        raise NotImplementedError

    def retrieve_session(self, session_id: str) -> dict:
        """Return ``id``, ``status``, ``payment_status``, ``payment_intent`` and ``amount_total``."""

        raise NotImplementedError

    def create_refund(self, *, payment_intent_id: str | None, amount: Any, reason: str | None) -> ProviderRefund:
        raise NotImplementedError

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict:
        raise NotImplementedError


class StripeCheckoutProvider(PaymentProvider):
    name = "stripe"

    def __init__(self, secret_key: str, webhook_secret: str) -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def create_checkout_session(
        self,
        *,
        order_id: str,
        amount: Any,
        currency: str,
        description: str,
        customer_email: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        expires_in_minutes: int,
    ) -> CheckoutSession:
        expires_at = session_expiry(expires_in_minutes)
        try:
            session = stripe.checkout.Session.create(
                api_key=self.secret_key,
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": currency,
                            "product_data": {"name": description},
                            "unit_amount": to_cents(amount),
                        },
                        "quantity": 1,
                    }
                ],
                success_url=success_url,
                cancel_url=cancel_url,
                customer_email=customer_email,
                client_reference_id=order_id,
                metadata=metadata,
                expires_at=int(expires_at.timestamp()),
            )
        except stripe.StripeError as exc:
            logger.error("Checkout session for %s rejected: %s", order_id, exc)
            raise PaymentProviderError(f"Payment provider error: {exc.user_message or exc}") from exc
        return CheckoutSession(
            session_id=session.id,
            url=session.url,
            expires_at=expires_at,
            customer_id=session.get("customer"),
        )

    def expire_session(self, session_id: str) -> None:
        try:
            stripe.checkout.Session.expire(session_id, api_key=self.secret_key)
        except stripe.StripeError as exc:
            logger.warning("Could not expire checkout session %s: %s", session_id, exc)
            raise PaymentProviderError(f"Payment provider error: {exc.user_message or exc}") from exc

    def retrieve_session(self, session_id: str) -> dict:
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.secret_key)
        except stripe.StripeError as exc:
            logger.error("Checkout session %s lookup failed: %s", session_id, exc)
            raise PaymentProviderError(f"Payment provider error: {exc.user_message or exc}") from exc
        return {
            "id": session.id,
            "status": session.get("status"),
            "payment_status": session.get("payment_status"),
            "payment_intent": session.get("payment_intent"),
            "amount_total": session.get("amount_total"),
        }

    def create_refund(self, *, payment_intent_id: str | None, amount: Any, reason: str | None) -> ProviderRefund:
        if not payment_intent_id:
            raise ValidationError("No captured payment to refund")
        reason_code = reason if reason in ("duplicate", "fraudulent") else "requested_by_customer"
        try:
            refund = stripe.Refund.create(
                api_key=self.secret_key,
                payment_intent=payment_intent_id,
                amount=to_cents(amount),
                reason=reason_code,
            )
        except stripe.StripeError as exc:
            logger.error("Refund for %s rejected: %s", payment_intent_id, exc)
            raise PaymentProviderError(f"Payment provider error: {exc.user_message or exc}") from exc
        return ProviderRefund(refund_id=refund.id, status=refund.status or "pending")

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict:
        return verify_signature(payload, signature, self.webhook_secret)


class LocalCheckoutProvider(PaymentProvider):
    """Offline provider: sessions are local URLs and refunds always succeed."""

    name = "local"

    def __init__(self, site_url: str = "http://localhost:5000", webhook_secret: str | None = None) -> None:
        self.site_url = site_url.rstrip("/")
        self.webhook_secret = webhook_secret
        self.fail_with: str | None = None
        self.sessions: dict[str, dict] = {}
        self.refunds: list[dict] = []

    def _maybe_fail(self) -> None:
        if self.fail_with:
            message, self.fail_with = self.fail_with, None
            raise PaymentProviderError(message)

    def create_checkout_session(
        self,
        *,
        order_id: str,
        amount: Any,
        currency: str,
        description: str,
        customer_email: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        expires_in_minutes: int,
    ) -> CheckoutSession:
        self._maybe_fail()
        session_id = f"cs_local_{secrets.token_hex(12)}"
        self.sessions[session_id] = {
            "order_id": order_id,
            "amount": to_cents(amount),
            "currency": currency,
            "metadata": dict(metadata),
            "status": "open",
            "payment_status": "unpaid",
            "payment_intent": None,
        }
        return CheckoutSession(
            session_id=session_id,
            url=success_url.replace("{CHECKOUT_SESSION_ID}", session_id),
            expires_at=session_expiry(expires_in_minutes),
        )

    def _session(self, session_id: str) -> dict:
        session = self.sessions.get(session_id)
        if session is None:
            raise PaymentProviderError(f"No such checkout session: {session_id}")
        return session

    def complete_session(self, session_id: str, payment_intent_id: str | None = None) -> dict:
        """Mark a session paid, as if the customer finished the hosted page."""

        session = self._session(session_id)
        if session["status"] != "open":
            raise PaymentProviderError(f"Checkout session {session_id} is {session['status']}")
        session.update(
            status="complete",
            payment_status="paid",
            payment_intent=payment_intent_id or f"pi_local_{secrets.token_hex(8)}",
        )
        return self.retrieve_session(session_id)

    def expire_session(self, session_id: str) -> None:
        self._maybe_fail()
        session = self._session(session_id)
        if session["status"] != "open":
            raise PaymentProviderError(f"Checkout session {session_id} is {session['status']}")
        session["status"] = "expired"

    def retrieve_session(self, session_id: str) -> dict:
        session = self._session(session_id)
        return {
            "id": session_id,
            "status": session["status"],
            "payment_status": session["payment_status"],
            "payment_intent": session["payment_intent"],
            "amount_total": session["amount"],
        }

    def create_refund(self, *, payment_intent_id: str | None, amount: Any, reason: str | None) -> ProviderRefund:
        self._maybe_fail()
        refund = ProviderRefund(refund_id=f"re_local_{secrets.token_hex(8)}", status="succeeded")
        self.refunds.append({"payment_intent": payment_intent_id, "amount": to_cents(amount), "reason": reason})
        return refund

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict:
        if self.webhook_secret:
            return verify_signature(payload, signature, self.webhook_secret)
        try:
            return json.loads(payload)
        except ValueError as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc
