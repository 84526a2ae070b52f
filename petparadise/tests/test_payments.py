import datetime as dt
import time
import unittest
from unittest import mock

import stripe

from petparadise.boarding.errors import PaymentProviderError, ValidationError
from petparadise.boarding.payments import (
    MAX_SESSION_MINUTES,
    MIN_SESSION_MINUTES,
    LocalCheckoutProvider,
    StripeCheckoutProvider,
    session_expiry,
    sign_payload,
    verify_signature,
)


def checkout_kwargs(**overrides):
    kwargs = {
        "order_id": "ORD-1",
        "amount": 135,
        "currency": "usd",
        "description": "Booking PP-1",
        "customer_email": "jordan@example.com",
        "metadata": {"orderId": "ORD-1"},
        "success_url": "https://example.com/success?session_id={CHECKOUT_SESSION_ID}",
        "cancel_url": "https://example.com/cancel",
        "expires_in_minutes": 30,
    }
    kwargs.update(overrides)
    return kwargs


class SessionExpiryTestCase(unittest.TestCase):
    def test_expiry_is_clamped_to_accepted_window(self) -> None:
        now = dt.datetime(2030, 1, 1, 12, 0, 0, 500000, tzinfo=dt.timezone.utc)
        self.assertEqual(session_expiry(30, now), now.replace(microsecond=0) + dt.timedelta(minutes=31))
        self.assertEqual(session_expiry(90, now), now.replace(microsecond=0) + dt.timedelta(minutes=90))
        self.assertEqual(session_expiry(5000, now), now.replace(microsecond=0) + dt.timedelta(hours=24))
        self.assertEqual(MIN_SESSION_MINUTES, 31)
        self.assertEqual(MAX_SESSION_MINUTES, 1440)


class StripeCheckoutProviderTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = StripeCheckoutProvider("sk_test_123", "whsec_test")

    def fake_session(self):
        session = mock.MagicMock()
        session.id = "cs_test_1"
        session.url = "https://checkout.stripe.com/c/pay/cs_test_1"
        session.get.return_value = None
        return session

    def test_short_expiry_is_raised_to_the_minimum(self) -> None:
        with mock.patch("stripe.checkout.Session.create", return_value=self.fake_session()) as create:
            before = time.time()
            session = self.provider.create_checkout_session(**checkout_kwargs(expires_in_minutes=30))
        kwargs = create.call_args.kwargs
        self.assertIsInstance(kwargs["expires_at"], int)
        self.assertGreaterEqual(kwargs["expires_at"] - before, 30 * 60)
        self.assertEqual(kwargs["expires_at"], int(session.expires_at.timestamp()))
        self.assertEqual(kwargs["line_items"][0]["price_data"]["unit_amount"], 13500)
        self.assertEqual(kwargs["api_key"], "sk_test_123")
        self.assertEqual(session.session_id, "cs_test_1")
        self.assertIsNone(session.customer_id)

    def test_long_expiry_is_capped_at_a_day(self) -> None:
        with mock.patch("stripe.checkout.Session.create", return_value=self.fake_session()) as create:
            self.provider.create_checkout_session(**checkout_kwargs(expires_in_minutes=5000))
            after = time.time()
        self.assertLessEqual(create.call_args.kwargs["expires_at"] - after, 24 * 60 * 60)

    def test_rejected_session_raises_provider_error(self) -> None:
        error = stripe.InvalidRequestError("expires_at must be at least 30 minutes away", "expires_at")
        with mock.patch("stripe.checkout.Session.create", side_effect=error):
            with self.assertLogs("petparadise.boarding.payments", level="ERROR"):
                with self.assertRaises(PaymentProviderError):
                    self.provider.create_checkout_session(**checkout_kwargs())

    def test_expire_session(self) -> None:
        with mock.patch("stripe.checkout.Session.expire") as expire:
            self.provider.expire_session("cs_test_1")
        expire.assert_called_once_with("cs_test_1", api_key="sk_test_123")

        error = stripe.InvalidRequestError("No such checkout session", "session")
        with mock.patch("stripe.checkout.Session.expire", side_effect=error):
            with self.assertLogs("petparadise.boarding.payments", level="WARNING"):
                with self.assertRaises(PaymentProviderError):
                    self.provider.expire_session("cs_missing")

    def test_retrieve_session(self) -> None:
        session = mock.MagicMock()
        session.id = "cs_test_1"
        session.get.side_effect = {
            "status": "complete",
            "payment_status": "paid",
            "payment_intent": "pi_1",
            "amount_total": 13500,
        }.get
        with mock.patch("stripe.checkout.Session.retrieve", return_value=session):
            result = self.provider.retrieve_session("cs_test_1")
        self.assertEqual(
            result,
            {
                "id": "cs_test_1",
                "status": "complete",
                "payment_status": "paid",
                "payment_intent": "pi_1",
                "amount_total": 13500,
            },
        )

    def test_refund_requires_a_captured_payment(self) -> None:
        with self.assertRaises(ValidationError):
            self.provider.create_refund(payment_intent_id=None, amount=10, reason=None)
        refund = mock.MagicMock(id="re_1", status="succeeded")
        with mock.patch("stripe.Refund.create", return_value=refund) as create:
            result = self.provider.create_refund(payment_intent_id="pi_1", amount=12.5, reason="Change of plans")
        self.assertEqual(result.refund_id, "re_1")
        self.assertEqual(create.call_args.kwargs["amount"], 1250)
        self.assertEqual(create.call_args.kwargs["reason"], "requested_by_customer")


class WebhookSignatureTestCase(unittest.TestCase):
    def test_signed_payload_round_trips(self) -> None:
        body = '{"type": "checkout.session.completed"}'
        event = verify_signature(body, sign_payload(body, "whsec_test"), "whsec_test")
        self.assertEqual(event["type"], "checkout.session.completed")

    def test_stale_or_missing_signature_is_rejected(self) -> None:
        body = "{}"
        with self.assertRaises(ValidationError):
            verify_signature(body, None, "whsec_test")
        stale = sign_payload(body, "whsec_test", timestamp=int(time.time()) - 3600)
        with self.assertRaises(ValidationError):
            verify_signature(body, stale, "whsec_test")


class LocalCheckoutProviderTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = LocalCheckoutProvider()

    def test_session_lifecycle(self) -> None:
        session = self.provider.create_checkout_session(**checkout_kwargs())
        self.assertIn(session.session_id, session.url)
        self.assertEqual(self.provider.retrieve_session(session.session_id)["payment_status"], "unpaid")

        paid = self.provider.complete_session(session.session_id, "pi_local")
        self.assertEqual(paid["payment_status"], "paid")
        self.assertEqual(paid["amount_total"], 13500)
        with self.assertRaises(PaymentProviderError):
            self.provider.expire_session(session.session_id)

    def test_expired_session_cannot_be_paid(self) -> None:
        session = self.provider.create_checkout_session(**checkout_kwargs())
        self.provider.expire_session(session.session_id)
        self.assertEqual(self.provider.retrieve_session(session.session_id)["status"], "expired")
        with self.assertRaises(PaymentProviderError):
            self.provider.complete_session(session.session_id)
        with self.assertRaises(PaymentProviderError):
            self.provider.retrieve_session("cs_unknown")


if __name__ == "__main__":
    unittest.main()
