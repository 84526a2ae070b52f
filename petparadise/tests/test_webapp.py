import datetime as dt
import json
import unittest

from petparadise.boarding.payments import LocalCheckoutProvider, sign_payload
from petparadise.webapp import create_app

PASSWORD = "Passw0rd!"
WEBHOOK_SECRET = "whsec_test"


class WebAppTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = LocalCheckoutProvider(webhook_secret=WEBHOOK_SECRET)
        self.app = create_app(
            config={
                "TESTING": True,
                "DATABASE_PATH": ":memory:",
                "JWT_SECRET": "test-secret",
                "CRON_SECRET": "cron-secret",
                "ADMIN_EMAIL": "owner@example.com",
                "DEPOSIT_PERCENTAGE": None,
            },
            payment_provider=self.provider,
        )
        self.system = self.app.extensions["boarding"]
        self.client = self.app.test_client()
        self.start = dt.date.today() + dt.timedelta(days=14)

    def tearDown(self) -> None:
        self.system.close()

    def register(self, client, email="jordan@example.com", name="Jordan River"):
        return client.post(
            "/api/auth/register",
            json={"email": email, "password": PASSWORD, "confirmPassword": PASSWORD, "name": name},
        )

    def booking_payload(self, pets=2, nights=3, **extra):
        booking = {
            "serviceType": "cat-boarding",
            "petType": "cat",
            "checkInDate": self.start.isoformat(),
            "checkOutDate": (self.start + dt.timedelta(days=nights)).isoformat(),
            "pets": [{"name": f"Cat {i + 1}", "type": "cat"} for i in range(pets)],
            "specialRequests": "Window seat",
        }
        booking.update(extra)
        return {"booking": booking}

    def send_webhook(self, event, secret=WEBHOOK_SECRET):
        body = json.dumps(event)
        return self.client.post(
            "/api/payments/webhook",
            data=body,
            content_type="application/json",
            headers={"Stripe-Signature": sign_payload(body, secret)},
        )

    def test_register_sets_session_cookies(self) -> None:
        response = self.register(self.client)
        self.assertEqual(response.status_code, 201)
        self.assertTrue(response.get_json()["success"])
        cookies = response.headers.getlist("Set-Cookie")
        token_cookie = next(cookie for cookie in cookies if cookie.startswith("token="))
        self.assertIn("HttpOnly", token_cookie)
        self.assertIn("SameSite=Lax", token_cookie)
        self.assertNotIn("Secure", token_cookie)
        self.assertTrue(any(cookie.startswith("refreshToken=") for cookie in cookies))

    def test_me_login_and_logout(self) -> None:
        self.register(self.client)
        me = self.client.get("/api/auth/me").get_json()
        self.assertEqual(me["data"]["user"]["email"], "jordan@example.com")

        self.client.post("/api/auth/logout")
        response = self.client.get("/api/auth/me")
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.get_json()["success"])

        bad = self.client.post("/api/auth/login", json={"email": "jordan@example.com", "password": "nope"})
        self.assertEqual(bad.status_code, 401)
        self.assertEqual(bad.get_json()["code"], "AUTHENTICATION_ERROR")
        good = self.client.post("/api/auth/login", json={"email": "jordan@example.com", "password": PASSWORD})
        self.assertEqual(good.status_code, 200)
        self.assertTrue(self.client.get("/api/auth/me").get_json()["success"])

    def test_refresh_reissues_tokens(self) -> None:
        self.register(self.client)
        response = self.client.post("/api/auth/refresh")
        self.assertEqual(response.status_code, 200)
        self.assertTrue(any(c.startswith("token=") for c in response.headers.getlist("Set-Cookie")))

    def test_protected_routes_require_a_session(self) -> None:
        response = self.client.get("/api/user/bookings")
        self.assertEqual(response.status_code, 401)
        body = response.get_json()
        self.assertEqual(body, {"success": False, "error": "Authentication required", "code": "AUTHENTICATION_ERROR"})

    def test_customers_cannot_use_admin_routes(self) -> None:
        self.register(self.client)
        response = self.client.get("/api/admin/users")
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.get_json()["code"], "AUTHORIZATION_ERROR")

    def test_calculate_uses_server_pricing(self) -> None:
        response = self.client.post(
            "/api/payments/calculate",
            json={
                "serviceType": "dog-boarding",
                "checkInDate": "2030-01-01",
                "checkOutDate": "2030-01-08",
                "petCount": 1,
            },
        )
        data = response.get_json()["data"]
        self.assertEqual(data["total"], 266.0)
        self.assertEqual(data["days"], 7)

    def test_checkout_and_signed_webhook_confirm_booking(self) -> None:
        self.register(self.client)
        response = self.client.post("/api/booking/checkout", json=self.booking_payload(totalPrice=999))
        self.assertEqual(response.status_code, 201)
        body = response.get_json()
        self.assertTrue(body["url"])
        data = body["data"]
        self.assertEqual(data["pricing"]["total"], 135.0)
        self.assertEqual(data["amountDue"], 135.0)

        event = {
            "type": "checkout.session.completed",
            "data": {"object": {"id": data["sessionId"], "payment_intent": "pi_123", "amount_total": 13500}},
        }
        self.assertEqual(self.send_webhook(event).status_code, 200)
        self.assertEqual(self.send_webhook(event).status_code, 200)

        bookings = self.client.get("/api/user/bookings").get_json()["data"]["bookings"]
        self.assertEqual(bookings[0]["status"], "confirmed")
        self.assertEqual(bookings[0]["paid_amount"], 135.0)
        history = self.client.get("/api/payments/history").get_json()["data"]["payments"]
        self.assertEqual(history[0]["status"], "paid")

    def test_calendar_checkout_shape(self) -> None:
        self.register(self.client)
        response = self.client.post(
            "/api/booking/checkout",
            json={
                "serviceType": "overnight",
                "pets": [{"name": "Luna", "type": "cat", "breed": "Persian"}],
                "checkIn": f"{self.start.isoformat()}T00:00:00.000Z",
                "checkOut": f"{(self.start + dt.timedelta(days=2)).isoformat()}T00:00:00.000Z",
                "addOns": ["photos"],
                "totalPrice": 60,
            },
        )
        self.assertEqual(response.status_code, 201)
        data = response.get_json()["data"]
        self.assertEqual(data["pricing"]["total"], 60.0)
        booking = self.system.get_booking(data["bookingId"])
        self.assertEqual(booking["service_type"], "cat-boarding")
        self.assertEqual(booking["pet_details"][0]["breed"], "Persian")

    def test_webhook_with_bad_signature_is_rejected(self) -> None:
        response = self.send_webhook({"type": "checkout.session.completed"}, secret="wrong")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["code"], "VALIDATION_ERROR")

    def test_capacity_error_envelope(self) -> None:
        admin = self.app.test_client()
        self.register(admin, email="owner@example.com", name="Olive Owner")
        update = admin.post(
            "/api/availability",
            json={"date": self.start.isoformat(), "petType": "cat", "total": 1},
        )
        self.assertEqual(update.status_code, 200)
        self.assertEqual(update.get_json()["data"]["available"], 1)

        self.register(self.client)
        response = self.client.post("/api/booking/checkout", json=self.booking_payload())
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.get_json()["code"], "CAPACITY_EXCEEDED")

        calendar = self.client.get(
            f"/api/availability?start_date={self.start.isoformat()}&end_date={self.start.isoformat()}&pet_type=cat"
        ).get_json()["data"]["days"]
        self.assertEqual(calendar[0]["cat"]["booked"], 0)

    def test_cancel_paid_booking_through_api(self) -> None:
        self.register(self.client)
        data = self.client.post("/api/booking/checkout", json=self.booking_payload()).get_json()["data"]
        self.system.handle_checkout_completed(data["sessionId"], payment_intent_id="pi_1")
        response = self.client.post(f"/api/user/bookings/{data['bookingId']}/cancel", json={"reason": "Sick"})
        self.assertEqual(response.status_code, 200)
        booking = response.get_json()["data"]["booking"]
        self.assertEqual(booking["status"], "cancelled")
        self.assertEqual(booking["payment_status"], "refunded")
        again = self.client.post(f"/api/user/bookings/{data['bookingId']}/cancel")
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.get_json()["code"], "INVALID_TRANSITION")

    def test_malformed_pet_lists_are_rejected(self) -> None:
        self.register(self.client)
        for payload in (
            {"booking": {**self.booking_payload()["booking"], "pets": ["Cat 1"]}},
            {"serviceType": "overnight", "pets": "Luna", "checkIn": self.start.isoformat()},
            {"serviceType": "overnight", "pets": [{"name": "Luna"}, 7], "checkIn": self.start.isoformat()},
        ):
            with self.subTest(payload=payload):
                response = self.client.post("/api/booking/checkout", json=payload)
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.get_json()["code"], "VALIDATION_ERROR")
        calculate = self.client.post(
            "/api/payments/calculate", json={"serviceType": "cat-boarding", "pets": ["Luna"]}
        )
        self.assertEqual(calculate.status_code, 400)
        self.assertEqual(self.system.list_bookings(), [])

    def test_verify_booking_after_hosted_checkout(self) -> None:
        self.register(self.client)
        data = self.client.post("/api/booking/checkout", json=self.booking_payload()).get_json()["data"]
        self.assertEqual(self.client.get("/api/booking/verify").status_code, 400)
        unpaid = self.client.get(f"/api/booking/verify?session_id={data['sessionId']}")
        self.assertEqual(unpaid.status_code, 400)
        self.assertEqual(unpaid.get_json()["error"], "Payment not completed")

        self.provider.complete_session(data["sessionId"], "pi_hosted")
        verified = self.client.get(f"/api/booking/verify?session_id={data['sessionId']}")
        self.assertEqual(verified.status_code, 200)
        body = verified.get_json()["data"]
        self.assertEqual(body["status"], "confirmed")
        self.assertEqual(body["paymentStatus"], "paid")
        self.assertEqual(body["amountPaid"], 135.0)

        other = self.app.test_client()
        self.register(other, email="casey@example.com", name="Casey")
        self.assertEqual(other.get(f"/api/booking/verify?session_id={data['sessionId']}").status_code, 404)

    def test_charge_refunded_webhook_records_refund(self) -> None:
        self.register(self.client)
        data = self.client.post("/api/booking/checkout", json=self.booking_payload()).get_json()["data"]
        self.system.handle_checkout_completed(data["sessionId"], payment_intent_id="pi_1")
        event = {
            "type": "charge.refunded",
            "data": {"object": {"payment_intent": "pi_1", "amount_refunded": 13500, "refunds": {"data": []}}},
        }
        response = self.send_webhook(event)
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.get_json()["handled"])
        booking = self.system.get_booking(data["bookingId"])
        self.assertEqual(booking["payment_status"], "refunded")
        self.assertEqual(booking["refunded_amount"], 135.0)

    def test_report_card_routes(self) -> None:
        admin = self.app.test_client()
        self.register(admin, email="owner@example.com", name="Olive Owner")
        self.register(self.client)
        data = self.client.post("/api/booking/checkout", json=self.booking_payload()).get_json()["data"]
        self.system.handle_checkout_completed(data["sessionId"], payment_intent_id="pi_1")

        refused = self.client.post(
            "/api/report-cards", json={"bookingId": data["bookingId"], "date": self.start.isoformat()}
        )
        self.assertEqual(refused.status_code, 403)
        created = admin.post(
            "/api/report-cards",
            json={
                "bookingId": data["bookingId"],
                "date": self.start.isoformat(),
                "healthObservations": {"overallCondition": "excellent", "energyLevel": 4},
                "walks": [{"duration": 25}],
                "messageToParent": "Lots of zoomies",
            },
        )
        self.assertEqual(created.status_code, 201)
        report = created.get_json()["data"]
        self.assertEqual(report["overall_mood"], "excellent")
        self.assertEqual(admin.post("/api/report-cards", json={"date": self.start.isoformat()}).status_code, 400)

        self.assertEqual(self.client.get(f"/api/report-cards/{report['id']}").status_code, 404)
        sent = admin.post(f"/api/report-cards/{report['id']}/send")
        self.assertEqual(sent.status_code, 200)
        self.assertTrue(sent.get_json()["data"]["emailQueued"])
        self.assertEqual(admin.post(f"/api/report-cards/{report['id']}/send").status_code, 400)

        viewed = self.client.get(f"/api/report-cards/{report['id']}").get_json()["data"]
        self.assertIsNotNone(viewed["viewed_at"])
        self.assertEqual(len(self.client.get("/api/report-cards").get_json()["data"]["reports"]), 1)
        summary = self.client.get(f"/api/report-cards/booking/{data['bookingId']}").get_json()["data"]["summary"]
        self.assertEqual(summary["total_walk_minutes"], 25)
        self.assertEqual(summary["average_mood"], "Excellent")

        updated = admin.put(f"/api/report-cards/{report['id']}", json={"staffNotes": "Ate everything"})
        self.assertEqual(updated.get_json()["data"]["staff_notes"], "Ate everything")
        self.assertEqual(self.client.delete(f"/api/report-cards/{report['id']}").status_code, 403)
        self.assertEqual(admin.delete(f"/api/report-cards/{report['id']}").status_code, 200)
        self.assertEqual(admin.get(f"/api/report-cards/{report['id']}").status_code, 404)

    def test_admin_analytics_route(self) -> None:
        admin = self.app.test_client()
        self.register(admin, email="owner@example.com", name="Olive Owner")
        self.register(self.client)
        data = self.client.post("/api/booking/checkout", json=self.booking_payload()).get_json()["data"]
        self.system.handle_checkout_completed(data["sessionId"], payment_intent_id="pi_1")

        self.assertEqual(self.client.get("/api/admin/analytics").status_code, 403)
        response = admin.get("/api/admin/analytics?period=7d")
        self.assertEqual(response.status_code, 200)
        body = response.get_json()["data"]
        self.assertEqual(body["period"], "7d")
        self.assertEqual(body["overview"]["revenue"], 135.0)
        self.assertEqual(body["recent_orders"][0]["customer"], "Jordan River")

    def test_pet_management(self) -> None:
        self.register(self.client)
        created = self.client.post(
            "/api/user/pets",
            json={"name": "Mochi", "species": "cat", "vaccinations": [{"name": "FVRCP", "expiryDate": "2031-01-01"}]},
        )
        self.assertEqual(created.status_code, 201)
        pet_id = created.get_json()["data"]["pet"]["id"]
        updated = self.client.put(f"/api/user/pets/{pet_id}", json={"breed": "Siamese"})
        self.assertEqual(updated.get_json()["data"]["pet"]["breed"], "Siamese")
        pets = self.client.get("/api/user/pets").get_json()["data"]["pets"]
        self.assertEqual(len(pets[0]["vaccinations"]), 1)
        self.client.delete(f"/api/user/pets/{pet_id}")
        self.assertEqual(self.client.get("/api/user/pets").get_json()["data"]["pets"], [])

    def test_cron_requires_bearer_secret(self) -> None:
        self.assertEqual(self.client.post("/api/cron/reminders").status_code, 401)
        response = self.client.post(
            "/api/cron/cleanup", headers={"Authorization": "Bearer cron-secret"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["data"]["failed"], 0)

    def test_health_and_unknown_route(self) -> None:
        self.assertEqual(self.client.get("/api/health").get_json()["data"]["status"], "healthy")
        missing = self.client.get("/api/nope")
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.get_json()["code"], "NOT_FOUND")


if __name__ == "__main__":
    unittest.main()
