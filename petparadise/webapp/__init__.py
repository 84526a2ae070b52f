"""Flask application exposing the boarding platform as a JSON API."""

from __future__ import annotations

import datetime as dt
import hmac
import logging
from functools import wraps
from typing import Any, Callable, Mapping

from flask import Flask, Response, g, jsonify, request
from werkzeug.exceptions import HTTPException

from petparadise.boarding.auth import ACCESS, REFRESH, create_token, decode_token
from petparadise.boarding.errors import (
    AuthenticationError,
    AuthorizationError,
    BoardingError,
    ValidationError,
)
from petparadise.boarding.payments import LocalCheckoutProvider, PaymentProvider, StripeCheckoutProvider
from petparadise.boarding.system import BoardingSystem
from petparadise.config import Config

logger = logging.getLogger(__name__)

STAFF_ROLES = ("staff", "admin")


def _payload() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if data.get(key) not in (None, ""):
            return data[key]
    return default


def _ok(data: Any = None, message: str | None = None, status: int = 200) -> tuple[Response, int]:
    return jsonify({"success": True, "data": data, "message": message}), status


def _normalise_service(service: str | None, pet_type: str | None) -> str | None:
    """Map the calendar widget's service names onto configured service keys."""

    if not service:
        return None
    service = service.replace("_", "-").lower()
    if service in ("overnight", "boarding"):
        return f"{pet_type or 'dog'}-boarding"
    if service == "daycare":
        return "dog-daycare"
    return service


def _pet_list(value: Any) -> list[dict]:
    if not isinstance(value, list) or not all(isinstance(pet, dict) for pet in value):
        raise ValidationError("Pets must be a list of pet details")
    return value


def _checkout_request(data: Mapping[str, Any]) -> dict:
    """Accept both the multi-step booking form and the calendar payload."""

    booking = data.get("booking")
    if isinstance(booking, dict):
        pets = _pet_list(booking.get("pets") or [])
        pet_type = booking.get("petType") or (pets[0].get("type") if pets else None)
        return {
            "service_type": _normalise_service(booking.get("serviceType"), pet_type),
            "start_date": booking.get("checkInDate"),
            "end_date": booking.get("checkOutDate"),
            "pets": pets,
            "add_ons": booking.get("addOns") or [],
            "special_requests": booking.get("specialRequests"),
            "payment_type": booking.get("paymentType") or "full",
            "client_total": booking.get("totalPrice"),
        }
    pets = _pet_list(
        data.get("pets")
        or [
            {
                "name": data.get("petName"),
                "type": data.get("petType"),
                "breed": data.get("petBreed"),
                "special_needs": data.get("specialNeeds"),
            }
        ]
    )
    pet_type = data.get("petType") or (pets[0].get("type") if pets else None)
    return {
        "service_type": _normalise_service(_pick(data, "serviceType", "service"), pet_type),
        "start_date": _pick(data, "checkIn", "checkInDate"),
        "end_date": _pick(data, "checkOut", "checkOutDate"),
        "pets": pets,
        "add_ons": data.get("addOns") or [],
        "special_requests": _pick(data, "specialRequests", "specialNeeds"),
        "payment_type": data.get("paymentType") or "full",
        "client_total": data.get("totalPrice"),
    }


def create_app(
    database_path: str | None = None,
    config: Mapping[str, Any] | None = None,
    payment_provider: PaymentProvider | None = None,
) -> Flask:
    """Create and configure the Flask application."""

    app = Flask(__name__)
    app.config.from_object(Config)
    if config:
        app.config.update(config)
    if database_path:
        app.config["DATABASE_PATH"] = database_path

    if payment_provider is None:
        if app.config.get("STRIPE_SECRET_KEY"):
            payment_provider = StripeCheckoutProvider(
                app.config["STRIPE_SECRET_KEY"], app.config.get("STRIPE_WEBHOOK_SECRET") or ""
            )
        else:
            payment_provider = LocalCheckoutProvider(
                app.config["SITE_URL"], app.config.get("STRIPE_WEBHOOK_SECRET")
            )

    system = BoardingSystem(
        app.config["DATABASE_PATH"],
        payment_provider=payment_provider,
        discount_policy=app.config["DISCOUNT_POLICY"],
        site_url=app.config["SITE_URL"],
        currency=app.config["CURRENCY"],
        checkout_expiry_minutes=app.config["CHECKOUT_EXPIRY_MINUTES"],
        admin_email=app.config.get("ADMIN_EMAIL"),
        deposit_percentage=app.config.get("DEPOSIT_PERCENTAGE"),
    )
    app.extensions["boarding"] = system
    secure_cookies = app.config["APP_ENV"] == "production"

    # ------------------------------------------------------------------
    # Error responses
    # ------------------------------------------------------------------
    @app.errorhandler(BoardingError)
    def handle_boarding_error(exc: BoardingError) -> Any:
        if exc.status >= 500:
            logger.error("%s: %s", exc.code, exc)
        return jsonify({"success": False, "error": str(exc), "code": exc.code}), exc.status

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException) -> Any:
        code = (exc.name or "error").upper().replace(" ", "_")
        return jsonify({"success": False, "error": exc.description, "code": code}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc: Exception) -> Any:
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return (
            jsonify({"success": False, "error": "Internal server error", "code": "INTERNAL_ERROR"}),
            500,
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def issue_tokens(response: Response, user: dict) -> Response:
        for name, token_type, days in (
            ("token", ACCESS, app.config["ACCESS_TOKEN_DAYS"]),
            ("refreshToken", REFRESH, app.config["REFRESH_TOKEN_DAYS"]),
        ):
            token = create_token(
                user,
                secret=app.config["JWT_SECRET"],
                algorithm=app.config["JWT_ALGORITHM"],
                token_type=token_type,
                expires_in=dt.timedelta(days=days),
            )
            response.set_cookie(
                name,
                token,
                max_age=days * 24 * 60 * 60,
                httponly=True,
                secure=secure_cookies,
                samesite="Lax",
                path="/",
            )
        return response

    def clear_tokens(response: Response) -> Response:
        for name in ("token", "refreshToken"):
            response.delete_cookie(name, path="/", httponly=True, secure=secure_cookies, samesite="Lax")
        return response

    def current_user() -> dict:
        token = request.cookies.get("token")
        header = request.headers.get("Authorization", "")
        if header.startswith("Bearer "):
            token = header[len("Bearer "):]
        if not token:
            raise AuthenticationError("Authentication required")
        claims = decode_token(
            token,
            secret=app.config["JWT_SECRET"],
            algorithm=app.config["JWT_ALGORITHM"],
            token_type=ACCESS,
        )
        return system.user_for_token(claims)

    def optional_user() -> dict | None:
        try:
            return current_user()
        except (AuthenticationError, AuthorizationError):
            return None

    def login_required(view: Callable) -> Callable:
        @wraps(view)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            g.user = current_user()
            return view(*args, **kwargs)

        return wrapper

    def role_required(*roles: str) -> Callable:
        def decorator(view: Callable) -> Callable:
            @wraps(view)
            def wrapper(*args: Any, **kwargs: Any) -> Any:
                g.user = current_user()
                if g.user["role"] not in roles:
                    raise AuthorizationError("Insufficient permissions")
                return view(*args, **kwargs)

            return wrapper

        return decorator

    def cron_authorised() -> None:
        secret = app.config.get("CRON_SECRET")
        provided = request.headers.get("Authorization", "")
        if not secret or not hmac.compare_digest(provided, f"Bearer {secret}"):
            raise AuthenticationError("Unauthorized")

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------
    @app.post("/api/auth/register")
    def register() -> Any:
        data = _payload()
        user = system.register_user(
            email=data.get("email", ""),
            password=data.get("password", ""),
            name=data.get("name", ""),
            phone=data.get("phone"),
            confirm_password=data.get("confirmPassword"),
            referral_code=data.get("referralCode"),
        )
        response, status = _ok({"user": user}, "Registration successful", 201)
        return issue_tokens(response, user), status

    @app.post("/api/auth/login")
    def login() -> Any:
        data = _payload()
        if not data.get("email") or not data.get("password"):
            raise ValidationError("Email and password are required")
        user = system.login(email=data["email"], password=data["password"])
        response, status = _ok({"user": user}, "Login successful")
        return issue_tokens(response, user), status

    @app.post("/api/auth/refresh")
    def refresh() -> Any:
        token = request.cookies.get("refreshToken") or _payload().get("refreshToken")
        if not token:
            raise AuthenticationError("Refresh token required")
        claims = decode_token(
            token,
            secret=app.config["JWT_SECRET"],
            algorithm=app.config["JWT_ALGORITHM"],
            token_type=REFRESH,
        )
        user = system.user_for_token(claims)
        response, status = _ok({"user": user}, "Token refreshed")
        return issue_tokens(response, user), status

    @app.post("/api/auth/logout")
    def logout() -> Any:
        user = optional_user()
        if user:
            system.revoke_tokens(user["id"])
        response, status = _ok(message="Logged out")
        return clear_tokens(response), status

    @app.get("/api/auth/me")
    def me() -> Any:
        user = optional_user()
        if user is None:
            return jsonify({"success": False, "error": "Not authenticated", "code": "AUTHENTICATION_ERROR"})
        return _ok({"user": user})

    @app.post("/api/auth/forgot-password")
    def forgot_password() -> Any:
        email = _payload().get("email")
        if not email:
            raise ValidationError("Email is required")
        system.request_password_reset(email=email)
        return _ok(message="If that email is registered, a reset link has been sent")

    @app.post("/api/auth/reset-password")
    def reset_password() -> Any:
        data = _payload()
        system.reset_password(
            token=data.get("token", ""),
            password=data.get("password", ""),
            confirm_password=data.get("confirmPassword"),
        )
        response, status = _ok(message="Password has been reset")
        return clear_tokens(response), status

    # ------------------------------------------------------------------
    # Pricing & availability
    # ------------------------------------------------------------------
    @app.get("/api/services")
    def services() -> Any:
        return _ok(system.list_services())

    @app.post("/api/payments/calculate")
    def calculate() -> Any:
        data = _payload()
        pets = _pet_list(data.get("pets") or [])
        pet_count = data.get("petCount") or len([pet for pet in pets if (pet.get("name") or "").strip()])
        try:
            pet_count = int(pet_count or 0)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Pet count must be a number") from exc
        price = system.quote(
            service_type=_normalise_service(data.get("serviceType"), data.get("petType")),
            start_date=_pick(data, "checkInDate", "startDate", "checkIn"),
            end_date=_pick(data, "checkOutDate", "endDate", "checkOut"),
            pet_count=pet_count,
            add_ons=data.get("addOns") or [],
        )
        return _ok(price.as_dict())

    @app.get("/api/availability")
    def availability() -> Any:
        start = request.args.get("start_date") or dt.date.today().isoformat()
        end = request.args.get("end_date") or (
            dt.date.fromisoformat(start[:10]) + dt.timedelta(days=30)
        ).isoformat()
        days = system.availability_calendar(
            start_date=start, end_date=end, pet_type=request.args.get("pet_type")
        )
        return _ok({"days": days})

    @app.post("/api/availability")
    @role_required("admin")
    def update_availability() -> Any:
        data = _payload()
        changes = {
            "total": data.get("total"),
            "blocked": data.get("blocked"),
            "is_blocked": data.get("isBlocked"),
            "block_reason": data.get("blockReason"),
            "price_override": data.get("priceOverride"),
            "price_multiplier": data.get("priceMultiplier"),
            "notes": data.get("notes"),
        }
        day = system.update_availability(
            admin_id=g.user["id"],
            date=data.get("date"),
            pet_type=data.get("petType"),
            **{key: value for key, value in changes.items() if value is not None},
        )
        return _ok(day, "Availability updated")

    # ------------------------------------------------------------------
    # Booking checkout & payments
    # ------------------------------------------------------------------
    def checkout_response(result: dict) -> dict:
        booking = result["booking"]
        return {
            "url": result["url"],
            "sessionId": result["session_id"],
            "orderId": result["order"]["order_id"],
            "bookingId": booking["id"],
            "bookingNumber": booking["booking_number"],
            "amountDue": result["order"]["amount_due"],
            "pricing": booking["pricing"],
        }

    @app.post("/api/booking/checkout")
    @login_required
    def booking_checkout() -> Any:
        result = system.create_checkout(user_id=g.user["id"], **_checkout_request(_payload()))
        body = checkout_response(result)
        return jsonify({"success": True, "url": body["url"], "data": body, "message": None}), 201

    @app.post("/api/payments/checkout")
    @login_required
    def payment_checkout() -> Any:
        data = _payload()
        if not data.get("bookingId"):
            raise ValidationError("Booking ID is required")
        result = system.create_checkout_for_booking(
            int(data["bookingId"]),
            user_id=None if g.user["role"] in STAFF_ROLES else g.user["id"],
            payment_type=data.get("paymentType") or "full",
        )
        return _ok(checkout_response(result))

    @app.post("/api/payments/webhook")
    def payment_webhook() -> Any:
        event = system.payments.verify_webhook(
            request.get_data(), request.headers.get("Stripe-Signature")
        )
        result = system.handle_provider_event(event)
        return jsonify({"received": True, **result})

    @app.post("/api/payments/refund")
    @role_required("admin")
    def refund() -> Any:
        data = _payload()
        if not data.get("orderId"):
            raise ValidationError("Order ID is required")
        result = system.refund_order(
            data["orderId"],
            amount=data.get("amount"),
            reason=data.get("reason"),
            actor_id=g.user["id"],
        )
        return _ok(result, "Refund processed")

    @app.get("/api/payments/history")
    @login_required
    def payment_history() -> Any:
        return _ok({"payments": system.list_payments_for_user(g.user["id"])})

    @app.get("/api/booking/verify")
    @login_required
    def verify_booking() -> Any:
        session_id = request.args.get("session_id")
        if not session_id:
            raise ValidationError("Session ID required")
        result = system.verify_checkout_session(
            session_id, user_id=None if g.user["role"] in STAFF_ROLES else g.user["id"]
        )
        booking, order = result["booking"], result["order"]
        return _ok(
            {
                "bookingId": booking["id"],
                "bookingNumber": booking["booking_number"],
                "status": booking["status"],
                "paymentStatus": booking["payment_status"],
                "orderId": order["order_id"],
                "amountPaid": order["amounts"]["paid"],
                "booking": booking,
            }
        )

    # ------------------------------------------------------------------
    # Customer account
    # ------------------------------------------------------------------
    def pet_fields(data: Mapping[str, Any]) -> dict:
        mapping = {
            "name": "name",
            "species": "species",
            "type": "species",
            "breed": "breed",
            "size": "size",
            "weight": "weight",
            "birthDate": "birth_date",
            "vaccinated": "vaccinated",
            "spayedNeutered": "spayed_neutered",
            "microchipped": "microchipped",
            "dietaryNotes": "dietary_notes",
            "medicalNotes": "medical_notes",
            "behaviorNotes": "behavior_notes",
        }
        return {field: data[key] for key, field in mapping.items() if key in data}

    @app.get("/api/user/pets")
    @login_required
    def list_pets() -> Any:
        pets = system.list_pets(g.user["id"])
        for pet in pets:
            pet["vaccinations"] = system.list_vaccinations(pet_id=pet["id"])
        return _ok({"pets": pets})

    @app.post("/api/user/pets")
    @login_required
    def add_pet() -> Any:
        data = _payload()
        pet = system.add_pet(g.user["id"], **pet_fields(data))
        for record in data.get("vaccinations") or []:
            system.record_vaccination(
                pet_id=pet["id"],
                name=record.get("name", ""),
                date=record.get("date"),
                expiry_date=record.get("expiryDate"),
                owner_id=g.user["id"],
            )
        return _ok({"pet": pet}, "Pet added", 201)

    @app.put("/api/user/pets/<int:pet_id>")
    @login_required
    def update_pet(pet_id: int) -> Any:
        pet = system.update_pet(pet_id, owner_id=g.user["id"], **pet_fields(_payload()))
        return _ok({"pet": pet}, "Pet updated")

    @app.delete("/api/user/pets/<int:pet_id>")
    @login_required
    def delete_pet(pet_id: int) -> Any:
        system.deactivate_pet(pet_id, owner_id=g.user["id"])
        return _ok(message="Pet removed")

    @app.put("/api/user/profile")
    @login_required
    def update_profile() -> Any:
        data = _payload()
        user = system.update_profile(
            g.user["id"],
            name=data.get("name"),
            phone=data.get("phone"),
            address=data.get("address"),
        )
        if data.get("newPassword"):
            user = system.change_password(
                g.user["id"],
                current_password=data.get("currentPassword", ""),
                new_password=data["newPassword"],
                confirm_password=data.get("confirmPassword"),
            )
            response, status = _ok({"user": user}, "Profile updated")
            return issue_tokens(response, user), status
        return _ok({"user": user}, "Profile updated")

    @app.get("/api/user/bookings")
    @login_required
    def user_bookings() -> Any:
        bookings = system.list_bookings_for_user(g.user["id"], status=request.args.get("status"))
        return _ok({"bookings": bookings})

    @app.post("/api/user/bookings/<int:booking_id>/cancel")
    @login_required
    def user_cancel_booking(booking_id: int) -> Any:
        booking = system.cancel_booking(
            booking_id,
            actor_id=g.user["id"],
            user_id=g.user["id"],
            reason=_payload().get("reason"),
        )
        return _ok({"booking": booking}, "Booking cancelled")

    # ------------------------------------------------------------------
    # Staff & admin
    # ------------------------------------------------------------------
    @app.get("/api/admin/bookings")
    @role_required(*STAFF_ROLES)
    def admin_bookings() -> Any:
        bookings = system.list_bookings(
            status=request.args.get("status"),
            start_date=request.args.get("start_date"),
            end_date=request.args.get("end_date"),
        )
        return _ok({"bookings": bookings})

    @app.post("/api/admin/bookings/<int:booking_id>/check-in")
    @role_required(*STAFF_ROLES)
    def admin_check_in(booking_id: int) -> Any:
        return _ok({"booking": system.check_in(booking_id, staff_id=g.user["id"])}, "Checked in")

    @app.post("/api/admin/bookings/<int:booking_id>/check-out")
    @role_required(*STAFF_ROLES)
    def admin_check_out(booking_id: int) -> Any:
        return _ok({"booking": system.check_out(booking_id, staff_id=g.user["id"])}, "Checked out")

    @app.post("/api/admin/bookings/<int:booking_id>/no-show")
    @role_required(*STAFF_ROLES)
    def admin_no_show(booking_id: int) -> Any:
        return _ok({"booking": system.mark_no_show(booking_id, staff_id=g.user["id"])}, "Marked as no-show")

    @app.post("/api/admin/bookings/<int:booking_id>/cancel")
    @role_required(*STAFF_ROLES)
    def admin_cancel_booking(booking_id: int) -> Any:
        data = _payload()
        booking = system.cancel_booking(
            booking_id,
            actor_id=g.user["id"],
            reason=data.get("reason"),
            refund_amount=data.get("refundAmount"),
        )
        return _ok({"booking": booking}, "Booking cancelled")

    @app.get("/api/admin/users")
    @role_required("admin")
    def admin_users() -> Any:
        users = system.list_users(role=request.args.get("role"), status=request.args.get("status"))
        return _ok({"users": users})

    @app.put("/api/admin/users/<int:user_id>/status")
    @role_required("admin")
    def admin_user_status(user_id: int) -> Any:
        user = system.set_user_status(
            admin_id=g.user["id"], user_id=user_id, status=_payload().get("status", "")
        )
        return _ok({"user": user}, "User updated")

    @app.put("/api/admin/settings/<key>")
    @role_required("admin")
    def admin_setting(key: str) -> Any:
        data = _payload()
        if "value" not in data:
            raise ValidationError("Value is required")
        value = system.set_setting(key, data["value"], admin_id=g.user["id"])
        return _ok({"key": key, "value": value}, "Setting updated")

    @app.get("/api/admin/analytics")
    @role_required("admin")
    def admin_analytics() -> Any:
        return _ok(system.analytics(admin_id=g.user["id"], period=request.args.get("period", "30d")))

    # ------------------------------------------------------------------
    # Daily report cards
    # ------------------------------------------------------------------
    def report_card_fields(data: Mapping[str, Any]) -> dict:
        mapping = {
            "activities": "activities",
            "meals": "meals",
            "healthObservations": "health",
            "walks": "walks",
            "media": "media",
            "staffNotes": "staff_notes",
            "messageToParent": "message_to_parent",
            "highlights": "highlights",
            "overallMood": "overall_mood",
            "status": "status",
        }
        return {field: data[key] for key, field in mapping.items() if key in data}

    @app.get("/api/report-cards")
    @login_required
    def report_cards() -> Any:
        reports = system.list_report_cards(
            user=g.user,
            booking_id=request.args.get("bookingId", type=int),
            pet_id=request.args.get("petId", type=int),
            status=request.args.get("status"),
            start_date=request.args.get("startDate"),
            end_date=request.args.get("endDate"),
        )
        return _ok({"reports": reports})

    @app.post("/api/report-cards")
    @role_required(*STAFF_ROLES)
    def create_report_card() -> Any:
        data = _payload()
        fields = report_card_fields(data)
        fields.pop("status", None)
        report = system.create_report_card(
            staff_id=g.user["id"],
            booking_id=data.get("bookingId"),
            date=data.get("date"),
            pet_id=data.get("petId"),
            **fields,
        )
        return _ok(report, "Report card created", 201)

    @app.get("/api/report-cards/<int:report_id>")
    @login_required
    def get_report_card(report_id: int) -> Any:
        return _ok(system.get_report_card(report_id, user=g.user))

    @app.put("/api/report-cards/<int:report_id>")
    @role_required(*STAFF_ROLES)
    def update_report_card(report_id: int) -> Any:
        report = system.update_report_card(
            report_id, staff_id=g.user["id"], **report_card_fields(_payload())
        )
        return _ok(report, "Report card updated")

    @app.delete("/api/report-cards/<int:report_id>")
    @role_required("admin")
    def delete_report_card(report_id: int) -> Any:
        return _ok(system.delete_report_card(report_id, admin_id=g.user["id"]), "Report card deleted")

    @app.post("/api/report-cards/<int:report_id>/send")
    @role_required(*STAFF_ROLES)
    def send_report_card(report_id: int) -> Any:
        result = system.send_report_card(report_id, staff_id=g.user["id"])
        return _ok(
            {"report": result["report"], "emailQueued": result["email"] is not None},
            "Report card sent successfully",
        )

    @app.get("/api/report-cards/booking/<int:booking_id>")
    @login_required
    def booking_report_cards(booking_id: int) -> Any:
        return _ok(system.booking_report_cards(booking_id, user=g.user))

    # ------------------------------------------------------------------
    # Notifications, reviews & chat
    # ------------------------------------------------------------------
    @app.get("/api/notifications")
    @login_required
    def notifications() -> Any:
        unread_only = request.args.get("unread") in ("1", "true")
        items = system.list_notifications(g.user["id"], unread_only=unread_only)
        return _ok(
            {
                "notifications": items,
                "unreadCount": len(system.list_notifications(g.user["id"], unread_only=True)),
            }
        )

    @app.post("/api/notifications")
    @login_required
    def mark_notifications() -> Any:
        updated = system.mark_notification_read(
            g.user["id"], notification_ids=_payload().get("ids")
        )
        return _ok({"updated": updated})

    @app.get("/api/reviews")
    def reviews() -> Any:
        return _ok(system.list_reviews(limit=request.args.get("limit", 20, type=int)))

    @app.post("/api/reviews")
    @login_required
    def create_review() -> Any:
        data = _payload()
        if not data.get("bookingId"):
            raise ValidationError("Booking ID is required")
        review = system.create_review(
            user_id=g.user["id"],
            booking_id=int(data["bookingId"]),
            rating=data.get("rating"),
            title=data.get("title"),
            comment=data.get("comment"),
        )
        return _ok({"review": review}, "Thank you for your review", 201)

    @app.get("/api/chat")
    def chat() -> Any:
        user = optional_user()
        conversation_id = request.args.get("conversationId", type=int)
        if conversation_id:
            messages = system.list_chat_messages(conversation_id, user=user)
            return _ok({"messages": messages})
        if user is None:
            raise AuthenticationError("Authentication required")
        return _ok({"conversations": system.list_conversations(user=user)})

    @app.post("/api/chat")
    def post_chat() -> Any:
        data = _payload()
        result = system.post_chat_message(
            content=data.get("content", ""),
            conversation_id=data.get("conversationId"),
            user=optional_user(),
            visitor_info=data.get("visitorInfo"),
        )
        return _ok(result, status=201)

    @app.put("/api/chat")
    @role_required(*STAFF_ROLES)
    def update_chat() -> Any:
        data = _payload()
        if not data.get("conversationId"):
            raise ValidationError("Conversation ID is required")
        conversation = system.update_conversation(
            int(data["conversationId"]),
            staff_id=g.user["id"],
            status=data.get("status"),
            assigned_to=data.get("assignedTo"),
            priority=data.get("priority"),
        )
        return _ok({"conversation": conversation})

    # ------------------------------------------------------------------
    # Scheduled jobs & health
    # ------------------------------------------------------------------
    @app.post("/api/cron/reminders")
    def cron_reminders() -> Any:
        cron_authorised()
        return _ok(system.run_reminders())

    @app.post("/api/cron/cleanup")
    def cron_cleanup() -> Any:
        cron_authorised()
        return _ok(system.run_cleanup())

    @app.get("/api/health")
    def health() -> Any:
        system.conn.execute("SELECT 1").fetchone()
        return _ok({"status": "healthy", "environment": app.config["APP_ENV"]})

    return app


__all__ = ["create_app"]
