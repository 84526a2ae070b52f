"""Core orchestration logic for the Pet Paradise boarding platform."""

from __future__ import annotations

import datetime as dt
import hashlib
import json
import logging
import re
import secrets
import sqlite3
import threading
import time
from decimal import Decimal
from typing import Any, Iterable, Sequence

from . import lifecycle
from .availability import PET_TYPES, AvailabilityLedger, stay_dates
from .database import get_connection, get_setting, initialize_database, set_setting, transaction
from .errors import (
    AuthenticationError,
    AuthorizationError,
    BoardingError,
    DuplicateError,
    InvalidRefundAmount,
    InvalidTransition,
    NotFound,
    PaymentProviderError,
    ValidationError,
)
from .payments import LocalCheckoutProvider, PaymentProvider
from .pricing import (
    DISCOUNT_POLICIES,
    STACKED,
    PriceQuote,
    PricingRules,
    deposit_amount,
    quote as price_quote,
    stay_nights,
    to_money,
)

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
ROLES = ("customer", "staff", "admin")
USER_STATUSES = ("active", "suspended", "banned", "pending")
STAFF_ROLES = ("staff", "admin")
SPECIES = ("cat", "dog")
PET_SIZES = ("small", "medium", "large")
PAYMENT_TYPES = ("full", "deposit")
REFERENCE_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
RESET_TOKEN_TTL = dt.timedelta(hours=1)
PET_FIELDS = (
    "name",
    "species",
    "breed",
    "size",
    "weight",
    "birth_date",
    "vaccinated",
    "spayed_neutered",
    "microchipped",
    "dietary_notes",
    "medical_notes",
    "behavior_notes",
)
PRICING_FIELDS = (
    "daily_rate",
    "days",
    "subtotal",
    "add_ons_total",
    "discount",
    "discount_reason",
    "tax",
    "total",
)
MOOD_SCORES = {"excellent": 5, "great": 4, "good": 3, "okay": 2, "needs_attention": 1}
MOODS = tuple(MOOD_SCORES)
REPORT_STATUSES = ("draft", "completed", "sent")
REPORT_JSON_FIELDS = ("activities", "meals", "health", "walks", "media", "highlights")
REPORT_UPDATE_FIELDS = REPORT_JSON_FIELDS + ("staff_notes", "message_to_parent", "overall_mood", "status")
ANALYTICS_PERIODS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}


def _now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat(timespec="seconds")


def _money(value: Any) -> float:
    return float(to_money(value))


def _base36(number: int) -> str:
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(REFERENCE_ALPHABET[rem])
    return "".join(reversed(digits)) or "0"


def _reference(prefix: str) -> str:
    suffix = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(4))
    return f"{prefix}-{_base36(int(time.time() * 1000))}-{suffix}"


def validate_password(password: str) -> list[str]:
    errors = []
    if len(password or "") < 8:
        errors.append("Password must be at least 8 characters")
    if not re.search(r"[A-Z]", password or ""):
        errors.append("Password must contain an uppercase letter")
    if not re.search(r"[a-z]", password or ""):
        errors.append("Password must contain a lowercase letter")
    if not re.search(r"[0-9]", password or ""):
        errors.append("Password must contain a number")
    return errors


def derive_mood(health: Any, mood: str) -> str:
    """Health observations override the mood staff picked."""

    if not isinstance(health, dict):
        return mood
    condition = health.get("overall_condition") or health.get("overallCondition")
    try:
        energy = int(health.get("energy_level") or health.get("energyLevel") or 3)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Energy level must be a number from 1 to 5") from exc
    if condition == "excellent" and energy >= 4:
        return "excellent"
    if condition == "needs_attention" or health.get("vomiting") or health.get("limping"):
        return "needs_attention"
    return mood


def average_mood(moods: Iterable[str]) -> str:
    scores = [MOOD_SCORES.get(mood, 3) for mood in moods]
    if not scores:
        return "N/A"
    score = sum(scores) / len(scores)
    for threshold, label in ((4.5, "Excellent"), (3.5, "Great"), (2.5, "Good"), (1.5, "Okay")):
        if score >= threshold:
            return label
    return "Needs Attention"


class BoardingSystem:
    """High level façade that exposes application level behaviours."""

    def __init__(
        self,
        db_path: str = ":memory:",
        *,
        payment_provider: PaymentProvider | None = None,
        discount_policy: str = STACKED,
        site_url: str = "http://localhost:5000",
        currency: str = "usd",
        checkout_expiry_minutes: int = 30,
        admin_email: str | None = None,
        deposit_percentage: Any = None,
    ) -> None:
        if discount_policy not in DISCOUNT_POLICIES:
            raise ValueError(f"Unknown discount policy: {discount_policy}")
        self.db_path = db_path
        self.discount_policy = discount_policy
        self.site_url = site_url.rstrip("/")
        self.currency = currency
        self.checkout_expiry_minutes = checkout_expiry_minutes
        self.admin_email = admin_email.lower() if admin_email else None
        self.payments = payment_provider or LocalCheckoutProvider(self.site_url)
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._lock = threading.Lock()
        self._shared_conn = get_connection(db_path) if db_path == ":memory:" else None
        initialize_database(self.conn)
        if deposit_percentage is not None:
            set_setting(self.conn, "pricing.deposit_percentage", float(deposit_percentage))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @property
    def conn(self) -> sqlite3.Connection:
        """Connection for the calling thread (one shared one for ``:memory:``)."""

        if self._shared_conn is not None:
            return self._shared_conn
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = get_connection(self.db_path)
            self._local.conn = conn
            with self._lock:
                self._connections.append(conn)
        return conn

    @property
    def ledger(self) -> AvailabilityLedger:
        return AvailabilityLedger(self.conn, get_setting(self.conn, "capacity.defaults", {}))

    def _hash_password(self, password: str) -> str:
        salt = secrets.token_hex(16)
        digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 390000)
        return f"pbkdf2_sha256${salt}${digest.hex()}"

    def _verify_password(self, stored: str, provided: str) -> bool:
        algorithm, salt, hex_digest = stored.split("$")
        candidate = hashlib.pbkdf2_hmac("sha256", provided.encode(), salt.encode(), 390000)
        return secrets.compare_digest(candidate.hex(), hex_digest)

    def _require_role(self, user_id: int | None, allowed: Sequence[str]) -> dict:
        if user_id is None:
            raise AuthorizationError("User does not have permission to perform this action")
        user = self.conn.execute(
            "SELECT * FROM users WHERE id = ? AND status = 'active'", (user_id,)
        ).fetchone()
        if not user or user["role"] not in allowed:
            raise AuthorizationError("User does not have permission to perform this action")
        return user

    @staticmethod
    def _public_user(row: dict) -> dict:
        user = dict(row)
        user.pop("password_hash", None)
        return user

    # ------------------------------------------------------------------
    # Settings & operational logs
    # ------------------------------------------------------------------
    def get_setting(self, key: str, default: Any = None) -> Any:
        return get_setting(self.conn, key, default)

    def _check_setting(self, key: str, value: Any) -> None:
        """Reject values that would break quoting or capacity lookups."""

        if key == "pricing.discount_policy":
            if value not in DISCOUNT_POLICIES:
                raise ValidationError(f"Discount policy must be one of {', '.join(DISCOUNT_POLICIES)}")
        elif key == "capacity.defaults":
            if not isinstance(value, dict) or set(value) - set(PET_TYPES):
                raise ValidationError(f"Capacity defaults must map {' and '.join(PET_TYPES)} to a number")
            for pet_type, capacity in value.items():
                if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 0:
                    raise ValidationError(f"Capacity for {pet_type} must be a whole number of zero or more")
        elif key.startswith("pricing."):
            settings = {
                "services": self.get_setting("pricing.services", {}),
                "add_ons": self.get_setting("pricing.add_ons", {}),
                "discounts": self.get_setting("pricing.discounts", {}),
                "tax_rate": self.get_setting("pricing.tax_rate", 0),
                "deposit_percentage": self.get_setting("pricing.deposit_percentage", "0.30"),
            }
            field = key[len("pricing."):]
            if field not in settings:
                raise ValidationError(f"Unknown pricing setting: {key}")
            settings[field] = value
            try:
                PricingRules.from_settings(**settings).validate()
            except (AttributeError, KeyError, TypeError, ValueError, ArithmeticError) as exc:
                raise ValidationError(f"Invalid value for {key}: {exc}") from exc

    def set_setting(self, key: str, value: Any, *, admin_id: int) -> Any:
        self._require_role(admin_id, ("admin",))
        self._check_setting(key, value)
        previous = self.get_setting(key)
        set_setting(self.conn, key, value, updated_by=admin_id)
        self.record_audit(
            user_id=admin_id,
            action="settings.update",
            entity_type="system_settings",
            entity_id=key,
            changes={"from": previous, "to": value},
        )
        return value

    def pricing_rules(self) -> PricingRules:
        return PricingRules.from_settings(
            services=self.get_setting("pricing.services", {}),
            add_ons=self.get_setting("pricing.add_ons", {}),
            discounts=self.get_setting("pricing.discounts", {}),
            tax_rate=self.get_setting("pricing.tax_rate", 0),
            deposit_percentage=self.get_setting("pricing.deposit_percentage", "0.30"),
        )

    def active_discount_policy(self) -> str:
        return self.get_setting("pricing.discount_policy", self.discount_policy)

    def list_services(self) -> dict:
        return {
            "services": self.get_setting("pricing.services", {}),
            "add_ons": self.get_setting("pricing.add_ons", {}),
            "discounts": self.get_setting("pricing.discounts", {}),
            "discount_policy": self.active_discount_policy(),
            "deposit_percentage": self.get_setting("pricing.deposit_percentage"),
        }

    def record_audit(
        self,
        *,
        user_id: int | None,
        action: str,
        entity_type: str,
        entity_id: Any = None,
        changes: dict | None = None,
    ) -> None:
        with transaction(self.conn):
            self.conn.execute(
                """
                INSERT INTO audit_logs(user_id, action, entity_type, entity_id, changes)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    action,
                    entity_type,
                    None if entity_id is None else str(entity_id),
                    json.dumps(changes or {}, default=str),
                ),
            )

    def list_audit_logs(self, *, entity_type: str | None = None, entity_id: Any = None) -> list[dict]:
        conditions: list[str] = []
        params: list[Any] = []
        if entity_type:
            conditions.append("entity_type = ?")
            params.append(entity_type)
        if entity_id is not None:
            conditions.append("entity_id = ?")
            params.append(str(entity_id))
        where = " WHERE " + " AND ".join(conditions) if conditions else ""
        return self.conn.execute(
            f"SELECT * FROM audit_logs{where} ORDER BY id", params
        ).fetchall()

    def queue_email(self, *, recipient: str, template: str, subject: str, data: dict | None = None) -> dict:
        """Record an outbound email; delivery is handled outside this system."""

        with transaction(self.conn):
            cur = self.conn.execute(
                """
                INSERT INTO email_logs(recipient, template, subject, data)
                VALUES (?, ?, ?, ?)
                """,
                (recipient, template, subject, json.dumps(data or {}, default=str)),
            )
        logger.info("Queued %s email to %s", template, recipient)
        return self.conn.execute("SELECT * FROM email_logs WHERE id = ?", (cur.lastrowid,)).fetchone()

    def list_email_logs(self, *, recipient: str | None = None) -> list[dict]:
        if recipient:
            return self.conn.execute(
                "SELECT * FROM email_logs WHERE recipient = ? ORDER BY id", (recipient,)
            ).fetchall()
        return self.conn.execute("SELECT * FROM email_logs ORDER BY id").fetchall()

    # ------------------------------------------------------------------
    # Authentication & users
    # ------------------------------------------------------------------
    def register_user(
        self,
        *,
        email: str,
        password: str,
        name: str,
        phone: str | None = None,
        confirm_password: str | None = None,
        referral_code: str | None = None,
        role: str = "customer",
    ) -> dict:
        email = (email or "").strip().lower()
        name = (name or "").strip()
        if not email or not password or not name:
            raise ValidationError("Email, password and name are required")
        if not EMAIL_RE.match(email):
            raise ValidationError("Invalid email format")
        problems = validate_password(password)
        if problems:
            raise ValidationError(", ".join(problems))
        if confirm_password is not None and confirm_password != password:
            raise ValidationError("Passwords do not match")
        if role not in ROLES:
            raise ValidationError(f"Unknown role: {role}")
        if self.admin_email and email == self.admin_email:
            role = "admin"
        if self.conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone():
            raise DuplicateError("Email already registered")

        referred_by = None
        if referral_code:
            referrer = self.conn.execute(
                "SELECT id FROM users WHERE referral_code = ?", (referral_code.strip().upper(),)
            ).fetchone()
            if referrer:
                referred_by = referrer["id"]

        own_code = "".join(secrets.choice(REFERENCE_ALPHABET[2:]) for _ in range(8))
        with transaction(self.conn):
            cur = self.conn.execute(
                """
                INSERT INTO users(email, password_hash, name, phone, role, referral_code, referred_by)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    email,
                    self._hash_password(password),
                    name,
                    (phone or "").strip() or None,
                    role,
                    own_code,
                    referred_by,
                ),
            )
        user = self.get_user(cur.lastrowid)
        self.queue_email(
            recipient=email,
            template="welcome",
            subject="Welcome to Pet Paradise",
            data={"name": name, "referral_code": own_code},
        )
        self.record_audit(
            user_id=user["id"], action="user.register", entity_type="user", entity_id=user["id"]
        )
        return user

    def get_user(self, user_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if not row:
            raise NotFound("User not found")
        return self._public_user(row)

    def login(self, *, email: str, password: str) -> dict:
        row = self.conn.execute(
            "SELECT * FROM users WHERE email = ?", ((email or "").strip().lower(),)
        ).fetchone()
        if not row or not self._verify_password(row["password_hash"], password or ""):
            raise AuthenticationError("Invalid credentials")
        if row["status"] != "active":
            raise AuthorizationError("Account is not active")
        with transaction(self.conn):
            self.conn.execute(
                "UPDATE users SET last_login_at = ? WHERE id = ?", (_now(), row["id"])
            )
        return self.get_user(row["id"])

    def user_for_token(self, claims: dict) -> dict:
        """Resolve verified token claims to an active, unrevoked user."""

        try:
            user = self.get_user(int(claims["user_id"]))
        except (NotFound, KeyError, TypeError, ValueError) as exc:
            raise AuthenticationError("User not found") from exc
        if user["status"] != "active":
            raise AuthorizationError("Account is not active")
        if user["token_version"] != claims.get("token_version"):
            raise AuthenticationError("Token has been revoked")
        return user

    def revoke_tokens(self, user_id: int) -> dict:
        with transaction(self.conn):
            self.conn.execute(
                "UPDATE users SET token_version = token_version + 1 WHERE id = ?", (user_id,)
            )
        return self.get_user(user_id)

    def update_profile(
        self,
        user_id: int,
        *,
        name: str | None = None,
        phone: str | None = None,
        address: str | None = None,
    ) -> dict:
        user = self.get_user(user_id)
        if name is not None and not name.strip():
            raise ValidationError("Name cannot be empty")
        with transaction(self.conn):
            self.conn.execute(
                """
                UPDATE users SET name = ?, phone = ?, address = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (
                    name.strip() if name is not None else user["name"],
                    phone if phone is not None else user["phone"],
                    address if address is not None else user["address"],
                    user_id,
                ),
            )
        return self.get_user(user_id)

    def change_password(
        self,
        user_id: int,
        *,
        current_password: str,
        new_password: str,
        confirm_password: str | None = None,
    ) -> dict:
        row = self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if not row:
            raise NotFound("User not found")
        if not self._verify_password(row["password_hash"], current_password or ""):
            raise AuthenticationError("Current password is incorrect")
        self._set_password(user_id, new_password, confirm_password)
        return self.get_user(user_id)

    def _set_password(self, user_id: int, password: str, confirm_password: str | None) -> None:
        problems = validate_password(password)
        if problems:
            raise ValidationError(", ".join(problems))
        if confirm_password is not None and confirm_password != password:
            raise ValidationError("Passwords do not match")
        with transaction(self.conn):
            self.conn.execute(
                """
                UPDATE users
                SET password_hash = ?, token_version = token_version + 1,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (self._hash_password(password), user_id),
            )

    def request_password_reset(self, *, email: str) -> str | None:
        """Issue a reset token; returns ``None`` for unknown addresses."""

        row = self.conn.execute(
            "SELECT * FROM users WHERE email = ?", ((email or "").strip().lower(),)
        ).fetchone()
        if not row:
            logger.info("Password reset requested for unknown email")
            return None
        token = secrets.token_urlsafe(32)
        expires = dt.datetime.now(dt.timezone.utc) + RESET_TOKEN_TTL
        with transaction(self.conn):
            self.conn.execute(
                "INSERT INTO password_resets(user_id, token_hash, expires_at) VALUES (?, ?, ?)",
                (
                    row["id"],
                    hashlib.sha256(token.encode()).hexdigest(),
                    expires.isoformat(timespec="seconds"),
                ),
            )
        self.queue_email(
            recipient=row["email"],
            template="password_reset",
            subject="Reset your password",
            data={"reset_url": f"{self.site_url}/reset-password?token={token}"},
        )
        return token

    def reset_password(self, *, token: str, password: str, confirm_password: str | None = None) -> dict:
        row = self.conn.execute(
            "SELECT * FROM password_resets WHERE token_hash = ?",
            (hashlib.sha256((token or "").encode()).hexdigest(),),
        ).fetchone()
        if not row or row["used_at"] or row["expires_at"] < _now():
            raise ValidationError("Reset link is invalid or has expired")
        self._set_password(row["user_id"], password, confirm_password)
        with transaction(self.conn):
            self.conn.execute(
                "UPDATE password_resets SET used_at = ? WHERE id = ?", (_now(), row["id"])
            )
        return self.get_user(row["user_id"])

    def set_user_status(self, *, admin_id: int, user_id: int, status: str) -> dict:
        self._require_role(admin_id, ("admin",))
        if status not in USER_STATUSES:
            raise ValidationError(f"Unknown status: {status}")
        user = self.get_user(user_id)
        with transaction(self.conn):
            self.conn.execute(
                "UPDATE users SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (status, user_id),
            )
            if status != "active":
                self.conn.execute(
                    "UPDATE users SET token_version = token_version + 1 WHERE id = ?", (user_id,)
                )
        self.record_audit(
            user_id=admin_id,
            action="user.status",
            entity_type="user",
            entity_id=user_id,
            changes={"from": user["status"], "to": status},
        )
        return self.get_user(user_id)

    def list_users(self, *, role: str | None = None, status: str | None = None) -> list[dict]:
        conditions: list[str] = []
        params: list[Any] = []
        if role:
            conditions.append("role = ?")
            params.append(role)
        if status:
            conditions.append("status = ?")
            params.append(status)
        where = " WHERE " + " AND ".join(conditions) if conditions else ""
        rows = self.conn.execute(
            f"SELECT * FROM users{where} ORDER BY created_at DESC, id DESC", params
        ).fetchall()
        return [self._public_user(row) for row in rows]

    # ------------------------------------------------------------------
    # Pets & health records
    # ------------------------------------------------------------------
    def _clean_pet_fields(self, fields: dict) -> dict:
        cleaned = {key: fields[key] for key in PET_FIELDS if key in fields}
        if "name" in cleaned and not (cleaned["name"] or "").strip():
            raise ValidationError("Pet name is required")
        if "species" in cleaned and cleaned["species"] not in SPECIES:
            raise ValidationError("Species must be cat or dog")
        if cleaned.get("size") and cleaned["size"] not in PET_SIZES:
            raise ValidationError("Size must be small, medium or large")
        for flag in ("vaccinated", "spayed_neutered", "microchipped"):
            if flag in cleaned:
                cleaned[flag] = int(bool(cleaned[flag]))
        if cleaned.get("weight") not in (None, ""):
            try:
                cleaned["weight"] = float(cleaned["weight"])
            except (TypeError, ValueError) as exc:
                raise ValidationError("Weight must be a number") from exc
        return cleaned

    def add_pet(self, owner_id: int, **fields: Any) -> dict:
        self.get_user(owner_id)
        if not fields.get("name") or not fields.get("species"):
            raise ValidationError("Pet name and species are required")
        cleaned = self._clean_pet_fields(fields)
        cleaned["name"] = cleaned["name"].strip()
        columns = ["owner_id", *cleaned]
        placeholders = ", ".join("?" for _ in columns)
        with transaction(self.conn):
            cur = self.conn.execute(
                f"INSERT INTO pets({', '.join(columns)}) VALUES ({placeholders})",
                (owner_id, *cleaned.values()),
            )
        return self.get_pet(cur.lastrowid)

    def get_pet(self, pet_id: int, *, owner_id: int | None = None) -> dict:
        row = self.conn.execute("SELECT * FROM pets WHERE id = ?", (pet_id,)).fetchone()
        if not row or (owner_id is not None and row["owner_id"] != owner_id):
            raise NotFound("Pet not found")
        for flag in ("vaccinated", "spayed_neutered", "microchipped", "is_active"):
            row[flag] = bool(row[flag])
        return row

    def list_pets(self, owner_id: int, *, include_inactive: bool = False) -> list[dict]:
        where = "owner_id = ?" if include_inactive else "owner_id = ? AND is_active = 1"
        rows = self.conn.execute(
            f"SELECT id FROM pets WHERE {where} ORDER BY name", (owner_id,)
        ).fetchall()
        return [self.get_pet(row["id"]) for row in rows]

    def update_pet(self, pet_id: int, *, owner_id: int | None = None, **fields: Any) -> dict:
        self.get_pet(pet_id, owner_id=owner_id)
        cleaned = self._clean_pet_fields(fields)
        if not cleaned:
            return self.get_pet(pet_id)
        assignments = ", ".join(f"{key} = ?" for key in cleaned)
        with transaction(self.conn):
            self.conn.execute(
                f"UPDATE pets SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (*cleaned.values(), pet_id),
            )
        return self.get_pet(pet_id)

    def deactivate_pet(self, pet_id: int, *, owner_id: int | None = None) -> dict:
        self.get_pet(pet_id, owner_id=owner_id)
        with transaction(self.conn):
            self.conn.execute(
                "UPDATE pets SET is_active = 0, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (pet_id,),
            )
        return self.get_pet(pet_id)

    def record_vaccination(
        self,
        *,
        pet_id: int,
        name: str,
        date: str | None = None,
        expiry_date: str | None = None,
        verified: bool = False,
        owner_id: int | None = None,
    ) -> dict:
        self.get_pet(pet_id, owner_id=owner_id)
        if not (name or "").strip():
            raise ValidationError("Vaccine name is required")
        with transaction(self.conn):
            cur = self.conn.execute(
                """
                INSERT INTO vaccination_records(pet_id, name, date, expiry_date, verified)
                VALUES (?, ?, ?, ?, ?)
                """,
                (pet_id, name.strip(), date, expiry_date, int(verified)),
            )
        return self.conn.execute(
            "SELECT * FROM vaccination_records WHERE id = ?", (cur.lastrowid,)
        ).fetchone()

    def list_vaccinations(self, *, pet_id: int) -> list[dict]:
        """Return vaccination records for a pet."""

        self.get_pet(pet_id)
        return self.conn.execute(
            """
            SELECT * FROM vaccination_records
            WHERE pet_id = ?
            ORDER BY expiry_date DESC
            """,
            (pet_id,),
        ).fetchall()

    # ------------------------------------------------------------------
    # Pricing & availability
    # ------------------------------------------------------------------
    def quote(
        self,
        *,
        service_type: str | None,
        start_date: Any,
        end_date: Any = None,
        pet_count: int,
        add_ons: Iterable[str] | None = None,
    ) -> PriceQuote:
        return price_quote(
            service_type=service_type,
            nights=stay_nights(start_date, end_date, service_type),
            pet_count=pet_count,
            add_ons=add_ons,
            rules=self.pricing_rules(),
            policy=self.active_discount_policy(),
        )

    def get_availability(self, *, date: Any, pet_type: str) -> dict:
        return self.ledger.get_availability(date, pet_type)

    def availability_calendar(
        self, *, start_date: Any, end_date: Any, pet_type: str | None = None
    ) -> list[dict]:
        return self.ledger.calendar(start_date, end_date, pet_type)

    def update_availability(self, *, admin_id: int, date: Any, pet_type: str, **changes: Any) -> dict:
        self._require_role(admin_id, ("admin",))
        day = self.ledger.update_day(date, pet_type, **changes)
        self.record_audit(
            user_id=admin_id,
            action="availability.update",
            entity_type="availability",
            entity_id=f"{day['date']}:{pet_type}",
            changes=changes,
        )
        return day

    # ------------------------------------------------------------------
    # Booking lifecycle
    # ------------------------------------------------------------------
    def _decode_booking(self, row: dict) -> dict:
        booking = dict(row)
        booking["pet_details"] = json.loads(row["pet_details"] or "[]")
        booking["customer"] = json.loads(row["customer"] or "{}")
        booking["add_ons"] = json.loads(row["add_ons"] or "[]")
        booking["capacity_held"] = bool(row["capacity_held"])
        booking["pricing"] = {key: row[key] for key in PRICING_FIELDS}
        booking["reminders"] = {
            "one_day_sent": bool(row["one_day_reminder_sent"]),
            "three_day_sent": bool(row["three_day_reminder_sent"]),
            "check_out_sent": bool(row["check_out_reminder_sent"]),
            "review_request_sent": bool(row["review_request_sent"]),
        }
        return booking

    def _booking_row(self, booking_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        if not row:
            raise NotFound("Booking not found")
        return row

    def get_booking(self, booking_id: int, *, user_id: int | None = None) -> dict:
        row = self._booking_row(booking_id)
        if user_id is not None and row["user_id"] != user_id:
            raise NotFound("Booking not found")
        booking = self._decode_booking(row)
        booking["orders"] = [
            self._decode_order(order)
            for order in self.conn.execute(
                "SELECT * FROM orders WHERE booking_id = ? ORDER BY id", (booking_id,)
            ).fetchall()
        ]
        return booking

    def list_bookings_for_user(self, user_id: int, *, status: str | None = None) -> list[dict]:
        params: list[Any] = [user_id]
        where = "WHERE user_id = ?"
        if status:
            where += " AND status = ?"
            params.append(status)
        rows = self.conn.execute(
            f"SELECT id FROM bookings {where} ORDER BY start_date DESC, id DESC", params
        ).fetchall()
        return [self.get_booking(row["id"]) for row in rows]

    def list_bookings(
        self,
        *,
        status: str | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> list[dict]:
        conditions: list[str] = []
        params: list[Any] = []
        if status:
            conditions.append("status = ?")
            params.append(status)
        if start_date:
            conditions.append("end_date >= ?")
            params.append(start_date)
        if end_date:
            conditions.append("start_date <= ?")
            params.append(end_date)
        where = " WHERE " + " AND ".join(conditions) if conditions else ""
        rows = self.conn.execute(
            f"SELECT id FROM bookings{where} ORDER BY start_date, id", params
        ).fetchall()
        return [self.get_booking(row["id"]) for row in rows]

    def _pet_snapshots(self, user_id: int, pets: Sequence[dict], pet_type: str) -> list[dict]:
        if not isinstance(pets, (list, tuple)) or not all(isinstance(pet, dict) for pet in pets):
            raise ValidationError("Pets must be a list of pet details")
        snapshots = []
        for pet in pets:
            if pet.get("pet_id") or pet.get("id"):
                saved = self.get_pet(int(pet.get("pet_id") or pet.get("id")), owner_id=user_id)
                pet = {
                    "pet_id": saved["id"],
                    "name": saved["name"],
                    "type": saved["species"],
                    "breed": saved["breed"],
                    "size": saved["size"],
                    "weight": saved["weight"],
                    "vaccinated": saved["vaccinated"],
                    "neutered": saved["spayed_neutered"],
                    "medications": saved["medical_notes"],
                    "feeding_instructions": saved["dietary_notes"],
                    **{key: value for key, value in pet.items() if value not in (None, "")},
                }
            name = (pet.get("name") or "").strip()
            if not name:
                continue
            species = pet.get("type") or pet.get("species") or pet_type
            if species != pet_type:
                raise ValidationError(f"{name} is a {species}, this service is for {pet_type}s")
            snapshots.append(
                {
                    "pet_id": pet.get("pet_id"),
                    "name": name,
                    "type": species,
                    "breed": pet.get("breed"),
                    "size": pet.get("size"),
                    "weight": pet.get("weight"),
                    "vaccinated": pet.get("vaccinated"),
                    "neutered": pet.get("neutered"),
                    "medications": pet.get("medications"),
                    "feeding_instructions": pet.get("feeding_instructions") or pet.get("feedingInstructions"),
                    "special_needs": pet.get("special_needs") or pet.get("specialNeeds"),
                }
            )
        return snapshots

    def create_checkout(
        self,
        *,
        user_id: int,
        service_type: str,
        start_date: str,
        end_date: str | None,
        pets: Sequence[dict],
        add_ons: Sequence[str] = (),
        special_requests: str | None = None,
        payment_type: str = "full",
        client_total: Any = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
        today: dt.date | None = None,
    ) -> dict:
        """Price, reserve and open a payment session for a new booking.

        Capacity, the booking and its order are written in one transaction;
        if any date is full nothing is written and ``CapacityExceeded``
        propagates. A provider failure afterwards marks the order failed and
        gives the capacity back.
        """

        user = self.get_user(user_id)
        rules = self.pricing_rules()
        service = rules.services.get(service_type)
        if service is None:
            raise ValidationError(f"Unknown service: {service_type}")
        if payment_type not in PAYMENT_TYPES:
            raise ValidationError("Payment type must be full or deposit")
        try:
            start = dt.date.fromisoformat(str(start_date)[:10])
            end = start if service.is_daycare else dt.date.fromisoformat(str(end_date)[:10])
        except (TypeError, ValueError) as exc:
            raise ValidationError("Check-in and check-out dates are required") from exc
        if start < (today or dt.date.today()):
            raise ValidationError("Check-in date cannot be in the past")
        if not service.is_daycare and end <= start:
            raise ValidationError("Check-out must be after check-in")

        snapshots = self._pet_snapshots(user_id, pets, service.pet_type)
        if not snapshots:
            raise ValidationError("At least one pet is required")
        add_ons = list(dict.fromkeys(add_ons or ()))
        unknown = [key for key in add_ons if key not in rules.add_ons]
        if unknown:
            raise ValidationError(f"Unknown add-on(s): {', '.join(unknown)}")

        price = price_quote(
            service_type=service_type,
            nights=stay_nights(start, end, service_type),
            pet_count=len(snapshots),
            add_ons=add_ons,
            rules=rules,
            policy=self.active_discount_policy(),
        )
        if not price.is_complete:
            raise ValidationError("Booking is incomplete")
        if client_total not in (None, ""):
            try:
                mismatch = to_money(client_total) != price.total
            except ArithmeticError:
                mismatch = True
            if mismatch:
                logger.warning(
                    "Client total %s differs from server quote %s; charging the server quote",
                    client_total,
                    price.total,
                )

        amount_due = price.total
        if payment_type == "deposit":
            amount_due = deposit_amount(price.total, rules.deposit_percentage)

        customer = {"name": user["name"], "email": user["email"], "phone": user["phone"]}
        dates = stay_dates(start, end)
        booking_number = _reference("BK")
        order_ref = _reference("ORD")
        with transaction(self.conn):
            self.ledger.reserve(dates, service.pet_type, len(snapshots))
            cur = self.conn.execute(
                """
                INSERT INTO bookings(
                    booking_number, user_id, pet_id, service_type, pet_type, pet_count,
                    pet_details, customer, start_date, end_date, daily_rate, days,
                    subtotal, add_ons_total, discount, discount_reason, tax, total,
                    add_ons, special_requests, capacity_held
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
                """,
                (
                    booking_number,
                    user_id,
                    snapshots[0]["pet_id"],
                    service_type,
                    service.pet_type,
                    len(snapshots),
                    json.dumps(snapshots),
                    json.dumps(customer),
                    start.isoformat(),
                    end.isoformat(),
                    float(price.daily_rate),
                    price.days,
                    float(price.subtotal),
                    float(price.add_ons_total),
                    float(price.discount),
                    price.discount_reason,
                    float(price.tax),
                    float(price.total),
                    json.dumps(add_ons),
                    special_requests,
                ),
            )
            booking_id = cur.lastrowid
            self._insert_order(
                booking_id,
                user_id,
                customer,
                price.subtotal,
                price.discount,
                price.tax,
                price.total,
                amount_due,
                payment_type,
                order_ref,
            )

        self.record_audit(
            user_id=user_id,
            action="booking.create",
            entity_type="booking",
            entity_id=booking_id,
            changes={"booking_number": booking_number, "total": float(price.total)},
        )
        booking = self.get_booking(booking_id)
        session = self._open_session(order_ref, booking, success_url, cancel_url)
        return {
            "booking": self.get_booking(booking_id),
            "order": self.get_order(order_ref),
            "quote": price.as_dict(),
            "session_id": session.session_id,
            "url": session.url,
        }

    def _insert_order(
        self,
        booking_id: int,
        user_id: int | None,
        customer: dict,
        subtotal: Any,
        discount: Any,
        tax: Any,
        total: Any,
        amount_due: Any,
        payment_type: str,
        order_ref: str,
    ) -> None:
        self.conn.execute(
            """
            INSERT INTO orders(
                order_id, booking_id, user_id, customer, subtotal, discount, tax,
                total, amount_due, payment_type
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                order_ref,
                booking_id,
                user_id,
                json.dumps(customer),
                _money(subtotal),
                _money(discount),
                _money(tax),
                _money(total),
                _money(amount_due),
                payment_type,
            ),
        )

    def _open_session(self, order_ref: str, booking: dict, success_url: str | None, cancel_url: str | None):
        order = self.get_order(order_ref)
        pet_names = ", ".join(pet["name"] for pet in booking["pet_details"])
        label = {"deposit": "Deposit", "balance": "Balance"}.get(order["payment_type"], "Payment")
        try:
            session = self.payments.create_checkout_session(
                order_id=order_ref,
                amount=order["amounts"]["due"],
                currency=self.currency,
                description=f"{label} for booking {booking['booking_number']} - {pet_names}",
                customer_email=booking["customer"]["email"],
                metadata={
                    "orderId": order_ref,
                    "bookingId": str(booking["id"]),
                    "bookingNumber": booking["booking_number"],
                    "paymentType": order["payment_type"],
                },
                success_url=success_url
                or f"{self.site_url}/booking/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=cancel_url or f"{self.site_url}/booking/cancel?order_id={order_ref}",
                expires_in_minutes=self.checkout_expiry_minutes,
            )
        except PaymentProviderError as exc:
            logger.error("Checkout session for %s failed: %s", order_ref, exc)
            self._close_order(order, "failed", str(exc))
            raise
        with transaction(self.conn):
            self.conn.execute(
                """
                UPDATE orders
                SET provider_session_id = ?, provider_customer_id = ?, checkout_url = ?,
                    expires_at = ?, updated_at = CURRENT_TIMESTAMP
                WHERE order_id = ?
                """,
                (
                    session.session_id,
                    session.customer_id,
                    session.url,
                    session.expires_at.astimezone(dt.timezone.utc).isoformat(timespec="seconds"),
                    order_ref,
                ),
            )
        return session

    def create_checkout_for_booking(
        self,
        booking_id: int,
        *,
        user_id: int | None = None,
        payment_type: str = "full",
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict:
        """Open a fresh payment session for a booking that still owes money.

        A pending booking is charged in full or as a deposit again; a booking
        whose deposit is paid is charged the outstanding balance. Amounts come
        from the booking's stored pricing, never from a new quote. Sessions of
        earlier unpaid orders are expired before the new one opens.
        """

        booking = self.get_booking(booking_id, user_id=user_id)
        if payment_type not in PAYMENT_TYPES:
            raise ValidationError("Payment type must be full or deposit")
        total = to_money(booking["total"])
        if booking["status"] == lifecycle.PENDING and booking["payment_status"] in ("pending", "failed"):
            amount_due = total
            if payment_type == "deposit":
                amount_due = deposit_amount(total, self.pricing_rules().deposit_percentage)
        elif booking["status"] in lifecycle.ACTIVE_STATUSES and booking["payment_status"] == "deposit_paid":
            payment_type = "balance"
            amount_due = total - to_money(booking["paid_amount"])
        else:
            raise InvalidTransition("Booking is not awaiting payment")
        if amount_due <= 0:
            raise InvalidTransition("Booking has nothing left to pay")

        self._expire_open_sessions(booking_id)
        order_ref = _reference("ORD")
        with transaction(self.conn):
            self.conn.execute(
                """
                UPDATE orders SET status = 'cancelled', updated_at = CURRENT_TIMESTAMP
                WHERE booking_id = ? AND status IN ('pending', 'processing')
                """,
                (booking_id,),
            )
            if not booking["capacity_held"]:
                self.ledger.reserve(
                    stay_dates(booking["start_date"], booking["end_date"]),
                    booking["pet_type"],
                    booking["pet_count"],
                )
                self.conn.execute(
                    "UPDATE bookings SET capacity_held = 1 WHERE id = ?", (booking_id,)
                )
            if booking["payment_status"] == "failed":
                lifecycle.ensure_transition(
                    "failed", "pending", lifecycle.PAYMENT_TRANSITIONS, entity="Payment"
                )
                self.conn.execute(
                    """
                    UPDATE bookings SET payment_status = 'pending', updated_at = CURRENT_TIMESTAMP
                    WHERE id = ?
                    """,
                    (booking_id,),
                )
            self._insert_order(
                booking_id,
                booking["user_id"],
                booking["customer"],
                booking["subtotal"],
                booking["discount"],
                booking["tax"],
                total,
                amount_due,
                payment_type,
                order_ref,
            )
        session = self._open_session(order_ref, self.get_booking(booking_id), success_url, cancel_url)
        return {
            "booking": self.get_booking(booking_id),
            "order": self.get_order(order_ref),
            "session_id": session.session_id,
            "url": session.url,
        }

    def _release_hold(self, booking: dict) -> None:
        """Give back a booking's capacity; caller owns the transaction."""

        if not booking["capacity_held"]:
            return
        self.ledger.release(
            stay_dates(booking["start_date"], booking["end_date"]),
            booking["pet_type"],
            booking["pet_count"],
        )
        self.conn.execute("UPDATE bookings SET capacity_held = 0 WHERE id = ?", (booking["id"],))

    def _expire_open_sessions(self, booking_id: int) -> None:
        """Ask the provider to close sessions of a booking's unpaid orders.

        A session that cannot be expired (already paid, provider down) is left
        to payment reconciliation.
        """

        rows = self.conn.execute(
            """
            SELECT order_id, provider_session_id FROM orders
            WHERE booking_id = ? AND status IN ('pending', 'processing')
              AND provider_session_id IS NOT NULL
            """,
            (booking_id,),
        ).fetchall()
        for row in rows:
            try:
                self.payments.expire_session(row["provider_session_id"])
            except PaymentProviderError as exc:
                logger.warning("Session for order %s left open: %s", row["order_id"], exc)

    def _transition(self, booking: dict, target: str, **columns: Any) -> None:
        """Move a booking to ``target``; caller owns the transaction."""

        lifecycle.ensure_transition(booking["status"], target)
        assignments = "".join(f", {key} = ?" for key in columns)
        self.conn.execute(
            f"UPDATE bookings SET status = ?{assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (target, *columns.values(), booking["id"]),
        )
        logger.info("Booking %s: %s -> %s", booking["booking_number"], booking["status"], target)

    def cancel_booking(
        self,
        booking_id: int,
        *,
        actor_id: int,
        user_id: int | None = None,
        reason: str | None = None,
        refund_amount: Any = None,
    ) -> dict:
        """Cancel a booking, refunding captured money first.

        ``refund_amount`` defaults to everything still refundable and is
        taken from the most recent payments first. Passing 0 cancels without
        a refund and records a waived refund against each paid order.
        """

        booking = self.get_booking(booking_id, user_id=user_id)
        lifecycle.ensure_transition(booking["status"], lifecycle.CANCELLED)

        refundable = [
            (order, to_money(order["amounts"]["paid"]) - to_money(order["amounts"]["refunded"]))
            for order in reversed(booking["orders"])
            if order["status"] in ("paid", "partially_refunded")
            and order["amounts"]["paid"] > order["amounts"]["refunded"]
        ]
        available = sum((left for _, left in refundable), Decimal("0.00"))
        try:
            wanted = available if refund_amount in (None, "") else to_money(refund_amount)
        except ArithmeticError as exc:
            raise InvalidRefundAmount("Refund amount must be a number") from exc
        if wanted < 0 or wanted > available:
            raise InvalidRefundAmount(f"Refund must be between 0.00 and {available:.2f}")
        waive = wanted == 0
        for order, left in refundable:
            if wanted <= 0:
                break
            part = min(left, wanted)
            self.refund_order(
                order["order_id"],
                amount=part,
                reason=reason or "Booking cancelled",
                actor_id=actor_id,
                _skip_role_check=True,
            )
            wanted -= part

        self._expire_open_sessions(booking_id)
        booking = self.get_booking(booking_id)
        with transaction(self.conn):
            if waive:
                for order, _ in refundable:
                    self.conn.execute(
                        """
                        INSERT INTO refunds(refund_id, order_id, amount, reason, status)
                        VALUES (?, ?, 0, ?, 'waived')
                        """,
                        (_reference("REF"), order["id"], reason or "Cancelled without refund"),
                    )
            self._release_hold(booking)
            self.conn.execute(
                """
                UPDATE orders SET status = 'cancelled', updated_at = CURRENT_TIMESTAMP
                WHERE booking_id = ? AND status IN ('pending', 'processing')
                """,
                (booking_id,),
            )
            self._transition(
                booking,
                lifecycle.CANCELLED,
                cancellation_reason=reason,
                cancelled_at=_now(),
                cancelled_by=actor_id,
            )
        self.record_audit(
            user_id=actor_id,
            action="booking.cancel",
            entity_type="booking",
            entity_id=booking_id,
            changes={"from": booking["status"], "reason": reason},
        )
        if booking["user_id"]:
            self.notify(
                user_id=booking["user_id"],
                type="booking",
                title="Booking Cancelled",
                message=f"Booking {booking['booking_number']} has been cancelled.",
                data={"bookingId": booking_id},
            )
        return self.get_booking(booking_id)

    def check_in(self, booking_id: int, *, staff_id: int, at: str | None = None) -> dict:
        self._require_role(staff_id, STAFF_ROLES)
        booking = self.get_booking(booking_id)
        with transaction(self.conn):
            self._transition(booking, lifecycle.IN_PROGRESS, actual_check_in=at or _now())
        self.record_audit(
            user_id=staff_id, action="booking.check_in", entity_type="booking", entity_id=booking_id
        )
        return self.get_booking(booking_id)

    def check_out(self, booking_id: int, *, staff_id: int, at: str | None = None) -> dict:
        self._require_role(staff_id, STAFF_ROLES)
        booking = self.get_booking(booking_id)
        with transaction(self.conn):
            self._transition(
                booking,
                lifecycle.COMPLETED,
                actual_check_out=at or _now(),
                review_request_sent=1 if booking["user_id"] else 0,
            )
            if booking["user_id"]:
                self.conn.execute(
                    "UPDATE users SET total_bookings = total_bookings + 1 WHERE id = ?",
                    (booking["user_id"],),
                )
        self.record_audit(
            user_id=staff_id, action="booking.check_out", entity_type="booking", entity_id=booking_id
        )
        if booking["user_id"]:
            names = ", ".join(pet["name"] for pet in booking["pet_details"])
            self.notify(
                user_id=booking["user_id"],
                type="review_request",
                title="How was the stay?",
                message=f"We hope {names} enjoyed their stay. Leave us a review!",
                data={"bookingId": booking_id},
                channels=("in_app", "email"),
            )
            self.queue_email(
                recipient=booking["customer"]["email"],
                template="review_request",
                subject="How was your pet's stay?",
                data={"bookingNumber": booking["booking_number"]},
            )
        return self.get_booking(booking_id)

    def mark_no_show(self, booking_id: int, *, staff_id: int | None, as_of: dt.date | None = None) -> dict:
        """Flag a booking whose check-in date passed without arrival.

        Capacity is released; captured payments are not refunded.
        """

        if staff_id is not None:
            self._require_role(staff_id, STAFF_ROLES)
        booking = self.get_booking(booking_id)
        lifecycle.ensure_transition(booking["status"], lifecycle.NO_SHOW)
        if dt.date.fromisoformat(booking["start_date"]) > (as_of or dt.date.today()):
            raise ValidationError("Check-in date has not passed yet")
        self._expire_open_sessions(booking_id)
        with transaction(self.conn):
            self._release_hold(booking)
            self.conn.execute(
                """
                UPDATE orders SET status = 'cancelled', updated_at = CURRENT_TIMESTAMP
                WHERE booking_id = ? AND status IN ('pending', 'processing')
                """,
                (booking_id,),
            )
            self._transition(booking, lifecycle.NO_SHOW)
        self.record_audit(
            user_id=staff_id, action="booking.no_show", entity_type="booking", entity_id=booking_id
        )
        return self.get_booking(booking_id)

    # ------------------------------------------------------------------
    # Orders & payment reconciliation
    # ------------------------------------------------------------------
    def _decode_order(self, row: dict) -> dict:
        order = dict(row)
        order["customer"] = json.loads(row["customer"] or "{}")
        order["amounts"] = {
            "subtotal": row["subtotal"],
            "discount": row["discount"],
            "tax": row["tax"],
            "total": row["total"],
            "due": row["amount_due"],
            "paid": row["paid"],
            "refunded": row["refunded"],
        }
        order["refunds"] = self.conn.execute(
            "SELECT * FROM refunds WHERE order_id = ? ORDER BY id", (row["id"],)
        ).fetchall()
        return order

    def get_order(self, order_ref: str) -> dict:
        row = self.conn.execute("SELECT * FROM orders WHERE order_id = ?", (order_ref,)).fetchone()
        if not row:
            raise NotFound("Order not found")
        return self._decode_order(row)

    def find_order_by_session(self, session_id: str) -> dict | None:
        row = self.conn.execute(
            "SELECT * FROM orders WHERE provider_session_id = ?", (session_id,)
        ).fetchone()
        return self._decode_order(row) if row else None

    def list_payments_for_user(self, user_id: int) -> list[dict]:
        rows = self.conn.execute(
            """
            SELECT orders.*, bookings.booking_number, bookings.service_type,
                   bookings.start_date, bookings.end_date
            FROM orders
            LEFT JOIN bookings ON bookings.id = orders.booking_id
            WHERE orders.user_id = ?
            ORDER BY orders.created_at DESC, orders.id DESC
            """,
            (user_id,),
        ).fetchall()
        return [self._decode_order(row) for row in rows]

    def handle_checkout_completed(
        self,
        session_id: str,
        *,
        payment_intent_id: str | None = None,
        amount_paid_cents: int | None = None,
    ) -> dict | None:
        """Apply a successful payment; replays of the same session are no-ops.

        The order is claimed with a conditional update so concurrent
        deliveries of the same event apply the payment once. Money that
        arrives for a checkout the booking no longer needs (superseded
        session, closed booking, already settled) is refunded.
        """

        order = self.find_order_by_session(session_id)
        if order is None:
            logger.warning("Discarding payment for unknown session %s", session_id)
            return None
        if order["status"] in ("paid", "partially_refunded", "refunded"):
            logger.info("Duplicate payment callback for order %s ignored", order["order_id"])
            return order
        if order["status"] not in ("pending", "processing", "cancelled"):
            logger.warning(
                "Discarding payment for order %s in status %s", order["order_id"], order["status"]
            )
            return order

        amount = to_money(order["amounts"]["due"])
        if amount_paid_cents is not None and int(amount_paid_cents) != int(round(amount * 100)):
            logger.warning(
                "Provider reported %s cents for order %s, expected %s",
                amount_paid_cents,
                order["order_id"],
                amount,
            )
        with transaction(self.conn):
            claimed = self.conn.execute(
                """
                UPDATE orders
                SET status = 'paid', paid = ?, paid_at = ?, provider_payment_intent_id = ?,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND status IN ('pending', 'processing', 'cancelled')
                """,
                (_money(amount), _now(), payment_intent_id, order["id"]),
            ).rowcount
            booking = self._booking_row(order["booking_id"])
            applied = claimed and self._apply_payment(booking, order, amount)
        if not claimed:
            logger.info("Duplicate payment callback for order %s ignored", order["order_id"])
            return self.get_order(order["order_id"])
        if not applied:
            logger.warning(
                "Payment for order %s arrived after booking %s stopped awaiting it; refunding",
                order["order_id"],
                booking["booking_number"],
            )
            self.refund_order(
                order["order_id"],
                reason="Payment received for a closed checkout",
                _skip_role_check=True,
            )
            return self.get_order(order["order_id"])

        self._expire_open_sessions(booking["id"])
        with transaction(self.conn):
            self.conn.execute(
                """
                UPDATE orders SET status = 'cancelled', updated_at = CURRENT_TIMESTAMP
                WHERE booking_id = ? AND status IN ('pending', 'processing')
                """,
                (booking["id"],),
            )
        self.record_audit(
            user_id=order["user_id"],
            action="order.paid",
            entity_type="order",
            entity_id=order["order_id"],
            changes={"amount": _money(amount)},
        )
        if order["user_id"]:
            self.notify(
                user_id=order["user_id"],
                type="payment",
                title="Payment Successful",
                message=f"Your payment of ${amount:.2f} has been received.",
                data={"orderId": order["order_id"], "bookingId": booking["id"]},
                channels=("in_app", "email"),
            )
            if order["payment_type"] == "balance":
                template, subject = "payment_receipt", f"Balance paid for booking {booking['booking_number']}"
            else:
                template, subject = "booking_confirmation", f"Booking {booking['booking_number']} confirmed"
            self.queue_email(
                recipient=order["customer"]["email"],
                template=template,
                subject=subject,
                data={"bookingNumber": booking["booking_number"], "amount": _money(amount)},
            )
        return self.get_order(order["order_id"])

    def _apply_payment(self, booking: dict, order: dict, amount: Decimal) -> bool:
        """Credit a claimed order to its booking; caller owns the transaction.

        Returns False, leaving the booking untouched, when the booking cannot
        take the money.
        """

        target = "deposit_paid" if order["payment_type"] == "deposit" else "paid"
        if (
            lifecycle.is_terminal(booking["status"])
            or to_money(booking["paid_amount"]) + amount > to_money(booking["total"])
            or not lifecycle.can_transition(booking["payment_status"], target, lifecycle.PAYMENT_TRANSITIONS)
        ):
            return False
        self.conn.execute(
            """
            UPDATE bookings
            SET payment_status = ?, paid_amount = ROUND(paid_amount + ?, 2),
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (target, _money(amount), booking["id"]),
        )
        self.conn.execute("UPDATE orders SET applied_to_booking = 1 WHERE id = ?", (order["id"],))
        if booking["status"] == lifecycle.PENDING:
            self._transition(booking, lifecycle.CONFIRMED)
        if order["user_id"]:
            self.conn.execute(
                """
                UPDATE users
                SET total_spent = ROUND(total_spent + ?, 2), loyalty_points = loyalty_points + ?
                WHERE id = ?
                """,
                (_money(amount), int(amount), order["user_id"]),
            )
        return True

    def _close_order(self, order: dict, status: str, message: str | None = None) -> dict:
        with transaction(self.conn):
            self.conn.execute(
                """
                UPDATE orders SET status = ?, error_message = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (status, message, order["id"]),
            )
            if order["booking_id"]:
                booking = self.get_booking(order["booking_id"])
                if booking["status"] == lifecycle.PENDING:
                    self._release_hold(booking)
                    if status == "failed" and booking["payment_status"] == "pending":
                        self.conn.execute(
                            "UPDATE bookings SET payment_status = 'failed' WHERE id = ?",
                            (booking["id"],),
                        )
        logger.info("Order %s closed as %s", order["order_id"], status)
        return self.get_order(order["order_id"])

    def handle_checkout_failed(self, session_id: str, *, reason: str | None = None) -> dict | None:
        return self._handle_unpaid(session_id, "failed", reason or "Payment failed")

    def handle_checkout_expired(self, session_id: str) -> dict | None:
        return self._handle_unpaid(session_id, "expired", "Checkout session expired")

    def _handle_unpaid(self, session_id: str, status: str, message: str) -> dict | None:
        order = self.find_order_by_session(session_id)
        if order is None:
            logger.warning("Discarding %s callback for unknown session %s", status, session_id)
            return None
        if order["status"] not in ("pending", "processing"):
            logger.info(
                "Ignoring %s callback for order %s in status %s", status, order["order_id"], order["status"]
            )
            return order
        return self._close_order(order, status, message)

    def handle_provider_event(self, event: dict) -> dict:
        """Dispatch a verified provider webhook event."""

        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        session_id = obj.get("id")
        if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
            if obj.get("payment_status") not in (None, "paid", "no_payment_required"):
                return {"handled": False, "type": event_type}
            order = self.handle_checkout_completed(
                session_id,
                payment_intent_id=obj.get("payment_intent"),
                amount_paid_cents=obj.get("amount_total"),
            )
        elif event_type == "checkout.session.async_payment_failed":
            order = self.handle_checkout_failed(session_id)
        elif event_type == "checkout.session.expired":
            order = self.handle_checkout_expired(session_id)
        elif event_type == "payment_intent.payment_failed":
            order_ref = (obj.get("metadata") or {}).get("orderId")
            row = self.conn.execute(
                "SELECT provider_session_id FROM orders WHERE order_id = ?", (order_ref,)
            ).fetchone()
            if not row or not row["provider_session_id"]:
                logger.warning("Discarding payment failure for unknown order %s", order_ref)
                return {"handled": False, "type": event_type}
            error = (obj.get("last_payment_error") or {}).get("message")
            order = self.handle_checkout_failed(row["provider_session_id"], reason=error)
        elif event_type == "charge.refunded":
            refunds = (obj.get("refunds") or {}).get("data") or []
            order = self.reconcile_provider_refund(
                obj.get("payment_intent"),
                amount_refunded_cents=obj.get("amount_refunded") or 0,
                provider_refund_id=refunds[0].get("id") if refunds else None,
            )
        else:
            logger.debug("Ignoring provider event %s", event_type)
            return {"handled": False, "type": event_type}
        return {"handled": order is not None, "type": event_type}

    def refund_order(
        self,
        order_ref: str,
        *,
        amount: Any = None,
        reason: str | None = None,
        actor_id: int | None = None,
        _skip_role_check: bool = False,
    ) -> dict:
        """Refund part or all of a captured payment.

        The amount is reserved on the order before the provider is called, so
        overlapping refunds can never add up to more than was paid. A provider
        failure gives the reservation back.
        """

        if not _skip_role_check:
            self._require_role(actor_id, ("admin",))
        order = self.get_order(order_ref)
        refund_ref = _reference("REF")
        with transaction(self.conn):
            row = self.conn.execute("SELECT * FROM orders WHERE id = ?", (order["id"],)).fetchone()
            remaining = to_money(row["paid"]) - to_money(row["refunded"])
            if row["status"] not in ("paid", "partially_refunded"):
                remaining = Decimal("0.00")
            try:
                requested = remaining if amount in (None, "") else to_money(amount)
            except ArithmeticError as exc:
                raise InvalidRefundAmount("Refund amount must be a number") from exc
            if requested <= 0 or requested > remaining:
                raise InvalidRefundAmount(f"Refund must be between 0.01 and {remaining:.2f}")
            self._reserve_refund(row["id"], refund_ref, requested, reason or "Customer requested")

        try:
            provider_refund = self.payments.create_refund(
                payment_intent_id=row["provider_payment_intent_id"],
                amount=requested,
                reason=reason,
            )
        except BoardingError:
            with transaction(self.conn):
                self.conn.execute("DELETE FROM refunds WHERE refund_id = ?", (refund_ref,))
                self.conn.execute(
                    """
                    UPDATE orders SET refunded = MAX(ROUND(refunded - ?, 2), 0), updated_at = CURRENT_TIMESTAMP
                    WHERE id = ?
                    """,
                    (float(requested), row["id"]),
                )
            logger.error("Refund %s for order %s was not issued", refund_ref, order_ref)
            raise
        self._settle_refund(row["id"], refund_ref, requested, provider_refund.refund_id, provider_refund.status)

        self.record_audit(
            user_id=actor_id,
            action="order.refund",
            entity_type="order",
            entity_id=order_ref,
            changes={"amount": float(requested), "reason": reason},
        )
        if order["user_id"]:
            self.notify(
                user_id=order["user_id"],
                type="payment",
                title="Refund Issued",
                message=f"A refund of ${requested:.2f} is on its way.",
                data={"orderId": order_ref, "refundId": refund_ref},
            )
        return {
            "refund_id": refund_ref,
            "provider_refund_id": provider_refund.refund_id,
            "amount": float(requested),
            "status": provider_refund.status,
            "order": self.get_order(order_ref),
        }

    def _reserve_refund(self, order_id: int, refund_ref: str, amount: Decimal, reason: str) -> None:
        """Count a refund against its order; caller owns the transaction."""

        reserved = self.conn.execute(
            """
            UPDATE orders SET refunded = ROUND(refunded + ?, 2), updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND ROUND(refunded + ?, 2) <= paid + 0.001
            """,
            (float(amount), order_id, float(amount)),
        ).rowcount
        if not reserved:
            raise InvalidRefundAmount("Refund exceeds the amount paid")
        self.conn.execute(
            """
            INSERT INTO refunds(refund_id, order_id, amount, reason, status)
            VALUES (?, ?, ?, ?, 'pending')
            """,
            (refund_ref, order_id, float(amount), reason),
        )

    def _settle_refund(
        self,
        order_id: int,
        refund_ref: str,
        amount: Decimal,
        provider_refund_id: str | None,
        status: str,
    ) -> None:
        """Record the provider's answer and roll the refund up to the booking."""

        with transaction(self.conn):
            self.conn.execute(
                "UPDATE refunds SET provider_refund_id = ?, status = ? WHERE refund_id = ?",
                (provider_refund_id, status, refund_ref),
            )
            order = self.conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
            order_status = (
                "refunded" if to_money(order["refunded"]) >= to_money(order["paid"]) else "partially_refunded"
            )
            if order_status != order["status"]:
                lifecycle.ensure_transition(
                    order["status"], order_status, lifecycle.ORDER_TRANSITIONS, entity="Order"
                )
            self.conn.execute(
                """
                UPDATE orders SET status = ?, refunded_at = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (order_status, _now(), order_id),
            )
            if not (order["booking_id"] and order["applied_to_booking"]):
                return
            booking = self._booking_row(order["booking_id"])
            booking_refunded = to_money(booking["refunded_amount"]) + amount
            payment_status = (
                "refunded" if booking_refunded >= to_money(booking["paid_amount"]) else "partially_refunded"
            )
            if payment_status != booking["payment_status"]:
                lifecycle.ensure_transition(
                    booking["payment_status"], payment_status, lifecycle.PAYMENT_TRANSITIONS, entity="Payment"
                )
            self.conn.execute(
                """
                UPDATE bookings
                SET refunded_amount = ?, payment_status = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (float(booking_refunded), payment_status, booking["id"]),
            )
            if order["user_id"]:
                self.conn.execute(
                    "UPDATE users SET total_spent = MAX(ROUND(total_spent - ?, 2), 0) WHERE id = ?",
                    (float(amount), order["user_id"]),
                )

    def reconcile_provider_refund(
        self,
        payment_intent_id: str | None,
        *,
        amount_refunded_cents: int,
        provider_refund_id: str | None = None,
    ) -> dict | None:
        """Record a refund issued from the provider's dashboard.

        ``amount_refunded_cents`` is the provider's running total for the
        payment; only the part not yet on the order is recorded.
        """

        row = None
        if payment_intent_id:
            row = self.conn.execute(
                """
                SELECT id FROM orders
                WHERE provider_payment_intent_id = ? AND status IN ('paid', 'partially_refunded', 'refunded')
                ORDER BY id DESC LIMIT 1
                """,
                (payment_intent_id,),
            ).fetchone()
        if row is None:
            logger.warning("Discarding refund for unknown payment %s", payment_intent_id)
            return None
        refund_ref = _reference("REF")
        provider_total = to_money(Decimal(int(amount_refunded_cents)) / 100)
        with transaction(self.conn):
            order = self.conn.execute("SELECT * FROM orders WHERE id = ?", (row["id"],)).fetchone()
            missing = min(provider_total, to_money(order["paid"])) - to_money(order["refunded"])
            if missing > 0:
                self._reserve_refund(order["id"], refund_ref, missing, "Refunded outside the app")
        if missing <= 0:
            logger.info("Refunds for order %s already recorded", order["order_id"])
            return self.get_order(order["order_id"])
        self._settle_refund(order["id"], refund_ref, missing, provider_refund_id, "succeeded")
        logger.info("Recorded external refund of %s on order %s", missing, order["order_id"])
        self.record_audit(
            user_id=None,
            action="order.refund_reconciled",
            entity_type="order",
            entity_id=order["order_id"],
            changes={"amount": float(missing), "provider_refund_id": provider_refund_id},
        )
        return self.get_order(order["order_id"])

    def verify_checkout_session(self, session_id: str, *, user_id: int | None = None) -> dict:
        """Confirm a returning customer's payment without waiting for the webhook."""

        order = self.find_order_by_session(session_id)
        if order is None or (user_id is not None and order["user_id"] != user_id):
            raise NotFound("Checkout session not found")
        if order["status"] in ("pending", "processing", "cancelled"):
            session = self.payments.retrieve_session(session_id)
            if session.get("payment_status") in ("paid", "no_payment_required"):
                order = self.handle_checkout_completed(
                    session_id,
                    payment_intent_id=session.get("payment_intent"),
                    amount_paid_cents=session.get("amount_total"),
                )
        if order["status"] not in ("paid", "partially_refunded", "refunded"):
            raise ValidationError("Payment not completed")
        return {"order": order, "booking": self.get_booking(order["booking_id"])}

    # ------------------------------------------------------------------
    # Communications
    # ------------------------------------------------------------------
    def notify(
        self,
        *,
        user_id: int,
        type: str,
        title: str,
        message: str,
        data: dict | None = None,
        channels: Sequence[str] = ("in_app",),
    ) -> dict:
        with transaction(self.conn):
            cur = self.conn.execute(
                """
                INSERT INTO notifications(user_id, type, title, message, data, channels)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (user_id, type, title, message, json.dumps(data or {}), json.dumps(list(channels))),
            )
        return self.conn.execute(
            "SELECT * FROM notifications WHERE id = ?", (cur.lastrowid,)
        ).fetchone()

    def list_notifications(self, user_id: int, *, unread_only: bool = False) -> list[dict]:
        """Return notifications for a user, newest first."""

        where = "user_id = ? AND is_read = 0" if unread_only else "user_id = ?"
        rows = self.conn.execute(
            f"SELECT * FROM notifications WHERE {where} ORDER BY id DESC", (user_id,)
        ).fetchall()
        for row in rows:
            row["data"] = json.loads(row["data"] or "{}")
            row["channels"] = json.loads(row["channels"] or "[]")
            row["is_read"] = bool(row["is_read"])
        return rows

    def mark_notification_read(self, user_id: int, *, notification_ids: Sequence[int] | None = None) -> int:
        params: list[Any] = [_now(), user_id]
        where = "user_id = ? AND is_read = 0"
        if notification_ids:
            where += f" AND id IN ({','.join('?' for _ in notification_ids)})"
            params.extend(notification_ids)
        with transaction(self.conn):
            cur = self.conn.execute(
                f"UPDATE notifications SET is_read = 1, read_at = ? WHERE {where}", params
            )
        return cur.rowcount

    def create_review(
        self,
        *,
        user_id: int,
        booking_id: int,
        rating: int,
        title: str | None = None,
        comment: str | None = None,
    ) -> dict:
        booking = self.get_booking(booking_id, user_id=user_id)
        if booking["status"] != lifecycle.COMPLETED:
            raise ValidationError("Only completed stays can be reviewed")
        try:
            rating = int(rating)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Rating must be a number between 1 and 5") from exc
        if not 1 <= rating <= 5:
            raise ValidationError("Rating must be a number between 1 and 5")
        if self.conn.execute("SELECT id FROM reviews WHERE booking_id = ?", (booking_id,)).fetchone():
            raise DuplicateError("This stay has already been reviewed")
        with transaction(self.conn):
            cur = self.conn.execute(
                """
                INSERT INTO reviews(booking_id, user_id, rating, title, comment)
                VALUES (?, ?, ?, ?, ?)
                """,
                (booking_id, user_id, rating, title, comment),
            )
        return self.conn.execute("SELECT * FROM reviews WHERE id = ?", (cur.lastrowid,)).fetchone()

    def list_reviews(self, *, limit: int = 20) -> dict:
        rows = self.conn.execute(
            """
            SELECT reviews.*, users.name AS author_name
            FROM reviews
            JOIN users ON users.id = reviews.user_id
            WHERE reviews.is_published = 1
            ORDER BY reviews.id DESC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        stats = self.conn.execute(
            "SELECT COUNT(*) AS count, AVG(rating) AS average FROM reviews WHERE is_published = 1"
        ).fetchone()
        return {
            "reviews": rows,
            "count": stats["count"],
            "average": round(stats["average"], 2) if stats["average"] else None,
        }

    def post_chat_message(
        self,
        *,
        content: str,
        conversation_id: int | None = None,
        user: dict | None = None,
        visitor_info: dict | None = None,
        content_type: str = "text",
    ) -> dict:
        content = re.sub(r"<[^>]*>", "", content or "").strip()
        if not content:
            raise ValidationError("Content required")
        is_staff = bool(user and user["role"] in STAFF_ROLES)
        with transaction(self.conn):
            if conversation_id is None:
                cur = self.conn.execute(
                    "INSERT INTO chat_conversations(user_id, visitor_info) VALUES (?, ?)",
                    (
                        user["id"] if user else None,
                        None if user else json.dumps(visitor_info or {}),
                    ),
                )
                conversation_id = cur.lastrowid
            else:
                conversation = self.get_conversation(conversation_id, user=user)
                if conversation["status"] == "closed":
                    raise ValidationError("Conversation is closed")
            cur = self.conn.execute(
                """
                INSERT INTO chat_messages(conversation_id, sender_id, sender_type, sender_name, content, content_type)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation_id,
                    user["id"] if user else None,
                    "staff" if is_staff else "customer",
                    user["name"] if user else (visitor_info or {}).get("name", "Visitor"),
                    content,
                    content_type,
                ),
            )
            self.conn.execute(
                """
                UPDATE chat_conversations
                SET message_count = message_count + 1, unread_count = unread_count + ?,
                    last_message = ?, last_message_at = ?
                WHERE id = ?
                """,
                (0 if is_staff else 1, content[:100], _now(), conversation_id),
            )
        message = self.conn.execute(
            "SELECT * FROM chat_messages WHERE id = ?", (cur.lastrowid,)
        ).fetchone()
        return {"message": message, "conversation_id": conversation_id}

    def get_conversation(self, conversation_id: int, *, user: dict | None = None) -> dict:
        row = self.conn.execute(
            "SELECT * FROM chat_conversations WHERE id = ?", (conversation_id,)
        ).fetchone()
        if not row:
            raise NotFound("Conversation not found")
        if user and user["role"] not in STAFF_ROLES and row["user_id"] not in (None, user["id"]):
            raise NotFound("Conversation not found")
        return row

    def list_conversations(self, *, user: dict) -> list[dict]:
        if user["role"] in STAFF_ROLES:
            return self.conn.execute(
                "SELECT * FROM chat_conversations ORDER BY last_message_at DESC, id DESC"
            ).fetchall()
        return self.conn.execute(
            "SELECT * FROM chat_conversations WHERE user_id = ? ORDER BY last_message_at DESC, id DESC",
            (user["id"],),
        ).fetchall()

    def list_chat_messages(self, conversation_id: int, *, user: dict | None = None) -> list[dict]:
        self.get_conversation(conversation_id, user=user)
        return self.conn.execute(
            "SELECT * FROM chat_messages WHERE conversation_id = ? ORDER BY id",
            (conversation_id,),
        ).fetchall()

    def update_conversation(
        self,
        conversation_id: int,
        *,
        staff_id: int,
        status: str | None = None,
        assigned_to: int | None = None,
        priority: str | None = None,
    ) -> dict:
        self._require_role(staff_id, STAFF_ROLES)
        conversation = self.get_conversation(conversation_id)
        if status and status not in ("active", "waiting", "closed"):
            raise ValidationError(f"Unknown conversation status: {status}")
        with transaction(self.conn):
            self.conn.execute(
                """
                UPDATE chat_conversations
                SET status = ?, assigned_to = ?, priority = ?, closed_at = ?, unread_count = 0
                WHERE id = ?
                """,
                (
                    status or conversation["status"],
                    assigned_to if assigned_to is not None else conversation["assigned_to"],
                    priority or conversation["priority"],
                    _now() if status == "closed" else conversation["closed_at"],
                    conversation_id,
                ),
            )
        return self.get_conversation(conversation_id)

    # ------------------------------------------------------------------
    # Daily report cards
    # ------------------------------------------------------------------
    def _report_card(self, report_id: int) -> dict:
        row = self.conn.execute("SELECT * FROM report_cards WHERE id = ?", (report_id,)).fetchone()
        if not row:
            raise NotFound("Report card not found")
        for key in REPORT_JSON_FIELDS:
            row[key] = json.loads(row[key] or ("{}" if key == "health" else "[]"))
        return row

    def create_report_card(
        self,
        *,
        staff_id: int,
        booking_id: int,
        date: Any,
        pet_id: int | None = None,
        activities: Sequence[dict] | None = None,
        meals: Sequence[dict] | None = None,
        health: dict | None = None,
        walks: Sequence[dict] | None = None,
        media: Sequence[dict] | None = None,
        staff_notes: str | None = None,
        message_to_parent: str | None = None,
        highlights: Sequence[str] | None = None,
        overall_mood: str | None = None,
    ) -> dict:
        """Start a draft report card for one day of a stay."""

        self._require_role(staff_id, STAFF_ROLES)
        if not booking_id or not date:
            raise ValidationError("Booking and date are required")
        booking = self.get_booking(int(booking_id))
        try:
            day = dt.date.fromisoformat(str(date)[:10]).isoformat()
        except ValueError as exc:
            raise ValidationError("Date must be YYYY-MM-DD") from exc
        mood = overall_mood or "good"
        if mood not in MOODS:
            raise ValidationError(f"Unknown mood: {mood}")
        if self.conn.execute(
            "SELECT id FROM report_cards WHERE booking_id = ? AND date = ?", (booking["id"], day)
        ).fetchone():
            raise DuplicateError("Report card already exists for this date")
        if pet_id:
            pet_name = self.get_pet(int(pet_id))["name"]
        else:
            pet_id = booking["pet_id"]
            pet_name = ", ".join(pet["name"] for pet in booking["pet_details"])
        with transaction(self.conn):
            cur = self.conn.execute(
                """
                INSERT INTO report_cards(
                    booking_id, pet_id, pet_name, date, staff_id, activities, meals, health,
                    walks, media, staff_notes, message_to_parent, overall_mood, highlights
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    booking["id"],
                    pet_id,
                    pet_name,
                    day,
                    staff_id,
                    json.dumps(list(activities or [])),
                    json.dumps(list(meals or [])),
                    json.dumps(health or {}),
                    json.dumps(list(walks or [])),
                    json.dumps(list(media or [])),
                    staff_notes,
                    message_to_parent,
                    derive_mood(health, mood),
                    json.dumps(list(highlights or [])),
                ),
            )
        return self._report_card(cur.lastrowid)

    def get_report_card(self, report_id: int, *, user: dict) -> dict:
        """Customers only see sent cards for their own bookings; reading one marks it viewed."""

        card = self._report_card(report_id)
        if user["role"] in STAFF_ROLES:
            return card
        owner = self._booking_row(card["booking_id"])["user_id"]
        if owner != user["id"] or card["status"] != "sent":
            raise NotFound("Report card not found")
        with transaction(self.conn):
            self.conn.execute(
                "UPDATE report_cards SET viewed_at = ?, viewed_by = ? WHERE id = ?",
                (_now(), user["id"], report_id),
            )
        return self._report_card(report_id)

    def update_report_card(self, report_id: int, *, staff_id: int, **changes: Any) -> dict:
        staff = self._require_role(staff_id, STAFF_ROLES)
        card = self._report_card(report_id)
        if card["status"] == "sent" and staff["role"] != "admin":
            raise ValidationError("Cannot edit sent report cards")
        unknown = sorted(set(changes) - set(REPORT_UPDATE_FIELDS))
        if unknown:
            raise ValidationError(f"Unknown report card field(s): {', '.join(unknown)}")
        if changes.get("status") not in (None, *REPORT_STATUSES):
            raise ValidationError(f"Unknown report card status: {changes['status']}")
        if changes.get("overall_mood") not in (None, *MOODS):
            raise ValidationError(f"Unknown mood: {changes['overall_mood']}")
        if "health" in changes or "overall_mood" in changes:
            changes["overall_mood"] = derive_mood(
                changes.get("health", card["health"]), changes.get("overall_mood") or card["overall_mood"]
            )
        columns = {
            key: json.dumps(value) if key in REPORT_JSON_FIELDS else value for key, value in changes.items()
        }
        if changes.get("status") == "sent" and card["status"] != "sent":
            columns["sent_at"] = _now()
        if columns:
            assignments = ", ".join(f"{key} = ?" for key in columns)
            with transaction(self.conn):
                self.conn.execute(
                    f"UPDATE report_cards SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (*columns.values(), report_id),
                )
        return self._report_card(report_id)

    def delete_report_card(self, report_id: int, *, admin_id: int) -> dict:
        self._require_role(admin_id, ("admin",))
        card = self._report_card(report_id)
        with transaction(self.conn):
            self.conn.execute("DELETE FROM report_cards WHERE id = ?", (report_id,))
        self.record_audit(
            user_id=admin_id,
            action="report_card.delete",
            entity_type="report_card",
            entity_id=report_id,
            changes={"booking_id": card["booking_id"], "date": card["date"]},
        )
        return {"deleted": True}

    def send_report_card(self, report_id: int, *, staff_id: int) -> dict:
        """Publish a report card to the pet's owner by notification and email."""

        self._require_role(staff_id, STAFF_ROLES)
        card = self._report_card(report_id)
        if card["status"] == "sent":
            raise ValidationError("Report card already sent")
        booking = self.get_booking(card["booking_id"])
        with transaction(self.conn):
            self.conn.execute(
                """
                UPDATE report_cards SET status = 'sent', sent_at = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (_now(), report_id),
            )
        name = card["pet_name"] or "your pet"
        if booking["user_id"]:
            self.notify(
                user_id=booking["user_id"],
                type="report_card",
                title=f"Daily Report for {name}",
                message=f"Today's report card for {name} is ready! See how their day went.",
                data={"reportId": report_id, "date": card["date"]},
                channels=("in_app", "email"),
            )
        email = self.queue_email(
            recipient=booking["customer"]["email"],
            template="daily_report",
            subject=f"{name}'s day at Pet Paradise",
            data={
                "petName": name,
                "date": card["date"],
                "summary": card["message_to_parent"] or f"{name} had a {card['overall_mood']} day today!",
                "overallMood": card["overall_mood"],
                "highlights": card["highlights"],
                "photos": [item.get("url") for item in card["media"] if item.get("type") == "photo"][:4],
                "reportId": report_id,
            },
        )
        return {"report": self._report_card(report_id), "email": email}

    def list_report_cards(
        self,
        *,
        user: dict,
        booking_id: int | None = None,
        pet_id: int | None = None,
        status: str | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> list[dict]:
        conditions: list[str] = []
        params: list[Any] = []
        if user["role"] not in STAFF_ROLES:
            conditions.append("bookings.user_id = ?")
            params.append(user["id"])
            status = "sent"
        for column, value in (
            ("report_cards.booking_id = ?", booking_id),
            ("report_cards.pet_id = ?", pet_id),
            ("report_cards.status = ?", status),
            ("report_cards.date >= ?", start_date),
            ("report_cards.date <= ?", end_date),
        ):
            if value not in (None, ""):
                conditions.append(column)
                params.append(value)
        where = " WHERE " + " AND ".join(conditions) if conditions else ""
        rows = self.conn.execute(
            f"""
            SELECT report_cards.id FROM report_cards
            JOIN bookings ON bookings.id = report_cards.booking_id{where}
            ORDER BY report_cards.date DESC, report_cards.id DESC
            """,
            params,
        ).fetchall()
        return [self._report_card(row["id"]) for row in rows]

    def booking_report_cards(self, booking_id: int, *, user: dict) -> dict:
        booking = self.get_booking(booking_id, user_id=None if user["role"] in STAFF_ROLES else user["id"])
        reports = self.list_report_cards(user=user, booking_id=booking_id)
        walks = [walk for report in reports for walk in report["walks"]]
        return {
            "booking": {
                "id": booking["id"],
                "booking_number": booking["booking_number"],
                "pets": [pet["name"] for pet in booking["pet_details"]],
                "pet_type": booking["pet_type"],
                "start_date": booking["start_date"],
                "end_date": booking["end_date"],
                "status": booking["status"],
            },
            "reports": reports,
            "summary": {
                "total_reports": len(reports),
                "average_mood": average_mood(report["overall_mood"] for report in reports),
                "total_photos": sum(
                    1 for report in reports for item in report["media"] if item.get("type") == "photo"
                ),
                "total_walks": len(walks),
                "total_walk_minutes": sum(walk.get("duration") or 0 for walk in walks),
            },
        }

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def analytics(self, *, admin_id: int, period: str = "30d", now: dt.datetime | None = None) -> dict:
        """Dashboard figures for bookings and orders created within ``period``.

        Revenue is net of refunds and only counts payments credited to a
        booking. Unknown periods fall back to 30 days.
        """

        self._require_role(admin_id, ("admin",))
        if period not in ANALYTICS_PERIODS:
            period = "30d"
        now = now or dt.datetime.now(dt.timezone.utc)
        since = (now - dt.timedelta(days=ANALYTICS_PERIODS[period])).strftime("%Y-%m-%d %H:%M:%S")

        counts = {status: 0 for status in lifecycle.BOOKING_TRANSITIONS}
        for row in self.conn.execute(
            "SELECT status, COUNT(*) AS n FROM bookings WHERE created_at >= ? GROUP BY status", (since,)
        ).fetchall():
            counts[row["status"]] = row["n"]
        total = sum(counts.values())
        active_statuses = tuple(sorted(lifecycle.ACTIVE_STATUSES))
        active = self.conn.execute(
            f"SELECT COUNT(*) AS n FROM bookings WHERE status IN ({', '.join('?' * len(active_statuses))})",
            active_statuses,
        ).fetchone()["n"]
        revenue = self.conn.execute(
            """
            SELECT COUNT(*) AS orders, COALESCE(SUM(paid - refunded), 0) AS net
            FROM orders
            WHERE applied_to_booking = 1 AND created_at >= ?
            """,
            (since,),
        ).fetchone()
        rating = self.conn.execute(
            "SELECT AVG(rating) AS average FROM reviews WHERE is_published = 1"
        ).fetchone()["average"]
        trend = self.conn.execute(
            """
            SELECT substr(created_at, 1, 10) AS day, COUNT(*) AS bookings, ROUND(SUM(total), 2) AS revenue
            FROM bookings
            WHERE created_at >= ?
            GROUP BY day
            ORDER BY day DESC
            LIMIT 30
            """,
            (since,),
        ).fetchall()
        recent = self.conn.execute(
            """
            SELECT orders.order_id, orders.paid, orders.customer, orders.created_at,
                   bookings.booking_number, users.name AS user_name
            FROM orders
            LEFT JOIN bookings ON bookings.id = orders.booking_id
            LEFT JOIN users ON users.id = orders.user_id
            WHERE orders.status = 'paid'
            ORDER BY orders.id DESC
            LIMIT 5
            """
        ).fetchall()

        net = to_money(revenue["net"])
        return {
            "period": period,
            "overview": {
                "total_users": self.conn.execute("SELECT COUNT(*) AS n FROM users").fetchone()["n"],
                "total_pets": self.conn.execute(
                    "SELECT COUNT(*) AS n FROM pets WHERE is_active = 1"
                ).fetchone()["n"],
                "total_bookings": total,
                "active_bookings": active,
                "revenue": float(net),
                "avg_order_value": _money(net / revenue["orders"]) if revenue["orders"] else 0.0,
                "avg_rating": round(rating, 1) if rating else 0.0,
            },
            "bookings": {
                "total": total,
                **counts,
                "completion_rate": round(counts[lifecycle.COMPLETED] * 100 / total, 1) if total else 0.0,
                "cancellation_rate": round(counts[lifecycle.CANCELLED] * 100 / total, 1) if total else 0.0,
            },
            "pet_type_distribution": {
                row["pet_type"]: row["n"]
                for row in self.conn.execute(
                    "SELECT pet_type, COUNT(*) AS n FROM bookings WHERE created_at >= ? GROUP BY pet_type",
                    (since,),
                ).fetchall()
            },
            "booking_trend": list(reversed(trend)),
            "recent_orders": [
                {
                    "order_id": row["order_id"],
                    "customer": row["user_name"] or json.loads(row["customer"] or "{}").get("name"),
                    "amount": row["paid"],
                    "booking_number": row["booking_number"],
                    "date": row["created_at"],
                }
                for row in recent
            ],
        }

    # ------------------------------------------------------------------
    # Scheduled jobs
    # ------------------------------------------------------------------
    def _record_cron(
        self,
        job_name: str,
        started: float,
        started_at: str,
        results: dict,
        error: str | None = None,
    ) -> dict:
        status = "failed" if error else ("completed" if results.get("failed", 0) == 0 else "partial")
        with transaction(self.conn):
            cur = self.conn.execute(
                """
                INSERT INTO cron_logs(job_name, status, results, execution_ms, error_message, started_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_name,
                    status,
                    json.dumps(results),
                    int((time.monotonic() - started) * 1000),
                    error,
                    started_at,
                    _now(),
                ),
            )
        logger.info("Cron job %s finished: %s %s", job_name, status, results)
        return self.conn.execute("SELECT * FROM cron_logs WHERE id = ?", (cur.lastrowid,)).fetchone()

    def _send_reminders(
        self,
        results: dict,
        *,
        status: str,
        date_column: str,
        day: dt.date,
        flag: str,
        title: str,
        message: str,
    ) -> int:
        rows = self.conn.execute(
            f"SELECT id FROM bookings WHERE status = ? AND {date_column} = ? AND {flag} = 0",
            (status, day.isoformat()),
        ).fetchall()
        for row in rows:
            results["processed"] += 1
            booking = self.get_booking(row["id"])
            names = ", ".join(pet["name"] for pet in booking["pet_details"])
            try:
                if booking["user_id"]:
                    self.notify(
                        user_id=booking["user_id"],
                        type="reminder",
                        title=title,
                        message=message.format(names=names),
                        data={"bookingId": booking["id"], "bookingNumber": booking["booking_number"]},
                        channels=("in_app", "email"),
                    )
                    self.queue_email(
                        recipient=booking["customer"]["email"],
                        template="reminder",
                        subject=title,
                        data={"message": message.format(names=names)},
                    )
                with transaction(self.conn):
                    self.conn.execute(f"UPDATE bookings SET {flag} = 1 WHERE id = ?", (booking["id"],))
                results["succeeded"] += 1
            except sqlite3.Error:
                logger.exception("Reminder for booking %s failed", booking["booking_number"])
                results["failed"] += 1
        return len(rows)

    def run_reminders(self, *, today: dt.date | None = None) -> dict:
        """Send check-in and check-out reminders that have not gone out yet."""

        today = today or dt.date.today()
        started, started_at = time.monotonic(), _now()
        results: dict[str, Any] = {"processed": 0, "succeeded": 0, "failed": 0, "details": {}}
        try:
            results["details"]["one_day_reminders"] = self._send_reminders(
                results,
                status=lifecycle.CONFIRMED,
                date_column="start_date",
                day=today + dt.timedelta(days=1),
                flag="one_day_reminder_sent",
                title="Check-in Tomorrow!",
                message="{names}'s stay starts tomorrow. Please arrive between 8am-10am.",
            )
            results["details"]["three_day_reminders"] = self._send_reminders(
                results,
                status=lifecycle.CONFIRMED,
                date_column="start_date",
                day=today + dt.timedelta(days=3),
                flag="three_day_reminder_sent",
                title="Upcoming Booking",
                message="{names}'s stay is in 3 days. Remember to bring vaccination records.",
            )
            results["details"]["checkout_reminders"] = self._send_reminders(
                results,
                status=lifecycle.IN_PROGRESS,
                date_column="end_date",
                day=today,
                flag="check_out_reminder_sent",
                title="Check-out Today",
                message="{names} is ready for pickup! Please arrive between 4pm-6pm.",
            )
        except sqlite3.Error as exc:
            self._record_cron("reminders", started, started_at, results, error=str(exc))
            raise
        self._record_cron("reminders", started, started_at, results)
        return results

    def run_cleanup(self, *, now: dt.datetime | None = None) -> dict:
        """Expire abandoned checkouts and flag overdue arrivals as no-shows."""

        now = now or dt.datetime.now(dt.timezone.utc)
        cutoff = now.astimezone(dt.timezone.utc).isoformat(timespec="seconds")
        started, started_at = time.monotonic(), _now()
        results: dict[str, Any] = {"processed": 0, "succeeded": 0, "failed": 0, "details": {}}
        expired = self.conn.execute(
            """
            SELECT provider_session_id FROM orders
            WHERE status = 'pending' AND expires_at IS NOT NULL AND expires_at < ?
            """,
            (cutoff,),
        ).fetchall()
        for row in expired:
            results["processed"] += 1
            self.handle_checkout_expired(row["provider_session_id"])
            results["succeeded"] += 1
        results["details"]["expired_orders"] = len(expired)

        overdue = self.conn.execute(
            "SELECT id FROM bookings WHERE status = 'confirmed' AND start_date < ?",
            ((now.date() - dt.timedelta(days=1)).isoformat(),),
        ).fetchall()
        for row in overdue:
            results["processed"] += 1
            try:
                self.mark_no_show(row["id"], staff_id=None, as_of=now.date())
                results["succeeded"] += 1
            except InvalidTransition:
                logger.exception("Could not mark booking %s as no-show", row["id"])
                results["failed"] += 1
        results["details"]["no_shows"] = len(overdue)
        self._record_cron("cleanup", started, started_at, results)
        return results

    def list_cron_logs(self, *, job_name: str | None = None) -> list[dict]:
        if job_name:
            return self.conn.execute(
                "SELECT * FROM cron_logs WHERE job_name = ? ORDER BY id", (job_name,)
            ).fetchall()
        return self.conn.execute("SELECT * FROM cron_logs ORDER BY id").fetchall()

    def close(self) -> None:
        if self._shared_conn is not None:
            self._shared_conn.close()
        with self._lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
