"""Database utilities for the Pet Paradise boarding platform."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator


SCHEMA_VERSION = 1

DEFAULT_SETTINGS: dict[str, Any] = {
    "pricing.services": {
        "cat-boarding": {
            "name": "Cat Boarding",
            "pet_type": "cat",
            "price": 25,
            "unit": "night",
            "description": "Cozy home environment with our resident cats",
            "features": ["24/7 Care", "Play Sessions", "Daily Updates", "Medication Admin"],
        },
        "dog-boarding": {
            "name": "Dog Boarding",
            "pet_type": "dog",
            "price": 40,
            "unit": "night",
            "description": "Loving home care with yard access and daily walks",
            "features": ["Daily Walks", "Playtime", "Feeding Schedule", "Photo Updates"],
        },
        "dog-daycare": {
            "name": "Dog Daycare",
            "pet_type": "dog",
            "price": 25,
            "unit": "day",
            "description": "Full day care from 7AM-5PM with activities",
            "features": ["Supervised Play", "Rest Time", "Snacks Included", "Flexible Hours"],
        },
    },
    "pricing.add_ons": {
        "photos": {"name": "Daily Photo Updates", "price": 5, "per_day": True},
        "grooming": {"name": "Basic Grooming", "price": 25, "per_day": False},
        "playtime": {"name": "Extra Playtime", "price": 10, "per_day": False},
        "pickup": {"name": "Pickup Service", "price": 20, "per_day": False},
        "medication": {"name": "Medication Administration", "price": 5, "per_day": True},
        "webcam": {"name": "Live Webcam Access", "price": 10, "per_day": True},
    },
    "pricing.discounts": {"multi_pet": 0.10, "long_stay": 0.05, "long_stay_nights": 7},
    "pricing.tax_rate": 0,
    "pricing.deposit_percentage": 0.30,
    "capacity.defaults": {"cat": 8, "dog": 4},
}


def dict_factory(cursor: sqlite3.Cursor, row: sqlite3.Row) -> dict:
    """Return rows as dictionaries rather than tuples."""

    return {description[0]: row[idx] for idx, description in enumerate(cursor.description)}


def get_connection(path: str | Path) -> sqlite3.Connection:
    """Return a SQLite connection with sensible defaults."""

    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = dict_factory
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside a write transaction.

    ``BEGIN IMMEDIATE`` takes the database write lock up front, so two
    connections cannot both read a capacity counter and then both write it.
    Nested use joins the transaction that is already open.
    """

    if conn.in_transaction:
        yield conn
        return
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


def initialize_database(conn: sqlite3.Connection) -> None:
    """Create the database schema if it does not yet exist."""

    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS system_settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            description TEXT,
            updated_by INTEGER,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            name TEXT NOT NULL,
            phone TEXT,
            address TEXT,
            role TEXT NOT NULL DEFAULT 'customer',
            status TEXT NOT NULL DEFAULT 'active',
            token_version INTEGER NOT NULL DEFAULT 0,
            referral_code TEXT UNIQUE,
            referred_by INTEGER,
            loyalty_points INTEGER DEFAULT 0,
            total_bookings INTEGER DEFAULT 0,
            total_spent REAL DEFAULT 0,
            stripe_customer_id TEXT,
            last_login_at TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(referred_by) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS password_resets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            token_hash TEXT UNIQUE NOT NULL,
            expires_at TEXT NOT NULL,
            used_at TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(user_id) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS pets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            owner_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            species TEXT NOT NULL,
            breed TEXT,
            size TEXT,
            weight REAL,
            birth_date TEXT,
            vaccinated INTEGER DEFAULT 0,
            spayed_neutered INTEGER DEFAULT 0,
            microchipped INTEGER DEFAULT 0,
            dietary_notes TEXT,
            medical_notes TEXT,
            behavior_notes TEXT,
            is_active INTEGER DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(owner_id) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS vaccination_records (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            pet_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            date TEXT,
            expiry_date TEXT,
            verified INTEGER DEFAULT 0,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(pet_id) REFERENCES pets(id)
        );

        CREATE TABLE IF NOT EXISTS bookings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            booking_number TEXT UNIQUE NOT NULL,
            user_id INTEGER,
            pet_id INTEGER,
            service_type TEXT NOT NULL,
            pet_type TEXT NOT NULL,
            pet_count INTEGER NOT NULL,
            pet_details TEXT NOT NULL,
            customer TEXT NOT NULL,
            start_date TEXT NOT NULL,
            end_date TEXT NOT NULL,
            actual_check_in TEXT,
            actual_check_out TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            payment_status TEXT NOT NULL DEFAULT 'pending',
            daily_rate REAL NOT NULL,
            days INTEGER NOT NULL,
            subtotal REAL NOT NULL,
            add_ons_total REAL NOT NULL DEFAULT 0,
            discount REAL NOT NULL DEFAULT 0,
            discount_reason TEXT,
            tax REAL NOT NULL DEFAULT 0,
            total REAL NOT NULL,
            paid_amount REAL NOT NULL DEFAULT 0,
            refunded_amount REAL NOT NULL DEFAULT 0,
            add_ons TEXT,
            special_requests TEXT,
            source TEXT DEFAULT 'website',
            capacity_held INTEGER NOT NULL DEFAULT 0,
            one_day_reminder_sent INTEGER DEFAULT 0,
            three_day_reminder_sent INTEGER DEFAULT 0,
            check_out_reminder_sent INTEGER DEFAULT 0,
            review_request_sent INTEGER DEFAULT 0,
            admin_notes TEXT,
            cancellation_reason TEXT,
            cancelled_at TEXT,
            cancelled_by INTEGER,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(user_id) REFERENCES users(id),
            FOREIGN KEY(pet_id) REFERENCES pets(id),
            FOREIGN KEY(cancelled_by) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS orders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id TEXT UNIQUE NOT NULL,
            booking_id INTEGER,
            user_id INTEGER,
            customer TEXT NOT NULL,
            provider_session_id TEXT UNIQUE,
            provider_payment_intent_id TEXT,
            provider_customer_id TEXT,
            subtotal REAL NOT NULL,
            discount REAL NOT NULL DEFAULT 0,
            tax REAL NOT NULL DEFAULT 0,
            total REAL NOT NULL,
            amount_due REAL NOT NULL,
            paid REAL NOT NULL DEFAULT 0,
            refunded REAL NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'pending',
            payment_type TEXT NOT NULL DEFAULT 'full',
            applied_to_booking INTEGER NOT NULL DEFAULT 0,
            checkout_url TEXT,
            error_message TEXT,
            expires_at TEXT,
            paid_at TEXT,
            refunded_at TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(booking_id) REFERENCES bookings(id),
            FOREIGN KEY(user_id) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS refunds (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            refund_id TEXT UNIQUE NOT NULL,
            order_id INTEGER NOT NULL,
            provider_refund_id TEXT,
            amount REAL NOT NULL,
            reason TEXT,
            status TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(order_id) REFERENCES orders(id)
        );

        CREATE TABLE IF NOT EXISTS availability (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            date TEXT NOT NULL,
            pet_type TEXT NOT NULL,
            total INTEGER NOT NULL,
            booked INTEGER NOT NULL DEFAULT 0,
            blocked INTEGER NOT NULL DEFAULT 0,
            is_blocked INTEGER NOT NULL DEFAULT 0,
            block_reason TEXT,
            price_override REAL,
            price_multiplier REAL,
            notes TEXT,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(date, pet_type)
        );

        CREATE TABLE IF NOT EXISTS notifications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            type TEXT NOT NULL,
            title TEXT NOT NULL,
            message TEXT NOT NULL,
            data TEXT,
            channels TEXT,
            is_read INTEGER DEFAULT 0,
            read_at TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(user_id) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS chat_conversations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER,
            visitor_info TEXT,
            status TEXT NOT NULL DEFAULT 'active',
            priority TEXT DEFAULT 'normal',
            assigned_to INTEGER,
            source TEXT DEFAULT 'website',
            message_count INTEGER DEFAULT 0,
            unread_count INTEGER DEFAULT 0,
            last_message TEXT,
            last_message_at TEXT,
            closed_at TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(user_id) REFERENCES users(id),
            FOREIGN KEY(assigned_to) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS chat_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            conversation_id INTEGER NOT NULL,
            sender_id INTEGER,
            sender_type TEXT NOT NULL,
            sender_name TEXT,
            content TEXT NOT NULL,
            content_type TEXT DEFAULT 'text',
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(conversation_id) REFERENCES chat_conversations(id) ON DELETE CASCADE,
            FOREIGN KEY(sender_id) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS reviews (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            booking_id INTEGER UNIQUE NOT NULL,
            user_id INTEGER NOT NULL,
            rating INTEGER NOT NULL,
            title TEXT,
            comment TEXT,
            is_published INTEGER DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY(booking_id) REFERENCES bookings(id),
            FOREIGN KEY(user_id) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS report_cards (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            booking_id INTEGER NOT NULL,
            pet_id INTEGER,
            pet_name TEXT,
            date TEXT NOT NULL,
            staff_id INTEGER NOT NULL,
            activities TEXT,
            meals TEXT,
            health TEXT,
            walks TEXT,
            media TEXT,
            staff_notes TEXT,
            message_to_parent TEXT,
            overall_mood TEXT NOT NULL DEFAULT 'good',
            highlights TEXT,
            status TEXT NOT NULL DEFAULT 'draft',
            sent_at TEXT,
            viewed_at TEXT,
            viewed_by INTEGER,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(booking_id, date),
            FOREIGN KEY(booking_id) REFERENCES bookings(id),
            FOREIGN KEY(pet_id) REFERENCES pets(id),
            FOREIGN KEY(staff_id) REFERENCES users(id),
            FOREIGN KEY(viewed_by) REFERENCES users(id)
        );

        CREATE TABLE IF NOT EXISTS audit_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER,
            action TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id TEXT,
            changes TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS email_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            recipient TEXT NOT NULL,
            template TEXT NOT NULL,
            subject TEXT,
            data TEXT,
            status TEXT NOT NULL DEFAULT 'queued',
            error_message TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS cron_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_name TEXT NOT NULL,
            status TEXT NOT NULL,
            results TEXT,
            execution_ms INTEGER,
            error_message TEXT,
            started_at TEXT NOT NULL,
            completed_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_bookings_user ON bookings(user_id);
        CREATE INDEX IF NOT EXISTS idx_bookings_status ON bookings(status);
        CREATE INDEX IF NOT EXISTS idx_bookings_dates ON bookings(start_date, end_date);
        CREATE INDEX IF NOT EXISTS idx_orders_booking ON orders(booking_id);
        CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);
        CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id);
        CREATE INDEX IF NOT EXISTS idx_orders_payment_intent ON orders(provider_payment_intent_id);
        CREATE INDEX IF NOT EXISTS idx_report_cards_status ON report_cards(status, date);
        """
    )

    for key, value in DEFAULT_SETTINGS.items():
        conn.execute(
            "INSERT OR IGNORE INTO system_settings(key, value) VALUES (?, ?)",
            (key, json.dumps(value)),
        )
    set_setting(conn, "schema_version", SCHEMA_VERSION)


def set_setting(
    conn: sqlite3.Connection,
    key: str,
    value: Any,
    *,
    updated_by: int | None = None,
) -> None:
    conn.execute(
        "INSERT INTO system_settings(key, value, updated_by) VALUES (?, ?, ?)\n"
        "         ON CONFLICT(key) DO UPDATE SET value = excluded.value,"
        " updated_by = excluded.updated_by, updated_at = CURRENT_TIMESTAMP",
        (key, json.dumps(value), updated_by),
    )
    conn.commit()


def get_setting(conn: sqlite3.Connection, key: str, default: Any = None) -> Any:
    row = conn.execute("SELECT value FROM system_settings WHERE key = ?", (key,)).fetchone()
    return json.loads(row["value"]) if row else default
