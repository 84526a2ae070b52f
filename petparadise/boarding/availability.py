"""Per-date, per-species capacity ledger."""

from __future__ import annotations

import datetime as dt
import logging
import sqlite3
from typing import Any, Iterable, Mapping, Sequence

from .database import transaction
from .errors import CapacityExceeded, ValidationError

logger = logging.getLogger(__name__)

PET_TYPES = ("cat", "dog")


def _parse_date(value: Any) -> dt.date:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    try:
        return dt.date.fromisoformat(str(value)[:10])
    except ValueError as exc:
        raise ValidationError(f"Invalid date: {value!r}") from exc


def stay_dates(start: Any, end: Any) -> list[str]:
    """Return the ISO dates a stay occupies.

    A boarding stay occupies each night from check-in up to (not including)
    check-out. A single-day stay (start == end) occupies its one date.
    """

    start_date = _parse_date(start)
    end_date = _parse_date(end)
    if end_date < start_date:
        raise ValidationError("End date must not be before start date")
    if end_date == start_date:
        return [start_date.isoformat()]
    return [
        (start_date + dt.timedelta(days=offset)).isoformat()
        for offset in range((end_date - start_date).days)
    ]


class AvailabilityLedger:
    """Reads and mutates the ``availability`` table.

    Rows are created lazily with the default capacity for the pet type the
    first time a date is touched.
    """

    def __init__(self, conn: sqlite3.Connection, default_capacity: Mapping[str, int]) -> None:
        self.conn = conn
        self.default_capacity = dict(default_capacity)

    def _check_pet_type(self, pet_type: str) -> None:
        if pet_type not in PET_TYPES:
            raise ValidationError(f"Unknown pet type: {pet_type}")

    def _ensure_row(self, date: str, pet_type: str) -> None:
        self.conn.execute(
            "INSERT OR IGNORE INTO availability(date, pet_type, total) VALUES (?, ?, ?)",
            (date, pet_type, int(self.default_capacity.get(pet_type, 0))),
        )

    def _row(self, date: str, pet_type: str) -> dict | None:
        return self.conn.execute(
            "SELECT * FROM availability WHERE date = ? AND pet_type = ?",
            (date, pet_type),
        ).fetchone()

    def _summarise(self, date: str, pet_type: str, row: dict | None) -> dict:
        if row is None:
            total = int(self.default_capacity.get(pet_type, 0))
            return {
                "date": date,
                "pet_type": pet_type,
                "total": total,
                "booked": 0,
                "blocked": 0,
                "available": total,
                "is_blocked": False,
                "block_reason": None,
                "price_override": None,
                "price_multiplier": None,
                "notes": None,
            }
        available = row["total"] - row["booked"] - row["blocked"]
        if available < 0:
            logger.warning(
                "Capacity overrun on %s for %s: total=%s booked=%s blocked=%s",
                date,
                pet_type,
                row["total"],
                row["booked"],
                row["blocked"],
            )
            available = 0
        if row["is_blocked"]:
            available = 0
        return {
            "date": date,
            "pet_type": pet_type,
            "total": row["total"],
            "booked": row["booked"],
            "blocked": row["blocked"],
            "available": available,
            "is_blocked": bool(row["is_blocked"]),
            "block_reason": row["block_reason"],
            "price_override": row["price_override"],
            "price_multiplier": row["price_multiplier"],
            "notes": row["notes"],
        }

    def get_availability(self, date: Any, pet_type: str) -> dict:
        self._check_pet_type(pet_type)
        day = _parse_date(date).isoformat()
        return self._summarise(day, pet_type, self._row(day, pet_type))

    def check(self, dates: Iterable[str], pet_type: str, count: int) -> str | None:
        """Return the first date that cannot take ``count`` more pets."""

        for day in dates:
            if self.get_availability(day, pet_type)["available"] < count:
                return day
        return None

    def reserve(self, dates: Sequence[str], pet_type: str, count: int) -> None:
        """Book ``count`` places on every date, or on none of them."""

        self._check_pet_type(pet_type)
        if count <= 0:
            raise ValidationError("At least one pet is required")
        if not dates:
            raise ValidationError("No dates to reserve")
        with transaction(self.conn):
            for day in dates:
                self._ensure_row(day, pet_type)
                cur = self.conn.execute(
                    """
                    UPDATE availability
                    SET booked = booked + ?, updated_at = CURRENT_TIMESTAMP
                    WHERE date = ? AND pet_type = ?
                      AND is_blocked = 0
                      AND booked + blocked + ? <= total
                    """,
                    (count, day, pet_type, count),
                )
                if cur.rowcount != 1:
                    raise CapacityExceeded(
                        f"No {pet_type} availability on {day}",
                        date=day,
                        pet_type=pet_type,
                    )
        logger.info("Reserved %s %s place(s) for %s night(s)", count, pet_type, len(dates))

    def release(self, dates: Sequence[str], pet_type: str, count: int) -> None:
        self._check_pet_type(pet_type)
        with transaction(self.conn):
            for day in dates:
                self.conn.execute(
                    """
                    UPDATE availability
                    SET booked = MAX(booked - ?, 0), updated_at = CURRENT_TIMESTAMP
                    WHERE date = ? AND pet_type = ?
                    """,
                    (count, day, pet_type),
                )
        logger.info("Released %s %s place(s) for %s night(s)", count, pet_type, len(dates))

    def update_day(
        self,
        date: Any,
        pet_type: str,
        *,
        total: int | None = None,
        blocked: int | None = None,
        is_blocked: bool | None = None,
        block_reason: str | None = None,
        price_override: float | None = None,
        price_multiplier: float | None = None,
        notes: str | None = None,
    ) -> dict:
        """Admin upsert of a single date's capacity record."""

        self._check_pet_type(pet_type)
        day = _parse_date(date).isoformat()
        with transaction(self.conn):
            self._ensure_row(day, pet_type)
            row = self._row(day, pet_type)
            new_total = row["total"] if total is None else int(total)
            new_blocked = row["blocked"] if blocked is None else int(blocked)
            if new_total < 0 or new_blocked < 0:
                raise ValidationError("Capacity values must not be negative")
            if row["booked"] + new_blocked > new_total:
                raise ValidationError(
                    f"Capacity for {day} cannot drop below {row['booked'] + new_blocked}"
                )
            self.conn.execute(
                """
                UPDATE availability
                SET total = ?, blocked = ?, is_blocked = ?, block_reason = ?,
                    price_override = ?, price_multiplier = ?, notes = ?,
                    updated_at = CURRENT_TIMESTAMP
                WHERE date = ? AND pet_type = ?
                """,
                (
                    new_total,
                    new_blocked,
                    int(row["is_blocked"] if is_blocked is None else is_blocked),
                    row["block_reason"] if block_reason is None else block_reason,
                    row["price_override"] if price_override is None else price_override,
                    row["price_multiplier"] if price_multiplier is None else price_multiplier,
                    row["notes"] if notes is None else notes,
                    day,
                    pet_type,
                ),
            )
        return self.get_availability(day, pet_type)

    def calendar(self, start: Any, end: Any, pet_type: str | None = None) -> list[dict]:
        """Return one entry per day between ``start`` and ``end`` inclusive."""

        start_date = _parse_date(start)
        end_date = _parse_date(end)
        if end_date < start_date:
            raise ValidationError("End date must not be before start date")
        if (end_date - start_date).days > 366:
            raise ValidationError("Calendar range is limited to one year")
        types = (pet_type,) if pet_type else PET_TYPES
        for kind in types:
            self._check_pet_type(kind)
        rows = self.conn.execute(
            "SELECT * FROM availability WHERE date >= ? AND date <= ?",
            (start_date.isoformat(), end_date.isoformat()),
        ).fetchall()
        by_key = {(row["date"], row["pet_type"]): row for row in rows}
        days = []
        current = start_date
        while current <= end_date:
            day = current.isoformat()
            entry: dict[str, Any] = {"date": day}
            for kind in types:
                entry[kind] = self._summarise(day, kind, by_key.get((day, kind)))
            days.append(entry)
            current += dt.timedelta(days=1)
        return days
