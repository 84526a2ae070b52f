import os
import tempfile
import unittest

from petparadise.boarding.availability import AvailabilityLedger, stay_dates
from petparadise.boarding.database import get_connection, initialize_database
from petparadise.boarding.errors import CapacityExceeded, ValidationError


class AvailabilityLedgerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.conn = get_connection(":memory:")
        initialize_database(self.conn)
        self.ledger = AvailabilityLedger(self.conn, {"cat": 3, "dog": 2})

    def tearDown(self) -> None:
        self.conn.close()

    def test_stay_dates_cover_nights_not_checkout_day(self) -> None:
        self.assertEqual(
            stay_dates("2030-05-01", "2030-05-04"),
            ["2030-05-01", "2030-05-02", "2030-05-03"],
        )
        self.assertEqual(stay_dates("2030-05-01", "2030-05-01"), ["2030-05-01"])
        with self.assertRaises(ValidationError):
            stay_dates("2030-05-04", "2030-05-01")

    def test_untouched_date_reports_default_capacity(self) -> None:
        day = self.ledger.get_availability("2030-05-01", "cat")
        self.assertEqual(day["total"], 3)
        self.assertEqual(day["available"], 3)
        self.assertEqual(self.conn.execute("SELECT COUNT(*) AS n FROM availability").fetchone()["n"], 0)

    def test_reserve_and_release(self) -> None:
        dates = stay_dates("2030-05-01", "2030-05-03")
        self.ledger.reserve(dates, "cat", 2)
        for day in dates:
            self.assertEqual(self.ledger.get_availability(day, "cat")["available"], 1)
        self.ledger.release(dates, "cat", 2)
        for day in dates:
            self.assertEqual(self.ledger.get_availability(day, "cat")["available"], 3)

    def test_release_never_goes_below_zero(self) -> None:
        self.ledger.reserve(["2030-05-01"], "dog", 1)
        self.ledger.release(["2030-05-01"], "dog", 5)
        day = self.ledger.get_availability("2030-05-01", "dog")
        self.assertEqual(day["booked"], 0)
        self.assertEqual(day["available"], 2)

    def test_reserve_is_all_or_nothing(self) -> None:
        self.ledger.reserve(["2030-05-03"], "dog", 2)
        before = self.conn.execute("SELECT * FROM availability ORDER BY id").fetchall()
        with self.assertRaises(CapacityExceeded) as ctx:
            self.ledger.reserve(stay_dates("2030-05-01", "2030-05-05"), "dog", 1)
        self.assertEqual(ctx.exception.date, "2030-05-03")
        after = self.conn.execute("SELECT * FROM availability ORDER BY id").fetchall()
        self.assertEqual(before, after)
        self.assertFalse(self.conn.in_transaction)

    def test_blocked_day_rejects_reservations(self) -> None:
        self.ledger.update_day("2030-05-02", "cat", is_blocked=True, block_reason="Holiday")
        self.assertEqual(self.ledger.get_availability("2030-05-02", "cat")["available"], 0)
        with self.assertRaises(CapacityExceeded):
            self.ledger.reserve(["2030-05-02"], "cat", 1)

    def test_update_day_cannot_cut_below_bookings(self) -> None:
        self.ledger.reserve(["2030-05-01"], "cat", 2)
        with self.assertRaises(ValidationError):
            self.ledger.update_day("2030-05-01", "cat", total=1)
        day = self.ledger.update_day("2030-05-01", "cat", total=5, blocked=1)
        self.assertEqual(day["available"], 2)

    def test_capacity_invariant_holds_after_mixed_operations(self) -> None:
        dates = stay_dates("2030-06-01", "2030-06-04")
        for count in (1, 2, 1, 1):
            try:
                self.ledger.reserve(dates, "cat", count)
            except CapacityExceeded:
                pass
        self.ledger.release(dates[:1], "cat", 1)
        self.ledger.update_day(dates[1], "cat", blocked=0)
        for row in self.conn.execute("SELECT * FROM availability").fetchall():
            self.assertGreaterEqual(row["booked"], 0)
            self.assertLessEqual(row["booked"] + row["blocked"], row["total"])

    def test_check_reports_first_full_date(self) -> None:
        self.ledger.reserve(["2030-05-02"], "dog", 2)
        self.assertEqual(self.ledger.check(stay_dates("2030-05-01", "2030-05-04"), "dog", 1), "2030-05-02")
        self.assertIsNone(self.ledger.check(["2030-05-01"], "dog", 2))

    def test_calendar_lists_every_day(self) -> None:
        self.ledger.reserve(["2030-05-02"], "cat", 1)
        days = self.ledger.calendar("2030-05-01", "2030-05-03")
        self.assertEqual([day["date"] for day in days], ["2030-05-01", "2030-05-02", "2030-05-03"])
        self.assertEqual(days[1]["cat"]["available"], 2)
        self.assertEqual(days[1]["dog"]["available"], 2)
        with self.assertRaises(ValidationError):
            self.ledger.calendar("2030-01-01", "2031-06-01")

    def test_unknown_pet_type_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.ledger.reserve(["2030-05-01"], "parrot", 1)


class ConcurrentReservationTestCase(unittest.TestCase):
    def setUp(self) -> None:
        handle, self.path = tempfile.mkstemp(suffix=".db")
        os.close(handle)
        self.first = get_connection(self.path)
        initialize_database(self.first)
        self.second = get_connection(self.path)

    def tearDown(self) -> None:
        self.first.close()
        self.second.close()
        for suffix in ("", "-wal", "-shm"):
            if os.path.exists(self.path + suffix):
                os.remove(self.path + suffix)

    def test_second_connection_sees_capacity_taken_by_first(self) -> None:
        capacity = {"cat": 8, "dog": 1}
        AvailabilityLedger(self.first, capacity).reserve(["2030-07-01"], "dog", 1)
        with self.assertRaises(CapacityExceeded):
            AvailabilityLedger(self.second, capacity).reserve(["2030-07-01"], "dog", 1)
        row = self.second.execute(
            "SELECT booked FROM availability WHERE date = '2030-07-01' AND pet_type = 'dog'"
        ).fetchone()
        self.assertEqual(row["booked"], 1)


if __name__ == "__main__":
    unittest.main()
