import unittest
from datetime import timedelta

from cabinet_fixtures import NOW, FakeMessenger, make_engine, make_session_factory, seed_borrow, seed_city
from sqlalchemy import select

from equipment_cabinet.models.cabinet_models import BorrowRecord
from equipment_cabinet.services.overdue_service import sweep_overdue


class OverdueSweepTests(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine()
        self.db = make_session_factory(self.engine)()
        self.city = seed_city(self.db)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _reminded_at(self, record):
        return self.db.execute(
            select(BorrowRecord.LastReminderSentAt).where(BorrowRecord.BorrowID == record.BorrowID)
        ).scalar_one()

    def test_sends_once_then_respects_cooldown(self):
        record = seed_borrow(self.db, self.city, phone="0501234567", borrowed_at=NOW - timedelta(hours=30))
        messenger = FakeMessenger()

        first = sweep_overdue(self.db, messenger, now=NOW)
        self.assertEqual(first["summary"], {"total": 1, "sent": 1, "skipped": 0, "errors": 0})
        self.assertEqual(first["results"][0]["cityName"], "Haifa")
        self.assertEqual(self._reminded_at(record), NOW)
        self.assertEqual(
            messenger.sent,
            [
                {
                    "phone": "0501234567",
                    "borrowerName": "Dana",
                    "equipmentName": "Ladder",
                    "borrowDate": "28.02.2026 06:00",
                    "hoursOverdue": 30,
                    "cityName": "Haifa",
                }
            ],
        )

        second = sweep_overdue(self.db, messenger, now=NOW + timedelta(hours=2))
        self.assertEqual(second["summary"]["skipped"], 1)
        self.assertEqual(second["results"][0]["reason"], "reminder_sent_recently")
        self.assertEqual(len(messenger.sent), 1)

        third = sweep_overdue(self.db, messenger, now=NOW + timedelta(hours=25))
        self.assertEqual(third["summary"]["sent"], 1)
        self.assertEqual(self._reminded_at(record), NOW + timedelta(hours=25))

    def test_recent_and_closed_loans_are_not_candidates(self):
        seed_borrow(self.db, self.city, borrowed_at=NOW - timedelta(hours=23))
        seed_borrow(self.db, self.city, borrowed_at=NOW - timedelta(hours=48), status="returned")
        seed_borrow(self.db, self.city, borrowed_at=NOW - timedelta(hours=48), status="pending_approval")
        result = sweep_overdue(self.db, FakeMessenger(), now=NOW)
        self.assertEqual(result["summary"], {"total": 0, "sent": 0, "skipped": 0, "errors": 0})
        self.assertEqual(result["results"], [])

    def test_one_failure_does_not_stop_the_sweep(self):
        failing = seed_borrow(self.db, self.city, phone="0500000001", borrowed_at=NOW - timedelta(hours=50))
        raising = seed_borrow(self.db, self.city, phone="0500000002", borrowed_at=NOW - timedelta(hours=40))
        healthy = seed_borrow(self.db, self.city, phone="0500000003", borrowed_at=NOW - timedelta(hours=30))
        reminded = seed_borrow(
            self.db,
            self.city,
            phone="0500000004",
            borrowed_at=NOW - timedelta(hours=26),
            reminded_at=NOW - timedelta(hours=3),
        )
        messenger = FakeMessenger(failing_phones={"0500000001"}, raising_phones={"0500000002"})

        with self.assertLogs("equipment_cabinet.services.overdue_service", level="WARNING"):
            result = sweep_overdue(self.db, messenger, now=NOW)

        self.assertEqual(result["summary"], {"total": 4, "sent": 1, "skipped": 1, "errors": 2})
        by_id = {row["borrowID"]: row for row in result["results"]}
        self.assertEqual(by_id[failing.BorrowID]["status"], "error")
        self.assertEqual(by_id[failing.BorrowID]["reason"], "recipient not on WhatsApp")
        self.assertEqual(by_id[raising.BorrowID]["status"], "error")
        self.assertEqual(by_id[raising.BorrowID]["reason"], "messaging gateway unreachable")
        self.assertEqual(by_id[healthy.BorrowID]["status"], "sent")
        self.assertEqual(by_id[reminded.BorrowID]["status"], "skipped")

        self.assertIsNone(self._reminded_at(failing))
        self.assertIsNone(self._reminded_at(raising))
        self.assertEqual(self._reminded_at(healthy), NOW)
        self.assertEqual(self._reminded_at(reminded), NOW - timedelta(hours=3))

    def test_custom_thresholds(self):
        seed_borrow(self.db, self.city, borrowed_at=NOW - timedelta(hours=5))
        result = sweep_overdue(self.db, FakeMessenger(), now=NOW, overdue_hours=4, cooldown_hours=1)
        self.assertEqual(result["summary"]["sent"], 1)


if __name__ == "__main__":
    unittest.main()
