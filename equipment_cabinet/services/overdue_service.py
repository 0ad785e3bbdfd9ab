from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from equipment_cabinet.models.cabinet_models import BorrowRecord, City
from equipment_cabinet.services.borrow_service import format_borrow_date
from equipment_cabinet.services.eligibility_service import BORROWED, hours_since
from equipment_cabinet.services.token_service import utcnow
from equipment_cabinet.settings import OVERDUE_HOURS, REMINDER_INTERVAL_HOURS

logger = logging.getLogger(__name__)

SENT = "sent"
SKIPPED = "skipped"
ERROR = "error"


def _stamp_reminder(db: Session, borrow_id: int, now: datetime) -> bool:
    # Forward-only: never overwrite a newer stamp written by a concurrent sweep.
    result = db.execute(
        update(BorrowRecord)
        .where(BorrowRecord.BorrowID == borrow_id)
        .where(or_(BorrowRecord.LastReminderSentAt.is_(None), BorrowRecord.LastReminderSentAt < now))
        .values(LastReminderSentAt=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def sweep_overdue(
    db: Session,
    messenger,
    now: datetime | None = None,
    overdue_hours: int | None = None,
    cooldown_hours: int | None = None,
) -> dict:
    """Send at most one reminder per cooldown window for every overdue open loan.

    A failure on one record is reported in its result and the sweep moves on.
    """
    current = now or utcnow()
    threshold = current - timedelta(hours=OVERDUE_HOURS if overdue_hours is None else overdue_hours)
    cooldown_cutoff = current - timedelta(hours=REMINDER_INTERVAL_HOURS if cooldown_hours is None else cooldown_hours)

    rows = db.execute(
        select(BorrowRecord, City.Name)
        .outerjoin(City, City.CityID == BorrowRecord.CityID)
        .where(BorrowRecord.Status == BORROWED)
        .where(BorrowRecord.BorrowDate < threshold)
        .order_by(BorrowRecord.BorrowDate.asc(), BorrowRecord.BorrowID.asc())
        .execution_options(populate_existing=True)
    ).all()

    results: list[dict] = []
    for record, city_name in rows:
        outcome = {
            "borrowID": record.BorrowID,
            "borrowerName": record.Name,
            "phone": record.Phone,
            "equipmentName": record.EquipmentName,
            "cityName": city_name or "",
            "status": SKIPPED,
            "reason": None,
        }
        results.append(outcome)

        if record.LastReminderSentAt is not None and record.LastReminderSentAt > cooldown_cutoff:
            outcome["reason"] = "reminder_sent_recently"
            continue

        try:
            sent = messenger.send_overdue_reminder(
                record.Phone,
                record.Name,
                record.EquipmentName,
                format_borrow_date(record.BorrowDate),
                hours_since(record.BorrowDate, current),
                city_name or "",
            )
        except Exception as exc:
            logger.exception("Reminder send raised borrow_id=%s", record.BorrowID)
            outcome["status"] = ERROR
            outcome["reason"] = str(exc) or exc.__class__.__name__
            continue

        if not (sent or {}).get("success"):
            outcome["status"] = ERROR
            outcome["reason"] = (sent or {}).get("error") or "send_failed"
            logger.warning("Reminder failed borrow_id=%s reason=%s", record.BorrowID, outcome["reason"])
            continue

        outcome["status"] = SENT
        try:
            _stamp_reminder(db, record.BorrowID, current)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Reminder stamp failed borrow_id=%s", record.BorrowID)
            outcome["status"] = ERROR
            outcome["reason"] = "stamp_failed"

    summary = {
        "total": len(results),
        "sent": sum(1 for item in results if item["status"] == SENT),
        "skipped": sum(1 for item in results if item["status"] == SKIPPED),
        "errors": sum(1 for item in results if item["status"] == ERROR),
    }
    logger.info(
        "Overdue sweep total=%s sent=%s skipped=%s errors=%s",
        summary["total"],
        summary["sent"],
        summary["skipped"],
        summary["errors"],
    )
    return {"summary": summary, "results": results}
