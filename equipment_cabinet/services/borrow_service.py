from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from equipment_cabinet.models.cabinet_models import BorrowRecord
from equipment_cabinet.services.eligibility_service import BORROWED, check_overdue_lockout, normalize_phone
from equipment_cabinet.services.errors import (
    CabinetError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    UnexpectedError,
    ValidationError,
)
from equipment_cabinet.services.inventory_service import (
    FAULTY_STATUS,
    WORKING_STATUS,
    current_quantity,
    decrement_stock,
    find_low_stock,
    increment_stock,
    load_city_stock,
    mark_stock_faulty,
    validate_line_items,
)
from equipment_cabinet.services.request_service import DIRECT_MODE, clean_line_items, get_active_city, log_activity
from equipment_cabinet.services.token_service import utcnow

logger = logging.getLogger(__name__)

RETURNED = "returned"
PENDING_APPROVAL = "pending_approval"
BORROW_DATE_DISPLAY_FORMAT = "%d.%m.%Y %H:%M"


def serialize_borrow(record: BorrowRecord) -> dict:
    return {
        "borrowID": record.BorrowID,
        "name": record.Name,
        "phone": record.Phone,
        "equipmentID": record.EquipmentID,
        "equipmentName": record.EquipmentName,
        "cityID": record.CityID,
        "requestID": record.RequestID,
        "quantity": record.Quantity,
        "status": record.Status,
        "borrowDate": record.BorrowDate,
        "returnDate": record.ReturnDate,
        "lastReminderSentAt": record.LastReminderSentAt,
        "equipmentStatus": record.EquipmentStatus,
        "faultyNotes": record.FaultyNotes,
    }


def take_stock_and_record(
    db: Session,
    stock: dict[int, dict],
    lines: list[dict],
    *,
    borrower_name: str,
    borrower_phone: str,
    city_id: int,
    request_id: int | None,
    now: datetime,
) -> list[BorrowRecord]:
    """Decrement each line's stock row and append its borrow record.

    Runs inside the caller's transaction; the caller commits or rolls back.
    Consumables are recorded as returned at the same instant so they never
    count as open loans.
    """
    records: list[BorrowRecord] = []
    for line in lines:
        equipment_id = int(line["equipmentID"])
        quantity = int(line["quantity"])
        row = stock.get(equipment_id)
        if not row:
            raise NotFoundError(f"Equipment {equipment_id} not found in this cabinet.", equipmentID=equipment_id)
        if not decrement_stock(db, row["cityEquipmentID"], quantity, now):
            available = current_quantity(db, row["cityEquipmentID"])
            logger.warning(
                "Stock decrement rejected city_equipment_id=%s requested=%s available=%s",
                row["cityEquipmentID"],
                quantity,
                available,
            )
            raise InsufficientStockError(
                f"Not enough {row['name']} left in the cabinet.",
                equipmentID=equipment_id,
                equipmentName=row["name"],
                requested=quantity,
                available=available or 0,
            )
        record = BorrowRecord(
            Name=borrower_name,
            Phone=normalize_phone(borrower_phone),
            EquipmentID=equipment_id,
            EquipmentName=row["name"],
            CityID=city_id,
            RequestID=request_id,
            Quantity=quantity,
            Status=RETURNED if row["isConsumable"] else BORROWED,
            BorrowDate=now,
            ReturnDate=now if row["isConsumable"] else None,
            EquipmentStatus=WORKING_STATUS,
        )
        db.add(record)
        records.append(record)
    db.flush()
    return records


def dispatch_low_stock(db: Session, notifier, city, city_equipment_ids: list[int]) -> list[dict]:
    """Post-commit low-stock check; failures here never undo the borrow."""
    try:
        low = find_low_stock(db, city_equipment_ids)
    except SQLAlchemyError:
        logger.exception("Low-stock check failed city_id=%s", city.CityID)
        return []
    if low and notifier is not None:
        notifier.dispatch(notifier.email.notify_low_stock, city.ManagerEmail, city.Name, low)
    return low


def direct_borrow(
    db: Session,
    *,
    city_id: int,
    borrower_name: str | None,
    borrower_phone: str | None,
    items: list[dict] | None,
    notifier=None,
    now: datetime | None = None,
) -> dict:
    current = now or utcnow()
    name = (borrower_name or "").strip()
    phone = (borrower_phone or "").strip()
    if not name or not normalize_phone(phone):
        raise ValidationError("Borrower name and phone are required.")
    lines = clean_line_items(items)

    city = get_active_city(db, city_id)
    if (city.RequestMode or "") != DIRECT_MODE:
        raise InvalidStateError("This city requires a request and manager approval.", requestMode=city.RequestMode)
    check_overdue_lockout(db, phone, current)

    stock = load_city_stock(db, city.CityID, [line["equipmentID"] for line in lines])
    validate_line_items(stock, lines)

    try:
        records = take_stock_and_record(
            db,
            stock,
            lines,
            borrower_name=name,
            borrower_phone=phone,
            city_id=city.CityID,
            request_id=None,
            now=current,
        )
        db.commit()
    except CabinetError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Direct borrow failed city_id=%s", city.CityID)
        raise UnexpectedError("Could not record the borrow.") from exc

    logger.info("Direct borrow committed city_id=%s items=%s", city.CityID, len(records))
    dispatch_low_stock(db, notifier, city, [stock[line["equipmentID"]]["cityEquipmentID"] for line in lines])
    return {"borrows": [serialize_borrow(record) for record in records]}


def get_borrow(db: Session, borrow_id: int) -> BorrowRecord:
    record = db.get(BorrowRecord, borrow_id)
    if not record:
        raise NotFoundError("Borrow record not found.", borrowID=borrow_id)
    return record


def request_return(
    db: Session,
    borrow_id: int,
    equipment_status: str | None = None,
    faulty_notes: str | None = None,
    now: datetime | None = None,
) -> dict:
    current = now or utcnow()
    reported = (equipment_status or WORKING_STATUS).strip().lower()
    if reported not in {WORKING_STATUS, FAULTY_STATUS}:
        raise ValidationError("equipmentStatus must be working or faulty.")
    notes = (faulty_notes or "").strip() or None
    if reported == FAULTY_STATUS and not notes:
        raise ValidationError("Describe the fault when returning faulty equipment.")

    record = get_borrow(db, borrow_id)
    result = db.execute(
        update(BorrowRecord)
        .where(BorrowRecord.BorrowID == borrow_id)
        .where(BorrowRecord.Status == BORROWED)
        .values(Status=PENDING_APPROVAL, ReturnDate=current, EquipmentStatus=reported, FaultyNotes=notes)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise InvalidStateError("Only borrowed equipment can be returned.", status=record.Status)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise UnexpectedError("Could not record the return.") from exc
    db.refresh(record)
    logger.info("Return requested borrow_id=%s equipment_status=%s", borrow_id, reported)
    return serialize_borrow(record)


def approve_return(
    db: Session,
    borrow_id: int,
    manager_name: str,
    now: datetime | None = None,
) -> dict:
    """Close a pending return and put its quantity back on the shelf."""
    current = now or utcnow()
    record = get_borrow(db, borrow_id)
    if record.Status != PENDING_APPROVAL:
        raise InvalidStateError("Only returns awaiting approval can be approved.", status=record.Status)

    stock = load_city_stock(db, record.CityID, [record.EquipmentID] if record.EquipmentID else [])
    row = stock.get(record.EquipmentID) if record.EquipmentID else None
    try:
        result = db.execute(
            update(BorrowRecord)
            .where(BorrowRecord.BorrowID == borrow_id)
            .where(BorrowRecord.Status == PENDING_APPROVAL)
            .values(Status=RETURNED, ReturnDate=record.ReturnDate or current)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateError("The return was already processed.", borrowID=borrow_id)
        if row:
            increment_stock(db, row["cityEquipmentID"], int(record.Quantity or 1), current)
            if record.EquipmentStatus == FAULTY_STATUS:
                mark_stock_faulty(db, row["cityEquipmentID"], current)
        else:
            logger.warning("Return approved without stock row borrow_id=%s equipment_id=%s", borrow_id, record.EquipmentID)
        log_activity(
            db,
            record.CityID,
            manager_name,
            "return_approved",
            {"borrowID": borrow_id, "equipmentName": record.EquipmentName, "equipmentStatus": record.EquipmentStatus},
        )
        db.commit()
    except CabinetError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Approve return failed borrow_id=%s", borrow_id)
        raise UnexpectedError("Could not approve the return.") from exc

    db.refresh(record)
    logger.info("Return approved borrow_id=%s by=%s", borrow_id, manager_name)
    return serialize_borrow(record)


def format_borrow_date(value: datetime) -> str:
    return value.strftime(BORROW_DATE_DISPLAY_FORMAT)
