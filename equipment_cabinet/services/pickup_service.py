from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from equipment_cabinet.services.borrow_service import dispatch_low_stock, serialize_borrow, take_stock_and_record
from equipment_cabinet.services.errors import (
    CabinetError,
    InvalidStateError,
    TokenExpiredError,
    UnexpectedError,
    ValidationError,
)
from equipment_cabinet.services.inventory_service import load_city_stock
from equipment_cabinet.services.request_service import (
    APPROVED,
    EXPIRED,
    PICKED_UP,
    effective_status,
    require_request_by_token,
    update_request_if_status,
)
from equipment_cabinet.services.token_service import utcnow

logger = logging.getLogger(__name__)


def confirm_pickup(
    db: Session,
    raw_token: object,
    signature: str | None,
    notifier=None,
    now: datetime | None = None,
) -> dict:
    """Turn an approved request into borrow records in one transaction.

    The request status flip and every stock decrement are conditional
    updates, so a replayed token or a concurrent pickup that would drive a
    quantity negative fails without touching any row.
    """
    current = now or utcnow()
    request = require_request_by_token(db, raw_token)
    status = effective_status(request, current)
    if status == EXPIRED:
        raise TokenExpiredError("The token has expired.", expired=True, requestID=request.RequestID)
    if status != APPROVED:
        raise InvalidStateError("Only approved requests can be picked up.", status=status)

    proof = (signature or "").strip()
    if not proof:
        raise ValidationError("A signature is required to confirm pickup.")

    lines = [{"equipmentID": item.EquipmentID, "quantity": item.Quantity} for item in request.Items]
    stock = load_city_stock(db, request.CityID, [line["equipmentID"] for line in lines])

    try:
        if not update_request_if_status(
            db,
            request.RequestID,
            {APPROVED},
            Status=PICKED_UP,
            PickedUpAt=current,
            PickupSignature=proof,
            UpdatedDate=current,
        ):
            raise InvalidStateError("This request was already picked up or changed.", requestID=request.RequestID)
        records = take_stock_and_record(
            db,
            stock,
            lines,
            borrower_name=request.RequesterName,
            borrower_phone=request.RequesterPhone,
            city_id=request.CityID,
            request_id=request.RequestID,
            now=current,
        )
        db.commit()
    except CabinetError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Pickup failed request_id=%s", request.RequestID)
        raise UnexpectedError("Could not confirm the pickup.") from exc

    db.refresh(request)
    logger.info("Pickup committed request_id=%s borrows=%s", request.RequestID, len(records))
    touched = [stock[line["equipmentID"]]["cityEquipmentID"] for line in lines if line["equipmentID"] in stock]
    dispatch_low_stock(db, notifier, request.City, touched)
    return {
        "requestID": request.RequestID,
        "status": request.Status,
        "pickedUpAt": request.PickedUpAt,
        "borrows": [serialize_borrow(record) for record in records],
    }
