from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from equipment_cabinet.models.cabinet_models import ActivityLog, City, EquipmentRequest, RequestItem
from equipment_cabinet.services.eligibility_service import (
    check_geofence,
    check_overdue_lockout,
    normalize_phone,
)
from equipment_cabinet.services.errors import (
    InvalidStateError,
    NotFoundError,
    TokenExpiredError,
    UnexpectedError,
    ValidationError,
)
from equipment_cabinet.services.inventory_service import load_city_stock, validate_line_items
from equipment_cabinet.services.token_service import (
    get_token_expiry,
    hash_token,
    is_expired,
    is_well_formed,
    issue_token,
    utcnow,
    verify_token,
)
from equipment_cabinet.settings import APP_URL, MAX_TOKEN_EXTENSION_MINUTES, TOKEN_EXPIRY_MINUTES

logger = logging.getLogger(__name__)

PENDING = "pending"
APPROVED = "approved"
PICKED_UP = "picked_up"
REJECTED = "rejected"
CANCELLED = "cancelled"
EXPIRED = "expired"

REQUEST_MODE = "request"
DIRECT_MODE = "direct"

TERMINAL_STATUSES = {PICKED_UP, REJECTED, CANCELLED, EXPIRED}


def effective_status(request: EquipmentRequest, now: datetime | None = None) -> str:
    """Stored status, with live rows past their expiry reported as expired."""
    status = request.Status
    if status in {PENDING, APPROVED} and is_expired(request.ExpiresAt, now):
        return EXPIRED
    return status


def log_activity(db: Session, city_id: int, manager_name: str, action: str, details: dict[str, Any] | None = None) -> None:
    db.add(
        ActivityLog(
            CityID=city_id,
            ManagerName=manager_name,
            Action=action,
            Details=json.dumps(details or {}, ensure_ascii=False, default=str),
            CreatedAt=utcnow(),
        )
    )


def get_active_city(db: Session, city_id: int) -> City:
    city = db.get(City, city_id)
    if not city or not city.IsActive:
        raise NotFoundError("City not found or inactive.", cityID=city_id)
    return city


def clean_line_items(items: list[dict] | None) -> list[dict]:
    if not items:
        raise ValidationError("At least one item is required.")
    cleaned: list[dict] = []
    seen: set[int] = set()
    for item in items:
        try:
            equipment_id = int(item.get("equipmentID"))
            quantity = int(item.get("quantity") or 0)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Each item needs a numeric equipmentID and quantity.") from exc
        if quantity < 1:
            raise ValidationError("Item quantity must be at least 1.", equipmentID=equipment_id)
        if equipment_id in seen:
            raise ValidationError("Each equipment may appear only once per request.", equipmentID=equipment_id)
        seen.add(equipment_id)
        cleaned.append({"equipmentID": equipment_id, "quantity": quantity})
    return cleaned


def serialize_request(request: EquipmentRequest, now: datetime | None = None) -> dict:
    return {
        "requestID": request.RequestID,
        "cityID": request.CityID,
        "cityName": request.City.Name if request.City else None,
        "requesterName": request.RequesterName,
        "requesterPhone": request.RequesterPhone,
        "callID": request.CallID,
        "status": effective_status(request, now),
        "storedStatus": request.Status,
        "expiresAt": request.ExpiresAt,
        "rejectedReason": request.RejectedReason,
        "approvedBy": request.ApprovedBy,
        "approvedAt": request.ApprovedAt,
        "pickedUpAt": request.PickedUpAt,
        "createdDate": request.CreatedDate,
        "items": [
            {
                "requestItemID": item.RequestItemID,
                "equipmentID": item.EquipmentID,
                "equipmentName": item.Equipment.Name if item.Equipment else None,
                "quantity": item.Quantity,
            }
            for item in request.Items
        ],
    }


def create_request(
    db: Session,
    *,
    city_id: int,
    requester_name: str | None,
    requester_phone: str | None,
    items: list[dict] | None,
    call_id: str | None = None,
    lat: float | None = None,
    lng: float | None = None,
    notifier=None,
    now: datetime | None = None,
) -> dict:
    current = now or utcnow()
    name = (requester_name or "").strip()
    phone = (requester_phone or "").strip()
    if not name or not normalize_phone(phone):
        raise ValidationError("Requester name and phone are required.")
    line_items = clean_line_items(items)

    city = get_active_city(db, city_id)
    call_id = (call_id or "").strip() or None
    if city.RequireCallID and not call_id:
        raise ValidationError("A call ID is required for this city.")
    if (city.RequestMode or REQUEST_MODE) != REQUEST_MODE:
        raise InvalidStateError("This city lends equipment directly; requests are not accepted.", requestMode=city.RequestMode)

    check_overdue_lockout(db, phone, current)
    check_geofence(city, lat, lng)

    stock = load_city_stock(db, city.CityID, [item["equipmentID"] for item in line_items])
    validate_line_items(stock, line_items)

    issued = issue_token(now=current)
    request = EquipmentRequest(
        CityID=city.CityID,
        RequesterName=name,
        RequesterPhone=phone,
        CallID=call_id,
        RequesterLat=lat,
        RequesterLng=lng,
        TokenHash=issued.token_hash,
        ExpiresAt=issued.expires_at,
        Status=PENDING,
        CreatedDate=current,
        UpdatedDate=current,
    )
    try:
        db.add(request)
        db.flush()
        for item in line_items:
            db.add(RequestItem(RequestID=request.RequestID, EquipmentID=item["equipmentID"], Quantity=item["quantity"]))
        db.flush()
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Request persist failed city_id=%s", city.CityID)
        raise UnexpectedError("Could not save the request.") from exc

    logger.info(
        "Request created request_id=%s city_id=%s items=%s expires_at=%s",
        request.RequestID,
        city.CityID,
        len(line_items),
        issued.expires_at.isoformat(),
    )

    if notifier is not None:
        summary = [{"name": stock[item["equipmentID"]]["name"], "quantity": item["quantity"]} for item in line_items]
        notifier.dispatch(
            notifier.push.notify,
            city.CityID,
            "New equipment request",
            f"{name} requested {len(line_items)} item(s)",
            f"{APP_URL}/city/{city.CityID}/admin",
        )
        notifier.dispatch(notifier.email.notify_managers, city.CityID, f"New equipment request from {name}", summary)

    return {
        "requestID": request.RequestID,
        "token": issued.token,
        "expiresAt": issued.expires_at,
        "status": PENDING,
    }


def find_request_by_token(db: Session, raw_token: object) -> EquipmentRequest | None:
    if not is_well_formed(raw_token):
        return None
    request = db.execute(
        select(EquipmentRequest)
        .options(selectinload(EquipmentRequest.Items).selectinload(RequestItem.Equipment))
        .where(EquipmentRequest.TokenHash == hash_token(raw_token))
    ).scalars().first()
    if not request or not verify_token(raw_token, request.TokenHash):
        return None
    return request


def require_request_by_token(db: Session, raw_token: object) -> EquipmentRequest:
    if raw_token is None or (isinstance(raw_token, str) and not raw_token.strip()):
        raise ValidationError("Token is required.")
    request = find_request_by_token(db, raw_token)
    if not request:
        raise NotFoundError("Request not found.")
    return request


def verify_request_token(db: Session, raw_token: object, now: datetime | None = None) -> dict:
    current = now or utcnow()
    request = require_request_by_token(db, raw_token)
    if effective_status(request, current) == EXPIRED:
        raise TokenExpiredError("The token has expired.", expired=True, requestID=request.RequestID)
    return serialize_request(request, current)


def get_city_request(db: Session, request_id: int, city_id: int | None = None) -> EquipmentRequest:
    request = db.execute(
        select(EquipmentRequest)
        .options(selectinload(EquipmentRequest.Items).selectinload(RequestItem.Equipment))
        .where(EquipmentRequest.RequestID == request_id)
    ).scalars().first()
    if not request or (city_id is not None and request.CityID != city_id):
        raise NotFoundError("Request not found.", requestID=request_id)
    return request


def update_request_if_status(db: Session, request_id: int, allowed: set[str], **values: Any) -> bool:
    result = db.execute(
        update(EquipmentRequest)
        .where(EquipmentRequest.RequestID == request_id)
        .where(EquipmentRequest.Status.in_(sorted(allowed)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _commit_transition(db: Session, request: EquipmentRequest, action: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Request %s failed request_id=%s", action, request.RequestID)
        raise UnexpectedError("Could not update the request.") from exc
    db.refresh(request)


def approve_request(
    db: Session,
    request_id: int,
    manager_name: str,
    city_id: int | None = None,
    now: datetime | None = None,
) -> dict:
    current = now or utcnow()
    request = get_city_request(db, request_id, city_id)
    status = effective_status(request, current)
    if status == EXPIRED:
        raise TokenExpiredError("The request expired before approval; regenerate its token first.", requestID=request_id)
    if status != PENDING:
        raise InvalidStateError("Only pending requests can be approved.", status=status)

    stock = load_city_stock(db, request.CityID, [item.EquipmentID for item in request.Items])
    validate_line_items(stock, [{"equipmentID": item.EquipmentID, "quantity": item.Quantity} for item in request.Items])

    if not update_request_if_status(
        db,
        request_id,
        {PENDING},
        Status=APPROVED,
        ApprovedBy=manager_name,
        ApprovedAt=current,
        UpdatedDate=current,
    ):
        db.rollback()
        raise InvalidStateError("The request changed while approving it.", requestID=request_id)
    log_activity(
        db,
        request.CityID,
        manager_name,
        "request_approved",
        {"requestID": request_id, "requesterName": request.RequesterName, "itemsCount": len(request.Items)},
    )
    _commit_transition(db, request, "approve")
    logger.info("Request approved request_id=%s by=%s", request_id, manager_name)
    return serialize_request(request, current)


def reject_request(
    db: Session,
    request_id: int,
    manager_name: str,
    reason: str | None = None,
    city_id: int | None = None,
    now: datetime | None = None,
) -> dict:
    current = now or utcnow()
    request = get_city_request(db, request_id, city_id)
    status = effective_status(request, current)
    if status != PENDING:
        raise InvalidStateError("Only pending requests can be rejected.", status=status)
    if not update_request_if_status(
        db,
        request_id,
        {PENDING},
        Status=REJECTED,
        RejectedReason=(reason or "").strip() or None,
        UpdatedDate=current,
    ):
        db.rollback()
        raise InvalidStateError("The request changed while rejecting it.", requestID=request_id)
    log_activity(
        db,
        request.CityID,
        manager_name,
        "request_rejected",
        {"requestID": request_id, "requesterName": request.RequesterName, "reason": reason},
    )
    _commit_transition(db, request, "reject")
    logger.info("Request rejected request_id=%s by=%s", request_id, manager_name)
    return serialize_request(request, current)


def cancel_request(
    db: Session,
    request_id: int,
    manager_name: str,
    reason: str | None = None,
    city_id: int | None = None,
    now: datetime | None = None,
) -> dict:
    current = now or utcnow()
    request = get_city_request(db, request_id, city_id)
    previous = request.Status
    if previous in TERMINAL_STATUSES:
        raise InvalidStateError("This request can no longer be cancelled.", status=effective_status(request, current))
    if not update_request_if_status(
        db,
        request_id,
        {PENDING, APPROVED},
        Status=CANCELLED,
        RejectedReason=(reason or "").strip() or "Cancelled by manager",
        UpdatedDate=current,
    ):
        db.rollback()
        raise InvalidStateError("The request changed while cancelling it.", requestID=request_id)
    log_activity(
        db,
        request.CityID,
        manager_name,
        "request_cancelled",
        {"requestID": request_id, "requesterName": request.RequesterName, "previousStatus": previous, "reason": reason},
    )
    _commit_transition(db, request, "cancel")
    logger.info("Request cancelled request_id=%s by=%s previous=%s", request_id, manager_name, previous)
    return serialize_request(request, current)


def extend_token(
    db: Session,
    request_id: int,
    manager_name: str,
    minutes: int | None = None,
    city_id: int | None = None,
    now: datetime | None = None,
) -> dict:
    current = now or utcnow()
    window = TOKEN_EXPIRY_MINUTES if minutes is None else int(minutes)
    if window < 1 or window > MAX_TOKEN_EXTENSION_MINUTES:
        raise ValidationError(
            f"Extension must be between 1 and {MAX_TOKEN_EXTENSION_MINUTES} minutes.",
            maxMinutes=MAX_TOKEN_EXTENSION_MINUTES,
        )
    request = get_city_request(db, request_id, city_id)
    if request.Status in TERMINAL_STATUSES:
        raise InvalidStateError("Only pending or approved requests can be extended.", status=request.Status)

    new_expiry = get_token_expiry(window, current)
    if not update_request_if_status(db, request_id, {request.Status}, ExpiresAt=new_expiry, UpdatedDate=current):
        db.rollback()
        raise InvalidStateError("The request changed while extending it.", requestID=request_id)
    log_activity(
        db,
        request.CityID,
        manager_name,
        "extend_token",
        {"requestID": request_id, "requesterName": request.RequesterName, "minutes": window, "newExpiry": new_expiry},
    )
    _commit_transition(db, request, "extend")
    logger.info("Token extended request_id=%s minutes=%s", request_id, window)
    return {"requestID": request_id, "newExpiry": new_expiry, "status": effective_status(request, current)}


def regenerate_token(
    db: Session,
    request_id: int,
    manager_name: str,
    city_id: int | None = None,
    now: datetime | None = None,
) -> dict:
    current = now or utcnow()
    request = get_city_request(db, request_id, city_id)
    status = effective_status(request, current)
    # An expired row may still be stored as pending or approved, or as expired by older writers.
    if not (status == EXPIRED or request.Status == APPROVED):
        raise InvalidStateError("Tokens can only be regenerated for expired or approved requests.", status=status)

    previous = request.Status
    next_status = APPROVED if previous == APPROVED else PENDING
    issued = issue_token(now=current)
    if not update_request_if_status(
        db,
        request_id,
        {previous},
        TokenHash=issued.token_hash,
        ExpiresAt=issued.expires_at,
        Status=next_status,
        UpdatedDate=current,
    ):
        db.rollback()
        raise InvalidStateError("The request changed while regenerating its token.", requestID=request_id)
    log_activity(
        db,
        request.CityID,
        manager_name,
        "token_regenerated",
        {"requestID": request_id, "requesterName": request.RequesterName, "previousStatus": status},
    )
    _commit_transition(db, request, "regenerate")
    logger.info("Token regenerated request_id=%s status=%s", request_id, next_status)
    return {"requestID": request_id, "newToken": issued.token, "expiresAt": issued.expires_at, "status": next_status}


def list_city_requests(db: Session, city_id: int, now: datetime | None = None) -> list[dict]:
    current = now or utcnow()
    rows = db.execute(
        select(EquipmentRequest)
        .options(selectinload(EquipmentRequest.Items).selectinload(RequestItem.Equipment))
        .where(EquipmentRequest.CityID == city_id)
        .order_by(EquipmentRequest.CreatedDate.desc(), EquipmentRequest.RequestID.desc())
    ).scalars().all()
    return [serialize_request(row, current) for row in rows]
