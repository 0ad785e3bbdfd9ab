from __future__ import annotations

import logging
import math
import re
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from equipment_cabinet.models.cabinet_models import BorrowRecord, City
from equipment_cabinet.services.errors import EligibilityError, GeofenceError, ValidationError
from equipment_cabinet.services.token_service import utcnow
from equipment_cabinet.settings import OVERDUE_HOURS

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
COUNTRY_PREFIX = "972"
BORROWED = "borrowed"

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: str | None) -> str:
    return _NON_DIGITS.sub("", raw or "")


def phone_variants(raw: str | None) -> list[str]:
    """All stored spellings a borrower's phone may have been saved under."""
    normalized = normalize_phone(raw)
    if not normalized:
        return []
    variants = [normalized, f"0{normalized}"]
    if normalized.startswith(COUNTRY_PREFIX):
        variants.append("0" + normalized[len(COUNTRY_PREFIX):])
    if normalized.startswith("0"):
        variants.append(COUNTRY_PREFIX + normalized[1:])
    elif len(normalized) == 9:
        variants.append(COUNTRY_PREFIX + normalized)
    seen: list[str] = []
    for value in variants:
        if value not in seen:
            seen.append(value)
    return seen


def find_overdue_borrows(
    db: Session,
    phone: str | None,
    now: datetime | None = None,
    city_id: int | None = None,
    overdue_hours: int | None = None,
) -> list[BorrowRecord]:
    variants = phone_variants(phone)
    if not variants:
        return []
    current = now or utcnow()
    threshold = current - timedelta(hours=OVERDUE_HOURS if overdue_hours is None else overdue_hours)
    stmt = (
        select(BorrowRecord)
        .where(BorrowRecord.Phone.in_(variants))
        .where(BorrowRecord.Status == BORROWED)
        .where(BorrowRecord.BorrowDate < threshold)
        .order_by(BorrowRecord.BorrowDate.asc())
    )
    if city_id is not None:
        stmt = stmt.where(BorrowRecord.CityID == city_id)
    return list(db.execute(stmt).scalars().all())


def hours_since(moment: datetime, now: datetime) -> int:
    return int((now - moment).total_seconds() // 3600)


def serialize_overdue_item(record: BorrowRecord, now: datetime) -> dict:
    return {
        "borrowID": record.BorrowID,
        "equipmentName": record.EquipmentName,
        "borrowDate": record.BorrowDate,
        "hoursOverdue": hours_since(record.BorrowDate, now),
    }


def check_overdue(db: Session, phone: str | None, now: datetime | None = None, city_id: int | None = None) -> dict:
    if not normalize_phone(phone):
        raise ValidationError("Phone number is required.")
    current = now or utcnow()
    records = find_overdue_borrows(db, phone, current, city_id=city_id)
    return {
        "hasOverdue": bool(records),
        "overdueCount": len(records),
        "overdueItems": [serialize_overdue_item(record, current) for record in records],
    }


def check_overdue_lockout(db: Session, phone: str | None, now: datetime | None = None) -> None:
    """Block borrowers holding any loan past the overdue threshold, in any city."""
    current = now or utcnow()
    records = find_overdue_borrows(db, phone, current)
    if not records:
        return
    items = [serialize_overdue_item(record, current) for record in records]
    logger.info("Overdue lockout phone_suffix=%s items=%s", normalize_phone(phone)[-4:], len(items))
    raise EligibilityError(
        f"{len(items)} item(s) have not been returned. Return them before borrowing again.",
        overdueItems=items,
    )


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def check_geofence(city: City, lat: float | None, lng: float | None) -> float | None:
    """Returns the computed distance in km, or None when the city has no distance gate."""
    max_distance = city.MaxRequestDistanceKm
    if max_distance is None or max_distance <= 0:
        return None
    if city.CabinetLat is None or city.CabinetLng is None:
        logger.warning("Geofence skipped city_id=%s reason=no_cabinet_coordinates", city.CityID)
        return None
    if lat is None or lng is None:
        raise ValidationError("Location is required to request equipment from this cabinet.", maxDistanceKm=max_distance)

    distance = haversine_km(float(lat), float(lng), float(city.CabinetLat), float(city.CabinetLng))
    if distance > float(max_distance):
        raise GeofenceError(
            f"You are {distance:.1f} km from the cabinet; requests are limited to {max_distance} km.",
            distanceKm=round(distance, 2),
            maxDistanceKm=max_distance,
        )
    return distance
