from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from equipment_cabinet.models.cabinet_models import CityEquipment, GlobalEquipment
from equipment_cabinet.services.errors import (
    InsufficientStockError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from equipment_cabinet.services.token_service import utcnow
from equipment_cabinet.settings import LOW_STOCK_THRESHOLD

logger = logging.getLogger(__name__)

WORKING_STATUS = "working"
FAULTY_STATUS = "faulty"


def load_city_stock(db: Session, city_id: int, equipment_ids: Iterable[int]) -> dict[int, dict]:
    """Read every requested stock row for a city in one round trip."""
    wanted = sorted({int(equipment_id) for equipment_id in equipment_ids})
    if not wanted:
        return {}
    rows = db.execute(
        select(
            CityEquipment.CityEquipmentID,
            CityEquipment.EquipmentID,
            CityEquipment.Quantity,
            CityEquipment.EquipmentStatus,
            CityEquipment.IsConsumable,
            CityEquipment.MinQuantity,
            GlobalEquipment.Name,
        )
        .join(GlobalEquipment, GlobalEquipment.EquipmentID == CityEquipment.EquipmentID)
        .where(CityEquipment.CityID == city_id)
        .where(CityEquipment.EquipmentID.in_(wanted))
    ).all()
    return {
        int(row.EquipmentID): {
            "cityEquipmentID": int(row.CityEquipmentID),
            "equipmentID": int(row.EquipmentID),
            "name": row.Name,
            "quantity": int(row.Quantity or 0),
            "equipmentStatus": row.EquipmentStatus,
            "isConsumable": bool(row.IsConsumable),
            "minQuantity": row.MinQuantity,
        }
        for row in rows
    }


def validate_line_items(stock: dict[int, dict], items: list[dict]) -> None:
    """Check requested items against a stock snapshot; never writes."""
    for item in items:
        equipment_id = int(item["equipmentID"])
        quantity = int(item["quantity"])
        row = stock.get(equipment_id)
        if not row:
            raise NotFoundError(f"Equipment {equipment_id} not found in this cabinet.", equipmentID=equipment_id)
        if row["equipmentStatus"] != WORKING_STATUS:
            raise UnavailableError(
                f"{row['name']} is faulty and cannot be requested.",
                equipmentID=equipment_id,
                equipmentName=row["name"],
            )
        if not row["isConsumable"] and quantity != 1:
            raise ValidationError(
                f"{row['name']} is not consumable; quantity must be 1.",
                equipmentID=equipment_id,
                equipmentName=row["name"],
            )
        if row["isConsumable"] and quantity > row["quantity"]:
            raise InsufficientStockError(
                f"Not enough {row['name']} in stock.",
                equipmentID=equipment_id,
                equipmentName=row["name"],
                requested=quantity,
                available=row["quantity"],
            )
        if not row["isConsumable"] and row["quantity"] < 1:
            raise UnavailableError(
                f"{row['name']} is not available right now.",
                equipmentID=equipment_id,
                equipmentName=row["name"],
            )


def decrement_stock(db: Session, city_equipment_id: int, quantity: int, now: datetime | None = None) -> bool:
    """Conditionally take ``quantity`` units; False when the row cannot cover it."""
    result = db.execute(
        update(CityEquipment)
        .where(CityEquipment.CityEquipmentID == city_equipment_id)
        .where(CityEquipment.Quantity >= quantity)
        .values(Quantity=CityEquipment.Quantity - quantity, UpdatedDate=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def increment_stock(db: Session, city_equipment_id: int, quantity: int, now: datetime | None = None) -> bool:
    result = db.execute(
        update(CityEquipment)
        .where(CityEquipment.CityEquipmentID == city_equipment_id)
        .values(Quantity=CityEquipment.Quantity + quantity, UpdatedDate=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def mark_stock_faulty(db: Session, city_equipment_id: int, now: datetime | None = None) -> None:
    db.execute(
        update(CityEquipment)
        .where(CityEquipment.CityEquipmentID == city_equipment_id)
        .values(EquipmentStatus=FAULTY_STATUS, UpdatedDate=now or utcnow())
        .execution_options(synchronize_session=False)
    )


def current_quantity(db: Session, city_equipment_id: int) -> int | None:
    value = db.execute(
        select(CityEquipment.Quantity).where(CityEquipment.CityEquipmentID == city_equipment_id)
    ).scalar_one_or_none()
    return None if value is None else int(value)


def find_low_stock(db: Session, city_equipment_ids: Iterable[int]) -> list[dict]:
    ids = sorted({int(value) for value in city_equipment_ids})
    if not ids:
        return []
    rows = db.execute(
        select(CityEquipment.Quantity, CityEquipment.MinQuantity, GlobalEquipment.Name)
        .join(GlobalEquipment, GlobalEquipment.EquipmentID == CityEquipment.EquipmentID)
        .where(CityEquipment.CityEquipmentID.in_(ids))
    ).all()
    low: list[dict] = []
    for quantity, min_quantity, name in rows:
        threshold = LOW_STOCK_THRESHOLD if min_quantity is None else int(min_quantity)
        if int(quantity or 0) <= threshold:
            low.append({"name": name, "quantity": int(quantity or 0), "minQuantity": threshold})
    return low
