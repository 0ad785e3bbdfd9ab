#!/usr/bin/env python3
"""Database overview and integrity checks for the equipment cabinet store."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


EXPECTED_TABLES = [
    "Cities",
    "GlobalEquipment",
    "CityEquipment",
    "EquipmentRequests",
    "RequestItems",
    "BorrowHistory",
    "ActivityLog",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Cities": ["CityID", "Name", "IsActive", "RequestMode", "RequireCallID", "MaxRequestDistanceKm", "CabinetLat", "CabinetLng"],
    "CityEquipment": ["CityEquipmentID", "CityID", "EquipmentID", "Quantity", "EquipmentStatus", "IsConsumable", "MinQuantity"],
    "EquipmentRequests": ["RequestID", "CityID", "RequesterPhone", "TokenHash", "ExpiresAt", "Status", "PickedUpAt"],
    "RequestItems": ["RequestItemID", "RequestID", "EquipmentID", "Quantity"],
    "BorrowHistory": ["BorrowID", "Phone", "EquipmentName", "CityID", "Status", "BorrowDate", "ReturnDate", "LastReminderSentAt"],
}

# name -> (tables it needs, SQL returning the number of offending rows)
INTEGRITY_QUERIES: dict[str, tuple[tuple[str, ...], str]] = {
    "cityequipment:negative_quantity": (
        ("CityEquipment",),
        "SELECT COUNT(*) FROM CityEquipment WHERE Quantity < 0",
    ),
    "requests:live_without_items": (
        ("EquipmentRequests", "RequestItems"),
        """
        SELECT COUNT(*)
        FROM EquipmentRequests r
        LEFT JOIN RequestItems ri ON ri.RequestID = r.RequestID
        WHERE r.Status IN ('pending', 'approved') AND ri.RequestItemID IS NULL
        """,
    ),
    "requests:picked_up_without_borrows": (
        ("EquipmentRequests", "BorrowHistory"),
        """
        SELECT COUNT(*)
        FROM EquipmentRequests r
        LEFT JOIN BorrowHistory b ON b.RequestID = r.RequestID
        WHERE r.Status = 'picked_up' AND b.BorrowID IS NULL
        """,
    ),
    "requestitems:orphan_equipment": (
        ("RequestItems", "GlobalEquipment"),
        """
        SELECT COUNT(*)
        FROM RequestItems ri
        LEFT JOIN GlobalEquipment e ON e.EquipmentID = ri.EquipmentID
        WHERE e.EquipmentID IS NULL
        """,
    ),
    "borrowhistory:reminder_before_borrow": (
        ("BorrowHistory",),
        "SELECT COUNT(*) FROM BorrowHistory WHERE LastReminderSentAt IS NOT NULL AND LastReminderSentAt < BorrowDate",
    ),
    "requests:duplicate_token_hash": (
        ("EquipmentRequests",),
        """
        SELECT COUNT(*)
        FROM (
            SELECT TokenHash
            FROM EquipmentRequests
            GROUP BY TokenHash
            HAVING COUNT(*) > 1
        ) d
        """,
    ),
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _existing_tables(engine: Engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def run_existence_checks(engine: Engine) -> list[CheckResult]:
    existing = _existing_tables(engine)
    return [CheckResult(f"table:{table}", table in existing, "present" if table in existing else "missing") for table in EXPECTED_TABLES]


def run_column_checks(engine: Engine) -> list[CheckResult]:
    existing = _existing_tables(engine)
    inspector = inspect(engine)
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in existing:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    existing = _existing_tables(engine)
    checks: list[CheckResult] = []
    for name, (tables, sql) in INTEGRITY_QUERIES.items():
        if not all(table in existing for table in tables):
            checks.append(CheckResult(name, False, "table missing"))
            continue
        count = int(_scalar(engine, sql) or 0)
        checks.append(CheckResult(name, count == 0, f"count={count}"))
    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    existing = _existing_tables(engine)
    for table in EXPECTED_TABLES:
        if table not in existing:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)
    existing = _existing_tables(engine)

    if "EquipmentRequests" in existing:
        rows = _rows(
            engine,
            """
            SELECT RequestID, CityID, Status, ExpiresAt
            FROM EquipmentRequests
            ORDER BY RequestID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("EquipmentRequests (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if "BorrowHistory" in existing:
        rows = _rows(
            engine,
            """
            SELECT BorrowID, CityID, EquipmentName, Status, BorrowDate, LastReminderSentAt
            FROM BorrowHistory
            WHERE Status = 'borrowed'
            ORDER BY BorrowDate ASC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("BorrowHistory (oldest open):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Equipment cabinet DB overview")
    parser.add_argument("--db-url", default=os.environ.get("CABINET_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("CABINET_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except SQLAlchemyError as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    integrity = run_integrity_checks(engine)
    _print_results("Table Existence", run_existence_checks(engine))
    _print_results("Column Checks", run_column_checks(engine))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_samples(engine, args.samples)
    return 0 if all(row.ok for row in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
