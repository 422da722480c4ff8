#!/usr/bin/env python3
"""Database overview and integrity checks for the rental market."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "Renters",
    "RenterSessions",
    "RentalListings",
    "RentalRequests",
    "CustomerInfo",
    "AuditLogs",
    "NotificationQueue",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Renters": ["RenterID", "Email", "EntityName", "PocName", "PhoneNumber", "Location", "PasswordHash", "PasswordSalt"],
    "RentalListings": [
        "ListingID",
        "RenterID",
        "Category",
        "Subcategory",
        "Brand",
        "Model",
        "PricePerHour",
        "Stock",
        "Rented",
        "DeliveryStatus",
        "ImagePaths",
        "CreatedDate",
        "UpdatedDate",
    ],
    "RentalRequests": [
        "RequestID",
        "ListingID",
        "CustomerName",
        "ContactNumber",
        "IdentityDocumentPath",
        "Quantity",
        "DurationHours",
        "TotalPrice",
        "Status",
        "IdempotencyKey",
    ],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "RenterID", "CreatedAt"],
    "NotificationQueue": ["NotificationID", "NotificationType", "EntityID", "RenterID", "Payload", "CreatedAt", "SentAt"],
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


def _table_names(engine: Engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_existence_checks(tables: set[str]) -> list[CheckResult]:
    return [CheckResult(f"table:{table}", table in tables, "present" if table in tables else "missing") for table in EXPECTED_TABLES]


def _run_column_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    results: list[CheckResult] = []
    inspector = inspect(engine)
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in tables:
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


def _run_integrity_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    checks: list[CheckResult] = []

    if "RentalListings" in tables:
        checks.append(
            _count_check(
                engine,
                "listings:rented_out_of_range",
                "SELECT COUNT(*) FROM RentalListings WHERE Rented < 0 OR Rented > Stock",
            )
        )
        checks.append(
            _count_check(
                engine,
                "listings:status_mismatch",
                """
                SELECT COUNT(*)
                FROM RentalListings
                WHERE (DeliveryStatus = 'Requested' AND Rented < Stock)
                   OR (DeliveryStatus = 'Pending' AND Rented >= Stock)
                """,
            )
        )
        checks.append(
            _count_check(
                engine,
                "listings:orphan_renterid",
                """
                SELECT COUNT(*)
                FROM RentalListings l
                LEFT JOIN Renters r ON r.RenterID = l.RenterID
                WHERE r.RenterID IS NULL
                """,
            )
        )

    if "RentalRequests" in tables and "RentalListings" in tables:
        checks.append(
            _count_check(
                engine,
                "requests:orphan_listingid",
                """
                SELECT COUNT(*)
                FROM RentalRequests q
                LEFT JOIN RentalListings l ON l.ListingID = q.ListingID
                WHERE l.ListingID IS NULL
                """,
            )
        )
        # Open requests hold exactly the units counted in Rented.
        checks.append(
            _count_check(
                engine,
                "listings:rented_matches_open_requests",
                """
                SELECT COUNT(*)
                FROM RentalListings l
                LEFT JOIN (
                    SELECT ListingID, SUM(Quantity) AS Reserved
                    FROM RentalRequests
                    WHERE Status = 'Pending'
                    GROUP BY ListingID
                ) q ON q.ListingID = l.ListingID
                WHERE l.Rented <> COALESCE(q.Reserved, 0)
                """,
            )
        )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine, tables: set[str]) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if table not in tables:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_samples(engine: Engine, tables: set[str], sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if "RentalListings" in tables:
        rows = _rows(
            engine,
            """
            SELECT ListingID, RenterID, Category, Model, Stock, Rented, DeliveryStatus
            FROM RentalListings
            ORDER BY ListingID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("RentalListings (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if "AuditLogs" in tables:
        rows = _rows(
            engine,
            """
            SELECT AuditID, EntityType, Action, RenterID, CreatedAt
            FROM AuditLogs
            ORDER BY AuditID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("AuditLogs (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Rental market DB overview")
    parser.add_argument("--db-url", default=os.environ.get("RENTAL_MARKET_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RENTAL_MARKET_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    tables = _table_names(engine)
    integrity = _run_integrity_checks(engine, tables)
    _print_results("Table Existence", _run_existence_checks(tables))
    _print_results("Column Checks", _run_column_checks(engine, tables))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine, tables)
    _print_samples(engine, tables, args.samples)
    return 0 if all(check.ok for check in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
