#!/usr/bin/env python3
"""Database overview and accounting integrity checks for Equipment Checkout."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "InventoryItems",
    "Categories",
    "Rentals",
    "Profiles",
    "CategoryFavorites",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "InventoryItems": ["ItemID", "ItemName", "Category", "TotalQty", "RentedQty", "BrokenQty"],
    "Rentals": [
        "RentalID",
        "ProfileID",
        "ItemID",
        "ItemName",
        "CurrentRentedQty",
        "DueDate",
        "Status",
        "BrokenLog",
        "ReturnProofUrl",
        "Revision",
    ],
    "Profiles": ["ProfileID", "Email", "FullName", "Role", "PasswordHash", "PasswordSalt"],
    "CategoryFavorites": ["FavoriteID", "ProfileID", "CategoryName", "CreatedDate"],
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


def _column_names(engine: Engine, table_name: str) -> set[str]:
    return {column["name"] for column in inspect(engine).get_columns(table_name)}


def _run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = _table_names(engine)
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def _run_column_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    present = _table_names(engine)
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in present:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = _column_names(engine, table)
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_integrity_checks(engine: Engine) -> list[CheckResult]:
    checks: list[CheckResult] = []
    present = _table_names(engine)

    if "InventoryItems" in present:
        checks.append(
            _count_check(
                engine,
                "items:negative_availability",
                "SELECT COUNT(*) FROM InventoryItems WHERE TotalQty - RentedQty - BrokenQty < 0",
            )
        )
        checks.append(
            _count_check(
                engine,
                "items:negative_counters",
                "SELECT COUNT(*) FROM InventoryItems WHERE RentedQty < 0 OR BrokenQty < 0 OR TotalQty < 1",
            )
        )

    if "InventoryItems" in present and "Rentals" in present:
        checks.append(
            _count_check(
                engine,
                "items:rented_qty_matches_active_rentals",
                """
                SELECT COUNT(*)
                FROM InventoryItems i
                LEFT JOIN (
                    SELECT ItemID, SUM(CurrentRentedQty) AS Outstanding
                    FROM Rentals
                    WHERE Status = 'active'
                    GROUP BY ItemID
                ) r ON r.ItemID = i.ItemID
                WHERE i.RentedQty <> COALESCE(r.Outstanding, 0)
                """,
            )
        )

    if "Rentals" in present:
        checks.append(
            _count_check(
                engine,
                "rentals:returned_with_outstanding_qty",
                "SELECT COUNT(*) FROM Rentals WHERE Status = 'returned' AND CurrentRentedQty <> 0",
            )
        )
        checks.append(
            _count_check(
                engine,
                "rentals:active_without_qty",
                "SELECT COUNT(*) FROM Rentals WHERE Status = 'active' AND CurrentRentedQty <= 0",
            )
        )
        checks.append(
            _count_check(
                engine,
                "rentals:active_without_item",
                "SELECT COUNT(*) FROM Rentals WHERE Status = 'active' AND ItemID IS NULL",
            )
        )

    if "CategoryFavorites" in present:
        checks.append(
            _count_check(
                engine,
                "favorites:more_than_two_per_profile",
                """
                SELECT COUNT(*)
                FROM (
                    SELECT ProfileID
                    FROM CategoryFavorites
                    GROUP BY ProfileID
                    HAVING COUNT(*) > 2
                ) f
                """,
            )
        )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    present = _table_names(engine)
    for table in EXPECTED_TABLES:
        if table not in present:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)
    present = _table_names(engine)

    if "Rentals" in present:
        rows = _rows(
            engine,
            """
            SELECT RentalID, ProfileID, ItemID, CurrentRentedQty, DueDate, Status, BrokenLog
            FROM Rentals
            ORDER BY RentalID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("Rentals (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def run_checks(engine: Engine) -> list[CheckResult]:
    return _run_existence_checks(engine) + _run_column_checks(engine) + _run_integrity_checks(engine)


def main() -> int:
    parser = argparse.ArgumentParser(description="Equipment Checkout DB overview")
    parser.add_argument("--db-url", default=os.environ.get("CHECKOUT_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("CHECKOUT_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    _print_results("Table Existence", _run_existence_checks(engine))
    _print_results("Column Checks", _run_column_checks(engine))
    integrity = _run_integrity_checks(engine)
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_samples(engine, args.samples)
    return 0 if all(check.ok for check in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
