"""
Bring the attendance_records indexes in line with the model.

Drops any legacy unconditional unique index on (employee_id, date), which
rejects a second labour row for the same day, and (re)creates:
  - uq_attendance_employee_date            unique, WHERE employee_id IS NOT NULL
  - uq_attendance_labour_name_date_project unique, WHERE employee_id IS NULL
  - idx_attendance_project_date_status     listing

Usage:
  python scripts/fix_attendance_indexes.py [--recreate] [--dry-run]

Existing rows that would violate the unique indexes are listed and the
script stops without touching anything.
"""
import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

from sqlalchemy import inspect, text

from sitehub.db import engine
from sitehub.models.models import AttendanceRecord


TABLE = AttendanceRecord.__tablename__
MODEL_INDEXES = {ix.name: ix for ix in AttendanceRecord.__table__.indexes}
LEGACY_KEYS = (["employee_id", "date"], ["employee_name", "date", "project_id"])

CONFLICT_QUERIES = {
    "uq_attendance_employee_date": (
        f"SELECT employee_id, date, COUNT(*) AS n FROM {TABLE} "
        "WHERE employee_id IS NOT NULL GROUP BY employee_id, date HAVING COUNT(*) > 1"
    ),
    "uq_attendance_labour_name_date_project": (
        f"SELECT employee_name, date, project_id, COUNT(*) AS n FROM {TABLE} "
        "WHERE employee_id IS NULL GROUP BY employee_name, date, project_id HAVING COUNT(*) > 1"
    ),
}


def legacy_indexes(conn) -> list:
    """Unique indexes over an identity key that the model does not declare."""
    found = []
    for ix in inspect(conn).get_indexes(TABLE):
        if ix.get("unique") and ix["column_names"] in LEGACY_KEYS and ix["name"] not in MODEL_INDEXES:
            found.append(ix["name"])
    return found


def find_conflicts(conn) -> dict:
    conflicts = {}
    for name, sql in CONFLICT_QUERIES.items():
        rows = conn.execute(text(sql)).fetchall()
        if rows:
            conflicts[name] = rows
    return conflicts


def fix_indexes(recreate: bool = False, dry_run: bool = False, bind=None) -> int:
    bind = bind or engine
    print("=" * 60)
    print(f"Attendance index maintenance on {bind.url.render_as_string(hide_password=True)}")
    print("=" * 60)

    with bind.begin() as conn:
        if not inspect(conn).has_table(TABLE):
            print(f"[SKIP] Table {TABLE} does not exist yet; it is created with the right indexes on startup")
            return 0

        conflicts = find_conflicts(conn)
        if conflicts:
            print("[ERROR] Existing rows would violate the unique indexes:")
            for name, rows in conflicts.items():
                print(f"  {name}:")
                for row in rows:
                    print(f"    {tuple(row)}")
            print("Resolve the duplicates above and run again.")
            return 1

        existing = {ix["name"] for ix in inspect(conn).get_indexes(TABLE)}
        to_drop = legacy_indexes(conn)
        if recreate:
            to_drop += [name for name in MODEL_INDEXES if name in existing]

        for name in to_drop:
            print(f"Dropping index {name}")
            if not dry_run:
                conn.execute(text(f"DROP INDEX IF EXISTS {name}"))
                existing.discard(name)

        for name, index in MODEL_INDEXES.items():
            if name in existing:
                print(f"[OK] {name} already present")
                continue
            print(f"Creating index {name}")
            if not dry_run:
                index.create(bind=conn)

    print("=" * 60)
    print("Dry run complete, nothing changed" if dry_run else "Attendance indexes are up to date")
    print("=" * 60)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--recreate", action="store_true", help="drop and recreate the model indexes too")
    parser.add_argument("--dry-run", action="store_true", help="print the plan without changing anything")
    args = parser.parse_args(argv)
    return fix_indexes(recreate=args.recreate, dry_run=args.dry_run)


if __name__ == "__main__":
    sys.exit(main())
