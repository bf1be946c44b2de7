#!/usr/bin/env python3
"""
Schema helper for the membership billing tables.

Usage:
    python run_migration.py up    # Create missing tables
    python run_migration.py check # Report which billing tables exist

Flask-Migrate (`flask db upgrade`) is the normal path; this script is for
fresh installs and quick checks on a shared host.
"""

import sys
from pathlib import Path

# Add app directory to path
sys.path.insert(0, str(Path(__file__).parent / "server"))

from sqlalchemy import inspect, text

from salonhub import create_app
from salonhub.extensions import db

BILLING_TABLES = ("users", "membership_plans", "membership_coupons", "memberships", "membership_logs")


def check_tables(app) -> bool:
    """Print table status; True when every billing table exists."""
    with app.app_context():
        existing = set(inspect(db.engine).get_table_names())
        for table in BILLING_TABLES:
            if table in existing:
                rows = db.session.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar()
                print(f"OK      {table} ({rows} rows)")
            else:
                print(f"MISSING {table}")
        return all(table in existing for table in BILLING_TABLES)


def run_migration_up(app) -> bool:
    with app.app_context():
        try:
            db.create_all()
        except Exception as e:
            db.session.rollback()
            print(f"Migration failed: {e}")
            return False
    print("Tables created")
    return check_tables(app)


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)

    command = sys.argv[1].lower()
    app = create_app()

    if command == "up":
        success = run_migration_up(app)
    elif command == "check":
        success = check_tables(app)
    else:
        print(f"Unknown command: {command}")
        print(__doc__)
        sys.exit(1)

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
