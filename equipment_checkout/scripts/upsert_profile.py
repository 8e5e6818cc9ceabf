#!/usr/bin/env python3
"""Create or promote one profile from the terminal, e.g. to bootstrap the first admin."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create/update one profile directly from terminal.",
    )
    parser.add_argument("--email", required=True, help="Login email of the profile")
    parser.add_argument("--full-name", default="", help="Display name; defaults to the email for new profiles")
    parser.add_argument(
        "--role",
        choices=["waiting", "teacher", "manager", "admin"],
        default="admin",
        help="Role to assign",
    )
    parser.add_argument(
        "--password",
        default=None,
        help="Optional password to set. Omit to keep the current one.",
    )
    parser.add_argument(
        "--db-url",
        default=os.environ.get("CHECKOUT_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to CHECKOUT_DB_URL env var.",
    )
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    if "@" not in args.email:
        parser.error("--email must be an email address.")
    if not args.db_url:
        parser.error("Missing DB URL. Set CHECKOUT_DB_URL or pass --db-url.")
    if args.password is not None and len(args.password.strip()) < 6:
        parser.error("--password must be at least 6 characters.")

    os.environ["CHECKOUT_DB_URL"] = args.db_url
    os.environ.setdefault("SESSION_SIGNING_SECRET", "cli-" + "x" * 32)

    from db.session import SessionLocalCheckout, init_db
    from services.user_access_service import upsert_profile

    init_db()
    db = SessionLocalCheckout()
    try:
        profile = upsert_profile(
            db,
            email=args.email,
            full_name=args.full_name,
            role=args.role,
            password=args.password,
        )
    finally:
        db.close()

    print(
        f"OK profile_id={profile.ProfileID} email={profile.Email} role={profile.Role} "
        f"has_password={bool(profile.PasswordHash)}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
