#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base  # noqa: E402
from models import market_models  # noqa: E402,F401
from schemas.renters import RegisterRenterRequest  # noqa: E402
from services.errors import MarketError  # noqa: E402
from services.renter_service import find_renter_by_email, register_renter, set_password  # noqa: E402


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create one Renters record, or reset its password, directly from terminal.",
    )
    parser.add_argument("--email", required=True, help="Login email of the renter")
    parser.add_argument("--password", default=None, help="Password to set (at least 8 characters).")
    parser.add_argument("--entity-name", default=None, help="Business name; required when creating.")
    parser.add_argument("--poc-name", default=None, help="Contact person; required when creating.")
    parser.add_argument("--phone", default=None, help="10-digit phone number; required when creating.")
    parser.add_argument("--location", default=None, help="Location; required when creating.")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("RENTAL_MARKET_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to RENTAL_MARKET_DB_URL env var.",
    )
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    if not args.db_url:
        parser.error("Missing DB URL. Set RENTAL_MARKET_DB_URL or pass --db-url.")

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    Base.metadata.create_all(bind=engine)

    with Session(engine) as db:
        renter = find_renter_by_email(db, args.email)
        try:
            if renter:
                if args.password is None:
                    parser.error("Renter exists; pass --password to reset it.")
                set_password(db, renter, args.password)
                db.commit()
                action = "password_reset"
            else:
                missing = [
                    flag
                    for flag, value in (
                        ("--password", args.password),
                        ("--entity-name", args.entity_name),
                        ("--poc-name", args.poc_name),
                        ("--phone", args.phone),
                        ("--location", args.location),
                    )
                    if not value
                ]
                if missing:
                    parser.error(f"Creating a renter requires: {', '.join(missing)}")
                renter = register_renter(
                    db,
                    RegisterRenterRequest(
                        email=args.email,
                        password=args.password,
                        entityName=args.entity_name,
                        pocName=args.poc_name,
                        phoneNumber=args.phone,
                        location=args.location,
                    ),
                )
                action = "created"
        except MarketError as exc:
            print(f"FAILED: {exc.detail}")
            return 1

        print(f"OK renter_id={renter.RenterID} email={renter.Email} action={action}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
