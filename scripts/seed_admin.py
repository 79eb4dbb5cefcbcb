#!/usr/bin/env python3
"""
Create the first staff account out of band. Staff registration over HTTP
requires an existing staff token, so a fresh deployment starts here.

Example:
  KITCHEN_DB_URL=postgresql+psycopg://... python scripts/seed_admin.py \
      --username owner --email owner@example.com
"""
from __future__ import annotations

import argparse
import getpass
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Seed a staff account for the kitchen API.")
    p.add_argument("--username", required=True)
    p.add_argument("--email", required=True)
    p.add_argument("--name", default=None)
    p.add_argument("--phone", default=None)
    p.add_argument("--password", default=None, help="prompted for when omitted")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    password = args.password or getpass.getpass("Password: ")
    if len(password) < 6:
        print("password must be at least 6 characters", file=sys.stderr)
        return 2

    from sqlalchemy import or_, select
    from sqlalchemy.orm import Session

    from apps.kitchen.app import db
    from apps.kitchen.app.auth import normalize_email
    from apps.kitchen.app.security import hash_password

    db.ensure_schema()
    email = normalize_email(args.email)
    with Session(db.engine) as s:
        existing = s.execute(
            select(db.Admin.id).where(or_(db.Admin.email == email, db.Admin.username == args.username))
        ).first()
        if existing:
            print(f"staff account already exists (id={existing[0]})", file=sys.stderr)
            return 1
        admin = db.Admin(
            username=args.username,
            email=email,
            password=hash_password(password),
            name=args.name,
            phone_number=args.phone,
        )
        s.add(admin)
        s.commit()
        print(f"created staff account id={admin.id} username={admin.username}")
    return 0


if __name__ == "__main__":
    sys.path.insert(0, str(REPO_ROOT))
    sys.exit(main())
