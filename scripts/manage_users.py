#!/usr/bin/env python3
"""Create, update or deactivate portal users (idempotent).

Usage:
  python scripts/manage_users.py add --email priya@example.com --name "Priya Nair" --role employee --department Operations
  python scripts/manage_users.py deactivate --email priya@example.com
"""

import sys
import os
import argparse
import getpass
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from werkzeug.security import generate_password_hash

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.docportal.models import ROLE_ADMIN, ROLE_EMPLOYEE, Role, User
from scripts.init_db import ensure_roles


def _add(s: Session, args: argparse.Namespace) -> None:
    email = args.email.strip().lower()
    ensure_roles(s)
    role = s.query(Role).filter(Role.key == args.role).one()

    user = s.query(User).filter(User.email == email).one_or_none()
    if not user:
        password = args.password or os.environ.get("NEW_USER_PASSWORD") or getpass.getpass(f"Password for {email}: ")
        user = User(email=email, name=args.name or email, password_hash=generate_password_hash(password), is_active=True)
        s.add(user)
        print(f"Created user {email}")
    else:
        print(f"Updating existing user {email}")
    if args.name:
        user.name = args.name.strip()
    if args.department is not None:
        user.department = args.department.strip() or None
    user.is_active = True
    if role not in user.roles:
        user.roles.append(role)


def _deactivate(s: Session, args: argparse.Namespace) -> None:
    user = s.query(User).filter(User.email.ilike(args.email.strip())).one_or_none()
    if not user:
        print(f"User not found: {args.email}")
        return
    user.is_active = False
    print(f"Deactivated {user.email}")


def main() -> None:
    parser = argparse.ArgumentParser()
    sub = parser.add_subparsers(dest="command", required=True)

    p_add = sub.add_parser("add", help="Create or update a user")
    p_add.add_argument("--email", required=True)
    p_add.add_argument("--name")
    p_add.add_argument("--role", choices=(ROLE_ADMIN, ROLE_EMPLOYEE), default=ROLE_EMPLOYEE)
    p_add.add_argument("--department")
    p_add.add_argument("--password", help="Only used when creating; prompted if omitted")

    p_deactivate = sub.add_parser("deactivate", help="Deactivate a user (keeps their history)")
    p_deactivate.add_argument("--email", required=True)

    args = parser.parse_args()

    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///docportal.db").strip()
    engine = create_engine(db_url, future=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        if args.command == "add":
            _add(s, args)
        else:
            _deactivate(s, args)
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


if __name__ == "__main__":
    main()
