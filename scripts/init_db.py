import sys
from pathlib import Path
import os

from werkzeug.security import generate_password_hash
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from contextlib import contextmanager

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.docportal.models import ROLE_ADMIN, ROLE_EMPLOYEE, Permission, Role, User
from app.docportal.rbac import ADMIN_PERMISSIONS, EMPLOYEE_PERMISSIONS


@contextmanager
def _session_scope(database_url: str):
    engine = create_engine(database_url, future=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


def ensure_roles(s: Session) -> tuple[Role, Role]:
    """Create the admin/employee roles and their permissions if missing."""
    perms: dict[str, Permission] = {}

    def ensure_perm(key: str, name: str) -> Permission:
        if key in perms:
            return perms[key]
        p = s.query(Permission).filter(Permission.key == key).one_or_none()
        if not p:
            p = Permission(key=key, name=name)
            s.add(p)
        perms[key] = p
        return p

    def ensure_role(key: str, name: str, grants: tuple[tuple[str, str], ...]) -> Role:
        role = s.query(Role).filter(Role.key == key).one_or_none()
        if not role:
            role = Role(key=key, name=name)
            s.add(role)
        for perm_key, perm_name in grants:
            p = ensure_perm(perm_key, perm_name)
            if p not in role.permissions:
                role.permissions.append(p)
        return role

    role_admin = ensure_role(ROLE_ADMIN, "Administrator", ADMIN_PERMISSIONS)
    role_employee = ensure_role(ROLE_EMPLOYEE, "Employee", EMPLOYEE_PERMISSIONS)
    return role_admin, role_employee


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@docportal.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    admin_name = (os.environ.get("ADMIN_NAME") or "Administrator").strip()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///docportal.db").strip()

    with _session_scope(db_url) as s:
        role_admin, _ = ensure_roles(s)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                name=admin_name,
                password_hash=generate_password_hash(admin_password),
                is_active=True,
            )
            s.add(user)
        if role_admin not in user.roles:
            user.roles.append(role_admin)

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
