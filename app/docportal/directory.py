"""
Read-only user directory.

The lifecycle core never writes users; it asks this module who exists and who
is an eligible assignment target (active users holding the employee role).
"""
from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.docportal.errors import NotFoundError, ValidationError
from app.docportal.models import ROLE_EMPLOYEE, Role, User


def _employee_query():
    return (
        select(User)
        .join(User.roles)
        .where(Role.key == ROLE_EMPLOYEE, User.is_active.is_(True))
    )


def list_active_employees(s: Session) -> list[User]:
    users = s.execute(_employee_query().order_by(User.name.asc(), User.id.asc())).scalars().unique().all()
    # Admins who also hold the employee role are reviewers, not assignment targets.
    return [u for u in users if u.role == ROLE_EMPLOYEE]


def get_user(s: Session, user_id: int) -> User:
    u = s.get(User, user_id)
    if not u:
        raise NotFoundError(f"User {user_id} not found.")
    return u


def resolve_assignees(s: Session, user_ids: Iterable[int]) -> list[User]:
    """
    Resolve ids to active employees, preserving first-seen order and dropping
    duplicates. Any unknown, inactive or non-employee id is a validation error.
    """
    ids: list[int] = []
    for raw in user_ids:
        # JSON true/false and fractional numbers are not ids.
        if isinstance(raw, bool) or (isinstance(raw, float) and not raw.is_integer()):
            raise ValidationError(f"Invalid employee id: {raw!r}")
        try:
            uid = int(raw)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid employee id: {raw!r}")
        if uid not in ids:
            ids.append(uid)
    if not ids:
        raise ValidationError("Select at least one employee to assign.")

    found = {u.id: u for u in s.execute(select(User).where(User.id.in_(ids))).scalars().all()}
    bad: list[str] = []
    for uid in ids:
        u = found.get(uid)
        if u is None:
            bad.append(f"{uid} (unknown)")
        elif not u.is_active:
            bad.append(f"{uid} (inactive)")
        elif u.role != ROLE_EMPLOYEE:
            bad.append(f"{uid} (not an employee)")
    if bad:
        raise ValidationError("Cannot assign to: " + ", ".join(bad))
    return [found[uid] for uid in ids]
