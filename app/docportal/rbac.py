from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g

from app.docportal.models import User

# Permission keys seeded by scripts/init_db.py.
ADMIN_PERMISSIONS = (
    ("docs.view", "Docs: view all"),
    ("docs.create", "Docs: upload"),
    ("docs.review", "Docs: review, approve, reject"),
    ("docs.download", "Docs: download"),
    ("employees.view", "Employees: list"),
)
EMPLOYEE_PERMISSIONS = (
    ("portal.view", "Portal: view assigned documents"),
    ("docs.download", "Docs: download"),
)


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                abort(401)
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
