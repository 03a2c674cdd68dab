"""
Notification sink and read-side helpers.

Delivery is best effort: `send` raises NotificationError, and `notify_all`
logs and swallows it so callers (document approval) are never rolled back
by a failed alert.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from flask import Flask
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.docportal.db import session_scope
from app.docportal.errors import NotFoundError, NotificationError

from .models import Notification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutgoingNotification:
    recipient_id: int
    title: str
    message: str
    category: str = "document"
    priority: str = "medium"
    document_id: int | None = None


class NotificationSink:
    """Persists notifications in their own transaction, separate from the caller's."""

    def __init__(self, app: Flask):
        self.app = app

    def send(
        self,
        recipient_id: int,
        title: str,
        message: str,
        category: str = "document",
        priority: str = "medium",
        document_id: int | None = None,
    ) -> None:
        try:
            with session_scope(self.app) as s:
                s.add(
                    Notification(
                        recipient_user_id=recipient_id,
                        document_id=document_id,
                        title=title,
                        message=message,
                        category=category,
                        priority=priority,
                    )
                )
        except SQLAlchemyError as e:
            raise NotificationError(f"Could not store notification for user {recipient_id}: {e}") from e


def sink_for(app: Flask) -> NotificationSink:
    sink = app.extensions.get("notification_sink")
    if sink is None:
        sink = NotificationSink(app)
        app.extensions["notification_sink"] = sink
    return sink


def notify_all(sink: NotificationSink, notes: list[OutgoingNotification]) -> int:
    """Send each notification; returns how many were delivered."""
    delivered = 0
    for n in notes:
        try:
            sink.send(
                n.recipient_id,
                n.title,
                n.message,
                category=n.category,
                priority=n.priority,
                document_id=n.document_id,
            )
            delivered += 1
        except NotificationError as e:
            logger.warning("Notification delivery failed (recipient=%s document=%s): %s", n.recipient_id, n.document_id, e)
    return delivered


def list_for_user(s: Session, user_id: int, *, unread_only: bool = False) -> list[Notification]:
    q = select(Notification).where(Notification.recipient_user_id == user_id)
    if unread_only:
        q = q.where(Notification.read_at.is_(None))
    q = q.order_by(Notification.created_at.desc(), Notification.id.desc())
    return list(s.execute(q).scalars().all())


def unread_count(s: Session, user_id: int) -> int:
    return s.execute(
        select(func.count(Notification.id)).where(
            Notification.recipient_user_id == user_id,
            Notification.read_at.is_(None),
        )
    ).scalar_one()


def mark_read(s: Session, user_id: int, notification_id: int) -> Notification:
    n = s.get(Notification, notification_id)
    # Another user's notification is reported as missing.
    if not n or n.recipient_user_id != user_id:
        raise NotFoundError(f"Notification {notification_id} not found.")
    if n.read_at is None:
        n.read_at = datetime.utcnow()
    return n


def notification_to_dict(n: Notification) -> dict:
    return {
        "id": n.id,
        "recipient_id": n.recipient_user_id,
        "document_id": n.document_id,
        "title": n.title,
        "message": n.message,
        "category": n.category,
        "priority": n.priority,
        "created_at": n.created_at.isoformat() if n.created_at else None,
        "read": n.read_at is not None,
    }
