"""
Error taxonomy for the document portal.

Blueprints translate these into JSON responses; the HTTP status lives on the
class so the translation is a single error handler.
"""
from __future__ import annotations


class PortalError(Exception):
    http_status = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(PortalError):
    """Caller input violates a contract. Fix the input; never retried."""

    http_status = 400


class NotFoundError(PortalError):
    http_status = 404


class ConflictError(PortalError):
    """A concurrent transition won. Re-fetch the document before retrying."""

    http_status = 409


class StorageError(PortalError):
    http_status = 502


class EnrichmentError(PortalError):
    """Text extraction or summarization failed. Logged, never fatal to a document."""


class NotificationError(PortalError):
    """Notification delivery failed. Logged, never propagated to the approver."""
