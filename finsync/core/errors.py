from __future__ import annotations

from typing import Any, Optional


class SyncError(RuntimeError):
    """Base class for failures surfaced by the sync core."""

    code = "sync_error"
    status_code = 500

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(SyncError):
    """Bad or missing input, or a provider 4xx. Never retried."""

    code = "validation_error"
    status_code = 422


class AlreadyInProgress(SyncError):
    code = "already_in_progress"
    status_code = 409


class ReauthorizationRequired(SyncError):
    """The provider credential is unusable until a human reconnects it."""

    code = "reauthorization_required"
    status_code = 401


class TransientError(SyncError):
    """Network failure, timeout or provider 5xx. Safe to retry later."""

    code = "transient_error"
    status_code = 503


class ReconciliationConflict(SyncError):
    """An update would regress a reference or record to an older state."""

    code = "reconciliation_conflict"
    status_code = 409


class WebhookVerificationError(SyncError):
    code = "invalid_signature"
    status_code = 400
