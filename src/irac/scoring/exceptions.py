"""Scoring error taxonomy.

Every error carries a stable ``code`` and the HTTP status the API layer
renders it with. ``DuplicateAwardError`` and ``AlreadyProcessedToday`` are
results rather than failures: callers treat them as "already done".
"""

from __future__ import annotations

from typing import Any


class ScoringError(Exception):
    """Base class for scoring errors."""

    code: str = "scoring_error"
    status_code: int = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class AuthRequiredError(ScoringError):
    code = "auth_required"
    status_code = 401


class PermissionDeniedError(ScoringError):
    code = "permission_denied"
    status_code = 403


class InvalidPointsError(ScoringError):
    code = "invalid_points"
    status_code = 422


class InvalidMetadataError(ScoringError):
    code = "invalid_metadata"
    status_code = 422


class InvalidPaginationError(ScoringError):
    code = "invalid_pagination"
    status_code = 422


class InvalidTimeframeError(ScoringError):
    code = "invalid_timeframe"
    status_code = 422


class UserNotFoundError(ScoringError):
    code = "user_not_found"
    status_code = 404


class DuplicateAwardError(ScoringError):
    """Points were already credited for this (user, reference).

    ``result`` holds the user's current totals once the engine has loaded
    them; the ledger raises it without one.
    """

    code = "duplicate_award"
    status_code = 200

    def __init__(
        self,
        message: str = "Points already awarded for this action",
        details: dict[str, Any] | None = None,
        result: Any = None,
    ) -> None:
        super().__init__(message, details)
        self.result = result


class AlreadyProcessedToday(ScoringError):
    """The daily login bonus for today was already credited."""

    code = "already_processed_today"
    status_code = 200

    def __init__(
        self,
        message: str = "Daily login already processed for today",
        details: dict[str, Any] | None = None,
        streak: int = 0,
    ) -> None:
        super().__init__(message, details)
        self.streak = streak


class StorageError(ScoringError):
    code = "storage_error"
    status_code = 503
