"""
Standardized error classification for the identity-resolution core.

Every error names the condition with a stable ``code`` and carries the
offending record IDs so a caller can retry the exact records that failed
instead of replaying a whole request.

Taxonomy:
- validation: malformed probe or input, nothing was written
- not_found / not_found_or_already_merged: referenced record is missing or tombstoned
- conflict: state forbids the operation (already resolved, already migrated, rollback blocked)
- internal: storage failed mid-transaction and everything was rolled back
"""

from typing import Any, Dict, List, Optional, Sequence


class IdentityError(Exception):
    """
    Base exception for all identity-resolution errors.

    Attributes:
        message: Human-readable error description
        code: Stable machine-readable condition name
        record_ids: IDs of the records that caused the failure
        details: Extra structured context for logging
    """

    code = "identity_error"

    def __init__(
        self,
        message: str,
        record_ids: Optional[Sequence[str]] = None,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.record_ids: List[str] = list(record_ids or [])
        self.details = details or {}
        if code:
            self.code = code

    def __str__(self) -> str:
        parts = [f"[{self.code}]", self.message]
        if self.record_ids:
            parts.append(f"(ids: {', '.join(self.record_ids)})")
        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "record_ids": self.record_ids,
            "details": self.details,
        }


class ValidationError(IdentityError):
    """Caller supplied a malformed probe, option set or input."""

    code = "validation"


class RecordNotFoundError(IdentityError):
    """A referenced record (candidate, deal, run) does not exist."""

    code = "not_found"


class NotFoundOrAlreadyMergedError(RecordNotFoundError):
    """
    A merge referenced a record that is missing, tombstoned, or the primary itself.

    Raised before any write, so the whole merge call is a no-op.
    """

    code = "not_found_or_already_merged"


class ConflictError(IdentityError):
    """The current state of the data forbids the requested transition."""

    code = "conflict"


class AlreadyResolvedError(ConflictError):
    """Duplicate candidate has already left the PENDING state."""

    code = "already_resolved"


class ScopeAlreadyMigratedError(ConflictError):
    """Every legacy row in the scope has already been migrated."""

    code = "already_migrated"


class RollbackBlockedError(ConflictError):
    """
    A migration-created record was folded into another record by a later merge.

    Undoing the migration would silently destroy data outside the scope.
    """

    code = "rollback_blocked"


class InternalError(IdentityError):
    """Storage failure inside a transaction; prior state is intact."""

    code = "internal"


class ParseIOError(IdentityError):
    """Parser input could not be read."""

    code = "io_error"
