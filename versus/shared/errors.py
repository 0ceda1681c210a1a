"""
Exception classes for the voting core.

Every failure surfaced to a caller carries a stable machine-readable
``kind`` plus a human-readable message. The HTTP layer maps ``status_code``
directly onto the response.
"""
from typing import Any, Dict, Optional


class VotingError(Exception):
    """Base class for all typed voting failures."""

    kind = "voting_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the error response payload."""
        return {
            "error": self.kind,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(VotingError):
    """Test, option or session does not exist."""

    kind = "not_found"
    status_code = 404


class InactiveError(VotingError):
    """Test is not accepting votes."""

    kind = "inactive"
    status_code = 409


class InvalidChoiceError(VotingError):
    """Chosen option is not in the current pair, or the session is complete."""

    kind = "invalid_choice"
    status_code = 400


class ConflictError(VotingError):
    """Concurrent mutation lost the race, or duplicate session start."""

    kind = "conflict"
    status_code = 409


class UnauthorizedError(VotingError):
    """Ownership or role check failed."""

    kind = "unauthorized"
    status_code = 403


class ValidationError(VotingError):
    """Malformed input, e.g. a missing required-language title."""

    kind = "validation_error"
    status_code = 400


class UnavailableError(VotingError):
    """Storage stayed unreachable after all retries."""

    kind = "unavailable"
    status_code = 503


class StorageError(Exception):
    """Base exception for repository errors."""
    pass


class VersionConflict(StorageError):
    """Compare-and-swap save found a newer version of the document."""
    pass


class StorageUnavailable(StorageError):
    """Transient connection or timeout error talking to the store."""
    pass
