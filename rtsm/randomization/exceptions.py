"""
RTSM - Randomization Errors
===========================
Typed failures with stable codes. Clients branch on `code`, never on the
message text.
"""

from typing import Any, Dict, Optional


class RandomizationError(Exception):
    """Base class for every failure the engine reports to callers."""

    code = "RANDOMIZATION_ERROR"
    # Expected, user-facing outcome rather than a fault
    business_outcome = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(RandomizationError):
    """Bad scheme definition or claim input."""
    code = "VALIDATION_ERROR"


class ConfigError(RandomizationError):
    """Block size is not a whole multiple of the allocation ratio sum."""
    code = "CONFIG_ERROR"


class NotFoundError(RandomizationError):
    """Unknown scheme."""
    code = "NOT_FOUND"


class LockedError(RandomizationError):
    """Edit or regeneration attempted on an activated scheme."""
    code = "SCHEME_LOCKED"


class NoListError(RandomizationError):
    """Activation attempted without a current generated list."""
    code = "NO_LIST"


class NoActiveSchemeError(RandomizationError):
    """Claim attempted for a study with no active scheme."""
    code = "NO_ACTIVE_SCHEME"
    business_outcome = True


class DuplicateAssignmentError(RandomizationError):
    """The subject already has an assignment."""
    code = "ALREADY_RANDOMIZED"
    business_outcome = True


class ExhaustedError(RandomizationError):
    """No unused list entry remains for the stratum."""
    code = "LIST_EXHAUSTED"
    business_outcome = True


class ClaimConflictError(RandomizationError):
    """Every claim attempt lost the race to concurrent claims. Safe to retry."""
    code = "CLAIM_CONFLICT"
