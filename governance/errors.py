"""
errors.py — Error taxonomy for the governance core.

Every error raised by the core derives from GovernanceError and declares
whether a caller may retry the same call unchanged:

    ValidationError         — caller must correct the input (not retryable)
    InvalidTransitionError  — entity is in a state that forbids the operation
    ConflictError           — concurrent modification detected
    ClassificationError     — catalog cannot support classification
    CatalogIntegrityError   — zero / multiple default codes, duplicates
    NotFoundError           — unknown entity id
    LockTimeoutError        — outcome unknown; re-query state before retrying
"""


class GovernanceError(Exception):
    """Base class for all governance-core errors."""

    retryable = True

    def __init__(self, message: str, entity_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "entity_id": self.entity_id,
            "retryable": self.retryable,
        }


class ValidationError(GovernanceError):
    """A mandatory field is missing or malformed."""

    retryable = False


class InvalidTransitionError(GovernanceError):
    """The operation is not permitted from the entity's current state."""


class ConflictError(GovernanceError):
    """The stored version no longer matches the version that was read."""


class ClassificationError(GovernanceError):
    """The cost-code catalog cannot be used for classification."""


class CatalogIntegrityError(ClassificationError):
    """The catalog violates a load-time integrity rule."""


class NotFoundError(GovernanceError):
    """No entity exists with the requested id."""


class LockTimeoutError(GovernanceError):
    """A per-entity lock could not be acquired in time.

    The triggering operation may or may not have been applied by another
    writer; callers must re-read the entity before deciding to retry.
    """
