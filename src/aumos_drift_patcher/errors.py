"""Error taxonomy for the AumOS Drift Patcher.

Every error carries a machine-readable ErrorCode so the API layer and event
consumers can branch on the failure kind without string matching.

- InputError: malformed metadata, datasets or feature-count mismatches. Never retried.
- ComputationError: degenerate statistics that cannot be smoothed. Never retried.
- StoreError: persistence failures. Retried with bounded exponential backoff.
- ConcurrencyError: apply/rollback while another is in flight for the same model.
- InvalidStateError: patch lifecycle precondition violations.
- NotFoundError: unknown model, patch, or drift result id.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Machine-readable error codes attached to every DriftPatcherError."""

    INVALID_INPUT = "INVALID_INPUT"
    COMPUTATION_FAILED = "COMPUTATION_FAILED"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    OPERATION_IN_PROGRESS = "OPERATION_IN_PROGRESS"
    INVALID_STATE = "INVALID_STATE"
    NOT_FOUND = "NOT_FOUND"


class DriftPatcherError(Exception):
    """Base class for all service errors.

    Args:
        message: Human-readable description of the failure.
        error_code: Machine-readable error code.
    """

    default_code: ErrorCode = ErrorCode.COMPUTATION_FAILED

    def __init__(self, message: str, error_code: ErrorCode | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code

    def to_dict(self) -> dict:
        """Serialise for API error bodies and event payloads."""
        return {"error_code": self.error_code.value, "message": self.message}


class InputError(DriftPatcherError, ValueError):
    """Malformed model metadata or dataset."""

    default_code = ErrorCode.INVALID_INPUT


class ComputationError(DriftPatcherError):
    """A statistic could not be computed even with smoothing."""

    default_code = ErrorCode.COMPUTATION_FAILED


class StoreError(DriftPatcherError):
    """Persistence layer failure; transient and retryable."""

    default_code = ErrorCode.STORE_UNAVAILABLE


class ConcurrencyError(DriftPatcherError):
    """Another apply or rollback is already in flight for the model."""

    default_code = ErrorCode.OPERATION_IN_PROGRESS


class InvalidStateError(DriftPatcherError):
    """Patch lifecycle precondition violated."""

    default_code = ErrorCode.INVALID_STATE


class NotFoundError(DriftPatcherError):
    """Requested entity does not exist."""

    default_code = ErrorCode.NOT_FOUND
