# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapkeep Exceptions - Error taxonomy for backup, transfer and restore.

Every error carries a ResultCode so that outer layers (CLI, HTTP) can map
any failure to a stable status without inspecting messages.
"""

from snapkeep.models import ResultCode


class SnapkeepError(Exception):
    """Base exception for all snapkeep errors."""

    result_code: ResultCode = ResultCode.BACKUP_FAILED

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(SnapkeepError):
    """Raised when configuration is invalid."""

    result_code = ResultCode.VALIDATION_FAILED


class CatalogError(SnapkeepError):
    """Raised when catalog operations fail or would violate its invariants."""

    pass


# ============================================================================
# Producer
# ============================================================================


class ProducerError(SnapkeepError):
    """Raised when a snapshot cannot be produced."""

    result_code = ResultCode.BACKUP_FAILED


class ProducerUnavailable(ProducerError):
    """The target service cannot be reached."""

    pass


class ProducerProcessFailed(ProducerError):
    """The external snapshot process exited non-zero."""

    def __init__(self, message: str, details: dict | None = None, stderr: str = ""):
        self.stderr = stderr
        details = dict(details or {})
        if stderr:
            details.setdefault("stderr", stderr)
        super().__init__(message, details)


class ProducerOutputEmpty(ProducerError):
    """The external snapshot process produced zero bytes."""

    pass


# ============================================================================
# Validation
# ============================================================================


class ValidationFailed(SnapkeepError):
    """Base for failures detected before any live state is touched."""

    result_code = ResultCode.VALIDATION_FAILED


class IntegrityMismatch(ValidationFailed):
    """An artifact's digest does not match the expected digest."""

    def __init__(self, expected: str, actual: str, details: dict | None = None):
        self.expected = expected
        self.actual = actual
        details = dict(details or {})
        details.update({"expected_digest": expected, "actual_digest": actual})
        super().__init__("Artifact digest mismatch", details)


class SnapshotNotFound(ValidationFailed):
    """The referenced snapshot does not exist."""

    pass


class SubsetNotPresent(ValidationFailed):
    """The requested subset key does not appear in the artifact."""

    pass


class UnsupportedScope(ValidationFailed):
    """The target kind does not support the requested scope."""

    pass


class ConfirmationRequired(ValidationFailed):
    """A non-forced restore was requested without a valid confirmation token."""

    pass


# ============================================================================
# Transfer
# ============================================================================


class TransferError(SnapkeepError):
    """Base for blob transfer failures."""

    result_code = ResultCode.TRANSFER_FAILED


class TransientStorageError(TransferError):
    """A storage failure worth retrying (timeouts, 5xx, throttling)."""

    pass


class TransferRejected(TransferError):
    """Storage refused the request; retrying will not help."""

    pass


class AuthorizationFailed(TransferRejected):
    """Credentials were rejected by storage."""

    pass


class BlobNotFound(TransferRejected):
    """The requested key, bucket or upload session does not exist."""

    pass


class QuotaExceeded(TransferRejected):
    """Storage is out of space or quota."""

    pass


class TransferIntegrityFailed(TransferError):
    """Transferred bytes did not verify after all permitted restarts."""

    pass


class TransferRetriesExhausted(TransferError):
    """Transient failures persisted past the retry budget."""

    pass


# ============================================================================
# Restore
# ============================================================================


class RestoreError(SnapkeepError):
    """Base for restore failures after validation."""

    result_code = ResultCode.RESTORE_FAILED


class ApplyFailed(RestoreError):
    """The target reported failure while applying an artifact."""

    pass


class RestoreFailed(RestoreError):
    """The restore did not complete; the target was rolled back."""

    pass


class RestoreUnrecoverable(RestoreError):
    """Rollback failed; the target needs operator intervention."""

    result_code = ResultCode.RESTORE_UNRECOVERABLE


# ============================================================================
# Operation control
# ============================================================================


class TargetBusy(SnapkeepError):
    """Another backup or restore is in flight for the same target."""

    result_code = ResultCode.BUSY


class Cancelled(SnapkeepError):
    """The operation was cancelled and its partial artifacts removed."""

    result_code = ResultCode.CANCELLED


class OperationTimedOut(Cancelled):
    """The operation exceeded its caller-supplied ceiling."""

    pass


def result_code_for(error: BaseException | None) -> ResultCode:
    """Map an error (or its absence) to a ResultCode."""
    if error is None:
        return ResultCode.OK
    if isinstance(error, SnapkeepError):
        return error.result_code
    return ResultCode.BACKUP_FAILED
