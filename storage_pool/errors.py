"""Error taxonomy for storage pool operations."""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Kinds of failure reported to callers."""
    INVALID_INPUT = "InvalidInput"
    DEVICE_NOT_FOUND = "DeviceNotFound"
    REQUIRES_CONFIRMATION = "RequiresConfirmation"
    NOT_MOUNTABLE = "NotMountable"
    UUID_UNRESOLVABLE = "UuidUnresolvable"
    FILES_IN_USE = "FilesInUse"
    POOL_INVARIANT_VIOLATION = "PoolInvariantViolation"
    SCAN_FAILED = "ScanFailed"
    COMMAND_FAILED = "CommandFailed"
    OPERATION_IN_PROGRESS = "OperationInProgress"


class PoolError(Exception):
    """Base error for pool operations."""

    kind = ErrorKind.COMMAND_FAILED

    def __init__(self, detail: str, data: Optional[Dict[str, Any]] = None):
        super().__init__(detail)
        self.detail = detail
        self.data = data or {}


class InvalidInputError(PoolError):
    kind = ErrorKind.INVALID_INPUT


class DeviceNotFoundError(PoolError):
    kind = ErrorKind.DEVICE_NOT_FOUND


class RequiresConfirmationError(PoolError):
    """Existing data was found; the caller must re-invoke with force or format."""
    kind = ErrorKind.REQUIRES_CONFIRMATION


class NotMountableError(PoolError):
    kind = ErrorKind.NOT_MOUNTABLE


class UuidUnresolvableError(PoolError):
    kind = ErrorKind.UUID_UNRESOLVABLE


class FilesInUseError(PoolError):
    kind = ErrorKind.FILES_IN_USE


class PoolInvariantError(PoolError):
    kind = ErrorKind.POOL_INVARIANT_VIOLATION


class ScanFailedError(PoolError):
    kind = ErrorKind.SCAN_FAILED


class CommandFailedError(PoolError):
    kind = ErrorKind.COMMAND_FAILED


class OperationInProgressError(PoolError):
    kind = ErrorKind.OPERATION_IN_PROGRESS
