"""
Error taxonomy for PlanVault.

Every failure raised by the codec, the persistence store and the backup
flows is a subclass of PlanVaultError, so callers at the UI or CLI
boundary can catch the whole family and still map each subclass to a
specific message. None of these errors are fatal to the running process.

Hierarchy:
    PlanVaultError
    ├── WeakPasswordError
    │   └── PasswordMismatchError
    ├── AuthenticationError
    ├── FormatError
    ├── UnsupportedVersionError
    ├── StorageIOError
    ├── ValidationError
    ├── SlotNotFoundError
    ├── SlotBusyError
    ├── RestoreStateError
    │   └── RestoreInProgressError
    └── UnknownSlotError (also a ValueError)

User cancellation of a file picker is not an error and has no class here;
it is reported as a distinct outcome by the backup manager.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from planvault.validation.validator import ValidationReport


class PlanVaultError(Exception):
    """Base exception for all PlanVault errors."""

    pass


class WeakPasswordError(PlanVaultError):
    """Raised when a password fails the minimum-strength policy."""

    pass


class PasswordMismatchError(WeakPasswordError):
    """Raised when a password and its confirmation differ."""

    pass


class AuthenticationError(PlanVaultError):
    """
    Raised when authenticated decryption fails.

    Covers both a wrong password and any corruption or tampering of the
    ciphertext, nonce, salt or tag. The two cases are indistinguishable.
    """

    pass


class FormatError(PlanVaultError):
    """Raised when an envelope or stored payload is structurally invalid."""

    pass


class UnsupportedVersionError(PlanVaultError):
    """Raised when a format or schema version is outside the supported range."""

    def __init__(self, message: str, version: int | None = None) -> None:
        super().__init__(message)
        self.version = version


class StorageIOError(PlanVaultError):
    """Raised when the underlying read/write capability fails."""

    pass


class ValidationError(PlanVaultError):
    """Raised when an operation requires a valid record and the record is not."""

    def __init__(self, message: str, report: ValidationReport | None = None) -> None:
        super().__init__(message)
        self.report = report


class SlotNotFoundError(PlanVaultError):
    """Raised when a persistence slot has never been saved or was cleared."""

    pass


class SlotBusyError(PlanVaultError):
    """Raised when a write is attempted on a slot that already has one in flight."""

    pass


class UnknownSlotError(PlanVaultError, ValueError):
    """Raised when a slot name is not one of the known slots."""

    pass


class RestoreStateError(PlanVaultError):
    """Raised when a restore session is driven through an invalid transition."""

    pass


class RestoreInProgressError(RestoreStateError):
    """Raised when a second restore attempt starts while one is running."""

    pass
