"""
Backup and restore flows for PlanVault.

BackupFileManager sits between a host (CLI, desktop shell) and the
persistence store. It picks where a backup goes, writes the envelope
produced by the store, reads a backup back through the restore state
machine, and reports every outcome as a result dataclass instead of an
exception.

Destinations:
    downloads  managed download directory; names are de-duplicated with
               " (1)", " (2)", ... suffixes
    custom     a FilePicker chooses the path; None means the user cancelled

Outcomes:
    success    the file was written or the record restored
    cancelled  the user dismissed the picker; not an error
    failed     a typed PlanVaultError occurred; error_kind and a specific
               user-facing message are set
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from planvault.codec.envelope import FILE_EXTENSION, BackupEnvelope
from planvault.codec.restore import RestoreLoader, RestoreSession, TransitionListener
from planvault.errors import (
    AuthenticationError,
    FormatError,
    PasswordMismatchError,
    PlanVaultError,
    RestoreInProgressError,
    RestoreStateError,
    SlotBusyError,
    SlotNotFoundError,
    StorageIOError,
    UnknownSlotError,
    UnsupportedVersionError,
    ValidationError,
    WeakPasswordError,
)
from planvault.storage.store import MultiEntityPersistenceStore, SlotName, check_slot_name

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "retirement-backup"
EMERGENCY_PREFIX = "emergency-plan"
TIMESTAMP_FORMAT = "%Y-%m-%d-%H-%M-%S"


class SaveDestination(str, Enum):
    """Where a backup file is written."""

    DOWNLOADS = "downloads"
    CUSTOM = "custom"


class Outcome(str, Enum):
    """How a backup or restore attempt ended."""

    SUCCESS = "success"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ErrorKind(str, Enum):
    """User-facing classification of a failure."""

    WEAK_PASSWORD = "weak_password"
    PASSWORD_MISMATCH = "password_mismatch"
    AUTHENTICATION = "authentication"
    FORMAT = "format"
    UNSUPPORTED_VERSION = "unsupported_version"
    IO = "io"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    BUSY = "busy"
    UNKNOWN_SLOT = "unknown_slot"
    RESTORE_STATE = "restore_state"
    ENCRYPTION_REQUIRED = "encryption_required"


USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.WEAK_PASSWORD: "The password is too short. Please choose a longer password.",
    ErrorKind.PASSWORD_MISMATCH: "The passwords do not match. Please enter them again.",
    ErrorKind.AUTHENTICATION: (
        "The password is incorrect or the backup file has been modified or damaged."
    ),
    ErrorKind.FORMAT: "This file is not a PlanVault backup.",
    ErrorKind.UNSUPPORTED_VERSION: (
        "This backup was created by a newer version of PlanVault. Please update and try again."
    ),
    ErrorKind.IO: "The file could not be read or written. Check the location and permissions.",
    ErrorKind.VALIDATION: "The plan is missing required information and cannot be exported yet.",
    ErrorKind.NOT_FOUND: "There is no saved data to back up for this plan.",
    ErrorKind.BUSY: "Another save or restore is still running. Please wait and try again.",
    ErrorKind.UNKNOWN_SLOT: "Unknown plan. Choose person1, person2, combined or emergency.",
    ErrorKind.RESTORE_STATE: "The restore was interrupted. Please select the backup file again.",
    ErrorKind.ENCRYPTION_REQUIRED: "This plan can only be backed up with a password.",
}

# Checked in order; subclasses come before their bases
_ERROR_KINDS: tuple[tuple[type[Exception], ErrorKind], ...] = (
    (PasswordMismatchError, ErrorKind.PASSWORD_MISMATCH),
    (WeakPasswordError, ErrorKind.WEAK_PASSWORD),
    (AuthenticationError, ErrorKind.AUTHENTICATION),
    (UnsupportedVersionError, ErrorKind.UNSUPPORTED_VERSION),
    (FormatError, ErrorKind.FORMAT),
    (StorageIOError, ErrorKind.IO),
    (ValidationError, ErrorKind.VALIDATION),
    (SlotNotFoundError, ErrorKind.NOT_FOUND),
    (SlotBusyError, ErrorKind.BUSY),
    (RestoreInProgressError, ErrorKind.BUSY),
    (RestoreStateError, ErrorKind.RESTORE_STATE),
    (UnknownSlotError, ErrorKind.UNKNOWN_SLOT),
    (ValueError, ErrorKind.ENCRYPTION_REQUIRED),
)


def classify_error(error: Exception) -> ErrorKind:
    """Map an exception to the kind shown to the user."""
    for error_type, kind in _ERROR_KINDS:
        if isinstance(error, error_type):
            return kind
    raise TypeError(f"Unclassified error: {type(error).__name__}")


class FilePicker(Protocol):
    """Host capability for choosing files. Returning None means cancelled."""

    def choose_save_path(self, suggested_name: str) -> Path | None: ...

    def choose_open_path(self) -> Path | None: ...


class FileAccess(Protocol):
    """Host capability for reading and writing backup files."""

    def write(self, path: Path, data: bytes) -> Path: ...

    def read(self, path: Path) -> bytes: ...


class LocalFileAccess:
    """Reads and writes backup files on the local file system."""

    def write(self, path: Path, data: bytes) -> Path:
        """
        Write a file atomically with owner-only permissions.

        Raises:
            StorageIOError: If the file cannot be written.
        """
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_fd, temp_path = tempfile.mkstemp(
                prefix=f".{path.name}.",
                suffix=".tmp",
                dir=str(path.parent),
            )
        except OSError as e:
            raise StorageIOError(f"Cannot write {path}: {e}") from e

        try:
            with os.fdopen(temp_fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            try:
                os.chmod(temp_path, 0o600)
            except OSError:
                pass
            os.replace(temp_path, path)
        except OSError as e:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise StorageIOError(f"Cannot write {path}: {e}") from e
        return path

    def read(self, path: Path) -> bytes:
        """
        Read a file.

        Raises:
            StorageIOError: If the file cannot be read.
        """
        try:
            return Path(path).read_bytes()
        except OSError as e:
            raise StorageIOError(f"Cannot read {path}: {e}") from e


@dataclass
class BackupResult:
    """Result of a backup operation."""

    outcome: Outcome
    slot_name: str | None = None
    path: Path | None = None
    size_bytes: int = 0
    encrypted: bool = True
    error_kind: ErrorKind | None = None
    error: str | None = None
    detail: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "outcome": self.outcome.value,
            "slot_name": self.slot_name,
            "path": str(self.path) if self.path else None,
            "size_bytes": self.size_bytes,
            "encrypted": self.encrypted,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.error,
        }


@dataclass
class RestoreResult:
    """Result of a restore operation."""

    outcome: Outcome
    slot_name: str | None = None
    record: Any = None
    description: str = ""
    created_at: datetime | None = None
    applied: bool = False
    error_kind: ErrorKind | None = None
    error: str | None = None
    detail: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output (the record is omitted)."""
        return {
            "outcome": self.outcome.value,
            "slot_name": self.slot_name,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "applied": self.applied,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.error,
        }


class BackupFileManager:
    """
    User-facing backup and restore flows.

    Usage:
        manager = BackupFileManager(store, downloads_dir=Path("~/Downloads").expanduser())

        result = manager.create_backup("combined", password, confirm_password=password)
        if result.success:
            print(f"Saved to {result.path}")

        result = manager.restore_backup(result.path, password)

    Only one restore runs at a time per manager. The *_async variants run
    the same flows on a single worker thread and return futures.
    """

    def __init__(
        self,
        store: MultiEntityPersistenceStore,
        downloads_dir: Path | str | None = None,
        picker: FilePicker | None = None,
        file_access: FileAccess | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize the manager.

        Args:
            store: Persistence store holding the slots.
            downloads_dir: Managed download directory. Defaults to ~/Downloads.
            picker: File picker for custom destinations and restores.
            file_access: File system capability. Defaults to LocalFileAccess.
            clock: Source of local time for default filenames, for tests.
        """
        self.store = store
        self.downloads_dir = Path(downloads_dir or Path.home() / "Downloads").expanduser()
        self.picker = picker
        self.file_access = file_access or LocalFileAccess()
        self._clock = clock or datetime.now
        self._loader = RestoreLoader(store.codec)
        self._restore_lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        self._listeners: list[TransitionListener] = []

    def add_restore_listener(self, listener: TransitionListener) -> None:
        """Subscribe to state transitions of every restore this manager runs."""
        self._listeners.append(listener)

    def default_filename(self, slot_name: str) -> str:
        """Suggested filename for a slot, stamped with the current local time."""
        prefix = EMERGENCY_PREFIX if slot_name == SlotName.EMERGENCY.value else BACKUP_PREFIX
        return f"{prefix}-{self._clock().strftime(TIMESTAMP_FORMAT)}{FILE_EXTENSION}"

    def unique_download_path(self, filename: str) -> Path:
        """
        First free path for a file in the downloads directory.

        ``plan.json`` becomes ``plan (1).json``, ``plan (2).json``, ... when
        taken.
        """
        candidate = self.downloads_dir / filename
        stem, suffix = candidate.stem, candidate.suffix
        counter = 1
        while candidate.exists():
            candidate = self.downloads_dir / f"{stem} ({counter}){suffix}"
            counter += 1
        return candidate

    def create_backup(
        self,
        slot_name: str,
        password: str | None,
        confirm_password: str | None = None,
        destination: SaveDestination = SaveDestination.DOWNLOADS,
        filename: str | None = None,
        description: str = "",
        require_valid: bool = False,
    ) -> BackupResult:
        """
        Export a slot to a backup file.

        Args:
            slot_name: Slot to export.
            password: Encrypts the backup. None writes a plain export,
                which only person and emergency slots allow.
            confirm_password: Confirmation entry; must equal password when given.
            destination: Downloads directory or a picker-chosen path.
            filename: Filename for the downloads destination. Defaults to
                default_filename(); ".json" is appended when missing.
            description: Description stored in the envelope.
            require_valid: Refuse to export a record that fails validation.

        Returns:
            BackupResult; cancelled when the picker was dismissed.
        """
        try:
            name = check_slot_name(slot_name)
            if password is not None:
                self.check_passwords(password, confirm_password)

            suggested = _with_extension(filename or self.default_filename(name))
            if destination is SaveDestination.CUSTOM:
                path = self._pick_save_path(suggested)
                if path is None:
                    logger.info(f"Backup of {name} cancelled")
                    return BackupResult(outcome=Outcome.CANCELLED, slot_name=name)
                path = Path(_with_extension(str(path)))
            else:
                path = self.unique_download_path(suggested)

            data = self.store.export_to_file(
                name,
                password=password,
                description=description,
                require_valid=require_valid,
            )
            written = self.file_access.write(path, data)
        except (PlanVaultError, ValueError) as e:
            logger.warning(f"Backup of {slot_name} failed: {type(e).__name__}: {e}")
            return _failed(BackupResult, e, slot_name=slot_name)

        logger.info(f"Backup written: {written} ({len(data):,} bytes)")
        return BackupResult(
            outcome=Outcome.SUCCESS,
            slot_name=name,
            path=written,
            size_bytes=len(data),
            encrypted=password is not None,
        )

    def save_defaults(
        self,
        password: str,
        confirm_password: str | None = None,
        destination: SaveDestination = SaveDestination.DOWNLOADS,
        description: str = "",
    ) -> list[BackupResult]:
        """
        Back up the default targets to separate files.

        The combined slot is always written. The emergency slot is written
        to its own file when it holds data. A cancelled or failed combined
        backup stops the flow.
        """
        results = [
            self.create_backup(
                SlotName.COMBINED.value,
                password,
                confirm_password=confirm_password,
                destination=destination,
                description=description,
            )
        ]
        if results[0].success and self.store.has(SlotName.EMERGENCY.value):
            results.append(
                self.create_backup(
                    SlotName.EMERGENCY.value,
                    password,
                    confirm_password=confirm_password,
                    destination=destination,
                    description=description,
                )
            )
        return results

    def restore_backup(
        self,
        path: Path | str | None = None,
        password: str | None = None,
        apply: bool = True,
        slot_name: str | None = None,
    ) -> RestoreResult:
        """
        Restore a backup file into its slot.

        Args:
            path: Backup file. When None the picker is asked for one.
            password: Password for encrypted backups.
            apply: Save the restored record into the store.
            slot_name: Target slot, overriding the slot named in the backup.

        Returns:
            RestoreResult; cancelled when the picker was dismissed.
        """
        session = RestoreSession(self._loader, in_flight=self._restore_lock)
        for listener in self._listeners:
            session.add_listener(listener)

        target: str | None = None
        try:
            if path is None:
                path = self._pick_open_path()
            if path is None:
                session.select_file(None)
                logger.info("Restore cancelled")
                return RestoreResult(outcome=Outcome.CANCELLED)

            session.select_file(self.file_access.read(Path(path)))
            session.enter_password(password)

            def store_record(envelope: BackupEnvelope, record: Any) -> None:
                nonlocal target
                target = self._restore_target(envelope, slot_name)
                if apply:
                    self.store.save(target, record)

            record = session.run(apply=store_record)
        except (PlanVaultError, ValueError) as e:
            logger.warning(f"Restore failed: {type(e).__name__}: {e}")
            return _failed(RestoreResult, e, slot_name=target)

        envelope = session.envelope
        logger.info(f"Restored backup into slot {target}")
        return RestoreResult(
            outcome=Outcome.SUCCESS,
            slot_name=target,
            record=record,
            description=envelope.description if envelope else "",
            created_at=envelope.created_at if envelope else None,
            applied=apply,
        )

    def create_backup_async(self, *args: Any, **kwargs: Any) -> Future[BackupResult]:
        """Run create_backup on the worker thread."""
        return self._worker().submit(self.create_backup, *args, **kwargs)

    def save_defaults_async(self, *args: Any, **kwargs: Any) -> Future[list[BackupResult]]:
        """Run save_defaults on the worker thread."""
        return self._worker().submit(self.save_defaults, *args, **kwargs)

    def restore_backup_async(self, *args: Any, **kwargs: Any) -> Future[RestoreResult]:
        """Run restore_backup on the worker thread."""
        return self._worker().submit(self.restore_backup, *args, **kwargs)

    def close(self) -> None:
        """Wait for queued work and stop the worker thread."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> BackupFileManager:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def check_passwords(self, password: str, confirm_password: str | None) -> None:
        """
        Apply the password policy and the confirmation check.

        Raises:
            WeakPasswordError: If the password is too short.
            PasswordMismatchError: If the confirmation differs.
        """
        self.store.codec.check_password(password)
        if confirm_password is not None and confirm_password != password:
            raise PasswordMismatchError("Password and confirmation do not match")

    def _restore_target(self, envelope: BackupEnvelope, slot_name: str | None) -> str:
        target = slot_name or envelope.slot
        if target is None:
            raise FormatError("Backup does not say which slot it belongs to")
        return check_slot_name(target)

    def _pick_save_path(self, suggested: str) -> Path | None:
        if self.picker is None:
            raise StorageIOError("No file picker is available for a custom destination")
        return self.picker.choose_save_path(suggested)

    def _pick_open_path(self) -> Path | None:
        if self.picker is None:
            raise StorageIOError("No backup file given and no file picker is available")
        return self.picker.choose_open_path()

    def _worker(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1,
                thread_name_prefix="planvault-backup",
            )
        return self._executor


def _with_extension(filename: str) -> str:
    if filename.lower().endswith(FILE_EXTENSION):
        return filename
    return f"{filename}{FILE_EXTENSION}"


def _failed(result_type: Any, error: Exception, **fields: Any) -> Any:
    kind = classify_error(error)
    return result_type(
        outcome=Outcome.FAILED,
        error_kind=kind,
        error=USER_MESSAGES[kind],
        detail=str(error),
        **fields,
    )
