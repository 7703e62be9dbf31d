"""
Restoring records from backup envelopes.

RestoreLoader composes the three stages of a restore:

    1. load_envelope   bytes -> BackupEnvelope        (FormatError, UnsupportedVersionError)
    2. decrypt         envelope -> wire record        (AuthenticationError, FormatError)
    3. migrate/dates   wire record -> current record  (UnsupportedVersionError, FormatError)

RestoreSession wraps those stages in the restore state machine:

    IDLE -> FILE_SELECTED -> PASSWORD_ENTERED -> DECRYPTING -> APPLYING -> DONE

Failures in DECRYPTING or APPLYING move the session back to FILE_SELECTED
with the typed error kept on the session, so the user can retry with a
different password. A cancelled file picker returns the session to IDLE.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from enum import Enum
from typing import Any

from planvault.codec import dates
from planvault.codec.crypto import DataCodec
from planvault.codec.envelope import BackupEnvelope
from planvault.errors import (
    FormatError,
    RestoreInProgressError,
    RestoreStateError,
    UnsupportedVersionError,
)

logger = logging.getLogger(__name__)

_BOM = "\ufeff"


def _migrate_v1_to_v2(record: Any) -> Any:
    """Schema 1 kept bare ISO strings under well-known date keys."""
    return dates.rehydrate(record, schema_version=1)


# Maps a schema version to the step that upgrades it by one version
MIGRATIONS: dict[int, Callable[[Any], Any]] = {
    1: _migrate_v1_to_v2,
}


def migrate_record(record: Any, from_version: int) -> Any:
    """
    Upgrade a record to the current schema version.

    Args:
        record: Record as read from an envelope or stored slot.
        from_version: Schema version the record was written with.

    Returns:
        The record in the current schema shape.

    Raises:
        UnsupportedVersionError: If the version is newer than the current
            schema or has no migration path.
    """
    if from_version > dates.SCHEMA_VERSION:
        raise UnsupportedVersionError(
            f"Record schema version {from_version} is newer than supported "
            f"version {dates.SCHEMA_VERSION}",
            version=from_version,
        )

    version = from_version
    while version < dates.SCHEMA_VERSION:
        step = MIGRATIONS.get(version)
        if step is None:
            raise UnsupportedVersionError(
                f"No migration available from schema version {version}",
                version=version,
            )
        logger.info(f"Migrating record from schema {version} to {version + 1}")
        try:
            record = step(record)
        except ValueError as e:
            raise FormatError(f"Record could not be migrated: {e}") from e
        version += 1

    return record


class RestoreLoader:
    """
    Reads backup bytes into schema-current records.

    Usage:
        loader = RestoreLoader(DataCodec())
        record = loader.restore(path.read_bytes(), password)
    """

    def __init__(self, codec: DataCodec) -> None:
        self.codec = codec

    def load_envelope(self, data: bytes | str) -> BackupEnvelope:
        """
        Parse the outer container.

        Args:
            data: Raw file contents.

        Returns:
            The parsed envelope. Nothing is decrypted yet.

        Raises:
            FormatError: If the data is not this application's backup format.
            UnsupportedVersionError: If the format version is not supported.
        """
        if isinstance(data, (bytes, bytearray)):
            try:
                text = bytes(data).decode("utf-8")
            except UnicodeDecodeError as e:
                raise FormatError("Not a backup file: content is not UTF-8 text") from e
        elif isinstance(data, str):
            text = data
        else:
            raise FormatError(f"Cannot read a backup from {type(data).__name__}")

        text = text.lstrip(_BOM).strip()
        if not text:
            raise FormatError("Not a backup file: file is empty")

        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            raise FormatError(f"Not a backup file: invalid JSON ({e.msg})") from e

        return BackupEnvelope.from_dict(parsed)

    def restore_envelope(self, envelope: BackupEnvelope, password: str | None) -> Any:
        """
        Decrypt (if needed), migrate and rehydrate an envelope's record.

        Args:
            envelope: Envelope from load_envelope.
            password: Password for encrypted envelopes; ignored for plain ones.

        Returns:
            Schema-current record with native dates.

        Raises:
            AuthenticationError: Wrong password, missing password or tampering.
            FormatError: Malformed envelope or payload.
            UnsupportedVersionError: Format or schema version not supported.
        """
        if envelope.is_encrypted:
            record = self.codec.decrypt(envelope, password or "")
        else:
            try:
                record = dates.from_wire(envelope.payload)
            except ValueError as e:
                raise FormatError(f"Plain payload holds an invalid date: {e}") from e

        return migrate_record(record, envelope.schema_version)

    def restore(self, data: bytes | str, password: str | None) -> Any:
        """
        Restore a record from raw backup bytes.

        Composes load_envelope, decryption and date rehydration.

        Raises:
            FormatError, UnsupportedVersionError, AuthenticationError
        """
        envelope = self.load_envelope(data)
        return self.restore_envelope(envelope, password)


class RestoreState(str, Enum):
    """States of a single restore attempt."""

    IDLE = "idle"
    FILE_SELECTED = "file_selected"
    PASSWORD_ENTERED = "password_entered"
    DECRYPTING = "decrypting"
    APPLYING = "applying"
    DONE = "done"


TransitionListener = Callable[["RestoreState", "RestoreState", "Exception | None"], None]


class RestoreSession:
    """
    State machine for one user-driven restore.

    The session exposes only state transitions and typed results; a UI or
    CLI adapter subscribes with add_listener() to turn transitions into
    notifications.

    Usage:
        session = RestoreSession(loader)
        session.select_file(path.read_bytes())
        session.enter_password(password)
        record = session.run(apply=store_callback)
    """

    def __init__(
        self,
        loader: RestoreLoader,
        in_flight: threading.Lock | None = None,
    ) -> None:
        """
        Initialize the session.

        Args:
            loader: Loader used for the DECRYPTING stage.
            in_flight: Lock shared by every session that must not run
                concurrently. Defaults to a lock private to this session.
        """
        self.loader = loader
        self.state = RestoreState.IDLE
        self.error: Exception | None = None
        self.envelope: BackupEnvelope | None = None
        self.result: Any = None
        self._data: bytes | None = None
        self._password: str | None = None
        self._in_flight = in_flight or threading.Lock()
        self._listeners: list[TransitionListener] = []

    def add_listener(self, listener: TransitionListener) -> None:
        """Register a callback invoked as listener(old_state, new_state, error)."""
        self._listeners.append(listener)

    def select_file(self, data: bytes | None) -> RestoreState:
        """
        Record the picked file.

        Args:
            data: File contents, or None if the picker was cancelled.

        Returns:
            The new state (IDLE when cancelled).
        """
        self._require(RestoreState.IDLE, RestoreState.FILE_SELECTED, RestoreState.PASSWORD_ENTERED)
        if data is None:
            self.cancel()
            return self.state
        self._data = bytes(data)
        self._password = None
        self.error = None
        self._transition(RestoreState.FILE_SELECTED)
        return self.state

    def enter_password(self, password: str | None) -> RestoreState:
        """Record the password for the selected file."""
        self._require(RestoreState.FILE_SELECTED, RestoreState.PASSWORD_ENTERED)
        self._password = password or ""
        self._transition(RestoreState.PASSWORD_ENTERED)
        return self.state

    def cancel(self) -> None:
        """Abandon the attempt and return to IDLE."""
        if self.state in (RestoreState.DECRYPTING, RestoreState.APPLYING):
            raise RestoreStateError("Cannot cancel while a restore is running")
        self._data = None
        self._password = None
        self.envelope = None
        self.error = None
        self._transition(RestoreState.IDLE)

    def reset(self) -> None:
        """Start a new attempt after DONE."""
        self.cancel()
        self.result = None

    def run(self, apply: Callable[[BackupEnvelope, Any], None] | None = None) -> Any:
        """
        Decrypt the selected file and hand the record to ``apply``.

        Args:
            apply: Optional callback receiving (envelope, record); runs in
                the APPLYING state. Any exception it raises sends the
                session back to FILE_SELECTED.

        Returns:
            The restored record.

        Raises:
            RestoreStateError: If no password has been entered.
            RestoreInProgressError: If another restore sharing the in-flight
                lock is running.
            PlanVaultError: Whatever the failing stage raised.
        """
        self._require(RestoreState.PASSWORD_ENTERED)
        if not self._in_flight.acquire(blocking=False):
            raise RestoreInProgressError("Another restore is already in progress")

        try:
            self._transition(RestoreState.DECRYPTING)
            try:
                envelope = self.loader.load_envelope(self._data or b"")
                record = self.loader.restore_envelope(envelope, self._password)
            except Exception as e:
                self._fail(e)
                raise

            self.envelope = envelope
            self._transition(RestoreState.APPLYING)
            try:
                if apply is not None:
                    apply(envelope, record)
            except Exception as e:
                self._fail(e)
                raise

            self.result = record
            self._transition(RestoreState.DONE)
            return record
        finally:
            self._password = None
            self._in_flight.release()

    def _fail(self, error: Exception) -> None:
        logger.warning(f"Restore failed in state {self.state.value}: {type(error).__name__}")
        self.error = error
        self._transition(RestoreState.FILE_SELECTED, error)

    def _require(self, *allowed: RestoreState) -> None:
        if self.state not in allowed:
            names = ", ".join(state.value for state in allowed)
            raise RestoreStateError(
                f"Invalid restore step from state '{self.state.value}' (expected {names})"
            )

    def _transition(self, new_state: RestoreState, error: Exception | None = None) -> None:
        old_state = self.state
        self.state = new_state
        logger.debug(f"Restore session: {old_state.value} -> {new_state.value}")
        for listener in self._listeners:
            listener(old_state, new_state, error)
