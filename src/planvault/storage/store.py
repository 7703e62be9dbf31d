"""
Multi-entity persistence store.

This module provides the MultiEntityPersistenceStore, which keeps four
independent persistence slots:

    person1    individual record for the first person
    person2    individual record for the second person
    combined   household record; embeds copies of both person records
    emergency  emergency plan, kept apart so it can be shared or withheld

Slots never write to each other. ``combined`` is refreshed from the two
person slots only when the caller asks for it with rebuild_combined().

Slot Storage Format (one key per slot in the backing KeyValueStore):
    {
      "slotName": "person1",
      "schemaVersion": 2,
      "lastSavedAt": {"$datetime": "2024-01-15T10:30:00+00:00"},
      "record": { ... date-tagged record ... }
    }
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from planvault.codec import dates
from planvault.codec.builder import BackupEnvelopeBuilder
from planvault.codec.crypto import DataCodec, serialize_record
from planvault.codec.restore import RestoreLoader, migrate_record
from planvault.errors import (
    FormatError,
    PlanVaultError,
    SlotBusyError,
    SlotNotFoundError,
    UnknownSlotError,
)
from planvault.storage.backends import KeyValueStore, MemoryKeyValueStore
from planvault.validation.validator import PlanValidator

logger = logging.getLogger(__name__)


class SlotName(str, Enum):
    """The known persistence slots."""

    PERSON1 = "person1"
    PERSON2 = "person2"
    COMBINED = "combined"
    EMERGENCY = "emergency"


KNOWN_SLOTS: tuple[str, ...] = tuple(slot.value for slot in SlotName)

# Slots whose export may be written without encryption
PLAIN_EXPORT_SLOTS = frozenset(
    {SlotName.PERSON1.value, SlotName.PERSON2.value, SlotName.EMERGENCY.value}
)


@dataclass(frozen=True)
class PersistenceSlot:
    """
    A saved record and its metadata.

    Slots are replaced, never mutated: every save produces a new instance.

    Attributes:
        slot_name: One of KNOWN_SLOTS.
        record: The saved record (native dates).
        last_saved_at: When the slot was written (UTC).
        schema_version: Schema version of the record.
    """

    slot_name: str
    record: Any
    last_saved_at: datetime
    schema_version: int = dates.SCHEMA_VERSION

    def to_bytes(self) -> bytes:
        """Serialize for the backing store."""
        return serialize_record(
            {
                "slotName": self.slot_name,
                "schemaVersion": self.schema_version,
                "lastSavedAt": self.last_saved_at,
                "record": self.record,
            }
        )

    @classmethod
    def from_bytes(cls, data: bytes, expected_slot: str) -> PersistenceSlot:
        """
        Deserialize a stored slot, migrating its record to the current schema.

        Raises:
            FormatError: If the stored bytes are corrupted.
            UnsupportedVersionError: If the record schema is too new.
        """
        try:
            raw = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise FormatError(f"Stored slot '{expected_slot}' is corrupted") from e

        if not isinstance(raw, dict) or not {"slotName", "lastSavedAt", "record"} <= raw.keys():
            raise FormatError(f"Stored slot '{expected_slot}' has an invalid layout")
        if raw["slotName"] != expected_slot:
            raise FormatError(
                f"Stored slot '{expected_slot}' contains data for '{raw['slotName']}'"
            )

        schema_version = raw.get("schemaVersion", 1)
        if not isinstance(schema_version, int):
            raise FormatError(f"Stored slot '{expected_slot}' has an invalid schema version")

        try:
            last_saved_at = dates.rehydrate(raw["lastSavedAt"])
            if isinstance(last_saved_at, str):
                last_saved_at = dates.parse_iso(last_saved_at)
            record = dates.from_wire(raw["record"])
        except ValueError as e:
            raise FormatError(f"Stored slot '{expected_slot}' holds an invalid date") from e
        if not isinstance(last_saved_at, datetime):
            raise FormatError(f"Stored slot '{expected_slot}' has no save timestamp")

        record = migrate_record(record, schema_version)
        return cls(
            slot_name=expected_slot,
            record=record,
            last_saved_at=last_saved_at,
            schema_version=dates.SCHEMA_VERSION,
        )


@dataclass
class StoreSummary:
    """Presence and recency of every slot."""

    slot_presence: dict[str, bool] = field(default_factory=dict)
    last_saved: dict[str, datetime | None] = field(default_factory=dict)
    most_recent_save: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "slot_presence": dict(self.slot_presence),
            "last_saved": {
                name: value.isoformat() if value else None
                for name, value in self.last_saved.items()
            },
            "most_recent_save": (
                self.most_recent_save.isoformat() if self.most_recent_save else None
            ),
        }


class MultiEntityPersistenceStore:
    """
    Persists the person1, person2, combined and emergency slots.

    Usage:
        store = MultiEntityPersistenceStore(FileKeyValueStore(data_dir / "slots"))

        store.save("person1", record)
        slot = store.load("person1")

        exported = store.export_to_file("emergency")            # plain
        exported = store.export_to_file("combined", password)   # encrypted
        slot_name, record = store.import_from_file(exported, password)

    Only one write (save, clear or import) may be in flight per slot;
    a concurrent write to the same slot raises SlotBusyError.

    Attributes:
        backend: Backing key-value store.
        codec: DataCodec used for encrypted exports.
        validator: PlanValidator used when exports require a valid record.
    """

    def __init__(
        self,
        backend: KeyValueStore | None = None,
        codec: DataCodec | None = None,
        validator: PlanValidator | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize the store.

        Args:
            backend: Key-value adapter. Defaults to an in-memory store.
            codec: Codec for encrypted exports. Defaults to DataCodec().
            validator: Validator for export gating. Defaults to PlanValidator().
            clock: Source of save timestamps, for tests.
        """
        self.backend = backend if backend is not None else MemoryKeyValueStore()
        self.codec = codec or DataCodec()
        self.validator = validator or PlanValidator()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._builder = BackupEnvelopeBuilder(self.codec, clock=self._clock)
        self._loader = RestoreLoader(self.codec)
        self._slot_locks = {name: threading.Lock() for name in KNOWN_SLOTS}

    def save(self, slot_name: str, record: Any) -> PersistenceSlot:
        """
        Save a record into a slot.

        The record is copied; later changes to the caller's object do not
        reach the store. Other slots are never touched.

        Args:
            slot_name: One of KNOWN_SLOTS.
            record: Record to persist.

        Returns:
            The new PersistenceSlot.

        Raises:
            UnknownSlotError: If the slot name is not known.
            SlotBusyError: If another write to this slot is in flight.
            FormatError: If the record cannot be serialized.
            StorageIOError: If the backend write fails.
        """
        name = check_slot_name(slot_name)
        with self._writing(name):
            slot = PersistenceSlot(
                slot_name=name,
                record=copy.deepcopy(record),
                last_saved_at=self._clock(),
            )
            self.backend.set(name, slot.to_bytes())

        logger.info(f"Saved slot {name}")
        return slot

    def load(self, slot_name: str) -> PersistenceSlot:
        """
        Load a slot.

        Raises:
            UnknownSlotError: If the slot name is not known.
            SlotNotFoundError: If the slot has never been saved or was cleared.
            FormatError: If the stored data is corrupted.
        """
        name = check_slot_name(slot_name)
        data = self.backend.get(name)
        if data is None:
            raise SlotNotFoundError(f"No data saved for slot: {name}")
        return PersistenceSlot.from_bytes(data, name)

    def has(self, slot_name: str) -> bool:
        """Check whether a slot currently holds data."""
        return self.backend.get(check_slot_name(slot_name)) is not None

    def clear(self, slot_name: str) -> None:
        """
        Delete a slot. Clearing an empty slot is a no-op.

        Raises:
            UnknownSlotError: If the slot name is not known.
            SlotBusyError: If another write to this slot is in flight.
        """
        name = check_slot_name(slot_name)
        with self._writing(name):
            self.backend.delete(name)
        logger.info(f"Cleared slot {name}")

    def clear_all(self) -> None:
        """Delete every slot."""
        for name in KNOWN_SLOTS:
            self.clear(name)

    def save_all_defaults(
        self,
        combined_record: Any,
        emergency_record: Any | None = None,
    ) -> list[PersistenceSlot]:
        """
        Save the default targets.

        The combined slot is always refreshed. The emergency slot is only
        written when an emergency record is supplied.

        Returns:
            The slots written, combined first.
        """
        written = [self.save(SlotName.COMBINED.value, combined_record)]
        if emergency_record is not None:
            written.append(self.save(SlotName.EMERGENCY.value, emergency_record))
        return written

    def rebuild_combined(self) -> PersistenceSlot:
        """
        Refresh the combined slot from the two person slots.

        The current person1/person2 records are embedded under the
        ``person1``/``person2`` keys. Other keys of an existing combined
        record are preserved. A missing person slot leaves the existing
        embedded copy unchanged.

        Raises:
            SlotNotFoundError: If neither person slot holds data.
        """
        persons = {
            name: self._record_or_none(name)
            for name in (SlotName.PERSON1.value, SlotName.PERSON2.value)
        }
        if all(record is None for record in persons.values()):
            raise SlotNotFoundError("Neither person1 nor person2 has been saved")

        existing = self._record_or_none(SlotName.COMBINED.value)
        combined = dict(existing) if isinstance(existing, dict) else {}
        for name, record in persons.items():
            if record is not None:
                combined[name] = record

        return self.save(SlotName.COMBINED.value, combined)

    def export_to_file(
        self,
        slot_name: str,
        password: str | None = None,
        description: str = "",
        require_valid: bool = False,
    ) -> bytes:
        """
        Export a slot as envelope bytes.

        Args:
            slot_name: Slot to export.
            password: Encrypts the export when given. Without it a plain
                envelope is written; only person and emergency slots allow that.
            description: Description stored in the envelope.
            require_valid: Refuse to export a record that fails validation.

        Returns:
            UTF-8 JSON envelope bytes.

        Raises:
            SlotNotFoundError: If the slot is empty.
            ValidationError: If require_valid is set and the record is invalid.
            WeakPasswordError: If the password fails the policy.
            ValueError: If a plain export is requested for the combined slot.
        """
        slot = self.load(slot_name)
        if require_valid:
            self.validator.require_valid(slot.record)

        if password is None:
            if slot.slot_name not in PLAIN_EXPORT_SLOTS:
                raise ValueError(
                    f"Slot '{slot.slot_name}' can only be exported encrypted"
                )
            envelope = self._builder.build_plain_envelope(
                slot.record,
                description=description,
                slot=slot.slot_name,
                schema_version=slot.schema_version,
            )
        else:
            envelope = self._builder.build_envelope(
                slot.record,
                password,
                description=description,
                slot=slot.slot_name,
                schema_version=slot.schema_version,
            )

        logger.info(f"Exported slot {slot.slot_name} ({envelope.mode.value})")
        return envelope.to_bytes()

    def import_from_file(
        self,
        data: bytes,
        password: str | None = None,
        apply: bool = True,
        slot_name: str | None = None,
    ) -> tuple[str, Any]:
        """
        Import envelope bytes produced by export_to_file.

        Args:
            data: Envelope bytes.
            password: Password for encrypted envelopes.
            apply: Save the record into its slot.
            slot_name: Target slot, overriding the slot named in the envelope.

        Returns:
            Tuple of (slot_name, record).

        Raises:
            FormatError: If the data is not an envelope or names no slot.
            AuthenticationError: Wrong or missing password, or tampering.
            UnsupportedVersionError: If the envelope or schema is too new.
            UnknownSlotError: If the target slot is not known.
        """
        envelope = self._loader.load_envelope(data)
        target = slot_name or envelope.slot
        if target is None:
            raise FormatError("Backup does not say which slot it belongs to")
        target = check_slot_name(target)

        record = self._loader.restore_envelope(envelope, password)
        if apply:
            self.save(target, record)
        return target, record

    def summary(self) -> StoreSummary:
        """Report which slots hold data and when each was last saved."""
        summary = StoreSummary()
        for name in KNOWN_SLOTS:
            data = self.backend.get(name)
            summary.slot_presence[name] = data is not None
            summary.last_saved[name] = None
            if data is None:
                continue
            try:
                saved_at = PersistenceSlot.from_bytes(data, name).last_saved_at
            except PlanVaultError as e:
                logger.warning(f"Could not read slot {name}: {e}")
                continue
            summary.last_saved[name] = saved_at
            if summary.most_recent_save is None or saved_at > summary.most_recent_save:
                summary.most_recent_save = saved_at
        return summary

    def _record_or_none(self, slot_name: str) -> Any:
        try:
            return self.load(slot_name).record
        except SlotNotFoundError:
            return None

    @contextmanager
    def _writing(self, slot_name: str) -> Generator[None, None, None]:
        """Hold the single-writer lock for a slot."""
        lock = self._slot_locks[slot_name]
        if not lock.acquire(blocking=False):
            raise SlotBusyError(f"A write to slot '{slot_name}' is already in progress")
        try:
            yield
        finally:
            lock.release()


def check_slot_name(slot_name: str | SlotName) -> str:
    """
    Normalize and validate a slot name.

    Raises:
        UnknownSlotError: If the name is not one of KNOWN_SLOTS.
    """
    name = slot_name.value if isinstance(slot_name, SlotName) else slot_name
    if name not in KNOWN_SLOTS:
        raise UnknownSlotError(
            f"Unknown slot: {slot_name!r}. Must be one of: {', '.join(KNOWN_SLOTS)}"
        )
    return name
