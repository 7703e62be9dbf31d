"""
Persistence for PlanVault records.

This package keeps the person1, person2, combined and emergency slots in
an injected key-value backend, and exports or imports them as backup
envelopes.

Storage Structure (FileKeyValueStore):
    data/
        slots/
            person1.json
            person2.json
            combined.json
            emergency.json

Usage:
    from planvault.storage import FileKeyValueStore, MultiEntityPersistenceStore

    store = MultiEntityPersistenceStore(FileKeyValueStore(data_dir / "slots"))
    store.save("person1", record)
    slot = store.load("person1")
"""

from planvault.storage.backends import (
    FileKeyValueStore,
    KeyValueStore,
    MemoryKeyValueStore,
)
from planvault.storage.store import (
    KNOWN_SLOTS,
    PLAIN_EXPORT_SLOTS,
    MultiEntityPersistenceStore,
    PersistenceSlot,
    SlotName,
    StoreSummary,
    check_slot_name,
)

__all__ = [
    # Main store class
    "MultiEntityPersistenceStore",
    # Data models
    "PersistenceSlot",
    "SlotName",
    "StoreSummary",
    "KNOWN_SLOTS",
    "PLAIN_EXPORT_SLOTS",
    "check_slot_name",
    # Backends
    "KeyValueStore",
    "MemoryKeyValueStore",
    "FileKeyValueStore",
]
