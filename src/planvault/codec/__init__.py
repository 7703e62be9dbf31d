"""
Backup codec for PlanVault.

This package turns in-memory records into password-protected, versioned
backup envelopes and back again.

Usage:
    from planvault.codec import BackupEnvelopeBuilder, DataCodec, RestoreLoader

    codec = DataCodec()
    envelope = BackupEnvelopeBuilder(codec).build_envelope(record, password)
    data = envelope.to_bytes()

    record = RestoreLoader(codec).restore(data, password)
"""

from planvault.codec.builder import BackupEnvelopeBuilder
from planvault.codec.crypto import (
    MAX_PBKDF2_ITERATIONS,
    MIN_PASSWORD_LENGTH,
    MIN_PBKDF2_ITERATIONS,
    PBKDF2_ITERATIONS,
    DataCodec,
)
from planvault.codec.dates import (
    SCHEMA_VERSION,
    dehydrate,
    from_wire,
    rehydrate,
    to_wire,
)
from planvault.codec.envelope import (
    FORMAT_VERSION,
    BackupEnvelope,
    EnvelopeMode,
)
from planvault.codec.restore import (
    RestoreLoader,
    RestoreSession,
    RestoreState,
    migrate_record,
)

__all__ = [
    # Codec
    "DataCodec",
    "PBKDF2_ITERATIONS",
    "MAX_PBKDF2_ITERATIONS",
    "MIN_PBKDF2_ITERATIONS",
    "MIN_PASSWORD_LENGTH",
    # Envelope
    "BackupEnvelope",
    "BackupEnvelopeBuilder",
    "EnvelopeMode",
    "FORMAT_VERSION",
    # Dates
    "SCHEMA_VERSION",
    "dehydrate",
    "rehydrate",
    "to_wire",
    "from_wire",
    # Restore
    "RestoreLoader",
    "RestoreSession",
    "RestoreState",
    "migrate_record",
]
