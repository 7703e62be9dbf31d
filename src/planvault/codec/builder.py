"""Assembly of backup envelopes around codec output."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from planvault.codec import dates
from planvault.codec.crypto import DataCodec, serialize_record
from planvault.codec.envelope import FORMAT_VERSION, BackupEnvelope, EnvelopeMode

logger = logging.getLogger(__name__)


class BackupEnvelopeBuilder:
    """
    Builds envelopes with their metadata stamped before sealing.

    Usage:
        builder = BackupEnvelopeBuilder(DataCodec())
        envelope = builder.build_envelope(record, password, "Before moving")
        path.write_bytes(envelope.to_bytes())
    """

    def __init__(
        self,
        codec: DataCodec,
        app_version: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.codec = codec
        self.app_version = app_version or codec.app_version
        self._clock = clock or (lambda: datetime.now(UTC))

    def build_envelope(
        self,
        record: Any,
        password: str,
        description: str = "",
        slot: str | None = None,
        schema_version: int = dates.SCHEMA_VERSION,
    ) -> BackupEnvelope:
        """
        Stamp envelope metadata and encrypt a record under it.

        Args:
            record: Record to protect.
            password: User password.
            description: Optional user-supplied description.
            slot: Slot name the record belongs to.
            schema_version: Schema version of the record.

        Returns:
            An encrypted envelope ready for to_bytes().

        Raises:
            WeakPasswordError: If the password fails the policy.
            FormatError: If the record cannot be serialized.
        """
        envelope = self.codec.encrypt(
            record,
            password,
            slot=slot,
            schema_version=schema_version,
            description=description,
            created_at=self._clock(),
            app_version=self.app_version,
        )
        logger.info(f"Built encrypted envelope for slot {slot or '-'}")
        return envelope

    def build_plain_envelope(
        self,
        record: Any,
        description: str = "",
        slot: str | None = None,
        schema_version: int = dates.SCHEMA_VERSION,
    ) -> BackupEnvelope:
        """
        Wrap a record in an unencrypted envelope marked ``mode: "plain"``.

        Raises:
            FormatError: If the record cannot be serialized.
        """
        # Serializing up front surfaces unsupported values as FormatError
        serialize_record(record)
        envelope = BackupEnvelope(
            format_version=FORMAT_VERSION,
            created_at=self._clock(),
            app_version=self.app_version,
            mode=EnvelopeMode.PLAIN,
            description=description or "",
            slot=slot,
            schema_version=schema_version,
            payload=dates.to_wire(record),
        )
        logger.info(f"Built plain envelope for slot {slot or '-'}")
        return envelope
