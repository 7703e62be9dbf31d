"""
Backup envelope model and its textual wire format.

An envelope is the self-describing JSON container written to disk or
offered as a download. It carries metadata in the clear and the record
either encrypted (``mode: "encrypted"``) or as tagged plaintext
(``mode: "plain"``). Readers must branch on ``mode``; they never guess
from the presence of other keys.

Wire Format (encrypted):
    {
      "formatVersion": 1,
      "mode": "encrypted",
      "createdAt": "2024-01-15T10:30:00+00:00",
      "appVersion": "0.1.0",
      "description": "...",
      "slot": "combined",
      "schemaVersion": 2,
      "kdf": {"name": "pbkdf2-sha256", "iterations": 600000},
      "cipher": "aes-256-gcm",
      "salt": "<base64>",
      "nonce": "<base64>",
      "ciphertext": "<base64>",
      "authTag": "<base64>"
    }

Plain mode replaces the last six keys with a single ``payload`` key.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from planvault.codec.dates import SCHEMA_VERSION
from planvault.errors import FormatError, UnsupportedVersionError

FORMAT_VERSION = 1
MIN_FORMAT_VERSION = 1

KDF_NAME = "pbkdf2-sha256"
CIPHER_NAME = "aes-256-gcm"
NONCE_LENGTH = 12  # 96 bits, the GCM standard
TAG_LENGTH = 16  # 128 bits

MEDIA_TYPE = "application/json"
FILE_EXTENSION = ".json"

_COMMON_KEYS = ("formatVersion", "mode", "createdAt", "appVersion")
_ENCRYPTED_KEYS = ("kdf", "salt", "nonce", "ciphertext", "authTag")
# Keys left out of the associated data
_SEALED_KEYS = frozenset({"salt", "nonce", "ciphertext", "authTag", "payload"})


class EnvelopeMode(str, Enum):
    """How the record is carried inside an envelope."""

    ENCRYPTED = "encrypted"
    PLAIN = "plain"


@dataclass(frozen=True)
class BackupEnvelope:
    """
    Immutable backup envelope.

    Attributes:
        format_version: Envelope format version.
        created_at: When the envelope was created (UTC).
        app_version: Version of the application that wrote it.
        mode: Encrypted or plain.
        description: Free-text description supplied by the user.
        slot: Persistence slot the record came from, if any.
        schema_version: Schema version of the carried record.
        kdf_iterations: PBKDF2 work factor (encrypted mode only).
        salt: KDF salt (encrypted mode only).
        nonce: AES-GCM nonce (encrypted mode only).
        ciphertext: Encrypted record without the tag (encrypted mode only).
        auth_tag: AES-GCM authentication tag (encrypted mode only).
        payload: Date-tagged record (plain mode only).
    """

    format_version: int
    created_at: datetime
    app_version: str
    mode: EnvelopeMode = EnvelopeMode.ENCRYPTED
    description: str = ""
    slot: str | None = None
    schema_version: int = SCHEMA_VERSION
    kdf_iterations: int | None = None
    salt: bytes | None = None
    nonce: bytes | None = None
    ciphertext: bytes | None = None
    auth_tag: bytes | None = None
    payload: Any = None

    @property
    def is_encrypted(self) -> bool:
        """True if the record is carried encrypted."""
        return self.mode == EnvelopeMode.ENCRYPTED

    def associated_data(self) -> bytes:
        """
        Header bytes bound into the AEAD tag.

        Canonical JSON of every clear header field, so editing the slot,
        schema version, work factor or any other metadata breaks the tag.
        """
        header = {
            key: value
            for key, value in self.to_dict().items()
            if key not in _SEALED_KEYS
        }
        return b"planvault:" + json.dumps(
            header, sort_keys=True, separators=(",", ":"), ensure_ascii=False
        ).encode("utf-8")

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON-ready wire dictionary."""
        data: dict[str, Any] = {
            "formatVersion": self.format_version,
            "mode": self.mode.value,
            "createdAt": self.created_at.isoformat(),
            "appVersion": self.app_version,
            "description": self.description,
            "slot": self.slot,
            "schemaVersion": self.schema_version,
        }
        if self.is_encrypted:
            data["kdf"] = {"name": KDF_NAME, "iterations": self.kdf_iterations}
            data["cipher"] = CIPHER_NAME
            data["salt"] = _b64encode(self.salt)
            data["nonce"] = _b64encode(self.nonce)
            data["ciphertext"] = _b64encode(self.ciphertext)
            data["authTag"] = _b64encode(self.auth_tag)
        else:
            data["payload"] = self.payload
        return data

    def to_bytes(self) -> bytes:
        """Serialize to UTF-8 JSON text."""
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_dict(cls, data: Any) -> BackupEnvelope:
        """
        Create an envelope from its wire dictionary.

        Raises:
            FormatError: If required keys are missing or have wrong types.
            UnsupportedVersionError: If formatVersion is outside the
                supported range.
        """
        if not isinstance(data, dict):
            raise FormatError("Not a backup file: top level is not an object")

        missing = [key for key in _COMMON_KEYS if key not in data]
        if missing:
            raise FormatError(f"Not a backup file: missing {', '.join(missing)}")

        format_version = data["formatVersion"]
        if not _is_int(format_version):
            raise FormatError("formatVersion must be an integer")
        check_format_version(format_version)

        try:
            mode = EnvelopeMode(data["mode"])
        except ValueError as e:
            raise FormatError(f"Unknown envelope mode: {data['mode']!r}") from e

        created_at = _parse_timestamp(data["createdAt"])
        app_version = _require_str(data, "appVersion")
        description = data.get("description") or ""
        if not isinstance(description, str):
            raise FormatError("description must be a string")
        slot = data.get("slot")
        if slot is not None and not isinstance(slot, str):
            raise FormatError("slot must be a string or null")
        schema_version = data.get("schemaVersion", SCHEMA_VERSION)
        if not _is_int(schema_version):
            raise FormatError("schemaVersion must be an integer")

        if mode == EnvelopeMode.PLAIN:
            if "payload" not in data:
                raise FormatError("Plain envelope is missing payload")
            return cls(
                format_version=format_version,
                created_at=created_at,
                app_version=app_version,
                mode=mode,
                description=description,
                slot=slot,
                schema_version=schema_version,
                payload=data["payload"],
            )

        missing = [key for key in _ENCRYPTED_KEYS if key not in data]
        if missing:
            raise FormatError(f"Encrypted envelope is missing {', '.join(missing)}")

        kdf = data["kdf"]
        if not isinstance(kdf, dict) or kdf.get("name") != KDF_NAME:
            raise FormatError(f"Unsupported key derivation: {kdf!r}")
        iterations = kdf.get("iterations")
        if not _is_int(iterations) or iterations <= 0:
            raise FormatError("kdf.iterations must be a positive integer")
        cipher = data.get("cipher", CIPHER_NAME)
        if cipher != CIPHER_NAME:
            raise FormatError(f"Unsupported cipher: {cipher!r}")

        salt = _b64decode(data, "salt")
        nonce = _b64decode(data, "nonce")
        ciphertext = _b64decode(data, "ciphertext")
        auth_tag = _b64decode(data, "authTag")

        if not salt:
            raise FormatError("salt must not be empty")
        if len(nonce) != NONCE_LENGTH:
            raise FormatError(f"nonce must be {NONCE_LENGTH} bytes, got {len(nonce)}")
        if len(auth_tag) != TAG_LENGTH:
            raise FormatError(f"authTag must be {TAG_LENGTH} bytes, got {len(auth_tag)}")

        return cls(
            format_version=format_version,
            created_at=created_at,
            app_version=app_version,
            mode=mode,
            description=description,
            slot=slot,
            schema_version=schema_version,
            kdf_iterations=iterations,
            salt=salt,
            nonce=nonce,
            ciphertext=ciphertext,
            auth_tag=auth_tag,
        )


def check_format_version(version: int) -> None:
    """
    Ensure an envelope format version can be read by this codec.

    Raises:
        UnsupportedVersionError: If the version is newer than FORMAT_VERSION
            or older than MIN_FORMAT_VERSION.
    """
    if version > FORMAT_VERSION:
        raise UnsupportedVersionError(
            f"Backup format version {version} is newer than supported "
            f"version {FORMAT_VERSION}. Update the application to open it.",
            version=version,
        )
    if version < MIN_FORMAT_VERSION:
        raise UnsupportedVersionError(
            f"Backup format version {version} is no longer supported "
            f"(minimum {MIN_FORMAT_VERSION}).",
            version=version,
        )


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _require_str(data: dict[str, Any], key: str) -> str:
    value = data[key]
    if not isinstance(value, str):
        raise FormatError(f"{key} must be a string")
    return value


def _parse_timestamp(value: Any) -> datetime:
    if not isinstance(value, str):
        raise FormatError("createdAt must be an ISO-8601 string")
    try:
        return datetime.fromisoformat(value)
    except ValueError as e:
        raise FormatError(f"createdAt is not an ISO-8601 timestamp: {value!r}") from e


def _b64encode(value: bytes | None) -> str:
    return base64.b64encode(value or b"").decode("ascii")


def _b64decode(data: dict[str, Any], key: str) -> bytes:
    value = data[key]
    if not isinstance(value, str):
        raise FormatError(f"{key} must be a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise FormatError(f"{key} is not valid base64") from e
