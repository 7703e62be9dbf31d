"""
Password-based authenticated encryption of record graphs.

DataCodec turns any JSON-serializable record (dates allowed) into an
encrypted BackupEnvelope and back.

Security Design:
    - Key derived from the user password with PBKDF2-HMAC-SHA256
      (600,000 iterations by default, never fewer than 100,000)
    - Fresh random 256-bit salt and 96-bit nonce for every encryption
    - AES-256-GCM authenticated encryption; the 128-bit tag is stored
      separately from the ciphertext
    - Every clear envelope header field is bound as associated data
    - Keys are derived per call and never stored on the codec
    - Wrong password and tampering both surface as AuthenticationError;
      decryption never returns partially decrypted data

Threat Model:
    - Protects against: reading or modifying a backup file without the
      password, truncation, bit flips, edited header fields, work factors
      large enough to stall a restore
    - Does NOT protect against: weak but policy-compliant passwords,
      memory inspection, keyloggers, compromise of the running process
"""

from __future__ import annotations

import json
import logging
import secrets
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from planvault.codec import dates
from planvault.codec.envelope import (
    FORMAT_VERSION,
    NONCE_LENGTH,
    TAG_LENGTH,
    BackupEnvelope,
    EnvelopeMode,
    check_format_version,
)
from planvault.errors import AuthenticationError, FormatError, WeakPasswordError

logger = logging.getLogger(__name__)

# Security parameters - do not reduce these values
# OWASP 2023 recommends 600,000 iterations for PBKDF2-SHA256
PBKDF2_ITERATIONS = 600_000
MIN_PBKDF2_ITERATIONS = 100_000
# Upper bound on a work factor read from a file
MAX_PBKDF2_ITERATIONS = 10_000_000
SALT_LENGTH = 32  # 256 bits
KEY_LENGTH = 32  # AES-256
MIN_PASSWORD_LENGTH = 8


class DataCodec:
    """
    Encrypts and decrypts records into backup envelopes.

    Usage:
        codec = DataCodec()
        envelope = codec.encrypt({"name": "Test User"}, "testPassword123")
        record = codec.decrypt(envelope, "testPassword123")

    The codec holds only configuration; it is safe to share between
    threads.
    """

    def __init__(
        self,
        iterations: int = PBKDF2_ITERATIONS,
        min_password_length: int = MIN_PASSWORD_LENGTH,
        app_version: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize the codec.

        Args:
            iterations: PBKDF2 work factor for new envelopes.
            min_password_length: Minimum accepted password length (8 or more).
            app_version: Version stamped into envelopes. Defaults to the
                installed planvault version.
            clock: Source of the current time, for tests.

        Raises:
            ValueError: If iterations fall outside the allowed range or
                min_password_length is below the security floor.
        """
        if not MIN_PBKDF2_ITERATIONS <= iterations <= MAX_PBKDF2_ITERATIONS:
            raise ValueError(
                f"PBKDF2 iterations must be between {MIN_PBKDF2_ITERATIONS:,} "
                f"and {MAX_PBKDF2_ITERATIONS:,}"
            )
        if min_password_length < MIN_PASSWORD_LENGTH:
            raise ValueError(
                f"Minimum password length cannot be lower than {MIN_PASSWORD_LENGTH}"
            )
        self.iterations = iterations
        self.min_password_length = min_password_length
        self.app_version = app_version or _installed_version()
        self._clock = clock or (lambda: datetime.now(UTC))

    def check_password(self, password: str) -> None:
        """
        Apply the password policy.

        Raises:
            WeakPasswordError: If the password is shorter than the minimum.
        """
        if not isinstance(password, str) or len(password) < self.min_password_length:
            raise WeakPasswordError(
                f"Password must be at least {self.min_password_length} characters"
            )

    def encrypt(
        self,
        record: Any,
        password: str,
        slot: str | None = None,
        schema_version: int = dates.SCHEMA_VERSION,
        description: str = "",
        created_at: datetime | None = None,
        app_version: str | None = None,
    ) -> BackupEnvelope:
        """
        Encrypt a record into a new envelope.

        Every clear header field is bound into the authentication tag, so
        the header must be final before this call.

        Args:
            record: JSON-serializable record; date and datetime values are
                allowed anywhere in the graph.
            password: User password (minimum length enforced).
            slot: Optional slot name recorded in the envelope metadata.
            schema_version: Schema version of the record.
            description: Optional user-supplied description.
            created_at: Creation time. Defaults to the codec clock.
            app_version: Writer version. Defaults to the codec's.

        Returns:
            A new BackupEnvelope with a fresh salt and nonce.

        Raises:
            WeakPasswordError: If the password fails the policy.
            FormatError: If the record cannot be serialized.
        """
        self.check_password(password)
        plaintext = serialize_record(record)

        salt = secrets.token_bytes(SALT_LENGTH)
        nonce = secrets.token_bytes(NONCE_LENGTH)

        header = BackupEnvelope(
            format_version=FORMAT_VERSION,
            created_at=created_at or self._clock(),
            app_version=app_version or self.app_version,
            mode=EnvelopeMode.ENCRYPTED,
            description=description or "",
            slot=slot,
            schema_version=schema_version,
            kdf_iterations=self.iterations,
            salt=salt,
            nonce=nonce,
        )

        key = self._derive_key(password, salt, self.iterations)
        sealed = AESGCM(key).encrypt(nonce, plaintext, header.associated_data())
        del key

        logger.debug(
            f"Encrypted {len(plaintext):,} bytes with {self.iterations:,} KDF iterations"
        )

        return replace(
            header,
            ciphertext=sealed[:-TAG_LENGTH],
            auth_tag=sealed[-TAG_LENGTH:],
        )

    def decrypt(self, envelope: BackupEnvelope, password: str) -> Any:
        """
        Decrypt an envelope back into its record.

        The authentication tag is verified before any plaintext is
        returned. Date tags are converted back to native values.

        Args:
            envelope: An encrypted envelope.
            password: The password used at encryption time.

        Returns:
            The original record.

        Raises:
            UnsupportedVersionError: If the envelope format is too new or too old.
            FormatError: If the envelope is structurally invalid.
            AuthenticationError: If the password is wrong or the data
                was modified.
        """
        if not isinstance(envelope, BackupEnvelope):
            raise FormatError("Expected a BackupEnvelope")
        check_format_version(envelope.format_version)
        self._check_structure(envelope)

        if not isinstance(password, str) or not password:
            raise AuthenticationError("A password is required to open this backup")

        key = self._derive_key(password, envelope.salt, envelope.kdf_iterations)
        try:
            plaintext = AESGCM(key).decrypt(
                envelope.nonce,
                envelope.ciphertext + envelope.auth_tag,
                envelope.associated_data(),
            )
        except InvalidTag as e:
            raise AuthenticationError(
                "Wrong password, or the backup file is corrupted or was modified"
            ) from e
        finally:
            del key

        return deserialize_record(plaintext)

    def _check_structure(self, envelope: BackupEnvelope) -> None:
        """Reject envelopes that cannot be decrypted at all."""
        if not envelope.is_encrypted:
            raise FormatError("Envelope is not encrypted")
        for name in ("salt", "nonce", "ciphertext", "auth_tag"):
            if not isinstance(getattr(envelope, name), bytes):
                raise FormatError(f"Envelope field {name} is missing")
        if len(envelope.nonce) != NONCE_LENGTH:
            raise FormatError(f"nonce must be {NONCE_LENGTH} bytes")
        if len(envelope.auth_tag) != TAG_LENGTH:
            raise FormatError(f"authTag must be {TAG_LENGTH} bytes")
        iterations = envelope.kdf_iterations
        if not isinstance(iterations, int) or iterations < MIN_PBKDF2_ITERATIONS:
            raise FormatError(
                f"Envelope KDF work factor {iterations} is below the "
                f"minimum of {MIN_PBKDF2_ITERATIONS:,}"
            )
        if iterations > MAX_PBKDF2_ITERATIONS:
            raise FormatError(
                f"Envelope KDF work factor {iterations:,} is above the "
                f"maximum of {MAX_PBKDF2_ITERATIONS:,}"
            )

    def _derive_key(self, password: str, salt: bytes, iterations: int) -> bytes:
        """
        Derive an AES-256 key from password and salt.

        Args:
            password: User-provided password.
            salt: Random salt bytes.
            iterations: PBKDF2 work factor.

        Returns:
            32 raw key bytes. Callers drop the reference immediately after use.
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=iterations,
        )
        return kdf.derive(password.encode("utf-8"))


def serialize_record(record: Any) -> bytes:
    """
    Serialize a record to compact UTF-8 JSON in its wire form.

    Raises:
        FormatError: If the record holds values JSON cannot represent.
    """
    try:
        return json.dumps(
            dates.to_wire(record), ensure_ascii=False, separators=(",", ":")
        ).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise FormatError(f"Record cannot be serialized: {e}") from e


def deserialize_record(data: bytes) -> Any:
    """
    Parse JSON bytes produced by serialize_record.

    Raises:
        FormatError: If the bytes are not valid JSON or hold malformed date tags.
    """
    try:
        return dates.from_wire(json.loads(data.decode("utf-8")))
    except (UnicodeDecodeError, json.JSONDecodeError, ValueError) as e:
        raise FormatError(f"Decrypted payload is not a valid record: {e}") from e


def _installed_version() -> str:
    """Get the PlanVault version."""
    try:
        from planvault import __version__

        return __version__
    except ImportError:
        return "unknown"
