"""
Tests for the encryption codec and the backup envelope.

Tests cover:
- DataCodec round trips, wrong passwords and tampering
- Password policy and KDF work factor limits
- BackupEnvelope wire format parsing and rejection
- BackupEnvelopeBuilder metadata stamping
"""

import base64
import json
import unittest
from dataclasses import replace
from datetime import UTC, date, datetime
from unittest.mock import patch

from planvault.codec.builder import BackupEnvelopeBuilder
from planvault.codec.crypto import (
    MAX_PBKDF2_ITERATIONS,
    MIN_PBKDF2_ITERATIONS,
    SALT_LENGTH,
    DataCodec,
    deserialize_record,
    serialize_record,
)
from planvault.codec.envelope import (
    FORMAT_VERSION,
    NONCE_LENGTH,
    TAG_LENGTH,
    BackupEnvelope,
    EnvelopeMode,
)
from planvault.errors import (
    AuthenticationError,
    FormatError,
    UnsupportedVersionError,
    WeakPasswordError,
)

PASSWORD = "testPassword123"
FIXED_NOW = datetime(2024, 1, 15, 10, 30, tzinfo=UTC)


def make_codec() -> DataCodec:
    """Codec with the lowest allowed work factor to keep tests fast."""
    return DataCodec(
        iterations=MIN_PBKDF2_ITERATIONS,
        app_version="9.9.9",
        clock=lambda: FIXED_NOW,
    )


def flip_bit(data: bytes, index: int, bit: int = 0) -> bytes:
    """Return a copy of data with one bit inverted."""
    mutable = bytearray(data)
    mutable[index] ^= 1 << bit
    return bytes(mutable)


class TestDataCodec(unittest.TestCase):
    """Tests for DataCodec encrypt/decrypt."""

    @classmethod
    def setUpClass(cls) -> None:
        """Encrypt one record shared by the read-only tests."""
        cls.codec = make_codec()
        cls.record = {"name": "Test User", "savings": 150000}
        cls.envelope = cls.codec.encrypt(cls.record, PASSWORD)

    def test_round_trip(self) -> None:
        """Test that decrypt(encrypt(r, p), p) == r."""
        self.assertEqual(self.codec.decrypt(self.envelope, PASSWORD), self.record)

    def test_format_version(self) -> None:
        """Test that new envelopes carry format version 1."""
        self.assertEqual(self.envelope.format_version, 1)
        self.assertEqual(FORMAT_VERSION, 1)

    def test_round_trip_preserves_dates(self) -> None:
        """Test that date and datetime values come back exactly."""
        record = {
            "first_name": "Anne",
            "date_of_birth": date(1958, 3, 14),
            "updated_at": datetime(2024, 1, 15, 10, 30, 0, 999, tzinfo=UTC),
            "bank_accounts": [{"bank": "Caisse", "opened": date(1990, 1, 2)}],
        }

        envelope = self.codec.encrypt(record, PASSWORD)

        self.assertEqual(self.codec.decrypt(envelope, PASSWORD), record)

    def test_round_trip_unicode(self) -> None:
        """Test that non-ASCII text survives."""
        record = {"last_name": "Bérubé", "notes": "Évêque 東京"}
        envelope = self.codec.encrypt(record, "mötdepässe")
        self.assertEqual(self.codec.decrypt(envelope, "mötdepässe"), record)

    def test_wrong_password(self) -> None:
        """Test that a wrong password raises AuthenticationError."""
        with self.assertRaises(AuthenticationError):
            self.codec.decrypt(self.envelope, "wrongPassword")

    def test_empty_password_on_decrypt(self) -> None:
        """Test that a missing password fails closed."""
        with self.assertRaises(AuthenticationError):
            self.codec.decrypt(self.envelope, "")

    def test_ciphertext_bit_flips(self) -> None:
        """Test that flipping bits anywhere in the ciphertext is detected."""
        ciphertext = self.envelope.ciphertext
        for index in (0, len(ciphertext) // 2, len(ciphertext) - 1):
            with self.subTest(index=index):
                tampered = replace(self.envelope, ciphertext=flip_bit(ciphertext, index, 3))
                with self.assertRaises(AuthenticationError):
                    self.codec.decrypt(tampered, PASSWORD)

    def test_auth_tag_bit_flips(self) -> None:
        """Test that flipping bits in the tag is detected."""
        for index in (0, TAG_LENGTH - 1):
            with self.subTest(index=index):
                tampered = replace(
                    self.envelope, auth_tag=flip_bit(self.envelope.auth_tag, index, 7)
                )
                with self.assertRaises(AuthenticationError):
                    self.codec.decrypt(tampered, PASSWORD)

    def test_nonce_and_salt_tampering(self) -> None:
        """Test that changing the nonce or salt is detected."""
        tampered_nonce = replace(self.envelope, nonce=flip_bit(self.envelope.nonce, 0))
        tampered_salt = replace(self.envelope, salt=flip_bit(self.envelope.salt, 5))

        with self.assertRaises(AuthenticationError):
            self.codec.decrypt(tampered_nonce, PASSWORD)
        with self.assertRaises(AuthenticationError):
            self.codec.decrypt(tampered_salt, PASSWORD)

    def test_fresh_salt_and_nonce(self) -> None:
        """Test that two encryptions of the same record differ."""
        other = self.codec.encrypt(self.record, PASSWORD)

        self.assertEqual(len(other.salt), SALT_LENGTH)
        self.assertEqual(len(other.nonce), NONCE_LENGTH)
        self.assertNotEqual(other.salt, self.envelope.salt)
        self.assertNotEqual(other.nonce, self.envelope.nonce)
        self.assertNotEqual(other.ciphertext, self.envelope.ciphertext)

    def test_newer_format_version_rejected(self) -> None:
        """Test that formatVersion = current + 1 raises UnsupportedVersionError."""
        future = replace(self.envelope, format_version=FORMAT_VERSION + 1)
        with self.assertRaises(UnsupportedVersionError) as cm:
            self.codec.decrypt(future, PASSWORD)
        self.assertEqual(cm.exception.version, FORMAT_VERSION + 1)

    def test_plain_envelope_rejected(self) -> None:
        """Test that decrypt refuses a plain envelope."""
        plain = BackupEnvelope(
            format_version=FORMAT_VERSION,
            created_at=FIXED_NOW,
            app_version="1",
            mode=EnvelopeMode.PLAIN,
            payload={},
        )
        with self.assertRaises(FormatError):
            self.codec.decrypt(plain, PASSWORD)

    def test_low_work_factor_rejected(self) -> None:
        """Test that an envelope below the KDF floor is refused."""
        weak = replace(self.envelope, kdf_iterations=1000)
        with self.assertRaises(FormatError):
            self.codec.decrypt(weak, PASSWORD)

    def test_excessive_work_factor_rejected(self) -> None:
        """Test that a huge declared work factor is refused before derivation."""
        heavy = replace(self.envelope, kdf_iterations=2**40)
        with patch.object(DataCodec, "_derive_key") as derive:
            with self.assertRaises(FormatError):
                self.codec.decrypt(heavy, PASSWORD)
        derive.assert_not_called()

    def test_tag_like_record_round_trips(self) -> None:
        """Test that record data shaped like a date tag comes back unchanged."""
        records = [
            {"note": {"$date": "2024-01-01"}},
            {"note": {"$date": "hello"}},
            {"note": {"$datetime": "2024-01-01T00:00:00", "$other": [date(2024, 1, 1)]}},
            {"$escape": {"$date": "2024-01-01"}},
        ]
        for record in records:
            with self.subTest(record=record):
                envelope = self.codec.encrypt(record, PASSWORD)
                self.assertEqual(self.codec.decrypt(envelope, PASSWORD), record)

    def test_not_an_envelope(self) -> None:
        """Test that decrypt refuses other objects."""
        with self.assertRaises(FormatError):
            self.codec.decrypt({"ciphertext": "x"}, PASSWORD)  # type: ignore[arg-type]


class TestPasswordPolicy(unittest.TestCase):
    """Tests for password and work factor limits."""

    def test_short_password_rejected(self) -> None:
        """Test that passwords under 8 characters raise WeakPasswordError."""
        codec = make_codec()
        with self.assertRaises(WeakPasswordError):
            codec.encrypt({"a": 1}, "short")

    def test_eight_characters_accepted(self) -> None:
        """Test the boundary length."""
        codec = make_codec()
        codec.check_password("12345678")

    def test_custom_minimum_length(self) -> None:
        """Test a stricter configured minimum."""
        codec = DataCodec(iterations=MIN_PBKDF2_ITERATIONS, min_password_length=12)
        with self.assertRaises(WeakPasswordError):
            codec.check_password("elevenchars")

    def test_minimum_length_floor(self) -> None:
        """Test that the minimum cannot be configured below 8."""
        with self.assertRaises(ValueError):
            DataCodec(min_password_length=4)

    def test_iterations_floor(self) -> None:
        """Test that the KDF work factor cannot be configured too low."""
        with self.assertRaises(ValueError):
            DataCodec(iterations=MIN_PBKDF2_ITERATIONS - 1)

    def test_iterations_ceiling(self) -> None:
        """Test that the KDF work factor cannot be configured too high."""
        with self.assertRaises(ValueError):
            DataCodec(iterations=MAX_PBKDF2_ITERATIONS + 1)


class TestSerialization(unittest.TestCase):
    """Tests for serialize_record() and deserialize_record()."""

    def test_unserializable_record(self) -> None:
        """Test that objects JSON cannot hold raise FormatError."""
        with self.assertRaises(FormatError):
            serialize_record({"bad": object()})

    def test_invalid_bytes(self) -> None:
        """Test that garbage bytes raise FormatError."""
        with self.assertRaises(FormatError):
            deserialize_record(b"\xff\xfe not json")

    def test_compact_json(self) -> None:
        """Test the serialized form."""
        data = serialize_record({"d": date(2024, 1, 1)})
        self.assertEqual(data, b'{"d":{"$date":"2024-01-01"}}')


class TestBackupEnvelope(unittest.TestCase):
    """Tests for the envelope wire format."""

    @classmethod
    def setUpClass(cls) -> None:
        """Encrypt one envelope and capture its wire dictionary."""
        cls.codec = make_codec()
        cls.envelope = cls.codec.encrypt({"name": "Test User"}, PASSWORD, slot="person1")
        cls.wire = json.loads(cls.envelope.to_bytes())

    def test_wire_keys(self) -> None:
        """Test that all documented keys are written."""
        for key in (
            "formatVersion", "mode", "createdAt", "appVersion", "description",
            "slot", "schemaVersion", "kdf", "cipher", "salt", "nonce",
            "ciphertext", "authTag",
        ):
            self.assertIn(key, self.wire)
        self.assertEqual(self.wire["mode"], "encrypted")
        self.assertEqual(self.wire["cipher"], "aes-256-gcm")
        self.assertEqual(self.wire["kdf"]["iterations"], MIN_PBKDF2_ITERATIONS)
        self.assertEqual(self.wire["createdAt"], FIXED_NOW.isoformat())

    def test_tag_stored_separately(self) -> None:
        """Test that authTag holds exactly the GCM tag."""
        self.assertEqual(len(base64.b64decode(self.wire["authTag"])), TAG_LENGTH)

    def test_from_dict_round_trip(self) -> None:
        """Test that parsing the wire dictionary gives an equal envelope."""
        self.assertEqual(BackupEnvelope.from_dict(self.wire), self.envelope)

    def test_missing_key(self) -> None:
        """Test that a missing required key raises FormatError."""
        for key in ("formatVersion", "mode", "createdAt", "appVersion", "salt", "authTag"):
            with self.subTest(key=key):
                data = dict(self.wire)
                del data[key]
                with self.assertRaises(FormatError):
                    BackupEnvelope.from_dict(data)

    def test_wrong_types(self) -> None:
        """Test that wrongly typed fields raise FormatError."""
        cases = {
            "formatVersion": "1",
            "appVersion": 1,
            "createdAt": "yesterday",
            "salt": "***not base64***",
            "nonce": base64.b64encode(b"short").decode(),
            "kdf": {"name": "md5", "iterations": 1},
            "cipher": "rot13",
            "mode": "zipped",
        }
        for key, value in cases.items():
            with self.subTest(key=key):
                data = dict(self.wire)
                data[key] = value
                with self.assertRaises(FormatError):
                    BackupEnvelope.from_dict(data)

    def test_boolean_version_rejected(self) -> None:
        """Test that true is not accepted as version 1."""
        data = dict(self.wire)
        data["formatVersion"] = True
        with self.assertRaises(FormatError):
            BackupEnvelope.from_dict(data)

    def test_future_version(self) -> None:
        """Test that a newer formatVersion raises UnsupportedVersionError."""
        data = dict(self.wire)
        data["formatVersion"] = FORMAT_VERSION + 1
        with self.assertRaises(UnsupportedVersionError):
            BackupEnvelope.from_dict(data)

    def test_version_zero(self) -> None:
        """Test that versions below the minimum are refused."""
        data = dict(self.wire)
        data["formatVersion"] = 0
        with self.assertRaises(UnsupportedVersionError):
            BackupEnvelope.from_dict(data)

    def test_not_an_object(self) -> None:
        """Test that a JSON list is not an envelope."""
        with self.assertRaises(FormatError):
            BackupEnvelope.from_dict([1, 2, 3])

    def test_associated_data_binds_header(self) -> None:
        """Test that every clear header field is part of the associated data."""
        header = json.loads(self.envelope.associated_data().removeprefix(b"planvault:"))

        self.assertEqual(header["slot"], "person1")
        self.assertEqual(header["schemaVersion"], self.envelope.schema_version)
        self.assertEqual(header["kdf"]["iterations"], MIN_PBKDF2_ITERATIONS)
        for key in ("salt", "nonce", "ciphertext", "authTag"):
            self.assertNotIn(key, header)

    def test_edited_header_fields_fail_authentication(self) -> None:
        """Test that editing any clear header field on the wire is detected."""
        edits = {
            "slot": "combined",
            "schemaVersion": 1,
            "description": "Edited",
            "appVersion": "0.0.1",
            "createdAt": "2020-01-01T00:00:00+00:00",
            "kdf": {"name": "pbkdf2-sha256", "iterations": MIN_PBKDF2_ITERATIONS + 1},
        }
        for key, value in edits.items():
            with self.subTest(key=key):
                data = dict(self.wire)
                data[key] = value
                with self.assertRaises(AuthenticationError):
                    self.codec.decrypt(BackupEnvelope.from_dict(data), PASSWORD)

    def test_unchanged_wire_still_decrypts(self) -> None:
        """Test that parsing the wire form keeps the header bytes stable."""
        parsed = BackupEnvelope.from_dict(self.wire)
        self.assertEqual(parsed.associated_data(), self.envelope.associated_data())
        self.assertEqual(self.codec.decrypt(parsed, PASSWORD), {"name": "Test User"})


class TestBackupEnvelopeBuilder(unittest.TestCase):
    """Tests for BackupEnvelopeBuilder."""

    def setUp(self) -> None:
        """Create a builder with a fixed clock."""
        self.codec = make_codec()
        self.stamp = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)
        self.builder = BackupEnvelopeBuilder(
            self.codec, app_version="2.0.0", clock=lambda: self.stamp
        )

    def test_build_envelope_stamps_metadata(self) -> None:
        """Test that description, time and version are stamped."""
        envelope = self.builder.build_envelope(
            {"name": "Test User"}, PASSWORD, "Before moving", slot="combined"
        )

        self.assertEqual(envelope.description, "Before moving")
        self.assertEqual(envelope.created_at, self.stamp)
        self.assertEqual(envelope.app_version, "2.0.0")
        self.assertEqual(envelope.slot, "combined")
        self.assertEqual(self.codec.decrypt(envelope, PASSWORD), {"name": "Test User"})

    def test_stamped_envelope_survives_wire(self) -> None:
        """Test that metadata stamping does not break authentication."""
        envelope = self.builder.build_envelope({"x": 1}, PASSWORD, "desc")
        parsed = BackupEnvelope.from_dict(json.loads(envelope.to_bytes()))
        self.assertEqual(self.codec.decrypt(parsed, PASSWORD), {"x": 1})

    def test_build_plain_envelope(self) -> None:
        """Test that plain envelopes carry the tagged payload."""
        envelope = self.builder.build_plain_envelope(
            {"when": date(2024, 1, 1)}, "Emergency copy", slot="emergency"
        )

        self.assertEqual(envelope.mode, EnvelopeMode.PLAIN)
        self.assertFalse(envelope.is_encrypted)
        self.assertEqual(envelope.payload, {"when": {"$date": "2024-01-01"}})
        wire = json.loads(envelope.to_bytes())
        self.assertEqual(wire["mode"], "plain")
        self.assertNotIn("ciphertext", wire)
        self.assertNotIn("salt", wire)

    def test_plain_envelope_rejects_unserializable(self) -> None:
        """Test that plain envelopes validate the record."""
        with self.assertRaises(FormatError):
            self.builder.build_plain_envelope({"bad": {1, 2}})

    def test_weak_password(self) -> None:
        """Test that the password policy applies to the builder."""
        with self.assertRaises(WeakPasswordError):
            self.builder.build_envelope({}, "1234")


if __name__ == "__main__":
    unittest.main()
