"""
Tests for the CLI commands.

Uses Python's unittest module.
Tests argument parsing and runs commands against a temporary data directory.
"""

from __future__ import annotations

import io
import json
import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from planvault.cli import create_parser, main, needs_password
from planvault.codec.crypto import MIN_PBKDF2_ITERATIONS
from planvault.storage import MultiEntityPersistenceStore

PASSWORD = "testPassword123"


class TestArgumentParser(unittest.TestCase):
    """Tests for CLI argument parsing."""

    def setUp(self) -> None:
        """Set up parser for tests."""
        self.parser = create_parser()

    def test_version_argument(self) -> None:
        """Test --version argument."""
        with self.assertRaises(SystemExit) as cm:
            self.parser.parse_args(["--version"])

        self.assertEqual(cm.exception.code, 0)

    def test_no_command_defaults(self) -> None:
        """Test parsing with no command."""
        args = self.parser.parse_args([])

        self.assertIsNone(args.command)
        self.assertEqual(args.verbose, 0)
        self.assertFalse(args.quiet)

    def test_verbose_flag(self) -> None:
        """Test -v verbose flag."""
        self.assertEqual(self.parser.parse_args(["-vv"]).verbose, 2)

    def test_config_path_argument(self) -> None:
        """Test --config argument."""
        args = self.parser.parse_args(["--config", "/tmp/custom.yaml", "status"])
        self.assertEqual(args.config, "/tmp/custom.yaml")


class TestSlotCommands(unittest.TestCase):
    """Tests for parsing the slot commands."""

    def setUp(self) -> None:
        """Set up parser for tests."""
        self.parser = create_parser()

    def test_save_command(self) -> None:
        """Test save command arguments."""
        args = self.parser.parse_args(["save", "person1", "record.json"])

        self.assertEqual(args.slot, "person1")
        self.assertEqual(args.record_file, "record.json")

    def test_invalid_slot(self) -> None:
        """Test that unknown slots are rejected by the parser."""
        with self.assertRaises(SystemExit):
            self.parser.parse_args(["show", "household"])

    def test_show_mask_flag(self) -> None:
        """Test show --mask."""
        self.assertTrue(self.parser.parse_args(["show", "person2", "--mask"]).mask)

    def test_clear_all(self) -> None:
        """Test clear --all without a slot."""
        args = self.parser.parse_args(["clear", "--all", "--force"])

        self.assertIsNone(args.slot)
        self.assertTrue(args.all)
        self.assertTrue(args.force)

    def test_export_flags(self) -> None:
        """Test export options."""
        args = self.parser.parse_args(
            ["export", "emergency", "--plain", "-o", "out.json", "--require-valid"]
        )

        self.assertTrue(args.plain)
        self.assertEqual(args.output, "out.json")
        self.assertTrue(args.require_valid)

    def test_import_flags(self) -> None:
        """Test import options."""
        args = self.parser.parse_args(["import", "in.json", "--slot", "person2", "--dry-run"])

        self.assertEqual(args.envelope_file, "in.json")
        self.assertEqual(args.slot, "person2")
        self.assertTrue(args.dry_run)

    def test_backup_defaults(self) -> None:
        """Test backup --defaults with an output directory."""
        args = self.parser.parse_args(["backup", "--defaults", "-o", "/tmp/out"])

        self.assertTrue(args.defaults)
        self.assertIsNone(args.slot)
        self.assertEqual(args.output_dir, "/tmp/out")

    def test_restore_flags(self) -> None:
        """Test restore options."""
        args = self.parser.parse_args(["restore", "plan.json", "--verify-only"])

        self.assertEqual(args.backup_file, "plan.json")
        self.assertTrue(args.verify_only)
        self.assertFalse(args.force)


class TestCommands(unittest.TestCase):
    """Runs commands end to end against a temporary data directory."""

    def setUp(self) -> None:
        """Create a config, data directory and record file."""
        self.temp_dir = tempfile.mkdtemp()
        self.root = Path(self.temp_dir)
        self.config_path = self.root / "config.yaml"
        self.downloads = self.root / "downloads"
        self.env = patch.dict(
            os.environ,
            {
                "PLANVAULT_DATA_DIR": str(self.root / "data"),
                "PLANVAULT_DOWNLOADS_DIR": str(self.downloads),
                "PLANVAULT_PBKDF2_ITERATIONS": str(MIN_PBKDF2_ITERATIONS),
                "PLANVAULT_PASSWORD": PASSWORD,
            },
            clear=True,
        )
        self.env.start()

        self.record_path = self.root / "record.json"
        self.record_path.write_text(
            json.dumps(
                {
                    "first_name": "Anne",
                    "last_name": "Tremblay",
                    "date_of_birth": {"$date": "1958-03-14"},
                    "medical": {"health_insurance_number": "TREA 5803 1412"},
                    "bank_accounts": [{"account_number": "815-30-12345"}],
                }
            )
        )

    def tearDown(self) -> None:
        """Clean up temporary files."""
        self.env.stop()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def run_cli(self, *argv: str) -> tuple[int, str]:
        """Run main() with arguments; return (exit code, stdout)."""
        stdout = io.StringIO()
        with (
            patch("sys.argv", ["planvault", "--config", str(self.config_path), *argv]),
            patch("sys.stdout", stdout),
            patch("sys.stderr", io.StringIO()),
            patch("planvault.cli.setup_logging"),
        ):
            with self.assertRaises(SystemExit) as cm:
                main()
        return cm.exception.code, stdout.getvalue()

    def test_init_creates_config(self) -> None:
        """Test that init writes the config file and data directory."""
        code, _ = self.run_cli("init")

        self.assertEqual(code, 0)
        self.assertTrue(self.config_path.exists())
        self.assertTrue((self.root / "data" / "slots").is_dir())

    def test_save_and_show(self) -> None:
        """Test that a saved record is shown with dates tagged."""
        self.assertEqual(self.run_cli("save", "person1", str(self.record_path))[0], 0)

        code, out = self.run_cli("show", "person1")

        self.assertEqual(code, 0)
        shown = json.loads(out)
        self.assertEqual(shown["date_of_birth"], {"$date": "1958-03-14"})

    def test_show_masked(self) -> None:
        """Test that --mask hides account digits."""
        self.run_cli("save", "person1", str(self.record_path))

        _, out = self.run_cli("show", "person1", "--mask")

        self.assertEqual(json.loads(out)["bank_accounts"][0]["account_number"], "***-**-*****")

    def test_show_empty_slot(self) -> None:
        """Test that showing an empty slot exits 1."""
        self.assertEqual(self.run_cli("show", "person2")[0], 1)

    def test_validate_json(self) -> None:
        """Test validate --json on a valid but incomplete record."""
        self.run_cli("save", "person1", str(self.record_path))

        code, out = self.run_cli("validate", "person1", "--json")

        data = json.loads(out)
        self.assertEqual(code, 0)
        self.assertTrue(data["report"]["is_valid"])
        self.assertLess(data["report"]["completion_percentage"], 100)
        self.assertEqual(data["summary"]["accounts_count"], 1)

    def test_status_json(self) -> None:
        """Test status --json after one save."""
        self.run_cli("save", "emergency", str(self.record_path))

        code, out = self.run_cli("status", "--json")

        data = json.loads(out)
        self.assertEqual(code, 0)
        self.assertTrue(data["slot_presence"]["emergency"])
        self.assertFalse(data["slot_presence"]["person1"])

    def test_backup_and_restore(self) -> None:
        """Test a backup file restored into an emptied slot."""
        self.run_cli("save", "person1", str(self.record_path))
        code, _ = self.run_cli("backup", "person1")
        self.assertEqual(code, 0)

        backups = list(self.downloads.glob("retirement-backup-*.json"))
        self.assertEqual(len(backups), 1)

        self.run_cli("clear", "person1", "--force")
        self.assertEqual(self.run_cli("show", "person1")[0], 1)

        code, _ = self.run_cli("restore", str(backups[0]), "--force")

        self.assertEqual(code, 0)
        self.assertEqual(self.run_cli("show", "person1")[0], 0)

    def test_backup_requires_slot_or_defaults(self) -> None:
        """Test that backup needs exactly one target."""
        self.assertEqual(self.run_cli("backup")[0], 1)

    def test_plain_export_and_import(self) -> None:
        """Test a plain export re-imported into another slot."""
        self.run_cli("save", "emergency", str(self.record_path))
        out_path = self.root / "emergency.json"

        code, _ = self.run_cli("export", "emergency", "--plain", "-o", str(out_path))
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out_path.read_text())["mode"], "plain")

        code, _ = self.run_cli("import", str(out_path), "--slot", "person2")
        self.assertEqual(code, 0)
        self.assertEqual(self.run_cli("show", "person2")[0], 0)

    def test_plain_combined_export_refused(self) -> None:
        """Test that combined cannot be exported without encryption."""
        self.run_cli("save", "combined", str(self.record_path))
        self.assertEqual(self.run_cli("export", "combined", "--plain")[0], 1)

    def test_rebuild_combined(self) -> None:
        """Test that rebuild-combined embeds person1."""
        self.run_cli("save", "person1", str(self.record_path))

        self.assertEqual(self.run_cli("rebuild-combined")[0], 0)
        _, out = self.run_cli("show", "combined")

        self.assertEqual(json.loads(out)["person1"]["first_name"], "Anne")

    def test_invalid_configuration(self) -> None:
        """Test that a configuration error exits 2."""
        os.environ["PLANVAULT_LOG_LEVEL"] = "CHATTY"
        self.assertEqual(self.run_cli("status")[0], 2)


class TestNeedsPassword(unittest.TestCase):
    """Tests for needs_password()."""

    def test_garbage_is_left_to_the_import(self) -> None:
        """Test that unreadable data does not ask for a password."""
        self.assertFalse(needs_password(MultiEntityPersistenceStore(), b"garbage"))


if __name__ == "__main__":
    unittest.main()
