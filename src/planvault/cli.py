"""
Command-line interface for PlanVault.

Provides commands for saving, inspecting and validating plan slots, and
for exporting, importing, backing up and restoring them.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, NoReturn

from planvault import __version__
from planvault.backup import BackupFileManager, BackupResult, LocalFileAccess, Outcome
from planvault.codec import DataCodec, RestoreLoader, dates
from planvault.config.settings import (
    PASSWORD_ENV_VAR,
    ConfigurationError,
    Settings,
    get_config_path,
    load_config,
    save_config,
)
from planvault.errors import PlanVaultError
from planvault.storage import (
    KNOWN_SLOTS,
    FileKeyValueStore,
    MultiEntityPersistenceStore,
    SlotName,
)
from planvault.validation import PlanValidator, mask_private

# Set up logging
logger = logging.getLogger(__name__)

# Global verbosity settings (set during main() based on args)
_quiet_mode = False
_verbose_level = 0


def set_output_mode(quiet: bool = False, verbose: int = 0) -> None:
    """
    Set the output mode for the CLI.

    Args:
        quiet: If True, suppress non-essential output.
        verbose: Verbosity level (0=normal, 1+=verbose).
    """
    global _quiet_mode, _verbose_level
    _quiet_mode = quiet
    _verbose_level = verbose


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for PlanVault CLI."""
    parser = argparse.ArgumentParser(
        prog="planvault",
        description="Encrypted backup and persistence for retirement and emergency plans",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"planvault {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.planvault/config.yaml)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # info command
    info_parser = subparsers.add_parser(
        "info",
        help="Show system information and diagnostics",
        description="Display version, configuration paths and slot status.",
    )
    info_parser.add_argument("--json", action="store_true", help="Output as JSON")
    info_parser.set_defaults(func=cmd_info)

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Initialize PlanVault configuration",
        description="Create the config file and the data directory.",
    )
    init_parser.set_defaults(func=cmd_init)

    # save command
    save_parser = subparsers.add_parser(
        "save",
        help="Save a record into a slot",
        description="Read a JSON record and save it into a slot.",
    )
    save_parser.add_argument("slot", choices=KNOWN_SLOTS, help="Target slot")
    save_parser.add_argument(
        "record_file",
        metavar="FILE",
        help="JSON record file ('-' for stdin)",
    )
    save_parser.set_defaults(func=cmd_save)

    # show command
    show_parser = subparsers.add_parser(
        "show",
        help="Print the record in a slot",
        description="Print a saved record as JSON.",
    )
    show_parser.add_argument("slot", choices=KNOWN_SLOTS, help="Slot to show")
    show_parser.add_argument(
        "--mask",
        action="store_true",
        help="Mask account, policy and health insurance numbers",
    )
    show_parser.set_defaults(func=cmd_show)

    # clear command
    clear_parser = subparsers.add_parser(
        "clear",
        help="Delete saved slots",
        description="Delete one slot, or every slot with --all.",
    )
    clear_parser.add_argument("slot", nargs="?", choices=KNOWN_SLOTS, help="Slot to delete")
    clear_parser.add_argument("--all", action="store_true", help="Delete every slot")
    clear_parser.add_argument("--force", action="store_true", help="Skip confirmation prompt")
    clear_parser.set_defaults(func=cmd_clear)

    # status command
    status_parser = subparsers.add_parser(
        "status",
        help="Show which slots hold data",
        description="Show slot presence and last save times.",
    )
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")
    status_parser.set_defaults(func=cmd_status)

    # validate command
    validate_parser = subparsers.add_parser(
        "validate",
        help="Score a slot's completeness",
        description="Show completion percentage, missing fields, warnings and critical issues.",
    )
    validate_parser.add_argument("slot", choices=KNOWN_SLOTS, help="Slot to validate")
    validate_parser.add_argument("--json", action="store_true", help="Output as JSON")
    validate_parser.set_defaults(func=cmd_validate)

    # rebuild-combined command
    rebuild_parser = subparsers.add_parser(
        "rebuild-combined",
        help="Refresh the combined slot from person1 and person2",
        description="Embed the current person1 and person2 records into the combined slot.",
    )
    rebuild_parser.set_defaults(func=cmd_rebuild_combined)

    # export command
    export_parser = subparsers.add_parser(
        "export",
        help="Export a slot as a backup envelope",
        description="Write a slot as an envelope to a file or stdout.",
    )
    export_parser.add_argument("slot", choices=KNOWN_SLOTS, help="Slot to export")
    export_parser.add_argument(
        "--output", "-o",
        metavar="PATH",
        help="Output file (default: stdout)",
    )
    export_parser.add_argument(
        "--plain",
        action="store_true",
        help="Write without encryption (person1, person2 and emergency only)",
    )
    export_parser.add_argument("--description", default="", help="Description stored in the file")
    export_parser.add_argument(
        "--require-valid",
        action="store_true",
        dest="require_valid",
        help="Refuse to export a record with critical issues",
    )
    export_parser.set_defaults(func=cmd_export)

    # import command
    import_parser = subparsers.add_parser(
        "import",
        help="Import a backup envelope into its slot",
        description="Read an envelope and save its record into the slot it names.",
    )
    import_parser.add_argument("envelope_file", metavar="FILE", help="Envelope file")
    import_parser.add_argument(
        "--slot",
        choices=KNOWN_SLOTS,
        help="Import into this slot instead of the one named in the file",
    )
    import_parser.add_argument(
        "--dry-run",
        action="store_true",
        dest="dry_run",
        help="Decrypt and check the file without saving",
    )
    import_parser.set_defaults(func=cmd_import)

    # backup command
    backup_parser = subparsers.add_parser(
        "backup",
        help="Write backup files to the downloads directory",
        description=(
            "Back up one slot, or with --defaults the combined slot plus the "
            "emergency slot to separate files."
        ),
    )
    backup_parser.add_argument("slot", nargs="?", choices=KNOWN_SLOTS, help="Slot to back up")
    backup_parser.add_argument(
        "--defaults",
        action="store_true",
        help="Back up the combined slot and, if saved, the emergency slot",
    )
    backup_parser.add_argument(
        "--output-dir", "-o",
        metavar="DIR",
        dest="output_dir",
        help="Directory for backup files (default: configured downloads directory)",
    )
    backup_parser.add_argument("--filename", help="Backup filename (single slot only)")
    backup_parser.add_argument(
        "--plain",
        action="store_true",
        help="Write without encryption (person1, person2 and emergency only)",
    )
    backup_parser.add_argument("--description", default="", help="Description stored in the file")
    backup_parser.add_argument(
        "--require-valid",
        action="store_true",
        dest="require_valid",
        help="Refuse to back up a record with critical issues",
    )
    backup_parser.set_defaults(func=cmd_backup)

    # restore command
    restore_parser = subparsers.add_parser(
        "restore",
        help="Restore a backup file",
        description="Decrypt a backup file and restore it into its slot.",
    )
    restore_parser.add_argument("backup_file", metavar="FILE", help="Path to backup file (.json)")
    restore_parser.add_argument(
        "--slot",
        choices=KNOWN_SLOTS,
        help="Restore into this slot instead of the one named in the file",
    )
    restore_parser.add_argument(
        "--verify-only",
        action="store_true",
        dest="verify_only",
        help="Decrypt and check the file without restoring",
    )
    restore_parser.add_argument(
        "--force",
        action="store_true",
        help="Skip confirmation prompt",
    )
    restore_parser.set_defaults(func=cmd_restore)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def load_settings(args: argparse.Namespace) -> Settings:
    """Load settings honoring --config."""
    config_path = Path(args.config) if args.config else None
    return load_config(config_path)


def build_store(settings: Settings) -> MultiEntityPersistenceStore:
    """Create the persistence store described by the settings."""
    codec = DataCodec(
        iterations=settings.backup.pbkdf2_iterations,
        min_password_length=settings.backup.min_password_length,
    )
    return MultiEntityPersistenceStore(FileKeyValueStore(settings.slots_dir), codec=codec)


def read_password(confirm: bool = False) -> tuple[str, str | None]:
    """
    Get the backup password.

    Uses the PLANVAULT_PASSWORD environment variable when set, otherwise
    prompts. With confirm=True an interactive prompt asks twice.

    Returns:
        Tuple of (password, confirmation). The confirmation is None when
        the password came from the environment.
    """
    password = os.environ.get(PASSWORD_ENV_VAR)
    if password:
        return password, None

    password = getpass.getpass("Enter backup password: ")
    if not confirm:
        return password, None
    return password, getpass.getpass("Confirm backup password: ")


def needs_password(store: MultiEntityPersistenceStore, data: bytes) -> bool:
    """Check whether envelope bytes are encrypted."""
    try:
        return RestoreLoader(store.codec).load_envelope(data).is_encrypted
    except PlanVaultError:
        # Reported by the import or restore that follows
        return False


def print_json(data: Any) -> None:
    """Print data as indented JSON (always shown)."""
    output(json.dumps(data, indent=2, default=str), force=True)


def cmd_info(args: argparse.Namespace) -> int:
    """Show system information and diagnostics."""
    import platform as platform_module

    info: dict[str, Any] = {
        "version": __version__,
        "python_version": platform_module.python_version(),
        "platform": platform_module.platform(),
        "config_file": str(Path(args.config) if args.config else get_config_path()),
        "initialized": False,
        "data_dir": None,
        "downloads_dir": None,
        "pbkdf2_iterations": None,
        "slots": None,
    }

    try:
        settings = load_settings(args)
        info["initialized"] = Path(info["config_file"]).exists()
        info["data_dir"] = settings.data_dir
        info["downloads_dir"] = settings.backup.downloads_dir
        info["pbkdf2_iterations"] = settings.backup.pbkdf2_iterations
        if settings.slots_dir.exists():
            store = build_store(settings)
            info["slots"] = store.summary().slot_presence
    except ConfigurationError as e:
        info["config_error"] = str(e)

    if args.json:
        print_json(info)
        return 0

    output("PlanVault System Information")
    output("=" * 60)
    output()
    output(f"Version: {info['version']}")
    output(f"Python: {info['python_version']}")
    output(f"Platform: {info['platform']}")
    output()
    output("Paths:")
    output(f"  Config file: {info['config_file']}")
    if info["data_dir"]:
        output(f"  Data directory: {info['data_dir']}")
    if info["downloads_dir"]:
        output(f"  Downloads directory: {info['downloads_dir']}")
    output()
    output("Status:")
    output(f"  Initialized: {'Yes' if info['initialized'] else 'No'}")
    if info["pbkdf2_iterations"]:
        output(f"  PBKDF2 iterations: {info['pbkdf2_iterations']:,}")
    if "config_error" in info:
        output(f"  Configuration error: {info['config_error']}")
    if info["slots"]:
        output("  Slots:")
        for name, present in info["slots"].items():
            output(f"    {name}: {'saved' if present else 'empty'}")

    return 0


def cmd_init(args: argparse.Namespace) -> int:
    """Initialize PlanVault configuration."""
    config_path = Path(args.config) if args.config else get_config_path()

    output("PlanVault Initialization")
    output("=" * 50)
    output()

    if config_path.exists():
        output(f"PlanVault is already initialized: {config_path}")
    else:
        save_config(Settings(), config_path)
        output(f"Configuration file created: {config_path}")

    settings = load_config(config_path)

    try:
        FileKeyValueStore(settings.slots_dir)
    except PlanVaultError as e:
        output_error(f"Error creating data directory: {e}")
        return 1

    output(f"Data directory: {settings.slots_dir}")
    output()
    output("Next steps:")
    output("  1. Run 'planvault save person1 record.json' to store a plan")
    output("  2. Run 'planvault validate person1' to check what is missing")
    output("  3. Run 'planvault backup --defaults' to write backup files")
    output()
    return 0


def cmd_save(args: argparse.Namespace) -> int:
    """Save a JSON record into a slot."""
    settings = load_settings(args)
    store = build_store(settings)

    try:
        if args.record_file == "-":
            raw = json.load(sys.stdin)
        else:
            with open(args.record_file, encoding="utf-8") as f:
                raw = json.load(f)
        record = dates.from_wire(raw)
    except (OSError, json.JSONDecodeError, ValueError) as e:
        output_error(f"Error reading record: {e}")
        return 1

    try:
        slot = store.save(args.slot, record)
    except PlanVaultError as e:
        output_error(f"Error saving slot: {e}")
        return 1

    output(f"Saved {slot.slot_name} at {slot.last_saved_at.isoformat()}")
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    """Print the record in a slot."""
    settings = load_settings(args)
    store = build_store(settings)

    try:
        slot = store.load(args.slot)
    except PlanVaultError as e:
        output_error(f"Error: {e}")
        return 1

    record = slot.record
    if args.mask and isinstance(record, dict):
        record = mask_private(record)
    print_json(dates.to_wire(record))
    return 0


def cmd_clear(args: argparse.Namespace) -> int:
    """Delete one slot or all slots."""
    if not args.all and not args.slot:
        output_error("Error: Specify a slot or --all")
        return 1

    settings = load_settings(args)
    store = build_store(settings)
    target = "all slots" if args.all else f"slot {args.slot}"

    if not args.force:
        response = input(f"Delete {target}? This cannot be undone. [y/N]: ")
        if response.lower() not in ("y", "yes"):
            output("Cancelled.")
            return 0

    try:
        if args.all:
            store.clear_all()
        else:
            store.clear(args.slot)
    except PlanVaultError as e:
        output_error(f"Error: {e}")
        return 1

    output(f"Deleted {target}.")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show which slots hold data."""
    settings = load_settings(args)
    store = build_store(settings)
    summary = store.summary()

    if args.json:
        print_json(summary.to_dict())
        return 0

    output("PlanVault Slots")
    output("=" * 50)
    output()
    output(f"{'Slot':<12} {'Status':<8} Last saved")
    output("-" * 50)
    for name in KNOWN_SLOTS:
        saved_at = summary.last_saved.get(name)
        status = "saved" if summary.slot_presence.get(name) else "empty"
        when = saved_at.isoformat(timespec="seconds") if saved_at else "-"
        output(f"{name:<12} {status:<8} {when}")
    output()
    if summary.most_recent_save:
        output(f"Most recent save: {summary.most_recent_save.isoformat(timespec='seconds')}")
    else:
        output("Nothing saved yet.")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Score a slot and list its issues."""
    settings = load_settings(args)
    store = build_store(settings)

    try:
        slot = store.load(args.slot)
    except PlanVaultError as e:
        output_error(f"Error: {e}")
        return 1

    validator = PlanValidator()
    report = validator.validate(slot.record)
    summary = validator.summarize(slot.record)

    if args.json:
        print_json({"report": report.to_dict(), "summary": summary.to_dict()})
        return 0 if report.is_valid else 1

    output(f"Plan Validation: {args.slot}")
    output("=" * 50)
    output()
    output(f"Completion: {report.completion_percentage}%")
    output(f"Valid: {'Yes' if report.is_valid else 'No'}")
    output(
        f"Contacts: {summary.contacts_count}  Accounts: {summary.accounts_count}  "
        f"Insurances: {summary.insurances_count}  Documents: {summary.documents_count}"
    )
    for title, issues in (
        ("Critical issues", report.critical_issues),
        ("Warnings", report.warnings),
        ("Missing", report.missing_fields),
    ):
        if issues:
            output()
            output(f"{title}:")
            for issue in issues:
                output(f"  - {issue}")
    return 0 if report.is_valid else 1


def cmd_rebuild_combined(args: argparse.Namespace) -> int:
    """Refresh the combined slot from the person slots."""
    settings = load_settings(args)
    store = build_store(settings)

    try:
        slot = store.rebuild_combined()
    except PlanVaultError as e:
        output_error(f"Error: {e}")
        return 1

    output(f"Rebuilt combined at {slot.last_saved_at.isoformat()}")
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    """Export a slot as envelope bytes."""
    settings = load_settings(args)
    store = build_store(settings)

    try:
        password = None
        if not args.plain:
            password, confirm = read_password(confirm=True)
            BackupFileManager(store).check_passwords(password, confirm)
        data = store.export_to_file(
            args.slot,
            password=password,
            description=args.description,
            require_valid=args.require_valid,
        )
    except (PlanVaultError, ValueError) as e:
        output_error(f"Export failed: {e}")
        return 1

    if args.output:
        try:
            LocalFileAccess().write(Path(args.output), data)
        except PlanVaultError as e:
            output_error(f"Export failed: {e}")
            return 1
        output(f"Exported {args.slot} to {args.output} ({len(data):,} bytes)")
    else:
        sys.stdout.write(data.decode("utf-8") + "\n")
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    """Import an envelope file into its slot."""
    settings = load_settings(args)
    store = build_store(settings)

    try:
        data = Path(args.envelope_file).read_bytes()
    except OSError as e:
        output_error(f"Cannot read {args.envelope_file}: {e}")
        return 1

    password = None
    if needs_password(store, data):
        password, _ = read_password()

    try:
        slot_name, _ = store.import_from_file(
            data,
            password=password,
            apply=not args.dry_run,
            slot_name=args.slot,
        )
    except PlanVaultError as e:
        output_error(f"Import failed: {e}")
        return 1

    if args.dry_run:
        output(f"File is valid for slot {slot_name} (nothing saved)")
    else:
        output(f"Imported into {slot_name}")
    return 0


def cmd_backup(args: argparse.Namespace) -> int:
    """Write backup files for one slot or the default targets."""
    if args.defaults == bool(args.slot):
        output_error("Error: Specify either a slot or --defaults")
        return 1

    settings = load_settings(args)
    store = build_store(settings)
    downloads_dir = Path(args.output_dir or settings.backup.downloads_dir).expanduser()
    manager = BackupFileManager(store, downloads_dir=downloads_dir)

    output("PlanVault Backup")
    output("=" * 50)
    output()
    output(f"Output directory: {downloads_dir}")
    output()

    password: str | None = None
    confirm: str | None = None
    if args.defaults or not args.plain:
        password, confirm = read_password(confirm=True)

    if args.defaults:
        results = manager.save_defaults(password or "", confirm, description=args.description)
    else:
        require_valid = args.require_valid or (
            args.slot == SlotName.EMERGENCY.value
            and settings.backup.require_valid_emergency_export
        )
        results = [
            manager.create_backup(
                args.slot,
                password,
                confirm_password=confirm,
                filename=args.filename,
                description=args.description,
                require_valid=require_valid,
            )
        ]

    for result in results:
        _report_backup(result)
    return 0 if all(result.success for result in results) else 1


def _report_backup(result: BackupResult) -> None:
    if result.success:
        kind = "encrypted" if result.encrypted else "plain"
        output(f"Backup of {result.slot_name} created ({kind}):")
        output(f"  File: {result.path}")
        output(f"  Size: {result.size_bytes:,} bytes")
        output()
        output("To restore from this backup, run:")
        output(f"  planvault restore {result.path}")
        output()
    elif result.outcome is Outcome.CANCELLED:
        output(f"Backup of {result.slot_name} cancelled.")
    else:
        output_error(f"Backup of {result.slot_name} failed: {result.error}")
        logger.debug(f"Backup failure detail: {result.detail}")


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore from a backup file."""
    backup_path = Path(args.backup_file)

    if not backup_path.exists():
        output_error(f"Error: Backup file not found: {backup_path}")
        return 1

    settings = load_settings(args)
    store = build_store(settings)
    manager = BackupFileManager(store)

    output("PlanVault Restore")
    output("=" * 50)
    output()
    output(f"Backup file: {backup_path}")
    output()

    if not args.verify_only and not args.force:
        response = input("Restoring replaces the saved slot. Continue? [y/N]: ")
        if response.lower() not in ("y", "yes"):
            output("Restore cancelled.")
            return 0

    try:
        password = None
        if needs_password(store, backup_path.read_bytes()):
            password, _ = read_password()
    except OSError as e:
        output_error(f"Cannot read {backup_path}: {e}")
        return 1

    result = manager.restore_backup(
        backup_path,
        password,
        apply=not args.verify_only,
        slot_name=args.slot,
    )

    if not result.success:
        output_error(f"Restore failed: {result.error}")
        logger.debug(f"Restore failure detail: {result.detail}")
        return 1

    if args.verify_only:
        output(f"Backup is valid for slot {result.slot_name}.")
    else:
        output(f"Restored slot {result.slot_name}.")
    if result.description:
        output(f"  Description: {result.description}")
    if result.created_at:
        output(f"  Created: {result.created_at.isoformat(timespec='seconds')}")
    return 0


def main() -> NoReturn:
    """Main entry point for PlanVault CLI."""
    parser = create_parser()
    args = parser.parse_args()

    # Set up logging and output mode
    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet, args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
