"""
PlanVault - Encrypted backup and persistence for retirement and emergency plans

Keep the plan safe, keep the plan yours.

PlanVault stores the records behind a household retirement plan (each
person, the combined household view, and a separate emergency plan) on
the local machine, and turns them into password-protected, versioned
backup files that can be restored later.

Key Features:
    - AES-256-GCM backups with PBKDF2-derived keys
    - Versioned envelope and record schema with migrations
    - Independent person1, person2, combined and emergency slots
    - Plain exports for the emergency and per-person plans
    - Completion scoring that gates export of incomplete plans

Design Principles:
    - Local-first: no network, no server, single user
    - Fail closed: a wrong password or a damaged file never yields data
    - All-or-nothing writes: a slot is never left half-written
"""

__version__ = "0.1.0"

from planvault.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
