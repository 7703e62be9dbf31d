"""
Date conversion between the wire representation and native values.

Records hold real ``date`` and ``datetime`` objects in memory. On the wire
(inside envelopes and stored slots) every date is written as a single-key
tagged object so it can never be confused with an ordinary string:

    {"$date": "2024-01-15"}
    {"$datetime": "2024-01-15T10:30:00.123456+00:00"}

``dehydrate`` and ``rehydrate`` walk dicts, lists and tuples recursively.
Both are idempotent: applying either twice gives the same result as
applying it once.

``to_wire`` and ``from_wire`` are the serialization boundary. On top of
date tagging they escape user dicts with ``$``-prefixed keys, so a record
holding ``{"$date": "hello"}`` as data comes back unchanged:

    {"$escape": {"$date": "hello"}}

Schema version 1 records (written by the legacy web app) stored dates as
bare ISO strings under a small set of well-known keys. ``rehydrate`` with
``schema_version=1`` converts those strings as well.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

logger = logging.getLogger(__name__)

DATE_TAG = "$date"
DATETIME_TAG = "$datetime"
ESCAPE_TAG = "$escape"

# Current record schema version. Bump together with a migration step in
# planvault.codec.restore.
SCHEMA_VERSION = 2

# Keys that carried bare ISO date strings in schema version 1
LEGACY_DATE_KEYS = frozenset(
    {
        "dateCreation",
        "derniereMiseAJour",
        "dateExpiration",
        "dateNaissance",
        "echeance",
        "lastSaved",
        "lastUpdated",
        "exportDate",
        "created_at",
        "updated_at",
        "last_updated",
        "date_of_birth",
        "expiration_date",
        "due_date",
        "signed_at",
        "review_date",
    }
)


def dehydrate(value: Any) -> Any:
    """
    Convert native date values into their tagged wire form.

    Args:
        value: Any JSON-like structure that may contain dates.

    Returns:
        A new structure with every date/datetime replaced by a tag object.
        Tuples become lists.
    """
    # datetime is a subclass of date, so it must be checked first
    if isinstance(value, datetime):
        return {DATETIME_TAG: value.isoformat()}
    if isinstance(value, date):
        return {DATE_TAG: value.isoformat()}
    if isinstance(value, dict):
        return {key: dehydrate(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [dehydrate(item) for item in value]
    return value


def rehydrate(value: Any, schema_version: int = SCHEMA_VERSION) -> Any:
    """
    Convert tagged wire dates back into native values.

    Args:
        value: A structure produced by ``dehydrate`` (or a legacy record).
        schema_version: Schema version of the record. Version 1 also
            converts bare ISO strings found under LEGACY_DATE_KEYS.

    Returns:
        A new structure with native date and datetime values.

    Raises:
        ValueError: If a tag object holds a value that is not an ISO date.
    """
    return _rehydrate(value, schema_version, key=None)


def to_wire(value: Any) -> Any:
    """
    Convert a record into its wire form.

    Like ``dehydrate``, but dicts with a key starting with ``$`` are wrapped
    in an ESCAPE_TAG object so they cannot be read back as tags.
    """
    if isinstance(value, datetime):
        return {DATETIME_TAG: value.isoformat()}
    if isinstance(value, date):
        return {DATE_TAG: value.isoformat()}
    if isinstance(value, dict):
        converted = {key: to_wire(item) for key, item in value.items()}
        if any(isinstance(key, str) and key.startswith("$") for key in value):
            return {ESCAPE_TAG: converted}
        return converted
    if isinstance(value, (list, tuple)):
        return [to_wire(item) for item in value]
    return value


def from_wire(value: Any) -> Any:
    """
    Convert a wire structure written by ``to_wire`` back into a record.

    Raises:
        ValueError: If a tag object holds a value that is not an ISO date.
    """
    if is_date_tag(value):
        return _rehydrate(value, SCHEMA_VERSION, key=None)
    if isinstance(value, dict):
        if len(value) == 1 and isinstance(value.get(ESCAPE_TAG), dict):
            return {key: from_wire(item) for key, item in value[ESCAPE_TAG].items()}
        return {key: from_wire(item) for key, item in value.items()}
    if isinstance(value, list):
        return [from_wire(item) for item in value]
    return value


def is_date_tag(value: Any) -> bool:
    """Check whether a value is a tagged wire date."""
    return (
        isinstance(value, dict)
        and len(value) == 1
        and (DATE_TAG in value or DATETIME_TAG in value)
        and isinstance(next(iter(value.values())), str)
    )


def parse_iso(text: str) -> date | datetime:
    """
    Parse an ISO-8601 string into a date or datetime.

    A bare ``YYYY-MM-DD`` string yields a ``date``; anything with a time
    component yields a ``datetime``. A trailing ``Z`` is accepted.
    """
    if len(text) == 10:
        return date.fromisoformat(text)
    return datetime.fromisoformat(text)


def _rehydrate(value: Any, schema_version: int, key: str | None) -> Any:
    if is_date_tag(value):
        if DATETIME_TAG in value:
            return datetime.fromisoformat(value[DATETIME_TAG])
        return date.fromisoformat(value[DATE_TAG])
    if isinstance(value, dict):
        return {k: _rehydrate(item, schema_version, k) for k, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_rehydrate(item, schema_version, key) for item in value]
    if schema_version < 2 and isinstance(value, str) and key in LEGACY_DATE_KEYS:
        return _parse_legacy(value, key)
    return value


def _parse_legacy(text: str, key: str) -> Any:
    """Parse a schema v1 bare date string, leaving unparseable values alone."""
    try:
        return parse_iso(text.strip())
    except ValueError:
        logger.debug(f"Leaving unparseable legacy date under '{key}' as text")
        return text
