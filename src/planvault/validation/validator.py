"""
Plan completion scoring and validation.

PlanValidator inspects a record and produces a ValidationReport with a
completion percentage and categorized issues. It holds no state; call it
again after every change to a scored field.

Scoring Algorithm:
    1. Each FieldRule contributes its weight when the field is present
       (not None, not blank, not an empty collection)
    2. Each triggered warning subtracts half a unit
    3. completion = (present_weight - 0.5 * warnings) / total_weight * 100,
       clamped to [0, 100] and rounded half up

Issue Categories:
    - critical: a critical field is absent; the record is not valid
    - missing: an expected field is absent; non-blocking
    - warning: a field is present but looks incomplete

Warnings are only raised by fields whose weight covers the penalty, so
filling in a missing field never lowers the score.
"""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from planvault.errors import ValidationError

logger = logging.getLogger(__name__)

WARNING_PENALTY = 0.5


@dataclass(frozen=True)
class FieldRule:
    """
    An expected field of a record.

    Attributes:
        path: Dotted path into the record (e.g. "medical.allergies").
        label: Message used when the field is absent.
        critical: Absence makes the record invalid.
        weight: Contribution to the completion score.
    """

    path: str
    label: str
    critical: bool = False
    weight: float = 1.0


@dataclass(frozen=True)
class WarningRule:
    """
    A check on a present field.

    Attributes:
        trigger: Dotted path of the field the check inspects. The check
            only runs when this field is present.
        message: Warning text.
        applies: Returns True when the warning should be raised.
    """

    trigger: str
    message: str
    applies: Callable[[dict[str, Any]], bool]


@dataclass
class ValidationReport:
    """Result of validating one record."""

    completion_percentage: int
    missing_fields: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    critical_issues: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        """True when no critical issue was found."""
        return not self.critical_issues

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "completion_percentage": self.completion_percentage,
            "missing_fields": list(self.missing_fields),
            "warnings": list(self.warnings),
            "critical_issues": list(self.critical_issues),
            "is_valid": self.is_valid,
        }


@dataclass
class PlanSummary:
    """Headline counts for a plan."""

    contacts_count: int
    accounts_count: int
    insurances_count: int
    documents_count: int
    completion_percentage: int
    last_updated: date | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "contacts_count": self.contacts_count,
            "accounts_count": self.accounts_count,
            "insurances_count": self.insurances_count,
            "documents_count": self.documents_count,
            "completion_percentage": self.completion_percentage,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }


def _no_priority_contact(record: dict[str, Any]) -> bool:
    contacts = _as_list(get_path(record, "emergency_contacts"))
    return not any(
        isinstance(contact, dict) and contact.get("priority") == 1 for contact in contacts
    )


def _lacks_document(doc_type: str) -> Callable[[dict[str, Any]], bool]:
    def check(record: dict[str, Any]) -> bool:
        documents = _as_list(get_path(record, "legal_documents"))
        return not any(
            isinstance(doc, dict) and doc.get("type") == doc_type for doc in documents
        )

    return check


def _medications_without_doctor(record: dict[str, Any]) -> bool:
    return not is_present(get_path(record, "medical.family_doctor"))


DEFAULT_FIELD_RULES: tuple[FieldRule, ...] = (
    FieldRule("first_name", "First name is missing", critical=True, weight=2.0),
    FieldRule("last_name", "Last name is missing", critical=True, weight=2.0),
    FieldRule(
        "medical.health_insurance_number",
        "Health insurance number is missing",
        critical=True,
        weight=2.0,
    ),
    FieldRule("date_of_birth", "Date of birth is not specified"),
    FieldRule("emergency_contacts", "No emergency contact defined"),
    FieldRule("bank_accounts", "No bank account defined"),
    FieldRule("insurances", "No insurance policy defined"),
    FieldRule("legal_documents", "No legal document defined"),
    FieldRule(
        "medical.allergies",
        'Allergies not specified (enter "None" if applicable)',
    ),
    FieldRule("medical.family_doctor", "Family doctor not specified"),
    FieldRule("medical.pharmacy", "Pharmacy not specified"),
    FieldRule("properties", "No property or asset defined"),
    FieldRule("digital_access", "No digital access information defined"),
    FieldRule("funeral_wishes", "Funeral wishes not specified"),
)

DEFAULT_WARNING_RULES: tuple[WarningRule, ...] = (
    WarningRule(
        "emergency_contacts",
        "No high-priority emergency contact defined",
        _no_priority_contact,
    ),
    WarningRule("legal_documents", "No will on file", _lacks_document("testament")),
    WarningRule(
        "legal_documents",
        "No incapacity mandate on file",
        _lacks_document("incapacity_mandate"),
    ),
    WarningRule(
        "medical.medications",
        "Family doctor not specified although medications are listed",
        _medications_without_doctor,
    ),
)


class PlanValidator:
    """
    Scores records against a rule set.

    Usage:
        validator = PlanValidator()
        report = validator.validate(record)
        if not report.is_valid:
            print(report.critical_issues)
    """

    def __init__(
        self,
        field_rules: Sequence[FieldRule] = DEFAULT_FIELD_RULES,
        warning_rules: Sequence[WarningRule] = DEFAULT_WARNING_RULES,
    ) -> None:
        self.field_rules = tuple(field_rules)
        self.warning_rules = tuple(warning_rules)
        self.total_weight = sum(rule.weight for rule in self.field_rules)

    def validate(self, record: Any) -> ValidationReport:
        """
        Validate a record.

        Args:
            record: Record to score. Anything other than a dict is scored
                as an empty record.

        Returns:
            A new ValidationReport.
        """
        if not isinstance(record, dict):
            logger.debug(f"Scoring non-dict record of type {type(record).__name__} as empty")
            record = {}

        report = ValidationReport(completion_percentage=0)
        present_weight = 0.0

        for rule in self.field_rules:
            if is_present(get_path(record, rule.path)):
                present_weight += rule.weight
            elif rule.critical:
                report.critical_issues.append(rule.label)
            else:
                report.missing_fields.append(rule.label)

        for warning in self.warning_rules:
            if is_present(get_path(record, warning.trigger)) and warning.applies(record):
                report.warnings.append(warning.message)

        if self.total_weight > 0:
            score = (present_weight - WARNING_PENALTY * len(report.warnings)) / self.total_weight
            report.completion_percentage = _round_half_up(max(0.0, min(100.0, score * 100)))

        return report

    def require_valid(self, record: Any) -> ValidationReport:
        """
        Validate and raise if the record is not valid.

        Raises:
            ValidationError: If any critical issue is found. The report is
                attached as ``error.report``.
        """
        report = self.validate(record)
        if not report.is_valid:
            raise ValidationError(
                "Record is incomplete: " + "; ".join(report.critical_issues),
                report=report,
            )
        return report

    def summarize(self, record: Any) -> PlanSummary:
        """Count the main sections of a plan and attach its completion."""
        data = record if isinstance(record, dict) else {}
        last_updated = data.get("updated_at") or data.get("created_at")
        return PlanSummary(
            contacts_count=len(_as_list(data.get("emergency_contacts"))),
            accounts_count=len(_as_list(data.get("bank_accounts"))),
            insurances_count=len(_as_list(data.get("insurances"))),
            documents_count=len(_as_list(data.get("legal_documents"))),
            completion_percentage=self.validate(data).completion_percentage,
            last_updated=last_updated if isinstance(last_updated, date) else None,
        )


def mask_private(record: dict[str, Any]) -> dict[str, Any]:
    """
    Prepare a plan for printing without private identifiers.

    Digits in account numbers, policy numbers and the health insurance
    number become ``*`` and account balances are zeroed. The input is not
    modified.
    """
    masked = copy.deepcopy(record)

    for account in _as_list(masked.get("bank_accounts")):
        if isinstance(account, dict):
            if "account_number" in account:
                account["account_number"] = _mask_digits(account["account_number"])
            if "approx_balance" in account:
                account["approx_balance"] = 0

    for policy in _as_list(masked.get("insurances")):
        if isinstance(policy, dict):
            if "policy_number" in policy:
                policy["policy_number"] = _mask_digits(policy["policy_number"])

    medical = masked.get("medical")
    if isinstance(medical, dict) and "health_insurance_number" in medical:
        medical["health_insurance_number"] = _mask_digits(medical["health_insurance_number"])

    return masked


def get_path(record: Any, path: str) -> Any:
    """Follow a dotted path through nested dicts, returning None if absent."""
    current = record
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def is_present(value: Any) -> bool:
    """A field counts as present unless it is None, blank or an empty collection."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    return True


def _as_list(value: Any) -> list[Any]:
    """Treat anything but a list or tuple as an empty collection."""
    return list(value) if isinstance(value, (list, tuple)) else []


def _mask_digits(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    return re.sub(r"\d", "*", value)


def _round_half_up(value: float) -> int:
    return int(value + 0.5)
