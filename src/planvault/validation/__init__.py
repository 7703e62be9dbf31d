"""
Plan validation for PlanVault.

Scores how complete a record is and flags critical gaps that block
printing or export.
"""

from planvault.validation.validator import (
    DEFAULT_FIELD_RULES,
    DEFAULT_WARNING_RULES,
    FieldRule,
    PlanSummary,
    PlanValidator,
    ValidationReport,
    WarningRule,
    mask_private,
)

__all__ = [
    "PlanValidator",
    "ValidationReport",
    "PlanSummary",
    "FieldRule",
    "WarningRule",
    "DEFAULT_FIELD_RULES",
    "DEFAULT_WARNING_RULES",
    "mask_private",
]
