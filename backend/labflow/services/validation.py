from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from labflow import config
from labflow.errors import ValidationError
from labflow.models.billing import PricingRuleUpsert, RuleType
from labflow.models.order import OrderCreate


class Validator:
    """Input checks run before anything reaches storage.

    Rules for new orders:
    - patient name shorter than 2 characters -> error
    - teeth number not a list of 1..48 numbers or ascending ranges -> error
    - both a pre-selected lab and the marketplace flag -> error
    - negative target budget -> error
    - expected delivery date in the past -> error
    - no teeth number / no delivery date -> warning only

    Deterministic: errors and warnings are returned sorted.
    """

    def _add_issue(self, issues: List[str], issue: str) -> None:
        if issue not in issues:
            issues.append(issue)

    def _check_teeth(self, teeth: str, errors: List[str]) -> None:
        parts = [p.strip() for p in teeth.split(",")]
        for part in parts:
            try:
                if "-" in part:
                    start, end = (int(p.strip()) for p in part.split("-", 1))
                    if start >= end:
                        self._add_issue(errors, "teeth_range_not_ascending")
                    numbers = [start, end]
                else:
                    numbers = [int(part)]
            except ValueError:
                self._add_issue(errors, "teeth_number_format")
                continue
            if any(n < 1 or n > 48 for n in numbers):
                self._add_issue(errors, "teeth_number_out_of_range")

    def validate_order(self, data: OrderCreate, today: Optional[date] = None) -> Dict[str, Any]:
        errors: List[str] = []
        warnings: List[str] = []
        today = today or date.today()

        name = (data.patient_name or "").strip()
        if len(name) < 2:
            self._add_issue(errors, "patient_name_too_short")

        if data.teeth_number is None or not data.teeth_number.strip():
            self._add_issue(warnings, "missing_teeth_number")
        else:
            self._check_teeth(data.teeth_number, errors)

        if data.assigned_lab_id and data.auto_assign_pending:
            self._add_issue(errors, "lab_and_marketplace_both_set")

        if data.target_budget is not None and data.target_budget < 0:
            self._add_issue(errors, "negative_target_budget")

        if data.expected_delivery_date is None:
            self._add_issue(warnings, "missing_delivery_date")
        elif data.expected_delivery_date < today:
            self._add_issue(errors, "delivery_date_in_past")

        return {"errors": sorted(errors), "warnings": sorted(warnings)}

    def validate_rule(self, data: PricingRuleUpsert) -> Dict[str, Any]:
        errors: List[str] = []
        if not data.rule_name or not data.rule_name.strip():
            self._add_issue(errors, "missing_rule_name")
        if data.is_percentage and data.rule_type in (RuleType.BASE_PRICE, RuleType.FLAT_FEE):
            self._add_issue(errors, f"percentage_not_supported:{data.rule_type.value}")
        if data.rule_type == RuleType.BASE_PRICE and data.amount < 0:
            self._add_issue(errors, "negative_base_price")
        return {"errors": sorted(errors), "warnings": []}

    def validate_dispute_reason(self, reason: Optional[str]) -> Dict[str, Any]:
        errors: List[str] = []
        if len((reason or "").strip()) < config.DISPUTE_REASON_MIN_LENGTH:
            self._add_issue(errors, f"reason_shorter_than_{config.DISPUTE_REASON_MIN_LENGTH}")
        return {"errors": errors, "warnings": []}

    def validate_amount(self, amount: Optional[Decimal]) -> Dict[str, Any]:
        errors: List[str] = []
        if amount is None:
            self._add_issue(errors, "missing_amount")
        elif amount == 0:
            self._add_issue(errors, "zero_amount")
        return {"errors": errors, "warnings": []}

    def ensure(self, result: Dict[str, Any]) -> Dict[str, Any]:
        """Raise ValidationError carrying every error code when the result has errors."""
        if result["errors"]:
            raise ValidationError(result["errors"][0], ", ".join(result["errors"]))
        return result
