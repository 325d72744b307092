"""
Unit tests for input validation.
"""
from datetime import date, timedelta
from decimal import Decimal

import pytest

from labflow.errors import ValidationError
from labflow.models.billing import PricingRuleUpsert, RuleType
from labflow.models.order import OrderCreate, RestorationType
from labflow.services.validation import Validator

TODAY = date(2026, 3, 2)


@pytest.fixture
def validator():
    return Validator()


def order(**overrides):
    fields = {"patient_name": "Jane Roe", "restoration_type": RestorationType.EMAX, "teeth_number": "14-16", "expected_delivery_date": TODAY + timedelta(days=3)}
    fields.update(overrides)
    return OrderCreate(**fields)


class TestOrderValidation:
    def test_clean_order(self, validator):
        assert validator.validate_order(order(), today=TODAY) == {"errors": [], "warnings": []}

    def test_missing_optional_fields_only_warn(self, validator):
        result = validator.validate_order(order(teeth_number=None, expected_delivery_date=None), today=TODAY)
        assert result == {"errors": [], "warnings": ["missing_delivery_date", "missing_teeth_number"]}

    @pytest.mark.parametrize(
        "teeth,issue",
        [
            ("11,x", "teeth_number_format"),
            ("16-14", "teeth_range_not_ascending"),
            ("0,12", "teeth_number_out_of_range"),
            ("47-49", "teeth_number_out_of_range"),
        ],
    )
    def test_teeth_number(self, validator, teeth, issue):
        assert issue in validator.validate_order(order(teeth_number=teeth), today=TODAY)["errors"]

    def test_errors_are_sorted_and_unique(self, validator):
        result = validator.validate_order(order(patient_name="J", teeth_number="0,99", target_budget=Decimal("-5")), today=TODAY)
        assert result["errors"] == ["negative_target_budget", "patient_name_too_short", "teeth_number_out_of_range"]

    def test_ensure_raises_first_error(self, validator):
        with pytest.raises(ValidationError) as exc:
            validator.ensure(validator.validate_order(order(patient_name=" "), today=TODAY))
        assert exc.value.reason == "patient_name_too_short"


class TestOtherChecks:
    def test_dispute_reason_length(self, validator):
        assert validator.validate_dispute_reason("x" * 19)["errors"] == ["reason_shorter_than_20"]
        assert validator.validate_dispute_reason("x" * 20)["errors"] == []
        # whitespace does not count
        assert validator.validate_dispute_reason("   " + "x" * 19 + "   ")["errors"]

    def test_rule_checks(self, validator):
        bad = PricingRuleUpsert(rule_name=" ", rule_type=RuleType.FLAT_FEE, amount=Decimal("5"), is_percentage=True)
        assert validator.validate_rule(bad)["errors"] == ["missing_rule_name", "percentage_not_supported:FlatFee"]

    def test_amount(self, validator):
        assert validator.validate_amount(None)["errors"] == ["missing_amount"]
        assert validator.validate_amount(Decimal("0"))["errors"] == ["zero_amount"]
        assert validator.validate_amount(Decimal("-3"))["errors"] == []
