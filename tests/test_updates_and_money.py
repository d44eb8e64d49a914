"""
Unit tests for tri-state field updates and currency conversions.
"""
from decimal import Decimal

import pytest

from billing_ledger.core.money import compute_commission, from_minor_units, to_minor_units
from billing_ledger.core.updates import CLEAR, UNCHANGED, Clear, SetTo, Unchanged, apply_field_update


class TestFieldUpdate:
    """Test suite for apply_field_update."""

    @pytest.mark.unit
    def test_unchanged_leaves_column_out(self) -> None:
        values = {"pro_access": True}
        apply_field_update(values, "last_payment_error", UNCHANGED)
        assert values == {"pro_access": True}

    @pytest.mark.unit
    def test_clear_writes_null(self) -> None:
        values: dict = {}
        apply_field_update(values, "last_payment_error", CLEAR)
        assert values == {"last_payment_error": None}

    @pytest.mark.unit
    def test_set_to_writes_value(self) -> None:
        values: dict = {}
        apply_field_update(values, "last_invoice_status", SetTo("paid"))
        assert values == {"last_invoice_status": "paid"}

    @pytest.mark.unit
    def test_set_to_none_is_distinct_from_unchanged(self) -> None:
        """SetTo(None) writes NULL just like CLEAR; only UNCHANGED skips."""
        values: dict = {}
        apply_field_update(values, "last_payment_error", SetTo(None))
        assert values == {"last_payment_error": None}

    @pytest.mark.unit
    def test_markers_are_singletons(self) -> None:
        assert Unchanged() is UNCHANGED
        assert Clear() is CLEAR

    @pytest.mark.unit
    def test_rejects_raw_values(self) -> None:
        with pytest.raises(TypeError, match="Not a field update"):
            apply_field_update({}, "last_payment_error", "Payment failed")  # type: ignore[arg-type]


class TestMoney:
    """Test suite for commission arithmetic."""

    @pytest.mark.unit
    def test_half_of_fifty_dollars(self) -> None:
        assert compute_commission(5000, Decimal("0.5")) == Decimal("25.00")

    @pytest.mark.unit
    def test_commission_rounds_half_up_to_cent(self) -> None:
        # 999 cents * 0.5 = 4.995 dollars
        assert compute_commission(999, Decimal("0.5")) == Decimal("5.00")

    @pytest.mark.unit
    def test_commission_at_custom_rate(self) -> None:
        assert compute_commission(1999, Decimal("0.3")) == Decimal("6.00")

    @pytest.mark.unit
    def test_to_minor_units_floors(self) -> None:
        assert to_minor_units(Decimal("25.00")) == 2500
        assert to_minor_units(Decimal("4.999")) == 499

    @pytest.mark.unit
    def test_from_minor_units(self) -> None:
        assert from_minor_units(2550) == Decimal("25.50")
