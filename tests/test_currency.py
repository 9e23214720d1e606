from decimal import Decimal

import pytest

from storefront.services.currency import convert_totals, quantize_major, to_major_units, to_minor_units


class TestToMajorUnits:
    def test_whole_dinars(self):
        assert to_major_units(7000) == Decimal("7.000")

    def test_keeps_three_decimals(self):
        assert str(to_major_units(12345)) == "12.345"
        assert str(to_major_units(5)) == "0.005"

    def test_zero(self):
        assert to_major_units(0) == Decimal("0.000")

    @pytest.mark.parametrize("value", [7.5, "7000", Decimal("7000"), True, None])
    def test_rejects_non_integers(self, value):
        with pytest.raises(TypeError):
            to_major_units(value)


class TestToMinorUnits:
    def test_decimal(self):
        assert to_minor_units(Decimal("7.000")) == 7000

    def test_string_and_float(self):
        assert to_minor_units("12.345") == 12345
        assert to_minor_units(0.1) == 100

    def test_rounds_half_away_from_zero(self):
        assert to_minor_units(Decimal("1.0005")) == 1001
        assert to_minor_units(Decimal("1.0004")) == 1000
        assert to_minor_units(Decimal("-1.0005")) == -1001


def test_quantize_major_rounds_half_up():
    assert quantize_major(Decimal("2.0005")) == Decimal("2.001")
    assert quantize_major(Decimal("2.0004")) == Decimal("2.000")


class TestConvertTotals:
    def test_total_rebuilt_from_converted_parts(self):
        totals = convert_totals(subtotal=45500, shipping=7000, fee=2000, discount=1500)
        assert totals.subtotal == Decimal("45.500")
        assert totals.shipping == Decimal("7.000")
        assert totals.fee == Decimal("2.000")
        assert totals.discount == Decimal("1.500")
        assert totals.total == Decimal("53.000")

    def test_total_floored_at_zero(self):
        totals = convert_totals(subtotal=1000, shipping=0, fee=0, discount=5000)
        assert totals.total == Decimal("0.000")

    def test_matches_minor_unit_total(self):
        for subtotal, shipping, fee, discount in [(1, 2, 3, 4), (999, 1, 0, 0), (123457, 7001, 999, 12345)]:
            internal = max(0, subtotal + shipping + fee - discount)
            totals = convert_totals(subtotal, shipping, fee, discount)
            assert abs(to_minor_units(totals.total) - internal) <= 1
