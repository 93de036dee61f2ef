from decimal import Decimal

import pytest

from marketplace.utils.money import fmt, from_minor_units, percentage_of, quantize, to_decimal, to_minor_units

def test_quantize_rounds_half_up():
    assert quantize("2.345") == Decimal("2.35")
    assert quantize("2.344") == Decimal("2.34")
    assert quantize("0.005") == Decimal("0.01")

def test_to_minor_units_never_truncates():
    # 19.99 en float vaut 19.989999...: la conversion doit donner 1999, pas 1998
    assert to_minor_units(19.99) == 1999
    assert to_minor_units("95.00") == 9500
    assert to_minor_units(Decimal("0.015")) == 2

def test_from_minor_units():
    assert from_minor_units(9500) == Decimal("95.00")
    assert from_minor_units(1) == Decimal("0.01")

def test_percentage_of():
    assert percentage_of("65.00", "10") == Decimal("6.50")
    assert percentage_of("0.05", "10") == Decimal("0.01")

@pytest.mark.parametrize("bad", [None, True, "abc", "NaN", "Infinity"])
def test_to_decimal_rejects_invalid(bad):
    with pytest.raises(ValueError):
        to_decimal(bad)

def test_fmt_is_two_decimals():
    assert fmt(5) == "5.00"
    assert fmt("30") == "30.00"
