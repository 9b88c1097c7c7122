"""Unit tests for purchase pricing."""

from decimal import Decimal

from raffle_core.money import quote, round_money


def test_three_tickets_with_tax():
    q = quote(Decimal("10.00"), 3, Decimal("0.13"))
    assert q.base == Decimal("30.00")
    assert q.tax == Decimal("3.90")
    assert q.total == Decimal("33.90")
    assert q.minor == 3390


def test_tax_rounds_half_up():
    # 0.25 * 0.13 = 0.0325 -> 0.03; 0.50 * 0.13 = 0.065 -> 0.07
    assert quote(Decimal("0.25"), 1, Decimal("0.13")).tax == Decimal("0.03")
    assert quote(Decimal("0.50"), 1, Decimal("0.13")).tax == Decimal("0.07")


def test_minor_units_match_total():
    q = quote(Decimal("4.99"), 7, Decimal("0.13"))
    assert q.base == Decimal("34.93")
    assert q.tax == Decimal("4.54")
    assert q.minor == int(q.total * 100)


def test_round_money_half_up_and_ints():
    assert round_money(Decimal("1.005")) == Decimal("1.01")
    assert round_money(2) == Decimal("2.00")
