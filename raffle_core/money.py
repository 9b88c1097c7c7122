from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

CENTS = Decimal("0.01")


def round_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Quote:
    base: Decimal
    tax: Decimal
    total: Decimal
    minor: int


def quote(price: Decimal, tickets: int, tax_rate: Decimal) -> Quote:
    """Price a ticket purchase.

    Every intermediate amount is rounded half-up to cents before the total is
    converted to minor units, so per-ticket float drift cannot accumulate.
    """
    base = round_money(Decimal(price) * tickets)
    tax = round_money(base * Decimal(tax_rate))
    total = base + tax
    minor = int((total * 100).to_integral_value(rounding=ROUND_HALF_UP))
    return Quote(base=base, tax=tax, total=total, minor=minor)
