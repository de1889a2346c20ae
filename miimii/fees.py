"""
Fee table and per-transaction limits.
"""

from decimal import Decimal, ROUND_CEILING

from miimii.models import money

TRANSFER_MIN = Decimal("100")
TRANSFER_MAX = Decimal("1000000")
BILL_MIN = Decimal("500")

SAME_BANK_FEE = Decimal("10")
OTHER_BANK_FEE = Decimal("50")
LARGE_TRANSFER_THRESHOLD = Decimal("10000")
LARGE_TRANSFER_RATE = Decimal("0.005")

BILL_RATE = Decimal("0.015")
BILL_FEE_MIN = Decimal("25")
BILL_FEE_MAX = Decimal("500")


def transfer_fee(amount: Decimal, same_bank: bool = False) -> Decimal:
    """Flat fee by destination plus 0.5% (rounded up) of the part above ₦10,000."""
    fee = SAME_BANK_FEE if same_bank else OTHER_BANK_FEE
    excess = money(amount) - LARGE_TRANSFER_THRESHOLD
    if excess > 0:
        fee += (excess * LARGE_TRANSFER_RATE).to_integral_value(rounding=ROUND_CEILING)
    return money(fee)


def airtime_fee(amount: Decimal) -> Decimal:
    return Decimal("0.00")


def data_fee(price: Decimal, service_fee: int = 0) -> Decimal:
    return money(service_fee)


def bill_fee(amount: Decimal) -> Decimal:
    fee = (money(amount) * BILL_RATE).to_integral_value(rounding=ROUND_CEILING)
    return money(min(max(fee, BILL_FEE_MIN), BILL_FEE_MAX))
