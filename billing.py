# billing.py
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum


class DiscountType(str, Enum):
    """How a bill-level discount is expressed."""
    AMOUNT = "amount"
    PERCENTAGE = "percentage"


@dataclass(frozen=True)
class BillCalculation:
    """Monetary breakdown of a bill. Only grand_total is rounded."""
    subtotal: float
    total_product_discounts: float
    bill_discount: float
    tax_amount: float
    grand_total: int


def round_currency(value: float) -> int:
    """
    Round to the nearest whole currency unit, ties away from zero.
    Works on the exact binary value of the float, so 2.5 -> 3, -2.5 -> -3
    and 0.49999999999999994 -> 0.
    """
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _item_values(item):
    if isinstance(item, dict):
        unit_price = item.get("unit_price", item.get("unitPrice", 0))
        return item.get("qty", 0), unit_price, item.get("discount", 0)
    return item.qty, item.unit_price, item.discount


def calculate_bill(items, bill_discount: float = 0,
                   bill_discount_type=DiscountType.AMOUNT,
                   tax_percent: float = 0,
                   other_charges: float = 0) -> BillCalculation:
    """
    Turn cart lines plus discount/tax/charge inputs into a BillCalculation.

    items: CartItem objects or dicts with qty, unit_price (or unitPrice), discount.
    Inputs are not validated or clamped: a flat bill discount larger than the
    discounted subtotal drives the total negative.
    """
    subtotal = 0
    total_product_discounts = 0
    for item in items:
        qty, unit_price, discount = _item_values(item)
        item_total = qty * unit_price
        subtotal += item_total
        total_product_discounts += (discount / 100) * item_total

    after_product_discounts = subtotal - total_product_discounts

    # anything other than percentage is a flat amount
    if bill_discount_type == DiscountType.PERCENTAGE:
        bill_discount_amount = (bill_discount / 100) * after_product_discounts
    else:
        bill_discount_amount = bill_discount

    after_bill_discount = after_product_discounts - bill_discount_amount
    tax_amount = (tax_percent / 100) * after_bill_discount
    grand_total_raw = after_bill_discount + tax_amount + other_charges

    return BillCalculation(
        subtotal=subtotal,
        total_product_discounts=total_product_discounts,
        bill_discount=bill_discount_amount,
        tax_amount=tax_amount,
        grand_total=round_currency(grand_total_raw),
    )


def payment_split(grand_total: float, paid_amount: float = 0):
    """Return (due_amount, is_paid) for a total and what has been paid."""
    due = max(0, grand_total - paid_amount)
    return due, due == 0


def validate_bill(items, tax_percent: float = 0, other_charges: float = 0,
                  paid_amount: float = 0):
    """
    Reject inputs the engine would accept arithmetically but a shop should not save.
    Raises ValueError describing the first problem found.
    """
    for item in items:
        qty, unit_price, discount = _item_values(item)
        if qty < 0:
            raise ValueError("Quantity cannot be negative.")
        if unit_price < 0:
            raise ValueError("Unit price cannot be negative.")
        if not 0 <= discount <= 100:
            raise ValueError("Item discount must be between 0 and 100 percent.")
    if tax_percent < 0:
        raise ValueError("Tax percent cannot be negative.")
    if other_charges < 0:
        raise ValueError("Other charges cannot be negative.")
    if paid_amount < 0:
        raise ValueError("Paid amount cannot be negative.")
