from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable

from errors import ValidationError
from models import PaymentStatus, Provenance

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """Parse an amount into a two-decimal Decimal. Empty values count as zero."""
    if value is None or value == "":
        return ZERO
    if isinstance(value, bool):
        raise ValidationError(f"Invalid amount: {value!r}", amount=str(value))
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid amount: {value!r}", amount=str(value)) from exc
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}", amount=str(value))
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def clamp(amount: Decimal) -> Decimal:
    return amount if amount > ZERO else ZERO


def sum_payments(amounts: Iterable) -> Decimal:
    return sum((to_money(amount) for amount in amounts), ZERO)


def paid_amount(record) -> Decimal:
    """Amount paid so far.

    Ordered tests keep the running total on the order row. Prescribed tests
    sum their payments and only fall back to the stored total for entries
    recorded before per-payment tracking.
    """
    if record.provenance == Provenance.ORDERED:
        return clamp(to_money(record.stored_paid_amount))
    if record.payments:
        return clamp(sum_payments(payment.amount for payment in record.payments))
    return clamp(to_money(record.stored_paid_amount))


def due_amount(record) -> Decimal:
    return clamp(to_money(record.total_amount) - paid_amount(record))


def required_amount(record, fraction: Decimal) -> Decimal:
    return (to_money(record.total_amount) * fraction).quantize(CENT, rounding=ROUND_HALF_UP)


def meets_threshold(record, fraction: Decimal, pending: Decimal = ZERO) -> bool:
    return paid_amount(record) + to_money(pending) >= required_amount(record, fraction)


def shortfall(record, fraction: Decimal, pending: Decimal = ZERO) -> Decimal:
    return clamp(required_amount(record, fraction) - paid_amount(record) - to_money(pending))


def payment_status(record) -> PaymentStatus:
    paid = paid_amount(record)
    if paid <= ZERO:
        return PaymentStatus.NOT_PAID
    if paid >= to_money(record.total_amount):
        return PaymentStatus.PAID
    return PaymentStatus.PARTIALLY_PAID


def ledger_drift(record) -> Decimal:
    """Difference between recorded payments and the stored running total.

    Payments are authoritative; a non-zero drift means the stored total needs
    correcting.
    """
    if not record.payments or record.stored_paid_amount is None:
        return ZERO
    return sum_payments(payment.amount for payment in record.payments) - to_money(record.stored_paid_amount)


def percent(fraction: Decimal) -> str:
    return f"{(fraction * 100).normalize():f}%"
