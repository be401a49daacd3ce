"""
Invoice balance arithmetic shared by the store implementations.
"""

from dotmac.billing_engine.core.enums import InvoiceStatus


def apply_payment(
    balance_cents: int, amount_cents: int, status: InvoiceStatus
) -> tuple[int, InvoiceStatus]:
    """Return the balance and status after a payment.

    The balance never goes below zero and the invoice becomes PAID exactly when it
    reaches zero; otherwise the status is left alone.
    """
    if amount_cents < 0:
        raise ValueError("payment amount must not be negative")
    remaining = max(balance_cents - amount_cents, 0)
    return remaining, InvoiceStatus.PAID if remaining == 0 else status


__all__ = ["apply_payment"]
