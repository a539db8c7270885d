from decimal import Decimal

from fastapi import HTTPException


def assert_not_overpaid(
    total: Decimal,
    paid: Decimal,
    detail: str = "payment exceeds sale total",
):
    eps = Decimal("0.01")
    if paid > (total + eps):
        raise HTTPException(status_code=400, detail=detail)


def assert_refund_within_sale(
    sale_total: Decimal,
    already_refunded: Decimal,
    refund_amount: Decimal,
):
    if refund_amount <= 0:
        raise HTTPException(status_code=400, detail="refund amount must be > 0")
    remaining = sale_total - already_refunded
    assert_not_overpaid(remaining, refund_amount, detail=f"refund exceeds refundable amount ({remaining})")


def assert_credit_available(credit_limit: Decimal, credit_balance: Decimal, amount: Decimal):
    available = credit_limit - credit_balance
    if amount > available:
        raise HTTPException(status_code=400, detail=f"credit limit exceeded. available credit: {available}")
