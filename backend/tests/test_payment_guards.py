from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.payment_guards import assert_credit_available, assert_not_overpaid, assert_refund_within_sale


def test_assert_not_overpaid_allows_small_rounding_tolerance():
    assert_not_overpaid(Decimal("10.00"), Decimal("10.01"))


def test_assert_not_overpaid_rejects_overpay():
    with pytest.raises(HTTPException) as ex:
        assert_not_overpaid(Decimal("10.00"), Decimal("10.02"))
    assert ex.value.status_code == 400
    assert ex.value.detail == "payment exceeds sale total"


def test_assert_refund_within_sale_rejects_non_positive_amount():
    with pytest.raises(HTTPException) as ex:
        assert_refund_within_sale(Decimal("10"), Decimal("0"), Decimal("0"))
    assert ex.value.status_code == 400
    assert "refund amount must be > 0" in str(ex.value.detail)


def test_assert_refund_within_sale_rejects_more_than_remaining():
    with pytest.raises(HTTPException) as ex:
        assert_refund_within_sale(Decimal("50"), Decimal("45"), Decimal("6"))
    assert ex.value.status_code == 400
    assert "refund exceeds refundable amount (5)" in str(ex.value.detail)


def test_assert_refund_within_sale_accepts_exact_remaining():
    assert_refund_within_sale(Decimal("50"), Decimal("45"), Decimal("5"))


def test_assert_credit_available():
    assert_credit_available(Decimal("100"), Decimal("60"), Decimal("40"))
    with pytest.raises(HTTPException) as ex:
        assert_credit_available(Decimal("100"), Decimal("60"), Decimal("40.01"))
    assert "available credit: 40" in ex.value.detail
