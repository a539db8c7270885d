import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.routers import catalog, customers, discounts, held_orders, loyalty, sales


NOW = datetime(2026, 4, 2, 12, 0, tzinfo=timezone.utc)


def test_held_order_expires_only_while_held():
    past = NOW - timedelta(minutes=1)
    assert held_orders.effective_status({"status": "held", "expires_at": past}, NOW) == "expired"
    assert held_orders.effective_status({"status": "held", "expires_at": NOW + timedelta(hours=1)}, NOW) == "held"
    assert held_orders.effective_status({"status": "resumed", "expires_at": past}, NOW) == "resumed"
    # Naive deadlines are read as UTC.
    assert held_orders.effective_status({"status": "held", "expires_at": datetime(2026, 4, 2, 11, 0)}, NOW) == "expired"


def test_validate_discount_rule():
    discounts.validate_discount_rule("percentage", Decimal("100"))
    discounts.validate_discount_rule("fixed", Decimal("250"))
    with pytest.raises(HTTPException) as ex:
        discounts.validate_discount_rule("percentage", Decimal("101"))
    assert ex.value.detail == "percentage discounts cannot exceed 100"
    with pytest.raises(HTTPException) as ex:
        discounts.validate_discount_rule("fixed", Decimal("0"))
    assert ex.value.detail == "value must be > 0"
    with pytest.raises(HTTPException) as ex:
        discounts.validate_discount_rule("fixed", Decimal("5"), start=NOW, end=NOW - timedelta(days=1))
    assert ex.value.detail == "end_date must be after start_date"


def test_check_redeem():
    loyalty.check_redeem(500, 100, 100)
    with pytest.raises(HTTPException) as ex:
        loyalty.check_redeem(50, 100, 0)
    assert ex.value.detail == "insufficient points"
    with pytest.raises(HTTPException) as ex:
        loyalty.check_redeem(500, 50, 100)
    assert ex.value.detail == "minimum 100 points required to redeem"
    with pytest.raises(HTTPException):
        loyalty.check_redeem(500, 0, 0)


def test_customer_payment_never_goes_negative():
    assert customers.apply_payment(Decimal("80"), Decimal("30")) == Decimal("50.00")
    assert customers.apply_payment(Decimal("80"), Decimal("95")) == Decimal("0.00")


def test_stock_alert_levels():
    base = {"id": "p1", "name": "Beans", "low_stock_threshold": Decimal("5")}
    assert catalog.stock_alert({**base, "stock_quantity": Decimal("6")}) is None
    assert catalog.stock_alert({**base, "stock_quantity": Decimal("5")})["alert_type"] == "low_stock"
    assert catalog.stock_alert({**base, "stock_quantity": Decimal("0")})["alert_type"] == "out_of_stock"


def test_refund_lines_take_back_only_what_is_still_returnable():
    p1, p2 = uuid.uuid4(), uuid.uuid4()
    sold = [
        {"product_id": p1, "quantity": Decimal("2")},
        {"product_id": p2, "quantity": Decimal("1")},
        {"product_id": None, "quantity": Decimal("1")},
    ]
    # Money-only partial refund.
    assert sales._refund_lines(sold, None) == []
    assert sales._refund_lines(sold, None, full=True) == [
        {"product_id": str(p1), "quantity": Decimal("2")},
        {"product_id": str(p2), "quantity": Decimal("1")},
    ]
    returned = {str(p1): Decimal("1")}
    assert sales._refund_lines(sold, None, returned, full=True) == [
        {"product_id": str(p1), "quantity": Decimal("1")},
        {"product_id": str(p2), "quantity": Decimal("1")},
    ]
    assert sales._refund_lines(sold, [sales.RefundItemIn(product_id=p1, quantity=Decimal("1"))]) == [
        {"product_id": str(p1), "quantity": Decimal("1")}
    ]
    with pytest.raises(HTTPException) as ex:
        sales._refund_lines(sold, [sales.RefundItemIn(product_id=p1, quantity=Decimal("2"))], returned)
    assert ex.value.detail == f"refund quantity exceeds returnable quantity for product {p1} (1)"
    with pytest.raises(HTTPException):
        sales._refund_lines(
            sold,
            [
                sales.RefundItemIn(product_id=p1, quantity=Decimal("1")),
                sales.RefundItemIn(product_id=p1, quantity=Decimal("1")),
            ],
            returned,
        )
    with pytest.raises(HTTPException) as ex:
        sales._refund_lines(sold, [sales.RefundItemIn(product_id=p2, quantity=Decimal("0"))])
    assert ex.value.detail == f"invalid refund quantity for product {p2}"
    with pytest.raises(HTTPException) as ex:
        sales._refund_lines(sold, [sales.RefundItemIn(product_id=uuid.uuid4(), quantity=Decimal("1"))])
    assert "is not on this sale" in ex.value.detail


def test_summarize_sales():
    rows = [
        {"total_amount": Decimal("10"), "payment_method": "cash"},
        {"total_amount": Decimal("30"), "payment_method": "card"},
        {"total_amount": Decimal("5"), "payment_method": "cash"},
    ]
    items = [
        {"product_name": "Latte", "quantity": Decimal("3"), "total_price": Decimal("12")},
        {"product_name": "Bagel", "quantity": Decimal("1"), "total_price": Decimal("3")},
        {"product_name": "Latte", "quantity": Decimal("1"), "total_price": Decimal("4")},
    ]
    out = sales.summarize_sales(rows, items)
    assert out["total_sales"] == 3
    assert out["total_amount"] == Decimal("45.00")
    assert out["average_ticket"] == Decimal("15.00")
    assert out["top_products"][0] == {"name": "Latte", "quantity": Decimal("4"), "revenue": Decimal("16.00")}
    methods = {r["method"]: r for r in out["payment_breakdown"]}
    assert methods["cash"]["count"] == 2
    assert methods["cash"]["amount"] == Decimal("15.00")


def test_summarize_sales_empty_day():
    out = sales.summarize_sales([], [])
    assert out["total_sales"] == 0
    assert out["average_ticket"] == Decimal("0.00")


def test_render_receipt_shows_totals_and_change():
    sale = {
        "sale_number": "S20260402-0001",
        "created_at": NOW,
        "cashier_name": "Dana",
        "subtotal": Decimal("8"),
        "discount_amount": Decimal("0"),
        "tax_amount": Decimal("0.80"),
        "total_amount": Decimal("8.80"),
        "payment_method": "cash",
        "payment_details": '{"amount_received": "10.00", "change": "1.20"}',
        "status": "completed",
    }
    items = [{"product_name": "Latte", "quantity": Decimal("2"), "unit_price": Decimal("4"), "total_price": Decimal("8")}]
    text = sales.render_receipt({"name": "Corner Cafe", "phone": None}, sale, items, "USD")
    lines = text.splitlines()
    assert lines[0].strip() == "Corner Cafe"
    assert "Sale: S20260402-0001" in lines
    assert "Date: 2026-04-02 12:00" in lines
    assert any(line.startswith("TOTAL") and line.endswith("USD 8.80") for line in lines)
    assert any(line.startswith("Change") and line.endswith("USD 1.20") for line in lines)
    assert "Discount" not in text
    assert lines[-1].strip() == "Thank you!"


def test_render_receipt_marks_voided_sales():
    sale = {
        "sale_number": "S1",
        "subtotal": 1,
        "tax_amount": 0,
        "total_amount": 1,
        "payment_method": "card",
        "status": "voided",
    }
    text = sales.render_receipt({"name": "Shop", "receipt_footer": "Bye"}, sale, [], "USD")
    assert "*** VOIDED ***" in text
    assert text.rstrip().endswith("Bye")
