from datetime import datetime, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app import posting


NOW = datetime(2026, 4, 2, 9, 30, tzinfo=timezone.utc)


class _LedgerCursor:
    """Answers the statements post_sale issues from in-memory rows."""

    def __init__(self, products=None, existing_sale=None, program=None, customer=None, seq=0, discount=None):
        self.products = {p["id"]: dict(p) for p in products or []}
        self.existing_sale = existing_sale
        self.program = program
        self.customer = dict(customer) if customer else None
        self.seq = seq
        self.discount = dict(discount) if discount else None
        self.executed: list[tuple[str, tuple]] = []
        self.stock_updates: list[tuple] = []
        self.credit_rows: list[tuple] = []
        self.points_added: list[tuple] = []
        self.sale_insert = None
        self._rows: list = []

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        params = tuple(params or ())
        self.executed.append((text, params))
        if "from pos_sales where merchant_id = %s and offline_id = %s" in text:
            self._rows = [self.existing_sale] if self.existing_sale else []
        elif "from pos_sale_items" in text:
            self._rows = [{"id": "item-1", "product_id": "p1"}]
        elif "pg_advisory_xact_lock" in text:
            self._rows = []
        elif "max(split_part(sale_number" in text:
            self._rows = [{"seq": self.seq}]
        elif "from pos_products" in text and "for update" in text:
            ids = params[1]
            self._rows = [self.products[i] for i in ids if i in self.products]
        elif text.startswith("insert into pos_sales "):
            self.sale_insert = params
            self._rows = [{"id": "sale-1", "sale_number": params[2], "total_amount": params[7]}]
        elif text.startswith("insert into pos_sale_items"):
            self._rows = []
        elif text.startswith("update pos_products"):
            self.stock_updates.append(params)
            self._rows = []
        elif text.startswith("insert into pos_inventory_log"):
            self._rows = []
        elif "from pos_customers" in text and "for update" in text:
            self._rows = [self.customer] if self.customer else []
        elif text.startswith("update pos_customers"):
            self._rows = []
        elif text.startswith("insert into pos_credit_transactions"):
            self.credit_rows.append(params)
            self._rows = [{"id": "ct-1", "amount": params[3]}]
        elif "from pos_discounts" in text:
            self._rows = [self.discount] if self.discount else []
        elif text.startswith("update pos_discounts"):
            d = self.discount
            if d["usage_limit"] is not None and d["usage_count"] >= d["usage_limit"]:
                self._rows = []
            else:
                d["usage_count"] += 1
                self._rows = [{"id": d["id"]}]
        elif "from pos_loyalty_programs" in text:
            self._rows = [self.program] if self.program else []
        elif text.startswith("insert into pos_loyalty_points"):
            self.points_added.append(params)
            self._rows = [{"customer_id": params[1], "points_balance": params[2]}]
        else:
            raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


def _products():
    return [
        {"id": "p1", "name": "Latte", "sku": "LAT", "price": Decimal("4.00"), "tax_rate": None,
         "track_inventory": True, "stock_quantity": Decimal("10"), "is_active": True},
        {"id": "p2", "name": "Gift card", "sku": "GC", "price": Decimal("20.00"), "tax_rate": Decimal("0"),
         "track_inventory": False, "stock_quantity": Decimal("0"), "is_active": True},
        {"id": "p3", "name": "Old muffin", "sku": "MUF", "price": Decimal("2.00"), "tax_rate": None,
         "track_inventory": True, "stock_quantity": Decimal("3"), "is_active": False},
    ]


def test_post_sale_prices_from_catalog_numbers_and_moves_stock():
    cur = _LedgerCursor(products=_products(), seq=6)
    res = posting.post_sale(
        cur,
        "m1",
        {
            "items": [{"product_id": "p1", "quantity": "2"}, {"product_id": "p2", "quantity": "1"}],
            "payment_method": "cash",
            "amount_received": "50",
        },
        default_tax_rate=Decimal("0.10"),
        now=NOW,
    )

    assert res["duplicate"] is False
    assert res["sale"]["sale_number"] == "S20260402-0007"
    totals = res["totals"]
    assert totals["subtotal"] == Decimal("28.00")
    # Latte uses the default rate; the gift card carries its own 0% rate.
    assert totals["tax_amount"] == Decimal("0.80")
    assert totals["total_amount"] == Decimal("28.80")
    # Only the tracked product moves.
    assert cur.stock_updates == [(Decimal("8"), "m1", "p1")]
    details = cur.sale_insert[10]
    assert '"change": "21.20"' in details


def test_post_sale_replay_returns_first_sale_without_posting():
    cur = _LedgerCursor(products=_products(), existing_sale={"id": "sale-0", "sale_number": "S20260401-0001"})
    res = posting.post_sale(cur, "m1", {"offline_id": "abc", "items": [{"product_id": "p1", "quantity": "1"}]}, now=NOW)

    assert res["duplicate"] is True
    assert res["sale"]["id"] == "sale-0"
    assert not any(sql.startswith("insert into pos_sales ") for sql, _ in cur.executed)
    assert cur.stock_updates == []


@pytest.mark.parametrize(
    "items, detail",
    [
        ([], "sale must have at least one item"),
        ([{"product_id": "p1", "quantity": "0"}], "quantity must be > 0"),
        ([{"product_id": "nope", "quantity": "1"}], "unknown product: nope"),
        ([{"product_id": "p3", "quantity": "1"}], "product is inactive: Old muffin"),
    ],
)
def test_post_sale_rejects_bad_carts(items, detail):
    cur = _LedgerCursor(products=_products())
    with pytest.raises(HTTPException) as ex:
        posting.post_sale(cur, "m1", {"items": items}, now=NOW)
    assert ex.value.status_code == 400
    assert ex.value.detail == detail


def test_post_sale_cash_received_must_cover_total():
    cur = _LedgerCursor(products=_products())
    with pytest.raises(HTTPException) as ex:
        posting.post_sale(
            cur, "m1",
            {"items": [{"product_id": "p1", "quantity": "1"}], "payment_method": "cash", "amount_received": "3"},
            now=NOW,
        )
    assert ex.value.detail == "amount received is less than the sale total"


def test_post_sale_credit_requires_customer():
    cur = _LedgerCursor(products=_products())
    with pytest.raises(HTTPException) as ex:
        posting.post_sale(cur, "m1", {"items": [{"product_id": "p1", "quantity": "1"}], "payment_method": "credit"}, now=NOW)
    assert ex.value.detail == "credit sales require a customer"


def test_post_sale_credit_posts_to_tab_and_earns_points():
    cur = _LedgerCursor(
        products=_products(),
        customer={"id": "c1", "credit_limit": Decimal("100"), "credit_balance": Decimal("10"), "total_purchases": 0},
        program={"id": "lp1", "points_per_currency": Decimal("1")},
    )
    res = posting.post_sale(
        cur, "m1",
        {"items": [{"product_id": "p2", "quantity": "2"}], "payment_method": "credit", "customer_id": "c1"},
        now=NOW,
    )

    assert res["totals"]["total_amount"] == Decimal("40.00")
    _mid, cid, sale_id, amount, before, after, notes, _user = cur.credit_rows[0]
    assert (cid, sale_id, amount, before, after) == ("c1", "sale-1", Decimal("40.00"), Decimal("10"), Decimal("50.00"))
    assert notes.startswith("Sale S20260402-")
    assert res["loyalty_points_earned"] == 40
    assert cur.points_added == [("m1", "c1", 40, 40)]


def test_post_sale_credit_over_limit_is_rejected():
    cur = _LedgerCursor(
        products=_products(),
        customer={"id": "c1", "credit_limit": Decimal("30"), "credit_balance": Decimal("0"), "total_purchases": 0},
    )
    with pytest.raises(HTTPException) as ex:
        posting.post_sale(
            cur, "m1",
            {"items": [{"product_id": "p2", "quantity": "2"}], "payment_method": "credit", "customer_id": "c1"},
            now=NOW,
        )
    assert ex.value.status_code == 400
    assert "credit limit exceeded" in ex.value.detail


def test_stock_target():
    assert posting.stock_target(Decimal("5"), "restock", Decimal("3")) == Decimal("8")
    assert posting.stock_target(Decimal("5"), "damage", Decimal("2")) == Decimal("3")
    assert posting.stock_target(Decimal("5"), "adjustment", Decimal("12")) == Decimal("12")


def test_check_discount_window():
    row = {"start_date": datetime(2026, 5, 1), "end_date": None, "usage_limit": None, "usage_count": 0}
    with pytest.raises(HTTPException) as ex:
        posting.check_discount_window(row, NOW)
    assert ex.value.detail == "discount code is not yet active"

    row = {"start_date": None, "end_date": datetime(2026, 4, 1, tzinfo=timezone.utc), "usage_limit": None}
    with pytest.raises(HTTPException) as ex:
        posting.check_discount_window(row, NOW)
    assert ex.value.detail == "discount code has expired"

    row = {"start_date": None, "end_date": None, "usage_limit": 5, "usage_count": 5}
    with pytest.raises(HTTPException) as ex:
        posting.check_discount_window(row, NOW)
    assert ex.value.detail == "discount code usage limit reached"

    posting.check_discount_window({"usage_limit": 5, "usage_count": 4}, NOW)


@pytest.mark.parametrize(
    "line, detail",
    [
        ({"unit_price": "-100"}, "unit_price must be >= 0"),
        ({"discount": "-5"}, "discount must be >= 0"),
    ],
)
def test_post_sale_rejects_negative_prices_and_discounts(line, detail):
    cur = _LedgerCursor(products=_products())
    items = [
        {"product_id": "p2", "quantity": "1", "unit_price": "100"},
        {"product_id": "p1", "quantity": "1", **line},
    ]
    with pytest.raises(HTTPException) as ex:
        posting.post_sale(cur, "m1", {"items": items}, now=NOW)
    assert ex.value.status_code == 400
    assert ex.value.detail == detail
    assert cur.executed == []


def _discount(**overrides):
    row = {
        "id": "d1",
        "name": "Ten off twenty",
        "code": "TEN",
        "type": "fixed",
        "value": Decimal("10"),
        "min_purchase": Decimal("20"),
        "max_discount": None,
        "applies_to": "all",
        "start_date": None,
        "end_date": None,
        "usage_limit": None,
        "usage_count": 0,
        "is_active": True,
    }
    row.update(overrides)
    return row


def test_code_discount_minimum_is_checked_against_the_gross_subtotal():
    cur = _LedgerCursor(products=_products(), discount=_discount())
    # Gross 20.00 meets the minimum even though the item discount brings the net to 18.00.
    res = posting.post_sale(
        cur,
        "m1",
        {
            "items": [{"product_id": "p1", "quantity": "5", "discount": "2", "discount_type": "fixed"}],
            "discount_code": "ten",
        },
        now=NOW,
    )
    totals = res["totals"]
    assert totals["subtotal"] == Decimal("20.00")
    assert totals["code_discount"] == Decimal("10.00")
    assert totals["discount_amount"] == Decimal("12.00")
    assert totals["total_amount"] == Decimal("8.00")
    assert cur.discount["usage_count"] == 1
    assert cur.sale_insert[11] == "d1"


def test_code_discount_is_refused_when_another_till_used_the_last_redemption():
    # The row read before the sale still shows one use left.
    discount = _discount(min_purchase=None, usage_limit=5, usage_count=4)
    cur = _LedgerCursor(products=_products(), discount=discount)
    cur.discount["usage_count"] = 5
    real_execute = cur.execute

    def stale_read(sql, params=None):
        real_execute(sql, params)
        if "from pos_discounts" in " ".join(str(sql).lower().split()):
            cur._rows = [dict(discount)]

    cur.execute = stale_read
    with pytest.raises(HTTPException) as ex:
        posting.post_sale(cur, "m1", {"items": [{"product_id": "p2", "quantity": "1"}], "discount_code": "TEN"}, now=NOW)
    assert ex.value.status_code == 400
    assert ex.value.detail == "discount code usage limit reached"
    assert cur.discount["usage_count"] == 5
