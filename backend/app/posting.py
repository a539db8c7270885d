"""
Transactional building blocks shared by the sales routers and the outbox
worker. Every function takes an open cursor and leaves commit/rollback to the
caller, so an online sale and a replayed offline sale post the same rows.
"""
from __future__ import annotations

import json
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException

from .kitchen import transition_stamps
from .payment_guards import assert_credit_available
from .pricing import (
    CartLine,
    calculate_discount,
    cart_totals,
    change_due,
    document_number,
    loyalty_points_earned,
    q2,
    to_decimal,
    validate_split_payments,
)

# Whitelisted (table, column) pairs for day-scoped document numbers.
_NUMBERED = {
    "S": ("pos_sales", "sale_number", 4),
    "H": ("pos_held_orders", "hold_number", 3),
    "R": ("pos_refunds", "refund_number", 4),
}

SALE_COLUMNS = """
    id, sale_number, offline_id, terminal_id, subtotal, tax_amount, discount_amount,
    total_amount, payment_method, payment_status, payment_reference, payment_details,
    discount_id, customer_id, customer_name, customer_phone, customer_email,
    cashier_id, cashier_name, status, kitchen_status, kitchen_started_at,
    kitchen_completed_at, notes, voided_at, voided_by, void_reason, created_at, updated_at
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_document_number(cur, merchant_id: str, prefix: str, day: date) -> str:
    table, column, width = _NUMBERED[prefix]
    # Serialize numbering per merchant/prefix for the rest of the transaction.
    cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (f"{merchant_id}:{prefix}",))
    pattern = document_number(prefix, day, 0, width)[:-width] + "%"
    cur.execute(
        f"""
        SELECT COALESCE(MAX(split_part({column}, '-', 2)::int), 0) AS seq
        FROM {table}
        WHERE merchant_id = %s AND {column} LIKE %s
        """,
        (merchant_id, pattern),
    )
    seq = int((cur.fetchone() or {}).get("seq") or 0)
    return document_number(prefix, day, seq + 1, width)


def lock_products(cur, merchant_id: str, product_ids: list[str]) -> dict[str, dict]:
    if not product_ids:
        return {}
    cur.execute(
        """
        SELECT id, name, sku, price, tax_rate, track_inventory, stock_quantity, is_active
        FROM pos_products
        WHERE merchant_id = %s AND id = ANY(%s::uuid[])
        ORDER BY id
        FOR UPDATE
        """,
        (merchant_id, sorted(set(product_ids))),
    )
    return {str(r["id"]): r for r in cur.fetchall() or []}


def stock_target(current: Decimal, change_type: str, quantity: Decimal) -> Decimal:
    """New stock level: restock adds, damage subtracts, adjustment sets the count."""
    if change_type == "adjustment":
        return quantity
    if change_type == "damage":
        return current - quantity
    return current + quantity


def apply_stock_change(
    cur,
    merchant_id: str,
    product: dict,
    change: Decimal,
    log_type: str,
    *,
    reference_type: Optional[str] = None,
    reference_id=None,
    notes: Optional[str] = None,
    user_id=None,
    absolute: Optional[Decimal] = None,
) -> Optional[Decimal]:
    """
    Move stock for a product row locked by `lock_products`. Untracked products
    are left alone and return None. `absolute` sets the level outright
    (adjustments); otherwise `change` is added.
    """
    if not product.get("track_inventory"):
        return None
    before = to_decimal(product.get("stock_quantity"))
    after = to_decimal(absolute) if absolute is not None else before + to_decimal(change)
    cur.execute(
        """
        UPDATE pos_products
        SET stock_quantity = %s, updated_at = now()
        WHERE merchant_id = %s AND id = %s
        """,
        (after, merchant_id, product["id"]),
    )
    cur.execute(
        """
        INSERT INTO pos_inventory_log
          (id, merchant_id, product_id, type, quantity_change, quantity_before, quantity_after,
           reference_type, reference_id, notes, created_by)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """,
        (
            merchant_id,
            product["id"],
            log_type,
            after - before,
            before,
            after,
            reference_type,
            reference_id,
            notes,
            user_id,
        ),
    )
    product["stock_quantity"] = after
    return after


def resolve_discount_code(cur, merchant_id: str, code: str, now: Optional[datetime] = None) -> dict:
    now = now or _utcnow()
    cur.execute(
        """
        SELECT id, name, code, type, value, min_purchase, max_discount, applies_to,
               start_date, end_date, usage_limit, usage_count, is_active
        FROM pos_discounts
        WHERE merchant_id = %s AND code = %s AND is_active = true
        """,
        (merchant_id, (code or "").strip().upper()),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="discount code not found")
    check_discount_window(row, now)
    return row


def check_discount_window(row: dict, now: datetime) -> None:
    start, end = row.get("start_date"), row.get("end_date")
    if start is not None and _aware(start) > _aware(now):
        raise HTTPException(status_code=400, detail="discount code is not yet active")
    if end is not None and _aware(end) < _aware(now):
        raise HTTPException(status_code=400, detail="discount code has expired")
    limit = row.get("usage_limit")
    if limit is not None and int(row.get("usage_count") or 0) >= int(limit):
        raise HTTPException(status_code=400, detail="discount code usage limit reached")


def _aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def post_customer_credit(
    cur,
    merchant_id: str,
    customer_id: str,
    amount: Decimal,
    *,
    sale_id=None,
    notes: Optional[str] = None,
    user_id=None,
) -> dict:
    amount = q2(amount)
    if amount <= 0:
        raise HTTPException(status_code=400, detail="credit amount must be > 0")
    cur.execute(
        """
        SELECT id, credit_limit, credit_balance, total_purchases
        FROM pos_customers
        WHERE merchant_id = %s AND id = %s
        FOR UPDATE
        """,
        (merchant_id, customer_id),
    )
    c = cur.fetchone()
    if not c:
        raise HTTPException(status_code=404, detail="customer not found")
    before = to_decimal(c["credit_balance"])
    assert_credit_available(to_decimal(c["credit_limit"]), before, amount)
    after = before + amount
    cur.execute(
        """
        UPDATE pos_customers
        SET credit_balance = %s, total_purchases = total_purchases + %s, updated_at = now()
        WHERE id = %s
        """,
        (after, amount, customer_id),
    )
    cur.execute(
        """
        INSERT INTO pos_credit_transactions
          (id, merchant_id, customer_id, sale_id, type, amount, balance_before, balance_after, notes, created_by)
        VALUES
          (gen_random_uuid(), %s, %s, %s, 'credit', %s, %s, %s, %s, %s)
        RETURNING id, customer_id, sale_id, type, amount, balance_before, balance_after, notes, created_at
        """,
        (merchant_id, customer_id, sale_id, amount, before, after, notes, user_id),
    )
    return cur.fetchone()


def active_loyalty_program(cur, merchant_id: str) -> Optional[dict]:
    cur.execute(
        """
        SELECT id, name, points_per_currency, points_value, min_redeem_points, max_redeem_percent, is_active
        FROM pos_loyalty_programs
        WHERE merchant_id = %s AND is_active = true
        ORDER BY created_at DESC
        LIMIT 1
        """,
        (merchant_id,),
    )
    return cur.fetchone()


def add_loyalty_points(cur, merchant_id: str, customer_id: str, points: int) -> dict:
    cur.execute(
        """
        INSERT INTO pos_loyalty_points (id, merchant_id, customer_id, points_balance, total_earned)
        VALUES (gen_random_uuid(), %s, %s, %s, %s)
        ON CONFLICT (merchant_id, customer_id) DO UPDATE
        SET points_balance = pos_loyalty_points.points_balance + EXCLUDED.points_balance,
            total_earned = pos_loyalty_points.total_earned + EXCLUDED.total_earned,
            updated_at = now()
        RETURNING customer_id, points_balance, total_earned, total_redeemed
        """,
        (merchant_id, customer_id, points, points),
    )
    return cur.fetchone()


def earn_points_for_sale(cur, merchant_id: str, customer_id: Optional[str], amount: Decimal) -> int:
    if not customer_id:
        return 0
    program = active_loyalty_program(cur, merchant_id)
    if not program:
        return 0
    points = loyalty_points_earned(amount, program["points_per_currency"])
    if points <= 0:
        return 0
    add_loyalty_points(cur, merchant_id, customer_id, points)
    return points


def find_sale_by_offline_id(cur, merchant_id: str, offline_id: Optional[str]) -> Optional[dict]:
    if not offline_id:
        return None
    cur.execute(
        f"SELECT {SALE_COLUMNS} FROM pos_sales WHERE merchant_id = %s AND offline_id = %s",
        (merchant_id, offline_id),
    )
    return cur.fetchone()


def post_sale(
    cur,
    merchant_id: str,
    data: dict,
    *,
    user_id=None,
    terminal_id=None,
    default_tax_rate: Decimal = Decimal("0"),
    now: Optional[datetime] = None,
) -> dict:
    """
    Turn a cart into a completed sale. `data` carries the cart lines under
    `items` plus payment, customer and discount-code fields. Prices and totals
    are recomputed here; client totals are ignored. Replaying the same
    `offline_id` returns the sale posted the first time.
    """
    now = now or _utcnow()
    existing = find_sale_by_offline_id(cur, merchant_id, data.get("offline_id"))
    if existing:
        return {"sale": existing, "items": load_sale_items(cur, existing["id"]), "duplicate": True}

    items = list(data.get("items") or [])
    if not items:
        raise HTTPException(status_code=400, detail="sale must have at least one item")
    for it in items:
        if to_decimal(it.get("quantity")) <= 0:
            raise HTTPException(status_code=400, detail="quantity must be > 0")
        # Offline replays reach here without the request model, so bounds are checked again.
        if it.get("unit_price") is not None and to_decimal(it["unit_price"]) < 0:
            raise HTTPException(status_code=400, detail="unit_price must be >= 0")
        if to_decimal(it.get("discount")) < 0:
            raise HTTPException(status_code=400, detail="discount must be >= 0")

    products = lock_products(cur, merchant_id, [str(it["product_id"]) for it in items])
    lines = []
    for it in items:
        p = products.get(str(it["product_id"]))
        if not p:
            raise HTTPException(status_code=400, detail=f"unknown product: {it['product_id']}")
        if not p.get("is_active"):
            raise HTTPException(status_code=400, detail=f"product is inactive: {p['name']}")
        price = it.get("unit_price")
        lines.append(
            CartLine(
                product_id=str(p["id"]),
                product_name=p["name"],
                product_sku=p.get("sku"),
                unit_price=to_decimal(price if price is not None else p["price"]),
                quantity=to_decimal(it["quantity"]),
                discount=to_decimal(it.get("discount")),
                discount_type=it.get("discount_type"),
                tax_rate=p.get("tax_rate"),
                notes=it.get("notes"),
            )
        )

    discount_row = None
    code_discount = Decimal("0")
    if data.get("discount_code"):
        discount_row = resolve_discount_code(cur, merchant_id, data["discount_code"], now)
        # Minimum purchase and percentage apply to the gross subtotal; cart_totals
        # caps the result at what is left after item discounts.
        pre = cart_totals(lines, Decimal("0"), default_tax_rate)
        code_discount = calculate_discount(discount_row, pre.subtotal)
    totals = cart_totals(lines, code_discount, default_tax_rate)

    payment_method = data.get("payment_method") or "cash"
    payments = [dict(p) for p in data.get("payments") or []]
    customer_id = str(data["customer_id"]) if data.get("customer_id") else None
    details: dict = {}
    if payment_method == "split":
        validate_split_payments(payments, totals.total)
        details["payments"] = [
            {"method": p["method"], "amount": str(q2(p["amount"])), "reference": p.get("reference")} for p in payments
        ]
    if data.get("amount_received") is not None:
        received = to_decimal(data["amount_received"])
        if payment_method == "cash" and received < totals.total:
            raise HTTPException(status_code=400, detail="amount received is less than the sale total")
        details["amount_received"] = str(q2(received))
        details["change"] = str(change_due(received, totals.total))

    credit_amount = Decimal("0")
    if payment_method == "credit":
        credit_amount = totals.total
    elif payment_method == "split":
        credit_amount = sum((to_decimal(p["amount"]) for p in payments if p.get("method") == "credit"), Decimal("0"))
    if credit_amount > 0 and not customer_id:
        raise HTTPException(status_code=400, detail="credit sales require a customer")

    sale_number = next_document_number(cur, merchant_id, "S", (data.get("created_at") or now).date())
    cur.execute(
        f"""
        INSERT INTO pos_sales
          (id, merchant_id, terminal_id, sale_number, offline_id, subtotal, tax_amount, discount_amount,
           total_amount, payment_method, payment_status, payment_reference, payment_details, discount_id,
           customer_id, customer_name, customer_phone, customer_email, cashier_id, cashier_name,
           status, kitchen_status, notes, created_at, updated_at)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s,
           %s, %s, 'completed', %s, %s::jsonb, %s,
           %s, %s, %s, %s, %s, %s,
           'completed', 'new', %s, %s, now())
        RETURNING {SALE_COLUMNS}
        """,
        (
            merchant_id,
            terminal_id,
            sale_number,
            data.get("offline_id"),
            totals.subtotal,
            totals.tax_amount,
            totals.total_discount,
            totals.total,
            payment_method,
            data.get("payment_reference"),
            json.dumps(details) if details else None,
            discount_row["id"] if discount_row else None,
            customer_id,
            data.get("customer_name"),
            data.get("customer_phone"),
            data.get("customer_email"),
            data.get("cashier_id"),
            data.get("cashier_name"),
            data.get("notes"),
            data.get("created_at") or now,
        ),
    )
    sale = cur.fetchone()
    sale_id = sale["id"]

    for ln in totals.lines:
        cur.execute(
            """
            INSERT INTO pos_sale_items
              (id, sale_id, product_id, product_name, product_sku, quantity, unit_price,
               discount_amount, tax_amount, total_price, notes)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                sale_id,
                ln["product_id"],
                ln["product_name"],
                ln["product_sku"],
                ln["quantity"],
                ln["unit_price"],
                ln["discount_amount"],
                ln["tax_amount"],
                ln["total_price"],
                ln["notes"],
            ),
        )
        apply_stock_change(
            cur,
            merchant_id,
            products[ln["product_id"]],
            -to_decimal(ln["quantity"]),
            "sale",
            reference_type="sale",
            reference_id=sale_id,
            user_id=user_id,
        )

    if discount_row:
        # The row lock taken here makes concurrent tills re-check the limit.
        cur.execute(
            """
            UPDATE pos_discounts
            SET usage_count = usage_count + 1, updated_at = now()
            WHERE id = %s AND (usage_limit IS NULL OR usage_count < usage_limit)
            RETURNING id
            """,
            (discount_row["id"],),
        )
        if not cur.fetchone():
            raise HTTPException(status_code=400, detail="discount code usage limit reached")

    if credit_amount > 0:
        post_customer_credit(
            cur,
            merchant_id,
            customer_id,
            credit_amount,
            sale_id=sale_id,
            notes=f"Sale {sale_number}",
            user_id=user_id,
        )
    elif customer_id:
        cur.execute(
            "UPDATE pos_customers SET total_purchases = total_purchases + %s, updated_at = now() WHERE merchant_id = %s AND id = %s",
            (totals.total, merchant_id, customer_id),
        )

    points = earn_points_for_sale(cur, merchant_id, customer_id, totals.total)
    return {
        "sale": sale,
        "items": totals.lines,
        "totals": totals.as_dict(),
        "loyalty_points_earned": points,
        "duplicate": False,
    }


def load_sale_items(cur, sale_id) -> list[dict]:
    cur.execute(
        """
        SELECT id, product_id, product_name, product_sku, quantity, unit_price,
               discount_amount, tax_amount, total_price, notes
        FROM pos_sale_items
        WHERE sale_id = %s
        ORDER BY product_name
        """,
        (sale_id,),
    )
    return cur.fetchall() or []


def restore_sale_stock(
    cur,
    merchant_id: str,
    items: list[dict],
    *,
    reference_type: str,
    reference_id,
    notes: Optional[str],
    user_id=None,
) -> int:
    """Put sold quantities back on the shelf. Returns the number of lines restocked."""
    rows = [it for it in items or [] if it.get("product_id")]
    products = lock_products(cur, merchant_id, [str(it["product_id"]) for it in rows])
    restored = 0
    for it in rows:
        p = products.get(str(it["product_id"]))
        if not p:
            continue
        if apply_stock_change(
            cur,
            merchant_id,
            p,
            to_decimal(it.get("quantity")),
            "return",
            reference_type=reference_type,
            reference_id=reference_id,
            notes=notes,
            user_id=user_id,
        ) is not None:
            restored += 1
    return restored


def set_kitchen_status(cur, merchant_id: str, sale_id, to_status: str, now: Optional[datetime] = None) -> dict:
    stamps = transition_stamps(to_status, now or _utcnow())
    # An order back on the line (recall) is no longer done.
    reopened = to_status in ("new", "preparing")
    cur.execute(
        f"""
        UPDATE pos_sales
        SET kitchen_status = %s,
            kitchen_started_at = COALESCE(%s, kitchen_started_at),
            kitchen_completed_at = CASE WHEN %s THEN NULL ELSE COALESCE(%s, kitchen_completed_at) END,
            updated_at = now()
        WHERE merchant_id = %s AND id = %s
        RETURNING {SALE_COLUMNS}
        """,
        (to_status, stamps.get("started_at"), reopened, stamps.get("completed_at"), merchant_id, sale_id),
    )
    return cur.fetchone()
