from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import date, datetime, timedelta
from decimal import Decimal
import uuid
import json

from ..config import settings
from ..db import get_conn, set_merchant_context
from ..deps import get_merchant_id, require_merchant_access, require_permission, get_current_user
from ..payment_guards import assert_refund_within_sale
from ..posting import SALE_COLUMNS, next_document_number, post_sale, restore_sale_stock, load_sale_items
from ..pricing import q2, to_decimal
from ..validation import DiscountCode, DiscountType, PaymentMethod, RefundMethod, RefundType, TenderMethod

router = APIRouter(prefix="/pos", tags=["sales"])


class SaleItemIn(BaseModel):
    product_id: uuid.UUID
    quantity: Decimal
    # Price override; the catalog price is used when omitted.
    unit_price: Optional[Decimal] = Field(default=None, ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    discount_type: Optional[DiscountType] = None
    notes: Optional[str] = None


class SplitPaymentIn(BaseModel):
    method: TenderMethod
    amount: Decimal
    reference: Optional[str] = None


class SaleCreateIn(BaseModel):
    items: List[SaleItemIn]
    payment_method: PaymentMethod = "cash"
    payments: Optional[List[SplitPaymentIn]] = None
    amount_received: Optional[Decimal] = None
    payment_reference: Optional[str] = None
    discount_code: Optional[DiscountCode] = None
    customer_id: Optional[uuid.UUID] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    cashier_id: Optional[uuid.UUID] = None
    cashier_name: Optional[str] = None
    terminal_id: Optional[uuid.UUID] = None
    offline_id: Optional[str] = None
    notes: Optional[str] = None


class VoidIn(BaseModel):
    reason: str


class RefundItemIn(BaseModel):
    product_id: uuid.UUID
    quantity: Decimal


class RefundIn(BaseModel):
    refund_type: RefundType
    refund_method: RefundMethod = "original"
    reason: str
    # Required for partial refunds; full refunds use the remaining refundable amount.
    refund_amount: Optional[Decimal] = None
    # Goods coming back on a partial refund; omit for a money-only refund.
    items: Optional[List[RefundItemIn]] = None


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, datetime.min.time())
    return start, start + timedelta(days=1)


@router.post("/sales", dependencies=[Depends(require_permission("pos:sell"))])
def create_sale(
    data: SaleCreateIn,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
    user=Depends(get_current_user),
):
    if data.payment_method == "split" and not data.payments:
        raise HTTPException(status_code=400, detail="split payments require a payments list")
    payload = data.model_dump()
    payload["items"] = [it.model_dump() for it in data.items]
    payload["payments"] = [p.model_dump() for p in data.payments or []]
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            return post_sale(
                cur,
                merchant_id,
                payload,
                user_id=user["user_id"],
                terminal_id=data.terminal_id,
                default_tax_rate=settings.default_tax_rate,
            )


@router.get("/sales", dependencies=[Depends(require_permission("pos:read"))])
def list_sales(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    if limit <= 0 or limit > 500:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
    if status and status not in {"completed", "voided", "refunded"}:
        raise HTTPException(status_code=400, detail="invalid status")
    where = ["merchant_id = %s"]
    params: list = [merchant_id]
    if start_date:
        where.append("created_at >= %s")
        params.append(_day_bounds(start_date)[0])
    if end_date:
        where.append("created_at < %s")
        params.append(_day_bounds(end_date)[1])
    if status:
        where.append("status = %s")
        params.append(status)
    clause = " AND ".join(where)
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*)::int AS count FROM pos_sales WHERE {clause}", params)
            total = (cur.fetchone() or {}).get("count") or 0
            cur.execute(
                f"""
                SELECT {SALE_COLUMNS}
                FROM pos_sales
                WHERE {clause}
                ORDER BY created_at DESC
                LIMIT %s OFFSET %s
                """,
                params + [limit, offset],
            )
            return {"sales": cur.fetchall(), "total": total}


def _load_sale(cur, merchant_id: str, sale_id: str, for_update: bool = False) -> dict:
    sql = f"SELECT {SALE_COLUMNS} FROM pos_sales WHERE merchant_id = %s AND id = %s"
    if for_update:
        sql += " FOR UPDATE"
    cur.execute(sql, (merchant_id, sale_id))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="sale not found")
    return row


@router.get("/sales/{sale_id}", dependencies=[Depends(require_permission("pos:read"))])
def get_sale(sale_id: uuid.UUID, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            sale = _load_sale(cur, merchant_id, str(sale_id))
            return {"sale": sale, "items": load_sale_items(cur, sale["id"])}


@router.post("/sales/{sale_id}/void", dependencies=[Depends(require_permission("pos:refund"))])
def void_sale(
    sale_id: uuid.UUID,
    data: VoidIn,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
    user=Depends(get_current_user),
):
    reason = (data.reason or "").strip()
    if not reason:
        raise HTTPException(status_code=400, detail="void reason is required")
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            sale = _load_sale(cur, merchant_id, str(sale_id), for_update=True)
            if sale["status"] != "completed":
                raise HTTPException(status_code=409, detail=f"cannot void a {sale['status']} sale")
            cur.execute(
                f"""
                UPDATE pos_sales
                SET status = 'voided',
                    voided_at = now(),
                    voided_by = %s,
                    void_reason = %s,
                    kitchen_status = CASE WHEN kitchen_status IN ('completed', 'cancelled')
                                          THEN kitchen_status ELSE 'cancelled' END,
                    updated_at = now()
                WHERE id = %s
                RETURNING {SALE_COLUMNS}
                """,
                (user["user_id"], reason, str(sale_id)),
            )
            voided = cur.fetchone()
            restored = restore_sale_stock(
                cur,
                merchant_id,
                load_sale_items(cur, sale["id"]),
                reference_type="sale",
                reference_id=sale["id"],
                notes=f"Void: {reason}",
                user_id=user["user_id"],
            )
            return {"sale": voided, "restocked_lines": restored}


def _prior_refunds(cur, merchant_id: str, sale_id: str) -> tuple[Decimal, dict[str, Decimal]]:
    """Money refunded so far and the quantities already returned, per product."""
    cur.execute(
        "SELECT refund_amount, items FROM pos_refunds WHERE merchant_id = %s AND sale_id = %s",
        (merchant_id, sale_id),
    )
    amount = Decimal("0")
    returned: dict[str, Decimal] = {}
    for row in cur.fetchall() or []:
        amount += to_decimal(row.get("refund_amount"))
        items = row.get("items") or []
        if isinstance(items, str):
            items = json.loads(items)
        for it in items:
            key = str(it.get("product_id"))
            returned[key] = returned.get(key, Decimal("0")) + to_decimal(it.get("quantity"))
    return amount, returned


def _refund_lines(
    sale_items: list[dict],
    requested: Optional[list[RefundItemIn]],
    returned: Optional[dict[str, Decimal]] = None,
    full: bool = False,
) -> list[dict]:
    """
    Quantities going back on the shelf. A full refund takes back whatever has
    not been returned yet; a partial refund takes back only the listed items
    (nothing for a money-only refund) and never more than is still returnable.
    """
    remaining: dict[str, Decimal] = {}
    for it in sale_items:
        if it.get("product_id"):
            key = str(it["product_id"])
            remaining[key] = remaining.get(key, Decimal("0")) + to_decimal(it["quantity"])
    for key, qty in (returned or {}).items():
        if key in remaining:
            remaining[key] -= qty

    if full:
        return [{"product_id": key, "quantity": qty} for key, qty in remaining.items() if qty > 0]

    out = []
    for r in requested or []:
        key = str(r.product_id)
        if key not in remaining:
            raise HTTPException(status_code=400, detail=f"product {key} is not on this sale")
        if r.quantity <= 0:
            raise HTTPException(status_code=400, detail=f"invalid refund quantity for product {key}")
        if r.quantity > remaining[key]:
            raise HTTPException(
                status_code=400,
                detail=f"refund quantity exceeds returnable quantity for product {key} ({max(remaining[key], Decimal('0'))})",
            )
        remaining[key] -= r.quantity
        out.append({"product_id": key, "quantity": r.quantity})
    return out


@router.post("/sales/{sale_id}/refunds", dependencies=[Depends(require_permission("pos:refund"))])
def refund_sale(
    sale_id: uuid.UUID,
    data: RefundIn,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
    user=Depends(get_current_user),
):
    reason = (data.reason or "").strip()
    if not reason:
        raise HTTPException(status_code=400, detail="refund reason is required")
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            sale = _load_sale(cur, merchant_id, str(sale_id), for_update=True)
            if sale["status"] == "refunded":
                raise HTTPException(status_code=409, detail="sale already fully refunded")
            if sale["status"] == "voided":
                raise HTTPException(status_code=409, detail="cannot refund a voided sale")

            already, returned = _prior_refunds(cur, merchant_id, str(sale_id))
            total = to_decimal(sale["total_amount"])
            if data.refund_type == "full":
                amount = q2(total - already)
            else:
                if data.refund_amount is None:
                    raise HTTPException(status_code=400, detail="refund_amount is required for partial refunds")
                amount = q2(data.refund_amount)
            assert_refund_within_sale(total, already, amount)

            items = _refund_lines(
                load_sale_items(cur, sale["id"]), data.items, returned, full=data.refund_type == "full"
            )
            refund_number = next_document_number(cur, merchant_id, "R", date.today())
            cur.execute(
                """
                INSERT INTO pos_refunds
                  (id, merchant_id, sale_id, refund_number, refund_type, refund_amount, refund_method, items, reason, refunded_by)
                VALUES
                  (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s)
                RETURNING id, sale_id, refund_number, refund_type, refund_amount, refund_method, items, reason, refunded_by, created_at
                """,
                (
                    merchant_id,
                    str(sale_id),
                    refund_number,
                    data.refund_type,
                    amount,
                    data.refund_method,
                    json.dumps([{"product_id": i["product_id"], "quantity": str(i["quantity"])} for i in items]),
                    reason,
                    user["user_id"],
                ),
            )
            refund = cur.fetchone()

            fully = data.refund_type == "full" or (already + amount) >= total
            cur.execute(
                """
                UPDATE pos_sales
                SET status = %s, payment_status = %s, updated_at = now()
                WHERE id = %s
                """,
                ("refunded" if fully else sale["status"], "refunded" if fully else "partial_refund", str(sale_id)),
            )
            restore_sale_stock(
                cur,
                merchant_id,
                items,
                reference_type="refund",
                reference_id=refund["id"],
                notes=f"Refund: {reason}",
                user_id=user["user_id"],
            )
            return {"refund": refund}


@router.get("/refunds", dependencies=[Depends(require_permission("pos:read"))])
def list_refunds(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: int = 100,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    if limit <= 0 or limit > 500:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
    sql = """
        SELECT r.id, r.sale_id, s.sale_number, r.refund_number, r.refund_type, r.refund_amount,
               r.refund_method, r.items, r.reason, r.refunded_by, r.created_at
        FROM pos_refunds r
        JOIN pos_sales s ON s.id = r.sale_id
        WHERE r.merchant_id = %s
    """
    params: list = [merchant_id]
    if start_date:
        sql += " AND r.created_at >= %s"
        params.append(_day_bounds(start_date)[0])
    if end_date:
        sql += " AND r.created_at < %s"
        params.append(_day_bounds(end_date)[1])
    sql += " ORDER BY r.created_at DESC LIMIT %s"
    params.append(limit)
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return {"refunds": cur.fetchall()}


def summarize_sales(sales: list[dict], items: list[dict]) -> dict:
    count = len(sales)
    revenue = q2(sum((to_decimal(s.get("total_amount")) for s in sales), Decimal("0")))

    by_product: dict[str, dict] = {}
    for it in items:
        key = it.get("product_name") or "unknown"
        row = by_product.setdefault(key, {"name": key, "quantity": Decimal("0"), "revenue": Decimal("0")})
        row["quantity"] += to_decimal(it.get("quantity"))
        row["revenue"] += to_decimal(it.get("total_price"))
    top = sorted(by_product.values(), key=lambda r: r["revenue"], reverse=True)[:5]

    by_method: dict[str, dict] = {}
    for s in sales:
        m = s.get("payment_method") or "cash"
        row = by_method.setdefault(m, {"method": m, "count": 0, "amount": Decimal("0")})
        row["count"] += 1
        row["amount"] += to_decimal(s.get("total_amount"))

    return {
        "total_sales": count,
        "total_amount": revenue,
        "average_ticket": q2(revenue / count) if count else Decimal("0.00"),
        "top_products": [{**r, "revenue": q2(r["revenue"])} for r in top],
        "payment_breakdown": [{**r, "amount": q2(r["amount"])} for r in by_method.values()],
    }


@router.get("/reports/daily-summary", dependencies=[Depends(require_permission("pos:read"))])
def daily_summary(
    day: Optional[date] = None,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    start, end = _day_bounds(day or date.today())
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, total_amount, payment_method
                FROM pos_sales
                WHERE merchant_id = %s AND status = 'completed'
                  AND created_at >= %s AND created_at < %s
                """,
                (merchant_id, start, end),
            )
            sales = cur.fetchall() or []
            items: list[dict] = []
            if sales:
                cur.execute(
                    """
                    SELECT product_name, quantity, total_price
                    FROM pos_sale_items
                    WHERE sale_id = ANY(%s::uuid[])
                    """,
                    ([str(s["id"]) for s in sales],),
                )
                items = cur.fetchall() or []
    return {"date": (day or date.today()).isoformat(), **summarize_sales(sales, items)}


def render_receipt(merchant: dict, sale: dict, items: list[dict], currency: str) -> str:
    width = 40
    out = [
        (merchant.get("name") or "").center(width).rstrip(),
    ]
    if merchant.get("phone"):
        out.append(str(merchant["phone"]).center(width).rstrip())
    out.append("-" * width)
    out.append(f"Sale: {sale['sale_number']}")
    created = sale.get("created_at")
    if created:
        out.append(f"Date: {created.strftime('%Y-%m-%d %H:%M')}")
    if sale.get("cashier_name"):
        out.append(f"Cashier: {sale['cashier_name']}")
    out.append("-" * width)
    for it in items:
        out.append(str(it["product_name"])[:width])
        qty = to_decimal(it["quantity"]).normalize()
        left = f"  {qty} x {q2(it['unit_price'])}"
        right = f"{q2(it['total_price'])}"
        out.append(left + right.rjust(width - len(left)))
    out.append("-" * width)

    def _row(label: str, value) -> str:
        text = f"{currency} {q2(value)}"
        return label + text.rjust(width - len(label))

    out.append(_row("Subtotal", sale["subtotal"]))
    if to_decimal(sale.get("discount_amount")) > 0:
        out.append(_row("Discount", -to_decimal(sale["discount_amount"])))
    if to_decimal(sale.get("tax_amount")) > 0:
        out.append(_row("Tax", sale["tax_amount"]))
    out.append(_row("TOTAL", sale["total_amount"]))
    out.append(f"Paid by: {sale['payment_method']}")
    details = sale.get("payment_details") or {}
    if isinstance(details, str):
        details = json.loads(details)
    if details.get("change") is not None:
        out.append(_row("Change", details["change"]))
    if sale.get("status") != "completed":
        out.append(f"*** {str(sale['status']).upper()} ***".center(width).rstrip())
    out.append("-" * width)
    out.append((merchant.get("receipt_footer") or "Thank you!").center(width).rstrip())
    return "\n".join(out) + "\n"


@router.get("/sales/{sale_id}/receipt", response_class=PlainTextResponse, dependencies=[Depends(require_permission("pos:read"))])
def sale_receipt(sale_id: uuid.UUID, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            sale = _load_sale(cur, merchant_id, str(sale_id))
            items = load_sale_items(cur, sale["id"])
            cur.execute("SELECT name, phone, receipt_footer FROM merchants WHERE id = %s", (merchant_id,))
            merchant = cur.fetchone() or {}
    return render_receipt(merchant, sale, items, settings.currency)
