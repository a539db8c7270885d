from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel
from typing import List, Optional
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
import uuid
import json

from ..config import settings
from ..db import get_conn, set_merchant_context
from ..deps import get_merchant_id, require_merchant_access, require_permission, get_current_user
from ..posting import next_document_number
from ..pricing import CartLine, cart_totals
from ..validation import DiscountType

router = APIRouter(prefix="/pos/held-orders", tags=["held-orders"])

HELD_COLUMNS = """
    id, hold_number, customer_name, customer_phone, items, subtotal, discount_amount,
    notes, held_by, held_at, expires_at, status
"""


class HeldItemIn(BaseModel):
    product_id: uuid.UUID
    product_name: str
    unit_price: Decimal
    quantity: Decimal
    discount: Decimal = Decimal("0")
    discount_type: Optional[DiscountType] = None
    notes: Optional[str] = None


class HoldIn(BaseModel):
    items: List[HeldItemIn]
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    notes: Optional[str] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def effective_status(row: dict, now: datetime) -> str:
    status = row.get("status") or "held"
    expires = row.get("expires_at")
    if status == "held" and expires is not None:
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        if expires <= now:
            return "expired"
    return status


@router.post("", dependencies=[Depends(require_permission("pos:sell"))])
def hold_order(
    data: HoldIn,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
    user=Depends(get_current_user),
):
    if not data.items:
        raise HTTPException(status_code=400, detail="cannot hold an empty cart")
    lines = [
        CartLine(
            product_id=str(it.product_id),
            product_name=it.product_name,
            unit_price=it.unit_price,
            quantity=it.quantity,
            discount=it.discount,
            discount_type=it.discount_type,
            notes=it.notes,
        )
        for it in data.items
    ]
    totals = cart_totals(lines)
    now = _now()
    expires_at = now + timedelta(hours=settings.held_order_ttl_hours)
    items_json = json.dumps([it.model_dump(mode="json") for it in data.items])
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            hold_number = next_document_number(cur, merchant_id, "H", date.today())
            cur.execute(
                f"""
                INSERT INTO pos_held_orders
                  (id, merchant_id, hold_number, customer_name, customer_phone, items, subtotal,
                   discount_amount, notes, held_by, held_at, expires_at, status)
                VALUES
                  (gen_random_uuid(), %s, %s, %s, %s, %s::jsonb, %s, %s, %s, %s, %s, %s, 'held')
                RETURNING {HELD_COLUMNS}
                """,
                (
                    merchant_id,
                    hold_number,
                    data.customer_name,
                    data.customer_phone,
                    items_json,
                    totals.subtotal,
                    totals.item_discounts,
                    data.notes,
                    user["user_id"],
                    now,
                    expires_at,
                ),
            )
            return {"held_order": cur.fetchone()}


@router.get("", dependencies=[Depends(require_permission("pos:read"))])
def list_held_orders(
    include_expired: bool = False,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {HELD_COLUMNS}
                FROM pos_held_orders
                WHERE merchant_id = %s AND status = 'held'
                ORDER BY held_at DESC
                """,
                (merchant_id,),
            )
            rows = cur.fetchall() or []
    now = _now()
    out = []
    for r in rows:
        r["status"] = effective_status(r, now)
        if r["status"] == "expired" and not include_expired:
            continue
        out.append(r)
    return {"held_orders": out}


@router.post("/{order_id}/resume", dependencies=[Depends(require_permission("pos:sell"))])
def resume_held_order(
    order_id: uuid.UUID,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {HELD_COLUMNS} FROM pos_held_orders WHERE merchant_id = %s AND id = %s FOR UPDATE",
                (merchant_id, str(order_id)),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="held order not found")
            status = effective_status(row, _now())
            if status == "expired":
                raise HTTPException(status_code=409, detail="held order has expired")
            if status != "held":
                raise HTTPException(status_code=409, detail=f"held order is already {status}")
            cur.execute(
                f"""
                UPDATE pos_held_orders
                SET status = 'resumed', updated_at = now()
                WHERE id = %s
                RETURNING {HELD_COLUMNS}
                """,
                (str(order_id),),
            )
            return {"held_order": cur.fetchone()}


@router.delete("/{order_id}", dependencies=[Depends(require_permission("pos:sell"))])
def delete_held_order(
    order_id: uuid.UUID,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                "DELETE FROM pos_held_orders WHERE merchant_id = %s AND id = %s RETURNING id",
                (merchant_id, str(order_id)),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="held order not found")
    return {"ok": True}
