from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
import uuid

from ..db import get_conn, set_merchant_context
from ..deps import get_merchant_id, require_merchant_access, require_permission
from ..posting import resolve_discount_code
from ..pricing import calculate_discount
from ..validation import DiscountCode, DiscountScope, DiscountType
from .catalog import build_update

router = APIRouter(prefix="/pos/discounts", tags=["discounts"])

DISCOUNT_COLUMNS = """
    id, name, code, type, value, min_purchase, max_discount, applies_to, category_ids, product_ids,
    start_date, end_date, usage_limit, usage_count, is_active, created_at, updated_at
"""
_DISCOUNT_FIELDS = (
    "name", "code", "type", "value", "min_purchase", "max_discount", "applies_to",
    "category_ids", "product_ids", "start_date", "end_date", "usage_limit", "is_active",
)


class DiscountIn(BaseModel):
    name: str
    type: DiscountType
    value: Decimal
    code: Optional[DiscountCode] = None
    min_purchase: Optional[Decimal] = None
    max_discount: Optional[Decimal] = None
    applies_to: DiscountScope = "cart"
    category_ids: Optional[List[uuid.UUID]] = None
    product_ids: Optional[List[uuid.UUID]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    usage_limit: Optional[int] = None


class DiscountUpdate(BaseModel):
    name: Optional[str] = None
    type: Optional[DiscountType] = None
    value: Optional[Decimal] = None
    code: Optional[DiscountCode] = None
    min_purchase: Optional[Decimal] = None
    max_discount: Optional[Decimal] = None
    applies_to: Optional[DiscountScope] = None
    category_ids: Optional[List[uuid.UUID]] = None
    product_ids: Optional[List[uuid.UUID]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    usage_limit: Optional[int] = None
    is_active: Optional[bool] = None


def validate_discount_rule(type_: Optional[str], value: Optional[Decimal], start=None, end=None) -> None:
    if value is not None and value <= 0:
        raise HTTPException(status_code=400, detail="value must be > 0")
    if type_ == "percentage" and value is not None and value > 100:
        raise HTTPException(status_code=400, detail="percentage discounts cannot exceed 100")
    if start and end and end < start:
        raise HTTPException(status_code=400, detail="end_date must be after start_date")


def _uuid_list(values) -> Optional[list[str]]:
    if values is None:
        return None
    return [str(v) for v in values]


@router.get("", dependencies=[Depends(require_permission("pos:read"))])
def list_discounts(
    active_only: bool = True,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    sql = f"SELECT {DISCOUNT_COLUMNS} FROM pos_discounts WHERE merchant_id = %s"
    if active_only:
        sql += " AND is_active = true"
    sql += " ORDER BY created_at DESC"
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(sql, (merchant_id,))
            return {"discounts": cur.fetchall()}


@router.post("", dependencies=[Depends(require_permission("pos:manage"))])
def create_discount(data: DiscountIn, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    validate_discount_rule(data.type, data.value, data.start_date, data.end_date)
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO pos_discounts
                  (id, merchant_id, name, code, type, value, min_purchase, max_discount, applies_to,
                   category_ids, product_ids, start_date, end_date, usage_limit, usage_count)
                VALUES
                  (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s::uuid[], %s::uuid[], %s, %s, %s, 0)
                RETURNING {DISCOUNT_COLUMNS}
                """,
                (
                    merchant_id,
                    data.name,
                    data.code,
                    data.type,
                    data.value,
                    data.min_purchase,
                    data.max_discount,
                    data.applies_to,
                    _uuid_list(data.category_ids),
                    _uuid_list(data.product_ids),
                    data.start_date,
                    data.end_date,
                    data.usage_limit,
                ),
            )
            return {"discount": cur.fetchone()}


@router.patch("/{discount_id}", dependencies=[Depends(require_permission("pos:manage"))])
def update_discount(
    discount_id: uuid.UUID,
    data: DiscountUpdate,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    validate_discount_rule(data.type, data.value, data.start_date, data.end_date)
    sets, params = build_update(data, _DISCOUNT_FIELDS)
    if not sets:
        raise HTTPException(status_code=400, detail="no fields to update")
    patch = data.model_dump(exclude_unset=True)
    for i, k in enumerate(k for k in _DISCOUNT_FIELDS if k in patch):
        if k in {"category_ids", "product_ids"}:
            sets[i] = f"{k} = %s::uuid[]"
            params[i] = _uuid_list(patch[k])
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE pos_discounts
                SET {', '.join(sets)}, updated_at = now()
                WHERE merchant_id = %s AND id = %s
                RETURNING {DISCOUNT_COLUMNS}
                """,
                params + [merchant_id, str(discount_id)],
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="discount not found")
            return {"discount": row}


@router.delete("/{discount_id}", dependencies=[Depends(require_permission("pos:manage"))])
def delete_discount(discount_id: uuid.UUID, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE pos_discounts SET is_active = false, updated_at = now()
                WHERE merchant_id = %s AND id = %s
                RETURNING id
                """,
                (merchant_id, str(discount_id)),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="discount not found")
    return {"ok": True}


@router.get("/by-code/{code}", dependencies=[Depends(require_permission("pos:read"))])
def get_discount_by_code(
    code: str,
    subtotal: Optional[Decimal] = None,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            row = resolve_discount_code(cur, merchant_id, code)
    out = {"discount": row}
    if subtotal is not None:
        out["discount_amount"] = calculate_discount(row, subtotal)
    return out
