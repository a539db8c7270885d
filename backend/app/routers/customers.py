from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel
from typing import Optional
from decimal import Decimal
import uuid

from ..db import get_conn, set_merchant_context
from ..deps import get_merchant_id, require_merchant_access, require_permission, get_current_user
from ..posting import post_customer_credit
from ..pricing import q2, to_decimal
from ..validation import TenderMethod
from .catalog import build_update

router = APIRouter(prefix="/pos/customers", tags=["customers"])

CUSTOMER_COLUMNS = """
    id, name, phone, email, address, credit_limit, credit_balance, total_purchases,
    total_paid, is_active, notes, created_at, updated_at
"""
_CUSTOMER_FIELDS = ("name", "phone", "email", "address", "credit_limit", "is_active", "notes")


class CustomerIn(BaseModel):
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    credit_limit: Decimal = Decimal("0")
    notes: Optional[str] = None


class CustomerUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    credit_limit: Optional[Decimal] = None
    is_active: Optional[bool] = None
    notes: Optional[str] = None


class CreditIn(BaseModel):
    amount: Decimal
    sale_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None


class CustomerPaymentIn(BaseModel):
    amount: Decimal
    payment_method: TenderMethod = "cash"
    notes: Optional[str] = None


def apply_payment(balance: Decimal, amount: Decimal) -> Decimal:
    # Overpayments clear the tab; they are not held as a negative balance.
    return max(q2(to_decimal(balance) - to_decimal(amount)), Decimal("0.00"))


@router.get("", dependencies=[Depends(require_permission("pos:read"))])
def list_customers(
    q: Optional[str] = None,
    with_balance: bool = False,
    limit: int = 200,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    if limit <= 0 or limit > 1000:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 1000")
    sql = f"SELECT {CUSTOMER_COLUMNS} FROM pos_customers WHERE merchant_id = %s AND is_active = true"
    params: list = [merchant_id]
    if q and q.strip():
        needle = f"%{q.strip()}%"
        sql += " AND (name ILIKE %s OR phone ILIKE %s OR email ILIKE %s)"
        params.extend([needle, needle, needle])
    if with_balance:
        sql += " AND credit_balance > 0"
    sql += " ORDER BY name LIMIT %s"
    params.append(limit)
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return {"customers": cur.fetchall()}


@router.get("/{customer_id}", dependencies=[Depends(require_permission("pos:read"))])
def get_customer(customer_id: uuid.UUID, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {CUSTOMER_COLUMNS} FROM pos_customers WHERE merchant_id = %s AND id = %s",
                (merchant_id, str(customer_id)),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="customer not found")
            return {"customer": row}


@router.post("", dependencies=[Depends(require_permission("customers:write"))])
def create_customer(data: CustomerIn, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    name = (data.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    if data.credit_limit < 0:
        raise HTTPException(status_code=400, detail="credit_limit must be >= 0")
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO pos_customers (id, merchant_id, name, phone, email, address, credit_limit, notes)
                VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s)
                RETURNING {CUSTOMER_COLUMNS}
                """,
                (merchant_id, name, data.phone, data.email, data.address, q2(data.credit_limit), data.notes),
            )
            return {"customer": cur.fetchone()}


@router.patch("/{customer_id}", dependencies=[Depends(require_permission("customers:write"))])
def update_customer(
    customer_id: uuid.UUID,
    data: CustomerUpdate,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    if data.credit_limit is not None and data.credit_limit < 0:
        raise HTTPException(status_code=400, detail="credit_limit must be >= 0")
    sets, params = build_update(data, _CUSTOMER_FIELDS)
    if not sets:
        raise HTTPException(status_code=400, detail="no fields to update")
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE pos_customers
                SET {', '.join(sets)}, updated_at = now()
                WHERE merchant_id = %s AND id = %s
                RETURNING {CUSTOMER_COLUMNS}
                """,
                params + [merchant_id, str(customer_id)],
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="customer not found")
            return {"customer": row}


@router.delete("/{customer_id}", dependencies=[Depends(require_permission("customers:write"))])
def delete_customer(customer_id: uuid.UUID, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE pos_customers SET is_active = false, updated_at = now()
                WHERE merchant_id = %s AND id = %s
                RETURNING id
                """,
                (merchant_id, str(customer_id)),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="customer not found")
    return {"ok": True}


@router.post("/{customer_id}/credit", dependencies=[Depends(require_permission("pos:sell"))])
def add_customer_credit(
    customer_id: uuid.UUID,
    data: CreditIn,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
    user=Depends(get_current_user),
):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            tx = post_customer_credit(
                cur,
                merchant_id,
                str(customer_id),
                data.amount,
                sale_id=str(data.sale_id) if data.sale_id else None,
                notes=data.notes,
                user_id=user["user_id"],
            )
            return {"transaction": tx}


@router.post("/{customer_id}/payments", dependencies=[Depends(require_permission("pos:sell"))])
def record_customer_payment(
    customer_id: uuid.UUID,
    data: CustomerPaymentIn,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
    user=Depends(get_current_user),
):
    amount = q2(data.amount)
    if amount <= 0:
        raise HTTPException(status_code=400, detail="payment amount must be > 0")
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, credit_balance
                FROM pos_customers
                WHERE merchant_id = %s AND id = %s
                FOR UPDATE
                """,
                (merchant_id, str(customer_id)),
            )
            c = cur.fetchone()
            if not c:
                raise HTTPException(status_code=404, detail="customer not found")
            before = to_decimal(c["credit_balance"])
            after = apply_payment(before, amount)
            cur.execute(
                """
                UPDATE pos_customers
                SET credit_balance = %s, total_paid = total_paid + %s, updated_at = now()
                WHERE id = %s
                """,
                (after, amount, str(customer_id)),
            )
            cur.execute(
                """
                INSERT INTO pos_credit_transactions
                  (id, merchant_id, customer_id, type, amount, balance_before, balance_after,
                   payment_method, notes, created_by)
                VALUES
                  (gen_random_uuid(), %s, %s, 'payment', %s, %s, %s, %s, %s, %s)
                RETURNING id, customer_id, type, amount, balance_before, balance_after, payment_method, notes, created_at
                """,
                (merchant_id, str(customer_id), amount, before, after, data.payment_method, data.notes, user["user_id"]),
            )
            return {"transaction": cur.fetchone()}


@router.get("/{customer_id}/transactions", dependencies=[Depends(require_permission("pos:read"))])
def list_customer_transactions(
    customer_id: uuid.UUID,
    limit: int = 100,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    if limit <= 0 or limit > 1000:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 1000")
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, sale_id, type, amount, balance_before, balance_after, payment_method, notes, created_at
                FROM pos_credit_transactions
                WHERE merchant_id = %s AND customer_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (merchant_id, str(customer_id), limit),
            )
            return {"transactions": cur.fetchall()}

