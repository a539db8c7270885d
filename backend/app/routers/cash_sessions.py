from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel
from typing import Optional
from datetime import date
from decimal import Decimal
import uuid

from ..db import get_conn, set_merchant_context
from ..deps import get_merchant_id, require_merchant_access, require_permission, get_current_user
from ..pricing import q2
from ..validation import CashDirection

router = APIRouter(prefix="/pos/cash-sessions", tags=["cash-sessions"])

SESSION_COLUMNS = """
    id, session_date, opening_balance, closing_balance, expected_balance,
    cash_sales_total, cash_in, cash_out, difference, status,
    opened_by, opened_at, closed_by, closed_at, notes
"""


class SessionOpenIn(BaseModel):
    opening_balance: Decimal = Decimal("0")
    notes: Optional[str] = None


class SessionCloseIn(BaseModel):
    closing_balance: Decimal
    notes: Optional[str] = None


class CashMovementIn(BaseModel):
    direction: CashDirection
    amount: Decimal
    reason: Optional[str] = None


class OpeningBalanceIn(BaseModel):
    opening_balance: Decimal


def _today() -> date:
    return date.today()


def _assert_non_negative(amount: Decimal, context: str) -> None:
    if Decimal(str(amount or 0)) < 0:
        raise HTTPException(status_code=400, detail=f"{context} balance must be >= 0")


def _append_note(existing: Optional[str], line: Optional[str]) -> Optional[str]:
    line = (line or "").strip()
    if not line:
        return existing
    return f"{existing}\n{line}" if existing else line


def _cash_sales_total(cur, merchant_id: str, day: date) -> Decimal:
    """
    Cash that entered the drawer from sales on `day`: whole cash sales, the
    cash legs of split sales, less cash refunds issued that day. Refunded
    sales still count as takings; their refunds are subtracted once below.
    """
    cur.execute(
        """
        SELECT COALESCE(SUM(total_amount), 0) AS total
        FROM pos_sales
        WHERE merchant_id = %s
          AND created_at::date = %s
          AND status IN ('completed', 'refunded')
          AND payment_method = 'cash'
        """,
        (merchant_id, day),
    )
    cash = Decimal(str((cur.fetchone() or {}).get("total") or 0))

    cur.execute(
        """
        SELECT COALESCE(SUM((p->>'amount')::numeric), 0) AS total
        FROM pos_sales s
        CROSS JOIN LATERAL jsonb_array_elements(COALESCE(s.payment_details->'payments', '[]'::jsonb)) p
        WHERE s.merchant_id = %s
          AND s.created_at::date = %s
          AND s.status IN ('completed', 'refunded')
          AND s.payment_method = 'split'
          AND p->>'method' = 'cash'
        """,
        (merchant_id, day),
    )
    split_cash = Decimal(str((cur.fetchone() or {}).get("total") or 0))

    cur.execute(
        """
        SELECT COALESCE(SUM(refund_amount), 0) AS total
        FROM pos_refunds
        WHERE merchant_id = %s
          AND created_at::date = %s
          AND refund_method = 'cash'
        """,
        (merchant_id, day),
    )
    refunds = Decimal(str((cur.fetchone() or {}).get("total") or 0))
    return q2(cash + split_cash - refunds)


def expected_balance(opening, cash_sales, cash_in, cash_out) -> Decimal:
    return q2(
        Decimal(str(opening or 0))
        + Decimal(str(cash_sales or 0))
        + Decimal(str(cash_in or 0))
        - Decimal(str(cash_out or 0))
    )


def _load_session(cur, merchant_id: str, session_id: str, for_update: bool = False) -> dict:
    sql = f"SELECT {SESSION_COLUMNS} FROM pos_cash_sessions WHERE merchant_id = %s AND id = %s"
    if for_update:
        sql += " FOR UPDATE"
    cur.execute(sql, (merchant_id, session_id))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="cash session not found")
    return row


@router.get("/today", dependencies=[Depends(require_permission("pos:read"))])
def get_today_session(merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    return get_session_by_date(_today(), merchant_id=merchant_id, _auth=_auth)


@router.get("/by-date/{day}", dependencies=[Depends(require_permission("pos:read"))])
def get_session_by_date(day: date, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {SESSION_COLUMNS} FROM pos_cash_sessions WHERE merchant_id = %s AND session_date = %s",
                (merchant_id, day),
            )
            return {"session": cur.fetchone()}


@router.get("", dependencies=[Depends(require_permission("pos:read"))])
def list_sessions(
    limit: int = 30,
    offset: int = 0,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    if limit <= 0 or limit > 500:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
    if offset < 0:
        raise HTTPException(status_code=400, detail="offset must be >= 0")
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute("SELECT COUNT(*)::int AS count FROM pos_cash_sessions WHERE merchant_id = %s", (merchant_id,))
            total = (cur.fetchone() or {}).get("count") or 0
            cur.execute(
                f"""
                SELECT {SESSION_COLUMNS}
                FROM pos_cash_sessions
                WHERE merchant_id = %s
                ORDER BY session_date DESC
                LIMIT %s OFFSET %s
                """,
                (merchant_id, limit, offset),
            )
            return {"sessions": cur.fetchall(), "total": total}


@router.post("/open", dependencies=[Depends(require_permission("pos:sell"))])
def open_session(
    data: SessionOpenIn,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
    user=Depends(get_current_user),
):
    _assert_non_negative(data.opening_balance, "opening")
    day = _today()
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                "SELECT id, status FROM pos_cash_sessions WHERE merchant_id = %s AND session_date = %s",
                (merchant_id, day),
            )
            if cur.fetchone():
                raise HTTPException(status_code=409, detail="a cash session already exists for today")
            cur.execute(
                f"""
                INSERT INTO pos_cash_sessions
                  (id, merchant_id, session_date, opening_balance, status, opened_by, opened_at, notes)
                VALUES
                  (gen_random_uuid(), %s, %s, %s, 'open', %s, now(), %s)
                RETURNING {SESSION_COLUMNS}
                """,
                (merchant_id, day, q2(data.opening_balance), user["user_id"], data.notes),
            )
            return {"session": cur.fetchone()}


@router.post("/{session_id}/close", dependencies=[Depends(require_permission("pos:sell"))])
def close_session(
    session_id: uuid.UUID,
    data: SessionCloseIn,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
    user=Depends(get_current_user),
):
    _assert_non_negative(data.closing_balance, "closing")
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            row = _load_session(cur, merchant_id, str(session_id), for_update=True)
            if row["status"] == "closed":
                raise HTTPException(status_code=409, detail="cash session is already closed")

            cash_sales = _cash_sales_total(cur, merchant_id, row["session_date"])
            expected = expected_balance(row["opening_balance"], cash_sales, row["cash_in"], row["cash_out"])
            closing = q2(data.closing_balance)
            cur.execute(
                f"""
                UPDATE pos_cash_sessions
                SET status = 'closed',
                    closing_balance = %s,
                    cash_sales_total = %s,
                    expected_balance = %s,
                    difference = %s,
                    closed_by = %s,
                    closed_at = now(),
                    notes = %s,
                    updated_at = now()
                WHERE id = %s
                RETURNING {SESSION_COLUMNS}
                """,
                (
                    closing,
                    cash_sales,
                    expected,
                    closing - expected,
                    user["user_id"],
                    _append_note(row.get("notes"), data.notes),
                    str(session_id),
                ),
            )
            return {"session": cur.fetchone()}


@router.post("/{session_id}/cash-movements", dependencies=[Depends(require_permission("pos:sell"))])
def add_cash_movement(
    session_id: uuid.UUID,
    data: CashMovementIn,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
    user=Depends(get_current_user),
):
    amount = q2(data.amount)
    if amount <= 0:
        raise HTTPException(status_code=400, detail="amount must be > 0")
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            row = _load_session(cur, merchant_id, str(session_id), for_update=True)
            if row["status"] == "closed":
                raise HTTPException(status_code=409, detail="cannot modify a closed cash session")

            tag = "IN" if data.direction == "in" else "OUT"
            note = f"[{tag}] {amount}: {(data.reason or '').strip() or 'no reason'}"
            column = "cash_in" if data.direction == "in" else "cash_out"
            cur.execute(
                """
                INSERT INTO pos_cash_movements (id, merchant_id, session_id, direction, amount, reason, created_by)
                VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s)
                """,
                (merchant_id, str(session_id), data.direction, amount, data.reason, user["user_id"]),
            )
            cur.execute(
                f"""
                UPDATE pos_cash_sessions
                SET {column} = {column} + %s,
                    notes = %s,
                    updated_at = now()
                WHERE id = %s
                RETURNING {SESSION_COLUMNS}
                """,
                (amount, _append_note(row.get("notes"), note), str(session_id)),
            )
            return {"session": cur.fetchone()}


@router.patch("/{session_id}/opening-balance", dependencies=[Depends(require_permission("pos:manage"))])
def update_opening_balance(
    session_id: uuid.UUID,
    data: OpeningBalanceIn,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    _assert_non_negative(data.opening_balance, "opening")
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            row = _load_session(cur, merchant_id, str(session_id), for_update=True)
            if row["status"] != "open":
                raise HTTPException(status_code=409, detail="can only update opening balance of an open session")
            cur.execute(
                f"""
                UPDATE pos_cash_sessions
                SET opening_balance = %s, updated_at = now()
                WHERE id = %s
                RETURNING {SESSION_COLUMNS}
                """,
                (q2(data.opening_balance), str(session_id)),
            )
            return {"session": cur.fetchone()}


@router.get("/{session_id}/drawer", dependencies=[Depends(require_permission("pos:read"))])
def drawer_balance(
    session_id: uuid.UUID,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            row = _load_session(cur, merchant_id, str(session_id))
            if row["status"] == "closed":
                return {
                    "session_id": row["id"],
                    "status": "closed",
                    "cash_sales_total": row["cash_sales_total"],
                    "expected_balance": row["expected_balance"],
                }
            cash_sales = _cash_sales_total(cur, merchant_id, row["session_date"])
            return {
                "session_id": row["id"],
                "status": row["status"],
                "cash_sales_total": cash_sales,
                "expected_balance": expected_balance(row["opening_balance"], cash_sales, row["cash_in"], row["cash_out"]),
            }
