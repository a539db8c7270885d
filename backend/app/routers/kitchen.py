from fastapi import APIRouter, HTTPException, Depends
from typing import Optional
from datetime import date, datetime, timedelta
import uuid

from ..db import get_conn, set_merchant_context
from ..deps import get_merchant_id, require_merchant_access, require_permission
from ..kitchen import board, next_status, recall_status, stats, TERMINAL
from ..posting import load_sale_items, set_kitchen_status

router = APIRouter(prefix="/pos/kitchen", tags=["kitchen"])


def _todays_orders(cur, merchant_id: str, day: date) -> list[dict]:
    start = datetime.combine(day, datetime.min.time())
    cur.execute(
        """
        SELECT id, sale_number, status, kitchen_status, kitchen_started_at, kitchen_completed_at,
               customer_name, notes, created_at
        FROM pos_sales
        WHERE merchant_id = %s AND created_at >= %s AND created_at < %s
        ORDER BY created_at ASC
        """,
        (merchant_id, start, start + timedelta(days=1)),
    )
    return cur.fetchall() or []


@router.get("/orders", dependencies=[Depends(require_permission("pos:read"))])
def list_kitchen_orders(
    status: Optional[str] = None,
    show_completed: bool = False,
    day: Optional[date] = None,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            orders = board(_todays_orders(cur, merchant_id, day or date.today()), status, show_completed)
            for o in orders:
                o["items"] = load_sale_items(cur, o["id"])
    return {"orders": orders}


@router.get("/stats", dependencies=[Depends(require_permission("pos:read"))])
def kitchen_stats(
    day: Optional[date] = None,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            orders = board(_todays_orders(cur, merchant_id, day or date.today()), "all", show_completed=True)
    return {"stats": stats(orders)}


def _move(merchant_id: str, sale_id: uuid.UUID, pick) -> dict:
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                "SELECT id, status, kitchen_status FROM pos_sales WHERE merchant_id = %s AND id = %s FOR UPDATE",
                (merchant_id, str(sale_id)),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="order not found")
            if row["status"] != "completed":
                raise HTTPException(status_code=409, detail=f"order is {row['status']}")
            to_status = pick(row["kitchen_status"] or "new")
            return {"order": set_kitchen_status(cur, merchant_id, str(sale_id), to_status)}


@router.post("/orders/{sale_id}/bump", dependencies=[Depends(require_permission("pos:sell"))])
def bump_order(sale_id: uuid.UUID, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    return _move(merchant_id, sale_id, next_status)


@router.post("/orders/{sale_id}/recall", dependencies=[Depends(require_permission("pos:sell"))])
def recall_order(sale_id: uuid.UUID, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    return _move(merchant_id, sale_id, recall_status)


def _cancel_target(status: str) -> str:
    if status in TERMINAL:
        raise HTTPException(status_code=409, detail=f"cannot cancel a {status} order")
    return "cancelled"


@router.post("/orders/{sale_id}/cancel", dependencies=[Depends(require_permission("pos:sell"))])
def cancel_order(sale_id: uuid.UUID, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    return _move(merchant_id, sale_id, _cancel_target)
