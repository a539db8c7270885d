from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel
from typing import Optional
from decimal import Decimal
import uuid

from ..db import get_conn, set_merchant_context
from ..deps import get_merchant_id, require_merchant_access, require_permission
from ..posting import active_loyalty_program, add_loyalty_points
from ..pricing import loyalty_points_earned, loyalty_redeem_value
from .catalog import build_update

router = APIRouter(prefix="/pos/loyalty", tags=["loyalty"])

PROGRAM_COLUMNS = "id, name, points_per_currency, points_value, min_redeem_points, max_redeem_percent, is_active, created_at, updated_at"
_PROGRAM_FIELDS = ("name", "points_per_currency", "points_value", "min_redeem_points", "max_redeem_percent", "is_active")


class ProgramIn(BaseModel):
    name: str = "Rewards"
    points_per_currency: Decimal = Decimal("1")
    points_value: Decimal = Decimal("1")
    min_redeem_points: int = 0
    max_redeem_percent: Optional[Decimal] = None


class ProgramUpdate(BaseModel):
    name: Optional[str] = None
    points_per_currency: Optional[Decimal] = None
    points_value: Optional[Decimal] = None
    min_redeem_points: Optional[int] = None
    max_redeem_percent: Optional[Decimal] = None
    is_active: Optional[bool] = None


class EarnIn(BaseModel):
    amount: Decimal


class RedeemIn(BaseModel):
    points: int


def check_redeem(balance: int, points: int, min_redeem_points: int) -> None:
    if points <= 0:
        raise HTTPException(status_code=400, detail="points must be > 0")
    if points > balance:
        raise HTTPException(status_code=400, detail="insufficient points")
    if min_redeem_points and points < min_redeem_points:
        raise HTTPException(status_code=400, detail=f"minimum {min_redeem_points} points required to redeem")


def _require_program(cur, merchant_id: str) -> dict:
    program = active_loyalty_program(cur, merchant_id)
    if not program:
        raise HTTPException(status_code=404, detail="no active loyalty program")
    return program


def _validate_rates(points_per_currency, points_value) -> None:
    if points_per_currency is not None and points_per_currency <= 0:
        raise HTTPException(status_code=400, detail="points_per_currency must be > 0")
    if points_value is not None and points_value < 0:
        raise HTTPException(status_code=400, detail="points_value must be >= 0")


@router.get("/program", dependencies=[Depends(require_permission("pos:read"))])
def get_program(merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            return {"program": active_loyalty_program(cur, merchant_id)}


@router.post("/program", dependencies=[Depends(require_permission("pos:manage"))])
def create_program(data: ProgramIn, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    _validate_rates(data.points_per_currency, data.points_value)
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            # One active program per merchant; a new one supersedes the old.
            cur.execute(
                "UPDATE pos_loyalty_programs SET is_active = false, updated_at = now() WHERE merchant_id = %s AND is_active = true",
                (merchant_id,),
            )
            cur.execute(
                f"""
                INSERT INTO pos_loyalty_programs
                  (id, merchant_id, name, points_per_currency, points_value, min_redeem_points, max_redeem_percent)
                VALUES
                  (gen_random_uuid(), %s, %s, %s, %s, %s, %s)
                RETURNING {PROGRAM_COLUMNS}
                """,
                (
                    merchant_id,
                    data.name,
                    data.points_per_currency,
                    data.points_value,
                    data.min_redeem_points,
                    data.max_redeem_percent,
                ),
            )
            return {"program": cur.fetchone()}


@router.patch("/program/{program_id}", dependencies=[Depends(require_permission("pos:manage"))])
def update_program(
    program_id: uuid.UUID,
    data: ProgramUpdate,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    _validate_rates(data.points_per_currency, data.points_value)
    sets, params = build_update(data, _PROGRAM_FIELDS)
    if not sets:
        raise HTTPException(status_code=400, detail="no fields to update")
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE pos_loyalty_programs
                SET {', '.join(sets)}, updated_at = now()
                WHERE merchant_id = %s AND id = %s
                RETURNING {PROGRAM_COLUMNS}
                """,
                params + [merchant_id, str(program_id)],
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="loyalty program not found")
            return {"program": row}


@router.get("/customers/{customer_id}", dependencies=[Depends(require_permission("pos:read"))])
def get_customer_points(customer_id: uuid.UUID, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT customer_id, points_balance, total_earned, total_redeemed, updated_at
                FROM pos_loyalty_points
                WHERE merchant_id = %s AND customer_id = %s
                """,
                (merchant_id, str(customer_id)),
            )
            row = cur.fetchone()
    return {
        "points": row
        or {"customer_id": customer_id, "points_balance": 0, "total_earned": 0, "total_redeemed": 0, "updated_at": None}
    }


@router.post("/customers/{customer_id}/earn", dependencies=[Depends(require_permission("pos:sell"))])
def earn_points(
    customer_id: uuid.UUID,
    data: EarnIn,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            program = _require_program(cur, merchant_id)
            points = loyalty_points_earned(data.amount, program["points_per_currency"])
            if points <= 0:
                raise HTTPException(status_code=400, detail="purchase amount too small to earn points")
            row = add_loyalty_points(cur, merchant_id, str(customer_id), points)
            return {"points_earned": points, "points": row}


@router.post("/customers/{customer_id}/redeem", dependencies=[Depends(require_permission("pos:sell"))])
def redeem_points(
    customer_id: uuid.UUID,
    data: RedeemIn,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            program = _require_program(cur, merchant_id)
            cur.execute(
                """
                SELECT points_balance
                FROM pos_loyalty_points
                WHERE merchant_id = %s AND customer_id = %s
                FOR UPDATE
                """,
                (merchant_id, str(customer_id)),
            )
            row = cur.fetchone()
            balance = int((row or {}).get("points_balance") or 0)
            check_redeem(balance, data.points, int(program.get("min_redeem_points") or 0))
            cur.execute(
                """
                UPDATE pos_loyalty_points
                SET points_balance = points_balance - %s,
                    total_redeemed = total_redeemed + %s,
                    updated_at = now()
                WHERE merchant_id = %s AND customer_id = %s
                RETURNING customer_id, points_balance, total_earned, total_redeemed
                """,
                (data.points, data.points, merchant_id, str(customer_id)),
            )
            updated = cur.fetchone()
            return {
                "points_redeemed": data.points,
                "discount_amount": loyalty_redeem_value(data.points, program["points_value"]),
                "points": updated,
            }
