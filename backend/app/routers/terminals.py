from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel
from typing import Optional
from datetime import datetime, timezone
import uuid
import json

from ..db import get_conn, set_merchant_context
from ..deps import get_merchant_id, require_merchant_access, require_permission, require_terminal
from ..config import settings
from ..posting import SALE_COLUMNS, active_loyalty_program, post_sale
from ..security import issue_device_token
from ..validation import TerminalCode
from .customers import CUSTOMER_COLUMNS
from .sales import SaleCreateIn
from .staff import PinVerifyIn, check_pin

router = APIRouter(prefix="/pos", tags=["terminals"])

TERMINAL_COLUMNS = """
    id, terminal_code, name, location, is_registered, registered_at, device_info,
    settings, last_sync_at, pending_sync_count, created_at
"""

DEFAULT_TERMINAL_SETTINGS = {
    "auto_logout_minutes": 15,
    "require_pin_for_void": True,
    "require_pin_for_discount": False,
    "allow_offline_sales": True,
    "max_offline_sales": 100,
    "receipt_printer": None,
    "cash_drawer_enabled": False,
}


class TerminalIn(BaseModel):
    terminal_code: TerminalCode
    name: str
    location: Optional[str] = None
    settings: Optional[dict] = None


class TerminalRegisterIn(BaseModel):
    terminal_code: TerminalCode
    name: Optional[str] = None
    device_info: Optional[dict] = None
    reset_token: bool = False


class TerminalSettingsIn(BaseModel):
    settings: dict


class TerminalSaleIn(SaleCreateIn):
    # When the sale was rung up; set for sales made while the terminal was offline.
    created_at: Optional[datetime] = None


class HeartbeatIn(BaseModel):
    pending_sync_count: int = 0


def merged_settings(raw) -> dict:
    if isinstance(raw, str):
        raw = json.loads(raw or "{}")
    out = dict(DEFAULT_TERMINAL_SETTINGS)
    for k, v in (raw or {}).items():
        if k in DEFAULT_TERMINAL_SETTINGS and v is not None:
            out[k] = v
    return out


@router.get("/terminals", dependencies=[Depends(require_permission("pos:manage"))])
def list_terminals(merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {TERMINAL_COLUMNS} FROM pos_terminals WHERE merchant_id = %s ORDER BY terminal_code",
                (merchant_id,),
            )
            return {"terminals": cur.fetchall()}


@router.post("/terminals", dependencies=[Depends(require_permission("pos:manage"))])
def create_terminal(data: TerminalIn, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO pos_terminals (id, merchant_id, terminal_code, name, location, settings)
                VALUES (gen_random_uuid(), %s, %s, %s, %s, %s::jsonb)
                RETURNING {TERMINAL_COLUMNS}
                """,
                (merchant_id, data.terminal_code, data.name, data.location, json.dumps(merged_settings(data.settings))),
            )
            return {"terminal": cur.fetchone()}


@router.post("/terminals/register", dependencies=[Depends(require_permission("pos:manage"))])
def register_terminal(
    data: TerminalRegisterIn,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    """
    Bind a device to a terminal code and hand it a device token. The token is
    returned once; only its hash is stored. Unknown codes create the terminal.
    """
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, is_registered, token_hash
                FROM pos_terminals
                WHERE merchant_id = %s AND terminal_code = %s
                FOR UPDATE
                """,
                (merchant_id, data.terminal_code),
            )
            existing = cur.fetchone()
            token, token_hash = issue_device_token()
            if existing:
                if existing["is_registered"] and existing["token_hash"] and not data.reset_token:
                    raise HTTPException(status_code=409, detail="terminal is already registered")
                cur.execute(
                    """
                    UPDATE pos_terminals
                    SET token_hash = %s, is_registered = true, registered_at = now(),
                        device_info = COALESCE(%s::jsonb, device_info)
                    WHERE id = %s
                    """,
                    (
                        token_hash,
                        json.dumps(data.device_info) if data.device_info else None,
                        existing["id"],
                    ),
                )
                return {"id": existing["id"], "token": token}

            cur.execute(
                """
                INSERT INTO pos_terminals
                  (id, merchant_id, terminal_code, name, token_hash, is_registered, registered_at, device_info, settings)
                VALUES
                  (gen_random_uuid(), %s, %s, %s, %s, true, now(), %s::jsonb, %s::jsonb)
                RETURNING id
                """,
                (
                    merchant_id,
                    data.terminal_code,
                    data.name or data.terminal_code,
                    token_hash,
                    json.dumps(data.device_info) if data.device_info else None,
                    json.dumps(DEFAULT_TERMINAL_SETTINGS),
                ),
            )
            return {"id": cur.fetchone()["id"], "token": token}


@router.post("/terminals/{terminal_id}/unregister", dependencies=[Depends(require_permission("pos:manage"))])
def unregister_terminal(terminal_id: uuid.UUID, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE pos_terminals
                SET is_registered = false, token_hash = NULL
                WHERE merchant_id = %s AND id = %s
                RETURNING id
                """,
                (merchant_id, str(terminal_id)),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="terminal not found")
    return {"ok": True}


@router.post("/terminals/{terminal_id}/reset-token", dependencies=[Depends(require_permission("pos:manage"))])
def reset_terminal_token(terminal_id: uuid.UUID, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    token, token_hash = issue_device_token()
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE pos_terminals
                SET token_hash = %s, is_registered = true, registered_at = COALESCE(registered_at, now())
                WHERE merchant_id = %s AND id = %s
                RETURNING id
                """,
                (token_hash, merchant_id, str(terminal_id)),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="terminal not found")
    return {"id": terminal_id, "token": token}


@router.patch("/terminals/{terminal_id}/settings", dependencies=[Depends(require_permission("pos:manage"))])
def update_terminal_settings(
    terminal_id: uuid.UUID,
    data: TerminalSettingsIn,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    unknown = sorted(set(data.settings) - set(DEFAULT_TERMINAL_SETTINGS))
    if unknown:
        raise HTTPException(status_code=400, detail=f"unknown settings: {', '.join(unknown)}")
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                "SELECT settings FROM pos_terminals WHERE merchant_id = %s AND id = %s FOR UPDATE",
                (merchant_id, str(terminal_id)),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="terminal not found")
            current = merged_settings(row.get("settings"))
            current.update(data.settings)
            cur.execute(
                f"""
                UPDATE pos_terminals SET settings = %s::jsonb
                WHERE id = %s
                RETURNING {TERMINAL_COLUMNS}
                """,
                (json.dumps(current), str(terminal_id)),
            )
            return {"terminal": cur.fetchone()}


# Device-authenticated endpoints used by the terminal agent.


@router.post("/terminal/heartbeat")
def terminal_heartbeat(data: HeartbeatIn, terminal=Depends(require_terminal)):
    merchant_id = str(terminal["merchant_id"])
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE pos_terminals
                SET last_sync_at = now(), pending_sync_count = %s
                WHERE id = %s
                RETURNING last_sync_at
                """,
                (max(0, int(data.pending_sync_count or 0)), terminal["terminal_id"]),
            )
            row = cur.fetchone()
    return {"ok": True, "last_sync_at": row["last_sync_at"] if row else None}


@router.get("/terminal/config")
def terminal_config(terminal=Depends(require_terminal)):
    merchant_id = str(terminal["merchant_id"])
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {TERMINAL_COLUMNS} FROM pos_terminals WHERE id = %s",
                (terminal["terminal_id"],),
            )
            row = cur.fetchone() or {}
            cur.execute("SELECT id, name, phone, receipt_footer FROM merchants WHERE id = %s", (merchant_id,))
            merchant = cur.fetchone()
    return {
        "terminal_id": terminal["terminal_id"],
        "merchant_id": merchant_id,
        "terminal_code": row.get("terminal_code"),
        "name": row.get("name"),
        "merchant": merchant,
        "currency": settings.currency,
        "default_tax_rate": settings.default_tax_rate,
        "settings": merged_settings(row.get("settings")),
    }


@router.get("/terminal/staff")
def terminal_staff(terminal=Depends(require_terminal)):
    merchant_id = str(terminal["merchant_id"])
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            # PIN hashes go to the device so cashiers can sign in offline.
            cur.execute(
                """
                SELECT id, staff_code, name, email, phone, role, permissions, pin_hash, status, updated_at
                FROM merchant_staff
                WHERE merchant_id = %s AND status = 'active'
                ORDER BY name
                """,
                (merchant_id,),
            )
            return {"staff": cur.fetchall()}


@router.get("/terminal/customers")
def terminal_customers(terminal=Depends(require_terminal)):
    merchant_id = str(terminal["merchant_id"])
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {CUSTOMER_COLUMNS} FROM pos_customers WHERE merchant_id = %s AND is_active = true ORDER BY name",
                (merchant_id,),
            )
            return {"customers": cur.fetchall()}


@router.get("/terminal/loyalty")
def terminal_loyalty(terminal=Depends(require_terminal)):
    merchant_id = str(terminal["merchant_id"])
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            program = active_loyalty_program(cur, merchant_id)
            cur.execute(
                """
                SELECT customer_id, points_balance, total_earned, total_redeemed, updated_at
                FROM pos_loyalty_points
                WHERE merchant_id = %s
                """,
                (merchant_id,),
            )
            points = cur.fetchall()
    return {"program": program, "points": points}


@router.get("/terminal/sales/recent")
def terminal_recent_sales(limit: int = 100, terminal=Depends(require_terminal)):
    if limit <= 0 or limit > 500:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
    merchant_id = str(terminal["merchant_id"])
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {SALE_COLUMNS}
                FROM pos_sales
                WHERE merchant_id = %s AND terminal_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (merchant_id, terminal["terminal_id"], limit),
            )
            return {"sales": cur.fetchall()}


@router.post("/terminal/sales")
def terminal_create_sale(data: TerminalSaleIn, terminal=Depends(require_terminal)):
    """
    Checkout from a registered terminal, live or replayed from its offline
    queue. Replays with the same offline_id are no-ops.
    """
    if data.payment_method == "split" and not data.payments:
        raise HTTPException(status_code=400, detail="split payments require a payments list")
    merchant_id = str(terminal["merchant_id"])
    payload = data.model_dump()
    payload["items"] = [it.model_dump() for it in data.items]
    payload["payments"] = [p.model_dump() for p in data.payments or []]
    created_at = payload.pop("created_at", None)
    if created_at is not None:
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        # A skewed device clock must not date sales in the future.
        if created_at <= datetime.now(timezone.utc):
            payload["created_at"] = created_at
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            return post_sale(
                cur,
                merchant_id,
                payload,
                terminal_id=terminal["terminal_id"],
                default_tax_rate=settings.default_tax_rate,
            )


@router.post("/terminal/staff/verify-pin")
def terminal_verify_pin(data: PinVerifyIn, terminal=Depends(require_terminal)):
    merchant_id = str(terminal["merchant_id"])
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            result = check_pin(cur, merchant_id, data)
    # Same contract as /pos/staff/verify-pin: the failure counter commits first.
    if not result["ok"]:
        if result["locked"]:
            raise HTTPException(status_code=423, detail="too many failed attempts; try again later")
        raise HTTPException(status_code=401, detail="invalid staff or pin")
    return result["session"]
