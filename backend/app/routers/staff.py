from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime, timedelta, timezone
import uuid
import json

from ..config import settings
from ..db import get_conn, set_merchant_context
from ..deps import get_merchant_id, require_merchant_access, require_permission
from ..security import hash_pin, is_valid_pin, verify_pin
from ..validation import StaffRole

router = APIRouter(prefix="/pos/staff", tags=["staff"])

STAFF_COLUMNS = """
    id, user_id, staff_code, name, email, phone, role, permissions, status,
    failed_pin_attempts, locked_until, last_login_at, created_at, updated_at
"""

DEFAULT_PERMISSIONS = {
    "admin": [
        "view_sales", "create_sales", "void_sales", "refund_sales",
        "view_products", "manage_products", "view_inventory", "manage_inventory",
        "view_customers", "manage_customers", "view_reports", "view_staff", "manage_staff",
        "manage_discounts", "manage_settings", "open_close_day", "cash_management",
    ],
    "manager": [
        "view_sales", "create_sales", "void_sales", "refund_sales",
        "view_products", "manage_products", "view_inventory", "manage_inventory",
        "view_customers", "manage_customers", "view_reports", "view_staff",
        "manage_discounts", "open_close_day", "cash_management",
    ],
    "supervisor": [
        "view_sales", "create_sales", "void_sales", "refund_sales",
        "view_products", "view_inventory", "view_customers", "view_reports",
        "open_close_day", "cash_management",
    ],
    "cashier": ["view_sales", "create_sales", "view_products", "view_inventory", "view_customers"],
}


class StaffIn(BaseModel):
    name: str
    staff_code: str
    role: StaffRole = "cashier"
    pin: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    user_id: Optional[uuid.UUID] = None
    permissions: Optional[List[str]] = None


class StaffUpdate(BaseModel):
    name: Optional[str] = None
    role: Optional[StaffRole] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    permissions: Optional[List[str]] = None
    status: Optional[str] = None


class PinSetIn(BaseModel):
    pin: str


class PinVerifyIn(BaseModel):
    staff_id: Optional[uuid.UUID] = None
    staff_code: Optional[str] = None
    pin: str


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _require_pin(pin: Optional[str]) -> str:
    if not is_valid_pin(pin):
        raise HTTPException(status_code=400, detail="pin must be 4 to 6 digits")
    return (pin or "").strip()


def is_locked(row: dict, now: datetime) -> bool:
    until = row.get("locked_until")
    if until is None:
        return False
    if until.tzinfo is None:
        until = until.replace(tzinfo=timezone.utc)
    return until > now


def failed_attempt_update(attempts: int, now: datetime) -> tuple[int, Optional[datetime]]:
    """Counter and lock deadline after one more wrong PIN."""
    attempts = int(attempts or 0) + 1
    if attempts >= settings.pin_max_attempts:
        return attempts, now + timedelta(minutes=settings.pin_lock_minutes)
    return attempts, None


def session_payload(row: dict, pin_hash: Optional[str]) -> dict:
    perms = row.get("permissions")
    if isinstance(perms, str):
        perms = json.loads(perms)
    if not perms:
        perms = DEFAULT_PERMISSIONS.get(row.get("role") or "cashier", [])
    return {
        "staff_id": row["id"],
        "staff_code": row["staff_code"],
        "name": row["name"],
        "role": row["role"],
        "permissions": perms,
        # Lets the terminal re-verify this cashier while offline.
        "pin_hash": pin_hash,
    }


@router.get("", dependencies=[Depends(require_permission("pos:read"))])
def list_staff(
    include_inactive: bool = False,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    sql = f"SELECT {STAFF_COLUMNS} FROM merchant_staff WHERE merchant_id = %s"
    if not include_inactive:
        sql += " AND status = 'active'"
    sql += " ORDER BY name"
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(sql, (merchant_id,))
            return {"staff": cur.fetchall()}


@router.post("", dependencies=[Depends(require_permission("pos:manage"))])
def create_staff(data: StaffIn, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    name = (data.name or "").strip()
    code = (data.staff_code or "").strip()
    if not name or not code:
        raise HTTPException(status_code=400, detail="name and staff_code are required")
    pin_hash = hash_pin(_require_pin(data.pin)) if data.pin is not None else None
    permissions = data.permissions if data.permissions is not None else DEFAULT_PERMISSIONS.get(data.role, [])
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO merchant_staff
                  (id, merchant_id, user_id, staff_code, name, email, phone, role, permissions, pin_hash)
                VALUES
                  (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s)
                RETURNING {STAFF_COLUMNS}
                """,
                (
                    merchant_id,
                    str(data.user_id) if data.user_id else None,
                    code,
                    name,
                    data.email,
                    data.phone,
                    data.role,
                    json.dumps(permissions),
                    pin_hash,
                ),
            )
            return {"staff": cur.fetchone()}


@router.patch("/{staff_id}", dependencies=[Depends(require_permission("pos:manage"))])
def update_staff(
    staff_id: uuid.UUID,
    data: StaffUpdate,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    patch = data.model_dump(exclude_unset=True)
    if "status" in patch and patch["status"] not in {"active", "inactive"}:
        raise HTTPException(status_code=400, detail="invalid status")
    sets: list[str] = []
    params: list = []
    for k in ("name", "role", "email", "phone", "status"):
        if k in patch:
            sets.append(f"{k} = %s")
            params.append(patch[k])
    if "permissions" in patch:
        sets.append("permissions = %s::jsonb")
        params.append(json.dumps(patch["permissions"] or []))
    if not sets:
        raise HTTPException(status_code=400, detail="no fields to update")
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE merchant_staff
                SET {', '.join(sets)}, updated_at = now()
                WHERE merchant_id = %s AND id = %s
                RETURNING {STAFF_COLUMNS}
                """,
                params + [merchant_id, str(staff_id)],
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="staff not found")
            return {"staff": row}


@router.delete("/{staff_id}", dependencies=[Depends(require_permission("pos:manage"))])
def delete_staff(staff_id: uuid.UUID, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE merchant_staff SET status = 'inactive', updated_at = now()
                WHERE merchant_id = %s AND id = %s
                RETURNING id
                """,
                (merchant_id, str(staff_id)),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="staff not found")
    return {"ok": True}


@router.post("/{staff_id}/pin", dependencies=[Depends(require_permission("pos:manage"))])
def set_staff_pin(
    staff_id: uuid.UUID,
    data: PinSetIn,
    merchant_id: str = Depends(get_merchant_id),
    _auth=Depends(require_merchant_access),
):
    pin_hash = hash_pin(_require_pin(data.pin))
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE merchant_staff
                SET pin_hash = %s, failed_pin_attempts = 0, locked_until = NULL, updated_at = now()
                WHERE merchant_id = %s AND id = %s
                RETURNING id
                """,
                (pin_hash, merchant_id, str(staff_id)),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="staff not found")
    return {"ok": True}


def check_pin(cur, merchant_id: str, data: PinVerifyIn, now: Optional[datetime] = None) -> dict:
    now = now or _now()
    if data.staff_id:
        where, key = "id = %s", str(data.staff_id)
    elif data.staff_code:
        where, key = "staff_code = %s", data.staff_code.strip()
    else:
        raise HTTPException(status_code=400, detail="staff_id or staff_code is required")
    cur.execute(
        f"""
        SELECT {STAFF_COLUMNS}, pin_hash
        FROM merchant_staff
        WHERE merchant_id = %s AND {where}
        FOR UPDATE
        """,
        (merchant_id, key),
    )
    row = cur.fetchone()
    if not row or row.get("status") != "active" or not row.get("pin_hash"):
        raise HTTPException(status_code=401, detail="invalid staff or pin")
    if is_locked(row, now):
        raise HTTPException(status_code=423, detail="too many failed attempts; try again later")

    if not verify_pin(data.pin, row["pin_hash"]):
        attempts, locked_until = failed_attempt_update(row.get("failed_pin_attempts") or 0, now)
        cur.execute(
            """
            UPDATE merchant_staff
            SET failed_pin_attempts = %s, locked_until = %s, updated_at = now()
            WHERE id = %s
            """,
            (attempts, locked_until, row["id"]),
        )
        return {"ok": False, "locked": locked_until is not None}

    cur.execute(
        """
        UPDATE merchant_staff
        SET failed_pin_attempts = 0, locked_until = NULL, last_login_at = now(), updated_at = now()
        WHERE id = %s
        """,
        (row["id"],),
    )
    return {"ok": True, "session": session_payload(row, row["pin_hash"])}


@router.post("/verify-pin")
def verify_staff_pin(data: PinVerifyIn, merchant_id: str = Depends(get_merchant_id), _auth=Depends(require_merchant_access)):
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            result = check_pin(cur, merchant_id, data)
    # Raise after the block so the failure counter is committed.
    if not result["ok"]:
        if result["locked"]:
            raise HTTPException(status_code=423, detail="too many failed attempts; try again later")
        raise HTTPException(status_code=401, detail="invalid staff or pin")
    return result["session"]
