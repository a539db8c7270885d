from fastapi import Header, HTTPException, Depends, Cookie
from .db import get_conn, get_admin_conn, set_merchant_context
from .security import hash_session_token, verify_device_token
from datetime import datetime, timezone
from typing import Optional
import uuid


SESSION_COOKIE_NAME = "merchant_pos_session"


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1]
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing token")


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    token = _extract_session_token(authorization, cookie_token)
    # auth_sessions is not merchant-scoped, so it is read without an RLS context.
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, s.expires_at, s.is_active,
                       s.active_merchant_id, u.email, u.is_active AS user_active
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token_hash = %s
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
    if not row or not row["is_active"] or not row["user_active"]:
        raise HTTPException(status_code=401, detail="invalid token")
    if row["expires_at"] < datetime.now(timezone.utc):
        raise HTTPException(status_code=401, detail="session expired")
    return {
        "session_id": row["session_id"],
        "user_id": row["user_id"],
        "email": row["email"],
        "active_merchant_id": row["active_merchant_id"],
        "token": token,
    }


def get_current_user(session=Depends(get_session)):
    return {"user_id": session["user_id"], "email": session["email"]}


def get_merchant_id(
    x_merchant_id: Optional[str] = Header(None, alias="X-Merchant-Id"),
    session=Depends(get_session),
) -> str:
    if x_merchant_id:
        return x_merchant_id
    if session.get("active_merchant_id"):
        return str(session["active_merchant_id"])
    raise HTTPException(status_code=400, detail="missing merchant id")


def _member_role(merchant_id: str, user_id, permission: Optional[str] = None) -> Optional[str]:
    """Role of an active member of the merchant, or None.

    With `permission`, the role must also grant it (directly or through '*').
    """
    sql = """
        SELECT m.role
        FROM merchant_members m
        WHERE m.user_id = %s AND m.merchant_id = %s AND m.is_active = true
    """
    params = [user_id, merchant_id]
    if permission:
        sql += """
          AND EXISTS (
            SELECT 1 FROM role_permissions rp
            WHERE rp.role = m.role AND rp.permission IN (%s, '*')
          )
        """
        params.append(permission)
    with get_conn() as conn:
        set_merchant_context(conn, merchant_id)
        with conn.cursor() as cur:
            cur.execute(sql, params)
            row = cur.fetchone()
    return row["role"] if row else None


def require_merchant_access(merchant_id: str = Depends(get_merchant_id), user=Depends(get_current_user)):
    role = _member_role(merchant_id, user["user_id"])
    if not role:
        raise HTTPException(status_code=403, detail="no merchant access")
    return {"merchant_id": merchant_id, "role": role}


def require_permission(code: str):
    def _dep(merchant_id: str = Depends(get_merchant_id), user=Depends(get_current_user)):
        role = _member_role(merchant_id, user["user_id"], permission=code)
        if not role:
            raise HTTPException(status_code=403, detail="permission denied")
        return {"merchant_id": merchant_id, "role": role}
    return _dep


def require_terminal(
    terminal_id: uuid.UUID = Header(..., alias="X-Terminal-Id"),
    terminal_token: str = Header(..., alias="X-Terminal-Token"),
):
    # The device only knows its own id; the merchant comes from the terminal row.
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT merchant_id, token_hash, is_registered FROM pos_terminals WHERE id = %s",
                (terminal_id,),
            )
            row = cur.fetchone()
    if not row or not row["is_registered"] or not verify_device_token(terminal_token, row["token_hash"]):
        raise HTTPException(status_code=401, detail="invalid terminal token")
    return {"terminal_id": terminal_id, "merchant_id": row["merchant_id"]}
