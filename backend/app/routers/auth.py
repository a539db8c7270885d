from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from datetime import datetime, timedelta, timezone
import uuid
import secrets

from ..config import settings
from ..db import get_admin_conn
from ..deps import get_session, SESSION_COOKIE_NAME
from ..security import hash_password, verify_password, needs_rehash, hash_session_token

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginIn(BaseModel):
    email: str
    password: str


def _memberships(cur, user_id) -> list[dict]:
    cur.execute(
        """
        SELECT m.merchant_id, m.role, mc.name
        FROM merchant_members m
        JOIN merchants mc ON mc.id = m.merchant_id
        WHERE m.user_id = %s AND m.is_active = true
        ORDER BY mc.name
        """,
        (user_id,),
    )
    return cur.fetchall() or []


@router.post("/login")
def login(data: LoginIn):
    # Memberships span merchants, so auth runs on the admin connection.
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, email, hashed_password, is_active
                FROM users
                WHERE lower(email) = lower(%s)
                """,
                ((data.email or "").strip(),),
            )
            user = cur.fetchone()
            if not user or not user["is_active"]:
                raise HTTPException(status_code=401, detail="invalid credentials")
            if not verify_password(data.password, user["hashed_password"]):
                raise HTTPException(status_code=401, detail="invalid credentials")

            if needs_rehash(user["hashed_password"]):
                cur.execute(
                    "UPDATE users SET hashed_password = %s WHERE id = %s",
                    (hash_password(data.password), user["id"]),
                )

            merchants = _memberships(cur, user["id"])
            active_merchant_id = merchants[0]["merchant_id"] if merchants else None

            token = secrets.token_urlsafe(32)
            expires = datetime.now(timezone.utc) + timedelta(days=settings.session_days)
            cur.execute(
                """
                INSERT INTO auth_sessions (id, user_id, token_hash, expires_at, active_merchant_id)
                VALUES (gen_random_uuid(), %s, %s, %s, %s)
                """,
                (user["id"], hash_session_token(token), expires, active_merchant_id),
            )

    resp = JSONResponse(
        {
            "token": token,
            "user_id": str(user["id"]),
            "merchants": [str(m["merchant_id"]) for m in merchants],
            "active_merchant_id": str(active_merchant_id) if active_merchant_id else None,
        }
    )
    resp.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.env not in {"local", "dev"},
        max_age=settings.session_days * 24 * 60 * 60,
        path="/",
    )
    return resp


@router.get("/me")
def me(session=Depends(get_session)):
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT full_name FROM users WHERE id = %s", (session["user_id"],))
            u = cur.fetchone() or {}
            merchants = _memberships(cur, session["user_id"])
    return {
        "user_id": session["user_id"],
        "email": session["email"],
        "full_name": u.get("full_name"),
        "active_merchant_id": str(session["active_merchant_id"]) if session.get("active_merchant_id") else None,
        "merchants": [
            {"id": str(m["merchant_id"]), "name": m["name"], "role": m["role"]} for m in merchants
        ],
    }


@router.post("/logout")
def logout(session=Depends(get_session)):
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE auth_sessions SET is_active = false WHERE id = %s",
                (session["session_id"],),
            )
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(key=SESSION_COOKIE_NAME, path="/")
    return resp


class SelectMerchantIn(BaseModel):
    merchant_id: uuid.UUID


@router.post("/select-merchant")
def select_merchant(data: SelectMerchantIn, session=Depends(get_session)):
    # Persist the choice on the session so clients can drop X-Merchant-Id.
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT 1 FROM merchant_members
                WHERE user_id = %s AND merchant_id = %s AND is_active = true
                """,
                (session["user_id"], str(data.merchant_id)),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=403, detail="no merchant access")
            cur.execute(
                "UPDATE auth_sessions SET active_merchant_id = %s WHERE id = %s",
                (str(data.merchant_id), session["session_id"]),
            )
    return {"ok": True, "active_merchant_id": str(data.merchant_id)}
