#!/usr/bin/env python3
import os
import secrets
import sys

import psycopg
from psycopg.rows import dict_row

from backend.app.security import hash_password


def _truthy(v: str) -> bool:
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _generate_password() -> str:
    # URL-safe and copy/paste friendly.
    return secrets.token_urlsafe(16)


def main() -> int:
    if not _truthy(os.getenv("BOOTSTRAP_MERCHANT", "")):
        return 0

    db_url = os.getenv("DATABASE_URL_ADMIN") or os.getenv("DATABASE_URL")
    if not db_url:
        print("bootstrap_merchant: missing DATABASE_URL", file=sys.stderr)
        return 2

    email = os.getenv("BOOTSTRAP_OWNER_EMAIL", "owner@merchant.local").strip().lower()
    if not email:
        print("bootstrap_merchant: BOOTSTRAP_OWNER_EMAIL is empty", file=sys.stderr)
        return 2
    merchant_name = os.getenv("BOOTSTRAP_MERCHANT_NAME", "My Shop").strip() or "My Shop"

    password = os.getenv("BOOTSTRAP_OWNER_PASSWORD")
    generated_password = False
    if not password:
        password = _generate_password()
        generated_password = True

    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM users WHERE email = %s", (email,))
                if cur.fetchone():
                    # Already bootstrapped.
                    return 0

                cur.execute(
                    """
                    INSERT INTO users (id, email, full_name, hashed_password, is_active)
                    VALUES (gen_random_uuid(), %s, %s, %s, true)
                    RETURNING id
                    """,
                    (email, "Owner", hash_password(password)),
                )
                user_id = cur.fetchone()["id"]

                cur.execute("SELECT id FROM merchants WHERE name = %s ORDER BY created_at LIMIT 1", (merchant_name,))
                row = cur.fetchone()
                if row:
                    merchant_id = row["id"]
                else:
                    cur.execute(
                        "INSERT INTO merchants (id, name) VALUES (gen_random_uuid(), %s) RETURNING id",
                        (merchant_name,),
                    )
                    merchant_id = cur.fetchone()["id"]

                cur.execute(
                    """
                    INSERT INTO merchant_members (merchant_id, user_id, role, is_active)
                    VALUES (%s, %s, 'owner', true)
                    ON CONFLICT (merchant_id, user_id) DO UPDATE SET role = 'owner', is_active = true
                    """,
                    (merchant_id, user_id),
                )

    print("BOOTSTRAP_MERCHANT_CREATED")
    print(f"merchant: {merchant_name} ({merchant_id})")
    print(f"email: {email}")
    if generated_password:
        print(f"password: {password}")
    else:
        print("password: (provided via BOOTSTRAP_OWNER_PASSWORD)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
