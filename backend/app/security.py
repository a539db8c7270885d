import hashlib
import hmac
import re
import secrets
from typing import Optional
from passlib.context import CryptContext

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

_PIN_RE = re.compile(r"^[0-9]{4,6}$")


def hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return _pwd_context.verify(password, hashed)


def needs_rehash(hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return _pwd_context.needs_update(hashed)


def is_valid_pin(pin: Optional[str]) -> bool:
    return bool(_PIN_RE.match((pin or "").strip()))


def hash_pin(pin: str) -> str:
    # Same bcrypt family as passwords. The hash is synced to terminals so a
    # cashier can unlock the till while the terminal is offline.
    return _pwd_context.hash(pin.strip())


def verify_pin(pin: str, hashed: Optional[str]) -> bool:
    if not hashed or not pin:
        return False
    return _pwd_context.verify(pin.strip(), hashed)


def hash_device_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def verify_device_token(token: str, token_hash: Optional[str]) -> bool:
    if not token_hash:
        return False
    return hmac.compare_digest(hash_device_token(token), token_hash)


def issue_device_token() -> tuple[str, str]:
    """New terminal token and the hash to store. The token is shown once."""
    token = secrets.token_urlsafe(32)
    return token, hash_device_token(token)


def hash_session_token(token: str) -> str:
    # Only the one-way hash is stored; the prefix stops a leaked hash being
    # replayed as a bearer token.
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()
