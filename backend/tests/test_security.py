from backend.app.security import (
    hash_device_token,
    hash_pin,
    hash_session_token,
    is_valid_pin,
    issue_device_token,
    verify_device_token,
    verify_pin,
)


def test_session_token_is_hashed_with_prefix():
    h = hash_session_token("abc")
    assert h.startswith("sha256:")
    assert len(h) > 10


def test_device_token_hash_roundtrip():
    tok = "secret"
    h = hash_device_token(tok)
    assert verify_device_token(tok, h) is True
    assert verify_device_token("wrong", h) is False
    assert verify_device_token(tok, None) is False


def test_pin_format():
    assert is_valid_pin("1234")
    assert is_valid_pin(" 123456 ")
    assert not is_valid_pin("123")
    assert not is_valid_pin("1234567")
    assert not is_valid_pin("12a4")
    assert not is_valid_pin(None)


def test_pin_hash_is_bcrypt_and_verifies():
    h = hash_pin("4321")
    # Terminals verify these offline with bcrypt directly.
    assert h.startswith("$2")
    assert verify_pin("4321", h)
    assert verify_pin(" 4321 ", h)
    assert not verify_pin("1234", h)
    assert not verify_pin("4321", None)


def test_issued_device_token_matches_its_stored_hash():
    token, token_hash = issue_device_token()
    assert len(token) >= 32
    assert token_hash != token
    assert verify_device_token(token, token_hash)
    assert issue_device_token()[0] != token
