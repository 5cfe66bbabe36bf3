import pytest
from fastapi import HTTPException

from sitehub.auth.security import (
    create_access_token,
    decode_token,
    get_password_hash,
    verify_password,
)


def test_password_round_trip():
    hashed = get_password_hash("TestUser123!")
    assert verify_password("TestUser123!", hashed)
    assert not verify_password("wrong", hashed)
    assert not verify_password("TestUser123!", "not-a-hash")


def test_token_carries_subject_and_roles():
    payload = decode_token(create_access_token("user-1", roles=["manager"]))
    assert payload["sub"] == "user-1"
    assert payload["roles"] == ["manager"]
    assert payload["exp"] > payload["iat"]


def test_expired_token_is_rejected():
    with pytest.raises(HTTPException) as exc:
        decode_token(create_access_token("user-1", ttl_seconds=-1))
    assert exc.value.status_code == 401
    assert exc.value.detail == "Token expired"
