import pytest
from fastapi import HTTPException

from auth.jwt import create_token, verify_token


def test_round_trip():
    token = create_token("user-42", secret="s3cret", expiry_seconds=60)
    assert verify_token(token, secret="s3cret") == "user-42"


def test_wrong_secret():
    token = create_token("user-42", secret="s3cret", expiry_seconds=60)
    with pytest.raises(HTTPException) as excinfo:
        verify_token(token, secret="other")
    assert excinfo.value.status_code == 401


def test_expired():
    token = create_token("user-42", secret="s3cret", expiry_seconds=-1)
    with pytest.raises(HTTPException):
        verify_token(token, secret="s3cret")


@pytest.mark.parametrize("token", ["", "no-dot", "%%%.abc"])
def test_malformed(token):
    with pytest.raises(HTTPException):
        verify_token(token, secret="s3cret")
