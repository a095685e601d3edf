"""Unit tests for key-versioned HS256 token signing."""

import base64
import hashlib
import hmac
import json
import time
from datetime import timedelta

import pytest

from cinematch.config import SigningKeySet
from cinematch.service.errors import SigningKeyError, TokenInvalidError
from cinematch.service.signer import TokenSigner


def _segment(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _handmade_token(header: dict, payload: dict, secret: str) -> str:
    signing_input = f"{_segment(header)}.{_segment(payload)}"
    sig = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return f"{signing_input}.{base64.urlsafe_b64encode(sig).decode().rstrip('=')}"


def _decode_header(token: str) -> dict:
    header = token.split(".")[0]
    return json.loads(base64.urlsafe_b64decode(header + "=" * (-len(header) % 4)))


@pytest.fixture
def keys():
    return SigningKeySet(keys={"v1": "secret-one", "v2": "secret-two"}, current_kid="v2")


def test_sign_then_verify_roundtrip_carries_kid(keys):
    signer = TokenSigner(keys)

    token = signer.sign_with_kid({"sub": "user-1"}, timedelta(minutes=5))
    payload = signer.verify_by_kid(token)

    assert _decode_header(token) == {"alg": "HS256", "typ": "JWT", "kid": "v2"}
    assert payload["sub"] == "user-1"
    assert payload["exp"] - payload["iat"] == 300


def test_tokens_signed_by_retired_current_kid_still_verify(keys):
    old_signer = TokenSigner(SigningKeySet(keys=dict(keys.keys), current_kid="v1"))
    token = old_signer.sign_with_kid({"sub": "user-1"}, timedelta(minutes=5))

    assert TokenSigner(keys).verify_by_kid(token)["sub"] == "user-1"


def test_unknown_kid_is_rejected(keys):
    token = _handmade_token(
        {"alg": "HS256", "typ": "JWT", "kid": "v9"},
        {"sub": "user-1", "exp": int(time.time()) + 60},
        "secret-one",
    )

    with pytest.raises(TokenInvalidError):
        TokenSigner(keys).verify_by_kid(token)


def test_token_without_kid_uses_default_kid(keys):
    token = _handmade_token(
        {"alg": "HS256", "typ": "JWT"},
        {"sub": "legacy", "exp": int(time.time()) + 60},
        "secret-one",
    )

    assert TokenSigner(keys).verify_by_kid(token)["sub"] == "legacy"


def test_signature_from_other_key_is_rejected(keys):
    token = _handmade_token(
        {"alg": "HS256", "typ": "JWT", "kid": "v1"},
        {"sub": "user-1", "exp": int(time.time()) + 60},
        "secret-two",
    )

    with pytest.raises(TokenInvalidError):
        TokenSigner(keys).verify_by_kid(token)


def test_tampered_payload_is_rejected(keys):
    signer = TokenSigner(keys)
    token = signer.sign_with_kid({"sub": "user-1"}, timedelta(minutes=5))
    header, _payload, sig = token.split(".")
    forged = f"{header}.{_segment({'sub': 'admin', 'exp': int(time.time()) + 60})}.{sig}"

    with pytest.raises(TokenInvalidError):
        signer.verify_by_kid(forged)


def test_expired_token_is_rejected_beyond_leeway(keys):
    expired = _handmade_token(
        {"alg": "HS256", "typ": "JWT", "kid": "v2"},
        {"sub": "user-1", "exp": int(time.time()) - 120},
        "secret-two",
    )

    with pytest.raises(TokenInvalidError):
        TokenSigner(keys, leeway_seconds=30).verify_by_kid(expired)
    assert TokenSigner(keys, leeway_seconds=300).verify_by_kid(expired)["sub"] == "user-1"


@pytest.mark.parametrize(
    "token",
    [None, "", "not-a-token", "a.b", "a.b.c.d", "!!!.???.###"],
)
def test_malformed_tokens_are_rejected(keys, token):
    with pytest.raises(TokenInvalidError):
        TokenSigner(keys).verify_by_kid(token)


def test_non_hs256_algorithm_is_rejected(keys):
    token = _handmade_token(
        {"alg": "none", "typ": "JWT", "kid": "v2"},
        {"sub": "user-1", "exp": int(time.time()) + 60},
        "secret-two",
    )

    with pytest.raises(TokenInvalidError):
        TokenSigner(keys).verify_by_kid(token)


def test_token_without_exp_is_rejected(keys):
    token = _handmade_token({"alg": "HS256", "typ": "JWT", "kid": "v2"}, {"sub": "x"}, "secret-two")

    with pytest.raises(TokenInvalidError):
        TokenSigner(keys).verify_by_kid(token)


def test_missing_current_secret_raises_signing_key_error():
    signer = TokenSigner(SigningKeySet(keys={"v1": "secret-one"}, current_kid="v3"))

    with pytest.raises(SigningKeyError) as excinfo:
        signer.sign_with_kid({"sub": "user-1"}, timedelta(minutes=5))
    assert excinfo.value.status_code == 500


def test_issue_access_and_refresh_claims(keys):
    signer = TokenSigner(keys)

    access = signer.verify_by_kid(signer.issue_access("u1", "a@x.com", timedelta(minutes=15)))
    refresh = signer.verify_by_kid(
        signer.issue_refresh("u1", "a@x.com", "jti-1", timedelta(days=7))
    )

    assert access["token_type"] == "access"
    assert "jti" not in access
    assert refresh["token_type"] == "refresh"
    assert refresh["jti"] == "jti-1"
    assert refresh["email"] == "a@x.com"


def test_key_set_is_read_only(keys):
    with pytest.raises(TypeError):
        keys.keys["v3"] = "sneaky"  # type: ignore[index]
