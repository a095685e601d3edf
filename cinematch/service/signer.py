from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from datetime import timedelta
from typing import Any, Optional

from cinematch.config import SigningKeySet
from cinematch.logging import get_logger
from cinematch.service.errors import SigningKeyError, TokenInvalidError

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


class TokenSigner:
    """HS256 JWTs whose header names the key (kid) that signed them."""

    def __init__(self, key_set: SigningKeySet, *, leeway_seconds: int = 0) -> None:
        self.key_set = key_set
        self._leeway = leeway_seconds

    def sign_with_kid(self, payload: dict[str, Any], ttl: timedelta) -> str:
        kid = self.key_set.current_kid
        secret = self.key_set.current_secret
        if not secret:
            logger.error("jwt_signing_key_missing", kid=kid)
            raise SigningKeyError("server misconfiguration")
        now = int(time.time())
        claims = {**payload, "iat": now, "exp": now + int(ttl.total_seconds())}
        header = {"alg": "HS256", "typ": "JWT", "kid": kid}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_sign(secret, signing_input)}"

    def verify_by_kid(self, token: Optional[str]) -> dict[str, Any]:
        """Return the verified claims or raise ``TokenInvalidError``."""

        if not token or not isinstance(token, str):
            raise TokenInvalidError("token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError("token malformed") from None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError("token malformed") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidError("unsupported algorithm")

        kid = header.get("kid") or self.key_set.default_kid
        secret = self.key_set.secret_for(kid) if isinstance(kid, str) else None
        if not secret:
            logger.warning("jwt_unknown_kid", kid=kid)
            raise TokenInvalidError("unknown signing key")

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(_sign(secret, signing_input), sig_b64):
            raise TokenInvalidError("bad signature")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("token malformed") from None
        if not isinstance(payload, dict):
            raise TokenInvalidError("token malformed")

        exp = payload.get("exp")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            raise TokenInvalidError("token has no expiry") from None
        if exp_ts <= time.time() - self._leeway:
            raise TokenInvalidError("token expired")
        return payload

    def issue_access(self, user_id: str, email: str, ttl: timedelta) -> str:
        return self.sign_with_kid(
            {"sub": user_id, "email": email, "token_type": ACCESS_TOKEN_TYPE}, ttl
        )

    def issue_refresh(self, user_id: str, email: str, jti: str, ttl: timedelta) -> str:
        return self.sign_with_kid(
            {"sub": user_id, "email": email, "jti": jti, "token_type": REFRESH_TOKEN_TYPE},
            ttl,
        )
