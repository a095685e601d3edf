from __future__ import annotations

import asyncio
import hashlib
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, List, Optional, Protocol
from urllib.parse import urlencode

from cinematch.config import Settings
from cinematch.logging import get_logger
from cinematch.service.email import EmailService
from cinematch.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    NeedsVerificationError,
    RateLimitedError,
    TokenInvalidError,
)
from cinematch.service.ledger import RefreshTokenLedger
from cinematch.service.rate_limit import RateLimiter
from cinematch.service.signer import ACCESS_TOKEN_TYPE, REFRESH_TOKEN_TYPE, TokenSigner
from cinematch.service.tokens import SecretHasher, new_raw_token
from cinematch.storage.errors import ConstraintViolation, UserNotFound
from cinematch.storage.models import (
    GrantKind,
    OneTimeGrant,
    RefreshTokenEntry,
    User,
    is_valid_user_id,
    normalize_email,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        display_name: Optional[str] = None,
        email_verified: Optional[bool] = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_email_verified(self, user_id: str, verified: bool = True) -> None: ...

    def set_password_hash(
        self, user_id: str, password_hash: str, *, revoke_sessions: bool = True
    ) -> None: ...

    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenEntry]: ...

    def add_refresh_token(
        self, user_id: str, entry: RefreshTokenEntry, *, max_entries: Optional[int] = None
    ) -> None: ...

    def replace_refresh_token(
        self, user_id: str, old_jti: str, entry: RefreshTokenEntry
    ) -> bool: ...

    def remove_refresh_token(self, user_id: str, jti: str) -> bool: ...

    def clear_refresh_tokens(self, user_id: str) -> None: ...

    def replace_grant(self, grant: OneTimeGrant) -> OneTimeGrant: ...

    def get_grant(self, kind: GrantKind, user_id: str) -> Optional[OneTimeGrant]: ...

    def delete_grants(self, kind: GrantKind, user_id: str) -> int: ...


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    user: User


def _subject_hash(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()[:16]


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


class AuthService:
    """Registration, verification, credential login and session rotation."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        signer: TokenSigner,
        hasher: SecretHasher,
        email: EmailService,
        email_limiter: RateLimiter,
        ip_limiter: RateLimiter,
        mail_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.signer = signer
        self.hasher = hasher
        self.email = email
        self.email_limiter = email_limiter
        self.ip_limiter = ip_limiter
        self.mail_limiter = mail_limiter
        self.ledger = RefreshTokenLedger(
            store, hasher, max_entries=settings.max_refresh_sessions
        )
        self.logger = logger
        self._dummy_hash: Optional[str] = None

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    # registration and verification
    async def register(
        self, email: Any, password: Any, display_name: Any = None
    ) -> User:
        email_n = normalize_email(_clean(email))
        if not email_n or not isinstance(password, str) or not password:
            raise BadRequestError("Email and password are required")
        if self.store.get_user_by_email(email_n):
            raise ConflictError("Email already registered")
        name = _clean(display_name) or email_n.split("@", 1)[0]
        password_hash = await self.hasher.hash_async(password)
        try:
            user = self.store.create_user(email_n, password_hash, display_name=name)
        except ConstraintViolation:
            raise ConflictError("Email already registered")
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def send_verification(self, user: User) -> bool:
        """Issue a fresh verification grant and mail its link; never raises."""

        try:
            raw = new_raw_token()
            grant = OneTimeGrant.new(
                GrantKind.EMAIL_VERIFICATION,
                user.id,
                await self.hasher.hash_async(raw),
                timedelta(hours=self.settings.email_verification_ttl_hours),
            )
            self.store.replace_grant(grant)
            link = self.verification_link(raw, user.id)
            sent = await asyncio.to_thread(
                self.email.send_email_verification,
                user.email,
                link,
                self.settings.email_verification_ttl_hours,
            )
            self.logger.info("email_verification_requested", user_id=user.id, sent=sent)
            return sent
        except Exception as exc:
            self.logger.error(
                "email_verification_send_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

    def verification_link(self, raw_token: str, user_id: str) -> str:
        query = urlencode({"token": raw_token, "u": user_id})
        return f"{self.settings.server_origin.rstrip('/')}{self.settings.verify_email_path}?{query}"

    def reset_link(self, raw_token: str, user_id: str) -> str:
        query = urlencode({"token": raw_token, "u": user_id})
        return f"{self.settings.client_origin.rstrip('/')}/reset-password?{query}"

    async def verify_email(self, token: Any, user_id: Any) -> None:
        if not token or not isinstance(token, str) or not is_valid_user_id(user_id):
            raise BadRequestError("Invalid link")
        grant = self.store.get_grant(GrantKind.EMAIL_VERIFICATION, user_id)
        if not grant:
            raise BadRequestError("Link expired or already used")
        if grant.is_expired() or not await self.hasher.matches_async(token, grant.hash):
            self.logger.warning("email_verification_invalid_token", user_id=user_id)
            raise BadRequestError("Link expired or invalid")
        try:
            self.store.set_email_verified(user_id, True)
        except UserNotFound:
            raise BadRequestError("Link expired or invalid")
        self.store.delete_grants(GrantKind.EMAIL_VERIFICATION, user_id)
        self.logger.info("email_verified", user_id=user_id)

    def require_email(self, email: Any) -> str:
        email_n = normalize_email(_clean(email))
        if not email_n:
            raise BadRequestError("Email required")
        return email_n

    async def resend_verification(self, email: str, ip: Optional[str] = None) -> None:
        """Re-send the verification link; silent for unknown or verified addresses."""

        try:
            if not await self._allow_mail(ip):
                return
            user = self.store.get_user_by_email(email)
            if not user or user.email_verified is True:
                self.logger.info("verification_resend_skipped", subject_hash=_subject_hash(email))
                return
            self.store.delete_grants(GrantKind.EMAIL_VERIFICATION, user.id)
            await self.send_verification(user)
        except Exception as exc:
            self.logger.error(
                "verification_resend_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )

    # credential login and session rotation
    async def login(self, email: Any, password: Any, ip: Optional[str]) -> IssuedTokens:
        email_n = normalize_email(_clean(email))
        if not email_n or not isinstance(password, str) or not password:
            raise BadRequestError("Email and password are required")

        await self._consume_login_budget(email_n, ip)

        user = self.store.get_user_by_email(email_n)
        if not user:
            # comparable latency for unknown accounts
            await self.hasher.matches_async(password, self._get_dummy_hash())
            self.logger.info(
                "login_failed", reason="unknown_user", subject_hash=_subject_hash(email_n)
            )
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not await self.hasher.matches_async(password, user.password_hash):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if user.email_verified is not True:
            raise NeedsVerificationError()

        await self.email_limiter.reset(email_n)
        if ip:
            await self.ip_limiter.reset(ip)

        issued = await self._issue_session(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return issued

    async def refresh(self, raw_token: Optional[str]) -> IssuedTokens:
        if not raw_token:
            raise AuthenticationError("Missing refresh cookie")
        try:
            payload = self.signer.verify_by_kid(raw_token)
        except TokenInvalidError as exc:
            self.logger.info("refresh_rejected", reason=exc.message)
            raise AuthenticationError("Invalid or expired refresh token")
        if payload.get("token_type", REFRESH_TOKEN_TYPE) != REFRESH_TOKEN_TYPE:
            raise AuthenticationError("Refresh token not recognized")
        user_id = payload.get("sub")
        if not is_valid_user_id(user_id):
            raise AuthenticationError("Invalid refresh token subject")
        user = self.store.get_user(user_id)
        if not user:
            raise AuthenticationError("Refresh token not recognized")

        old_jti = await self.ledger.find_match(
            user.id, raw_token, claimed_jti=payload.get("jti")
        )
        if old_jti is None:
            self.logger.warning("refresh_token_not_in_ledger", user_id=user.id)
            raise AuthenticationError("Refresh token not recognized")

        new_jti = uuid.uuid4().hex
        access = self.signer.issue_access(user.id, user.email, self.access_ttl)
        refresh = self.signer.issue_refresh(user.id, user.email, new_jti, self.refresh_ttl)
        if not await self.ledger.rotate(user.id, old_jti, new_jti, refresh):
            raise AuthenticationError("Refresh token not recognized")
        return IssuedTokens(access_token=access, refresh_token=refresh, user=user)

    async def logout(self, raw_token: Optional[str]) -> None:
        """Best effort: drop the presented refresh token from its owner's ledger."""

        if not raw_token:
            return
        try:
            payload = self.signer.verify_by_kid(raw_token)
            user_id = payload.get("sub")
            if is_valid_user_id(user_id):
                removed = await self.ledger.remove_refresh(user_id, raw_token)
                self.logger.info("logout", user_id=user_id, removed=removed)
        except Exception as exc:
            self.logger.info("logout_without_revocation", error_type=type(exc).__name__)

    # password reset
    async def forgot_password(self, email: Any, ip: Optional[str] = None) -> None:
        """Mail a reset link to verified accounts; silent in every other case."""

        email_n = normalize_email(_clean(email))
        if not email_n:
            return
        try:
            if not await self._allow_mail(ip):
                return
            user = self.store.get_user_by_email(email_n)
            # records without the flag predate verification and count as verified
            if not user or user.email_verified is False:
                self.logger.info("password_reset_skipped", subject_hash=_subject_hash(email_n))
                return
            raw = new_raw_token()
            grant = OneTimeGrant.new(
                GrantKind.PASSWORD_RESET,
                user.id,
                await self.hasher.hash_async(raw),
                timedelta(minutes=self.settings.password_reset_ttl_minutes),
            )
            self.store.replace_grant(grant)
            link = self.reset_link(raw, user.id)
            sent = await asyncio.to_thread(
                self.email.send_password_reset,
                user.email,
                link,
                self.settings.password_reset_ttl_minutes,
            )
            self.logger.info("password_reset_requested", user_id=user.id, sent=sent)
        except Exception as exc:
            self.logger.error(
                "password_reset_request_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def reset_password(self, token: Any, user_id: Any, new_password: Any) -> None:
        if (
            not token
            or not isinstance(token, str)
            or not isinstance(new_password, str)
            or not new_password
            or not is_valid_user_id(user_id)
        ):
            raise BadRequestError("Bad request")
        grant = self.store.get_grant(GrantKind.PASSWORD_RESET, user_id)
        if (
            not grant
            or grant.is_expired()
            or not await self.hasher.matches_async(token, grant.hash)
        ):
            self.logger.warning("password_reset_invalid_token", user_id=user_id)
            raise BadRequestError("Expired or invalid")
        password_hash = await self.hasher.hash_async(new_password)
        try:
            self.store.set_password_hash(user_id, password_hash, revoke_sessions=True)
        except UserNotFound:
            raise BadRequestError("Expired or invalid")
        self.store.delete_grants(GrantKind.PASSWORD_RESET, user_id)
        self.logger.info("password_reset_completed", user_id=user_id)

    # access guard
    def authenticate_bearer(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Missing bearer token")
        try:
            payload = self.signer.verify_by_kid(token)
        except TokenInvalidError:
            raise AuthenticationError("Invalid or expired access token")
        if payload.get("token_type", ACCESS_TOKEN_TYPE) != ACCESS_TOKEN_TYPE:
            raise AuthenticationError("Invalid or expired access token")
        user_id = payload.get("sub")
        if not isinstance(user_id, str) or not user_id:
            raise AuthenticationError("Invalid or expired access token")
        email = payload.get("email")
        return AuthContext(user_id=user_id, email=email if isinstance(email, str) else None)

    # helpers
    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer":
            return None
        return token.strip() or None

    async def _issue_session(self, user: User) -> IssuedTokens:
        jti = uuid.uuid4().hex
        access = self.signer.issue_access(user.id, user.email, self.access_ttl)
        refresh = self.signer.issue_refresh(user.id, user.email, jti, self.refresh_ttl)
        await self.ledger.store_refresh(user.id, jti, refresh)
        return IssuedTokens(access_token=access, refresh_token=refresh, user=user)

    async def _consume_login_budget(self, email: str, ip: Optional[str]) -> None:
        results = [await self.email_limiter.consume(email)]
        if ip:
            results.append(await self.ip_limiter.consume(ip))
        denied = [r for r in results if not r.allowed]
        if denied:
            retry_after = max(r.retry_after_seconds for r in denied)
            self.logger.warning("login_rate_limited", retry_after=retry_after)
            raise RateLimitedError(
                f"Too many attempts. Try again in {retry_after}s.",
                retry_after=retry_after,
            )

    async def _allow_mail(self, ip: Optional[str]) -> bool:
        if not self.mail_limiter or not ip:
            return True
        result = await self.mail_limiter.consume(ip)
        if not result.allowed:
            self.logger.warning("mail_request_throttled", retry_after=result.retry_after_seconds)
        return result.allowed

    def _get_dummy_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = self.hasher.hash(new_raw_token())
        return self._dummy_hash


__all__ = ["AuthService", "AuthContext", "AuthStore", "IssuedTokens"]
