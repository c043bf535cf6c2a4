from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from taskdesk.logging import fingerprint, get_logger
from taskdesk.service.audit import ActivityLogger, AuditAction, RequestMeta
from taskdesk.service.clock import Clock, utc_now
from taskdesk.service.email import EmailService
from taskdesk.service.errors import (
    AuthenticationError,
    ExpiredError,
    NotFoundError,
    RevokedError,
    ValidationError,
)
from taskdesk.service.otp import OtpEngine
from taskdesk.service.tokens import TOKEN_TYPE, TokenIssuer, hash_refresh_token
from taskdesk.storage.errors import ConstraintViolation
from taskdesk.storage.models import RefreshTokenRecord, User

logger = get_logger(__name__)

OTP_SENT_MESSAGE = "OTP sent successfully to your email"
LOGOUT_MESSAGE = "Logged out successfully"
LOGOUT_ALL_MESSAGE = "Logged out from all sessions"
INVALID_REFRESH_MESSAGE = "Invalid refresh token"
REVOKED_REFRESH_MESSAGE = "Refresh token has been revoked"
EXPIRED_REFRESH_MESSAGE = "Refresh token has expired"


class SessionStore(Protocol):
    def create_user(self, email: str) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def mark_user_verified(self, user_id: str, now: datetime) -> Optional[User]: ...

    def find_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    def touch_refresh_token(
        self, token_hash: str, now: datetime
    ) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token(self, token_hash: str, user_id: str) -> bool: ...

    def revoke_all_refresh_tokens(self, user_id: str) -> int: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    token_id: Optional[str] = None
    expires_at: Optional[datetime] = None


def normalize_email(email: str) -> str:
    """NFKC-normalize, trim and lowercase an address."""
    if not isinstance(email, str):
        return ""
    return unicodedata.normalize("NFKC", email).strip().lower()


class SessionManager:
    """Passwordless login lifecycle.

    Anonymous callers request a code by email, exchange it for an access and
    refresh token pair, trade the refresh token for new access tokens until it
    expires or is revoked, and log out one or all sessions. Store state is
    re-read on every call; nothing is cached between requests.
    """

    def __init__(
        self,
        store: SessionStore,
        otp: OtpEngine,
        tokens: TokenIssuer,
        email: EmailService,
        audit: ActivityLogger,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.otp = otp
        self.tokens = tokens
        self.email = email
        self.audit = audit
        self.clock = clock

    def _find_or_create_user(self, email: str) -> User:
        user = self.store.get_user_by_email(email)
        if user:
            return user
        try:
            user = self.store.create_user(email)
            logger.info("user_created", user_id=user.id, email_ref=fingerprint(email))
            return user
        except ConstraintViolation:
            # lost a concurrent create; the winner's row is authoritative
            user = self.store.get_user_by_email(email)
            if user is None:
                raise
            return user

    def request_otp(self, email: str, meta: Optional[RequestMeta] = None) -> dict[str, Any]:
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValidationError("A valid email address is required")
        user = self._find_or_create_user(normalized)
        code = self.otp.create(user.id)
        self.email.send_otp(normalized, code)
        self.audit.record(user.id, AuditAction.OTP_REQUEST, meta)
        logger.info("otp_requested", user_id=user.id)
        return {"message": OTP_SENT_MESSAGE, "email": normalized}

    def verify_otp(
        self, email: str, code: str, meta: Optional[RequestMeta] = None
    ) -> dict[str, Any]:
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized)
        if not user:
            raise NotFoundError("User not found. Please request an OTP first.")

        self.otp.verify(user.id, code)

        if not user.is_verified:
            user = self.store.mark_user_verified(user.id, self.clock()) or user

        access = self.tokens.mint_access_token(user.id)
        refresh = self.tokens.mint_refresh_token(user.id)
        self.audit.record(user.id, AuditAction.LOGIN, meta)
        logger.info("login_succeeded", user_id=user.id)
        return {
            "user": user.to_public(),
            "access_token": access.token,
            "refresh_token": refresh.token,
            "token_type": TOKEN_TYPE,
            "expires_in": access.expires_in,
        }

    def _raise_refresh_failure(self, token_hash: str, now: datetime) -> None:
        record = self.store.find_refresh_token_by_hash(token_hash)
        if record is None:
            logger.info("refresh_rejected", reason="not_found")
            raise NotFoundError(INVALID_REFRESH_MESSAGE, status_code=401)
        if record.is_revoked:
            logger.info("refresh_rejected", reason="revoked", user_id=record.user_id)
            raise RevokedError(REVOKED_REFRESH_MESSAGE)
        logger.info("refresh_rejected", reason="expired", user_id=record.user_id)
        raise ExpiredError(EXPIRED_REFRESH_MESSAGE, status_code=401)

    def refresh(
        self, refresh_token: str, meta: Optional[RequestMeta] = None
    ) -> dict[str, Any]:
        """Exchange a refresh token for a new access token.

        The refresh token itself is not rotated. Validity is checked by a
        conditional write on the token row, so a refresh that starts after a
        revocation has committed can never succeed.
        """
        if not refresh_token:
            raise NotFoundError(INVALID_REFRESH_MESSAGE, status_code=401)
        token_hash = hash_refresh_token(refresh_token)
        now = self.clock()
        record = self.store.touch_refresh_token(token_hash, now)
        if record is None:
            self._raise_refresh_failure(token_hash, now)

        access = self.tokens.mint_access_token(record.user_id)
        self.audit.record(record.user_id, AuditAction.TOKEN_REFRESH, meta)
        logger.info("token_refreshed", user_id=record.user_id, refresh_token_id=record.id)
        return {
            "access_token": access.token,
            "token_type": TOKEN_TYPE,
            "expires_in": access.expires_in,
        }

    def logout(
        self, refresh_token: str, user_id: str, meta: Optional[RequestMeta] = None
    ) -> dict[str, Any]:
        if not refresh_token:
            raise ValidationError("Refresh token is required")
        revoked = self.store.revoke_refresh_token(hash_refresh_token(refresh_token), user_id)
        if revoked:
            logger.info("refresh_token_revoked", user_id=user_id)
        else:
            # unknown, foreign or already revoked; logout stays idempotent
            logger.info("logout_token_not_active", user_id=user_id)
        self.audit.record(user_id, AuditAction.LOGOUT, meta)
        return {"message": LOGOUT_MESSAGE}

    def revoke_all(self, user_id: str) -> int:
        count = self.store.revoke_all_refresh_tokens(user_id)
        logger.info("refresh_tokens_revoked_all", user_id=user_id, count=count)
        return count

    def logout_all(self, user_id: str, meta: Optional[RequestMeta] = None) -> dict[str, Any]:
        count = self.revoke_all(user_id)
        self.audit.record(
            user_id, AuditAction.LOGOUT_ALL, meta, new_values={"revoked": count}
        )
        return {"message": LOGOUT_ALL_MESSAGE, "revoked": count}

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Access token is required")
        claims = self.tokens.verify_access_token(token)
        user = self.store.get_user(str(claims["sub"]))
        if not user:
            raise AuthenticationError("User not found")
        return AuthContext(
            user_id=user.id,
            email=user.email,
            token_id=claims.get("jti"),
            expires_at=datetime.fromtimestamp(float(claims["exp"]), tz=timezone.utc),
        )

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def sweep_expired(self) -> dict[str, int]:
        """Delete expired OTP rows and long-expired refresh tokens."""
        return {
            "otps": self.otp.cleanup_expired(),
            "refresh_tokens": self.tokens.cleanup_expired(),
        }
