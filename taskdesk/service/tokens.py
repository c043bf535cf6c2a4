from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

from taskdesk.config import Settings
from taskdesk.logging import get_logger
from taskdesk.service.clock import Clock, utc_now
from taskdesk.service.errors import ExpiredError, InvalidError
from taskdesk.storage.models import RefreshTokenRecord

logger = get_logger(__name__)

TOKEN_TYPE = "Bearer"
ACCESS_TOKEN_EXPIRED_MESSAGE = "Access token has expired"
ACCESS_TOKEN_INVALID_MESSAGE = "Invalid access token"


class TokenStore(Protocol):
    def create_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime, now: datetime
    ) -> RefreshTokenRecord: ...

    def delete_expired_refresh_tokens(self, before: datetime) -> int: ...


@dataclass(frozen=True)
class TokenConfig:
    secret: str
    issuer: str = "taskdesk"
    audience: str = "taskdesk-clients"
    access_ttl_minutes: int = 15
    refresh_ttl_days: int = 7
    refresh_token_bytes: int = 64
    refresh_retention_days: int = 30

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenConfig":
        return cls(
            secret=settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_minutes=settings.access_token_ttl_minutes,
            refresh_ttl_days=settings.refresh_token_ttl_days,
            refresh_token_bytes=settings.refresh_token_bytes,
            refresh_retention_days=settings.refresh_token_retention_days,
        )


@dataclass
class AccessToken:
    token: str
    jti: str
    expires_at: datetime
    expires_in: int


@dataclass
class IssuedRefreshToken:
    # plaintext is handed to the client once and never stored
    token: str
    record: RefreshTokenRecord


def hash_refresh_token(token: str) -> str:
    """SHA-256 hex digest; refresh tokens carry enough entropy for a fast hash."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenIssuer:
    """Mints HS256 access tokens and opaque refresh tokens."""

    def __init__(
        self,
        store: TokenStore,
        config: TokenConfig,
        *,
        clock: Clock = utc_now,
    ) -> None:
        if not config.secret:
            raise ValueError("token signing secret must be set")
        self.store = store
        self.config = config
        self.clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.config.secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def mint_access_token(self, user_id: str) -> AccessToken:
        now = self.clock()
        ttl = timedelta(minutes=self.config.access_ttl_minutes)
        expires_at = now + ttl
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "sub": user_id,
            "token_type": "access",
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return AccessToken(
            token=self._encode_jwt(payload),
            jti=jti,
            expires_at=expires_at,
            expires_in=int(ttl.total_seconds()),
        )

    def verify_access_token(self, token: str) -> dict[str, Any]:
        """Return the claims of a valid access token.

        Raises ``ExpiredError`` for an authentic token past ``exp`` and
        ``InvalidError`` for everything else (bad structure, algorithm,
        signature, issuer, audience or token type). Both carry HTTP 401.
        """
        if not token or not isinstance(token, str):
            raise InvalidError(ACCESS_TOKEN_INVALID_MESSAGE, status_code=401)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidError(ACCESS_TOKEN_INVALID_MESSAGE, status_code=401)

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidError(ACCESS_TOKEN_INVALID_MESSAGE, status_code=401)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidError(ACCESS_TOKEN_INVALID_MESSAGE, status_code=401)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidError(ACCESS_TOKEN_INVALID_MESSAGE, status_code=401)

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidError(ACCESS_TOKEN_INVALID_MESSAGE, status_code=401)
        if not isinstance(payload, dict):
            raise InvalidError(ACCESS_TOKEN_INVALID_MESSAGE, status_code=401)

        if payload.get("iss") != self.config.issuer:
            raise InvalidError(ACCESS_TOKEN_INVALID_MESSAGE, status_code=401)
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.config.audience
        elif isinstance(aud, list):
            valid_aud = self.config.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise InvalidError(ACCESS_TOKEN_INVALID_MESSAGE, status_code=401)
        if payload.get("token_type") != "access" or not payload.get("sub"):
            raise InvalidError(ACCESS_TOKEN_INVALID_MESSAGE, status_code=401)

        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise InvalidError(ACCESS_TOKEN_INVALID_MESSAGE, status_code=401)
        if exp_ts <= self.clock().timestamp():
            raise ExpiredError(ACCESS_TOKEN_EXPIRED_MESSAGE, status_code=401)
        return payload

    def mint_refresh_token(self, user_id: str) -> IssuedRefreshToken:
        now = self.clock()
        token = secrets.token_hex(self.config.refresh_token_bytes)
        record = self.store.create_refresh_token(
            user_id,
            hash_refresh_token(token),
            now + timedelta(days=self.config.refresh_ttl_days),
            now,
        )
        logger.info(
            "refresh_token_issued",
            user_id=user_id,
            refresh_token_id=record.id,
            expires_at=record.expires_at.isoformat(),
        )
        return IssuedRefreshToken(token=token, record=record)

    def retention_cutoff(self, now: Optional[datetime] = None) -> datetime:
        current = now or self.clock()
        return current - timedelta(days=self.config.refresh_retention_days)

    def cleanup_expired(self) -> int:
        """Delete refresh-token rows that expired before the retention cutoff."""
        removed = self.store.delete_expired_refresh_tokens(self.retention_cutoff())
        if removed:
            logger.info("refresh_token_cleanup", removed=removed)
        return removed
