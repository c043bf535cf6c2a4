from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from taskdesk.config import Settings
from taskdesk.logging import get_logger
from taskdesk.service.clock import Clock, utc_now
from taskdesk.service.errors import ExpiredError, InvalidError, NotFoundError
from taskdesk.storage.models import OtpRecord

logger = get_logger(__name__)

OTP_MIN = 100000
OTP_MAX = 999999

NO_VALID_OTP_MESSAGE = "No valid OTP found. Please request a new one."
EXPIRED_OTP_MESSAGE = "OTP has expired. Please request a new one."
INVALID_OTP_MESSAGE = "Invalid OTP. Please try again."


class OtpStore(Protocol):
    def supersede_and_create_otp(
        self, user_id: str, otp_hash: str, expires_at: datetime, now: datetime
    ) -> Tuple[OtpRecord, int]: ...

    def find_latest_unused_otp(self, user_id: str) -> Optional[OtpRecord]: ...

    def mark_otp_used(self, otp_id: str) -> bool: ...

    def delete_expired_otps(self, now: datetime) -> int: ...


@dataclass(frozen=True)
class OtpConfig:
    ttl_minutes: int = 10
    hash_time_cost: int = 3
    hash_memory_cost: int = 65536
    hash_parallelism: int = 4

    @classmethod
    def from_settings(cls, settings: Settings) -> "OtpConfig":
        return cls(
            ttl_minutes=settings.otp_ttl_minutes,
            hash_time_cost=settings.otp_hash_time_cost,
            hash_memory_cost=settings.otp_hash_memory_cost,
            hash_parallelism=settings.otp_hash_parallelism,
        )


def generate_code() -> str:
    """Uniform 6-digit code from the OS CSPRNG, never zero-padded."""
    return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))


class OtpEngine:
    """Issues and checks one-time login codes.

    Only a salted argon2id hash of each code is stored. Issuing a new code
    soft-invalidates every earlier unused code for the same user, and a
    successful check consumes the record with a compare-and-set so a code can
    be redeemed at most once.
    """

    def __init__(
        self,
        store: OtpStore,
        config: OtpConfig,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.config = config
        self.clock = clock
        self._hasher = PasswordHasher(
            time_cost=config.hash_time_cost,
            memory_cost=config.hash_memory_cost,
            parallelism=config.hash_parallelism,
            type=Type.ID,
        )

    def hash_code(self, code: str) -> str:
        return self._hasher.hash(code)

    def _matches(self, otp_hash: str, candidate: str) -> bool:
        try:
            return self._hasher.verify(otp_hash, candidate)
        except (InvalidHash, VerifyMismatchError):
            return False

    def create(self, user_id: str) -> str:
        """Issue a fresh code for ``user_id`` and return its plaintext."""
        code = generate_code()
        otp_hash = self.hash_code(code)
        now = self.clock()
        record, superseded = self.store.supersede_and_create_otp(
            user_id,
            otp_hash,
            now + timedelta(minutes=self.config.ttl_minutes),
            now,
        )
        logger.info(
            "otp_issued",
            user_id=user_id,
            otp_id=record.id,
            superseded=superseded,
            expires_at=record.expires_at.isoformat(),
        )
        return code

    def verify(self, user_id: str, candidate: str) -> OtpRecord:
        record = self.store.find_latest_unused_otp(user_id)
        if record is None:
            logger.info("otp_verify_failed", user_id=user_id, reason="not_found")
            raise NotFoundError(NO_VALID_OTP_MESSAGE, status_code=400)

        if record.is_expired(self.clock()):
            logger.info(
                "otp_verify_failed", user_id=user_id, otp_id=record.id, reason="expired"
            )
            raise ExpiredError(EXPIRED_OTP_MESSAGE)

        if not self._matches(record.otp_hash, candidate):
            logger.info(
                "otp_verify_failed", user_id=user_id, otp_id=record.id, reason="mismatch"
            )
            raise InvalidError(INVALID_OTP_MESSAGE)

        if not self.store.mark_otp_used(record.id):
            # a concurrent verify consumed it first
            logger.warning("otp_consume_conflict", user_id=user_id, otp_id=record.id)
            raise NotFoundError(NO_VALID_OTP_MESSAGE, status_code=400)

        record.is_used = True
        logger.info("otp_verified", user_id=user_id, otp_id=record.id)
        return record

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_otps(self.clock())
        if removed:
            logger.info("otp_cleanup", removed=removed)
        return removed
