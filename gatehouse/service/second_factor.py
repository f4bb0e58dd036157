from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.email import Notifier
from gatehouse.service.errors import (
    NotFoundError,
    SecondFactorExhaustedError,
    UnauthorizedError,
)
from gatehouse.service.hashing import SecretHasher
from gatehouse.service.locks import UserLocks
from gatehouse.service.store import CredentialStore, run_store
from gatehouse.storage.models import TrustedDevice, User, utcnow

logger = get_logger(__name__)


class SecondFactorState(str, Enum):
    NO_2FA = "no-2fa"
    PENDING = "pending"
    VERIFIED_THIS_SESSION = "verified-this-session"
    DEVICE_TRUSTED = "device-trusted"


def state_for(
    user: User, *, session_verified: bool = False, trusted_device_ok: bool = False
) -> SecondFactorState:
    if not user.two_factor_enabled:
        return SecondFactorState.NO_2FA
    if trusted_device_ok:
        return SecondFactorState.DEVICE_TRUSTED
    if session_verified:
        return SecondFactorState.VERIFIED_THIS_SESSION
    return SecondFactorState.PENDING


class SecondFactorEngine:
    """Email one-time codes and trusted-device exemptions.

    A user has at most one outstanding code. Verification runs under the
    per-user lock and every mutation of the code record is conditional on
    what was read, so a code is consumed at most once even if two
    verifications race past the lock.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: SecretHasher,
        notifier: Notifier,
        locks: UserLocks,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.notifier = notifier
        self.locks = locks
        self.settings = settings
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    async def _db(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await run_store(
            fn, *args, timeout=self.settings.store_timeout_seconds, **kwargs
        )

    def generate_code(self) -> str:
        length = self.settings.otp_length
        low = 10 ** (length - 1)
        high = 10**length - 1
        return str(low + secrets.randbelow(high - low + 1))

    def generate_device_token(self) -> str:
        return secrets.token_hex(self.settings.device_token_bytes)

    async def send_code(self, user_id: str, email: str) -> None:
        code = self.generate_code()
        code_hash = await self.hasher.ahash_secret(code)
        expires_at = self._now() + timedelta(minutes=self.settings.otp_ttl_minutes)
        await self._db(self.store.upsert_second_factor_code, user_id, code_hash, expires_at)
        await self.notifier.send_second_factor_code(email, code)
        logger.info("second_factor_code_sent", user_id=user_id)

    async def verify_code(self, user_id: str, code: str) -> bool:
        max_attempts = self.settings.otp_max_attempts
        async with self.locks.hold(user_id):
            record = await self._db(self.store.get_second_factor_code, user_id)
            if not record:
                logger.warning("second_factor_rejected", reason="no_code", user_id=user_id)
                raise UnauthorizedError("no OTP")

            if record.attempts >= max_attempts:
                await self._db(
                    self.store.delete_second_factor_code, user_id, code_hash=record.code_hash
                )
                logger.warning("second_factor_rejected", reason="exhausted", user_id=user_id)
                raise SecondFactorExhaustedError("too many attempts, request a new code")

            if record.is_expired(self._now()):
                await self._db(
                    self.store.delete_second_factor_code, user_id, code_hash=record.code_hash
                )
                logger.warning("second_factor_rejected", reason="expired", user_id=user_id)
                raise UnauthorizedError("OTP expired")

            if not await self.hasher.averify_secret(record.code_hash, code or ""):
                # Atomic increment; None means the code was consumed or replaced
                attempts = await self._db(
                    self.store.update_second_factor_attempts,
                    user_id,
                    code_hash=record.code_hash,
                )
                if (
                    attempts is not None
                    and self.settings.otp_lock_on_final_failure
                    and attempts >= max_attempts
                ):
                    await self._db(
                        self.store.delete_second_factor_code,
                        user_id,
                        code_hash=record.code_hash,
                    )
                logger.warning(
                    "second_factor_rejected", reason="mismatch", user_id=user_id, attempts=attempts
                )
                raise UnauthorizedError("invalid code")

            # Consume before reporting success
            consumed = await self._db(
                self.store.delete_second_factor_code, user_id, code_hash=record.code_hash
            )
            if not consumed:
                logger.warning("second_factor_rejected", reason="already_consumed", user_id=user_id)
                raise UnauthorizedError("no OTP")
        logger.info("second_factor_verified", user_id=user_id)
        return True

    async def create_trusted_device(
        self, user_id: str, user_agent: str, days: Optional[int] = None
    ) -> str:
        """Register the current device; returns the raw token for the cookie."""
        raw_token = self.generate_device_token()
        token_hash = await self.hasher.ahash_secret(raw_token)
        device = TrustedDevice.new(
            user_id,
            user_agent or "",
            token_hash,
            ttl_days=self.settings.trusted_device_ttl_days if days is None else days,
            now=self._now(),
        )
        await self._db(self.store.create_trusted_device, device)
        logger.info("trusted_device_created", user_id=user_id, device_id=device.id)
        return raw_token

    async def validate_trusted_device(
        self, user_id: str, raw_token: Optional[str], user_agent: Optional[str]
    ) -> bool:
        if not raw_token:
            return False
        now = self._now()
        devices = await self._db(self.store.list_trusted_devices, user_id)
        for device in devices:
            if device.is_expired(now):
                continue
            if device.user_agent != (user_agent or ""):
                continue
            if await self.hasher.averify_secret(device.device_token_hash, raw_token):
                return True
        return False

    async def set_enabled(self, user_id: str, enabled: bool) -> User:
        user = await self._db(self.store.update_user, user_id, two_factor_enabled=enabled)
        if not user:
            raise NotFoundError("user not found")
        logger.info("second_factor_toggled", user_id=user_id, enabled=enabled)
        return user
