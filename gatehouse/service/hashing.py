from __future__ import annotations

import asyncio

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from gatehouse.config import Settings
from gatehouse.logging import get_logger

logger = get_logger(__name__)


class SecretHasher:
    """Salted one-way hashing for passwords and issued secrets.

    Passwords and issued secrets (refresh tokens, reset tokens, one-time
    codes, device tokens) use separate Argon2id cost profiles. Verification
    never raises on a malformed or mismatching hash; it returns ``False``.
    The ``a``-prefixed coroutines run the work on a worker thread so the
    event loop is never blocked by hashing.
    """

    def __init__(self, settings: Settings) -> None:
        self._password_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_kib,
            parallelism=settings.password_hash_parallelism,
            type=Type.ID,
        )
        self._secret_hasher = PasswordHasher(
            time_cost=settings.secret_hash_time_cost,
            memory_cost=settings.secret_hash_memory_kib,
            parallelism=settings.secret_hash_parallelism,
            type=Type.ID,
        )
        # Verified against when the account is unknown so both paths cost the same
        self._dummy_password_hash = self._password_hasher.hash("gatehouse-dummy-password")

    def hash_password(self, password: str) -> str:
        return self._password_hasher.hash(password)

    def verify_password(self, password_hash: str, password: str) -> bool:
        return self._verify(self._password_hasher, password_hash, password)

    def burn_password_check(self, password: str) -> None:
        self._verify(self._password_hasher, self._dummy_password_hash, password)

    def hash_secret(self, secret: str) -> str:
        return self._secret_hasher.hash(secret)

    def verify_secret(self, secret_hash: str, secret: str) -> bool:
        return self._verify(self._secret_hasher, secret_hash, secret)

    @staticmethod
    def _verify(hasher: PasswordHasher, digest: str, plain: str) -> bool:
        if not digest or plain is None:
            return False
        try:
            return hasher.verify(digest, plain)
        except (VerificationError, InvalidHashError):
            return False

    async def ahash_password(self, password: str) -> str:
        return await asyncio.to_thread(self.hash_password, password)

    async def averify_password(self, password_hash: str, password: str) -> bool:
        return await asyncio.to_thread(self.verify_password, password_hash, password)

    async def aburn_password_check(self, password: str) -> None:
        await asyncio.to_thread(self.burn_password_check, password)

    async def ahash_secret(self, secret: str) -> str:
        return await asyncio.to_thread(self.hash_secret, secret)

    async def averify_secret(self, secret_hash: str, secret: str) -> bool:
        return await asyncio.to_thread(self.verify_secret, secret_hash, secret)
