from __future__ import annotations

from typing import Iterable, Optional

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.errors import ForbiddenError, UnauthorizedError
from gatehouse.service.second_factor import (
    SecondFactorEngine,
    SecondFactorState,
    state_for,
)
from gatehouse.service.sessions import Identity
from gatehouse.service.store import CredentialStore, run_store

logger = get_logger(__name__)


class AccessDecisionGate:
    """Per-request second-factor check for an already authenticated identity.

    Checks run in a fixed order and the first one that passes wins:
    allowlisted path, account without 2FA, trusted device, session already
    verified. Anything else is refused with ``ForbiddenError``.
    """

    def __init__(
        self,
        store: CredentialStore,
        second_factor: SecondFactorEngine,
        settings: Settings,
        *,
        allowlist: Optional[Iterable[str]] = None,
    ) -> None:
        self.store = store
        self.second_factor = second_factor
        self.settings = settings
        self.allowlist = tuple(
            allowlist if allowlist is not None else settings.second_factor_allowlist
        )

    def is_exempt(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.allowlist)

    async def check(
        self,
        identity: Identity,
        *,
        path: str,
        trusted_device_token: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        if self.is_exempt(path):
            return
        user = await run_store(
            self.store.get_user, identity.user_id, timeout=self.settings.store_timeout_seconds
        )
        if not user:
            raise UnauthorizedError("invalid or expired token")
        if not user.two_factor_enabled:
            return
        trusted = bool(trusted_device_token) and await self.second_factor.validate_trusted_device(
            user.id, trusted_device_token, user_agent
        )
        state = state_for(
            user,
            session_verified=identity.second_factor_verified,
            trusted_device_ok=trusted,
        )
        if state is not SecondFactorState.PENDING:
            return
        logger.info("second_factor_required", user_id=user.id, path=path)
        raise ForbiddenError("2FA required")


def require_owner_or_admin(identity: Identity, target_user_id: str) -> None:
    if identity.is_admin or identity.user_id == target_user_id:
        return
    raise ForbiddenError("you can only access your own resources")
