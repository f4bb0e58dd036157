from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar

from gatehouse.logging import get_logger
from gatehouse.service.errors import ServerError, ServiceError, ServiceUnavailableError
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import ActivityLog, SecondFactorCode, TrustedDevice, User

logger = get_logger(__name__)

T = TypeVar("T")


class CredentialStore(Protocol):
    """Persistence the engines depend on. Methods are blocking."""

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        bootstrap_admin: bool = True,
    ) -> User:
        ...

    def count_users(self) -> int:
        ...

    def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        ...

    def update_user_if(
        self, user_id: str, expected: Dict[str, Any], **fields: Any
    ) -> Optional[User]:
        ...

    def upsert_second_factor_code(
        self, user_id: str, code_hash: str, expires_at: datetime
    ) -> SecondFactorCode:
        ...

    def get_second_factor_code(self, user_id: str) -> Optional[SecondFactorCode]:
        ...

    def delete_second_factor_code(
        self, user_id: str, *, code_hash: Optional[str] = None
    ) -> bool:
        ...

    def update_second_factor_attempts(
        self, user_id: str, *, code_hash: str
    ) -> Optional[int]:
        ...

    def create_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        ...

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        ...

    def record_activity(
        self,
        user_id: str,
        action: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ActivityLog:
        ...

    def list_activity(self, user_id: str) -> List[ActivityLog]:
        ...

    def purge_activity_before(self, threshold: datetime) -> int:
        ...


async def run_store(
    fn: Callable[..., T], *args: Any, timeout: float, **kwargs: Any
) -> T:
    """Run a blocking store call on a worker thread, bounded by ``timeout``.

    Timeouts surface as the retryable ``ServiceUnavailableError``;
    constraint violations and service errors pass through; anything else is
    logged and reported as ``ServerError`` without detail.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout)
    except asyncio.TimeoutError:
        logger.error("store_call_timeout", operation=getattr(fn, "__name__", "?"), timeout=timeout)
        raise ServiceUnavailableError("storage timed out")
    except (ConstraintViolation, ServiceError):
        raise
    except Exception as exc:
        logger.exception(
            "store_call_failed", operation=getattr(fn, "__name__", "?"), error=str(exc)
        )
        raise ServerError("internal error") from exc
