from __future__ import annotations

from datetime import timedelta
from typing import Optional

from gatehouse.logging import get_logger
from gatehouse.service.store import CredentialStore, run_store
from gatehouse.storage.models import utcnow

logger = get_logger(__name__)


class ActivityLogService:
    """Login/logout audit trail with age-based retention."""

    def __init__(self, store: CredentialStore, *, store_timeout: float = 5.0) -> None:
        self.store = store
        self.store_timeout = store_timeout

    async def record(
        self,
        user_id: str,
        action: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        await run_store(
            self.store.record_activity,
            user_id,
            action,
            ip=ip,
            user_agent=user_agent,
            timeout=self.store_timeout,
        )

    async def purge_older_than(self, days: int) -> int:
        threshold = utcnow() - timedelta(days=days)
        removed = await run_store(
            self.store.purge_activity_before, threshold, timeout=self.store_timeout
        )
        logger.info("activity_log_purged", removed=removed, older_than_days=days)
        return removed
