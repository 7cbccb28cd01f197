import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError

from reelbox.db import ContentStore

logger = logging.getLogger("reelbox.maintenance")


@dataclass(frozen=True)
class SweepResult:
    cancelled: int
    deleted: int


async def sweep_uploads(
    store: ContentStore,
    *,
    pending_timeout_seconds: int,
    cancelled_retention_seconds: int,
    now: datetime | None = None,
) -> SweepResult:
    now = now or datetime.now(timezone.utc)
    cancelled = await store.cancel_stale_pending(now - timedelta(seconds=pending_timeout_seconds), now=now)
    deleted = await store.delete_cancelled(now - timedelta(seconds=cancelled_retention_seconds))
    if cancelled or deleted:
        logger.info(
            "upload sweep complete",
            extra={"action": "upload_sweep", "cancelled": cancelled, "deleted": deleted},
        )
    return SweepResult(cancelled=cancelled, deleted=deleted)


async def run_maintenance_loop(
    store: ContentStore,
    *,
    interval_seconds: int,
    pending_timeout_seconds: int,
    cancelled_retention_seconds: int,
) -> None:
    while True:
        try:
            await sweep_uploads(
                store,
                pending_timeout_seconds=pending_timeout_seconds,
                cancelled_retention_seconds=cancelled_retention_seconds,
            )
        except SQLAlchemyError:
            logger.exception("upload sweep failed", extra={"action": "upload_sweep_failed"})
        await asyncio.sleep(interval_seconds)
