"""Background worker: finish secondary writes recorded in pending_actions."""

import asyncio
import time
from typing import Any, Optional

import asyncpg
import structlog

from postflow.database.models import Post
from postflow.database.outbox import (
    ACTION_CANCEL_LATE_POSTS,
    ACTION_DELETE_UNSCHEDULED,
    ACTION_MAX_ATTEMPTS,
    ACTION_REINSERT_UNSCHEDULED,
    get_due_actions,
    mark_action_done,
    mark_action_failed,
)
from postflow.database.repository import (
    delete_unscheduled_post,
    get_scheduled_post,
    upsert_unscheduled_post,
)
from postflow.services.publisher import PublishingService, cancel_late_posts

log = structlog.get_logger()

RECONCILER_BATCH_SIZE = 20
TABLE_MISSING_LOG_INTERVAL_SEC = 300


async def _delete_unscheduled_source(pool: asyncpg.Pool, post_id: str) -> None:
    # Only remove the source while the scheduled copy exists; otherwise the post would vanish
    if await get_scheduled_post(pool, post_id) is None:
        log.warning("reconcile_source_kept", post_id=post_id, reason="scheduled row missing")
        return
    await delete_unscheduled_post(pool, post_id)


async def _reinsert_unscheduled(pool: asyncpg.Pool, post_id: str, payload: Any) -> None:
    if await get_scheduled_post(pool, post_id) is not None:
        # rescheduled in the meantime
        return
    if not isinstance(payload, dict):
        raise ValueError("reinsert payload missing")
    await upsert_unscheduled_post(pool, Post.from_dict(payload))


async def _cancel_late_posts(service: Optional[PublishingService], post_id: str, payload: Any) -> None:
    ids = payload.get("late_post_ids") if isinstance(payload, dict) else None
    if not ids:
        return
    if service is None:
        raise RuntimeError("publishing service not configured")
    remaining = await cancel_late_posts(service, {str(k): str(v) for k, v in ids.items()})
    if remaining:
        raise RuntimeError(f"LATE cancel failed for {', '.join(sorted(remaining))}")


async def reconcile_once(
    pool: asyncpg.Pool,
    limit: int = RECONCILER_BATCH_SIZE,
    service: Optional[PublishingService] = None,
) -> int:
    """Process due pending actions once. Returns number of actions completed."""
    done = 0
    for row in await get_due_actions(pool, limit=limit):
        action_id = row["id"]
        post_id = row["post_id"]
        attempts = (row.get("attempts") or 0) + 1
        try:
            if row["action"] == ACTION_DELETE_UNSCHEDULED:
                await _delete_unscheduled_source(pool, post_id)
            elif row["action"] == ACTION_REINSERT_UNSCHEDULED:
                await _reinsert_unscheduled(pool, post_id, row.get("payload"))
            elif row["action"] == ACTION_CANCEL_LATE_POSTS:
                await _cancel_late_posts(service, post_id, row.get("payload"))
            else:
                log.error("reconcile_unknown_action", action_id=action_id, action=row["action"])
                await mark_action_failed(pool, action_id, error="unknown action", attempts=ACTION_MAX_ATTEMPTS)
                continue
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("reconcile_action_failed", action_id=action_id, post_id=post_id, attempts=attempts, error=str(e))
            await mark_action_failed(pool, action_id, error=str(e), attempts=attempts)
            continue
        await mark_action_done(pool, action_id)
        log.info("reconcile_action_done", action_id=action_id, action=row["action"], post_id=post_id)
        done += 1
    return done


async def run_reconciler(
    pool: asyncpg.Pool, interval: int = 30, service: Optional[PublishingService] = None
) -> None:
    """
    Loop: every `interval` seconds complete due pending actions. Runs until cancelled.
    If table pending_actions is missing, logs a hint and keeps running.
    """
    last_table_missing_log = 0.0
    while True:
        try:
            await reconcile_once(pool, service=service)
        except asyncio.CancelledError:
            log.info("reconciler_stopped")
            raise
        except asyncpg.UndefinedTableError as e:
            now_ts = time.monotonic()
            if now_ts - last_table_missing_log >= TABLE_MISSING_LOG_INTERVAL_SEC:
                last_table_missing_log = now_ts
                log.warning("pending_actions_table_missing", msg="Apply sql/schema.sql", error=str(e))
        except Exception as e:
            log.error("reconciler_tick_error", error=str(e), exc_info=True)
        await asyncio.sleep(interval)
