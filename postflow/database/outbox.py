"""pending_actions table: intent log for secondary writes that may fail after the primary write."""

import json
from datetime import datetime, timezone, timedelta
from typing import Any, Optional

import asyncpg
import structlog

log = structlog.get_logger()

ACTION_DELETE_UNSCHEDULED = "delete_unscheduled_source"
ACTION_REINSERT_UNSCHEDULED = "reinsert_unscheduled"
# payload: {"late_post_ids": {platform: late_post_id}}
ACTION_CANCEL_LATE_POSTS = "cancel_late_posts"

ACTION_MAX_ATTEMPTS = 5
ACTION_BACKOFF_BASE_SEC = 30


async def insert_pending_action(
    pool: asyncpg.Pool,
    *,
    action: str,
    post_id: str,
    payload: Optional[dict[str, Any]] = None,
) -> Optional[int]:
    """
    Record intent before the secondary write. Returns action id, or None if the row could not be stored
    (the caller proceeds; the secondary write is then attempted without a safety net).
    """
    try:
        row = await pool.fetchrow(
            """
            INSERT INTO pending_actions (action, post_id, payload, status, attempts, updated_at)
            VALUES ($1, $2, $3, 'pending', 0, NOW())
            RETURNING id
            """,
            action,
            post_id,
            json.dumps(payload, default=str) if payload is not None else None,
        )
        return row["id"] if row else None
    except Exception as e:
        log.error("pending_action_insert_failed", action=action, post_id=post_id, error=str(e))
        return None


async def get_due_actions(pool: asyncpg.Pool, limit: int = 20) -> list[dict[str, Any]]:
    """Return pending rows whose next_retry_at is null or past, oldest first."""
    now = datetime.now(timezone.utc)
    rows = await pool.fetch(
        """
        SELECT id, action, post_id, payload, attempts
        FROM pending_actions
        WHERE status = 'pending'
          AND attempts < $1
          AND (next_retry_at IS NULL OR next_retry_at <= $2)
        ORDER BY created_at
        LIMIT $3
        """,
        ACTION_MAX_ATTEMPTS,
        now,
        limit,
    )
    result = []
    for r in rows:
        item = dict(r)
        item["post_id"] = str(item["post_id"])
        if isinstance(item.get("payload"), str):
            item["payload"] = json.loads(item["payload"])
        result.append(item)
    return result


async def mark_action_done(pool: asyncpg.Pool, action_id: Optional[int]) -> None:
    """Set status=done. No-op for None (intent row was never stored)."""
    if action_id is None:
        return
    await pool.execute(
        "UPDATE pending_actions SET status = 'done', updated_at = NOW() WHERE id = $1",
        action_id,
    )


async def mark_action_failed(
    pool: asyncpg.Pool,
    action_id: Optional[int],
    error: str,
    attempts: int,
) -> None:
    """Set last_error, attempts, next_retry_at (backoff), or status=failed if attempts >= max."""
    if action_id is None:
        return
    if attempts >= ACTION_MAX_ATTEMPTS:
        await pool.execute(
            """
            UPDATE pending_actions
            SET status = 'failed', last_error = $2, attempts = $3, updated_at = NOW(), next_retry_at = NULL
            WHERE id = $1
            """,
            action_id,
            error[:2000] if error else None,
            attempts,
        )
        log.warning("pending_action_marked_failed", action_id=action_id, attempts=attempts, error=(error or "")[:200])
    else:
        delay_sec = ACTION_BACKOFF_BASE_SEC * (2 ** attempts)
        next_retry = datetime.now(timezone.utc) + timedelta(seconds=delay_sec)
        await pool.execute(
            """
            UPDATE pending_actions
            SET last_error = $2, attempts = $3, next_retry_at = $4, updated_at = NOW()
            WHERE id = $1
            """,
            action_id,
            error[:2000] if error else None,
            attempts,
            next_retry,
        )


async def mark_post_actions_done(pool: asyncpg.Pool, post_id: str, action: str) -> int:
    """Close every pending `action` row of a post (its work was done another way). Returns rows closed."""
    result = await pool.execute(
        """
        UPDATE pending_actions SET status = 'done', updated_at = NOW()
        WHERE post_id = $1 AND action = $2 AND status = 'pending'
        """,
        post_id,
        action,
    )
    try:
        return int(result.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0
