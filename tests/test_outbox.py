"""Tests for pending_actions helpers (pool mocked)."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from postflow.database.outbox import (
    ACTION_DELETE_UNSCHEDULED,
    ACTION_MAX_ATTEMPTS,
    get_due_actions,
    insert_pending_action,
    mark_action_done,
    mark_action_failed,
    mark_post_actions_done,
)


@pytest.mark.asyncio
async def test_insert_pending_action_returns_id() -> None:
    pool = MagicMock()
    pool.fetchrow = AsyncMock(return_value={"id": 7})
    action_id = await insert_pending_action(pool, action=ACTION_DELETE_UNSCHEDULED, post_id="p", payload={"a": 1})
    assert action_id == 7
    assert pool.fetchrow.call_args.args[3] == '{"a": 1}'


@pytest.mark.asyncio
async def test_insert_pending_action_failure_returns_none() -> None:
    """Intent row could not be stored: caller carries on without it."""
    pool = MagicMock()
    pool.fetchrow = AsyncMock(side_effect=RuntimeError("db down"))
    assert await insert_pending_action(pool, action=ACTION_DELETE_UNSCHEDULED, post_id="p") is None


@pytest.mark.asyncio
async def test_get_due_actions_decodes_payload() -> None:
    pool = MagicMock()
    pool.fetch = AsyncMock(return_value=[
        {"id": 1, "action": "reinsert_unscheduled", "post_id": 42, "payload": '{"id": "42"}', "attempts": 0},
    ])
    rows = await get_due_actions(pool)
    assert rows[0]["post_id"] == "42"
    assert rows[0]["payload"] == {"id": "42"}


@pytest.mark.asyncio
async def test_mark_action_helpers_ignore_none() -> None:
    pool = MagicMock()
    pool.execute = AsyncMock()
    await mark_action_done(pool, None)
    await mark_action_failed(pool, None, "x", 1)
    pool.execute.assert_not_called()


@pytest.mark.asyncio
async def test_mark_action_failed_backoff_then_failed() -> None:
    pool = MagicMock()
    pool.execute = AsyncMock()
    await mark_action_failed(pool, 1, "boom", 1)
    assert "next_retry_at = $4" in pool.execute.call_args.args[0]
    await mark_action_failed(pool, 1, "boom", ACTION_MAX_ATTEMPTS)
    assert "status = 'failed'" in pool.execute.call_args.args[0]


@pytest.mark.asyncio
async def test_mark_post_actions_done_counts_closed_rows() -> None:
    pool = MagicMock()
    pool.execute = AsyncMock(side_effect=["UPDATE 2", None])
    assert await mark_post_actions_done(pool, "p", ACTION_DELETE_UNSCHEDULED) == 2
    assert pool.execute.call_args.args[1:] == ("p", ACTION_DELETE_UNSCHEDULED)
    assert await mark_post_actions_done(pool, "p", ACTION_DELETE_UNSCHEDULED) == 0
