"""Tests for pending-action reconciler."""

import asyncio

import asyncpg
import pytest
from unittest.mock import AsyncMock, patch

from conftest import make_post, make_scheduled
from postflow.database.models import Partition
from postflow.database.outbox import (
    ACTION_CANCEL_LATE_POSTS,
    ACTION_DELETE_UNSCHEDULED,
    ACTION_MAX_ATTEMPTS,
    ACTION_REINSERT_UNSCHEDULED,
)
from postflow.errors import PublishError
from postflow.services.reconciler import reconcile_once, run_reconciler
from postflow.services.scheduling import schedule_post, unschedule_post


@pytest.mark.asyncio
async def test_reconcile_finishes_failed_source_delete(world) -> None:
    """Schedule left the source behind; next tick removes it and closes the action."""
    world.add_unscheduled(make_post("post-1"))
    world.failures["delete_unscheduled_post"] = RuntimeError("connection reset")
    await schedule_post(None, "post-1", "2025-03-10", "09:00", ["instagram"])
    del world.failures["delete_unscheduled_post"]

    done = await reconcile_once(None)

    assert done == 1
    assert "post-1" not in world.unscheduled
    assert "post-1" in world.scheduled
    assert world.pending_actions() == []


@pytest.mark.asyncio
async def test_reconcile_keeps_source_when_scheduled_copy_missing(world) -> None:
    """Never delete the only copy of a post."""
    world.add_unscheduled(make_post("post-1"))
    await world.insert_pending_action(None, action=ACTION_DELETE_UNSCHEDULED, post_id="post-1")

    assert await reconcile_once(None) == 1
    assert "post-1" in world.unscheduled


@pytest.mark.asyncio
async def test_reconcile_reinserts_unscheduled_copy(world) -> None:
    world.add_scheduled(make_scheduled("a", image_url="img://9"))
    world.failures["upsert_unscheduled_post"] = RuntimeError("timeout")
    await unschedule_post(None, "p1", "a")
    del world.failures["upsert_unscheduled_post"]

    await reconcile_once(None)

    restored = world.unscheduled["a"]
    assert restored.partition == Partition.UNSCHEDULED
    assert restored.image_url == "img://9"
    assert restored.scheduled_date is None
    assert world.pending_actions() == []


@pytest.mark.asyncio
async def test_reconcile_reinsert_skips_post_scheduled_again(world) -> None:
    world.add_scheduled(make_scheduled("a"))
    await world.insert_pending_action(
        None, action=ACTION_REINSERT_UNSCHEDULED, post_id="a", payload=make_post("a").to_dict()
    )

    await reconcile_once(None)

    assert "a" not in world.unscheduled
    assert "upsert_unscheduled_post" not in world.calls


class CancellingLate:
    def __init__(self, down: tuple = ()) -> None:
        self.down = set(down)
        self.deleted = []

    async def publish(self, post, platform, account_id, timezone):
        return f"late-{platform}"

    async def delete(self, late_post_id):
        if late_post_id in self.down:
            raise PublishError("LATE unavailable")
        self.deleted.append(late_post_id)


@pytest.mark.asyncio
async def test_reconcile_reinsert_overwrites_stale_source(world) -> None:
    """A leftover source row is replaced by the snapshot taken at unschedule time."""
    world.add_unscheduled(make_post("a", caption="stale"))
    await world.insert_pending_action(
        None, action=ACTION_REINSERT_UNSCHEDULED, post_id="a", payload=make_post("a", caption="fresh").to_dict()
    )

    assert await reconcile_once(None) == 1
    assert world.unscheduled["a"].caption == "fresh"


@pytest.mark.asyncio
async def test_reconcile_retries_late_cancel(world) -> None:
    payload = {"late_post_ids": {"instagram": "late-ig", "facebook": "late-fb"}}
    await world.insert_pending_action(None, action=ACTION_CANCEL_LATE_POSTS, post_id="a", payload=payload)

    late = CancellingLate(down=("late-fb",))
    assert await reconcile_once(None, service=late) == 0
    assert world.actions[1]["attempts"] == 1
    assert world.actions[1]["status"] == "pending"

    late.down.clear()
    assert await reconcile_once(None, service=late) == 1
    assert sorted(late.deleted) == ["late-fb", "late-ig", "late-ig"]
    assert world.pending_actions() == []


@pytest.mark.asyncio
async def test_reconcile_cancel_without_service_stays_pending(world) -> None:
    await world.insert_pending_action(
        None, action=ACTION_CANCEL_LATE_POSTS, post_id="a", payload={"late_post_ids": {"instagram": "late-ig"}}
    )
    assert await reconcile_once(None) == 0
    assert world.actions[1]["last_error"] == "publishing service not configured"
    assert len(world.pending_actions()) == 1


@pytest.mark.asyncio
async def test_reconcile_failure_records_attempt(world) -> None:
    world.add_scheduled(make_scheduled("post-1"))
    world.add_unscheduled(make_post("post-1"))
    await world.insert_pending_action(None, action=ACTION_DELETE_UNSCHEDULED, post_id="post-1")
    world.failures["delete_unscheduled_post"] = RuntimeError("still down")

    assert await reconcile_once(None) == 0

    action = world.actions[1]
    assert action["status"] == "pending"
    assert action["attempts"] == 1
    assert action["last_error"] == "still down"


@pytest.mark.asyncio
async def test_reconcile_unknown_action_is_failed_permanently(world) -> None:
    await world.insert_pending_action(None, action="publish_everything", post_id="x")
    await reconcile_once(None)
    assert world.actions[1]["attempts"] == ACTION_MAX_ATTEMPTS


@pytest.mark.asyncio
async def test_run_reconciler_survives_missing_table_and_stops_on_cancel() -> None:
    """UndefinedTableError is logged, loop keeps going until cancelled."""
    calls = 0

    async def tick(pool, service=None):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise asyncpg.UndefinedTableError("relation pending_actions does not exist")
        if calls >= 3:
            raise asyncio.CancelledError()
        return 0

    with patch("postflow.services.reconciler.reconcile_once", side_effect=tick), \
         patch("asyncio.sleep", new_callable=AsyncMock):
        with pytest.raises(asyncio.CancelledError):
            await run_reconciler(None, interval=0)
    assert calls == 3
