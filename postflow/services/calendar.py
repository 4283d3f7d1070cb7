"""Day-bucketed calendar index and drag-and-drop rescheduling of scheduled posts."""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

import asyncpg
import structlog

from postflow.database.models import CalendarPostKey, Post, PostKey, UploadKey, parse_post_key
from postflow.database.repository import update_scheduled_slot
from postflow.errors import NotFoundError, PostflowError, ValidationError
from postflow.services.scheduling import GlobalTimeOverride
from postflow.utils.dates import parse_date

log = structlog.get_logger()

DAY_PREFIX = "day:"


def day_bucket_id(day: date) -> str:
    return f"{DAY_PREFIX}{day.isoformat()}"


class DayBucketIndex:
    """
    Scheduled posts grouped by scheduled_date. A post id is in exactly one bucket;
    posts without a date are not indexed. `version` grows on every change.
    """

    def __init__(self, posts: Iterable[Post] = ()) -> None:
        self._buckets: dict[date, list[Post]] = {}
        self._day_of: dict[str, date] = {}
        self.version = 0
        self.rebuild(posts)

    def rebuild(self, posts: Iterable[Post]) -> None:
        """Replace the whole index. A repeated id keeps its last occurrence."""
        latest: dict[str, Post] = {}
        for post in posts:
            if post.scheduled_date is not None:
                latest[post.id] = post
        self._buckets = {}
        self._day_of = {}
        for post in latest.values():
            self._add(post)
        self.version += 1

    def _add(self, post: Post) -> None:
        self._buckets.setdefault(post.scheduled_date, []).append(post)
        self._day_of[post.id] = post.scheduled_date

    def _remove(self, post_id: str) -> Optional[Post]:
        day = self._day_of.pop(post_id, None)
        if day is None:
            return None
        bucket = self._buckets.get(day, [])
        removed = None
        for i, p in enumerate(bucket):
            if p.id == post_id:
                removed = bucket.pop(i)
                break
        if not bucket:
            self._buckets.pop(day, None)
        return removed

    def place(self, post: Post) -> None:
        """Insert or move a single post."""
        self._remove(post.id)
        if post.scheduled_date is not None:
            self._add(post)
        self.version += 1

    def bucket_of(self, key: PostKey) -> Optional[date]:
        if not isinstance(key, CalendarPostKey):
            return None
        return self._day_of.get(key.id)

    def get(self, key: PostKey) -> Optional[Post]:
        day = self.bucket_of(key)
        if day is None:
            return None
        for p in self._buckets.get(day, []):
            if p.id == key.id:
                return p
        return None

    def posts_on(self, day: date) -> list[Post]:
        return sorted(self._buckets.get(day, []), key=lambda p: p.scheduled_time or "")

    def posts(self) -> list[Post]:
        return [p for day in sorted(self._buckets) for p in self.posts_on(day)]

    def days(self) -> list[date]:
        return sorted(self._buckets)

    def resolve_drop_target(self, target: Any) -> Optional[date]:
        """
        Map a drop target to a calendar day. Accepts a date, an ISO date string,
        a bucket id ('day:YYYY-MM-DD') or another post's key (object or string).
        Returns None if the target cannot be resolved.
        """
        if isinstance(target, (CalendarPostKey, UploadKey)):
            return self.bucket_of(target)
        if isinstance(target, datetime):
            return target.date()
        if isinstance(target, date):
            return target
        if not isinstance(target, str) or not target.strip():
            return None
        raw = target.strip()
        if raw.startswith(DAY_PREFIX):
            raw = raw[len(DAY_PREFIX):]
            try:
                return parse_date(raw, field_name="target")
            except ValidationError:
                return None
        try:
            return parse_date(raw, field_name="target")
        except ValidationError:
            pass
        try:
            return self.bucket_of(parse_post_key(raw))
        except ValidationError:
            return None

    def as_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {day.isoformat(): [p.to_dict() for p in self.posts_on(day)] for day in self.days()}

    def __len__(self) -> int:
        return len(self._day_of)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, CalendarPostKey) and key.id in self._day_of


@dataclass(frozen=True)
class MovePlan:
    key: CalendarPostKey
    source_day: date
    target_day: date
    scheduled_time: Optional[str]


def _coerce_key(key: Union[PostKey, str]) -> PostKey:
    return parse_post_key(key) if isinstance(key, str) else key


def plan_move(
    index: DayBucketIndex,
    key: Union[PostKey, str],
    target: Any,
    override: Optional[GlobalTimeOverride] = None,
) -> Optional[MovePlan]:
    """
    Decide where a dragged post goes. Pure: touches neither the index nor the store.
    Returns None when the post is dropped on its own day.
    """
    key = _coerce_key(key)
    if isinstance(key, UploadKey):
        raise ValidationError("Uploads cannot be rescheduled", code="not_reschedulable", details={"key": str(key)})
    post = index.get(key)
    if post is None:
        raise NotFoundError("Scheduled post", key.id)
    target_day = index.resolve_drop_target(target)
    if target_day is None:
        raise ValidationError(
            "Drop target does not resolve to a calendar day",
            code="invalid_drop_target",
            details={"target": str(target)},
        )
    if target_day == post.scheduled_date:
        return None
    slot = post.scheduled_time
    if override is not None and override.active_time:
        slot = override.active_time
    return MovePlan(key=key, source_day=post.scheduled_date, target_day=target_day, scheduled_time=slot)


async def move_post(
    pool: asyncpg.Pool,
    index: DayBucketIndex,
    key: Union[PostKey, str],
    target: Any,
    override: Optional[GlobalTimeOverride] = None,
    project_id: Optional[str] = None,
) -> Optional[Post]:
    """Persist a drag-and-drop move. Returns the moved post, or None for a same-day drop."""
    plan = plan_move(index, key, target, override)
    if plan is None:
        log.debug("move_noop", key=str(key))
        return None
    post = await update_scheduled_slot(
        pool, plan.key.id, plan.target_day, plan.scheduled_time, project_id=project_id
    )
    if post is None:
        raise NotFoundError("Scheduled post", plan.key.id)
    index.rebuild([p for p in index.posts() if p.id != post.id] + [post])
    log.info(
        "post_moved",
        post_id=post.id,
        from_date=plan.source_day.isoformat(),
        to_date=plan.target_day.isoformat(),
    )
    return post


@dataclass
class MoveCommand:
    """
    Optimistic move on a view-side index: apply immediately, roll back if the server refuses.
    """

    key: CalendarPostKey
    target: Any
    override: Optional[GlobalTimeOverride] = None
    plan: Optional[MovePlan] = None
    _previous: Optional[Post] = field(default=None, repr=False)

    def apply(self, index: DayBucketIndex) -> bool:
        self.plan = plan_move(index, self.key, self.target, self.override)
        if self.plan is None:
            return False
        current = index.get(self.plan.key)
        self._previous = current
        index.place(replace(current, scheduled_date=self.plan.target_day, scheduled_time=self.plan.scheduled_time))
        return True

    def rollback(self, index: DayBucketIndex) -> None:
        if self._previous is not None:
            index.place(self._previous)
            self._previous = None


async def run_move_command(
    command: MoveCommand,
    index: DayBucketIndex,
    send: Callable[[MovePlan], Awaitable[Post]],
) -> Optional[Post]:
    """Apply command to index, send the plan, roll back on a PostflowError and re-raise."""
    if not command.apply(index):
        return None
    try:
        post = await send(command.plan)
    except PostflowError as e:
        command.rollback(index)
        log.warning("move_rolled_back", key=str(command.key), code=e.code, error=e.message)
        raise
    index.place(post)
    return post


def group_posts_by_day(posts: Iterable[Post]) -> dict[str, list[dict[str, Any]]]:
    """Portal calendar payload: {'YYYY-MM-DD': [post, ...]} in the given order."""
    grouped: dict[str, list[dict[str, Any]]] = {}
    for post in posts:
        if post.scheduled_date is None:
            continue
        grouped.setdefault(post.scheduled_date.isoformat(), []).append(post.to_dict())
    return grouped


def week_start(day: date) -> date:
    """Sunday on or before day."""
    return day - timedelta(days=(day.weekday() + 1) % 7)


def group_posts_by_week(posts: Iterable[Post], today: date) -> list[dict[str, Any]]:
    """
    Portal approvals payload: weeks (Sunday start) in ascending order, each with its posts
    sorted by date and time. Weeks before the current one are dropped.
    """
    current = week_start(today)
    weeks: dict[date, list[Post]] = {}
    for post in posts:
        if post.scheduled_date is None:
            continue
        start = week_start(post.scheduled_date)
        if start < current:
            continue
        weeks.setdefault(start, []).append(post)
    return [
        {
            "week_start": start.isoformat(),
            "week_label": f"W/C {start.day} {start.strftime('%b')}",
            "posts": [
                p.to_dict()
                for p in sorted(weeks[start], key=lambda p: (p.scheduled_date, p.scheduled_time or ""))
            ],
        }
        for start in sorted(weeks)
    ]
