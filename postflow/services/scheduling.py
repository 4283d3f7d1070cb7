"""Moving posts between the unscheduled and scheduled partitions; time assignment."""

import uuid
from dataclasses import dataclass, replace
from typing import Any, Iterable, Optional, Sequence

import asyncpg
import structlog

from postflow.config import DEFAULT_BOTH_PLATFORMS, DEFAULT_SUPPORTED_PLATFORMS
from postflow.database.models import ApprovalStatus, Partition, Post, PostStatus, UploadStatus
from postflow.database.outbox import (
    ACTION_CANCEL_LATE_POSTS,
    ACTION_DELETE_UNSCHEDULED,
    ACTION_REINSERT_UNSCHEDULED,
    insert_pending_action,
    mark_action_done,
    mark_action_failed,
    mark_post_actions_done,
)
from postflow.database.repository import (
    add_audit_log,
    delete_scheduled_post,
    delete_unscheduled_post,
    get_project,
    get_scheduled_post,
    get_unscheduled_post,
    get_upload,
    insert_scheduled_post,
    insert_unscheduled_post,
    update_scheduled_slot,
    update_scheduled_time,
    update_scheduled_times,
    update_upload_status,
    upsert_unscheduled_post,
)
from postflow.errors import ConflictError, NotFoundError, ValidationError
from postflow.services.publisher import PublishingService, cancel_late_posts
from postflow.utils.dates import parse_date, parse_time

log = structlog.get_logger()

BOTH = "both"

# Fields a caller may override from the unscheduled source when scheduling
POST_DATA_FIELDS = ("caption", "post_notes", "image_url")


def resolve_platforms(
    platforms: Any,
    supported: Sequence[str] = DEFAULT_SUPPORTED_PLATFORMS,
    both: Sequence[str] = DEFAULT_BOTH_PLATFORMS,
    allow_empty: bool = False,
) -> tuple[str, ...]:
    """
    Normalize a platform list: lowercase, expand "both", drop duplicates (order kept).

    Raises ValidationError for an unknown platform, or an empty result unless allow_empty.
    """
    if isinstance(platforms, str):
        platforms = [platforms]
    if platforms is None:
        platforms = []
    if not isinstance(platforms, (list, tuple, set, frozenset)):
        raise ValidationError("platforms must be a list", details={"field": "platforms"})
    resolved: list[str] = []
    for raw in platforms:
        name = str(raw).strip().lower()
        if not name:
            continue
        expanded = list(both) if name == BOTH else [name]
        for p in expanded:
            if p not in supported:
                raise ValidationError(
                    f"Unsupported platform: {p}",
                    code="unknown_platform",
                    details={"platform": p, "supported": list(supported)},
                )
            if p not in resolved:
                resolved.append(p)
    if not resolved and not allow_empty:
        raise ValidationError("At least one platform is required", details={"field": "platforms"})
    return tuple(resolved)


async def _record_secondary_failure(
    pool: asyncpg.Pool, action_id: Optional[int], error: Exception
) -> None:
    try:
        await mark_action_failed(pool, action_id, error=str(error), attempts=1)
    except Exception as e:
        log.error("pending_action_update_failed", action_id=action_id, error=str(e))


async def _record_secondary_done(pool: asyncpg.Pool, action_id: Optional[int]) -> None:
    try:
        await mark_action_done(pool, action_id)
    except Exception as e:
        log.error("pending_action_update_failed", action_id=action_id, error=str(e))


async def schedule_post(
    pool: asyncpg.Pool,
    unscheduled_post_id: str,
    scheduled_date: Any,
    scheduled_time: Any,
    platforms: Any,
    *,
    project_id: Optional[str] = None,
    post_data: Optional[dict[str, Any]] = None,
    actor: Optional[str] = None,
    supported: Sequence[str] = DEFAULT_SUPPORTED_PLATFORMS,
    both: Sequence[str] = DEFAULT_BOTH_PLATFORMS,
) -> Post:
    """
    Move an unscheduled post into the scheduled partition under the same id.

    The scheduled row is written first. Removing the unscheduled source is best-effort:
    a failure is logged and left as a pending action for the reconciler, and the call
    still returns the scheduled post.
    """
    if not unscheduled_post_id:
        raise ValidationError("unscheduledPostId is required", details={"field": "unscheduledPostId"})
    day = parse_date(scheduled_date)
    slot = parse_time(scheduled_time)
    resolved = resolve_platforms(platforms, supported, both)

    source = await get_unscheduled_post(pool, unscheduled_post_id)
    if source is None:
        if await get_scheduled_post(pool, unscheduled_post_id) is not None:
            raise ConflictError("Post is already scheduled", code="already_scheduled")
        raise NotFoundError("Unscheduled post", unscheduled_post_id)
    if project_id is not None and source.project_id != project_id:
        raise NotFoundError("Unscheduled post", unscheduled_post_id)

    overrides = {k: v for k, v in (post_data or {}).items() if k in POST_DATA_FIELDS and v is not None}
    if source.image_url:
        overrides.pop("image_url", None)
    candidate = replace(
        source,
        **overrides,
        status=PostStatus.SCHEDULED,
        approval_status=ApprovalStatus.PENDING,
        scheduled_date=day,
        scheduled_time=slot,
        platforms=resolved,
        is_confirmed=False,
        partition=Partition.SCHEDULED,
    )
    try:
        scheduled = await insert_scheduled_post(pool, candidate)
    except asyncpg.UniqueViolationError:
        raise ConflictError("Post is already scheduled", code="already_scheduled")

    action_id = await insert_pending_action(pool, action=ACTION_DELETE_UNSCHEDULED, post_id=scheduled.id)
    try:
        await delete_unscheduled_post(pool, source.id)
    except Exception as e:
        log.error("schedule_source_delete_failed", post_id=source.id, error=str(e))
        await _record_secondary_failure(pool, action_id, e)
    else:
        await _record_secondary_done(pool, action_id)

    await add_audit_log(
        pool,
        scheduled.id,
        "post_scheduled",
        actor=actor,
        details={"scheduled_date": day.isoformat(), "scheduled_time": slot, "platforms": list(resolved)},
    )
    log.info("post_scheduled", post_id=scheduled.id, scheduled_date=day.isoformat(), platforms=list(resolved))
    return scheduled


@dataclass
class GlobalTimeOverride:
    """
    One time-of-day staged for every scheduled post of a project.

    While applied, per-post time inputs are locked. Selecting a different value unlocks
    them again until the next apply.
    """

    selected_time: Optional[str] = None
    applied: bool = False

    def select(self, value: Any) -> None:
        slot = parse_time(value, field_name="time")
        if slot != self.selected_time:
            self.applied = False
        self.selected_time = slot

    def clear(self) -> None:
        self.selected_time = None
        self.applied = False

    @property
    def active_time(self) -> Optional[str]:
        return self.selected_time if self.applied else None

    def allows_manual_time_edit(self) -> bool:
        return not self.applied

    def to_dict(self) -> dict[str, Any]:
        return {"selected_time": self.selected_time, "applied": self.applied}


async def apply_global_time(
    pool: asyncpg.Pool, override: GlobalTimeOverride, scheduled_post_ids: Iterable[str]
) -> int:
    """Write the selected time to all given posts and mark the override applied. Returns rows updated."""
    if not override.selected_time:
        raise ValidationError("No global time selected", details={"field": "time"})
    ids = list(scheduled_post_ids)
    updated = await update_scheduled_times(pool, ids, override.selected_time)
    override.applied = True
    log.info("global_time_applied", scheduled_time=override.selected_time, requested=len(ids), updated=updated)
    return updated


async def update_post_time(
    pool: asyncpg.Pool,
    project_id: str,
    post_id: str,
    scheduled_time: Any,
    override: Optional[GlobalTimeOverride] = None,
) -> Post:
    """Per-post time edit. Refused while an applied global time is active."""
    if not post_id:
        raise ValidationError("postId is required", details={"field": "postId"})
    if override is not None and not override.allows_manual_time_edit():
        raise ConflictError(
            "Global time is applied; clear or change it before editing a single post",
            code="global_time_applied",
        )
    slot = parse_time(scheduled_time)
    post = await update_scheduled_time(pool, post_id, project_id, slot)
    if post is None:
        raise NotFoundError("Scheduled post", post_id)
    log.info("post_time_updated", post_id=post_id, scheduled_time=slot)
    return post


async def confirm_scheduled_post(
    pool: asyncpg.Pool,
    project_id: str,
    post_id: str,
    scheduled_date: Any,
    scheduled_time: Any,
    actor: Optional[str] = None,
) -> Post:
    """Finalize date and time of a scheduled post and mark it confirmed."""
    day = parse_date(scheduled_date)
    slot = parse_time(scheduled_time)
    post = await update_scheduled_slot(pool, post_id, day, slot, project_id=project_id, confirm=True)
    if post is None:
        raise NotFoundError("Scheduled post", post_id)
    await add_audit_log(
        pool, post_id, "post_confirmed", actor=actor,
        details={"scheduled_date": day.isoformat(), "scheduled_time": slot},
    )
    return post


def as_unscheduled(post: Post) -> Post:
    """Copy of a scheduled post as it lives back in the unscheduled partition."""
    return replace(
        post,
        status=PostStatus.READY,
        approval_status=ApprovalStatus.DRAFT,
        scheduled_date=None,
        scheduled_time=None,
        is_confirmed=False,
        needs_reapproval=False,
        platforms_scheduled=(),
        late_status=None,
        late_post_id=None,
        late_post_ids={},
        partition=Partition.UNSCHEDULED,
    )


async def _cancel_delivered(
    pool: asyncpg.Pool,
    service: Optional[PublishingService],
    post_id: str,
    late_post_ids: dict[str, str],
    action_id: Optional[int],
) -> None:
    """Best-effort cancel of LATE posts; anything left stays pending for the reconciler."""
    if not late_post_ids:
        return
    if service is None:
        log.warning("late_cancel_deferred", post_id=post_id, reason="publishing service not configured")
        return
    remaining = await cancel_late_posts(service, late_post_ids)
    if remaining:
        await _record_secondary_failure(
            pool, action_id, RuntimeError(f"LATE cancel failed for {', '.join(sorted(remaining))}")
        )
    else:
        await _record_secondary_done(pool, action_id)


async def _close_source_deletes(pool: asyncpg.Pool, post_id: str) -> None:
    try:
        await mark_post_actions_done(pool, post_id, ACTION_DELETE_UNSCHEDULED)
    except Exception as e:
        log.error("pending_action_update_failed", post_id=post_id, error=str(e))


async def unschedule_post(
    pool: asyncpg.Pool,
    project_id: str,
    post_id: str,
    purge: bool = False,
    actor: Optional[str] = None,
    publishing_service: Optional[PublishingService] = None,
) -> Optional[Post]:
    """
    Remove a post from the calendar. Unless purge, the post goes back to the unscheduled
    partition (status ready, approval draft). Returns the restored post, or None when purged.

    Platform posts already delivered to LATE are cancelled best-effort; failures and a
    missing publishing_service leave a cancel_late_posts action for the reconciler.
    """
    if not post_id:
        raise ValidationError("postId is required", details={"field": "postId"})
    post = await get_scheduled_post(pool, post_id, project_id)
    if post is None:
        raise NotFoundError("Scheduled post", post_id)

    late_post_ids = dict(post.late_post_ids)
    cancel_id = None
    if late_post_ids:
        cancel_id = await insert_pending_action(
            pool, action=ACTION_CANCEL_LATE_POSTS, post_id=post_id, payload={"late_post_ids": late_post_ids}
        )

    if purge:
        if not await delete_scheduled_post(pool, post_id, project_id):
            await _record_secondary_done(pool, cancel_id)
            raise NotFoundError("Scheduled post", post_id)
        await _cancel_delivered(pool, publishing_service, post_id, late_post_ids, cancel_id)
        await add_audit_log(pool, post_id, "post_purged", actor=actor)
        log.info("post_purged", post_id=post_id)
        return None

    restored = as_unscheduled(post)
    action_id = await insert_pending_action(
        pool, action=ACTION_REINSERT_UNSCHEDULED, post_id=post_id, payload=restored.to_dict()
    )
    if not await delete_scheduled_post(pool, post_id, project_id):
        await _record_secondary_done(pool, action_id)
        await _record_secondary_done(pool, cancel_id)
        raise NotFoundError("Scheduled post", post_id)
    try:
        # overwrites a source row left behind by a failed delete at schedule time
        await upsert_unscheduled_post(pool, restored)
    except Exception as e:
        log.error("unschedule_reinsert_failed", post_id=post_id, error=str(e))
        await _record_secondary_failure(pool, action_id, e)
    else:
        await _record_secondary_done(pool, action_id)
        await _close_source_deletes(pool, post_id)
    await _cancel_delivered(pool, publishing_service, post_id, late_post_ids, cancel_id)

    await add_audit_log(pool, post_id, "post_unscheduled", actor=actor)
    log.info("post_unscheduled", post_id=post_id, late_cancelled=len(late_post_ids))
    return restored


async def create_unscheduled_post(
    pool: asyncpg.Pool,
    client_id: str,
    project_id: Optional[str] = None,
    *,
    caption: str = "",
    image_url: Optional[str] = None,
    post_notes: Optional[str] = None,
    platforms: Any = None,
    status: PostStatus = PostStatus.READY,
    actor: Optional[str] = None,
    supported: Sequence[str] = DEFAULT_SUPPORTED_PLATFORMS,
    both: Sequence[str] = DEFAULT_BOTH_PLATFORMS,
) -> Post:
    if status not in (PostStatus.DRAFT, PostStatus.READY):
        raise ValidationError("New posts must be draft or ready", details={"field": "status"})
    if project_id is not None:
        project = await get_project(pool, project_id)
        if project is None or project.client_id != client_id:
            raise NotFoundError("Project", project_id)
    post = Post(
        id=str(uuid.uuid4()),
        client_id=client_id,
        project_id=project_id,
        caption=caption or "",
        image_url=image_url,
        post_notes=post_notes,
        status=status,
        platforms=resolve_platforms(platforms, supported, both, allow_empty=True),
        partition=Partition.UNSCHEDULED,
    )
    created = await insert_unscheduled_post(pool, post)
    await add_audit_log(pool, created.id, "post_created", actor=actor)
    log.info("unscheduled_post_created", post_id=created.id, project_id=project_id)
    return created


async def destroy_unscheduled_post(
    pool: asyncpg.Pool, project_id: str, post_id: str, actor: Optional[str] = None
) -> None:
    """Delete a post for good. Only unscheduled posts can be destroyed."""
    post = await get_unscheduled_post(pool, post_id)
    if post is None or post.project_id != project_id:
        raise NotFoundError("Unscheduled post", post_id)
    await delete_unscheduled_post(pool, post_id)
    await add_audit_log(pool, post_id, "post_deleted", actor=actor)
    log.info("unscheduled_post_deleted", post_id=post_id)


async def convert_upload_to_post(
    pool: asyncpg.Pool,
    client_id: str,
    upload_id: str,
    project_id: Optional[str] = None,
    actor: Optional[str] = None,
) -> Post:
    """Turn a client upload into a draft unscheduled post carrying the upload's media and notes."""
    upload = await get_upload(pool, upload_id)
    if upload is None or upload.client_id != client_id:
        raise NotFoundError("Upload", upload_id)
    if upload.status == UploadStatus.COMPLETED:
        raise ConflictError("Upload was already converted", code="invalid_transition")
    post = await create_unscheduled_post(
        pool,
        client_id,
        project_id or upload.project_id,
        image_url=upload.file_url,
        post_notes=upload.notes,
        status=PostStatus.DRAFT,
        actor=actor,
    )
    await update_upload_status(pool, upload_id, UploadStatus.COMPLETED)
    log.info("upload_converted", upload_id=upload_id, post_id=post.id)
    return post
