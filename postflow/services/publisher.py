"""Fan an approved scheduled post out to its platforms through the publishing service."""

import asyncio
from dataclasses import dataclass, replace
from typing import Any, Optional, Protocol

import asyncpg
import structlog

from postflow.database.models import (
    LATE_STATUS_FAILED,
    LATE_STATUS_PUBLISHED,
    ApprovalStatus,
    Post,
    PostStatus,
)
from postflow.database.repository import (
    add_audit_log,
    get_client,
    get_scheduled_post,
    update_publish_result,
)
from postflow.errors import ConflictError, ForbiddenError, NotFoundError, PostflowError

log = structlog.get_logger()

DEFAULT_TIMEZONE = "Pacific/Auckland"

# Published posts stay publishable so the remaining platforms can be retried
PUBLISHABLE_STATUSES = (PostStatus.SCHEDULED, PostStatus.PUBLISHED)


class PublishingService(Protocol):
    async def publish(self, post: Post, platform: str, account_id: str, timezone: str) -> str:
        ...

    async def delete(self, late_post_id: str) -> None:
        ...


@dataclass
class PlatformResult:
    platform: str
    ok: bool
    late_post_id: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "ok": self.ok,
            "late_post_id": self.late_post_id,
            "error": self.error,
            "skipped": self.skipped,
        }


def check_publishable(post: Post) -> None:
    if post.approval_status != ApprovalStatus.APPROVED or post.status not in PUBLISHABLE_STATUSES:
        raise ConflictError(
            "Only approved scheduled posts can be published",
            code="not_publishable",
            details={"status": post.status.value, "approval_status": post.approval_status.value},
        )


async def _publish_one(
    service: PublishingService,
    post: Post,
    platform: str,
    account_id: Optional[str],
    timezone: str,
) -> PlatformResult:
    if not account_id:
        log.warning("publish_no_account", post_id=post.id, platform=platform)
        return PlatformResult(platform=platform, ok=False, error="no_account")
    try:
        late_post_id = await service.publish(post, platform, account_id, timezone)
    except PostflowError as e:
        log.warning("publish_platform_failed", post_id=post.id, platform=platform, error=e.message)
        return PlatformResult(platform=platform, ok=False, error=e.message)
    except Exception as e:
        log.error("publish_platform_error", post_id=post.id, platform=platform, error=str(e), exc_info=True)
        return PlatformResult(platform=platform, ok=False, error=str(e) or type(e).__name__)
    return PlatformResult(platform=platform, ok=True, late_post_id=late_post_id)


async def publish_post(
    pool: asyncpg.Pool,
    service: PublishingService,
    post_id: str,
    client_id: Optional[str] = None,
    default_timezone: str = DEFAULT_TIMEZONE,
    actor: Optional[str] = None,
) -> list[PlatformResult]:
    """
    Publish post to every platform not yet in platforms_scheduled. Platforms run
    concurrently and fail independently; results follow the order of post.platforms.
    """
    post = await get_scheduled_post(pool, post_id)
    if post is None:
        raise NotFoundError("Scheduled post", post_id)
    if client_id is not None and post.client_id != client_id:
        raise ForbiddenError()
    check_publishable(post)
    if post.needs_reapproval:
        log.warning("publish_needs_reapproval", post_id=post_id)

    pending = [p for p in post.platforms if p not in post.platforms_scheduled]
    skipped = {
        p: PlatformResult(platform=p, ok=True, skipped=True)
        for p in post.platforms
        if p in post.platforms_scheduled
    }
    if not pending:
        log.info("publish_nothing_to_do", post_id=post_id)
        return [skipped[p] for p in post.platforms]

    client = await get_client(pool, post.client_id)
    accounts = client.late_accounts if client else {}
    timezone = (client.timezone if client else None) or default_timezone
    attempted = await asyncio.gather(
        *(_publish_one(service, post, p, accounts.get(p), timezone) for p in pending)
    )
    by_platform = {r.platform: r for r in attempted}
    by_platform.update(skipped)
    results = [by_platform[p] for p in post.platforms]

    succeeded = [r.platform for r in attempted if r.ok]
    merged = tuple(post.platforms_scheduled) + tuple(p for p in succeeded if p not in post.platforms_scheduled)
    late_post_ids = dict(post.late_post_ids)
    late_post_ids.update({r.platform: r.late_post_id for r in attempted if r.ok and r.late_post_id})
    first_id = next((late_post_ids[p] for p in post.platforms if p in late_post_ids), None)
    updated = replace(
        post,
        platforms_scheduled=merged,
        late_status=LATE_STATUS_PUBLISHED if merged else LATE_STATUS_FAILED,
        status=PostStatus.PUBLISHED if merged else post.status,
        late_post_id=post.late_post_id or first_id,
        late_post_ids=late_post_ids,
    )
    await update_publish_result(pool, updated)

    failed = [r.platform for r in attempted if not r.ok]
    await add_audit_log(
        pool,
        post_id,
        "post_published" if succeeded else "post_publish_failed",
        actor=actor,
        details={"succeeded": succeeded, "failed": failed},
    )
    log.info(
        "publish_completed",
        post_id=post_id,
        succeeded=succeeded,
        failed=failed,
        late_status=updated.late_status,
    )
    return results


async def cancel_late_posts(service: PublishingService, late_post_ids: dict[str, str]) -> dict[str, str]:
    """Cancel delivered platform posts concurrently. Returns {platform: id} of those still live."""

    async def cancel_one(platform: str, late_post_id: str) -> bool:
        try:
            await service.delete(late_post_id)
        except Exception as e:
            log.warning("late_cancel_failed", platform=platform, late_post_id=late_post_id, error=str(e))
            return False
        return True

    items = list(late_post_ids.items())
    outcomes = await asyncio.gather(*(cancel_one(p, i) for p, i in items))
    remaining = {p: i for (p, i), ok in zip(items, outcomes) if not ok}
    log.info("late_posts_cancelled", cancelled=len(items) - len(remaining), remaining=sorted(remaining))
    return remaining
