"""aiohttp app: agency scheduling routes and client portal routes."""

from datetime import datetime
from typing import Any, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import asyncpg
import structlog
from aiohttp import web

from postflow.config import DEFAULT_BOTH_PLATFORMS, DEFAULT_SUPPORTED_PLATFORMS
from postflow.database.models import KIND_CALENDAR, Post, PostStatus, make_post_key
from postflow.database.repository import (
    get_scheduled_post,
    list_approval_sessions,
    list_post_approvals,
    list_revisions,
    list_scheduled_posts,
    list_scheduled_posts_for_client,
    list_unscheduled_posts,
)
from postflow.errors import NotFoundError, ValidationError
from postflow.services.approval import (
    DEFAULT_SESSION_DAYS,
    create_approval_session,
    edit_caption,
    resubmit_for_approval,
    submit_decision,
)
from postflow.services.batch_approval import DecisionItem, submit_batch
from postflow.services.calendar import DayBucketIndex, group_posts_by_day, group_posts_by_week, move_post
from postflow.services.calendar_cache import CalendarCache
from postflow.services.publisher import PublishingService, publish_post
from postflow.services.scheduling import (
    GlobalTimeOverride,
    apply_global_time,
    confirm_scheduled_post,
    convert_upload_to_post,
    create_unscheduled_post,
    destroy_unscheduled_post,
    schedule_post,
    unschedule_post,
    update_post_time,
)
from postflow.utils.dates import parse_date
from postflow.web.auth import (
    IdentityResolver,
    PortalAccess,
    ensure_client_owner,
    ensure_post_owner,
    ensure_project_owner,
    portal_access,
    require_user,
)
from postflow.web.errors import error_middleware, read_json

log = structlog.get_logger()

# Captions and notes only; media goes to blob storage
CLIENT_MAX_SIZE = 1024 * 1024

TRUE_VALUES = ("1", "true", "yes")


def _pool(request: web.Request) -> asyncpg.Pool:
    return request.app["pool"]


def _flag(request: web.Request, name: str) -> bool:
    return (request.query.get(name) or "").strip().lower() in TRUE_VALUES


def _override(request: web.Request, project_id: str) -> GlobalTimeOverride:
    overrides: dict[str, GlobalTimeOverride] = request.app["global_time_overrides"]
    return overrides.setdefault(project_id, GlobalTimeOverride())


def _invalidate(request: web.Request, client_id: str) -> None:
    request.app["calendar_cache"].invalidate(client_id)


async def _owned_project(request: web.Request):
    user_id = await require_user(request)
    project = await ensure_project_owner(_pool(request), user_id, request.match_info["projectId"])
    return user_id, project


async def _scheduled_in_project(request: web.Request, project_id: str, post_id: str):
    post = await get_scheduled_post(_pool(request), post_id, project_id)
    if post is None:
        raise NotFoundError("Scheduled post", post_id)
    return post


def _client_today(timezone: Optional[str], default_timezone: str):
    try:
        tz = ZoneInfo(timezone or default_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        tz = ZoneInfo(default_timezone)
    return datetime.now(tz).date()


# --- scheduled posts ---


async def handle_schedule_post(request: web.Request) -> web.Response:
    """
    POST /projects/{projectId}/scheduled-posts
    { "unscheduledPostId", "postData"?, "scheduledDate", "scheduledTime", "platforms" } -> 201 { post }.
    """
    user_id, project = await _owned_project(request)
    body = await read_json(request)
    post_data = body.get("postData")
    if post_data is not None and not isinstance(post_data, dict):
        raise ValidationError("postData must be an object", details={"field": "postData"})
    post = await schedule_post(
        _pool(request),
        body.get("unscheduledPostId"),
        body.get("scheduledDate"),
        body.get("scheduledTime"),
        body.get("platforms"),
        project_id=project.id,
        post_data=post_data,
        actor=user_id,
        supported=request.app["supported_platforms"],
        both=request.app["both_platforms"],
    )
    _invalidate(request, project.client_id)
    return web.json_response({"ok": True, "post": post.to_dict()}, status=201)


async def handle_list_scheduled(request: web.Request) -> web.Response:
    _, project = await _owned_project(request)
    posts = await list_scheduled_posts(_pool(request), project.id)
    return web.json_response({"ok": True, "posts": [p.to_dict() for p in posts]})


async def handle_update_time(request: web.Request) -> web.Response:
    """PATCH /projects/{projectId}/scheduled-posts { "postId", "scheduledTime" }."""
    _, project = await _owned_project(request)
    body = await read_json(request)
    post = await update_post_time(
        _pool(request),
        project.id,
        body.get("postId"),
        body.get("scheduledTime"),
        override=_override(request, project.id),
    )
    _invalidate(request, project.client_id)
    return web.json_response({"ok": True, "post": post.to_dict()})


async def handle_unschedule(request: web.Request) -> web.Response:
    """DELETE /projects/{projectId}/scheduled-posts?postId=...&purge=true|false."""
    user_id, project = await _owned_project(request)
    restored = await unschedule_post(
        _pool(request),
        project.id,
        request.query.get("postId") or "",
        purge=_flag(request, "purge"),
        actor=user_id,
        publishing_service=request.app.get("publishing_service"),
    )
    _invalidate(request, project.client_id)
    return web.json_response({
        "ok": True,
        "success": True,
        "post": restored.to_dict() if restored else None,
    })


async def handle_move(request: web.Request) -> web.Response:
    """
    PATCH /projects/{projectId}/scheduled-posts/{postId}/move { "target", "postType"? }.
    Same-day drops answer 200 with moved=false.
    """
    _, project = await _owned_project(request)
    body = await read_json(request)
    key = make_post_key(body.get("postType"), request.match_info["postId"])
    pool = _pool(request)
    index = DayBucketIndex(await list_scheduled_posts(pool, project.id))
    moved = await move_post(
        pool, index, key, body.get("target"),
        override=_override(request, project.id),
        project_id=project.id,
    )
    if moved is None:
        current = index.get(key)
        return web.json_response({"ok": True, "moved": False, "post": current.to_dict() if current else None})
    _invalidate(request, project.client_id)
    return web.json_response({"ok": True, "moved": True, "post": moved.to_dict()})


async def handle_confirm(request: web.Request) -> web.Response:
    user_id, project = await _owned_project(request)
    body = await read_json(request)
    post = await confirm_scheduled_post(
        _pool(request),
        project.id,
        request.match_info["postId"],
        body.get("scheduledDate"),
        body.get("scheduledTime"),
        actor=user_id,
    )
    _invalidate(request, project.client_id)
    return web.json_response({"ok": True, "post": post.to_dict()})


async def handle_publish(request: web.Request) -> web.Response:
    """POST /projects/{projectId}/scheduled-posts/{postId}/publish -> per-platform results."""
    user_id, project = await _owned_project(request)
    service: Optional[PublishingService] = request.app.get("publishing_service")
    if service is None:
        return web.json_response(
            {"ok": False, "error": "Publishing service not configured", "code": "service_unavailable"},
            status=503,
        )
    post_id = request.match_info["postId"]
    pool = _pool(request)
    await _scheduled_in_project(request, project.id, post_id)
    results = await publish_post(
        pool,
        service,
        post_id,
        client_id=project.client_id,
        default_timezone=request.app["default_timezone"],
        actor=user_id,
    )
    post = await _scheduled_in_project(request, project.id, post_id)
    _invalidate(request, project.client_id)
    return web.json_response({
        "ok": True,
        "results": [r.to_dict() for r in results],
        "status": post.status.value,
        "late_status": post.late_status,
        "platforms_scheduled": list(post.platforms_scheduled),
    })


async def handle_edit_caption(request: web.Request) -> web.Response:
    """PATCH /projects/{projectId}/scheduled-posts/{postId}/caption { "caption" }."""
    user_id, project = await _owned_project(request)
    body = await read_json(request)
    post_id = request.match_info["postId"]
    await _scheduled_in_project(request, project.id, post_id)
    post = await edit_caption(_pool(request), post_id, body.get("caption"), editor=user_id)
    _invalidate(request, project.client_id)
    return web.json_response({"ok": True, "post": post.to_dict()})


async def handle_resubmit(request: web.Request) -> web.Response:
    user_id, project = await _owned_project(request)
    post_id = request.match_info["postId"]
    await _scheduled_in_project(request, project.id, post_id)
    post = await resubmit_for_approval(_pool(request), post_id, actor=user_id)
    _invalidate(request, project.client_id)
    return web.json_response({"ok": True, "post": post.to_dict()})


async def handle_revisions(request: web.Request) -> web.Response:
    """GET /posts/{postId}/revisions: caption history, oldest first."""
    user_id = await require_user(request)
    post = await ensure_post_owner(_pool(request), user_id, request.match_info["postId"])
    revisions = await list_revisions(_pool(request), post.id)
    return web.json_response({
        "ok": True,
        "revisions": [
            {
                "revision_number": r.revision_number,
                "previous_caption": r.previous_caption,
                "new_caption": r.new_caption,
                "edited_by": r.edited_by,
                "edited_at": r.edited_at.isoformat() if r.edited_at else None,
            }
            for r in revisions
        ],
    })


async def handle_post_approvals(request: web.Request) -> web.Response:
    """GET /posts/{postId}/approvals: client decision history, oldest first."""
    user_id = await require_user(request)
    post = await ensure_post_owner(_pool(request), user_id, request.match_info["postId"])
    approvals = await list_post_approvals(_pool(request), post.id)
    return web.json_response({"ok": True, "approvals": [a.to_dict() for a in approvals]})


# --- approval sessions ---


def _share_url(request: web.Request, share_token: str) -> Optional[str]:
    base = request.app["portal_base_url"]
    return f"{base}/approval/{share_token}" if base else None


async def handle_create_session(request: web.Request) -> web.Response:
    """POST /projects/{projectId}/approval-sessions { "expiresInDays"? } -> 201 { session, share_url }."""
    user_id, project = await _owned_project(request)
    body = await read_json(request) if request.can_read_body else {}
    days = body.get("expiresInDays")
    session = await create_approval_session(
        _pool(request),
        project,
        DEFAULT_SESSION_DAYS if days is None else days,
        actor=user_id,
    )
    return web.json_response(
        {"ok": True, "session": session.to_dict(), "share_url": _share_url(request, session.share_token)},
        status=201,
    )


async def handle_list_sessions(request: web.Request) -> web.Response:
    _, project = await _owned_project(request)
    sessions = await list_approval_sessions(_pool(request), project.id)
    return web.json_response({"ok": True, "sessions": [s.to_dict() for s in sessions]})


# --- global time ---


async def handle_select_global_time(request: web.Request) -> web.Response:
    """PUT /projects/{projectId}/global-time { "time": "HH:MM" } stages the time without writing."""
    _, project = await _owned_project(request)
    body = await read_json(request)
    override = _override(request, project.id)
    override.select(body.get("time"))
    return web.json_response({"ok": True, "override": override.to_dict()})


async def handle_apply_global_time(request: web.Request) -> web.Response:
    _, project = await _owned_project(request)
    pool = _pool(request)
    override = _override(request, project.id)
    posts = await list_scheduled_posts(pool, project.id)
    updated = await apply_global_time(pool, override, [p.id for p in posts])
    _invalidate(request, project.client_id)
    return web.json_response({"ok": True, "updated": updated, "override": override.to_dict()})


async def handle_clear_global_time(request: web.Request) -> web.Response:
    _, project = await _owned_project(request)
    override = _override(request, project.id)
    override.clear()
    return web.json_response({"ok": True, "override": override.to_dict()})


# --- unscheduled posts / uploads ---


async def handle_list_unscheduled(request: web.Request) -> web.Response:
    _, project = await _owned_project(request)
    posts = await list_unscheduled_posts(_pool(request), project.id)
    return web.json_response({"ok": True, "posts": [p.to_dict() for p in posts]})


async def handle_create_unscheduled(request: web.Request) -> web.Response:
    """POST /projects/{projectId}/unscheduled-posts { caption?, image_url?, post_notes?, platforms?, status? }."""
    user_id, project = await _owned_project(request)
    body = await read_json(request)
    try:
        status = PostStatus(body.get("status") or PostStatus.READY.value)
    except ValueError:
        raise ValidationError(f"Invalid status: {body.get('status')}", details={"field": "status"})
    post = await create_unscheduled_post(
        _pool(request),
        project.client_id,
        project.id,
        caption=body.get("caption") or "",
        image_url=body.get("image_url"),
        post_notes=body.get("post_notes"),
        platforms=body.get("platforms"),
        status=status,
        actor=user_id,
        supported=request.app["supported_platforms"],
        both=request.app["both_platforms"],
    )
    return web.json_response({"ok": True, "post": post.to_dict()}, status=201)


async def handle_delete_unscheduled(request: web.Request) -> web.Response:
    user_id, project = await _owned_project(request)
    post_id = request.query.get("postId")
    if not post_id:
        raise ValidationError("postId is required", details={"field": "postId"})
    await destroy_unscheduled_post(_pool(request), project.id, post_id, actor=user_id)
    return web.json_response({"ok": True, "success": True})


async def handle_convert_upload(request: web.Request) -> web.Response:
    """POST /clients/{clientId}/uploads/{uploadId}/convert { "projectId"? } -> 201 { post }."""
    user_id = await require_user(request)
    pool = _pool(request)
    client = await ensure_client_owner(pool, user_id, request.match_info["clientId"])
    body = await read_json(request) if request.can_read_body else {}
    post = await convert_upload_to_post(
        pool, client.id, request.match_info["uploadId"], project_id=body.get("projectId"), actor=user_id
    )
    return web.json_response({"ok": True, "post": post.to_dict()}, status=201)


# --- portal ---


async def handle_portal_approval(request: web.Request) -> web.Response:
    """
    POST /portal/approvals
    { token, post_id, post_type, approval_status, client_comments, edited_caption? }.
    """
    body = await read_json(request)
    pool = _pool(request)
    access = await portal_access(pool, body.get("token"))
    key = make_post_key(body.get("post_type"), body.get("post_id"))
    post = await submit_decision(
        pool,
        key,
        body.get("approval_status"),
        comment=body.get("client_comments"),
        edited_caption=body.get("edited_caption"),
        client_id=access.client.id,
        actor="client",
        project_id=access.project_id,
        session_id=access.session_id,
    )
    _invalidate(request, access.client.id)
    return web.json_response({"ok": True, "result": post.to_dict()})


async def handle_portal_resubmit(request: web.Request) -> web.Response:
    """POST /portal/approvals/resubmit { token, post_id, post_type? }: reopen a decided post for review."""
    body = await read_json(request)
    pool = _pool(request)
    access = await portal_access(pool, body.get("token"))
    key = make_post_key(body.get("post_type"), body.get("post_id"))
    if key.kind != KIND_CALENDAR:
        raise ValidationError("Uploads are not subject to approval", details={"key": str(key)})
    post = await resubmit_for_approval(
        pool, key.id, actor="client", client_id=access.client.id, project_id=access.project_id
    )
    _invalidate(request, access.client.id)
    return web.json_response({"ok": True, "result": post.to_dict()})


async def handle_portal_batch(request: web.Request) -> web.Response:
    """
    POST /portal/approvals/batch { token, decisions: [{post_id, post_type?, approval_status, client_comments?, edited_caption?}] }.
    Always 200 once validated; per-post outcome is in succeeded/failed.
    """
    body = await read_json(request)
    pool = _pool(request)
    access = await portal_access(pool, body.get("token"))
    raw = body.get("decisions") or []
    if not isinstance(raw, list):
        raise ValidationError("decisions must be a list", details={"field": "decisions"})
    decisions: dict[str, DecisionItem] = {}
    for entry in raw:
        if not isinstance(entry, dict):
            raise ValidationError("each decision must be an object", details={"field": "decisions"})
        key = f"{entry.get('post_type') or KIND_CALENDAR}:{entry.get('post_id') or ''}"
        decisions[key] = DecisionItem(
            entry.get("approval_status"),
            entry.get("client_comments"),
            entry.get("edited_caption"),
        )
    result = await submit_batch(
        pool,
        decisions,
        client_id=access.client.id,
        concurrency=request.app["batch_concurrency"],
        actor="client",
        project_id=access.project_id,
        session_id=access.session_id,
    )
    _invalidate(request, access.client.id)
    return web.json_response({"ok": True, **result.to_dict()})


def _in_scope(posts: list[Post], access: PortalAccess) -> list[Post]:
    if access.project_id is None:
        return posts
    return [p for p in posts if p.project_id == access.project_id]


def _portal_client_info(access: PortalAccess) -> dict[str, Any]:
    info: dict[str, Any] = {"id": access.client.id, "name": access.client.name}
    if access.session is not None:
        info["project_id"] = access.project_id
        info["expires_at"] = access.session.expires_at.isoformat()
    return info


async def handle_portal_pending(request: web.Request) -> web.Response:
    """GET /portal/approvals?token=...: posts from the current week on, grouped by week."""
    pool = _pool(request)
    access = await portal_access(pool, request.query.get("token"))
    posts = _in_scope(await list_scheduled_posts_for_client(pool, access.client.id), access)
    today = _client_today(access.client.timezone, request.app["default_timezone"])
    return web.json_response({
        "ok": True,
        "client": _portal_client_info(access),
        "weeks": group_posts_by_week(posts, today),
    })


async def handle_portal_calendar(request: web.Request) -> web.Response:
    """
    GET /portal/calendar?token&startDate&endDate&refresh
    -> { posts: {date: [post...]}, totalPosts, timezone }; 404 when the range is empty.
    """
    pool = _pool(request)
    access = await portal_access(pool, request.query.get("token"))
    client = access.client
    start_raw = request.query.get("startDate")
    end_raw = request.query.get("endDate")
    start = parse_date(start_raw, field_name="startDate") if start_raw else None
    end = parse_date(end_raw, field_name="endDate") if end_raw else None
    if start and end and start > end:
        raise ValidationError("startDate must not be after endDate", details={"field": "startDate"})
    posts = await request.app["calendar_cache"].get_posts(
        pool, client.id, start, end, refresh=_flag(request, "refresh")
    )
    posts = _in_scope(posts, access)
    if not posts:
        raise NotFoundError("Scheduled posts")
    return web.json_response({
        "ok": True,
        "client": _portal_client_info(access),
        "posts": group_posts_by_day(posts),
        "totalPosts": len(posts),
        "timezone": client.timezone or request.app["default_timezone"],
    })


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"ok": True})


def create_app(
    pool: Any,
    publishing_service: Optional[PublishingService] = None,
    identity_resolver: Optional[IdentityResolver] = None,
    *,
    supported_platforms: Sequence[str] = DEFAULT_SUPPORTED_PLATFORMS,
    both_platforms: Sequence[str] = DEFAULT_BOTH_PLATFORMS,
    default_timezone: str = "Pacific/Auckland",
    batch_concurrency: int = 10,
    calendar_cache_ttl: float = 30.0,
    portal_base_url: Optional[str] = None,
) -> web.Application:
    app = web.Application(client_max_size=CLIENT_MAX_SIZE, middlewares=[error_middleware])
    app["pool"] = pool
    app["publishing_service"] = publishing_service
    app["identity_resolver"] = identity_resolver
    app["supported_platforms"] = tuple(supported_platforms)
    app["both_platforms"] = tuple(both_platforms)
    app["default_timezone"] = default_timezone
    app["batch_concurrency"] = batch_concurrency
    app["calendar_cache"] = CalendarCache(ttl=calendar_cache_ttl)
    app["portal_base_url"] = (portal_base_url or "").rstrip("/")
    # In-memory per project; a restart drops staged times, already-written times stay
    app["global_time_overrides"] = {}

    app.router.add_get("/health", handle_health)

    scheduled = "/projects/{projectId}/scheduled-posts"
    app.router.add_post(scheduled, handle_schedule_post)
    app.router.add_get(scheduled, handle_list_scheduled)
    app.router.add_patch(scheduled, handle_update_time)
    app.router.add_delete(scheduled, handle_unschedule)
    app.router.add_patch(scheduled + "/{postId}/move", handle_move)
    app.router.add_patch(scheduled + "/{postId}/confirm", handle_confirm)
    app.router.add_patch(scheduled + "/{postId}/caption", handle_edit_caption)
    app.router.add_post(scheduled + "/{postId}/resubmit", handle_resubmit)
    app.router.add_post(scheduled + "/{postId}/publish", handle_publish)

    app.router.add_put("/projects/{projectId}/global-time", handle_select_global_time)
    app.router.add_post("/projects/{projectId}/global-time/apply", handle_apply_global_time)
    app.router.add_delete("/projects/{projectId}/global-time", handle_clear_global_time)

    unscheduled = "/projects/{projectId}/unscheduled-posts"
    app.router.add_get(unscheduled, handle_list_unscheduled)
    app.router.add_post(unscheduled, handle_create_unscheduled)
    app.router.add_delete(unscheduled, handle_delete_unscheduled)

    app.router.add_post("/clients/{clientId}/uploads/{uploadId}/convert", handle_convert_upload)
    app.router.add_get("/posts/{postId}/revisions", handle_revisions)
    app.router.add_get("/posts/{postId}/approvals", handle_post_approvals)

    sessions = "/projects/{projectId}/approval-sessions"
    app.router.add_post(sessions, handle_create_session)
    app.router.add_get(sessions, handle_list_sessions)

    app.router.add_get("/portal/approvals", handle_portal_pending)
    app.router.add_post("/portal/approvals", handle_portal_approval)
    app.router.add_post("/portal/approvals/batch", handle_portal_batch)
    app.router.add_post("/portal/approvals/resubmit", handle_portal_resubmit)
    app.router.add_get("/portal/calendar", handle_portal_calendar)
    return app
