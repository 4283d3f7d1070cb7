"""Client approval state machine for scheduled posts, caption edit tracking and share-link sessions."""

import secrets
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

import asyncpg
import structlog

from postflow.database.models import (
    DECISION_STATUSES,
    ApprovalStatus,
    ClientApprovalSession,
    Post,
    PostApproval,
    PostKey,
    PostRevision,
    Project,
    UploadKey,
    parse_post_key,
)
from postflow.database.repository import (
    add_audit_log,
    get_scheduled_post,
    insert_approval_session,
    insert_post_approval,
    insert_revision,
    update_approval_fields,
)
from postflow.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError

log = structlog.get_logger()

DEFAULT_SESSION_DAYS = 30
MAX_SESSION_DAYS = 365


def parse_decision(value: Any) -> ApprovalStatus:
    """Accept 'approved' | 'rejected' | 'needs_attention' (or the enum)."""
    try:
        status = ApprovalStatus(value)
    except ValueError:
        raise ValidationError(f"Invalid approval status: {value}", details={"field": "approval_status"})
    if status not in DECISION_STATUSES:
        raise ValidationError(f"Invalid approval status: {value}", details={"field": "approval_status"})
    return status


def is_decidable(post: Post) -> bool:
    """A client can decide a pending post, or re-decide one whose caption changed after the last decision."""
    if post.approval_status == ApprovalStatus.PENDING:
        return True
    return post.approval_status in DECISION_STATUSES and post.needs_reapproval


def _ensure_decidable(post: Post, status: ApprovalStatus) -> None:
    if not is_decidable(post):
        raise ConflictError(
            f"Cannot set {status.value} on a post in status {post.approval_status.value}",
            code="invalid_transition",
            details={"from": post.approval_status.value, "to": status.value},
        )


def apply_decision(post: Post, decision: Any, comment: Optional[str] = None) -> Post:
    """
    Return post with the client decision applied. Allowed on a pending post and on a
    decided post flagged needs_reapproval.

    Approve clears needs_reapproval. Every decision stores the comment (or None) as client_feedback.
    """
    status = parse_decision(decision)
    _ensure_decidable(post, status)
    feedback = comment.strip() if isinstance(comment, str) and comment.strip() else None
    post = replace(post, approval_status=status, client_feedback=feedback)
    if status == ApprovalStatus.APPROVED:
        post = replace(post, needs_reapproval=False)
    return post


def apply_caption_edit(
    post: Post,
    new_caption: Optional[str],
    editor: Optional[str],
    now: Optional[datetime] = None,
) -> tuple[Post, Optional[PostRevision]]:
    """
    Return (post, revision) for a caption edit, or (post, None) when nothing changed.

    Blank or identical captions are no-ops. An edit after a decision leaves the status
    alone and raises needs_reapproval.
    """
    if new_caption is None or not new_caption.strip():
        return post, None
    if new_caption.strip() == (post.caption or "").strip():
        return post, None
    now = now or datetime.now(timezone.utc)
    revision = PostRevision(
        post_id=post.id,
        previous_caption=post.caption or "",
        new_caption=new_caption,
        revision_number=post.edit_count + 1,
        edited_by=editor,
        edited_at=now,
    )
    edited = replace(
        post,
        caption=new_caption,
        original_caption=post.original_caption if post.original_caption is not None else (post.caption or ""),
        edit_count=post.edit_count + 1,
        last_edited_at=now,
        last_edited_by=editor,
        needs_reapproval=post.needs_reapproval or post.approval_status in DECISION_STATUSES,
    )
    return edited, revision


def resubmit(post: Post) -> Post:
    """
    Send a decided post back to pending for a new client decision. needs_reapproval is
    kept; only an approve clears it.
    """
    if post.approval_status not in DECISION_STATUSES:
        raise ConflictError(
            f"Cannot resubmit a post in status {post.approval_status.value}",
            code="invalid_transition",
            details={"from": post.approval_status.value, "to": ApprovalStatus.PENDING.value},
        )
    return replace(post, approval_status=ApprovalStatus.PENDING)


def _calendar_key(key: Union[PostKey, str]) -> PostKey:
    key = parse_post_key(key) if isinstance(key, str) else key
    if isinstance(key, UploadKey):
        raise ValidationError("Uploads are not subject to approval", details={"key": str(key)})
    return key


async def _load_owned(
    pool: asyncpg.Pool, post_id: str, client_id: Optional[str], project_id: Optional[str] = None
) -> Post:
    post = await get_scheduled_post(pool, post_id)
    if post is None:
        raise NotFoundError("Scheduled post", post_id)
    if client_id is not None and post.client_id != client_id:
        raise ForbiddenError()
    if project_id is not None and post.project_id != project_id:
        raise ForbiddenError("Post is not part of this approval session")
    return post


async def _persist(pool: asyncpg.Pool, post: Post, revision: Optional[PostRevision]) -> None:
    await update_approval_fields(pool, post)
    if revision is not None:
        await insert_revision(pool, revision)


async def submit_decision(
    pool: asyncpg.Pool,
    key: Union[PostKey, str],
    decision: Any,
    comment: Optional[str] = None,
    edited_caption: Optional[str] = None,
    client_id: Optional[str] = None,
    actor: Optional[str] = None,
    project_id: Optional[str] = None,
    session_id: Optional[str] = None,
) -> Post:
    """
    Apply an optional caption edit and then a decision to one post, validating both
    before anything is written. The decision is also appended to the post's approval history.

    project_id scopes the post to one project (share-link sessions).
    """
    key = _calendar_key(key)
    status = parse_decision(decision)
    post = await _load_owned(pool, key.id, client_id, project_id)
    # an edit in the same request does not unlock an already decided post
    _ensure_decidable(post, status)
    edited, revision = apply_caption_edit(post, edited_caption, actor or "client")
    decided = apply_decision(edited, status, comment)
    await _persist(pool, decided, revision)
    await insert_post_approval(
        pool,
        PostApproval(
            post_id=decided.id,
            approval_status=status,
            client_comments=decided.client_feedback,
            session_id=session_id,
            approved_at=datetime.now(timezone.utc) if status == ApprovalStatus.APPROVED else None,
        ),
    )
    await add_audit_log(
        pool,
        decided.id,
        "approval_decision",
        actor=actor or "client",
        details={"approval_status": status.value, "caption_edited": revision is not None},
    )
    log.info("approval_decided", post_id=decided.id, approval_status=status.value, caption_edited=revision is not None)
    return decided


async def edit_caption(
    pool: asyncpg.Pool,
    post_id: str,
    new_caption: Optional[str],
    editor: Optional[str],
    client_id: Optional[str] = None,
) -> Post:
    """Edit the caption of a scheduled post. Returns the post unchanged for a no-op edit."""
    post = await _load_owned(pool, post_id, client_id)
    edited, revision = apply_caption_edit(post, new_caption, editor)
    if revision is None:
        return post
    await _persist(pool, edited, revision)
    await add_audit_log(
        pool,
        post_id,
        "caption_edited",
        actor=editor,
        details={"revision_number": revision.revision_number, "needs_reapproval": edited.needs_reapproval},
    )
    if edited.needs_reapproval and not post.needs_reapproval:
        log.info("post_needs_reapproval", post_id=post_id, approval_status=edited.approval_status.value)
    return edited


async def resubmit_for_approval(
    pool: asyncpg.Pool,
    post_id: str,
    actor: Optional[str] = None,
    client_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> Post:
    post = await _load_owned(pool, post_id, client_id, project_id)
    pending = resubmit(post)
    await _persist(pool, pending, None)
    await add_audit_log(
        pool, post_id, "approval_resubmitted", actor=actor,
        details={"previous_status": post.approval_status.value},
    )
    log.info("approval_resubmitted", post_id=post_id)
    return pending


async def create_approval_session(
    pool: asyncpg.Pool,
    project: Project,
    expires_in_days: Any = DEFAULT_SESSION_DAYS,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ClientApprovalSession:
    """Issue a share link for one project that stops working after expires_in_days."""
    if isinstance(expires_in_days, bool) or not isinstance(expires_in_days, int):
        raise ValidationError("expiresInDays must be an integer", details={"field": "expiresInDays"})
    if not 1 <= expires_in_days <= MAX_SESSION_DAYS:
        raise ValidationError(
            f"expiresInDays must be between 1 and {MAX_SESSION_DAYS}", details={"field": "expiresInDays"}
        )
    now = now or datetime.now(timezone.utc)
    session = await insert_approval_session(
        pool,
        project.id,
        project.client_id,
        secrets.token_urlsafe(32),
        now + timedelta(days=expires_in_days),
    )
    await add_audit_log(
        pool, None, "approval_session_created", actor=actor,
        details={"session_id": session.id, "project_id": project.id, "expires_at": session.expires_at.isoformat()},
    )
    log.info("approval_session_created", session_id=session.id, project_id=project.id, expires_in_days=expires_in_days)
    return session
