"""CRUD operations for posts in both calendar partitions, clients, uploads; audit_log writes."""

import asyncio
import json
import uuid
from datetime import date, datetime
from typing import Any, Iterable, Mapping, Optional

import asyncpg
import structlog

from postflow.database.models import (
    ApprovalStatus,
    Client,
    ClientApprovalSession,
    Partition,
    Post,
    PostApproval,
    PostRevision,
    PostStatus,
    Project,
    Upload,
    UploadStatus,
)
from postflow.errors import UpstreamTimeoutError

log = structlog.get_logger()

PARTITION_TABLES = {
    Partition.UNSCHEDULED: "calendar_unscheduled_posts",
    Partition.SCHEDULED: "calendar_scheduled_posts",
}

# Column order used by inserts; must match schema.sql
POST_COLUMNS = (
    "id", "client_id", "project_id", "caption", "original_caption", "image_url", "post_notes",
    "status", "scheduled_date", "scheduled_time", "platforms", "approval_status",
    "client_feedback", "needs_reapproval", "edit_count", "last_edited_at", "last_edited_by",
    "platforms_scheduled", "late_status", "late_post_id", "late_post_ids", "is_confirmed",
)


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def is_uuid(value: Any) -> bool:
    """Ids are UUID columns; any other value can never match a row."""
    if isinstance(value, uuid.UUID):
        return True
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError):
        return False
    return True


def _json_dict(value: Any) -> dict[str, str]:
    if isinstance(value, str):
        value = json.loads(value) if value else {}
    return {str(k): str(v) for k, v in (value or {}).items()}


def _post_from_row(row: Mapping[str, Any], partition: Partition) -> Post:
    return Post(
        id=str(row["id"]),
        client_id=str(row["client_id"]),
        project_id=_str_or_none(row.get("project_id")),
        caption=row.get("caption") or "",
        original_caption=row.get("original_caption"),
        image_url=row.get("image_url"),
        post_notes=row.get("post_notes"),
        status=PostStatus(row.get("status") or PostStatus.READY.value),
        scheduled_date=row.get("scheduled_date"),
        scheduled_time=row.get("scheduled_time"),
        platforms=tuple(row.get("platforms") or ()),
        approval_status=ApprovalStatus(row.get("approval_status") or ApprovalStatus.DRAFT.value),
        client_feedback=row.get("client_feedback"),
        needs_reapproval=bool(row.get("needs_reapproval")),
        edit_count=int(row.get("edit_count") or 0),
        last_edited_at=row.get("last_edited_at"),
        last_edited_by=row.get("last_edited_by"),
        platforms_scheduled=tuple(row.get("platforms_scheduled") or ()),
        late_status=row.get("late_status"),
        late_post_id=row.get("late_post_id"),
        late_post_ids=_json_dict(row.get("late_post_ids")),
        is_confirmed=bool(row.get("is_confirmed")),
        partition=partition,
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _post_values(post: Post) -> list[Any]:
    return [
        post.id,
        post.client_id,
        post.project_id,
        post.caption or "",
        post.original_caption,
        post.image_url,
        post.post_notes,
        post.status.value,
        post.scheduled_date,
        post.scheduled_time,
        list(post.platforms),
        post.approval_status.value,
        post.client_feedback,
        post.needs_reapproval,
        post.edit_count,
        post.last_edited_at,
        post.last_edited_by,
        list(post.platforms_scheduled),
        post.late_status,
        post.late_post_id,
        json.dumps(post.late_post_ids),
        post.is_confirmed,
    ]


def _rows_affected(result: str) -> int:
    """asyncpg returns a status string like 'UPDATE 2'."""
    try:
        return int(result.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


# --- clients / projects ---


def _client_from_row(row: Mapping[str, Any]) -> Client:
    accounts = _json_dict(row.get("late_accounts"))
    return Client(
        id=str(row["id"]),
        name=row.get("name") or "",
        user_id=_str_or_none(row.get("user_id")),
        portal_token=row.get("portal_token"),
        portal_enabled=bool(row.get("portal_enabled")),
        timezone=row.get("timezone"),
        late_accounts={str(k).lower(): str(v) for k, v in accounts.items()},
    )


async def get_client(pool: asyncpg.Pool, client_id: str) -> Optional[Client]:
    if not is_uuid(client_id):
        return None
    row = await pool.fetchrow("SELECT * FROM clients WHERE id = $1", client_id)
    return _client_from_row(row) if row else None


async def get_client_by_portal_token(pool: asyncpg.Pool, token: str) -> Optional[Client]:
    row = await pool.fetchrow("SELECT * FROM clients WHERE portal_token = $1", token)
    return _client_from_row(row) if row else None


async def get_project(pool: asyncpg.Pool, project_id: str) -> Optional[Project]:
    if not is_uuid(project_id):
        return None
    row = await pool.fetchrow("SELECT id, client_id, name FROM projects WHERE id = $1", project_id)
    if not row:
        return None
    return Project(id=str(row["id"]), client_id=str(row["client_id"]), name=row["name"] or "")


# --- posts ---


async def get_unscheduled_post(pool: asyncpg.Pool, post_id: str) -> Optional[Post]:
    if not is_uuid(post_id):
        return None
    row = await pool.fetchrow("SELECT * FROM calendar_unscheduled_posts WHERE id = $1", post_id)
    return _post_from_row(row, Partition.UNSCHEDULED) if row else None


async def get_scheduled_post(
    pool: asyncpg.Pool, post_id: str, project_id: Optional[str] = None
) -> Optional[Post]:
    """Load scheduled post by id; when project_id is given the post must belong to it."""
    if not is_uuid(post_id) or (project_id is not None and not is_uuid(project_id)):
        return None
    if project_id is not None:
        row = await pool.fetchrow(
            "SELECT * FROM calendar_scheduled_posts WHERE id = $1 AND project_id = $2",
            post_id,
            project_id,
        )
    else:
        row = await pool.fetchrow("SELECT * FROM calendar_scheduled_posts WHERE id = $1", post_id)
    return _post_from_row(row, Partition.SCHEDULED) if row else None


async def list_unscheduled_posts(pool: asyncpg.Pool, project_id: str) -> list[Post]:
    if not is_uuid(project_id):
        return []
    rows = await pool.fetch(
        """
        SELECT * FROM calendar_unscheduled_posts
        WHERE project_id = $1
        ORDER BY created_at DESC
        """,
        project_id,
    )
    return [_post_from_row(r, Partition.UNSCHEDULED) for r in rows]


async def list_scheduled_posts(pool: asyncpg.Pool, project_id: str) -> list[Post]:
    """Scheduled posts of a project ordered by scheduled_date ascending."""
    if not is_uuid(project_id):
        return []
    rows = await pool.fetch(
        """
        SELECT * FROM calendar_scheduled_posts
        WHERE project_id = $1
        ORDER BY scheduled_date ASC, scheduled_time ASC NULLS LAST
        """,
        project_id,
    )
    return [_post_from_row(r, Partition.SCHEDULED) for r in rows]


async def list_scheduled_posts_for_client(
    pool: asyncpg.Pool,
    client_id: str,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> list[Post]:
    """
    Scheduled posts of a client in [start_date, end_date], ordered by date and time.
    Raises UpstreamTimeoutError when the query hits the command timeout.
    """
    if not is_uuid(client_id):
        return []
    try:
        rows = await pool.fetch(
            """
            SELECT * FROM calendar_scheduled_posts
            WHERE client_id = $1
              AND scheduled_date IS NOT NULL
              AND ($2::date IS NULL OR scheduled_date >= $2::date)
              AND ($3::date IS NULL OR scheduled_date <= $3::date)
            ORDER BY scheduled_date ASC, scheduled_time ASC NULLS LAST
            """,
            client_id,
            start_date,
            end_date,
        )
    except asyncio.TimeoutError:
        log.warning("calendar_query_timeout", client_id=client_id)
        raise UpstreamTimeoutError("Calendar query timed out, retry the request")
    return [_post_from_row(r, Partition.SCHEDULED) for r in rows]


async def _insert_post(pool: asyncpg.Pool, table: str, post: Post, partition: Partition) -> Post:
    placeholders = ", ".join(f"${i}" for i in range(1, len(POST_COLUMNS) + 1))
    row = await pool.fetchrow(
        f"""
        INSERT INTO {table} ({", ".join(POST_COLUMNS)}, created_at, updated_at)
        VALUES ({placeholders}, COALESCE(${len(POST_COLUMNS) + 1}, NOW()), NOW())
        RETURNING *
        """,
        *_post_values(post),
        post.created_at,
    )
    return _post_from_row(row, partition)


async def insert_unscheduled_post(pool: asyncpg.Pool, post: Post) -> Post:
    return await _insert_post(pool, PARTITION_TABLES[Partition.UNSCHEDULED], post, Partition.UNSCHEDULED)


async def upsert_unscheduled_post(pool: asyncpg.Pool, post: Post) -> Post:
    """Insert into the unscheduled partition, overwriting a leftover row with the same id."""
    placeholders = ", ".join(f"${i}" for i in range(1, len(POST_COLUMNS) + 1))
    updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in POST_COLUMNS if c != "id")
    row = await pool.fetchrow(
        f"""
        INSERT INTO calendar_unscheduled_posts ({", ".join(POST_COLUMNS)}, created_at, updated_at)
        VALUES ({placeholders}, COALESCE(${len(POST_COLUMNS) + 1}, NOW()), NOW())
        ON CONFLICT (id) DO UPDATE SET {updates}, updated_at = NOW()
        RETURNING *
        """,
        *_post_values(post),
        post.created_at,
    )
    return _post_from_row(row, Partition.UNSCHEDULED)


async def insert_scheduled_post(pool: asyncpg.Pool, post: Post) -> Post:
    """Insert into the scheduled partition. UniqueViolationError if the id is already scheduled."""
    return await _insert_post(pool, PARTITION_TABLES[Partition.SCHEDULED], post, Partition.SCHEDULED)


async def delete_unscheduled_post(pool: asyncpg.Pool, post_id: str) -> bool:
    """Delete unscheduled post by id. Returns True if deleted."""
    if not is_uuid(post_id):
        return False
    result = await pool.execute("DELETE FROM calendar_unscheduled_posts WHERE id = $1", post_id)
    return result == "DELETE 1"


async def delete_scheduled_post(
    pool: asyncpg.Pool, post_id: str, project_id: Optional[str] = None
) -> bool:
    if not is_uuid(post_id) or (project_id is not None and not is_uuid(project_id)):
        return False
    if project_id is not None:
        result = await pool.execute(
            "DELETE FROM calendar_scheduled_posts WHERE id = $1 AND project_id = $2",
            post_id,
            project_id,
        )
    else:
        result = await pool.execute("DELETE FROM calendar_scheduled_posts WHERE id = $1", post_id)
    return result == "DELETE 1"


async def update_scheduled_time(
    pool: asyncpg.Pool, post_id: str, project_id: str, scheduled_time: str
) -> Optional[Post]:
    """Set scheduled_time of one post under project. Returns None if no such post."""
    if not is_uuid(post_id) or not is_uuid(project_id):
        return None
    row = await pool.fetchrow(
        """
        UPDATE calendar_scheduled_posts SET scheduled_time = $1, updated_at = NOW()
        WHERE id = $2 AND project_id = $3
        RETURNING *
        """,
        scheduled_time,
        post_id,
        project_id,
    )
    return _post_from_row(row, Partition.SCHEDULED) if row else None


async def update_scheduled_times(
    pool: asyncpg.Pool, post_ids: Iterable[str], scheduled_time: str
) -> int:
    """Bulk-set scheduled_time. Returns number of rows updated; non-UUID ids are skipped."""
    ids = [str(i) for i in post_ids if is_uuid(i)]
    if not ids:
        return 0
    result = await pool.execute(
        """
        UPDATE calendar_scheduled_posts SET scheduled_time = $1, updated_at = NOW()
        WHERE id = ANY($2::uuid[])
        """,
        scheduled_time,
        ids,
    )
    return _rows_affected(result)


async def update_scheduled_slot(
    pool: asyncpg.Pool,
    post_id: str,
    scheduled_date: date,
    scheduled_time: Optional[str],
    project_id: Optional[str] = None,
    confirm: bool = False,
) -> Optional[Post]:
    """Set date and time (and optionally is_confirmed). Returns None if no such post."""
    if not is_uuid(post_id) or (project_id is not None and not is_uuid(project_id)):
        return None
    row = await pool.fetchrow(
        """
        UPDATE calendar_scheduled_posts
        SET scheduled_date = $1, scheduled_time = $2,
            is_confirmed = is_confirmed OR $3, updated_at = NOW()
        WHERE id = $4 AND ($5::uuid IS NULL OR project_id = $5::uuid)
        RETURNING *
        """,
        scheduled_date,
        scheduled_time,
        confirm,
        post_id,
        project_id,
    )
    return _post_from_row(row, Partition.SCHEDULED) if row else None


async def update_approval_fields(pool: asyncpg.Pool, post: Post) -> None:
    """Persist caption, approval and edit-audit fields of a scheduled post."""
    await pool.execute(
        """
        UPDATE calendar_scheduled_posts
        SET caption = $2, original_caption = $3, approval_status = $4, client_feedback = $5,
            needs_reapproval = $6, edit_count = $7, last_edited_at = $8, last_edited_by = $9,
            updated_at = NOW()
        WHERE id = $1
        """,
        post.id,
        post.caption or "",
        post.original_caption,
        post.approval_status.value,
        post.client_feedback,
        post.needs_reapproval,
        post.edit_count,
        post.last_edited_at,
        post.last_edited_by,
    )


async def update_publish_result(pool: asyncpg.Pool, post: Post) -> None:
    """Persist publish-coordinator-owned fields."""
    await pool.execute(
        """
        UPDATE calendar_scheduled_posts
        SET status = $2, platforms_scheduled = $3, late_status = $4, late_post_id = $5,
            late_post_ids = $6, updated_at = NOW()
        WHERE id = $1
        """,
        post.id,
        post.status.value,
        list(post.platforms_scheduled),
        post.late_status,
        post.late_post_id,
        json.dumps(post.late_post_ids),
    )


# --- uploads ---


async def get_upload(pool: asyncpg.Pool, upload_id: str) -> Optional[Upload]:
    if not is_uuid(upload_id):
        return None
    row = await pool.fetchrow("SELECT * FROM client_uploads WHERE id = $1", upload_id)
    if not row:
        return None
    return Upload(
        id=str(row["id"]),
        client_id=str(row["client_id"]),
        project_id=_str_or_none(row.get("project_id")),
        file_name=row.get("file_name") or "",
        file_url=row.get("file_url"),
        notes=row.get("notes"),
        status=UploadStatus(row.get("status") or UploadStatus.PENDING.value),
        created_at=row.get("created_at"),
    )


async def update_upload_status(pool: asyncpg.Pool, upload_id: str, status: UploadStatus) -> bool:
    if not is_uuid(upload_id):
        return False
    result = await pool.execute(
        "UPDATE client_uploads SET status = $1, updated_at = NOW() WHERE id = $2",
        status.value,
        upload_id,
    )
    return result == "UPDATE 1"


# --- approval sessions / decision history ---


def _session_from_row(row: Mapping[str, Any]) -> ClientApprovalSession:
    return ClientApprovalSession(
        id=str(row["id"]),
        project_id=str(row["project_id"]),
        client_id=str(row["client_id"]),
        share_token=row["share_token"],
        expires_at=row["expires_at"],
        created_at=row.get("created_at"),
    )


async def insert_approval_session(
    pool: asyncpg.Pool, project_id: str, client_id: str, share_token: str, expires_at: datetime
) -> ClientApprovalSession:
    row = await pool.fetchrow(
        """
        INSERT INTO client_approval_sessions (project_id, client_id, share_token, expires_at)
        VALUES ($1, $2, $3, $4)
        RETURNING *
        """,
        project_id,
        client_id,
        share_token,
        expires_at,
    )
    return _session_from_row(row)


async def get_approval_session_by_token(pool: asyncpg.Pool, share_token: str) -> Optional[ClientApprovalSession]:
    row = await pool.fetchrow("SELECT * FROM client_approval_sessions WHERE share_token = $1", share_token)
    return _session_from_row(row) if row else None


async def list_approval_sessions(pool: asyncpg.Pool, project_id: str) -> list[ClientApprovalSession]:
    """Sessions of a project, newest first."""
    if not is_uuid(project_id):
        return []
    rows = await pool.fetch(
        "SELECT * FROM client_approval_sessions WHERE project_id = $1 ORDER BY created_at DESC",
        project_id,
    )
    return [_session_from_row(r) for r in rows]


async def insert_post_approval(pool: asyncpg.Pool, approval: PostApproval) -> None:
    await pool.execute(
        """
        INSERT INTO post_approvals (session_id, post_id, post_type, approval_status, client_comments, approved_at)
        VALUES ($1, $2, $3, $4, $5, $6)
        """,
        approval.session_id,
        approval.post_id,
        approval.post_type,
        approval.approval_status.value,
        approval.client_comments,
        approval.approved_at,
    )


async def list_post_approvals(pool: asyncpg.Pool, post_id: str) -> list[PostApproval]:
    """Decision history of a post, oldest first."""
    if not is_uuid(post_id):
        return []
    rows = await pool.fetch(
        """
        SELECT session_id, post_id, post_type, approval_status, client_comments, approved_at, created_at
        FROM post_approvals WHERE post_id = $1 ORDER BY created_at, id
        """,
        post_id,
    )
    return [
        PostApproval(
            post_id=str(r["post_id"]),
            approval_status=ApprovalStatus(r["approval_status"]),
            client_comments=r["client_comments"],
            session_id=_str_or_none(r["session_id"]),
            post_type=r["post_type"],
            approved_at=r["approved_at"],
            created_at=r["created_at"],
        )
        for r in rows
    ]


# --- revisions / audit ---


async def insert_revision(pool: asyncpg.Pool, revision: PostRevision) -> None:
    await pool.execute(
        """
        INSERT INTO post_revisions (post_id, edited_by, previous_caption, new_caption, revision_number, edited_at)
        VALUES ($1, $2, $3, $4, $5, COALESCE($6, NOW()))
        """,
        revision.post_id,
        revision.edited_by,
        revision.previous_caption,
        revision.new_caption,
        revision.revision_number,
        revision.edited_at,
    )


async def list_revisions(pool: asyncpg.Pool, post_id: str) -> list[PostRevision]:
    if not is_uuid(post_id):
        return []
    rows = await pool.fetch(
        """
        SELECT post_id, edited_by, previous_caption, new_caption, revision_number, edited_at
        FROM post_revisions WHERE post_id = $1 ORDER BY revision_number
        """,
        post_id,
    )
    return [
        PostRevision(
            post_id=str(r["post_id"]),
            previous_caption=r["previous_caption"],
            new_caption=r["new_caption"],
            revision_number=r["revision_number"],
            edited_by=r["edited_by"],
            edited_at=r["edited_at"],
        )
        for r in rows
    ]


async def add_audit_log(
    pool: asyncpg.Pool,
    post_id: Optional[str],
    action: str,
    actor: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> None:
    """Append row to audit_log."""
    await pool.execute(
        """
        INSERT INTO audit_log (post_id, action, actor, details) VALUES ($1, $2, $3, $4)
        """,
        post_id,
        action,
        actor,
        json.dumps(details, default=str) if details is not None else None,
    )
