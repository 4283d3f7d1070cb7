"""Dataclasses for posts, clients, projects, uploads and post keys."""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, ClassVar, Optional, Union

from postflow.errors import ValidationError


class PostStatus(str, Enum):
    DRAFT = "draft"
    READY = "ready"
    SCHEDULED = "scheduled"
    PUBLISHED = "published"
    ARCHIVED = "archived"
    DELETED = "deleted"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_ATTENTION = "needs_attention"
    DRAFT = "draft"


# Statuses a client can set on a pending post
DECISION_STATUSES = frozenset({
    ApprovalStatus.APPROVED,
    ApprovalStatus.REJECTED,
    ApprovalStatus.NEEDS_ATTENTION,
})


class Partition(str, Enum):
    UNSCHEDULED = "unscheduled"
    SCHEDULED = "scheduled"


class UploadStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


LATE_STATUS_PUBLISHED = "published"
LATE_STATUS_FAILED = "failed"


# --- post keys ---

KIND_CALENDAR = "calendar_scheduled"
KIND_UPLOAD = "client-upload"


@dataclass(frozen=True)
class CalendarPostKey:
    """Key of a post living in the calendar partitions."""

    id: str
    kind: ClassVar[str] = KIND_CALENDAR

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"


@dataclass(frozen=True)
class UploadKey:
    """Key of a raw client upload. Not schedulable, not approvable."""

    id: str
    kind: ClassVar[str] = KIND_UPLOAD

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"


PostKey = Union[CalendarPostKey, UploadKey]

# planner_scheduled is the tag used before the planner -> calendar rename
_KIND_TO_KEY: dict[str, type] = {
    KIND_CALENDAR: CalendarPostKey,
    "planner_scheduled": CalendarPostKey,
    KIND_UPLOAD: UploadKey,
    "client_upload": UploadKey,
}


def make_post_key(kind: Optional[str], post_id: Any) -> PostKey:
    """Build a key from a post_type tag and an id. Missing kind means a calendar post."""
    if post_id is None or not str(post_id).strip():
        raise ValidationError("post id is required")
    key_cls = _KIND_TO_KEY.get((kind or KIND_CALENDAR).strip().lower())
    if key_cls is None:
        raise ValidationError(f"Unknown post type: {kind}", details={"post_type": kind})
    return key_cls(str(post_id).strip())


def parse_post_key(raw: str) -> PostKey:
    """Parse '<kind>:<id>' (or a bare id, treated as a calendar post)."""
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError("post key is required")
    kind, sep, post_id = raw.strip().partition(":")
    if not sep:
        return CalendarPostKey(kind)
    return make_post_key(kind, post_id)


# --- rows ---


@dataclass
class Client:
    """One row from clients table."""

    id: str
    name: str = ""
    user_id: Optional[str] = None
    portal_token: Optional[str] = None
    portal_enabled: bool = False
    timezone: Optional[str] = None
    late_accounts: dict[str, str] = field(default_factory=dict)


@dataclass
class Project:
    """One row from projects table."""

    id: str
    client_id: str
    name: str = ""


@dataclass
class Post:
    """A post in either calendar partition. The id is stable across partitions."""

    id: str
    client_id: str
    project_id: Optional[str] = None
    caption: str = ""
    original_caption: Optional[str] = None
    image_url: Optional[str] = None
    post_notes: Optional[str] = None
    status: PostStatus = PostStatus.READY
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[str] = None
    platforms: tuple[str, ...] = ()
    approval_status: ApprovalStatus = ApprovalStatus.DRAFT
    client_feedback: Optional[str] = None
    needs_reapproval: bool = False
    edit_count: int = 0
    last_edited_at: Optional[datetime] = None
    last_edited_by: Optional[str] = None
    platforms_scheduled: tuple[str, ...] = ()
    late_status: Optional[str] = None
    late_post_id: Optional[str] = None
    # platform -> LATE post id, one per delivered platform
    late_post_ids: dict[str, str] = field(default_factory=dict)
    is_confirmed: bool = False
    partition: Partition = Partition.UNSCHEDULED
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> CalendarPostKey:
        return CalendarPostKey(self.id)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation for HTTP responses."""
        return {
            "id": self.id,
            "post_type": KIND_CALENDAR,
            "client_id": self.client_id,
            "project_id": self.project_id,
            "caption": self.caption,
            "original_caption": self.original_caption,
            "image_url": self.image_url,
            "post_notes": self.post_notes,
            "status": self.status.value,
            "scheduled_date": self.scheduled_date.isoformat() if self.scheduled_date else None,
            "scheduled_time": self.scheduled_time,
            "platforms": list(self.platforms),
            "approval_status": self.approval_status.value,
            "client_feedback": self.client_feedback,
            "needs_reapproval": self.needs_reapproval,
            "edit_count": self.edit_count,
            "last_edited_at": self.last_edited_at.isoformat() if self.last_edited_at else None,
            "last_edited_by": self.last_edited_by,
            "platforms_scheduled": list(self.platforms_scheduled),
            "late_status": self.late_status,
            "late_post_id": self.late_post_id,
            "late_post_ids": dict(self.late_post_ids),
            "is_confirmed": self.is_confirmed,
            "partition": self.partition.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Post":
        """Inverse of to_dict (used for snapshots stored in pending_actions.payload)."""

        def _dt(value: Any) -> Optional[datetime]:
            return datetime.fromisoformat(value) if isinstance(value, str) and value else None

        raw_date = data.get("scheduled_date")
        return cls(
            id=str(data["id"]),
            client_id=str(data["client_id"]),
            project_id=data.get("project_id"),
            caption=data.get("caption") or "",
            original_caption=data.get("original_caption"),
            image_url=data.get("image_url"),
            post_notes=data.get("post_notes"),
            status=PostStatus(data.get("status") or PostStatus.READY.value),
            scheduled_date=date.fromisoformat(raw_date) if raw_date else None,
            scheduled_time=data.get("scheduled_time"),
            platforms=tuple(data.get("platforms") or ()),
            approval_status=ApprovalStatus(data.get("approval_status") or ApprovalStatus.DRAFT.value),
            client_feedback=data.get("client_feedback"),
            needs_reapproval=bool(data.get("needs_reapproval")),
            edit_count=int(data.get("edit_count") or 0),
            last_edited_at=_dt(data.get("last_edited_at")),
            last_edited_by=data.get("last_edited_by"),
            platforms_scheduled=tuple(data.get("platforms_scheduled") or ()),
            late_status=data.get("late_status"),
            late_post_id=data.get("late_post_id"),
            late_post_ids={str(k): str(v) for k, v in (data.get("late_post_ids") or {}).items()},
            is_confirmed=bool(data.get("is_confirmed")),
            partition=Partition(data.get("partition") or Partition.UNSCHEDULED.value),
            created_at=_dt(data.get("created_at")),
            updated_at=_dt(data.get("updated_at")),
        )


@dataclass
class Upload:
    """One row from client_uploads table: raw media awaiting conversion."""

    id: str
    client_id: str
    project_id: Optional[str] = None
    file_name: str = ""
    file_url: Optional[str] = None
    notes: Optional[str] = None
    status: UploadStatus = UploadStatus.PENDING
    created_at: Optional[datetime] = None

    @property
    def key(self) -> UploadKey:
        return UploadKey(self.id)


@dataclass
class PostRevision:
    """One caption edit."""

    post_id: str
    previous_caption: str
    new_caption: str
    revision_number: int
    edited_by: Optional[str] = None
    edited_at: Optional[datetime] = None


@dataclass
class ClientApprovalSession:
    """Expiring share link that lets a client review one project's posts."""

    id: str
    project_id: str
    client_id: str
    share_token: str
    expires_at: datetime
    created_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "client_id": self.client_id,
            "share_token": self.share_token,
            "expires_at": self.expires_at.isoformat(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class PostApproval:
    """One client decision, kept as history next to the post's current approval_status."""

    post_id: str
    approval_status: ApprovalStatus
    client_comments: Optional[str] = None
    session_id: Optional[str] = None
    post_type: str = KIND_CALENDAR
    approved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "post_id": self.post_id,
            "post_type": self.post_type,
            "session_id": self.session_id,
            "approval_status": self.approval_status.value,
            "client_comments": self.client_comments,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
