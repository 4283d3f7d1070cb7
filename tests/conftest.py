"""Shared fixtures: in-memory stand-in for the asyncpg repository and pending-action log."""

from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Any, Iterable, Optional

import asyncpg
import pytest

import postflow.services.approval as approval_module
import postflow.services.calendar as calendar_module
import postflow.services.calendar_cache as calendar_cache_module
import postflow.services.publisher as publisher_module
import postflow.services.reconciler as reconciler_module
import postflow.services.scheduling as scheduling_module
import postflow.web.app as web_app_module
import postflow.web.auth as web_auth_module
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

PATCHED_MODULES = (
    scheduling_module,
    calendar_module,
    approval_module,
    publisher_module,
    reconciler_module,
    calendar_cache_module,
    web_auth_module,
    web_app_module,
)

STORE_FUNCTIONS = (
    "get_client",
    "get_client_by_portal_token",
    "get_project",
    "get_unscheduled_post",
    "get_scheduled_post",
    "list_unscheduled_posts",
    "list_scheduled_posts",
    "list_scheduled_posts_for_client",
    "insert_unscheduled_post",
    "upsert_unscheduled_post",
    "insert_scheduled_post",
    "delete_unscheduled_post",
    "delete_scheduled_post",
    "update_scheduled_time",
    "update_scheduled_times",
    "update_scheduled_slot",
    "update_approval_fields",
    "update_publish_result",
    "get_upload",
    "update_upload_status",
    "insert_revision",
    "list_revisions",
    "insert_approval_session",
    "get_approval_session_by_token",
    "list_approval_sessions",
    "insert_post_approval",
    "list_post_approvals",
    "add_audit_log",
    "insert_pending_action",
    "get_due_actions",
    "mark_action_done",
    "mark_action_failed",
    "mark_post_actions_done",
)


class FakeStore:
    """
    Dict-backed implementation of the repository/outbox functions (same names, pool ignored).
    Set `failures[name] = exc` to make a function raise.
    """

    def __init__(self) -> None:
        self.clients: dict[str, Client] = {}
        self.projects: dict[str, Project] = {}
        self.unscheduled: dict[str, Post] = {}
        self.scheduled: dict[str, Post] = {}
        self.uploads: dict[str, Upload] = {}
        self.revisions: list[PostRevision] = []
        self.sessions: dict[str, ClientApprovalSession] = {}
        self.approvals: list[PostApproval] = []
        self.audit: list[dict[str, Any]] = []
        self.actions: dict[int, dict[str, Any]] = {}
        self.failures: dict[str, BaseException] = {}
        self.calls: list[str] = []

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        exc = self.failures.get(name)
        if exc is not None:
            raise exc

    # --- seeding ---

    def add_client(self, client: Client) -> Client:
        self.clients[client.id] = client
        return client

    def add_project(self, project: Project) -> Project:
        self.projects[project.id] = project
        return project

    def add_unscheduled(self, post: Post) -> Post:
        self.unscheduled[post.id] = replace(post, partition=Partition.UNSCHEDULED)
        return self.unscheduled[post.id]

    def add_scheduled(self, post: Post) -> Post:
        self.scheduled[post.id] = replace(post, partition=Partition.SCHEDULED)
        return self.scheduled[post.id]

    def add_upload(self, upload: Upload) -> Upload:
        self.uploads[upload.id] = upload
        return upload

    def add_session(self, session: ClientApprovalSession) -> ClientApprovalSession:
        self.sessions[session.id] = session
        return session

    # --- clients / projects ---

    async def get_client(self, pool: Any, client_id: str) -> Optional[Client]:
        self._enter("get_client")
        return self.clients.get(client_id)

    async def get_client_by_portal_token(self, pool: Any, token: str) -> Optional[Client]:
        self._enter("get_client_by_portal_token")
        return next((c for c in self.clients.values() if c.portal_token == token), None)

    async def get_project(self, pool: Any, project_id: str) -> Optional[Project]:
        self._enter("get_project")
        return self.projects.get(project_id)

    # --- posts ---

    async def get_unscheduled_post(self, pool: Any, post_id: str) -> Optional[Post]:
        self._enter("get_unscheduled_post")
        post = self.unscheduled.get(post_id)
        return replace(post) if post else None

    async def get_scheduled_post(self, pool: Any, post_id: str, project_id: Optional[str] = None) -> Optional[Post]:
        self._enter("get_scheduled_post")
        post = self.scheduled.get(post_id)
        if post is None or (project_id is not None and post.project_id != project_id):
            return None
        return replace(post)

    async def list_unscheduled_posts(self, pool: Any, project_id: str) -> list[Post]:
        self._enter("list_unscheduled_posts")
        return [replace(p) for p in self.unscheduled.values() if p.project_id == project_id]

    async def list_scheduled_posts(self, pool: Any, project_id: str) -> list[Post]:
        self._enter("list_scheduled_posts")
        posts = [replace(p) for p in self.scheduled.values() if p.project_id == project_id]
        return sorted(posts, key=lambda p: (p.scheduled_date or date.max, p.scheduled_time or ""))

    async def list_scheduled_posts_for_client(
        self,
        pool: Any,
        client_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> list[Post]:
        self._enter("list_scheduled_posts_for_client")
        posts = [
            replace(p)
            for p in self.scheduled.values()
            if p.client_id == client_id
            and p.scheduled_date is not None
            and (start_date is None or p.scheduled_date >= start_date)
            and (end_date is None or p.scheduled_date <= end_date)
        ]
        return sorted(posts, key=lambda p: (p.scheduled_date, p.scheduled_time or ""))

    async def insert_unscheduled_post(self, pool: Any, post: Post) -> Post:
        self._enter("insert_unscheduled_post")
        if post.id in self.unscheduled:
            raise asyncpg.UniqueViolationError("duplicate key value violates unique constraint")
        self.unscheduled[post.id] = replace(post, partition=Partition.UNSCHEDULED)
        return replace(self.unscheduled[post.id])

    async def upsert_unscheduled_post(self, pool: Any, post: Post) -> Post:
        self._enter("upsert_unscheduled_post")
        self.unscheduled[post.id] = replace(post, partition=Partition.UNSCHEDULED)
        return replace(self.unscheduled[post.id])

    async def insert_scheduled_post(self, pool: Any, post: Post) -> Post:
        self._enter("insert_scheduled_post")
        if post.id in self.scheduled:
            raise asyncpg.UniqueViolationError("duplicate key value violates unique constraint")
        self.scheduled[post.id] = replace(post, partition=Partition.SCHEDULED)
        return replace(self.scheduled[post.id])

    async def delete_unscheduled_post(self, pool: Any, post_id: str) -> bool:
        self._enter("delete_unscheduled_post")
        return self.unscheduled.pop(post_id, None) is not None

    async def delete_scheduled_post(self, pool: Any, post_id: str, project_id: Optional[str] = None) -> bool:
        self._enter("delete_scheduled_post")
        post = self.scheduled.get(post_id)
        if post is None or (project_id is not None and post.project_id != project_id):
            return False
        del self.scheduled[post_id]
        return True

    async def update_scheduled_time(
        self, pool: Any, post_id: str, project_id: str, scheduled_time: str
    ) -> Optional[Post]:
        self._enter("update_scheduled_time")
        post = self.scheduled.get(post_id)
        if post is None or post.project_id != project_id:
            return None
        self.scheduled[post_id] = replace(post, scheduled_time=scheduled_time)
        return replace(self.scheduled[post_id])

    async def update_scheduled_times(self, pool: Any, post_ids: Iterable[str], scheduled_time: str) -> int:
        self._enter("update_scheduled_times")
        count = 0
        for post_id in post_ids:
            if post_id in self.scheduled:
                self.scheduled[post_id] = replace(self.scheduled[post_id], scheduled_time=scheduled_time)
                count += 1
        return count

    async def update_scheduled_slot(
        self,
        pool: Any,
        post_id: str,
        scheduled_date: date,
        scheduled_time: Optional[str],
        project_id: Optional[str] = None,
        confirm: bool = False,
    ) -> Optional[Post]:
        self._enter("update_scheduled_slot")
        post = self.scheduled.get(post_id)
        if post is None or (project_id is not None and post.project_id != project_id):
            return None
        self.scheduled[post_id] = replace(
            post,
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            is_confirmed=post.is_confirmed or confirm,
        )
        return replace(self.scheduled[post_id])

    async def update_approval_fields(self, pool: Any, post: Post) -> None:
        self._enter("update_approval_fields")
        current = self.scheduled[post.id]
        self.scheduled[post.id] = replace(
            current,
            caption=post.caption,
            original_caption=post.original_caption,
            approval_status=post.approval_status,
            client_feedback=post.client_feedback,
            needs_reapproval=post.needs_reapproval,
            edit_count=post.edit_count,
            last_edited_at=post.last_edited_at,
            last_edited_by=post.last_edited_by,
        )

    async def update_publish_result(self, pool: Any, post: Post) -> None:
        self._enter("update_publish_result")
        current = self.scheduled[post.id]
        self.scheduled[post.id] = replace(
            current,
            status=post.status,
            platforms_scheduled=post.platforms_scheduled,
            late_status=post.late_status,
            late_post_id=post.late_post_id,
            late_post_ids=dict(post.late_post_ids),
        )

    # --- uploads / revisions / audit ---

    async def get_upload(self, pool: Any, upload_id: str) -> Optional[Upload]:
        self._enter("get_upload")
        return self.uploads.get(upload_id)

    async def update_upload_status(self, pool: Any, upload_id: str, status: UploadStatus) -> bool:
        self._enter("update_upload_status")
        if upload_id not in self.uploads:
            return False
        self.uploads[upload_id] = replace(self.uploads[upload_id], status=status)
        return True

    async def insert_revision(self, pool: Any, revision: PostRevision) -> None:
        self._enter("insert_revision")
        self.revisions.append(revision)

    async def list_revisions(self, pool: Any, post_id: str) -> list[PostRevision]:
        self._enter("list_revisions")
        return sorted((r for r in self.revisions if r.post_id == post_id), key=lambda r: r.revision_number)

    async def insert_approval_session(
        self, pool: Any, project_id: str, client_id: str, share_token: str, expires_at: datetime
    ) -> ClientApprovalSession:
        self._enter("insert_approval_session")
        session = ClientApprovalSession(
            id=f"s{len(self.sessions) + 1}",
            project_id=project_id,
            client_id=client_id,
            share_token=share_token,
            expires_at=expires_at,
            created_at=datetime.now(timezone.utc),
        )
        self.sessions[session.id] = session
        return session

    async def get_approval_session_by_token(self, pool: Any, share_token: str) -> Optional[ClientApprovalSession]:
        self._enter("get_approval_session_by_token")
        return next((s for s in self.sessions.values() if s.share_token == share_token), None)

    async def list_approval_sessions(self, pool: Any, project_id: str) -> list[ClientApprovalSession]:
        self._enter("list_approval_sessions")
        return [s for s in reversed(list(self.sessions.values())) if s.project_id == project_id]

    async def insert_post_approval(self, pool: Any, approval: PostApproval) -> None:
        self._enter("insert_post_approval")
        self.approvals.append(approval)

    async def list_post_approvals(self, pool: Any, post_id: str) -> list[PostApproval]:
        self._enter("list_post_approvals")
        return [a for a in self.approvals if a.post_id == post_id]

    async def add_audit_log(
        self,
        pool: Any,
        post_id: Optional[str],
        action: str,
        actor: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self._enter("add_audit_log")
        self.audit.append({"post_id": post_id, "action": action, "actor": actor, "details": details})

    # --- pending actions ---

    async def insert_pending_action(
        self, pool: Any, *, action: str, post_id: str, payload: Optional[dict[str, Any]] = None
    ) -> Optional[int]:
        self._enter("insert_pending_action")
        action_id = len(self.actions) + 1
        self.actions[action_id] = {
            "id": action_id,
            "action": action,
            "post_id": post_id,
            "payload": payload,
            "status": "pending",
            "attempts": 0,
            "last_error": None,
        }
        return action_id

    async def get_due_actions(self, pool: Any, limit: int = 20) -> list[dict[str, Any]]:
        self._enter("get_due_actions")
        due = [dict(a) for a in self.actions.values() if a["status"] == "pending"]
        return due[:limit]

    async def mark_action_done(self, pool: Any, action_id: Optional[int]) -> None:
        self._enter("mark_action_done")
        if action_id is not None:
            self.actions[action_id]["status"] = "done"

    async def mark_action_failed(self, pool: Any, action_id: Optional[int], error: str, attempts: int) -> None:
        self._enter("mark_action_failed")
        if action_id is not None:
            self.actions[action_id].update(last_error=error, attempts=attempts)

    async def mark_post_actions_done(self, pool: Any, post_id: str, action: str) -> int:
        self._enter("mark_post_actions_done")
        closed = 0
        for a in self.actions.values():
            if a["post_id"] == post_id and a["action"] == action and a["status"] == "pending":
                a["status"] = "done"
                closed += 1
        return closed

    def pending_actions(self) -> list[dict[str, Any]]:
        return [a for a in self.actions.values() if a["status"] == "pending"]


@pytest.fixture
def store(monkeypatch: pytest.MonkeyPatch) -> FakeStore:
    """FakeStore patched into every module that imports repository/outbox functions."""
    fake = FakeStore()
    for module in PATCHED_MODULES:
        for name in STORE_FUNCTIONS:
            if hasattr(module, name):
                monkeypatch.setattr(module, name, getattr(fake, name))
    return fake


@pytest.fixture
def world(store: FakeStore) -> FakeStore:
    """One agency user u1 owning client c1 (portal token 'tok') with project p1; a second client c2."""
    store.add_client(Client(
        id="c1",
        name="Cafe Aroha",
        user_id="u1",
        portal_token="tok",
        portal_enabled=True,
        timezone="Pacific/Auckland",
        late_accounts={"facebook": "acc-fb", "instagram": "acc-ig"},
    ))
    store.add_client(Client(id="c2", name="Other", user_id="u2", portal_token="tok2", portal_enabled=True))
    store.add_project(Project(id="p1", client_id="c1", name="March"))
    store.add_project(Project(id="p2", client_id="c2", name="Other project"))
    return store


def make_post(
    post_id: str = "post-1",
    *,
    client_id: str = "c1",
    project_id: Optional[str] = "p1",
    caption: str = "Hello",
    image_url: Optional[str] = "img://1",
    **fields: Any,
) -> Post:
    return Post(id=post_id, client_id=client_id, project_id=project_id, caption=caption, image_url=image_url, **fields)


def make_scheduled(
    post_id: str = "post-1",
    day: date = date(2025, 3, 10),
    time: str = "09:00",
    *,
    approval_status: ApprovalStatus = ApprovalStatus.PENDING,
    platforms: tuple[str, ...] = ("instagram", "facebook"),
    status: PostStatus = PostStatus.SCHEDULED,
    **fields: Any,
) -> Post:
    return make_post(
        post_id,
        status=status,
        scheduled_date=day,
        scheduled_time=time,
        approval_status=approval_status,
        platforms=platforms,
        partition=Partition.SCHEDULED,
        **fields,
    )


FIXED_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
