"""Identity resolution for agency requests and portal tokens; ownership checks on clients, projects and posts."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import aiohttp
import asyncpg
import structlog
from aiohttp import web

from postflow.database.models import Client, ClientApprovalSession, Post, Project
from postflow.database.repository import (
    get_approval_session_by_token,
    get_client,
    get_client_by_portal_token,
    get_project,
    get_scheduled_post,
    get_unscheduled_post,
)
from postflow.errors import AuthenticationError, ForbiddenError, GoneError, NotFoundError, ValidationError

log = structlog.get_logger()

IdentityResolver = Callable[[str], Awaitable[Optional[str]]]


def bearer_token(request: web.Request) -> Optional[str]:
    auth = request.headers.get("Authorization")
    if not auth or not auth.startswith("Bearer "):
        return None
    token = auth[7:].strip()
    return token or None


class HttpIdentityResolver:
    """
    Ask the identity provider who owns a bearer token.

    POST {verify_url} with {"token": ...}; expects {"ok": true, "user_id": "..."}.
    Any failure resolves to None (treated as unauthenticated).
    """

    def __init__(self, verify_url: str, service_token: Optional[str] = None, timeout: float = 10.0) -> None:
        self.verify_url = verify_url
        self.service_token = service_token or ""
        self.timeout = timeout

    async def __call__(self, token: str) -> Optional[str]:
        headers = {}
        if self.service_token.strip():
            headers["Authorization"] = f"Bearer {self.service_token.strip()}"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.verify_url,
                    json={"token": token},
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as resp:
                    if resp.status != 200:
                        log.warning("identity_verify_http", status=resp.status)
                        return None
                    data = await resp.json()
                    if not data.get("ok") or not data.get("user_id"):
                        return None
                    return str(data["user_id"])
        except Exception as e:
            log.warning("identity_verify_error", url=self.verify_url, error=str(e))
            return None


async def require_user(request: web.Request) -> str:
    """Return the user id behind the request's bearer token or raise AuthenticationError."""
    token = bearer_token(request)
    if token is None:
        raise AuthenticationError("Missing bearer token")
    resolver: Optional[IdentityResolver] = request.app.get("identity_resolver")
    if resolver is None:
        log.error("identity_resolver_not_configured")
        raise AuthenticationError("Authentication is not configured")
    user_id = await resolver(token)
    if not user_id:
        log.warning("request_unauthorized", path=request.path)
        raise AuthenticationError("Invalid or expired token")
    return user_id


async def ensure_client_owner(pool: asyncpg.Pool, user_id: str, client_id: str) -> Client:
    client = await get_client(pool, client_id)
    if client is None or client.user_id != user_id:
        log.warning("ownership_denied", user_id=user_id, client_id=client_id)
        raise ForbiddenError()
    return client


async def ensure_project_owner(pool: asyncpg.Pool, user_id: str, project_id: str) -> Project:
    project = await get_project(pool, project_id)
    if project is None:
        log.warning("ownership_denied", user_id=user_id, project_id=project_id)
        raise ForbiddenError()
    await ensure_client_owner(pool, user_id, project.client_id)
    return project


async def ensure_post_owner(pool: asyncpg.Pool, user_id: str, post_id: str) -> Post:
    """Owner check for a post in either partition."""
    post = await get_scheduled_post(pool, post_id) or await get_unscheduled_post(pool, post_id)
    if post is None:
        raise NotFoundError("Post", post_id)
    await ensure_client_owner(pool, user_id, post.client_id)
    return post


@dataclass(frozen=True)
class PortalAccess:
    """Who a portal token speaks for. A share-link session also limits access to one project."""

    client: Client
    session: Optional[ClientApprovalSession] = None

    @property
    def project_id(self) -> Optional[str]:
        return self.session.project_id if self.session else None

    @property
    def session_id(self) -> Optional[str]:
        return self.session.id if self.session else None


async def portal_access(pool: asyncpg.Pool, token: Optional[str]) -> PortalAccess:
    """
    Resolve a client portal token or an approval session share token.
    400 without token, 401 if unknown or portal disabled, 410 if the session expired.
    """
    if not token or not str(token).strip():
        raise ValidationError("Portal token is required", details={"field": "token"})
    token = str(token).strip()
    client = await get_client_by_portal_token(pool, token)
    if client is not None:
        if not client.portal_enabled:
            raise AuthenticationError("Portal access is disabled")
        return PortalAccess(client)
    session = await get_approval_session_by_token(pool, token)
    if session is None:
        raise AuthenticationError("Invalid portal token")
    if session.is_expired(datetime.now(timezone.utc)):
        log.info("approval_session_expired", session_id=session.id)
        raise GoneError("Session has expired")
    client = await get_client(pool, session.client_id)
    if client is None:
        raise AuthenticationError("Invalid portal token")
    return PortalAccess(client, session)
