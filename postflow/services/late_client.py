"""Client for the LATE publishing API: create and delete platform posts."""

import asyncio
from typing import Any, Optional

import aiohttp
import structlog

from postflow.database.models import Post
from postflow.errors import PublishError

log = structlog.get_logger()

# Delays before 2nd and 3rd attempt; only 5xx and connection errors are retried
LATE_RETRY_DELAYS = (1, 3)
LATE_TIMEOUT_SEC = 30.0


def extract_post_id(data: Any) -> Optional[str]:
    """LATE returns the id as post._id, post.id, _id or id depending on endpoint version."""
    if not isinstance(data, dict):
        return None
    nested = data.get("post") if isinstance(data.get("post"), dict) else {}
    for value in (nested.get("_id"), nested.get("id"), data.get("_id"), data.get("id")):
        if value:
            return str(value)
    return None


class LateClient:
    """Thin async wrapper over https://getlate.dev/api/v1."""

    def __init__(self, base_url: str, api_key: Optional[str], timeout: float = LATE_TIMEOUT_SEC) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key or ""
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key.strip():
            headers["Authorization"] = f"Bearer {self.api_key.strip()}"
        return headers

    @staticmethod
    def build_payload(post: Post, platform: str, account_id: str, timezone: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "content": post.caption or "",
            "platforms": [{"platform": platform, "accountId": account_id}],
            "timezone": timezone,
        }
        if post.scheduled_date is not None:
            payload["scheduledFor"] = f"{post.scheduled_date.isoformat()}T{post.scheduled_time or '00:00'}:00"
        if post.image_url:
            payload["mediaItems"] = [{"type": "image", "url": post.image_url}]
        return payload

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[dict[str, Any]] = None,
        accept_status: tuple[int, ...] = (),
    ) -> Any:
        url = f"{self.base_url}{path}"
        last_error = "no attempt made"
        for attempt in range(len(LATE_RETRY_DELAYS) + 1):
            if attempt > 0:
                delay = LATE_RETRY_DELAYS[attempt - 1]
                log.info("late_request_retry", url=url, attempt=attempt + 1, delay=delay)
                await asyncio.sleep(delay)
            try:
                async with aiohttp.ClientSession() as session:
                    async with session.request(
                        method,
                        url,
                        json=payload,
                        headers=self._headers(),
                        timeout=aiohttp.ClientTimeout(total=self.timeout),
                    ) as resp:
                        if resp.status in accept_status:
                            return {}
                        if 200 <= resp.status < 300:
                            if resp.status == 204:
                                return {}
                            return await resp.json(content_type=None)
                        body = await resp.text()
                        last_error = f"HTTP {resp.status}: {body[:200]}"
                        if resp.status < 500:
                            log.warning("late_request_rejected", url=url, status=resp.status, body=body[:200])
                            raise PublishError(f"Publishing service rejected request ({last_error})")
                        log.warning("late_request_server_error", url=url, status=resp.status, attempt=attempt + 1)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = str(e) or type(e).__name__
                log.warning("late_request_error", url=url, attempt=attempt + 1, error=last_error)
        raise PublishError(f"Publishing service unavailable ({last_error})")

    async def publish(self, post: Post, platform: str, account_id: str, timezone: str) -> str:
        """Create the post for one platform. Returns the LATE post id; raises PublishError."""
        data = await self._request("POST", "/posts", self.build_payload(post, platform, account_id, timezone))
        late_post_id = extract_post_id(data)
        if not late_post_id:
            raise PublishError("Publishing service response has no post id")
        log.info("late_post_created", post_id=post.id, platform=platform, late_post_id=late_post_id)
        return late_post_id

    async def delete(self, late_post_id: str) -> None:
        """Cancel a platform post. A post LATE no longer knows counts as cancelled."""
        await self._request("DELETE", f"/posts/{late_post_id}", accept_status=(404,))
        log.info("late_post_deleted", late_post_id=late_post_id)
