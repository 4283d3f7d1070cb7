"""Tests for LATE publishing API client."""

from datetime import date

import aiohttp
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from conftest import make_scheduled
from postflow.errors import PublishError
from postflow.services.late_client import LateClient, extract_post_id


def _response(status: int, json_data=None, text: str = "") -> AsyncMock:
    resp = AsyncMock()
    resp.status = status
    resp.json = AsyncMock(return_value=json_data)
    resp.text = AsyncMock(return_value=text)
    resp.__aenter__ = AsyncMock(return_value=resp)
    resp.__aexit__ = AsyncMock(return_value=None)
    return resp


def _patch_session(session_cls: MagicMock, *responses) -> AsyncMock:
    session = AsyncMock()
    session.request = MagicMock(side_effect=list(responses))
    session_cls.return_value.__aenter__ = AsyncMock(return_value=session)
    session_cls.return_value.__aexit__ = AsyncMock(return_value=None)
    return session


def test_extract_post_id_variants() -> None:
    assert extract_post_id({"post": {"_id": "a1"}}) == "a1"
    assert extract_post_id({"post": {"id": "a2"}}) == "a2"
    assert extract_post_id({"_id": "a3"}) == "a3"
    assert extract_post_id({"id": 7}) == "7"
    assert extract_post_id({"post": {}}) is None
    assert extract_post_id([]) is None


def test_build_payload() -> None:
    post = make_scheduled("a", date(2025, 3, 10), "09:00", caption="Hello", image_url="img://1")
    payload = LateClient.build_payload(post, "instagram", "acc-ig", "Pacific/Auckland")
    assert payload == {
        "content": "Hello",
        "platforms": [{"platform": "instagram", "accountId": "acc-ig"}],
        "timezone": "Pacific/Auckland",
        "scheduledFor": "2025-03-10T09:00:00",
        "mediaItems": [{"type": "image", "url": "img://1"}],
    }


@pytest.mark.asyncio
async def test_publish_returns_late_post_id() -> None:
    """On 200 response, returns id from body and sends bearer token."""
    with patch("postflow.services.late_client.aiohttp.ClientSession") as session_cls:
        session = _patch_session(session_cls, _response(200, {"post": {"_id": "late-1"}}))
        client = LateClient("https://late.test/api/v1/", "key")

        late_id = await client.publish(make_scheduled("a"), "instagram", "acc-ig", "UTC")

    assert late_id == "late-1"
    method, url = session.request.call_args.args
    assert (method, url) == ("POST", "https://late.test/api/v1/posts")
    assert session.request.call_args.kwargs["headers"]["Authorization"] == "Bearer key"


@pytest.mark.asyncio
async def test_publish_client_error_not_retried() -> None:
    """On 4xx, raises PublishError without retrying."""
    with patch("postflow.services.late_client.aiohttp.ClientSession") as session_cls, \
         patch("asyncio.sleep", new_callable=AsyncMock) as sleep:
        session = _patch_session(session_cls, _response(422, text="invalid media"))
        with pytest.raises(PublishError, match="invalid media"):
            await LateClient("https://late.test", "key").publish(make_scheduled("a"), "facebook", "acc-fb", "UTC")
    assert session.request.call_count == 1
    sleep.assert_not_called()


@pytest.mark.asyncio
async def test_publish_retries_server_errors_then_fails() -> None:
    with patch("postflow.services.late_client.aiohttp.ClientSession") as session_cls, \
         patch("asyncio.sleep", new_callable=AsyncMock) as sleep:
        session = _patch_session(
            session_cls,
            _response(502, text="bad gateway"),
            aiohttp.ClientConnectionError("reset"),
            _response(503, text="unavailable"),
        )
        with pytest.raises(PublishError, match="unavailable"):
            await LateClient("https://late.test", "key").publish(make_scheduled("a"), "facebook", "acc-fb", "UTC")
    assert session.request.call_count == 3
    assert [c.args[0] for c in sleep.call_args_list] == [1, 3]


@pytest.mark.asyncio
async def test_publish_succeeds_after_retry() -> None:
    with patch("postflow.services.late_client.aiohttp.ClientSession") as session_cls, \
         patch("asyncio.sleep", new_callable=AsyncMock):
        _patch_session(session_cls, _response(500, text="oops"), _response(201, {"id": "late-2"}))
        late_id = await LateClient("https://late.test", None).publish(make_scheduled("a"), "facebook", "acc-fb", "UTC")
    assert late_id == "late-2"


@pytest.mark.asyncio
async def test_publish_without_id_in_response_fails() -> None:
    with patch("postflow.services.late_client.aiohttp.ClientSession") as session_cls:
        _patch_session(session_cls, _response(200, {"ok": True}))
        with pytest.raises(PublishError):
            await LateClient("https://late.test", "key").publish(make_scheduled("a"), "facebook", "acc-fb", "UTC")


@pytest.mark.asyncio
async def test_delete_accepts_no_content() -> None:
    with patch("postflow.services.late_client.aiohttp.ClientSession") as session_cls:
        session = _patch_session(session_cls, _response(204))
        await LateClient("https://late.test", "key").delete("late-9")
    assert session.request.call_args.args == ("DELETE", "https://late.test/posts/late-9")


@pytest.mark.asyncio
async def test_delete_treats_missing_post_as_done() -> None:
    """The post is already gone upstream; nothing left to cancel."""
    with patch("postflow.services.late_client.aiohttp.ClientSession") as session_cls:
        session = _patch_session(session_cls, _response(404, text="not found"))
        await LateClient("https://late.test", "key").delete("late-9")
    assert session.request.call_count == 1


@pytest.mark.asyncio
async def test_delete_client_error_raises() -> None:
    with patch("postflow.services.late_client.aiohttp.ClientSession") as session_cls:
        _patch_session(session_cls, _response(400, text="cannot delete published post"))
        with pytest.raises(PublishError, match="cannot delete"):
            await LateClient("https://late.test", "key").delete("late-9")
