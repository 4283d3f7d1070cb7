"""Apply many client decisions concurrently and report per-post results."""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Union

import asyncpg
import structlog

from postflow.database.models import PostKey, parse_post_key
from postflow.errors import NotFoundError, PostflowError, ValidationError
from postflow.services.approval import parse_decision, submit_decision

log = structlog.get_logger()

DEFAULT_CONCURRENCY = 10

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_PARTIAL = "partial"
OUTCOME_FAILED = "failed"


@dataclass(frozen=True)
class DecisionItem:
    decision: Any
    comment: Optional[str] = None
    edited_caption: Optional[str] = None


class ApprovalSession:
    """Decisions, comments and caption edits staged by a client before submitting."""

    def __init__(self) -> None:
        self._items: dict[PostKey, DecisionItem] = {}

    def stage(
        self,
        key: Union[PostKey, str],
        decision: Any,
        comment: Optional[str] = None,
        edited_caption: Optional[str] = None,
    ) -> None:
        key = parse_post_key(key) if isinstance(key, str) else key
        self._items[key] = DecisionItem(parse_decision(decision), comment, edited_caption)

    def unstage(self, key: PostKey) -> None:
        self._items.pop(key, None)

    def clear(self, keys: Optional[Iterable[PostKey]] = None) -> None:
        """Drop the given keys, or everything when keys is None."""
        if keys is None:
            self._items.clear()
            return
        for key in keys:
            self._items.pop(key, None)

    def decisions(self) -> dict[PostKey, DecisionItem]:
        return dict(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: object) -> bool:
        return key in self._items


@dataclass
class BatchResult:
    succeeded: list[PostKey] = field(default_factory=list)
    failed: list[tuple[Any, str]] = field(default_factory=list)

    @property
    def outcome(self) -> str:
        if not self.failed:
            return OUTCOME_SUCCEEDED
        if not self.succeeded:
            return OUTCOME_FAILED
        return OUTCOME_PARTIAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome,
            "succeeded": [str(k) for k in self.succeeded],
            "failed": [{"key": str(k), "reason": reason} for k, reason in self.failed],
        }


def _as_item(value: Any) -> DecisionItem:
    if isinstance(value, DecisionItem):
        return value
    if isinstance(value, Mapping):
        return DecisionItem(
            value.get("approval_status") or value.get("decision"),
            value.get("client_comments") or value.get("comment"),
            value.get("edited_caption"),
        )
    return DecisionItem(value)


async def submit_batch(
    pool: asyncpg.Pool,
    decisions: Optional[Mapping[Any, Any]] = None,
    client_id: Optional[str] = None,
    known_keys: Optional[Iterable[PostKey]] = None,
    session: Optional[ApprovalSession] = None,
    concurrency: int = DEFAULT_CONCURRENCY,
    actor: Optional[str] = None,
    project_id: Optional[str] = None,
    session_id: Optional[str] = None,
) -> BatchResult:
    """
    Submit decisions for many posts at once (decisions default to the session's staged ones).

    Items run concurrently and fail independently; results keep the input order.
    Only succeeded keys are cleared from the session.
    """
    if decisions is None and session is not None:
        decisions = session.decisions()
    if not decisions:
        raise ValidationError("No decisions to submit", code="empty_batch")
    known = set(known_keys) if known_keys is not None else None
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def run_one(raw_key: Any, raw_item: Any) -> tuple[Any, Optional[str]]:
        key = raw_key
        async with semaphore:
            try:
                key = parse_post_key(raw_key) if isinstance(raw_key, str) else raw_key
                if known is not None and key not in known:
                    raise NotFoundError("Post", getattr(key, "id", raw_key))
                item = _as_item(raw_item)
                await submit_decision(
                    pool,
                    key,
                    item.decision,
                    comment=item.comment,
                    edited_caption=item.edited_caption,
                    client_id=client_id,
                    actor=actor,
                    project_id=project_id,
                    session_id=session_id,
                )
                return key, None
            except PostflowError as e:
                log.warning("batch_item_failed", key=str(key), code=e.code, error=e.message)
                return key, e.message
            except asyncpg.DataError as e:
                log.warning("batch_item_failed", key=str(key), code="invalid_value", error=str(e))
                return key, "Invalid identifier or value"
            except Exception as e:
                log.error("batch_item_error", key=str(key), error=str(e), exc_info=True)
                return key, "Internal error"

    outcomes = await asyncio.gather(*(run_one(k, v) for k, v in decisions.items()))
    result = BatchResult()
    for key, reason in outcomes:
        if reason is None:
            result.succeeded.append(key)
        else:
            result.failed.append((key, reason))
    if session is not None:
        session.clear(result.succeeded)
    log.info(
        "batch_approval_submitted",
        total=len(outcomes),
        succeeded=len(result.succeeded),
        failed=len(result.failed),
        outcome=result.outcome,
    )
    return result
