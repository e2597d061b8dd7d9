"""Composite `$batch` submission with partial-failure recovery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from ..core.errors import EncodingFailure, Forbidden, GraphAPIError, NotFound, RateLimited, Unauthorized
from ..core.models import BatchItem, BatchResult, HttpMethod
from ..core.rate_limit import RateBudget
from .transport import Sleep, TransportExecutor

logger = logging.getLogger(__name__)

BATCH_ENDPOINT = "/$batch"
DEFAULT_INTER_CHUNK_DELAY = 1.0
MISSING_RESPONSE_STATUS = 502
CHUNK_FAILURE_CODE = "batchRequestFailed"


class BatchCoordinator:
    """Submits logical operations as few composite requests as the budget allows.

    Every input id comes back exactly once. Items answered with 429 are
    resubmitted on their own after a backoff, while everything else (success
    or failure) is final and kept. Retry rounds always back off as a first
    attempt would; after ``max_rounds`` rounds a lingering 429 is reported as
    the item's final result. A composite request that fails outright settles
    each of its items with a synthesized error and the next chunk still goes.
    """

    def __init__(
        self,
        executor: TransportExecutor,
        *,
        budget: Optional[RateBudget] = None,
        inter_chunk_delay: float = DEFAULT_INTER_CHUNK_DELAY,
        max_rounds: Optional[int] = None,
        endpoint: str = BATCH_ENDPOINT,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._executor = executor
        self._budget = budget or executor.budget
        self._inter_chunk_delay = inter_chunk_delay
        self._max_rounds = executor.max_retries if max_rounds is None else max_rounds
        self._endpoint = endpoint
        self._sleep = sleep

    async def submit(
        self,
        items: Sequence[BatchItem],
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> List[BatchResult]:
        """Return one terminal result per input item, in input order.

        If ``cancel`` is set between chunks, no further chunks are sent and
        only the items already settled are returned.
        """

        _ensure_unique_ids(items)
        settled: Dict[str, BatchResult] = {}
        await self._process(list(items), settled, 0, cancel)
        return [settled[item.id] for item in items if item.id in settled]

    async def _process(
        self,
        items: List[BatchItem],
        settled: Dict[str, BatchResult],
        round_number: int,
        cancel: Optional[asyncio.Event],
    ) -> None:
        chunks = self._budget.split_into_batches(items)
        for index, chunk in enumerate(chunks):
            if cancel is not None and cancel.is_set():
                logger.info("Batch submission cancelled with %d chunk(s) unsent", len(chunks) - index)
                return
            if index > 0 and self._inter_chunk_delay > 0:
                await self._sleep(self._inter_chunk_delay)

            try:
                responses = await self._submit_chunk(chunk)
            except GraphAPIError as exc:
                logger.error("Batch chunk of %d item(s) failed: %s", len(chunk), exc)
                for item in chunk:
                    settled[item.id] = chunk_failure_result(item.id, exc)
                continue

            retryable: List[BatchItem] = []
            for item in chunk:
                result = responses.get(item.id) or _missing_result(item.id)
                if result.status == 429 and round_number < self._max_rounds:
                    retryable.append(item)
                else:
                    settled[item.id] = result

            if not retryable:
                continue

            self._budget.record_rate_limit()
            delay = self._budget.backoff_delay(1, None)
            logger.warning(
                "%d of %d batch item(s) rate limited; resubmitting in %.2fs (round %d)",
                len(retryable), len(chunk), delay, round_number + 1,
            )
            await self._sleep(delay)
            await self._process(retryable, settled, round_number + 1, cancel)

    async def _submit_chunk(self, chunk: Sequence[BatchItem]) -> Dict[str, BatchResult]:
        body = {"requests": [item.to_wire() for item in chunk]}
        payload = await self._executor.execute(self._endpoint, HttpMethod.POST, body=body)
        results = decode_batch_response(payload)
        expected = {item.id for item in chunk}
        mapping: Dict[str, BatchResult] = {}
        for result in results:
            if result.id not in expected:
                logger.warning("Ignoring batch response for unknown id %s", result.id)
                continue
            mapping[result.id] = result
        return mapping


def decode_batch_response(payload: Any) -> List[BatchResult]:
    if not isinstance(payload, dict) or not isinstance(payload.get("responses"), list):
        raise EncodingFailure(ValueError("Batch response is missing the 'responses' array"))
    try:
        return [BatchResult.from_wire(entry) for entry in payload["responses"]]
    except (AttributeError, TypeError, ValueError) as exc:
        raise EncodingFailure(exc) from exc


def build_batch_items(operations: Sequence[Dict[str, Any]], *, prefix: str = "") -> List[BatchItem]:
    """Wrap plain ``{method, url, body?, headers?}`` dicts with sequential ids."""

    items: List[BatchItem] = []
    for index, operation in enumerate(operations, start=1):
        items.append(
            BatchItem(
                id=str(operation.get("id") or f"{prefix}{index}"),
                method=HttpMethod.parse(operation.get("method", HttpMethod.GET)),
                url=operation["url"],
                body=operation.get("body"),
                headers=operation.get("headers"),
            )
        )
    return items


def _ensure_unique_ids(items: Sequence[BatchItem]) -> None:
    seen: set[str] = set()
    for item in items:
        if item.id in seen:
            raise ValueError(f"Duplicate batch item id: {item.id}")
        seen.add(item.id)


def chunk_failure_result(item_id: str, exc: GraphAPIError) -> BatchResult:
    """Terminal result for an item whose whole composite request failed."""

    return BatchResult(
        id=item_id,
        status=_failure_status(exc),
        body={"error": {"code": CHUNK_FAILURE_CODE, "message": exc.user_message()}},
    )


def is_chunk_failure(result: BatchResult) -> bool:
    body = result.body if isinstance(result.body, dict) else {}
    error = body.get("error") if isinstance(body.get("error"), dict) else {}
    return error.get("code") == CHUNK_FAILURE_CODE


def _failure_status(exc: GraphAPIError) -> int:
    status = getattr(exc, "status", None)
    if isinstance(status, int):
        return status
    if isinstance(exc, Unauthorized):
        return 401
    if isinstance(exc, Forbidden):
        return 403
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, RateLimited):
        return 429
    return MISSING_RESPONSE_STATUS


def _missing_result(item_id: str) -> BatchResult:
    return BatchResult(
        id=item_id,
        status=MISSING_RESPONSE_STATUS,
        body={"error": {"code": "missingBatchResponse", "message": "No response returned for this request"}},
    )


__all__ = [
    "BATCH_ENDPOINT",
    "BatchCoordinator",
    "build_batch_items",
    "chunk_failure_result",
    "decode_batch_response",
    "is_chunk_failure",
]
