"""Cursor-following listing support."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, Generic, List, Mapping, Optional, TypeVar

from ..core.errors import EncodingFailure
from ..core.models import NEXT_LINK_KEY, HttpMethod, Page
from .transport import TransportExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")

ItemParser = Callable[[Dict[str, Any]], T]


def _identity(entry: Dict[str, Any]) -> Any:
    return entry


def parse_page(payload: Any, parse: Callable[[Dict[str, Any]], T]) -> Page[T]:
    """Decode one ``{"value": [...], "@odata.nextLink": ...}`` body."""

    if payload is None:
        return Page(items=[])
    if not isinstance(payload, dict):
        raise EncodingFailure(TypeError(f"Expected a JSON object page, got {type(payload).__name__}"))
    raw_items = payload.get("value") or []
    if not isinstance(raw_items, list):
        raise EncodingFailure(TypeError("Page 'value' is not a list"))
    try:
        items = [parse(entry) for entry in raw_items]
    except (KeyError, TypeError, ValueError) as exc:
        raise EncodingFailure(exc) from exc
    next_link = payload.get(NEXT_LINK_KEY)
    return Page(items=items, next_link=str(next_link) if next_link else None)


class Paginator(Generic[T]):
    """Materializes a listing endpoint by following continuation cursors.

    Pages are strictly sequential: the cursor for page N+1 is only known once
    page N has returned. Query parameters apply to the first request only
    because the cursor URL already carries them.
    """

    def __init__(self, executor: TransportExecutor) -> None:
        self._executor = executor

    async def fetch_all(
        self,
        endpoint: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        parse: ItemParser = _identity,
        cancel: Optional[asyncio.Event] = None,
    ) -> List[T]:
        results: List[T] = []
        async for page in self.pages(endpoint, params=params, headers=headers, parse=parse, cancel=cancel):
            results.extend(page.items)
        return results

    async def iterate(
        self,
        endpoint: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        parse: ItemParser = _identity,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[T]:
        """Stream items one at a time; restarting means calling again."""

        async for page in self.pages(endpoint, params=params, headers=headers, parse=parse, cancel=cancel):
            for item in page.items:
                yield item

    async def pages(
        self,
        endpoint: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        parse: ItemParser = _identity,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[Page[T]]:
        next_link: Optional[str] = endpoint
        current_params = params
        page_number = 0
        while next_link:
            if cancel is not None and cancel.is_set():
                logger.info("Pagination of %s cancelled after %d page(s)", endpoint, page_number)
                return
            payload = await self._executor.execute(
                next_link,
                HttpMethod.GET,
                params=current_params,
                headers=headers,
            )
            page = parse_page(payload, parse)
            page_number += 1
            logger.debug("Fetched page %d of %s (%d items)", page_number, endpoint, len(page.items))
            yield page
            next_link = page.next_link
            current_params = None
