"""Injected Microsoft Graph client shared by every entity service."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence

import httpx

from ..core.config import AppConfig
from ..core.models import BatchItem, BatchResult, HttpMethod, RateLimitStatus
from ..core.rate_limit import RateBudget
from .batch import BatchCoordinator
from .paginator import ItemParser, Paginator, _identity
from .request_builder import RequestBuilder, StaticTokenProvider, TokenProvider
from .transport import Sleep, TransportExecutor


class GraphClient:
    """Handles authenticated, budgeted requests to Microsoft Graph.

    One instance owns one RateBudget; build it once and pass it to every
    service so the whole process shares a single quota.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        token_provider: Optional[TokenProvider] = None,
        budget: Optional[RateBudget] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._config = config
        self._budget = budget or RateBudget()
        self._builder = RequestBuilder(config.base_url, token_provider or StaticTokenProvider(config.creds))
        timeout = httpx.Timeout(config.connect_timeout, connect=config.connect_timeout)
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._executor = TransportExecutor(
            self._client,
            self._builder,
            self._budget,
            max_retries=config.max_retries,
            admission_wait=config.admission_wait,
            total_timeout=config.total_timeout,
            sleep=sleep,
        )
        self._paginator: Paginator[Any] = Paginator(self._executor)
        self._batch = BatchCoordinator(
            self._executor,
            inter_chunk_delay=config.inter_chunk_delay,
            sleep=sleep,
        )

    @property
    def budget(self) -> RateBudget:
        return self._budget

    @property
    def executor(self) -> TransportExecutor:
        return self._executor

    async def get(
        self,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        return await self._executor.execute(endpoint, HttpMethod.GET, params=params, headers=headers)

    async def post(self, endpoint: str, body: Any = None, headers: Optional[Mapping[str, str]] = None) -> Any:
        return await self._executor.execute(endpoint, HttpMethod.POST, headers=headers, body=body)

    async def patch(self, endpoint: str, body: Any, headers: Optional[Mapping[str, str]] = None) -> Any:
        return await self._executor.execute(endpoint, HttpMethod.PATCH, headers=headers, body=body)

    async def delete(self, endpoint: str, headers: Optional[Mapping[str, str]] = None) -> None:
        await self._executor.execute(endpoint, HttpMethod.DELETE, headers=headers)

    async def get_all_pages(
        self,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        *,
        parse: ItemParser = _identity,
        cancel: Optional[asyncio.Event] = None,
    ) -> List[Any]:
        return await self._paginator.fetch_all(endpoint, params=params, headers=headers, parse=parse, cancel=cancel)

    def iterate_pages(
        self,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        *,
        parse: ItemParser = _identity,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[Any]:
        return self._paginator.iterate(endpoint, params=params, headers=headers, parse=parse, cancel=cancel)

    async def batch(self, items: Sequence[BatchItem], *, cancel: Optional[asyncio.Event] = None) -> List[BatchResult]:
        return await self._batch.submit(items, cancel=cancel)

    def rate_limit_status(self) -> RateLimitStatus:
        return self._budget.status()

    async def aclose(self) -> None:
        await self._client.aclose()


def error_details(result: BatchResult) -> Dict[str, str]:
    """Extract ``code``/``message`` from a failed batch item's body."""

    body = result.body if isinstance(result.body, dict) else {}
    error = body.get("error") if isinstance(body.get("error"), dict) else {}
    return {
        "code": str(error.get("code", "")),
        "message": str(error.get("message", "")),
    }
