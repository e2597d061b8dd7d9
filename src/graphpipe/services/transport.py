"""Single-request execution with budget consultation and retries."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

import httpx

from ..core.errors import (
    EncodingFailure,
    Forbidden,
    HttpError,
    NetworkError,
    NotFound,
    RateLimited,
    ServerError,
    Unauthorized,
)
from ..core.models import HttpMethod, OutboundRequest
from ..core.rate_limit import RateBudget
from .request_builder import RequestBuilder

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

DEFAULT_MAX_RETRIES = 3
DEFAULT_ADMISSION_WAIT = 5.0


class TransportExecutor:
    """Runs one logical request to completion, retrying transient failures.

    Each attempt waits out the budget's preemptive delay, blocks until the
    budget admits the request, records it, then performs the exchange.
    429s, 5xx answers and transport failures are retried up to
    ``max_retries`` times; everything else surfaces immediately.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        builder: RequestBuilder,
        budget: RateBudget,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        admission_wait: float = DEFAULT_ADMISSION_WAIT,
        total_timeout: Optional[float] = 60.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._http = http
        self._builder = builder
        self._budget = budget
        self._max_retries = max_retries
        self._admission_wait = admission_wait
        self._total_timeout = total_timeout
        self._sleep = sleep

    @property
    def budget(self) -> RateBudget:
        return self._budget

    @property
    def builder(self) -> RequestBuilder:
        return self._builder

    @property
    def max_retries(self) -> int:
        return self._max_retries

    async def execute(
        self,
        endpoint: str,
        method: HttpMethod | str = HttpMethod.GET,
        *,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        body: Any = None,
    ) -> Any:
        request = await self._builder.build(endpoint, method, params=params, headers=headers, body=body)
        return await self.send(request)

    async def send(self, request: OutboundRequest) -> Any:
        attempt = 1
        while True:
            await self._wait_for_admission(request.is_write)

            try:
                response = await self._exchange(request)
            except NetworkError as exc:
                if attempt <= self._max_retries:
                    delay = self._budget.backoff_delay(attempt, None)
                    logger.warning(
                        "%s %s failed (%s); retry %d/%d in %.2fs",
                        request.method.value, request.url, exc.cause, attempt, self._max_retries, delay,
                    )
                    await self._sleep(delay)
                    attempt += 1
                    continue
                raise

            status = response.status_code
            logger.debug("API Response: %d for %s", status, request.url)

            if 200 <= status < 300:
                self._budget.reset_rate_limit_tracking()
                return _decode_success(response)
            if status == 401:
                raise Unauthorized(request.url)
            if status == 403:
                raise Forbidden(resource=request.url, operation=request.method.value)
            if status == 404:
                raise NotFound(request.url)
            if status == 429:
                retry_after = response.headers.get("Retry-After")
                self._budget.record_rate_limit()
                if attempt <= self._max_retries:
                    await self._sleep(self._budget.backoff_delay(attempt, retry_after))
                    attempt += 1
                    continue
                raise RateLimited(retry_after=retry_after, attempts=attempt)
            if status >= 500:
                if attempt <= self._max_retries:
                    delay = self._budget.backoff_delay(attempt, None)
                    logger.warning(
                        "%s %s returned %d; retry %d/%d in %.2fs",
                        request.method.value, request.url, status, attempt, self._max_retries, delay,
                    )
                    await self._sleep(delay)
                    attempt += 1
                    continue
                raise _server_error(response)

            envelope = _decode_error(response)
            if envelope is not None:
                raise ServerError(envelope.get("message", ""), str(envelope.get("code", "")), status)
            raise HttpError(status)

    async def _wait_for_admission(self, is_write: bool) -> None:
        while True:
            delay = self._budget.preemptive_delay(is_write)
            if delay > 0:
                logger.debug("Preemptive delay of %.2fs before request", delay)
                await self._sleep(delay)
            if self._budget.try_acquire(is_write):
                return
            logger.info("Request budget exhausted; waiting %.1fs for the window to slide", self._admission_wait)
            await self._sleep(self._admission_wait)

    async def _exchange(self, request: OutboundRequest) -> httpx.Response:
        call = self._http.request(
            request.method.value,
            request.url,
            headers=request.headers,
            content=request.body,
        )
        try:
            if self._total_timeout:
                return await asyncio.wait_for(call, timeout=self._total_timeout)
            return await call
        except httpx.TransportError as exc:
            raise NetworkError(exc) from exc
        except asyncio.TimeoutError as exc:
            raise NetworkError(exc) from exc


def _decode_success(response: httpx.Response) -> Any:
    if response.status_code == 204 or not response.content:
        return None
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise EncodingFailure(exc) from exc


def _decode_error(response: httpx.Response) -> Optional[dict]:
    """Return the ``error`` object of a Graph error envelope, if any."""

    if not response.content:
        return None
    try:
        payload = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict) and ("message" in error or "code" in error):
        return error
    return None


def _server_error(response: httpx.Response) -> ServerError:
    envelope = _decode_error(response)
    if envelope is not None:
        return ServerError(envelope.get("message", ""), str(envelope.get("code", "")), response.status_code)
    return ServerError(response.reason_phrase or "Server error", str(response.status_code), response.status_code)
