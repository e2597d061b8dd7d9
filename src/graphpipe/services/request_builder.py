"""Outbound request assembly: URL, headers, bearer token and JSON body."""

from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional, Protocol

import httpx

from ..core.config import GraphCredentials
from ..core.errors import AuthenticationFailed, AuthError, EncodingFailure, InvalidURL
from ..core.models import HttpMethod, OutboundRequest


class TokenProvider(Protocol):
    """Supplies a current bearer token or raises AuthError."""

    async def get_access_token(self) -> str: ...


class StaticTokenProvider:
    """Serves a token obtained out of band (environment, config, CLI login)."""

    def __init__(self, creds: GraphCredentials) -> None:
        self._creds = creds

    async def get_access_token(self) -> str:
        if not self._creds.access_token:
            raise AuthError("User is not authenticated")
        return self._creds.access_token


class RequestBuilder:
    """Turns endpoint + method + params into an OutboundRequest.

    Relative endpoints are joined to the base URL; absolute ones (pagination
    cursors) are taken as-is. The token provider is consulted once per build.
    """

    def __init__(self, base_url: str, token_provider: TokenProvider) -> None:
        self._base_url = base_url.rstrip("/")
        self._token_provider = token_provider

    @property
    def base_url(self) -> str:
        return self._base_url

    async def build(
        self,
        endpoint: str,
        method: HttpMethod | str = HttpMethod.GET,
        *,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        body: Any = None,
    ) -> OutboundRequest:
        verb = HttpMethod.parse(method)
        url = self.resolve_url(endpoint, params)

        request_headers: Dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            token = await self._token_provider.get_access_token()
        except AuthError as exc:
            raise AuthenticationFailed(exc) from exc
        request_headers["Authorization"] = f"Bearer {token}"
        if headers:
            request_headers.update(headers)

        payload = self.encode_body(body) if body is not None else None
        return OutboundRequest(method=verb, url=url, headers=request_headers, body=payload)

    def resolve_url(self, endpoint: str, params: Optional[Mapping[str, Any]] = None) -> str:
        if not endpoint:
            raise InvalidURL(endpoint)
        if endpoint.startswith(("http://", "https://")):
            raw = endpoint
        else:
            raw = f"{self._base_url}/{endpoint.lstrip('/')}"
        try:
            url = httpx.URL(raw)
        except (httpx.InvalidURL, TypeError, ValueError) as exc:
            raise InvalidURL(raw) from exc
        if not url.host:
            raise InvalidURL(raw)
        if params:
            url = url.copy_merge_params({key: str(value) for key, value in params.items()})
        return str(url)

    @staticmethod
    def encode_body(body: Any) -> bytes:
        if isinstance(body, bytes):
            return body
        try:
            return json.dumps(body, default=_to_wire).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise EncodingFailure(exc) from exc


def _to_wire(value: Any) -> Any:
    to_graph = getattr(value, "to_graph", None)
    if callable(to_graph):
        return to_graph()
    to_wire = getattr(value, "to_wire", None)
    if callable(to_wire):
        return to_wire()
    if hasattr(value, "value") and isinstance(getattr(value, "value"), (str, int)):
        return value.value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
