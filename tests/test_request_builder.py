import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from graphpipe.core.config import GraphCredentials
from graphpipe.core.errors import AuthenticationFailed, EncodingFailure, InvalidURL
from graphpipe.core.models import Assignment, AssignmentIntent, HttpMethod
from graphpipe.services.request_builder import RequestBuilder, StaticTokenProvider

BASE_URL = "https://graph.example.test/beta/"


def _builder(token: str = "tok") -> RequestBuilder:
    return RequestBuilder(BASE_URL, StaticTokenProvider(GraphCredentials(access_token=token)))


def test_relative_endpoint_is_joined_with_params():
    request = asyncio.run(
        _builder().build(
            "/deviceManagement/managedDevices",
            params={"$select": "id,deviceName", "$top": 50},
        )
    )
    url = httpx.URL(request.url)
    assert url.host == "graph.example.test"
    assert url.path == "/beta/deviceManagement/managedDevices"
    assert url.params["$select"] == "id,deviceName"
    assert url.params["$top"] == "50"
    assert request.method is HttpMethod.GET
    assert not request.is_write
    assert request.body is None


def test_absolute_cursor_is_used_as_is():
    cursor = "https://graph.example.test/beta/groups?$skiptoken=abc"
    request = asyncio.run(_builder().build(cursor))
    assert httpx.URL(request.url) == httpx.URL(cursor)


def test_standard_headers_and_overrides():
    request = asyncio.run(
        _builder().build("groups", headers={"ConsistencyLevel": "eventual", "Accept": "text/plain"})
    )
    assert request.headers["Authorization"] == "Bearer tok"
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["ConsistencyLevel"] == "eventual"
    assert request.headers["Accept"] == "text/plain"


def test_missing_token_fails_authentication():
    with pytest.raises(AuthenticationFailed) as excinfo:
        asyncio.run(_builder(token="").build("/me"))
    assert "not authenticated" in str(excinfo.value)


@pytest.mark.parametrize("endpoint", ["", "https://"])
def test_invalid_urls_are_rejected(endpoint):
    with pytest.raises(InvalidURL):
        asyncio.run(_builder().build(endpoint))


def test_body_encodes_domain_objects():
    assignment = Assignment(application_id="a1", group_id="g1", intent=AssignmentIntent.AVAILABLE)
    request = asyncio.run(
        _builder().build(
            "/deviceAppManagement/mobileApps/a1/assignments",
            "post",
            body={"assignment": assignment, "at": datetime(2024, 1, 2, tzinfo=timezone.utc)},
        )
    )
    payload = json.loads(request.body)
    assert request.is_write
    assert payload["assignment"]["intent"] == "available"
    assert payload["assignment"]["target"]["groupId"] == "g1"
    assert payload["at"] == "2024-01-02T00:00:00+00:00"


def test_unencodable_body_raises_encoding_failure():
    with pytest.raises(EncodingFailure):
        asyncio.run(_builder().build("/groups", HttpMethod.POST, body={"bad": object()}))
