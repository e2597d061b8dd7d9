import asyncio

import pytest

from graphpipe.core.errors import NetworkError, ServerError
from graphpipe.core.models import (
    Application,
    Assignment,
    AssignmentIntent,
    BatchResult,
    Device,
    DeviceGroup,
    EntityType,
    HttpMethod,
)
from graphpipe.core.rate_limit import RateBudget
from graphpipe.services.applications import ApplicationService
from graphpipe.services.assignments import AssignmentService, plan_assignments
from graphpipe.services.base import CachedCollectionService, CachedEntityService
from graphpipe.services.batch import BatchCoordinator, chunk_failure_result
from graphpipe.services.cache import CacheCoordinator, DependencyGraph
from graphpipe.services.devices import DeviceService
from graphpipe.services.groups import GroupService
from graphpipe.services.local_store import MemoryStore


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class StubClient:
    def __init__(self, pages=None, batch_results=None, error=None):
        self.pages = pages or {}
        self.batch_results = batch_results
        self.error = error
        self.list_calls = []
        self.batches = []
        self.posts = []

    async def get_all_pages(self, endpoint, params=None, headers=None, *, parse=lambda entry: entry, cancel=None):
        self.list_calls.append((endpoint, params, headers))
        if self.error is not None:
            raise self.error
        return [parse(entry) for entry in self.pages.get(endpoint, [])]

    async def get(self, endpoint, params=None, headers=None):
        return {"id": endpoint.rsplit("/", 1)[-1], "deviceName": "Fetched"}

    async def post(self, endpoint, body=None, headers=None):
        self.posts.append(endpoint)
        return None

    async def batch(self, items, *, cancel=None):
        self.batches.append(list(items))
        return self.batch_results(items)


DEVICE_PAGE = [
    {"id": "d1", "deviceName": "Studio-01", "operatingSystem": "macOS", "serialNumber": "C02X", "lastSyncDateTime": "2024-05-01T10:00:00Z"},
    {"id": "d2", "deviceName": "iPad-Lab", "operatingSystem": "iPadOS", "userPrincipalName": "kim@example.test"},
]


def _wire(service_cls, client, dependencies=None):
    cache = CacheCoordinator(dependencies, clock=FakeClock())
    store = MemoryStore()
    return service_cls(client, cache, store), cache, store


def test_fetch_populates_store_and_serves_from_cache():
    client = StubClient(pages={"/deviceManagement/managedDevices": DEVICE_PAGE})
    service, cache, store = _wire(DeviceService, client)

    first = asyncio.run(service.fetch_devices())
    second = asyncio.run(service.fetch_devices())

    assert [device.id for device in first] == ["d1", "d2"]
    assert isinstance(first[0], Device)
    assert first[0].last_sync is not None
    assert second == first
    assert len(client.list_calls) == 1
    assert store.fetch(EntityType.DEVICES) == first
    assert cache.metadata(EntityType.DEVICES).record_count == 2


def test_force_refresh_and_stale_cache_go_to_api():
    client = StubClient(pages={"/deviceManagement/managedDevices": DEVICE_PAGE})
    service, cache, _ = _wire(DeviceService, client)

    asyncio.run(service.fetch_devices())
    asyncio.run(service.fetch_devices(force_refresh=True))
    assert len(client.list_calls) == 2

    cache.mark_stale(EntityType.DEVICES)
    asyncio.run(service.fetch_devices())
    assert len(client.list_calls) == 3


def test_device_listing_sends_select_and_filter():
    client = StubClient()
    service, _, _ = _wire(DeviceService, client)
    asyncio.run(service.fetch_devices())
    endpoint, params, _ = client.list_calls[0]
    assert endpoint == "/deviceManagement/managedDevices"
    assert "deviceName" in params["$select"]
    assert "macOS" in params["$filter"]


def test_device_actions_and_search():
    client = StubClient(pages={"/deviceManagement/managedDevices": DEVICE_PAGE})
    service, _, _ = _wire(DeviceService, client)
    asyncio.run(service.fetch_devices())

    assert [device.id for device in service.search("c02")] == ["d1"]
    assert [device.id for device in service.search("KIM@")] == ["d2"]
    assert len(service.search("")) == 2

    device = asyncio.run(service.fetch_device("d9"))
    assert device.id == "d9"
    asyncio.run(service.sync_device("d1"))
    assert client.posts == ["/deviceManagement/managedDevices/d1/syncDevice"]


def test_failed_fetch_leaves_cache_untouched():
    client = StubClient(error=ServerError("boom", "InternalServerError", 500))
    service, cache, store = _wire(DeviceService, client)
    with pytest.raises(ServerError):
        asyncio.run(service.fetch_devices())
    assert cache.metadata(EntityType.DEVICES) is None
    assert store.fetch(EntityType.DEVICES) == []


def test_groups_keep_security_or_dynamic_only():
    client = StubClient(
        pages={
            "/groups": [
                {"id": "g1", "displayName": "Pilot", "securityEnabled": True},
                {"id": "g2", "displayName": "Team", "securityEnabled": False, "groupTypes": ["Unified"]},
                {"id": "g3", "displayName": "Macs", "securityEnabled": False, "groupTypes": ["DynamicMembership"]},
            ]
        }
    )
    service, _, _ = _wire(GroupService, client)
    groups = asyncio.run(service.fetch_groups())

    assert [group.id for group in groups] == ["g1", "g3"]
    assert all(isinstance(group, DeviceGroup) for group in groups)
    _, params, headers = client.list_calls[0]
    assert headers == {"ConsistencyLevel": "eventual"}
    assert params["$count"] == "true"


def test_group_members_paginate_member_endpoint():
    client = StubClient(pages={"/groups/g1/members": [{"id": "u1"}]})
    service, _, _ = _wire(GroupService, client)
    assert asyncio.run(service.fetch_members("g1")) == [{"id": "u1"}]


def test_application_assignments_are_parsed():
    client = StubClient(
        pages={
            "/deviceAppManagement/mobileApps": [{"id": "a1", "displayName": "Slack", "isAssigned": True}],
            "/deviceAppManagement/mobileApps/a1/assignments": [
                {"id": "x1", "intent": "available", "target": {"groupId": "g1"}},
            ],
        }
    )
    service, _, _ = _wire(ApplicationService, client)
    apps = asyncio.run(service.fetch_applications())
    assert apps == [Application(id="a1", display_name="Slack", is_assigned=True)]

    assignments = asyncio.run(service.fetch_assignments("a1"))
    assert assignments[0].group_id == "g1"
    assert assignments[0].intent is AssignmentIntent.AVAILABLE


def _create_results(items):
    results = []
    for item in items:
        target = item.body["target"]["groupId"]
        if target == "g-dup":
            results.append(BatchResult(id=item.id, status=409))
        elif target == "g-bad":
            results.append(
                BatchResult(id=item.id, status=400, body={"error": {"code": "BadRequest", "message": "Invalid intent"}})
            )
        else:
            results.append(BatchResult(id=item.id, status=201, body={"id": f"new-{item.id}"}))
    return results


def test_create_assignments_reports_each_outcome_and_invalidates():
    client = StubClient(batch_results=_create_results)
    graph = DependencyGraph({"assignments": ["applications", "devices"]})
    service, cache, _ = _wire(AssignmentService, client, graph)
    cache.record_refresh(EntityType.ASSIGNMENTS, 4)
    cache.record_refresh(EntityType.APPLICATIONS, 3)
    cache.record_refresh(EntityType.DEVICES, 5)
    assert cache.statistics().stale_count == 0

    requests = plan_assignments(["a1"], ["g-ok", "g-dup", "g-bad"], AssignmentIntent.REQUIRED)
    report = asyncio.run(service.create_assignments(requests))

    assert [item.group_id for item in report.succeeded] == ["g-ok"]
    assert report.succeeded[0].id == "new-0"
    assert [item.group_id for item in report.skipped] == ["g-dup"]
    assert report.failed[0].status == 400
    assert report.failed[0].message == "Invalid intent"
    assert report.total == 3
    assert not report.ok

    batch = client.batches[0]
    assert all(item.method is HttpMethod.POST for item in batch)
    assert batch[0].url == "/deviceAppManagement/mobileApps/a1/assignments"
    assert batch[0].body["intent"] == "required"

    assert cache.metadata(EntityType.ASSIGNMENTS).is_stale
    assert cache.metadata(EntityType.APPLICATIONS).is_stale
    assert cache.metadata(EntityType.DEVICES).is_stale


def test_create_assignments_with_nothing_to_do():
    client = StubClient(batch_results=_create_results)
    service, _, _ = _wire(AssignmentService, client)
    report = asyncio.run(service.create_assignments([]))
    assert report.total == 0
    assert client.batches == []


def test_fetch_assignments_uses_batched_reads():
    def results(items):
        return [
            BatchResult(
                id=items[0].id,
                status=200,
                body={"value": [{"id": "x1", "intent": "required", "target": {"groupId": "g1"}}]},
            ),
            BatchResult(id=items[1].id, status=403, body={"error": {"code": "Forbidden", "message": "nope"}}),
        ]

    client = StubClient(batch_results=results)
    service, cache, store = _wire(AssignmentService, client)

    assignments = asyncio.run(service.fetch_assignments(["a1", "a2"]))

    assert assignments == [Assignment("a1", "g1", AssignmentIntent.REQUIRED, id="x1")]
    assert [item.url for item in client.batches[0]] == [
        "/deviceAppManagement/mobileApps/a1/assignments",
        "/deviceAppManagement/mobileApps/a2/assignments",
    ]
    assert store.fetch(EntityType.ASSIGNMENTS) == assignments
    assert cache.can_serve_from_cache(EntityType.ASSIGNMENTS)


def test_plan_assignments_skips_duplicate_pairs():
    planned = plan_assignments(["a1", "a1"], ["g1", "g2"], AssignmentIntent.AVAILABLE, settings={"x": 1})
    assert [(item.application_id, item.group_id) for item in planned] == [("a1", "g1"), ("a1", "g2")]
    assert planned[0].settings == {"x": 1}


class CoordinatedClient(StubClient):
    """Routes batches through a real coordinator over a scripted executor."""

    def __init__(self, executor, **kwargs):
        super().__init__(**kwargs)

        async def no_sleep(delay):
            return None

        self.coordinator = BatchCoordinator(executor, sleep=no_sleep)

    async def batch(self, items, *, cancel=None):
        self.batches.append(list(items))
        return await self.coordinator.submit(items, cancel=cancel)


class SecondPostRejectedExecutor:
    def __init__(self):
        self.budget = RateBudget(clock=FakeClock())
        self.max_retries = 3
        self.calls = 0

    async def execute(self, endpoint, method=HttpMethod.GET, *, params=None, headers=None, body=None):
        self.calls += 1
        if self.calls == 2:
            raise ServerError("Write request id does not match", "BadRequest", 400)
        return {
            "responses": [
                {"id": request["id"], "status": 201, "body": {"id": f"new-{request['id']}"}}
                for request in body["requests"]
            ]
        }


def test_rejected_chunk_is_reported_and_earlier_chunks_kept():
    executor = SecondPostRejectedExecutor()
    client = CoordinatedClient(executor)
    graph = DependencyGraph({"assignments": ["applications"]})
    service, cache, _ = _wire(AssignmentService, client, graph)
    cache.record_refresh(EntityType.ASSIGNMENTS, 1)
    cache.record_refresh(EntityType.APPLICATIONS, 1)

    groups = [f"g{index}" for index in range(21)]
    report = asyncio.run(service.create_assignments(plan_assignments(["a1"], groups)))

    assert executor.calls == 2
    assert [item.group_id for item in report.succeeded] == groups[:20]
    assert report.succeeded[19].id == "new-19"
    assert [failure.assignment.group_id for failure in report.failed] == ["g20"]
    assert report.failed[0].status == 400
    assert report.failed[0].code == "batchRequestFailed"
    assert report.total == 21
    assert cache.metadata(EntityType.ASSIGNMENTS).is_stale
    assert cache.metadata(EntityType.APPLICATIONS).is_stale


def test_create_assignments_invalidates_even_when_batch_raises():
    def broken(items):
        raise NetworkError(ConnectionResetError("connection reset"))

    client = StubClient(batch_results=broken)
    graph = DependencyGraph({"assignments": ["applications"]})
    service, cache, _ = _wire(AssignmentService, client, graph)
    cache.record_refresh(EntityType.ASSIGNMENTS, 1)
    cache.record_refresh(EntityType.APPLICATIONS, 1)

    with pytest.raises(NetworkError):
        asyncio.run(service.create_assignments(plan_assignments(["a1"], ["g1"])))

    assert cache.metadata(EntityType.ASSIGNMENTS).is_stale
    assert cache.metadata(EntityType.APPLICATIONS).is_stale


def test_assignment_service_has_no_collection_fetch():
    client = StubClient(batch_results=lambda items: [])
    service, _, _ = _wire(AssignmentService, client)

    assert isinstance(service, CachedEntityService)
    assert not isinstance(service, CachedCollectionService)
    assert not hasattr(service, "fetch")


def test_fetch_assignments_served_from_cache_on_second_call():
    def results(items):
        return [
            BatchResult(id=item.id, status=200, body={"value": [{"id": f"x{item.id}", "target": {"groupId": "g1"}}]})
            for item in items
        ]

    client = StubClient(batch_results=results)
    service, _, _ = _wire(AssignmentService, client)

    first = asyncio.run(service.fetch_assignments(["a1", "a2"]))
    second = asyncio.run(service.fetch_assignments(["a1", "a2"]))

    assert len(first) == 2
    assert second == first
    assert len(client.batches) == 1


class PerAppPagesClient(StubClient):
    def __init__(self, failing=(), **kwargs):
        super().__init__(**kwargs)
        self.failing = set(failing)

    async def get_all_pages(self, endpoint, params=None, headers=None, *, parse=lambda entry: entry, cancel=None):
        if endpoint in self.failing:
            self.list_calls.append((endpoint, params, headers))
            raise ServerError("Service unavailable", "ServiceUnavailable", 503)
        return await super().get_all_pages(endpoint, params, headers, parse=parse, cancel=cancel)


def test_fetch_assignments_falls_back_to_per_app_reads_when_batch_fails():
    failure = ServerError("Invalid batch", "BadRequest", 400)
    client = PerAppPagesClient(
        failing={"/deviceAppManagement/mobileApps/a3/assignments"},
        pages={
            "/deviceAppManagement/mobileApps/a1/assignments": [
                {"id": "x1", "intent": "required", "target": {"groupId": "g1"}},
                {"id": "x2", "intent": "available", "target": {"groupId": "g2"}},
            ],
            "/deviceAppManagement/mobileApps/a2/assignments": [],
        },
        batch_results=lambda items: [chunk_failure_result(item.id, failure) for item in items],
    )
    service, cache, store = _wire(AssignmentService, client)

    assignments = asyncio.run(service.fetch_assignments(["a1", "a2", "a3"]))

    assert assignments == [
        Assignment("a1", "g1", AssignmentIntent.REQUIRED, id="x1"),
        Assignment("a1", "g2", AssignmentIntent.AVAILABLE, id="x2"),
    ]
    assert [call[0] for call in client.list_calls] == [
        "/deviceAppManagement/mobileApps/a1/assignments",
        "/deviceAppManagement/mobileApps/a2/assignments",
        "/deviceAppManagement/mobileApps/a3/assignments",
    ]
    assert store.fetch(EntityType.ASSIGNMENTS) == assignments
    assert cache.can_serve_from_cache(EntityType.ASSIGNMENTS)


def test_listing_services_do_not_share_query_params():
    assert CachedCollectionService.params is None
    assert CachedCollectionService.headers is None
    assert DeviceService.params is not ApplicationService.params
    assert GroupService.params is not ApplicationService.params
