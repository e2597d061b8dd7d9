"""Service container for dependency wiring."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..core.config import AppConfig
from ..core.models import Application, Assignment, Device, DeviceGroup, EntityType
from .applications import ApplicationService
from .assignments import AssignmentService
from .cache import CacheCoordinator
from .devices import DeviceService
from .graph_client import GraphClient
from .groups import GroupService
from .local_store import SQLiteStore


@dataclass(slots=True)
class ServiceContainer:
    """Aggregates all runtime services for the CLI."""

    config: AppConfig
    client: GraphClient
    cache: CacheCoordinator
    store: SQLiteStore
    devices: DeviceService
    applications: ApplicationService
    groups: GroupService
    assignments: AssignmentService

    @classmethod
    def build(
        cls,
        config: Optional[AppConfig] = None,
        *,
        client: Optional[GraphClient] = None,
        store: Optional[SQLiteStore] = None,
    ) -> "ServiceContainer":
        cfg = config or AppConfig.load()
        client = client or GraphClient(cfg)
        cache = CacheCoordinator(ttl_overrides=cfg.ttl_overrides)
        store = store or SQLiteStore(cfg.cache_db)
        store.register_decoder(EntityType.DEVICES, Device.from_record)
        store.register_decoder(EntityType.APPLICATIONS, lambda row: Application(**row))
        store.register_decoder(EntityType.GROUPS, lambda row: DeviceGroup(**row))
        store.register_decoder(EntityType.ASSIGNMENTS, Assignment.from_record)
        return cls(
            config=cfg,
            client=client,
            cache=cache,
            store=store,
            devices=DeviceService(client, cache, store),
            applications=ApplicationService(client, cache, store),
            groups=GroupService(client, cache, store),
            assignments=AssignmentService(client, cache, store),
        )

    def clear_all_caches(self) -> None:
        self.cache.clear_all()
        self.store.reset()

    async def aclose(self) -> None:
        """Close any underlying resources."""

        await self.client.aclose()
        self.store.close()
