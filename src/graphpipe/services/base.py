"""Shared fetch-or-serve-from-cache flow for listing services."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Optional, TypeVar

from ..core.models import EntityType
from .cache import CacheCoordinator
from .graph_client import GraphClient
from .local_store import LocalStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CachedEntityService(Generic[T]):
    """Owns the cached records of one entity type."""

    entity_type: EntityType

    def __init__(self, client: GraphClient, cache: CacheCoordinator, store: LocalStore) -> None:
        self._client = client
        self._cache = cache
        self._store = store
        self.items: List[T] = list(store.fetch(self.entity_type))
        self.last_sync: Optional[datetime] = None

    def needs_refresh(self, force_refresh: bool = False) -> bool:
        return self._cache.should_refresh(self.entity_type, force_refresh)

    def cached(self, force_refresh: bool = False) -> Optional[List[T]]:
        """Stored records when the cache may be trusted, otherwise None."""

        if self.needs_refresh(force_refresh) or not self._cache.can_serve_from_cache(self.entity_type):
            return None
        items = self._store.fetch(self.entity_type)
        if not items:
            logger.info("No cached %s found, fetching from API", self.entity_type.value)
            return None
        logger.info("Using cached %s: %d items", self.entity_type.value, len(items))
        self.items = items
        return items

    def store_refresh(self, items: List[T], started_at: float) -> None:
        self._store.replace(self.entity_type, items)
        self._cache.record_refresh(self.entity_type, len(items), started_at=started_at)
        self.items = items
        self.last_sync = datetime.now(timezone.utc)


class CachedCollectionService(CachedEntityService[T], ABC):
    """Lists one entity type from a single paginated endpoint."""

    endpoint: str
    params: Optional[Dict[str, str]] = None
    headers: Optional[Dict[str, str]] = None

    @abstractmethod
    def parse(self, entry: Dict[str, Any]) -> T:
        ...

    def select(self, items: List[T]) -> List[T]:
        return items

    async def fetch(self, force_refresh: bool = False) -> List[T]:
        cached = self.cached(force_refresh)
        if cached is not None:
            return cached

        name = self.entity_type.value
        started = self._cache.now()
        try:
            fetched = await self._client.get_all_pages(
                self.endpoint,
                self.params,
                self.headers,
                parse=self.parse,
            )
        except Exception:
            logger.exception("Failed to fetch %s", name)
            raise

        items = self.select(fetched)
        self.store_refresh(items, started)
        logger.info("Fetched %d %s from Graph API", len(items), name)
        return items
