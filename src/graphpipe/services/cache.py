"""Cache staleness ledger with cross-entity invalidation."""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set

from ..core.models import EntityType

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CacheMetadata:
    """Freshness record for one entity type."""

    entity_type: str
    ttl_seconds: float
    last_refresh: float
    record_count: int = 0
    is_stale: bool = False
    etag: Optional[str] = None
    invalidated_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return now - self.last_refresh > self.ttl_seconds

    def age(self, now: float) -> float:
        return max(0.0, now - self.last_refresh)

    def remaining_ttl(self, now: float) -> float:
        return max(0.0, self.ttl_seconds - self.age(now))


@dataclass(slots=True)
class CacheSizeInfo:
    total_records: int
    cache_entries: int
    average_age: float
    expired_count: int
    stale_count: int


class CacheHealth(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"

    @property
    def description(self) -> str:
        return _HEALTH_DESCRIPTIONS[self]


_HEALTH_DESCRIPTIONS = {
    CacheHealth.EXCELLENT: "All caches fresh",
    CacheHealth.GOOD: "Most caches up-to-date",
    CacheHealth.FAIR: "Some caches need refresh",
    CacheHealth.POOR: "Many caches expired",
}


class DependencyGraph:
    """Adjacency list: refreshing a source marks its dependents stale."""

    def __init__(self, edges: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        self._edges: Dict[str, List[str]] = defaultdict(list)
        for source, targets in (edges or {}).items():
            for target in targets:
                self.register(source, target)

    def register(self, source: "EntityType | str", dependent: "EntityType | str") -> None:
        source_key, dependent_key = _key(source), _key(dependent)
        if source_key == dependent_key:
            raise ValueError(f"Entity type {source_key} cannot depend on itself")
        if dependent_key not in self._edges[source_key]:
            self._edges[source_key].append(dependent_key)

    def dependents_of(self, source: "EntityType | str") -> List[str]:
        return list(self._edges.get(_key(source), ()))

    def as_dict(self) -> Dict[str, List[str]]:
        return {source: list(targets) for source, targets in self._edges.items() if targets}


def default_dependencies() -> DependencyGraph:
    return DependencyGraph(
        {
            EntityType.GROUPS: [EntityType.DEVICES, EntityType.ASSIGNMENTS],
            EntityType.DEVICES: [EntityType.ASSIGNMENTS],
            EntityType.APPLICATIONS: [EntityType.ASSIGNMENTS],
            EntityType.ASSIGNMENTS: [EntityType.APPLICATIONS, EntityType.DEVICES],
        }
    )


class CacheCoordinator:
    """Decides whether cached records may be trusted.

    Invalidation signals carry the instant they were issued. A signal older
    than the target's most recent refresh is ignored, and a refresh that
    started before a signal arrived stays stale when it completes.
    """

    def __init__(
        self,
        dependencies: Optional[DependencyGraph] = None,
        *,
        ttl_overrides: Optional[Mapping[str, float]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._dependencies = dependencies or default_dependencies()
        self._ttl_overrides = {_key(k): float(v) for k, v in (ttl_overrides or {}).items()}
        self._clock = clock
        self._metadata: Dict[str, CacheMetadata] = {}
        self._lock = threading.RLock()

    @property
    def dependencies(self) -> DependencyGraph:
        return self._dependencies

    def now(self) -> float:
        return self._clock()

    def ttl_for(self, entity_type: "EntityType | str") -> float:
        key = _key(entity_type)
        if key in self._ttl_overrides:
            return self._ttl_overrides[key]
        try:
            return EntityType(key).ttl_seconds
        except ValueError:
            return 3600.0

    def metadata(self, entity_type: "EntityType | str") -> Optional[CacheMetadata]:
        with self._lock:
            return self._metadata.get(_key(entity_type))

    def all_metadata(self) -> List[CacheMetadata]:
        with self._lock:
            return sorted(self._metadata.values(), key=lambda item: item.entity_type)

    def should_refresh(self, entity_type: "EntityType | str", force_refresh: bool = False) -> bool:
        if force_refresh:
            return True
        with self._lock:
            metadata = self._metadata.get(_key(entity_type))
            if metadata is None:
                return True
            return metadata.is_expired(self._clock()) or metadata.is_stale

    def can_serve_from_cache(self, entity_type: "EntityType | str") -> bool:
        with self._lock:
            metadata = self._metadata.get(_key(entity_type))
            if metadata is None:
                return False
            return not metadata.is_expired(self._clock()) and not metadata.is_stale and metadata.record_count > 0

    def record_refresh(
        self,
        entity_type: "EntityType | str",
        record_count: int,
        *,
        etag: Optional[str] = None,
        started_at: Optional[float] = None,
    ) -> CacheMetadata:
        """Stamp a completed refresh, then invalidate dependent types."""

        key = _key(entity_type)
        with self._lock:
            now = self._clock()
            metadata = self._metadata.get(key)
            if metadata is None:
                metadata = CacheMetadata(entity_type=key, ttl_seconds=self.ttl_for(key), last_refresh=now)
                self._metadata[key] = metadata
            metadata.ttl_seconds = self.ttl_for(key)
            metadata.last_refresh = now
            metadata.record_count = record_count
            metadata.etag = etag
            overtaken = (
                started_at is not None
                and metadata.invalidated_at is not None
                and metadata.invalidated_at > started_at
            )
            metadata.is_stale = overtaken
            if overtaken:
                logger.info("Refresh of %s was overtaken by an invalidation; keeping it stale", key)
            else:
                metadata.invalidated_at = None
            self.invalidate_dependents(key, issued_at=now)
            return metadata

    def mark_stale(self, entity_type: "EntityType | str", *, as_of: Optional[float] = None) -> bool:
        """Flag cached data as invalid without touching its timestamp.

        Returns False when there is nothing to mark or the signal predates the
        most recent refresh.
        """

        key = _key(entity_type)
        with self._lock:
            issued = self._clock() if as_of is None else as_of
            metadata = self._metadata.get(key)
            if metadata is None:
                return False
            if issued < metadata.last_refresh:
                logger.debug("Ignoring invalidation of %s issued before its last refresh", key)
                return False
            metadata.is_stale = True
            metadata.invalidated_at = issued
            return True

    def invalidate_dependents(self, entity_type: "EntityType | str", *, issued_at: Optional[float] = None) -> List[str]:
        key = _key(entity_type)
        marked: List[str] = []
        with self._lock:
            issued = self._clock() if issued_at is None else issued_at
            for dependent in self._dependencies.dependents_of(key):
                if self.mark_stale(dependent, as_of=issued):
                    marked.append(dependent)
        if marked:
            logger.debug("Refresh of %s marked %s stale", key, ", ".join(marked))
        return marked

    def clear(self, entity_type: "EntityType | str") -> None:
        with self._lock:
            self._metadata.pop(_key(entity_type), None)

    def clear_all(self) -> None:
        with self._lock:
            self._metadata.clear()

    def statistics(self) -> CacheSizeInfo:
        with self._lock:
            now = self._clock()
            entries = list(self._metadata.values())
            total_age = sum(item.age(now) for item in entries)
            return CacheSizeInfo(
                total_records=sum(item.record_count for item in entries),
                cache_entries=len(entries),
                average_age=total_age / len(entries) if entries else 0.0,
                expired_count=sum(1 for item in entries if item.is_expired(now)),
                stale_count=sum(1 for item in entries if item.is_stale),
            )

    def health(self) -> CacheHealth:
        stats = self.statistics()
        if stats.expired_count > stats.cache_entries / 2:
            return CacheHealth.POOR
        if stats.stale_count > stats.cache_entries / 3:
            return CacheHealth.FAIR
        if stats.expired_count == 0 and stats.stale_count == 0:
            return CacheHealth.EXCELLENT
        return CacheHealth.GOOD

    def expiring(self, within: float = 60.0) -> Set[str]:
        """Entity types that are expired or will expire within ``within`` seconds."""

        with self._lock:
            now = self._clock()
            return {
                item.entity_type
                for item in self._metadata.values()
                if item.is_expired(now) or item.remaining_ttl(now) < within
            }


def _key(entity_type: "EntityType | str") -> str:
    if isinstance(entity_type, EntityType):
        return entity_type.value
    return str(entity_type)
