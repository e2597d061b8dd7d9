"""Bulk app-to-group assignment through the composite endpoint."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..core.errors import GraphAPIError
from ..core.models import Assignment, AssignmentIntent, BatchItem, EntityType, HttpMethod
from .applications import APPS_ENDPOINT
from .base import CachedEntityService
from .batch import is_chunk_failure
from .graph_client import error_details

logger = logging.getLogger(__name__)

CONFLICT_STATUS = 409


@dataclass(slots=True)
class FailedAssignment:
    assignment: Assignment
    status: int
    code: str = ""
    message: str = ""


@dataclass(slots=True)
class AssignmentReport:
    """Per-assignment outcome of a bulk submission."""

    succeeded: List[Assignment] = field(default_factory=list)
    skipped: List[Assignment] = field(default_factory=list)
    failed: List[FailedAssignment] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.skipped) + len(self.failed)

    @property
    def ok(self) -> bool:
        return not self.failed


class AssignmentService(CachedEntityService[Assignment]):
    """Reads and creates mobile app assignments.

    Listing is fanned out over the given application ids with batched GETs,
    falling back to per-app reads for any composite request that fails.
    Creation submits one POST per assignment and invalidates everything that
    depends on assignments once the batch settles, even when it fails.
    """

    entity_type = EntityType.ASSIGNMENTS

    async def fetch_assignments(
        self,
        app_ids: Sequence[str],
        force_refresh: bool = False,
    ) -> List[Assignment]:
        cached = self.cached(force_refresh)
        if cached is not None:
            return cached

        started = self._cache.now()
        items = [
            BatchItem(id=str(position), method=HttpMethod.GET, url=f"{APPS_ENDPOINT}/{app_id}/assignments")
            for position, app_id in enumerate(app_ids)
        ]
        results = await self._client.batch(items)
        by_id = {result.id: result for result in results}
        assignments: List[Assignment] = []
        for position, app_id in enumerate(app_ids):
            result = by_id.get(str(position))
            if result is None:
                continue
            if is_chunk_failure(result):
                assignments.extend(await self._read_app_assignments(app_id))
                continue
            if not result.ok:
                details = error_details(result)
                logger.warning(
                    "Could not read assignments for app %s: %s %s",
                    app_id,
                    result.status,
                    details["message"] or details["code"],
                )
                continue
            body = result.body if isinstance(result.body, dict) else {}
            assignments.extend(Assignment.from_graph(app_id, entry) for entry in body.get("value", []))

        self.store_refresh(assignments, started)
        return assignments

    async def _read_app_assignments(self, app_id: str) -> List[Assignment]:
        logger.info("Batch read failed; fetching assignments for app %s individually", app_id)
        try:
            return await self._client.get_all_pages(
                f"{APPS_ENDPOINT}/{app_id}/assignments",
                parse=lambda entry: Assignment.from_graph(app_id, entry),
            )
        except GraphAPIError as exc:
            logger.warning("Could not read assignments for app %s: %s", app_id, exc)
            return []

    async def create_assignments(
        self,
        assignments: Sequence[Assignment],
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> AssignmentReport:
        report = AssignmentReport()
        if not assignments:
            return report

        items = [
            BatchItem(
                id=str(position),
                method=HttpMethod.POST,
                url=f"{APPS_ENDPOINT}/{assignment.application_id}/assignments",
                body=assignment.to_graph(),
            )
            for position, assignment in enumerate(assignments)
        ]
        try:
            results = await self._client.batch(items, cancel=cancel)
            by_id = {result.id: result for result in results}

            for position, assignment in enumerate(assignments):
                result = by_id.get(str(position))
                if result is None:
                    continue
                if result.ok:
                    report.succeeded.append(_with_created_id(assignment, result.body))
                elif result.status == CONFLICT_STATUS:
                    report.skipped.append(assignment)
                else:
                    details = error_details(result)
                    report.failed.append(
                        FailedAssignment(assignment, result.status, details["code"], details["message"])
                    )
        finally:
            issued = self._cache.now()
            self._cache.mark_stale(self.entity_type, as_of=issued)
            affected = self._cache.invalidate_dependents(self.entity_type, issued_at=issued)
            logger.info(
                "Assignments: %d created, %d already present, %d failed; invalidated %s",
                len(report.succeeded),
                len(report.skipped),
                len(report.failed),
                ", ".join(affected) or "nothing",
            )
        return report


def _with_created_id(assignment: Assignment, body: Any) -> Assignment:
    if isinstance(body, dict) and body.get("id"):
        return Assignment(
            application_id=assignment.application_id,
            group_id=assignment.group_id,
            intent=assignment.intent,
            id=str(body["id"]),
            settings=assignment.settings,
        )
    return assignment


def plan_assignments(
    app_ids: Sequence[str],
    group_ids: Sequence[str],
    intent: AssignmentIntent = AssignmentIntent.REQUIRED,
    settings: Optional[Dict[str, Any]] = None,
) -> List[Assignment]:
    """Cross product of apps and groups, skipping duplicate pairs."""

    seen = set()
    planned: List[Assignment] = []
    for app_id in app_ids:
        for group_id in group_ids:
            if (app_id, group_id) in seen:
                continue
            seen.add((app_id, group_id))
            planned.append(Assignment(app_id, group_id, intent, settings=settings))
    return planned
