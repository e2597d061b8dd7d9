"""Mobile app listing."""

from __future__ import annotations

from typing import Any, Dict, List

from ..core.models import Application, Assignment, EntityType
from .base import CachedCollectionService

APPS_ENDPOINT = "/deviceAppManagement/mobileApps"


class ApplicationService(CachedCollectionService[Application]):
    """Fetches Intune mobile apps."""

    entity_type = EntityType.APPLICATIONS
    endpoint = APPS_ENDPOINT
    params = {
        "$select": "id,displayName,publisher,isAssigned",
        "$orderby": "displayName",
    }

    def parse(self, entry: Dict[str, Any]) -> Application:
        return Application.from_graph(entry)

    async def fetch_applications(self, force_refresh: bool = False) -> List[Application]:
        return await self.fetch(force_refresh)

    async def fetch_assignments(self, app_id: str) -> List[Assignment]:
        return await self._client.get_all_pages(
            f"{APPS_ENDPOINT}/{app_id}/assignments",
            parse=lambda entry: Assignment.from_graph(app_id, entry),
        )
