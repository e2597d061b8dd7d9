"""Security and dynamic group listing."""

from __future__ import annotations

from typing import Any, Dict, List

from ..core.models import DeviceGroup, EntityType
from .base import CachedCollectionService

GROUPS_ENDPOINT = "/groups"


class GroupService(CachedCollectionService[DeviceGroup]):
    """Fetches groups that can be used as assignment targets."""

    entity_type = EntityType.GROUPS
    endpoint = GROUPS_ENDPOINT
    params = {
        "$select": "id,displayName,description,groupTypes,membershipRule,securityEnabled",
        "$filter": "securityEnabled eq true",
        "$orderby": "displayName",
        "$count": "true",
    }
    # $count with $filter on directory objects requires eventual consistency.
    headers = {"ConsistencyLevel": "eventual"}

    def parse(self, entry: Dict[str, Any]) -> DeviceGroup:
        return DeviceGroup.from_graph(entry)

    def select(self, items: List[DeviceGroup]) -> List[DeviceGroup]:
        return [group for group in items if group.security_enabled or group.is_dynamic]

    async def fetch_groups(self, force_refresh: bool = False) -> List[DeviceGroup]:
        return await self.fetch(force_refresh)

    async def fetch_members(self, group_id: str) -> List[Dict[str, Any]]:
        return await self._client.get_all_pages(
            f"{GROUPS_ENDPOINT}/{group_id}/members",
            {"$select": "id,displayName,userPrincipalName,deviceId"},
        )
