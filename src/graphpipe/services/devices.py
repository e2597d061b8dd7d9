"""Managed device listing and device actions."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from ..core.models import Device, EntityType
from .base import CachedCollectionService

logger = logging.getLogger(__name__)

DEVICES_ENDPOINT = "/deviceManagement/managedDevices"


class DeviceService(CachedCollectionService[Device]):
    """Fetches managed Apple devices and triggers device actions."""

    entity_type = EntityType.DEVICES
    endpoint = DEVICES_ENDPOINT
    params = {
        "$select": ",".join(
            [
                "id",
                "deviceName",
                "operatingSystem",
                "osVersion",
                "serialNumber",
                "complianceState",
                "userPrincipalName",
                "lastSyncDateTime",
            ]
        ),
        "$orderby": "deviceName",
        "$filter": "operatingSystem eq 'macOS' or operatingSystem eq 'iOS' or operatingSystem eq 'iPadOS'",
    }

    def parse(self, entry: Dict[str, Any]) -> Device:
        return Device.from_graph(entry)

    async def fetch_devices(self, force_refresh: bool = False) -> List[Device]:
        return await self.fetch(force_refresh)

    async def fetch_device(self, device_id: str) -> Device:
        payload = await self._client.get(f"{DEVICES_ENDPOINT}/{device_id}")
        return Device.from_graph(payload or {})

    async def sync_device(self, device_id: str) -> None:
        await self._client.post(f"{DEVICES_ENDPOINT}/{device_id}/syncDevice")
        logger.info("Sync initiated for device %s", device_id)

    def search(self, query: str) -> List[Device]:
        if not query:
            return list(self.items)
        needle = query.lower()
        return [
            device
            for device in self.items
            if needle in device.device_name.lower()
            or needle in (device.serial_number or "").lower()
            or needle in (device.user_principal_name or "").lower()
        ]
