"""Common domain and wire models for graphpipe."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")

NEXT_LINK_KEY = "@odata.nextLink"
MAX_BATCH_ITEMS = 20


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PATCH = "PATCH"
    DELETE = "DELETE"

    @property
    def is_write(self) -> bool:
        return self is not HttpMethod.GET

    @classmethod
    def parse(cls, value: "HttpMethod | str") -> "HttpMethod":
        if isinstance(value, HttpMethod):
            return value
        return cls(str(value).upper())


class EntityType(str, Enum):
    """Cacheable entity families and their default freshness windows."""

    DEVICES = "devices"
    APPLICATIONS = "applications"
    GROUPS = "groups"
    ASSIGNMENTS = "assignments"
    COMPLIANCE_POLICIES = "compliancePolicies"
    CONFIGURATION_PROFILES = "configurationProfiles"
    AUDIT_LOGS = "auditLogs"
    USER_PROFILES = "userProfiles"

    @property
    def ttl_seconds(self) -> float:
        return _DEFAULT_TTLS[self]


_DEFAULT_TTLS: Dict[EntityType, float] = {
    EntityType.DEVICES: 300,
    EntityType.APPLICATIONS: 1800,
    EntityType.GROUPS: 3600,
    EntityType.ASSIGNMENTS: 600,
    EntityType.COMPLIANCE_POLICIES: 86400,
    EntityType.CONFIGURATION_PROFILES: 86400,
    EntityType.AUDIT_LOGS: 60,
    EntityType.USER_PROFILES: 604800,
}


@dataclass(slots=True)
class OutboundRequest:
    """A fully built HTTP exchange ready for the transport."""

    method: HttpMethod
    url: str
    headers: Dict[str, str]
    body: Optional[bytes] = None

    @property
    def is_write(self) -> bool:
        return self.method.is_write


@dataclass(slots=True)
class BatchItem:
    """One logical operation inside a composite `$batch` request."""

    id: str
    method: HttpMethod
    url: str
    body: Optional[Any] = None
    headers: Optional[Dict[str, str]] = None

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.id, "method": self.method.value, "url": self.url}
        if self.body is not None:
            payload["body"] = self.body
            headers = {"Content-Type": "application/json", **(self.headers or {})}
            payload["headers"] = headers
        elif self.headers:
            payload["headers"] = dict(self.headers)
        return payload


@dataclass(slots=True)
class BatchResult:
    """Outcome of one BatchItem as reported by the composite endpoint."""

    id: str
    status: int
    body: Optional[Any] = None
    headers: Optional[Dict[str, str]] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def retry_after(self) -> Optional[str]:
        if not self.headers:
            return None
        for key, value in self.headers.items():
            if key.lower() == "retry-after":
                return str(value)
        return None

    @classmethod
    def from_wire(cls, entry: Dict[str, Any]) -> "BatchResult":
        headers = entry.get("headers")
        return cls(
            id=str(entry.get("id", "")),
            status=int(entry.get("status", 0)),
            body=entry.get("body"),
            headers={str(k): str(v) for k, v in headers.items()} if isinstance(headers, dict) else None,
        )


@dataclass(slots=True)
class Page(Generic[T]):
    """One page of a paginated listing."""

    items: List[T]
    next_link: Optional[str] = None

    @property
    def is_last(self) -> bool:
        return not self.next_link


@dataclass(slots=True)
class RateLimitStatus:
    """Snapshot of the rolling request windows."""

    total: int
    write: int
    max_total: int
    max_write: int
    consecutive_rejections: int = 0

    @property
    def total_utilization(self) -> float:
        return self.total / self.max_total if self.max_total else 0.0

    @property
    def write_utilization(self) -> float:
        return self.write / self.max_write if self.max_write else 0.0


@dataclass(slots=True)
class Device:
    """Managed device as listed by Intune."""

    id: str
    device_name: str
    operating_system: str = ""
    os_version: str = ""
    serial_number: Optional[str] = None
    compliance_state: Optional[str] = None
    user_principal_name: Optional[str] = None
    last_sync: Optional[datetime] = None

    @classmethod
    def from_graph(cls, entry: Dict[str, Any]) -> "Device":
        return cls(
            id=str(entry.get("id", "")),
            device_name=entry.get("deviceName") or "",
            operating_system=entry.get("operatingSystem") or "",
            os_version=entry.get("osVersion") or "",
            serial_number=entry.get("serialNumber"),
            compliance_state=entry.get("complianceState"),
            user_principal_name=entry.get("userPrincipalName"),
            last_sync=parse_timestamp(entry.get("lastSyncDateTime")),
        )

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Device":
        payload = dict(data)
        raw_sync = payload.get("last_sync")
        payload["last_sync"] = parse_timestamp(raw_sync) if isinstance(raw_sync, str) else raw_sync
        return cls(**payload)


@dataclass(slots=True)
class Application:
    """Mobile app registered with Intune."""

    id: str
    display_name: str
    odata_type: str = ""
    publisher: Optional[str] = None
    is_assigned: bool = False

    @classmethod
    def from_graph(cls, entry: Dict[str, Any]) -> "Application":
        return cls(
            id=str(entry.get("id", "")),
            display_name=entry.get("displayName") or "",
            odata_type=entry.get("@odata.type") or "",
            publisher=entry.get("publisher"),
            is_assigned=bool(entry.get("isAssigned", False)),
        )


@dataclass(slots=True)
class DeviceGroup:
    """Entra ID group usable as an assignment target."""

    id: str
    display_name: str
    description: Optional[str] = None
    security_enabled: bool = False
    group_types: List[str] = field(default_factory=list)
    membership_rule: Optional[str] = None

    @property
    def is_dynamic(self) -> bool:
        return "DynamicMembership" in self.group_types

    @classmethod
    def from_graph(cls, entry: Dict[str, Any]) -> "DeviceGroup":
        return cls(
            id=str(entry.get("id", "")),
            display_name=entry.get("displayName") or "",
            description=entry.get("description"),
            security_enabled=bool(entry.get("securityEnabled", False)),
            group_types=list(entry.get("groupTypes") or []),
            membership_rule=entry.get("membershipRule"),
        )


class AssignmentIntent(str, Enum):
    REQUIRED = "required"
    AVAILABLE = "available"
    UNINSTALL = "uninstall"
    AVAILABLE_WITHOUT_ENROLLMENT = "availableWithoutEnrollment"


@dataclass(slots=True)
class Assignment:
    """An app-to-group assignment, either requested or read back."""

    application_id: str
    group_id: str
    intent: AssignmentIntent = AssignmentIntent.REQUIRED
    id: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None

    def to_graph(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "@odata.type": "#microsoft.graph.mobileAppAssignment",
            "intent": self.intent.value,
            "target": {
                "@odata.type": "#microsoft.graph.groupAssignmentTarget",
                "groupId": self.group_id,
            },
        }
        if self.settings and self.intent is not AssignmentIntent.UNINSTALL:
            payload["settings"] = self.settings
        return payload

    @classmethod
    def from_graph(cls, application_id: str, entry: Dict[str, Any]) -> "Assignment":
        target = entry.get("target") or {}
        try:
            intent = AssignmentIntent(entry.get("intent", AssignmentIntent.REQUIRED.value))
        except ValueError:
            intent = AssignmentIntent.REQUIRED
        return cls(
            application_id=application_id,
            group_id=str(target.get("groupId", "")),
            intent=intent,
            id=entry.get("id"),
            settings=entry.get("settings"),
        )

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Assignment":
        payload = dict(data)
        payload["intent"] = AssignmentIntent(payload.get("intent", AssignmentIntent.REQUIRED.value))
        return cls(**payload)


def parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None
