"""Graph permission scopes and user-facing error descriptions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import urlparse

from ..core.errors import Forbidden, GraphAPIError
from ..core.models import HttpMethod


@dataclass(slots=True, frozen=True)
class GraphPermission:
    """A delegated scope the app needs and the features that rely on it."""

    scope: str
    description: str
    features: Tuple[str, ...] = ()


REQUIRED_PERMISSIONS: List[GraphPermission] = [
    GraphPermission("User.Read", "Read user profile information", ("Authentication",)),
    GraphPermission(
        "DeviceManagementManagedDevices.Read.All",
        "Read managed devices",
        ("Device List", "Device Details"),
    ),
    GraphPermission(
        "DeviceManagementManagedDevices.ReadWrite.All",
        "Read and write managed devices",
        ("Device Management",),
    ),
    GraphPermission(
        "DeviceManagementManagedDevices.PrivilegedOperations.All",
        "Perform privileged operations on managed devices",
        ("Device Sync", "Remote Actions"),
    ),
    GraphPermission(
        "DeviceManagementApps.Read.All",
        "Read managed apps and assignments",
        ("Application List", "Application Details"),
    ),
    GraphPermission(
        "DeviceManagementApps.ReadWrite.All",
        "Read and write app assignments",
        ("Bulk Assignment", "Assignment Management"),
    ),
    GraphPermission("Group.Read.All", "Read all groups", ("Group List", "Group Selection")),
    GraphPermission("GroupMember.Read.All", "Read group memberships", ("Group Members",)),
    GraphPermission(
        "DeviceManagementConfiguration.Read.All",
        "Read device configurations and profiles",
        ("Configuration Profiles",),
    ),
    GraphPermission(
        "DeviceManagementConfiguration.ReadWrite.All",
        "Read and write device configurations",
        ("Configuration Management",),
    ),
    GraphPermission("AuditLog.Read.All", "Read audit log data", ("Audit Log Viewer",)),
]

# (path prefix, read scope, write scope); first match wins.
_SCOPE_RULES: List[Tuple[str, str, str]] = [
    ("/deviceManagement/managedDevices/", "DeviceManagementManagedDevices.Read.All",
     "DeviceManagementManagedDevices.PrivilegedOperations.All"),
    ("/deviceManagement/managedDevices", "DeviceManagementManagedDevices.Read.All",
     "DeviceManagementManagedDevices.ReadWrite.All"),
    ("/deviceAppManagement/", "DeviceManagementApps.Read.All", "DeviceManagementApps.ReadWrite.All"),
    ("/deviceManagement/auditEvents", "AuditLog.Read.All", "AuditLog.Read.All"),
    ("/deviceManagement/", "DeviceManagementConfiguration.Read.All", "DeviceManagementConfiguration.ReadWrite.All"),
    ("/groups/", "GroupMember.Read.All", "GroupMember.Read.All"),
    ("/groups", "Group.Read.All", "Group.Read.All"),
    ("/me", "User.Read", "User.Read"),
]


def scope_for(endpoint: str, method: HttpMethod | str = HttpMethod.GET) -> Optional[str]:
    """Best-guess scope guarding ``endpoint`` for the given verb."""

    path = _relative_path(endpoint)
    verb = HttpMethod.parse(method)
    for prefix, read_scope, write_scope in _SCOPE_RULES:
        if path.startswith(prefix):
            return write_scope if verb.is_write else read_scope
    return None


def permission(scope: str) -> Optional[GraphPermission]:
    for entry in REQUIRED_PERMISSIONS:
        if entry.scope == scope:
            return entry
    return None


def describe_error(exc: BaseException) -> str:
    """Human-readable description for display; never a traceback."""

    if isinstance(exc, Forbidden):
        scope = scope_for(exc.resource, exc.operation or HttpMethod.GET) if exc.resource else None
        if scope:
            granted = permission(scope)
            detail = f" ({granted.description})" if granted else ""
            return (
                f"Access forbidden for {exc.operation or 'GET'} {_relative_path(exc.resource)}. "
                f"Grant the '{scope}' permission{detail} and sign in again."
            )
        return exc.user_message()
    if isinstance(exc, GraphAPIError):
        return exc.user_message()
    return f"Unexpected error: {exc}"


def _relative_path(endpoint: str) -> str:
    path = urlparse(endpoint).path if "://" in endpoint else endpoint.split("?", 1)[0]
    for version in ("/beta", "/v1.0"):
        if path.startswith(version + "/"):
            return path[len(version):]
    return path
