"""Core configuration, models and the shared rate budget."""

from .config import AppConfig, GraphCredentials
from .errors import GraphAPIError
from .models import (
    Application,
    Assignment,
    AssignmentIntent,
    BatchItem,
    BatchResult,
    Device,
    DeviceGroup,
    EntityType,
    HttpMethod,
    OutboundRequest,
    Page,
    RateLimitStatus,
)
from .rate_limit import RateBudget

__all__ = [
    "AppConfig",
    "GraphCredentials",
    "GraphAPIError",
    "Application",
    "Assignment",
    "AssignmentIntent",
    "BatchItem",
    "BatchResult",
    "Device",
    "DeviceGroup",
    "EntityType",
    "HttpMethod",
    "OutboundRequest",
    "Page",
    "RateLimitStatus",
    "RateBudget",
]
