"""Domain models for the ClientPortal core."""

from portal_core.models.entitlement import (
    CountUsage,
    EntitlementResult,
    OverLimitReport,
    PlanUsage,
    ResolvedPlan,
    StorageUsage,
    UpgradeRecommendation,
)
from portal_core.models.events import (
    ActivityType,
    NotificationType,
    PortalStatus,
    UserRole,
)

__all__ = [
    "ActivityType",
    "CountUsage",
    "EntitlementResult",
    "NotificationType",
    "OverLimitReport",
    "PlanUsage",
    "PortalStatus",
    "ResolvedPlan",
    "StorageUsage",
    "UpgradeRecommendation",
    "UserRole",
]
