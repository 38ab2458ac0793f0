"""Result models returned by entitlement checks."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from portal_core.plans.registry import PlanTier


class _WireModel(BaseModel):
    """Serialises with camelCase keys and accepts either casing on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EntitlementResult(_WireModel):
    """Outcome of a single entitlement check.

    A denial is a value, not an exception: callers inspect ``allowed`` and
    surface ``reason`` together with ``upgrade_required`` to the user.
    """

    allowed: bool
    reason: str | None = None
    upgrade_required: bool = False
    current_usage: float | None = None
    limit: float | None = None

    @classmethod
    def allow(cls) -> EntitlementResult:
        return cls(allowed=True)

    @classmethod
    def deny(
        cls,
        reason: str,
        *,
        upgrade_required: bool = True,
        current_usage: float | None = None,
        limit: float | None = None,
    ) -> EntitlementResult:
        return cls(
            allowed=False,
            reason=reason,
            upgrade_required=upgrade_required,
            current_usage=current_usage,
            limit=limit,
        )

    def to_error_body(self) -> dict[str, Any]:
        """HTTP 403 payload for a denied check."""
        return {"error": self.reason or "Not allowed on your current plan.", "upgradeRequired": self.upgrade_required}


class ResolvedPlan(_WireModel):
    """A user's effective plan at the time of the check."""

    tier: PlanTier
    subscription_id: str | None = None
    ends_at: datetime | None = None

    @property
    def plan_id(self) -> str:
        return self.tier.id

    @property
    def is_free_plan(self) -> bool:
        return self.subscription_id is None


class CountUsage(_WireModel):
    """Usage of a count-limited dimension (portals, team seats)."""

    current: int
    limit: int | None
    can_add: bool
    is_over_limit: bool
    usage_percentage: float


class StorageUsage(_WireModel):
    """Aggregate storage usage across a user's portals."""

    current_mb: float
    limit_mb: int | None
    can_upload: bool
    is_over_limit: bool
    usage_percentage: float
    formatted_current: str
    formatted_limit: str


class PlanUsage(_WireModel):
    """Usage versus limits for every metered dimension of a plan."""

    plan_id: str
    plan_name: str
    is_free_plan: bool
    ends_at: datetime | None = None
    clients: CountUsage
    storage: StorageUsage
    team: CountUsage


class OverLimitReport(_WireModel):
    is_over_limit: bool
    over_limit_types: list[str] = Field(default_factory=list)
    message: str = ""


class UpgradeRecommendation(_WireModel):
    should_upgrade: bool
    recommended_plan: str | None = None
    reason: str
    current_plan: str
