"""Plan tiers and the registry that resolves plan ids to limits.

Three tiers ship by default:

* **free** -- one client portal, 100 MB of storage, 5 MB per file.
* **pro** -- five portals, 1 GB of storage, 25 MB per file, branding.
* **agency** -- unlimited portals and storage, 100 MB per file, API
  access and white-labelling.

A ``None`` limit means unlimited.  The registry is built once at process
start and handed to the entitlement service; tests build registries with
custom tiers.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

BYTES_PER_MB = 1024 * 1024

DEFAULT_PLAN_ID = "free"


class SupportLevel(str, Enum):
    """Support tier bundled with a plan."""

    BASIC = "basic"
    PRIORITY = "priority"
    ALWAYS_ON = "24/7"


class PlanFeature(str, Enum):
    """Boolean feature flags carried by every plan tier."""

    TEAM_INVITES = "can_add_team"
    CUSTOM_BRANDING = "can_custom_brand"
    API_ACCESS = "can_use_api"
    ADVANCED_ANALYTICS = "can_use_advanced_analytics"
    WHITE_LABEL = "can_use_white_label"


class PlanTier(BaseModel):
    """Immutable limits and feature flags for one subscription plan."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str
    max_clients: int | None = Field(default=None, ge=0)
    max_storage_mb: int | None = Field(default=None, ge=0)
    max_file_size_mb: int | None = Field(default=None, ge=0)
    max_files_per_portal: int | None = Field(default=None, ge=0)
    max_updates_per_portal: int | None = Field(default=None, ge=0)
    max_team_members: int | None = Field(default=None, ge=0)
    can_add_team: bool = False
    can_custom_brand: bool = False
    can_use_api: bool = False
    can_use_advanced_analytics: bool = False
    can_use_white_label: bool = False
    support_level: SupportLevel = SupportLevel.BASIC

    def has_feature(self, feature: PlanFeature) -> bool:
        return bool(getattr(self, feature.value))


DEFAULT_PLAN_TIERS: tuple[PlanTier, ...] = (
    PlanTier(
        id="free",
        name="Free Plan",
        max_clients=1,
        max_storage_mb=100,
        max_file_size_mb=5,
        max_files_per_portal=50,
        max_updates_per_portal=None,
        max_team_members=1,
        support_level=SupportLevel.BASIC,
    ),
    PlanTier(
        id="pro",
        name="Pro Plan",
        max_clients=5,
        max_storage_mb=1000,
        max_file_size_mb=25,
        max_files_per_portal=200,
        max_updates_per_portal=None,
        max_team_members=3,
        can_add_team=True,
        can_custom_brand=True,
        can_use_advanced_analytics=True,
        support_level=SupportLevel.PRIORITY,
    ),
    PlanTier(
        id="agency",
        name="Agency Plan",
        max_clients=None,
        max_storage_mb=None,
        max_file_size_mb=100,
        max_files_per_portal=None,
        max_updates_per_portal=None,
        max_team_members=None,
        can_add_team=True,
        can_custom_brand=True,
        can_use_api=True,
        can_use_advanced_analytics=True,
        can_use_white_label=True,
        support_level=SupportLevel.ALWAYS_ON,
    ),
)


class PlanRegistry:
    """Lookup table from plan id to :class:`PlanTier`.

    Tiers are kept in upgrade order (cheapest first) so that
    :meth:`next_tier` can recommend an upgrade.

    Parameters
    ----------
    tiers:
        The tiers to register, cheapest first.
    default_plan_id:
        Tier returned for users without an active subscription and for
        unknown plan ids.  Must be one of *tiers*.
    """

    def __init__(self, tiers: Iterable[PlanTier], default_plan_id: str = DEFAULT_PLAN_ID) -> None:
        self._tiers: dict[str, PlanTier] = {}
        for tier in tiers:
            if tier.id in self._tiers:
                raise ValueError(f"Duplicate plan id: {tier.id!r}")
            self._tiers[tier.id] = tier
        if default_plan_id not in self._tiers:
            raise ValueError(f"Default plan {default_plan_id!r} is not registered")
        self._default_plan_id = default_plan_id

    @classmethod
    def default(cls, default_plan_id: str = DEFAULT_PLAN_ID) -> PlanRegistry:
        """Build a registry holding the built-in free/pro/agency tiers."""
        return cls(DEFAULT_PLAN_TIERS, default_plan_id=default_plan_id)

    @property
    def default_tier(self) -> PlanTier:
        return self._tiers[self._default_plan_id]

    @property
    def plan_ids(self) -> list[str]:
        return list(self._tiers)

    def __contains__(self, plan_id: object) -> bool:
        return plan_id in self._tiers

    def get(self, plan_id: str | None) -> PlanTier:
        """Return the tier for *plan_id*, or the default tier if unknown."""
        if plan_id is None:
            return self.default_tier
        return self._tiers.get(plan_id, self.default_tier)

    def next_tier(self, plan_id: str) -> PlanTier | None:
        """Return the tier after *plan_id* in upgrade order, if any."""
        ids = self.plan_ids
        try:
            idx = ids.index(plan_id)
        except ValueError:
            idx = ids.index(self._default_plan_id)
        if idx + 1 >= len(ids):
            return None
        return self._tiers[ids[idx + 1]]


# ---------------------------------------------------------------------------
# Limit arithmetic
# ---------------------------------------------------------------------------


def mb_to_bytes(mb: float) -> int:
    return int(mb * BYTES_PER_MB)


def bytes_to_mb(num_bytes: int) -> float:
    return num_bytes / BYTES_PER_MB


def is_within_limit(current: float, limit: float | None) -> bool:
    """Return ``True`` if *current* does not exceed *limit* (``None`` = unlimited)."""
    if limit is None:
        return True
    return current <= limit


def would_exceed_limit(current: float, increment: float, limit: float | None) -> bool:
    """Return ``True`` if adding *increment* to *current* would pass *limit*."""
    if limit is None:
        return False
    return current + increment > limit


def usage_percentage(current: float, limit: float | None) -> float:
    """Percentage of *limit* consumed, capped at 100.  Unlimited reports 0."""
    if limit is None:
        return 0.0
    if limit == 0:
        return 100.0 if current > 0 else 0.0
    return round(min(100.0, (current / limit) * 100), 1)


def format_storage_size(size_mb: float) -> str:
    """Render a size in megabytes as KB, MB, or GB for display."""
    if size_mb < 1:
        return f"{round(size_mb * 1024)} KB"
    if size_mb < 1024:
        return f"{round(size_mb)} MB"
    return f"{round(size_mb / 1024, 1)} GB"
