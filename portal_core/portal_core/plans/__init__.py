"""Subscription plan tiers and limit arithmetic."""

from portal_core.plans.registry import (
    BYTES_PER_MB,
    DEFAULT_PLAN_ID,
    DEFAULT_PLAN_TIERS,
    PlanFeature,
    PlanRegistry,
    PlanTier,
    SupportLevel,
    bytes_to_mb,
    format_storage_size,
    is_within_limit,
    mb_to_bytes,
    usage_percentage,
    would_exceed_limit,
)

__all__ = [
    "BYTES_PER_MB",
    "DEFAULT_PLAN_ID",
    "DEFAULT_PLAN_TIERS",
    "PlanFeature",
    "PlanRegistry",
    "PlanTier",
    "SupportLevel",
    "bytes_to_mb",
    "format_storage_size",
    "is_within_limit",
    "mb_to_bytes",
    "usage_percentage",
    "would_exceed_limit",
]
