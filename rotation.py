"""
Grandfather-Father-Son tier classification and retention.

Every backup falls into one tier: monthly on the first day of a month,
weekly on a Monday, daily otherwise. Daily and weekly objects are pruned by
count and, optionally, by minimum age. Monthly objects are left to the
bucket's lifecycle rules.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from errors import ConfigurationError


class Tier(enum.Enum):
    MONTHLY = "monthly"
    WEEKLY = "weekly"
    DAILY = "daily"


@dataclass(frozen=True)
class BucketEntry:
    key: str
    last_modified: datetime


@dataclass(frozen=True)
class RotationPolicy:
    daily_prefix: str = "daily_"
    weekly_prefix: str = "weekly_"
    monthly_prefix: str = "monthly_"
    daily_retention_count: int = 6
    weekly_retention_count: int = 4
    daily_retention_period: timedelta = timedelta(hours=168)
    weekly_retention_period: timedelta = timedelta(hours=672)
    enforce_retention_period: bool = True

    def __post_init__(self) -> None:
        prefixes = (self.daily_prefix, self.weekly_prefix, self.monthly_prefix)
        if not all(prefixes):
            raise ConfigurationError("Tier prefixes must not be empty.")
        if len(set(prefixes)) != len(prefixes):
            raise ConfigurationError("Tier prefixes must be distinct.")
        if self.daily_retention_count < 0 or self.weekly_retention_count < 0:
            raise ConfigurationError("Retention counts must not be negative.")
        if self.daily_retention_period < timedelta(0) or self.weekly_retention_period < timedelta(0):
            raise ConfigurationError("Retention periods must not be negative.")

    def prefix_for(self, tier: Tier) -> str:
        if tier is Tier.MONTHLY:
            return self.monthly_prefix
        if tier is Tier.WEEKLY:
            return self.weekly_prefix
        return self.daily_prefix

    def retention_count(self, tier: Tier) -> Optional[int]:
        if tier is Tier.DAILY:
            return self.daily_retention_count
        if tier is Tier.WEEKLY:
            return self.weekly_retention_count
        return None

    def retention_period(self, tier: Tier) -> Optional[timedelta]:
        if tier is Tier.DAILY:
            return self.daily_retention_period
        if tier is Tier.WEEKLY:
            return self.weekly_retention_period
        return None


def _to_reference_clock(instant: datetime) -> datetime:
    # Naive values are assumed to already be on the reference clock.
    if instant.tzinfo is None:
        return instant
    return instant.astimezone(timezone.utc)


def classify_tier(instant: datetime) -> Tier:
    instant = _to_reference_clock(instant)
    if instant.day == 1:
        return Tier.MONTHLY
    if instant.weekday() == 0:
        return Tier.WEEKLY
    return Tier.DAILY


def classify(policy: RotationPolicy, instant: datetime) -> str:
    """Return the key prefix of the tier a backup taken at ``instant`` belongs to."""
    return policy.prefix_for(classify_tier(instant))


def sort_entries(entries: Iterable[BucketEntry]) -> List[BucketEntry]:
    """Newest first; equal timestamps ordered by key."""
    by_key = sorted(entries, key=lambda entry: entry.key)
    return sorted(
        by_key,
        key=lambda entry: _to_reference_clock(entry.last_modified),
        reverse=True,
    )


def compute_prunable(
    policy: RotationPolicy,
    tier: Tier,
    entries: Iterable[BucketEntry],
    now: datetime,
) -> List[str]:
    """Return the keys of ``entries`` that the policy allows deleting.

    ``entries`` must already be restricted to the tier's prefix. The newest
    ``retention_count`` entries always survive. When the policy enforces the
    retention period, older entries survive until they reach the tier's
    retention period and are reconsidered on a later run.
    """
    keep_count = policy.retention_count(tier)
    period = policy.retention_period(tier)
    if keep_count is None or period is None:
        return []

    now = _to_reference_clock(now)
    candidates = sort_entries(entries)[keep_count:]

    if not policy.enforce_retention_period:
        return [entry.key for entry in candidates]

    return [
        entry.key
        for entry in candidates
        if now - _to_reference_clock(entry.last_modified) >= period
    ]
