"""
Retention planning for backup artifacts.

plan() is a pure function of (manifest snapshot, policy, now): it performs
no I/O and never looks at storage listings, so the same inputs always give
the same decision. The orchestrator applies the decision afterwards.

Rules, applied to stored/verified artifacts only:
- the newest artifact is always kept, and so is the newest verified one
- artifacts younger than min_age are always kept
- artifacts younger than window are kept
- each tier keeps the newest artifact of its `keep` most recent periods
  (grandfather-father-son when several tiers are combined)
- artifacts older than max_age lose every keep reason except "newest" and
  "newest_verified"
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from dumpkeeper.utils.clock import as_utc
from .errors import RetentionPolicyError
from .manifest import RETAINABLE_STATES, VERIFIED


PERIODS = {
    'hourly': lambda ts: (ts.year, ts.month, ts.day, ts.hour),
    'daily': lambda ts: (ts.year, ts.month, ts.day),
    'weekly': lambda ts: tuple(ts.isocalendar()[:2]),
    'monthly': lambda ts: (ts.year, ts.month),
    'yearly': lambda ts: (ts.year,),
}


@dataclass(frozen=True)
class RetentionTier:
    period: str
    keep: int


@dataclass(frozen=True)
class RetentionPolicy:
    """Retention rules for one source. Immutable, parsed fresh for every run."""
    min_age: timedelta = timedelta(0)
    window: timedelta = timedelta(0)
    max_age: Optional[timedelta] = None
    tiers: Tuple[RetentionTier, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RetentionPolicy':
        """
        Parse a policy definition.

        Format:
            {
                "min_age_hours": 24,
                "window_days": 30,
                "max_age_days": 365,
                "tiers": [{"period": "daily", "keep": 7}, {"period": "weekly", "keep": 4}]
            }

        Raises:
            RetentionPolicyError: If the definition is malformed
        """
        if not isinstance(data, dict):
            raise RetentionPolicyError("Retention policy must be an object")

        known = {'min_age_hours', 'window_days', 'max_age_days', 'tiers'}
        unknown = set(data) - known
        if unknown:
            raise RetentionPolicyError(f"Unknown retention policy fields: {sorted(unknown)}")

        min_age = timedelta(hours=_number(data, 'min_age_hours', 0))
        window = timedelta(days=_number(data, 'window_days', 0))

        max_age = None
        if data.get('max_age_days') is not None:
            max_age = timedelta(days=_number(data, 'max_age_days', 0))

        tiers_data = data.get('tiers') or []
        if not isinstance(tiers_data, list):
            raise RetentionPolicyError("Retention tiers must be a list")

        tiers = []
        seen = set()
        for tier in tiers_data:
            if not isinstance(tier, dict):
                raise RetentionPolicyError("Each retention tier must be an object")
            period = tier.get('period')
            if period not in PERIODS:
                raise RetentionPolicyError(
                    f"Invalid tier period: {period}. Valid options: {list(PERIODS.keys())}"
                )
            if period in seen:
                raise RetentionPolicyError(f"Duplicate tier period: {period}")
            seen.add(period)

            keep = tier.get('keep')
            if isinstance(keep, bool) or not isinstance(keep, int) or keep < 0:
                raise RetentionPolicyError(f"Tier {period} keep must be a non-negative integer")
            tiers.append(RetentionTier(period, keep))

        policy = cls(min_age=min_age, window=window, max_age=max_age, tiers=tuple(tiers))
        policy.validate()
        return policy

    def validate(self):
        if self.min_age < timedelta(0) or self.window < timedelta(0):
            raise RetentionPolicyError("Retention ages must not be negative")
        if self.max_age is not None and self.max_age < self.min_age:
            raise RetentionPolicyError("max_age must not be shorter than min_age")

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'min_age_hours': self.min_age.total_seconds() / 3600,
            'window_days': self.window.total_seconds() / 86400,
            'tiers': [{'period': t.period, 'keep': t.keep} for t in self.tiers],
        }
        if self.max_age is not None:
            data['max_age_days'] = self.max_age.total_seconds() / 86400
        return data


def _number(data: Dict[str, Any], name: str, default: float) -> float:
    value = data.get(name, default)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RetentionPolicyError(f"{name} must be a number")
    if value < 0:
        raise RetentionPolicyError(f"{name} must not be negative")
    return value


@dataclass(frozen=True)
class RetentionPlan:
    keep: FrozenSet[str]
    expire: Tuple[str, ...]  # oldest first
    reasons: Dict[str, Tuple[str, ...]] = field(default_factory=dict, compare=False)


def plan(snapshot: Iterable, policy: RetentionPolicy, now: datetime) -> RetentionPlan:
    """
    Decide which artifacts to keep and which to expire.

    Args:
        snapshot: Objects with artifact_id, created_at and state attributes
        policy: Retention policy
        now: Reference time

    Returns:
        RetentionPlan with keep ids, expire ids (oldest first) and keep reasons
    """
    now = as_utc(now)

    # Newest first; on equal timestamps the higher id counts as newer, so the
    # lower id is the one expired
    candidates = sorted(
        ((as_utc(item.created_at), item.artifact_id, item.state) for item in snapshot
         if item.state in RETAINABLE_STATES),
        reverse=True
    )
    if not candidates:
        return RetentionPlan(keep=frozenset(), expire=())

    reasons: Dict[str, List[str]] = {}

    def mark(artifact_id: str, reason: str):
        reasons.setdefault(artifact_id, []).append(reason)

    for created_at, artifact_id, _ in candidates:
        age = now - created_at
        if policy.window and age <= policy.window:
            mark(artifact_id, 'window')
        if age < policy.min_age:
            mark(artifact_id, 'min_age')

    for tier in policy.tiers:
        bucket_of = PERIODS[tier.period]
        buckets = []
        for created_at, artifact_id, _ in candidates:
            if len(buckets) >= tier.keep:
                break
            bucket = bucket_of(created_at)
            if bucket in buckets:
                continue
            buckets.append(bucket)
            mark(artifact_id, tier.period)

    if policy.max_age is not None:
        for created_at, artifact_id, _ in candidates:
            if now - created_at > policy.max_age and artifact_id in reasons:
                # max_age >= min_age, so no min_age keep is dropped here
                del reasons[artifact_id]

    newest_id = candidates[0][1]
    mark(newest_id, 'newest')

    # The last confirmed-intact artifact outlives any newer unverified one
    for _, artifact_id, state in candidates:
        if state == VERIFIED:
            if artifact_id != newest_id:
                mark(artifact_id, 'newest_verified')
            break

    keep = frozenset(reasons)
    expire = tuple(artifact_id for _, artifact_id, _ in reversed(candidates) if artifact_id not in keep)

    return RetentionPlan(
        keep=keep,
        expire=expire,
        reasons={artifact_id: tuple(r) for artifact_id, r in reasons.items()}
    )
