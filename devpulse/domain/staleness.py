from datetime import datetime, timezone
from typing import Dict, Mapping, Optional

from devpulse.domain.models import ResourceKind

# Minutes a cached resource stays fresh
DEFAULT_MAX_AGE_MINUTES: Dict[ResourceKind, int] = {
    ResourceKind.PROFILE: 60,
    ResourceKind.REPOSITORIES: 30,
    ResourceKind.EVENTS: 15,
}


def _as_aware(value: datetime) -> datetime:
    # Naive timestamps coming out of the database are UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def age_minutes(last_refreshed: Optional[datetime], now: Optional[datetime] = None) -> Optional[int]:
    """Whole minutes elapsed since last_refreshed, or None if never refreshed."""
    if last_refreshed is None:
        return None
    now = now or datetime.now(timezone.utc)
    delta = _as_aware(now) - _as_aware(last_refreshed)
    return int(delta.total_seconds() // 60)


def is_stale(last_refreshed: Optional[datetime], max_age_minutes: int, now: Optional[datetime] = None) -> bool:
    """
    Returns True if the data was never refreshed or is older than max_age_minutes.
    """
    if last_refreshed is None:
        return True
    now = now or datetime.now(timezone.utc)
    elapsed = (_as_aware(now) - _as_aware(last_refreshed)).total_seconds() / 60
    return elapsed > max_age_minutes


class StalenessPolicy:
    """
    Per-resource-kind freshness thresholds.
    """

    def __init__(self, max_age_minutes: Optional[Mapping[ResourceKind, int]] = None):
        thresholds = dict(DEFAULT_MAX_AGE_MINUTES)
        if max_age_minutes:
            thresholds.update(max_age_minutes)

        for kind, minutes in thresholds.items():
            if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes <= 0:
                raise ValueError(f"Max age for {kind.value} must be a positive number of minutes, got {minutes!r}.")
        self.max_age_minutes = thresholds

    def ttl_for(self, kind: ResourceKind) -> int:
        return self.max_age_minutes[kind]

    def is_stale(self, kind: ResourceKind, last_refreshed: Optional[datetime], now: Optional[datetime] = None) -> bool:
        return is_stale(last_refreshed, self.ttl_for(kind), now=now)
