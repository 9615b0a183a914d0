"""
Quota policies per visitor category.

A policy is a plain value describing monthly, yearly and host-daily caps
(``None`` means unlimited). It is the only place visit limits are defined; the
defaults below can be overridden per category with the
``VISITS_QUOTA_POLICIES`` setting, e.g.::

    VISITS_QUOTA_POLICIES = {"supplier": {"monthly_limit": 20}}
"""
from copy import deepcopy
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from .models import Visitor

DEFAULT_QUOTA_POLICIES: Dict[str, Dict[str, Any]] = {
    Visitor.CATEGORY_DAY_GUEST: {
        "monthly_limit": 4,
        "yearly_limit": 12,
        "host_daily_limit": 4,
        "counted_purposes": None,
    },
    Visitor.CATEGORY_ACCOMMODATION_GUEST: {
        "monthly_limit": None,
        "yearly_limit": None,
        "host_daily_limit": None,
        "counted_purposes": None,
    },
    Visitor.CATEGORY_SUPPLIER: {
        "monthly_limit": None,
        "yearly_limit": None,
        "host_daily_limit": None,
        "counted_purposes": None,
    },
    # Only casual visits count; tournament and other event visits are exempt.
    Visitor.CATEGORY_RECIPROCATING_MEMBER: {
        "monthly_limit": None,
        "yearly_limit": 24,
        "host_daily_limit": None,
        "counted_purposes": ["casual_visit"],
    },
}

POLICY_KEYS = {"monthly_limit", "yearly_limit", "host_daily_limit", "counted_purposes"}


@dataclass(frozen=True)
class QuotaPolicy:
    monthly_limit: Optional[int] = None
    yearly_limit: Optional[int] = None
    host_daily_limit: Optional[int] = None
    counted_purposes: Optional[FrozenSet[str]] = None

    @property
    def enforces_host_limit(self) -> bool:
        return self.host_daily_limit is not None

    @property
    def is_unlimited(self) -> bool:
        return self.monthly_limit is None and self.yearly_limit is None and self.host_daily_limit is None

    def counts_toward_quota(self, visit) -> bool:
        """Return True if the visit is subject to the monthly/yearly caps."""
        if self.counted_purposes is None:
            return True
        return visit.purpose in self.counted_purposes

    def would_exceed(self, monthly_count: int, yearly_count: int) -> bool:
        """True when one more counted visit would break the monthly or yearly cap."""
        if self.monthly_limit is not None and monthly_count + 1 > self.monthly_limit:
            return True
        if self.yearly_limit is not None and yearly_count + 1 > self.yearly_limit:
            return True
        return False

    def is_exhausted(self, monthly_count: int, yearly_count: int) -> bool:
        """True when the running counts have reached a cap (used for auto-suspension)."""
        if self.monthly_limit is not None and monthly_count >= self.monthly_limit:
            return True
        if self.yearly_limit is not None and yearly_count >= self.yearly_limit:
            return True
        return False


def _validate_limit(category: str, key: str, value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ImproperlyConfigured(f"VISITS_QUOTA_POLICIES[{category!r}][{key!r}] must be a non-negative int or None.")
    return value


def build_quota_policy(category: str, config: Dict[str, Any]) -> QuotaPolicy:
    unknown = set(config) - POLICY_KEYS
    if unknown:
        raise ImproperlyConfigured(
            f"Unknown quota policy keys for {category!r}: {', '.join(sorted(unknown))}"
        )
    purposes = config.get("counted_purposes")
    return QuotaPolicy(
        monthly_limit=_validate_limit(category, "monthly_limit", config.get("monthly_limit")),
        yearly_limit=_validate_limit(category, "yearly_limit", config.get("yearly_limit")),
        host_daily_limit=_validate_limit(category, "host_daily_limit", config.get("host_daily_limit")),
        counted_purposes=frozenset(purposes) if purposes is not None else None,
    )


def get_quota_policies() -> Dict[str, Dict[str, Any]]:
    """Defaults merged with the ``VISITS_QUOTA_POLICIES`` overrides."""
    merged = deepcopy(DEFAULT_QUOTA_POLICIES)
    overrides = getattr(settings, "VISITS_QUOTA_POLICIES", None) or {}
    for category, override in overrides.items():
        if category not in merged:
            raise ImproperlyConfigured(f"Unknown visitor category in VISITS_QUOTA_POLICIES: {category!r}")
        merged[category].update(override or {})
    return merged


def get_quota_policy(category: str) -> QuotaPolicy:
    policies = get_quota_policies()
    if category not in policies:
        raise ImproperlyConfigured(f"No quota policy for visitor category {category!r}")
    return build_quota_policy(category, policies[category])
