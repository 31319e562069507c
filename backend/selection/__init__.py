"""
Account selection for match analytics.

- compute_eligibility: follower-count and account-age checks with diagnostics
- AccountSelector: merges the platform allowlist with admin overrides into a
  ranked, capped list of accounts to read posts from

Both platforms share the same selection algorithm; they differ only in
configuration and in the feed source used to resolve profiles.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional, Set

from pydantic import BaseModel, Field

from adapter.models import FeedSource, Profile, profile_key
from config import PlatformConfig
from selection.overrides import (
    InMemoryOverrideStore,
    OverrideRule,
    OverrideSet,
    OverrideStore,
    SqliteOverrideStore,
)

logger = logging.getLogger(__name__)

DAYS_PER_MONTH = 30
BYPASS_REASON = "admin:include override (bypass=true)"
UNKNOWN_AGE_REASON = "age=unknown; allowed based on followers/activity"


class Eligibility(BaseModel):
    """Eligibility verdict with one diagnostic reason per check performed."""
    eligible: bool
    reasons: List[str] = Field(default_factory=list)


class SelectedAccount(BaseModel):
    """An account the pipeline will read posts from."""
    profile: Profile
    eligibility: Eligibility
    source: Literal["include", "allowlist"] = "allowlist"

    def to_dict(self) -> dict:
        data = self.profile.to_dict()
        data["eligibility"] = self.eligibility.model_dump()
        data["source"] = self.source
        return data


def months_between(a: datetime, b: datetime) -> float:
    """Absolute distance between two instants in 30-day months."""
    if a.tzinfo is None:
        a = a.replace(tzinfo=timezone.utc)
    if b.tzinfo is None:
        b = b.replace(tzinfo=timezone.utc)
    return abs((a - b).total_seconds()) / (DAYS_PER_MONTH * 24 * 3600)


def compute_eligibility(
    profile: Profile,
    min_followers: int,
    min_account_months: float,
    now: Optional[datetime] = None,
) -> Eligibility:
    """
    Evaluate a profile against follower and account-age thresholds.

    A missing creation date never makes a profile ineligible; the reasons list
    discloses that the age check was skipped instead.

    Args:
        profile: Profile snapshot to evaluate
        min_followers: Minimum follower count (missing counts as 0)
        min_account_months: Minimum account age in 30-day months
        now: Reference time (default: current UTC time)

    Returns:
        Eligibility with reasons for the follower check and the age check
    """
    now = now or datetime.now(timezone.utc)
    reasons: List[str] = []
    eligible = True

    followers = profile.followers_count or 0
    if followers < min_followers:
        eligible = False
        reasons.append(f"followers={followers} < min={min_followers}")
    else:
        reasons.append(f"followers={followers} ≥ min={min_followers}")

    if profile.created_at is not None:
        months = months_between(profile.created_at, now)
        if months < min_account_months:
            eligible = False
            reasons.append(f"age={months:.1f}mo < min={min_account_months:g}mo")
        else:
            reasons.append(f"age={months:.1f}mo ≥ min={min_account_months:g}mo")
    else:
        reasons.append(UNKNOWN_AGE_REASON)

    return Eligibility(eligible=eligible, reasons=reasons)


def _keys_of(profile: Profile) -> Set[str]:
    """Every key a profile can be matched by (native id and handle)."""
    keys = set()
    if profile.id:
        keys.add(profile_key(profile.id, None))
    if profile.handle:
        keys.add(profile_key(None, profile.handle))
    return keys


def _follower_sort_key(account: SelectedAccount) -> int:
    return -(account.profile.followers_count or 0)


class AccountSelector:
    """
    Selects the accounts to analyse for one platform.

    Usage:
        selector = AccountSelector(config, bsky_adapter, override_store)
        accounts = selector.select(match_id="ARS-CHE")

    The profile resolver is injected (any FeedSource), so tests can pass a
    stub instead of patching module attributes.
    """

    def __init__(
        self,
        config: PlatformConfig,
        resolver: FeedSource,
        override_store: Optional[OverrideStore] = None,
    ):
        self.config = config
        self.resolver = resolver
        self.override_store = override_store or InMemoryOverrideStore()

    @property
    def platform(self) -> str:
        return self.config.platform

    def evaluate(self, profile: Profile, now: Optional[datetime] = None) -> Eligibility:
        return compute_eligibility(
            profile,
            min_followers=self.config.min_followers,
            min_account_months=self.config.min_account_months,
            now=now,
        )

    def _resolve(self, identifiers: List[str]) -> List[Profile]:
        if not identifiers:
            return []
        try:
            return list(self.resolver.resolve_profiles(identifiers))
        except Exception as e:
            logger.warning(f"Profile resolution failed for {self.platform} ({len(identifiers)} ids): {e}")
            return []

    def get_overrides(self, match_id: Optional[str] = None, now: Optional[datetime] = None) -> OverrideSet:
        return self.override_store.get_overrides(self.platform, match_id=match_id, now=now)

    def select(self, match_id: Optional[str] = None, now: Optional[datetime] = None) -> List[SelectedAccount]:
        """
        Build the ranked, capped account list.

        Steps:
        1. Resolve allowlist profiles (unresolvable identifiers are dropped)
        2. Load live override rules (global + this match)
        3. Include rules become accounts first; unresolvable includes get a
           minimal profile built from the declared handle, or are skipped when
           they have none. Excludes always win.
        4. Remaining allowlist profiles must pass the eligibility checks
        5. Each slice is ordered by follower count (descending, stable); the
           cap only ever trims the allowlist slice

        Args:
            match_id: Current match, or None for global rules only
            now: Reference time for eligibility and rule expiry

        Returns:
            Include-derived accounts followed by allowlist accounts
        """
        now = now or datetime.now(timezone.utc)

        base_profiles = self._resolve(self.config.allowlist)
        overrides = self.get_overrides(match_id=match_id, now=now)

        exclude_keys = {rule.key for rule in overrides.exclude}

        def is_excluded(profile: Profile) -> bool:
            return bool(_keys_of(profile) & exclude_keys)

        # Resolve include identifiers in one batch, index by every key
        resolved_by_key: Dict[str, Profile] = {}
        for profile in self._resolve([rule.identifier for rule in overrides.include]):
            for key in _keys_of(profile):
                resolved_by_key.setdefault(key, profile)

        # Merge duplicate include rules (e.g. global + match) for the same account
        include_rules: Dict[str, OverrideRule] = {}
        bypass_by_key: Dict[str, bool] = {}
        for rule in overrides.include:
            include_rules.setdefault(rule.key, rule)
            bypass_by_key[rule.key] = bypass_by_key.get(rule.key, False) or rule.bypass_eligibility

        selected_include: List[SelectedAccount] = []
        included_keys: Set[str] = set()
        for key, rule in include_rules.items():
            if key in exclude_keys:
                continue

            profile = resolved_by_key.get(key)
            if profile is None and rule.declared_handle:
                profile = resolved_by_key.get(profile_key(None, rule.declared_handle))
            if profile is None:
                if not rule.declared_handle:
                    logger.info(f"Include override {rule.identifier} unresolved and has no handle, skipping")
                    continue
                profile = self._fallback_profile(rule)
                logger.info(f"Include override {rule.identifier} unresolved on {self.platform}, using minimal profile")

            if is_excluded(profile) or _keys_of(profile) & included_keys:
                continue

            if bypass_by_key[key]:
                eligibility = Eligibility(eligible=True, reasons=[BYPASS_REASON])
            else:
                eligibility = self.evaluate(profile, now)
                if not eligibility.eligible:
                    logger.debug(f"Include override {rule.identifier} ineligible: {eligibility.reasons}")
                    continue

            selected_include.append(SelectedAccount(profile=profile, eligibility=eligibility, source="include"))
            included_keys |= _keys_of(profile) | {key}

        selected_base: List[SelectedAccount] = []
        for profile in base_profiles:
            keys = _keys_of(profile)
            if keys & exclude_keys or keys & included_keys:
                continue
            eligibility = self.evaluate(profile, now)
            if not eligibility.eligible:
                continue
            selected_base.append(SelectedAccount(profile=profile, eligibility=eligibility))
            included_keys |= keys

        selected_include.sort(key=_follower_sort_key)
        selected_base.sort(key=_follower_sort_key)

        remaining = max(self.config.max_accounts - len(selected_include), 0)
        selected = selected_include + selected_base[:remaining]

        logger.debug(
            f"Selected {len(selected)} {self.platform} accounts "
            f"({len(selected_include)} include overrides, {len(overrides.exclude)} exclude rules)"
        )
        return selected

    def _fallback_profile(self, rule: OverrideRule) -> Profile:
        handle = rule.declared_handle
        return Profile(
            id=rule.identifier if rule.is_native_id else "",
            handle=handle,
            display_name=handle,
            followers_count=0,
            posts_count=0,
            created_at=None,
        )

    def snapshot(self, match_id: Optional[str] = None) -> List[dict]:
        """Planner view: selected accounts with profile fields and eligibility."""
        return [account.to_dict() for account in self.select(match_id=match_id)]


__all__ = [
    "Eligibility",
    "SelectedAccount",
    "AccountSelector",
    "compute_eligibility",
    "months_between",
    "BYPASS_REASON",
    "UNKNOWN_AGE_REASON",
    "OverrideRule",
    "OverrideSet",
    "OverrideStore",
    "InMemoryOverrideStore",
    "SqliteOverrideStore",
]
