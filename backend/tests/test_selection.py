"""
Unit tests for account selection (eligibility, overrides, AccountSelector).
"""

import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import Mock

from adapter.models import Profile
from config import PlatformConfig
from selection import (
    AccountSelector,
    BYPASS_REASON,
    UNKNOWN_AGE_REASON,
    InMemoryOverrideStore,
    OverrideRule,
    compute_eligibility,
    months_between,
)


NOW = datetime(2025, 3, 1, 15, 0, tzinfo=timezone.utc)


def make_profile(handle, followers=1000, months_old=24, did=None):
    return Profile(
        id=did or f"did:plc:{handle.split('.')[0]}",
        handle=handle,
        display_name=handle.split(".")[0].title(),
        followers_count=followers,
        posts_count=100,
        created_at=NOW - timedelta(days=30 * months_old) if months_old is not None else None,
    )


class StubResolver:
    """Feed source stub: resolves identifiers by handle or DID from a fixed set of profiles."""

    platform = "bsky"

    def __init__(self, profiles):
        self.profiles = profiles
        self.calls = []

    def resolve_profiles(self, identifiers):
        self.calls.append(list(identifiers))
        found = []
        for identifier in identifiers:
            for profile in self.profiles:
                if identifier in (profile.id, profile.handle):
                    found.append(profile)
                    break
        return found

    def fetch_recent_posts(self, actors, lookback_minutes):
        return []


def make_config(allowlist, max_accounts=25):
    return PlatformConfig(
        platform="bsky",
        allowlist=allowlist,
        min_followers=500,
        min_account_months=6,
        max_accounts=max_accounts,
    )


def include(identifier, bypass=False, **kwargs):
    return OverrideRule(kind="include", platform="bsky", identifier=identifier, bypass_eligibility=bypass, **kwargs)


def exclude(identifier, **kwargs):
    return OverrideRule(kind="exclude", platform="bsky", identifier=identifier, **kwargs)


# ============================================================================
# Eligibility Tests
# ============================================================================

class TestComputeEligibility:
    """Test the follower and account-age checks."""

    def test_eligible_profile(self):
        """Both checks pass and each produces one reason."""
        result = compute_eligibility(make_profile("fan.bsky.social", 800, 12), 500, 6, now=NOW)

        assert result.eligible is True
        assert len(result.reasons) == 2
        assert result.reasons[0] == "followers=800 ≥ min=500"
        assert result.reasons[1].startswith("age=12.0mo ≥ min=6mo")

    def test_low_followers_ineligible(self):
        """Follower count below minimum fails with a diagnostic."""
        result = compute_eligibility(make_profile("small.bsky.social", 120, 24), 500, 6, now=NOW)

        assert result.eligible is False
        assert "followers=120 < min=500" in result.reasons

    def test_missing_followers_counts_as_zero(self):
        """A missing follower count is treated as 0."""
        profile = make_profile("anon.bsky.social", followers=None)
        result = compute_eligibility(profile, 500, 6, now=NOW)

        assert result.eligible is False
        assert "followers=0 < min=500" in result.reasons

    def test_young_account_ineligible(self):
        """Account younger than the minimum age fails."""
        result = compute_eligibility(make_profile("new.bsky.social", 5000, 2), 500, 6, now=NOW)

        assert result.eligible is False
        assert result.reasons[1] == "age=2.0mo < min=6mo"

    def test_unknown_age_is_not_penalized(self):
        """Missing createdAt skips the age check but discloses it."""
        profile = make_profile("old.bsky.social", 900, months_old=None)
        result = compute_eligibility(profile, 500, 6, now=NOW)

        assert result.eligible is True
        assert UNKNOWN_AGE_REASON in result.reasons
        assert len(result.reasons) == 2

    def test_unknown_age_with_low_followers(self):
        """Unknown age does not rescue a follower failure."""
        profile = make_profile("quiet.bsky.social", 10, months_old=None)
        result = compute_eligibility(profile, 500, 6, now=NOW)

        assert result.eligible is False
        assert UNKNOWN_AGE_REASON in result.reasons

    def test_threshold_is_inclusive(self):
        """Exactly the minimum passes."""
        result = compute_eligibility(make_profile("edge.bsky.social", 500, 6), 500, 6, now=NOW)

        assert result.eligible is True

    def test_months_between_uses_30_day_months(self):
        """Months are approximated as 30 days, in either order."""
        assert months_between(NOW, NOW - timedelta(days=45)) == pytest.approx(1.5)
        assert months_between(NOW - timedelta(days=45), NOW) == pytest.approx(1.5)


# ============================================================================
# Override Store Tests
# ============================================================================

class TestOverrideStore:
    """Test rule scoping and expiry."""

    def test_global_rules_only_without_match(self):
        """Without a match id only global rules apply."""
        store = InMemoryOverrideStore([
            include("a.bsky.social"),
            include("b.bsky.social", scope="match", match_id="ARS-CHE"),
        ])

        overrides = store.get_overrides("bsky", now=NOW)

        assert [r.identifier for r in overrides.include] == ["a.bsky.social"]

    def test_match_rules_merged_with_global(self):
        """Match-scoped rules are added for that match only."""
        store = InMemoryOverrideStore([
            include("a.bsky.social"),
            include("b.bsky.social", scope="match", match_id="ARS-CHE"),
            exclude("c.bsky.social", scope="match", match_id="ARS-TOT"),
        ])

        overrides = store.get_overrides("bsky", match_id="ARS-CHE", now=NOW)

        assert {r.identifier for r in overrides.include} == {"a.bsky.social", "b.bsky.social"}
        assert overrides.exclude == []

    def test_expired_rules_dropped(self):
        """Rules past their expiry are never returned."""
        store = InMemoryOverrideStore([
            exclude("gone.bsky.social", expires_at=NOW - timedelta(minutes=1)),
            exclude("live.bsky.social", expires_at=NOW + timedelta(days=1)),
        ])

        overrides = store.get_overrides("bsky", now=NOW)

        assert [r.identifier for r in overrides.exclude] == ["live.bsky.social"]

    def test_other_platform_ignored(self):
        """Rules for another platform are filtered out."""
        store = InMemoryOverrideStore([
            OverrideRule(kind="include", platform="twitter", identifier="arseblog"),
        ])

        assert store.get_overrides("bsky", now=NOW).include == []

    def test_rule_keys(self):
        """Native ids key by id, handles key case-insensitively."""
        assert include("did:plc:abc", identifier_type="did").key == "id:did:plc:abc"
        assert include("Fan.Bsky.Social").key == "handle:fan.bsky.social"


# ============================================================================
# AccountSelector Tests
# ============================================================================

class TestAccountSelector:
    """Test the ranked, capped account list."""

    def test_eligible_allowlist_sorted_by_followers(self):
        """Ineligible base accounts are dropped; the rest sorted by followers."""
        profiles = [
            make_profile("mid.bsky.social", 2000),
            make_profile("big.bsky.social", 9000),
            make_profile("tiny.bsky.social", 10),
        ]
        selector = AccountSelector(make_config([p.handle for p in profiles]), StubResolver(profiles))

        selected = selector.select(now=NOW)

        assert [a.profile.handle for a in selected] == ["big.bsky.social", "mid.bsky.social"]
        assert all(a.source == "allowlist" for a in selected)

    def test_cap_respected(self):
        """Output never exceeds max accounts."""
        profiles = [make_profile(f"fan{i}.bsky.social", 1000 + i) for i in range(10)]
        selector = AccountSelector(make_config([p.handle for p in profiles], max_accounts=3), StubResolver(profiles))

        selected = selector.select(now=NOW)

        assert len(selected) == 3
        assert selected[0].profile.handle == "fan9.bsky.social"

    def test_includes_precede_allowlist(self):
        """Include-derived accounts come first even with fewer followers."""
        profiles = [
            make_profile("huge.bsky.social", 50000),
            make_profile("pick.bsky.social", 600),
        ]
        store = InMemoryOverrideStore([include("pick.bsky.social")])
        selector = AccountSelector(make_config(["huge.bsky.social"]), StubResolver(profiles), store)

        selected = selector.select(now=NOW)

        assert [a.profile.handle for a in selected] == ["pick.bsky.social", "huge.bsky.social"]
        assert selected[0].source == "include"

    def test_includes_survive_cap(self):
        """The cap trims only the allowlist slice, never an include."""
        base = [make_profile(f"base{i}.bsky.social", 5000) for i in range(3)]
        picks = [make_profile(f"pick{i}.bsky.social", 700) for i in range(3)]
        store = InMemoryOverrideStore([include(p.handle) for p in picks])
        selector = AccountSelector(
            make_config([p.handle for p in base], max_accounts=2),
            StubResolver(base + picks),
            store,
        )

        selected = selector.select(now=NOW)

        assert len(selected) == 3
        assert all(a.source == "include" for a in selected)

    def test_bypass_include_ignores_eligibility(self):
        """A bypass include appears even when raw eligibility fails."""
        profiles = [make_profile("newbie.bsky.social", 3, months_old=1)]
        store = InMemoryOverrideStore([include("newbie.bsky.social", bypass=True)])
        selector = AccountSelector(make_config([]), StubResolver(profiles), store)

        selected = selector.select(now=NOW)

        assert len(selected) == 1
        assert selected[0].eligibility.eligible is True
        assert selected[0].eligibility.reasons == [BYPASS_REASON]

    def test_non_bypass_include_must_be_eligible(self):
        """Without bypass an ineligible include is skipped."""
        profiles = [make_profile("newbie.bsky.social", 3, months_old=1)]
        store = InMemoryOverrideStore([include("newbie.bsky.social")])
        selector = AccountSelector(make_config([]), StubResolver(profiles), store)

        assert selector.select(now=NOW) == []

    def test_exclude_wins_over_include(self):
        """An account both included and excluded is absent."""
        profiles = [make_profile("both.bsky.social", 9000)]
        store = InMemoryOverrideStore([
            include("both.bsky.social", bypass=True, scope="match", match_id="ARS-CHE"),
            exclude("both.bsky.social"),
        ])
        selector = AccountSelector(make_config(["both.bsky.social"]), StubResolver(profiles), store)

        assert selector.select(match_id="ARS-CHE", now=NOW) == []

    def test_exclude_by_native_id_matches_handle_include(self):
        """Exclude by DID removes an account included by handle."""
        profile = make_profile("fan.bsky.social", 9000, did="did:plc:fan")
        store = InMemoryOverrideStore([
            include("fan.bsky.social", bypass=True),
            exclude("did:plc:fan", identifier_type="did"),
        ])
        selector = AccountSelector(make_config([]), StubResolver([profile]), store)

        assert selector.select(now=NOW) == []

    def test_exclude_removes_allowlist_account(self):
        """Excluded allowlist accounts are dropped."""
        profiles = [make_profile("keep.bsky.social", 900), make_profile("drop.bsky.social", 900)]
        store = InMemoryOverrideStore([exclude("DROP.bsky.social")])
        selector = AccountSelector(make_config([p.handle for p in profiles]), StubResolver(profiles), store)

        assert [a.profile.handle for a in selector.select(now=NOW)] == ["keep.bsky.social"]

    def test_unresolved_include_gets_minimal_profile(self):
        """Lookup failure never drops an explicit bypass include."""
        store = InMemoryOverrideStore([include("ghost.bsky.social", bypass=True)])
        selector = AccountSelector(make_config([]), StubResolver([]), store)

        selected = selector.select(now=NOW)

        assert len(selected) == 1
        profile = selected[0].profile
        assert profile.handle == "ghost.bsky.social"
        assert profile.display_name == "ghost.bsky.social"
        assert profile.followers_count == 0
        assert profile.created_at is None

    def test_unresolved_native_id_include_uses_declared_handle(self):
        """A native-id include falls back to its declared handle."""
        store = InMemoryOverrideStore([
            include("did:plc:ghost", bypass=True, identifier_type="did", handle="ghost.bsky.social"),
        ])
        selector = AccountSelector(make_config([]), StubResolver([]), store)

        profile = selector.select(now=NOW)[0].profile

        assert profile.id == "did:plc:ghost"
        assert profile.handle == "ghost.bsky.social"

    def test_unresolved_native_id_include_without_handle_skipped(self):
        """A native-id include with nothing to display is dropped rather than shown as a raw id."""
        store = InMemoryOverrideStore([include("did:plc:ghost", bypass=True, identifier_type="did")])
        selector = AccountSelector(make_config([]), StubResolver([]), store)

        assert selector.select(now=NOW) == []

    def test_included_account_not_duplicated_from_allowlist(self):
        """An account in both the allowlist and includes appears once, as include."""
        profile = make_profile("dup.bsky.social", 900)
        store = InMemoryOverrideStore([include("dup.bsky.social")])
        selector = AccountSelector(make_config(["dup.bsky.social"]), StubResolver([profile]), store)

        selected = selector.select(now=NOW)

        assert len(selected) == 1
        assert selected[0].source == "include"

    def test_duplicate_include_rules_merge_bypass(self):
        """Global and match includes for the same account merge; any bypass wins."""
        profile = make_profile("dup.bsky.social", 5, months_old=1)
        store = InMemoryOverrideStore([
            include("dup.bsky.social"),
            include("dup.bsky.social", bypass=True, scope="match", match_id="ARS-CHE"),
        ])
        selector = AccountSelector(make_config([]), StubResolver([profile]), store)

        selected = selector.select(match_id="ARS-CHE", now=NOW)

        assert len(selected) == 1
        assert selected[0].eligibility.reasons == [BYPASS_REASON]

    def test_resolver_failure_is_not_fatal(self):
        """A resolver exception yields an empty base list, not an error."""
        resolver = Mock()
        resolver.resolve_profiles.side_effect = RuntimeError("AppView down")
        selector = AccountSelector(make_config(["a.bsky.social"]), resolver)

        assert selector.select(now=NOW) == []

    def test_snapshot_shape(self):
        """Snapshot exposes profile fields, eligibility and source."""
        profiles = [make_profile("fan.bsky.social", 900)]
        selector = AccountSelector(make_config(["fan.bsky.social"]), StubResolver(profiles))

        snapshot = selector.snapshot()

        assert snapshot[0]["handle"] == "fan.bsky.social"
        assert snapshot[0]["followersCount"] == 900
        assert snapshot[0]["eligibility"]["eligible"] is True
        assert snapshot[0]["source"] == "allowlist"
