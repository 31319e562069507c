"""
Override Store: admin include/exclude rules for account selection.

Rules are scoped globally or to a single match. Reads merge the global rules
with the current match's rules and drop anything past its expiry, so the
selector only ever sees live rules.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Literal, Optional

from pydantic import BaseModel, Field

from adapter.models import profile_key
from database import Database

logger = logging.getLogger(__name__)

HANDLE = "handle"


class OverrideRule(BaseModel):
    """A single include or exclude rule."""
    kind: Literal["include", "exclude"] = Field(description="Rule kind")
    platform: str = Field(description="Platform the rule applies to")
    identifier: str = Field(description="Native id (DID / user id) or handle")
    identifier_type: str = Field(default=HANDLE, description="'handle' or the platform's native id type")
    handle: Optional[str] = Field(default=None, description="Declared handle, used when lookup fails")
    scope: Literal["global", "match"] = Field(default="global")
    match_id: Optional[str] = Field(default=None)
    bypass_eligibility: bool = Field(default=False, description="Include-only: skip eligibility checks")
    expires_at: Optional[datetime] = Field(default=None)

    @property
    def is_native_id(self) -> bool:
        return self.identifier_type != HANDLE

    @property
    def key(self) -> str:
        if self.is_native_id:
            return profile_key(self.identifier, None)
        return profile_key(None, self.identifier)

    @property
    def declared_handle(self) -> str:
        """Handle to fall back on when the identifier cannot be resolved."""
        if self.handle:
            return self.handle
        return "" if self.is_native_id else self.identifier

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= (now or datetime.now(timezone.utc))

    def applies_to(self, platform: str, match_id: Optional[str]) -> bool:
        if self.platform != platform:
            return False
        if self.scope == "global":
            return True
        return match_id is not None and self.match_id == match_id

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "identifier": self.identifier,
            "identifier_type": self.identifier_type,
            "handle": self.handle,
            "scope": self.scope,
            "match_id": self.match_id,
            "bypass_eligibility": self.bypass_eligibility if self.kind == "include" else False,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


class OverrideSet(BaseModel):
    """Live rules for one platform/match, split by kind."""
    include: List[OverrideRule] = Field(default_factory=list)
    exclude: List[OverrideRule] = Field(default_factory=list)

    @classmethod
    def from_rules(cls, rules: Iterable[OverrideRule]) -> "OverrideSet":
        include, exclude = [], []
        for rule in rules:
            (include if rule.kind == "include" else exclude).append(rule)
        return cls(include=include, exclude=exclude)


class OverrideStore:
    """
    Base store. Subclasses provide `_load_rules`; expiry filtering and
    scope merging happen here.
    """

    def _load_rules(self, platform: str, match_id: Optional[str]) -> List[OverrideRule]:
        raise NotImplementedError

    def get_overrides(
        self,
        platform: str,
        match_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OverrideSet:
        now = now or datetime.now(timezone.utc)
        rules = [
            rule
            for rule in self._load_rules(platform, match_id)
            if rule.applies_to(platform, match_id) and not rule.is_expired(now)
        ]
        return OverrideSet.from_rules(rules)


class InMemoryOverrideStore(OverrideStore):
    """Rules held in process memory (tests, and deployments without a database)."""

    def __init__(self, rules: Optional[Iterable[OverrideRule]] = None):
        self._rules: List[OverrideRule] = list(rules or [])

    def add_rule(self, rule: OverrideRule) -> None:
        self._rules.append(rule)

    def _load_rules(self, platform: str, match_id: Optional[str]) -> List[OverrideRule]:
        return list(self._rules)


class SqliteOverrideStore(OverrideStore):
    """Rules stored in the account_overrides table."""

    def __init__(self, database: Database):
        self.database = database

    def add_rule(self, rule: OverrideRule) -> int:
        return self.database.create_override(
            platform=rule.platform,
            kind=rule.kind,
            identifier=rule.identifier,
            identifier_type=rule.identifier_type,
            handle=rule.handle,
            scope=rule.scope,
            match_id=rule.match_id,
            bypass_eligibility=rule.bypass_eligibility,
            expires_at=rule.expires_at,
        )

    def _load_rules(self, platform: str, match_id: Optional[str]) -> List[OverrideRule]:
        rules = []
        for row in self.database.list_overrides(platform, match_id):
            try:
                rules.append(OverrideRule(
                    kind=row["kind"],
                    platform=row["platform"],
                    identifier=row["identifier"],
                    identifier_type=row["identifier_type"],
                    handle=row["handle"],
                    scope=row["scope"],
                    match_id=row["match_id"],
                    bypass_eligibility=bool(row["bypass_eligibility"]),
                    expires_at=row["expires_at"],
                ))
            except ValueError as e:
                logger.warning(f"Skipping malformed override row {row.get('id')}: {e}")
        return rules


__all__ = [
    "OverrideRule",
    "OverrideSet",
    "OverrideStore",
    "InMemoryOverrideStore",
    "SqliteOverrideStore",
]
