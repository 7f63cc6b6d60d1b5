"""In-memory Cloudflare ruleset state.

Holds zone entrypoint rulesets and their rules the way the Rulesets API
reports them, so the client and reconciler can be exercised end to end
without network access.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from typing import Any


@dataclass
class MockRule:
    """A rule stored inside a mock ruleset."""

    id: str
    action: str
    expression: str
    description: str
    enabled: bool
    version: int = 1

    def to_api(self, version_as_string: bool = False) -> dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "expression": self.expression,
            "description": self.description,
            "enabled": self.enabled,
            "version": str(self.version) if version_as_string else self.version,
        }


@dataclass
class MockRuleset:
    """A zone entrypoint ruleset."""

    id: str
    zone_id: str
    phase: str
    name: str = ""
    description: str = ""
    kind: str = "zone"
    rules: list[MockRule] = field(default_factory=list)

    def to_api(self, version_as_string: bool = False) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "kind": self.kind,
            "phase": self.phase,
            "rules": [rule.to_api(version_as_string) for rule in self.rules],
        }


def new_id() -> str:
    """Generate a Cloudflare-style 32 character hex id."""
    return uuid.uuid4().hex


class MockCloudflareState:
    """Mutable state behind the mock API."""

    def __init__(self) -> None:
        self._rulesets: dict[str, MockRuleset] = {}

    @property
    def ruleset_count(self) -> int:
        return len(self._rulesets)

    def get_entrypoint(self, zone_id: str, phase: str) -> MockRuleset | None:
        for ruleset in self._rulesets.values():
            if ruleset.zone_id == zone_id and ruleset.phase == phase:
                return ruleset
        return None

    def get_ruleset(self, ruleset_id: str) -> MockRuleset | None:
        return self._rulesets.get(ruleset_id)

    def create_ruleset(
        self,
        zone_id: str,
        phase: str,
        name: str = "",
        description: str = "",
        kind: str = "zone",
    ) -> MockRuleset:
        ruleset = MockRuleset(
            id=new_id(),
            zone_id=zone_id,
            phase=phase,
            name=name,
            description=description,
            kind=kind,
        )
        self._rulesets[ruleset.id] = ruleset
        return ruleset

    def add_rule(
        self,
        ruleset_id: str,
        *,
        expression: str,
        description: str,
        enabled: bool,
        action: str = "block",
        version: int = 1,
    ) -> MockRule:
        """Append a rule to a ruleset.

        Raises:
            KeyError: If the ruleset does not exist.
        """
        ruleset = self._rulesets[ruleset_id]
        rule = MockRule(
            id=new_id(),
            action=action,
            expression=expression,
            description=description,
            enabled=enabled,
            version=version,
        )
        ruleset.rules.append(rule)
        return rule

    def update_rule(self, ruleset_id: str, rule_id: str, updates: dict[str, Any]) -> MockRule:
        """Apply a sparse update and bump the rule version.

        Raises:
            KeyError: If the ruleset or rule does not exist.
        """
        rule = self.find_rule(ruleset_id, rule_id)
        if rule is None:
            raise KeyError(rule_id)
        for key in ("action", "expression", "description", "enabled"):
            if key in updates:
                setattr(rule, key, updates[key])
        rule.version += 1
        return rule

    def find_rule(self, ruleset_id: str, rule_id: str) -> MockRule | None:
        ruleset = self._rulesets.get(ruleset_id)
        if ruleset is None:
            return None
        for rule in ruleset.rules:
            if rule.id == rule_id:
                return rule
        return None

    def rules_with_description(self, zone_id: str, phase: str, description: str) -> list[MockRule]:
        ruleset = self.get_entrypoint(zone_id, phase)
        if ruleset is None:
            return []
        return [copy.copy(rule) for rule in ruleset.rules if rule.description == description]

    def clear(self) -> None:
        self._rulesets.clear()
