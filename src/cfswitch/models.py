"""Pydantic models for the Cloudflare Rulesets API and the managed rule.

These models provide:
1. Validation at the wire boundary (fail fast, fail loudly)
2. Tolerant decoding of the rule version (integer or string-encoded integer)
3. The cached rule snapshot and the HTTP API request/response bodies
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Constants
# =============================================================================

# Marker used to locate the managed rule inside the entrypoint ruleset
RULE_DESCRIPTION = "cf-switch:global"

# Phase for Cloudflare WAF custom rules
HTTP_REQUEST_FIREWALL_CUSTOM_PHASE = "http_request_firewall_custom"

BLOCK_ACTION = "block"

_INTEGER_STRING = re.compile(r"^-?[0-9]+$")


def parse_flexible_int(value: Any) -> int:
    """Decode a value the remote API may send as a number or a numeric string.

    Args:
        value: Raw JSON value.

    Returns:
        The integer value; None decodes to 0.

    Raises:
        ValueError: For booleans, floats, non-numeric strings and other types.
    """
    if value is None:
        return 0
    # bool is a subclass of int and must not pass as one
    if isinstance(value, bool):
        raise ValueError(f"version must be an integer or numeric string, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and _INTEGER_STRING.match(value):
        return int(value)
    raise ValueError(f"version must be an integer or numeric string, got {value!r}")


# =============================================================================
# Cloudflare wire models
# =============================================================================


class CloudflareRule(BaseModel):
    """A single rule inside a Cloudflare ruleset."""

    model_config = {"extra": "ignore"}

    id: str = ""
    action: str = ""
    expression: str = ""
    description: str = ""
    enabled: bool = False
    version: int = 0

    @field_validator("version", mode="before")
    @classmethod
    def validate_version(cls, v: Any) -> int:
        return parse_flexible_int(v)

    def to_create_payload(self) -> dict[str, Any]:
        """Body for the add-rule endpoint (server assigns id and version)."""
        return self.model_dump(include={"action", "expression", "description", "enabled"})


class CloudflareRuleset(BaseModel):
    """A Cloudflare ruleset (the container the managed rule lives in)."""

    model_config = {"extra": "ignore"}

    id: str
    name: str = ""
    description: str = ""
    kind: str = ""
    phase: str = ""
    rules: list[CloudflareRule] = Field(default_factory=list)

    @field_validator("rules", mode="before")
    @classmethod
    def validate_rules(cls, v: Any) -> Any:
        # An empty ruleset is reported with "rules": null or without the key
        return [] if v is None else v


class CloudflareErrorDetail(BaseModel):
    """One entry of the envelope's errors list."""

    model_config = {"extra": "ignore"}

    code: int = 0
    message: str = ""

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class CloudflareEnvelope(BaseModel):
    """Generic Cloudflare API response envelope."""

    model_config = {"extra": "ignore"}

    success: bool
    errors: list[CloudflareErrorDetail] = Field(default_factory=list)
    result: Any = None

    @field_validator("errors", mode="before")
    @classmethod
    def validate_errors(cls, v: Any) -> Any:
        return [] if v is None else v


# =============================================================================
# Managed rule snapshot
# =============================================================================


class Rule(BaseModel):
    """Cached representation of the managed Cloudflare rule."""

    id: str
    enabled: bool
    expression: str
    hostnames: list[str] = Field(default_factory=list)
    description: str = RULE_DESCRIPTION
    version: int = 0

    @classmethod
    def from_cloudflare(cls, rule: CloudflareRule, hostnames: list[str]) -> Rule:
        return cls(
            id=rule.id,
            enabled=rule.enabled,
            expression=rule.expression,
            hostnames=list(hostnames),
            description=rule.description,
            version=rule.version,
        )


# =============================================================================
# HTTP API bodies
# =============================================================================


class ToggleRequest(BaseModel):
    """Body of POST /v1/rule/enable."""

    enabled: bool


class UpdateHostsRequest(BaseModel):
    """Body of PUT /v1/rule/hosts."""

    hostnames: list[str]


class RuleResponse(BaseModel):
    """Rule status returned by the HTTP API."""

    rule_id: str
    enabled: bool
    expression: str
    hostnames: list[str]
    description: str
    version: int

    @classmethod
    def from_rule(cls, rule: Rule) -> RuleResponse:
        return cls(
            rule_id=rule.id,
            enabled=rule.enabled,
            expression=rule.expression,
            hostnames=rule.hostnames,
            description=rule.description,
            version=rule.version,
        )


class ErrorResponse(BaseModel):
    """Error body returned by the HTTP API."""

    error: str
    message: str
