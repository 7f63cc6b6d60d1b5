"""Rule spec file loading with validation.

The desired state can be declared in a YAML file instead of environment
variables:

    apiVersion: cf-switch/v1
    kind: RuleSpec
    spec:
      hostnames:
        - admin.example.com
        - grafana.example.com
      defaultEnabled: false

The flat form (hostnames/defaultEnabled at the top level) is accepted too.

SECURITY: File size is checked before reading. Input validation is
performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import MAX_HOSTNAMES, MAX_SPEC_FILE_SIZE_BYTES
from .expression import invalid_hostnames, normalize_hostnames, parse_hostnames

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


class RuleSpec(BaseModel):
    """Desired state of the managed rule."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    hostnames: list[str] = Field(min_length=1)
    default_enabled: bool | None = Field(None, alias="defaultEnabled")

    @field_validator("hostnames", mode="before")
    @classmethod
    def normalize(cls, v: Any) -> Any:
        if isinstance(v, str):
            return parse_hostnames(v)
        if isinstance(v, list) and all(isinstance(item, str) for item in v):
            return normalize_hostnames(v)
        return v

    @field_validator("hostnames")
    @classmethod
    def validate_hostnames(cls, v: list[str]) -> list[str]:
        if len(v) > MAX_HOSTNAMES:
            raise ValueError(f"at most {MAX_HOSTNAMES} hostnames are allowed")
        invalid = invalid_hostnames(v)
        if invalid:
            raise ValueError(f"invalid hostnames: {invalid}")
        return v


def load_rule_spec(spec_path: Path) -> RuleSpec:
    """Load and validate a rule spec from YAML.

    Args:
        spec_path: Path to the YAML file.

    Returns:
        Validated RuleSpec with normalized hostnames.

    Raises:
        SpecLoadError: If the spec cannot be loaded or fails validation.
    """
    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {spec_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_path}")

    # Kubernetes-style wrapper: apiVersion, kind, metadata, spec
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec")
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {spec_path}")
    else:
        spec_data = raw_data

    try:
        spec = RuleSpec.model_validate(spec_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {spec_path}:\n{error_list}") from e

    logger.info(
        "Loaded rule spec from %s",
        spec_path,
        extra={"hostname_count": len(spec.hostnames)},
    )
    return spec
