"""Configuration management with validation.

All settings come from environment variables and are validated at load
time, so a misconfigured process refuses to start instead of failing on
its first reconciliation.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from .expression import invalid_hostnames, parse_hostnames

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_CLOUDFLARE_BASE_URL = "https://api.cloudflare.com/client/v4"
DEFAULT_HTTP_ADDR = ":8080"
DEFAULT_AUTH_TOKEN_FILE = "/var/run/secrets/cf-switch/api-token"

DEFAULT_RECONCILE_INTERVAL_SECONDS = 60.0
MAX_RECONCILE_INTERVAL_SECONDS = 24 * 3600.0

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
MAX_REQUEST_TIMEOUT_SECONDS = 300.0

# Each periodic pass gets its own deadline so one slow tick cannot starve the next
RECONCILE_TICK_TIMEOUT_SECONDS = 60.0

MAX_REQUEST_ATTEMPTS = 3
MAX_RETRY_WAIT_SECONDS = 60

MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max rule spec file
MAX_HOSTNAMES = 500

VALID_ZONE_ID_PATTERN = r"^[0-9a-f]{32}$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_DURATION_PATTERN = re.compile(r"^([0-9]+(?:\.[0-9]+)?)(ms|s|m|h)?$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str) -> float:
    """Parse a duration such as "90", "90s", "5m" or "1h" into seconds.

    Raises:
        ValueError: If the value is not a recognised duration.
    """
    match = _DURATION_PATTERN.match(value.strip().lower())
    if not match:
        raise ValueError(f"invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[unit or "s"]


def parse_bool(value: str) -> bool:
    """Parse a boolean environment value.

    Raises:
        ValueError: If the value is not a recognised boolean.
    """
    normalized = value.strip().lower()
    if normalized in ("true", "1", "yes", "on"):
        return True
    if normalized in ("false", "0", "no", "off"):
        return False
    raise ValueError(f"invalid boolean: {value!r}")


def split_http_addr(addr: str) -> tuple[str, int]:
    """Split "host:port" (host optional) into its parts.

    Raises:
        ValueError: If the port is missing or not a valid TCP port.
    """
    host, sep, port_str = addr.rpartition(":")
    if not sep or not port_str.isdigit():
        raise ValueError(f"invalid address {addr!r}, expected [host]:port")
    port = int(port_str)
    if not 0 < port < 65536:
        raise ValueError(f"port out of range in {addr!r}")
    return (host or "0.0.0.0"), port


@dataclass(frozen=True)
class Config:
    """Service configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    zone_id: str
    api_token: str = field(repr=False)
    dest_hostnames: tuple[str, ...]

    # Desired rule state
    rule_default_enabled: bool = False
    rule_spec_file: Path | None = None

    # Server
    http_addr: str = DEFAULT_HTTP_ADDR
    auth_token_file: Path = field(default_factory=lambda: Path(DEFAULT_AUTH_TOKEN_FILE))
    running_locally: bool = False

    # Timing
    reconcile_interval_seconds: float = DEFAULT_RECONCILE_INTERVAL_SECONDS
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS

    # Cloudflare endpoint
    cloudflare_base_url: str = DEFAULT_CLOUDFLARE_BASE_URL

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        Every problem is collected so the operator sees them all at once.
        """
        errors: list[str] = []

        if not self.zone_id:
            errors.append("CLOUDFLARE_ZONE_ID is required")
        elif not re.match(VALID_ZONE_ID_PATTERN, self.zone_id):
            errors.append(f"CLOUDFLARE_ZONE_ID must be a 32 character hex id: {self.zone_id}")

        if not self.api_token:
            errors.append("CLOUDFLARE_API_TOKEN is required")

        if not self.dest_hostnames:
            errors.append("DEST_HOSTNAMES must contain at least one hostname")
        elif len(self.dest_hostnames) > MAX_HOSTNAMES:
            errors.append(f"DEST_HOSTNAMES cannot contain more than {MAX_HOSTNAMES} hostnames")
        else:
            for hostname in invalid_hostnames(self.dest_hostnames):
                errors.append(f"DEST_HOSTNAMES contains an invalid hostname: {hostname!r}")
            if list(self.dest_hostnames) != parse_hostnames(",".join(self.dest_hostnames)):
                errors.append("DEST_HOSTNAMES must be lowercase, unique and sorted")

        try:
            split_http_addr(self.http_addr)
        except ValueError as e:
            errors.append(f"HTTP_ADDR is invalid: {e}")

        if not 0 < self.reconcile_interval_seconds <= MAX_RECONCILE_INTERVAL_SECONDS:
            errors.append(
                f"RECONCILE_INTERVAL must be positive and at most "
                f"{MAX_RECONCILE_INTERVAL_SECONDS:.0f} seconds"
            )

        if not 0 < self.request_timeout_seconds <= MAX_REQUEST_TIMEOUT_SECONDS:
            errors.append(
                f"CLOUDFLARE_TIMEOUT must be positive and at most "
                f"{MAX_REQUEST_TIMEOUT_SECONDS:.0f} seconds"
            )

        if not self.cloudflare_base_url.startswith(("https://", "http://")):
            errors.append(
                f"CLOUDFLARE_API_BASE_URL must be an http(s) URL: {self.cloudflare_base_url}"
            )

        if self.log_level not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {VALID_LOG_LEVELS}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def http_host(self) -> str:
        return split_http_addr(self.http_addr)[0]

    @property
    def http_port(self) -> int:
        return split_http_addr(self.http_addr)[1]

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            CLOUDFLARE_ZONE_ID: Zone holding the managed rule (required)
            CLOUDFLARE_API_TOKEN: Token for the Cloudflare API (required)
            DEST_HOSTNAMES: Comma-separated hostnames to block (required
                unless RULE_SPEC_FILE is set)
            RULE_SPEC_FILE: Optional YAML file with hostnames and defaultEnabled
            CF_RULE_DEFAULT_ENABLED: Enabled flag used when creating the rule
                (default: false)
            HTTP_ADDR: Listen address of the API (default: :8080)
            RECONCILE_INTERVAL: Time between passes, e.g. 60, 60s, 5m (default: 60s)
            CLOUDFLARE_TIMEOUT: Per-request timeout (default: 30s)
            CLOUDFLARE_API_BASE_URL: API base URL (default: Cloudflare v4)
            AUTH_TOKEN_FILE: File holding the API bearer token
            RUNNING_LOCALLY: If "true", use an ephemeral API token (default: false)
            LOG_LEVEL: Root log level (default: INFO)
        """

        def get_duration(key: str, default: float) -> float:
            value = os.environ.get(key)
            if not value:
                return default
            try:
                return parse_duration(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a duration: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "")
            if not value:
                return default
            try:
                return parse_bool(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a boolean: {value}") from e

        dest_hostnames = parse_hostnames(os.environ.get("DEST_HOSTNAMES", ""))
        default_enabled = get_bool("CF_RULE_DEFAULT_ENABLED", False)

        spec_file_value = os.environ.get("RULE_SPEC_FILE")
        rule_spec_file = Path(spec_file_value) if spec_file_value else None
        if rule_spec_file is not None:
            # Imported here; spec_loader depends on this module's constants
            from .spec_loader import SpecLoadError, load_rule_spec

            try:
                spec = load_rule_spec(rule_spec_file)
            except SpecLoadError as e:
                raise ConfigurationError(str(e)) from e

            if dest_hostnames:
                logger.warning(
                    "DEST_HOSTNAMES ignored, rule spec file takes precedence",
                    extra={"rule_spec_file": str(rule_spec_file)},
                )
            dest_hostnames = spec.hostnames
            if spec.default_enabled is not None:
                default_enabled = spec.default_enabled

        return cls(
            zone_id=os.environ.get("CLOUDFLARE_ZONE_ID", ""),
            api_token=os.environ.get("CLOUDFLARE_API_TOKEN", ""),
            dest_hostnames=tuple(dest_hostnames),
            rule_default_enabled=default_enabled,
            rule_spec_file=rule_spec_file,
            http_addr=os.environ.get("HTTP_ADDR", DEFAULT_HTTP_ADDR),
            auth_token_file=Path(os.environ.get("AUTH_TOKEN_FILE", DEFAULT_AUTH_TOKEN_FILE)),
            running_locally=get_bool("RUNNING_LOCALLY", False),
            reconcile_interval_seconds=get_duration(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            request_timeout_seconds=get_duration(
                "CLOUDFLARE_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS
            ),
            cloudflare_base_url=os.environ.get(
                "CLOUDFLARE_API_BASE_URL", DEFAULT_CLOUDFLARE_BASE_URL
            ).rstrip("/"),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
