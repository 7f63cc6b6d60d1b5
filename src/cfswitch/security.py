"""Bearer token handling for the rule API.

The API that toggles the rule is protected by a single shared bearer token:

- In a cluster the token lives in a mounted secret file. If the file is
  missing or empty a random token is generated and written with mode 0600,
  so the first replica to start provisions it.
- When running locally an ephemeral token is generated per process and
  logged, since there is no secret store to read it from.

SECURITY INVARIANTS:
1. The token is compared in constant time
2. The token is never logged, except the ephemeral local token
3. A generated token file is readable by its owner only
"""

from __future__ import annotations

import base64
import hmac
import logging
import os
import secrets
from pathlib import Path
from typing import Protocol

from .config import Config

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
TOKEN_FILE_MODE = 0o600


class TokenError(Exception):
    """Raised when the API token cannot be read or provisioned."""

    pass


class TokenProvider(Protocol):
    """Source of the API bearer token."""

    def ensure_token(self) -> str:
        """Return the token, provisioning it if needed. Idempotent."""
        ...


def generate_token() -> str:
    """Generate a random URL-safe token."""
    return base64.urlsafe_b64encode(secrets.token_bytes(TOKEN_BYTES)).decode("ascii")


def tokens_match(presented: str, expected: str) -> bool:
    """Compare two tokens in constant time."""
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


class FileTokenProvider:
    """Token stored in a (mounted secret) file."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._token: str | None = None

    @property
    def path(self) -> Path:
        return self._path

    def ensure_token(self) -> str:
        if self._token is not None:
            return self._token

        try:
            existing = self._path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            existing = ""
        except OSError as e:
            raise TokenError(f"Failed to read API token file {self._path}: {e}") from e

        if existing:
            logger.info("Loaded API token from file", extra={"path": str(self._path)})
            self._token = existing
            return existing

        token = generate_token()
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, TOKEN_FILE_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(token)
            # O_CREAT mode is masked by umask and ignored for existing files
            os.chmod(self._path, TOKEN_FILE_MODE)
        except OSError as e:
            raise TokenError(f"Failed to write API token file {self._path}: {e}") from e

        log_security_audit_event(
            "api_token_generated",
            target_resource=str(self._path),
            action="create",
            result="success",
        )
        self._token = token
        return token


class LocalTokenProvider:
    """Ephemeral token for local development."""

    def __init__(self) -> None:
        self._token: str | None = None

    def ensure_token(self) -> str:
        if self._token is None:
            self._token = generate_token()
            logger.warning(
                "Running locally with an ephemeral API token",
                extra={"api_token": self._token},
            )
        return self._token


def get_token_provider(config: Config) -> TokenProvider:
    """Select the token provider for this process."""
    if config.running_locally:
        return LocalTokenProvider()
    return FileTokenProvider(config.auth_token_file)


def log_security_audit_event(
    event_type: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    Args:
        event_type: Type of security event (auth, token, toggle, etc.)
        target_resource: Resource being accessed.
        action: Action being performed.
        result: Result of the action (success, failure, denied).
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )
