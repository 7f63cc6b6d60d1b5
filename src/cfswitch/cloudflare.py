"""Cloudflare Rulesets API client.

Thin async wrapper over the four calls the reconciler needs:

1. Get the zone entrypoint ruleset for a phase (404 means "not created yet")
2. Create the entrypoint ruleset
3. Add a rule to a ruleset
4. Patch selected fields of a rule

Every request carries a fresh X-Request-ID and is bounded by the client
timeout. Only two failure modes are retried, each with its own backoff:

- HTTP 429: sleep for the server's Retry-After hint, if it is present and
  no longer than MAX_RETRY_WAIT_SECONDS; otherwise give up immediately
- Transport errors (connect, timeout, protocol): linear backoff of
  `attempt` seconds

Anything else is returned to the caller on the first failure.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from .config import (
    DEFAULT_CLOUDFLARE_BASE_URL,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    MAX_REQUEST_ATTEMPTS,
    MAX_RETRY_WAIT_SECONDS,
)
from .metrics import Metrics
from .models import (
    CloudflareEnvelope,
    CloudflareErrorDetail,
    CloudflareRule,
    CloudflareRuleset,
)

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]

ModelT = TypeVar("ModelT", bound=BaseModel)

USER_AGENT = "cf-switch"


class CloudflareError(Exception):
    """Base class for Cloudflare client failures."""

    pass


class CloudflareAPIError(CloudflareError):
    """The API rejected a request (success=false or a non-2xx status).

    Attributes:
        status_code: HTTP status of the response.
        errors: Error entries reported in the response envelope.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        errors: list[CloudflareErrorDetail] | None = None,
    ) -> None:
        self.status_code = status_code
        self.errors = list(errors or [])
        details = "; ".join(str(error) for error in self.errors) or "no error details"
        super().__init__(f"{message} (HTTP {status_code}): {details}")


class RateLimitExceededError(CloudflareError):
    """Rate limited and waiting for the limit to clear is not an option.

    Raised when the Retry-After hint is missing, invalid or too long, or
    when all attempts were used up.
    """

    def __init__(self, message: str, *, retry_after: int | None, attempts: int) -> None:
        self.retry_after = retry_after
        self.attempts = attempts
        super().__init__(message)


class CloudflareTransportError(CloudflareError):
    """The request could not be completed at the transport level."""

    pass


class CloudflareDecodeError(CloudflareError):
    """The response could not be decoded into the expected shape."""

    pass


def find_rule_by_description(
    ruleset: CloudflareRuleset, description: str
) -> CloudflareRule | None:
    """Find the first rule in the ruleset with exactly this description."""
    for rule in ruleset.rules:
        if rule.description == description:
            return rule
    return None


_SECONDS = re.compile(r"^[0-9]+$")


def _parse_retry_after(value: str | None) -> int | None:
    """Parse a Retry-After header given in whole seconds."""
    if value is None:
        return None
    value = value.strip()
    if not _SECONDS.match(value):
        return None
    return int(value)


class CloudflareClient:
    """Async client for the Cloudflare Rulesets API.

    Args:
        api_token: API token with Zone WAF edit permission.
        base_url: API base URL.
        timeout_seconds: Timeout applied to every request.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
        metrics: Optional metrics sink for request durations.
        sleep: Coroutine used for backoff sleeps.
        max_attempts: Attempt ceiling shared by both retry tracks.
        max_retry_wait_seconds: Longest Retry-After hint that is honoured.
    """

    def __init__(
        self,
        api_token: str,
        *,
        base_url: str = DEFAULT_CLOUDFLARE_BASE_URL,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        metrics: Metrics | None = None,
        sleep: SleepFunc = asyncio.sleep,
        max_attempts: int = MAX_REQUEST_ATTEMPTS,
        max_retry_wait_seconds: int = MAX_RETRY_WAIT_SECONDS,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self._http = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
                "User-Agent": USER_AGENT,
            },
        )
        self._metrics = metrics
        self._sleep = sleep
        self._max_attempts = max_attempts
        self._max_retry_wait_seconds = max_retry_wait_seconds

    async def __aenter__(self) -> CloudflareClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._http.aclose()

    async def get_entrypoint_ruleset(self, zone_id: str, phase: str) -> CloudflareRuleset | None:
        """Get the zone entrypoint ruleset for a phase.

        Returns:
            The ruleset, or None if the zone has no entrypoint for the phase yet.

        Raises:
            CloudflareError: On any other failure.
        """
        response = await self._request(
            "GET",
            f"/zones/{zone_id}/rulesets/phases/{phase}/entrypoint",
            endpoint="get_entrypoint_ruleset",
        )

        if response.status_code == httpx.codes.NOT_FOUND:
            logger.debug(
                "Entrypoint ruleset not found",
                extra={"zone_id": zone_id, "phase": phase},
            )
            return None

        result = self._unwrap(response, "get entrypoint ruleset")
        return self._decode(CloudflareRuleset, result, "get entrypoint ruleset")

    async def create_entrypoint_ruleset(self, zone_id: str, phase: str) -> CloudflareRuleset:
        """Create the zone entrypoint ruleset for a phase."""
        payload = {
            "kind": "zone",
            "phase": phase,
            "name": f"{phase} entrypoint",
            "description": f"Managed by cf-switch for {phase} phase",
            "rules": [],
        }

        response = await self._request(
            "POST",
            f"/zones/{zone_id}/rulesets",
            endpoint="create_entrypoint_ruleset",
            payload=payload,
        )
        result = self._unwrap(response, "create entrypoint ruleset")
        return self._decode(CloudflareRuleset, result, "create entrypoint ruleset")

    async def add_rule(
        self, zone_id: str, ruleset_id: str, rule: CloudflareRule
    ) -> CloudflareRule:
        """Append a rule to a ruleset and return the rule as stored remotely."""
        response = await self._request(
            "POST",
            f"/zones/{zone_id}/rulesets/{ruleset_id}/rules",
            endpoint="add_rule",
            payload=rule.to_create_payload(),
        )
        result = self._unwrap(response, "add rule")
        return self._extract_rule(result, "add rule", description=rule.description)

    async def update_rule(
        self,
        zone_id: str,
        ruleset_id: str,
        rule_id: str,
        updates: Mapping[str, Any],
    ) -> CloudflareRule:
        """Patch only the given fields of a rule.

        Args:
            updates: Sparse field mapping, e.g. {"enabled": False}. Fields
                left out are not touched remotely.
        """
        response = await self._request(
            "PATCH",
            f"/zones/{zone_id}/rulesets/{ruleset_id}/rules/{rule_id}",
            endpoint="update_rule",
            payload=dict(updates),
        )
        result = self._unwrap(response, "update rule")
        return self._extract_rule(result, "update rule", rule_id=rule_id)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        endpoint: str,
        payload: Any = None,
    ) -> httpx.Response:
        """Send a request, retrying rate limits and transport failures.

        Raises:
            RateLimitExceededError: If a 429 cannot be waited out.
            CloudflareTransportError: If every attempt failed at the transport level.
        """
        request_id = f"cf-{uuid.uuid4().hex}"
        headers = {"X-Request-ID": request_id}
        start = time.monotonic()
        response: httpx.Response | None = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                response = await self._http.request(method, path, json=payload, headers=headers)
            except httpx.TransportError as e:
                if attempt == self._max_attempts:
                    raise CloudflareTransportError(
                        f"{method} {path} failed after {attempt} attempts: {e}"
                    ) from e

                backoff = float(attempt)
                logger.warning(
                    "Cloudflare request failed, retrying",
                    extra={
                        "attempt": attempt,
                        "max_attempts": self._max_attempts,
                        "wait_seconds": backoff,
                        "error": str(e),
                        "request_id": request_id,
                    },
                )
                await self._sleep(backoff)
                continue

            if response.status_code != httpx.codes.TOO_MANY_REQUESTS:
                break

            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            if (
                retry_after is None
                or retry_after > self._max_retry_wait_seconds
                or attempt == self._max_attempts
            ):
                logger.warning(
                    "Rate limited, giving up",
                    extra={
                        "attempt": attempt,
                        "retry_after": retry_after,
                        "request_id": request_id,
                    },
                )
                raise RateLimitExceededError(
                    f"{method} {path} rate limited and retry would take too long "
                    f"(retry_after={retry_after}, attempts={attempt})",
                    retry_after=retry_after,
                    attempts=attempt,
                )

            logger.warning(
                "Rate limited, retrying",
                extra={
                    "attempt": attempt,
                    "retry_after": retry_after,
                    "request_id": request_id,
                },
            )
            await self._sleep(retry_after)

        # SAFETY: every iteration either breaks with a response or raises
        assert response is not None, "Retry loop completed without a response"

        duration = time.monotonic() - start
        if self._metrics is not None:
            self._metrics.observe_cloudflare_call(method, endpoint, duration)

        logger.debug(
            "Cloudflare API request completed",
            extra={
                "method": method,
                "path": path,
                "status": response.status_code,
                "duration_ms": int(duration * 1000),
                "request_id": request_id,
            },
        )
        return response

    def _unwrap(self, response: httpx.Response, operation: str) -> Any:
        """Validate the response envelope and return its result.

        Raises:
            CloudflareAPIError: If the API reported failure.
            CloudflareDecodeError: If a 2xx response has no valid envelope.
        """
        try:
            data = response.json()
            envelope = CloudflareEnvelope.model_validate(data)
        except (ValueError, ValidationError) as e:
            if not response.is_success:
                raise CloudflareAPIError(
                    f"{operation} failed", status_code=response.status_code
                ) from e
            raise CloudflareDecodeError(f"{operation}: invalid response envelope: {e}") from e

        if not envelope.success or not response.is_success:
            raise CloudflareAPIError(
                f"{operation} failed",
                status_code=response.status_code,
                errors=envelope.errors,
            )

        return envelope.result

    def _decode(self, model: type[ModelT], result: Any, operation: str) -> ModelT:
        try:
            return model.model_validate(result)
        except ValidationError as e:
            raise CloudflareDecodeError(f"{operation}: invalid result: {e}") from e

    def _extract_rule(
        self,
        result: Any,
        operation: str,
        *,
        rule_id: str | None = None,
        description: str | None = None,
    ) -> CloudflareRule:
        """Pull the affected rule out of a rule or ruleset result.

        The rule endpoints answer with the whole updated ruleset. The rule is
        located by id when known, otherwise by description (last match, since
        new rules are appended).
        """
        if not (isinstance(result, dict) and "rules" in result):
            return self._decode(CloudflareRule, result, operation)

        ruleset = self._decode(CloudflareRuleset, result, operation)
        for rule in reversed(ruleset.rules):
            if rule_id is not None:
                if rule.id == rule_id:
                    return rule
            elif rule.description == description:
                return rule

        raise CloudflareDecodeError(
            f"{operation}: rule {rule_id or description!r} missing from returned ruleset"
        )
