"""Reconciliation loop for the managed Cloudflare WAF custom rule.

This module implements the control loop:
1. Resolve the zone entrypoint ruleset for the firewall-custom phase,
   creating it if the zone has none yet
2. Locate the managed rule by its description marker
3. Create the rule if missing, or patch its expression if it drifted
4. Cache the confirmed remote state for readers
5. Repeat on interval

The cached (rule, ruleset id) pair is the only shared state. Every writer
(the loop, toggle_rule, update_hosts) holds the write lock across its remote
call, so at most one mutation of the rule is ever in flight and no writer
can patch from a stale snapshot. Readers share the lock and always receive
a copy of the cache.

Drift in `enabled` is deliberately NOT corrected by the loop: the remote
value is adopted as-is, so a manual toggle in the Cloudflare dashboard
sticks until changed again through toggle_rule.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from .cloudflare import CloudflareClient, CloudflareError, find_rule_by_description
from .config import MAX_HOSTNAMES, RECONCILE_TICK_TIMEOUT_SECONDS, Config
from .expression import build_expression, invalid_hostnames, normalize_hostnames
from .locks import ReadWriteLock
from .metrics import Metrics
from .models import (
    BLOCK_ACTION,
    HTTP_REQUEST_FIREWALL_CUSTOM_PHASE,
    RULE_DESCRIPTION,
    CloudflareRule,
    CloudflareRuleset,
    Rule,
)

logger = logging.getLogger(__name__)


class ReconcilerError(Exception):
    """Base class for reconciler failures."""

    pass


class RuleNotInitializedError(ReconcilerError):
    """No rule has been reconciled yet; nothing was sent to Cloudflare."""

    pass


class InvalidHostnamesError(ReconcilerError, ValueError):
    """The requested hostname list is empty or unusable after normalization."""

    pass


class ReconcileError(ReconcilerError):
    """A reconciliation pass failed; the cached rule was left untouched."""

    pass


class RuleUpdateError(ReconcilerError):
    """An explicit rule update failed; the cached rule was left untouched."""

    pass


class Reconciler:
    """Owns the cached rule and converges the remote rule toward config.

    Args:
        client: Cloudflare API client.
        config: Validated service configuration (desired state).
        metrics: Optional metrics sink.
        tick_timeout_seconds: Deadline applied to each periodic pass.
    """

    def __init__(
        self,
        client: CloudflareClient,
        config: Config,
        metrics: Metrics | None = None,
        tick_timeout_seconds: float = RECONCILE_TICK_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self._config = config
        self._metrics = metrics
        self._tick_timeout_seconds = tick_timeout_seconds

        self._lock = ReadWriteLock()
        self._current_rule: Rule | None = None
        self._ruleset_id = ""

        self._shutdown_event = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None

    @property
    def config(self) -> Config:
        """Get the reconciler configuration."""
        return self._config

    @property
    def is_running(self) -> bool:
        """Whether the periodic loop is active."""
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        """Reconcile once, then start the periodic loop.

        The first pass runs inline so the service only reports ready after
        drift has been observed and fixed.

        Raises:
            ReconcileError: If the initial pass fails; no loop is started.
        """
        if self.is_running:
            raise RuntimeError("Reconciler already started")

        await self.reconcile_once()

        self._shutdown_event.clear()
        self._loop_task = asyncio.create_task(self._run_loop(), name="cf-switch-reconcile")
        logger.info(
            "Reconciler started",
            extra={"interval_seconds": self._config.reconcile_interval_seconds},
        )

    async def stop(self) -> None:
        """Stop the periodic loop and wait until it has exited."""
        if self._loop_task is None:
            return

        logger.info("Shutdown requested")
        self._shutdown_event.set()
        await self._loop_task
        self._loop_task = None

    async def get_current_rule(self) -> Rule:
        """Return a copy of the cached rule.

        Raises:
            RuleNotInitializedError: Before the first successful pass.
        """
        async with self._lock.read():
            if self._current_rule is None:
                raise RuleNotInitializedError("no rule available, reconciliation has not completed")
            return self._current_rule.model_copy(deep=True)

    async def toggle_rule(self, enabled: bool) -> Rule:
        """Enable or disable the rule.

        Only `enabled` is sent to Cloudflare; on success only `enabled` and
        `version` change in the cache.

        Raises:
            RuleNotInitializedError: Before the first successful pass.
            RuleUpdateError: If the Cloudflare call failed.
        """
        async with self._lock.write():
            current = self._require_rule()

            try:
                updated = await self._client.update_rule(
                    self._config.zone_id,
                    self._ruleset_id,
                    current.id,
                    {"enabled": enabled},
                )
            except CloudflareError as e:
                raise RuleUpdateError(f"failed to update rule: {e}") from e

            current.enabled = updated.enabled
            current.version = updated.version

            if self._metrics is not None:
                self._metrics.record_toggle(enabled)
                self._metrics.set_rule_enabled(current.enabled)

            logger.info(
                "Rule toggled successfully",
                extra={
                    "rule_id": current.id,
                    "enabled": current.enabled,
                    "version": current.version,
                },
            )
            return current.model_copy(deep=True)

    async def update_hosts(self, hostnames: Iterable[str]) -> Rule:
        """Replace the hostnames the rule matches.

        Only `expression` is sent to Cloudflare; on success `hostnames`,
        `expression` and `version` change in the cache.

        Raises:
            InvalidHostnamesError: If no usable hostname remains after
                normalization or more than MAX_HOSTNAMES remain (checked
                before any remote call).
            RuleNotInitializedError: Before the first successful pass.
            RuleUpdateError: If the Cloudflare call failed.
        """
        normalized = normalize_hostnames(hostnames)
        if not normalized:
            raise InvalidHostnamesError("no valid hostnames provided")
        if len(normalized) > MAX_HOSTNAMES:
            raise InvalidHostnamesError(f"at most {MAX_HOSTNAMES} hostnames are allowed")
        invalid = invalid_hostnames(normalized)
        if invalid:
            raise InvalidHostnamesError(f"invalid hostnames: {invalid}")

        expression = build_expression(normalized)

        async with self._lock.write():
            current = self._require_rule()

            try:
                updated = await self._client.update_rule(
                    self._config.zone_id,
                    self._ruleset_id,
                    current.id,
                    {"expression": expression},
                )
            except CloudflareError as e:
                raise RuleUpdateError(f"failed to update rule expression: {e}") from e

            current.hostnames = normalized
            current.expression = updated.expression
            current.version = updated.version

            logger.info(
                "Rule hosts updated successfully",
                extra={
                    "rule_id": current.id,
                    "hostnames": normalized,
                    "expression": current.expression,
                    "version": current.version,
                },
            )
            return current.model_copy(deep=True)

    async def reconcile_once(self) -> Rule:
        """Execute a single reconciliation pass.

        Returns:
            Copy of the rule as cached after the pass.

        Raises:
            ReconcileError: If any Cloudflare call failed. Nothing is cached
                in that case, not even the ruleset id.
        """
        logger.debug("Starting reconciliation")

        async with self._lock.write():
            try:
                ruleset = await self._ensure_entrypoint_ruleset()
                rule = await self._ensure_rule(ruleset)
            except CloudflareError as e:
                raise ReconcileError(f"reconciliation failed: {e}") from e

            self._ruleset_id = ruleset.id
            self._current_rule = rule

            if self._metrics is not None:
                self._metrics.set_rule_enabled(rule.enabled)

            logger.debug("Reconciliation completed successfully", extra={"rule_id": rule.id})
            return rule.model_copy(deep=True)

    def _require_rule(self) -> Rule:
        if self._current_rule is None or not self._ruleset_id:
            raise RuleNotInitializedError("rule not initialized")
        return self._current_rule

    async def _ensure_entrypoint_ruleset(self) -> CloudflareRuleset:
        phase = HTTP_REQUEST_FIREWALL_CUSTOM_PHASE

        ruleset = await self._client.get_entrypoint_ruleset(self._config.zone_id, phase)
        if ruleset is not None:
            logger.debug("Found existing entrypoint ruleset", extra={"ruleset_id": ruleset.id})
            return ruleset

        logger.info("Creating entrypoint ruleset", extra={"phase": phase})
        ruleset = await self._client.create_entrypoint_ruleset(self._config.zone_id, phase)
        logger.info("Created entrypoint ruleset", extra={"ruleset_id": ruleset.id})
        return ruleset

    async def _ensure_rule(self, ruleset: CloudflareRuleset) -> Rule:
        """Create or converge the managed rule and return the new cache value."""
        hostnames = list(self._config.dest_hostnames)
        expected_expression = build_expression(hostnames)
        existing = find_rule_by_description(ruleset, RULE_DESCRIPTION)

        if existing is None:
            created = await self._client.add_rule(
                self._config.zone_id,
                ruleset.id,
                CloudflareRule(
                    action=BLOCK_ACTION,
                    expression=expected_expression,
                    description=RULE_DESCRIPTION,
                    enabled=self._config.rule_default_enabled,
                ),
            )
            logger.info(
                "Created new rule",
                extra={
                    "rule_id": created.id,
                    "enabled": created.enabled,
                    "expression": created.expression,
                },
            )
            return Rule.from_cloudflare(created, hostnames)

        if existing.expression == expected_expression:
            logger.debug("Rule is up to date", extra={"rule_id": existing.id})
            return Rule.from_cloudflare(existing, hostnames)

        logger.info(
            "Rule expression needs update",
            extra={
                "rule_id": existing.id,
                "current": existing.expression,
                "expected": expected_expression,
            },
        )
        updated = await self._client.update_rule(
            self._config.zone_id,
            ruleset.id,
            existing.id,
            {"expression": expected_expression},
        )
        logger.info(
            "Updated rule",
            extra={
                "rule_id": updated.id,
                "expression": updated.expression,
                "version": updated.version,
            },
        )
        return Rule.from_cloudflare(updated, hostnames)

    async def _run_loop(self) -> None:
        """Run reconciliation passes until stop() is called.

        A failed pass is logged and counted, never raised: the next tick
        retries from scratch.
        """
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.reconcile_interval_seconds,
                )
                break
            except TimeoutError:
                pass

            try:
                await asyncio.wait_for(self.reconcile_once(), timeout=self._tick_timeout_seconds)
            except (ReconcilerError, TimeoutError) as e:
                self._record_pass(success=False)
                logger.error(
                    "Reconciliation failed",
                    extra={"error": str(e) or type(e).__name__, "error_type": type(e).__name__},
                )
            except Exception as e:
                # Unexpected bug: keep the loop alive, but log the traceback
                self._record_pass(success=False)
                logger.exception("Reconciliation failed unexpectedly", extra={"error": str(e)})
            else:
                self._record_pass(success=True)

        logger.info("Reconciliation loop stopped")

    def _record_pass(self, success: bool) -> None:
        if self._metrics is not None:
            self._metrics.record_reconcile(success)
