"""Cloudflare API mock for integration testing.

Provides an in-memory implementation of the Rulesets API endpoints used by
cf-switch, served through httpx.MockTransport so the real client code runs
unchanged.

Key Features:
- In-memory zones, entrypoint rulesets and rules
- Rule endpoints answer with the whole ruleset, like the real API
- Error, rate-limit and transport failure injection
- Request log for asserting on exactly what was sent

Usage:
    from cloudflare_mock import MockCloudflareAPI, create_mock_client

    api = MockCloudflareAPI()
    async with create_mock_client(api) as client:
        reconciler = Reconciler(client, config)
        await reconciler.reconcile_once()

    assert len(api.requests_for("PATCH")) == 0
"""

from __future__ import annotations

from typing import Any

from cfswitch.cloudflare import CloudflareClient

from .api import InjectedFault, MockCloudflareAPI, RecordedRequest, envelope
from .state import MockCloudflareState, MockRule, MockRuleset, new_id

MOCK_BASE_URL = "https://api.cloudflare.test/client/v4"
MOCK_API_TOKEN = "test-cloudflare-token"
MOCK_ZONE_ID = "0123456789abcdef0123456789abcdef"


async def _no_sleep(seconds: float) -> None:
    return None


def create_mock_client(api: MockCloudflareAPI, **kwargs: Any) -> CloudflareClient:
    """Create a CloudflareClient wired to the mock API.

    Backoff sleeps are skipped unless a `sleep` coroutine is passed.
    """
    kwargs.setdefault("sleep", _no_sleep)
    return CloudflareClient(
        MOCK_API_TOKEN,
        base_url=MOCK_BASE_URL,
        transport=api.transport(),
        **kwargs,
    )


__all__ = [
    "MOCK_API_TOKEN",
    "MOCK_BASE_URL",
    "MOCK_ZONE_ID",
    "InjectedFault",
    "MockCloudflareAPI",
    "MockCloudflareState",
    "MockRule",
    "MockRuleset",
    "RecordedRequest",
    "create_mock_client",
    "envelope",
    "new_id",
]
