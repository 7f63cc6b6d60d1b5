"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for cloudflare_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from cfswitch.config import Config  # noqa: E402
from cloudflare_mock import MOCK_API_TOKEN, MOCK_BASE_URL, MOCK_ZONE_ID, MockCloudflareAPI  # noqa: E402


def make_config(**overrides) -> Config:
    """Build a valid Config pointing at the mock API."""
    values = {
        "zone_id": MOCK_ZONE_ID,
        "api_token": MOCK_API_TOKEN,
        "dest_hostnames": ("admin.example.com", "grafana.example.com"),
        "cloudflare_base_url": MOCK_BASE_URL,
    }
    values.update(overrides)
    return Config(**values)


@pytest.fixture
def config() -> Config:
    return make_config()


@pytest.fixture
def mock_api() -> MockCloudflareAPI:
    return MockCloudflareAPI()
