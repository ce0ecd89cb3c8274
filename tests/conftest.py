"""Pytest configuration and shared fixtures."""

import random
from typing import Any, Dict

import pytest

from cse_client.clients.rest import RequestGateway
from cse_client.config.settings import APIConfig, CSEClientSettings, RetryConfig, StreamConfig

from fakes import FakeSession, RecordingSleep


@pytest.fixture
def api_config() -> APIConfig:
    return APIConfig(
        base_url="https://api.cse.lk/v1",
        ws_url="wss://api.cse.lk/v1/stream",
        token="test-token",
        api_key="test-key",
        rate_limit_requests_per_minute=100000,
        max_concurrent_requests=4
    )


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(
        max_attempts=4,
        initial_backoff_seconds=0.1,
        max_backoff_seconds=1.0,
        backoff_multiplier=2.0,
        jitter=True
    )


@pytest.fixture
def stream_config() -> StreamConfig:
    return StreamConfig(heartbeat_timeout_seconds=0.2)


@pytest.fixture
def settings(api_config, retry_config, stream_config) -> CSEClientSettings:
    return CSEClientSettings(api=api_config, retry=retry_config, stream=stream_config)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_gateway(api_config, retry_config, recording_sleep):
    """Factory for gateways backed by a FakeSession."""
    def _make(responses=None, handler=None, **config_overrides) -> RequestGateway:
        config = api_config.model_copy(update=config_overrides) if config_overrides else api_config
        session = FakeSession(responses=responses, handler=handler)
        return RequestGateway(
            config,
            retry_config,
            session=session,
            sleep=recording_sleep,
            rng=random.Random(42)
        )
    return _make


@pytest.fixture
def sample_quote_payload() -> Dict[str, Any]:
    return {
        'symbol': 'CSE:JKH.N0000',
        'last_price': '194.50',
        'bid': '194.25',
        'ask': '194.75',
        'volume': 125000,
        'timestamp': '2025-07-15T04:30:00Z'
    }

