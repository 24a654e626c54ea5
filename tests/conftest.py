"""
Test Configuration
==================

Pytest configuration with fixtures for all test types.
Provides test settings, a virtual clock, fake transports and callback recorders.
"""

from typing import Any, Callable, Generator

import pytest
from pydantic_settings import SettingsConfigDict

from copilot_stream.config import settings as settings_module
from copilot_stream.config.settings import StreamSettings
from copilot_stream.sse.connection_manager import SSEConnectionManager
from copilot_stream.sse.scheduler import VirtualScheduler

from tests.utils.mocks import CallbackRecorder, FakeTransportFactory


# Test settings override
class TestSettings(StreamSettings):
    """Test-specific settings."""

    environment: str = "testing"
    log_level: str = "DEBUG"
    base_url: str = "http://testserver"

    model_config = SettingsConfigDict(env_file=".env.test", env_prefix="COPILOT_STREAM_TEST_")


@pytest.fixture(scope="session")
def test_settings() -> TestSettings:
    """Test settings fixture."""
    return TestSettings()


@pytest.fixture(autouse=True)
def override_settings(test_settings: TestSettings) -> Generator[TestSettings, None, None]:
    """Make get_settings() return the test settings."""
    previous = settings_module.settings
    settings_module.settings = test_settings
    yield test_settings
    settings_module.settings = previous


@pytest.fixture
def virtual_scheduler() -> VirtualScheduler:
    """Manual clock for retry and countdown timers."""
    return VirtualScheduler()


@pytest.fixture
def transport_factory() -> FakeTransportFactory:
    """Factory recording every fake transport the manager opens."""
    return FakeTransportFactory()


@pytest.fixture
def recorder() -> CallbackRecorder:
    return CallbackRecorder()


MANAGER_CALLBACKS = (
    "on_connect",
    "on_disconnect",
    "on_error",
    "on_message",
    "on_reconnecting",
    "on_reconnected",
    "on_max_retries_exceeded",
    "on_response",
    "on_state_change",
)


@pytest.fixture
def make_manager(
    test_settings: TestSettings,
    virtual_scheduler: VirtualScheduler,
    transport_factory: FakeTransportFactory,
    recorder: CallbackRecorder,
) -> Callable[..., SSEConnectionManager]:
    """Build a manager wired to the fake transport, virtual clock and recorder."""

    def _make(url: Any = "/api/copilot", **kwargs: Any) -> SSEConnectionManager:
        params = {name: recorder.callback(name) for name in MANAGER_CALLBACKS}
        params.update(kwargs)
        params.setdefault("settings", test_settings)
        return SSEConnectionManager(
            url,
            transport_factory=transport_factory,
            scheduler=virtual_scheduler,
            **params,
        )

    return _make


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers based on file paths."""
    for item in items:
        # Add markers based on file path
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
