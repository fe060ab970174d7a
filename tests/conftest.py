"""
Shared test fixtures for sandpit tests.
"""
import pytest
from unittest.mock import MagicMock

from sandpit.core.registry import RuntimeRegistry
from sandpit.executor.sandbox.base import SandboxConfig, SandboxLevel

from helpers import FakeClock, FakeSubstrate, bash_profile, python_profile


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return RuntimeRegistry([python_profile(), bash_profile()])


@pytest.fixture
def sandbox_config(tmp_path):
    return SandboxConfig(level=SandboxLevel.SUBPROCESS, workspace_root=str(tmp_path))


@pytest.fixture
def fake_substrates():
    FakeSubstrate.instances = []
    yield FakeSubstrate.instances
    FakeSubstrate.instances = []


@pytest.fixture
def mock_gateway():
    gateway = MagicMock()
    gateway.config.gateway.max_delivery_wait = 1.0
    gateway.list_runtimes = MagicMock(return_value=[python_profile().describe()])
    return gateway
