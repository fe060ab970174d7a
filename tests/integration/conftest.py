"""
Fixtures for tests against a running Sandpit service.

Start the service with ``sandpit start`` and run ``pytest -m integration``.
SANDPIT_URL points the tests at another host.
"""
import os
import uuid

import pytest
import requests

SANDPIT_URL = os.environ.get("SANDPIT_URL", "http://localhost:8000").rstrip("/")


def pytest_collection_modifyitems(config, items):
    if "integration" in (config.getoption("-m") or ""):
        return
    skip = pytest.mark.skip(reason="needs a running service, select with -m integration")
    for item in items:
        if item.get_closest_marker("integration"):
            item.add_marker(skip)


@pytest.fixture(scope="session")
def server_url():
    try:
        healthy = requests.get(f"{SANDPIT_URL}/health", timeout=2).status_code == 200
    except requests.RequestException:
        healthy = False
    if not healthy:
        pytest.skip(f"Sandpit service not reachable at {SANDPIT_URL}")
    return SANDPIT_URL


@pytest.fixture
def session(server_url):
    """HTTP session with its own quota identity."""
    http = requests.Session()
    http.headers["X-Session-Id"] = f"it-{uuid.uuid4().hex[:8]}"
    http.base_url = server_url
    yield http
    http.close()
