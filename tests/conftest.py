"""Shared test fixtures"""
import time
from contextlib import ExitStack
from datetime import datetime, timedelta, timezone
from typing import Generator

import pytest
from fastapi.testclient import TestClient

from doctools_server.config import Settings
from doctools_server.main_api import create_app
from doctools_server.rate_limiting import login_limiter
from doctools_server.services import build_services

TEST_ADMIN_PASSWORD = "test-admin-pass-123"
BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, start_ms: float = None):
        self.now = start_ms if start_ms is not None else float(int(time.time() * 1000))

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms

    def datetime(self) -> datetime:
        return datetime.fromtimestamp(self.now / 1000, tz=timezone.utc)


class FakeDateTimeClock:
    """Manually advanced aware-UTC datetime clock."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_login_throttle():
    """slowapi keeps its counters in process memory; start every test clean"""
    login_limiter.reset()
    yield
    login_limiter.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def admin_password() -> str:
    """Test admin password"""
    return TEST_ADMIN_PASSWORD


@pytest.fixture
def make_settings(tmp_path):
    """Factory for isolated settings; limits are high unless a test lowers them"""

    def _make(**overrides) -> Settings:
        values = {
            "environment": "test",
            "data_dir": tmp_path / "data",
            "log_dir": tmp_path / "logs",
            "jwt_secret": "test-jwt-secret",
            "admin_password": TEST_ADMIN_PASSWORD,
            "bcrypt_rounds": 4,
            "background_sweeps_enabled": False,
            "rate_limit_max_requests": 1000,
            "client_rate_limit_max_requests": 1000,
            "rapid_threshold": 1000,
            "log_format": "console",
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def make_client(clock) -> Generator:
    """
    Factory returning (client, services) for given settings.

    Clients are entered as context managers so the app lifespan runs.
    """
    with ExitStack() as stack:

        def _make(settings: Settings):
            services = build_services(settings, clock=clock)
            app = create_app(settings=settings, services=services)
            client = stack.enter_context(TestClient(app))
            return client, services

        yield _make


@pytest.fixture
def app_client(make_client, settings):
    return make_client(settings)


@pytest.fixture
def client(app_client) -> TestClient:
    return app_client[0]


@pytest.fixture
def services(app_client):
    return app_client[1]


@pytest.fixture
def admin_headers(services, admin_password) -> dict:
    """Bearer header for a fresh admin session (issued without the HTTP login throttle)"""
    token = services.auth.login(admin_password)["token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def browser_headers() -> dict:
    return {"User-Agent": BROWSER_UA}
