"""Shared fixtures for visual regression engine tests."""

import os
from datetime import datetime, timezone

import pytest


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "smoke: mark test as smoke test (fast, critical path - included in CI)"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as integration test requiring real API keys"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


# Set test environment variables before importing modules
os.environ.setdefault("ANTHROPIC_API_KEY", "sk-ant-test-key-12345")
os.environ.setdefault("OPENAI_API_KEY", "sk-test-openai-key")


@pytest.fixture
def mock_env_vars(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test-key-12345")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-openai-key")
    monkeypatch.setenv("OLLAMA_ENDPOINT", "http://localhost:11434")
    # Keep tests away from the on-disk cache database
    monkeypatch.setenv("CACHE_DATABASE_URL", "sqlite:///:memory:")


@pytest.fixture
def test_settings(mock_env_vars, tmp_path):
    """Settings isolated from any local .env file."""
    from src.config import Settings

    return Settings(
        _env_file=None,
        cache_database_url="sqlite:///:memory:",
        baseline_dir=str(tmp_path / "baselines"),
        operation_timeout_ms=2000,
    )


class FrozenClock:
    """Manually advanced clock returning aware datetimes."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta) -> None:
        self.now = self.now + delta


@pytest.fixture
def frozen_clock():
    return FrozenClock()


class FakeTime:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def fake_time():
    return FakeTime()
