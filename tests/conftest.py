from __future__ import annotations

import os
from typing import Any

import pytest
import requests

from knowledge.types import (
    AnalysisContext,
    IcaAnalysisResponse,
    LearningConfig,
    ProcessCategory,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    """Keep tests away from the real home directory and any PORTSAGE_* settings."""
    for key in list(os.environ):
        if key.startswith("PORTSAGE_"):
            monkeypatch.delenv(key, raising=False)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))


@pytest.fixture
def home(tmp_path):
    return tmp_path / "home"


@pytest.fixture
def learning_config() -> LearningConfig:
    return LearningConfig(min_sightings=2, max_pending=3, rate_limit_secs=0.0)


class FakeClassifier:
    """Stand-in for IcaClient: records calls, returns a canned response or raises."""

    def __init__(self, available: bool = True, response=None, error: Exception | None = None):
        self.available = available
        self.response = response or IcaAnalysisResponse(
            display_name="DSS Backend API",
            description="Backend API for the DSS stack",
            category=ProcessCategory.BACKEND,
            group_hint="DSS Stack",
            confidence=0.9,
        )
        self.error = error
        self.calls: list[AnalysisContext] = []

    def is_available(self) -> bool:
        return self.available

    def analyze(self, context: AnalysisContext) -> IcaAnalysisResponse:
        self.calls.append(context)
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def fake_classifier() -> FakeClassifier:
    return FakeClassifier()


def _env_url() -> str:
    return os.getenv("PORTSAGE_TEST_BASE_URL", "http://127.0.0.1:8766").rstrip("/")


@pytest.fixture(scope="session")
def base_url() -> str:
    return _env_url()


@pytest.fixture(scope="session")
def http():
    """Simple requests wrapper with a short timeout."""

    class _HTTP:
        def get(self, url: str, **kw):
            kw.setdefault("timeout", 5)
            return requests.get(url, **kw)

        def post(self, url: str, json: dict[str, Any] | None = None, **kw):
            kw.setdefault("timeout", 8)
            return requests.post(url, json=json, **kw)

    return _HTTP()


@pytest.fixture(scope="session")
def server_up(base_url: str, http):
    """Skip when no portsage dashboard is running at base_url."""
    try:
        r = http.get(f"{base_url}/api/ping")
    except requests.RequestException as exc:
        pytest.skip(f"Server not reachable at {base_url} ({exc})")
    if r.status_code != 200:
        pytest.skip(f"Server reachable but non-200 from /api/ping: {r.status_code}")


def assert_has_keys(obj: dict[str, Any], required: tuple[str, ...]) -> None:
    missing = [k for k in required if k not in obj]
    assert not missing, f"Missing keys: {missing} in {obj}"
