import os
import sys
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("RATE_LIMIT_ENABLED", "false")


@pytest.fixture(autouse=True)
def _test_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("QA_MODE", "true")


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def metrics_app():
    from app.main import app
    from app.metrics.store import LocalSessionMetricsStore
    from app.realtime import MetricsBroadcastChannel
    from app.system_metrics import reset_metrics

    original_channel = app.state.metrics_channel
    original_store = app.state.session_metrics_store
    app.state.metrics_channel = MetricsBroadcastChannel(max_pending=16)
    app.state.session_metrics_store = LocalSessionMetricsStore()
    reset_metrics()
    try:
        yield app
    finally:
        app.state.metrics_channel = original_channel
        app.state.session_metrics_store = original_store
