"""
Pytest configuration and fixtures for hedgekeeper tests.

Everything runs against the in-memory store; no test talks to Redis or the
network.
"""
import pytest

from core.state_machine import StateMachine
from infra.alerting import AlertConfig, AlertService, AlertSeverity
from infra.kv_store import InMemoryKeyValueStore
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore
from tests.helpers import FakeClock


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def kv_store(fake_clock):
    return InMemoryKeyValueStore(clock=fake_clock)


@pytest.fixture
def state_store(kv_store):
    return StateStore(kv_store, namespace="test")


@pytest.fixture
def metrics():
    return MetricsRecorder(enabled=False, prefix="test")


@pytest.fixture
def state_machine(state_store, metrics):
    return StateMachine(state_store, failure_threshold=5, metrics=metrics)


@pytest.fixture
def alerts():
    """Dry-run alert service (logs only, never rate limited across tests)."""
    return AlertService(
        AlertConfig(
            enabled=True,
            webhook_url=None,
            min_severity=AlertSeverity.INFO,
            dry_run=True,
            rate_limit_seconds=0.0,
        )
    )
