# =====================================================================
# Sensu Alertmanager Events Pytest Configuration and Fixtures
# =====================================================================
# This file contains shared fixtures and configuration for all tests
# =====================================================================

import os
import sys

import pytest
from unittest.mock import MagicMock
from prometheus_client import REGISTRY

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'services'))

from alertmanager_events_service import Config  # noqa: E402
from alert_models import Alert, ExistingEvent  # noqa: E402


# --- Prometheus Metrics Cleanup ---

@pytest.fixture(autouse=True, scope="function")
def cleanup_prometheus_metrics():
    """
    Clean up check-specific Prometheus metrics after each test.

    Only removes collectors for metrics starting with 'amevents_', preserving
    the default Prometheus collectors (platform, process, gc, etc.).
    """
    yield  # Run the test first

    collectors_to_remove = []
    for collector in list(REGISTRY._collector_to_names.keys()):
        names = REGISTRY._collector_to_names.get(collector, set())
        if any(name.startswith('amevents_') for name in names):
            collectors_to_remove.append(collector)

    for collector in collectors_to_remove:
        try:
            REGISTRY.unregister(collector)
        except KeyError:
            pass


# --- Configuration ---

@pytest.fixture
def make_config():
    """Factory for Config values with test-friendly defaults"""
    def _make(**overrides):
        values = dict(
            ALERT_MANAGER_API_URL="http://alertmanager.test:9093/api/v2/alerts",
            AGENT_API_URL="http://agent.test:3031/events",
            SENSU_AGENT_ENTITY="agent-01",
            SENSU_NAMESPACE="default",
            SENSU_HANDLER="default,",
            API_BACKEND_HOST="backend.test",
            API_BACKEND_PORT=8080,
            HTTP_TIMEOUT=5,
        )
        values.update(overrides)
        return Config(**values)
    return _make


@pytest.fixture
def config(make_config):
    """Default Config for unit tests"""
    return make_config()


@pytest.fixture
def mock_vault_client():
    """Mock Vault client"""
    vault = MagicMock()

    vault.is_authenticated.return_value = True
    vault.auth.approle.login.return_value = {"auth": {"client_token": "test-token"}}

    vault.secrets.kv.v2.read_secret_version.return_value = {
        "data": {
            "data": {
                "SENSU_API_KEY": "vault-api-key",
                "SENSU_API_PASSWORD": "vault-password",
            }
        }
    }

    return vault


# --- Sample Data Fixtures ---

@pytest.fixture
def sample_alert_payloads():
    """Alertmanager v2 alert list with a pod, a node and a cluster-wide alert"""
    return [
        {
            "labels": {
                "alertname": "KubePodCrashLooping",
                "namespace": "payments",
                "pod": "api-7d9f-abc12",
                "deployment": "api",
                "severity": "critical",
                "cluster": "k8s-dev",
            },
            "annotations": {"summary": "Pod is crash looping", "opsgenie_priority": "P1"},
            "fingerprint": "fp-pod-1",
            "status": {"state": "active", "silencedBy": [], "inhibitedBy": []},
            "generatorURL": "http://prometheus.test:9090/graph?g0.expr=up",
        },
        {
            "labels": {
                "alertname": "NodeDiskFull",
                "node": "worker-3",
                "namespace": "monitoring",
                "severity": "warning",
            },
            "annotations": {"summary": "Disk almost full"},
            "fingerprint": "fp-node-1",
            "status": {"state": "active"},
            "generatorURL": "http://prometheus.test:9090/graph?g0.expr=disk",
        },
        {
            "labels": {"alertname": "Watchdog", "severity": "none"},
            "annotations": {},
            "fingerprint": "fp-watchdog",
            "status": {"state": "active"},
            "generatorURL": "http://prometheus.test:9090/graph?g0.expr=vector(1)",
        },
    ]


@pytest.fixture
def sample_alerts(sample_alert_payloads):
    """Parsed sample alerts"""
    return [Alert.from_alertmanager(item) for item in sample_alert_payloads]


def make_existing_event(name, fingerprint=None, status=2, owned=True, entity="api",
                        check_labels=None, event_labels=None, entity_labels=None):
    """Build an ExistingEvent the way the backend would return it"""
    labels = dict(check_labels or {})
    if owned:
        labels["sensu-alertmanager-events"] = "owner"
    if fingerprint is not None:
        labels["fingerprint"] = fingerprint
    return ExistingEvent(
        name=name,
        proxy_entity_name=entity,
        check_labels=labels,
        annotations={"summary": f"{name} summary"},
        output=f"{name} output",
        status=status,
        event_labels=dict(event_labels or {}),
        entity_labels=dict(entity_labels or {}),
    )


@pytest.fixture
def existing_event_factory():
    """Factory for ExistingEvent values"""
    return make_existing_event


# --- Pytest Configuration ---

def pytest_configure(config):
    """Pytest configuration hook"""
    config.addinivalue_line(
        "markers", "unit: Unit tests (mock all external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (run against the mock Sensu backend)"
    )
    config.addinivalue_line(
        "markers", "slow: Slow tests (>1 second)"
    )


# --- Helper Functions ---

def assert_log_contains(caplog, level, message_fragment):
    """Assert that logs contain a specific message"""
    for record in caplog.records:
        if record.levelname == level and message_fragment in record.getMessage():
            return True
    raise AssertionError(
        f"Log message containing '{message_fragment}' at level '{level}' not found"
    )
