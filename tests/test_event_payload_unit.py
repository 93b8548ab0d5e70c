# =====================================================================
# Event Payload Unit Tests
# =====================================================================
# Tests for event_payload.py and EventRecord serialization
# Run with: pytest tests/test_event_payload_unit.py -v
# =====================================================================

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'services'))

import json
import pytest

from alert_models import Alert
from event_identity import derive_identity
from event_payload import (
    RESOLVED_OUTPUT_PREFIX,
    build_close_event,
    build_create_event,
    format_alert_output,
    merge_string_maps,
)


pytestmark = pytest.mark.unit


def _alert():
    return Alert(
        labels={"alertname": "KubeJobFailed", "namespace": "batch", "job_name": "nightly", "team": "data"},
        annotations={"summary": "Job failed", "description": "nightly failed"},
        fingerprint="fp-job",
        state="active",
        generator_url="http://prometheus.test:9090/graph?g0.expr=kube_job_failed",
    )


class TestMergeStringMaps:
    """Test the left-biased label merge"""

    def test_left_wins(self):
        """Test existing keys are never overwritten"""
        result = merge_string_maps({"left1": "a"}, {"left1": "b", "right1": "c"})
        assert result == {"left1": "a", "right1": "c"}

    def test_inputs_untouched(self):
        """Test neither input is mutated"""
        left = {"a": "1"}
        right = {"b": "2"}
        merge_string_maps(left, right)
        assert left == {"a": "1"}
        assert right == {"b": "2"}

    def test_empty_left_value_kept(self):
        """Test a present but empty left value still wins"""
        assert merge_string_maps({"a": ""}, {"a": "x"}) == {"a": ""}


class TestFormatAlertOutput:
    """Test the human readable check output"""

    def test_contains_labels_annotations_and_source(self, config):
        """Test every label, annotation and the source URL are listed"""
        alert = _alert()
        output = format_alert_output(alert, alert.name, config)

        for key, value in alert.labels.items():
            assert f" - {key}: {value} " in output
        for key, value in alert.annotations.items():
            assert f" - {key}: {value} " in output
        assert " - status: active " in output
        assert f" - source: {alert.generator_url} " in output

    def test_sorted_by_key(self, config):
        """Test labels are listed in key order"""
        output = format_alert_output(_alert(), "KubeJobFailed", config)
        positions = [output.index(f" - {key}:") for key in ("alertname", "job_name", "namespace", "team")]
        assert positions == sorted(positions)

    def test_alertmanager_link_when_configured(self, make_config):
        """Test the Alertmanager deep link is included only when configured"""
        alert = _alert()
        without = format_alert_output(alert, alert.name, make_config())
        with_link = format_alert_output(alert, alert.name, make_config(ALERT_MANAGER_EXTERNAL_URL="https://am.test"))
        assert "https://am.test/#/alerts" not in without
        assert "https://am.test/#/alerts" in with_link


class TestBuildCreateEvent:
    """Test create events"""

    def test_fields(self, config):
        """Test name, entity, status and routing fields"""
        alert = _alert()
        record = build_create_event(derive_identity(alert, config), alert, config)

        assert record.name == "KubeJobFailed-batch-nightly"
        assert record.entity == "nightly"
        assert record.status == 2
        assert record.namespace == "default"
        assert record.handlers == ["default"]
        assert record.subscriptions == ["entity:agent-01"]
        assert record.command == "KubeJobFailed"
        assert record.created_by == "sensu-alertmanager-events"
        assert record.labels["fingerprint"] == "fp-job"

    def test_extra_labels_do_not_override(self, make_config):
        """Test configured extra labels never replace alert labels"""
        config = make_config(
            SENSU_EXTRA_LABEL="team=platform,env=prod",
            SENSU_EXTRA_ANNOTATION="runbook=https://runbooks.test",
        )
        alert = _alert()
        record = build_create_event(derive_identity(alert, config), alert, config)

        assert record.labels["team"] == "data"
        assert record.labels["env"] == "prod"
        assert record.annotations["runbook"] == "https://runbooks.test"

    def test_empty_handlers(self, make_config):
        """Test an empty handler option gives no handlers"""
        config = make_config(SENSU_HANDLER="")
        alert = _alert()
        assert build_create_event(derive_identity(alert, config), alert, config).handlers == []

    def test_payload_shape(self, config):
        """Test the wire format is JSON serializable and nested under check"""
        alert = _alert()
        payload = build_create_event(derive_identity(alert, config), alert, config).to_payload()

        check = payload["check"]
        assert check["metadata"]["name"] == "KubeJobFailed-batch-nightly"
        assert check["metadata"]["created_by"] == "sensu-alertmanager-events"
        assert check["proxy_entity_name"] == "nightly"
        assert check["status"] == 2
        json.dumps(payload)


class TestBuildCloseEvent:
    """Test resolve events for stale backend events"""

    def test_fields(self, config, existing_event_factory):
        """Test the close event mirrors the stored event with status 0"""
        event = existing_event_factory(
            "TargetDown-monitoring-node-exporter",
            fingerprint="abc123",
            entity="node-exporter",
            check_labels={"alertname": "TargetDown"},
        )

        record = build_close_event(event, config)

        assert record.status == 0
        assert record.name == "TargetDown-monitoring-node-exporter"
        assert record.entity == "node-exporter"
        assert record.command == "TargetDown"
        assert record.output == f"{RESOLVED_OUTPUT_PREFIX}{event.output}"
        assert record.labels == event.check_labels
        assert record.annotations == event.annotations
        assert record.labels is not event.check_labels
