# =====================================================================
# Event Reconciler Unit Tests
# =====================================================================
# Tests for event_reconciler.py
# Run with: pytest tests/test_event_reconciler_unit.py -v
# =====================================================================

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'services'))

import pytest

from alert_models import Alert
from event_reconciler import current_fingerprints, filter_owned_events, reconcile, search_labels


pytestmark = pytest.mark.unit


def _alert(fingerprint):
    return Alert(labels={"alertname": "X"}, fingerprint=fingerprint, state="active")


class TestCurrentFingerprints:
    """Test the live fingerprint set"""

    def test_builds_set(self):
        """Test duplicates collapse into one entry"""
        assert current_fingerprints([_alert("a"), _alert("b"), _alert("a")]) == {"a", "b"}


class TestSearchLabels:
    """Test the auxiliary label predicate"""

    def test_empty_predicate_matches_nothing(self, existing_event_factory):
        """Test an empty mapping never matches"""
        assert search_labels(existing_event_factory("e"), {}) is False

    def test_match_in_any_source(self, existing_event_factory):
        """Test pairs may come from event, entity or check labels"""
        event = existing_event_factory(
            "e",
            event_labels={"cluster": "k8s-dev"},
            entity_labels={"region": "eu"},
            check_labels={"team": "core"},
        )
        assert search_labels(event, {"cluster": "k8s-dev", "region": "eu", "team": "core"}) is True

    def test_every_pair_required(self, existing_event_factory):
        """Test one missing pair rejects the event"""
        event = existing_event_factory("e", event_labels={"cluster": "k8s-dev"})
        assert search_labels(event, {"cluster": "k8s-dev", "region": "eu"}) is False

    def test_value_must_match(self, existing_event_factory):
        """Test a key with another value does not match"""
        event = existing_event_factory("e", entity_labels={"cluster": "k8s-prod"})
        assert search_labels(event, {"cluster": "k8s-dev"}) is False


class TestFilterOwnedEvents:
    """Test candidate selection"""

    def test_owner_and_open_only(self, existing_event_factory):
        """Test foreign and resolved events are never candidates"""
        owned = existing_event_factory("owned", fingerprint="a")
        foreign = existing_event_factory("foreign", fingerprint="b", owned=False)
        resolved = existing_event_factory("resolved", fingerprint="c", status=0)
        warning = existing_event_factory("warning", fingerprint="d", status=1)

        result = filter_owned_events([owned, foreign, resolved, warning])

        assert [e.name for e in result] == ["owned", "warning"]

    def test_no_predicate_keeps_all_owned(self, existing_event_factory):
        """Test without a predicate every owned open event is kept"""
        events = [existing_event_factory(f"e{i}", fingerprint=str(i)) for i in range(3)]
        assert filter_owned_events(events, {}) == events
        assert filter_owned_events(events, None) == events

    def test_predicate_applied(self, existing_event_factory):
        """Test a predicate restricts candidates"""
        dev = existing_event_factory("dev", fingerprint="a", entity_labels={"cluster": "k8s-dev"})
        prod = existing_event_factory("prod", fingerprint="b", entity_labels={"cluster": "k8s-prod"})
        result = filter_owned_events([dev, prod], {"cluster": "k8s-dev"})
        assert [e.name for e in result] == ["dev"]


class TestReconcile:
    """Test stale event detection"""

    def test_one_live_two_stale(self, existing_event_factory):
        """Test an event is a candidate iff its fingerprint is not live"""
        events = [
            existing_event_factory("live", fingerprint="fp-live"),
            existing_event_factory("gone-1", fingerprint="fp-gone-1"),
            existing_event_factory("gone-2", fingerprint="fp-gone-2"),
        ]
        alerts = [_alert("fp-live"), _alert("fp-other")]

        stale = reconcile(alerts, events)

        assert sorted(e.name for e in stale) == ["gone-1", "gone-2"]
        live = current_fingerprints(alerts)
        for event in events:
            assert (event in stale) == (event.fingerprint not in live)

    def test_no_alerts_closes_all_owned(self, existing_event_factory):
        """Test an empty alert list makes every owned open event stale"""
        events = [existing_event_factory(f"e{i}", fingerprint=str(i)) for i in range(3)]
        assert reconcile([], events) == events

    def test_missing_fingerprint_never_closed(self, existing_event_factory):
        """Test events without a fingerprint label are left alone"""
        event = existing_event_factory("no-fp")
        assert reconcile([], [event]) == []

    def test_foreign_events_ignored(self, existing_event_factory):
        """Test events of other producers are never closed"""
        event = existing_event_factory("foreign", fingerprint="x", owned=False)
        assert reconcile([], [event]) == []

    def test_predicate_restricts(self, existing_event_factory):
        """Test only events matching the predicate are closed"""
        dev = existing_event_factory("dev", fingerprint="a", event_labels={"cluster": "k8s-dev"})
        prod = existing_event_factory("prod", fingerprint="b", event_labels={"cluster": "k8s-prod"})
        stale = reconcile([], [dev, prod], {"cluster": "k8s-dev"})
        assert [e.name for e in stale] == ["dev"]

    def test_inputs_not_mutated(self, existing_event_factory):
        """Test the input lists are left unchanged"""
        events = [existing_event_factory("e", fingerprint="a")]
        alerts = [_alert("b")]
        reconcile(alerts, events)
        assert len(events) == 1
        assert len(alerts) == 1
