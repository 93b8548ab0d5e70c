#!/usr/bin/env python3
"""
Builds the check events posted to the Sensu agent events API.

Create events carry status 2 (critical) and the derived identity of an
alert; close events carry status 0 (resolved) and the identity of an event
that is already stored in the backend.
"""

from typing import Dict, Mapping

from alert_models import (
    ALERTNAME_LABEL,
    PLUGIN_NAME,
    STATUS_CRITICAL,
    STATUS_RESOLVED,
    Alert,
    DerivedIdentity,
    EventRecord,
    ExistingEvent,
)
from event_identity import alertmanager_url, remove_special_characters

RESOLVED_OUTPUT_PREFIX = "Resolved Automatically \n "


def merge_string_maps(left: Mapping[str, str], right: Mapping[str, str]) -> Dict[str, str]:
    """Copy of left with the keys of right that left does not have."""
    merged = dict(left)
    for key, value in right.items():
        if key not in merged:
            merged[key] = value
    return merged


def format_alert_output(alert: Alert, alert_name: str, config) -> str:
    """Human readable check output for one alert."""
    lines = ["Labels: "]
    for key in sorted(alert.labels):
        lines.append(f" - {key}: {alert.labels[key]} ")
    lines.append("Annotations: ")
    for key in sorted(alert.annotations):
        lines.append(f" - {key}: {alert.annotations[key]} ")
    lines.append("Alert Manager: ")
    lines.append(f" - status: {alert.state} ")
    if config.ALERT_MANAGER_EXTERNAL_URL:
        lines.append(f" - source: {alertmanager_url(config.ALERT_MANAGER_EXTERNAL_URL, alert_name)} ")
    lines.append("Prometheus:")
    lines.append(f" - source: {alert.generator_url} ")
    return "\n".join(lines) + "\n"


def _subscriptions(config):
    return [f"entity:{config.SENSU_AGENT_ENTITY}"]


def build_event(identity: DerivedIdentity, output: str, status: int, config) -> EventRecord:
    """Assemble the event for an alert that is present (normally status 2)."""
    labels = merge_string_maps(identity.labels, config.extra_labels)
    annotations = merge_string_maps(identity.annotations, config.extra_annotations)
    return EventRecord(
        name=identity.event_name,
        entity=identity.entity_name,
        namespace=config.SENSU_NAMESPACE,
        status=status,
        output=output,
        command=remove_special_characters(identity.alert_name),
        handlers=list(config.handlers),
        subscriptions=_subscriptions(config),
        labels=labels,
        annotations=annotations,
        created_by=PLUGIN_NAME,
    )


def build_create_event(identity: DerivedIdentity, alert: Alert, config) -> EventRecord:
    output = format_alert_output(alert, identity.alert_name, config)
    return build_event(identity, output, STATUS_CRITICAL, config)


def build_close_event(event: ExistingEvent, config) -> EventRecord:
    """Assemble the resolve event for a stored event whose alert is gone."""
    alert_name = event.check_labels.get(ALERTNAME_LABEL, "")
    return EventRecord(
        name=remove_special_characters(event.name),
        entity=event.proxy_entity_name,
        namespace=config.SENSU_NAMESPACE,
        status=STATUS_RESOLVED,
        output=f"{RESOLVED_OUTPUT_PREFIX}{event.output}",
        command=remove_special_characters(alert_name),
        handlers=list(config.handlers),
        subscriptions=_subscriptions(config),
        labels=dict(event.check_labels),
        annotations=dict(event.annotations),
        created_by=PLUGIN_NAME,
    )
