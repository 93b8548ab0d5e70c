#!/usr/bin/env python3
"""
=====================================================================
Event identity derivation
=====================================================================
Turns the free-form labels of one Alertmanager alert into:
- the Sensu check name (stable across runs for the same alert)
- the proxy entity the event is attributed to
- the label/annotation set sent with the event (owner marker,
  fingerprint, Prometheus/Alertmanager links, rewritten annotations)

Naming rules:
- namespaced alerts:  <alertname>-<namespace>[-<workload or pod>]
- node alerts:        <alertname>-<node>  (a node label always wins
                      over a namespace label)
- anything else:      <alertname>
=====================================================================
"""

import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping
from urllib.parse import quote_plus, urlsplit, urlunsplit

from alert_models import (
    ALERTNAME_LABEL,
    FINGERPRINT_LABEL,
    OWNER_VALUE,
    PLUGIN_NAME,
    Alert,
    DerivedIdentity,
)

logger = logging.getLogger(__name__)

NAMESPACE_LABEL = "namespace"
NODE_LABEL = "node"
POD_LABEL = "pod"

# Presence of any of these marks the alert as tied to a workload
WORKLOAD_HINT_LABELS = frozenset([
    "job_name", "statefulset", "daemonset", "deployment", "service", "pod", "node",
])

# Consulted in order; the first present label names the workload
WORKLOAD_PRIORITY = ("job_name", "daemonset", "statefulset", "deployment", "service", "node")

TARGETS_PATH = "/targets"

_SPECIAL_CHARACTERS = re.compile(r"[^A-Za-z0-9.\-]")


class EntityMode(Enum):
    """How the proxy entity name of an event is chosen."""
    KUBERNETES_RESOURCE = "KubernetesResource"
    ALERTMANAGER_LABEL = "AlertmanagerLabelEntity"
    SENSU_PROXY = "SensuProxyEntity"


@dataclass(frozen=True)
class EntityStrategy:
    """
    Entity resolution mode plus its data.

    value is the explicit entity name for SENSU_PROXY and the label key for
    ALERTMANAGER_LABEL; it is unused for KUBERNETES_RESOURCE.
    """
    mode: EntityMode = EntityMode.KUBERNETES_RESOURCE
    value: str = ""

    def resolve(self, cluster_label: str, workload: str) -> str:
        if self.mode is EntityMode.SENSU_PROXY:
            return self.value
        if self.mode is EntityMode.ALERTMANAGER_LABEL:
            return cluster_label
        return workload


def remove_special_characters(value: str) -> str:
    """
    Make a string usable as a Sensu resource name.

    Every character outside [A-Za-z0-9.-] is replaced by "-" (runs are not
    collapsed), then a single leading and a single trailing "-" are removed.
    """
    value = _SPECIAL_CHARACTERS.sub("-", value)
    if value.startswith("-"):
        value = value[1:]
    if value.endswith("-"):
        value = value[:-1]
    return value


def check_url(value: str) -> bool:
    """True for absolute URLs with both a scheme and a host."""
    if not value:
        return False
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return bool(parts.scheme) and bool(parts.netloc)


def alertmanager_url(external_url: str, alert_name: str) -> str:
    """Deep link into the Alertmanager UI filtered on one alertname."""
    query = quote_plus(f'{{alertname="{alert_name}"}}')
    return f"{external_url}/#/alerts?silenced=false&inhibited=false&active=true&filter={query}"


def prometheus_targets_url(generator_url: str) -> str:
    """The Prometheus targets page of the server that generated the alert."""
    parts = urlsplit(generator_url)
    return urlunsplit((parts.scheme, parts.netloc, TARGETS_PATH, "", ""))


def make_rewrite_table(rule: str) -> Dict[str, str]:
    """Parse "src=dst,src2=dst2"; entries without both sides are dropped."""
    table: Dict[str, str] = {}
    if not rule:
        return table
    for item in rule.split(","):
        parts = item.split("=")
        if len(parts) == 2 and parts[0] and parts[1]:
            table[parts[0]] = parts[1]
    return table


def rewrite_annotations(annotations: Mapping[str, str], table: Mapping[str, str]) -> Dict[str, str]:
    """
    Rename annotation keys found in the rewrite table.

    Keys missing from the table are kept. When two keys end up with the same
    name the first one seen is kept.
    """
    result: Dict[str, str] = {}
    for key, value in annotations.items():
        result.setdefault(table.get(key, key), value)
    return result


def workload_resource(labels: Mapping[str, str]) -> str:
    """Name of the Kubernetes workload of a namespaced alert, or its pod."""
    for key in WORKLOAD_PRIORITY:
        if key in labels:
            return labels[key]
    return labels.get(POD_LABEL, "")


def derive_identity(alert: Alert, config) -> DerivedIdentity:
    """
    Compute the event identity and enrichment for one alert.

    Pure function of the alert and the configuration: the same inputs
    always produce the same names.
    """
    cluster_key = config.ALERT_MANAGER_CLUSTER_LABEL_ENTITY
    alert_name = ""
    cluster_label = ""
    has_namespace = False
    has_node = False
    has_workload_hint = False
    labels: Dict[str, str] = {}

    for key, value in alert.labels.items():
        if cluster_key and key == cluster_key:
            cluster_label = value
        if key == ALERTNAME_LABEL:
            alert_name = value
        if key == NAMESPACE_LABEL:
            has_namespace = True
        if key == NODE_LABEL:
            has_node = True
        if key in WORKLOAD_HINT_LABELS:
            has_workload_hint = True
        labels[key] = value

    # A bare node alert is never namespaced
    if has_node:
        has_namespace = False

    annotations = rewrite_annotations(alert.annotations, config.rewrite_table)

    labels[PLUGIN_NAME] = OWNER_VALUE
    labels[FINGERPRINT_LABEL] = alert.fingerprint

    generator_ok = check_url(alert.generator_url)
    if generator_ok:
        annotations["prometheus_url"] = alert.generator_url
    external_url = config.ALERT_MANAGER_EXTERNAL_URL
    if external_url and check_url(external_url):
        annotations["alertmanager_url"] = alertmanager_url(external_url, alert_name)
    if alert_name == config.ALERT_MANAGER_TARGET_ALERTNAME and generator_ok:
        annotations["prometheus_targets_url"] = prometheus_targets_url(alert.generator_url)

    if has_namespace:
        workload = workload_resource(alert.labels)
        event_name = f"{alert_name}-{alert.labels[NAMESPACE_LABEL]}"
        suffix = workload if has_workload_hint else alert.labels.get(POD_LABEL, "")
        if suffix:
            event_name = f"{event_name}-{suffix}"
    else:
        workload = alert.labels.get(NODE_LABEL, "")
        event_name = f"{alert_name}-{workload}" if workload else alert_name

    entity_name = config.entity_strategy.resolve(cluster_label, workload)

    return DerivedIdentity(
        alert_name=alert_name,
        event_name=remove_special_characters(event_name),
        entity_name=entity_name,
        cluster_label=cluster_label,
        labels=labels,
        annotations=annotations,
    )
