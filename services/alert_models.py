#!/usr/bin/env python3
"""
Data model for the alertmanager events check.

- Alert: one alert read from the Alertmanager v2 API
- DerivedIdentity: names and enriched labels computed for one alert
- EventRecord: one check event posted to the Sensu agent events API
- ExistingEvent: one event read back from the Sensu backend API

All of them live for a single check run; nothing is persisted.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


PLUGIN_NAME = "sensu-alertmanager-events"
OWNER_VALUE = "owner"
FINGERPRINT_LABEL = "fingerprint"
ALERTNAME_LABEL = "alertname"

STATUS_RESOLVED = 0
STATUS_CRITICAL = 2

ACTIVE_STATE = "active"


@dataclass(frozen=True)
class Alert:
    """An alert as returned by GET /api/v2/alerts."""
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    fingerprint: str = ""
    state: str = ""
    generator_url: str = ""

    @property
    def name(self) -> str:
        return self.labels.get(ALERTNAME_LABEL, "")

    @property
    def is_active(self) -> bool:
        return self.state == ACTIVE_STATE

    @classmethod
    def from_alertmanager(cls, data: Dict[str, Any]) -> "Alert":
        """Parse one element of the Alertmanager v2 alert list."""
        status = data.get("status") or {}
        return cls(
            labels=dict(data.get("labels") or {}),
            annotations=dict(data.get("annotations") or {}),
            fingerprint=data.get("fingerprint") or "",
            state=status.get("state") or "",
            generator_url=data.get("generatorURL") or "",
        )


@dataclass(frozen=True)
class DerivedIdentity:
    """Names and enrichment computed from one alert."""
    alert_name: str
    event_name: str
    entity_name: str
    cluster_label: str
    labels: Dict[str, str]
    annotations: Dict[str, str]


@dataclass
class EventRecord:
    """One check event sent to the agent events API."""
    name: str
    entity: str
    namespace: str
    status: int
    output: str
    command: str = ""
    handlers: List[str] = field(default_factory=list)
    subscriptions: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    created_by: str = PLUGIN_NAME

    def to_payload(self) -> Dict[str, Any]:
        """Render the record in the Sensu event wire format."""
        return {
            "check": {
                "metadata": {
                    "name": self.name,
                    "namespace": self.namespace,
                    "labels": self.labels,
                    "annotations": self.annotations,
                    "created_by": self.created_by,
                },
                "command": self.command,
                "output": self.output,
                "status": self.status,
                "proxy_entity_name": self.entity,
                "subscriptions": self.subscriptions,
                "handlers": self.handlers,
            }
        }


@dataclass(frozen=True)
class ExistingEvent:
    """An event previously stored in the Sensu backend."""
    name: str
    proxy_entity_name: str = ""
    check_labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    output: str = ""
    status: int = 0
    event_labels: Dict[str, str] = field(default_factory=dict)
    entity_labels: Dict[str, str] = field(default_factory=dict)

    @property
    def fingerprint(self) -> Optional[str]:
        return self.check_labels.get(FINGERPRINT_LABEL)

    @property
    def is_resolved(self) -> bool:
        return self.status == STATUS_RESOLVED

    def is_owned_by(self, plugin_name: str = PLUGIN_NAME) -> bool:
        return self.check_labels.get(plugin_name) == OWNER_VALUE

    @classmethod
    def from_sensu(cls, data: Dict[str, Any]) -> "ExistingEvent":
        """Parse one element of GET /api/core/v2/namespaces/<ns>/events."""
        check = data.get("check") or {}
        check_meta = check.get("metadata") or {}
        event_meta = data.get("metadata") or {}
        entity_meta = (data.get("entity") or {}).get("metadata") or {}
        return cls(
            name=check_meta.get("name") or "",
            proxy_entity_name=check.get("proxy_entity_name") or "",
            check_labels=dict(check_meta.get("labels") or {}),
            annotations=dict(check_meta.get("annotations") or {}),
            output=check.get("output") or "",
            status=int(check.get("status") or 0),
            event_labels=dict(event_meta.get("labels") or {}),
            entity_labels=dict(entity_meta.get("labels") or {}),
        )
