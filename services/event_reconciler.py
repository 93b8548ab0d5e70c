#!/usr/bin/env python3
"""
Auto-close reconciliation.

Events created by this check carry the owner label and the fingerprint of
the alert they came from. An owned event that is still open and whose
fingerprint no longer appears in the current alert list is a close
candidate.
"""

import logging
from typing import Iterable, List, Mapping, Optional, Set

from alert_models import PLUGIN_NAME, Alert, ExistingEvent

logger = logging.getLogger(__name__)


def current_fingerprints(alerts: Iterable[Alert]) -> Set[str]:
    return {alert.fingerprint for alert in alerts}


def search_labels(event: ExistingEvent, labels: Mapping[str, str]) -> bool:
    """
    True when every pair of `labels` is found on the event.

    A pair may match on the event labels, the entity labels or the check
    labels. An empty mapping matches nothing.
    """
    if not labels:
        return False
    sources = (event.event_labels, event.entity_labels, event.check_labels)
    for key, value in labels.items():
        if not any(source.get(key) == value for source in sources):
            return False
    return True


def filter_owned_events(
    events: Iterable[ExistingEvent],
    only_labels: Optional[Mapping[str, str]] = None,
    plugin_name: str = PLUGIN_NAME,
) -> List[ExistingEvent]:
    """Open events created by this check, optionally restricted to `only_labels`."""
    result = [e for e in events if e.is_owned_by(plugin_name) and not e.is_resolved]
    if only_labels:
        result = [e for e in result if search_labels(e, only_labels)]
    return result


def reconcile(
    alerts: Iterable[Alert],
    events: Iterable[ExistingEvent],
    only_labels: Optional[Mapping[str, str]] = None,
    plugin_name: str = PLUGIN_NAME,
) -> List[ExistingEvent]:
    """Return the owned, open events whose alert is no longer firing."""
    fingerprints = current_fingerprints(alerts)
    candidates = filter_owned_events(events, only_labels, plugin_name)
    # Events without a fingerprint label cannot be matched and are left alone
    stale = [e for e in candidates if e.fingerprint is not None and e.fingerprint not in fingerprints]
    logger.info(f"{len(candidates)} open events owned by {plugin_name}, {len(stale)} to close")
    return stale
