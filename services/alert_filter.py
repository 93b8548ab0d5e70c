#!/usr/bin/env python3
"""
Label selection for Alertmanager alerts.

An alert is kept when it carries every include pair and none of the exclude
pairs. Matching is exact string equality on the label value.
"""

import logging
from typing import Dict, Iterable, List, Mapping

from alert_models import Alert

logger = logging.getLogger(__name__)


def parse_label_arg(label_arg: str) -> Dict[str, str]:
    """
    Parse a "key=value,key2=value2" string.

    Pairs that do not split into exactly one key and one value are ignored.
    """
    labels: Dict[str, str] = {}
    if not label_arg:
        return labels
    for pair in label_arg.split(","):
        parts = pair.split("=")
        if len(parts) == 2:
            labels[parts[0]] = parts[1]
    return labels


def split_list(value: str) -> List[str]:
    """Split a comma separated option, dropping empty entries ("default," -> ["default"])."""
    if not value:
        return []
    return [item for item in value.split(",") if item]


def matches_selectors(labels: Mapping[str, str], include: Mapping[str, str], exclude: Mapping[str, str]) -> bool:
    for key, value in include.items():
        if key not in labels or labels[key] != value:
            return False
    for key, value in exclude.items():
        if key in labels and labels[key] == value:
            return False
    return True


def filter_alerts(
    alerts: Iterable[Alert],
    include: Mapping[str, str],
    exclude: Mapping[str, str],
) -> List[Alert]:
    """Return the alerts selected by the include/exclude label pairs, in input order."""
    result = [a for a in alerts if matches_selectors(a.labels, include, exclude)]
    logger.debug(f"Label selectors kept {len(result)} alerts")
    return result
