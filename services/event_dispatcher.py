#!/usr/bin/env python3
"""
Concurrent delivery of check events to the Sensu agent.

Every event gets its own worker; a failed submission is logged and counted
but never cancels or delays the others. Callers only receive the number of
failures: the names of the failed events are visible in the log.
"""

import logging
import concurrent.futures
from typing import Callable, Optional, Sequence, Tuple

from prometheus_client import Counter

from alert_models import EventRecord
from logging_utils import CorrelationID
import sensu_client

logger = logging.getLogger(__name__)

SubmitFn = Callable[[EventRecord, object], Tuple[bool, Optional[str]]]

METRIC_EVENTS_DISPATCHED_TOTAL = Counter(
    'amevents_events_dispatched_total',
    'Events submitted to the Sensu agent',
    ['action', 'status']  # action: create, close; status: success, fail
)


def _submit_one(record: EventRecord, config, submit: SubmitFn, action: str, correlation_id: str) -> bool:
    CorrelationID.set(correlation_id)
    if action == 'close':
        logger.info(f"Closing {record.name}")
    else:
        logger.info(f"Sending Alert {record.name} to {record.entity}")

    try:
        success, error_msg = submit(record, config)
    except Exception as e:
        logger.error(f"Unexpected error submitting {record.name}: {e}", exc_info=True)
        success, error_msg = False, str(e)

    if success:
        METRIC_EVENTS_DISPATCHED_TOTAL.labels(action=action, status='success').inc()
        return True

    METRIC_EVENTS_DISPATCHED_TOTAL.labels(action=action, status='fail').inc()
    if action == 'close':
        logger.error(f"Error closing {record.name}: {error_msg}")
    else:
        logger.error(f"Error sending Alert {record.name} to {record.entity}: {error_msg}")
    return False


def dispatch(records: Sequence[EventRecord], config, action: str, submit: Optional[SubmitFn] = None) -> int:
    """
    Submit all records concurrently and return how many failed.

    One worker thread per record, no ordering between submissions. The call
    returns once every submission has finished.
    """
    if not records:
        return 0
    submit = submit or sensu_client.submit_event
    correlation_id = CorrelationID.get()

    failures = 0
    with concurrent.futures.ThreadPoolExecutor(
        max_workers=len(records),
        thread_name_prefix=f"dispatch-{action}"
    ) as ex:
        futs = [ex.submit(_submit_one, record, config, submit, action, correlation_id) for record in records]
        for f in concurrent.futures.as_completed(futs):
            if not f.result():
                failures += 1

    logger.info(f"Dispatched {len(records)} {action} events, {failures} failed")
    return failures


def dispatch_create(records: Sequence[EventRecord], config, submit: Optional[SubmitFn] = None) -> int:
    return dispatch(records, config, 'create', submit)


def dispatch_close(records: Sequence[EventRecord], config, submit: Optional[SubmitFn] = None) -> int:
    return dispatch(records, config, 'close', submit)
