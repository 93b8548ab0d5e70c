#!/usr/bin/env python3
"""
HTTP clients for the three remote APIs used by the check:

- Alertmanager:      GET  <alert-manager-api-url>            (alert list)
- Sensu agent:       POST <agent-api-url>                    (event submit)
- Sensu backend:     GET  /auth, GET /api/core/v2/namespaces/<ns>/events

Fetch and authentication failures raise a SensuClientError subclass and
abort the branch that needed them. Event submission never raises for HTTP
problems; it reports (success, error_message) so one failed event does not
affect its siblings.
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

import requests
from prometheus_client import Counter, Histogram

from alert_models import Alert, EventRecord, ExistingEvent

logger = logging.getLogger(__name__)

ERROR_BODY_PREVIEW = 64

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_REQUESTS_TOTAL = Counter(
    'amevents_http_requests_total',
    'Requests made to Alertmanager and Sensu',
    ['target', 'status']  # target: alertmanager, agent, auth, events; status: success, fail
)

METRIC_REQUEST_LATENCY = Histogram(
    'amevents_http_request_latency_seconds',
    'Latency of requests made to Alertmanager and Sensu',
    ['target'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# =====================================================================
# ERRORS
# =====================================================================


class SensuClientError(Exception):
    """A remote read that the run cannot continue without failed."""


class AlertmanagerFetchError(SensuClientError):
    pass


class SensuAuthError(SensuClientError):
    pass


class SensuEventsError(SensuClientError):
    pass


@dataclass(frozen=True)
class Auth:
    """Access token returned by the Sensu backend /auth endpoint."""
    access_token: str
    refresh_token: str = ""
    expires_at: int = 0


# =====================================================================
# HELPERS
# =====================================================================

def trim_body(body: str, maxlen: int = ERROR_BODY_PREVIEW) -> str:
    """Shorten a response body for error messages."""
    return body[:maxlen]


def _is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


def tls_verify(config) -> Union[bool, str]:
    """The requests `verify` argument for calls to the Sensu backend."""
    if config.INSECURE_SKIP_VERIFY:
        return False
    if config.TRUSTED_CA_FILE:
        return config.TRUSTED_CA_FILE
    return True


def backend_url(config, path: str) -> str:
    return f"{config.protocol}://{config.API_BACKEND_HOST}:{config.API_BACKEND_PORT}{path}"


def events_url(config, namespace: str) -> str:
    return backend_url(config, f"/api/core/v2/namespaces/{namespace}/events")


def auth_headers(config, auth: Optional[Auth]) -> Dict[str, str]:
    """Authorization header: a static API key wins over a bearer token."""
    headers = {'Content-Type': 'application/json'}
    if config.API_BACKEND_KEY:
        headers['Authorization'] = f"Key {config.API_BACKEND_KEY}"
    elif auth is not None:
        headers['Authorization'] = f"Bearer {auth.access_token}"
    return headers


def _observe(target: str, start_time: float, success: bool) -> None:
    METRIC_REQUEST_LATENCY.labels(target=target).observe(time.time() - start_time)
    METRIC_REQUESTS_TOTAL.labels(target=target, status='success' if success else 'fail').inc()


# =====================================================================
# ALERTMANAGER
# =====================================================================

def fetch_alerts(config) -> List[Alert]:
    """Read the current alert list from Alertmanager."""
    url = config.ALERT_MANAGER_API_URL
    start_time = time.time()
    try:
        response = requests.get(url, timeout=config.HTTP_TIMEOUT)
    except requests.exceptions.RequestException as e:
        _observe('alertmanager', start_time, False)
        raise AlertmanagerFetchError(f"Failed to get alert manager alerts: {e}") from e

    if not _is_success(response.status_code):
        _observe('alertmanager', start_time, False)
        raise AlertmanagerFetchError(
            f"Failed to get alert manager alerts: GET {url} returned {response.status_code}: "
            f"{trim_body(response.text)}"
        )

    try:
        data = response.json()
    except ValueError as e:
        _observe('alertmanager', start_time, False)
        raise AlertmanagerFetchError(
            f"Failed to decode alert manager alerts: {e}\n"
            f"First {ERROR_BODY_PREVIEW} bytes of response: {trim_body(response.text)}"
        ) from e

    if not isinstance(data, list):
        _observe('alertmanager', start_time, False)
        raise AlertmanagerFetchError(f"Unexpected alert manager response type: {type(data).__name__}")

    try:
        alerts = [Alert.from_alertmanager(item) for item in data]
    except (ValueError, TypeError, AttributeError) as e:
        _observe('alertmanager', start_time, False)
        raise AlertmanagerFetchError(
            f"Failed to decode alert manager alerts: {e}\n"
            f"First {ERROR_BODY_PREVIEW} bytes of response: {trim_body(response.text)}"
        ) from e

    _observe('alertmanager', start_time, True)
    return alerts


# =====================================================================
# SENSU AGENT
# =====================================================================

def submit_event(record: EventRecord, config) -> Tuple[bool, Optional[str]]:
    """
    Post one event to the agent events API.

    Returns:
        (success: bool, error_message: Optional[str])
    """
    start_time = time.time()
    try:
        response = requests.post(
            config.AGENT_API_URL,
            json=record.to_payload(),
            timeout=config.HTTP_TIMEOUT
        )
    except requests.exceptions.Timeout:
        _observe('agent', start_time, False)
        return (False, f"Timeout posting event to {config.AGENT_API_URL} after {config.HTTP_TIMEOUT}s")
    except requests.exceptions.RequestException as e:
        _observe('agent', start_time, False)
        return (False, f"Failed to post event to {config.AGENT_API_URL}: {e}")

    if not _is_success(response.status_code):
        _observe('agent', start_time, False)
        return (
            False,
            f"POST of event {record.name} to {config.AGENT_API_URL} failed with status "
            f"{response.status_code}: {trim_body(response.text)}"
        )

    _observe('agent', start_time, True)
    return (True, None)


# =====================================================================
# SENSU BACKEND
# =====================================================================

def authenticate(config) -> Auth:
    """Exchange the backend user and password for an access token."""
    url = backend_url(config, "/auth")
    start_time = time.time()
    try:
        response = requests.get(
            url,
            auth=(config.API_BACKEND_USER, config.API_BACKEND_PASS),
            timeout=config.HTTP_TIMEOUT,
            verify=tls_verify(config)
        )
    except requests.exceptions.RequestException as e:
        _observe('auth', start_time, False)
        raise SensuAuthError(f"error executing auth request: {e}") from e

    body = response.text
    if body.startswith("Unauthorized"):
        _observe('auth', start_time, False)
        raise SensuAuthError(f"authorization failed for user {config.API_BACKEND_USER}")
    if not _is_success(response.status_code):
        _observe('auth', start_time, False)
        raise SensuAuthError(
            f"auth request for user {config.API_BACKEND_USER} failed with status {response.status_code}"
        )

    try:
        data: Dict[str, Any] = response.json()
        auth = Auth(
            access_token=data['access_token'],
            refresh_token=data.get('refresh_token', ''),
            expires_at=int(data.get('expires_at', 0)),
        )
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        _observe('auth', start_time, False)
        raise SensuAuthError(
            f"error decoding auth response: {e}\n"
            f"First {ERROR_BODY_PREVIEW} bytes of response: {trim_body(body)}"
        ) from e

    _observe('auth', start_time, True)
    return auth


def get_events(config, auth: Optional[Auth] = None) -> List[ExistingEvent]:
    """Read every event of the configured namespace from the backend."""
    url = events_url(config, config.SENSU_NAMESPACE)
    start_time = time.time()
    try:
        response = requests.get(
            url,
            headers=auth_headers(config, auth),
            timeout=config.HTTP_TIMEOUT,
            verify=tls_verify(config)
        )
    except requests.exceptions.RequestException as e:
        _observe('events', start_time, False)
        raise SensuEventsError(f"error executing GET request for {url}: {e}") from e

    if not _is_success(response.status_code):
        _observe('events', start_time, False)
        raise SensuEventsError(
            f"GET {url} failed with status {response.status_code}: {trim_body(response.text)}"
        )

    try:
        data = response.json()
        events = [ExistingEvent.from_sensu(item) for item in data]
    except (ValueError, TypeError, AttributeError) as e:
        _observe('events', start_time, False)
        raise SensuEventsError(
            f"error unmarshalling response during getEvents: {e}\n"
            f"First {ERROR_BODY_PREVIEW} bytes of response: {trim_body(response.text)}"
        ) from e

    _observe('events', start_time, True)
    return events
