#!/usr/bin/env python3
"""
=====================================================================
Sensu Alertmanager Events Check
=====================================================================
Bridges Prometheus Alertmanager and Sensu Go.

Each run:
- Reads the active alerts from the Alertmanager v2 API
- Keeps the alerts selected by the configured label selectors
- Posts one critical check event per alert to the Sensu agent API
- (auto-close) Reads the events this check created earlier from the
  Sensu backend and resolves the ones whose alert has disappeared

The create and auto-close branches run concurrently. The run result is a
Sensu check state:
- CRITICAL: an Alertmanager/backend read failed, or an event could not
  be created
- WARNING:  some stale events could not be closed, or the configuration
  is malformed
- OK:       everything was delivered

Runs once by default (exit code = check state). With RUN_INTERVAL > 0 it
keeps running, serving Prometheus metrics and a /health endpoint.
=====================================================================
"""

import os
import sys
import json
import uuid
import signal
import logging
import argparse
import threading
import time
import concurrent.futures
import dataclasses
from dataclasses import dataclass
from enum import IntEnum
from functools import cached_property
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Dict, List, Mapping, NamedTuple, Optional, Sequence

import hvac
from prometheus_client import Counter, Gauge, Histogram, start_http_server

from alert_filter import filter_alerts, parse_label_arg, split_list
from alert_models import PLUGIN_NAME, Alert, EventRecord
from event_dispatcher import SubmitFn, dispatch_close, dispatch_create
from event_identity import EntityMode, EntityStrategy, derive_identity, make_rewrite_table
from event_payload import build_close_event, build_create_event
from event_reconciler import reconcile
from logging_utils import CorrelationID, setup_json_logging
import sensu_client

SERVICE_NAME = "alertmanager_events"
SERVICE_VERSION = "1.0.0"

logger = logging.getLogger(__name__)

# =====================================================================
# PROMETHEUS METRICS
# =====================================================================

METRIC_CHECK_RUNS_TOTAL = Counter(
    'amevents_check_runs_total',
    'Check runs by resulting state',
    ['state']  # OK, WARNING, CRITICAL
)

METRIC_ALERTS_SELECTED = Gauge(
    'amevents_alerts_selected',
    'Alerts left after label selection in the last run'
)

METRIC_STALE_EVENTS = Gauge(
    'amevents_stale_events',
    'Events selected for auto-close in the last run'
)

METRIC_RUN_DURATION = Histogram(
    'amevents_run_duration_seconds',
    'Duration of one check run',
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

# =====================================================================
# CHECK STATE & ERRORS
# =====================================================================


class CheckState(IntEnum):
    """Sensu check states, also used as process exit codes."""
    OK = 0
    WARNING = 1
    CRITICAL = 2
    UNKNOWN = 3


class CheckResult(NamedTuple):
    state: CheckState
    message: str


class ConfigurationError(ValueError):
    """Malformed option value, detected before any network activity."""


class VaultSecretsError(Exception):
    pass


# =====================================================================
# CONFIGURATION
# =====================================================================

def _env_bool(environ: Mapping[str, str], key: str, default: str = 'false') -> bool:
    return environ.get(key, default).lower() in ('true', '1', 'yes', 'on')


def _env_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class Config:
    """Check configuration. Built once at startup and passed to every component."""

    # Alertmanager
    ALERT_MANAGER_API_URL: str = "http://alertmanager-main.monitoring:9093/api/v2/alerts"
    ALERT_MANAGER_EXCLUDE_ALERT_LIST: str = "Watchdog,"
    ALERT_MANAGER_EXTERNAL_URL: str = ""
    ALERT_MANAGER_CLUSTER_LABEL_ENTITY: str = ""
    ALERT_MANAGER_LABEL_SELECTORS: str = ""
    ALERT_MANAGER_EXCLUDE_LABELS: str = ""
    ALERT_MANAGER_TARGET_ALERTNAME: str = "TargetDown"

    # Sensu agent / events
    AGENT_API_URL: str = "http://127.0.0.1:3031/events"
    SENSU_PROXY_ENTITY: str = ""
    SENSU_AGENT_ENTITY: str = ""
    SENSU_NAMESPACE: str = "default"
    SENSU_HANDLER: str = "default,"
    SENSU_EXTRA_LABEL: str = ""
    SENSU_EXTRA_ANNOTATION: str = ""
    REWRITE_ANNOTATION: str = ""

    # Auto-close against the Sensu backend
    AUTO_CLOSE_SENSU: bool = False
    AUTO_CLOSE_SENSU_LABEL: str = ""
    API_BACKEND_USER: str = "admin"
    API_BACKEND_PASS: str = "P@ssw0rd!"
    API_BACKEND_KEY: str = ""
    API_BACKEND_HOST: str = "127.0.0.1"
    API_BACKEND_PORT: int = 8080
    SECURE: bool = False
    INSECURE_SKIP_VERIFY: bool = False
    TRUSTED_CA_FILE: str = ""

    # Runtime
    HTTP_TIMEOUT: int = 10
    LOG_LEVEL: str = "INFO"
    RUN_INTERVAL: int = 0
    METRICS_PORT: int = 8095
    HEALTH_PORT: int = 8096
    POD_NAME: str = "alertmanager-events"

    # Vault (optional source of API_BACKEND_KEY / API_BACKEND_PASS)
    VAULT_ADDR: str = ""
    VAULT_ROLE_ID: str = ""
    VAULT_SECRET_ID_FILE: str = "/etc/sensu-alertmanager-events/vault_secret_id"
    VAULT_SECRETS_PATH: str = "secret/sensu-alertmanager-events"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """Load configuration from environment variables."""
        env = os.environ if environ is None else environ
        d = cls()
        return cls(
            ALERT_MANAGER_API_URL=env.get('ALERT_MANAGER_API_URL', d.ALERT_MANAGER_API_URL),
            ALERT_MANAGER_EXCLUDE_ALERT_LIST=env.get('ALERT_MANAGER_EXCLUDE_ALERT_LIST', d.ALERT_MANAGER_EXCLUDE_ALERT_LIST),
            ALERT_MANAGER_EXTERNAL_URL=env.get('ALERT_MANAGER_EXTERNAL_URL', d.ALERT_MANAGER_EXTERNAL_URL),
            ALERT_MANAGER_CLUSTER_LABEL_ENTITY=env.get('ALERT_MANAGER_CLUSTER_LABEL_ENTITY', d.ALERT_MANAGER_CLUSTER_LABEL_ENTITY),
            ALERT_MANAGER_LABEL_SELECTORS=env.get('ALERT_MANAGER_LABEL_SELECTORS', d.ALERT_MANAGER_LABEL_SELECTORS),
            ALERT_MANAGER_EXCLUDE_LABELS=env.get('ALERT_MANAGER_EXCLUDE_LABELS', d.ALERT_MANAGER_EXCLUDE_LABELS),
            ALERT_MANAGER_TARGET_ALERTNAME=env.get('ALERT_MANAGER_TARGET_ALERTNAME', d.ALERT_MANAGER_TARGET_ALERTNAME),
            AGENT_API_URL=env.get('AGENT_API_URL', d.AGENT_API_URL),
            SENSU_PROXY_ENTITY=env.get('SENSU_PROXY_ENTITY', d.SENSU_PROXY_ENTITY),
            SENSU_AGENT_ENTITY=env.get('HOSTNAME', d.SENSU_AGENT_ENTITY),
            SENSU_NAMESPACE=env.get('SENSU_NAMESPACE', d.SENSU_NAMESPACE),
            SENSU_HANDLER=env.get('SENSU_HANDLER', d.SENSU_HANDLER),
            SENSU_EXTRA_LABEL=env.get('SENSU_EXTRA_LABEL', d.SENSU_EXTRA_LABEL),
            SENSU_EXTRA_ANNOTATION=env.get('SENSU_EXTRA_ANNOTATION', d.SENSU_EXTRA_ANNOTATION),
            REWRITE_ANNOTATION=env.get('REWRITE_ANNOTATION', d.REWRITE_ANNOTATION),
            AUTO_CLOSE_SENSU=_env_bool(env, 'AUTO_CLOSE_SENSU'),
            AUTO_CLOSE_SENSU_LABEL=env.get('AUTO_CLOSE_SENSU_LABEL', d.AUTO_CLOSE_SENSU_LABEL),
            API_BACKEND_USER=env.get('SENSU_API_USER', d.API_BACKEND_USER),
            API_BACKEND_PASS=env.get('SENSU_API_PASSWORD', d.API_BACKEND_PASS),
            API_BACKEND_KEY=env.get('SENSU_API_KEY', d.API_BACKEND_KEY),
            API_BACKEND_HOST=env.get('SENSU_API_HOST', d.API_BACKEND_HOST),
            API_BACKEND_PORT=_env_int(env, 'SENSU_API_PORT', d.API_BACKEND_PORT),
            SECURE=_env_bool(env, 'SENSU_API_SECURE'),
            INSECURE_SKIP_VERIFY=_env_bool(env, 'SENSU_API_INSECURE_SKIP_VERIFY'),
            TRUSTED_CA_FILE=env.get('SENSU_API_TRUSTED_CA_FILE', d.TRUSTED_CA_FILE),
            HTTP_TIMEOUT=_env_int(env, 'HTTP_TIMEOUT', d.HTTP_TIMEOUT),
            LOG_LEVEL=env.get('LOG_LEVEL', d.LOG_LEVEL).upper(),
            RUN_INTERVAL=_env_int(env, 'RUN_INTERVAL', d.RUN_INTERVAL),
            METRICS_PORT=_env_int(env, 'METRICS_PORT', d.METRICS_PORT),
            HEALTH_PORT=_env_int(env, 'HEALTH_PORT', d.HEALTH_PORT),
            POD_NAME=env.get('POD_NAME', d.POD_NAME),
            VAULT_ADDR=env.get('VAULT_ADDR', d.VAULT_ADDR),
            VAULT_ROLE_ID=env.get('VAULT_ROLE_ID', d.VAULT_ROLE_ID),
            VAULT_SECRET_ID_FILE=env.get('VAULT_SECRET_ID_FILE', d.VAULT_SECRET_ID_FILE),
            VAULT_SECRETS_PATH=env.get('VAULT_SECRETS_PATH', d.VAULT_SECRETS_PATH),
        )

    def validate(self) -> None:
        """Check option formats. Raises ConfigurationError."""
        if self.SENSU_EXTRA_LABEL and "=" not in self.SENSU_EXTRA_LABEL:
            raise ConfigurationError(
                f"Please use Format: Label=Value. Wrong format --sensu-extra-label {self.SENSU_EXTRA_LABEL}"
            )
        if self.SENSU_EXTRA_ANNOTATION and "=" not in self.SENSU_EXTRA_ANNOTATION:
            raise ConfigurationError(
                f"Please use Format: Annotation=Value. Wrong format --sensu-extra-annotation {self.SENSU_EXTRA_ANNOTATION}"
            )
        if self.REWRITE_ANNOTATION and "=" not in self.REWRITE_ANNOTATION:
            raise ConfigurationError(
                f"Please use Format: Annotation=Value. Wrong format --rewrite-annotation {self.REWRITE_ANNOTATION}"
            )
        for name in ('API_BACKEND_PORT', 'METRICS_PORT', 'HEALTH_PORT'):
            port = getattr(self, name)
            if port < 1 or port > 65535:
                raise ConfigurationError(f"{name} invalid: {port}")
        if self.HTTP_TIMEOUT <= 0:
            raise ConfigurationError(f"HTTP_TIMEOUT must be positive: {self.HTTP_TIMEOUT}")
        if self.RUN_INTERVAL < 0:
            raise ConfigurationError(f"RUN_INTERVAL cannot be negative: {self.RUN_INTERVAL}")

        # Parsed eagerly so a bad value fails here and not mid-run
        _ = self.auto_close_labels

        if self.SENSU_PROXY_ENTITY and self.ALERT_MANAGER_CLUSTER_LABEL_ENTITY:
            logger.warning(
                f"Both --sensu-proxy-entity {self.SENSU_PROXY_ENTITY} and "
                f"--alert-manager-cluster-label-entity {self.ALERT_MANAGER_CLUSTER_LABEL_ENTITY} are set; "
                f"using proxy entity {self.SENSU_PROXY_ENTITY}"
            )

    @property
    def protocol(self) -> str:
        return "https" if self.SECURE else "http"

    @cached_property
    def entity_strategy(self) -> EntityStrategy:
        if self.SENSU_PROXY_ENTITY:
            return EntityStrategy(EntityMode.SENSU_PROXY, self.SENSU_PROXY_ENTITY)
        if self.ALERT_MANAGER_CLUSTER_LABEL_ENTITY:
            return EntityStrategy(EntityMode.ALERTMANAGER_LABEL, self.ALERT_MANAGER_CLUSTER_LABEL_ENTITY)
        return EntityStrategy(EntityMode.KUBERNETES_RESOURCE)

    @cached_property
    def label_selector(self) -> Dict[str, str]:
        return parse_label_arg(self.ALERT_MANAGER_LABEL_SELECTORS)

    @cached_property
    def exclude_labels(self) -> Dict[str, str]:
        return parse_label_arg(self.ALERT_MANAGER_EXCLUDE_LABELS)

    @cached_property
    def exclude_alert_list(self) -> List[str]:
        return split_list(self.ALERT_MANAGER_EXCLUDE_ALERT_LIST)

    @cached_property
    def handlers(self) -> List[str]:
        return split_list(self.SENSU_HANDLER)

    @cached_property
    def extra_labels(self) -> Dict[str, str]:
        return parse_label_arg(self.SENSU_EXTRA_LABEL)

    @cached_property
    def extra_annotations(self) -> Dict[str, str]:
        return parse_label_arg(self.SENSU_EXTRA_ANNOTATION)

    @cached_property
    def rewrite_table(self) -> Dict[str, str]:
        return make_rewrite_table(self.REWRITE_ANNOTATION)

    @cached_property
    def auto_close_labels(self) -> Dict[str, str]:
        """The auxiliary label predicate, e.g. {"cluster": "k8s-dev"}."""
        if not self.AUTO_CLOSE_SENSU_LABEL:
            return {}
        try:
            labels = json.loads(self.AUTO_CLOSE_SENSU_LABEL)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"fail in --auto-close-sensu-label unmarshal: {e}")
        if not isinstance(labels, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in labels.items()
        ):
            raise ConfigurationError(
                f"--auto-close-sensu-label must be a JSON object of strings, got {self.AUTO_CLOSE_SENSU_LABEL}"
            )
        return labels


# flag, Config field, extra argparse kwargs
_OPTIONS = [
    ('--alert-manager-api-url', 'ALERT_MANAGER_API_URL', {'help': 'The URL for the Agent to connect to Alert Manager'}),
    ('--agent-api-url', 'AGENT_API_URL', {'help': 'The URL for the Agent API used to send events'}),
    ('--alert-manager-exclude-alert-list', 'ALERT_MANAGER_EXCLUDE_ALERT_LIST', {'help': 'Alert Manager alerts to be excluded, split by comma'}),
    ('--alert-manager-external-url', 'ALERT_MANAGER_EXTERNAL_URL', {'help': 'Alert Manager External URL'}),
    ('--alert-manager-cluster-label-entity', 'ALERT_MANAGER_CLUSTER_LABEL_ENTITY', {'help': 'Alert Manager label that represents a cluster entity inside Sensu'}),
    ('--alert-manager-label-selectors', 'ALERT_MANAGER_LABEL_SELECTORS', {'help': 'Alert label selectors (e.g. alertname=TargetDown,environment=dev)'}),
    ('--alert-manager-exclude-labels', 'ALERT_MANAGER_EXCLUDE_LABELS', {'help': 'Alert labels to exclude (e.g. alertname=TargetDown,environment=dev)'}),
    ('--alert-manager-target-alertname', 'ALERT_MANAGER_TARGET_ALERTNAME', {'help': 'Alert name for Prometheus targets; adds the prometheus_targets_url annotation'}),
    ('--sensu-proxy-entity', 'SENSU_PROXY_ENTITY', {'help': 'Overwrite Proxy Entity in Sensu'}),
    ('--sensu-agent-entity', 'SENSU_AGENT_ENTITY', {'help': 'Agent entity used in the event subscription'}),
    ('--sensu-namespace', 'SENSU_NAMESPACE', {'help': 'Sensu namespace used by the events'}),
    ('--sensu-handler', 'SENSU_HANDLER', {'help': 'Sensu handlers for alerts, split by comma'}),
    ('--sensu-extra-label', 'SENSU_EXTRA_LABEL', {'help': 'Extra check labels. Format: labelName=labelValue,extraLabel=extraValue'}),
    ('--sensu-extra-annotation', 'SENSU_EXTRA_ANNOTATION', {'help': 'Extra check annotations. Format: annotationName=annotationValue,extraTwo=extraValue'}),
    ('--rewrite-annotation', 'REWRITE_ANNOTATION', {'help': 'Rewrite annotation keys. Format: opsgenie_priority=sensu.io/plugins/sensu-opsgenie-handler/config/priority'}),
    ('--auto-close-sensu', 'AUTO_CLOSE_SENSU', {'action': 'store_true', 'help': "Resolve events that don't match any alert from Alert Manager"}),
    ('--auto-close-sensu-label', 'AUTO_CLOSE_SENSU_LABEL', {'help': 'Only auto close events with these labels, e.g. {"cluster":"k8s-dev"}'}),
    ('--api-backend-user', 'API_BACKEND_USER', {'help': 'Sensu Go Backend API User'}),
    ('--api-backend-pass', 'API_BACKEND_PASS', {'help': 'Sensu Go Backend API Password'}),
    ('--api-backend-key', 'API_BACKEND_KEY', {'help': 'Sensu Go Backend API Key'}),
    ('--api-backend-host', 'API_BACKEND_HOST', {'help': 'Sensu Go Backend API Host'}),
    ('--api-backend-port', 'API_BACKEND_PORT', {'type': int, 'help': 'Sensu Go Backend API Port'}),
    ('--secure', 'SECURE', {'action': 'store_true', 'help': 'Use TLS connection to API'}),
    ('--insecure-skip-verify', 'INSECURE_SKIP_VERIFY', {'action': 'store_true', 'help': 'Skip TLS certificate verification (not recommended!)'}),
    ('--trusted-ca-file', 'TRUSTED_CA_FILE', {'help': 'TLS CA certificate bundle in PEM format'}),
]


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PLUGIN_NAME,
        description='Sensu check for Alert Manager events'
    )
    for flag, dest, kwargs in _OPTIONS:
        parser.add_argument(flag, dest=dest, default=None, **kwargs)
    return parser


def parse_args(argv: Optional[Sequence[str]] = None, environ: Optional[Mapping[str, str]] = None) -> Config:
    """Environment configuration overridden by command-line flags."""
    args = build_arg_parser().parse_args(argv)
    overrides = {k: v for k, v in vars(args).items() if v is not None}
    return dataclasses.replace(Config.from_env(environ), **overrides)


# =====================================================================
# VAULT SECRET MANAGEMENT
# =====================================================================

def fetch_secrets(config: Config) -> Config:
    """Load the backend API key and password from Vault (AppRole)."""
    try:
        logger.info(f"Connecting to Vault at {config.VAULT_ADDR}...")
        vault_client = hvac.Client(url=config.VAULT_ADDR)

        if not os.path.exists(config.VAULT_SECRET_ID_FILE):
            raise FileNotFoundError(f"Vault secret ID file not found: {config.VAULT_SECRET_ID_FILE}")

        with open(config.VAULT_SECRET_ID_FILE, 'r') as f:
            secret_id = f.read().strip()

        if not secret_id:
            raise ValueError("Vault secret ID file is empty")

        vault_client.auth.approle.login(role_id=config.VAULT_ROLE_ID, secret_id=secret_id)
        if not vault_client.is_authenticated():
            raise VaultSecretsError("Vault authentication failed.")

        response = vault_client.secrets.kv.v2.read_secret_version(path=config.VAULT_SECRETS_PATH)
        data = response['data']['data']
    except VaultSecretsError:
        raise
    except Exception as e:
        raise VaultSecretsError(f"Failed to fetch secrets from Vault: {e}") from e

    overrides = {}
    if data.get('SENSU_API_KEY'):
        overrides['API_BACKEND_KEY'] = data['SENSU_API_KEY']
    if data.get('SENSU_API_PASSWORD'):
        overrides['API_BACKEND_PASS'] = data['SENSU_API_PASSWORD']
    logger.info(f"Loaded {len(overrides)} secrets from Vault")
    return dataclasses.replace(config, **overrides)


# =====================================================================
# CHECK BRANCHES
# =====================================================================

def build_create_events(alerts: Sequence[Alert], config: Config) -> List[EventRecord]:
    """One critical event per active, non-excluded alert."""
    excluded = config.exclude_alert_list
    records = []
    for alert in alerts:
        if not alert.name or alert.name in excluded:
            logger.debug(f"Skipping excluded alert {alert.name!r}")
            continue
        if not alert.is_active:
            logger.info(f"Not Sending Alert {alert.name}")
            continue
        identity = derive_identity(alert, config)
        records.append(build_create_event(identity, alert, config))
    return records


def process_alerts(alerts: Sequence[Alert], config: Config, submit: Optional[SubmitFn] = None) -> int:
    """Create branch: returns the number of events that could not be created."""
    return dispatch_create(build_create_events(alerts, config), config, submit)


def close_stale_events(alerts: Sequence[Alert], config: Config, submit: Optional[SubmitFn] = None) -> int:
    """
    Auto-close branch: returns the number of events that could not be closed.

    Raises SensuClientError when the backend cannot be authenticated or read.
    """
    auth = None
    if not config.API_BACKEND_KEY:
        auth = sensu_client.authenticate(config)
    events = sensu_client.get_events(config, auth)
    logger.info(f"Number of Events found: {len(events)}")

    stale = reconcile(alerts, events, config.auto_close_labels)
    METRIC_STALE_EVENTS.set(len(stale))
    return dispatch_close([build_close_event(e, config) for e in stale], config, submit)


def _with_correlation(correlation_id: str, fn, *args):
    CorrelationID.set(correlation_id)
    return fn(*args)


def summarize(create_failures: int, close_failures: int) -> CheckResult:
    """Create failures outrank close failures."""
    if create_failures > 0:
        return CheckResult(CheckState.CRITICAL, "cannot create all events in sensu")
    if close_failures > 0:
        return CheckResult(CheckState.WARNING, "cannot close all events in sensu backend")
    return CheckResult(CheckState.OK, "all events processed")


def execute_check(config: Config, submit: Optional[SubmitFn] = None) -> CheckResult:
    """Fetch alerts, then run the create and auto-close branches concurrently."""
    try:
        alerts = sensu_client.fetch_alerts(config)
    except sensu_client.SensuClientError as e:
        logger.error(str(e))
        return CheckResult(CheckState.CRITICAL, str(e))

    alerts = filter_alerts(alerts, config.label_selector, config.exclude_labels)
    METRIC_ALERTS_SELECTED.set(len(alerts))
    logger.info(f"Number of Alerts found: {len(alerts)}")

    correlation_id = CorrelationID.get()
    create_failures = 0
    close_failures = 0
    errors = []
    with concurrent.futures.ThreadPoolExecutor(max_workers=2, thread_name_prefix="check-branch") as ex:
        create_future = None
        close_future = None
        if alerts:
            create_future = ex.submit(_with_correlation, correlation_id, process_alerts, alerts, config, submit)
        if config.AUTO_CLOSE_SENSU:
            close_future = ex.submit(_with_correlation, correlation_id, close_stale_events, alerts, config, submit)

        # Both branches finish before the outcome is read
        concurrent.futures.wait([f for f in (create_future, close_future) if f is not None])

    for future, name in ((create_future, 'create'), (close_future, 'close')):
        if future is None:
            continue
        try:
            if name == 'create':
                create_failures = future.result()
            else:
                close_failures = future.result()
        except sensu_client.SensuClientError as e:
            logger.error(f"{name} branch aborted: {e}")
            errors.append(str(e))

    if errors:
        return CheckResult(CheckState.CRITICAL, "; ".join(errors))
    return summarize(create_failures, close_failures)


def run_check(config: Config, submit: Optional[SubmitFn] = None) -> CheckResult:
    """One full check run with its own correlation ID and metrics."""
    CorrelationID.set(uuid.uuid4().hex[:8])
    start_time = time.time()
    try:
        result = execute_check(config, submit)
        METRIC_CHECK_RUNS_TOTAL.labels(state=result.state.name).inc()
        return result
    finally:
        METRIC_RUN_DURATION.observe(time.time() - start_time)
        CorrelationID.set('system')


def format_status(result: CheckResult) -> str:
    return f"{PLUGIN_NAME} {result.state.name}: {result.message}"


# =====================================================================
# LOOP MODE: HEALTH CHECK & MAIN LOOP
# =====================================================================

class RunStatus:
    """Result of the most recent run, shared with the health endpoint."""

    def __init__(self):
        self.lock = threading.Lock()
        self.result: Optional[CheckResult] = None
        self.timestamp = 0.0

    def update(self, result: CheckResult):
        with self.lock:
            self.result = result
            self.timestamp = time.time()

    def snapshot(self) -> Dict[str, object]:
        with self.lock:
            if self.result is None:
                return {"state": None, "message": None, "timestamp": None}
            return {
                "state": self.result.state.name,
                "message": self.result.message,
                "timestamp": self.timestamp,
            }


def start_health_server(config: Config, run_status: RunStatus, stop_event: threading.Event) -> threading.Thread:
    """Serve GET /health in a background thread until stop_event is set."""

    class HealthHandler(BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path != '/health':
                self.send_response(404)
                self.end_headers()
                return
            last = run_status.snapshot()
            healthy = last["state"] != CheckState.CRITICAL.name
            body = {
                "status": "healthy" if healthy else "unhealthy",
                "service": PLUGIN_NAME,
                "version": SERVICE_VERSION,
                "pod": config.POD_NAME,
                "last_run": last,
            }
            self.send_response(200 if healthy else 503)
            self.send_header('Content-Type', 'application/json')
            self.end_headers()
            self.wfile.write(json.dumps(body).encode())

        def log_message(self, format, *args):
            pass  # Suppress default logging

    server = HTTPServer(('0.0.0.0', config.HEALTH_PORT), HealthHandler)
    server.timeout = 1

    def serve():
        logger.info(f"Health check server started on port {config.HEALTH_PORT}")
        while not stop_event.is_set():
            server.handle_request()
        server.server_close()
        logger.info("Health check server stopped")

    thread = threading.Thread(target=serve, daemon=True, name="HealthCheck")
    thread.start()
    return thread


def check_loop(config: Config, stop_event: threading.Event, run_status: Optional[RunStatus] = None):
    """Run the check every RUN_INTERVAL seconds until stop_event is set."""
    logger.info(f"Check loop started (interval={config.RUN_INTERVAL}s)")

    while not stop_event.is_set():
        try:
            result = run_check(config)
            if run_status is not None:
                run_status.update(result)
            log = logger.info if result.state is CheckState.OK else logger.warning
            log(format_status(result))
        except Exception as e:
            logger.error(f"Error in check loop: {e}", exc_info=True)

        stop_event.wait(config.RUN_INTERVAL)

    logger.info("Check loop stopped")


def run_service(config: Config) -> None:
    """Long-running mode with metrics, health endpoint and signal handling."""
    stop_event = threading.Event()

    def graceful_shutdown(signum, frame):
        sig_name = 'SIGTERM' if signum == signal.SIGTERM else 'SIGINT'
        logger.warning(f"{sig_name} received. Initiating graceful shutdown...")
        stop_event.set()

    signal.signal(signal.SIGTERM, graceful_shutdown)
    signal.signal(signal.SIGINT, graceful_shutdown)

    start_http_server(config.METRICS_PORT)
    logger.info(f"Prometheus metrics server started on port {config.METRICS_PORT}")

    run_status = RunStatus()
    health_thread = start_health_server(config, run_status, stop_event)

    logger.info("=" * 70)
    logger.info(f"Sensu Alertmanager Events v{SERVICE_VERSION} - Pod: {config.POD_NAME}")
    logger.info("=" * 70)
    logger.info(f"Alert Manager API: {config.ALERT_MANAGER_API_URL}")
    logger.info(f"Agent API: {config.AGENT_API_URL}")
    logger.info(f"Auto close: {config.AUTO_CLOSE_SENSU}")
    logger.info("=" * 70)

    check_loop(config, stop_event, run_status)

    health_thread.join(timeout=2)
    logger.info("Shutdown complete")


# =====================================================================
# MAIN ENTRY POINT
# =====================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point; returns the process exit code."""
    try:
        config = parse_args(argv)
    except ConfigurationError as e:
        print(format_status(CheckResult(CheckState.WARNING, str(e))))
        return int(CheckState.WARNING)

    setup_json_logging(service_name=SERVICE_NAME, version=SERVICE_VERSION, level=config.LOG_LEVEL)

    try:
        config.validate()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        print(format_status(CheckResult(CheckState.WARNING, str(e))))
        return int(CheckState.WARNING)

    if config.VAULT_ADDR:
        try:
            config = fetch_secrets(config)
        except VaultSecretsError as e:
            logger.error(f"FATAL: {e}")
            print(format_status(CheckResult(CheckState.CRITICAL, str(e))))
            return int(CheckState.CRITICAL)

    if config.RUN_INTERVAL > 0:
        run_service(config)
        return int(CheckState.OK)

    try:
        result = run_check(config)
    except Exception as e:
        logger.error(f"Unexpected error during check: {e}", exc_info=True)
        result = CheckResult(CheckState.UNKNOWN, f"unexpected error: {e}")
    print(format_status(result))
    return int(result.state)


if __name__ == "__main__":
    sys.exit(main())
