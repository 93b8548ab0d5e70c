#!/usr/bin/env python3
"""
Mock Sensu agent + backend + Alertmanager for integration testing.

Endpoints:
- POST /events                                   -> agent events API; the check is
                                                    stored as a backend event
- GET  /auth                                     -> basic auth, returns an access token
- GET  /api/core/v2/namespaces/<ns>/events       -> stored events (Bearer or Key auth)
- GET  /api/v2/alerts                            -> current Alertmanager alert list
- POST /api/v2/alerts                            -> replace the alert list (test control)
- POST /_control/fail                            -> {"events": [...]} names whose POST /events fails
- POST /_control/reset                           -> forget everything
- GET  /stats                                    -> request counts and last payload
- GET  /health                                   -> basic health

Env:
- PORT (default 3031)
- MOCK_SENSU_USER / MOCK_SENSU_PASSWORD (default admin / P@ssw0rd!)
"""

import os
import uuid
import threading

from flask import Flask, request, jsonify


class MockState:
    def __init__(self, user, password, api_key=""):
        self.lock = threading.Lock()
        self.user = user
        self.password = password
        self.api_key = api_key
        self.reset()

    def reset(self):
        with self.lock:
            self.alerts = []
            # (namespace, entity, check name) -> stored event
            self.events = {}
            self.fail_events = set()
            self.tokens = set()
            self.posted = []
            self.auth_requests = 0

    def store(self, payload):
        check = payload.get("check") or {}
        meta = check.get("metadata") or {}
        namespace = meta.get("namespace") or "default"
        entity = check.get("proxy_entity_name") or ""
        key = (namespace, entity, meta.get("name") or "")
        with self.lock:
            self.posted.append(payload)
            self.events[key] = {
                "metadata": {"namespace": namespace, "labels": {}},
                "entity": {"metadata": {"name": entity, "namespace": namespace, "labels": {}}},
                "check": check,
            }

    def authorized(self, header):
        if not header:
            return False
        scheme, _, value = header.partition(" ")
        with self.lock:
            if scheme == "Bearer":
                return value in self.tokens
            if scheme == "Key":
                return bool(self.api_key) and value == self.api_key
        return False


def create_app(user="admin", password="P@ssw0rd!", api_key=""):
    app = Flask(__name__)
    state = MockState(user, password, api_key)
    app.config["MOCK_STATE"] = state

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify({"status": "healthy", "service": "mock-sensu"})

    @app.route('/events', methods=['POST'])
    def events():
        payload = request.get_json(force=True, silent=True)
        if not isinstance(payload, dict) or not isinstance(payload.get("check"), dict):
            return jsonify({"ok": False, "error": "invalid event"}), 400
        name = (payload["check"].get("metadata") or {}).get("name")
        with state.lock:
            failing = name in state.fail_events
        if failing:
            return jsonify({"ok": False, "error": f"injected failure for {name}"}), 500
        state.store(payload)
        return jsonify({"ok": True}), 202

    @app.route('/auth', methods=['GET'])
    def auth():
        creds = request.authorization
        with state.lock:
            state.auth_requests += 1
        if creds is None or creds.username != state.user or creds.password != state.password:
            return "Unauthorized\n", 401
        token = uuid.uuid4().hex
        with state.lock:
            state.tokens.add(token)
        return jsonify({"access_token": token, "refresh_token": uuid.uuid4().hex, "expires_at": 0})

    @app.route('/api/core/v2/namespaces/<namespace>/events', methods=['GET'])
    def list_events(namespace):
        if not state.authorized(request.headers.get("Authorization")):
            return jsonify({"message": "unauthorized"}), 401
        with state.lock:
            items = [e for (ns, _, _), e in state.events.items() if ns == namespace]
        return jsonify(items)

    @app.route('/api/v2/alerts', methods=['GET', 'POST'])
    def alerts():
        if request.method == 'POST':
            payload = request.get_json(force=True, silent=True)
            if not isinstance(payload, list):
                return jsonify({"ok": False, "error": "expected a list of alerts"}), 400
            with state.lock:
                state.alerts = payload
            return jsonify({"ok": True, "count": len(payload)})
        with state.lock:
            return jsonify(list(state.alerts))

    @app.route('/_control/fail', methods=['POST'])
    def control_fail():
        payload = request.get_json(force=True, silent=True) or {}
        with state.lock:
            state.fail_events = set(payload.get("events") or [])
        return jsonify({"ok": True})

    @app.route('/_control/reset', methods=['POST'])
    def control_reset():
        state.reset()
        return jsonify({"ok": True})

    @app.route('/stats', methods=['GET'])
    def get_stats():
        with state.lock:
            return jsonify({
                "count": len(state.posted),
                "last": state.posted[-1] if state.posted else None,
                "stored_events": len(state.events),
                "auth_requests": state.auth_requests,
            })

    return app


app = create_app(
    user=os.environ.get('MOCK_SENSU_USER', 'admin'),
    password=os.environ.get('MOCK_SENSU_PASSWORD', 'P@ssw0rd!'),
)

if __name__ == '__main__':
    port = int(os.environ.get('PORT', '3031'))
    app.run(host='0.0.0.0', port=port)
