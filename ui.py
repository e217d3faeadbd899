#!/usr/bin/env python3
"""
Live latch status UI

Served in a background thread while `kubenow latch` runs:
- /api/latch: snapshot of the running sampler (counters only)
- /api/result: the persisted latch result for a workload
- /health, /ready, /metrics for probes and self-monitoring
"""
import json
import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, Response, jsonify, render_template_string, request
from werkzeug.serving import make_server

from config import UI_HOST, UI_PORT
from errors import InvalidInputError
from models import WorkloadRef
from persistence import latch_file_path

logger = logging.getLogger(__name__)

app = Flask(__name__)

# Metrics for observability
_metrics = {
    'requests_total': 0,
    'requests_by_endpoint': {},
    'errors_total': 0,
    'start_time': time.time()
}

# The sampler currently being served, if any
_active: Dict[str, Any] = {'sampler': None, 'workload': None}
_active_lock = threading.Lock()

_PAGE = """<!doctype html>
<html>
<head>
  <title>kubenow latch</title>
  <meta http-equiv="refresh" content="5">
  <style>
    body { font-family: sans-serif; margin: 2em; }
    table { border-collapse: collapse; }
    td { padding: 2px 12px 2px 0; }
  </style>
</head>
<body>
  <h1>kubenow latch</h1>
  {% if snapshot %}
  <p><b>{{ workload }}</b> - {{ snapshot.state }}</p>
  <table>
    <tr><td>Samples</td><td>{{ snapshot.sampleCount }} / {{ snapshot.expectedSamples }}</td></tr>
    <tr><td>Gaps</td><td>{{ snapshot.gaps }}</td></tr>
    <tr><td>Elapsed</td><td>{{ '%.0f' % snapshot.elapsedSeconds }}s of {{ '%.0f' % snapshot.durationSeconds }}s</td></tr>
    <tr><td>Pods</td><td>{{ snapshot.pods }}</td></tr>
    <tr><td>OOMKills</td><td>{{ snapshot.oomKills }}</td></tr>
    <tr><td>Restarts</td><td>{{ snapshot.restarts }}</td></tr>
    <tr><td>Evictions</td><td>{{ snapshot.evictions }}</td></tr>
  </table>
  {% else %}
  <p>No latch is running.</p>
  {% endif %}
</body>
</html>
"""


def _record_request(endpoint: str):
    """Record request metrics"""
    _metrics['requests_total'] += 1
    _metrics['requests_by_endpoint'][endpoint] = _metrics['requests_by_endpoint'].get(endpoint, 0) + 1


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def register_sampler(sampler, workload: Optional[str] = None) -> None:
    """Expose a running sampler's snapshots; pass None to detach."""
    with _active_lock:
        _active['sampler'] = sampler
        _active['workload'] = workload if sampler is not None else None


def current_snapshot() -> Optional[Dict[str, Any]]:
    with _active_lock:
        sampler = _active['sampler']
    if sampler is None:
        return None
    return sampler.snapshot()


def load_json(filepath):
    """Load JSON file safely"""
    try:
        filepath = Path(filepath)
        if not filepath.exists():
            return None
        with open(filepath, 'r') as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Error loading {filepath}: {e}")
        _metrics['errors_total'] += 1
        return None


def result_path(kind: str, namespace: str, name: str) -> Path:
    ref = WorkloadRef.parse(f"{kind}/{name}", namespace)
    return Path(latch_file_path(ref))


@app.route('/')
def index():
    """Status page for the running latch"""
    _record_request('/')
    with _active_lock:
        workload = _active['workload']
    return render_template_string(_PAGE, snapshot=current_snapshot(), workload=workload)


@app.route('/api/latch')
def get_latch():
    """API endpoint for the live latch snapshot"""
    _record_request('/api/latch')
    snapshot = current_snapshot()
    if snapshot is None:
        return jsonify({"error": "No latch running"}), 404
    with _active_lock:
        snapshot['workload'] = _active['workload']
    return jsonify(snapshot)


@app.route('/api/result')
def get_result():
    """API endpoint for a persisted latch result"""
    _record_request('/api/result')
    kind = request.args.get('kind', 'deployment')
    namespace = request.args.get('namespace', 'default')
    name = request.args.get('name')
    if not name:
        return jsonify({"error": "name is required"}), 400
    try:
        path = result_path(kind, namespace, name)
    except InvalidInputError as e:
        return jsonify({"error": str(e)}), 400
    data = load_json(path)
    if data:
        return jsonify(data)
    return jsonify({"error": "Not found"}), 404


@app.route('/health')
def health():
    """Health check endpoint for liveness probes"""
    _record_request('/health')
    return jsonify({
        "status": "healthy",
        "timestamp": _now()
    })


@app.route('/ready')
def ready():
    """Readiness check endpoint - ready while a latch is being served"""
    _record_request('/ready')
    with _active_lock:
        workload = _active['workload']
    if workload is not None:
        return jsonify({
            "status": "ready",
            "workload": workload,
            "timestamp": _now()
        })
    return jsonify({
        "status": "not_ready",
        "reason": "No latch running",
        "timestamp": _now()
    }), 503


@app.route('/metrics')
def metrics():
    """Prometheus metrics endpoint for self-monitoring"""
    _record_request('/metrics')
    uptime = time.time() - _metrics['start_time']
    snapshot = current_snapshot() or {}

    lines = [
        "# HELP kubenow_ui_requests_total Total number of HTTP requests",
        "# TYPE kubenow_ui_requests_total counter",
        f"kubenow_ui_requests_total {_metrics['requests_total']}",
        "",
        "# HELP kubenow_ui_errors_total Total number of errors",
        "# TYPE kubenow_ui_errors_total counter",
        f"kubenow_ui_errors_total {_metrics['errors_total']}",
        "",
        "# HELP kubenow_ui_uptime_seconds UI uptime in seconds",
        "# TYPE kubenow_ui_uptime_seconds gauge",
        f"kubenow_ui_uptime_seconds {uptime:.2f}",
        "",
        "# HELP kubenow_latch_running Whether a latch is being served",
        "# TYPE kubenow_latch_running gauge",
        f"kubenow_latch_running {1 if snapshot else 0}",
        "",
        "# HELP kubenow_latch_samples Samples collected by the running latch",
        "# TYPE kubenow_latch_samples gauge",
        f"kubenow_latch_samples {snapshot.get('sampleCount', 0)}",
        "",
        "# HELP kubenow_latch_gaps Ticks without a usable sample",
        "# TYPE kubenow_latch_gaps gauge",
        f"kubenow_latch_gaps {snapshot.get('gaps', 0)}",
    ]

    lines.append("")
    lines.append("# HELP kubenow_ui_requests_by_endpoint Requests per endpoint")
    lines.append("# TYPE kubenow_ui_requests_by_endpoint counter")
    for endpoint, count in _metrics['requests_by_endpoint'].items():
        lines.append(f'kubenow_ui_requests_by_endpoint{{endpoint="{endpoint}"}} {count}')

    return Response('\n'.join(lines) + '\n', mimetype='text/plain')


class BackgroundServer:
    """werkzeug server running `app` on a daemon thread."""

    def __init__(self, host: str = UI_HOST, port: int = UI_PORT):
        self._server = make_server(host, port, app, threaded=True)
        self.host = host
        self.port = self._server.server_port
        self._thread = threading.Thread(target=self._server.serve_forever, name="latch-ui", daemon=True)

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def start(self) -> "BackgroundServer":
        self._thread.start()
        logger.info(f"Latch UI: {self.url}")
        return self

    def stop(self) -> None:
        self._server.shutdown()
        self._thread.join(timeout=5)


def serve_in_background(host: str = UI_HOST, port: int = UI_PORT) -> Optional[BackgroundServer]:
    """Start the UI; returns None (and logs) when the port cannot be bound."""
    try:
        return BackgroundServer(host, port).start()
    except OSError as e:
        logger.warning(f"Latch UI disabled: cannot listen on {host}:{port} ({e})")
        return None


if __name__ == '__main__':
    from config import setup_logging
    setup_logging()
    logger.info(f"Latch UI: http://{UI_HOST}:{UI_PORT}")
    app.run(debug=False, host=UI_HOST, port=UI_PORT)
