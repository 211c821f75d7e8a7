"""
Prometheus metrics.

Receipt and sync counters are incremented by the services; request latency
is recorded by hooks installed from the app factory. /metrics is not
authenticated and is meant to be scraped from the internal network only.
"""
import os
import time

from flask import Blueprint, Response, g, request
from prometheus_client import (
    CONTENT_TYPE_LATEST, REGISTRY, CollectorRegistry, Counter, Histogram, generate_latest, multiprocess
)

metrics_bp = Blueprint('metrics', __name__)

# Gunicorn workers write to PROMETHEUS_MULTIPROC_DIR and are aggregated at scrape time
MULTIPROCESS_MODE = 'PROMETHEUS_MULTIPROC_DIR' in os.environ
_METRIC_REGISTRY = None if MULTIPROCESS_MODE else REGISTRY


def _counter(name, documentation, labels):
    return Counter(name, documentation, labels, registry=_METRIC_REGISTRY)


receipts_issued_total = _counter('receipts_issued_total', 'Fiscal receipts issued', ['type'])
receipts_skipped_total = _counter('receipts_skipped_total', 'Orders left without a receipt, by reason', ['reason'])
orders_synced_total = _counter('orders_synced_total', 'Orders written to the local mirror', ['source'])
sync_runs_total = _counter('sync_runs_total', 'Sync invocations by final status', ['status'])

http_requests_total = _counter('http_requests_total', 'HTTP requests served', ['method', 'endpoint', 'http_status'])
http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request latency in seconds',
    ['endpoint'],
    registry=_METRIC_REGISTRY,
    # Sync and backfill calls run for tens of seconds
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0),
)


def setup_metrics_instrumentation(app):
    """Time every request and count it by endpoint and status."""

    @app.before_request
    def start_timer():
        g.metrics_started_at = time.perf_counter()

    @app.after_request
    def record_request(response):
        started = g.pop('metrics_started_at', None)
        if started is None:
            return response
        endpoint = request.endpoint or 'unknown'
        try:
            http_request_duration_seconds.labels(endpoint=endpoint).observe(time.perf_counter() - started)
            http_requests_total.labels(
                method=request.method, endpoint=endpoint, http_status=response.status_code
            ).inc()
        except ValueError as e:
            app.logger.warning(f"[METRICS] Could not record request metrics: {e}")
        return response


@metrics_bp.route('/metrics')
def metrics():
    """Prometheus exposition format."""
    if MULTIPROCESS_MODE:
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
    else:
        registry = REGISTRY
    return Response(generate_latest(registry), mimetype=CONTENT_TYPE_LATEST)
