# buyback/obs/metrics.py
import time

from prometheus_client import Counter, Gauge, Histogram
from starlette.middleware.base import BaseHTTPMiddleware

http_requests_total = Counter("http_requests_total", "HTTP requests", ["method", "path", "code"])
http_request_duration = Histogram(
    "http_request_duration_seconds", "HTTP request duration seconds", ["method", "path"]
)

# tracking reconciliation: outcome = applied | unchanged | skipped | failed
tracking_sync_total = Counter(
    "buyback_tracking_sync_total", "Tracking sync attempts", ["direction", "outcome"]
)

# label voids: outcome = voided | void_denied | void_error | short_circuit
label_void_total = Counter("buyback_label_void_total", "Label void results", ["outcome"])

sweep_runs_total = Counter("buyback_sweep_runs_total", "Sweep runs", ["job", "outcome"])
sweep_orders_total = Counter(
    "buyback_sweep_orders_total", "Orders handled by sweeps", ["job", "outcome"]
)
sweep_duration = Histogram("buyback_sweep_duration_seconds", "Sweep duration seconds", ["job"])
sweep_in_flight = Gauge("buyback_sweep_in_flight", "Sweeps currently running", ["job"])

notifications_total = Counter(
    "buyback_notifications_total", "Notification sends", ["kind", "outcome"]
)

celery_active_tasks = Gauge("celery_active_tasks", "Celery active tasks")


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        http_requests_total.labels(
            request.method, request.url.path, str(response.status_code)
        ).inc()
        http_request_duration.labels(request.method, request.url.path).observe(elapsed)
        return response
