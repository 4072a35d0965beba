"""
Monitoring and Observability
Prometheus metrics for HTTP requests, scheduled jobs and queue depth
"""

import logging

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

logger = logging.getLogger(__name__)

request_count = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)

scheduled_task_runs = Counter(
    'scheduled_task_runs_total',
    'Scheduled task executions',
    ['task', 'outcome']
)

task_duration = Histogram(
    'task_duration_seconds',
    'Background task duration in seconds',
    ['task']
)

scheduler_dispatches = Counter(
    'scheduler_dispatches_total',
    'Repeatable jobs enqueued by the scheduler',
    ['job']
)

queue_depth = Gauge(
    'queue_jobs',
    'Jobs per queue and state',
    ['queue', 'state']
)


def register_monitoring_routes(app):
    """Register monitoring routes with Flask app"""

    @app.route('/metrics', methods=['GET'])
    def metrics():
        """Prometheus metrics endpoint"""
        return generate_latest(), 200, {'Content-Type': CONTENT_TYPE_LATEST}

    logger.info("Monitoring routes registered at /metrics")


def track_request(method: str, endpoint: str, status: int, duration: float):
    """Track HTTP request metrics"""
    request_count.labels(method=method, endpoint=endpoint, status=status).inc()
    request_duration.labels(method=method, endpoint=endpoint).observe(duration)


def track_task_run(task: str, outcome: str, duration: float):
    """Track one scheduled task execution"""
    scheduled_task_runs.labels(task=task, outcome=outcome).inc()
    task_duration.labels(task=task).observe(duration)


def track_dispatch(job: str):
    scheduler_dispatches.labels(job=job).inc()


def set_queue_depth(queue: str, counts: dict):
    """Publish a get_job_counts() result"""
    for state, value in counts.items():
        queue_depth.labels(queue=queue, state=state).set(value)
