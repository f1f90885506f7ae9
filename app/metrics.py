from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

_REQ_COUNT = Counter(
    "procyard_http_requests_total",
    "Total HTTP requests",
    labelnames=("method", "path", "status"),
)
_REQ_LATENCY = Histogram(
    "procyard_http_request_duration_seconds",
    "HTTP request latency seconds",
    labelnames=("method", "path"),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.3, 0.5, 1.0, 2.5, 5.0, 10.0),
)
_COMMAND_OPS = Counter(
    "procyard_command_operations_total",
    "External command invocations (git, yarn, pm2, nginx, certbot)",
    labelnames=("action", "result"),
)
_PIPELINE_RUNS = Counter(
    "procyard_pipeline_runs_total",
    "Pipeline runs by pipeline name and outcome",
    labelnames=("pipeline", "result"),
)
_PIPELINE_STEP_LATENCY = Histogram(
    "procyard_pipeline_step_duration_seconds",
    "Pipeline step duration seconds",
    labelnames=("pipeline", "step"),
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 180.0, 600.0),
)
_DEPLOY_JOBS = Counter(
    "procyard_deploy_jobs_total",
    "Deploy queue jobs by action and outcome",
    labelnames=("action", "result"),
)


def observe_http_request(*, method: str, path: str, status: int, duration_seconds: float) -> None:
    _REQ_COUNT.labels(method=method, path=path, status=str(status)).inc()
    _REQ_LATENCY.labels(method=method, path=path).observe(duration_seconds)


def record_command(*, action: str, ok: bool) -> None:
    _COMMAND_OPS.labels(action=action, result="ok" if ok else "error").inc()


def record_pipeline_run(*, pipeline: str, ok: bool) -> None:
    _PIPELINE_RUNS.labels(pipeline=pipeline, result="ok" if ok else "error").inc()


def observe_pipeline_step(*, pipeline: str, step: str, duration_seconds: float) -> None:
    _PIPELINE_STEP_LATENCY.labels(pipeline=pipeline, step=step).observe(duration_seconds)


def record_deploy_job(*, action: str, result: str) -> None:
    _DEPLOY_JOBS.labels(action=action, result=result).inc()


def render_metrics() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
