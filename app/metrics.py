from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "Total HTTP 5xx responses",
    ["method", "path", "status"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)

UPLOADS = Counter(
    "file_uploads_total",
    "Upload attempts by outcome",
    ["outcome"],
)
UPLOAD_BYTES = Counter(
    "file_upload_bytes_total",
    "Bytes accepted by the upload orchestrator",
)
REDEMPTIONS = Counter(
    "file_redemptions_total",
    "Token redemption attempts by outcome",
    ["outcome"],
)
CLEANUP_DELETIONS = Counter(
    "cleanup_deletions_total",
    "Rows or blobs removed by the cleanup job",
    ["phase"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)


def record_upload(outcome: str, size: int = 0) -> None:
    UPLOADS.labels(outcome=outcome).inc()
    if size:
        UPLOAD_BYTES.inc(size)


def record_redemption(outcome: str) -> None:
    REDEMPTIONS.labels(outcome=outcome).inc()


def record_cleanup(phase: str, count: int) -> None:
    if count:
        CLEANUP_DELETIONS.labels(phase=phase).inc(count)
