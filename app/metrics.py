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

WEBHOOK_EVENTS = Counter(
    "billing_webhook_events_total",
    "Billing webhook deliveries by event type and outcome",
    ["event_type", "outcome"],
)
JOB_RUNS = Counter(
    "background_jobs_total",
    "Background job executions by queue, job type and outcome",
    ["queue", "job_type", "outcome"],
)
