# followup_engine/common/metrics.py
from prometheus_client import Counter, Histogram

# -------------------------------------------------------
#  Prometheus metrics definitions
# -------------------------------------------------------

HTTP_TOTAL = Counter(
    "followups_http_requests_total",
    "Total HTTP requests",
    ["method", "path"]
)
HTTP_2XX = Counter("followups_http_2xx_total", "HTTP 2xx responses")
HTTP_4XX = Counter("followups_http_4xx_total", "HTTP 4xx responses")
HTTP_LATENCY = Histogram(
    "followups_http_latency_seconds",
    "Request processing latency (seconds)",
    buckets=(0.005, 0.01, 0.05, 0.1, 0.3, 0.5, 1.0, 3.0, 5.0)
)

WEBHOOK_INBOUND = Counter(
    "followups_webhook_inbound_total",
    "Inbound provider webhooks by provider and outcome",
    ["provider", "outcome"]
)
IDEMPOTENT_HITS = Counter(
    "followups_webhook_idempotent_hits_total",
    "Number of duplicate (deduped) webhook deliveries"
)

DISPATCH_TOTAL = Counter(
    "followups_dispatch_total",
    "Automated step dispatches by channel and outcome",
    ["channel", "outcome"]
)
SEND_ATTEMPTS = Counter(
    "followups_send_attempts_total",
    "Provider send attempts (including retries)",
    ["channel"]
)
RUN_TRANSITIONS = Counter(
    "followups_run_transitions_total",
    "Automation run status transitions",
    ["status"]
)
REPLIES_DETECTED = Counter(
    "followups_replies_detected_total",
    "Inbound touchpoints that halted an automation run",
    ["channel"]
)
