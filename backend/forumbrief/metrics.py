from prometheus_client import Counter, Gauge, Histogram

SUMMARY_REQUESTS = Counter(
    "forumbrief_summary_requests_total",
    "Summary requests by outcome",
    ["outcome"],  # hit, generated, fallback, error
)
SUMMARY_REQUEST_DURATION = Histogram(
    "forumbrief_summary_request_duration_seconds",
    "End-to-end summary request duration",
    ["cache_status"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 3.0, 5.0, 10.0, 30.0),
)
SLO_BREACHES = Counter(
    "forumbrief_latency_slo_breaches_total",
    "Requests slower than their latency target",
    ["cache_status"],
)
GENERATION_ATTEMPTS = Counter(
    "forumbrief_generation_attempts_total",
    "Structured-output generation attempts by outcome",
    ["outcome"],  # success, retryable_failure, terminal_failure
)
GENERATION_RETRIES = Counter(
    "forumbrief_generation_retries_total",
    "Generation retries scheduled, by error category",
    ["category"],
)
CACHE_ENTRIES = Gauge(
    "forumbrief_summary_cache_entries",
    "Number of summaries currently cached",
)
CACHE_EVICTIONS = Counter(
    "forumbrief_summary_cache_evictions_total",
    "Cache entries removed, by reason",
    ["reason"],  # ttl, capacity, superseded, invalidated
)
