from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

REQUESTS_TOTAL = Counter(
    "requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
RATE_LIMIT_DECISIONS_TOTAL = Counter(
    "rate_limit_decisions_total",
    "Server rate limit decisions by action and outcome",
    ["action", "outcome"],
)
RATE_LIMIT_ACTIVE_RECORDS = Gauge("rate_limit_active_records", "Number of tracked rate limit keys")
RATE_LIMIT_SWEPT_RECORDS_TOTAL = Counter(
    "rate_limit_swept_records_total",
    "Expired rate limit records removed by the cleanup sweep",
)


__all__ = [
    "CONTENT_TYPE_LATEST",
    "REQUESTS_TOTAL",
    "RATE_LIMIT_DECISIONS_TOTAL",
    "RATE_LIMIT_ACTIVE_RECORDS",
    "RATE_LIMIT_SWEPT_RECORDS_TOTAL",
    "generate_latest",
]
