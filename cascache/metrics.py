from prometheus_client import Counter, Histogram

REQ_LATENCY = Histogram(
    "service_request_latency_seconds",
    "Request latency in seconds",
    ["service", "endpoint", "method", "status"],
    buckets=(0.005, 0.01, 0.02, 0.05, 0.1, 0.2, 0.5, 1, 2, 5, 10),
)

REQ_COUNT = Counter(
    "service_requests_total",
    "Total requests",
    ["service", "endpoint", "method", "status"],
)

LOOKUPS = Counter(
    "cascache_lookups",
    "Cache lookups by outcome",
    ["op", "result"],
)

WRITES = Counter(
    "cascache_writes",
    "Entries written without a version check",
    ["op"],
)

CAS_RESULTS = Counter(
    "cascache_cas",
    "Conditional writes per key by outcome",
    ["result"],
)

DECODE_ERRORS = Counter(
    "cascache_decode_errors",
    "Stored entries that failed to decode",
)

OP_LATENCY = Histogram(
    "cascache_op_latency_seconds",
    "Cache operation latency in seconds",
    ["op"],
    buckets=(0.0005, 0.001, 0.002, 0.005, 0.01, 0.02, 0.05, 0.1, 0.2, 0.5, 1),
)
