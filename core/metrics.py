from prometheus_client import Counter, Gauge, Histogram

# -----------------------------
# HTTP / API level metrics
# -----------------------------
REQUEST_COUNT = Counter(
    "vtool_manager_requests_total",
    "Total HTTP requests to vtool-manager",
    ["method", "endpoint"],
)

REQUEST_LATENCY = Histogram(
    "vtool_manager_request_latency_seconds",
    "Latency of HTTP requests to vtool-manager",
    ["endpoint"],
)

# -----------------------------
# Physical hosts
# -----------------------------
HOSTS_CONNECTED = Gauge(
    "vtool_manager_hosts_connected",
    "Number of currently connected physical machines",
)

HOST_CONNECT_FAILURES = Counter(
    "vtool_manager_host_connect_failures_total",
    "Connection attempts to physical machines that failed",
)

# -----------------------------
# Search
# -----------------------------
SEARCH_TOTAL = Counter(
    "vtool_manager_searches_total",
    "Number of VM searches that reached the hosts",
    ["mode"],
)

SEARCH_ROUNDS = Counter(
    "vtool_manager_search_rounds_total",
    "Tolerant search rounds by outcome",
    ["outcome"],
)

SEARCH_HOST_FAILURES = Counter(
    "vtool_manager_search_host_failures_total",
    "Hosts skipped during a search because their VMs could not be listed",
)

SEARCH_RESULT_SIZE = Histogram(
    "vtool_manager_search_result_size",
    "Number of VMs returned by a search",
    ["mode"],
    buckets=(0, 1, 2, 5, 10, 25, 50, 100, 250),
)


def record_search(mode: str, matched: int) -> None:
    SEARCH_TOTAL.labels(mode=mode).inc()
    SEARCH_RESULT_SIZE.labels(mode=mode).observe(matched)


def record_search_round(outcome: str) -> None:
    SEARCH_ROUNDS.labels(outcome=outcome).inc()


def record_host_failure() -> None:
    SEARCH_HOST_FAILURES.inc()


def record_connected_hosts(count: int) -> None:
    HOSTS_CONNECTED.set(count)


def record_connect_failure() -> None:
    HOST_CONNECT_FAILURES.inc()
