"""Monitoring configuration for the sync engine."""
from prometheus_client import Counter, Gauge, start_http_server

# Mutation metrics
local_mutations = Counter(
    "tipsync_local_mutations_total",
    "Total number of local mutations applied optimistically",
    ["entity_type"],
)

remote_snapshots = Counter(
    "tipsync_remote_snapshots_total",
    "Total number of remote snapshots merged",
    ["path"],
)

pending_writes = Gauge(
    "tipsync_pending_writes",
    "Number of local writes not yet confirmed by a remote snapshot",
)

confirmed_writes = Counter(
    "tipsync_confirmed_writes_total",
    "Total number of pending writes confirmed by a remote snapshot",
    ["entity_type"],
)

# Error metrics
sync_errors = Counter(
    "tipsync_sync_errors_total",
    "Total number of failed remote writes or reads",
    ["operation"],
)

malformed_entities = Counter(
    "tipsync_malformed_entities_total",
    "Total number of remote entities skipped because they failed to decode",
    ["entity_type"],
)

cache_write_errors = Counter(
    "tipsync_cache_write_errors_total",
    "Total number of failed writes to the durable local store",
    ["key"],
)

# Timer metrics
timer_state_writes = Counter(
    "tipsync_timer_state_writes_total",
    "Total number of timer state files written",
)

timer_write_requests = Counter(
    "tipsync_timer_write_requests_total",
    "Total number of timer state write requests, written or debounced",
)

# Rollover metrics
rollovers = Counter(
    "tipsync_rollovers_total",
    "Total number of daily rollovers performed",
)


def start_monitoring(port: int = 9090) -> None:
    """Start the Prometheus metrics server."""
    start_http_server(port)
