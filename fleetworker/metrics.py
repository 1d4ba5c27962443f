from __future__ import annotations

from prometheus_client import Counter, Gauge


FLEET_SESSIONS = Gauge(
    "fleet_sessions",
    "Number of tenant sessions per lifecycle state",
    labelnames=("state",),
)
FLEET_RECONNECT_ATTEMPTS_TOTAL = Counter(
    "fleet_reconnect_attempts_total",
    "Reconnection attempts made after a tenant session disconnected",
)
FLEET_RECONNECT_EXHAUSTED_TOTAL = Counter(
    "fleet_reconnect_exhausted_total",
    "Tenant sessions moved to failed after exhausting reconnection attempts",
)
FLEET_CONFLICTS_TOTAL = Counter(
    "fleet_conflicts_total",
    "Session conflicts resolved by teardown and reinitialization",
    labelnames=("source",),
)
FLEET_INIT_TIMEOUTS_TOTAL = Counter(
    "fleet_init_timeouts_total",
    "Channel initializations that exceeded the hard timeout",
)
FLEET_STUCK_RESETS_TOTAL = Counter(
    "fleet_stuck_resets_total",
    "Initializations force-cleared by the stuck-initialization watchdog",
)
FLEET_BACKUPS_TOTAL = Counter(
    "fleet_backups_total",
    "Session backup operations grouped by operation and result",
    labelnames=("operation", "result"),
)
FLEET_SENDS_TOTAL = Counter(
    "fleet_sends_total",
    "Outbound sends grouped by final result",
    labelnames=("result",),
)
FLEET_SEND_RETRIES_TOTAL = Counter(
    "fleet_send_retries_total",
    "Outbound sends re-queued after a retryable failure",
)
FLEET_EVENT_ERRORS = Counter(
    "fleet_events_errors_total",
    "Session errors grouped by category",
    labelnames=("type",),
)

__all__ = [
    "FLEET_BACKUPS_TOTAL",
    "FLEET_CONFLICTS_TOTAL",
    "FLEET_EVENT_ERRORS",
    "FLEET_INIT_TIMEOUTS_TOTAL",
    "FLEET_RECONNECT_ATTEMPTS_TOTAL",
    "FLEET_RECONNECT_EXHAUSTED_TOTAL",
    "FLEET_SENDS_TOTAL",
    "FLEET_SEND_RETRIES_TOTAL",
    "FLEET_SESSIONS",
    "FLEET_STUCK_RESETS_TOTAL",
]
