from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

REQUESTS_TOTAL = Counter(
    "squadguard_requests_total",
    "Total HTTP requests seen by the security guard",
    ["method", "path", "status"],
)
SECURITY_EVENTS_TOTAL = Counter(
    "squadguard_security_events_total",
    "Security events recorded by kind",
    ["kind"],
)
SECURITY_ALERTS_TOTAL = Counter(
    "squadguard_security_alerts_total",
    "Security alerts raised by kind and severity",
    ["kind", "severity"],
)
BLOCKS_TOTAL = Counter("squadguard_blocks_total", "Temporary blocks issued", ["reason"])
ACTIVE_BLOCKS = Gauge("squadguard_active_blocks", "Identifiers currently blocked")


__all__ = [
    "CONTENT_TYPE_LATEST",
    "REQUESTS_TOTAL",
    "SECURITY_EVENTS_TOTAL",
    "SECURITY_ALERTS_TOTAL",
    "BLOCKS_TOTAL",
    "ACTIVE_BLOCKS",
    "generate_latest",
]
