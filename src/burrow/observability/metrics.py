from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

BINDINGS = Gauge(
    "burrow_bindings",
    "Current bindings by lifecycle status",
    ["status"],
)

REGISTRATIONS = Counter(
    "burrow_registrations_total",
    "Registration attempts",
    ["result"],  # ok, resumed, or an error code
)

HEARTBEATS = Counter(
    "burrow_heartbeats_total",
    "Heartbeats processed by the registry",
    ["result"],  # ok, not_found
)

EXPIRATIONS = Counter(
    "burrow_expirations_total",
    "Bindings transitioned by the expiry sweep",
    ["transition"],  # degraded, closed
)

ROUTE_SYNC = Counter(
    "burrow_route_sync_total",
    "Reverse proxy configuration pushes",
    ["op", "result"],  # op: upsert/delete, result: ok/error
)

ROUTES_OUT_OF_SYNC = Gauge(
    "burrow_route_out_of_sync",
    "Routes whose last push exhausted its retries",
)


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
