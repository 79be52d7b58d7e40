"""Prometheus metrics for the listing tracker."""

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("listing_tracker", "Listing tracker application info")
app_info.info({"version": "0.1.0", "name": "listing-tracker"})

# Detail worker metrics
listings_processed_total = Counter(
    "listings_processed_total",
    "Listings handled by detail workers",
    ["outcome"],  # changed, unchanged, duplicate, requeued, failed
)

listing_fetch_duration_seconds = Histogram(
    "listing_fetch_duration_seconds",
    "Time spent processing a single listing",
    buckets=[0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

# Discovery metrics
discovery_pages_total = Counter(
    "discovery_pages_total",
    "Search result pages fetched by the coordinator",
    ["status"],  # ok, empty, error
)

discovery_ids_enqueued_total = Counter(
    "discovery_ids_enqueued_total",
    "Listing ids newly pushed to the pending queue",
)

# Verification metrics
verifications_total = Counter(
    "verifications_total",
    "Existence checks performed by verifiers",
    ["outcome"],  # active, inactive, probe_error, failed
)

# Downstream ingestion
ingestion_requests_total = Counter(
    "ingestion_requests_total",
    "Requests sent to the downstream ingestion service",
    ["kind", "status"],  # kind: ingest, inactive; status: ok, skipped, error
)

# Queue state
queue_depth = Gauge(
    "queue_depth",
    "Pending items per queue",
    ["queue"],  # pending, missing, failed
)

# Runs
runs_total = Counter(
    "runs_total",
    "Completed runs by kind and status",
    ["run_type", "status"],
)


def record_listing_outcome(outcome: str, duration: float | None = None):
    """Record the outcome of one detail-processing attempt."""
    listings_processed_total.labels(outcome=outcome).inc()
    if duration is not None:
        listing_fetch_duration_seconds.observe(duration)


def record_discovery_page(status: str):
    """Record a fetched search page."""
    discovery_pages_total.labels(status=status).inc()


def record_verification(outcome: str):
    """Record an existence check."""
    verifications_total.labels(outcome=outcome).inc()


def record_ingestion(kind: str, status: str):
    """Record a downstream ingestion request."""
    ingestion_requests_total.labels(kind=kind, status=status).inc()


def update_queue_depths(pending: int, missing: int, failed: int):
    """Update the queue depth gauges."""
    queue_depth.labels(queue="pending").set(pending)
    queue_depth.labels(queue="missing").set(missing)
    queue_depth.labels(queue="failed").set(failed)


def record_run(run_type: str, status: str):
    """Record a finished run."""
    runs_total.labels(run_type=run_type, status=status).inc()
