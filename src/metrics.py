"""Prometheus metrics for the image operator."""

from typing import Protocol

from prometheus_client import Counter, Gauge, Histogram, Info

from models import TransferOperation

TRANSFER_BUCKETS = (5, 10, 15, 20, 30, 45, 60, 90, 120, 150, 180, 300, 600)

# Reconciliation metrics
RECONCILE_TOTAL = Counter(
    "image_operator_reconcile_total",
    "Total number of image reconciliations",
    ["status"],
)

RECONCILE_DURATION = Histogram(
    "image_operator_reconcile_duration_seconds",
    "Time spent in image reconciliation",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

ACTIVE_WORKERS = Gauge(
    "image_operator_active_sync_workers",
    "Current number of running image sync workers",
)

QUEUE_RETRIES = Counter(
    "image_operator_queue_retries_total",
    "Total number of keys requeued after a failed sync",
)

# Registry transfer metrics
TRANSFER_TOTAL = Counter(
    "image_operator_transfers_total",
    "Total number of registry transfers",
    ["operation", "status"],
)

TRANSFER_DURATION = Histogram(
    "image_operator_transfer_duration_seconds",
    "Time spent transferring images",
    ["operation"],
    buckets=TRANSFER_BUCKETS,
)

IMPORT_TOTAL = Counter(
    "image_operator_imports_total",
    "Total number of processed image imports",
    ["status"],
)

# Operator info
OPERATOR_INFO = Info(
    "image_operator",
    "Information about the image operator",
)


def set_operator_info(version: str, watch_namespace: str) -> None:
    """Set operator info labels."""
    OPERATOR_INFO.info({"version": version, "namespace": watch_namespace or "*"})


def init_metrics() -> None:
    """Initialize all metrics with zero values.

    Prometheus metrics with labels don't appear until used.
    This ensures all metrics are visible immediately at startup.
    """
    statuses = ["success", "error"]

    ACTIVE_WORKERS.set(0)
    for status in statuses:
        RECONCILE_TOTAL.labels(status=status)
        IMPORT_TOTAL.labels(status=status)
    for operation in TransferOperation:
        TRANSFER_DURATION.labels(operation=operation.value)
        for status in statuses:
            TRANSFER_TOTAL.labels(operation=operation.value, status=status)


class MetricsSink(Protocol):
    """Observability hooks the reconciliation core reports to.

    Implementations must never raise; the core does not check them.
    """

    def transfer(self, operation: TransferOperation, success: bool, seconds: float) -> None: ...

    def image_import(self, success: bool) -> None: ...

    def reconcile(self, success: bool, seconds: float) -> None: ...

    def requeue(self) -> None: ...

    def worker_started(self) -> None: ...

    def worker_finished(self) -> None: ...


class NoopMetrics:
    """Metrics sink that drops everything."""

    def transfer(self, operation: TransferOperation, success: bool, seconds: float) -> None:
        pass

    def image_import(self, success: bool) -> None:
        pass

    def reconcile(self, success: bool, seconds: float) -> None:
        pass

    def requeue(self) -> None:
        pass

    def worker_started(self) -> None:
        pass

    def worker_finished(self) -> None:
        pass


def _status(success: bool) -> str:
    return "success" if success else "error"


class PrometheusMetrics:
    """Metrics sink backed by the module level Prometheus collectors."""

    def transfer(self, operation: TransferOperation, success: bool, seconds: float) -> None:
        TRANSFER_TOTAL.labels(operation=operation.value, status=_status(success)).inc()
        TRANSFER_DURATION.labels(operation=operation.value).observe(seconds)

    def image_import(self, success: bool) -> None:
        IMPORT_TOTAL.labels(status=_status(success)).inc()

    def reconcile(self, success: bool, seconds: float) -> None:
        RECONCILE_TOTAL.labels(status=_status(success)).inc()
        RECONCILE_DURATION.observe(seconds)

    def requeue(self) -> None:
        QUEUE_RETRIES.inc()

    def worker_started(self) -> None:
        ACTIVE_WORKERS.inc()

    def worker_finished(self) -> None:
        ACTIVE_WORKERS.dec()
