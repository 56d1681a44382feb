"""Collection job dispatching.

Collect functions: record_collection, dry_run_collect.
"""

from cluster_collector.collector.dispatcher import (
    CollectFn,
    CollectJob,
    Collector,
    CollectorError,
)
from cluster_collector.collector.jobs import dry_run_collect, record_collection

__all__ = [
    "CollectFn",
    "CollectJob",
    "Collector",
    "CollectorError",
    "dry_run_collect",
    "record_collection",
]
