"""cluster-collector: scheduled configuration snapshots and techsupport bundles for a cluster fleet."""

__version__ = "0.1.0"

from cluster_collector.collector.dispatcher import CollectFn, CollectJob, Collector, CollectorError
from cluster_collector.collector.jobs import dry_run_collect, record_collection
from cluster_collector.config import CollectorConfig, find_config, load_config
from cluster_collector.controller.manager import Controller
from cluster_collector.controller.reconciler import Reconciler
from cluster_collector.index.reverse_index import ReverseIndex
from cluster_collector.models import (
    CollectionKind,
    CollectionRequest,
    CollectionStatus,
    JobResult,
    LabelSelector,
    ObjectKey,
    ObjectReference,
    ReconcileResult,
    ResultStatus,
    Snapshot,
    Target,
    Techsupport,
)
from cluster_collector.scheduling.scheduler import SchedulingError, next_run_after
from cluster_collector.store.k8s import KubernetesObjectStore, KubernetesTargetCatalog
from cluster_collector.store.object_store import LocalObjectStore, ObjectStore, StoreError
from cluster_collector.targets.catalog import LocalTargetCatalog, TargetCatalog, load_catalog
from cluster_collector.targets.matcher import TargetMatcher

__all__ = [
    "CollectFn",
    "CollectJob",
    "CollectionKind",
    "CollectionRequest",
    "CollectionStatus",
    "Collector",
    "CollectorConfig",
    "CollectorError",
    "Controller",
    "JobResult",
    "KubernetesObjectStore",
    "KubernetesTargetCatalog",
    "LabelSelector",
    "LocalObjectStore",
    "LocalTargetCatalog",
    "ObjectKey",
    "ObjectReference",
    "ObjectStore",
    "ReconcileResult",
    "Reconciler",
    "ResultStatus",
    "ReverseIndex",
    "SchedulingError",
    "Snapshot",
    "StoreError",
    "Target",
    "TargetCatalog",
    "TargetMatcher",
    "Techsupport",
    "__version__",
    "dry_run_collect",
    "find_config",
    "load_config",
    "next_run_after",
    "record_collection",
]
