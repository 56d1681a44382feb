"""Core data models for cluster-collector.

Defines the schemas for:
- Targets (remote clusters) and the references used to key them
- Label selectors
- Collection requests (Snapshot, Techsupport) with their spec and status
- Collector job results
- Reconcile results
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Annotated, Any, ClassVar, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

API_GROUP = "collection.projectsveltos.io"
API_VERSION = f"{API_GROUP}/v1beta1"

CLUSTER_KIND = "Cluster"
CLUSTER_API_VERSION = "cluster.x-k8s.io/v1beta1"
SVELTOS_CLUSTER_KIND = "SveltosCluster"
SVELTOS_CLUSTER_API_VERSION = "lib.projectsveltos.io/v1beta1"


def _as_utc(value: datetime) -> datetime:
    """Read a timestamp without an offset as UTC."""
    if value.tzinfo is None or value.utcoffset() is None:
        return value.replace(tzinfo=UTC)
    return value


UTCDateTime = Annotated[datetime, AfterValidator(_as_utc)]


class _CamelModel(BaseModel):
    """Base for models persisted with the external camelCase schema."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Enums ---


class CollectionKind(enum.StrEnum):
    SNAPSHOT = "Snapshot"
    TECHSUPPORT = "Techsupport"


class CollectionStatus(enum.StrEnum):
    """Persisted outcome of the last collection run."""

    COLLECTED = "Collected"
    IN_PROGRESS = "InProgress"
    FAILED = "Failed"


class ResultStatus(enum.StrEnum):
    """Outcome reported by the collector for a (request, kind) pair.

    UNAVAILABLE means no job ever ran and is never persisted.
    """

    UNAVAILABLE = "Unavailable"
    IN_PROGRESS = "InProgress"
    COLLECTED = "Collected"
    FAILED = "Failed"


class SelectorOperator(enum.StrEnum):
    IN = "In"
    NOT_IN = "NotIn"
    EXISTS = "Exists"
    DOES_NOT_EXIST = "DoesNotExist"


# --- References ---


class ObjectReference(_CamelModel):
    """Hashable (namespace, name, kind, api_version) tuple.

    Used both as a target reference and as a request key.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True,
    )

    namespace: str = ""
    name: str
    kind: str
    api_version: str

    def sort_key(self) -> tuple[str, str, str, str]:
        return (self.kind, self.namespace, self.name, self.api_version)

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}:{self.namespace}/{self.name}"
        return f"{self.kind}:{self.name}"


TargetReference = ObjectReference
RequestKey = ObjectReference


class ObjectKey(BaseModel):
    """Lookup key for a collection request in the object store."""

    model_config = ConfigDict(frozen=True)

    kind: CollectionKind
    name: str
    namespace: str = ""

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


# --- Targets ---


class Target(_CamelModel):
    """A remote cluster as seen in the target catalog."""

    namespace: str = ""
    name: str
    kind: str = SVELTOS_CLUSTER_KIND
    api_version: str = SVELTOS_CLUSTER_API_VERSION
    labels: dict[str, str] = Field(default_factory=dict)
    paused: bool = False
    ready: bool = True
    deletion_timestamp: UTCDateTime | None = None

    @property
    def ref(self) -> TargetReference:
        return ObjectReference(
            namespace=self.namespace,
            name=self.name,
            kind=self.kind,
            api_version=self.api_version,
        )


# --- Selectors ---


class LabelSelectorRequirement(_CamelModel):
    key: str
    operator: str
    values: list[str] = Field(default_factory=list)


class LabelSelector(_CamelModel):
    """Kubernetes-style label selector. All terms must match (AND logic).

    An empty selector matches every label set.
    """

    match_labels: dict[str, str] = Field(default_factory=dict)
    match_expressions: list[LabelSelectorRequirement] = Field(default_factory=list)


# --- Collection requests ---


class ObjectMeta(_CamelModel):
    name: str
    namespace: str = ""
    creation_timestamp: UTCDateTime
    deletion_timestamp: UTCDateTime | None = None
    finalizers: list[str] = Field(default_factory=list)
    resource_version: int = 0
    generation: int = 1
    labels: dict[str, str] = Field(default_factory=dict)


class CollectionRequestSpec(_CamelModel):
    schedule: str
    starting_deadline_seconds: int | None = Field(default=None, ge=0)
    storage: str
    cluster_selector: LabelSelector | None = None


class CollectionRequestStatus(_CamelModel):
    last_run_time: UTCDateTime | None = None
    next_schedule_time: UTCDateTime | None = None
    last_run_status: CollectionStatus | None = None
    failure_message: str = ""
    matching_target_refs: list[TargetReference] = Field(default_factory=list)


class CollectionRequest(_CamelModel):
    """Common shape of every collection kind.

    The scheduler and reconciler only use the fields defined here; concrete
    kinds contribute their ``kind`` literal and finalizer name.
    """

    FINALIZER: ClassVar[str] = ""

    api_version: str = API_VERSION
    kind: CollectionKind
    metadata: ObjectMeta
    spec: CollectionRequestSpec
    status: CollectionRequestStatus = Field(default_factory=CollectionRequestStatus)

    @property
    def finalizer(self) -> str:
        return self.FINALIZER

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(
            kind=self.kind, name=self.metadata.name, namespace=self.metadata.namespace,
        )

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def has_finalizer(self) -> bool:
        return self.finalizer in self.metadata.finalizers


class Snapshot(CollectionRequest):
    """Periodic snapshot of the configuration deployed to matching clusters."""

    FINALIZER: ClassVar[str] = "snapshotfinalizer.projectsveltos.io"

    kind: Literal[CollectionKind.SNAPSHOT] = CollectionKind.SNAPSHOT


class Techsupport(CollectionRequest):
    """Periodic techsupport bundle (logs and resources) from matching clusters."""

    FINALIZER: ClassVar[str] = "techsupportfinalizer.projectsveltos.io"

    kind: Literal[CollectionKind.TECHSUPPORT] = CollectionKind.TECHSUPPORT


AnyCollectionRequest = Annotated[Snapshot | Techsupport, Field(discriminator="kind")]

_request_adapter: TypeAdapter[Snapshot | Techsupport] = TypeAdapter(AnyCollectionRequest)


def parse_request(data: dict[str, Any]) -> CollectionRequest:
    """Build the concrete request model selected by ``data["kind"]``."""
    return _request_adapter.validate_python(data)


def dump_request(request: CollectionRequest) -> dict[str, Any]:
    """Serialize a request using the external camelCase schema."""
    return request.model_dump(mode="json", by_alias=True)


# --- Collector results ---


class JobResult(BaseModel):
    """Most recent collector outcome for a (request name, kind) pair."""

    model_config = ConfigDict(frozen=True)

    status: ResultStatus
    error: str | None = None


# --- Reconcile ---


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconcile pass. ``requeue_after=None`` means done."""

    requeue_after: timedelta | None = None
