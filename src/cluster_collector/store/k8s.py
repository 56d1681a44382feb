"""Kubernetes backends for the target catalog and the request store.

Uses the official ``kubernetes`` Python client (``CustomObjectsApi``).
Targets are Cluster API ``clusters`` and Sveltos ``sveltosclusters``;
collection requests are cluster-scoped ``snapshots`` / ``techsupports``
custom resources with a status subresource.

Requires: ``pip install cluster-collector[k8s]``
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from cluster_collector.models import (
    API_GROUP,
    CLUSTER_KIND,
    SVELTOS_CLUSTER_KIND,
    CollectionKind,
    CollectionRequest,
    ObjectKey,
    Target,
    dump_request,
    parse_request,
)
from cluster_collector.store.object_store import ConflictError, NotFoundError, StoreError
from cluster_collector.targets.catalog import CatalogError


def _check_kubernetes_available() -> None:
    """Raise ImportError with helpful message if kubernetes is not installed."""
    try:
        import kubernetes  # noqa: F401
    except ImportError:
        raise ImportError(
            "The 'kubernetes' package is required for the Kubernetes backend. "
            "Install it with: pip install cluster-collector[k8s]"
        ) from None


@dataclass(frozen=True)
class ResourceMapping:
    """Where a kind lives in the API."""

    group: str
    version: str
    plural: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"


TARGET_RESOURCES: dict[str, ResourceMapping] = {
    CLUSTER_KIND: ResourceMapping(group="cluster.x-k8s.io", version="v1beta1", plural="clusters"),
    SVELTOS_CLUSTER_KIND: ResourceMapping(
        group="lib.projectsveltos.io", version="v1beta1", plural="sveltosclusters",
    ),
}

REQUEST_RESOURCES: dict[CollectionKind, ResourceMapping] = {
    CollectionKind.SNAPSHOT: ResourceMapping(group=API_GROUP, version="v1beta1", plural="snapshots"),
    CollectionKind.TECHSUPPORT: ResourceMapping(
        group=API_GROUP, version="v1beta1", plural="techsupports",
    ),
}


def build_api_client(
    kubeconfig: str | None = None,
    context: str | None = None,
    in_cluster: bool = False,
) -> Any:
    """Build a kubernetes ApiClient from kubeconfig or in-cluster config."""
    from kubernetes import client, config

    if in_cluster:
        config.load_incluster_config()
    else:
        kwargs: dict[str, Any] = {}
        if kubeconfig:
            kwargs["config_file"] = kubeconfig
        if context:
            kwargs["context"] = context
        config.load_kube_config(**kwargs)
    return client.ApiClient()


def _api_status(exc: Exception) -> int | None:
    # Detect kubernetes ApiException by class name to avoid import
    if type(exc).__name__ == "ApiException":
        return getattr(exc, "status", None)
    return None


def target_from_object(kind: str, obj: dict[str, Any]) -> Target:
    """Convert a Cluster / SveltosCluster object into a ``Target``."""
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    mapping = TARGET_RESOURCES[kind]

    if kind == CLUSTER_KIND:
        ready = bool(status.get("controlPlaneReady")) or status.get("phase") == "Provisioned"
    else:
        ready = bool(status.get("ready"))

    return Target(
        namespace=metadata.get("namespace", ""),
        name=metadata["name"],
        kind=kind,
        api_version=obj.get("apiVersion") or mapping.api_version,
        labels=metadata.get("labels") or {},
        paused=bool(spec.get("paused", False)),
        ready=ready,
        deletion_timestamp=metadata.get("deletionTimestamp"),
    )


class _KubernetesBackend:
    def __init__(
        self,
        kubeconfig: str | None = None,
        context: str | None = None,
        in_cluster: bool = False,
        api_client: Any = None,
    ) -> None:
        _check_kubernetes_available()
        self._kubeconfig = kubeconfig
        self._context = context
        self._in_cluster = in_cluster
        self._api_client = api_client
        self._api: Any = None

    def _custom_objects(self) -> Any:
        if self._api is None:
            from kubernetes import client

            api_client = self._api_client or build_api_client(
                self._kubeconfig, self._context, self._in_cluster,
            )
            self._api = client.CustomObjectsApi(api_client)
        return self._api


class KubernetesTargetCatalog(_KubernetesBackend):
    """Lists Cluster API and Sveltos clusters across all namespaces."""

    def list(self, kind: str) -> list[Target]:
        mapping = TARGET_RESOURCES.get(kind)
        if mapping is None:
            raise CatalogError(f"No Kubernetes resource mapping for target kind: {kind}")

        try:
            response = self._custom_objects().list_cluster_custom_object(
                group=mapping.group, version=mapping.version, plural=mapping.plural,
            )
        except Exception as exc:
            # A cluster without the CRD installed simply has no such targets
            if _api_status(exc) == 404:
                return []
            raise CatalogError(f"Failed to list {mapping.plural}: {exc}") from exc

        items = response.get("items", [])
        targets = [target_from_object(kind, item) for item in items]
        targets.sort(key=lambda t: (t.namespace, t.name))
        return targets


class KubernetesObjectStore(_KubernetesBackend):
    """Reads and writes collection requests as custom resources."""

    def get(self, key: ObjectKey) -> CollectionRequest:
        mapping = REQUEST_RESOURCES[key.kind]
        try:
            obj = self._custom_objects().get_cluster_custom_object(
                group=mapping.group, version=mapping.version,
                plural=mapping.plural, name=key.name,
            )
        except Exception as exc:
            raise self._translate(exc, str(key)) from exc
        return self._parse(obj)

    def list(self, kind: CollectionKind | None = None) -> list[CollectionRequest]:
        kinds = [kind] if kind is not None else list(REQUEST_RESOURCES)
        requests: list[CollectionRequest] = []
        for k in kinds:
            mapping = REQUEST_RESOURCES[k]
            try:
                response = self._custom_objects().list_cluster_custom_object(
                    group=mapping.group, version=mapping.version, plural=mapping.plural,
                )
            except Exception as exc:
                raise self._translate(exc, mapping.plural) from exc
            requests.extend(self._parse(item) for item in response.get("items", []))
        return requests

    def create(self, request: CollectionRequest) -> CollectionRequest:
        mapping = REQUEST_RESOURCES[request.kind]
        body = self._body(request, include_version=False)
        try:
            obj = self._custom_objects().create_cluster_custom_object(
                group=mapping.group, version=mapping.version,
                plural=mapping.plural, body=body,
            )
        except Exception as exc:
            raise self._translate(exc, str(request.key)) from exc
        return self._parse(obj)

    def update(self, request: CollectionRequest) -> CollectionRequest:
        mapping = REQUEST_RESOURCES[request.kind]
        try:
            obj = self._custom_objects().replace_cluster_custom_object(
                group=mapping.group, version=mapping.version, plural=mapping.plural,
                name=request.name, body=self._body(request),
            )
        except Exception as exc:
            raise self._translate(exc, str(request.key)) from exc
        return self._parse(obj)

    def update_status(self, request: CollectionRequest) -> CollectionRequest:
        mapping = REQUEST_RESOURCES[request.kind]
        try:
            obj = self._custom_objects().replace_cluster_custom_object_status(
                group=mapping.group, version=mapping.version, plural=mapping.plural,
                name=request.name, body=self._body(request),
            )
        except Exception as exc:
            raise self._translate(exc, str(request.key)) from exc
        return self._parse(obj)

    def delete(self, key: ObjectKey) -> None:
        mapping = REQUEST_RESOURCES[key.kind]
        try:
            self._custom_objects().delete_cluster_custom_object(
                group=mapping.group, version=mapping.version,
                plural=mapping.plural, name=key.name,
            )
        except Exception as exc:
            raise self._translate(exc, str(key)) from exc

    # --- Private: conversion ---

    @staticmethod
    def _body(request: CollectionRequest, include_version: bool = True) -> dict[str, Any]:
        body = dump_request(request)
        metadata = body["metadata"]
        metadata["resourceVersion"] = str(request.metadata.resource_version)
        if not include_version:
            metadata.pop("resourceVersion")
        for field in ("creationTimestamp", "deletionTimestamp", "generation"):
            metadata.pop(field, None)
        if not metadata.get("namespace"):
            metadata.pop("namespace", None)
        return body

    @staticmethod
    def _parse(obj: dict[str, Any]) -> CollectionRequest:
        data = dict(obj)
        metadata = dict(data.get("metadata") or {})
        metadata["resourceVersion"] = int(metadata.get("resourceVersion") or 0)
        metadata.setdefault("finalizers", [])
        data["metadata"] = metadata
        data["status"] = data.get("status") or {}
        try:
            return parse_request(data)
        except ValidationError as exc:
            raise StoreError(f"Invalid collection request {metadata.get('name')}: {exc}") from exc

    @staticmethod
    def _translate(exc: Exception, what: str) -> StoreError:
        status = _api_status(exc)
        if status == 404:
            return NotFoundError(f"{what} not found")
        if status == 409:
            return ConflictError(f"{what}: conflict ({getattr(exc, 'reason', '')})")
        return StoreError(f"Kubernetes API error for {what}: {exc}")
