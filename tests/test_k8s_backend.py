"""Tests for the Kubernetes target catalog and object store.

All kubernetes client calls are mocked, no real cluster needed.
"""

from __future__ import annotations

import sys
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from cluster_collector.models import (
    API_GROUP,
    CLUSTER_KIND,
    SVELTOS_CLUSTER_KIND,
    CollectionKind,
    CollectionRequestSpec,
    ObjectKey,
    ObjectMeta,
    Snapshot,
)
from cluster_collector.store.k8s import (
    REQUEST_RESOURCES,
    TARGET_RESOURCES,
    KubernetesObjectStore,
    KubernetesTargetCatalog,
    target_from_object,
)
from cluster_collector.store.object_store import ConflictError, NotFoundError, StoreError
from cluster_collector.targets.catalog import CatalogError

# --- Helpers ---


class ApiException(Exception):
    """Mimics kubernetes.client.exceptions.ApiException."""

    def __init__(self, status: int, reason: str = "") -> None:
        super().__init__(f"({status}) {reason}")
        self.status = status
        self.reason = reason


@contextmanager
def _mock_kubernetes_modules():
    """Context manager that injects mock kubernetes into sys.modules.

    This allows `from kubernetes import client, config` to work without
    the actual kubernetes package installed.
    """
    mock_k8s = MagicMock()
    mock_client = mock_k8s.client
    mock_config = mock_k8s.config
    mock_client.ApiClient.return_value = MagicMock()

    modules = {
        "kubernetes": mock_k8s,
        "kubernetes.client": mock_client,
        "kubernetes.config": mock_config,
    }
    with patch.dict(sys.modules, modules):
        yield mock_client, mock_config


def _snapshot_object(name: str = "hourly", resource_version: str = "42") -> dict[str, Any]:
    return {
        "apiVersion": f"{API_GROUP}/v1beta1",
        "kind": "Snapshot",
        "metadata": {
            "name": name,
            "creationTimestamp": "2026-01-01T00:00:00Z",
            "resourceVersion": resource_version,
            "generation": 3,
        },
        "spec": {"schedule": "0 * * * *", "storage": "/collections"},
        "status": None,
    }


# --- Conversion ---


class TestTargetFromObject:
    def test_sveltos_cluster(self):
        t = target_from_object(SVELTOS_CLUSTER_KIND, {
            "apiVersion": "lib.projectsveltos.io/v1beta1",
            "metadata": {"name": "c1", "namespace": "fleet", "labels": {"env": "prod"}},
            "spec": {"paused": True},
            "status": {"ready": True},
        })
        assert t.name == "c1"
        assert t.namespace == "fleet"
        assert t.kind == SVELTOS_CLUSTER_KIND
        assert t.labels == {"env": "prod"}
        assert t.paused is True
        assert t.ready is True

    def test_capi_cluster_readiness(self):
        t = target_from_object(CLUSTER_KIND, {
            "metadata": {"name": "c2", "namespace": "fleet"},
            "status": {"phase": "Provisioning"},
        })
        assert t.ready is False
        assert t.api_version == TARGET_RESOURCES[CLUSTER_KIND].api_version

    def test_deletion_timestamp(self):
        t = target_from_object(SVELTOS_CLUSTER_KIND, {
            "metadata": {"name": "c1", "deletionTimestamp": "2026-01-01T00:00:00Z"},
        })
        assert t.deletion_timestamp == datetime(2026, 1, 1, tzinfo=UTC)


# --- Catalog ---


class TestKubernetesTargetCatalog:
    def test_list(self):
        with _mock_kubernetes_modules() as (mock_client, _):
            api = mock_client.CustomObjectsApi.return_value
            api.list_cluster_custom_object.return_value = {"items": [
                {"metadata": {"name": "b", "namespace": "fleet"}},
                {"metadata": {"name": "a", "namespace": "fleet"}},
            ]}
            catalog = KubernetesTargetCatalog(api_client=MagicMock())
            targets = catalog.list(SVELTOS_CLUSTER_KIND)

        assert [t.name for t in targets] == ["a", "b"]
        api.list_cluster_custom_object.assert_called_once_with(
            group="lib.projectsveltos.io", version="v1beta1", plural="sveltosclusters",
        )

    def test_missing_crd_is_empty(self):
        with _mock_kubernetes_modules() as (mock_client, _):
            api = mock_client.CustomObjectsApi.return_value
            api.list_cluster_custom_object.side_effect = ApiException(404, "Not Found")
            assert KubernetesTargetCatalog(api_client=MagicMock()).list(CLUSTER_KIND) == []

    def test_api_error(self):
        with _mock_kubernetes_modules() as (mock_client, _):
            api = mock_client.CustomObjectsApi.return_value
            api.list_cluster_custom_object.side_effect = ApiException(500, "boom")
            with pytest.raises(CatalogError, match="clusters"):
                KubernetesTargetCatalog(api_client=MagicMock()).list(CLUSTER_KIND)

    def test_unknown_kind(self):
        with _mock_kubernetes_modules():
            with pytest.raises(CatalogError, match="No Kubernetes resource mapping"):
                KubernetesTargetCatalog(api_client=MagicMock()).list("MachinePool")

    def test_loads_kubeconfig_lazily(self):
        with _mock_kubernetes_modules() as (mock_client, mock_config):
            catalog = KubernetesTargetCatalog(kubeconfig="/tmp/kubeconfig", context="mgmt")
            mock_config.load_kube_config.assert_not_called()
            mock_client.CustomObjectsApi.return_value.list_cluster_custom_object.return_value = {
                "items": [],
            }
            catalog.list(CLUSTER_KIND)
            mock_config.load_kube_config.assert_called_once_with(
                config_file="/tmp/kubeconfig", context="mgmt",
            )

    def test_in_cluster(self):
        with _mock_kubernetes_modules() as (mock_client, mock_config):
            mock_client.CustomObjectsApi.return_value.list_cluster_custom_object.return_value = {
                "items": [],
            }
            KubernetesTargetCatalog(in_cluster=True).list(CLUSTER_KIND)
            mock_config.load_incluster_config.assert_called_once()


# --- Object store ---


class TestKubernetesObjectStore:
    def test_get(self):
        with _mock_kubernetes_modules() as (mock_client, _):
            api = mock_client.CustomObjectsApi.return_value
            api.get_cluster_custom_object.return_value = _snapshot_object()
            snap = KubernetesObjectStore(api_client=MagicMock()).get(
                ObjectKey(kind=CollectionKind.SNAPSHOT, name="hourly"),
            )

        assert isinstance(snap, Snapshot)
        assert snap.metadata.resource_version == 42
        assert snap.metadata.generation == 3
        assert snap.metadata.finalizers == []
        assert snap.status.next_schedule_time is None
        mapping = REQUEST_RESOURCES[CollectionKind.SNAPSHOT]
        api.get_cluster_custom_object.assert_called_once_with(
            group=mapping.group, version=mapping.version, plural="snapshots", name="hourly",
        )

    def test_get_not_found(self):
        with _mock_kubernetes_modules() as (mock_client, _):
            api = mock_client.CustomObjectsApi.return_value
            api.get_cluster_custom_object.side_effect = ApiException(404)
            with pytest.raises(NotFoundError):
                KubernetesObjectStore(api_client=MagicMock()).get(
                    ObjectKey(kind=CollectionKind.SNAPSHOT, name="hourly"),
                )

    def test_list_all_kinds(self):
        with _mock_kubernetes_modules() as (mock_client, _):
            api = mock_client.CustomObjectsApi.return_value
            api.list_cluster_custom_object.side_effect = [
                {"items": [_snapshot_object("a")]},
                {"items": []},
            ]
            requests = KubernetesObjectStore(api_client=MagicMock()).list()

        assert [r.name for r in requests] == ["a"]
        plurals = [c.kwargs["plural"] for c in api.list_cluster_custom_object.call_args_list]
        assert plurals == ["snapshots", "techsupports"]

    def test_update_sends_resource_version(self):
        snap = Snapshot(
            metadata=ObjectMeta(
                name="hourly", creation_timestamp=datetime(2026, 1, 1, tzinfo=UTC),
                resource_version=42, finalizers=[Snapshot.FINALIZER],
            ),
            spec=CollectionRequestSpec(schedule="0 * * * *", storage="/collections"),
        )
        with _mock_kubernetes_modules() as (mock_client, _):
            api = mock_client.CustomObjectsApi.return_value
            api.replace_cluster_custom_object.return_value = _snapshot_object(resource_version="43")
            updated = KubernetesObjectStore(api_client=MagicMock()).update(snap)

        body = api.replace_cluster_custom_object.call_args.kwargs["body"]
        assert body["metadata"]["resourceVersion"] == "42"
        assert body["metadata"]["finalizers"] == [Snapshot.FINALIZER]
        assert "creationTimestamp" not in body["metadata"]
        assert "namespace" not in body["metadata"]
        assert updated.metadata.resource_version == 43

    def test_update_status_conflict(self):
        snap = Snapshot(
            metadata=ObjectMeta(name="hourly", creation_timestamp=datetime(2026, 1, 1, tzinfo=UTC)),
            spec=CollectionRequestSpec(schedule="0 * * * *", storage="/collections"),
        )
        with _mock_kubernetes_modules() as (mock_client, _):
            api = mock_client.CustomObjectsApi.return_value
            api.replace_cluster_custom_object_status.side_effect = ApiException(409, "Conflict")
            with pytest.raises(ConflictError, match="Conflict"):
                KubernetesObjectStore(api_client=MagicMock()).update_status(snap)

    def test_create_omits_resource_version(self):
        snap = Snapshot(
            metadata=ObjectMeta(name="hourly", creation_timestamp=datetime(2026, 1, 1, tzinfo=UTC)),
            spec=CollectionRequestSpec(schedule="0 * * * *", storage="/collections"),
        )
        with _mock_kubernetes_modules() as (mock_client, _):
            api = mock_client.CustomObjectsApi.return_value
            api.create_cluster_custom_object.return_value = _snapshot_object(resource_version="1")
            KubernetesObjectStore(api_client=MagicMock()).create(snap)

        body = api.create_cluster_custom_object.call_args.kwargs["body"]
        assert "resourceVersion" not in body["metadata"]

    def test_delete_server_error(self):
        with _mock_kubernetes_modules() as (mock_client, _):
            api = mock_client.CustomObjectsApi.return_value
            api.delete_cluster_custom_object.side_effect = ApiException(500, "boom")
            with pytest.raises(StoreError, match="Kubernetes API error"):
                KubernetesObjectStore(api_client=MagicMock()).delete(
                    ObjectKey(kind=CollectionKind.TECHSUPPORT, name="nightly"),
                )

    def test_invalid_object(self):
        bad = _snapshot_object()
        del bad["spec"]
        with _mock_kubernetes_modules() as (mock_client, _):
            api = mock_client.CustomObjectsApi.return_value
            api.get_cluster_custom_object.return_value = bad
            with pytest.raises(StoreError, match="Invalid collection request"):
                KubernetesObjectStore(api_client=MagicMock()).get(
                    ObjectKey(kind=CollectionKind.SNAPSHOT, name="hourly"),
                )


class TestKubernetesMissing:
    def test_helpful_import_error(self):
        with patch.dict(sys.modules, {"kubernetes": None}):
            with pytest.raises(ImportError, match=r"cluster-collector\[k8s\]"):
                KubernetesObjectStore()
