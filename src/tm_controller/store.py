"""Object store clients.

The reconciler reads Backends, Profiles and multi-cluster services and writes
Backend finalizers and status. Reads return None for objects that do not
exist; every other read failure is a TransientError. Writes are conflict
checked on resource version and raise ConflictError when stale.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import kubernetes

from tm_controller.errors import ConflictError, NotFoundError, TransientError
from tm_controller.models import (
    Backend,
    BackendKey,
    BackendSpec,
    Condition,
    ConditionStatus,
    MultiClusterService,
    Profile,
    ServiceMember,
)

logger = logging.getLogger(__name__)

GROUP = "networking.fleet.azure.com"
VERSION = "v1alpha1"

KIND_BACKEND = "backend"
KIND_PROFILE = "profile"
KIND_SERVICE = "service"

PLURALS = {
    KIND_BACKEND: "trafficmanagerbackends",
    KIND_PROFILE: "trafficmanagerprofiles",
    KIND_SERVICE: "serviceimports",
}

# =============================================================================
# Object Store Interface
# =============================================================================


class ObjectStore(ABC):
    """Abstract base class for the declarative object store."""

    @abstractmethod
    def get_backend(self, key: BackendKey) -> Optional[Backend]:
        pass

    @abstractmethod
    def list_backends(self, namespace: Optional[str] = None) -> List[Backend]:
        pass

    @abstractmethod
    def get_profile(self, namespace: str, name: str) -> Optional[Profile]:
        pass

    @abstractmethod
    def get_service(self, namespace: str, name: str) -> Optional[MultiClusterService]:
        pass

    @abstractmethod
    def update_backend(self, backend: Backend) -> Backend:
        """Persist metadata (finalizers). Returns the stored object."""
        pass

    @abstractmethod
    def update_backend_status(self, backend: Backend) -> Backend:
        """Persist the status subresource. Returns the stored object."""
        pass

    @abstractmethod
    def annotate_backend(self, key: BackendKey, annotations: Dict[str, str]) -> None:
        """Merge annotations into a Backend regardless of its resource version."""
        pass


# =============================================================================
# Conversion
# =============================================================================


def _int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def conditions_from_list(raw: Any) -> List[Condition]:
    conditions: List[Condition] = []
    for item in raw or []:
        if not isinstance(item, dict) or not item.get("type"):
            continue
        try:
            status = ConditionStatus(item.get("status") or "Unknown")
        except ValueError:
            status = ConditionStatus.UNKNOWN
        conditions.append(
            Condition(
                type=str(item["type"]),
                status=status,
                reason=str(item.get("reason") or ""),
                observed_generation=_int(item.get("observedGeneration"), 0),
                message=str(item.get("message") or ""),
                last_transition_time=str(item.get("lastTransitionTime") or ""),
            )
        )
    return conditions


def conditions_to_list(conditions: List[Condition]) -> List[Dict[str, Any]]:
    return [
        {
            "type": c.type,
            "status": ConditionStatus(c.status).value,
            "reason": c.reason,
            "observedGeneration": c.observed_generation,
            "message": c.message,
            "lastTransitionTime": c.last_transition_time,
        }
        for c in conditions
    ]


def backend_from_dict(obj: Dict[str, Any]) -> Backend:
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    return Backend(
        namespace=metadata.get("namespace", ""),
        name=metadata.get("name", ""),
        uid=metadata.get("uid", ""),
        generation=_int(metadata.get("generation"), 1),
        resource_version=str(metadata.get("resourceVersion") or ""),
        finalizers=list(metadata.get("finalizers") or []),
        deletion_timestamp=metadata.get("deletionTimestamp"),
        spec=BackendSpec(
            profile_ref=(spec.get("profile") or {}).get("name", ""),
            backend_ref=(spec.get("backend") or {}).get("name", ""),
            weight=_int(spec.get("weight"), 1),
        ),
        conditions=conditions_from_list(status.get("conditions")),
    )


def profile_from_dict(obj: Dict[str, Any]) -> Profile:
    metadata = obj.get("metadata") or {}
    status = obj.get("status") or {}
    return Profile(
        namespace=metadata.get("namespace", ""),
        name=metadata.get("name", ""),
        generation=_int(metadata.get("generation"), 1),
        conditions=conditions_from_list(status.get("conditions")),
    )


def service_from_dict(obj: Dict[str, Any]) -> MultiClusterService:
    metadata = obj.get("metadata") or {}
    status = obj.get("status") or {}
    members: List[ServiceMember] = []
    for item in status.get("clusters") or []:
        if not isinstance(item, dict) or not item.get("cluster"):
            logger.debug(f"Skipping malformed cluster entry: {item}")
            continue
        healthy = item.get("healthy")
        members.append(
            ServiceMember(
                cluster=str(item["cluster"]),
                address=str(item.get("address") or ""),
                weight=_int(item.get("weight"), 1),
                healthy=True if healthy is None else bool(healthy),
            )
        )
    return MultiClusterService(
        namespace=metadata.get("namespace", ""),
        name=metadata.get("name", ""),
        members=members,
    )


# =============================================================================
# Kubernetes Implementation
# =============================================================================


class KubernetesObjectStore(ObjectStore):
    """Object store backed by Kubernetes custom resources."""

    def __init__(
        self,
        api: Optional[kubernetes.client.CustomObjectsApi] = None,
        namespace: str = "",
    ):
        self._api = api or kubernetes.client.CustomObjectsApi()
        self._namespace = namespace

    def _get(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self._api.get_namespaced_custom_object(
                group=GROUP,
                version=VERSION,
                namespace=namespace,
                plural=PLURALS[kind],
                name=name,
            )
        except kubernetes.client.ApiException as e:
            if e.status == 404:
                return None
            raise TransientError(f"Failed to read {kind} {namespace}/{name}: {e.reason}") from e

    def get_backend(self, key: BackendKey) -> Optional[Backend]:
        obj = self._get(KIND_BACKEND, key.namespace, key.name)
        return backend_from_dict(obj) if obj is not None else None

    def get_profile(self, namespace: str, name: str) -> Optional[Profile]:
        obj = self._get(KIND_PROFILE, namespace, name)
        return profile_from_dict(obj) if obj is not None else None

    def get_service(self, namespace: str, name: str) -> Optional[MultiClusterService]:
        obj = self._get(KIND_SERVICE, namespace, name)
        return service_from_dict(obj) if obj is not None else None

    def list_backends(self, namespace: Optional[str] = None) -> List[Backend]:
        ns = namespace if namespace is not None else self._namespace
        try:
            if ns:
                result = self._api.list_namespaced_custom_object(
                    group=GROUP, version=VERSION, namespace=ns, plural=PLURALS[KIND_BACKEND]
                )
            else:
                result = self._api.list_cluster_custom_object(
                    group=GROUP, version=VERSION, plural=PLURALS[KIND_BACKEND]
                )
        except kubernetes.client.ApiException as e:
            raise TransientError(f"Failed to list backends: {e.reason}") from e
        return [backend_from_dict(item) for item in result.get("items", [])]

    def _patch(self, backend: Backend, body: Dict[str, Any], status: bool) -> Backend:
        patch = (
            self._api.patch_namespaced_custom_object_status
            if status
            else self._api.patch_namespaced_custom_object
        )
        try:
            obj = patch(
                group=GROUP,
                version=VERSION,
                namespace=backend.namespace,
                plural=PLURALS[KIND_BACKEND],
                name=backend.name,
                body=body,
            )
        except kubernetes.client.ApiException as e:
            if e.status == 409:
                raise ConflictError(f"Backend {backend.key} was modified concurrently") from e
            if e.status == 404:
                raise NotFoundError(f"Backend {backend.key} not found") from e
            raise TransientError(f"Failed to update backend {backend.key}: {e.reason}") from e
        return backend_from_dict(obj)

    def update_backend(self, backend: Backend) -> Backend:
        # Merge patch replaces the finalizer list; resourceVersion makes it conditional.
        body = {
            "metadata": {
                "resourceVersion": backend.resource_version,
                "finalizers": list(backend.finalizers),
            }
        }
        return self._patch(backend, body, status=False)

    def update_backend_status(self, backend: Backend) -> Backend:
        body = {
            "metadata": {"resourceVersion": backend.resource_version},
            "status": {"conditions": conditions_to_list(backend.conditions)},
        }
        return self._patch(backend, body, status=True)

    def annotate_backend(self, key: BackendKey, annotations: Dict[str, str]) -> None:
        try:
            self._api.patch_namespaced_custom_object(
                group=GROUP,
                version=VERSION,
                namespace=key.namespace,
                plural=PLURALS[KIND_BACKEND],
                name=key.name,
                body={"metadata": {"annotations": dict(annotations)}},
            )
        except kubernetes.client.ApiException as e:
            if e.status == 404:
                raise NotFoundError(f"Backend {key} not found") from e
            raise TransientError(f"Failed to annotate backend {key}: {e.reason}") from e
