"""Shared in-memory fakes for the object store and the traffic provider."""

import copy
from typing import Dict, List, Optional, Tuple

import pytest

from tm_controller.errors import ConflictError, NotFoundError, TransientError
from tm_controller.models import (
    CONDITION_PROGRAMMED,
    Backend,
    BackendKey,
    BackendSpec,
    Condition,
    ConditionStatus,
    Endpoint,
    MultiClusterService,
    Profile,
    ServiceMember,
)
from tm_controller.provider import TrafficProvider
from tm_controller.store import ObjectStore

# =============================================================================
# Fake Object Store
# =============================================================================


class FakeObjectStore(ObjectStore):
    """In-memory store with resource versions and finalizer-gated deletion."""

    def __init__(self):
        self.backends: Dict[BackendKey, Backend] = {}
        self.profiles: Dict[Tuple[str, str], Profile] = {}
        self.services: Dict[Tuple[str, str], MultiClusterService] = {}
        self.update_calls: List[Backend] = []
        self.status_calls: List[Backend] = []
        self.pending_conflicts = 0
        self.read_error: Optional[Exception] = None
        self.annotate_calls: List[Tuple[BackendKey, Dict[str, str]]] = []
        self.annotate_error: Optional[Exception] = None
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    # Test helpers ------------------------------------------------------------

    def create_backend(self, backend: Backend) -> Backend:
        stored = copy.deepcopy(backend)
        stored.resource_version = self._next_version()
        self.backends[stored.key] = stored
        return copy.deepcopy(stored)

    def edit_backend(self, key: BackendKey, **changes) -> None:
        """Simulate a user edit, bumping the resource version."""
        stored = self.backends[key]
        for name, value in changes.items():
            setattr(stored, name, value)
        stored.resource_version = self._next_version()

    def delete_backend(self, key: BackendKey) -> None:
        stored = self.backends.get(key)
        if stored is None:
            return
        if stored.finalizers:
            stored.deletion_timestamp = "2024-01-01T00:00:00Z"
            stored.resource_version = self._next_version()
        else:
            del self.backends[key]

    def clear_finalizers(self, key: BackendKey) -> None:
        """Manual override by an operator."""
        stored = self.backends[key]
        stored.finalizers = []
        self._collect(stored)

    def put_profile(self, profile: Profile) -> None:
        self.profiles[(profile.namespace, profile.name)] = copy.deepcopy(profile)

    def put_service(self, service: MultiClusterService) -> None:
        self.services[(service.namespace, service.name)] = copy.deepcopy(service)

    def _collect(self, stored: Backend) -> None:
        if stored.is_deleting and not stored.finalizers:
            self.backends.pop(stored.key, None)

    # ObjectStore -------------------------------------------------------------

    def get_backend(self, key: BackendKey) -> Optional[Backend]:
        stored = self.backends.get(key)
        return copy.deepcopy(stored) if stored is not None else None

    def list_backends(self, namespace: Optional[str] = None) -> List[Backend]:
        return [
            copy.deepcopy(b)
            for b in self.backends.values()
            if namespace is None or b.namespace == namespace
        ]

    def get_profile(self, namespace: str, name: str) -> Optional[Profile]:
        if self.read_error is not None:
            raise self.read_error
        profile = self.profiles.get((namespace, name))
        return copy.deepcopy(profile) if profile is not None else None

    def get_service(self, namespace: str, name: str) -> Optional[MultiClusterService]:
        if self.read_error is not None:
            raise self.read_error
        service = self.services.get((namespace, name))
        return copy.deepcopy(service) if service is not None else None

    def _check_write(self, backend: Backend) -> Backend:
        stored = self.backends.get(backend.key)
        if stored is None:
            raise NotFoundError(f"backend {backend.key} not found")
        if self.pending_conflicts > 0:
            self.pending_conflicts -= 1
            stored.resource_version = self._next_version()
            raise ConflictError(f"backend {backend.key} conflict")
        if backend.resource_version != stored.resource_version:
            raise ConflictError(f"backend {backend.key} conflict")
        return stored

    def update_backend(self, backend: Backend) -> Backend:
        self.update_calls.append(copy.deepcopy(backend))
        stored = self._check_write(backend)
        stored.finalizers = list(backend.finalizers)
        stored.resource_version = self._next_version()
        self._collect(stored)
        return copy.deepcopy(stored)

    def update_backend_status(self, backend: Backend) -> Backend:
        self.status_calls.append(copy.deepcopy(backend))
        stored = self._check_write(backend)
        stored.conditions = list(backend.conditions)
        stored.resource_version = self._next_version()
        return copy.deepcopy(stored)

    def annotate_backend(self, key: BackendKey, annotations: Dict[str, str]) -> None:
        if self.annotate_error is not None:
            raise self.annotate_error
        stored = self.backends.get(key)
        if stored is None:
            raise NotFoundError(f"backend {key} not found")
        self.annotate_calls.append((key, dict(annotations)))
        stored.resource_version = self._next_version()


# =============================================================================
# Fake Traffic Provider
# =============================================================================


class FakeTrafficProvider(TrafficProvider):
    """In-memory provider with per-call failure injection and call tracking."""

    def __init__(self):
        self.profiles: Dict[str, Dict[str, Endpoint]] = {}
        self.calls: List[Tuple[str, str, str]] = []
        self.list_error: Optional[Exception] = None
        self.delete_errors: Dict[str, Exception] = {}
        self.upsert_errors: Dict[str, Exception] = {}
        self.delete_error: Optional[Exception] = None

    @property
    def name(self) -> str:
        return "FakeProvider"

    def test_connection(self) -> bool:
        return True

    def add_profile(self, name: str, endpoints: Optional[List[Endpoint]] = None) -> None:
        self.profiles[name] = {e.name: e for e in endpoints or []}

    def endpoints(self, profile_name: str) -> Dict[str, Endpoint]:
        return dict(self.profiles.get(profile_name, {}))

    @property
    def write_calls(self) -> List[Tuple[str, str, str]]:
        return [c for c in self.calls if c[0] != "list"]

    def list_endpoints(self, profile_name: str, timeout: Optional[float] = None) -> List[Endpoint]:
        self.calls.append(("list", profile_name, ""))
        if self.list_error is not None:
            raise self.list_error
        if profile_name not in self.profiles:
            raise NotFoundError(f"profile {profile_name} not found")
        return list(self.profiles[profile_name].values())

    def upsert_endpoint(
        self, profile_name: str, endpoint: Endpoint, timeout: Optional[float] = None
    ) -> None:
        self.calls.append(("upsert", profile_name, endpoint.name))
        if endpoint.name in self.upsert_errors:
            raise self.upsert_errors[endpoint.name]
        if profile_name not in self.profiles:
            raise NotFoundError(f"profile {profile_name} not found")
        self.profiles[profile_name][endpoint.name] = endpoint

    def delete_endpoint(
        self, profile_name: str, endpoint_name: str, timeout: Optional[float] = None
    ) -> None:
        self.calls.append(("delete", profile_name, endpoint_name))
        error = self.delete_errors.get(endpoint_name) or self.delete_error
        if error is not None:
            raise error
        self.profiles.get(profile_name, {}).pop(endpoint_name, None)


# =============================================================================
# Builders
# =============================================================================

NAMESPACE = "fleet"


def make_backend(
    name: str = "backend",
    profile: str = "profile",
    service: str = "svc",
    weight: int = 10,
    finalizers: Optional[List[str]] = None,
    generation: int = 1,
) -> Backend:
    return Backend(
        namespace=NAMESPACE,
        name=name,
        uid=f"uid-{name}",
        generation=generation,
        spec=BackendSpec(profile_ref=profile, backend_ref=service, weight=weight),
        finalizers=list(finalizers or []),
    )


def make_profile(
    name: str = "profile",
    programmed: Optional[ConditionStatus] = None,
    generation: int = 1,
    observed_generation: Optional[int] = None,
) -> Profile:
    conditions = []
    if programmed is not None:
        conditions.append(
            Condition(
                type=CONDITION_PROGRAMMED,
                status=programmed,
                reason="Programmed" if programmed == ConditionStatus.TRUE else "Pending",
                observed_generation=generation if observed_generation is None else observed_generation,
            )
        )
    return Profile(namespace=NAMESPACE, name=name, generation=generation, conditions=conditions)


def make_service(name: str = "svc", members: Optional[List[ServiceMember]] = None) -> MultiClusterService:
    return MultiClusterService(namespace=NAMESPACE, name=name, members=list(members or []))


def member(cluster: str, address: str = "", weight: int = 1, healthy: bool = True) -> ServiceMember:
    return ServiceMember(
        cluster=cluster, address=address or f"{cluster}.example.com", weight=weight, healthy=healthy
    )


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def provider() -> FakeTrafficProvider:
    return FakeTrafficProvider()


@pytest.fixture
def transient() -> TransientError:
    return TransientError("request timed out")
