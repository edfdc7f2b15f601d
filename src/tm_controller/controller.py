"""Kopf wiring around the Backend reconciler.

Backends are reconciled from kopf's resume, create, update and delete
handlers. Kopf runs at most one handler per object at a time and schedules
the retries requested through kopf.TemporaryError.

Profiles and multi-cluster services are followed with event handlers. When
one changes in a way that can alter a dependent Backend's outcome, each
dependent Backend found through the DependencyIndex is touched with an
annotation, which kopf sees as an update of that Backend.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

import kopf

from tm_controller.errors import ControllerError, NotFoundError
from tm_controller.models import Backend, BackendKey
from tm_controller.reconciler import FINALIZER, BackendReconciler, Result
from tm_controller.store import (
    GROUP,
    KIND_BACKEND,
    KIND_PROFILE,
    KIND_SERVICE,
    PLURALS,
    VERSION,
    ObjectStore,
    backend_from_dict,
    profile_from_dict,
    service_from_dict,
)

logger = logging.getLogger(__name__)

EVENT_ADDED = "ADDED"
EVENT_MODIFIED = "MODIFIED"
EVENT_DELETED = "DELETED"

TRIGGER_ANNOTATION = f"{GROUP}/dependencies-changed-at"

# Kopf's own bookkeeping annotations live under a separate prefix so the
# trigger annotation above stays part of the object's diffed essence.
KOPF_STORAGE_PREFIX = "tm-controller.fleet.azure.com"

# =============================================================================
# Dependency Index
# =============================================================================


class DependencyIndex:
    """Reverse index from Profile and service names to dependent Backends."""

    def __init__(self):
        self._lock = threading.Lock()
        self._refs: Dict[BackendKey, Tuple[str, str]] = {}
        self._profiles: Dict[Tuple[str, str], Set[BackendKey]] = {}
        self._services: Dict[Tuple[str, str], Set[BackendKey]] = {}

    def update(self, backend: Backend) -> None:
        key = backend.key
        refs = (backend.spec.profile_ref, backend.spec.backend_ref)
        with self._lock:
            if self._refs.get(key) == refs:
                return
            self._remove_locked(key)
            self._refs[key] = refs
            self._profiles.setdefault((key.namespace, refs[0]), set()).add(key)
            self._services.setdefault((key.namespace, refs[1]), set()).add(key)

    def remove(self, key: BackendKey) -> None:
        with self._lock:
            self._remove_locked(key)

    def _remove_locked(self, key: BackendKey) -> None:
        refs = self._refs.pop(key, None)
        if refs is None:
            return
        for table, name in ((self._profiles, refs[0]), (self._services, refs[1])):
            dependents = table.get((key.namespace, name))
            if dependents is None:
                continue
            dependents.discard(key)
            if not dependents:
                del table[(key.namespace, name)]

    def backends_for_profile(self, namespace: str, name: str) -> List[BackendKey]:
        with self._lock:
            return sorted(self._profiles.get((namespace, name), set()), key=str)

    def backends_for_service(self, namespace: str, name: str) -> List[BackendKey]:
        with self._lock:
            return sorted(self._services.get((namespace, name), set()), key=str)


# =============================================================================
# Controller
# =============================================================================

_UNSEEN = object()


class Controller:
    def __init__(
        self,
        *,
        store: ObjectStore,
        reconciler: BackendReconciler,
        index: Optional[DependencyIndex] = None,
        reconcile_timeout_seconds: float = 60.0,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.reconciler = reconciler
        self.index = index or DependencyIndex()
        self.reconcile_timeout = reconcile_timeout_seconds
        self.backoff_base = backoff_base_seconds
        self.backoff_max = backoff_max_seconds
        self._clock = clock
        self._signatures: Dict[Tuple[str, str, str], object] = {}
        self._signatures_lock = threading.Lock()

    def backoff_delay(self, retry: int) -> float:
        """Delay before retry number `retry + 1`: base * 2**retry, capped."""
        return min(self.backoff_base * (2 ** max(retry, 0)), self.backoff_max)

    # -------------------------------------------------------------------------
    # Backends
    # -------------------------------------------------------------------------

    def reconcile(self, key: BackendKey) -> Result:
        """Reconcile until the Backend stops asking for a requeue or time runs out."""
        deadline = self._clock() + self.reconcile_timeout
        result = self.reconciler.reconcile(key, deadline=deadline)
        while result.requeue and self._clock() < deadline:
            result = self.reconciler.reconcile(key, deadline=deadline)
        return result

    def handle_backend(self, namespace: str, name: str, retry: int = 0) -> None:
        """Reconcile one Backend on behalf of a kopf handler.

        Every failure is retried. A drain that keeps failing must keep the
        finalizer, and kopf drops its finalizer once a delete handler fails
        permanently.
        """
        key = BackendKey(namespace, name)
        try:
            result = self.reconcile(key)
        except ControllerError as e:
            delay = self.backoff_delay(retry)
            logger.warning(f"Reconcile of backend {key} failed, retrying in {delay:.1f}s: {e}")
            raise kopf.TemporaryError(f"Backend {key}: {e}", delay=delay) from e

        if result.requeue_after:
            raise kopf.TemporaryError(f"Backend {key} requeued", delay=result.requeue_after)
        if result.requeue:
            raise kopf.TemporaryError(
                f"Backend {key} did not settle before the deadline",
                delay=self.backoff_delay(retry),
            )

    def handle_backend_event(self, event_type: Optional[str], body: Mapping[str, Any]) -> None:
        backend = backend_from_dict(body)
        if event_type == EVENT_DELETED:
            self.index.remove(backend.key)
            return
        self.index.update(backend)

    # -------------------------------------------------------------------------
    # Dependencies
    # -------------------------------------------------------------------------

    def handle_profile_event(
        self, event_type: Optional[str], body: Mapping[str, Any]
    ) -> List[BackendKey]:
        """Touch dependents when the Profile's Programmed condition changes."""
        profile = profile_from_dict(body)
        cond = profile.programmed_condition
        signature = (cond.status, cond.observed_generation) if cond else None
        if not self._changed(KIND_PROFILE, profile.namespace, profile.name, event_type, signature):
            return []
        return self._touch(
            self.index.backends_for_profile(profile.namespace, profile.name),
            f"Profile {profile.namespace}/{profile.name}",
        )

    def handle_service_event(
        self, event_type: Optional[str], body: Mapping[str, Any]
    ) -> List[BackendKey]:
        """Touch dependents when the set of valid service members changes."""
        service = service_from_dict(body)
        signature = tuple(sorted((m.cluster, m.address, m.weight) for m in service.valid_members))
        if not self._changed(KIND_SERVICE, service.namespace, service.name, event_type, signature):
            return []
        return self._touch(
            self.index.backends_for_service(service.namespace, service.name),
            f"Service {service.namespace}/{service.name}",
        )

    def _changed(
        self, kind: str, namespace: str, name: str, event_type: Optional[str], signature: object
    ) -> bool:
        key = (kind, namespace, name)
        with self._signatures_lock:
            if event_type == EVENT_DELETED:
                self._signatures.pop(key, None)
                return True
            previous = self._signatures.get(key, _UNSEEN)
            self._signatures[key] = signature

        if previous is _UNSEEN:
            # The initial listing has no event type; resume handlers cover those Backends.
            return event_type == EVENT_ADDED
        return previous != signature

    def _touch(self, keys: List[BackendKey], cause: str) -> List[BackendKey]:
        if not keys:
            return []
        logger.info(f"{cause} changed, re-evaluating {len(keys)} backend(s)")
        stamp = datetime.now(timezone.utc).isoformat()

        touched = []
        for key in keys:
            try:
                self.store.annotate_backend(key, {TRIGGER_ANNOTATION: stamp})
            except NotFoundError:
                self.index.remove(key)
                continue
            except ControllerError as e:
                logger.warning(f"Failed to trigger backend {key} after {cause} changed: {e}")
                continue
            touched.append(key)
        return touched

    # -------------------------------------------------------------------------
    # One-shot mode
    # -------------------------------------------------------------------------

    def run_once(self) -> int:
        """Reconcile every Backend once. Returns the number that succeeded."""
        backends = self.store.list_backends()
        succeeded = 0
        for backend in backends:
            self.index.update(backend)
            try:
                self.reconcile(backend.key)
            except ControllerError as e:
                logger.warning(f"Reconcile of backend {backend.key} failed: {e}")
                continue
            succeeded += 1
        logger.info(f"Reconciled {succeeded}/{len(backends)} backend(s)")
        return succeeded


# =============================================================================
# Kopf Registration
# =============================================================================


def configure_settings(settings: kopf.OperatorSettings, workers: int = 4) -> None:
    """Point kopf at the Backend finalizer and keep its annotations apart."""
    settings.persistence.finalizer = FINALIZER
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix=KOPF_STORAGE_PREFIX
    )
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
        prefix=KOPF_STORAGE_PREFIX, key="last-handled-configuration"
    )
    settings.execution.max_workers = max(1, workers)
    settings.posting.level = logging.WARNING


def register_handlers(
    controller: Controller, registry: kopf.OperatorRegistry, workers: int = 4
) -> None:
    """Register the controller's handlers with a kopf registry."""
    backends = (GROUP, VERSION, PLURALS[KIND_BACKEND])

    @kopf.on.startup(registry=registry)
    def configure(settings: kopf.OperatorSettings, **_):
        configure_settings(settings, workers)
        logger.info(f"Controller started with {settings.execution.max_workers} worker(s)")

    @kopf.on.resume(*backends, registry=registry)
    @kopf.on.create(*backends, registry=registry)
    @kopf.on.update(*backends, registry=registry)
    def reconcile_backend(namespace, name, retry, **_):
        controller.handle_backend(namespace, name, retry=retry)

    @kopf.on.delete(*backends, registry=registry)
    def finalize_backend(namespace, name, retry, **_):
        controller.handle_backend(namespace, name, retry=retry)

    @kopf.on.event(*backends, registry=registry)
    def track_backend(event, **_):
        controller.handle_backend_event(event.get("type"), event["object"])

    @kopf.on.event(GROUP, VERSION, PLURALS[KIND_PROFILE], registry=registry)
    def track_profile(event, **_):
        controller.handle_profile_event(event.get("type"), event["object"])

    @kopf.on.event(GROUP, VERSION, PLURALS[KIND_SERVICE], registry=registry)
    def track_service(event, **_):
        controller.handle_service_event(event.get("type"), event["object"])
