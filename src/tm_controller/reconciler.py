"""Backend reconciliation.

One call to `BackendReconciler.reconcile` evaluates a single Backend to
completion: it guards the object with a finalizer, resolves the Profile and
multi-cluster service, drives the provider's endpoints and records the
outcome in the Accepted condition.

Outcomes that retrying cannot change (missing profile, rejected
configuration) are absorbed into the condition and return normally.
Transient failures are raised so the caller backs off and retries.

Lifecycle, keyed on deletion timestamp and finalizer presence:

    ACTIVE_UNPROTECTED  no deletion, no finalizer   -> add finalizer
    ACTIVE              no deletion, finalizer      -> evaluate and sync
    DRAINING            deletion, finalizer         -> drain, drop finalizer
    REMOVABLE           deletion, no finalizer      -> nothing to do
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Optional

from tm_controller.errors import (
    ConflictError,
    ControllerError,
    NotFoundError,
    PermanentError,
    SyncIncompleteError,
    TransientError,
)
from tm_controller.models import (
    CONDITION_ACCEPTED,
    REASON_ACCEPTED,
    REASON_INVALID,
    REASON_PENDING,
    Backend,
    BackendKey,
    Condition,
    ConditionStatus,
    ProfileState,
    ServiceState,
    conditions_equivalent,
    set_condition,
)
from tm_controller.resolver import DependencyResolver
from tm_controller.store import ObjectStore
from tm_controller.synchronizer import EndpointSynchronizer

logger = logging.getLogger(__name__)

FINALIZER = "networking.fleet.azure.com/traffic-manager-backend-cleanup"


class LifecycleState(Enum):
    ACTIVE_UNPROTECTED = "active-unprotected"
    ACTIVE = "active"
    DRAINING = "draining"
    REMOVABLE = "removable"


def lifecycle_state(backend: Backend) -> LifecycleState:
    protected = backend.has_finalizer(FINALIZER)
    if backend.is_deleting:
        return LifecycleState.DRAINING if protected else LifecycleState.REMOVABLE
    return LifecycleState.ACTIVE if protected else LifecycleState.ACTIVE_UNPROTECTED


@dataclass(frozen=True)
class Result:
    """Requeue directive returned by a successful reconcile."""

    requeue: bool = False
    requeue_after: Optional[float] = None


def accepted(backend: Backend, message: str = "") -> Condition:
    return Condition(
        type=CONDITION_ACCEPTED,
        status=ConditionStatus.TRUE,
        reason=REASON_ACCEPTED,
        observed_generation=backend.generation,
        message=message,
    )


def invalid(backend: Backend, message: str) -> Condition:
    return Condition(
        type=CONDITION_ACCEPTED,
        status=ConditionStatus.FALSE,
        reason=REASON_INVALID,
        observed_generation=backend.generation,
        message=message,
    )


def pending(backend: Backend, message: str) -> Condition:
    return Condition(
        type=CONDITION_ACCEPTED,
        status=ConditionStatus.UNKNOWN,
        reason=REASON_PENDING,
        observed_generation=backend.generation,
        message=message,
    )


class BackendReconciler:
    def __init__(
        self,
        store: ObjectStore,
        resolver: DependencyResolver,
        synchronizer: EndpointSynchronizer,
        conflict_retries: int = 5,
    ):
        self.store = store
        self.resolver = resolver
        self.synchronizer = synchronizer
        self.conflict_retries = max(1, conflict_retries)

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def reconcile(self, key: BackendKey, deadline: Optional[float] = None) -> Result:
        backend = self.store.get_backend(key)
        if backend is None:
            logger.debug(f"Backend {key} not found, ignoring")
            return Result()

        state = lifecycle_state(backend)
        if state == LifecycleState.REMOVABLE:
            return Result()
        if state == LifecycleState.DRAINING:
            return self._finalize(backend, deadline)
        if state == LifecycleState.ACTIVE_UNPROTECTED:
            if self._mutate(backend, self._add_finalizer):
                logger.info(f"Added finalizer to backend {key}")
            return Result(requeue=True)
        return self._evaluate(backend, deadline)

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    def _finalize(self, backend: Backend, deadline: Optional[float]) -> Result:
        logger.info(f"Backend {backend.key} is being deleted, draining endpoints")
        try:
            self.synchronizer.drain(backend, deadline=deadline)
        except ControllerError as e:
            logger.warning(f"Backend {backend.key}: drain failed, keeping finalizer: {e}")
            raise

        if self._mutate(backend, self._remove_finalizer):
            logger.info(f"Removed finalizer from backend {backend.key}")
        return Result()

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def _evaluate(self, backend: Backend, deadline: Optional[float]) -> Result:
        key = backend.key
        spec = backend.spec

        if spec.weight < 1:
            return self._drain_then_invalid(
                backend, deadline, f"weight must be a positive integer, got {spec.weight}"
            )

        deps = self.resolver.resolve(backend)

        if deps.profile_state == ProfileState.MISSING:
            self._set_accepted(backend, invalid(backend, f"Profile {spec.profile_ref} not found"))
            return Result()

        if deps.profile_state == ProfileState.NOT_PROGRAMMED:
            self._set_accepted(backend, invalid(backend, f"Profile {spec.profile_ref} is not programmed"))
            return Result()

        if deps.profile_state == ProfileState.PENDING:
            message = f"Profile {spec.profile_ref} is pending programming"
            self._set_accepted(backend, pending(backend, message))
            return Result()

        if deps.service_state != ServiceState.READY:
            if deps.service_state == ServiceState.MISSING:
                reason = f"Service {spec.backend_ref} not found"
            else:
                reason = f"Service {spec.backend_ref} has no valid members"
            return self._drain_then_invalid(backend, deadline, reason)

        try:
            result = self.synchronizer.sync(backend, deps.members, deadline=deadline)
        except SyncIncompleteError as e:
            if e.permanent:
                logger.warning(f"Backend {key}: provider rejected endpoints: {e}")
                self._set_accepted(backend, invalid(backend, self._failure_message(e)))
                return Result()
            self._set_accepted(backend, pending(backend, str(e)))
            raise
        except TransientError as e:
            self._set_accepted(backend, pending(backend, f"Provider unavailable: {e}"))
            raise
        except PermanentError as e:
            # e.g. the profile does not exist upstream.
            logger.warning(f"Backend {key}: provider rejected configuration: {e}")
            self._set_accepted(backend, invalid(backend, str(e)))
            return Result()

        count = len(deps.members)
        self._set_accepted(
            backend, accepted(backend, f"{count} endpoint(s) registered in profile {spec.profile_ref}")
        )
        if result.changed:
            logger.info(f"Backend {key} accepted with {count} endpoint(s)")
        return Result()

    def _drain_then_invalid(self, backend: Backend, deadline: Optional[float], reason: str) -> Result:
        try:
            self.synchronizer.drain(backend, deadline=deadline)
        except SyncIncompleteError as e:
            # Stale endpoints are still registered; leave the condition as is.
            logger.warning(f"Backend {backend.key}: failed to remove stale endpoints: {e}")
            raise
        except TransientError as e:
            self._set_accepted(backend, pending(backend, f"Provider unavailable: {e}"))
            raise
        self._set_accepted(backend, invalid(backend, reason))
        return Result()

    @staticmethod
    def _failure_message(error: SyncIncompleteError) -> str:
        return "; ".join(f"{name}: {err}" for name, err in error.failures)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    @staticmethod
    def _add_finalizer(backend: Backend) -> Optional[Backend]:
        if backend.is_deleting or backend.has_finalizer(FINALIZER):
            return None
        return replace(backend, finalizers=backend.finalizers + [FINALIZER])

    @staticmethod
    def _remove_finalizer(backend: Backend) -> Optional[Backend]:
        if not backend.has_finalizer(FINALIZER):
            return None
        return replace(backend, finalizers=[f for f in backend.finalizers if f != FINALIZER])

    def _set_accepted(self, backend: Backend, condition: Condition) -> None:
        def mutate(current: Backend) -> Optional[Backend]:
            conditions = set_condition(current.conditions, condition)
            if conditions_equivalent(conditions, current.conditions):
                logger.debug(f"Backend {current.key}: status unchanged, skipping write")
                return None
            return replace(current, conditions=conditions)

        if self._mutate(backend, mutate, status=True):
            logger.info(
                f"Backend {backend.key}: {CONDITION_ACCEPTED}={ConditionStatus(condition.status).value} "
                f"({condition.reason}) {condition.message}"
            )

    def _mutate(
        self,
        backend: Backend,
        mutate: Callable[[Backend], Optional[Backend]],
        status: bool = False,
    ) -> bool:
        """Apply `mutate` and persist it, re-reading and retrying on conflicts.

        `mutate` returns None when no write is needed. Returns whether a
        write happened.
        """
        current = backend
        for attempt in range(self.conflict_retries):
            desired = mutate(current)
            if desired is None:
                return False
            try:
                if status:
                    self.store.update_backend_status(desired)
                else:
                    self.store.update_backend(desired)
                return True
            except ConflictError:
                logger.debug(f"Backend {backend.key}: write conflict (attempt {attempt + 1}), re-reading")
                latest = self.store.get_backend(backend.key)
                if latest is None:
                    return False
                current = latest
            except NotFoundError:
                logger.debug(f"Backend {backend.key} disappeared before the write")
                return False
        raise TransientError(
            f"Backend {backend.key}: gave up after {self.conflict_retries} conflicting writes"
        )
