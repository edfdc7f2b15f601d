"""Endpoint synchronization for a single Backend.

Endpoint names are derived from the Backend identity and the member's
cluster, so every Backend owns a disjoint slice of the profile's endpoints
and repeated runs converge on the same names.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from tm_controller.errors import (
    DeadlineExceededError,
    NotFoundError,
    PermanentError,
    SyncIncompleteError,
    TransientError,
)
from tm_controller.models import Backend, Endpoint, ServiceMember
from tm_controller.provider import TrafficProvider

logger = logging.getLogger(__name__)

MIN_ENDPOINT_WEIGHT = 1
MAX_ENDPOINT_WEIGHT = 1000


# =============================================================================
# Naming and Desired State
# =============================================================================


def endpoint_name_prefix(backend: Backend) -> str:
    # '#' is not allowed in object names, so prefixes never overlap.
    return f"{backend.namespace}#{backend.name}#"


def endpoint_name(backend: Backend, member: ServiceMember) -> str:
    return f"{endpoint_name_prefix(backend)}{member.cluster}"


def endpoint_weight(backend_weight: int, member_weight: int, total_weight: int) -> int:
    """Share of the Backend weight for one member, rounded up."""
    if total_weight <= 0:
        share = backend_weight
    else:
        share = math.ceil(backend_weight * max(member_weight, 0) / total_weight)
    return min(max(share, MIN_ENDPOINT_WEIGHT), MAX_ENDPOINT_WEIGHT)


def desired_endpoints(backend: Backend, members: List[ServiceMember]) -> Dict[str, Endpoint]:
    valid = [m for m in members if m.is_valid]
    total = sum(max(m.weight, 0) for m in valid)
    desired: Dict[str, Endpoint] = {}
    for member in valid:
        name = endpoint_name(backend, member)
        desired[name] = Endpoint(
            name=name,
            target=member.address,
            weight=endpoint_weight(backend.spec.weight, member.weight, total),
            enabled=True,
        )
    return desired


@dataclass
class SyncPlan:
    to_delete: List[str] = field(default_factory=list)
    to_create: List[Endpoint] = field(default_factory=list)
    to_update: List[Endpoint] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.to_delete or self.to_create or self.to_update)


def plan_sync(desired: Dict[str, Endpoint], existing: Dict[str, Endpoint]) -> SyncPlan:
    plan = SyncPlan()
    for name in sorted(set(existing) - set(desired)):
        plan.to_delete.append(name)
    for name in sorted(desired):
        current = existing.get(name)
        if current is None:
            plan.to_create.append(desired[name])
        elif current != desired[name]:
            plan.to_update.append(desired[name])
    return plan


@dataclass
class SyncResult:
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.deleted)


# =============================================================================
# Synchronizer
# =============================================================================


class EndpointSynchronizer:
    """Drives the provider's endpoints for one Backend to the desired set."""

    def __init__(self, provider: TrafficProvider, call_timeout_seconds: float = 10.0):
        self.provider = provider
        self.call_timeout = call_timeout_seconds

    def _timeout(self, deadline: Optional[float], what: str) -> float:
        if deadline is None:
            return self.call_timeout
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise DeadlineExceededError(f"deadline exceeded before {what}")
        return min(self.call_timeout, remaining)

    def drain(self, backend: Backend, deadline: Optional[float] = None) -> SyncResult:
        return self.sync(backend, [], deadline=deadline)

    def sync(
        self,
        backend: Backend,
        members: List[ServiceMember],
        deadline: Optional[float] = None,
    ) -> SyncResult:
        """Reconcile the provider against `members`. An empty list drains.

        Every planned call is attempted. Failures are collected and raised
        as SyncIncompleteError once the rest have been applied.
        """
        profile_name = backend.spec.profile_ref
        draining = not members
        prefix = endpoint_name_prefix(backend)

        try:
            listed = self.provider.list_endpoints(
                profile_name, timeout=self._timeout(deadline, "listing endpoints")
            )
        except NotFoundError as e:
            if draining:
                logger.info(
                    f"Backend {backend.key}: profile {profile_name} not found upstream, nothing to drain"
                )
                return SyncResult()
            raise PermanentError(f"profile {profile_name} does not exist in the provider") from e

        existing = {e.name: e for e in listed if e.name.startswith(prefix)}
        desired = desired_endpoints(backend, members)
        plan = plan_sync(desired, existing)
        result = SyncResult()
        if plan.empty:
            logger.debug(f"Backend {backend.key}: {len(existing)} endpoint(s) already in sync")
            return result

        failures: List[Tuple[str, Exception]] = []

        # Deletes go first so a member move never duplicates weight.
        for name in plan.to_delete:
            timeout = self._timeout(deadline, f"deleting {name}")
            try:
                self.provider.delete_endpoint(profile_name, name, timeout=timeout)
            except NotFoundError:
                logger.debug(f"Backend {backend.key}: endpoint {name} already absent")
            except DeadlineExceededError:
                raise
            except (TransientError, PermanentError) as e:
                logger.warning(f"Backend {backend.key}: failed to delete endpoint {name}: {e}")
                failures.append((name, e))
                continue
            result.deleted.append(name)

        upserts = [(e, result.created) for e in plan.to_create]
        upserts += [(e, result.updated) for e in plan.to_update]
        for endpoint, done in upserts:
            timeout = self._timeout(deadline, f"upserting {endpoint.name}")
            try:
                self.provider.upsert_endpoint(profile_name, endpoint, timeout=timeout)
            except DeadlineExceededError:
                raise
            except NotFoundError as e:
                failures.append((endpoint.name, PermanentError(str(e))))
                continue
            except (TransientError, PermanentError) as e:
                logger.warning(f"Backend {backend.key}: failed to upsert endpoint {endpoint.name}: {e}")
                failures.append((endpoint.name, e))
                continue
            done.append(endpoint.name)

        logger.info(
            f"Backend {backend.key}: {'drained' if draining else 'synced'} profile {profile_name} "
            f"(created {len(result.created)}, updated {len(result.updated)}, "
            f"deleted {len(result.deleted)}, failed {len(failures)})"
        )
        if failures:
            raise SyncIncompleteError(failures)
        return result
