"""Data model for the traffic manager backend controller.

Backends, Profiles and multi-cluster services are read from the object store
and converted into these dataclasses. Endpoints are the entries registered
with the external traffic-distribution provider.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

# =============================================================================
# Condition Types and Reasons
# =============================================================================

CONDITION_ACCEPTED = "Accepted"
CONDITION_PROGRAMMED = "Programmed"

REASON_ACCEPTED = "Accepted"
REASON_INVALID = "Invalid"
REASON_PENDING = "Pending"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ProfileState(Enum):
    """Resolved state of the Profile a Backend references.

    PENDING is the Unknown/absent sub-case of a Profile that is not
    programmed yet.
    """

    MISSING = "missing"
    NOT_PROGRAMMED = "not-programmed"
    PENDING = "pending"
    PROGRAMMED = "programmed"


class ServiceState(Enum):
    """Resolved state of the multi-cluster service a Backend references."""

    MISSING = "missing"
    EMPTY = "empty"
    READY = "ready"


# =============================================================================
# Conditions
# =============================================================================


@dataclass(frozen=True)
class Condition:
    """A typed status observation."""

    type: str
    status: ConditionStatus
    reason: str
    observed_generation: int = 0
    message: str = ""
    last_transition_time: str = ""


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def find_condition(conditions: List[Condition], condition_type: str) -> Optional[Condition]:
    for cond in conditions:
        if cond.type == condition_type:
            return cond
    return None


def set_condition(conditions: List[Condition], new: Condition) -> List[Condition]:
    """Upsert `new` by type and return the resulting list.

    The transition time only moves when the status value changes.
    """
    existing = find_condition(conditions, new.type)
    if existing is None:
        stamped = new if new.last_transition_time else replace(new, last_transition_time=_now())
        return list(conditions) + [stamped]

    if existing.status == new.status:
        transition = existing.last_transition_time
    else:
        transition = new.last_transition_time or _now()
    updated = replace(new, last_transition_time=transition)
    return [updated if c.type == new.type else c for c in conditions]


def conditions_equivalent(a: List[Condition], b: List[Condition]) -> bool:
    """Compare condition sets on type, status, reason and observed generation."""

    def _key(conditions: List[Condition]):
        return sorted(
            (c.type, ConditionStatus(c.status).value, c.reason, c.observed_generation)
            for c in conditions
        )

    return _key(a) == _key(b)


# =============================================================================
# Resources
# =============================================================================


@dataclass(frozen=True)
class BackendKey:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class BackendSpec:
    profile_ref: str
    backend_ref: str
    weight: int = 1


@dataclass
class Backend:
    """A TrafficManagerBackend object.

    `spec` is owned by the user. The controller only writes finalizers
    and conditions.
    """

    namespace: str
    name: str
    spec: BackendSpec
    uid: str = ""
    generation: int = 1
    resource_version: str = ""
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[str] = None
    conditions: List[Condition] = field(default_factory=list)

    @property
    def key(self) -> BackendKey:
        return BackendKey(self.namespace, self.name)

    @property
    def is_deleting(self) -> bool:
        return bool(self.deletion_timestamp)

    def has_finalizer(self, marker: str) -> bool:
        return marker in self.finalizers

    def accepted_condition(self) -> Optional[Condition]:
        return find_condition(self.conditions, CONDITION_ACCEPTED)


@dataclass
class Profile:
    """A TrafficManagerProfile, consumed read-only."""

    namespace: str
    name: str
    generation: int = 1
    conditions: List[Condition] = field(default_factory=list)

    @property
    def programmed_condition(self) -> Optional[Condition]:
        return find_condition(self.conditions, CONDITION_PROGRAMMED)


@dataclass(frozen=True)
class ServiceMember:
    """One cluster's entry in a multi-cluster service membership list."""

    cluster: str
    address: str
    weight: int = 1
    healthy: bool = True

    @property
    def is_valid(self) -> bool:
        return self.healthy and bool(self.address)


@dataclass
class MultiClusterService:
    namespace: str
    name: str
    members: List[ServiceMember] = field(default_factory=list)

    @property
    def valid_members(self) -> List[ServiceMember]:
        return [m for m in self.members if m.is_valid]


@dataclass(frozen=True)
class Endpoint:
    """An endpoint registered with the traffic provider under a profile."""

    name: str
    target: str
    weight: int
    enabled: bool = True


@dataclass
class Dependencies:
    """Result of resolving a Backend's references."""

    profile: Optional[Profile]
    profile_state: ProfileState
    service: Optional[MultiClusterService] = None
    service_state: ServiceState = ServiceState.MISSING

    @property
    def members(self) -> List[ServiceMember]:
        if self.service_state != ServiceState.READY or self.service is None:
            return []
        return self.service.valid_members
