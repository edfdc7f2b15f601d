"""Resolve the Profile and multi-cluster service a Backend references."""

from __future__ import annotations

import logging

from tm_controller.models import (
    Backend,
    ConditionStatus,
    Dependencies,
    Profile,
    ProfileState,
    ServiceState,
)
from tm_controller.store import ObjectStore

logger = logging.getLogger(__name__)


def classify_profile(profile: Profile) -> ProfileState:
    """Derive the profile state from its Programmed condition.

    An observation made for an older generation counts as pending.
    """
    cond = profile.programmed_condition
    if cond is None or cond.status == ConditionStatus.UNKNOWN:
        return ProfileState.PENDING
    if cond.observed_generation and cond.observed_generation < profile.generation:
        return ProfileState.PENDING
    if cond.status == ConditionStatus.TRUE:
        return ProfileState.PROGRAMMED
    return ProfileState.NOT_PROGRAMMED


class DependencyResolver:
    """Reads a Backend's referents. Has no side effects.

    Missing objects are resolved states, not errors; store read failures
    propagate as TransientError.
    """

    def __init__(self, store: ObjectStore):
        self.store = store

    def resolve(self, backend: Backend) -> Dependencies:
        profile = self.store.get_profile(backend.namespace, backend.spec.profile_ref)
        if profile is None:
            logger.debug(f"Backend {backend.key}: profile {backend.spec.profile_ref} not found")
            return Dependencies(profile=None, profile_state=ProfileState.MISSING)

        profile_state = classify_profile(profile)
        if profile_state != ProfileState.PROGRAMMED:
            return Dependencies(profile=profile, profile_state=profile_state)

        service = self.store.get_service(backend.namespace, backend.spec.backend_ref)
        if service is None:
            service_state = ServiceState.MISSING
        elif not service.valid_members:
            service_state = ServiceState.EMPTY
        else:
            service_state = ServiceState.READY

        logger.debug(
            f"Backend {backend.key}: profile {profile.name} programmed, "
            f"service {backend.spec.backend_ref} {service_state.value}"
        )
        return Dependencies(
            profile=profile,
            profile_state=profile_state,
            service=service,
            service_state=service_state,
        )
