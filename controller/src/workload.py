from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from controller.src.policy import EffectivePolicy, is_excluded
from controller.src.references import referenced_config_maps

LOGGER = logging.getLogger(__name__)

PHASE_RUNNING = "Running"
TERMINAL_PHASES = frozenset({"Succeeded", "Failed"})


@dataclass(frozen=True)
class OwnerRef:
    uid: str
    kind: str = ""
    name: str = ""

    def __str__(self) -> str:
        if self.kind and self.name:
            return f"{self.kind}/{self.name}"
        return self.uid


@dataclass(frozen=True)
class WorkloadUnit:
    """Immutable snapshot of a pod taken for one reconciliation pass.

    ``owner`` is the controlling owner reference; ``None`` means nothing will
    recreate the pod once it is deleted.
    """

    name: str
    namespace: str
    uid: str = ""
    phase: str = "Pending"
    ready: bool = False
    deleting: bool = False
    owner: OwnerRef | None = None
    owner_uids: frozenset[str] = frozenset()
    labels: Mapping[str, str] = field(default_factory=dict)
    config_maps: frozenset[str] = frozenset()

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def uses(self, config_map_name: str) -> bool:
        return bool(config_map_name) and config_map_name in self.config_maps

    @classmethod
    def from_pod(cls, pod: Any) -> WorkloadUnit:
        metadata = getattr(pod, "metadata", None)
        status = getattr(pod, "status", None)
        return cls(
            name=getattr(metadata, "name", None) or "",
            namespace=getattr(metadata, "namespace", None) or "",
            uid=getattr(metadata, "uid", None) or "",
            phase=getattr(status, "phase", None) or "Pending",
            ready=pod_is_ready(pod),
            deleting=getattr(metadata, "deletion_timestamp", None) is not None,
            owner=controller_owner(pod),
            owner_uids=owner_reference_uids(pod),
            labels=dict(getattr(metadata, "labels", None) or {}),
            config_maps=referenced_config_maps(pod),
        )


def controller_owner(pod: Any) -> OwnerRef | None:
    """Return the owner reference flagged ``controller: true``, if any."""
    metadata = getattr(pod, "metadata", None)
    for ref in getattr(metadata, "owner_references", None) or []:
        if getattr(ref, "controller", None) is True and getattr(ref, "uid", None):
            return OwnerRef(
                uid=str(ref.uid),
                kind=getattr(ref, "kind", None) or "",
                name=getattr(ref, "name", None) or "",
            )
    return None


def owner_reference_uids(pod: Any) -> frozenset[str]:
    """Return the uid of every owner reference, controller or not."""
    metadata = getattr(pod, "metadata", None)
    return frozenset(
        str(ref.uid)
        for ref in getattr(metadata, "owner_references", None) or []
        if getattr(ref, "uid", None)
    )


def pod_is_ready(pod: Any) -> bool:
    """A pod is ready when it is ``Running`` and its ``Ready`` condition is ``"True"``."""
    status = getattr(pod, "status", None)
    if getattr(status, "phase", None) != PHASE_RUNNING:
        return False
    for condition in getattr(status, "conditions", None) or []:
        if getattr(condition, "type", None) == "Ready":
            return getattr(condition, "status", None) == "True"
    return False


def units_from_pod_list(pod_list: Any) -> list[WorkloadUnit]:
    items = getattr(pod_list, "items", None) or []
    return [WorkloadUnit.from_pod(pod) for pod in items]


def select_candidates(
    units: Iterable[WorkloadUnit],
    config_map_name: str,
    policy: EffectivePolicy,
    logger: logging.Logger | None = None,
) -> list[WorkloadUnit]:
    """Return the units eligible for restart after *config_map_name* changed.

    A unit is eligible iff it references the ConfigMap, is not in a terminal
    phase, is not already being deleted, and is not excluded by *policy*.
    Input order is preserved.
    """
    log = logger or LOGGER
    candidates: list[WorkloadUnit] = []
    for unit in units:
        if unit.phase in TERMINAL_PHASES or unit.deleting:
            continue
        if not unit.uses(config_map_name):
            continue
        if is_excluded(unit, policy):
            log.debug("Pod %s excluded by policy", unit.key)
            continue
        candidates.append(unit)
    return candidates
