from __future__ import annotations

import logging
from collections.abc import Iterable

from kubernetes.client import ApiException, CoreV1Api

from controller.src.kube import list_pods
from controller.src.workload import WorkloadUnit, units_from_pod_list

LOGGER = logging.getLogger(__name__)


def pending_owners(removed: Iterable[WorkloadUnit]) -> set[tuple[str, str]]:
    """Return the distinct ``(namespace, owner uid)`` pairs that need a ready replacement.

    Pods without a controlling owner are not recreated, so they need nothing.
    """
    return {(unit.namespace, unit.owner.uid) for unit in removed if unit.owner is not None}


class ReadinessOracle:
    """Answers whether deleted pods have been replaced by ready pods.

    Satisfaction is tracked per owner, not per pod: one ready, non-terminating
    pod that lists the deleted pod's controlling owner among any of its owner
    references satisfies every deleted pod that shared that owner.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        request_timeout: int | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.request_timeout = request_timeout
        self.logger = logger or LOGGER

    def _ready_owner_uids(self, namespace: str) -> set[str] | None:
        try:
            pod_list = list_pods(self.core_api, namespace, self.request_timeout)
        except ApiException as exc:
            self.logger.info(
                "Failed to list pods in %s while checking replacements (status=%s)",
                namespace,
                exc.status,
            )
            return None
        ready: set[str] = set()
        for unit in units_from_pod_list(pod_list):
            if unit.ready and not unit.deleting:
                ready.update(unit.owner_uids)
        return ready

    def replacements_healthy(self, removed: Iterable[WorkloadUnit]) -> bool:
        owners = pending_owners(removed)
        if not owners:
            return True

        ready_by_namespace: dict[str, set[str] | None] = {}
        healthy = True
        for namespace, owner_uid in sorted(owners):
            if namespace not in ready_by_namespace:
                ready_by_namespace[namespace] = self._ready_owner_uids(namespace)
            ready_uids = ready_by_namespace[namespace]
            if ready_uids is None or owner_uid not in ready_uids:
                self.logger.debug(
                    "Owner %s in %s has no ready replacement yet", owner_uid, namespace
                )
                healthy = False
        return healthy
