from __future__ import annotations

import enum
import logging
import math
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from kubernetes.client import ApiException, CoreV1Api

from controller.src.disruption import DisruptionBudget, can_remove
from controller.src.kube import delete_pod
from controller.src.metrics import METRICS
from controller.src.readiness import ReadinessOracle
from controller.src.workload import WorkloadUnit

LOGGER = logging.getLogger(__name__)


class CampaignPhase(enum.Enum):
    IDLE = "idle"
    BATCH_ONE_ADMISSION = "batch_one_admission"
    BATCH_ONE_REMOVAL = "batch_one_removal"
    WAITING = "waiting"
    POLLING = "polling"
    BATCH_TWO_REMOVAL = "batch_two_removal"
    DONE = "done"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


class ReplacementTimeoutError(RuntimeError):
    """Batch-one replacements did not become ready before the deadline."""


class CampaignCancelled(Exception):
    """The shutdown event fired while a campaign was in progress."""


@dataclass(frozen=True)
class CampaignResult:
    """Immutable record of one restart campaign.

    ``phase`` is always terminal. ``ABORTED`` means the health gate timed out
    and the second batch was left untouched; the next ConfigMap change is the
    only retry.
    """

    source: str
    phase: CampaignPhase
    eligible: int
    first_batch: int
    second_batch: int
    removed: tuple[str, ...] = ()
    denied: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    unsafe_mode: bool = False
    error: str | None = None
    transitions: tuple[CampaignPhase, ...] = ()

    @property
    def aborted(self) -> bool:
        return self.phase is CampaignPhase.ABORTED


@dataclass
class RestartCampaign:
    """Mutable state of a single campaign; never shared between threads."""

    source: str
    candidates: list[WorkloadUnit]
    unsafe_mode: bool = False
    first_batch: list[WorkloadUnit] = field(default_factory=list)
    second_batch: list[WorkloadUnit] = field(default_factory=list)
    removed_first: list[WorkloadUnit] = field(default_factory=list)
    removed: list[WorkloadUnit] = field(default_factory=list)
    denied: list[WorkloadUnit] = field(default_factory=list)
    failed: list[WorkloadUnit] = field(default_factory=list)
    phase: CampaignPhase = CampaignPhase.IDLE
    transitions: list[CampaignPhase] = field(default_factory=lambda: [CampaignPhase.IDLE])
    error: str | None = None

    def advance(self, phase: CampaignPhase) -> None:
        self.phase = phase
        self.transitions.append(phase)

    def result(self) -> CampaignResult:
        return CampaignResult(
            source=self.source,
            phase=self.phase,
            eligible=len(self.candidates),
            first_batch=len(self.first_batch),
            second_batch=len(self.second_batch),
            removed=tuple(unit.key for unit in self.removed),
            denied=tuple(unit.key for unit in self.denied),
            failed=tuple(unit.key for unit in self.failed),
            unsafe_mode=self.unsafe_mode,
            error=self.error,
            transitions=tuple(self.transitions),
        )


def partition_batches(
    units: Sequence[WorkloadUnit], by_owner: bool = False
) -> tuple[list[WorkloadUnit], list[WorkloadUnit]]:
    """Split *units* into a first batch of ``ceil(n/2)`` and the remainder.

    With ``by_owner`` each controlling owner's pods are halved on their own
    (pods without an owner form one group), so every Deployment or StatefulSet
    keeps at least half its pods through batch one. Order within the input is
    preserved in both batches.
    """
    if not by_owner:
        midpoint = math.ceil(len(units) / 2)
        return list(units[:midpoint]), list(units[midpoint:])

    groups: dict[str, list[WorkloadUnit]] = {}
    for unit in units:
        groups.setdefault(unit.owner.uid if unit.owner else "", []).append(unit)

    first_ids: set[int] = set()
    for members in groups.values():
        for unit in members[: math.ceil(len(members) / 2)]:
            first_ids.add(id(unit))

    first = [unit for unit in units if id(unit) in first_ids]
    second = [unit for unit in units if id(unit) not in first_ids]
    return first, second


class BatchScheduler:
    """Runs the two-phase restart of pods that consume a changed ConfigMap.

    Safe mode:
        1. Delete the first ``ceil(n/2)`` candidates that their
           PodDisruptionBudgets admit.
        2. If nothing was deleted, stop: there is nothing to health-gate on.
        3. If a second batch exists, wait ``settle_seconds`` so owners notice
           the deletions, then poll the :class:`ReadinessOracle` every
           ``poll_interval_seconds`` for up to ``ready_timeout_seconds``.
        4. On timeout the campaign is aborted and the second batch is left
           alone. Otherwise the second batch is deleted with a fresh,
           independent admission check per pod.

    Unsafe mode deletes every candidate in one pass with no settle or health
    gate. Budget admission still applies to each pod.

    All waits go through ``stop_event.wait`` so a shutdown interrupts them.
    Budgets are a snapshot taken once per campaign and are not re-read
    between deletions.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        oracle: ReadinessOracle,
        settle_seconds: float = 5.0,
        poll_interval_seconds: float = 2.0,
        ready_timeout_seconds: float = 60.0,
        *,
        batch_by_owner: bool = False,
        request_timeout: int | None = None,
        logger: logging.Logger | None = None,
        monotonic_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self.core_api = core_api
        self.oracle = oracle
        self.settle_seconds = settle_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.ready_timeout_seconds = ready_timeout_seconds
        self.batch_by_owner = batch_by_owner
        self.request_timeout = request_timeout
        self.logger = logger or LOGGER
        self.monotonic_fn = monotonic_fn

    def run(
        self,
        source: str,
        candidates: Sequence[WorkloadUnit],
        budgets: Sequence[DisruptionBudget] = (),
        *,
        unsafe_mode: bool = False,
        stop_event: threading.Event | None = None,
    ) -> CampaignResult:
        stop = stop_event or threading.Event()
        campaign = RestartCampaign(source=source, candidates=list(candidates), unsafe_mode=unsafe_mode)

        if unsafe_mode:
            campaign.first_batch = list(campaign.candidates)
        else:
            campaign.first_batch, campaign.second_batch = partition_batches(
                campaign.candidates, by_owner=self.batch_by_owner
            )

        self.logger.info(
            "Starting restart campaign for %s: total=%d firstBatch=%d secondBatch=%d unsafe=%s",
            source,
            len(campaign.candidates),
            len(campaign.first_batch),
            len(campaign.second_batch),
            unsafe_mode,
        )

        try:
            self._run_phases(campaign, budgets, stop)
        except CampaignCancelled:
            self.logger.warning(
                "Restart campaign for %s cancelled during %s", source, campaign.phase.value
            )
            campaign.advance(CampaignPhase.CANCELLED)
        except ReplacementTimeoutError as exc:
            campaign.error = str(exc)
            self.logger.error(
                "Restart campaign for %s aborted: %s; %d pod(s) in the second batch were not restarted",
                source,
                exc,
                len(campaign.second_batch),
            )
            campaign.advance(CampaignPhase.ABORTED)

        return campaign.result()

    def _run_phases(
        self,
        campaign: RestartCampaign,
        budgets: Sequence[DisruptionBudget],
        stop: threading.Event,
    ) -> None:
        campaign.advance(CampaignPhase.BATCH_ONE_ADMISSION)
        admitted = self._admit(campaign, campaign.first_batch, budgets)

        campaign.advance(CampaignPhase.BATCH_ONE_REMOVAL)
        campaign.removed_first = self._remove(campaign, admitted, stop)

        if not campaign.removed_first:
            self.logger.info(
                "No pods were restarted in the first batch for %s; skipping the rest",
                campaign.source,
            )
            campaign.advance(CampaignPhase.DONE)
            return

        if campaign.unsafe_mode or not campaign.second_batch:
            campaign.advance(CampaignPhase.DONE)
            return

        campaign.advance(CampaignPhase.WAITING)
        self.logger.info(
            "Waiting %.1fs before checking first batch replacements for %s",
            self.settle_seconds,
            campaign.source,
        )
        if stop.wait(timeout=self.settle_seconds):
            raise CampaignCancelled

        campaign.advance(CampaignPhase.POLLING)
        self._wait_for_replacements(campaign.removed_first, stop)
        self.logger.info(
            "First batch replacements healthy for %s; restarting second batch", campaign.source
        )

        campaign.advance(CampaignPhase.BATCH_TWO_REMOVAL)
        admitted = self._admit(campaign, campaign.second_batch, budgets)
        self._remove(campaign, admitted, stop)
        campaign.advance(CampaignPhase.DONE)

    def _admit(
        self,
        campaign: RestartCampaign,
        batch: Sequence[WorkloadUnit],
        budgets: Sequence[DisruptionBudget],
    ) -> list[WorkloadUnit]:
        admitted: list[WorkloadUnit] = []
        for unit in batch:
            if can_remove(unit, budgets, logger=self.logger):
                admitted.append(unit)
                continue
            self.logger.info("Skipping pod %s due to PodDisruptionBudget constraints", unit.key)
            campaign.denied.append(unit)
            METRICS.pods_denied_total.labels(namespace=unit.namespace).inc()
        return admitted

    def _remove(
        self,
        campaign: RestartCampaign,
        admitted: Sequence[WorkloadUnit],
        stop: threading.Event,
    ) -> list[WorkloadUnit]:
        removed: list[WorkloadUnit] = []
        for unit in admitted:
            if stop.is_set():
                raise CampaignCancelled
            try:
                delete_pod(self.core_api, unit.namespace, unit.name, self.request_timeout)
            except ApiException as exc:
                if exc.status == 404:
                    # Already gone; its owner is replacing it either way.
                    self.logger.info("Pod %s was already deleted", unit.key)
                    removed.append(unit)
                    campaign.removed.append(unit)
                    continue
                self.logger.exception("Failed to delete pod %s", unit.key)
                campaign.failed.append(unit)
                METRICS.pod_delete_errors_total.labels(namespace=unit.namespace).inc()
                continue
            self.logger.info("Restarted pod %s", unit.key)
            METRICS.pods_deleted_total.labels(namespace=unit.namespace).inc()
            removed.append(unit)
            campaign.removed.append(unit)
        return removed

    def _wait_for_replacements(
        self, removed: Sequence[WorkloadUnit], stop: threading.Event
    ) -> None:
        """Poll until every removed pod's owner has a ready pod again.

        Raises :class:`ReplacementTimeoutError` once ``ready_timeout_seconds``
        pass without success and :class:`CampaignCancelled` on shutdown.
        """
        deadline = self.monotonic_fn() + self.ready_timeout_seconds
        while True:
            if self.oracle.replacements_healthy(removed):
                return
            remaining = deadline - self.monotonic_fn()
            if remaining <= 0:
                raise ReplacementTimeoutError(
                    f"timed out after {self.ready_timeout_seconds:g}s waiting for "
                    f"{len(removed)} replaced pod(s) to become ready"
                )
            if stop.wait(timeout=min(self.poll_interval_seconds, remaining)):
                raise CampaignCancelled
