from __future__ import annotations

import math
import threading
from collections.abc import Iterable
from typing import Any

import pytest

from controller.src.campaign import BatchScheduler, CampaignPhase, partition_batches
from controller.src.disruption import DisruptionBudget
from controller.src.readiness import ReadinessOracle
from controller.src.workload import WorkloadUnit
from controller.tests.fakes import FakeCoreApi, make_pdb, make_pod


def _setup(
    n: int, labels: list[dict[str, str]] | None = None, **core_kwargs: Any
) -> tuple[FakeCoreApi, list[WorkloadUnit]]:
    pods = [
        make_pod(f"web-{i}", owner_uid=f"rs-{i}", labels=labels[i] if labels else None)
        for i in range(n)
    ]
    core = FakeCoreApi(pods=pods, **core_kwargs)
    return core, [WorkloadUnit.from_pod(pod) for pod in pods]


def _scheduler(core: FakeCoreApi, oracle: Any = None, **kwargs: Any) -> BatchScheduler:
    kwargs.setdefault("settle_seconds", 0)
    kwargs.setdefault("poll_interval_seconds", 0)
    kwargs.setdefault("ready_timeout_seconds", 0)
    return BatchScheduler(core_api=core, oracle=oracle or ReadinessOracle(core), **kwargs)


class ScriptedOracle:
    def __init__(self, answers: Iterable[bool], on_call: Any = None) -> None:
        self.answers = list(answers)
        self.calls: list[list[str]] = []
        self.on_call = on_call

    def replacements_healthy(self, removed: Iterable[WorkloadUnit]) -> bool:
        self.calls.append([unit.name for unit in removed])
        if self.on_call is not None:
            self.on_call()
        return self.answers.pop(0) if self.answers else False


class SteppingClock:
    def __init__(self, step: float) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        current = self.now
        self.now += self.step
        return current


# ---------------------------------------------------------------------------
# Partitioning
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("n", range(0, 12))
def test_partition_first_batch_is_ceiling_half_and_batches_partition_input(n: int) -> None:
    units = [WorkloadUnit(name=f"p{i}", namespace="default") for i in range(n)]

    first, second = partition_batches(units)

    assert len(first) == math.ceil(n / 2)
    assert first + second == units
    assert not {u.name for u in first} & {u.name for u in second}


def test_per_owner_partition_halves_each_owner() -> None:
    pods = (
        [make_pod(f"a-{i}", owner_uid="rs-a") for i in range(3)]
        + [make_pod("b-0", owner_uid="rs-b")]
        + [make_pod(f"c-{i}", owner_uid="rs-c") for i in range(2)]
        + [make_pod("bare-0", owner_uid=None)]
    )
    units = [WorkloadUnit.from_pod(pod) for pod in pods]

    first, second = partition_batches(units, by_owner=True)

    assert [u.name for u in first] == ["a-0", "a-1", "b-0", "c-0", "bare-0"]
    assert [u.name for u in second] == ["a-2", "c-1"]


# ---------------------------------------------------------------------------
# Safe mode
# ---------------------------------------------------------------------------


def test_five_pods_restart_in_two_batches_when_replacements_become_ready() -> None:
    core, units = _setup(5)

    result = _scheduler(core, ready_timeout_seconds=60).run("default/app-config", units)

    assert result.phase is CampaignPhase.DONE
    assert (result.first_batch, result.second_batch) == (3, 2)
    assert core.deleted == ["web-0", "web-1", "web-2", "web-3", "web-4"]
    assert result.transitions == (
        CampaignPhase.IDLE,
        CampaignPhase.BATCH_ONE_ADMISSION,
        CampaignPhase.BATCH_ONE_REMOVAL,
        CampaignPhase.WAITING,
        CampaignPhase.POLLING,
        CampaignPhase.BATCH_TWO_REMOVAL,
        CampaignPhase.DONE,
    )


def test_second_batch_waits_for_health_gate() -> None:
    core, units = _setup(4)
    oracle = ScriptedOracle([False, False, True])

    result = _scheduler(core, oracle=oracle, ready_timeout_seconds=60).run("cm", units)

    assert result.phase is CampaignPhase.DONE
    assert len(oracle.calls) == 3
    assert oracle.calls[0] == ["web-0", "web-1"]
    assert core.deleted == ["web-0", "web-1", "web-2", "web-3"]


def test_unready_replacements_abort_campaign_and_leave_second_batch() -> None:
    core, units = _setup(5, replacement_ready=False)

    result = _scheduler(core, ready_timeout_seconds=0).run("cm", units)

    assert result.phase is CampaignPhase.ABORTED
    assert result.aborted
    assert result.error is not None and "timed out" in result.error
    assert core.delete_attempts == ["web-0", "web-1", "web-2"]
    assert CampaignPhase.BATCH_TWO_REMOVAL not in result.transitions


def test_polling_stops_at_deadline() -> None:
    core, units = _setup(2)
    oracle = ScriptedOracle([])
    clock = SteppingClock(step=25)

    result = _scheduler(
        core, oracle=oracle, ready_timeout_seconds=60, monotonic_fn=clock
    ).run("cm", units)

    assert result.phase is CampaignPhase.ABORTED
    assert len(oracle.calls) == 3
    assert core.delete_attempts == ["web-0"]


def test_nothing_removed_in_first_batch_skips_second_batch() -> None:
    core, units = _setup(4)
    budgets = [DisruptionBudget.from_pdb(make_pdb(disruptions_allowed=0))]
    oracle = ScriptedOracle([True])

    result = _scheduler(core, oracle=oracle).run("cm", units, budgets)

    assert result.phase is CampaignPhase.DONE
    assert core.delete_attempts == []
    assert oracle.calls == []
    assert result.denied == ("default/web-0", "default/web-1")


def test_first_batch_delete_failures_skip_second_batch() -> None:
    core, units = _setup(4, fail_deletes={"web-0", "web-1"})

    result = _scheduler(core).run("cm", units)

    assert result.phase is CampaignPhase.DONE
    assert core.delete_attempts == ["web-0", "web-1"]
    assert result.failed == ("default/web-0", "default/web-1")


def test_single_delete_failure_does_not_stop_the_batch() -> None:
    core, units = _setup(6, fail_deletes={"web-1"})

    result = _scheduler(core, ready_timeout_seconds=60).run("cm", units)

    assert result.phase is CampaignPhase.DONE
    assert core.deleted == ["web-0", "web-2", "web-3", "web-4", "web-5"]
    assert result.failed == ("default/web-1",)


def test_only_actually_removed_pods_are_health_checked() -> None:
    labels = [{"app": "web", "tier": "guarded"}, {"app": "web"}, {"app": "web"}, {"app": "web"}]
    core, units = _setup(4, labels=labels)
    guarded = make_pdb(match_labels={"tier": "guarded"}, disruptions_allowed=0)
    oracle = ScriptedOracle([True])

    result = _scheduler(core, oracle=oracle).run(
        "cm", units, [DisruptionBudget.from_pdb(guarded)]
    )

    assert oracle.calls == [["web-1"]]
    assert result.phase is CampaignPhase.DONE
    assert core.deleted == ["web-1", "web-2", "web-3"]


def test_second_batch_gets_its_own_admission_check() -> None:
    labels = [{"app": "web"}, {"app": "web"}, {"app": "web", "tier": "b"}, {"app": "web", "tier": "b"}]
    core, units = _setup(4, labels=labels)
    protect_b = make_pdb(match_labels={"tier": "b"}, disruptions_allowed=0)

    result = _scheduler(core, ready_timeout_seconds=60).run(
        "cm", units, [DisruptionBudget.from_pdb(protect_b)]
    )

    assert result.phase is CampaignPhase.DONE
    assert core.deleted == ["web-0", "web-1"]
    assert result.denied == ("default/web-2", "default/web-3")


def test_single_pod_has_no_second_batch_and_no_wait() -> None:
    core, units = _setup(1)
    oracle = ScriptedOracle([])

    result = _scheduler(core, oracle=oracle).run("cm", units)

    assert result.phase is CampaignPhase.DONE
    assert core.deleted == ["web-0"]
    assert oracle.calls == []
    assert CampaignPhase.WAITING not in result.transitions


def test_empty_candidate_list_finishes_immediately() -> None:
    core = FakeCoreApi()

    result = _scheduler(core).run("cm", [])

    assert result.phase is CampaignPhase.DONE
    assert result.eligible == 0


def test_already_deleted_pod_counts_as_removed() -> None:
    core, units = _setup(1)
    core.pods.clear()

    result = _scheduler(core).run("cm", units)

    assert result.removed == ("default/web-0",)
    assert result.failed == ()


def test_unowned_pod_needs_no_replacement() -> None:
    pods = [make_pod("bare-0", owner_uid=None), make_pod("bare-1", owner_uid=None)]
    core = FakeCoreApi(pods=pods)

    result = _scheduler(core, ready_timeout_seconds=0).run(
        "cm", [WorkloadUnit.from_pod(pod) for pod in pods]
    )

    assert result.phase is CampaignPhase.DONE
    assert core.deleted == ["bare-0", "bare-1"]
    assert core.pod_list_calls == 0


def test_per_owner_strategy_used_by_scheduler() -> None:
    pods = [make_pod(f"a-{i}", owner_uid="rs-a") for i in range(2)] + [
        make_pod(f"b-{i}", owner_uid="rs-b") for i in range(2)
    ]
    core = FakeCoreApi(pods=pods)
    oracle = ScriptedOracle([True])

    result = _scheduler(core, oracle=oracle, batch_by_owner=True).run(
        "cm", [WorkloadUnit.from_pod(pod) for pod in pods]
    )

    assert oracle.calls == [["a-0", "b-0"]]
    assert result.phase is CampaignPhase.DONE


# ---------------------------------------------------------------------------
# Unsafe mode
# ---------------------------------------------------------------------------


def test_unsafe_mode_removes_everything_in_one_pass() -> None:
    core, units = _setup(5, replacement_ready=False)
    oracle = ScriptedOracle([])

    result = _scheduler(core, oracle=oracle).run("cm", units, unsafe_mode=True)

    assert result.phase is CampaignPhase.DONE
    assert result.unsafe_mode is True
    assert core.deleted == [f"web-{i}" for i in range(5)]
    assert oracle.calls == []
    assert CampaignPhase.POLLING not in result.transitions


def test_unsafe_mode_still_honours_budgets() -> None:
    labels = [{"app": "web"}] * 4 + [{"app": "db"}]
    core, units = _setup(5, labels=labels)
    db_budget = make_pdb(match_labels={"app": "db"}, disruptions_allowed=0)

    result = _scheduler(core).run(
        "cm", units, [DisruptionBudget.from_pdb(db_budget)], unsafe_mode=True
    )

    assert core.deleted == [f"web-{i}" for i in range(4)]
    assert result.denied == ("default/web-4",)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


def test_stop_before_removal_cancels_without_deleting() -> None:
    core, units = _setup(3)
    stop = threading.Event()
    stop.set()

    result = _scheduler(core).run("cm", units, stop_event=stop)

    assert result.phase is CampaignPhase.CANCELLED
    assert core.delete_attempts == []


def test_stop_during_polling_cancels_before_second_batch() -> None:
    core, units = _setup(4)
    stop = threading.Event()
    oracle = ScriptedOracle([False, True], on_call=stop.set)

    result = _scheduler(
        core, oracle=oracle, ready_timeout_seconds=60, poll_interval_seconds=30
    ).run("cm", units, stop_event=stop)

    assert result.phase is CampaignPhase.CANCELLED
    assert core.delete_attempts == ["web-0", "web-1"]
    assert result.removed == ("default/web-0", "default/web-1")
