"""End-to-end rollout scenarios against the in-memory cluster."""

from __future__ import annotations

import asyncio

import pytest

from conftest import DIGEST_A, DIGEST_B, DIGEST_C, seeded, settle
from rolloutd.kube_types import RolloutStatus


def _transitions(controller, workload_id):
    return [(e.from_status, e.to_status) for e in controller.history.history(workload_id)]


@pytest.mark.asyncio()
async def test_four_replicas_roll_out_in_four_single_replica_batches(controller, cluster) -> None:
    await seeded(controller, cluster, "web", 4, DIGEST_A)

    assert await controller.set_desired("web", DIGEST_B) is True
    await settle(controller, "web")

    workload = controller.get("web")
    assert workload.status is RolloutStatus.HEALTHY
    assert workload.current_digest == DIGEST_B
    assert workload.last_healthy_digest == DIGEST_B
    assert sorted(r.digest for r in cluster.live("web")) == [DIGEST_B] * 4

    actions = [(m.action, m.digest) for m in cluster.history if m.workload_id == "web"]
    assert actions == [("terminate", DIGEST_A), ("create", DIGEST_B)] * 4

    rolling = [e for e in controller.history.history("web") if e.to_status is RolloutStatus.ROLLING_OUT]
    assert rolling[-1].from_digest == DIGEST_A
    assert rolling[-1].to_digest == DIGEST_B


@pytest.mark.asyncio()
async def test_ready_count_never_drops_below_availability_floor(controller, cluster) -> None:
    cluster.set_behaviour(DIGEST_B, ready_after=2)
    await seeded(controller, cluster, "web", 8, DIGEST_A)

    await controller.set_desired("web", DIGEST_B)
    await settle(controller, "web")

    # 8 replicas at 25% -> at most 2 unavailable
    assert controller.get("web").current_digest == DIGEST_B
    assert cluster.ready_counts["web"]
    assert min(cluster.ready_counts["web"]) >= 8 - 2


@pytest.mark.asyncio()
async def test_batch_timeout_rolls_back_to_last_healthy_digest(controller, cluster) -> None:
    cluster.set_behaviour(DIGEST_B, healthy_instances=1)
    await seeded(controller, cluster, "web", 4, DIGEST_A)

    await controller.set_desired("web", DIGEST_B)
    await settle(controller, "web")

    workload = controller.get("web")
    assert workload.status is RolloutStatus.ROLLED_BACK
    assert workload.desired_digest == DIGEST_A
    assert workload.current_digest == DIGEST_A
    assert sorted(r.digest for r in cluster.live("web")) == [DIGEST_A] * 4
    assert min(cluster.ready_counts["web"]) >= 3

    transitions = _transitions(controller, "web")
    assert (RolloutStatus.ROLLING_OUT, RolloutStatus.FAILING) in transitions
    assert transitions[-1] == (RolloutStatus.ROLLING_OUT, RolloutStatus.ROLLED_BACK)
    failing = next(e for e in controller.history.history("web") if e.to_status is RolloutStatus.FAILING)
    assert "batch 2/4" in failing.message


@pytest.mark.asyncio()
async def test_current_digest_does_not_move_during_rollout(controller, cluster) -> None:
    cluster.set_behaviour(DIGEST_B, ready_after=20)
    await seeded(controller, cluster, "web", 4, DIGEST_A)

    await controller.set_desired("web", DIGEST_B)
    done = asyncio.create_task(settle(controller, "web"))
    seen = set()
    while not done.done():
        workload = controller.get("web")
        seen.add((workload.status, workload.current_digest))
        await asyncio.sleep(0.001)
    await done

    assert (RolloutStatus.ROLLING_OUT, DIGEST_A) in seen
    assert {digest for status, digest in seen if status is not RolloutStatus.HEALTHY} == {DIGEST_A}
    assert controller.get("web").current_digest == DIGEST_B


@pytest.mark.asyncio()
async def test_newer_desired_digest_supersedes_running_rollout(controller, cluster) -> None:
    cluster.set_behaviour(DIGEST_B, ready_after=10_000)
    await seeded(controller, cluster, "web", 4, DIGEST_A)

    await controller.set_desired("web", DIGEST_B)
    while not cluster.created("web"):
        await asyncio.sleep(0.001)
    await controller.set_desired("web", DIGEST_C)
    await settle(controller, "web")

    workload = controller.get("web")
    assert workload.status is RolloutStatus.HEALTHY
    assert workload.current_digest == DIGEST_C
    assert sorted(r.digest for r in cluster.live("web")) == [DIGEST_C] * 4
    assert all(e.to_digest != DIGEST_B for e in controller.history.history("web")
               if e.to_status is RolloutStatus.HEALTHY)

    # the half-started B replica is the first thing the C plan removes
    after_c = [m for m in cluster.history if m.workload_id == "web"][2:]
    assert (after_c[0].action, after_c[0].digest) == ("terminate", DIGEST_B)


@pytest.mark.asyncio()
async def test_zero_replicas_is_immediately_healthy(controller, cluster) -> None:
    await controller.register_workload("batch", 0)
    await controller.set_desired("batch", DIGEST_B)
    await settle(controller, "batch")

    workload = controller.get("batch")
    assert workload.status is RolloutStatus.HEALTHY
    assert workload.current_digest == DIGEST_B
    assert cluster.created("batch") == []
    assert _transitions(controller, "batch")[-2:] == [
        (RolloutStatus.IDLE, RolloutStatus.PLANNING),
        (RolloutStatus.PLANNING, RolloutStatus.HEALTHY),
    ]


@pytest.mark.asyncio()
async def test_same_digest_twice_starts_no_new_rollout(controller, cluster) -> None:
    await controller.register_workload("web", 2)
    await settle(controller, "web")
    assert controller.get("web").status is RolloutStatus.IDLE

    assert await controller.set_desired("web", DIGEST_A) is True
    await settle(controller, "web")
    created = len(cluster.created("web"))
    events = len(controller.history.history("web"))

    assert await controller.set_desired("web", DIGEST_A) is False
    await settle(controller, "web")

    assert len(cluster.created("web")) == created == 2
    assert len(controller.history.history("web")) == events


@pytest.mark.asyncio()
async def test_first_rollout_failure_marks_workload_failed(controller, cluster) -> None:
    cluster.set_behaviour(DIGEST_B, never_ready=True)
    await controller.register_workload("web", 2, digest=DIGEST_B)
    await settle(controller, "web")

    workload = controller.get("web")
    assert workload.status is RolloutStatus.FAILED
    assert workload.current_digest is None
    assert workload.desired_digest == DIGEST_B
    failed = controller.history.history("web")[-1]
    assert failed.to_status is RolloutStatus.FAILED
    assert "no known-good digest" in failed.message


@pytest.mark.asyncio()
async def test_failed_rollback_marks_workload_failed(controller, cluster) -> None:
    cluster.set_behaviour(DIGEST_B, never_ready=True)
    await seeded(controller, cluster, "web", 2, DIGEST_A)
    cluster.set_behaviour(DIGEST_A, never_ready=True)

    await controller.set_desired("web", DIGEST_B)
    await settle(controller, "web")

    assert controller.get("web").status is RolloutStatus.FAILED
    assert "rollback to" in controller.history.history("web")[-1].message


@pytest.mark.asyncio()
async def test_replica_crash_during_batch_triggers_rollback(controller, cluster) -> None:
    cluster.set_behaviour(DIGEST_B, die_after=1)
    await seeded(controller, cluster, "web", 2, DIGEST_A)

    await controller.set_desired("web", DIGEST_B)
    await settle(controller, "web")

    workload = controller.get("web")
    assert workload.status is RolloutStatus.ROLLED_BACK
    assert workload.current_digest == DIGEST_A


@pytest.mark.asyncio()
async def test_scaling_up_and_down_keeps_digest(controller, cluster) -> None:
    await seeded(controller, cluster, "web", 2, DIGEST_A)

    await controller.scale("web", 5)
    await settle(controller, "web")
    assert sorted(r.digest for r in cluster.live("web")) == [DIGEST_A] * 5

    await controller.scale("web", 1)
    await settle(controller, "web")
    assert len(cluster.live("web")) == 1
    assert controller.get("web").status is RolloutStatus.HEALTHY


@pytest.mark.asyncio()
async def test_workloads_roll_out_independently(controller, cluster) -> None:
    cluster.set_behaviour(DIGEST_B, never_ready=True)
    await seeded(controller, cluster, "slow", 2, DIGEST_A)
    await seeded(controller, cluster, "fast", 2, DIGEST_A)

    await controller.set_desired("slow", DIGEST_B)
    await controller.set_desired("fast", DIGEST_C)
    await settle(controller, "fast", timeout=0.25)

    assert controller.get("fast").current_digest == DIGEST_C
    await settle(controller, "slow")
    assert controller.get("slow").status is RolloutStatus.ROLLED_BACK


@pytest.mark.asyncio()
async def test_replica_already_on_target_is_confirmed_before_converging(controller, cluster) -> None:
    cluster.set_behaviour(DIGEST_B, die_after=1)
    leftover = await cluster.create_replica("web", DIGEST_B)
    assert await cluster.probe(leftover.replica_id) is True

    await controller.register_workload("web", 1, digest=DIGEST_B)
    await settle(controller, "web")

    workload = controller.get("web")
    assert workload.status is RolloutStatus.FAILED
    assert workload.current_digest is None
    failing = next(e for e in controller.history.history("web") if e.to_status is RolloutStatus.FAILING)
    assert "replicas kept at" in failing.message


@pytest.mark.asyncio()
async def test_kept_replica_needs_consecutive_successes(controller, cluster) -> None:
    leftover = await cluster.create_replica("web", DIGEST_B)
    await cluster.probe(leftover.replica_id)

    await controller.register_workload("web", 1, digest=DIGEST_B)
    await settle(controller, "web")

    workload = controller.get("web")
    assert workload.status is RolloutStatus.HEALTHY
    assert workload.current_digest == DIGEST_B
    assert [r.replica_id for r in cluster.live("web")] == [leftover.replica_id]
    assert controller.engine.prober.confirmed(leftover.replica_id)
