"""
Rollout engine: converges a workload's replicas onto its desired digest in
health-gated batches without dropping below the availability floor.
"""
import logging
import math
import uuid
from typing import List, Optional, Sequence

from .config import RolloutPolicy, parse_max_unavailable
from .errors import HealthTimeoutError
from .events import EventSink, LoggingEventSink, RolloutEvent
from .kube_types import HealthState, Replica, RolloutPlan, RolloutStatus, RolloutStep, Workload
from .prober import HealthProber
from .store import DesiredStateStore, PlanToken

logger = logging.getLogger(__name__)


def compute_max_unavailable(replicas: int, spec) -> int:
    """
    Number of replicas allowed to be non-Ready at once.

    Percentages round down; the result is clamped to [1, replicas]. A workload
    with no replicas has nothing to make unavailable.
    """
    if replicas <= 0:
        return 0
    parsed = parse_max_unavailable(spec)
    if isinstance(parsed, float):
        value = math.floor(replicas * parsed + 1e-9)
    else:
        value = parsed
    return max(1, min(value, replicas))


def _replacement_order(workload: Workload, target: Optional[str]):
    known = {workload.current_digest, target}

    def key(replica: Replica):
        disposable = replica.digest not in known
        created = replica.created_at.timestamp() if replica.created_at else 0.0
        return (0 if disposable else 1, created, replica.replica_id)
    return key


def plan_rollout(workload: Workload, observed: Sequence[Replica], target: Optional[str],
                 policy: RolloutPolicy, generation: int = 0, plan_id: Optional[str] = None) -> RolloutPlan:
    """
    Split the replacement of ``observed`` into batches.

    Replicas already Ready on ``target`` are kept and listed in ``keep``; the
    engine still confirms them with the prober before converging. Non-Ready
    replicas (including leftovers of a superseded plan) go in the first batch
    since removing them costs no availability; Ready replicas are then replaced at most
    ``batch_size`` at a time, disposable digests first, oldest first. Replicas
    beyond the replica count are removed in a final terminate-only step.
    """
    count = workload.replicas
    max_unavailable = compute_max_unavailable(count, policy.max_unavailable)
    batch_size = min(max_unavailable, count)

    live = [r for r in observed if r.health is not HealthState.TERMINATED]
    keep = [r for r in live if r.digest == target and r.health is HealthState.READY][:count]
    kept = {r.replica_id for r in keep}
    others = [r for r in live if r.replica_id not in kept]
    non_ready = [r.replica_id for r in others if r.health is not HealthState.READY]
    ready = [r.replica_id for r in sorted((r for r in others if r.health is HealthState.READY),
                                          key=_replacement_order(workload, target))]

    steps: List[RolloutStep] = []
    need = count - len(keep)
    while need > 0:
        size = min(batch_size, need)
        terminate = non_ready if not steps else []
        take = max(0, size - len(terminate))
        terminate = terminate + ready[:take]
        ready = ready[take:]
        steps.append(RolloutStep(index=len(steps), terminate=tuple(terminate), create=size))
        need -= size

    leftover = ready + (non_ready if not steps else [])
    if leftover:
        steps.append(RolloutStep(index=len(steps), terminate=tuple(leftover), create=0))

    return RolloutPlan(
        plan_id=plan_id or uuid.uuid4().hex[:8],
        workload_id=workload.workload_id,
        from_digest=workload.current_digest,
        to_digest=target,
        replicas=count,
        max_unavailable=max_unavailable,
        batch_size=batch_size,
        generation=generation,
        steps=tuple(steps),
        keep=tuple(sorted(kept)),
    )


class RolloutEngine:
    """Drives one workload at a time; the caller guarantees per-workload exclusion."""

    def __init__(self, store: DesiredStateStore, cluster, prober: HealthProber,
                 policy: Optional[RolloutPolicy] = None, events: Optional[EventSink] = None):
        self.store = store
        self.cluster = cluster
        self.prober = prober
        self.policy = policy or RolloutPolicy()
        self.events = events or LoggingEventSink()

    async def transition(self, workload_id: str, status: RolloutStatus, plan: Optional[RolloutPlan] = None,
                         to_digest: Optional[str] = None, message: str = "") -> None:
        """Record a status change and report it to the operator sink."""
        previous = await self.store.update_status(workload_id, status, plan.plan_id if plan else None)
        workload = self.store.get(workload_id)
        await self.events.emit(RolloutEvent(
            workload_id=workload_id,
            from_status=previous,
            to_status=status,
            plan_id=plan.plan_id if plan else workload.plan_id,
            from_digest=plan.from_digest if plan else workload.current_digest,
            to_digest=plan.to_digest if plan else to_digest,
            message=message,
        ))

    async def rollout(self, workload_id: str) -> Workload:
        """Converge a workload onto its current desired digest."""
        token = self.store.token(workload_id)
        workload = self.store.get(workload_id)
        if workload.desired_digest is None:
            logger.info(f"[{workload_id}] no desired digest yet, nothing to roll out")
            return workload
        return await self.converge(workload, workload.desired_digest, token, RolloutStatus.HEALTHY)

    async def converge(self, workload: Workload, target: Optional[str], token: PlanToken,
                       success: RolloutStatus) -> Workload:
        """
        Run one plan towards ``target``.

        Args:
            workload: Snapshot taken under ``token``
            target: Digest to converge on
            token: Generation token; a stale token aborts the plan
            success: Terminal status on success (Healthy, or RolledBack for rollbacks)

        Raises:
            HealthTimeoutError: a batch missed its deadline; the workload is Failing
            SupersededError: a newer desired state arrived
        """
        workload_id = workload.workload_id
        await self.transition(workload_id, RolloutStatus.PLANNING, to_digest=target)
        observed = await self.cluster.list_replicas(workload_id)
        token.check()
        plan = plan_rollout(workload, observed, target, self.policy, generation=token.generation)
        logger.info(f"[{workload_id}] {plan.describe()}")
        unconfirmed = [r for r in observed if r.replica_id in plan.keep and not self.prober.confirmed(r.replica_id)]

        if not unconfirmed and not any(step.create for step in plan.steps):
            for step in plan.steps:
                await self._terminate(step.terminate)
            done = await self.store.mark_converged(workload_id, target, success, token.generation)
            await self._report_converged(workload_id, RolloutStatus.PLANNING, plan, success)
            return done

        await self.transition(workload_id, RolloutStatus.ROLLING_OUT, plan)
        image = f"{workload.repository}@{target}" if workload.repository else None

        if unconfirmed:
            logger.info(f"[{workload_id}] plan {plan.plan_id}: confirming {len(unconfirmed)} "
                        f"replica(s) already at {target}")
            await self._gate(workload_id, plan, unconfirmed, token, f"replicas kept at {target}")

        for step in plan.steps:
            token.check()
            logger.info(f"[{workload_id}] plan {plan.plan_id} batch {step.index + 1}/{plan.batches}: "
                        f"terminating {len(step.terminate)}, creating {step.create} at {target}")
            await self._terminate(step.terminate)
            created = [await self.cluster.create_replica(workload_id, target, image) for _ in range(step.create)]
            await self._gate(workload_id, plan, created, token, f"batch {step.index + 1}/{plan.batches}")

        done = await self.store.mark_converged(workload_id, target, success, token.generation)
        await self._report_converged(workload_id, RolloutStatus.ROLLING_OUT, plan, success)
        return done

    async def _gate(self, workload_id: str, plan: RolloutPlan, replicas: Sequence[Replica], token: PlanToken,
                    label: str) -> None:
        """Wait for ``replicas`` to be Ready; a miss moves the workload to Failing."""
        concurrency = self.policy.probe_concurrency or plan.batch_size
        try:
            await self.prober.wait_ready(replicas, self.policy.batch_timeout, token, concurrency)
        except HealthTimeoutError as e:
            message = f"{label} failed: {e}"
            await self.transition(workload_id, RolloutStatus.FAILING, plan, message=message)
            raise HealthTimeoutError(message, e.pending, plan=plan) from e

    async def _terminate(self, replica_ids: Sequence[str]) -> None:
        for replica_id in replica_ids:
            await self.cluster.terminate_replica(replica_id)
            self.prober.forget(replica_id)

    async def _report_converged(self, workload_id: str, previous: RolloutStatus, plan: RolloutPlan,
                                status: RolloutStatus) -> None:
        await self.events.emit(RolloutEvent(
            workload_id=workload_id,
            from_status=previous,
            to_status=status,
            plan_id=plan.plan_id,
            from_digest=plan.from_digest,
            to_digest=plan.to_digest,
            message=f"{plan.replicas} replicas Ready",
        ))
