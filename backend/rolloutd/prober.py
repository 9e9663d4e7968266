"""
Health prober: turns raw readiness probes into debounced replica health.
"""
import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from .errors import HealthTimeoutError, SupersededError, TransientError
from .kube_types import HealthState, Replica
from .store import PlanToken

logger = logging.getLogger(__name__)


class _Counter:
    __slots__ = ("successes", "failures", "state")

    def __init__(self):
        self.successes = 0
        self.failures = 0
        self.state = HealthState.STARTING


class HealthProber:
    """
    Polls the cluster backend for replica readiness.

    A replica becomes Ready after ``success_threshold`` consecutive successful
    probes and drops to Unready after ``failure_threshold`` consecutive failures,
    whatever it was before. The prober owns this state: the readiness a cluster
    backend reports when listing replicas is not trusted until confirmed here.
    """

    def __init__(self, cluster, success_threshold: int = 3, failure_threshold: int = 3,
                 interval: float = 2.0):
        self.cluster = cluster
        self.success_threshold = success_threshold
        self.failure_threshold = failure_threshold
        self.interval = interval
        self._counters: Dict[str, _Counter] = {}

    async def observe(self, replica: Replica) -> HealthState:
        if replica.health is HealthState.TERMINATED:
            return replica.health
        try:
            ok = await self.cluster.probe(replica.replica_id)
        except TransientError as e:
            logger.debug(f"Probe of {replica.replica_id} failed transiently: {e}")
            ok = False

        if ok is None:
            replica.health = HealthState.TERMINATED
            self.forget(replica.replica_id)
            return replica.health

        counter = self._counters.setdefault(replica.replica_id, _Counter())
        if ok:
            counter.successes += 1
            counter.failures = 0
            if counter.state is not HealthState.READY and counter.successes >= self.success_threshold:
                counter.state = HealthState.READY
        else:
            counter.failures += 1
            counter.successes = 0
            if counter.state is not HealthState.UNREADY and counter.failures >= self.failure_threshold:
                counter.state = HealthState.UNREADY
        replica.health = counter.state
        return replica.health

    def confirmed(self, replica_id: str) -> bool:
        """True once the replica has been observed Ready and has not dropped since."""
        counter = self._counters.get(replica_id)
        return counter is not None and counter.state is HealthState.READY

    def forget(self, replica_id: str) -> None:
        self._counters.pop(replica_id, None)

    async def _until_ready(self, replica: Replica, pool: asyncio.Semaphore) -> None:
        while True:
            async with pool:
                state = await self.observe(replica)
            if state is HealthState.READY:
                return
            if state is HealthState.TERMINATED:
                raise HealthTimeoutError(f"replica {replica.replica_id} terminated before becoming Ready",
                                         [replica.replica_id])
            await asyncio.sleep(self.interval)

    async def wait_ready(self, replicas: Iterable[Replica], timeout: float,
                         token: Optional[PlanToken] = None, concurrency: Optional[int] = None) -> None:
        """
        Wait until every replica is Ready.

        Args:
            replicas: Replicas of one batch
            timeout: Deadline in seconds for the whole batch
            token: Plan token; the wait is abandoned as soon as it goes stale
            concurrency: Parallel probes, defaults to the number of replicas

        Raises:
            HealthTimeoutError: deadline passed or a replica terminated
            SupersededError: a newer desired state arrived
        """
        replicas = list(replicas)
        if not replicas:
            return
        if token is not None:
            token.check()

        pool = asyncio.Semaphore(concurrency or len(replicas))
        tasks = [asyncio.create_task(self._until_ready(r, pool)) for r in replicas]
        all_ready = asyncio.ensure_future(asyncio.gather(*tasks))
        waiters = {all_ready}
        stale = None
        if token is not None:
            stale = asyncio.ensure_future(token.wait())
            waiters.add(stale)

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            if all_ready in done:
                all_ready.result()
                return
            if stale is not None and stale in done:
                raise SupersededError(token.workload_id, token.generation)
            pending = [r.replica_id for r in replicas if r.health is not HealthState.READY]
            raise HealthTimeoutError(f"{len(pending)} replica(s) not Ready after {timeout}s", pending)
        finally:
            await _abandon(tasks + [all_ready] + ([stale] if stale is not None else []))


async def _abandon(futures: List[asyncio.Future]) -> None:
    for future in futures:
        if not future.done():
            future.cancel()
    await asyncio.gather(*futures, return_exceptions=True)
