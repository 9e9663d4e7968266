"""
Cluster backends for the rollout engine.

The engine only talks to the ``ClusterBackend`` protocol. ``KubeClusterAdapter``
puts the blocking Kubernetes client behind it; ``InMemoryCluster`` is a
deterministic substrate for local runs and tests.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from .errors import ConfigurationError, TransientError
from .kube_client import KubeClient
from .kube_types import HealthState, Replica, ReplicaSummary

logger = logging.getLogger(__name__)


class ClusterBackend(Protocol):
    async def list_replicas(self, workload_id: str) -> List[Replica]: ...

    async def create_replica(self, workload_id: str, digest: str, image: Optional[str] = None) -> Replica: ...

    async def terminate_replica(self, replica_id: str) -> None: ...

    async def probe(self, replica_id: str) -> Optional[bool]: ...

    async def summary(self, workload_id: str, desired_replicas: int, digest: Optional[str]) -> ReplicaSummary: ...


class KubeClusterAdapter:
    """Async adapter over KubeClient. Mutations are retried on TransientError."""

    def __init__(self, kube_client: KubeClient, attempts: int = 3):
        self.kube_client = kube_client
        self.attempts = attempts

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_random_exponential(multiplier=0.5, max=4),
            retry=retry_if_exception_type(TransientError),
            reraise=True,
        )

    async def list_replicas(self, workload_id: str) -> List[Replica]:
        async for attempt in self._retrying():
            with attempt:
                return await asyncio.to_thread(self.kube_client.list_replicas, workload_id)

    async def create_replica(self, workload_id: str, digest: str, image: Optional[str] = None) -> Replica:
        if not image:
            raise ConfigurationError(f"workload {workload_id} has no repository to build an image reference")
        async for attempt in self._retrying():
            with attempt:
                return await asyncio.to_thread(self.kube_client.create_replica, workload_id, digest, image)

    async def terminate_replica(self, replica_id: str) -> None:
        async for attempt in self._retrying():
            with attempt:
                await asyncio.to_thread(self.kube_client.terminate_replica, replica_id)

    async def probe(self, replica_id: str) -> Optional[bool]:
        return await asyncio.to_thread(self.kube_client.probe, replica_id)

    async def summary(self, workload_id: str, desired_replicas: int, digest: Optional[str]) -> ReplicaSummary:
        return await asyncio.to_thread(self.kube_client.rollout_status, workload_id, desired_replicas, digest)


@dataclass
class DigestBehaviour:
    """How replicas of one digest answer probes."""
    ready_after: int = 0
    never_ready: bool = False
    die_after: Optional[int] = None
    healthy_instances: Optional[int] = None


@dataclass
class _SimReplica:
    replica: Replica
    behaviour: DigestBehaviour
    probes: int = 0
    ready: bool = False
    ordinal: int = 0


@dataclass
class MutationRecord:
    action: str
    replica_id: str
    workload_id: str
    digest: str


class InMemoryCluster:
    """
    In-process cluster substrate.

    ``ready_counts`` records, per workload, how many live replicas were passing
    probes after every mutation, which lets callers check availability bounds.
    """

    def __init__(self, default: Optional[DigestBehaviour] = None):
        self.default = default or DigestBehaviour()
        self.behaviours: Dict[str, DigestBehaviour] = {}
        self._replicas: Dict[str, _SimReplica] = {}
        self.history: List[MutationRecord] = []
        self.ready_counts: Dict[str, List[int]] = {}
        self._ordinals: Dict[str, int] = {}

    def set_behaviour(self, digest: str, ready_after: int = 0, never_ready: bool = False,
                      die_after: Optional[int] = None, healthy_instances: Optional[int] = None) -> None:
        """Only the first ``healthy_instances`` replicas of ``digest`` ever pass probes, when set."""
        self.behaviours[digest] = DigestBehaviour(ready_after, never_ready, die_after, healthy_instances)

    def seed(self, workload_id: str, digest: str, count: int) -> List[Replica]:
        """Add replicas that are already serving, as if deployed earlier."""
        seeded = []
        for _ in range(count):
            sim = self._new(workload_id, digest)
            sim.ready = True
            sim.replica.health = HealthState.READY
            seeded.append(sim.replica)
        return seeded

    def _new(self, workload_id: str, digest: str) -> _SimReplica:
        replica = Replica(replica_id=f"{workload_id}-{uuid.uuid4().hex[:8]}", workload_id=workload_id, digest=digest)
        self._ordinals[digest] = self._ordinals.get(digest, 0) + 1
        sim = _SimReplica(replica=replica, behaviour=self.behaviours.get(digest, self.default),
                          ordinal=self._ordinals[digest])
        self._replicas[replica.replica_id] = sim
        return sim

    def _record(self, action: str, replica: Replica) -> None:
        self.history.append(MutationRecord(action, replica.replica_id, replica.workload_id, replica.digest))
        self.ready_counts.setdefault(replica.workload_id, []).append(self.ready_count(replica.workload_id))

    def live(self, workload_id: str) -> List[Replica]:
        return [s.replica for s in self._replicas.values() if s.replica.workload_id == workload_id]

    def ready_count(self, workload_id: str) -> int:
        return sum(1 for s in self._replicas.values() if s.replica.workload_id == workload_id and s.ready)

    def created(self, workload_id: Optional[str] = None) -> List[MutationRecord]:
        return [m for m in self.history if m.action == "create"
                and (workload_id is None or m.workload_id == workload_id)]

    async def list_replicas(self, workload_id: str) -> List[Replica]:
        return [Replica(replica_id=s.replica.replica_id, workload_id=workload_id, digest=s.replica.digest,
                        health=HealthState.READY if s.ready else HealthState.STARTING,
                        created_at=s.replica.created_at)
                for s in self._replicas.values() if s.replica.workload_id == workload_id]

    async def create_replica(self, workload_id: str, digest: str, image: Optional[str] = None) -> Replica:
        sim = self._new(workload_id, digest)
        self._record("create", sim.replica)
        return Replica(replica_id=sim.replica.replica_id, workload_id=workload_id, digest=digest)

    async def terminate_replica(self, replica_id: str) -> None:
        sim = self._replicas.pop(replica_id, None)
        if sim is None:
            return
        self._record("terminate", sim.replica)

    async def probe(self, replica_id: str) -> Optional[bool]:
        sim = self._replicas.get(replica_id)
        if sim is None:
            return None
        sim.probes += 1
        behaviour = sim.behaviour
        if behaviour.die_after is not None and sim.probes > behaviour.die_after:
            del self._replicas[replica_id]
            self._record("crash", sim.replica)
            return None
        doomed = behaviour.never_ready or (
            behaviour.healthy_instances is not None and sim.ordinal > behaviour.healthy_instances)
        sim.ready = not doomed and sim.probes > behaviour.ready_after
        return sim.ready

    async def summary(self, workload_id: str, desired_replicas: int, digest: Optional[str]) -> ReplicaSummary:
        replicas = await self.list_replicas(workload_id)
        return ReplicaSummary(
            workload_id=workload_id,
            desired_replicas=desired_replicas,
            ready_replicas=sum(1 for r in replicas if r.health is HealthState.READY),
            updated_replicas=sum(1 for r in replicas if digest and r.digest == digest),
            digests=sorted({r.digest for r in replicas}),
        )


def build_cluster(settings) -> ClusterBackend:
    """Pick the backend named by ``CLUSTER_BACKEND``."""
    if settings.CLUSTER_BACKEND == "memory":
        logger.info("Using in-memory cluster backend")
        return InMemoryCluster()
    if settings.CLUSTER_BACKEND == "kubernetes":
        kube_client = KubeClient(namespace=settings.K8S_NAMESPACE, in_cluster=settings.K8S_IN_CLUSTER,
                                 context=settings.K8S_CONTEXT)
        return KubeClusterAdapter(kube_client)
    raise ConfigurationError(f"unknown cluster backend: {settings.CLUSTER_BACKEND}")
