"""
Desired-state store: the single shared mutable structure of the controller.

Workloads live in shards keyed by a stable hash of their id. Every key has its
own lock, so read/modify/write on one workload never blocks another. Changes to
the desired digest or the replica count bump the workload generation; plan
tokens taken at an older generation go stale immediately.
"""
import asyncio
import logging
import zlib
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .errors import NotFoundError, SupersededError
from .kube_types import RolloutStatus, Workload

logger = logging.getLogger(__name__)


class PlanToken:
    """Generation token handed to a rollout plan."""

    def __init__(self, workload_id: str, generation: int, event: asyncio.Event):
        self.workload_id = workload_id
        self.generation = generation
        self._event = event

    @property
    def stale(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        """Block until a newer generation supersedes this token."""
        await self._event.wait()

    def check(self) -> None:
        if self.stale:
            raise SupersededError(self.workload_id, self.generation)


class _Entry:
    __slots__ = ("workload", "lock", "superseded")

    def __init__(self, workload: Workload):
        self.workload = workload
        self.lock = asyncio.Lock()
        self.superseded = asyncio.Event()


class DesiredStateStore:
    """Sharded per-key store of workload records."""

    def __init__(self, shards: int = 16):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._shards: List[Dict[str, _Entry]] = [{} for _ in range(shards)]

    def _shard(self, workload_id: str) -> Dict[str, _Entry]:
        return self._shards[zlib.crc32(workload_id.encode()) % len(self._shards)]

    def _entry(self, workload_id: str) -> _Entry:
        entry = self._shard(workload_id).get(workload_id)
        if entry is None:
            raise NotFoundError(f"unknown workload: {workload_id}")
        return entry

    @staticmethod
    def _bump(entry: _Entry) -> None:
        entry.workload.generation += 1
        entry.workload.updated_at = datetime.now(timezone.utc)
        entry.superseded.set()
        entry.superseded = asyncio.Event()

    def __contains__(self, workload_id: str) -> bool:
        return workload_id in self._shard(workload_id)

    async def register(self, workload_id: str, replicas: int, repository: Optional[str] = None,
                       tag: Optional[str] = None) -> Workload:
        """Create a workload record, or update the image it tracks if it exists."""
        if replicas < 0:
            raise ValueError("replicas must be >= 0")
        shard = self._shard(workload_id)
        entry = shard.get(workload_id)
        if entry is None:
            shard[workload_id] = _Entry(Workload(workload_id=workload_id, replicas=replicas,
                                                 repository=repository, tag=tag))
            logger.info(f"Registered workload {workload_id} ({replicas} replicas)")
            return shard[workload_id].workload.snapshot()
        async with entry.lock:
            entry.workload.repository = repository or entry.workload.repository
            entry.workload.tag = tag or entry.workload.tag
            if entry.workload.replicas != replicas:
                entry.workload.replicas = replicas
                self._bump(entry)
            return entry.workload.snapshot()

    async def unregister(self, workload_id: str) -> None:
        entry = self._entry(workload_id)
        async with entry.lock:
            entry.superseded.set()
            del self._shard(workload_id)[workload_id]

    def get(self, workload_id: str) -> Workload:
        return self._entry(workload_id).workload.snapshot()

    def list(self) -> List[Workload]:
        workloads = [e.workload.snapshot() for shard in self._shards for e in shard.values()]
        return sorted(workloads, key=lambda w: w.workload_id)

    def find_by_image(self, repository: str, tag: str) -> List[Workload]:
        return [w for w in self.list() if w.repository == repository and w.tag == tag]

    def get_desired(self, workload_id: str) -> Optional[str]:
        return self._entry(workload_id).workload.desired_digest

    def token(self, workload_id: str) -> PlanToken:
        entry = self._entry(workload_id)
        return PlanToken(workload_id, entry.workload.generation, entry.superseded)

    async def set_desired(self, workload_id: str, digest: str) -> bool:
        """
        Record the target digest. Last write wins by arrival order.

        Returns:
            False when the digest is already the desired one
        """
        entry = self._entry(workload_id)
        async with entry.lock:
            if entry.workload.desired_digest == digest:
                return False
            previous = entry.workload.desired_digest
            entry.workload.desired_digest = digest
            self._bump(entry)
            logger.info(f"Desired digest for {workload_id}: {previous} -> {digest} "
                        f"(generation {entry.workload.generation})")
            return True

    async def revert_desired(self, workload_id: str, digest: str, generation: int) -> PlanToken:
        """
        Restore a known-good digest, unless a newer update already arrived.

        Raises:
            SupersededError: the workload moved past ``generation``
        """
        entry = self._entry(workload_id)
        async with entry.lock:
            if entry.workload.generation != generation:
                raise SupersededError(workload_id, generation)
            entry.workload.desired_digest = digest
            self._bump(entry)
            return PlanToken(workload_id, entry.workload.generation, entry.superseded)

    async def set_replicas(self, workload_id: str, replicas: int) -> bool:
        if replicas < 0:
            raise ValueError("replicas must be >= 0")
        entry = self._entry(workload_id)
        async with entry.lock:
            if entry.workload.replicas == replicas:
                return False
            entry.workload.replicas = replicas
            self._bump(entry)
            return True

    async def update_status(self, workload_id: str, status: RolloutStatus,
                            plan_id: Optional[str] = None) -> RolloutStatus:
        """Set the rollout status and return the previous one."""
        entry = self._entry(workload_id)
        async with entry.lock:
            previous = entry.workload.status
            entry.workload.status = status
            if plan_id is not None:
                entry.workload.plan_id = plan_id
            entry.workload.updated_at = datetime.now(timezone.utc)
            return previous

    async def mark_converged(self, workload_id: str, digest: Optional[str], status: RolloutStatus,
                             generation: int) -> Workload:
        """Advance the current digest once every replica is Ready on it."""
        entry = self._entry(workload_id)
        async with entry.lock:
            if entry.workload.generation != generation:
                raise SupersededError(workload_id, generation)
            entry.workload.current_digest = digest
            if digest is not None:
                entry.workload.last_healthy_digest = digest
            entry.workload.status = status
            entry.workload.updated_at = datetime.now(timezone.utc)
            return entry.workload.snapshot()
