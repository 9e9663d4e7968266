"""
Type definitions for workloads, replicas and rollout plans.
"""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional, Tuple
from datetime import datetime, timezone


class RolloutStatus(str, Enum):
    """Per-workload rollout state."""
    IDLE = "Idle"
    PLANNING = "Planning"
    ROLLING_OUT = "RollingOut"
    FAILING = "Failing"
    HEALTHY = "Healthy"
    ROLLED_BACK = "RolledBack"
    FAILED = "Failed"


class HealthState(str, Enum):
    """Replica readiness as seen by the health prober."""
    STARTING = "Starting"
    READY = "Ready"
    UNREADY = "Unready"
    TERMINATED = "Terminated"


@dataclass
class Workload:
    """A deployable unit tracked by the desired-state store."""
    workload_id: str
    replicas: int
    desired_digest: Optional[str] = None
    current_digest: Optional[str] = None
    last_healthy_digest: Optional[str] = None
    status: RolloutStatus = RolloutStatus.IDLE
    repository: Optional[str] = None
    tag: Optional[str] = None
    generation: int = 0
    plan_id: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def snapshot(self) -> "Workload":
        return replace(self)


@dataclass
class Replica:
    """One running instance of a workload at a specific digest."""
    replica_id: str
    workload_id: str
    digest: str
    health: HealthState = HealthState.STARTING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class RolloutStep:
    """One batch: replicas to terminate and how many new ones to start."""
    index: int
    terminate: Tuple[str, ...]
    create: int


@dataclass(frozen=True)
class RolloutPlan:
    """Immutable batch schedule computed once per rollout."""
    plan_id: str
    workload_id: str
    from_digest: Optional[str]
    to_digest: Optional[str]
    replicas: int
    max_unavailable: int
    batch_size: int
    generation: int
    steps: Tuple[RolloutStep, ...] = ()
    keep: Tuple[str, ...] = ()

    @property
    def batches(self) -> int:
        return len(self.steps)

    def describe(self) -> str:
        return (f"plan {self.plan_id} for {self.workload_id}: {self.from_digest} -> {self.to_digest}, "
                f"{self.batches} batches of <= {self.batch_size}")


@dataclass
class ReplicaSummary:
    """Aggregated replica counts for a workload."""
    workload_id: str
    desired_replicas: int
    ready_replicas: int
    updated_replicas: int
    digests: List[str] = field(default_factory=list)
