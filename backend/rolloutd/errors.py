"""
Error taxonomy for the rollout controller.
"""
from typing import Optional


class RolloutError(Exception):
    """Base class for every error raised by the controller."""


class TransientError(RolloutError):
    """Registry, network or cluster hiccup. Safe to retry."""


class NotFoundError(RolloutError):
    """Unknown tag, repository, workload or replica. Never retried."""


class ConfigurationError(RolloutError):
    """Invalid rollout policy value."""


class HealthTimeoutError(RolloutError, TimeoutError):
    """A batch did not become Ready within its deadline."""

    def __init__(self, message: str, pending: Optional[list] = None, plan=None):
        super().__init__(message)
        self.pending = list(pending or [])
        self.plan = plan


class IrrecoverableError(RolloutError):
    """Rollback failed or there is nothing to roll back to."""


class SupersededError(RolloutError):
    """The plan being executed was replaced by a newer desired state."""

    def __init__(self, workload_id: str, generation: int):
        super().__init__(f"plan for {workload_id} superseded (generation {generation})")
        self.workload_id = workload_id
        self.generation = generation
