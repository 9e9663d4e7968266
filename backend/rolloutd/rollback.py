"""
Rollback controller: reverts a Failing workload to its last Healthy digest.
"""
import logging

from .engine import RolloutEngine
from .errors import HealthTimeoutError, IrrecoverableError, RolloutError, SupersededError
from .kube_types import RolloutPlan, RolloutStatus, Workload
from .store import DesiredStateStore

logger = logging.getLogger(__name__)


class RollbackController:
    def __init__(self, store: DesiredStateStore, engine: RolloutEngine):
        self.store = store
        self.engine = engine

    async def recover(self, workload_id: str, error: HealthTimeoutError) -> Workload:
        """
        Restore the last known-good digest and converge back onto it.

        Args:
            workload_id: Workload in Failing state
            error: The batch failure, carrying the failed plan

        Returns:
            The workload, RolledBack on its previous digest

        Raises:
            IrrecoverableError: no known-good digest, or the rollback failed too
            SupersededError: a newer desired digest arrived meanwhile
        """
        plan: RolloutPlan = error.plan
        workload = self.store.get(workload_id)
        last_good = workload.last_healthy_digest

        if last_good is None:
            await self._fail(workload_id, plan, f"first rollout failed and there is no known-good digest: {error}")
            raise IrrecoverableError(f"{workload_id}: nothing to roll back to") from error

        token = await self.store.revert_desired(workload_id, last_good, plan.generation)
        logger.warning(f"Rolling back {workload_id} from {plan.to_digest} to {last_good} "
                       f"(failed plan {plan.plan_id})")
        try:
            return await self.engine.converge(self.store.get(workload_id), last_good, token,
                                              RolloutStatus.ROLLED_BACK)
        except SupersededError:
            raise
        except RolloutError as e:
            await self._fail(workload_id, plan, f"rollback to {last_good} failed: {e}")
            raise IrrecoverableError(f"{workload_id}: rollback to {last_good} failed") from e

    async def _fail(self, workload_id: str, plan: RolloutPlan, message: str) -> None:
        await self.engine.transition(workload_id, RolloutStatus.FAILED, plan, message=message)
