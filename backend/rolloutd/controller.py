"""
Controller: one worker task per workload plus the dispatch layer in front of them.

Workers for different workloads run concurrently; a single workload is only
ever driven by its own worker. Updates that arrive mid-rollout stale the
running plan's token and wake the worker, which re-plans against the latest
desired digest.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from .adapters import build_cluster
from .config import RolloutPolicy, Settings
from .engine import RolloutEngine
from .errors import HealthTimeoutError, IrrecoverableError, NotFoundError, SupersededError
from .events import CompositeEventSink, LoggingEventSink, MemoryEventSink, WebhookEventSink
from .kube_types import RolloutStatus, Workload
from .prober import HealthProber
from .registry import ImageResolver
from .rollback import RollbackController
from .store import DesiredStateStore

logger = logging.getLogger(__name__)


class WorkloadWorker:
    """Serialised control loop for one workload."""

    def __init__(self, workload_id: str, engine: RolloutEngine, rollback: RollbackController):
        self.workload_id = workload_id
        self.engine = engine
        self.rollback = rollback
        self._wake = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run(), name=f"rollout-{self.workload_id}")

    def kick(self) -> None:
        self._idle.clear()
        self._wake.set()

    async def wait_idle(self) -> None:
        await self._idle.wait()

    async def stop(self) -> None:
        if self._task is None:
            self._idle.set()
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._idle.set()

    async def _run(self) -> None:
        while True:
            await self._wake.wait()
            self._wake.clear()
            try:
                await self._reconcile()
            except SupersededError as e:
                logger.info(f"[{self.workload_id}] {e}, re-planning")
            except IrrecoverableError as e:
                logger.error(f"[{self.workload_id}] needs operator action: {e}")
            except NotFoundError as e:
                logger.warning(f"[{self.workload_id}] {e}")
            except Exception as e:
                logger.exception(f"[{self.workload_id}] rollout aborted: {e}")
                await self._mark_failed(str(e))
            finally:
                if not self._wake.is_set():
                    self._idle.set()

    async def _reconcile(self) -> None:
        try:
            await self.engine.rollout(self.workload_id)
        except HealthTimeoutError as e:
            await self.rollback.recover(self.workload_id, e)

    async def _mark_failed(self, message: str) -> None:
        try:
            await self.engine.transition(self.workload_id, RolloutStatus.FAILED, message=message)
        except NotFoundError:
            logger.debug(f"[{self.workload_id}] unregistered before it could be marked Failed")


class RolloutController:
    """Entry point for triggers and operators."""

    def __init__(self, store: DesiredStateStore, engine: RolloutEngine, rollback: RollbackController,
                 resolver: Optional[ImageResolver] = None, history: Optional[MemoryEventSink] = None):
        self.store = store
        self.engine = engine
        self.rollback = rollback
        self.resolver = resolver
        self.history = history or MemoryEventSink()
        self._workers: Dict[str, WorkloadWorker] = {}
        self._started = False

    @classmethod
    def build(cls, cluster, policy: Optional[RolloutPolicy] = None, resolver: Optional[ImageResolver] = None,
              webhook_url: Optional[str] = None, history_size: int = 500) -> "RolloutController":
        policy = policy or RolloutPolicy()
        history = MemoryEventSink(maxlen=history_size)
        sinks = [LoggingEventSink(), history]
        if webhook_url:
            sinks.append(WebhookEventSink(webhook_url))
        store = DesiredStateStore()
        prober = HealthProber(cluster, success_threshold=policy.success_threshold,
                              failure_threshold=policy.failure_threshold, interval=policy.probe_interval)
        engine = RolloutEngine(store, cluster, prober, policy, CompositeEventSink(*sinks))
        return cls(store, engine, RollbackController(store, engine), resolver=resolver, history=history)

    @classmethod
    def from_settings(cls, settings: Settings, cluster=None) -> "RolloutController":
        return cls.build(
            cluster if cluster is not None else build_cluster(settings),
            policy=RolloutPolicy.from_settings(settings),
            resolver=ImageResolver.from_settings(settings),
            webhook_url=settings.EVENT_WEBHOOK_URL,
            history_size=settings.EVENT_HISTORY_SIZE,
        )

    @property
    def cluster(self):
        return self.engine.cluster

    async def start(self) -> None:
        self._started = True
        for worker in self._workers.values():
            worker.start()
        logger.info(f"Rollout controller started with {len(self._workers)} workloads")

    async def stop(self) -> None:
        self._started = False
        await asyncio.gather(*(w.stop() for w in self._workers.values()))
        logger.info("Rollout controller stopped")

    def _worker(self, workload_id: str) -> WorkloadWorker:
        worker = self._workers.get(workload_id)
        if worker is None:
            worker = WorkloadWorker(workload_id, self.engine, self.rollback)
            self._workers[workload_id] = worker
        if self._started:
            worker.start()
        return worker

    def _kick(self, workload_id: str) -> None:
        self._worker(workload_id).kick()

    async def register_workload(self, workload_id: str, replicas: int, repository: Optional[str] = None,
                                tag: Optional[str] = None, digest: Optional[str] = None) -> Workload:
        """Register or update a workload; the worker only runs when something changed."""
        try:
            before = self.store.get(workload_id).generation
        except NotFoundError:
            before = None
        await self.store.register(workload_id, replicas, repository=repository, tag=tag)
        if digest:
            await self.store.set_desired(workload_id, digest)
        workload = self.store.get(workload_id)
        if before is None or workload.generation != before:
            self._kick(workload_id)
        return workload

    async def unregister(self, workload_id: str) -> None:
        await self.store.unregister(workload_id)
        worker = self._workers.pop(workload_id, None)
        if worker is not None:
            await worker.stop()

    async def set_desired(self, workload_id: str, digest: str) -> bool:
        """Returns False, and starts nothing, when ``digest`` is already desired."""
        changed = await self.store.set_desired(workload_id, digest)
        if changed:
            self._kick(workload_id)
        return changed

    async def scale(self, workload_id: str, replicas: int) -> bool:
        changed = await self.store.set_replicas(workload_id, replicas)
        if changed:
            self._kick(workload_id)
        return changed

    async def reconcile(self, workload_id: str) -> None:
        """Operator retry, e.g. after a workload ended up Failed."""
        self.store.get(workload_id)
        self._kick(workload_id)

    async def notify_new_image(self, repository: str, tag: str) -> List[str]:
        """
        Trigger from CI after an image push.

        Returns:
            Ids of the workloads whose desired digest changed
        """
        tracking = self.store.find_by_image(repository, tag)
        if not tracking:
            logger.info(f"No workload tracks {repository}:{tag}")
            return []
        if self.resolver is None:
            raise NotFoundError("no image resolver configured")
        digest = await asyncio.to_thread(self.resolver.resolve, repository, tag)
        logger.info(f"New image {repository}:{tag} -> {digest} for {len(tracking)} workload(s)")
        changed = []
        for workload in tracking:
            if await self.set_desired(workload.workload_id, digest):
                changed.append(workload.workload_id)
        return changed

    async def wait_idle(self, workload_id: Optional[str] = None) -> None:
        if workload_id is not None:
            worker = self._workers.get(workload_id)
            if worker is not None:
                await worker.wait_idle()
            return
        await asyncio.gather(*(w.wait_idle() for w in list(self._workers.values())))

    def get(self, workload_id: str) -> Workload:
        return self.store.get(workload_id)

    def list(self) -> List[Workload]:
        return self.store.list()
