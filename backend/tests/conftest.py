"""Shared fixtures: a fast rollout policy over the in-memory cluster."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from rolloutd.adapters import InMemoryCluster
from rolloutd.config import RolloutPolicy
from rolloutd.controller import RolloutController

DIGEST_A = "sha256:" + "a" * 64
DIGEST_B = "sha256:" + "b" * 64
DIGEST_C = "sha256:" + "c" * 64


@pytest.fixture()
def policy() -> RolloutPolicy:
    return RolloutPolicy(batch_timeout=0.3, probe_interval=0.001, success_threshold=3, failure_threshold=3)


@pytest.fixture()
def cluster() -> InMemoryCluster:
    return InMemoryCluster()


@pytest_asyncio.fixture()
async def controller(cluster: InMemoryCluster, policy: RolloutPolicy):
    ctrl = RolloutController.build(cluster, policy=policy)
    await ctrl.start()
    try:
        yield ctrl
    finally:
        await ctrl.stop()


async def settle(controller: RolloutController, workload_id: str, timeout: float = 5.0) -> None:
    await asyncio.wait_for(controller.wait_idle(workload_id), timeout)


async def seeded(controller: RolloutController, cluster: InMemoryCluster, workload_id: str,
                 replicas: int, digest: str) -> None:
    """Register a workload that is already Healthy at ``digest``."""
    cluster.seed(workload_id, digest, replicas)
    await controller.register_workload(workload_id, replicas, digest=digest)
    await settle(controller, workload_id)
