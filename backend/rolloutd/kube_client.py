"""
Kubernetes client for replica operations.

Replicas are bare Pods labelled with the workload id; the digest they run is
kept in an annotation because digests exceed the label value limit.
"""
import logging
from typing import List, Optional
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .errors import TransientError
from .kube_types import HealthState, Replica, ReplicaSummary

logger = logging.getLogger(__name__)

WORKLOAD_LABEL = "rolloutd.io/workload"
DIGEST_ANNOTATION = "rolloutd.io/digest"


def _translate(e: ApiException, action: str) -> Exception:
    if e.status in (0, 429) or (e.status or 0) >= 500:
        return TransientError(f"{action}: {e.status} {e.reason}")
    return e


class KubeClient:
    """Kubernetes client for rollout operations."""

    def __init__(self, namespace: str, in_cluster: bool = True, context: str | None = None):
        """
        Initialize Kubernetes client.

        Args:
            namespace: Target Kubernetes namespace
            in_cluster: Whether running inside cluster (default: True)
            context: Kubernetes context name (optional)
        """
        self.namespace = namespace
        self.in_cluster = in_cluster

        try:
            if in_cluster:
                config.load_incluster_config()
            else:
                if context:
                    config.load_kube_config(context=context)
                else:
                    config.load_kube_config()

            self.v1 = client.CoreV1Api()
            logger.info(f"✅ Kubernetes client initialized for namespace: {namespace}")

        except Exception as e:
            logger.error(f"❌ Failed to initialize Kubernetes client: {e}")
            raise

    @staticmethod
    def _pod_ready(pod) -> bool:
        for condition in (pod.status.conditions or []) if pod.status else []:
            if condition.type == "Ready":
                return condition.status == "True"
        return False

    def _to_replica(self, pod, workload_id: str) -> Replica:
        annotations = pod.metadata.annotations or {}
        return Replica(
            replica_id=pod.metadata.name,
            workload_id=workload_id,
            digest=annotations.get(DIGEST_ANNOTATION, ""),
            health=HealthState.READY if self._pod_ready(pod) else HealthState.STARTING,
            created_at=pod.metadata.creation_timestamp,
        )

    def list_replicas(self, workload_id: str) -> List[Replica]:
        """
        Get live replicas of a workload.

        Args:
            workload_id: Workload identifier

        Returns:
            List of Replica objects, Pods being deleted excluded
        """
        try:
            pods = self.v1.list_namespaced_pod(
                namespace=self.namespace,
                label_selector=f"{WORKLOAD_LABEL}={workload_id}"
            )
        except ApiException as e:
            logger.error(f"Failed to list replicas of {workload_id}: {e}")
            raise _translate(e, f"list replicas of {workload_id}") from e

        replicas = [self._to_replica(pod, workload_id) for pod in pods.items
                    if pod.metadata.deletion_timestamp is None]
        logger.debug(f"Retrieved {len(replicas)} replicas of {workload_id} from namespace {self.namespace}")
        return replicas

    def create_replica(self, workload_id: str, digest: str, image: str) -> Replica:
        """
        Start one Pod running ``image`` (a ``repository@digest`` reference).

        Args:
            workload_id: Workload identifier
            digest: Image digest, recorded on the Pod
            image: Pullable image reference
        """
        body = client.V1Pod(
            metadata=client.V1ObjectMeta(
                generate_name=f"{workload_id}-",
                namespace=self.namespace,
                labels={WORKLOAD_LABEL: workload_id, "app": workload_id},
                annotations={DIGEST_ANNOTATION: digest},
            ),
            spec=client.V1PodSpec(
                containers=[client.V1Container(name=workload_id, image=image, image_pull_policy="IfNotPresent")],
                restart_policy="Always",
            ),
        )
        try:
            pod = self.v1.create_namespaced_pod(namespace=self.namespace, body=body)
        except ApiException as e:
            logger.error(f"Failed to create replica of {workload_id} at {digest}: {e}")
            raise _translate(e, f"create replica of {workload_id}") from e

        logger.info(f"✅ Created replica {pod.metadata.name} ({image})")
        return self._to_replica(pod, workload_id)

    def terminate_replica(self, replica_id: str) -> None:
        try:
            self.v1.delete_namespaced_pod(name=replica_id, namespace=self.namespace)
            logger.info(f"Terminated replica {replica_id}")
        except ApiException as e:
            if e.status == 404:
                return
            logger.error(f"Failed to terminate replica {replica_id}: {e}")
            raise _translate(e, f"terminate {replica_id}") from e

    def probe(self, replica_id: str) -> Optional[bool]:
        """
        Read the Pod Ready condition.

        Returns:
            True/False for a live Pod, None when the Pod is gone or finished
        """
        try:
            pod = self.v1.read_namespaced_pod(name=replica_id, namespace=self.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise _translate(e, f"probe {replica_id}") from e

        if pod.metadata.deletion_timestamp is not None:
            return None
        if pod.status and pod.status.phase in ("Succeeded", "Failed"):
            return None
        return self._pod_ready(pod)

    def rollout_status(self, workload_id: str, desired_replicas: int, digest: str | None) -> ReplicaSummary:
        """
        Summarise replica readiness for a workload.

        Args:
            workload_id: Workload identifier
            desired_replicas: Replica count from the desired state
            digest: Target digest; replicas on it count as updated
        """
        replicas = self.list_replicas(workload_id)
        return ReplicaSummary(
            workload_id=workload_id,
            desired_replicas=desired_replicas,
            ready_replicas=sum(1 for r in replicas if r.health is HealthState.READY),
            updated_replicas=sum(1 for r in replicas if digest and r.digest == digest),
            digests=sorted({r.digest for r in replicas}),
        )
