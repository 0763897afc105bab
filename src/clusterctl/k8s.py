"""Cluster implementation for a Kubernetes StatefulSet.

Pods are named ``<statefulset>-<ordinal>`` and reachable through the
StatefulSet's governing service. The routing label is the pod label
``dolthub.com/cluster_role``; Services select on it to route primary and
standby traffic.
"""

import asyncio
import copy
from typing import Any

import structlog
from kubernetes import client, config as kube_config, watch
from kubernetes.client.rest import ApiException

from clusterctl.exceptions import ClusterCtlError, RestartError
from clusterctl.instance import Cluster, Instance, Role

logger = structlog.get_logger(__name__)

ROLE_LABEL = "dolthub.com/cluster_role"
PRIMARY_ROLE_VALUE = "primary"
STANDBY_ROLE_VALUE = "standby"

DEFAULT_PORT = 3306
READY_POLL_INTERVAL = 0.1


def load_kube_config() -> None:
    """Use the in-cluster service account, falling back to the local kubeconfig."""
    try:
        kube_config.load_incluster_config()
    except kube_config.ConfigException:
        try:
            kube_config.load_kube_config()
        except (kube_config.ConfigException, OSError) as e:
            raise ClusterCtlError(f"error loading kubernetes configuration: {e}") from e


class KubernetesInstance(Instance):
    def __init__(self, cluster: "KubernetesCluster", replica: int) -> None:
        self._cluster = cluster
        self._replica = replica

    @property
    def pod(self) -> client.V1Pod:
        return self._cluster.pods[self._replica]

    @property
    def name(self) -> str:
        return f"{self.pod.metadata.namespace}/{self.pod.metadata.name}"

    @property
    def hostname(self) -> str:
        meta = self.pod.metadata
        return f"{meta.name}.{self._cluster.service_name}.{meta.namespace}"

    @property
    def port(self) -> int:
        return self._cluster.port

    @property
    def role(self) -> Role:
        value = (self.pod.metadata.labels or {}).get(ROLE_LABEL)
        if value == PRIMARY_ROLE_VALUE:
            return Role.PRIMARY
        if value == STANDBY_ROLE_VALUE:
            return Role.STANDBY
        return Role.UNKNOWN

    async def _set_label(self, value: str | None) -> None:
        pod = self.pod
        if (pod.metadata.labels or {}).get(ROLE_LABEL) == value:
            return

        # The cached pod only changes once the API accepts the update.
        labels = dict(pod.metadata.labels or {})
        if value is None:
            labels.pop(ROLE_LABEL, None)
        else:
            labels[ROLE_LABEL] = value
        body = copy.copy(pod)
        body.metadata = copy.copy(pod.metadata)
        body.metadata.labels = labels

        try:
            updated = await asyncio.to_thread(
                self._cluster.core.replace_namespaced_pod,
                pod.metadata.name,
                self._cluster.namespace,
                body,
            )
        except ApiException as e:
            action = f"add {ROLE_LABEL}={value}" if value else f"remove {ROLE_LABEL}"
            raise ClusterCtlError(f"error updating pod {self.name} to {action} label: {e}") from e
        self._cluster.pods[self._replica] = updated

    async def mark_role_primary(self) -> None:
        await self._set_label(PRIMARY_ROLE_VALUE)

    async def mark_role_standby(self) -> None:
        await self._set_label(STANDBY_ROLE_VALUE)

    async def mark_role_unknown(self) -> None:
        await self._set_label(None)

    def _delete_and_wait(self) -> None:
        core = self._cluster.core
        pod_name = self.pod.metadata.name
        w = watch.Watch()
        stream = w.stream(
            core.list_namespaced_pod,
            self._cluster.namespace,
            field_selector=f"metadata.name={pod_name}",
        )
        try:
            logger.info("deleting pod", instance=self.name)
            core.delete_namespaced_pod(pod_name, self._cluster.namespace)
            for event in stream:
                if event["type"] == "DELETED":
                    break
        finally:
            w.stop()
        logger.info("pod deleted", instance=self.name)

    def _get_pod(self) -> client.V1Pod | None:
        try:
            return self._cluster.core.read_namespaced_pod(
                self.pod.metadata.name, self._cluster.namespace
            )
        except ApiException:
            return None

    async def restart(self) -> None:
        try:
            await asyncio.to_thread(self._delete_and_wait)
        except ApiException as e:
            raise RestartError(f"error deleting pod {self.name}: {e}") from e

        while True:
            await asyncio.sleep(READY_POLL_INTERVAL)
            pod = await asyncio.to_thread(self._get_pod)
            if pod is None or pod.status is None:
                continue
            statuses = pod.status.container_statuses or []
            if statuses and all(c.ready for c in statuses):
                self._cluster.pods[self._replica] = pod
                return


class KubernetesCluster(Cluster):
    def __init__(
        self,
        namespace: str,
        statefulset: client.V1StatefulSet,
        pods: list[client.V1Pod],
        core: client.CoreV1Api,
        *,
        container_name: str = "dolt",
        port_name: str = "dolt",
    ) -> None:
        self.namespace = namespace
        self.statefulset = statefulset
        self.pods = pods
        self.core = core
        self._container_name = container_name
        self._port_name = port_name

    @classmethod
    async def load(
        cls,
        namespace: str,
        name: str,
        *,
        api_client: Any = None,
        **kwargs: Any,
    ) -> "KubernetesCluster":
        """Read the StatefulSet ``namespace/name`` and each of its pods."""
        apps = client.AppsV1Api(api_client)
        core = client.CoreV1Api(api_client)

        try:
            statefulset = await asyncio.to_thread(
                apps.read_namespaced_stateful_set, name, namespace
            )
        except ApiException as e:
            raise ClusterCtlError(f"error loading StatefulSet {namespace}/{name}: {e}") from e

        replicas = statefulset.spec.replicas if statefulset.spec.replicas is not None else 1
        pods = []
        for i in range(replicas):
            pod_name = f"{name}-{i}"
            try:
                pods.append(
                    await asyncio.to_thread(core.read_namespaced_pod, pod_name, namespace)
                )
            except ApiException as e:
                raise ClusterCtlError(
                    f"error loading Pod {namespace}/{pod_name} for StatefulSet "
                    f"{namespace}/{name}: {e}"
                ) from e

        return cls(namespace, statefulset, pods, core, **kwargs)

    @property
    def name(self) -> str:
        return f"{self.namespace}/{self.statefulset.metadata.name}"

    @property
    def service_name(self) -> str:
        return self.statefulset.spec.service_name

    @property
    def num_replicas(self) -> int:
        return len(self.pods)

    @property
    def port(self) -> int:
        for container in self.statefulset.spec.template.spec.containers:
            if container.name != self._container_name:
                continue
            for port in container.ports or []:
                if port.name == self._port_name:
                    return port.container_port
        return DEFAULT_PORT

    def instance(self, i: int) -> KubernetesInstance:
        if not 0 <= i < self.num_replicas:
            raise IndexError(f"instance index {i} out of range")
        return KubernetesInstance(self, i)
