"""Tests for the Kubernetes StatefulSet cluster."""

from unittest.mock import MagicMock, patch

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.config import ConfigException

from clusterctl.exceptions import ClusterCtlError, RestartError
from clusterctl.instance import Role
from clusterctl.k8s import ROLE_LABEL, KubernetesCluster, load_kube_config


def _statefulset(replicas: int = 2, ports: list[client.V1ContainerPort] | None = None):
    if ports is None:
        ports = [client.V1ContainerPort(name="dolt", container_port=3307)]
    return client.V1StatefulSet(
        metadata=client.V1ObjectMeta(name="dolt", namespace="prod"),
        spec=client.V1StatefulSetSpec(
            replicas=replicas,
            service_name="dolt-internal",
            selector=client.V1LabelSelector(match_labels={"app": "dolt"}),
            template=client.V1PodTemplateSpec(
                spec=client.V1PodSpec(containers=[client.V1Container(name="dolt", ports=ports)])
            ),
        ),
    )


def _pod(i: int, role: str | None = None) -> client.V1Pod:
    labels = {"app": "dolt"}
    if role is not None:
        labels[ROLE_LABEL] = role
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=f"dolt-{i}", namespace="prod", labels=labels)
    )


@pytest.fixture
def core() -> MagicMock:
    core = MagicMock()
    core.replace_namespaced_pod.side_effect = lambda name, namespace, pod: pod
    return core


@pytest.fixture
def cluster(core: MagicMock) -> KubernetesCluster:
    return KubernetesCluster("prod", _statefulset(), [_pod(0, "primary"), _pod(1, "standby")], core)


class TestKubernetesCluster:
    def test_properties(self, cluster: KubernetesCluster) -> None:
        assert cluster.name == "prod/dolt"
        assert cluster.num_replicas == 2
        assert cluster.service_name == "dolt-internal"
        assert cluster.port == 3307

    def test_default_port(self, core: MagicMock) -> None:
        cluster = KubernetesCluster("prod", _statefulset(ports=[]), [_pod(0)], core)
        assert cluster.port == 3306

    def test_instance_addressing(self, cluster: KubernetesCluster) -> None:
        instance = cluster.instance(1)

        assert instance.name == "prod/dolt-1"
        assert instance.hostname == "dolt-1.dolt-internal.prod"
        assert instance.port == 3307
        assert instance.role is Role.STANDBY
        assert cluster.instance(0).role is Role.PRIMARY

    def test_unlabeled_pod(self, core: MagicMock) -> None:
        cluster = KubernetesCluster("prod", _statefulset(1), [_pod(0)], core)
        assert cluster.instance(0).role is Role.UNKNOWN

    def test_index_out_of_range(self, cluster: KubernetesCluster) -> None:
        with pytest.raises(IndexError):
            cluster.instance(2)

    async def test_load(self) -> None:
        apps = MagicMock()
        apps.read_namespaced_stateful_set.return_value = _statefulset()
        core = MagicMock()
        core.read_namespaced_pod.side_effect = lambda name, namespace: _pod(
            int(name.rsplit("-", 1)[1])
        )

        with (
            patch("clusterctl.k8s.client.AppsV1Api", return_value=apps),
            patch("clusterctl.k8s.client.CoreV1Api", return_value=core),
        ):
            cluster = await KubernetesCluster.load("prod", "dolt")

        apps.read_namespaced_stateful_set.assert_called_once_with("dolt", "prod")
        assert [instance.name for instance in cluster] == ["prod/dolt-0", "prod/dolt-1"]

    async def test_load_missing_statefulset(self) -> None:
        apps = MagicMock()
        apps.read_namespaced_stateful_set.side_effect = ApiException(status=404, reason="Not Found")

        with (
            patch("clusterctl.k8s.client.AppsV1Api", return_value=apps),
            patch("clusterctl.k8s.client.CoreV1Api"),
            pytest.raises(ClusterCtlError, match="error loading StatefulSet prod/dolt"),
        ):
            await KubernetesCluster.load("prod", "dolt")

    async def test_load_missing_pod(self) -> None:
        apps = MagicMock()
        apps.read_namespaced_stateful_set.return_value = _statefulset()
        core = MagicMock()
        core.read_namespaced_pod.side_effect = [_pod(0), ApiException(status=404)]

        with (
            patch("clusterctl.k8s.client.AppsV1Api", return_value=apps),
            patch("clusterctl.k8s.client.CoreV1Api", return_value=core),
            pytest.raises(ClusterCtlError, match="error loading Pod prod/dolt-1"),
        ):
            await KubernetesCluster.load("prod", "dolt")


class TestKubernetesInstanceLabels:
    async def test_mark_primary(self, cluster: KubernetesCluster, core: MagicMock) -> None:
        instance = cluster.instance(1)

        await instance.mark_role_primary()

        core.replace_namespaced_pod.assert_called_once()
        name, namespace, pod = core.replace_namespaced_pod.call_args.args
        assert (name, namespace) == ("dolt-1", "prod")
        assert pod.metadata.labels[ROLE_LABEL] == "primary"
        assert instance.role is Role.PRIMARY

    async def test_already_labeled_is_noop(
        self, cluster: KubernetesCluster, core: MagicMock
    ) -> None:
        await cluster.instance(0).mark_role_primary()
        await cluster.instance(1).mark_role_standby()

        core.replace_namespaced_pod.assert_not_called()

    async def test_mark_unknown_removes_label(
        self, cluster: KubernetesCluster, core: MagicMock
    ) -> None:
        instance = cluster.instance(0)

        await instance.mark_role_unknown()

        assert ROLE_LABEL not in cluster.pods[0].metadata.labels
        assert instance.role is Role.UNKNOWN

    async def test_api_error(self, cluster: KubernetesCluster, core: MagicMock) -> None:
        core.replace_namespaced_pod.side_effect = ApiException(status=409, reason="Conflict")

        with pytest.raises(ClusterCtlError, match="error updating pod prod/dolt-1"):
            await cluster.instance(1).mark_role_primary()

        # The cached pod still carries the label the API server has.
        assert cluster.pods[1].metadata.labels[ROLE_LABEL] == "standby"
        assert cluster.instance(1).role is Role.STANDBY

        core.replace_namespaced_pod.side_effect = lambda name, namespace, pod: pod
        await cluster.instance(1).mark_role_primary()

        assert core.replace_namespaced_pod.call_count == 2
        assert cluster.instance(1).role is Role.PRIMARY


class TestKubernetesInstanceRestart:
    async def test_delete_and_wait_ready(self, cluster: KubernetesCluster, core: MagicMock) -> None:
        watcher = MagicMock()
        watcher.stream.return_value = iter([{"type": "MODIFIED"}, {"type": "DELETED"}])

        not_ready = MagicMock()
        not_ready.status.container_statuses = [MagicMock(ready=False)]
        ready = _pod(1)
        ready.status = MagicMock(container_statuses=[MagicMock(ready=True)])
        core.read_namespaced_pod.side_effect = [ApiException(status=404), not_ready, ready]

        with (
            patch("clusterctl.k8s.watch.Watch", return_value=watcher),
            patch("clusterctl.k8s.READY_POLL_INTERVAL", 0),
        ):
            await cluster.instance(1).restart()

        core.delete_namespaced_pod.assert_called_once_with("dolt-1", "prod")
        watcher.stop.assert_called_once()
        assert core.read_namespaced_pod.call_count == 3
        assert cluster.pods[1] is ready
        # The recreated pod comes back without a routing label.
        assert cluster.instance(1).role is Role.UNKNOWN

    async def test_delete_failure(self, cluster: KubernetesCluster, core: MagicMock) -> None:
        watcher = MagicMock()
        watcher.stream.return_value = iter([])
        core.delete_namespaced_pod.side_effect = ApiException(status=403, reason="Forbidden")

        with (
            patch("clusterctl.k8s.watch.Watch", return_value=watcher),
            pytest.raises(RestartError, match="error deleting pod prod/dolt-0"),
        ):
            await cluster.instance(0).restart()

        watcher.stop.assert_called_once()


class TestLoadKubeConfig:
    def test_in_cluster(self) -> None:
        with (
            patch("clusterctl.k8s.kube_config.load_incluster_config") as incluster,
            patch("clusterctl.k8s.kube_config.load_kube_config") as local,
        ):
            load_kube_config()

        incluster.assert_called_once()
        local.assert_not_called()

    def test_falls_back_to_kubeconfig(self) -> None:
        with (
            patch(
                "clusterctl.k8s.kube_config.load_incluster_config",
                side_effect=ConfigException("not in cluster"),
            ),
            patch("clusterctl.k8s.kube_config.load_kube_config") as local,
        ):
            load_kube_config()

        local.assert_called_once()

    def test_no_configuration(self) -> None:
        with (
            patch(
                "clusterctl.k8s.kube_config.load_incluster_config",
                side_effect=ConfigException("not in cluster"),
            ),
            patch(
                "clusterctl.k8s.kube_config.load_kube_config",
                side_effect=ConfigException("Invalid kube-config file"),
            ),
            pytest.raises(ClusterCtlError, match="error loading kubernetes configuration"),
        ):
            load_kube_config()
