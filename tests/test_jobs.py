from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError, ProtocolError

from imagecache_manager.config import ManagerConfig
from imagecache_manager.errors import JobClientError
from imagecache_manager.jobs import (
    KubeJobClient,
    job_deadline_seconds,
    new_image_delete_job,
    new_image_pull_job,
    runtime_delete_command,
)
from imagecache_manager.types import ImageCacheRef


class TestManifests:
    def test_pull_job_pins_node_and_copies_echo(self, node) -> None:
        cache = ImageCacheRef(namespace="default", name="ic1", uid="uid-1", image_pull_secrets=("regcred",))

        job = new_image_pull_job(
            cache, "nginx:1.25", node, "IfNotPresent",
            namespace="kube-fledged", busybox_image="busybox:1.29.2",
            service_account_name="sa", active_deadline_seconds=300,
        )

        assert job["metadata"]["generateName"] == "ic1-"
        assert job["metadata"]["ownerReferences"][0]["uid"] == "uid-1"
        assert job["spec"]["backoffLimit"] == 0
        assert job["spec"]["activeDeadlineSeconds"] == 300
        pod = job["spec"]["template"]["spec"]
        assert pod["nodeSelector"] == {"kubernetes.io/hostname": "worker-1"}
        assert pod["restartPolicy"] == "Never"
        assert pod["serviceAccountName"] == "sa"
        assert pod["imagePullSecrets"] == [{"name": "regcred"}]
        assert pod["initContainers"][0]["image"] == "busybox:1.29.2"
        container = pod["containers"][0]
        assert container["image"] == "nginx:1.25"
        assert container["imagePullPolicy"] == "IfNotPresent"
        assert container["command"][0] == "/tmp/bin/echo"

    def test_pull_job_without_uid_has_no_owner(self, cache, node) -> None:
        job = new_image_pull_job(cache, "nginx:1.25", node, "Always",
                                 namespace="kube-fledged", busybox_image="busybox")
        assert "ownerReferences" not in job["metadata"]
        assert "activeDeadlineSeconds" not in job["spec"]

    def test_empty_image_rejected(self, cache, node) -> None:
        with pytest.raises(ValueError):
            new_image_pull_job(cache, "", node, "Always", namespace="ns", busybox_image="busybox")

    @pytest.mark.parametrize(
        ("runtime", "binary", "socket"),
        [
            ("docker://20.10.7", "docker", "/var/run/docker.sock"),
            ("containerd://1.7.2", "crictl", "/run/containerd/containerd.sock"),
            ("cri-o://1.27.0", "crictl", "/var/run/crio/crio.sock"),
        ],
    )
    def test_delete_command_follows_runtime(self, runtime, binary, socket) -> None:
        command, path = runtime_delete_command(runtime, "nginx:1.25")
        assert command[0] == binary
        assert command[-1] == "nginx:1.25"
        assert path == socket

    def test_delete_job_mounts_runtime_socket(self, cache, node) -> None:
        job = new_image_delete_job(cache, "nginx:1.25", node, "containerd://1.7.2",
                                   namespace="kube-fledged", cri_client_image="cri-client:1")
        pod = job["spec"]["template"]["spec"]
        assert pod["volumes"][0]["hostPath"] == {"path": "/run/containerd/containerd.sock", "type": "Socket"}
        assert pod["containers"][0]["image"] == "cri-client:1"


@pytest.fixture
def kube_client():
    jc = KubeJobClient(MagicMock(), ManagerConfig(namespace="kube-fledged"))
    jc._batch = MagicMock()
    jc._core = MagicMock()
    return jc


class TestKubeJobClient:
    def test_create_pull_job_returns_generated_name(self, kube_client, cache, node) -> None:
        kube_client._batch.create_namespaced_job.return_value = SimpleNamespace(
            metadata=SimpleNamespace(name="ic1-abcde")
        )

        assert kube_client.create_pull_job(cache, "nginx:1.25", node, "IfNotPresent") == "ic1-abcde"
        kwargs = kube_client._batch.create_namespaced_job.call_args.kwargs
        assert kwargs["namespace"] == "kube-fledged"
        assert kwargs["body"]["spec"]["template"]["spec"]["containers"][0]["image"] == "nginx:1.25"

    def test_create_error_wrapped(self, kube_client, cache, node) -> None:
        kube_client._batch.create_namespaced_job.side_effect = ApiException(status=403, reason="Forbidden")

        with pytest.raises(JobClientError) as excinfo:
            kube_client.create_pull_job(cache, "nginx:1.25", node, "IfNotPresent")
        assert excinfo.value.status == 403

    def test_list_pods_selects_by_job_name(self, kube_client) -> None:
        kube_client._core.list_namespaced_pod.return_value = SimpleNamespace(items=["pod"])

        assert kube_client.list_pods("ic1-abcde") == ["pod"]
        kube_client._core.list_namespaced_pod.assert_called_once_with(
            namespace="kube-fledged", label_selector="job-name=ic1-abcde"
        )

    def test_failure_events_filtered_by_pod_and_reason(self, kube_client) -> None:
        kube_client._core.list_namespaced_event.return_value = SimpleNamespace(items=[])

        kube_client.list_failure_events("ic1-abcde-x")

        selector = kube_client._core.list_namespaced_event.call_args.kwargs["field_selector"]
        assert "involvedObject.name=ic1-abcde-x" in selector
        assert "reason=Failed" in selector

    def test_delete_uses_background_propagation(self, kube_client) -> None:
        kube_client.delete_job("ic1-abcde")
        kube_client._batch.delete_namespaced_job.assert_called_once_with(
            name="ic1-abcde", namespace="kube-fledged", propagation_policy="Background"
        )

    def test_delete_of_missing_job_succeeds(self, kube_client) -> None:
        kube_client._batch.delete_namespaced_job.side_effect = ApiException(status=404, reason="Not Found")
        kube_client.delete_job("ic1-abcde")

    def test_delete_error_wrapped(self, kube_client) -> None:
        kube_client._batch.delete_namespaced_job.side_effect = ApiException(status=500, reason="Internal")
        with pytest.raises(JobClientError):
            kube_client.delete_job("ic1-abcde")

    def test_image_present_on_node(self, kube_client, node) -> None:
        kube_client._core.read_node.return_value = SimpleNamespace(
            status=SimpleNamespace(images=[SimpleNamespace(names=["docker.io/library/nginx:1.25"])])
        )
        assert kube_client.image_present_on_node("nginx:1.25", node)
        assert not kube_client.image_present_on_node("nginx:1.26", node)


@pytest.mark.parametrize(("deadline", "expected"), [(0.3, 1), (2.5, 3), (300, 300)])
def test_job_deadline_rounds_up_to_whole_seconds(deadline, expected) -> None:
    assert job_deadline_seconds(deadline) == expected


class TestTransportErrors:
    def test_unreachable_api_server_on_create_wrapped(self, kube_client, cache, node) -> None:
        kube_client._batch.create_namespaced_job.side_effect = MaxRetryError(None, "/apis/batch/v1/jobs")

        with pytest.raises(JobClientError) as excinfo:
            kube_client.create_pull_job(cache, "nginx:1.25", node, "IfNotPresent")
        assert excinfo.value.status is None
        assert isinstance(excinfo.value.__cause__, MaxRetryError)

    def test_unreachable_api_server_on_node_read_wrapped(self, kube_client, node) -> None:
        kube_client._core.read_node.side_effect = ProtocolError("Connection aborted.")

        with pytest.raises(JobClientError):
            kube_client.image_present_on_node("nginx:1.25", node)

    def test_unreachable_api_server_on_delete_wrapped(self, kube_client) -> None:
        kube_client._batch.delete_namespaced_job.side_effect = MaxRetryError(None, "/apis/batch/v1/jobs/x")

        with pytest.raises(JobClientError):
            kube_client.delete_job("ic1-abcde")


def test_sub_second_deadline_still_sets_job_deadline(cache, node) -> None:
    jc = KubeJobClient(MagicMock(), ManagerConfig(namespace="kube-fledged", image_pull_deadline_seconds=0.5))
    jc._batch = MagicMock()
    jc._batch.create_namespaced_job.return_value = SimpleNamespace(metadata=SimpleNamespace(name="ic1-x"))

    jc.create_delete_job(cache, "nginx:1.25", node, "containerd://1.7.2")

    body = jc._batch.create_namespaced_job.call_args.kwargs["body"]
    assert body["spec"]["activeDeadlineSeconds"] == 1
