# /*
# Copyright 2026 The kube-fledged Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# */

"""Image pull/delete job manifests and the Kubernetes job client."""

from __future__ import annotations

import math
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Protocol

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from imagecache_manager import logger
from imagecache_manager.config import ManagerConfig
from imagecache_manager.constants import (
    CONTAINERD_SOCKET_PATH,
    CRIO_SOCKET_PATH,
    DELETE_CONTAINER_NAME,
    DOCKER_SOCKET_PATH,
    ECHO_INIT_CONTAINER_NAME,
    ECHO_VOLUME_NAME,
    ECHO_VOLUME_PATH,
    FAILED_EVENT_REASON,
    IMAGE_CACHE_API_VERSION,
    IMAGE_CACHE_KIND,
    JOB_BACKOFF_LIMIT,
    LABEL_APP,
    LABEL_APP_VALUE,
    LABEL_COMPONENT,
    LABEL_COMPONENT_VALUE,
    LABEL_HOSTNAME,
    LABEL_IMAGE_CACHE,
    LABEL_JOB_NAME,
    PULL_CONTAINER_NAME,
    RUNTIME_SOCKET_VOLUME_NAME,
)
from imagecache_manager.errors import JobClientError
from imagecache_manager.images import image_in_names
from imagecache_manager.types import ImageCacheRef, NodeRef


class JobClient(Protocol):
    """Cluster operations the work engine depends on."""

    def create_pull_job(self, cache: ImageCacheRef, image: str, node: NodeRef, pull_policy: str) -> str:
        """Create a job pulling ``image`` onto ``node`` and return its name."""
        ...

    def create_delete_job(self, cache: ImageCacheRef, image: str, node: NodeRef, runtime_version: str) -> str:
        """Create a job deleting ``image`` from ``node`` and return its name."""
        ...

    def list_pods(self, job: str) -> list[Any]:
        ...

    def list_failure_events(self, pod_name: str) -> list[Any]:
        ...

    def delete_job(self, job: str) -> None:
        """Delete ``job``, letting the garbage collector remove its pods."""
        ...

    def image_present_on_node(self, image: str, node: NodeRef) -> bool:
        ...


# ============================================================================
# Manifests
# ============================================================================

def _job_labels(cache: ImageCacheRef) -> dict[str, str]:
    return {
        LABEL_APP: LABEL_APP_VALUE,
        LABEL_COMPONENT: LABEL_COMPONENT_VALUE,
        LABEL_IMAGE_CACHE: cache.name,
    }


def _job_envelope(
    cache: ImageCacheRef,
    node: NodeRef,
    namespace: str,
    pod_spec: dict,
    active_deadline_seconds: int | None,
    service_account_name: str | None,
) -> dict:
    """Wrap a pod spec into a Job pinned to ``node``."""
    labels = _job_labels(cache)
    pod_spec = {
        **pod_spec,
        "nodeSelector": {LABEL_HOSTNAME: node.hostname},
        "restartPolicy": "Never",
        "tolerations": [{"operator": "Exists"}],
    }
    if service_account_name:
        pod_spec["serviceAccountName"] = service_account_name

    metadata: dict[str, Any] = {
        "generateName": f"{cache.name}-",
        "namespace": namespace,
        "labels": labels,
    }
    if cache.uid:
        metadata["ownerReferences"] = [{
            "apiVersion": IMAGE_CACHE_API_VERSION,
            "kind": IMAGE_CACHE_KIND,
            "name": cache.name,
            "uid": cache.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }]

    spec: dict[str, Any] = {
        "backoffLimit": JOB_BACKOFF_LIMIT,
        "template": {
            "metadata": {"labels": labels},
            "spec": pod_spec,
        },
    }
    if active_deadline_seconds:
        spec["activeDeadlineSeconds"] = active_deadline_seconds
    return {"apiVersion": "batch/v1", "kind": "Job", "metadata": metadata, "spec": spec}


def new_image_pull_job(
    cache: ImageCacheRef,
    image: str,
    node: NodeRef,
    pull_policy: str,
    *,
    namespace: str,
    busybox_image: str,
    service_account_name: str | None = None,
    active_deadline_seconds: int | None = None,
) -> dict:
    """Build the Job manifest that pulls ``image`` onto ``node``.

    The target image may not ship a shell, so an init container copies
    ``echo`` from busybox into a shared volume and the target container
    runs that binary. Pulling the image is the side effect of starting it.

    Args:
        cache: Image cache the job belongs to.
        image: Image reference to pull.
        node: Node the pod is pinned to.
        pull_policy: Image pull policy of the target container.
        namespace: Namespace the job is created in.
        busybox_image: Image providing the echo binary.
        service_account_name: Service account of the pod, or None.
        active_deadline_seconds: Job deadline, or None for no deadline.

    Returns:
        Kubernetes Job resource as a dictionary.
    """
    if not image:
        raise ValueError("image name is empty")
    volume_mount = {"name": ECHO_VOLUME_NAME, "mountPath": ECHO_VOLUME_PATH}
    pod_spec: dict[str, Any] = {
        "initContainers": [{
            "name": ECHO_INIT_CONTAINER_NAME,
            "image": busybox_image,
            "command": ["cp", "/bin/echo", ECHO_VOLUME_PATH],
            "volumeMounts": [volume_mount],
            "imagePullPolicy": "IfNotPresent",
        }],
        "containers": [{
            "name": PULL_CONTAINER_NAME,
            "image": image,
            "command": [f"{ECHO_VOLUME_PATH}/echo", "Image pulled successfully!"],
            "volumeMounts": [volume_mount],
            "imagePullPolicy": pull_policy,
        }],
        "volumes": [{"name": ECHO_VOLUME_NAME, "emptyDir": {}}],
    }
    if cache.image_pull_secrets:
        pod_spec["imagePullSecrets"] = [{"name": secret} for secret in cache.image_pull_secrets]
    return _job_envelope(cache, node, namespace, pod_spec, active_deadline_seconds, service_account_name)


def runtime_delete_command(runtime_version: str, image: str) -> tuple[list[str], str]:
    """Pick the image removal command and socket for a container runtime.

    Args:
        runtime_version: Node runtime version, e.g. ``containerd://1.7.2``.
        image: Image reference to remove.

    Returns:
        Tuple of (command, runtime_socket_path).
    """
    if runtime_version.startswith("docker://"):
        return ["docker", "image", "rm", image], DOCKER_SOCKET_PATH
    socket = CRIO_SOCKET_PATH if runtime_version.startswith("cri-o://") else CONTAINERD_SOCKET_PATH
    endpoint = f"unix://{socket}"
    command = ["crictl", f"--runtime-endpoint={endpoint}", f"--image-endpoint={endpoint}", "rmi", image]
    return command, socket


def new_image_delete_job(
    cache: ImageCacheRef,
    image: str,
    node: NodeRef,
    runtime_version: str,
    *,
    namespace: str,
    cri_client_image: str,
    service_account_name: str | None = None,
    active_deadline_seconds: int | None = None,
) -> dict:
    """Build the Job manifest that removes ``image`` from ``node``."""
    if not image:
        raise ValueError("image name is empty")
    command, socket = runtime_delete_command(runtime_version, image)
    pod_spec: dict[str, Any] = {
        "containers": [{
            "name": DELETE_CONTAINER_NAME,
            "image": cri_client_image,
            "command": command,
            "volumeMounts": [{"name": RUNTIME_SOCKET_VOLUME_NAME, "mountPath": socket}],
            "imagePullPolicy": "IfNotPresent",
        }],
        "volumes": [{
            "name": RUNTIME_SOCKET_VOLUME_NAME,
            "hostPath": {"path": socket, "type": "Socket"},
        }],
    }
    return _job_envelope(cache, node, namespace, pod_spec, active_deadline_seconds, service_account_name)


# ============================================================================
# Kubernetes client
# ============================================================================

def load_kube_config() -> client.ApiClient:
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
    except ConfigException:
        config.load_kube_config()
    return client.ApiClient()


def _selector(values: dict[str, str]) -> str:
    return ",".join(f"{key}={value}" for key, value in values.items())


def job_deadline_seconds(deadline: float) -> int:
    """Job ``activeDeadlineSeconds`` for a pull deadline, at least one second."""
    return max(1, math.ceil(deadline))


@contextmanager
def _api_errors(operation: str) -> Iterator[None]:
    """Re-raise API and transport failures of ``operation`` as :class:`JobClientError`."""
    try:
        yield
    except ApiException as e:
        raise JobClientError(operation, str(e.reason), e.status) from e
    except HTTPError as e:
        # Connection refused, timeouts and exhausted urllib3 retries.
        raise JobClientError(operation, str(e)) from e


class KubeJobClient:
    """:class:`JobClient` backed by the Kubernetes API.

    Every :class:`ApiException` and every urllib3 transport error is
    re-raised as :class:`JobClientError`, so callers retry both alike.
    """

    def __init__(self, api_client: client.ApiClient, cfg: ManagerConfig) -> None:
        self._batch = client.BatchV1Api(api_client)
        self._core = client.CoreV1Api(api_client)
        self._cfg = cfg

    @property
    def namespace(self) -> str:
        return self._cfg.namespace

    def _create_job(self, manifest: dict, node: NodeRef) -> str:
        try:
            with _api_errors(f"creating job in node {node.hostname}"):
                job = self._batch.create_namespaced_job(namespace=self.namespace, body=manifest)
        except JobClientError as e:
            logger.error("%s", e)
            raise
        return job.metadata.name

    def create_pull_job(self, cache: ImageCacheRef, image: str, node: NodeRef, pull_policy: str) -> str:
        manifest = new_image_pull_job(
            cache, image, node, pull_policy,
            namespace=self.namespace,
            busybox_image=self._cfg.busybox_image,
            service_account_name=self._cfg.service_account_name,
            active_deadline_seconds=job_deadline_seconds(self._cfg.image_pull_deadline_seconds),
        )
        return self._create_job(manifest, node)

    def create_delete_job(self, cache: ImageCacheRef, image: str, node: NodeRef, runtime_version: str) -> str:
        manifest = new_image_delete_job(
            cache, image, node, runtime_version,
            namespace=self.namespace,
            cri_client_image=self._cfg.cri_client_image,
            service_account_name=self._cfg.service_account_name,
            active_deadline_seconds=job_deadline_seconds(self._cfg.image_pull_deadline_seconds),
        )
        return self._create_job(manifest, node)

    def list_pods(self, job: str) -> list[Any]:
        with _api_errors(f"listing pods of job {job}"):
            pods = self._core.list_namespaced_pod(
                namespace=self.namespace, label_selector=_selector({LABEL_JOB_NAME: job})
            )
        return list(pods.items)

    def list_failure_events(self, pod_name: str) -> list[Any]:
        field_selector = _selector({
            "involvedObject.kind": "Pod",
            "involvedObject.name": pod_name,
            "involvedObject.namespace": self.namespace,
            "reason": FAILED_EVENT_REASON,
        })
        with _api_errors(f"listing events for pod {pod_name}"):
            events = self._core.list_namespaced_event(namespace=self.namespace, field_selector=field_selector)
        return list(events.items)

    def delete_job(self, job: str) -> None:
        try:
            with _api_errors(f"deleting job {job}"):
                self._batch.delete_namespaced_job(
                    name=job, namespace=self.namespace, propagation_policy="Background"
                )
        except JobClientError as e:
            if e.status == 404:
                logger.debug("Job %s already deleted", job)
                return
            raise

    def image_present_on_node(self, image: str, node: NodeRef) -> bool:
        with _api_errors(f"reading node {node.name}"):
            v1node = self._core.read_node(name=node.name)
        images = (v1node.status.images if v1node.status else None) or []
        return any(image_in_names(image, container_image.names or []) for container_image in images)

    def list_nodes(self, label_selector: str | None = None) -> list[Any]:
        with _api_errors("listing nodes"):
            nodes = self._core.list_node(label_selector=label_selector)
        return list(nodes.items)
