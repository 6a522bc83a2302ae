"""Shared fixtures for the image manager test suite.

Ensures the project root is on sys.path so tests can import ``cli`` and
``imagecache_manager`` without installing the project, and provides an
in-memory job client plus builders for Kubernetes pod objects.
"""

from __future__ import annotations

import itertools
import sys
import threading
from pathlib import Path

import pytest
from kubernetes import client

PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from imagecache_manager.constants import LABEL_JOB_NAME  # noqa: E402
from imagecache_manager.errors import JobClientError  # noqa: E402
from imagecache_manager.types import ImageCacheRef, NodeRef, WorkItem, WorkType  # noqa: E402


def make_pod(
    name: str,
    job: str | None = None,
    phase: str = "Pending",
    resource_version: str = "1",
    waiting: tuple[str, str] | None = None,
    terminated: tuple[str, str] | None = None,
    containers: int = 1,
) -> client.V1Pod:
    """Build a ``V1Pod`` with one container status per container."""
    state = client.V1ContainerState()
    if waiting is not None:
        state.waiting = client.V1ContainerStateWaiting(reason=waiting[0], message=waiting[1])
    if terminated is not None:
        state.terminated = client.V1ContainerStateTerminated(
            exit_code=1, reason=terminated[0], message=terminated[1]
        )
    statuses = [
        client.V1ContainerStatus(
            name=f"c{idx}", image="img", image_id="", ready=False, restart_count=0, state=state
        )
        for idx in range(containers)
    ]
    labels = {LABEL_JOB_NAME: job} if job else {}
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=name, labels=labels, resource_version=resource_version),
        status=client.V1PodStatus(phase=phase, container_statuses=statuses),
    )


def make_event(pod_name: str, message: str) -> client.CoreV1Event:
    return client.CoreV1Event(
        metadata=client.V1ObjectMeta(name=f"{pod_name}.event"),
        involved_object=client.V1ObjectReference(kind="Pod", name=pod_name),
        reason="Failed",
        message=message,
    )


class FakeJobClient:
    """In-memory :class:`~imagecache_manager.jobs.JobClient`."""

    def __init__(self) -> None:
        self._names = itertools.count()
        self._lock = threading.Lock()
        self.created: list[tuple[str, WorkType, str, str]] = []
        self.deleted: list[str] = []
        self.pods: dict[str, list[client.V1Pod]] = {}
        self.events: dict[str, list[client.CoreV1Event]] = {}
        self.present: set[tuple[str, str]] = set()
        self.create_failures = 0
        self.delete_failures: set[str] = set()
        self.list_pods_calls: list[str] = []
        self.presence_checks = 0

    def _new_name(self, cache: ImageCacheRef) -> str:
        with self._lock:
            if self.create_failures:
                self.create_failures -= 1
                raise JobClientError("creating job", "boom", 500)
            return f"{cache.name}-{next(self._names)}"

    def create_pull_job(self, cache, image, node, pull_policy):
        name = self._new_name(cache)
        self.created.append((name, WorkType.CREATE, image, node.hostname))
        return name

    def create_delete_job(self, cache, image, node, runtime_version):
        name = self._new_name(cache)
        self.created.append((name, WorkType.PURGE, image, node.hostname))
        return name

    def list_pods(self, job):
        self.list_pods_calls.append(job)
        return list(self.pods.get(job, []))

    def list_failure_events(self, pod_name):
        return list(self.events.get(pod_name, []))

    def delete_job(self, job):
        if job in self.delete_failures:
            raise JobClientError(f"deleting job {job}", "forbidden", 403)
        self.deleted.append(job)

    def image_present_on_node(self, image, node):
        self.presence_checks += 1
        return (image, node.name) in self.present


@pytest.fixture
def job_client() -> FakeJobClient:
    return FakeJobClient()


@pytest.fixture
def cache() -> ImageCacheRef:
    return ImageCacheRef(namespace="kube-fledged", name="ic1")


@pytest.fixture
def node() -> NodeRef:
    return NodeRef(name="worker-1", hostname="worker-1")


@pytest.fixture
def pull_item(cache, node) -> WorkItem:
    return WorkItem(cache=cache, work_type=WorkType.CREATE, image="nginx:1.25", node=node,
                    container_runtime_version="containerd://1.7.2")
