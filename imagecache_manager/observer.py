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

"""Pod status observer and the pod watch feeding it."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from kubernetes import client, watch
from kubernetes.client.rest import ApiException
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_when_event_set,
    wait_exponential,
)
from urllib3.exceptions import HTTPError

from imagecache_manager import logger
from imagecache_manager.constants import (
    LABEL_JOB_NAME,
    POD_FAILED,
    POD_SUCCEEDED,
    TERMINAL_POD_PHASES,
    WATCH_RECONNECT_MAX_WAIT_SECONDS,
)
from imagecache_manager.status_table import WorkStatusTable
from imagecache_manager.types import RealJob, WorkResult, WorkResultStatus


def _phase(pod: Any) -> str | None:
    return pod.status.phase if pod.status is not None else None


class PodStatusObserver:
    """Resolves work results when their job's pod finishes."""

    def __init__(self, table: WorkStatusTable) -> None:
        self._table = table

    def on_update(self, old_pod: Any, new_pod: Any) -> None:
        """Handle a pod update notification.

        Only a transition into ``Succeeded`` or ``Failed`` from a
        non-terminal phase is acted upon. Periodic resyncs deliver updates
        with an unchanged resource version; those are ignored.
        """
        if new_pod.metadata.resource_version == old_pod.metadata.resource_version:
            return
        logger.debug("Pod %s changed status to %s", new_pod.metadata.name, _phase(new_pod))
        if _phase(new_pod) in TERMINAL_POD_PHASES and _phase(old_pod) not in TERMINAL_POD_PHASES:
            self.handle_pod_status_change(new_pod)

    def handle_pod_status_change(self, pod: Any) -> WorkResult | None:
        """Record the terminal phase of ``pod`` against its job.

        Returns:
            The updated result, or None if the job is unknown (already
            reported and cleaned up) or already resolved.
        """
        job_name = (pod.metadata.labels or {}).get(LABEL_JOB_NAME)
        if not job_name:
            return None
        job = RealJob(job_name)
        phase = _phase(pod)

        def _update(result: WorkResult) -> WorkResult:
            if phase == POD_SUCCEEDED:
                return replace(result, status=WorkResultStatus.SUCCEEDED)
            reason, message = result.reason, result.message
            statuses = pod.status.container_statuses or []
            if len(statuses) == 1 and statuses[0].state is not None and statuses[0].state.terminated is not None:
                terminated = statuses[0].state.terminated
                reason, message = terminated.reason or "", terminated.message or ""
            return replace(result, status=WorkResultStatus.FAILED, reason=reason, message=message)

        resolved = self._table.resolve(job, _update)
        if resolved is None:
            return None
        if phase == POD_SUCCEEDED:
            logger.info("Job %s succeeded (%s)", job, resolved.item.describe())
        elif phase == POD_FAILED:
            logger.info("Job %s failed (%s)", job, resolved.item.describe())
        return resolved


class _WatchExpired(Exception):
    """The watch resource version is too old; a relist is required."""


class PodWatcher:
    """Lists and watches pods in one namespace, reporting updates as (old, new).

    Keeps the last seen version of every pod so that each ``MODIFIED``
    event can be delivered together with the object it replaces.

    Args:
        core_api: CoreV1 API client.
        namespace: Namespace to watch.
        on_update: Called with (old_pod, new_pod) for every modification.
        stop_event: Stops the watch loop when set.
        timeout_seconds: Server-side timeout of each watch call.
    """

    def __init__(
        self,
        core_api: client.CoreV1Api,
        namespace: str,
        on_update: Callable[[Any, Any], None],
        stop_event: threading.Event,
        timeout_seconds: int,
    ) -> None:
        self._core = core_api
        self._namespace = namespace
        self._on_update = on_update
        self._stop = stop_event
        self._timeout = timeout_seconds
        self._pods: dict[str, Any] = {}
        self._resource_version: str | None = None
        self.synced = threading.Event()

    def run(self) -> None:
        """Watch until the stop event is set."""
        self._watch_with_retry()
        logger.info("Pod watcher stopped")

    def _watch_with_retry(self) -> None:
        @retry(
            stop=stop_when_event_set(self._stop),
            wait=wait_exponential(multiplier=1, min=1, max=WATCH_RECONNECT_MAX_WAIT_SECONDS),
            retry=retry_if_exception_type((ApiException, HTTPError, _WatchExpired)),
            sleep=self._stop.wait,
            reraise=True,
        )
        def _attempt() -> None:
            if self._resource_version is None:
                self.list_pods()
            while not self._stop.is_set():
                self._watch_once()

        try:
            _attempt()
        except (ApiException, HTTPError, _WatchExpired) as err:
            # Only reachable once the stop event is set.
            logger.debug("Pod watch ended during shutdown: %s", err)

    def list_pods(self) -> None:
        """Refresh the pod cache with a full list.

        Pods that changed since they were last seen are reported, so a
        relist after a lost watch does not drop phase transitions.
        """
        pods = self._core.list_namespaced_pod(namespace=self._namespace)
        previous = self._pods
        self._pods = {pod.metadata.name: pod for pod in pods.items}
        self._resource_version = pods.metadata.resource_version
        for name, pod in self._pods.items():
            old_pod = previous.get(name)
            if old_pod is not None:
                self._on_update(old_pod, pod)
        self.synced.set()
        logger.debug("Listed %d pods in namespace %s", len(self._pods), self._namespace)

    def _watch_once(self) -> None:
        stream = watch.Watch()
        try:
            for event in stream.stream(
                self._core.list_namespaced_pod,
                namespace=self._namespace,
                resource_version=self._resource_version,
                timeout_seconds=self._timeout,
            ):
                self.handle_event(event)
                if self._stop.is_set():
                    break
        except ApiException as err:
            if err.status == 410:
                self._resource_version = None
                raise _WatchExpired(str(err.reason)) from err
            logger.warning("Pod watch failed: %s", err.reason)
            raise
        finally:
            stream.stop()

    def handle_event(self, event: dict) -> None:
        """Apply one watch event to the pod cache and report modifications."""
        event_type = event["type"]
        pod = event["object"]
        if event_type == "ERROR":
            raw = event.get("raw_object") or {}
            if raw.get("code") == 410:
                self._resource_version = None
                raise _WatchExpired(raw.get("message", "resource version too old"))
            logger.warning("Pod watch error event: %s", raw)
            return

        self._resource_version = pod.metadata.resource_version
        name = pod.metadata.name
        if event_type == "DELETED":
            self._pods.pop(name, None)
            return
        old_pod = self._pods.get(name)
        self._pods[name] = pod
        if event_type == "MODIFIED" and old_pod is not None:
            self._on_update(old_pod, pod)
