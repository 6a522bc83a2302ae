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

"""Deadline reconciler: waits for the jobs of one image cache and reports.

One run per flush item:

1. poll the status table until no job of the image cache is still in
   ``jobcreated`` or the pull deadline elapses,
2. resolve every job still outstanding to ``failed`` using what its pod
   and events say,
3. move all results of the image cache out of the table, deleting the
   real jobs on the way,
4. hand one ``statusupdate`` item with the snapshot to the reconciliation
   loop.

Any cluster error ends the run; the caller sees it through the future the
run was submitted on.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Any

from tenacity import (
    RetryError,
    Retrying,
    retry_if_result,
    stop_after_delay,
    stop_when_event_set,
    wait_fixed,
)

from imagecache_manager import logger
from imagecache_manager.constants import (
    EVENT_MESSAGE_SEPARATOR,
    EXPIRED_REASON,
    PENDING_MESSAGE,
    PENDING_REASON,
    POD_PENDING,
)
from imagecache_manager.errors import JobClientError, PodMatchError, ReconcileCancelledError
from imagecache_manager.jobs import JobClient
from imagecache_manager.status_table import WorkStatusTable
from imagecache_manager.types import (
    ImageCacheRef,
    JobRef,
    RealJob,
    WorkQueueKey,
    WorkResult,
    WorkResultStatus,
    WorkType,
)
from imagecache_manager.workqueue import RateLimitingQueue


def _pending_state_detail(pod: Any) -> tuple[str, str] | None:
    """Reason and message explaining why ``pod`` is still pending."""
    statuses = pod.status.container_statuses or []
    if len(statuses) != 1:
        return PENDING_REASON, PENDING_MESSAGE
    state = statuses[0].state
    detail = None
    if state is not None and state.waiting is not None:
        detail = state.waiting.reason or "", state.waiting.message or ""
    if state is not None and state.terminated is not None:
        detail = state.terminated.reason or "", state.terminated.message or ""
    return detail


class DeadlineReconciler:
    """Completion protocol for the jobs of one image cache.

    Args:
        table: Shared work status table.
        job_client: Cluster operations.
        status_queue: The reconciliation loop's queue receiving status updates.
        deadline: Seconds to wait for outstanding jobs.
        poll_interval: Seconds between completion checks.
        stop_event: Set when the manager shuts down.
    """

    def __init__(
        self,
        table: WorkStatusTable,
        job_client: JobClient,
        status_queue: RateLimitingQueue,
        deadline: float,
        poll_interval: float,
        stop_event: threading.Event,
    ) -> None:
        self._table = table
        self._job_client = job_client
        self._status_queue = status_queue
        self._deadline = deadline
        self._poll_interval = poll_interval
        self._stop = stop_event

    def run(self, cache: ImageCacheRef) -> WorkQueueKey:
        """Wait for, resolve, collect and report the jobs of ``cache``.

        Returns:
            The status update placed on the reconciliation loop's queue.

        Raises:
            ReconcileCancelledError: If the manager stopped meanwhile.
            PodMatchError: If an outstanding job has zero or several pods.
            JobClientError: If listing pods/events or deleting a job failed.
            ImageCacheNotFoundError: If no result references ``cache``.
        """
        self.wait_for_jobs(cache.key)
        self.resolve_pending(cache.key)
        self._check_stopped(cache.key)

        snapshot = self._table.snapshot_and_clear_for(cache.key, release=self._delete_job)
        update = WorkQueueKey(work_type=WorkType.STATUS_UPDATE, obj_key=cache.key, status=snapshot)
        self._status_queue.add(update)
        logger.info("Status update queued for image cache %s (%d results)", cache.key, len(snapshot))
        return update

    def _check_stopped(self, cache_key: str) -> None:
        if self._stop.is_set():
            raise ReconcileCancelledError(f"stopped while updating status of image cache {cache_key}")

    # -- waiting --

    def wait_for_jobs(self, cache_key: str) -> bool:
        """Poll until no job of ``cache_key`` is outstanding or the deadline passes.

        Returns:
            True if all jobs finished, False if the deadline elapsed.

        Raises:
            ReconcileCancelledError: If the stop event fired while waiting.
        """
        retryer = Retrying(
            stop=stop_after_delay(self._deadline) | stop_when_event_set(self._stop),
            wait=wait_fixed(self._poll_interval),
            retry=retry_if_result(lambda done: not done),
            sleep=self._stop.wait,
        )
        try:
            retryer(lambda: not self._table.has_pending(cache_key))
        except RetryError:
            self._check_stopped(cache_key)
            logger.info("Image pull deadline (%ss) elapsed for image cache %s", self._deadline, cache_key)
            return False
        logger.debug("All jobs of image cache %s finished", cache_key)
        return True

    # -- forced resolution --

    def resolve_pending(self, cache_key: str) -> list[JobRef]:
        """Resolve every job of ``cache_key`` still in ``jobcreated`` to failed.

        Nothing is written unless every outstanding job could be resolved.
        Jobs the pod status observer resolved in the meantime keep the
        observer's result.

        Returns:
            Jobs whose results were overwritten.
        """
        pending = self._table.pending(cache_key)
        resolutions = {job: self._expire(job, result) for job, result in pending.items()}
        applied = self._table.resolve_all(resolutions)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Work status table after resolution: %s", self._table.dump())
        return applied

    def _expire(self, job: JobRef, result: WorkResult) -> WorkResult:
        pods = self._job_client.list_pods(job.name)
        if len(pods) != 1:
            err = PodMatchError(job.name, len(pods))
            logger.error("%s", err)
            raise err
        pod = pods[0]

        logger.info("Job %s expired (%s)", job, result.item.describe())
        reason, message = result.reason, result.message
        if pod.status.phase == POD_PENDING:
            detail = _pending_state_detail(pod)
            if detail is not None:
                reason, message = detail
        if not reason:
            reason = EXPIRED_REASON
            message = f"Job did not complete within {self._deadline}s"

        if not result.item.is_purge:
            for event in self._job_client.list_failure_events(pod.metadata.name):
                message = f"{message}{EVENT_MESSAGE_SEPARATOR}{event.message}"

        return replace(result, status=WorkResultStatus.FAILED, reason=reason, message=message)

    # -- cleanup --

    def _delete_job(self, job: RealJob) -> None:
        try:
            self._job_client.delete_job(job.name)
        except JobClientError as err:
            logger.error("Error deleting job %s: %s", job, err)
            raise
