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

"""Dispatcher draining the image work queue into pull/delete jobs."""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor

from imagecache_manager import logger
from imagecache_manager.errors import ImageManagerError
from imagecache_manager.images import image_needs_pull
from imagecache_manager.jobs import JobClient
from imagecache_manager.reconciler import DeadlineReconciler
from imagecache_manager.status_table import WorkStatusTable
from imagecache_manager.types import (
    ImageCacheRef,
    JobRef,
    RealJob,
    SyntheticJob,
    WorkItem,
    WorkResult,
    WorkResultStatus,
)
from imagecache_manager.workqueue import RateLimitingQueue


class Dispatcher:
    """Turns work items into jobs and starts deadline reconciler runs.

    Args:
        queue: Image work queue; consumed exclusively by dispatchers.
        table: Shared work status table.
        job_client: Cluster operations.
        reconciler: Runs the completion protocol of one image cache.
        executor: Runs reconciler runs off the dispatch loop.
        image_pull_policy: ``Always`` or ``IfNotPresent``.
        max_retries: Retries of a failed item before it is dropped.
        flush_retry_delay: Delay before a flush item is retried while a run
            for the same image cache is still in flight.
    """

    def __init__(
        self,
        queue: RateLimitingQueue,
        table: WorkStatusTable,
        job_client: JobClient,
        reconciler: DeadlineReconciler,
        executor: ThreadPoolExecutor,
        image_pull_policy: str,
        max_retries: int,
        flush_retry_delay: float,
    ) -> None:
        self._queue = queue
        self._table = table
        self._job_client = job_client
        self._reconciler = reconciler
        self._executor = executor
        self._image_pull_policy = image_pull_policy
        self._max_retries = max_retries
        self._flush_retry_delay = flush_retry_delay
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()

    def run_worker(self) -> None:
        """Process items until the queue shuts down."""
        while self.process_next_work_item():
            pass

    def process_next_work_item(self) -> bool:
        """Take one item off the queue and handle it.

        Returns:
            False once the queue is shutting down, True otherwise.
        """
        item, shutdown = self._queue.get()
        if shutdown:
            return False
        if item is None:
            return True
        try:
            self._process(item)
        finally:
            self._queue.done(item)
        return True

    def _process(self, item: object) -> None:
        if not isinstance(item, WorkItem):
            # Retrying an item of the wrong type can never succeed.
            self._queue.forget(item)
            logger.error("Unexpected type in image work queue: %r", item)
            return

        if item.is_flush:
            self._queue.forget(item)
            self.start_reconcile(item)
            return

        if not item.image or item.node is None:
            self._queue.forget(item)
            logger.error("Work item needs both image and node, discarding: %r", item)
            return

        try:
            self.dispatch(item)
        except (ImageManagerError, ValueError) as err:
            self._handle_error(item, err)
            return
        self._queue.forget(item)

    def _handle_error(self, item: WorkItem, err: Exception) -> None:
        if self._queue.num_requeues(item) < self._max_retries:
            logger.warning("Error processing %s, retrying: %s", item.describe(), err)
            self._queue.add_rate_limited(item)
            return
        logger.error("Dropping %s after %d retries: %s", item.describe(), self._max_retries, err)
        self._queue.forget(item)

    def dispatch(self, item: WorkItem) -> JobRef:
        """Create the job ``item`` needs, or record that none is needed.

        Args:
            item: Concrete work item (image and node set).

        Returns:
            Identifier the result was recorded under.

        Raises:
            JobClientError: If the job cannot be created or the node cannot
                be inspected; nothing is recorded in that case.
        """
        if item.is_purge:
            name = self._job_client.create_delete_job(
                item.cache, item.image, item.node, item.container_runtime_version
            )
            job: JobRef = RealJob(name)
            logger.info("Job %s created (%s)", job, item.describe())
            self._table.set(job, WorkResult(item=item, status=WorkResultStatus.JOB_CREATED))
            return job

        pull = image_needs_pull(
            self._image_pull_policy,
            item.image,
            lambda: self._job_client.image_present_on_node(item.image, item.node),
        )
        if pull:
            name = self._job_client.create_pull_job(item.cache, item.image, item.node, self._image_pull_policy)
            job = RealJob(name)
            logger.info("Job %s created (%s)", job, item.describe())
            self._table.set(job, WorkResult(item=item, status=WorkResultStatus.JOB_CREATED))
            return job

        job = SyntheticJob.generate()
        logger.info("Job not created (image-already-present:- %s --> %s, runtime: %s)",
                    item.image, item.node.hostname, item.container_runtime_version)
        self._table.set(job, WorkResult(item=item, status=WorkResultStatus.ALREADY_PULLED))
        return job

    # -- reconciler runs --

    def start_reconcile(self, item: WorkItem) -> Future | None:
        """Start a deadline reconciler run for the image cache of ``item``.

        Only one run per image cache is in flight at a time; a flush item
        arriving while one is running is retried after a short delay.

        Returns:
            Future completing with the run outcome, or None if deferred.
        """
        cache = item.cache
        with self._in_flight_lock:
            if cache.key in self._in_flight:
                logger.info("Status update for image cache %s already running, deferring", cache.key)
                self._queue.add_after(item, self._flush_retry_delay)
                return None
            self._in_flight.add(cache.key)

        try:
            future = self._executor.submit(self._reconciler.run, cache)
        except RuntimeError:
            # Executor already shut down, the manager is stopping.
            with self._in_flight_lock:
                self._in_flight.discard(cache.key)
            logger.warning("Not updating status of image cache %s: shutting down", cache.key)
            return None
        future.add_done_callback(lambda done: self._reconcile_finished(cache, done))
        return future

    def _reconcile_finished(self, cache: ImageCacheRef, future: Future) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(cache.key)
        if future.cancelled():
            logger.warning("Status update for image cache %s cancelled", cache.key)
            return
        err = future.exception()
        if err is not None:
            logger.error("Error updating status of image cache %s: %s", cache.key, err)
        else:
            logger.debug("Status update for image cache %s completed", cache.key)
