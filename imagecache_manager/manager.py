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

"""Image manager: wires the work engine together and runs it."""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

from kubernetes import client

from imagecache_manager import logger
from imagecache_manager.config import ManagerConfig
from imagecache_manager.constants import WORKER_RESTART_INTERVAL_SECONDS
from imagecache_manager.dispatcher import Dispatcher
from imagecache_manager.errors import ImageManagerError
from imagecache_manager.jobs import JobClient
from imagecache_manager.observer import PodStatusObserver, PodWatcher
from imagecache_manager.reconciler import DeadlineReconciler
from imagecache_manager.status_table import WorkStatusTable
from imagecache_manager.types import WorkItem
from imagecache_manager.workqueue import RateLimitingQueue


class ImageManager:
    """Pulls and deletes images on nodes for image caches.

    Work items are added with :meth:`enqueue`; for every flush item one
    ``statusupdate`` :class:`~imagecache_manager.types.WorkQueueKey` ends up
    on ``status_queue``.

    Args:
        cfg: Resolved configuration.
        status_queue: The reconciliation loop's queue.
        job_client: Cluster operations for jobs, pods, events and nodes.
        core_api: CoreV1 API used to watch pods, or None to feed pod
            updates through :attr:`observer` directly.
        stop_event: Set to stop the manager; created if not given.
    """

    def __init__(
        self,
        cfg: ManagerConfig,
        status_queue: RateLimitingQueue,
        job_client: JobClient,
        core_api: client.CoreV1Api | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.cfg = cfg
        self.stop_event = stop_event or threading.Event()
        self.status_queue = status_queue
        self.image_queue = RateLimitingQueue(
            "imageworkqueue", cfg.queue_base_delay_seconds, cfg.queue_max_delay_seconds
        )
        self.table = WorkStatusTable()
        self.observer = PodStatusObserver(self.table)
        self.watcher: PodWatcher | None = None
        if core_api is not None:
            self.watcher = PodWatcher(
                core_api, cfg.namespace, self.observer.on_update, self.stop_event, cfg.pod_watch_timeout_seconds
            )
        self._executor = ThreadPoolExecutor(thread_name_prefix="imagecache-status")
        self.reconciler = DeadlineReconciler(
            self.table,
            job_client,
            status_queue,
            deadline=cfg.image_pull_deadline_seconds,
            poll_interval=cfg.poll_interval_seconds,
            stop_event=self.stop_event,
        )
        self.dispatcher = Dispatcher(
            self.image_queue,
            self.table,
            job_client,
            self.reconciler,
            self._executor,
            image_pull_policy=cfg.image_pull_policy,
            max_retries=cfg.max_retries,
            flush_retry_delay=cfg.poll_interval_seconds,
        )
        self._threads: list[threading.Thread] = []

    def enqueue(self, item: WorkItem) -> None:
        self.image_queue.add(item)

    def start(self) -> None:
        """Start the pod watch and the dispatcher loops without blocking.

        Raises:
            ImageManagerError: If the pod cache cannot sync before stop.
        """
        logger.info("Starting image manager")
        if self.watcher is not None:
            self._spawn("pod-watcher", self.watcher.run)
            logger.info("Waiting for informer caches to sync")
            self._wait_for_sync()
        for idx in range(self.cfg.workers):
            self._spawn(f"image-worker-{idx}", lambda: self._until_stopped(self.dispatcher.run_worker))
        logger.info("Started image manager")

    def run(self) -> None:
        """Start the manager and block until the stop event is set."""
        self.start()
        self.stop_event.wait()
        self.shutdown()

    def shutdown(self) -> None:
        logger.info("Shutting down image manager")
        self.stop_event.set()
        self.image_queue.shut_down()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def join(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout)

    def _spawn(self, name: str, target: Callable[[], None]) -> None:
        thread = threading.Thread(target=target, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _wait_for_sync(self) -> None:
        while not self.watcher.synced.wait(timeout=WORKER_RESTART_INTERVAL_SECONDS):
            if self.stop_event.is_set():
                raise ImageManagerError("failed to wait for caches to sync")

    def _until_stopped(self, fn: Callable[[], None]) -> None:
        """Run ``fn`` again every second until stop, surviving crashes."""
        while not self.stop_event.is_set():
            try:
                fn()
            except Exception:
                logger.exception("Image worker crashed, restarting")
            if self.image_queue.shutting_down:
                return
            self.stop_event.wait(WORKER_RESTART_INTERVAL_SECONDS)
