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

"""One-shot cache sync: enqueue work for an image cache and wait for its status."""

from __future__ import annotations

import threading
import time
from collections.abc import Iterable, Mapping
from typing import Any

from kubernetes import client
from rich.panel import Panel
from rich.table import Table

from imagecache_manager import console, logger
from imagecache_manager.config import ManagerConfig
from imagecache_manager.constants import STATUS_WAIT_GRACE_SECONDS
from imagecache_manager.errors import ImageManagerError
from imagecache_manager.jobs import JobClient
from imagecache_manager.manager import ImageManager
from imagecache_manager.types import (
    ImageCacheRef,
    NodeRef,
    WorkItem,
    WorkQueueKey,
    WorkResult,
    WorkResultStatus,
    WorkType,
)
from imagecache_manager.workqueue import RateLimitingQueue


def node_targets(nodes: Iterable[Any]) -> list[tuple[NodeRef, str]]:
    """Turn ``V1Node`` objects into (node, container runtime version) pairs."""
    targets = []
    for node in nodes:
        node_info = node.status.node_info if node.status is not None else None
        runtime = node_info.container_runtime_version if node_info is not None else ""
        targets.append((NodeRef.from_node(node), runtime or ""))
    return targets


def build_work_items(
    cache: ImageCacheRef,
    images: Iterable[str],
    targets: Iterable[tuple[NodeRef, str]],
    work_type: WorkType,
) -> list[WorkItem]:
    """One work item per image and node, followed by the flush item.

    Args:
        cache: Image cache the work belongs to.
        images: Image references.
        targets: (node, runtime version) pairs.
        work_type: ``create``/``refresh`` to pull, ``purge`` to delete.

    Returns:
        Work items in enqueue order, ending with the flush item.
    """
    targets = list(targets)
    items = [
        WorkItem(cache=cache, work_type=work_type, image=image, node=node, container_runtime_version=runtime)
        for image in images
        for node, runtime in targets
    ]
    items.append(WorkItem.flush(cache, work_type))
    return items


def wait_for_status(status_queue: RateLimitingQueue, cache_key: str, timeout: float) -> WorkQueueKey:
    """Block until the status update of ``cache_key`` arrives.

    Raises:
        ImageManagerError: If nothing arrives within ``timeout`` seconds.
    """
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ImageManagerError(f"no status update for image cache {cache_key} within {timeout}s")
        item, shutdown = status_queue.get(timeout=remaining)
        if shutdown:
            raise ImageManagerError("status queue shut down")
        if item is None:
            continue
        status_queue.done(item)
        status_queue.forget(item)
        if isinstance(item, WorkQueueKey) and item.work_type == WorkType.STATUS_UPDATE and item.obj_key == cache_key:
            return item
        logger.warning("Ignoring unexpected item on status queue: %r", item)


def run_cache_sync(
    cache: ImageCacheRef,
    images: Iterable[str],
    targets: Iterable[tuple[NodeRef, str]],
    work_type: WorkType,
    cfg: ManagerConfig,
    job_client: JobClient,
    core_api: client.CoreV1Api | None = None,
    stop_event: threading.Event | None = None,
) -> Mapping[str, WorkResult]:
    """Run the image manager for one round of work on ``cache``.

    Acts as a minimal reconciliation loop: enqueues the work, waits for the
    status update and stops the manager.

    Returns:
        Snapshot of work results keyed by job name.

    Raises:
        ImageManagerError: If no status update arrives in time.
    """
    status_queue = RateLimitingQueue("imagecache")
    manager = ImageManager(cfg, status_queue, job_client, core_api=core_api, stop_event=stop_event)
    manager.start()
    try:
        items = build_work_items(cache, images, targets, work_type)
        console.print(f"[yellow]ℹ️  Enqueueing {len(items) - 1} work items for {cache.key}...[/yellow]")
        for item in items:
            manager.enqueue(item)
        with console.status(f"Waiting for jobs of {cache.key}..."):
            update = wait_for_status(
                status_queue, cache.key, cfg.image_pull_deadline_seconds + STATUS_WAIT_GRACE_SECONDS
            )
    finally:
        manager.shutdown()
    return update.status or {}


def display_results(results: Mapping[str, WorkResult]) -> int:
    """Print work results as a table.

    Returns:
        Number of failed results.
    """
    console.print(Panel.fit("Results", style="bold blue"))
    table = Table()
    for column in ("Job", "Image", "Node", "Status", "Reason", "Message"):
        table.add_column(column)
    failures = 0
    for job, result in sorted(results.items(), key=lambda kv: (kv[1].item.image, kv[1].item.node.hostname)):
        failed = result.status == WorkResultStatus.FAILED
        failures += failed
        style = "red" if failed else "green"
        table.add_row(
            job,
            result.item.image,
            result.item.node.hostname,
            f"[{style}]{result.status.value}[/{style}]",
            result.reason,
            result.message,
        )
    console.print(table)
    return failures
