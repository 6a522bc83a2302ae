from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from conftest import FakeJobClient, make_event, make_pod
from imagecache_manager.errors import (
    ImageCacheNotFoundError,
    JobClientError,
    PodMatchError,
    ReconcileCancelledError,
)
from imagecache_manager.observer import PodStatusObserver
from imagecache_manager.reconciler import DeadlineReconciler
from imagecache_manager.status_table import WorkStatusTable
from imagecache_manager.types import (
    RealJob,
    SyntheticJob,
    WorkQueueKey,
    WorkResult,
    WorkResultStatus,
    WorkType,
)
from imagecache_manager.workqueue import RateLimitingQueue


def _reconciler(table, job_client, deadline=0.2, stop_event=None):
    status_queue = RateLimitingQueue("status")
    reconciler = DeadlineReconciler(
        table, job_client, status_queue, deadline=deadline, poll_interval=0.02,
        stop_event=stop_event or threading.Event(),
    )
    return reconciler, status_queue


def _seed(table, item, job, status=WorkResultStatus.JOB_CREATED):
    table.set(job, WorkResult(item=item, status=status))
    return job


def test_deadline_resolves_outstanding_job_and_reports(job_client, pull_item) -> None:
    table = WorkStatusTable()
    done = _seed(table, pull_item, RealJob("ic1-0"), WorkResultStatus.SUCCEEDED)
    synthetic = _seed(table, pull_item, SyntheticJob.generate(), WorkResultStatus.ALREADY_PULLED)
    stuck = _seed(table, pull_item, RealJob("ic1-1"))
    job_client.pods["ic1-1"] = [make_pod("ic1-1-xyz", job="ic1-1", waiting=("ErrImagePull", "not found"))]
    job_client.events["ic1-1-xyz"] = [make_event("ic1-1-xyz", "Failed to pull image")]
    reconciler, status_queue = _reconciler(table, job_client)

    update = reconciler.run(pull_item.cache)

    assert update.work_type == WorkType.STATUS_UPDATE
    assert update.obj_key == "kube-fledged/ic1"
    assert set(update.status) == {done.name, synthetic.name, stuck.name}
    failed = update.status[stuck.name]
    assert failed.status == WorkResultStatus.FAILED
    assert failed.reason == "ErrImagePull"
    assert failed.message == "not found:Failed to pull image"
    assert update.status[done.name].status == WorkResultStatus.SUCCEEDED
    assert update.status[synthetic.name].status == WorkResultStatus.ALREADY_PULLED

    assert sorted(job_client.deleted) == ["ic1-0", "ic1-1"]
    assert len(table) == 0
    assert status_queue.get(timeout=1) == (update, False)


def test_returns_early_once_all_jobs_finish(job_client, pull_item) -> None:
    table = WorkStatusTable()
    job = _seed(table, pull_item, RealJob("ic1-0"))
    reconciler, _ = _reconciler(table, job_client, deadline=10)

    timer = threading.Timer(0.05, lambda: table.resolve(job, lambda r: replace(r, status=WorkResultStatus.SUCCEEDED)))
    timer.start()
    start = time.monotonic()
    update = reconciler.run(pull_item.cache)

    assert time.monotonic() - start < 5
    assert update.status["ic1-0"].status == WorkResultStatus.SUCCEEDED
    assert job_client.list_pods_calls == []


@pytest.mark.parametrize(
    ("containers", "reason", "message"),
    [
        (2, "Pending", "Check if node is ready"),
        (1, "DeadlineExceeded", "Job did not complete within 0.2s"),
    ],
)
def test_pending_pod_without_detail(job_client, pull_item, containers, reason, message) -> None:
    table = WorkStatusTable()
    _seed(table, pull_item, RealJob("ic1-0"))
    job_client.pods["ic1-0"] = [make_pod("ic1-0-a", job="ic1-0", containers=containers)]
    reconciler, _ = _reconciler(table, job_client)

    update = reconciler.run(pull_item.cache)

    assert (update.status["ic1-0"].reason, update.status["ic1-0"].message) == (reason, message)


def test_purge_does_not_collect_events(job_client, pull_item) -> None:
    table = WorkStatusTable()
    purge_item = replace(pull_item, work_type=WorkType.PURGE)
    _seed(table, purge_item, RealJob("ic1-0"))
    job_client.pods["ic1-0"] = [make_pod("ic1-0-a", job="ic1-0", waiting=("ContainerCreating", ""))]
    job_client.events["ic1-0-a"] = [make_event("ic1-0-a", "should not appear")]
    reconciler, _ = _reconciler(table, job_client)

    update = reconciler.run(pull_item.cache)

    assert update.status["ic1-0"].reason == "ContainerCreating"
    assert update.status["ic1-0"].message == ""


@pytest.mark.parametrize("pod_count", [0, 2])
def test_pod_mismatch_leaves_table_untouched(job_client, pull_item, pod_count) -> None:
    table = WorkStatusTable()
    _seed(table, pull_item, RealJob("ic1-0"))
    job_client.pods["ic1-0"] = [make_pod(f"ic1-0-{n}", job="ic1-0") for n in range(pod_count)]
    reconciler, status_queue = _reconciler(table, job_client)

    with pytest.raises(PodMatchError) as excinfo:
        reconciler.run(pull_item.cache)

    assert excinfo.value.count == pod_count
    assert table.get(RealJob("ic1-0")).status == WorkResultStatus.JOB_CREATED
    assert job_client.deleted == []
    assert len(status_queue) == 0


def test_observer_resolution_wins_over_forced_failure(pull_item) -> None:
    table = WorkStatusTable()
    job = _seed(table, pull_item, RealJob("ic1-0"))

    class RacingJobClient(FakeJobClient):
        def list_pods(self, job_name):
            # The pod finishes between the deadline and the forced resolution.
            table.resolve(job, lambda r: replace(r, status=WorkResultStatus.SUCCEEDED))
            return super().list_pods(job_name)

    job_client = RacingJobClient()
    job_client.pods["ic1-0"] = [make_pod("ic1-0-a", job="ic1-0")]
    reconciler, _ = _reconciler(table, job_client)

    update = reconciler.run(pull_item.cache)

    assert update.status["ic1-0"].status == WorkResultStatus.SUCCEEDED


def test_delete_failure_aborts_without_status_update(job_client, pull_item) -> None:
    table = WorkStatusTable()
    _seed(table, pull_item, RealJob("ic1-0"), WorkResultStatus.SUCCEEDED)
    _seed(table, pull_item, RealJob("ic1-1"), WorkResultStatus.SUCCEEDED)
    job_client.delete_failures.add("ic1-0")
    reconciler, status_queue = _reconciler(table, job_client)

    with pytest.raises(JobClientError):
        reconciler.run(pull_item.cache)

    assert RealJob("ic1-0") in table
    assert RealJob("ic1-1") in table
    assert len(status_queue) == 0


def test_unknown_cache_raises(job_client, pull_item) -> None:
    reconciler, status_queue = _reconciler(WorkStatusTable(), job_client)

    with pytest.raises(ImageCacheNotFoundError):
        reconciler.run(pull_item.cache)
    assert len(status_queue) == 0


def test_stop_cancels_wait(job_client, pull_item) -> None:
    table = WorkStatusTable()
    _seed(table, pull_item, RealJob("ic1-0"))
    stop = threading.Event()
    reconciler, status_queue = _reconciler(table, job_client, deadline=30, stop_event=stop)

    threading.Timer(0.05, stop.set).start()
    start = time.monotonic()
    with pytest.raises(ReconcileCancelledError):
        reconciler.run(pull_item.cache)

    assert time.monotonic() - start < 5
    assert job_client.list_pods_calls == []
    assert len(status_queue) == 0


def test_status_updates_are_never_merged() -> None:
    first = WorkQueueKey(WorkType.STATUS_UPDATE, "kube-fledged/ic1", {})
    second = WorkQueueKey(WorkType.STATUS_UPDATE, "kube-fledged/ic1", {})
    queue = RateLimitingQueue("status")
    queue.add(first)
    queue.add(second)
    assert len(queue) == 2


def test_two_finish_one_expires(job_client, pull_item) -> None:
    table = WorkStatusTable()
    jobs = [_seed(table, pull_item, RealJob(f"ic1-{n}")) for n in range(3)]
    job_client.pods["ic1-2"] = [make_pod("ic1-2-a", job="ic1-2", phase="Running")]
    observer = PodStatusObserver(table)

    def finish() -> None:
        for job in jobs[:2]:
            observer.handle_pod_status_change(make_pod(f"{job.name}-a", job=job.name, phase="Succeeded"))

    threading.Timer(0.05, finish).start()
    reconciler, _ = _reconciler(table, job_client, deadline=0.5)

    update = reconciler.run(pull_item.cache)

    assert len(update.status) == 3
    assert update.status["ic1-0"].status == WorkResultStatus.SUCCEEDED
    assert update.status["ic1-1"].status == WorkResultStatus.SUCCEEDED
    expired = update.status["ic1-2"]
    assert expired.status == WorkResultStatus.FAILED
    assert expired.reason
    assert job_client.list_pods_calls == ["ic1-2"]
    assert sorted(job_client.deleted) == ["ic1-0", "ic1-1", "ic1-2"]


def test_delete_failure_midway_keeps_remaining_jobs(job_client, pull_item) -> None:
    table = WorkStatusTable()
    _seed(table, pull_item, RealJob("ic1-0"), WorkResultStatus.SUCCEEDED)
    _seed(table, pull_item, RealJob("ic1-1"), WorkResultStatus.SUCCEEDED)
    _seed(table, pull_item, RealJob("ic1-2"), WorkResultStatus.SUCCEEDED)
    job_client.delete_failures.add("ic1-1")
    reconciler, status_queue = _reconciler(table, job_client)

    with pytest.raises(JobClientError):
        reconciler.run(pull_item.cache)

    assert job_client.deleted == ["ic1-0"]
    assert RealJob("ic1-0") not in table
    assert RealJob("ic1-1") in table
    assert RealJob("ic1-2") in table
    assert len(status_queue) == 0


@pytest.mark.parametrize(("level", "dumped"), [(logging.INFO, False), (logging.DEBUG, True)])
def test_table_dump_only_built_for_debug_logging(job_client, pull_item, caplog, level, dumped) -> None:
    caplog.set_level(level, logger="imagecache_manager")
    table = WorkStatusTable()
    _seed(table, pull_item, RealJob("ic1-0"))
    job_client.pods["ic1-0"] = [make_pod("ic1-0-a", job="ic1-0", waiting=("ErrImagePull", "denied"))]
    table.dump = MagicMock(return_value={})
    reconciler, _ = _reconciler(table, job_client)

    reconciler.resolve_pending(pull_item.cache.key)

    assert table.get(RealJob("ic1-0")).status == WorkResultStatus.FAILED
    assert table.dump.called is dumped
