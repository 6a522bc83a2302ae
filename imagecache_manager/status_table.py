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

"""Lock-guarded table of in-flight image work results.

The table is written by two independent paths: the pod status observer
(a job's pod reached a terminal phase) and the deadline reconciler (the
deadline elapsed with the job still outstanding). Both only move an entry
out of ``jobcreated`` and both do so under the write lock, so whichever
path gets there first wins and the other becomes a no-op.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from types import MappingProxyType

from imagecache_manager import logger
from imagecache_manager.errors import ImageCacheNotFoundError, JobIdentifierConflictError
from imagecache_manager.types import JobRef, RealJob, WorkResult, WorkResultStatus


class ReadWriteLock:
    """Many concurrent readers or one writer; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            self._cond.wait_for(lambda: not self._writer and not self._writers_waiting)
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                self._cond.wait_for(lambda: not self._writer and not self._readers)
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class WorkStatusTable:
    """Mapping of job identifier to work result, safe for concurrent use.

    No method calls out to the cluster while holding the lock; callbacks
    passed to :meth:`snapshot_and_clear_for` run with the lock released.
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._results: dict[JobRef, WorkResult] = {}

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._results)

    def __contains__(self, job: object) -> bool:
        with self._lock.read():
            return job in self._results

    def get(self, job: JobRef) -> WorkResult | None:
        with self._lock.read():
            return self._results.get(job)

    def set(self, job: JobRef, result: WorkResult) -> None:
        """Record ``result`` under ``job``.

        Raises:
            JobIdentifierConflictError: If ``job`` is recorded for another cache.
        """
        with self._lock.write():
            current = self._results.get(job)
            if current is not None and current.cache_key != result.cache_key:
                raise JobIdentifierConflictError(
                    f"job {job} already belongs to image cache {current.cache_key}"
                )
            self._results[job] = result

    def delete(self, job: JobRef) -> WorkResult | None:
        with self._lock.write():
            return self._results.pop(job, None)

    def resolve(self, job: JobRef, update: Callable[[WorkResult], WorkResult]) -> WorkResult | None:
        """Apply ``update`` to ``job`` if it is still in ``jobcreated``.

        Returns:
            The stored result after the update, or None if the job is unknown
            or was already resolved.
        """
        with self._lock.write():
            current = self._results.get(job)
            if current is None or current.status != WorkResultStatus.JOB_CREATED:
                return None
            resolved = update(current)
            self._results[job] = resolved
            return resolved

    def resolve_all(self, resolutions: Mapping[JobRef, WorkResult]) -> list[JobRef]:
        """Store every resolution whose entry is still in ``jobcreated``.

        All resolutions are applied under a single write lock.

        Returns:
            Jobs whose entries were updated.
        """
        applied: list[JobRef] = []
        with self._lock.write():
            for job, resolved in resolutions.items():
                current = self._results.get(job)
                if current is None or current.status != WorkResultStatus.JOB_CREATED:
                    continue
                self._results[job] = resolved
                applied.append(job)
        return applied

    def has_pending(self, cache_key: str) -> bool:
        """Return True while any job of ``cache_key`` is in ``jobcreated``."""
        with self._lock.read():
            return any(
                result.cache_key == cache_key and result.status == WorkResultStatus.JOB_CREATED
                for result in self._results.values()
            )

    def pending(self, cache_key: str) -> dict[JobRef, WorkResult]:
        """Copy of the ``jobcreated`` entries of ``cache_key``."""
        with self._lock.read():
            return {
                job: result
                for job, result in self._results.items()
                if result.cache_key == cache_key and result.status == WorkResultStatus.JOB_CREATED
            }

    def entries_for(self, cache_key: str) -> dict[JobRef, WorkResult]:
        with self._lock.read():
            return {job: result for job, result in self._results.items() if result.cache_key == cache_key}

    def snapshot_and_clear_for(
        self,
        cache_key: str,
        release: Callable[[RealJob], None] | None = None,
    ) -> Mapping[str, WorkResult]:
        """Remove every entry of ``cache_key`` and return them as a snapshot.

        ``release`` is called for each real job before its entry is removed,
        with the lock released. If it raises, the error propagates and the
        entries not yet processed stay in the table.

        Args:
            cache_key: ``namespace/name`` of the image cache.
            release: Callback run for each real job, e.g. to delete it.

        Returns:
            Read-only mapping of job name to work result.

        Raises:
            ImageCacheNotFoundError: If no entry references ``cache_key``.
        """
        entries = self.entries_for(cache_key)
        if not entries:
            raise ImageCacheNotFoundError(f"unable to obtain reference to image cache {cache_key}")

        snapshot: dict[str, WorkResult] = {}
        for job in entries:
            if release is not None and isinstance(job, RealJob):
                release(job)
            with self._lock.write():
                result = self._results.pop(job, None)
            if result is None:
                logger.warning("Job %s vanished from the work status table", job)
                continue
            snapshot[str(job)] = result
        return MappingProxyType(snapshot)

    def dump(self) -> dict[str, WorkResult]:
        with self._lock.read():
            return {str(job): result for job, result in self._results.items()}
