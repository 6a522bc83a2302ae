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

"""Rate-limited work queue with per-item exponential backoff.

Semantics follow the controller work queue pattern:

* an item is never handed to two consumers at once; adding an item that is
  being processed defers it until ``done`` is called for it,
* adding an item that is already waiting is a no-op,
* ``add_rate_limited`` delays an item by an exponentially growing amount
  until ``forget`` resets its failure count,
* after ``shut_down`` the queue drains and ``get`` reports shutdown instead
  of blocking.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Hashable
from types import SimpleNamespace

from tenacity import wait_exponential

from imagecache_manager.constants import (
    DEFAULT_QUEUE_BASE_DELAY_SECONDS,
    DEFAULT_QUEUE_MAX_DELAY_SECONDS,
)


class RateLimitingQueue:
    """Thread-safe work queue with delayed and rate-limited adds."""

    def __init__(
        self,
        name: str = "",
        base_delay: float = DEFAULT_QUEUE_BASE_DELAY_SECONDS,
        max_delay: float = DEFAULT_QUEUE_MAX_DELAY_SECONDS,
    ) -> None:
        self.name = name
        self._backoff = wait_exponential(multiplier=base_delay, max=max_delay)
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._failures: dict[Hashable, int] = {}
        self._shutting_down = False

        self._waiting: list[tuple[float, int, Hashable]] = []
        self._waiting_seq = itertools.count()
        self._waiting_cond = threading.Condition()
        self._waiting_thread: threading.Thread | None = None

    # -- basic queue --

    def add(self, item: Hashable) -> None:
        """Mark ``item`` as needing processing."""
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def get(self, timeout: float | None = None) -> tuple[Hashable | None, bool]:
        """Block until an item is available.

        Args:
            timeout: Maximum seconds to wait, or None to wait until an item
                arrives or the queue shuts down.

        Returns:
            Tuple of (item, shutdown). ``item`` is None when the queue shut
            down or the timeout expired.
        """
        with self._cond:
            self._cond.wait_for(lambda: self._queue or self._shutting_down, timeout=timeout)
            if not self._queue:
                return None, self._shutting_down
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable) -> None:
        """Mark ``item`` as processed, re-queueing it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        with self._waiting_cond:
            self._waiting_cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    # -- delayed adds --

    def add_after(self, item: Hashable, delay: float) -> None:
        """Add ``item`` once ``delay`` seconds have passed."""
        if self.shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return
        with self._waiting_cond:
            heapq.heappush(self._waiting, (time.monotonic() + delay, next(self._waiting_seq), item))
            if self._waiting_thread is None:
                self._waiting_thread = threading.Thread(
                    target=self._waiting_loop, name=f"{self.name or 'workqueue'}-delay", daemon=True
                )
                self._waiting_thread.start()
            self._waiting_cond.notify()

    def _waiting_loop(self) -> None:
        while not self.shutting_down:
            with self._waiting_cond:
                if not self._waiting:
                    self._waiting_cond.wait()
                    continue
                ready_at, _, item = self._waiting[0]
                remaining = ready_at - time.monotonic()
                if remaining > 0:
                    self._waiting_cond.wait(timeout=remaining)
                    continue
                heapq.heappop(self._waiting)
            self.add(item)

    # -- rate limiting --

    def when(self, item: Hashable) -> float:
        """Return the backoff delay for the next retry of ``item``."""
        with self._cond:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
        return self._backoff(SimpleNamespace(attempt_number=failures + 1))

    def add_rate_limited(self, item: Hashable) -> None:
        """Add ``item`` after its current backoff delay."""
        self.add_after(item, self.when(item))

    def forget(self, item: Hashable) -> None:
        """Stop tracking retries of ``item``."""
        with self._cond:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._cond:
            return self._failures.get(item, 0)
