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

"""Exceptions raised by the work engine."""

from __future__ import annotations


class ImageManagerError(Exception):
    """Base class for work engine errors."""


class JobClientError(ImageManagerError):
    """A call against the cluster API failed.

    Attributes:
        operation: Short description of the failed call.
        status: HTTP status reported by the API server, if any.
    """

    def __init__(self, operation: str, detail: str, status: int | None = None) -> None:
        super().__init__(f"error {operation}: {detail}")
        self.operation = operation
        self.status = status


class PodMatchError(ImageManagerError):
    """Zero or more than one pod matched a job."""

    def __init__(self, job: str, count: int) -> None:
        if count == 0:
            message = f"no pods matched job {job}"
        else:
            message = f"more than one pod matched job {job}"
        super().__init__(message)
        self.job = job
        self.count = count


class ImageCacheNotFoundError(ImageManagerError):
    """No work results reference the image cache being aggregated."""


class JobIdentifierConflictError(ImageManagerError):
    """A job identifier is already recorded for a different image cache."""


class ReconcileCancelledError(ImageManagerError):
    """The stop signal fired while waiting for jobs to complete."""
