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

"""Work items, work results, job identifiers and queue keys."""

from __future__ import annotations

import random
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from imagecache_manager.constants import (
    FAKE_JOB_PREFIX,
    LABEL_HOSTNAME,
    NAME_SUFFIX_ALPHABET,
    NAME_SUFFIX_LENGTH,
)


class WorkType(str, Enum):
    """Type of work the reconciliation loop asks for."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    STATUS_UPDATE = "statusupdate"
    REFRESH = "refresh"
    PURGE = "purge"


class WorkResultStatus(str, Enum):
    JOB_CREATED = "jobcreated"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ALREADY_PULLED = "alreadypulled"


# ============================================================================
# References
# ============================================================================

@dataclass(frozen=True)
class ImageCacheRef:
    """The image cache resource a unit of work belongs to.

    Attributes:
        namespace: Namespace of the image cache.
        name: Name of the image cache.
        uid: Resource uid, used for owner references when known.
        image_pull_secrets: Names of secrets the pull jobs may use.
    """

    namespace: str
    name: str
    uid: str | None = None
    image_pull_secrets: tuple[str, ...] = ()

    @property
    def key(self) -> str:
        """``namespace/name`` key of the image cache."""
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name


@dataclass(frozen=True)
class NodeRef:
    """Target node of a unit of work.

    Attributes:
        name: Node object name.
        hostname: Value of the ``kubernetes.io/hostname`` label.
    """

    name: str
    hostname: str

    @classmethod
    def from_node(cls, node: Any) -> NodeRef:
        """Build a reference from a ``V1Node``."""
        labels = node.metadata.labels or {}
        return cls(name=node.metadata.name, hostname=labels.get(LABEL_HOSTNAME, node.metadata.name))


@dataclass(frozen=True)
class RealJob:
    """A job created in the cluster."""

    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class SyntheticJob:
    """Identifier of work that needed no job, e.g. an image already on the node."""

    name: str

    def __post_init__(self) -> None:
        if not self.name.startswith(FAKE_JOB_PREFIX):
            raise ValueError(f"synthetic job names must start with {FAKE_JOB_PREFIX!r}")

    def __str__(self) -> str:
        return self.name

    @classmethod
    def generate(cls) -> SyntheticJob:
        suffix = "".join(random.choices(NAME_SUFFIX_ALPHABET, k=NAME_SUFFIX_LENGTH))
        return cls(FAKE_JOB_PREFIX + suffix)


JobRef = Union[RealJob, SyntheticJob]


# ============================================================================
# Work items and results
# ============================================================================

@dataclass(frozen=True)
class WorkItem:
    """A unit of image work, or a flush marker for an image cache.

    Attributes:
        cache: Image cache the work belongs to.
        work_type: Requested operation.
        image: Image reference, empty for a flush item.
        node: Target node, None for a flush item.
        container_runtime_version: Runtime reported by the node, e.g.
            ``containerd://1.6.8``; selects the delete command.
    """

    cache: ImageCacheRef
    work_type: WorkType
    image: str = ""
    node: NodeRef | None = None
    container_runtime_version: str = ""

    @classmethod
    def flush(cls, cache: ImageCacheRef, work_type: WorkType = WorkType.CREATE) -> WorkItem:
        """Marker meaning all work for ``cache`` has been enqueued."""
        return cls(cache=cache, work_type=work_type)

    @property
    def is_flush(self) -> bool:
        return not self.image and self.node is None

    @property
    def is_purge(self) -> bool:
        return self.work_type == WorkType.PURGE

    def describe(self) -> str:
        action = "delete" if self.is_purge else "pull"
        hostname = self.node.hostname if self.node else ""
        return f"{action}:- {self.image} --> {hostname}, runtime: {self.container_runtime_version}"


@dataclass(frozen=True)
class WorkResult:
    """Outcome of one unit of image work."""

    item: WorkItem
    status: WorkResultStatus
    reason: str = ""
    message: str = ""

    @property
    def cache_key(self) -> str:
        return self.item.cache.key


@dataclass(frozen=True, eq=False)
class WorkQueueKey:
    """An item on the reconciliation loop's own queue.

    Status updates carry an immutable snapshot of the work results of one
    image cache, keyed by job name. Keys compare by identity so that no two
    status updates are ever merged by the queue.
    """

    work_type: WorkType
    obj_key: str
    status: Mapping[str, WorkResult] | None = field(default=None)
