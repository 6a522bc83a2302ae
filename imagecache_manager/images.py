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

"""Image reference helpers and the pull-necessity policy."""

from __future__ import annotations

from collections.abc import Callable, Iterable

from imagecache_manager.constants import (
    DEFAULT_REGISTRY,
    DEFAULT_REPOSITORY_NAMESPACE,
    LATEST_TAG,
    PULL_POLICY_ALWAYS,
    PULL_POLICY_IF_NOT_PRESENT,
)


def image_tag(image: str) -> str | None:
    """Return the tag of an image reference, or None if it has none.

    Digest references (``name@sha256:...``) return the digest.

    Args:
        image: Image reference, e.g. ``registry:5000/team/app:1.2``.

    Returns:
        Tag or digest string, or None for an untagged reference.
    """
    if "@" in image:
        return image.split("@", 1)[1]
    last_segment = image.rsplit("/", 1)[-1]
    if ":" not in last_segment:
        return None
    return last_segment.rsplit(":", 1)[1]


def normalize_image(image: str) -> str:
    """Expand an image reference to its fully qualified form.

    ``nginx:1.25`` becomes ``docker.io/library/nginx:1.25`` and
    ``team/app:1`` becomes ``docker.io/team/app:1``, matching the names a
    node reports in ``status.images``.
    """
    parts = image.split("/")
    first = parts[0]
    has_registry = len(parts) > 1 and ("." in first or ":" in first or first == "localhost")
    if has_registry:
        return image
    if len(parts) == 1:
        return f"{DEFAULT_REGISTRY}/{DEFAULT_REPOSITORY_NAMESPACE}/{image}"
    return f"{DEFAULT_REGISTRY}/{image}"


def image_in_names(image: str, names: Iterable[str]) -> bool:
    """Check whether ``image`` is one of the names a node reports."""
    wanted = normalize_image(image)
    return any(normalize_image(name) == wanted for name in names)


def image_needs_pull(pull_policy: str, image: str, is_present: Callable[[], bool]) -> bool:
    """Decide whether a pull job is required.

    Args:
        pull_policy: ``Always`` or ``IfNotPresent``.
        image: Image reference to pull.
        is_present: Called only when the answer depends on the node contents;
            returns True if the image is already on the node.

    Returns:
        True if a pull job must be created.

    Raises:
        ValueError: If the pull policy is unknown.
    """
    if pull_policy == PULL_POLICY_ALWAYS:
        return True
    if pull_policy != PULL_POLICY_IF_NOT_PRESENT:
        raise ValueError(f"unsupported image pull policy {pull_policy!r}")
    tag = image_tag(image)
    if tag is None or tag == LATEST_TAG:
        return True
    return not is_present()
