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

"""Image manager configuration, loaded from KUBEFLEDGED_* env vars."""

from __future__ import annotations

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.panel import Panel

from imagecache_manager import console
from imagecache_manager.constants import (
    DEFAULT_BUSYBOX_IMAGE,
    DEFAULT_CRI_CLIENT_IMAGE,
    DEFAULT_IMAGE_PULL_DEADLINE_SECONDS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_NAMESPACE,
    DEFAULT_POD_WATCH_TIMEOUT_SECONDS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_QUEUE_BASE_DELAY_SECONDS,
    DEFAULT_QUEUE_MAX_DELAY_SECONDS,
    DEFAULT_WORKERS,
    PULL_POLICY_IF_NOT_PRESENT,
    SUPPORTED_PULL_POLICIES,
)


class ManagerConfig(BaseSettings):
    """Image manager configuration, auto-loaded from KUBEFLEDGED_* env vars.

    Attributes:
        namespace: Namespace the pull/delete jobs are created and watched in.
        image_pull_deadline_seconds: Time allowed for the jobs of one image
            cache to finish before outstanding jobs are considered failed.
        image_pull_policy: ``Always`` or ``IfNotPresent``. Images with no tag
            or the ``latest`` tag are always pulled.
        cri_client_image: Image used by delete jobs to talk to the runtime.
        busybox_image: Image providing the echo binary for pull jobs.
        service_account_name: Service account of the job pods, or None for
            the namespace default.
        poll_interval_seconds: Interval between completion checks.
        queue_base_delay_seconds: First retry delay of a failed work item.
        queue_max_delay_seconds: Upper bound of the retry delay.
        max_retries: Retries of a failed work item before it is dropped.
        pod_watch_timeout_seconds: Server-side timeout of one pod watch call.
        workers: Number of dispatcher loops draining the work queue.
    """

    model_config = SettingsConfigDict(env_prefix="KUBEFLEDGED_", extra="ignore")

    namespace: str = DEFAULT_NAMESPACE
    image_pull_deadline_seconds: float = Field(default=DEFAULT_IMAGE_PULL_DEADLINE_SECONDS, gt=0)
    image_pull_policy: str = PULL_POLICY_IF_NOT_PRESENT
    cri_client_image: str = DEFAULT_CRI_CLIENT_IMAGE
    busybox_image: str = Field(
        default=DEFAULT_BUSYBOX_IMAGE,
        validation_alias=AliasChoices("KUBEFLEDGED_BUSYBOX_IMAGE", "BUSYBOX_IMAGE", "busybox_image"),
    )
    service_account_name: str | None = None
    poll_interval_seconds: float = Field(default=DEFAULT_POLL_INTERVAL_SECONDS, gt=0)
    queue_base_delay_seconds: float = Field(default=DEFAULT_QUEUE_BASE_DELAY_SECONDS, gt=0)
    queue_max_delay_seconds: float = Field(default=DEFAULT_QUEUE_MAX_DELAY_SECONDS, gt=0)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    pod_watch_timeout_seconds: int = Field(default=DEFAULT_POD_WATCH_TIMEOUT_SECONDS, ge=1)
    workers: int = Field(default=DEFAULT_WORKERS, ge=1, le=32)

    @field_validator("image_pull_policy")
    @classmethod
    def _check_pull_policy(cls, value: str) -> str:
        if value not in SUPPORTED_PULL_POLICIES:
            raise ValueError(f"image_pull_policy must be one of {list(SUPPORTED_PULL_POLICIES)}")
        return value


def display_config(cfg: ManagerConfig) -> None:
    """Print the resolved image manager configuration.

    Args:
        cfg: Resolved configuration (CLI > env > default).
    """
    console.print(Panel.fit("Configuration", style="bold blue"))
    console.print(f"  namespace          : {cfg.namespace}")
    console.print(f"  pull_deadline      : {cfg.image_pull_deadline_seconds}s")
    console.print(f"  pull_policy        : {cfg.image_pull_policy}")
    console.print(f"  cri_client_image   : {cfg.cri_client_image}")
    console.print(f"  busybox_image      : {cfg.busybox_image}")
    console.print(f"  service_account    : {cfg.service_account_name or '(namespace default)'}")
    console.print(f"  workers            : {cfg.workers}")
