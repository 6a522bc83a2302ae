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

"""Constants shared by the work engine, job manifests and CLI."""

from __future__ import annotations

# -- Job identifiers --
FAKE_JOB_PREFIX = "fakejob-"
NAME_SUFFIX_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"
NAME_SUFFIX_LENGTH = 5

# -- Labels --
LABEL_JOB_NAME = "job-name"
LABEL_HOSTNAME = "kubernetes.io/hostname"
LABEL_APP = "app"
LABEL_APP_VALUE = "kubefledged"
LABEL_COMPONENT = "kubefledged"
LABEL_COMPONENT_VALUE = "kubefledged-image-manager"
LABEL_IMAGE_CACHE = "imagecache"

# -- Image cache custom resource --
IMAGE_CACHE_API_VERSION = "kubefledged.io/v1alpha2"
IMAGE_CACHE_KIND = "ImageCache"

# -- Pod phases --
POD_PENDING = "Pending"
POD_SUCCEEDED = "Succeeded"
POD_FAILED = "Failed"
TERMINAL_POD_PHASES = (POD_SUCCEEDED, POD_FAILED)

# -- Forced resolution --
PENDING_REASON = "Pending"
PENDING_MESSAGE = "Check if node is ready"
FAILED_EVENT_REASON = "Failed"
EVENT_MESSAGE_SEPARATOR = ":"
EXPIRED_REASON = "DeadlineExceeded"

# -- Pull policies --
PULL_POLICY_ALWAYS = "Always"
PULL_POLICY_IF_NOT_PRESENT = "IfNotPresent"
SUPPORTED_PULL_POLICIES = (PULL_POLICY_ALWAYS, PULL_POLICY_IF_NOT_PRESENT)
LATEST_TAG = "latest"

# -- Image references --
DEFAULT_REGISTRY = "docker.io"
DEFAULT_REPOSITORY_NAMESPACE = "library"

# -- Job manifests --
PULL_CONTAINER_NAME = "image-puller"
DELETE_CONTAINER_NAME = "image-deleter"
ECHO_INIT_CONTAINER_NAME = "busybox"
ECHO_VOLUME_NAME = "tmp-bin"
ECHO_VOLUME_PATH = "/tmp/bin"
RUNTIME_SOCKET_VOLUME_NAME = "runtime-sock"
DOCKER_SOCKET_PATH = "/var/run/docker.sock"
CONTAINERD_SOCKET_PATH = "/run/containerd/containerd.sock"
CRIO_SOCKET_PATH = "/var/run/crio/crio.sock"
JOB_BACKOFF_LIMIT = 0

# -- Defaults --
DEFAULT_NAMESPACE = "kube-fledged"
DEFAULT_CRI_CLIENT_IMAGE = "senthilrch/kubefledged-cri-client:latest"
DEFAULT_BUSYBOX_IMAGE = "busybox:1.29.2"
DEFAULT_IMAGE_PULL_DEADLINE_SECONDS = 300
DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_QUEUE_BASE_DELAY_SECONDS = 0.005
DEFAULT_QUEUE_MAX_DELAY_SECONDS = 1000.0
DEFAULT_MAX_RETRIES = 15
DEFAULT_POD_WATCH_TIMEOUT_SECONDS = 30
DEFAULT_WORKERS = 1

# -- Loop timing --
WORKER_RESTART_INTERVAL_SECONDS = 1.0
WATCH_RECONNECT_MAX_WAIT_SECONDS = 30
STATUS_WAIT_GRACE_SECONDS = 30
