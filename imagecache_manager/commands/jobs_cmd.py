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

"""Jobs subcommands (render-pull, render-delete)."""

from __future__ import annotations

import typer
import yaml

from imagecache_manager.config import ManagerConfig
from imagecache_manager.jobs import job_deadline_seconds, new_image_delete_job, new_image_pull_job
from imagecache_manager.types import ImageCacheRef, NodeRef

app = typer.Typer(help="Render image job manifests without creating them.")


@app.command("render-pull")
def render_pull(
    image: str = typer.Argument(..., help="Image to pull"),
    node: str = typer.Option(..., "--node", help="Hostname of the target node"),
    cache_name: str = typer.Option("imagecache", "--cache-name", help="Image cache name"),
) -> None:
    """Print the pull job manifest for IMAGE on a node."""
    cfg = ManagerConfig()
    manifest = new_image_pull_job(
        ImageCacheRef(namespace=cfg.namespace, name=cache_name),
        image,
        NodeRef(name=node, hostname=node),
        cfg.image_pull_policy,
        namespace=cfg.namespace,
        busybox_image=cfg.busybox_image,
        service_account_name=cfg.service_account_name,
        active_deadline_seconds=job_deadline_seconds(cfg.image_pull_deadline_seconds),
    )
    typer.echo(yaml.safe_dump(manifest, sort_keys=False))


@app.command("render-delete")
def render_delete(
    image: str = typer.Argument(..., help="Image to delete"),
    node: str = typer.Option(..., "--node", help="Hostname of the target node"),
    runtime: str = typer.Option(..., "--runtime", help="Container runtime version, e.g. containerd://1.7.2"),
    cache_name: str = typer.Option("imagecache", "--cache-name", help="Image cache name"),
) -> None:
    """Print the delete job manifest for IMAGE on a node."""
    cfg = ManagerConfig()
    manifest = new_image_delete_job(
        ImageCacheRef(namespace=cfg.namespace, name=cache_name),
        image,
        NodeRef(name=node, hostname=node),
        runtime,
        namespace=cfg.namespace,
        cri_client_image=cfg.cri_client_image,
        service_account_name=cfg.service_account_name,
        active_deadline_seconds=job_deadline_seconds(cfg.image_pull_deadline_seconds),
    )
    typer.echo(yaml.safe_dump(manifest, sort_keys=False))
