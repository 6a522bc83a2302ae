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

"""Cache subcommands (prewarm, purge)."""

from __future__ import annotations

import typer
from kubernetes import client

from imagecache_manager import console
from imagecache_manager.config import ManagerConfig, display_config
from imagecache_manager.errors import ImageManagerError
from imagecache_manager.jobs import KubeJobClient, load_kube_config
from imagecache_manager.orchestrator import display_results, node_targets, run_cache_sync
from imagecache_manager.types import ImageCacheRef, WorkType

app = typer.Typer(help="Pull images onto nodes or purge them.")


def _sync(
    images: list[str],
    work_type: WorkType,
    cfg: ManagerConfig,
    cache_name: str,
    node_selector: str | None,
) -> None:
    display_config(cfg)
    api_client = load_kube_config()
    job_client = KubeJobClient(api_client, cfg)

    nodes = job_client.list_nodes(label_selector=node_selector)
    if not nodes:
        raise ImageManagerError(f"no nodes match selector {node_selector!r}")
    targets = node_targets(nodes)
    console.print(f"[yellow]ℹ️  {len(images)} image(s) on {len(targets)} node(s)[/yellow]")

    cache = ImageCacheRef(namespace=cfg.namespace, name=cache_name)
    results = run_cache_sync(
        cache, images, targets, work_type, cfg, job_client, core_api=client.CoreV1Api(api_client)
    )
    failures = display_results(results)
    if failures:
        console.print(f"[red]❌ {failures} of {len(results)} jobs failed[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]✅ Image cache {cache.key} {work_type.value} complete[/green]")


@app.command("prewarm")
def prewarm(
    images: list[str] = typer.Argument(..., help="Images to pull"),
    cache_name: str = typer.Option("imagecache", "--cache-name", help="Image cache name used for job names"),
    node_selector: str | None = typer.Option(None, "--node-selector", help="Label selector of target nodes"),
    deadline: float | None = typer.Option(None, "--deadline", help="Image pull deadline in seconds"),
    pull_policy: str | None = typer.Option(None, "--pull-policy", help="Always or IfNotPresent"),
) -> None:
    """Pull images onto every matching node."""
    cfg = ManagerConfig()
    overrides: dict = {}
    if deadline is not None:
        overrides["image_pull_deadline_seconds"] = deadline
    if pull_policy is not None:
        overrides["image_pull_policy"] = pull_policy
    if overrides:
        cfg = ManagerConfig.model_validate({**cfg.model_dump(), **overrides})

    _sync(images, WorkType.CREATE, cfg, cache_name, node_selector)


@app.command("purge")
def purge(
    images: list[str] = typer.Argument(..., help="Images to delete"),
    cache_name: str = typer.Option("imagecache", "--cache-name", help="Image cache name used for job names"),
    node_selector: str | None = typer.Option(None, "--node-selector", help="Label selector of target nodes"),
) -> None:
    """Delete images from every matching node."""
    _sync(images, WorkType.PURGE, ManagerConfig(), cache_name, node_selector)
