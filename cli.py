#!/usr/bin/env python3
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

"""
cli.py - Unified CLI for the kube-fledged image manager.

Subcommands:
    cache   Pull images onto nodes or purge them (prewarm, purge)
    jobs    Render image job manifests (render-pull, render-delete)

Examples:
    # Pull two images onto every worker node
    ./cli.py cache prewarm nginx:1.25 redis:7 --node-selector node-role=worker

    # Remove an image from all nodes
    ./cli.py cache purge nginx:1.25

    # Show the job that would pull an image onto a node
    ./cli.py jobs render-pull nginx:1.25 --node worker-1

Settings are read from KUBEFLEDGED_* environment variables.
For detailed usage information, run: ./cli.py --help
"""

from __future__ import annotations

import logging
import sys

import typer

from imagecache_manager import console
from imagecache_manager.commands import cache_cmd, jobs_cmd

app = typer.Typer(
    help="Unified CLI for the kube-fledged image manager.",
    no_args_is_help=True,
)


@app.callback()
def _main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Initialize logging for all subcommands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )


app.add_typer(cache_cmd.app, name="cache")
app.add_typer(jobs_cmd.app, name="jobs")


def main() -> None:
    try:
        app()
    except Exception as e:
        console.print(f"[red]❌ {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
