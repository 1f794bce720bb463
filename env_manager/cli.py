# /*
# Copyright 2026 The Grove Authors.
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
cli.py - CLI for the local kind + Neo4j environment.

Subcommands:
    up            Provision the cluster, install Neo4j and run health checks
    down          Uninstall Neo4j and delete the cluster
    reset         Reinstall Neo4j with fresh data, keeping the cluster
    status        Show pods, services and PVCs
    test          Run health checks against the running workload
    logs          Print Neo4j pod logs
    shell         Open cypher-shell inside the Neo4j pod
    port-forward  Forward Bolt and HTTP to localhost
    calico        Install the Calico CNI

Examples:
    # Persistent environment with the default profile
    env-manager up

    # Throwaway environment for CI: always torn down afterwards
    env-manager up --profile ci --ephemeral --report run.jsonl

    # Full health checks, including vector support
    env-manager test --full

    # Delete everything
    env-manager down

Configuration is read from KIND_*, NEO4J_* and LOCAL_ENV_* environment
variables; CLI flags take precedence.
"""

from __future__ import annotations

import logging
import sys

import typer

from env_manager import __version__, console
from env_manager.commands import access_cmd, inspect_cmd, lifecycle_cmd
from env_manager.constants import EXIT_FAILED

app = typer.Typer(
    help="Idempotent local kind cluster + Neo4j environment manager.",
    no_args_is_help=True,
)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"env-manager {__version__}")
        raise typer.Exit()


@app.callback()
def _main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log tool command lines (DEBUG)"),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit"),
) -> None:
    """Initialize logging for all subcommands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )


app.add_typer(lifecycle_cmd.app)
app.add_typer(inspect_cmd.app)
app.add_typer(access_cmd.app)


def main() -> None:
    try:
        app()
    except Exception as e:
        console.print(f"[red]\u274c {e}[/red]")
        sys.exit(EXIT_FAILED)


if __name__ == "__main__":
    main()
