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

"""Lifecycle subcommands (up, down, reset)."""

from __future__ import annotations

from pathlib import Path

import typer

from env_manager.commands.options import (
    CHART_VERSION,
    CLUSTER_NAME,
    FULL,
    NAMESPACE,
    PROFILE,
    RELEASE,
    REPORT,
    exit_on_error,
    finish,
    report_path,
    resolve,
)
from env_manager.orchestrator import run_down, run_reset, run_up

app = typer.Typer(help="Bring the environment up, down or reset it.")


@app.command()
def up(
    profile: str | None = PROFILE,
    cluster_name: str | None = CLUSTER_NAME,
    namespace: str | None = NAMESPACE,
    release: str | None = RELEASE,
    chart_version: str | None = CHART_VERSION,
    report: Path | None = REPORT,
    full: bool = FULL,
    ephemeral: bool | None = typer.Option(
        None, "--ephemeral/--persistent", help="Tear everything down once probing concludes"),
) -> None:
    """Provision the cluster, install Neo4j and run health checks."""
    with exit_on_error():
        spec = resolve(profile, cluster_name, namespace, release, chart_version)
        result = run_up(spec, ephemeral=ephemeral, full=full, report_file=report_path(report))
    finish(result)


@app.command()
def down(
    profile: str | None = PROFILE,
    cluster_name: str | None = CLUSTER_NAME,
    namespace: str | None = NAMESPACE,
    release: str | None = RELEASE,
    report: Path | None = REPORT,
) -> None:
    """Uninstall Neo4j and delete the cluster. Missing resources are skipped."""
    with exit_on_error():
        spec = resolve(profile, cluster_name, namespace, release, None)
        result = run_down(spec, report_file=report_path(report))
    finish(result)


@app.command()
def reset(
    profile: str | None = PROFILE,
    cluster_name: str | None = CLUSTER_NAME,
    namespace: str | None = NAMESPACE,
    release: str | None = RELEASE,
    chart_version: str | None = CHART_VERSION,
    report: Path | None = REPORT,
    full: bool = FULL,
) -> None:
    """Reinstall Neo4j with fresh data, keeping the cluster."""
    with exit_on_error():
        spec = resolve(profile, cluster_name, namespace, release, chart_version)
        result = run_reset(spec, full=full, report_file=report_path(report))
    finish(result)
