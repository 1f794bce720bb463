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

"""Inspection subcommands (status, test, logs)."""

from __future__ import annotations

from pathlib import Path

import typer

from env_manager.commands.options import (
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
from env_manager.orchestrator import run_logs, run_status, run_test

app = typer.Typer(help="Inspect a running environment.")


@app.command()
def status(
    profile: str | None = PROFILE,
    cluster_name: str | None = CLUSTER_NAME,
    namespace: str | None = NAMESPACE,
    release: str | None = RELEASE,
    report: Path | None = REPORT,
) -> None:
    """Show pods, services and PVCs. Exits 0 only if the workload is ready."""
    with exit_on_error():
        spec = resolve(profile, cluster_name, namespace, release, None)
        result = run_status(spec, report_file=report_path(report))
    finish(result)


@app.command()
def test(
    profile: str | None = PROFILE,
    cluster_name: str | None = CLUSTER_NAME,
    namespace: str | None = NAMESPACE,
    release: str | None = RELEASE,
    report: Path | None = REPORT,
    full: bool = FULL,
) -> None:
    """Run health checks against the running workload."""
    with exit_on_error():
        spec = resolve(profile, cluster_name, namespace, release, None)
        result = run_test(spec, full=full, report_file=report_path(report))
    finish(result)


@app.command()
def logs(
    profile: str | None = PROFILE,
    cluster_name: str | None = CLUSTER_NAME,
    namespace: str | None = NAMESPACE,
    release: str | None = RELEASE,
    tail: int = typer.Option(100, "--tail", min=1, help="Lines per pod"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Stream logs until interrupted"),
) -> None:
    """Print Neo4j pod logs."""
    with exit_on_error():
        spec = resolve(profile, cluster_name, namespace, release, None)
        run_logs(spec, tail=tail, follow=follow)
