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

"""Options and error handling shared by all subcommands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import typer
from rich.markup import escape

from env_manager import console
from env_manager.config import resolve_environment
from env_manager.constants import (
    EXIT_CANCELLED,
    EXIT_CONFIG_ERROR,
    EXIT_FAILED,
    EXIT_OK,
    EXIT_TOOLS_UNAVAILABLE,
)
from env_manager.errors import Cancelled, ConfigError, EnvManagerError, ToolUnavailableError
from env_manager.models import EnvironmentSpec, RunOutcome, RunReport

PROFILE = typer.Option(None, "--profile", help="Named profile (overrides LOCAL_ENV_PROFILE)")
CLUSTER_NAME = typer.Option(None, "--cluster-name", help="kind cluster name (overrides KIND_CLUSTER_NAME)")
NAMESPACE = typer.Option(None, "--namespace", help="Workload namespace (overrides NEO4J_NAMESPACE)")
RELEASE = typer.Option(None, "--release", help="Helm release name (overrides NEO4J_RELEASE_NAME)")
CHART_VERSION = typer.Option(None, "--chart-version", help="Neo4j chart version (overrides NEO4J_CHART_VERSION)")
REPORT = typer.Option(None, "--report", help="Append JSON lines events to this file")
FULL = typer.Option(False, "--full", help="Include the full health check set")

EXIT_CODES: dict[type[EnvManagerError], int] = {
    ConfigError: EXIT_CONFIG_ERROR,
    ToolUnavailableError: EXIT_TOOLS_UNAVAILABLE,
    Cancelled: EXIT_CANCELLED,
}


def resolve(
    profile: str | None,
    cluster_name: str | None,
    namespace: str | None,
    release: str | None,
    chart_version: str | None,
    **extra: Any,
) -> EnvironmentSpec:
    """Resolve the environment with the common CLI overrides applied.

    Raises:
        ConfigError: If the merged configuration is invalid.
    """
    overrides = {
        "cluster_name": cluster_name,
        "namespace": namespace,
        "release_name": release,
        "chart_version": chart_version,
        **extra,
    }
    return resolve_environment(profile=profile, overrides=overrides)


def exit_code_for(report: RunReport) -> int:
    if report.outcome is RunOutcome.OK:
        return EXIT_OK
    if report.outcome is RunOutcome.CANCELLED:
        return EXIT_CANCELLED
    if report.error_type == ToolUnavailableError.__name__:
        return EXIT_TOOLS_UNAVAILABLE
    return EXIT_FAILED


def finish(report: RunReport) -> None:
    """Exit with the code matching the run outcome."""
    raise typer.Exit(exit_code_for(report))


@contextmanager
def exit_on_error() -> Iterator[None]:
    """Translate env_manager errors into a message and an exit code."""
    try:
        yield
    except KeyboardInterrupt:
        console.print("[yellow]\u26a0\ufe0f  Interrupted[/yellow]")
        raise typer.Exit(EXIT_CANCELLED) from None
    except EnvManagerError as err:
        step = f" (step: {err.step})" if err.step else ""
        console.print(f"[red]\u274c {type(err).__name__}{escape(step)}: {escape(str(err))}[/red]")
        if err.output:
            console.print(err.output, markup=False, highlight=False)
        code = next((c for cls, c in EXIT_CODES.items() if isinstance(err, cls)), EXIT_FAILED)
        raise typer.Exit(code) from err


def report_path(report: Path | None) -> Path | None:
    return report.expanduser() if report is not None else None
