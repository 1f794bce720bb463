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

"""Orchestration functions that compose drivers, probe and sink into workflows."""

from __future__ import annotations

import threading
from pathlib import Path

from rich.panel import Panel

from env_manager import console
from env_manager.cluster import KindClusterDriver
from env_manager.config import display_config
from env_manager.constants import REQUIRED_TOOLS
from env_manager.models import EnvironmentSpec, RunReport
from env_manager.probe import HealthProbe
from env_manager.reconciler import Reconciler
from env_manager.report import build_sink
from env_manager.utils import check_container_runtime, require_command
from env_manager.workload import HelmWorkloadDriver, workload_handle

# ============================================================================
# Internal helpers
# ============================================================================


def check_prerequisites(tools: tuple[str, ...] = REQUIRED_TOOLS) -> None:
    """Check CLI tools and the container runtime.

    Args:
        tools: CLI tools that must be on PATH.

    Raises:
        ToolUnavailableError: If a tool is missing or Docker is unreachable.
    """
    console.print(Panel.fit("Checking prerequisites", style="bold blue"))
    for cmd in tools:
        require_command(cmd)
    check_container_runtime()
    console.print("[green]\u2705 All required tools are available[/green]")


def build_reconciler(
    spec: EnvironmentSpec,
    report_file: Path | None = None,
    cancel: threading.Event | None = None,
) -> Reconciler:
    """Wire the kind and helm drivers, the default probe and the sinks together."""
    workload = HelmWorkloadDriver()
    return Reconciler(
        spec,
        KindClusterDriver(),
        workload,
        probe=HealthProbe(workload),
        sink=build_sink(report_file),
        cancel=cancel,
    )


# ============================================================================
# Public API
# ============================================================================


def run_up(
    spec: EnvironmentSpec,
    *,
    ephemeral: bool | None = None,
    full: bool = False,
    report_file: Path | None = None,
) -> RunReport:
    """Bring the environment up and probe it.

    Raises:
        ToolUnavailableError: If prerequisites are missing.
    """
    check_prerequisites()
    display_config(spec)
    return build_reconciler(spec, report_file).up(ephemeral=ephemeral, full=full)


def run_down(spec: EnvironmentSpec, *, report_file: Path | None = None) -> RunReport:
    """Tear the environment down; teardown errors are reported, never raised."""
    check_prerequisites()
    return build_reconciler(spec, report_file).down()


def run_reset(spec: EnvironmentSpec, *, full: bool = False, report_file: Path | None = None) -> RunReport:
    """Reinstall the workload on the existing cluster and probe it."""
    check_prerequisites()
    display_config(spec)
    return build_reconciler(spec, report_file).reset(full=full)


def run_test(spec: EnvironmentSpec, *, full: bool = False, report_file: Path | None = None) -> RunReport:
    """Probe a running environment."""
    check_prerequisites()
    return build_reconciler(spec, report_file).test(full=full)


def run_status(spec: EnvironmentSpec, *, report_file: Path | None = None) -> RunReport:
    """Report a live snapshot of the workload."""
    check_prerequisites()
    return build_reconciler(spec, report_file).status()


def run_logs(spec: EnvironmentSpec, *, tail: int = 100, follow: bool = False) -> None:
    """Print or stream workload pod logs.

    Raises:
        ContextError: If the cluster does not exist.
        WorkloadNotFoundError: If the logs cannot be read.
    """
    handle = KindClusterDriver().select_context(spec.cluster_name)
    output = HelmWorkloadDriver().logs(workload_handle(handle, spec), tail=tail, follow=follow)
    if output:
        console.print(output, markup=False, highlight=False, end="")


def run_shell(spec: EnvironmentSpec) -> int:
    """Open an interactive cypher-shell; returns its exit code."""
    handle = KindClusterDriver().select_context(spec.cluster_name)
    return HelmWorkloadDriver().shell(workload_handle(handle, spec), spec)


def run_port_forward(spec: EnvironmentSpec) -> None:
    """Forward the configured ports until interrupted."""
    handle = KindClusterDriver().select_context(spec.cluster_name)
    HelmWorkloadDriver().port_forward(workload_handle(handle, spec), spec)


def run_calico(spec: EnvironmentSpec) -> None:
    """Install Calico into the existing cluster."""
    check_prerequisites(("kind", "kubectl"))
    cluster = KindClusterDriver()
    cluster.install_calico(cluster.select_context(spec.cluster_name))
