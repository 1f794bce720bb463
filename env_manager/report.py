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

"""Structured emission of step results, health reports and run summaries."""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from env_manager import console
from env_manager.models import (
    CheckStatus,
    HealthReport,
    RunReport,
    StepResult,
    StepStatus,
    WorkloadStatus,
)

STEP_STYLES = {
    StepStatus.OK: "green",
    StepStatus.ALREADY_SATISFIED: "cyan",
    StepStatus.FAILED: "red",
    StepStatus.CANCELLED: "yellow",
}
CHECK_STYLES = {
    CheckStatus.PASS: "green",
    CheckStatus.FAIL: "red",
    CheckStatus.ERROR: "magenta",
    CheckStatus.CANCELLED: "yellow",
}


class ReportSink(Protocol):
    """Receives reconciler events as they happen."""

    def step(self, result: StepResult) -> None: ...

    def health(self, report: HealthReport) -> None: ...

    def status(self, snapshot: WorkloadStatus) -> None: ...

    def finish(self, report: RunReport) -> None: ...


# ============================================================================
# Console
# ============================================================================

def health_table(report: HealthReport) -> Table:
    table = Table(title=f"Health report: {report.status.value}")
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Latency", justify="right")
    table.add_column("Diagnostic", overflow="fold")
    for check in report.checks:
        style = CHECK_STYLES[check.status]
        name = check.name if check.required else f"{check.name} (optional)"
        first_line = check.diagnostic.splitlines()[0] if check.diagnostic else ""
        table.add_row(name, f"[{style}]{check.status.value}[/{style}]", f"{check.latency_seconds:.2f}s",
                      escape(first_line))
    return table


def status_tables(snapshot: WorkloadStatus) -> list[Table]:
    pods = Table(title="Pods")
    for column in ("Name", "Phase", "Ready", "Restarts"):
        pods.add_column(column)
    for pod in snapshot.pods:
        ready = "[green]yes[/green]" if pod.ready else "[red]no[/red]"
        pods.add_row(pod.name, pod.phase, ready, str(pod.restarts))

    services = Table(title="Services")
    for column in ("Name", "Type", "Cluster IP", "Ports"):
        services.add_column(column)
    for svc in snapshot.services:
        services.add_row(svc.name, svc.type, svc.cluster_ip or "-", ", ".join(svc.ports))

    pvcs = Table(title="PVCs")
    for column in ("Name", "Phase", "Capacity"):
        pvcs.add_column(column)
    for pvc in snapshot.pvcs:
        pvcs.add_row(pvc.name, pvc.phase, pvc.capacity or "-")
    return [pods, services, pvcs]


class ConsoleReportSink:
    """Human-readable rendering with rich."""

    def step(self, result: StepResult) -> None:
        style = STEP_STYLES[result.status]
        detail = f" - {escape(result.detail)}" if result.detail else ""
        console.print(
            f"[{style}]\u25cf {result.name}: {result.status.value}[/{style}] ({result.duration_seconds:.1f}s){detail}"
        )
        if result.status is StepStatus.FAILED and result.output:
            console.print(Panel(escape(result.output), title=f"{result.name} output", style="red"))

    def health(self, report: HealthReport) -> None:
        console.print(health_table(report))

    def status(self, snapshot: WorkloadStatus) -> None:
        for table in status_tables(snapshot):
            console.print(table)
        state = "[green]ready[/green]" if snapshot.ready else "[red]not ready[/red]"
        console.print(f"Workload '{snapshot.release_name}' in '{snapshot.namespace}': {state}")

    def finish(self, report: RunReport) -> None:
        style = "green" if report.ok else "red"
        lines = [f"action      : {report.action}",
                 f"outcome     : {report.outcome.value}",
                 f"final state : {report.final_state.value}"]
        failed = report.failed_step
        if failed is not None:
            lines.append(f"failed step : {failed.name}")
            if failed.error:
                lines.append(f"error       : {failed.error}")
        for error in report.teardown_errors:
            lines.append(f"teardown    : {error}")
        console.print(Panel.fit(escape("\n".join(lines)), title="Run summary", style=style))


# ============================================================================
# JSON lines
# ============================================================================

class JsonLinesReportSink:
    """Appends one JSON object per event to a file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _write(self, event: str, payload: dict[str, Any]) -> None:
        record = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat(), **payload}
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(json.dumps(record, sort_keys=True) + "\n")

    def step(self, result: StepResult) -> None:
        self._write("step", result.model_dump(mode="json"))

    def health(self, report: HealthReport) -> None:
        self._write("health", report.model_dump(mode="json"))

    def status(self, snapshot: WorkloadStatus) -> None:
        self._write("status", snapshot.model_dump(mode="json"))

    def finish(self, report: RunReport) -> None:
        self._write("run", report.model_dump(mode="json"))


class MultiReportSink:
    """Fans every event out to several sinks."""

    def __init__(self, *sinks: ReportSink) -> None:
        self.sinks = sinks

    def step(self, result: StepResult) -> None:
        for sink in self.sinks:
            sink.step(result)

    def health(self, report: HealthReport) -> None:
        for sink in self.sinks:
            sink.health(report)

    def status(self, snapshot: WorkloadStatus) -> None:
        for sink in self.sinks:
            sink.status(snapshot)

    def finish(self, report: RunReport) -> None:
        for sink in self.sinks:
            sink.finish(report)


def build_sink(report_file: Path | None = None) -> ReportSink:
    """Console sink, plus a JSON lines sink when *report_file* is given."""
    if report_file is None:
        return ConsoleReportSink()
    return MultiReportSink(ConsoleReportSink(), JsonLinesReportSink(report_file))
