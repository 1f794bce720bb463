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

"""Control loop that drives the cluster and workload towards a requested state."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from env_manager import logger
from env_manager.cluster import ClusterDriver, context_name
from env_manager.errors import Cancelled, EnvManagerError, ReadinessTimeout
from env_manager.models import (
    ClusterHandle,
    EnvironmentSpec,
    HealthReport,
    ProvisionOutcome,
    ReconcileState,
    RunOutcome,
    RunReport,
    StepResult,
    StepStatus,
    WorkloadHandle,
    WorkloadStatus,
)
from env_manager.probe import HealthProbe
from env_manager.report import ConsoleReportSink, ReportSink
from env_manager.workload import WorkloadDriver, workload_handle

StepAction = Callable[[], "tuple[StepStatus, str]"]


@dataclass(frozen=True)
class ReconcileStep:
    """A named unit of work.

    Attributes:
        name: Step name used in logs and reports.
        state: Reconciler state while the step runs.
        action: Performs the step; safe to re-run when already satisfied.
            Returns the step status and a short detail.
        rollback: Undoes the step during teardown, or None if nothing to undo.
    """

    name: str
    state: ReconcileState
    action: StepAction
    rollback: ReconcileStep | None = None


class Reconciler:
    """Sequential, idempotent reconciler for one EnvironmentSpec.

    Forward steps stop at the first error. Teardown attempts every sub-step
    and records failures instead of raising them.
    """

    def __init__(
        self,
        spec: EnvironmentSpec,
        cluster: ClusterDriver,
        workload: WorkloadDriver,
        probe: HealthProbe | None = None,
        sink: ReportSink | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.spec = spec
        self.cluster = cluster
        self.workload = workload
        self.probe = probe or HealthProbe(workload)
        self.sink = sink or ConsoleReportSink()
        self.cancel = cancel or threading.Event()
        self.state = ReconcileState.IDLE
        self._begin()

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _begin(self) -> None:
        self.state = ReconcileState.IDLE
        self._states: list[ReconcileState] = [ReconcileState.IDLE]
        self._steps: list[StepResult] = []
        self._teardown_errors: list[str] = []
        self._health: HealthReport | None = None
        self._workload_status: WorkloadStatus | None = None
        self._cluster_handle: ClusterHandle | None = None
        self._workload_handle: WorkloadHandle | None = None
        self._error: EnvManagerError | None = None

    def _transition(self, state: ReconcileState) -> None:
        if state is self.state:
            return
        logger.info("State %s -> %s", self.state.value, state.value)
        self.state = state
        self._states.append(state)

    def _record(
        self,
        name: str,
        status: StepStatus,
        start: float,
        detail: str = "",
        output: str = "",
        error: str | None = None,
    ) -> StepResult:
        result = StepResult(
            name=name,
            status=status,
            duration_seconds=round(time.monotonic() - start, 3),
            detail=detail,
            output=output,
            error=error,
        )
        logger.info("Step %s: %s in %.2fs", name, status.value, result.duration_seconds)
        self._steps.append(result)
        self.sink.step(result)
        return result

    def _fail(self, err: EnvManagerError, outcome: RunOutcome) -> RunOutcome:
        logger.error("%s failed at step '%s': %s", type(err).__name__, err.step or "-", err)
        self._error = err
        self._transition(ReconcileState.FAILED)
        return outcome

    def _finish(self, action: str, outcome: RunOutcome) -> RunReport:
        report = RunReport(
            action=action,
            outcome=outcome,
            final_state=self.state,
            states=tuple(self._states),
            steps=tuple(self._steps),
            health=self._health,
            workload=self._workload_status,
            teardown_errors=tuple(self._teardown_errors),
            error_type=type(self._error).__name__ if self._error else None,
            error=str(self._error) if self._error else None,
        )
        self.sink.finish(report)
        return report

    # ------------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------------

    def _run_step(self, step: ReconcileStep) -> StepStatus:
        """Run a forward step; any error stops forward progress.

        Raises:
            Cancelled: If cancellation was requested or the step was interrupted.
            EnvManagerError: If the step failed.
        """
        self._transition(step.state)
        start = time.monotonic()
        if self.cancel.is_set():
            self._record(step.name, StepStatus.CANCELLED, start, error="cancelled before start")
            raise Cancelled(f"Run cancelled before step '{step.name}'", step=step.name)
        try:
            status, detail = step.action()
        except KeyboardInterrupt as err:
            self.cancel.set()
            self._record(step.name, StepStatus.CANCELLED, start, error="interrupted")
            raise Cancelled(f"Step '{step.name}' was interrupted", step=step.name) from err
        except Cancelled as err:
            self._record(step.name, StepStatus.CANCELLED, start, error=str(err))
            raise
        except ReadinessTimeout as err:
            self._workload_status = err.last_status
            detail = ""
            if err.last_status is not None:
                ready = sum(pod.ready for pod in err.last_status.pods)
                detail = f"last status: {ready}/{len(err.last_status.pods)} pods ready"
            self._record(step.name, StepStatus.FAILED, start, detail=detail, output=err.output,
                         error=f"ReadinessTimeout: {err}")
            err.step = err.step or step.name
            raise
        except EnvManagerError as err:
            self._record(step.name, StepStatus.FAILED, start, output=err.output,
                         error=f"{type(err).__name__}: {err}")
            err.step = err.step or step.name
            raise
        except Exception as err:
            self._record(step.name, StepStatus.FAILED, start, error=f"{type(err).__name__}: {err}")
            raise
        self._record(step.name, status, start, detail=detail)
        return status

    def _run_teardown_step(self, step: ReconcileStep) -> None:
        """Run a teardown step; failures are logged and recorded, never raised."""
        start = time.monotonic()
        try:
            status, detail = step.action()
        except KeyboardInterrupt:
            logger.warning("Interrupt ignored while tearing down '%s'; teardown continues", step.name)
            self._teardown_errors.append(f"{step.name}: interrupted")
            self._record(step.name, StepStatus.CANCELLED, start, error="interrupted")
            return
        except EnvManagerError as err:
            logger.warning("Teardown step '%s' failed: %s", step.name, err)
            self._teardown_errors.append(f"{step.name}: {err}")
            self._record(step.name, StepStatus.FAILED, start, output=err.output,
                         error=f"{type(err).__name__}: {err}")
            return
        except Exception as err:
            logger.warning("Teardown step '%s' raised %s: %s", step.name, type(err).__name__, err)
            self._teardown_errors.append(f"{step.name}: {type(err).__name__}: {err}")
            self._record(step.name, StepStatus.FAILED, start, error=f"{type(err).__name__}: {err}")
            return
        self._record(step.name, status, start, detail=detail)

    # ------------------------------------------------------------------
    # Step actions
    # ------------------------------------------------------------------

    def _provision(self) -> tuple[StepStatus, str]:
        result = self.cluster.provision(self.spec)
        self._cluster_handle = result.handle
        if result.outcome is ProvisionOutcome.ALREADY_EXISTS:
            return StepStatus.ALREADY_SATISFIED, f"cluster '{self.spec.cluster_name}' already exists"
        return StepStatus.OK, f"cluster '{self.spec.cluster_name}' created"

    def _select_context(self) -> tuple[StepStatus, str]:
        self._cluster_handle = self.cluster.select_context(self.spec.cluster_name)
        return StepStatus.OK, f"context '{self._cluster_handle.context}'"

    def _select_context_if_present(self) -> tuple[StepStatus, str]:
        if not self.cluster.exists(self.spec.cluster_name):
            return StepStatus.ALREADY_SATISFIED, f"cluster '{self.spec.cluster_name}' not found"
        return self._select_context()

    def _install(self) -> tuple[StepStatus, str]:
        self._workload_handle = self.workload.install(self._require_cluster(), self.spec)
        return StepStatus.OK, f"release '{self.spec.release_name}' {self.spec.chart_version} ready"

    def _probe(self, full: bool) -> tuple[StepStatus, str]:
        handle = self._workload_handle or workload_handle(self._require_cluster(), self.spec)
        report = self.probe.run(handle, self.spec, full=full, cancel=self.cancel)
        self._health = report
        self.sink.health(report)
        passed = sum(1 for check in report.checks if check.status.value == "pass")
        detail = f"{passed}/{len(report.checks)} checks passed"
        return (StepStatus.OK if report.passed else StepStatus.FAILED), detail

    def _snapshot(self) -> tuple[StepStatus, str]:
        handle = workload_handle(self._require_cluster(), self.spec)
        snapshot = self.workload.status(handle)
        self._workload_status = snapshot
        self.sink.status(snapshot)
        return StepStatus.OK, "ready" if snapshot.ready else "not ready"

    def _uninstall(self) -> tuple[StepStatus, str]:
        handle = self._workload_handle or workload_handle(self._teardown_cluster_handle(), self.spec)
        errors = self.workload.uninstall(handle)
        self._workload_handle = None
        if errors:
            self._teardown_errors.extend(f"{err.step}: {err}" for err in errors)
            return StepStatus.FAILED, f"{len(errors)} sub-step(s) failed: " + ", ".join(
                err.step or "?" for err in errors)
        return StepStatus.OK, f"release '{self.spec.release_name}' removed"

    def _destroy(self) -> tuple[StepStatus, str]:
        deleted = self.cluster.destroy(self.spec.cluster_name)
        self._cluster_handle = None
        if deleted:
            return StepStatus.OK, f"cluster '{self.spec.cluster_name}' deleted"
        return StepStatus.ALREADY_SATISFIED, f"cluster '{self.spec.cluster_name}' not found"

    def _require_cluster(self) -> ClusterHandle:
        if self._cluster_handle is None:
            self._cluster_handle = self.cluster.select_context(self.spec.cluster_name)
        return self._cluster_handle

    def _teardown_cluster_handle(self) -> ClusterHandle:
        name = self.spec.cluster_name
        return self._cluster_handle or ClusterHandle(name=name, context=context_name(name))

    # ------------------------------------------------------------------
    # Step plans
    # ------------------------------------------------------------------

    def _up_steps(self, full: bool) -> list[ReconcileStep]:
        destroy = ReconcileStep("destroy-cluster", ReconcileState.TEARING_DOWN, self._destroy)
        uninstall = ReconcileStep("uninstall-workload", ReconcileState.TEARING_DOWN, self._uninstall)
        return [
            ReconcileStep("provision-cluster", ReconcileState.PROVISIONING, self._provision, rollback=destroy),
            ReconcileStep("select-context", ReconcileState.PROVISIONING, self._select_context),
            ReconcileStep("install-workload", ReconcileState.INSTALLING, self._install, rollback=uninstall),
            ReconcileStep("probe", ReconcileState.PROBING, lambda: self._probe(full)),
        ]

    def _teardown_steps(self) -> list[ReconcileStep]:
        """Rollbacks of every forward step, in reverse dependency order."""
        return [step.rollback for step in reversed(self._up_steps(full=False)) if step.rollback]

    def _forward(self, full: bool) -> RunOutcome:
        for step in self._up_steps(full):
            status = self._run_step(step)
            if status is StepStatus.FAILED:
                self._transition(ReconcileState.FAILED)
                return RunOutcome.FAILED
        self._transition(ReconcileState.READY)
        return RunOutcome.OK

    def _teardown(self) -> None:
        self._transition(ReconcileState.TEARING_DOWN)
        for step in self._teardown_steps():
            self._run_teardown_step(step)
        self._transition(ReconcileState.IDLE)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def up(self, ephemeral: bool | None = None, full: bool = False) -> RunReport:
        """Provision, install and probe.

        Ephemeral runs always tear everything down afterwards, exactly once,
        whatever happened during the forward steps.

        Args:
            ephemeral: Override of ``spec.ephemeral``, or None to use the spec.
            full: Whether probing includes the full check set.

        Returns:
            RunReport with outcome ``ok`` when the workload is ready and healthy.
        """
        ephemeral = self.spec.ephemeral if ephemeral is None else ephemeral
        self._begin()
        outcome = RunOutcome.FAILED
        try:
            outcome = self._forward(full)
        except Cancelled as err:
            outcome = self._fail(err, RunOutcome.CANCELLED)
        except EnvManagerError as err:
            outcome = self._fail(err, RunOutcome.FAILED)
        except BaseException:
            self._transition(ReconcileState.FAILED)
            raise
        finally:
            if ephemeral:
                self._teardown()
        return self._finish("up", outcome)

    def down(self) -> RunReport:
        """Tear down the workload and the cluster, attempting every sub-step."""
        self._begin()
        self._transition(ReconcileState.TEARING_DOWN)
        self._run_teardown_step(
            ReconcileStep("select-context", ReconcileState.TEARING_DOWN, self._select_context_if_present)
        )
        self._teardown()
        return self._finish("down", RunOutcome.OK)

    def reset(self, full: bool = False) -> RunReport:
        """Uninstall the workload and install it again, keeping the cluster.

        Without an existing cluster this behaves like ``up``.
        """
        self._begin()
        outcome = RunOutcome.FAILED
        try:
            if self.cluster.exists(self.spec.cluster_name):
                self._transition(ReconcileState.TEARING_DOWN)
                self._run_teardown_step(
                    ReconcileStep("uninstall-workload", ReconcileState.TEARING_DOWN, self._uninstall)
                )
                self._transition(ReconcileState.IDLE)
            outcome = self._forward(full)
        except Cancelled as err:
            outcome = self._fail(err, RunOutcome.CANCELLED)
        except EnvManagerError as err:
            outcome = self._fail(err, RunOutcome.FAILED)
        return self._finish("reset", outcome)

    def test(self, full: bool = False) -> RunReport:
        """Probe an already running environment."""
        self._begin()
        outcome = RunOutcome.FAILED
        try:
            self._run_step(ReconcileStep("select-context", ReconcileState.IDLE, self._select_context))
            status = self._run_step(ReconcileStep("probe", ReconcileState.PROBING, lambda: self._probe(full)))
            if status is StepStatus.OK:
                self._transition(ReconcileState.READY)
                outcome = RunOutcome.OK
            else:
                self._transition(ReconcileState.FAILED)
        except Cancelled as err:
            outcome = self._fail(err, RunOutcome.CANCELLED)
        except EnvManagerError as err:
            outcome = self._fail(err, RunOutcome.FAILED)
        return self._finish("test", outcome)

    def status(self) -> RunReport:
        """Report a live workload snapshot; outcome ``ok`` iff the workload is ready."""
        self._begin()
        outcome = RunOutcome.FAILED
        try:
            self._run_step(ReconcileStep("select-context", ReconcileState.IDLE, self._select_context))
            self._run_step(ReconcileStep("workload-status", ReconcileState.IDLE, self._snapshot))
            if self._workload_status is not None and self._workload_status.ready:
                self._transition(ReconcileState.READY)
                outcome = RunOutcome.OK
        except Cancelled as err:
            outcome = self._fail(err, RunOutcome.CANCELLED)
        except EnvManagerError as err:
            outcome = self._fail(err, RunOutcome.FAILED)
        return self._finish("status", outcome)
