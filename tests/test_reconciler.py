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

from __future__ import annotations

import pytest
import sh

from env_manager import cluster as cluster_module
from env_manager.cluster import KindClusterDriver
from env_manager.commands.options import exit_code_for
from env_manager.errors import (
    InstallError,
    ProvisionError,
    ReadinessTimeout,
    UninstallStepError,
)
from env_manager.models import (
    ExecResult,
    PodStatus,
    ReconcileState,
    RunOutcome,
    StepStatus,
    WorkloadStatus,
)
from env_manager.constants import CYPHER_PING
from env_manager.probe import HealthProbe
from env_manager.reconciler import Reconciler

UP_STEPS = ["provision-cluster", "select-context", "install-workload", "probe"]


def _names(report):
    return [step.name for step in report.steps]


def test_up_provisions_installs_and_probes(reconciler, cluster, workload, sink):
    report = reconciler.up()

    assert report.outcome is RunOutcome.OK
    assert report.final_state is ReconcileState.READY
    assert list(report.states) == [
        ReconcileState.IDLE,
        ReconcileState.PROVISIONING,
        ReconcileState.INSTALLING,
        ReconcileState.PROBING,
        ReconcileState.READY,
    ]
    assert _names(report) == UP_STEPS
    assert report.health is not None and report.health.passed
    assert "c1" in cluster.clusters
    assert ("c1", "ns1", "r1") in workload.releases
    assert sink.runs == [report]
    assert [s.name for s in sink.steps] == UP_STEPS


def test_up_twice_does_not_create_again(reconciler, cluster):
    first = reconciler.up()
    second = reconciler.up()

    assert first.ok and second.ok
    assert first.steps[0].status is StepStatus.OK
    assert second.steps[0].status is StepStatus.ALREADY_SATISFIED
    assert cluster.count("create") == 1


def test_cluster_namespace_release_lifecycle(reconciler, cluster):
    assert reconciler.up().ok

    status = reconciler.status()
    assert status.ok
    assert status.workload is not None and status.workload.ready

    assert reconciler.test().ok

    down = reconciler.down()
    assert down.ok
    assert down.teardown_errors == ()
    assert cluster.clusters == set()

    after = reconciler.status()
    assert after.outcome is RunOutcome.FAILED
    assert after.error_type == "ContextError"
    assert after.failed_step.name == "select-context"


def test_ephemeral_readiness_timeout_tears_down_once(spec, cluster, workload, sink):
    last = WorkloadStatus(
        namespace="ns1",
        release_name="r1",
        pods=(PodStatus(name="r1-0", phase="Pending", ready=False),),
    )
    workload.install_error = ReadinessTimeout("not ready after 600s", last_status=last)
    reconciler = Reconciler(spec, cluster, workload, probe=HealthProbe(workload), sink=sink)

    report = reconciler.up(ephemeral=True)

    assert report.outcome is RunOutcome.FAILED
    assert report.failed_step.name == "install-workload"
    assert report.failed_step.error.startswith("ReadinessTimeout")
    assert report.workload == last
    assert ReconcileState.FAILED in report.states
    assert report.states[-2:] == (ReconcileState.TEARING_DOWN, ReconcileState.IDLE)
    assert report.final_state is ReconcileState.IDLE
    assert workload.count("uninstall") == 1
    assert cluster.count("destroy") == 1
    assert cluster.clusters == set()
    assert exit_code_for(report) == 1


def test_ephemeral_probe_failure_tears_down_once(spec, cluster, workload, sink):
    workload.query_answers[CYPHER_PING] = ExecResult(1, "", "The client is unauthorized")
    reconciler = Reconciler(spec, cluster, workload, sink=sink)

    report = reconciler.up(ephemeral=True)

    assert report.outcome is RunOutcome.FAILED
    assert report.health is not None and not report.health.passed
    assert workload.count("uninstall") == 1
    assert cluster.count("destroy") == 1


def test_ephemeral_from_spec_tears_down_after_success(cluster, workload, sink, spec):
    ephemeral_spec = spec.model_copy(update={"ephemeral": True})
    reconciler = Reconciler(ephemeral_spec, cluster, workload, sink=sink)

    report = reconciler.up()

    assert report.ok
    assert report.final_state is ReconcileState.IDLE
    assert ReconcileState.READY in report.states
    assert cluster.count("destroy") == 1


def test_ephemeral_teardown_runs_when_probe_raises(spec, cluster, workload, sink):
    class _ExplodingProbe:
        def run(self, *args, **kwargs):
            raise RuntimeError("probe crashed")

    reconciler = Reconciler(spec, cluster, workload, probe=_ExplodingProbe(), sink=sink)

    with pytest.raises(RuntimeError, match="probe crashed"):
        reconciler.up(ephemeral=True)

    assert workload.count("uninstall") == 1
    assert cluster.count("destroy") == 1


def test_persistent_failure_leaves_resources(reconciler, cluster, workload):
    workload.install_error = InstallError("chart not found", step="install-workload")

    report = reconciler.up()

    assert report.outcome is RunOutcome.FAILED
    assert report.final_state is ReconcileState.FAILED
    assert report.error_type == "InstallError"
    assert "c1" in cluster.clusters
    assert workload.count("uninstall") == 0
    assert cluster.count("destroy") == 0


def test_provision_failure_stops_forward_progress(reconciler, cluster, workload):
    cluster.provision_error = ProvisionError("docker not running", step="provision-cluster", output="boom")

    report = reconciler.up()

    assert report.outcome is RunOutcome.FAILED
    assert _names(report) == ["provision-cluster"]
    assert report.failed_step.output == "boom"
    assert workload.count("install") == 0


def test_teardown_failure_does_not_stop_later_steps(reconciler, cluster, workload):
    reconciler.up()
    workload.uninstall_errors = [UninstallStepError("Teardown step 'delete-pvcs' failed", step="delete-pvcs")]

    report = reconciler.down()

    assert report.ok
    assert cluster.count("destroy") == 1
    assert cluster.clusters == set()
    assert len(report.teardown_errors) == 1
    assert "delete-pvcs" in report.teardown_errors[0]


def test_destroy_failure_is_recorded_not_raised(reconciler, cluster):
    reconciler.up()
    cluster.destroy_error = UninstallStepError("kind delete failed", step="destroy-cluster")

    report = reconciler.down()

    assert report.ok
    assert report.final_state is ReconcileState.IDLE
    assert any("destroy-cluster" in error for error in report.teardown_errors)


def test_down_without_cluster_is_a_no_op(reconciler, cluster, workload):
    report = reconciler.down()

    assert report.ok
    assert report.teardown_errors == ()
    assert workload.count("uninstall") == 1
    destroy = next(step for step in report.steps if step.name == "destroy-cluster")
    assert destroy.status is StepStatus.ALREADY_SATISFIED


def test_reset_without_prior_up_behaves_like_up(reconciler, cluster):
    report = reconciler.reset()

    assert report.ok
    assert _names(report) == UP_STEPS
    assert report.final_state is ReconcileState.READY
    assert cluster.count("create") == 1


def test_reset_reinstalls_on_existing_cluster(reconciler, cluster, workload):
    reconciler.up()
    workload.calls.clear()

    report = reconciler.reset()

    assert report.ok
    assert _names(report) == ["uninstall-workload", *UP_STEPS]
    assert [call[0] for call in workload.calls[:2]] == ["uninstall", "install"]
    assert cluster.count("create") == 1
    assert cluster.count("destroy") == 0


def test_test_without_cluster_reports_context_error(reconciler):
    report = reconciler.test()

    assert report.outcome is RunOutcome.FAILED
    assert report.error_type == "ContextError"


def test_cancel_before_start_runs_nothing(reconciler, cluster, cancel):
    cancel.set()

    report = reconciler.up()

    assert report.outcome is RunOutcome.CANCELLED
    assert report.steps[0].status is StepStatus.CANCELLED
    assert cluster.count("provision") == 0
    assert exit_code_for(report) == 130


def test_interrupt_during_install_cancels_and_ephemeral_cleans_up(spec, cluster, workload, sink, cancel):
    workload.install_error = KeyboardInterrupt()
    reconciler = Reconciler(spec, cluster, workload, sink=sink, cancel=cancel)

    report = reconciler.up(ephemeral=True)

    assert report.outcome is RunOutcome.CANCELLED
    assert report.failed_step.name == "install-workload"
    assert report.failed_step.status is StepStatus.CANCELLED
    assert cancel.is_set()
    assert workload.count("uninstall") == 1
    assert cluster.count("destroy") == 1


def test_down_attempts_every_step_when_cluster_lookup_hangs(reconciler, cluster, workload):
    cluster.exists_error = sh.TimeoutException(-9, "kind get clusters")

    report = reconciler.down()

    assert report.ok
    assert report.final_state is ReconcileState.IDLE
    assert workload.count("uninstall") == 1
    assert cluster.count("destroy") == 1
    assert any("TimeoutException" in error for error in report.teardown_errors)


def test_ephemeral_teardown_survives_unexpected_uninstall_error(spec, cluster, workload, sink):
    workload.uninstall_exception = RuntimeError("helm binary vanished")
    reconciler = Reconciler(spec, cluster, workload, sink=sink)

    report = reconciler.up(ephemeral=True)

    assert report.ok
    assert report.final_state is ReconcileState.IDLE
    assert cluster.count("destroy") == 1
    assert cluster.clusters == set()
    assert report.teardown_errors == ("uninstall-workload: RuntimeError: helm binary vanished",)
    uninstall = next(step for step in report.steps if step.name == "uninstall-workload")
    assert uninstall.status is StepStatus.FAILED


def test_down_with_kind_timing_out_still_uninstalls(monkeypatch, spec, workload, sink):
    def hanging_run_tool(tool, *args, timeout=None, stdin=None, secrets=()):
        raise sh.TimeoutException(-9, " ".join((tool, *args)))

    monkeypatch.setattr(cluster_module, "run_tool", hanging_run_tool)
    reconciler = Reconciler(spec, KindClusterDriver(), workload, sink=sink)

    report = reconciler.down()

    assert report.ok
    assert workload.count("uninstall") == 1
    assert [step.name for step in report.steps] == ["select-context", "uninstall-workload", "destroy-cluster"]
    failed = [step.name for step in report.steps if step.status is StepStatus.FAILED]
    assert failed == ["select-context", "destroy-cluster"]
    assert all("Unable to list kind clusters" in error for error in report.teardown_errors)


def test_reset_teardown_warning_is_not_a_failed_step(reconciler, cluster, workload):
    reconciler.up()
    workload.uninstall_errors = [UninstallStepError("Teardown step 'delete-pvcs' failed", step="delete-pvcs")]

    report = reconciler.reset()

    assert report.ok
    assert report.failed_step is None
    assert report.teardown_errors == ("delete-pvcs: Teardown step 'delete-pvcs' failed",)
