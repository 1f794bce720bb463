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

import json

import pytest
import sh
import yaml

from env_manager import workload as workload_module
from env_manager.constants import CYPHER_PING
from env_manager.errors import ContextError, InstallError, ReadinessTimeout, WorkloadNotFoundError
from env_manager.models import ClusterHandle, EnvironmentSpec, ResourceRequests
from env_manager.workload import HelmWorkloadDriver, helm_values, parse_status, workload_handle

CLUSTER = ClusterHandle(name="c1", context="kind-c1")


def _pod(name, release, ready=True, restarts=0):
    return {
        "kind": "Pod",
        "metadata": {"name": name, "labels": {"app": release}},
        "status": {
            "phase": "Running" if ready else "Pending",
            "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
            "containerStatuses": [{"restartCount": restarts}],
        },
    }


STATUS_DOCUMENT = {
    "kind": "List",
    "items": [
        _pod("r1-0", "r1", ready=False, restarts=2),
        _pod("other-0", "other"),
        {
            "kind": "Service",
            "metadata": {"name": "r1"},
            "spec": {"type": "ClusterIP", "clusterIP": "10.96.0.10",
                     "ports": [{"name": "bolt", "port": 7687, "protocol": "TCP"}]},
        },
        {
            "kind": "PersistentVolumeClaim",
            "metadata": {"name": "data-r1-0"},
            "status": {"phase": "Bound", "capacity": {"storage": "10Gi"}},
        },
    ],
}


class _FakeTools:
    """Stands in for run_tool; fails commands whose prefix is registered in ``failures``."""

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.hangs = set()
        self.stdin = {}
        self.values = []

    def __call__(self, tool, *args, timeout=None, stdin=None, secrets=()):
        cmd = (tool, *args)
        self.calls.append(cmd)
        if stdin is not None:
            self.stdin[cmd] = stdin
        for prefix, stderr in self.failures.items():
            if cmd[:len(prefix)] == prefix:
                raise sh.ErrorReturnCode_1(" ".join(cmd), b"", stderr.encode())
        if any(cmd[:len(prefix)] == prefix for prefix in self.hangs):
            raise sh.TimeoutException(-9, " ".join(cmd))
        if cmd[:3] == ("helm", "upgrade", "--install"):
            with open(cmd[cmd.index("--values") + 1]) as f:
                self.values.append(yaml.safe_load(f))
        if "pods,services,persistentvolumeclaims" in cmd:
            return json.dumps(STATUS_DOCUMENT)
        return ""

    def index(self, *prefix):
        return next(i for i, call in enumerate(self.calls) if call[:len(prefix)] == prefix)


@pytest.fixture
def tools(monkeypatch):
    fake = _FakeTools()
    monkeypatch.setattr(workload_module, "run_tool", fake)
    return fake


@pytest.fixture
def spec():
    return EnvironmentSpec(cluster_name="c1", namespace="ns1", release_name="r1", password="pw-123")


def test_install_creates_namespace_before_helm(tools, spec):
    handle = HelmWorkloadDriver().install(CLUSTER, spec)

    assert handle == workload_handle(CLUSTER, spec)
    assert tools.index("kubectl", "--context", "kind-c1", "apply") < tools.index("helm", "upgrade")
    namespace_call = tools.calls[tools.index("kubectl", "--context", "kind-c1", "apply")]
    assert "name: ns1" in tools.stdin[namespace_call]

    helm = tools.calls[tools.index("helm", "upgrade")]
    assert helm[3:5] == ("r1", "neo4j/neo4j")
    assert ("--kube-context", "kind-c1") == helm[helm.index("--kube-context"):helm.index("--kube-context") + 2]
    assert "neo4j.password=pw-123" in helm
    assert "--wait" in helm
    assert tools.values[0]["neo4j"]["acceptLicenseAgreement"] == "eval"


def test_helm_values_follow_resources():
    spec = EnvironmentSpec(release_name="r1", resources=ResourceRequests(cpu="500m", storage="2Gi"))

    values = helm_values(spec)

    assert values["neo4j"]["name"] == "r1"
    assert values["neo4j"]["resources"] == {"cpu": "500m", "memory": "2Gi"}
    assert values["volumes"]["data"]["defaultStorageClass"]["requests"]["storage"] == "2Gi"


def test_install_timeout_reports_last_status(tools, spec):
    tools.failures[("helm", "upgrade")] = "Error: UPGRADE FAILED: timed out waiting for the condition"

    with pytest.raises(ReadinessTimeout) as exc_info:
        HelmWorkloadDriver().install(CLUSTER, spec)

    last = exc_info.value.last_status
    assert exc_info.value.step == "install-workload"
    assert last is not None
    assert [pod.name for pod in last.pods] == ["r1-0"]
    assert not last.ready


def test_install_failure_is_install_error(tools, spec):
    tools.failures[("helm", "upgrade")] = "Error: chart \"neo4j\" version \"2099.1.1\" not found"

    with pytest.raises(InstallError) as exc_info:
        HelmWorkloadDriver().install(CLUSTER, spec)

    assert "2099.1.1" in exc_info.value.output


def test_uninstall_continues_after_failed_sub_step(tools, spec):
    tools.failures[("helm", "uninstall")] = "Error: uninstall: connection refused"

    errors = HelmWorkloadDriver().uninstall(workload_handle(CLUSTER, spec))

    assert [error.step for error in errors] == ["helm-uninstall"]
    assert tools.index("kubectl", "--context", "kind-c1", "delete", "pvc") > tools.index("helm", "uninstall")
    assert tools.index("kubectl", "--context", "kind-c1", "delete", "namespace")


def test_uninstall_treats_missing_resources_as_removed(tools, spec):
    tools.failures[("helm", "uninstall")] = "Error: uninstall: Release not loaded: r1: release: not found"
    tools.failures[("kubectl", "--context", "kind-c1", "delete", "namespace")] = (
        'Error from server (NotFound): namespaces "ns1" not found'
    )

    assert HelmWorkloadDriver().uninstall(workload_handle(CLUSTER, spec)) == []


def test_parse_status_filters_by_release():
    status = parse_status(STATUS_DOCUMENT, workload_handle(CLUSTER, EnvironmentSpec(release_name="r1")))

    assert [pod.name for pod in status.pods] == ["r1-0"]
    assert status.pods[0].restarts == 2
    assert status.services[0].ports == ("bolt:7687/TCP",)
    assert status.pvcs[0].capacity == "10Gi"
    assert status.ready is False


def test_status_failure_is_context_error(tools, spec):
    tools.failures[("kubectl", "--context", "kind-c1", "get")] = "The connection to the server was refused"

    with pytest.raises(ContextError):
        HelmWorkloadDriver().status(workload_handle(CLUSTER, spec))


@pytest.mark.parametrize("hung", [
    ("helm", "repo", "add"),
    ("helm", "repo", "update"),
    ("kubectl", "--context", "kind-c1", "apply"),
])
def test_install_preparation_timeout_is_install_error(tools, spec, hung):
    tools.hangs.add(hung)

    with pytest.raises(InstallError) as exc_info:
        HelmWorkloadDriver().install(CLUSTER, spec)

    assert exc_info.value.step == "install-workload"
    assert not any(call[:2] == ("helm", "upgrade") for call in tools.calls)


def test_status_timeout_is_context_error(tools, spec):
    tools.hangs.add(("kubectl", "--context", "kind-c1", "get"))

    with pytest.raises(ContextError) as exc_info:
        HelmWorkloadDriver().status(workload_handle(CLUSTER, spec))

    assert exc_info.value.step == "status"


def test_network_policies_timeout_is_context_error(tools, spec):
    tools.hangs.add(("kubectl", "--context", "kind-c1", "get", "networkpolicies"))

    with pytest.raises(ContextError):
        HelmWorkloadDriver().network_policies(workload_handle(CLUSTER, spec))


def test_logs_timeout_is_wrapped(tools, spec):
    tools.hangs.add(("kubectl", "--context", "kind-c1", "logs"))

    with pytest.raises(WorkloadNotFoundError) as exc_info:
        HelmWorkloadDriver().logs(workload_handle(CLUSTER, spec))

    assert exc_info.value.step == "logs"


def test_wait_ready_stays_within_one_timeout(monkeypatch, spec):
    calls = []

    def fake_kubectl(args, context=None, timeout=60, secrets=()):
        calls.append((args, timeout))
        if args[:2] == ["get", "pods"]:
            return 0, json.dumps({"items": [{"metadata": {"name": "r1-0"}}]}), ""
        return 0, "pod/r1-0 condition met\n", ""

    monkeypatch.setattr(workload_module, "run_kubectl", fake_kubectl)

    result = HelmWorkloadDriver().wait_ready(workload_handle(CLUSTER, spec), 30)

    assert result.ok
    wait_args, process_timeout = calls[-1]
    assert wait_args[0] == "wait"
    wait_seconds = int(next(arg for arg in wait_args if arg.startswith("--timeout="))[len("--timeout="):-1])
    assert 1 <= wait_seconds <= 30
    assert process_timeout <= 30 + 5


def test_query_runs_cypher_shell_in_first_pod(monkeypatch, spec):
    calls = []

    def fake_kubectl(args, context=None, timeout=60, secrets=()):
        calls.append((args, context, secrets))
        if args[:2] == ["get", "pods"]:
            return 0, json.dumps({"items": [{"metadata": {"name": "r1-0"}}]}), ""
        return 0, "status\n\"Neo4j is running\"\n", ""

    monkeypatch.setattr(workload_module, "run_kubectl", fake_kubectl)

    result = HelmWorkloadDriver().query(workload_handle(CLUSTER, spec), spec, CYPHER_PING, 30)

    assert result.ok
    exec_args, context, secrets = calls[-1]
    assert exec_args[:4] == ["exec", "-n", "ns1", "r1-0"]
    assert exec_args[-1] == CYPHER_PING
    assert context == "kind-c1"
    assert secrets == ("pw-123",)


def test_exec_without_pods_raises(monkeypatch, spec):
    monkeypatch.setattr(workload_module, "run_kubectl", lambda *a, **kw: (0, json.dumps({"items": []}), ""))

    with pytest.raises(WorkloadNotFoundError):
        HelmWorkloadDriver().exec(workload_handle(CLUSTER, spec), ["true"])
