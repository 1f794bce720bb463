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

import threading

import pytest

from env_manager.cluster import context_name
from env_manager.constants import (
    CYPHER_COMPONENTS,
    CYPHER_PING,
    CYPHER_VECTOR,
    CYPHER_VECTOR_SIMILARITY,
)
from env_manager.errors import ContextError, InstallError, WorkloadNotFoundError
from env_manager.models import (
    ClusterHandle,
    EnvironmentSpec,
    ExecResult,
    PodStatus,
    ProvisionOutcome,
    ProvisionResult,
    WorkloadStatus,
)
from env_manager.probe import HealthProbe
from env_manager.reconciler import Reconciler
from env_manager.workload import workload_handle

ENV_PREFIXES = ("KIND_", "NEO4J_", "LOCAL_ENV_")

QUERY_ANSWERS = {
    CYPHER_PING: ExecResult(0, "status\n\"Neo4j is running\"\n", ""),
    CYPHER_COMPONENTS: ExecResult(0, "name, versions\n\"Neo4j Kernel\", [\"2025.10.1\"]\n", ""),
    CYPHER_VECTOR: ExecResult(0, "vec\n[1.0, 2.0, 3.0]\n", ""),
    CYPHER_VECTOR_SIMILARITY: ExecResult(0, "similarity\n1.0\n", ""),
}


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch):
    import os

    for key in list(os.environ):
        if key.startswith(ENV_PREFIXES):
            monkeypatch.delenv(key)


class FakeClusterDriver:
    """In-memory kind: a set of cluster names plus a call log."""

    def __init__(self, clusters=()):
        self.clusters = set(clusters)
        self.calls = []
        self.exists_error = None
        self.provision_error = None
        self.destroy_error = None

    def count(self, op):
        return sum(1 for call in self.calls if call[0] == op)

    def exists(self, name):
        if self.exists_error is not None:
            raise self.exists_error
        return name in self.clusters

    def provision(self, spec):
        name = spec.cluster_name
        self.calls.append(("provision", name))
        handle = ClusterHandle(name=name, context=context_name(name))
        if self.provision_error is not None:
            raise self.provision_error
        if name in self.clusters:
            return ProvisionResult(handle=handle, outcome=ProvisionOutcome.ALREADY_EXISTS)
        self.calls.append(("create", name))
        self.clusters.add(name)
        return ProvisionResult(handle=handle, outcome=ProvisionOutcome.CREATED)

    def destroy(self, name):
        self.calls.append(("destroy", name))
        if self.destroy_error is not None:
            raise self.destroy_error
        if name not in self.clusters:
            return False
        self.clusters.discard(name)
        return True

    def select_context(self, name):
        self.calls.append(("select-context", name))
        if name not in self.clusters:
            raise ContextError(f"kind cluster '{name}' does not exist", step="select-context")
        return ClusterHandle(name=name, context=context_name(name))


class FakeWorkloadDriver:
    """In-memory helm release store keyed by (cluster, namespace, release)."""

    def __init__(self, cluster):
        self.cluster = cluster
        self.releases = set()
        self.calls = []
        self.install_error = None
        self.uninstall_errors = []
        self.uninstall_exception = None
        self.query_answers = dict(QUERY_ANSWERS)
        self.policies = ["allow-bolt"]

    def count(self, op):
        return sum(1 for call in self.calls if call[0] == op)

    @staticmethod
    def _key(handle):
        return handle.cluster.name, handle.namespace, handle.release_name

    def install(self, handle, spec):
        self.calls.append(("install", spec.release_name))
        if self.install_error is not None:
            raise self.install_error
        if handle.name not in self.cluster.clusters:
            raise InstallError(f"cluster '{handle.name}' unreachable", step="install-workload")
        workload = workload_handle(handle, spec)
        self.releases.add(self._key(workload))
        return workload

    def uninstall(self, handle):
        self.calls.append(("uninstall", handle.release_name))
        if self.uninstall_exception is not None:
            raise self.uninstall_exception
        self.releases.discard(self._key(handle))
        return list(self.uninstall_errors)

    def status(self, handle):
        if handle.cluster.name not in self.cluster.clusters:
            raise ContextError("cluster unreachable", step="status")
        pods = ()
        if self._key(handle) in self.releases:
            pods = (PodStatus(name=f"{handle.release_name}-0", phase="Running", ready=True),)
        return WorkloadStatus(namespace=handle.namespace, release_name=handle.release_name, pods=pods)

    def logs(self, handle, tail=100, follow=False):
        return "started\n"

    def exec(self, handle, command, timeout=None, secrets=()):
        return ExecResult(0, "", "")

    def wait_ready(self, handle, timeout):
        if self._key(handle) not in self.releases:
            raise WorkloadNotFoundError(f"No pods match '{handle.selector}'")
        return ExecResult(0, f"pod/{handle.release_name}-0 condition met\n", "")

    def query(self, handle, spec, statement, timeout):
        self.calls.append(("query", statement))
        return self.query_answers[statement]

    def network_policies(self, handle):
        return list(self.policies)


class RecordingSink:
    def __init__(self):
        self.steps = []
        self.health_reports = []
        self.snapshots = []
        self.runs = []

    def step(self, result):
        self.steps.append(result)

    def health(self, report):
        self.health_reports.append(report)

    def status(self, snapshot):
        self.snapshots.append(snapshot)

    def finish(self, report):
        self.runs.append(report)


@pytest.fixture
def spec():
    return EnvironmentSpec(cluster_name="c1", namespace="ns1", release_name="r1")


@pytest.fixture
def cluster():
    return FakeClusterDriver()


@pytest.fixture
def workload(cluster):
    return FakeWorkloadDriver(cluster)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def cancel():
    return threading.Event()


@pytest.fixture
def reconciler(spec, cluster, workload, sink, cancel):
    return Reconciler(spec, cluster, workload, probe=HealthProbe(workload), sink=sink, cancel=cancel)
