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

"""Data model: environment spec, handles, workload snapshots and reports."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, SecretStr, computed_field, model_validator

from env_manager.constants import (
    DEFAULT_CHECK_TIMEOUT,
    DEFAULT_CHART_VERSION,
    DEFAULT_CLUSTER_NAME,
    DEFAULT_CPU,
    DEFAULT_INSTALL_TIMEOUT,
    DEFAULT_MEMORY,
    DEFAULT_NAMESPACE,
    DEFAULT_PASSWORD,
    DEFAULT_PORT_MAPPINGS,
    DEFAULT_PROFILE,
    DEFAULT_RELEASE_NAME,
    DEFAULT_STORAGE,
    DEFAULT_USERNAME,
    DEFAULT_WORKER_NODES,
    HELM_CHART_NAME,
    HELM_REPO_NAME,
    HELM_REPO_URL,
    KIND_CONTEXT_PREFIX,
    LABEL_APP,
    MIN_CHART_VERSION,
)

DNS_LABEL_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"
QUANTITY_PATTERN = r"^\d+(\.\d+)?(m|Ki|Mi|Gi|Ti|k|M|G|T)?$"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_chart_version(version: str) -> tuple[int, ...]:
    """Parse the numeric release part of a chart version.

    Args:
        version: Chart version string (e.g. ``2025.10.1``).

    Returns:
        Tuple of the dot-separated integer components.

    Raises:
        ValueError: If the version has no numeric ``major.minor`` prefix.
    """
    m = re.match(r"^v?(\d+)\.(\d+)(?:\.(\d+))?", version)
    if not m:
        raise ValueError(f"chart version '{version}' is not of the form MAJOR.MINOR[.PATCH]")
    return tuple(int(part) for part in m.groups() if part is not None)


# ============================================================================
# Environment spec
# ============================================================================

class PortMapping(BaseModel):
    """Host to container port forwarded for local access."""

    model_config = ConfigDict(frozen=True)

    name: str
    host_port: int = Field(ge=1, le=65535)
    container_port: int = Field(ge=1, le=65535)


class ResourceRequests(BaseModel):
    """CPU, memory and storage requested for the workload."""

    model_config = ConfigDict(frozen=True)

    cpu: str = Field(default=DEFAULT_CPU, pattern=QUANTITY_PATTERN)
    memory: str = Field(default=DEFAULT_MEMORY, pattern=QUANTITY_PATTERN)
    storage: str = Field(default=DEFAULT_STORAGE, pattern=QUANTITY_PATTERN)


def _default_port_mappings() -> tuple[PortMapping, ...]:
    return tuple(
        PortMapping(name=name, host_port=host, container_port=container)
        for name, host, container in DEFAULT_PORT_MAPPINGS
    )


class EnvironmentSpec(BaseModel):
    """Fully resolved, immutable description of one local environment.

    Built once per run by ``env_manager.config.resolve_environment`` and passed
    explicitly to every driver call.

    Attributes:
        cluster_name: Name of the kind cluster.
        node_image: kind node image override, or None for the kind default.
        workers: Number of kind worker nodes besides the control plane.
        namespace: Kubernetes namespace for the workload.
        release_name: Helm release name.
        chart_repo_name: Local alias of the Helm repository.
        helm_repo_url: URL of the Helm repository.
        chart_name: Chart name inside the repository.
        chart_version: Chart version to install.
        username: Database user for health checks and the shell.
        password: Database password.
        values_file: Extra Helm values file applied after the generated values.
        resources: Resource requests for the workload.
        port_mappings: Ports forwarded by ``port-forward``.
        profile: Name of the profile the spec was resolved with.
        ephemeral: Whether ``up`` tears everything down once probing concludes.
        install_timeout: Seconds to wait for the workload to become ready.
        check_timeout: Default per-check timeout in seconds.
    """

    model_config = ConfigDict(frozen=True)

    cluster_name: str = Field(default=DEFAULT_CLUSTER_NAME, pattern=DNS_LABEL_PATTERN, max_length=50)
    node_image: str | None = None
    workers: int = Field(default=DEFAULT_WORKER_NODES, ge=0, le=10)
    namespace: str = Field(default=DEFAULT_NAMESPACE, pattern=DNS_LABEL_PATTERN, max_length=63)
    release_name: str = Field(default=DEFAULT_RELEASE_NAME, pattern=DNS_LABEL_PATTERN, max_length=53)
    chart_repo_name: str = HELM_REPO_NAME
    helm_repo_url: str = HELM_REPO_URL
    chart_name: str = HELM_CHART_NAME
    chart_version: str = DEFAULT_CHART_VERSION
    username: str = DEFAULT_USERNAME
    password: SecretStr = SecretStr(DEFAULT_PASSWORD)
    values_file: Path | None = None
    resources: ResourceRequests = Field(default_factory=ResourceRequests)
    port_mappings: tuple[PortMapping, ...] = Field(default_factory=_default_port_mappings)
    profile: str = DEFAULT_PROFILE
    ephemeral: bool = False
    install_timeout: int = Field(default=DEFAULT_INSTALL_TIMEOUT, ge=1)
    check_timeout: int = Field(default=DEFAULT_CHECK_TIMEOUT, ge=1)

    @model_validator(mode="after")
    def _check_consistency(self) -> EnvironmentSpec:
        if not self.password.get_secret_value():
            raise ValueError("password must not be empty")
        if parse_chart_version(self.chart_version)[:2] < MIN_CHART_VERSION:
            minimum = ".".join(str(part) for part in MIN_CHART_VERSION)
            raise ValueError(
                f"chart version {self.chart_version} is below the minimum {minimum} "
                "(native Vector type support)"
            )
        host_ports = [mapping.host_port for mapping in self.port_mappings]
        duplicates = sorted({port for port in host_ports if host_ports.count(port) > 1})
        if duplicates:
            raise ValueError(f"port mappings share host ports: {duplicates}")
        return self

    @property
    def kube_context(self) -> str:
        return f"{KIND_CONTEXT_PREFIX}{self.cluster_name}"

    @property
    def chart_ref(self) -> str:
        return f"{self.chart_repo_name}/{self.chart_name}"

    @property
    def pod_selector(self) -> str:
        return f"{LABEL_APP}={self.release_name}"


# ============================================================================
# Handles
# ============================================================================

@dataclass(frozen=True)
class ClusterHandle:
    """A provisioned kind cluster and its kubectl context."""

    name: str
    context: str


@dataclass(frozen=True)
class WorkloadHandle:
    """An installed release inside a namespace of a live cluster."""

    cluster: ClusterHandle
    namespace: str
    release_name: str

    @property
    def selector(self) -> str:
        return f"{LABEL_APP}={self.release_name}"


class ProvisionOutcome(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


@dataclass(frozen=True)
class ProvisionResult:
    handle: ClusterHandle
    outcome: ProvisionOutcome


@dataclass(frozen=True)
class ExecResult:
    """Exit code and captured streams of a command run inside a pod.

    ``exit_code`` is None when kubectl itself could not run or timed out.
    """

    exit_code: int | None
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def combined_output(self) -> str:
        return "\n".join(part.strip() for part in (self.stdout, self.stderr) if part.strip())


# ============================================================================
# Workload snapshot
# ============================================================================

class PodStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    phase: str
    ready: bool
    restarts: int = 0


class ServiceStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: str
    cluster_ip: str | None = None
    ports: tuple[str, ...] = ()


class PvcStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    phase: str
    capacity: str | None = None


class WorkloadStatus(BaseModel):
    """Point-in-time snapshot of the workload's pods, services and claims."""

    model_config = ConfigDict(frozen=True)

    namespace: str
    release_name: str
    pods: tuple[PodStatus, ...] = ()
    services: tuple[ServiceStatus, ...] = ()
    pvcs: tuple[PvcStatus, ...] = ()
    observed_at: datetime = Field(default_factory=_utcnow)

    @computed_field
    @property
    def ready(self) -> bool:
        return bool(self.pods) and all(pod.ready for pod in self.pods)


# ============================================================================
# Health report
# ============================================================================

class CheckStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"
    CANCELLED = "cancelled"


class CheckResult(BaseModel):
    """Outcome of a single named health check."""

    model_config = ConfigDict(frozen=True)

    name: str
    status: CheckStatus
    latency_seconds: float
    diagnostic: str = ""
    required: bool = True


class HealthReport(BaseModel):
    """Ordered, immutable aggregate of check results."""

    model_config = ConfigDict(frozen=True)

    checks: tuple[CheckResult, ...] = ()
    created_at: datetime = Field(default_factory=_utcnow)

    @computed_field
    @property
    def status(self) -> CheckStatus:
        required = [check for check in self.checks if check.required]
        if all(check.status is CheckStatus.PASS for check in required):
            return CheckStatus.PASS
        if any(check.status is CheckStatus.CANCELLED for check in required):
            return CheckStatus.CANCELLED
        return CheckStatus.FAIL

    @property
    def passed(self) -> bool:
        return self.status is CheckStatus.PASS


# ============================================================================
# Reconcile steps and run report
# ============================================================================

class ReconcileState(str, Enum):
    IDLE = "idle"
    PROVISIONING = "provisioning"
    INSTALLING = "installing"
    PROBING = "probing"
    READY = "ready"
    FAILED = "failed"
    TEARING_DOWN = "tearing_down"


class StepStatus(str, Enum):
    OK = "ok"
    ALREADY_SATISFIED = "already_satisfied"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepResult(BaseModel):
    """Result of one reconcile step."""

    model_config = ConfigDict(frozen=True)

    name: str
    status: StepStatus
    duration_seconds: float
    detail: str = ""
    output: str = ""
    error: str | None = None


class RunOutcome(str, Enum):
    OK = "ok"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunReport(BaseModel):
    """Terminal summary of one reconciler invocation."""

    model_config = ConfigDict(frozen=True)

    action: str
    outcome: RunOutcome
    final_state: ReconcileState
    states: tuple[ReconcileState, ...] = ()
    steps: tuple[StepResult, ...] = ()
    health: HealthReport | None = None
    workload: WorkloadStatus | None = None
    teardown_errors: tuple[str, ...] = ()
    error_type: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is RunOutcome.OK

    @property
    def failed_step(self) -> StepResult | None:
        """First failed or cancelled step of an unsuccessful run.

        Successful runs have none; their teardown failures are listed in
        ``teardown_errors`` instead.
        """
        if self.ok:
            return None
        for step in self.steps:
            if step.status in (StepStatus.FAILED, StepStatus.CANCELLED):
                return step
        return None
