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

"""Neo4j Helm release install, teardown, status and pod access."""

from __future__ import annotations

import json
import signal
import tempfile
import time
from pathlib import Path
from typing import Protocol

import sh
import yaml
from rich.panel import Panel
from tenacity import retry, retry_if_exception_type, stop_after_delay, wait_fixed

from env_manager import console, logger
from env_manager.constants import (
    HELM_KEY_PASSWORD,
    HELM_TIMEOUT_MARKERS,
    KUBECTL_PROCESS_GRACE_SECONDS,
    NOT_FOUND_MARKERS,
    POD_APPEAR_POLL_INTERVAL_SECONDS,
    TOOL_TIMEOUT,
)
from env_manager.errors import (
    ContextError,
    EnvManagerError,
    InstallError,
    ReadinessTimeout,
    ToolUnavailableError,
    UninstallStepError,
    WorkloadNotFoundError,
)
from env_manager.models import (
    ClusterHandle,
    EnvironmentSpec,
    ExecResult,
    PodStatus,
    PvcStatus,
    ServiceStatus,
    WorkloadHandle,
    WorkloadStatus,
)
from env_manager.utils import error_output, run_kubectl, run_tool

# Extra seconds granted to the helm process beyond its own --timeout.
HELM_PROCESS_GRACE_SECONDS = 60
UNINSTALL_STEP_TIMEOUT = 300


class WorkloadDriver(Protocol):
    """Install, remove and inspect a chart-based workload."""

    def install(self, handle: ClusterHandle, spec: EnvironmentSpec) -> WorkloadHandle: ...

    def uninstall(self, handle: WorkloadHandle) -> list[UninstallStepError]: ...

    def status(self, handle: WorkloadHandle) -> WorkloadStatus: ...

    def logs(self, handle: WorkloadHandle, tail: int = 100, follow: bool = False) -> str: ...

    def exec(
        self, handle: WorkloadHandle, command: list[str], timeout: float | None = None, secrets: tuple[str, ...] = ()
    ) -> ExecResult: ...

    def wait_ready(self, handle: WorkloadHandle, timeout: int) -> ExecResult: ...

    def query(self, handle: WorkloadHandle, spec: EnvironmentSpec, statement: str, timeout: float) -> ExecResult: ...

    def network_policies(self, handle: WorkloadHandle) -> list[str]: ...


def workload_handle(cluster: ClusterHandle, spec: EnvironmentSpec) -> WorkloadHandle:
    return WorkloadHandle(cluster=cluster, namespace=spec.namespace, release_name=spec.release_name)


def helm_values(spec: EnvironmentSpec) -> dict:
    """Build generated Helm values for the Neo4j chart.

    Args:
        spec: Resolved environment spec.

    Returns:
        Values dictionary written to a temporary ``--values`` file.
    """
    return {
        "neo4j": {
            "name": spec.release_name,
            "edition": "enterprise",
            "acceptLicenseAgreement": "eval",
            "resources": {"cpu": spec.resources.cpu, "memory": spec.resources.memory},
        },
        "volumes": {
            "data": {
                "mode": "defaultStorageClass",
                "defaultStorageClass": {"requests": {"storage": spec.resources.storage}},
            },
        },
    }


def namespace_manifest(namespace: str) -> dict:
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": namespace}}


def _is_not_found(output: str) -> bool:
    lowered = output.lower()
    return any(marker in lowered for marker in NOT_FOUND_MARKERS)


def _pod_ready(item: dict) -> bool:
    conditions = item.get("status", {}).get("conditions") or []
    return any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions)


def parse_status(document: dict, handle: WorkloadHandle) -> WorkloadStatus:
    """Turn ``kubectl get pods,services,pvc -o json`` output into a snapshot.

    Only pods labelled with the release selector count towards readiness.

    Args:
        document: Parsed kubectl ``List`` document.
        handle: Workload the snapshot belongs to.

    Returns:
        WorkloadStatus for the release.
    """
    pods: list[PodStatus] = []
    services: list[ServiceStatus] = []
    pvcs: list[PvcStatus] = []
    for item in document.get("items", []):
        kind = item.get("kind")
        metadata = item.get("metadata", {})
        status = item.get("status", {})
        if kind == "Pod":
            if (metadata.get("labels") or {}).get("app") != handle.release_name:
                continue
            restarts = sum(cs.get("restartCount", 0) for cs in status.get("containerStatuses") or [])
            pods.append(PodStatus(
                name=metadata["name"],
                phase=status.get("phase", "Unknown"),
                ready=_pod_ready(item),
                restarts=restarts,
            ))
        elif kind == "Service":
            spec = item.get("spec", {})
            ports = tuple(
                f"{p.get('name', '')}:{p.get('port')}/{p.get('protocol', 'TCP')}".lstrip(":")
                for p in spec.get("ports") or []
            )
            services.append(ServiceStatus(
                name=metadata["name"],
                type=spec.get("type", "ClusterIP"),
                cluster_ip=spec.get("clusterIP"),
                ports=ports,
            ))
        elif kind == "PersistentVolumeClaim":
            pvcs.append(PvcStatus(
                name=metadata["name"],
                phase=status.get("phase", "Unknown"),
                capacity=(status.get("capacity") or {}).get("storage"),
            ))
    return WorkloadStatus(
        namespace=handle.namespace,
        release_name=handle.release_name,
        pods=tuple(pods),
        services=tuple(services),
        pvcs=tuple(pvcs),
    )


class HelmWorkloadDriver:
    """WorkloadDriver backed by helm and kubectl.

    Every call pins the cluster context of the handle, so a stale current
    context never redirects a command to another cluster.
    """

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    def ensure_repo(self, spec: EnvironmentSpec) -> None:
        run_tool("helm", "repo", "add", spec.chart_repo_name, spec.helm_repo_url, "--force-update")
        run_tool("helm", "repo", "update", spec.chart_repo_name)

    def ensure_namespace(self, handle: ClusterHandle, namespace: str) -> None:
        """Create the namespace if missing; applying the manifest is idempotent."""
        console.print(f"[yellow]\u2139\ufe0f  Creating namespace '{namespace}'...[/yellow]")
        run_tool(
            "kubectl", "--context", handle.context, "apply", "-f", "-",
            stdin=yaml.safe_dump(namespace_manifest(namespace)),
        )

    def install(self, handle: ClusterHandle, spec: EnvironmentSpec) -> WorkloadHandle:
        """Install or upgrade the release and block until it is ready.

        Args:
            handle: Cluster to install into.
            spec: Resolved environment spec.

        Returns:
            Handle of the installed release.

        Raises:
            ReadinessTimeout: If the release is not ready within ``spec.install_timeout``.
            InstallError: If helm or kubectl fail for any other reason.
        """
        workload = workload_handle(handle, spec)
        console.print(Panel.fit(f"Installing Neo4j {spec.chart_version}", style="bold blue"))
        try:
            self.ensure_repo(spec)
            self.ensure_namespace(handle, spec.namespace)
        except (sh.ErrorReturnCode, sh.TimeoutException) as err:
            raise InstallError(
                f"Failed to prepare namespace '{spec.namespace}'", step="install-workload", output=error_output(err)
            ) from err

        password = spec.password.get_secret_value()
        with tempfile.NamedTemporaryFile("w", prefix="values-", suffix=".yaml", delete=False) as tmp:
            yaml.safe_dump(helm_values(spec), tmp, sort_keys=False)
            values_path = Path(tmp.name)

        helm_args = [
            "upgrade", "--install", spec.release_name, spec.chart_ref,
            "--kube-context", handle.context,
            "--namespace", spec.namespace,
            "--version", spec.chart_version,
            "--values", str(values_path),
        ]
        if spec.values_file:
            helm_args += ["--values", str(spec.values_file)]
        helm_args += [
            "--set", f"{HELM_KEY_PASSWORD}={password}",
            "--wait",
            "--timeout", f"{spec.install_timeout}s",
        ]
        try:
            run_tool(
                "helm", *helm_args,
                timeout=spec.install_timeout + HELM_PROCESS_GRACE_SECONDS,
                secrets=(password,),
            )
        except sh.TimeoutException as err:
            raise self._readiness_timeout(workload, spec, "") from err
        except sh.ErrorReturnCode as err:
            output = error_output(err)
            if any(marker in output.lower() for marker in HELM_TIMEOUT_MARKERS):
                raise self._readiness_timeout(workload, spec, output) from err
            raise InstallError(
                f"helm upgrade --install failed for release '{spec.release_name}'",
                step="install-workload",
                output=output,
            ) from err
        finally:
            values_path.unlink(missing_ok=True)

        console.print("[green]\u2705 Neo4j installed successfully[/green]")
        for mapping in spec.port_mappings:
            console.print(f"  {mapping.name:<8}: localhost:{mapping.host_port} (after port-forward)")
        console.print(f"  user    : {spec.username}")
        return workload

    def _readiness_timeout(self, workload: WorkloadHandle, spec: EnvironmentSpec, output: str) -> ReadinessTimeout:
        try:
            last_status = self.status(workload)
        except EnvManagerError as err:
            logger.warning("Could not read workload status after timeout: %s", err)
            last_status = None
        return ReadinessTimeout(
            f"Release '{spec.release_name}' not ready after {spec.install_timeout}s",
            step="install-workload",
            output=output,
            last_status=last_status,
        )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def uninstall(self, handle: WorkloadHandle) -> list[UninstallStepError]:
        """Remove the release, its storage claims and its namespace.

        Each sub-step runs even if an earlier one failed. Resources that are
        already gone count as removed.

        Returns:
            Errors of the sub-steps that failed, in execution order.
        """
        console.print(Panel.fit(f"Uninstalling release '{handle.release_name}'", style="bold blue"))
        context = handle.cluster.context
        sub_steps: list[tuple[str, str, list[str]]] = [
            ("helm-uninstall", "helm",
             ["uninstall", handle.release_name, "--namespace", handle.namespace, "--kube-context", context]),
            ("delete-pvcs", "kubectl",
             ["--context", context, "delete", "pvc", "--all", "--namespace", handle.namespace]),
            ("delete-namespace", "kubectl",
             ["--context", context, "delete", "namespace", handle.namespace]),
        ]
        errors: list[UninstallStepError] = []
        for name, tool, args in sub_steps:
            try:
                run_tool(tool, *args, timeout=UNINSTALL_STEP_TIMEOUT)
                console.print(f"[green]  \u2713 {name}[/green]")
            except sh.ErrorReturnCode as err:
                output = error_output(err)
                if _is_not_found(output):
                    console.print(f"[yellow]  {name}: already absent[/yellow]")
                    continue
                errors.append(self._teardown_failure(name, output))
            except sh.TimeoutException:
                errors.append(self._teardown_failure(name, f"timed out after {UNINSTALL_STEP_TIMEOUT}s"))
            except ToolUnavailableError as err:
                errors.append(self._teardown_failure(name, str(err)))
        return errors

    @staticmethod
    def _teardown_failure(name: str, output: str) -> UninstallStepError:
        logger.warning("Teardown step '%s' failed: %s", name, output)
        console.print(f"[red]  \u2717 {name}[/red]")
        return UninstallStepError(f"Teardown step '{name}' failed", step=name, output=output)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def status(self, handle: WorkloadHandle) -> WorkloadStatus:
        """Query live pods, services and claims of the release.

        Raises:
            ContextError: If the cluster cannot be queried.
        """
        try:
            output = run_tool(
                "kubectl", "--context", handle.cluster.context,
                "get", "pods,services,persistentvolumeclaims",
                "-n", handle.namespace, "-o", "json",
            )
        except (sh.ErrorReturnCode, sh.TimeoutException) as err:
            raise ContextError(
                f"Failed to read status of namespace '{handle.namespace}'", step="status", output=error_output(err)
            ) from err
        return parse_status(json.loads(output or "{}"), handle)

    def logs(self, handle: WorkloadHandle, tail: int = 100, follow: bool = False) -> str:
        args = [
            "--context", handle.cluster.context,
            "logs", "-n", handle.namespace, "-l", handle.selector, f"--tail={tail}",
        ]
        try:
            if follow:
                sh.kubectl(*args, "-f", _fg=True)
                return ""
            return run_tool("kubectl", *args)
        except (sh.ErrorReturnCode, sh.TimeoutException) as err:
            raise WorkloadNotFoundError(
                f"Unable to read logs for '{handle.selector}'", step="logs", output=error_output(err)
            ) from err

    def network_policies(self, handle: WorkloadHandle) -> list[str]:
        try:
            output = run_tool(
                "kubectl", "--context", handle.cluster.context,
                "get", "networkpolicies", "-n", handle.namespace, "-o", "json",
            )
        except (sh.ErrorReturnCode, sh.TimeoutException) as err:
            raise ContextError(
                "Failed to list NetworkPolicies", step="network-policies", output=error_output(err)
            ) from err
        return [item["metadata"]["name"] for item in json.loads(output or "{}").get("items", [])]

    # ------------------------------------------------------------------
    # Pod access
    # ------------------------------------------------------------------

    def _first_pod(self, handle: WorkloadHandle) -> str:
        code, stdout, stderr = run_kubectl(
            ["get", "pods", "-n", handle.namespace, "-l", handle.selector, "-o", "json"],
            context=handle.cluster.context,
        )
        if code != 0:
            raise WorkloadNotFoundError(f"Unable to list pods for '{handle.selector}'", output=stderr.strip())
        items = json.loads(stdout or "{}").get("items", [])
        if not items:
            raise WorkloadNotFoundError(f"No pods match '{handle.selector}' in namespace '{handle.namespace}'")
        return items[0]["metadata"]["name"]

    def find_pod(self, handle: WorkloadHandle, timeout: float = 0) -> str:
        """Return the name of the first workload pod, polling until one appears.

        Args:
            handle: Workload to look up.
            timeout: Seconds to keep polling; 0 checks once.

        Raises:
            WorkloadNotFoundError: If no pod appears within *timeout*.
        """
        @retry(
            stop=stop_after_delay(timeout),
            wait=wait_fixed(POD_APPEAR_POLL_INTERVAL_SECONDS),
            retry=retry_if_exception_type(WorkloadNotFoundError),
            reraise=True,
        )
        def _attempt() -> str:
            return self._first_pod(handle)

        return _attempt()

    def wait_ready(self, handle: WorkloadHandle, timeout: int) -> ExecResult:
        """Block until workload pods report the Ready condition.

        Pods that have not been created yet are polled for first, because
        ``kubectl wait`` fails immediately when its selector matches nothing.
        Both phases share the one *timeout* budget.
        """
        deadline = time.monotonic() + timeout
        self.find_pod(handle, timeout=timeout)
        remaining = max(1, int(deadline - time.monotonic()))
        code, stdout, stderr = run_kubectl(
            ["wait", "--for=condition=ready", "pod", "-n", handle.namespace, "-l", handle.selector,
             f"--timeout={remaining}s"],
            context=handle.cluster.context,
            timeout=remaining + KUBECTL_PROCESS_GRACE_SECONDS,
        )
        return ExecResult(exit_code=code, stdout=stdout, stderr=stderr)

    def exec(
        self,
        handle: WorkloadHandle,
        command: list[str],
        timeout: float | None = None,
        secrets: tuple[str, ...] = (),
    ) -> ExecResult:
        """Run a command in the first workload pod.

        Raises:
            WorkloadNotFoundError: If no workload pod exists.
        """
        pod = self.find_pod(handle)
        code, stdout, stderr = run_kubectl(
            ["exec", "-n", handle.namespace, pod, "--", *command],
            context=handle.cluster.context,
            timeout=timeout or TOOL_TIMEOUT,
            secrets=secrets,
        )
        return ExecResult(exit_code=code, stdout=stdout, stderr=stderr)

    def query(self, handle: WorkloadHandle, spec: EnvironmentSpec, statement: str, timeout: float) -> ExecResult:
        """Execute one Cypher statement through cypher-shell."""
        password = spec.password.get_secret_value()
        command = ["cypher-shell", "-u", spec.username, "-p", password, "--format", "plain", statement]
        return self.exec(handle, command, timeout=timeout, secrets=(password,))

    def shell(self, handle: WorkloadHandle, spec: EnvironmentSpec) -> int:
        """Open an interactive cypher-shell in the workload pod.

        Returns:
            Exit code of cypher-shell.
        """
        pod = self.find_pod(handle)
        try:
            sh.kubectl(
                "--context", handle.cluster.context,
                "exec", "-it", "-n", handle.namespace, pod,
                "--", "cypher-shell", "-u", spec.username, "-p", spec.password.get_secret_value(),
                _fg=True,
            )
        except sh.ErrorReturnCode as err:
            return err.exit_code
        return 0

    def port_forward(self, handle: WorkloadHandle, spec: EnvironmentSpec) -> None:
        """Forward the spec's port mappings to the release service until interrupted."""
        console.print(Panel.fit("Port-forwarding Neo4j to localhost", style="bold blue"))
        for mapping in spec.port_mappings:
            console.print(f"  {mapping.name:<8}: localhost:{mapping.host_port} -> {mapping.container_port}")
        console.print(f"  user    : {spec.username}")
        console.print("[yellow]Press Ctrl+C to stop[/yellow]")
        ports = [f"{m.host_port}:{m.container_port}" for m in spec.port_mappings]
        try:
            sh.kubectl(
                "--context", handle.cluster.context,
                "port-forward", "-n", handle.namespace, f"svc/{handle.release_name}", *ports,
                _fg=True,
            )
        except sh.ErrorReturnCode as err:
            if err.exit_code in (-signal.SIGINT, 128 + signal.SIGINT):
                return
            raise WorkloadNotFoundError(
                f"Port-forward to svc/{handle.release_name} failed", step="port-forward", output=error_output(err)
            ) from err
