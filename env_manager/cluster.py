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

"""kind cluster lifecycle and context selection."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Protocol

import sh
import yaml
from rich.panel import Panel

from env_manager import console
from env_manager.constants import (
    CALICO_MANIFEST_URL,
    CALICO_SELECTOR,
    CLUSTER_CREATE_TIMEOUT,
    KIND_API_VERSION,
    KIND_CONTEXT_PREFIX,
    KIND_CREATE_WAIT,
    NS_KUBE_SYSTEM,
)
from env_manager.errors import (
    ContextError,
    InstallError,
    ProvisionError,
    ToolUnavailableError,
    UninstallStepError,
)
from env_manager.models import ClusterHandle, EnvironmentSpec, ProvisionOutcome, ProvisionResult
from env_manager.utils import error_output, run_tool


class ClusterDriver(Protocol):
    """Provision, destroy and select a local cluster context."""

    def exists(self, name: str) -> bool: ...

    def provision(self, spec: EnvironmentSpec) -> ProvisionResult: ...

    def destroy(self, name: str) -> bool: ...

    def select_context(self, name: str) -> ClusterHandle: ...


def context_name(cluster_name: str) -> str:
    return f"{KIND_CONTEXT_PREFIX}{cluster_name}"


def kind_config(spec: EnvironmentSpec) -> dict:
    """Build the declarative kind cluster config for a spec.

    Args:
        spec: Resolved environment spec.

    Returns:
        kind ``Cluster`` config as a dictionary.
    """
    def _node(role: str) -> dict:
        node = {"role": role}
        if spec.node_image:
            node["image"] = spec.node_image
        return node

    return {
        "kind": "Cluster",
        "apiVersion": KIND_API_VERSION,
        "name": spec.cluster_name,
        "nodes": [_node("control-plane")] + [_node("worker") for _ in range(spec.workers)],
    }


class KindClusterDriver:
    """ClusterDriver backed by the kind and kubectl CLIs."""

    def list_clusters(self) -> list[str]:
        """Return the names of all kind clusters.

        Raises:
            ToolUnavailableError: If kind cannot talk to the container runtime.
        """
        try:
            output = run_tool("kind", "get", "clusters")
        except (sh.ErrorReturnCode, sh.TimeoutException) as err:
            raise ToolUnavailableError(
                "Unable to list kind clusters", step="list-clusters", output=error_output(err)
            ) from err
        return [line.strip() for line in output.splitlines() if line.strip()]

    def exists(self, name: str) -> bool:
        return name in self.list_clusters()

    def provision(self, spec: EnvironmentSpec) -> ProvisionResult:
        """Create the kind cluster unless it already exists.

        Args:
            spec: Resolved environment spec.

        Returns:
            ProvisionResult with outcome ``created`` or ``already_exists``.

        Raises:
            ProvisionError: If kind or kubectl fails or times out.
        """
        name = spec.cluster_name
        handle = ClusterHandle(name=name, context=context_name(name))
        console.print(Panel.fit(f"Creating kind cluster '{name}'", style="bold blue"))
        if self.exists(name):
            console.print(f"[yellow]\u2139\ufe0f  Cluster '{name}' already exists[/yellow]")
            return ProvisionResult(handle=handle, outcome=ProvisionOutcome.ALREADY_EXISTS)

        with tempfile.NamedTemporaryFile("w", prefix="kind-config-", suffix=".yaml", delete=False) as tmp:
            yaml.safe_dump(kind_config(spec), tmp, sort_keys=False)
            config_path = Path(tmp.name)
        try:
            run_tool(
                "kind", "create", "cluster",
                "--name", name,
                "--config", str(config_path),
                "--wait", KIND_CREATE_WAIT,
                timeout=CLUSTER_CREATE_TIMEOUT,
            )
            run_tool("kubectl", "cluster-info", "--context", handle.context)
        except sh.ErrorReturnCode as err:
            raise ProvisionError(
                f"Failed to create kind cluster '{name}'", step="provision-cluster", output=error_output(err)
            ) from err
        except sh.TimeoutException as err:
            raise ProvisionError(
                f"Timed out creating kind cluster '{name}' after {CLUSTER_CREATE_TIMEOUT}s",
                step="provision-cluster",
            ) from err
        finally:
            config_path.unlink(missing_ok=True)

        console.print(f"[green]\u2705 Cluster '{name}' created[/green]")
        return ProvisionResult(handle=handle, outcome=ProvisionOutcome.CREATED)

    def destroy(self, name: str) -> bool:
        """Delete the kind cluster; absence is not an error.

        Returns:
            True if a cluster was deleted, False if none existed.

        Raises:
            UninstallStepError: If kind fails to delete an existing cluster.
        """
        console.print(f"[yellow]\u2139\ufe0f  Deleting kind cluster '{name}'...[/yellow]")
        if not self.exists(name):
            console.print(f"[yellow]\u26a0\ufe0f  Cluster '{name}' not found or already deleted[/yellow]")
            return False
        try:
            run_tool("kind", "delete", "cluster", "--name", name, timeout=CLUSTER_CREATE_TIMEOUT)
        except (sh.ErrorReturnCode, sh.TimeoutException) as err:
            raise UninstallStepError(
                f"Failed to delete kind cluster '{name}'", step="destroy-cluster", output=error_output(err)
            ) from err
        console.print(f"[green]\u2705 Cluster '{name}' deleted[/green]")
        return True

    def select_context(self, name: str) -> ClusterHandle:
        """Switch kubectl to the cluster's context.

        Raises:
            ContextError: If the cluster is absent or the switch fails.
        """
        context = context_name(name)
        if not self.exists(name):
            raise ContextError(f"kind cluster '{name}' does not exist", step="select-context")
        try:
            run_tool("kubectl", "config", "use-context", context)
        except (sh.ErrorReturnCode, sh.TimeoutException) as err:
            raise ContextError(
                f"Failed to switch to context '{context}'", step="select-context", output=error_output(err)
            ) from err
        return ClusterHandle(name=name, context=context)

    def install_calico(self, handle: ClusterHandle, timeout: int = 120) -> None:
        """Install the Calico CNI for full NetworkPolicy support.

        Raises:
            InstallError: If the manifest cannot be applied or pods never become ready.
        """
        console.print(Panel.fit("Installing Calico", style="bold blue"))
        console.print("[yellow]\u2139\ufe0f  kind's default CNI (kindnet) has limited NetworkPolicy support[/yellow]")
        try:
            run_tool("kubectl", "--context", handle.context, "apply", "-f", CALICO_MANIFEST_URL)
            console.print("[yellow]\u2139\ufe0f  Waiting for Calico to be ready...[/yellow]")
            run_tool(
                "kubectl", "--context", handle.context,
                "wait", "--for=condition=ready", "pod",
                "-l", CALICO_SELECTOR, "-n", NS_KUBE_SYSTEM,
                f"--timeout={timeout}s",
                timeout=timeout + 30,
            )
        except sh.ErrorReturnCode as err:
            raise InstallError("Failed to install Calico", step="install-calico", output=error_output(err)) from err
        except sh.TimeoutException as err:
            raise InstallError("Timed out installing Calico", step="install-calico") from err
        console.print("[green]\u2705 Calico installed[/green]")
