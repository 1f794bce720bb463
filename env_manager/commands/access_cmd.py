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

"""Access subcommands (shell, port-forward, calico)."""

from __future__ import annotations

import typer

from env_manager.commands.options import (
    CLUSTER_NAME,
    NAMESPACE,
    PROFILE,
    RELEASE,
    exit_on_error,
    resolve,
)
from env_manager.orchestrator import run_calico, run_port_forward, run_shell

app = typer.Typer(help="Interactive access to the running environment.")


@app.command()
def shell(
    profile: str | None = PROFILE,
    cluster_name: str | None = CLUSTER_NAME,
    namespace: str | None = NAMESPACE,
    release: str | None = RELEASE,
) -> None:
    """Open cypher-shell inside the Neo4j pod."""
    with exit_on_error():
        spec = resolve(profile, cluster_name, namespace, release, None)
        code = run_shell(spec)
    raise typer.Exit(code)


@app.command("port-forward")
def port_forward(
    profile: str | None = PROFILE,
    cluster_name: str | None = CLUSTER_NAME,
    namespace: str | None = NAMESPACE,
    release: str | None = RELEASE,
) -> None:
    """Forward Bolt and HTTP to localhost until interrupted."""
    with exit_on_error():
        spec = resolve(profile, cluster_name, namespace, release, None)
        try:
            run_port_forward(spec)
        except KeyboardInterrupt:
            return


@app.command()
def calico(
    profile: str | None = PROFILE,
    cluster_name: str | None = CLUSTER_NAME,
) -> None:
    """Install the Calico CNI for NetworkPolicy enforcement."""
    with exit_on_error():
        spec = resolve(profile, cluster_name, None, None, None)
        run_calico(spec)
