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

"""Configuration classes and EnvironmentSpec resolution/display."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.panel import Panel

from env_manager import console, logger
from env_manager.constants import DEFAULT_PROFILE, load_profiles
from env_manager.errors import ConfigError
from env_manager.models import EnvironmentSpec, ResourceRequests

RESOURCE_FIELDS = frozenset(ResourceRequests.model_fields)
SPEC_FIELDS = frozenset(EnvironmentSpec.model_fields) - {"resources", "profile"}
ALLOWED_FIELDS = SPEC_FIELDS | RESOURCE_FIELDS


# ============================================================================
# Configuration classes
# ============================================================================

class ClusterSettings(BaseSettings):
    """kind cluster overrides, auto-loaded from KIND_* env vars.

    Attributes:
        cluster_name: Name of the kind cluster.
        node_image: kind node image.
        workers: Number of worker nodes.
    """

    model_config = SettingsConfigDict(env_prefix="KIND_", extra="ignore")

    cluster_name: str | None = None
    node_image: str | None = None
    workers: int | None = None


class WorkloadSettings(BaseSettings):
    """Neo4j release overrides, auto-loaded from NEO4J_* env vars.

    Attributes:
        namespace: Kubernetes namespace for the release.
        release_name: Helm release name.
        password: Database password.
        chart_version: Helm chart version.
        helm_repo: Helm repository URL.
        values_file: Extra Helm values file.
        cpu: CPU request.
        memory: Memory request.
        storage: Data volume size.
        install_timeout: Seconds to wait for readiness on install.
        check_timeout: Default per-check timeout in seconds.
    """

    model_config = SettingsConfigDict(env_prefix="NEO4J_", extra="ignore")

    namespace: str | None = None
    release_name: str | None = None
    password: SecretStr | None = None
    chart_version: str | None = None
    helm_repo: str | None = None
    values_file: Path | None = None
    cpu: str | None = None
    memory: str | None = None
    storage: str | None = None
    install_timeout: int | None = None
    check_timeout: int | None = None


class RunSettings(BaseSettings):
    """Run-level switches, auto-loaded from LOCAL_ENV_* env vars."""

    model_config = SettingsConfigDict(env_prefix="LOCAL_ENV_", extra="ignore")

    profile: str | None = None
    ephemeral: bool | None = None


# ============================================================================
# Resolution
# ============================================================================

def _checked(values: dict[str, Any], origin: str) -> dict[str, Any]:
    """Drop unset entries and reject unknown field names.

    Args:
        values: Candidate field values.
        origin: Human-readable source of the values, used in errors.

    Returns:
        The entries whose value is not None.

    Raises:
        ConfigError: If a key is not a known field.
    """
    unknown = sorted(set(values) - ALLOWED_FIELDS)
    if unknown:
        raise ConfigError(f"Unknown configuration field(s) in {origin}: {', '.join(unknown)}")
    return {key: value for key, value in values.items() if value is not None}


def _environment_values() -> tuple[dict[str, Any], RunSettings]:
    """Read KIND_*, NEO4J_* and LOCAL_ENV_* variables.

    Raises:
        ConfigError: If an environment variable has an invalid value.
    """
    try:
        cluster_env = ClusterSettings()
        workload_env = WorkloadSettings()
        run_env = RunSettings()
    except ValidationError as err:
        raise ConfigError(f"Invalid environment configuration:\n{err}") from err

    values: dict[str, Any] = {
        **cluster_env.model_dump(),
        **workload_env.model_dump(exclude={"helm_repo"}),
        "helm_repo_url": workload_env.helm_repo,
        "ephemeral": run_env.ephemeral,
    }
    return _checked(values, "environment"), run_env


def _load_profile(name: str, profiles_file: Path | None) -> dict[str, Any]:
    """Look up a named profile.

    Raises:
        ConfigError: If the profiles file is unreadable or the profile is unknown.
    """
    try:
        profiles = load_profiles(profiles_file)
    except (OSError, yaml.YAMLError) as err:
        raise ConfigError(f"Cannot load profiles: {err}") from err
    if name not in profiles:
        known = ", ".join(sorted(profiles)) or "(none)"
        raise ConfigError(f"Unknown profile '{name}'. Known profiles: {known}")
    return _checked(dict(profiles[name] or {}), f"profile '{name}'")


def _build_spec(values: dict[str, Any]) -> EnvironmentSpec:
    """Split resource fields out and validate the merged values.

    Raises:
        ConfigError: If the merged values do not form a valid spec.
    """
    resources = {key: values.pop(key) for key in list(values) if key in RESOURCE_FIELDS}
    try:
        return EnvironmentSpec(**values, resources=ResourceRequests(**resources))
    except ValidationError as err:
        raise ConfigError(f"Invalid environment configuration:\n{err}") from err


def resolve_environment(
    profile: str | None = None,
    overrides: dict[str, Any] | None = None,
    profiles_file: Path | None = None,
) -> EnvironmentSpec:
    """Merge defaults, profile, environment variables and CLI overrides.

    Resolution priority: CLI overrides > environment variables > profile > defaults.

    Args:
        profile: Profile name, or None for LOCAL_ENV_PROFILE / ``default``.
        overrides: CLI-level field overrides; None values are ignored.
        profiles_file: Alternative profiles YAML, or None for the packaged one.

    Returns:
        The fully resolved, immutable EnvironmentSpec.

    Raises:
        ConfigError: If any field is missing, invalid or conflicting.
    """
    env_values, run_env = _environment_values()
    profile_name = profile or run_env.profile or DEFAULT_PROFILE

    values: dict[str, Any] = {}
    values.update(_load_profile(profile_name, profiles_file))
    values.update(env_values)
    values.update(_checked(dict(overrides or {}), "overrides"))
    values["profile"] = profile_name

    values_file = values.get("values_file")
    if values_file is not None and not Path(values_file).is_file():
        raise ConfigError(f"Helm values file not found: {values_file}")

    spec = _build_spec(values)
    logger.debug("Resolved environment spec for profile '%s'", profile_name)
    return spec


# ============================================================================
# Display
# ============================================================================

def display_config(spec: EnvironmentSpec) -> None:
    """Print the resolved configuration.

    Args:
        spec: Resolved environment spec.
    """
    console.print(Panel.fit("Configuration", style="bold blue"))
    console.print("[yellow]kind cluster:[/yellow]")
    console.print(f"  cluster_name    : {spec.cluster_name}")
    console.print(f"  context         : {spec.kube_context}")
    console.print(f"  workers         : {spec.workers}")
    if spec.node_image:
        console.print(f"  node_image      : {spec.node_image}")

    console.print("[yellow]Neo4j:[/yellow]")
    console.print(f"  namespace       : {spec.namespace}")
    console.print(f"  release_name    : {spec.release_name}")
    console.print(f"  chart           : {spec.chart_ref} {spec.chart_version}")
    console.print(f"  resources       : cpu={spec.resources.cpu} memory={spec.resources.memory} "
                  f"storage={spec.resources.storage}")
    if spec.values_file:
        console.print(f"  values_file     : {spec.values_file}")

    console.print("[yellow]Run:[/yellow]")
    console.print(f"  profile         : {spec.profile}")
    console.print(f"  ephemeral       : {spec.ephemeral}")
