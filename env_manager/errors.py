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

"""Error taxonomy shared by drivers, the probe and the reconciler."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from env_manager.models import WorkloadStatus


class EnvManagerError(Exception):
    """Base class for all env_manager errors.

    Attributes:
        step: Name of the step that failed, if known.
        output: Captured output of the underlying tool, if any.
    """

    def __init__(self, message: str, *, step: str | None = None, output: str = "") -> None:
        super().__init__(message)
        self.step = step
        self.output = output


class ConfigError(EnvManagerError):
    """Configuration is missing, invalid or conflicting."""


class ToolUnavailableError(EnvManagerError):
    """A required CLI tool or the container runtime cannot be reached."""


class ProvisionError(EnvManagerError):
    """The cluster could not be created."""


class ContextError(EnvManagerError):
    """The cluster context is absent or could not be selected."""


class InstallError(EnvManagerError):
    """The workload install or upgrade failed for a reason other than readiness."""


class ReadinessTimeout(EnvManagerError):
    """The workload did not become ready in time.

    Attributes:
        last_status: Last observed workload snapshot, or None if it could not be read.
    """

    def __init__(
        self,
        message: str,
        *,
        step: str | None = None,
        output: str = "",
        last_status: WorkloadStatus | None = None,
    ) -> None:
        super().__init__(message, step=step, output=output)
        self.last_status = last_status


class WorkloadNotFoundError(EnvManagerError):
    """No pod of the workload release could be found."""


class UninstallStepError(EnvManagerError):
    """A teardown sub-step failed. Logged and recorded, never fatal."""


class CheckFailure(EnvManagerError):
    """A health check ran but observed the wrong result."""


class CheckError(EnvManagerError):
    """A health check could not be executed."""


class Cancelled(EnvManagerError):
    """The run was cancelled before it could finish."""
