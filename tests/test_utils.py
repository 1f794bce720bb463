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

import subprocess

import docker
import pytest

from env_manager import utils
from env_manager.errors import ToolUnavailableError
from env_manager.utils import check_container_runtime, mask_args, run_kubectl, run_tool


def test_mask_args_hides_secrets():
    line = mask_args(["helm", "upgrade", "--set", "neo4j.password=hunter2"], secrets=("hunter2", ""))

    assert "hunter2" not in line
    assert line.endswith("neo4j.password=****")


def test_run_tool_missing_binary():
    with pytest.raises(ToolUnavailableError, match="not found"):
        run_tool("env-manager-no-such-tool", "--version")


def test_container_runtime_unreachable(monkeypatch):
    def from_env():
        raise docker.errors.DockerException("Error while fetching server API version")

    monkeypatch.setattr(utils.docker, "from_env", from_env)

    with pytest.raises(ToolUnavailableError, match="Docker"):
        check_container_runtime()


def test_run_kubectl_pins_context_and_keeps_streams_apart(monkeypatch):
    seen = {}

    def fake_run(cmd, **kwargs):
        seen["cmd"] = cmd
        return subprocess.CompletedProcess(cmd, 2, stdout="out", stderr="err")

    monkeypatch.setattr(utils.subprocess, "run", fake_run)

    code, stdout, stderr = run_kubectl(["get", "pods"], context="kind-c1")

    assert seen["cmd"] == ["kubectl", "--context", "kind-c1", "get", "pods"]
    assert (code, stdout, stderr) == (2, "out", "err")


def test_run_kubectl_timeout(monkeypatch):
    def fake_run(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

    monkeypatch.setattr(utils.subprocess, "run", fake_run)

    code, _, stderr = run_kubectl(["exec", "pod", "--", "true"], timeout=5)

    assert code is None
    assert "timed out" in stderr
