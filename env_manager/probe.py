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

"""Health checks run against an installed workload."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass

from rich.markup import escape
from rich.panel import Panel

from env_manager import console, logger
from env_manager.constants import (
    CHECK_DEADLINE_GRACE_SECONDS,
    CYPHER_COMPONENTS,
    CYPHER_COMPONENTS_EXPECTED,
    CYPHER_PING,
    CYPHER_PING_EXPECTED,
    CYPHER_VECTOR,
    CYPHER_VECTOR_SIMILARITY,
)
from env_manager.errors import CheckError, CheckFailure, EnvManagerError, WorkloadNotFoundError
from env_manager.models import (
    CheckResult,
    CheckStatus,
    EnvironmentSpec,
    ExecResult,
    HealthReport,
    WorkloadHandle,
)
from env_manager.workload import WorkloadDriver

# kubectl-level failures: the query never reached cypher-shell.
TRANSPORT_ERROR_MARKERS = (
    "error from server",
    "unable to upgrade connection",
    "container not found",
    "executable file not found",
)


@dataclass(frozen=True)
class CheckContext:
    """Read-only inputs handed to every check."""

    workload: WorkloadHandle
    spec: EnvironmentSpec
    driver: WorkloadDriver
    timeout: float


CheckFn = Callable[[CheckContext], str]


@dataclass(frozen=True)
class HealthCheck:
    """A named check.

    ``run`` returns a diagnostic on success, raises ``CheckFailure`` when the
    result is wrong and ``CheckError`` (or anything else) when it cannot run.

    Attributes:
        name: Check name shown in reports.
        run: Check implementation.
        required: Whether the check counts towards the overall report status.
        full_only: Whether the check only runs with ``--full``.
        timeout: Per-check timeout in seconds, or None for the spec default.
    """

    name: str
    run: CheckFn
    required: bool = True
    full_only: bool = False
    timeout: float | None = None


# ============================================================================
# Default checks
# ============================================================================

def _checked_exec(result: ExecResult, what: str) -> str:
    """Classify an exec result as success, failure or error.

    Raises:
        CheckError: If kubectl could not reach the pod.
        CheckFailure: If the command ran and exited non-zero.
    """
    if result.exit_code is None:
        raise CheckError(f"{what}: kubectl did not complete", output=result.stderr.strip())
    if not result.ok:
        if any(marker in result.stderr.lower() for marker in TRANSPORT_ERROR_MARKERS):
            raise CheckError(f"{what}: pod unreachable", output=result.combined_output)
        raise CheckFailure(f"{what}: exited with code {result.exit_code}", output=result.combined_output)
    return result.stdout.strip()


def _query(ctx: CheckContext, statement: str) -> str:
    return _checked_exec(ctx.driver.query(ctx.workload, ctx.spec, statement, ctx.timeout), "cypher-shell")


def check_pod_ready(ctx: CheckContext) -> str:
    try:
        result = ctx.driver.wait_ready(ctx.workload, int(ctx.timeout))
    except WorkloadNotFoundError as err:
        raise CheckFailure(str(err)) from err
    output = _checked_exec(result, "kubectl wait")
    ready = [line for line in output.splitlines() if "condition met" in line]
    return f"{len(ready)} pod(s) ready"


def check_bolt_connection(ctx: CheckContext) -> str:
    output = _query(ctx, CYPHER_PING)
    if CYPHER_PING_EXPECTED not in output:
        raise CheckFailure("unexpected response to ping query", output=output)
    return CYPHER_PING_EXPECTED


def check_server_version(ctx: CheckContext) -> str:
    output = _query(ctx, CYPHER_COMPONENTS)
    for line in output.splitlines():
        if CYPHER_COMPONENTS_EXPECTED in line:
            return line.strip()
    raise CheckFailure("dbms.components() did not report the Neo4j Kernel", output=output)


def check_vector_type(ctx: CheckContext) -> str:
    output = _query(ctx, CYPHER_VECTOR)
    return output.splitlines()[-1] if output else "vector() accepted"


def check_vector_similarity(ctx: CheckContext) -> str:
    output = _query(ctx, CYPHER_VECTOR_SIMILARITY)
    try:
        similarity = float(output.splitlines()[-1])
    except (IndexError, ValueError) as err:
        raise CheckFailure("cosine similarity result is not a number", output=output) from err
    if abs(similarity - 1.0) > 1e-6:
        raise CheckFailure(f"cosine similarity of identical vectors is {similarity}, expected 1.0")
    return f"similarity={similarity}"


def check_network_policies(ctx: CheckContext) -> str:
    policies = ctx.driver.network_policies(ctx.workload)
    if not policies:
        raise CheckFailure(f"No NetworkPolicies found in namespace '{ctx.workload.namespace}'")
    return ", ".join(policies)


DEFAULT_CHECKS: tuple[HealthCheck, ...] = (
    HealthCheck("pod-ready", check_pod_ready),
    HealthCheck("bolt-connection", check_bolt_connection),
    HealthCheck("server-version", check_server_version),
    HealthCheck("vector-type", check_vector_type, full_only=True),
    HealthCheck("vector-similarity", check_vector_similarity, full_only=True),
    HealthCheck("network-policies", check_network_policies, required=False, full_only=True),
)


# ============================================================================
# Probe
# ============================================================================

def _diagnostic(err: BaseException) -> str:
    message = str(err)
    output = getattr(err, "output", "")
    return f"{message}\n{output}".strip() if output else message


class HealthProbe:
    """Runs independent checks concurrently and reports them in declaration order."""

    def __init__(
        self,
        driver: WorkloadDriver,
        checks: tuple[HealthCheck, ...] = DEFAULT_CHECKS,
        grace: float = CHECK_DEADLINE_GRACE_SECONDS,
    ) -> None:
        self.driver = driver
        self.checks = checks
        self.grace = grace

    def select(self, full: bool) -> list[HealthCheck]:
        return [check for check in self.checks if full or not check.full_only]

    def _execute(
        self,
        check: HealthCheck,
        ctx: CheckContext,
        cancel: threading.Event | None,
    ) -> tuple[CheckResult, str]:
        with console.buffered() as buf:
            start = time.monotonic()
            if cancel is not None and cancel.is_set():
                status, diagnostic = CheckStatus.CANCELLED, "cancelled before start"
            else:
                try:
                    diagnostic = check.run(ctx)
                    status = CheckStatus.PASS
                except CheckFailure as err:
                    status, diagnostic = CheckStatus.FAIL, _diagnostic(err)
                except EnvManagerError as err:
                    status, diagnostic = CheckStatus.ERROR, _diagnostic(err)
                except Exception as err:
                    status, diagnostic = CheckStatus.ERROR, f"{type(err).__name__}: {err}"
            latency = time.monotonic() - start

            if status is CheckStatus.PASS:
                console.print(f"[green]\u2713 {check.name}[/green] ({latency:.1f}s) {escape(diagnostic)}")
            else:
                optional = "" if check.required else " (optional)"
                console.print(f"[red]\u2717 {check.name}{optional}: {status.value}[/red] ({latency:.1f}s)")
                console.print(escape(diagnostic))
        logger.info("Check %s: %s in %.2fs", check.name, status.value, latency)
        result = CheckResult(
            name=check.name,
            status=status,
            latency_seconds=round(latency, 3),
            diagnostic=diagnostic,
            required=check.required,
        )
        return result, buf.getvalue()

    @staticmethod
    def _timed_out(check: HealthCheck, timeout: float, latency: float) -> CheckResult:
        logger.warning("Check %s abandoned after %.1fs", check.name, latency)
        console.print(f"[red]\u2717 {check.name}: timed out after {timeout:g}s[/red]")
        return CheckResult(
            name=check.name,
            status=CheckStatus.ERROR,
            latency_seconds=round(latency, 3),
            diagnostic=f"timed out after {timeout:g}s",
            required=check.required,
        )

    def run(
        self,
        workload: WorkloadHandle,
        spec: EnvironmentSpec,
        full: bool = False,
        cancel: threading.Event | None = None,
    ) -> HealthReport:
        """Run the selected checks and build the report.

        A check still running after its timeout plus ``grace`` seconds is
        abandoned and reported as ``error``.

        Args:
            workload: Workload under test.
            spec: Resolved environment spec.
            full: Whether to include ``full_only`` checks.
            cancel: Event that, once set, marks not-yet-started checks cancelled.

        Returns:
            HealthReport with one result per selected check, in declaration order.
        """
        checks = self.select(full)
        console.print(Panel.fit(f"Running {len(checks)} health checks", style="bold blue"))
        if not checks:
            return HealthReport()

        results: dict[int, CheckResult] = {}
        outputs: dict[int, str] = {}
        timeouts = [check.timeout or spec.check_timeout for check in checks]
        started = time.monotonic()
        executor = ThreadPoolExecutor(max_workers=len(checks))
        try:
            futures = {
                executor.submit(
                    self._execute,
                    check,
                    CheckContext(workload=workload, spec=spec, driver=self.driver, timeout=timeouts[idx]),
                    cancel,
                ): idx
                for idx, check in enumerate(checks)
            }
            deadlines = {future: started + timeouts[idx] + self.grace for future, idx in futures.items()}
            pending = set(futures)
            while pending:
                next_deadline = min(deadlines[future] for future in pending)
                done, pending = wait(
                    pending, timeout=max(0.0, next_deadline - time.monotonic()), return_when=FIRST_COMPLETED
                )
                for future in done:
                    idx = futures[future]
                    results[idx], outputs[idx] = future.result()
                now = time.monotonic()
                for future in [f for f in pending if deadlines[f] <= now]:
                    pending.discard(future)
                    idx = futures[future]
                    results[idx] = self._timed_out(checks[idx], timeouts[idx], now - started)
        finally:
            # Checks past their deadline are abandoned; their threads end when the call returns.
            executor.shutdown(wait=False, cancel_futures=True)

        for idx in range(len(checks)):
            if outputs.get(idx):
                console.print(outputs[idx], end="", markup=False, highlight=False)

        report = HealthReport(checks=tuple(results[idx] for idx in range(len(checks))))
        if report.passed:
            console.print("[green]\u2705 All health checks passed[/green]")
        else:
            console.print(f"[red]\u274c Health report status: {report.status.value}[/red]")
        return report
