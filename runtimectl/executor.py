import asyncio
import inspect
import logging
import os
import re
import shlex
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Protocol, Union

from .config import EngineSettings
from .host_runner import KILL_GRACE_S, CommandResult, HostCommandRunner, ssh_target
from .planner import PlanResult, PlanStep, ResolvedHost, StepKind
from .schemas import ActiveRuntime
from .state_store import ActiveRuntimeStore, RuntimeLockFile, pid_alive, utc_now


logger = logging.getLogger(__name__)

StepStatus = Literal["start", "done", "error"]
OnStep = Callable[[PlanStep, StepStatus, Optional[str]], Any]

_NOT_FOUND_RE = re.compile(r"failed to run command '([^']+)': No such file or directory")
_LOG_TAIL_TIMEOUT_S = 5.0


class Confirmer(Protocol):
    async def confirm(self, prompt: str) -> bool:
        ...


class CallbackConfirmer:
    """Adapt a plain (sync or async) yes/no callable to the Confirmer protocol."""

    def __init__(self, callback: Callable[[str], Union[bool, Awaitable[bool]]]) -> None:
        self.callback = callback

    async def confirm(self, prompt: str) -> bool:
        answer = self.callback(prompt)
        if inspect.isawaitable(answer):
            answer = await answer
        return bool(answer)


@dataclass
class StepOutcome:
    step: PlanStep
    status: Literal["ok", "error", "skipped"]
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step.to_dict(),
            "status": self.status,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_ms": self.duration_ms,
        }


@dataclass
class ExecuteResult:
    ok: bool
    reused: bool = False
    steps: List[StepOutcome] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "ok": self.ok,
            "reused": self.reused,
            "steps": [s.to_dict() for s in self.steps],
        }
        if self.error:
            data["error"] = self.error
        return data


def derive_endpoint(plan: PlanResult) -> str:
    port = plan.model.port
    host = plan.hosts[0] if plan.hosts else None
    if not host or host.transport == "local":
        return f"http://127.0.0.1:{port}/v1"
    address = host.connection.get("host") or "127.0.0.1"
    return f"http://{address}:{port}/v1"


def friendly_error(detail: str, host: ResolvedHost) -> str:
    match = _NOT_FOUND_RE.search(detail or "")
    if not match:
        return detail
    cmd = match.group(1)
    target = ssh_target(host) or host.id
    return (
        f"{host.id} doesn't have '{cmd}' in PATH for non-interactive SSH.\n"
        f"Either add it to PATH in ~/.bashrc on {host.id}, or use the full path in your start command.\n"
        f"Find it with: ssh {target} 'which {cmd} || find /usr -name {cmd} 2>/dev/null'"
    )


class RuntimeExecutor:
    """Run a plan under the runtime lock with retry, rollback and teardown."""

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        runner: Optional[HostCommandRunner] = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.runner = runner or HostCommandRunner(sudo_password_env=self.settings.sudo_password_env)
        self.lock = RuntimeLockFile(self.settings.lock_path)
        self.active_store = ActiveRuntimeStore(self.settings.active_path)

    def load_active(self) -> Optional[ActiveRuntime]:
        return self.active_store.load()

    async def acquire_lock(
        self, model_id: str, *, force: bool = False, confirmer: Optional[Confirmer] = None
    ) -> Optional[str]:
        """Take the runtime lock; returns an error string when it cannot be taken."""
        if self.lock.try_create(model_id):
            return None

        existing = self.lock.read()
        age = self.lock.age_s(existing)
        stale = age is not None and age > self.settings.stale_lock_s
        dead = existing is not None and not pid_alive(existing.pid)
        if stale or dead:
            if stale:
                logger.warning("Stale runtime lock (%dm old); reclaiming", int(age // 60))
            else:
                logger.warning("Runtime lock owner pid %s is gone; reclaiming", existing.pid)
            self.lock.release()
            if self.lock.try_create(model_id):
                return None

        if existing is None:
            unreadable = f"Runtime lock exists and could not be parsed. Remove {self.lock.path} and retry."
            if not force or confirmer is None:
                return unreadable
            if not await confirmer.confirm(f"Runtime lock {self.lock.path} is unreadable. Remove it?"):
                return unreadable
            logger.warning("Removing unreadable runtime lock %s", self.lock.path)
            self.lock.release()
            if self.lock.try_create(model_id):
                return None
            return "Failed to acquire runtime lock after removing unreadable lock"

        prompt = f"Runtime lock held by PID {existing.pid}. Force takeover?"
        if not force or confirmer is None:
            return f"Runtime lock held by PID {existing.pid} (model {existing.model or 'unknown'})"
        if not await confirmer.confirm(prompt):
            return f"Runtime lock held by PID {existing.pid}; takeover declined"

        logger.warning("Forcing takeover of runtime lock held by PID %s", existing.pid)
        self.lock.release()
        if self.lock.try_create(model_id):
            return None
        return "Failed to acquire runtime lock after takeover attempt"

    async def _run_step(
        self,
        step: PlanStep,
        host: ResolvedHost,
        timeout_s: Optional[float] = None,
        kill_grace_s: Optional[float] = None,
    ) -> CommandResult:
        timeout = max(0.001, float(timeout_s if timeout_s is not None else step.timeout_sec))
        return await self.runner.run_on_host(host, step.command, timeout, kill_grace_s=kill_grace_s)

    async def run_step_with_retry(self, step: PlanStep, host: ResolvedHost) -> CommandResult:
        if step.kind is not StepKind.PROBE_HEALTH:
            return await self._run_step(step, host)
        deadline = time.monotonic() + max(0.001, float(step.timeout_sec))
        interval_s = float(step.probe_interval_ms or 1000) / 1000.0
        # A TERM-deaf probe may only overrun the deadline by one interval.
        kill_grace_s = min(KILL_GRACE_S, interval_s)
        last = CommandResult(exit_code=1, stderr="probe did not run")
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return last
            last = await self._run_step(step, host, remaining, kill_grace_s)
            if last.ok:
                return last
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return last
            await asyncio.sleep(min(interval_s, remaining))

    async def _tail_probe_log(self, host: ResolvedHost) -> str:
        path = shlex.quote(self.settings.probe_log_path)
        cmd = f"tail -n {int(self.settings.probe_log_lines)} {path} 2>/dev/null"
        result = await self.runner.run_on_host(host, cmd, _LOG_TAIL_TIMEOUT_S)
        if result.ok:
            return result.stdout.strip()
        return ""

    def _notify(self, on_step: Optional[OnStep], step: PlanStep, status: StepStatus, detail: Optional[str] = None) -> None:
        if on_step is None:
            return
        try:
            on_step(step, status, detail)
        except Exception as exc:
            logger.warning("on_step callback failed for %s: %s", step.kind.value, exc)

    async def teardown(self, plan: PlanResult, steps: List[PlanStep], outcomes: List[StepOutcome]) -> None:
        """Stop every host whose start_model step succeeded in this run."""
        started: List[str] = []
        for outcome in outcomes:
            if outcome.status == "ok" and outcome.step.kind is StepKind.START_MODEL:
                if outcome.step.host_id not in started:
                    started.append(outcome.step.host_id)
        if not started:
            return
        stop_by_host: Dict[str, PlanStep] = {}
        for step in steps:
            if step.kind is StepKind.STOP_MODEL and step.host_id not in stop_by_host:
                stop_by_host[step.host_id] = step
        for host_id in started:
            stop_step = stop_by_host.get(host_id)
            host = plan.find_host(host_id)
            if not stop_step or not host:
                logger.warning("No stop command for %s; model may still be running there", host_id)
                continue
            began = time.monotonic()
            result = await self._run_step(stop_step, host)
            outcomes.append(
                StepOutcome(
                    step=stop_step,
                    status="ok" if result.ok else "error",
                    exit_code=result.exit_code,
                    stdout=result.stdout,
                    stderr=result.stderr,
                    duration_ms=int((time.monotonic() - began) * 1000),
                )
            )
            logger.info("Teardown on %s: exit=%s", host_id, result.exit_code)

    async def _abort(self, plan: PlanResult, steps: List[PlanStep], outcomes: List[StepOutcome]) -> ExecuteResult:
        await self.teardown(plan, steps, outcomes)
        self.active_store.clear()
        return ExecuteResult(ok=False, steps=outcomes, error="Execution aborted")

    async def _run_steps(
        self,
        plan: PlanResult,
        steps: List[PlanStep],
        signal: Optional[asyncio.Event],
        on_step: Optional[OnStep],
    ) -> ExecuteResult:
        outcomes: List[StepOutcome] = []
        for step in steps:
            if signal is not None and signal.is_set():
                return await self._abort(plan, steps, outcomes)

            host = plan.find_host(step.host_id)
            if host is None:
                detail = f"Host not found: {step.host_id}"
                outcomes.append(StepOutcome(step=step, status="error", exit_code=1, stderr=detail))
                self._notify(on_step, step, "error", detail)
                await self.teardown(plan, steps, outcomes)
                self.active_store.clear()
                return ExecuteResult(ok=False, steps=outcomes, error=detail)

            self._notify(on_step, step, "start")
            logger.info("Running %s on %s", step.kind.value, step.host_id)
            began = time.monotonic()
            result = await self.run_step_with_retry(step, host)
            duration_ms = int((time.monotonic() - began) * 1000)

            if result.ok:
                outcomes.append(
                    StepOutcome(
                        step=step,
                        status="ok",
                        exit_code=0,
                        stdout=result.stdout,
                        stderr=result.stderr,
                        duration_ms=duration_ms,
                    )
                )
                self._notify(on_step, step, "done")
                continue

            parts = [result.stderr.strip()]
            if step.kind is StepKind.PROBE_HEALTH:
                parts.append(await self._tail_probe_log(host))
            detail = friendly_error("\n".join(p for p in parts if p).strip(), host)
            self._notify(on_step, step, "error", detail or None)

            rollback_note = ""
            if step.rollback_cmd:
                rollback = await self.runner.run_on_host(host, step.rollback_cmd, max(1.0, float(step.timeout_sec)))
                rollback_note = f"\nRollback attempted: exit={rollback.exit_code}; stderr={rollback.stderr.strip()}"

            outcomes.append(
                StepOutcome(
                    step=step,
                    status="error",
                    exit_code=result.exit_code,
                    stdout=result.stdout,
                    stderr=f"{detail}{rollback_note}".strip(),
                    duration_ms=duration_ms,
                )
            )
            await self.teardown(plan, steps, outcomes)
            self.active_store.clear()

            timed_out = " (timed out)" if result.timed_out else ""
            message = detail or f"exit code {result.exit_code}"
            return ExecuteResult(
                ok=False,
                steps=outcomes,
                error=f"Step failed: {step.kind.value} on {step.host_id}{timed_out}\n{message}{rollback_note}",
            )

        return ExecuteResult(ok=True, steps=outcomes)

    async def execute(
        self,
        plan: PlanResult,
        *,
        force: bool = False,
        signal: Optional[asyncio.Event] = None,
        confirmer: Optional[Confirmer] = None,
        on_step: Optional[OnStep] = None,
    ) -> ExecuteResult:
        if plan.mode == "dry-run":
            return ExecuteResult(ok=False, error="dry-run plan cannot be executed")
        lock_error = await self.acquire_lock(plan.model.id, force=force, confirmer=confirmer)
        if lock_error:
            return ExecuteResult(ok=False, error=lock_error)

        started_at = utc_now()
        try:
            if signal is not None and signal.is_set():
                self.active_store.clear()
                return ExecuteResult(ok=False, error="Execution aborted")

            steps = plan.steps
            if plan.reuse:
                probe = next((s for s in plan.steps if s.kind is StepKind.PROBE_HEALTH), None)
                host = plan.find_host(probe.host_id) if probe else None
                if probe and host:
                    result = await self.run_step_with_retry(probe, host)
                    if result.ok:
                        return ExecuteResult(ok=True, reused=True)
                logger.warning("Active runtime for %s failed its health probe; redeploying", plan.model.id)
                self.active_store.clear()
                steps = plan.fallback_steps or plan.steps

            result = await self._run_steps(plan, steps, signal, on_step)
            if not result.ok:
                return result

            active = ActiveRuntime(
                model_id=plan.model.id,
                backend_id=plan.backend.id if plan.backend else None,
                host_ids=[h.id for h in plan.hosts],
                healthy=True,
                started_at=started_at,
                pid=os.getpid(),
                endpoint=derive_endpoint(plan),
            )
            self.active_store.save(active)
            logger.info("Runtime %s active at %s", plan.model.id, active.endpoint)
            return result
        finally:
            self.lock.release()


def load_active_runtime(settings: Optional[EngineSettings] = None) -> Optional[ActiveRuntime]:
    settings = settings or EngineSettings()
    return ActiveRuntimeStore(Path(settings.active_path)).load()
