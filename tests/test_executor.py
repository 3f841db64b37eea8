import asyncio
import json
import os
import time
from datetime import datetime, timedelta, timezone

import pytest

from runtimectl.executor import CallbackConfirmer, RuntimeExecutor, derive_endpoint, load_active_runtime
from runtimectl.host_runner import HostCommandRunner
from runtimectl.planner import PlanRequest, PlanStep, ResolvedHost, StepKind, plan
from runtimectl.schemas import ActiveRuntime
from runtimectl.state_store import ActiveRuntimeStore
from tests.fakes import FakeHostRunner, fail, ok


START = "llama-server -hf"
PROBE = "/health"


def _shorten_probe(result, timeout_sec=0.3, interval_ms=50):
    for step in [*result.steps, *result.fallback_steps]:
        if step.kind is StepKind.PROBE_HEALTH:
            step.timeout_sec = timeout_sec
            step.probe_interval_ms = interval_ms
    return result


def _write_lock(settings, pid, started_at):
    path = settings.lock_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"pid": pid, "startedAt": started_at, "model": "other"}))


def _iso(delta=timedelta(0)):
    return (datetime.now(timezone.utc) - delta).isoformat().replace("+00:00", "Z")


@pytest.mark.asyncio
async def test_successful_run_records_active_runtime(settings, catalog):
    runner = FakeHostRunner()
    executor = RuntimeExecutor(settings, runner=runner)
    result = await executor.execute(plan(PlanRequest(model_id="qwen-7b"), catalog))

    assert result.ok and not result.reused
    assert [o.step.kind for o in result.steps] == [
        StepKind.STOP_MODEL,
        StepKind.APPLY_BACKEND,
        StepKind.VERIFY_BACKEND,
        StepKind.START_MODEL,
        StepKind.PROBE_HEALTH,
    ]
    active = executor.load_active()
    assert active.model_id == "qwen-7b"
    assert active.backend_id == "vulkan"
    assert active.host_ids == ["local"]
    assert active.healthy is True
    assert active.endpoint == "http://127.0.0.1:8081/v1"
    assert not settings.lock_path.exists()
    saved = json.loads(settings.active_path.read_text())
    assert saved["modelId"] == "qwen-7b" and saved["hostIds"] == ["local"]
    assert load_active_runtime(settings).model_id == "qwen-7b"


@pytest.mark.asyncio
async def test_stop_failure_halts_before_start(settings, catalog):
    runner = FakeHostRunner([("pkill", fail("permission denied"))])
    executor = RuntimeExecutor(settings, runner=runner)
    result = await executor.execute(plan(PlanRequest(model_id="qwen-7b"), catalog))

    assert result.ok is False
    assert "stop_model" in result.error
    assert "permission denied" in result.error
    assert not any(START in cmd for cmd in runner.commands())
    assert executor.load_active() is None
    assert not settings.lock_path.exists()


@pytest.mark.asyncio
async def test_probe_timeout_tears_down_started_model(settings, catalog):
    runner = FakeHostRunner([(PROBE, fail("connection refused", exit_code=7))])
    ActiveRuntimeStore(settings.active_path).save(
        ActiveRuntime(model_id="big-70b", host_ids=["local"], healthy=True, started_at=_iso())
    )
    executor = RuntimeExecutor(settings, runner=runner)
    result = await executor.execute(_shorten_probe(plan(PlanRequest(model_id="qwen-7b"), catalog)))

    assert result.ok is False
    assert result.error.startswith("Step failed: probe_health on local")
    assert runner.commands()[-1] == "pkill -f llama-server || true"
    assert result.steps[-1].step.kind is StepKind.STOP_MODEL
    assert len([c for c in runner.commands() if PROBE in c]) >= 2
    assert not settings.active_path.exists()


@pytest.mark.asyncio
async def test_teardown_only_stops_hosts_started_in_this_run(settings, catalog):
    ActiveRuntimeStore(settings.active_path).save(
        ActiveRuntime(model_id="big-70b", host_ids=["gpu-box"], healthy=True, started_at=_iso())
    )
    runner = FakeHostRunner([(PROBE, fail("refused"))])
    executor = RuntimeExecutor(settings, runner=runner)
    result = await executor.execute(
        _shorten_probe(plan(PlanRequest(model_id="qwen-7b"), catalog, executor.load_active()))
    )

    assert result.ok is False
    assert runner.commands().count("systemctl --user stop llama") == 1
    assert runner.commands().count("pkill -f llama-server || true") == 2
    stops = [o.step.host_id for o in result.steps if o.step.kind is StepKind.STOP_MODEL]
    assert stops == ["gpu-box", "local", "local"]
    assert result.steps[-1].step.host_id == "local"


@pytest.mark.asyncio
async def test_health_check_ignoring_sigterm_stays_near_deadline(settings):
    executor = RuntimeExecutor(settings, runner=HostCommandRunner())
    step = PlanStep(
        kind=StepKind.PROBE_HEALTH,
        host_id="local",
        command="trap '' TERM; sleep 20",
        timeout_sec=1.0,
        description="Wait for a server that ignores SIGTERM",
        probe_interval_ms=500,
    )
    host = ResolvedHost(id="local", display_name="Local", transport="local")

    began = time.monotonic()
    res = await executor.run_step_with_retry(step, host)
    elapsed = time.monotonic() - began

    assert res.timed_out
    # deadline + one interval of kill grace, plus scheduling slack
    assert elapsed < 1.0 + 0.5 + 0.75


@pytest.mark.asyncio
async def test_probe_failure_includes_server_log_tail(settings, catalog):
    runner = FakeHostRunner([(PROBE, fail("")), ("tail -n 5", ok("ggml: out of memory\n"))])
    executor = RuntimeExecutor(settings, runner=runner)
    result = await executor.execute(_shorten_probe(plan(PlanRequest(model_id="big-70b"), catalog)))
    assert "ggml: out of memory" in result.error
    assert "tail -n 5 /tmp/llama-server.log 2>/dev/null" in runner.commands()


@pytest.mark.asyncio
async def test_failed_apply_runs_rollback_on_same_host(settings, catalog):
    runner = FakeHostRunner([("switch-backend vulkan", fail("driver busy"))])
    executor = RuntimeExecutor(settings, runner=runner)
    result = await executor.execute(plan(PlanRequest(model_id="qwen-7b"), catalog))

    assert result.ok is False
    assert "apply_backend" in result.error
    assert "Rollback attempted: exit=0" in result.error
    assert runner.calls[-1] == {"host_id": "local", "command": "switch-backend previous", "timeout_s": 30.0}
    assert not any(START in cmd for cmd in runner.commands())


@pytest.mark.asyncio
async def test_missing_binary_error_is_rewritten(settings, catalog):
    runner = FakeHostRunner(
        [(START, fail("failed to run command 'llama-server': No such file or directory", exit_code=127))]
    )
    executor = RuntimeExecutor(settings, runner=runner)
    result = await executor.execute(plan(PlanRequest(model_id="big-70b"), catalog))
    assert "local doesn't have 'llama-server' in PATH" in result.error
    assert "Step failed: start_model on local" in result.error


@pytest.mark.asyncio
async def test_abort_before_start_runs_nothing(settings, catalog):
    runner = FakeHostRunner()
    signal = asyncio.Event()
    signal.set()
    result = await RuntimeExecutor(settings, runner=runner).execute(
        plan(PlanRequest(model_id="qwen-7b"), catalog), signal=signal
    )
    assert result.ok is False
    assert result.error == "Execution aborted"
    assert runner.calls == []
    assert not settings.lock_path.exists()


@pytest.mark.asyncio
async def test_abort_between_steps_tears_down(settings, catalog):
    runner = FakeHostRunner()
    signal = asyncio.Event()

    def on_step(step, status, detail=None):
        if step.kind is StepKind.START_MODEL and status == "done":
            signal.set()

    result = await RuntimeExecutor(settings, runner=runner).execute(
        plan(PlanRequest(model_id="big-70b"), catalog), signal=signal, on_step=on_step
    )
    assert result.error == "Execution aborted"
    assert not any(PROBE in cmd for cmd in runner.commands())
    assert runner.commands()[-1] == "pkill -f llama-server || true"
    assert not settings.active_path.exists()


@pytest.mark.asyncio
async def test_callback_errors_do_not_break_execution(settings, catalog):
    def on_step(step, status, detail=None):
        raise RuntimeError("ui went away")

    result = await RuntimeExecutor(settings, runner=FakeHostRunner()).execute(
        plan(PlanRequest(model_id="big-70b"), catalog), on_step=on_step
    )
    assert result.ok


@pytest.mark.asyncio
async def test_reuse_only_probes(settings, catalog):
    active = ActiveRuntime(model_id="big-70b", host_ids=["local"], healthy=True, started_at=_iso())
    ActiveRuntimeStore(settings.active_path).save(active)
    runner = FakeHostRunner()
    executor = RuntimeExecutor(settings, runner=runner)
    result = await executor.execute(plan(PlanRequest(model_id="big-70b"), catalog, executor.load_active()))

    assert result.ok and result.reused
    assert result.steps == []
    assert runner.commands() == ["curl -sf http://127.0.0.1:8080/health"]
    assert executor.load_active().started_at == active.started_at


class DeployAwareRunner(FakeHostRunner):
    """Health probes only pass once a model has been started."""

    async def run_on_host(self, host, command, timeout_s=5.0, stdin_text=None, **kwargs):
        started = any(START in cmd for cmd in self.commands())
        res = await super().run_on_host(host, command, timeout_s, stdin_text, **kwargs)
        if PROBE in command:
            return ok() if started else fail("connection refused")
        return res


@pytest.mark.asyncio
async def test_failed_reuse_probe_falls_back_to_full_deploy(settings, catalog):
    yesterday = _iso(timedelta(days=1))
    ActiveRuntimeStore(settings.active_path).save(
        ActiveRuntime(model_id="big-70b", host_ids=["local"], healthy=True, started_at=yesterday)
    )
    runner = DeployAwareRunner()
    executor = RuntimeExecutor(settings, runner=runner)
    result = plan(PlanRequest(model_id="big-70b"), catalog, executor.load_active())
    result.steps[0].timeout_sec = 0.2
    result.steps[0].probe_interval_ms = 50
    outcome = await executor.execute(result)

    assert outcome.ok and not outcome.reused
    assert [o.step.kind for o in outcome.steps] == [StepKind.STOP_MODEL, StepKind.START_MODEL, StepKind.PROBE_HEALTH]
    assert executor.load_active().started_at != yesterday


@pytest.mark.asyncio
async def test_stale_and_dead_locks_are_reclaimed(settings):
    executor = RuntimeExecutor(settings, runner=FakeHostRunner())
    _write_lock(settings, os.getpid(), _iso(timedelta(hours=2)))
    assert await executor.acquire_lock("qwen-7b") is None
    assert json.loads(settings.lock_path.read_text())["model"] == "qwen-7b"

    _write_lock(settings, 2**30, _iso())
    assert await executor.acquire_lock("qwen-7b") is None


@pytest.mark.asyncio
async def test_live_lock_needs_force_and_confirmation(settings, catalog):
    _write_lock(settings, os.getpid(), _iso())
    runner = FakeHostRunner()
    executor = RuntimeExecutor(settings, runner=runner)

    result = await executor.execute(plan(PlanRequest(model_id="big-70b"), catalog))
    assert result.ok is False
    assert f"Runtime lock held by PID {os.getpid()}" in result.error
    assert runner.calls == []
    assert settings.lock_path.exists()

    declined = await executor.acquire_lock("big-70b", force=True, confirmer=CallbackConfirmer(lambda prompt: False))
    assert "declined" in declined
    assert json.loads(settings.lock_path.read_text())["model"] == "other"

    async def yes(prompt):
        return True

    result = await executor.execute(
        plan(PlanRequest(model_id="big-70b"), catalog), force=True, confirmer=CallbackConfirmer(yes)
    )
    assert result.ok
    assert not settings.lock_path.exists()


def test_endpoint_uses_remote_address(catalog):
    result = plan(PlanRequest(model_id="big-70b", host_override="gpu-box"), catalog)
    assert derive_endpoint(result) == "http://10.0.0.5:8080/v1"


@pytest.mark.asyncio
async def test_dry_run_plan_is_refused(settings, catalog):
    runner = FakeHostRunner()
    result = await RuntimeExecutor(settings, runner=runner).execute(
        plan(PlanRequest(model_id="big-70b", mode="dry-run"), catalog)
    )
    assert result.ok is False
    assert result.error == "dry-run plan cannot be executed"
    assert runner.calls == []
    assert not settings.lock_path.exists()
    assert not settings.active_path.exists()


@pytest.mark.asyncio
async def test_unreadable_lock_is_removed_only_after_confirmation(settings):
    settings.lock_path.parent.mkdir(parents=True, exist_ok=True)
    settings.lock_path.write_text("garbage")
    executor = RuntimeExecutor(settings, runner=FakeHostRunner())

    assert "could not be parsed" in await executor.acquire_lock("qwen-7b")
    declined = await executor.acquire_lock("qwen-7b", force=True, confirmer=CallbackConfirmer(lambda prompt: False))
    assert "could not be parsed" in declined
    assert settings.lock_path.read_text() == "garbage"

    assert await executor.acquire_lock("qwen-7b", force=True, confirmer=CallbackConfirmer(lambda prompt: True)) is None
    assert json.loads(settings.lock_path.read_text())["model"] == "qwen-7b"
