import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from runtimectl.config import EngineSettings, load_settings
from runtimectl.executor import CallbackConfirmer, RuntimeExecutor
from runtimectl.health import check_active_runtime, check_host
from runtimectl.host_runner import HostCommandRunner
from runtimectl.planner import PlanRequest, PlanResult, plan
from runtimectl.probe_tuner import apply_dynamic_probe_defaults
from runtimectl.store import RuntimeConfigError, load_runtimes, redact


def _print_json(payload: dict) -> None:
    print(json.dumps(payload, indent=2))


def _print_plan(result: PlanResult) -> None:
    print(f'Plan for model "{result.model.display_name}":')
    if result.reuse:
        print("  -> Current runtime matches. Only a health probe will run.")
        return
    for step in result.steps:
        print(f"  [{step.kind.value}] {step.description} (timeout: {step.timeout_sec:g}s)")


def _ask_yes_no(prompt: str) -> bool:
    answer = input(f"{prompt} [y/N] ").strip().lower()
    return answer in ("y", "yes")


def run_validate(settings: EngineSettings, args: argparse.Namespace) -> int:
    try:
        load_runtimes(settings.runtimes_path)
    except RuntimeConfigError as exc:
        print(f"invalid runtimes config: {exc}")
        return 1
    print(f"{settings.runtimes_path} is valid.")
    return 0


def run_show(settings: EngineSettings, args: argparse.Namespace) -> int:
    config = redact(load_runtimes(settings.runtimes_path))
    if args.json:
        _print_json(config.model_dump(mode="json", exclude_none=True))
        return 0
    print(f"Hosts ({len(config.hosts)}):")
    for host in config.hosts:
        state = "enabled" if host.enabled else "disabled"
        print(f"  {host.id} [{host.transport}, {state}] {host.display_name}")
    print(f"Backends ({len(config.backends)}):")
    for backend in config.backends:
        print(f"  {backend.id} [{backend.type}] {backend.display_name}")
    print(f"Models ({len(config.models)}):")
    for model in config.models:
        print(f"  {model.id} {model.display_name} ({model.source})")
    return 0


async def run_select(settings: EngineSettings, args: argparse.Namespace) -> int:
    config = load_runtimes(settings.runtimes_path)
    executor = RuntimeExecutor(settings)
    request = PlanRequest(
        model_id=args.model,
        host_override=args.host,
        backend_override=args.backend,
        mode="dry-run" if args.dry_run else "live",
        force_restart=args.restart,
    )
    result = plan(request, config, executor.load_active())
    if not result.ok:
        if args.json:
            _print_json(result.to_dict())
        else:
            print(f"Plan failed: {result.reason} ({result.code})")
        return 1
    if settings.dynamic_probe_defaults:
        apply_dynamic_probe_defaults(result, config)

    if args.dry_run:
        if args.json:
            _print_json(result.to_dict())
        else:
            _print_plan(result)
        return 0

    def on_step(step, status, detail=None):
        if args.json:
            return
        if status == "start":
            print(f"  {step.description}...", end="", flush=True)
        elif status == "done":
            print(" ok")
        else:
            print(" failed")

    outcome = await executor.execute(
        result,
        force=args.force,
        confirmer=CallbackConfirmer(_ask_yes_no),
        on_step=on_step,
    )
    if args.json:
        _print_json(outcome.to_dict())
    elif outcome.ok:
        if outcome.reused:
            print("Runtime already active and healthy. No changes needed.")
        else:
            print(f'Runtime switched to "{result.model.display_name}" successfully.')
        active = executor.load_active()
        if active and active.endpoint:
            print(f"Endpoint: {active.endpoint}")
    else:
        print(f"Execution failed: {outcome.error or 'unknown error'}")
    return 0 if outcome.ok else 1


def run_status(settings: EngineSettings, args: argparse.Namespace) -> int:
    active = RuntimeExecutor(settings).load_active()
    if not active:
        print("No active runtime.")
        return 0
    if args.json:
        _print_json(active.to_dict())
        return 0
    print("Active runtime:")
    print(f"  Model:    {active.model_id}")
    if active.backend_id:
        print(f"  Backend:  {active.backend_id}")
    print(f"  Hosts:    {', '.join(active.host_ids)}")
    print(f"  Healthy:  {'yes' if active.healthy else 'no'}")
    if active.endpoint:
        print(f"  Endpoint: {active.endpoint}")
    print(f"  Started:  {active.started_at}")
    return 0


async def run_health(settings: EngineSettings, args: argparse.Namespace) -> int:
    active = RuntimeExecutor(settings).load_active()
    result = await check_active_runtime(active)
    if args.json:
        _print_json(result)
    elif result.get("ok"):
        print(f"{result.get('model_id')}: {result.get('status')} ({result.get('url')})")
    else:
        print(f"Unhealthy: {result.get('error') or result.get('status')}")
    return 0 if result.get("ok") else 1


async def run_hosts_test(settings: EngineSettings, args: argparse.Namespace) -> int:
    config = load_runtimes(settings.runtimes_path)
    host = config.host(args.host_id)
    if not host:
        print(f"host not found: {args.host_id}")
        return 1
    res = await check_host(HostCommandRunner(sudo_password_env=settings.sudo_password_env), host)
    print(f"[{host.id}] {'OK' if res.ok else 'FAIL'} (exit={res.exit_code})")
    if res.stdout.strip():
        print(res.stdout.strip())
    if res.stderr.strip():
        print(res.stderr.strip(), file=sys.stderr)
    return 0 if res.ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="runtimectl: bring one model online on a host/backend pair")
    parser.add_argument("--config-dir", default=None, help="Directory holding runtimes.json")
    parser.add_argument("--state-dir", default=None, help="Directory for lock and active-runtime files")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("validate", help="Validate runtimes.json")

    show = subparsers.add_parser("show", help="Show the catalog with secrets redacted")
    show.add_argument("--json", action="store_true")

    select = subparsers.add_parser("select", help="Plan and bring a model online")
    select.add_argument("--model", required=True, help="Model id")
    select.add_argument("--host", default=None, help="Host override")
    select.add_argument("--backend", default=None, help="Backend override")
    select.add_argument("--dry-run", action="store_true", help="Print the plan without running it")
    select.add_argument("--json", action="store_true")
    select.add_argument("--force", action="store_true", help="Offer to take over a held runtime lock")
    select.add_argument("--restart", action="store_true", help="Redeploy even if the active runtime matches")

    status = subparsers.add_parser("status", help="Show the active runtime")
    status.add_argument("--json", action="store_true")

    health = subparsers.add_parser("health", help="Probe the active runtime endpoint")
    health.add_argument("--json", action="store_true")

    hosts_test = subparsers.add_parser("hosts-test", help="Run a host's health check command")
    hosts_test.add_argument("host_id")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    overrides = {}
    if args.config_dir:
        overrides["config_dir"] = args.config_dir
    if args.state_dir:
        overrides["state_dir"] = args.state_dir
    settings = load_settings(overrides)
    logging.basicConfig(level=settings.log_level, format="%(levelname)s %(name)s: %(message)s")

    try:
        if args.command == "validate":
            return run_validate(settings, args)
        if args.command == "show":
            return run_show(settings, args)
        if args.command == "select":
            return asyncio.run(run_select(settings, args))
        if args.command == "status":
            return run_status(settings, args)
        if args.command == "health":
            return asyncio.run(run_health(settings, args))
        if args.command == "hosts-test":
            return asyncio.run(run_hosts_test(settings, args))
    except RuntimeConfigError as exc:
        print(f"invalid runtimes config: {exc}")
        return 1
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
