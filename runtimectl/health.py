import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

import httpx

from .host_runner import CommandResult, HostCommandRunner
from .schemas import ActiveRuntime, RuntimeHost
from .store import interpolate


ProbeStatus = Literal["ready", "loading", "down", "unknown"]

_HTTP_TAG_RE = re.compile(r"\n__HTTP__:(\d{3})\s*$")
_CURL_FMT = 'curl -sS -m 4 -o - -w "\\n__HTTP__:%{{http_code}}" http://127.0.0.1:{port}{path}'


@dataclass
class ModelsProbeResult:
    status: ProbeStatus
    http_code: Optional[int] = None
    model_ids: List[str] = field(default_factory=list)
    body: str = ""
    stderr: str = ""
    exit_code: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "http_code": self.http_code,
            "model_ids": list(self.model_ids),
            "exit_code": self.exit_code,
            "stderr": self.stderr,
        }


def parse_curl_tagged(stdout: str) -> tuple[Optional[int], str]:
    match = _HTTP_TAG_RE.search(stdout or "")
    if not match:
        return None, (stdout or "").strip()
    return int(match.group(1)), stdout[: match.start()].strip()


def classify_probe(exit_code: int, http_code: Optional[int]) -> ProbeStatus:
    if http_code == 200:
        return "ready"
    if http_code == 503:
        return "loading"
    if exit_code != 0:
        return "down"
    return "unknown"


def _model_ids(body: str) -> List[str]:
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return []
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, list):
        return []
    return [str(item.get("id")) for item in data if isinstance(item, dict) and item.get("id")]


async def probe_models_endpoint(
    runner: HostCommandRunner, host: Any, port: int, timeout_s: float = 5.0
) -> ModelsProbeResult:
    models_res = await runner.run_on_host(host, _CURL_FMT.format(port=port, path="/v1/models"), timeout_s)
    http_code, body = parse_curl_tagged(models_res.stdout)
    status = classify_probe(models_res.exit_code, http_code)
    model_ids = _model_ids(body) if status == "ready" else []

    if status != "ready":
        # /v1/models is inconclusive, ask /health instead.
        health_res = await runner.run_on_host(host, _CURL_FMT.format(port=port, path="/health"), timeout_s)
        health_code, _ = parse_curl_tagged(health_res.stdout)
        health_status = classify_probe(health_res.exit_code, health_code)
        if health_status in ("ready", "loading") or status == "unknown":
            status = health_status
            http_code = health_code

    return ModelsProbeResult(
        status=status,
        http_code=http_code,
        model_ids=model_ids,
        body=body,
        stderr=models_res.stderr,
        exit_code=models_res.exit_code,
    )


async def wait_for_models_ready(
    runner: HostCommandRunner,
    host: Any,
    port: int,
    *,
    timeout_s: float = 60.0,
    interval_s: float = 1.5,
    expected_model_id: Optional[str] = None,
) -> Dict[str, Any]:
    timeout_s = max(1.0, timeout_s)
    interval_s = max(0.25, interval_s)
    started = time.monotonic()
    attempts = 0
    last = ModelsProbeResult(status="down")
    while time.monotonic() - started < timeout_s:
        attempts += 1
        last = await probe_models_endpoint(runner, host, port, min(8.0, timeout_s))
        if last.status == "ready":
            if not expected_model_id or not last.model_ids or expected_model_id in last.model_ids:
                return {"ok": True, "attempts": attempts, "last": last}
        await asyncio.sleep(interval_s)

    reason = [f"status={last.status}"]
    if last.http_code is not None:
        reason.append(f"http={last.http_code}")
    if last.model_ids:
        reason.append(f"models={','.join(last.model_ids)}")
    if last.stderr.strip():
        reason.append(f"stderr={last.stderr.strip().splitlines()[0]}")
    return {"ok": False, "attempts": attempts, "last": last, "reason": " ".join(reason)}


async def check_endpoint(
    endpoint: str, *, timeout_s: float = 3.0, client: Optional[httpx.AsyncClient] = None
) -> Dict[str, Any]:
    url = f"{endpoint.rstrip('/')}/models"
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=timeout_s)
    try:
        resp = await client.get(url, timeout=timeout_s)
    except httpx.HTTPError as exc:
        return {"ok": False, "status": "down", "url": url, "error": str(exc)}
    finally:
        if owns_client:
            await client.aclose()
    status = classify_probe(0, resp.status_code)
    model_ids: List[str] = []
    if status == "ready":
        model_ids = _model_ids(resp.text)
    return {"ok": status == "ready", "status": status, "url": url, "http_code": resp.status_code, "model_ids": model_ids}


async def check_active_runtime(active: Optional[ActiveRuntime], **kwargs: Any) -> Dict[str, Any]:
    if active is None:
        return {"ok": False, "status": "down", "error": "No active runtime"}
    if not active.endpoint:
        return {"ok": False, "status": "unknown", "error": f"No endpoint recorded for {active.model_id}"}
    result = await check_endpoint(active.endpoint, **kwargs)
    result["model_id"] = active.model_id
    return result


async def check_host(runner: HostCommandRunner, host: RuntimeHost) -> CommandResult:
    command = interpolate(host.health.check_cmd, {"host": host.connection.host or host.id, "host_id": host.id})
    timeout_s = host.health.timeout_sec if host.health.timeout_sec is not None else 5.0
    return await runner.run_on_host(host, command, timeout_s)
