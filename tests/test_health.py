import httpx
import pytest

from runtimectl.health import (
    check_active_runtime,
    check_endpoint,
    check_host,
    classify_probe,
    parse_curl_tagged,
    probe_models_endpoint,
    wait_for_models_ready,
)
from runtimectl.schemas import ActiveRuntime
from runtimectl.store import validate
from tests.fakes import FakeHostRunner, make_catalog, ok


LOCAL = {"id": "local", "transport": "local", "connection": {}}


def test_parse_curl_tagged():
    assert parse_curl_tagged('{"data": []}\n__HTTP__:200') == (200, '{"data": []}')
    assert parse_curl_tagged("\n__HTTP__:503\n") == (503, "")
    assert parse_curl_tagged("garbage") == (None, "garbage")


def test_classify_probe():
    assert classify_probe(0, 200) == "ready"
    assert classify_probe(0, 503) == "loading"
    assert classify_probe(7, 0) == "down"
    assert classify_probe(0, 404) == "unknown"


@pytest.mark.asyncio
async def test_models_probe_ready_lists_model_ids():
    runner = FakeHostRunner([("/v1/models", ok('{"data": [{"id": "qwen"}]}\n__HTTP__:200'))])
    res = await probe_models_endpoint(runner, LOCAL, 8081)
    assert res.status == "ready"
    assert res.model_ids == ["qwen"]
    assert len(runner.calls) == 1
    assert "http://127.0.0.1:8081/v1/models" in runner.calls[0]["command"]
    assert '-w "\\n__HTTP__:%{http_code}"' in runner.calls[0]["command"]


@pytest.mark.asyncio
async def test_models_probe_falls_back_to_health_while_loading():
    runner = FakeHostRunner(
        [
            ("/v1/models", ok("\n__HTTP__:503")),
            ("/health", ok('{"status": "loading model"}\n__HTTP__:503')),
        ]
    )
    res = await probe_models_endpoint(runner, LOCAL, 8080)
    assert res.status == "loading"
    assert res.http_code == 503
    assert len(runner.calls) == 2


@pytest.mark.asyncio
async def test_wait_for_models_ready_reports_reason():
    runner = FakeHostRunner([("curl", ok("\n__HTTP__:503"))])
    res = await wait_for_models_ready(runner, LOCAL, 8080, timeout_s=1.0, interval_s=0.25)
    assert res["ok"] is False
    assert "status=loading" in res["reason"]
    assert res["attempts"] >= 1

    runner = FakeHostRunner([("curl", ok('{"data": [{"id": "qwen"}]}\n__HTTP__:200'))])
    res = await wait_for_models_ready(runner, LOCAL, 8080, timeout_s=1.0, expected_model_id="qwen")
    assert res["ok"] is True and res["attempts"] == 1


@pytest.mark.asyncio
async def test_check_endpoint_over_http():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/models"
        return httpx.Response(200, json={"data": [{"id": "qwen-7b"}]})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        res = await check_endpoint("http://10.0.0.5:8081/v1/", client=client)
    assert res == {
        "ok": True,
        "status": "ready",
        "url": "http://10.0.0.5:8081/v1/models",
        "http_code": 200,
        "model_ids": ["qwen-7b"],
    }


@pytest.mark.asyncio
async def test_check_endpoint_connection_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        res = await check_endpoint("http://127.0.0.1:9/v1", client=client)
    assert res["ok"] is False
    assert res["status"] == "down"


@pytest.mark.asyncio
async def test_check_active_runtime_without_state():
    res = await check_active_runtime(None)
    assert res["ok"] is False

    active = ActiveRuntime(model_id="m", host_ids=["local"], healthy=True, started_at="x")
    res = await check_active_runtime(active)
    assert res["status"] == "unknown"


@pytest.mark.asyncio
async def test_check_host_runs_health_command(catalog):
    runner = FakeHostRunner()
    res = await check_host(runner, catalog.host("gpu-box"))
    assert res.ok
    assert runner.calls == [{"host_id": "gpu-box", "command": "nvidia-smi", "timeout_s": 5.0}]


@pytest.mark.asyncio
async def test_check_host_falls_back_to_host_id_without_address():
    data = make_catalog()
    data["hosts"][0]["health"]["check_cmd"] = "ping -c1 {host}"
    runner = FakeHostRunner()
    await check_host(runner, validate(data).host("local"))
    assert runner.commands() == ["ping -c1 local"]
