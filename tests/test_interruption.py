"""Tests for the Spot interruption monitor."""

import asyncio

import httpx
import pytest

from service_worker.app.runtime.interruption import SpotInterruptionMonitor

NOTICE = {"action": "terminate", "time": "2026-10-18T12:02:00Z"}


class FakeMetadataService:
    """IMDSv2 token and instance-action endpoints."""

    def __init__(self, action_status=404):
        self.action_status = action_status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        if request.url.path == "/latest/api/token":
            assert request.method == "PUT"
            assert request.headers["X-aws-ec2-metadata-token-ttl-seconds"] == "21600"
            return httpx.Response(200, text="token-1")
        if request.url.path == "/latest/meta-data/spot/instance-action":
            assert request.headers["X-aws-ec2-metadata-token"] == "token-1"
            if self.action_status == 200:
                return httpx.Response(200, json=NOTICE)
            return httpx.Response(self.action_status)
        return httpx.Response(404)


def make_monitor(service, handler=None, interval=0.01):
    async def ignore(notice):
        pass

    client = httpx.AsyncClient(transport=httpx.MockTransport(service), base_url="http://169.254.169.254")
    return SpotInterruptionMonitor(
        "http://169.254.169.254",
        on_interruption=handler or ignore,
        interval_seconds=interval,
        client=client,
    )


@pytest.mark.asyncio
async def test_no_notice_returns_none():
    service = FakeMetadataService(action_status=404)
    monitor = make_monitor(service)
    assert await monitor.check() is None
    assert await monitor.check() is None
    # Token is fetched once and reused.
    assert [path for _, path in service.requests].count("/latest/api/token") == 1
    await monitor.close()


@pytest.mark.asyncio
async def test_notice_invokes_handler_once():
    service = FakeMetadataService(action_status=200)
    notices = []

    async def handler(notice):
        notices.append(notice)

    monitor = make_monitor(service, handler)
    result = await asyncio.wait_for(monitor.run(asyncio.Event()), 5)
    assert result == NOTICE
    assert notices == [NOTICE]


@pytest.mark.asyncio
async def test_unauthorized_clears_token():
    service = FakeMetadataService(action_status=401)
    monitor = make_monitor(service)
    assert await monitor.check() is None
    assert monitor._token is None
    await monitor.check()
    assert [path for _, path in service.requests].count("/latest/api/token") == 2


@pytest.mark.asyncio
async def test_run_stops_on_event():
    service = FakeMetadataService(action_status=404)
    monitor = make_monitor(service, interval=10.0)
    stop = asyncio.Event()

    task = asyncio.create_task(monitor.run(stop))
    await asyncio.sleep(0.05)
    stop.set()
    assert await asyncio.wait_for(task, 5) is None


@pytest.mark.asyncio
async def test_metadata_errors_keep_polling():
    calls = []

    def flaky(request):
        calls.append(request.url.path)
        if len(calls) == 1:
            raise httpx.ConnectError("metadata unreachable", request=request)
        if request.url.path == "/latest/api/token":
            return httpx.Response(200, text="token-1")
        return httpx.Response(200, json=NOTICE)

    monitor = make_monitor(flaky)
    assert await asyncio.wait_for(monitor.run(asyncio.Event()), 5) == NOTICE
