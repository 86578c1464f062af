"""Unit tests for the reachability probes."""

from __future__ import annotations

import asyncio

import pytest

from service_maker.backends.mock.compute import MockComputeBackend
from service_maker.core import readiness
from service_maker.core.errors import WaitTimeoutError
from service_maker.core.readiness import HttpHealthProbe, SshReachabilityProbe


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code


async def _closed_port() -> int:
    server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()
    return port


@pytest.mark.asyncio
async def test_ssh_probe_returns_once_port_accepts_connections():
    async def handle(reader, writer):
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    compute = MockComputeBackend(mock_ip="127.0.0.1")
    provider_id = compute.add_instance()

    try:
        probe = SshReachabilityProbe(compute, port=port, timeout=5, interval=0.01)
        await probe.wait_until_reachable(provider_id)
    finally:
        server.close()
        await server.wait_closed()


@pytest.mark.asyncio
async def test_ssh_probe_times_out_when_port_is_closed():
    compute = MockComputeBackend(mock_ip="127.0.0.1")
    provider_id = compute.add_instance()
    probe = SshReachabilityProbe(compute, port=await _closed_port(), timeout=0.1, interval=0.01)

    with pytest.raises(WaitTimeoutError, match="timed out"):
        await probe.wait_until_reachable(provider_id)


@pytest.mark.asyncio
async def test_ssh_probe_waits_for_public_address():
    compute = MockComputeBackend()
    provider_id = compute.add_instance()
    compute.instances[provider_id]["PublicIpAddress"] = None
    probe = SshReachabilityProbe(compute, timeout=0.05, interval=0.01)

    with pytest.raises(WaitTimeoutError):
        await probe.wait_until_reachable(provider_id)

    assert len(compute.calls_to("DescribeInstances")) >= 1


@pytest.mark.asyncio
async def test_http_probe_polls_until_healthy(monkeypatch):
    responses = iter([FakeResponse(503), FakeResponse(200)])
    urls = []

    def fake_get(url, timeout):
        urls.append(url)
        return next(responses)

    monkeypatch.setattr(readiness.requests, "get", fake_get)
    compute = MockComputeBackend(mock_ip="10.0.0.5")
    provider_id = compute.add_instance()

    probe = HttpHealthProbe(compute, port=8000, timeout=5, interval=0.01)
    await probe.wait_until_reachable(provider_id)

    assert urls == ["http://10.0.0.5:8000/health"] * 2


@pytest.mark.asyncio
async def test_http_probe_times_out_on_connection_errors(monkeypatch):
    def fake_get(url, timeout):
        raise readiness.requests.ConnectionError("refused")

    monkeypatch.setattr(readiness.requests, "get", fake_get)
    compute = MockComputeBackend()
    provider_id = compute.add_instance()

    probe = HttpHealthProbe(compute, timeout=0.05, interval=0.01)
    with pytest.raises(WaitTimeoutError, match="timed out"):
        await probe.wait_until_reachable(provider_id)
