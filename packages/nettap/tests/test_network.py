"""Tests for NetworkService body lookups."""

from __future__ import annotations

import asyncio
import threading
import time

import pytest

from conftest import lifecycle
from nettap.errors import ErrorCode, TransportError
from nettap.registry import RequestRegistry
from nettap.services.network import NetworkService


@pytest.fixture
def registry() -> RequestRegistry:
    return RequestRegistry()


@pytest.fixture
def decode_threads(registry: RequestRegistry, monkeypatch: pytest.MonkeyPatch) -> tuple[NetworkService, list[int]]:
    """A NetworkService whose decoder records the thread of every decode."""
    network = NetworkService(registry)
    threads: list[int] = []
    decode = network.decoder.decode

    def slow_decode(*args):
        threads.append(threading.get_ident())
        time.sleep(0.05)
        return decode(*args)

    monkeypatch.setattr(network.decoder, "decode", slow_decode)
    return network, threads


class TestResponseBody:
    async def test_concurrent_lookups_decode_once(
        self, registry: RequestRegistry, decode_threads: tuple[NetworkService, list[int]]
    ) -> None:
        network, threads = decode_threads
        for event in lifecycle():
            registry.ingest(event)
        request_id = registry.find("c1", 1).id

        first, second = await asyncio.gather(
            network.get_response_body(request_id), network.get_response_body(request_id)
        )
        assert first == second == {"body": '{"ok":true}', "base64Encoded": False}
        assert len(threads) == 1
        assert threads[0] != threading.get_ident()

        assert await network.get_response_body(request_id) == first
        assert len(threads) == 1

    async def test_decode_failure_is_cached(
        self, registry: RequestRegistry, decode_threads: tuple[NetworkService, list[int]]
    ) -> None:
        network, threads = decode_threads
        headers = [("Content-Type", "text/plain"), ("Content-Encoding", "compress")]
        for event in lifecycle(response_headers=headers):
            registry.ingest(event)
        request_id = registry.find("c1", 1).id

        for _ in range(2):
            with pytest.raises(TransportError) as exc_info:
                await network.get_response_body(request_id)
            assert exc_info.value.code == ErrorCode.SERVER_ERROR
        assert len(threads) == 1

    async def test_cancelled_caller_does_not_cancel_shared_decode(
        self, registry: RequestRegistry, decode_threads: tuple[NetworkService, list[int]]
    ) -> None:
        network, threads = decode_threads
        for event in lifecycle():
            registry.ingest(event)
        request_id = registry.find("c1", 1).id

        impatient = asyncio.create_task(network.get_response_body(request_id))
        await asyncio.sleep(0.01)
        impatient.cancel()
        assert (await network.get_response_body(request_id))["body"] == '{"ok":true}'
        assert len(threads) == 1
