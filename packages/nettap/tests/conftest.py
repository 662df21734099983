"""Shared test fixtures and helpers."""

from __future__ import annotations

import asyncio
import socket
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any

import pytest

from nettap.config import NettapConfig
from nettap.types import CaptureEvent, CaptureKind


@pytest.fixture
def advance() -> Callable[[int], Coroutine[Any, Any, None]]:
    """Yield control to let pending callbacks and tasks run without real delay."""

    async def _advance(n: int = 5) -> None:
        for _ in range(n):
            await asyncio.sleep(0)

    return _advance


@pytest.fixture
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def config(tmp_path: Path, free_port: int) -> NettapConfig:
    return NettapConfig(
        port=free_port,
        lease_dir=str(tmp_path),
        probe_interval=0.2,
        sweep_interval=60.0,
        body_timeout=2.0,
    )


async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll ``predicate`` on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


def lifecycle(
    cid: str = "c1",
    *,
    origin: int = 1,
    method: str = "GET",
    url: str = "https://api.example.com/items?page=2",
    status: int = 200,
    response_headers: list | None = None,
    chunks: tuple[bytes, ...] = (b'{"ok":', b"true}"),
    error: str | None = None,
    t0: float = 1700000000.25,
) -> list[CaptureEvent]:
    """A complete capture sequence for one operation."""
    headers = response_headers if response_headers is not None else [("Content-Type", "application/json")]
    events = [
        CaptureEvent(
            cid,
            CaptureKind.START,
            t0,
            {"method": method, "url": url, "headers": [("Accept", "application/json")]},
            origin,
        ),
        CaptureEvent(cid, CaptureKind.HEADERS_SENT, t0 + 0.01, {}, origin),
        CaptureEvent(
            cid,
            CaptureKind.RESPONSE_HEADERS,
            t0 + 0.05,
            {"status": status, "status_text": "OK", "headers": headers},
            origin,
        ),
    ]
    for i, chunk in enumerate(chunks):
        events.append(CaptureEvent(cid, CaptureKind.DATA_CHUNK, t0 + 0.06 + i * 0.001, {"data": chunk}, origin))
    if error is None:
        events.append(CaptureEvent(cid, CaptureKind.END, t0 + 0.1, {}, origin))
    else:
        events.append(CaptureEvent(cid, CaptureKind.ERROR, t0 + 0.1, {"error": error}, origin))
    return events
