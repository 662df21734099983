"""Tests for RequestRegistry and RequestDetail."""

from __future__ import annotations

import gzip

import pytest

from conftest import lifecycle
from nettap.body import BodyDecoder
from nettap.errors import DecodeError
from nettap.registry import RequestRegistry
from nettap.types import CaptureEvent, CaptureKind, RequestState


def ingest_all(registry: RequestRegistry, events: list[CaptureEvent]) -> list:
    deltas = []
    for event in events:
        deltas.extend(registry.ingest(event))
    return deltas


class TestLifecycle:
    def test_full_sequence_completes(self) -> None:
        registry = RequestRegistry()
        deltas = ingest_all(registry, lifecycle())

        assert [d.kind for d in deltas] == [
            CaptureKind.START,
            CaptureKind.HEADERS_SENT,
            CaptureKind.RESPONSE_HEADERS,
            CaptureKind.DATA_CHUNK,
            CaptureKind.DATA_CHUNK,
            CaptureKind.END,
        ]
        detail = registry.find("c1", origin=1)
        assert detail is not None
        assert detail.state == RequestState.COMPLETED
        assert detail.method == "GET"
        assert detail.status == 200
        assert detail.mime_type == "application/json"
        assert detail.encoded_length == len(b'{"ok":true}')
        assert detail.settled.is_set()

    def test_id_assigned_once(self) -> None:
        registry = RequestRegistry()
        events = lifecycle()
        registry.ingest(events[0])
        request_id = registry.find("c1", origin=1).id
        ingest_all(registry, events[1:])
        assert registry.find("c1", origin=1).id == request_id
        assert request_id != "c1"

    def test_chunk_delta_carries_raw_length(self) -> None:
        registry = RequestRegistry()
        deltas = ingest_all(registry, lifecycle(chunks=(b"abc", b"defgh")))
        assert [d.chunk_length for d in deltas if d.kind == CaptureKind.DATA_CHUNK] == [3, 5]

    def test_error_fails_request(self) -> None:
        registry = RequestRegistry()
        ingest_all(registry, lifecycle(error="ConnectError: refused"))
        detail = registry.find("c1", origin=1)
        assert detail.state == RequestState.FAILED
        assert detail.error == "ConnectError: refused"

    def test_same_correlation_id_from_different_origins(self) -> None:
        registry = RequestRegistry()
        ingest_all(registry, lifecycle("c1", origin=1))
        ingest_all(registry, lifecycle("c1", origin=2))
        assert len(registry) == 2
        assert registry.find("c1", 1).id != registry.find("c1", 2).id


class TestDroppedSignals:
    def test_unknown_id_is_dropped_and_counted(self) -> None:
        registry = RequestRegistry()
        assert registry.ingest(CaptureEvent("ghost", CaptureKind.END, origin=1)) == []
        assert registry.counters.dropped == 1

    def test_events_after_terminal_are_dropped(self) -> None:
        registry = RequestRegistry()
        ingest_all(registry, lifecycle())
        late = CaptureEvent("c1", CaptureKind.DATA_CHUNK, payload={"data": b"late"}, origin=1)
        assert registry.ingest(late) == []
        assert registry.ingest(CaptureEvent("c1", CaptureKind.ERROR, payload={"error": "x"}, origin=1)) == []
        assert registry.find("c1", 1).state == RequestState.COMPLETED
        assert registry.counters.dropped == 2

    def test_data_before_response_is_dropped(self) -> None:
        registry = RequestRegistry()
        events = lifecycle()
        registry.ingest(events[0])
        assert registry.ingest(events[3]) == []
        assert registry.counters.dropped == 1

    def test_malformed_payload_is_dropped(self) -> None:
        registry = RequestRegistry()
        registry.ingest(lifecycle()[0])
        bad = CaptureEvent("c1", CaptureKind.RESPONSE_HEADERS, payload={"status": "not a number"}, origin=1)
        assert registry.ingest(bad) == []
        assert registry.counters.dropped == 1
        assert registry.find("c1", 1).state == RequestState.PENDING

    def test_malformed_call_stack_is_ignored(self) -> None:
        registry = RequestRegistry()
        frame = {"functionName": "main", "url": "file:///app/main.py", "lineNumber": 1, "locals": {}}
        stacks = {"a": "not a list", "b": [frame, 3, {"url": 5}]}
        for cid, stack in stacks.items():
            registry.ingest(CaptureEvent(cid, CaptureKind.START, payload={"url": "http://x/", "stack": stack}, origin=1))

        assert registry.find("a", 1).call_frames == []
        assert registry.find("b", 1).call_frames == [
            {"functionName": "main", "url": "file:///app/main.py", "lineNumber": 1}
        ]
        assert registry.counters.dropped == 0

    def test_duplicate_start_supersedes_open_request(self) -> None:
        registry = RequestRegistry()
        events = lifecycle()
        registry.ingest(events[0])
        stale = registry.find("c1", 1)

        deltas = registry.ingest(events[0])
        assert [d.kind for d in deltas] == [CaptureKind.ERROR, CaptureKind.START]
        assert stale.state == RequestState.FAILED
        assert "Superseded" in stale.error
        assert registry.find("c1", 1) is not stale
        assert registry.counters.duplicates == 1


class TestBodies:
    def test_truncates_at_max_body_size(self) -> None:
        registry = RequestRegistry(max_body_size=4)
        ingest_all(registry, lifecycle(chunks=(b"abc", b"defgh")))
        detail = registry.find("c1", 1)
        assert detail.truncated
        assert b"".join(detail.chunks) == b"abcd"
        assert detail.encoded_length == 8

    def test_request_body_is_buffered(self) -> None:
        registry = RequestRegistry()
        start = CaptureEvent(
            "c1", CaptureKind.START, payload={"method": "post", "url": "http://x/", "body": "a=1"}, origin=1
        )
        registry.ingest(start)
        detail = registry.find("c1", 1)
        assert detail.method == "POST"
        assert detail.request_body == b"a=1"

    def test_lazy_decode_is_cached(self) -> None:
        registry = RequestRegistry()
        headers = [("Content-Type", "text/plain"), ("Content-Encoding", "gzip")]
        ingest_all(registry, lifecycle(response_headers=headers, chunks=(gzip.compress(b"hello"),)))
        detail = registry.find("c1", 1)
        decoder = BodyDecoder()
        first = detail.decoded_body(decoder)
        assert first.body == "hello"
        assert detail.decoded_body(decoder) is first

    def test_decode_failure_leaves_metadata_intact(self) -> None:
        registry = RequestRegistry()
        headers = [("Content-Type", "text/plain"), ("Content-Encoding", "compress")]
        ingest_all(registry, lifecycle(response_headers=headers))
        detail = registry.find("c1", 1)
        with pytest.raises(DecodeError):
            detail.decoded_body(BodyDecoder())
        assert detail.state == RequestState.COMPLETED
        assert detail.status == 200

    def test_failed_request_has_no_body(self) -> None:
        registry = RequestRegistry()
        ingest_all(registry, lifecycle(error="boom"))
        with pytest.raises(DecodeError):
            registry.find("c1", 1).decoded_body(BodyDecoder())


class TestEviction:
    def test_expired_terminal_records_evicted(self) -> None:
        registry = RequestRegistry(retention_age=10)
        ingest_all(registry, lifecycle(t0=1000.0))
        request_id = registry.find("c1", 1).id

        deltas, evicted = registry.sweep(now=1005.0)
        assert evicted == []
        deltas, evicted = registry.sweep(now=1011.0)
        assert evicted == [request_id]
        assert deltas == []
        assert len(registry) == 0
        assert registry.find("c1", 1) is None

    def test_count_bound_evicts_oldest_terminal_first(self) -> None:
        registry = RequestRegistry(retention_count=2, retention_age=1e9)
        for i in range(3):
            ingest_all(registry, lifecycle(f"c{i}", t0=1000.0 + i))
        registry.ingest(lifecycle("open", t0=1010.0)[0])

        deltas, evicted = registry.sweep(now=1020.0)
        assert len(evicted) == 2
        assert registry.find("c0", 1) is None
        assert registry.find("c1", 1) is None
        assert registry.find("c2", 1) is not None
        assert registry.find("open", 1) is not None
        assert deltas == []

    def test_open_records_failed_when_bound_still_exceeded(self) -> None:
        registry = RequestRegistry(retention_count=1)
        registry.ingest(lifecycle("a")[0])
        registry.ingest(lifecycle("b")[0])
        oldest = registry.find("a", 1)

        deltas, evicted = registry.sweep(now=2e9)
        assert evicted == [oldest.id]
        assert [d.kind for d in deltas] == [CaptureKind.ERROR]
        assert oldest.state == RequestState.FAILED
        assert registry.find("b", 1) is not None

    def test_stats(self) -> None:
        registry = RequestRegistry()
        ingest_all(registry, lifecycle())
        registry.ingest(CaptureEvent("ghost", CaptureKind.END, origin=1))
        stats = registry.stats()
        assert stats["retained"] == 1
        assert stats["open"] == 0
        assert stats["dropped"] == 1
