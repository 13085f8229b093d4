import asyncio
import re
from datetime import datetime, timezone

import pytest

from db.database import RecordingStore
from db.models import RecordKind
from recorder.audio_capture import CaptureSession, CaptureState
from recorder.codecs import WAV_CODEC
from recorder.devices import AudioDevice, CaptureConstraints

from fakes import FakeBackend, FakeClock, Recorder, settle

CONSTRAINTS = CaptureConstraints(sample_rate=8000, channels=1)
ONE_SECOND = b"\x01\x00" * 8000

EVENTS = ("recordingStart", "chunkReceived", "recordingFinished", "recordingError")


def make_capture(tmp_path, backend=None, clock=None):
    backend = backend or FakeBackend()
    device = AudioDevice(backend)
    store = RecordingStore(tmp_path / "store.db")
    capture = CaptureSession(device, store, constraints=CONSTRAINTS, chunk_interval=1.0,
                             tick_interval=0.01, clock=clock or FakeClock(),
                             codec_selector=lambda: WAV_CODEC)
    return capture, device, backend, store


def test_two_chunks_then_stop(tmp_path):
    async def scenario():
        clock = FakeClock()
        capture, device, backend, store = make_capture(tmp_path, clock=clock)
        events = Recorder(capture.events, *EVENTS)
        try:
            assert await capture.start("Acme Corp") is True
            assert device.owner == "capture"

            for _ in range(2):
                backend.current_input.queue.put_nowait(ONE_SECOND)
                clock.advance(1.0)
                await settle()

            result = await capture.stop()
            assert events.names() == ["recordingStart", "chunkReceived", "chunkReceived", "recordingFinished"]

            finished = events.payloads("recordingFinished")[0]
            assert finished == result
            assert finished["contact_name"] == "Acme Corp"
            assert finished["duration_secs"] == 2
            assert re.fullmatch(r"Acme_Corp_\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2}\.wav", finished["file_name"])

            stored = await store.get(RecordKind.AUDIO, finished["id"])
            assert stored.file_name == finished["file_name"]
            assert stored.mime_type == "audio/wav"
            assert stored.size_bytes == len(stored.audio_data)
            assert capture.state is CaptureState.IDLE
            assert device.owner is None
            assert backend.current_input.closed
        finally:
            await store.close()

    asyncio.run(scenario())


def test_pause_resume_excludes_paused_time(tmp_path):
    async def scenario():
        clock = FakeClock()
        capture, _, _, store = make_capture(tmp_path, clock=clock)
        try:
            await capture.start("Acme Corp")
            recorded = 0.0
            for run, gap in ((1.0, 2.0), (1.0, 3.0), (1.0, 1.0)):
                clock.advance(run)
                recorded += run
                assert capture.pause() is True
                clock.advance(gap)
                assert capture.resume() is True
            clock.advance(1.0)
            recorded += 1.0

            result = await capture.stop()
            assert capture.elapsed == pytest.approx(recorded)
            assert result["duration_secs"] == 4
        finally:
            await store.close()

    asyncio.run(scenario())


def test_chunks_while_paused_are_dropped(tmp_path):
    async def scenario():
        capture, _, backend, store = make_capture(tmp_path)
        events = Recorder(capture.events, "chunkReceived")
        try:
            await capture.start("Acme Corp")
            capture.pause()
            backend.current_input.queue.put_nowait(ONE_SECOND)
            await settle()
            capture.resume()
            backend.current_input.queue.put_nowait(ONE_SECOND)
            await settle()
            await capture.stop()
            assert [p["index"] for p in events.payloads("chunkReceived")] == [1]
        finally:
            await store.close()

    asyncio.run(scenario())


def test_invalid_transitions_return_false(tmp_path):
    async def scenario():
        capture, _, _, store = make_capture(tmp_path)
        try:
            assert capture.pause() is False
            assert capture.resume() is False
            assert await capture.stop() is None

            await capture.start("Acme Corp")
            assert await capture.start("Globex") is False
            assert capture.resume() is False
            assert capture.pause() is True
            assert capture.pause() is False
            await capture.stop()
        finally:
            await store.close()

    asyncio.run(scenario())


def test_start_without_device_raises_error_event(tmp_path):
    async def scenario():
        capture, _, _, store = make_capture(tmp_path, backend=FakeBackend(fail=True))
        events = Recorder(capture.events, *EVENTS)
        try:
            assert await capture.start("Acme Corp") is False
            assert events.names() == ["recordingError"]
            assert type(events.payloads("recordingError")[0]["error"]).__name__ == "DeviceUnavailable"
            assert capture.state is CaptureState.IDLE
        finally:
            await store.close()

    asyncio.run(scenario())


def test_device_held_by_another_owner(tmp_path):
    async def scenario():
        capture, device, _, store = make_capture(tmp_path)
        events = Recorder(capture.events, "recordingError")
        try:
            lease = await device.acquire("call")
            assert await capture.start("Acme Corp") is False
            assert len(events.payloads("recordingError")) == 1
            lease.close()
            assert await capture.start("Acme Corp") is True
            await capture.stop()
        finally:
            await store.close()

    asyncio.run(scenario())


def test_timers_do_not_fire_after_stop(tmp_path):
    async def scenario():
        clock = FakeClock()
        capture, _, _, store = make_capture(tmp_path, clock=clock)
        try:
            await capture.start("Acme Corp")
            clock.advance(3.0)
            await capture.stop()
            elapsed = capture.elapsed

            clock.advance(10.0)
            await asyncio.sleep(0.05)
            assert capture.elapsed == elapsed
            assert capture._tasks == []
        finally:
            await store.close()

    asyncio.run(scenario())


def test_failed_save_keeps_artifact(tmp_path, monkeypatch):
    moment = datetime(2024, 3, 5, 14, 7, 9, tzinfo=timezone.utc)
    monkeypatch.setattr("recorder.audio_capture.utcnow", lambda: moment)

    async def scenario():
        capture, _, _, store = make_capture(tmp_path)
        events = Recorder(capture.events, "recordingFinished", "recordingError")
        try:
            await capture.start("Acme Corp")
            first = await capture.stop()

            # Same contact within the same second collides on the file name
            await capture.start("Acme Corp")
            assert await capture.stop() is None

            assert events.names() == ["recordingFinished", "recordingError"]
            failed = events.payloads("recordingError")[0]
            assert failed["artifact"].file_name == first["file_name"]
            assert capture.pending_artifact is failed["artifact"]
            assert len(await store.list(RecordKind.AUDIO)) == 1
            assert capture.state is CaptureState.IDLE
        finally:
            await store.close()

    asyncio.run(scenario())


def test_stop_waits_for_the_read_in_flight(tmp_path):
    async def scenario():
        clock = FakeClock()
        capture, device, backend, store = make_capture(tmp_path, clock=clock)
        try:
            await capture.start("Acme Corp")
            backend.current_input.queue.put_nowait(ONE_SECOND)
            clock.advance(1.0)
            await settle()

            tail = b"\x07\x00" * 400
            backend.current_input.tail = tail
            result = await capture.stop()

            assert backend.current_input.closed
            assert backend.current_input.closed_mid_read is False
            assert result["artifact"].data.endswith(ONE_SECOND + tail)
            assert device.owner is None
        finally:
            await store.close()

    asyncio.run(scenario())


def test_tail_read_while_paused_is_dropped(tmp_path):
    async def scenario():
        capture, device, backend, store = make_capture(tmp_path)
        try:
            await capture.start("Acme Corp")
            await settle()
            capture.pause()
            backend.current_input.tail = b"\x07\x00" * 400
            result = await capture.stop()
            assert result["artifact"].data.endswith(b"data\x00\x00\x00\x00")
        finally:
            await store.close()

    asyncio.run(scenario())
