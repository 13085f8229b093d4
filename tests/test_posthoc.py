import asyncio
from datetime import datetime, timezone

import pytest

from db.database import NotFound, RecordingStore
from db.models import AudioRecording, RecordKind
from processing.posthoc import (
    NO_SPEECH_PLACEHOLDER,
    UNAVAILABLE_PLACEHOLDER,
    PostHocTranscriber,
    format_duration,
    format_transcription,
)
from processing.speech import TranscriptionFault
from recorder.codecs import pcm_to_wav
from recorder.devices import AudioDevice, DeviceUnavailable

from fakes import DirectCapability, FakeBackend, FakeCapability, Recorder, instant_sleep, settle

PCM = b"\x02\x00" * 800


def make_recording(live_transcript=None) -> AudioRecording:
    data = pcm_to_wav(PCM, 8000, 1)
    return AudioRecording(
        contact_name="Acme Corp",
        captured_at=datetime(2024, 3, 5, 14, 7, 9, tzinfo=timezone.utc),
        file_name="Acme_Corp_2024-03-05_14-07-09.wav",
        audio_data=data,
        mime_type="audio/wav",
        duration_secs=75,
        size_bytes=len(data),
        live_transcript=live_transcript,
    )


def run_transcriber(tmp_path, capability, scenario, backend=None):
    async def main():
        store = RecordingStore(tmp_path / "store.db")
        device = AudioDevice(backend or FakeBackend())
        transcriber = PostHocTranscriber(store, capability, device, sleep=instant_sleep, chunk_interval=0.1)
        try:
            return await scenario(transcriber, store, device)
        finally:
            await store.close()
    return asyncio.run(main())


def test_format_helpers():
    assert format_duration(75) == "1:15"
    assert format_duration(5) == "0:05"

    text = format_transcription(make_recording(), "hello")
    lines = text.split("\n")
    assert lines[0] == "TRANSCRIPTION"
    assert lines[1] == "Contact: Acme Corp"
    assert lines[2].startswith("Date: 2024-03-0")
    assert lines[3] == "Duration: 1:15"
    assert lines[4] == "File: Acme_Corp_2024-03-05_14-07-09.wav"
    assert set(lines[5]) == {"─"}
    assert lines[6] == ""
    assert lines[7] == "hello"


def test_unavailable_capability_stores_placeholder(tmp_path):
    async def scenario(transcriber, store, device):
        events = Recorder(transcriber.events, "transcriptionStart", "transcriptionComplete")
        audio_id = await store.put(make_recording())

        transcription = await transcriber.transcribe_audio_file(audio_id)

        recording = await store.get(RecordKind.AUDIO, audio_id)
        assert transcription.text == format_transcription(recording, UNAVAILABLE_PLACEHOLDER)
        assert recording.transcribed is True
        assert recording.transcription_id == transcription.id
        assert events.names() == ["transcriptionStart", "transcriptionComplete"]
        complete = events.payloads("transcriptionComplete")[0]
        assert complete["audio_id"] == audio_id
        assert complete["file_name"] == transcription.file_name

    run_transcriber(tmp_path, None, scenario)


def test_live_transcript_is_reused(tmp_path):
    capability = DirectCapability(text="should not be used")

    async def scenario(transcriber, store, device):
        audio_id = await store.put(make_recording(live_transcript="  spoken live  "))
        transcription = await transcriber.transcribe_audio_file(audio_id)
        assert transcription.text.endswith("\n\nspoken live")
        assert capability.artifacts == []

    run_transcriber(tmp_path, capability, scenario)


def test_direct_transcription(tmp_path):
    capability = DirectCapability(text=" hello from the archive ")

    async def scenario(transcriber, store, device):
        audio_id = await store.put(make_recording())
        transcription = await transcriber.transcribe_audio_file(audio_id)
        assert transcription.text.endswith("\n\nhello from the archive")
        assert capability.artifacts[0][1] == "audio/wav"

    run_transcriber(tmp_path, capability, scenario)


def test_empty_result_stores_no_speech_placeholder(tmp_path):
    async def scenario(transcriber, store, device):
        audio_id = await store.put(make_recording())
        transcription = await transcriber.transcribe_audio_file(audio_id)
        assert transcription.text.endswith(NO_SPEECH_PLACEHOLDER)

    run_transcriber(tmp_path, DirectCapability(text=""), scenario)


def test_engine_failure_raises_fault_and_event(tmp_path):
    capability = DirectCapability(error=RuntimeError("model exploded"))

    async def scenario(transcriber, store, device):
        events = Recorder(transcriber.events, "transcriptionError", "transcriptionComplete")
        audio_id = await store.put(make_recording())
        with pytest.raises(TranscriptionFault):
            await transcriber.transcribe_audio_file(audio_id)
        assert events.names() == ["transcriptionError"]
        assert (await store.get(RecordKind.AUDIO, audio_id)).transcribed is False

    run_transcriber(tmp_path, capability, scenario)


def test_missing_recording(tmp_path):
    async def scenario(transcriber, store, device):
        events = Recorder(transcriber.events, "transcriptionError")
        with pytest.raises(NotFound):
            await transcriber.transcribe_audio_file(404)
        assert events.payloads("transcriptionError")[0]["audio_id"] == 404

    run_transcriber(tmp_path, None, scenario)


def test_replay_and_listen(tmp_path):
    capability = FakeCapability()
    backend = FakeBackend()

    async def heard_playback():
        await capability.recognizers[-1].say("heard through the speakers")

    backend.on_play = heard_playback

    async def scenario(transcriber, store, device):
        events = Recorder(transcriber.events, "transcriptionProgress", "transcriptionComplete")
        audio_id = await store.put(make_recording())

        transcription = await transcriber.transcribe_audio_file(audio_id)

        assert transcription.text.endswith("\n\nheard through the speakers")
        assert backend.played == [(PCM, 8000, 1)]
        assert events.payloads("transcriptionProgress")[0]["final"] == "heard through the speakers"
        assert device.owner is None
        assert capability.recognizers[0].running is False

    run_transcriber(tmp_path, capability, scenario, backend=backend)


def test_replay_needs_free_input(tmp_path):
    async def scenario(transcriber, store, device):
        events = Recorder(transcriber.events, "transcriptionError")
        audio_id = await store.put(make_recording())
        lease = await device.acquire("capture")
        try:
            with pytest.raises(DeviceUnavailable):
                await transcriber.transcribe_audio_file(audio_id)
        finally:
            lease.close()
        assert len(events.payloads("transcriptionError")) == 1

    run_transcriber(tmp_path, FakeCapability(), scenario)


def test_microphone_failure_during_replay_is_reported(tmp_path):
    capability = FakeCapability()
    backend = FakeBackend(read_error=OSError("input overflowed"))
    backend.on_play = settle

    async def scenario(transcriber, store, device):
        events = Recorder(transcriber.events, "transcriptionError", "transcriptionComplete")
        audio_id = await store.put(make_recording())

        with pytest.raises(TranscriptionFault, match="input overflowed"):
            await transcriber.transcribe_audio_file(audio_id)

        assert events.names() == ["transcriptionError"]
        assert (await store.get(RecordKind.AUDIO, audio_id)).transcribed is False
        assert await store.list(RecordKind.TRANSCRIPTION) == []
        assert device.owner is None
        assert backend.current_input.closed

    run_transcriber(tmp_path, capability, scenario, backend=backend)


def test_replay_closes_input_after_last_read(tmp_path):
    capability = FakeCapability()
    backend = FakeBackend()
    backend.on_play = settle

    async def scenario(transcriber, store, device):
        audio_id = await store.put(make_recording())
        await transcriber.transcribe_audio_file(audio_id)
        assert backend.current_input.closed
        assert backend.current_input.closed_mid_read is False

    run_transcriber(tmp_path, capability, scenario, backend=backend)
