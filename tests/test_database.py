import asyncio
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from db.database import DuplicateKey, NotFound, RecordingStore, StorageFault
from db.models import AudioRecording, CallHistoryEntry, Contact, RecordKind, make_file_name


def make_recording(contact="Acme Corp", file_name="Acme_Corp_2024-03-05_14-07-09.webm",
                   captured_at=None, **kwargs) -> AudioRecording:
    return AudioRecording(
        contact_name=contact,
        captured_at=captured_at or datetime(2024, 3, 5, 14, 7, 9, tzinfo=timezone.utc),
        file_name=file_name,
        audio_data=b"audio-bytes",
        mime_type="audio/webm",
        duration_secs=12,
        size_bytes=11,
        **kwargs,
    )


def run_with_store(tmp_path, scenario):
    async def main():
        store = RecordingStore(tmp_path / "store.db")
        try:
            return await scenario(store)
        finally:
            await store.close()
    return asyncio.run(main())


def test_file_name_pattern():
    moment = datetime(2024, 3, 5, 14, 7, 9).astimezone()
    assert make_file_name("Acme Corp", moment, "audio") == "Acme_Corp_2024-03-05_14-07-09.webm"
    assert make_file_name("O'Neil & Co.", moment, "transcript") == "O_Neil___Co__2024-03-05_14-07-09.txt"


def test_put_and_get_recording(tmp_path):
    async def scenario(store):
        audio_id = await store.put(make_recording())
        fetched = await store.get(RecordKind.AUDIO, audio_id)
        assert fetched.id == audio_id
        assert fetched.contact_name == "Acme Corp"
        assert fetched.audio_data == b"audio-bytes"
        assert fetched.transcribed is False
        assert "audio_data" not in fetched.summary()

    run_with_store(tmp_path, scenario)


def test_duplicate_file_name_rejected(tmp_path):
    async def scenario(store):
        await store.put(make_recording())
        with pytest.raises(DuplicateKey):
            await store.put(make_recording())
        assert len(await store.list(RecordKind.AUDIO)) == 1

    run_with_store(tmp_path, scenario)


def test_get_missing_raises_not_found(tmp_path):
    async def scenario(store):
        with pytest.raises(NotFound):
            await store.get(RecordKind.AUDIO, 99)
        with pytest.raises(NotFound):
            await store.attach_transcript(99, "hello")
        with pytest.raises(NotFound):
            await store.put_transcription(99, "Acme Corp", "hello")

    run_with_store(tmp_path, scenario)


def test_attach_transcript(tmp_path):
    async def scenario(store):
        audio_id = await store.put(make_recording())
        assert await store.attach_transcript(audio_id, "hello there") is True
        fetched = await store.get(RecordKind.AUDIO, audio_id)
        assert fetched.live_transcript == "hello there"

    run_with_store(tmp_path, scenario)


def test_put_transcription_flips_flag(tmp_path):
    async def scenario(store):
        audio_id = await store.put(make_recording())
        transcription = await store.put_transcription(audio_id, "Acme Corp", "two words")
        assert transcription.word_count == 2
        assert transcription.file_name.endswith(".txt")

        recording = await store.get(RecordKind.AUDIO, audio_id)
        assert recording.transcribed is True
        assert recording.transcription_id == transcription.id

    run_with_store(tmp_path, scenario)


def test_put_transcription_is_atomic(tmp_path, monkeypatch):
    async def scenario(store):
        audio_id = await store.put(make_recording())

        def fail_after_insert(conn, audio_id, transcription_id):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store, "_mark_transcribed", fail_after_insert)
        with pytest.raises(StorageFault):
            await store.put_transcription(audio_id, "Acme Corp", "hello")

        recording = await store.get(RecordKind.AUDIO, audio_id)
        assert recording.transcribed is False
        assert recording.transcription_id is None
        assert await store.list(RecordKind.TRANSCRIPTION) == []

    run_with_store(tmp_path, scenario)


def test_delete_recording_removes_its_transcriptions(tmp_path):
    async def scenario(store):
        audio_id = await store.put(make_recording())
        other_id = await store.put(make_recording(contact="Globex", file_name="Globex.webm"))
        first = await store.put_transcription(audio_id, "Acme Corp", "one")
        second = await store.put_transcription(audio_id, "Acme Corp Retry", "two")
        kept = await store.put_transcription(other_id, "Globex", "three")

        await store.delete(RecordKind.AUDIO, audio_id)

        for transcription in (first, second):
            with pytest.raises(NotFound):
                await store.get(RecordKind.TRANSCRIPTION, transcription.id)
        with pytest.raises(NotFound):
            await store.get(RecordKind.AUDIO, audio_id)
        assert (await store.get(RecordKind.TRANSCRIPTION, kept.id)).text == "three"

    run_with_store(tmp_path, scenario)


def test_delete_missing_raises_not_found(tmp_path):
    async def scenario(store):
        with pytest.raises(NotFound):
            await store.delete(RecordKind.CONTACT, 5)

    run_with_store(tmp_path, scenario)


def test_delete_transcription_repoints_recording(tmp_path):
    async def scenario(store):
        audio_id = await store.put(make_recording())
        first = await store.put_transcription(audio_id, "Acme Corp", "one")
        second = await store.put_transcription(audio_id, "Acme Corp Retry", "two")

        await store.delete(RecordKind.TRANSCRIPTION, second.id)
        recording = await store.get(RecordKind.AUDIO, audio_id)
        assert recording.transcribed is True
        assert recording.transcription_id == first.id

        await store.delete(RecordKind.TRANSCRIPTION, first.id)
        recording = await store.get(RecordKind.AUDIO, audio_id)
        assert recording.transcribed is False
        assert recording.transcription_id is None

    run_with_store(tmp_path, scenario)


def test_list_by_contact_and_between(tmp_path):
    base = datetime(2024, 3, 5, 12, 0, tzinfo=timezone.utc)

    async def scenario(store):
        await store.put(make_recording(file_name="a.webm", captured_at=base))
        await store.put(make_recording(file_name="b.webm", captured_at=base + timedelta(hours=1)))
        await store.put(make_recording(contact="Globex", file_name="c.webm",
                                       captured_at=base + timedelta(days=1)))

        acme = await store.list_by_contact(RecordKind.AUDIO, "Acme Corp")
        assert [r.file_name for r in acme] == ["b.webm", "a.webm"]

        same_day = await store.list_between(RecordKind.AUDIO, base, base + timedelta(hours=12))
        assert {r.file_name for r in same_day} == {"a.webm", "b.webm"}

        everything = await store.list(RecordKind.AUDIO)
        assert [r.file_name for r in everything] == ["c.webm", "b.webm", "a.webm"]

    run_with_store(tmp_path, scenario)


def test_list_between_with_local_time_bounds(tmp_path):
    plus_two = timezone(timedelta(hours=2))

    async def scenario(store):
        await store.put(make_recording(file_name="utc.webm",
                                       captured_at=datetime(2024, 3, 5, 9, 0, tzinfo=timezone.utc)))
        await store.put(make_recording(file_name="local.webm",
                                       captured_at=datetime(2024, 3, 5, 13, 0, tzinfo=plus_two)))

        morning = await store.list_between(RecordKind.AUDIO,
                                           datetime(2024, 3, 5, 10, 30, tzinfo=plus_two),
                                           datetime(2024, 3, 5, 11, 30, tzinfo=plus_two))
        assert [r.file_name for r in morning] == ["utc.webm"]

        midday = await store.list_between(RecordKind.AUDIO,
                                          datetime(2024, 3, 5, 10, 30, tzinfo=timezone.utc),
                                          datetime(2024, 3, 5, 11, 30, tzinfo=timezone.utc))
        assert [r.file_name for r in midday] == ["local.webm"]
        assert midday[0].captured_at == datetime(2024, 3, 5, 11, 0, tzinfo=timezone.utc)

    run_with_store(tmp_path, scenario)


def test_replace_all_contacts(tmp_path):
    async def scenario(store):
        await store.replace_all_contacts([Contact(name="Old One"), Contact(name="Old Two")])
        count = await store.replace_all_contacts([
            Contact(name="Zed", external_id="2"),
            Contact(name="Amy", external_id="1", email="amy@example.com"),
        ])
        assert count == 2
        contacts = await store.list(RecordKind.CONTACT)
        assert [c.name for c in contacts] == ["Amy", "Zed"]
        assert contacts[0].email == "amy@example.com"

    run_with_store(tmp_path, scenario)


def test_replace_all_contacts_failure_keeps_original_set(tmp_path):
    async def scenario(store):
        original = [Contact(name=f"Original {i}") for i in range(3)]
        await store.replace_all_contacts(original)

        replacement = [Contact(name=f"New {i}") for i in range(10)]
        replacement[4] = Contact(name=None)
        with pytest.raises(StorageFault):
            await store.replace_all_contacts(replacement)

        names = [c.name for c in await store.list(RecordKind.CONTACT)]
        assert names == ["Original 0", "Original 1", "Original 2"]

    run_with_store(tmp_path, scenario)


def test_append_call_history(tmp_path):
    async def scenario(store):
        entry_id = await store.append_call_history(
            CallHistoryEntry(contact_name="Acme Corp", kind="audio", duration_secs=42, platform="peer")
        )
        entry = await store.get(RecordKind.CALL_HISTORY, entry_id)
        assert entry.duration_secs == 42
        assert entry.kind == "audio"
        assert len(await store.list_by_contact(RecordKind.CALL_HISTORY, "Acme Corp")) == 1

    run_with_store(tmp_path, scenario)


def test_closed_store_raises(tmp_path):
    async def scenario():
        store = RecordingStore(tmp_path / "store.db")
        await store.close()
        await store.close()
        with pytest.raises(StorageFault):
            await store.list(RecordKind.AUDIO)

    asyncio.run(scenario())
