import asyncio
import logging
import webbrowser
from pathlib import Path

import config
from calling.session import CallSession
from calling.signaling import PeerTransport
from center.contacts import fetch_directory, normalize_contact
from db.database import RecordingStore, StorageFault
from db.models import CallHistoryEntry, Contact, RecordKind
from events import EventEmitter
from processing.live import LiveTranscription
from processing.posthoc import PostHocTranscriber
from processing.transcriber import load_capability
from recorder.audio_capture import CaptureSession, CaptureState
from recorder.devices import AudioDevice, CaptureConstraints, PyAudioBackend

logger = logging.getLogger(__name__)

UNKNOWN_CONTACT = "Unknown"
DEFAULT_RECORDING_LABEL = "Call Recording"

# Raised outward on ``CallCenter.events``
OUTWARD_EVENTS = (
    "recordingStart", "recordingStop", "recordingError",
    "transcriptionStart", "transcriptionProgress", "transcriptionComplete", "transcriptionError",
    "liveTranscript",
    "callStart", "callEnd", "callError", "incomingCall", "peerReady", "registrationError",
)


class CallCenter:
    """Wires capture, transcription, calling and the store together.

    Finishing a recording always runs in this order: the live transcript is
    stopped, attached to the stored recording, and only then is
    ``recordingStop`` raised. Ended calls get exactly one history entry
    before ``callEnd`` is raised.
    """

    def __init__(self, store: RecordingStore, capture: CaptureSession, live: LiveTranscription,
                 transcriber: PostHocTranscriber, calls: CallSession, *, device: AudioDevice | None = None,
                 auto_answer: bool = config.AUTO_ANSWER, export_files: bool = config.EXPORT_FILES,
                 recordings_dir: Path = config.RECORDINGS_DIR,
                 transcripts_dir: Path = config.TRANSCRIPTS_DIR,
                 contacts_url: str = config.CONTACTS_URL,
                 open_url=webbrowser.open, directory_fetcher=fetch_directory):
        self.store = store
        self.capture = capture
        self.live = live
        self.transcriber = transcriber
        self.calls = calls
        self.device = device
        self.auto_answer = auto_answer
        self.export_files = export_files
        self.recordings_dir = Path(recordings_dir)
        self.transcripts_dir = Path(transcripts_dir)
        self.contacts_url = contacts_url
        self.events = EventEmitter()
        self.current_contact = {"id": None, "name": UNKNOWN_CONTACT}
        self._open_url = open_url
        self._fetch_directory = directory_fetcher
        self._closed = False
        self._wire()

    @classmethod
    def build(cls, *, store: RecordingStore | None = None, device: AudioDevice | None = None,
              capability=None, transport=None, **kwargs) -> "CallCenter":
        """Assemble a call center from ``config``; any piece can be passed in instead."""
        store = store or RecordingStore(config.DB_PATH)
        device = device or AudioDevice(PyAudioBackend(config.MIC_DEVICE_INDEX, config.OUTPUT_DEVICE_INDEX))
        if capability is None:
            capability = load_capability()
        transport = transport or PeerTransport(config.SIGNALING_URL, key=config.SIGNALING_KEY,
                                               ice_servers=config.ICE_SERVERS)
        constraints = CaptureConstraints(sample_rate=config.SAMPLE_RATE, channels=config.CHANNELS)

        capture = CaptureSession(device, store, constraints=constraints)
        live = LiveTranscription(capability, sample_rate=constraints.sample_rate,
                                 channels=constraints.channels)
        transcriber = PostHocTranscriber(store, capability, device, constraints=constraints)
        calls = CallSession(transport, device, constraints=constraints)
        return cls(store, capture, live, transcriber, calls, device=device, **kwargs)

    def _wire(self):
        self.capture.events.on("recordingStart", self._on_recording_start)
        self.capture.events.on("chunkReceived", self._on_chunk)
        self.capture.events.on("recordingFinished", self._on_recording_finished)
        self.capture.events.on("recordingError", self._on_recording_error)

        self.live.events.on("update", self._forward("liveTranscript"))

        for name in ("transcriptionStart", "transcriptionProgress", "transcriptionError"):
            self.transcriber.events.on(name, self._forward(name))
        self.transcriber.events.on("transcriptionComplete", self._on_transcription_complete)

        for name in ("peerReady", "registrationError", "callStart", "callError"):
            self.calls.events.on(name, self._forward(name))
        self.calls.events.on("incomingCall", self._on_incoming_call)
        self.calls.events.on("callEnded", self._on_call_ended)

    def _forward(self, name: str):
        async def handler(payload):
            await self.events.emit(name, payload)
        return handler

    # -- Lifecycle --

    async def start(self) -> bool:
        """Register with the signaling service so calls can be placed and received."""
        if self.export_files:
            self.recordings_dir.mkdir(parents=True, exist_ok=True)
            self.transcripts_dir.mkdir(parents=True, exist_ok=True)
        return await self.calls.register()

    async def close(self):
        if self._closed:
            return
        self._closed = True
        logger.info("Shutting down call center")
        if self.capture.state in (CaptureState.RECORDING, CaptureState.PAUSED):
            await self.capture.stop()
        if self.live.is_active:
            await self.live.stop()
        await self.calls.destroy()
        await self.store.close()
        if self.device is not None:
            self.device.terminate()

    def get_status(self) -> dict:
        return {
            "recording": self.capture.get_state(),
            "call": self.calls.get_state(),
            "live_transcription": {
                "supported": self.live.supported,
                "active": self.live.is_active,
            },
            "current_contact": dict(self.current_contact),
            "device_owner": self.device.owner if self.device is not None else None,
        }

    # -- Recording --

    async def start_recording(self, contact_name: str | None = None) -> bool:
        if not contact_name:
            current = self.current_contact["name"]
            contact_name = current if current != UNKNOWN_CONTACT else DEFAULT_RECORDING_LABEL
        return await self.capture.start(contact_name)

    async def stop_recording(self) -> dict | None:
        return await self.capture.stop()

    def pause_recording(self) -> bool:
        return self.capture.pause()

    def resume_recording(self) -> bool:
        return self.capture.resume()

    async def _on_recording_start(self, payload):
        if self.live.supported:
            await self.live.start()
        await self.events.emit("recordingStart", payload)

    def _on_chunk(self, payload):
        self.live.feed(payload["chunk"])

    async def _on_recording_finished(self, payload):
        transcript = await self.live.stop() if self.live.is_active else ""
        if transcript:
            try:
                await self.store.attach_transcript(payload["id"], transcript)
            except StorageFault as e:
                logger.error("Could not attach live transcript to %s: %s", payload["file_name"], e)
                await self.events.emit("recordingError", {"error": e})

        artifact = payload["artifact"]
        if self.export_files:
            await self._export(self.recordings_dir, artifact.file_name, artifact.data)

        await self.events.emit("recordingStop", {
            "id": payload["id"],
            "file_name": payload["file_name"],
            "contact_name": payload["contact_name"],
            "duration": payload["duration_secs"],
            "size": payload["size_bytes"],
            "artifact": artifact,
            "live_transcript": transcript or None,
        })

    async def _on_recording_error(self, payload):
        artifact = payload.get("artifact")
        if artifact is not None:
            if self.live.is_active:
                await self.live.stop()
            path = await self._export(self.recordings_dir, artifact.file_name, artifact.data)
            if path is not None:
                logger.warning("Recording kept locally at %s", path)
        await self.events.emit("recordingError", {"error": payload["error"]})

    async def _export(self, directory: Path, file_name: str, data) -> Path | None:
        path = directory / file_name

        def _write():
            directory.mkdir(parents=True, exist_ok=True)
            if isinstance(data, str):
                path.write_text(data, encoding="utf-8")
            else:
                path.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            logger.error("Could not write %s: %s", path, e)
            return None
        logger.info("Saved %s", path)
        return path

    # -- Transcription --

    async def transcribe_audio_file(self, audio_id: int):
        return await self.transcriber.transcribe_audio_file(audio_id)

    async def _on_transcription_complete(self, payload):
        if self.export_files:
            await self._export(self.transcripts_dir, payload["file_name"], payload["text"])
        await self.events.emit("transcriptionComplete", payload)

    # -- Queries --

    async def get_all_audio_recordings(self, contact_name: str | None = None):
        if contact_name:
            return await self.store.list_by_contact(RecordKind.AUDIO, contact_name)
        return await self.store.list(RecordKind.AUDIO)

    async def get_all_transcriptions(self, contact_name: str | None = None):
        if contact_name:
            return await self.store.list_by_contact(RecordKind.TRANSCRIPTION, contact_name)
        return await self.store.list(RecordKind.TRANSCRIPTION)

    async def get_all_contacts(self):
        return await self.store.list(RecordKind.CONTACT)

    async def get_call_history(self, contact_name: str | None = None):
        if contact_name:
            return await self.store.list_by_contact(RecordKind.CALL_HISTORY, contact_name)
        return await self.store.list(RecordKind.CALL_HISTORY)

    async def delete_recording(self, audio_id: int) -> bool:
        return await self.store.delete(RecordKind.AUDIO, audio_id)

    async def delete_transcription(self, transcription_id: int) -> bool:
        return await self.store.delete(RecordKind.TRANSCRIPTION, transcription_id)

    # -- Contacts --

    async def sync_contacts(self, contacts) -> int:
        """Replace the stored contact set wholesale with ``contacts`` (dicts or Contact)."""
        normalized = []
        for raw in contacts:
            contact = raw if isinstance(raw, Contact) else normalize_contact(raw)
            if not contact.name:
                logger.warning("Skipping contact %r without a name", contact.external_id)
                continue
            normalized.append(contact)
        count = await self.store.replace_all_contacts(normalized)
        logger.info("Synced %d contacts", count)
        return count

    async def fetch_contacts(self, url: str | None = None) -> int:
        raw = await asyncio.to_thread(self._fetch_directory, url or self.contacts_url)
        return await self.sync_contacts(raw)

    def set_current_contact(self, name: str | None, contact_id=None):
        self.current_contact = {"id": contact_id, "name": name or UNKNOWN_CONTACT}
        logger.info("Current contact: %s", self.current_contact["name"])

    # -- Calls --

    async def start_call(self, remote_peer_id: str) -> bool:
        return await self.calls.start_call(remote_peer_id)

    async def answer_call(self) -> bool:
        return await self.calls.answer_call()

    async def end_call(self) -> int | None:
        return await self.calls.end_call()

    async def open_external_call(self, platform: str) -> bool:
        url = config.EXTERNAL_CALL_URLS.get(platform)
        if url is None:
            logger.warning("Unknown call platform: %s", platform)
            return False
        await asyncio.to_thread(self._open_url, url)
        await self.store.append_call_history(CallHistoryEntry(
            contact_name=self.current_contact["name"],
            kind="video",
            duration_secs=0,
            platform=platform,
        ))
        return True

    async def _on_incoming_call(self, payload):
        await self.events.emit("incomingCall", payload)
        if self.auto_answer:
            await self.calls.answer_call(payload["call"])

    async def _on_call_ended(self, payload):
        entry = CallHistoryEntry(
            contact_name=self.current_contact["name"] or UNKNOWN_CONTACT,
            kind="audio",
            duration_secs=payload["duration"],
            platform=config.CALL_PLATFORM_LABEL,
        )
        try:
            await self.store.append_call_history(entry)
        except StorageFault as e:
            logger.error("Could not save call history: %s", e)
            await self.events.emit("callError", {"error": e})
        await self.events.emit("callEnd", {"duration": payload["duration"]})
