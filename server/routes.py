import asyncio
import logging
import shutil
from datetime import datetime

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import Response
from pydantic import BaseModel

from center.call_center import OUTWARD_EVENTS, CallCenter
from center.contacts import ContactSyncError
from db.database import DuplicateKey, NotFound
from db.models import RecordKind
from recorder.audio_capture import Artifact, CaptureState

logger = logging.getLogger(__name__)

MIN_FREE_BYTES = 100 * 1024 * 1024


class StartRecordingRequest(BaseModel):
    contact_name: str | None = None


class SyncContactsRequest(BaseModel):
    contacts: list[dict] | None = None
    url: str | None = None


class CurrentContactRequest(BaseModel):
    name: str | None = None
    id: str | None = None


class StartCallRequest(BaseModel):
    remote_peer_id: str


class ExternalCallRequest(BaseModel):
    platform: str


def serialize_payload(value):
    """Make an event payload JSON friendly; binary artifacts and live handles are summarised."""
    if isinstance(value, dict):
        return {key: serialize_payload(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_payload(item) for item in value]
    if isinstance(value, Artifact):
        return {"file_name": value.file_name, "mime_type": value.codec.mime_type, "size": value.size}
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, BaseException):
        return {"type": type(value).__name__, "message": str(value)}
    if isinstance(value, (bytes, bytearray)):
        return {"size": len(value)}
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    peer = getattr(value, "peer", None)
    if peer is not None:
        return {"peer": peer}
    return str(value)


def create_router(center: CallCenter) -> APIRouter:
    router = APIRouter()
    background: set[asyncio.Task] = set()

    # -- Status --

    @router.get("/status")
    def get_status():
        status = center.get_status()
        capability = center.live.capability
        status["whisper_model_loaded"] = bool(capability is not None and getattr(capability, "is_loaded", False))
        return status

    # -- Devices --

    @router.get("/devices")
    def list_devices():
        if center.device is None:
            raise HTTPException(503, "No audio host configured")
        try:
            devices = center.device.list_devices()
        except (ImportError, OSError) as e:
            raise HTTPException(503, f"Audio host unavailable: {e}")
        # Loopback endpoints mirror an output and are never recorded from
        devices = [d for d in devices if not d.get("isLoopback")]
        inputs = [d for d in devices if d["maxInputChannels"] > 0]
        outputs = [d for d in devices if d["maxOutputChannels"] > 0]
        return {"input": inputs, "output": outputs}

    # -- Recording control --

    @router.post("/recording/start")
    async def start_recording(body: StartRecordingRequest = StartRecordingRequest()):
        if center.capture.state is not CaptureState.IDLE:
            raise HTTPException(400, "A recording is already in progress")

        free = shutil.disk_usage(center.store.db_path.parent).free
        if free < MIN_FREE_BYTES:
            raise HTTPException(507, "Not enough disk space")

        if not await center.start_recording(body.contact_name):
            raise HTTPException(503, "Audio input unavailable")
        return center.capture.get_state()

    @router.post("/recording/stop")
    async def stop_recording():
        if center.capture.state not in (CaptureState.RECORDING, CaptureState.PAUSED):
            raise HTTPException(400, "No recording in progress")
        result = await center.stop_recording()
        if result is None:
            raise HTTPException(500, "Recording could not be saved")
        return {
            "id": result["id"],
            "file_name": result["file_name"],
            "contact_name": result["contact_name"],
            "duration_secs": result["duration_secs"],
            "size_bytes": result["size_bytes"],
        }

    @router.post("/recording/pause")
    def pause_recording():
        if not center.pause_recording():
            raise HTTPException(400, "No active recording to pause")
        return center.capture.get_state()

    @router.post("/recording/resume")
    def resume_recording():
        if not center.resume_recording():
            raise HTTPException(400, "Recording is not paused")
        return center.capture.get_state()

    # -- Recordings --

    @router.get("/recordings")
    async def list_recordings(contact: str | None = None):
        recordings = await center.get_all_audio_recordings(contact)
        return [r.summary() for r in recordings]

    @router.get("/recordings/{recording_id}")
    async def get_recording(recording_id: int):
        try:
            rec = await center.store.get(RecordKind.AUDIO, recording_id)
        except NotFound:
            raise HTTPException(404, "Recording not found")

        result = rec.summary()
        result["audio_url"] = f"/api/recordings/{rec.id}/audio"
        result["transcript_text"] = None
        if rec.transcription_id is not None:
            try:
                transcription = await center.store.get(RecordKind.TRANSCRIPTION, rec.transcription_id)
                result["transcript_text"] = transcription.text
            except NotFound:
                pass
        return result

    @router.get("/recordings/{recording_id}/audio")
    async def get_audio(recording_id: int):
        try:
            rec = await center.store.get(RecordKind.AUDIO, recording_id)
        except NotFound:
            raise HTTPException(404, "Audio not found")
        return Response(
            content=rec.audio_data,
            media_type=rec.mime_type.split(";")[0],
            headers={"Content-Disposition": f'inline; filename="{rec.file_name}"'},
        )

    @router.delete("/recordings/{recording_id}")
    async def delete_recording(recording_id: int):
        try:
            await center.delete_recording(recording_id)
        except NotFound:
            raise HTTPException(404, "Recording not found")
        return {"deleted": True}

    @router.post("/recordings/{recording_id}/transcribe")
    async def transcribe_recording(recording_id: int):
        try:
            await center.store.get(RecordKind.AUDIO, recording_id)
        except NotFound:
            raise HTTPException(404, "Recording not found")

        task = asyncio.create_task(center.transcribe_audio_file(recording_id))
        background.add(task)

        def _done(t: asyncio.Task):
            background.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error("Transcribing %s failed: %s", recording_id, t.exception())

        task.add_done_callback(_done)
        return {"status": "transcribing"}

    # -- Transcriptions --

    @router.get("/transcriptions")
    async def list_transcriptions(contact: str | None = None):
        return await center.get_all_transcriptions(contact)

    @router.get("/transcriptions/{transcription_id}")
    async def get_transcription(transcription_id: int):
        try:
            return await center.store.get(RecordKind.TRANSCRIPTION, transcription_id)
        except NotFound:
            raise HTTPException(404, "Transcription not found")

    @router.delete("/transcriptions/{transcription_id}")
    async def delete_transcription(transcription_id: int):
        try:
            await center.delete_transcription(transcription_id)
        except NotFound:
            raise HTTPException(404, "Transcription not found")
        return {"deleted": True}

    # -- Contacts --

    @router.get("/contacts")
    async def list_contacts():
        return await center.get_all_contacts()

    @router.post("/contacts/sync")
    async def sync_contacts(body: SyncContactsRequest = SyncContactsRequest()):
        try:
            if body.contacts is not None:
                count = await center.sync_contacts(body.contacts)
            else:
                count = await center.fetch_contacts(body.url)
        except ContactSyncError as e:
            raise HTTPException(502, str(e))
        except DuplicateKey as e:
            raise HTTPException(409, str(e))
        return {"synced": count}

    @router.post("/contacts/current")
    def set_current_contact(body: CurrentContactRequest):
        center.set_current_contact(body.name, body.id)
        return center.current_contact

    # -- Calls --

    @router.get("/calls/history")
    async def call_history(contact: str | None = None):
        return await center.get_call_history(contact)

    @router.post("/calls/start")
    async def start_call(body: StartCallRequest):
        if not await center.start_call(body.remote_peer_id):
            raise HTTPException(409, "Call could not be placed")
        return center.calls.get_state()

    @router.post("/calls/answer")
    async def answer_call():
        if not await center.answer_call():
            raise HTTPException(409, "No incoming call to answer")
        return center.calls.get_state()

    @router.post("/calls/end")
    async def end_call():
        duration = await center.end_call()
        return {"duration": duration}

    @router.post("/calls/external")
    async def external_call(body: ExternalCallRequest):
        if not await center.open_external_call(body.platform):
            raise HTTPException(400, f"Unknown platform: {body.platform}")
        return {"opened": body.platform}

    # -- Event stream --

    @router.websocket("/events")
    async def event_stream(websocket: WebSocket):
        queue: asyncio.Queue = asyncio.Queue()
        handlers = {}
        for name in OUTWARD_EVENTS:
            def handler(payload, name=name):
                queue.put_nowait({"event": name, "payload": serialize_payload(payload)})
            handlers[name] = center.events.on(name, handler)
        await websocket.accept()

        async def pump():
            while True:
                await websocket.send_json(await queue.get())

        sender = asyncio.create_task(pump())
        try:
            # Clients only listen; reading detects the disconnect
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug("Event stream client disconnected")
        finally:
            sender.cancel()
            for name, handler in handlers.items():
                center.events.off(name, handler)

    return router
