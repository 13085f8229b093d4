import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

import config
from db.database import StorageFault
from db.models import AudioRecording, make_file_name, utcnow
from events import EventEmitter
from recorder.codecs import WAV_CODEC, Codec, encode_pcm, select_codec
from recorder.devices import AudioDevice, CaptureConstraints, DeviceUnavailable

logger = logging.getLogger(__name__)

DEVICE_OWNER = "capture"


class CaptureState(str, Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    RECORDING = "recording"
    PAUSED = "paused"
    STOPPING = "stopping"


@dataclass
class Artifact:
    """A finished recording held in memory until the store accepts it."""

    data: bytes
    codec: Codec
    contact_name: str
    captured_at: datetime
    duration_secs: int
    file_name: str

    @property
    def size(self) -> int:
        return len(self.data)


class CaptureSession:
    """Owns the audio input while recording and turns chunks into a stored artifact.

    Events (emitted on ``self.events``):
      recordingStart{contact_name, start_time}
      chunkReceived{chunk, index}
      recordingFinished{id, file_name, contact_name, duration_secs, size_bytes, artifact}
      recordingError{error[, artifact]}
    """

    def __init__(self, device: AudioDevice, store, *, constraints: CaptureConstraints | None = None,
                 chunk_interval: float = config.CHUNK_INTERVAL_SECS,
                 tick_interval: float = config.TICK_INTERVAL_SECS,
                 clock=time.monotonic, codec_selector=select_codec):
        self.device = device
        self.store = store
        self.events = EventEmitter()
        self.constraints = constraints or CaptureConstraints(
            sample_rate=config.SAMPLE_RATE, channels=config.CHANNELS
        )
        self.chunk_interval = chunk_interval
        self.tick_interval = tick_interval
        self._clock = clock
        self._select_codec = codec_selector

        self._state = CaptureState.IDLE
        self._lease = None
        self._codec: Codec | None = None
        self._chunks: list[bytes] = []
        self._tasks: list[asyncio.Task] = []
        self._contact_name = "Unknown"
        self._started_at = None
        self._start_mono = 0.0
        self._paused_at = 0.0
        self._paused_total = 0.0
        self._elapsed = 0.0
        self.pending_artifact: Artifact | None = None

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def elapsed(self) -> float:
        return self._elapsed

    @property
    def contact_name(self) -> str:
        return self._contact_name

    def get_state(self) -> dict:
        return {
            "state": self._state.value,
            "is_recording": self._state in (CaptureState.RECORDING, CaptureState.PAUSED),
            "is_paused": self._state is CaptureState.PAUSED,
            "elapsed": int(self._elapsed),
            "contact_name": self._contact_name,
        }

    # -- Control --

    async def start(self, contact_name: str = "Unknown") -> bool:
        if self._state is not CaptureState.IDLE:
            logger.warning("Recording already in progress (%s)", self._state.value)
            return False

        self._state = CaptureState.ACQUIRING
        try:
            lease = await self.device.acquire(DEVICE_OWNER, self.constraints)
        except DeviceUnavailable as e:
            logger.error("Could not acquire audio input: %s", e)
            self._state = CaptureState.IDLE
            await self.events.emit("recordingError", {"error": e})
            return False

        if self._state is not CaptureState.ACQUIRING:
            # stop() was requested while the device was being opened
            lease.close()
            return False

        self._lease = lease
        self._codec = self._select_codec()
        self._contact_name = contact_name or "Unknown"
        self._chunks = []
        self._started_at = utcnow()
        self._start_mono = self._clock()
        self._paused_total = 0.0
        self._elapsed = 0.0
        self._state = CaptureState.RECORDING
        self._tasks = [
            asyncio.create_task(self._capture_chunks(lease)),
            asyncio.create_task(self._run_ticker()),
        ]
        logger.info("Recording started for %s (%s)", self._contact_name, self._codec.mime_type)
        await self.events.emit("recordingStart", {
            "contact_name": self._contact_name,
            "start_time": self._started_at,
        })
        return True

    def pause(self) -> bool:
        if self._state is not CaptureState.RECORDING:
            return False
        self._refresh_elapsed()
        self._paused_at = self._clock()
        self._state = CaptureState.PAUSED
        return True

    def resume(self) -> bool:
        if self._state is not CaptureState.PAUSED:
            return False
        self._paused_total += self._clock() - self._paused_at
        self._state = CaptureState.RECORDING
        return True

    async def stop(self) -> dict | None:
        if self._state is CaptureState.ACQUIRING:
            self._state = CaptureState.IDLE
            return None
        if self._state not in (CaptureState.RECORDING, CaptureState.PAUSED):
            logger.warning("No recording in progress")
            return None

        keep_tail = self._state is CaptureState.RECORDING
        if self._state is CaptureState.PAUSED:
            self._paused_total += self._clock() - self._paused_at
            self._state = CaptureState.RECORDING
        self._refresh_elapsed()
        self._state = CaptureState.STOPPING

        await self._cancel_tasks()
        if self._lease is not None:
            # The input is closed only after its last read has returned
            tail = await self._lease.release()
            self._lease = None
            if tail and keep_tail:
                self._chunks.append(tail)

        try:
            artifact = await self._finalize()
            return await self._persist(artifact)
        finally:
            self._state = CaptureState.IDLE

    # -- Internals --

    async def _capture_chunks(self, lease):
        frames = max(1, int(lease.sample_rate * self.chunk_interval))
        index = 0
        while self._state in (CaptureState.RECORDING, CaptureState.PAUSED):
            try:
                data = await lease.read(frames)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Audio input failed: %s", e)
                await self.events.emit("recordingError", {"error": DeviceUnavailable(str(e))})
                return
            if self._state is not CaptureState.RECORDING or not data:
                continue
            self._chunks.append(data)
            index += 1
            await self.events.emit("chunkReceived", {"chunk": data, "index": index})

    async def _run_ticker(self):
        while True:
            await asyncio.sleep(self.tick_interval)
            self._refresh_elapsed()

    def _refresh_elapsed(self):
        if self._state is not CaptureState.RECORDING:
            return
        elapsed = self._clock() - self._start_mono - self._paused_total
        if elapsed > self._elapsed:
            self._elapsed = elapsed

    async def _cancel_tasks(self):
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _finalize(self) -> Artifact:
        pcm = b"".join(self._chunks)
        self._chunks = []
        codec = self._codec
        rate, channels = self.constraints.sample_rate, self.constraints.channels
        try:
            data = await asyncio.to_thread(encode_pcm, pcm, codec, rate, channels)
        except Exception as e:
            logger.warning("Encoding to %s failed (%s), falling back to WAV", codec.mime_type, e)
            codec = WAV_CODEC
            data = await asyncio.to_thread(encode_pcm, pcm, codec, rate, channels)
        return Artifact(
            data=data,
            codec=codec,
            contact_name=self._contact_name,
            captured_at=self._started_at,
            duration_secs=int(self._elapsed),
            file_name=make_file_name(self._contact_name, self._started_at, "audio", codec.extension),
        )

    async def _persist(self, artifact: Artifact) -> dict | None:
        record = AudioRecording(
            contact_name=artifact.contact_name,
            captured_at=artifact.captured_at,
            file_name=artifact.file_name,
            audio_data=artifact.data,
            mime_type=artifact.codec.mime_type,
            duration_secs=artifact.duration_secs,
            size_bytes=artifact.size,
        )
        try:
            recording_id = await self.store.put(record)
        except StorageFault as e:
            logger.error("Failed to save recording %s: %s", artifact.file_name, e)
            self.pending_artifact = artifact
            await self.events.emit("recordingError", {"error": e, "artifact": artifact})
            return None

        self.pending_artifact = None
        finished = {
            "id": recording_id,
            "file_name": artifact.file_name,
            "contact_name": artifact.contact_name,
            "duration_secs": artifact.duration_secs,
            "size_bytes": artifact.size,
            "artifact": artifact,
        }
        logger.info("Recording saved: %s (%ds)", artifact.file_name, artifact.duration_secs)
        await self.events.emit("recordingFinished", finished)
        return finished
