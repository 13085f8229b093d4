import asyncio
import logging

import config
from db.database import StorageFault
from db.models import AudioRecording, RecordKind, Transcription
from events import EventEmitter
from processing.speech import TranscriptionFault, supports_direct_transcription
from recorder.codecs import decode_artifact
from recorder.devices import CaptureConstraints, DeviceUnavailable

logger = logging.getLogger(__name__)

DEVICE_OWNER = "transcription"

NO_SPEECH_PLACEHOLDER = (
    "[No speech detected. Try playing the audio near your microphone "
    "or ensure microphone permission is granted.]"
)
UNAVAILABLE_PLACEHOLDER = "[Speech recognition not available. Install faster-whisper to enable it.]"
SEPARATOR = "─" * 33


def format_duration(seconds: int) -> str:
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}:{secs:02d}"


def format_transcription(recording: AudioRecording, body: str) -> str:
    date = recording.captured_at.astimezone().strftime("%Y-%m-%d %H:%M:%S")
    return (
        "TRANSCRIPTION\n"
        f"Contact: {recording.contact_name}\n"
        f"Date: {date}\n"
        f"Duration: {format_duration(recording.duration_secs)}\n"
        f"File: {recording.file_name}\n"
        f"{SEPARATOR}\n\n"
        f"{body}"
    )


class PostHocTranscriber:
    """Produces a stored Transcription for an already persisted recording.

    Events (on ``self.events``): transcriptionStart, transcriptionProgress,
    transcriptionComplete, transcriptionError.
    """

    def __init__(self, store, capability, device, *, language: str = config.SPEECH_LANGUAGE,
                 settle_delay: float = config.SETTLE_DELAY_SECS, sleep=asyncio.sleep,
                 constraints: CaptureConstraints | None = None,
                 chunk_interval: float = config.CHUNK_INTERVAL_SECS):
        self.store = store
        self.capability = capability
        self.device = device
        self.language = language
        self.settle_delay = settle_delay
        self.constraints = constraints or CaptureConstraints(
            sample_rate=config.SAMPLE_RATE, channels=config.CHANNELS
        )
        self.chunk_interval = chunk_interval
        self.events = EventEmitter()
        self._sleep = sleep

    async def transcribe_audio_file(self, audio_id: int) -> Transcription:
        try:
            recording = await self.store.get(RecordKind.AUDIO, audio_id)
            await self.events.emit("transcriptionStart", {
                "audio_id": audio_id,
                "file_name": recording.file_name,
            })

            if recording.live_transcript and recording.live_transcript.strip():
                text = format_transcription(recording, recording.live_transcript.strip())
            else:
                text = await self._transcribe_stored(recording)

            transcription = await self.store.put_transcription(audio_id, recording.contact_name, text)
        except (StorageFault, TranscriptionFault, DeviceUnavailable) as e:
            logger.error("Transcription of recording %s failed: %s", audio_id, e)
            await self.events.emit("transcriptionError", {"error": e, "audio_id": audio_id})
            raise

        logger.info("Transcription saved: %s", transcription.file_name)
        await self.events.emit("transcriptionComplete", {
            "id": transcription.id,
            "file_name": transcription.file_name,
            "text": text,
            "audio_id": audio_id,
        })
        return transcription

    async def _transcribe_stored(self, recording: AudioRecording) -> str:
        if self.capability is None:
            return format_transcription(recording, UNAVAILABLE_PLACEHOLDER)

        if supports_direct_transcription(self.capability):
            try:
                text = await self.capability.transcribe_artifact(recording.audio_data, recording.mime_type)
            except Exception as e:
                raise TranscriptionFault(f"Could not transcribe {recording.file_name}: {e}") from e
        else:
            text = await self._listen_while_replaying(recording)

        return format_transcription(recording, text.strip() or NO_SPEECH_PLACEHOLDER)

    async def _listen_while_replaying(self, recording: AudioRecording) -> str:
        """Play the artifact on the output device while the recognizer listens on the input."""
        try:
            pcm, rate, channels = await asyncio.to_thread(
                decode_artifact, recording.audio_data, recording.mime_type
            )
        except Exception as e:
            raise TranscriptionFault(f"Could not decode {recording.file_name}: {e}") from e

        lease = await self.device.acquire(DEVICE_OWNER, self.constraints)
        parts: list[str] = []
        listening = True
        recognizer = self.capability.create_recognizer(
            language=self.language,
            sample_rate=lease.sample_rate,
            channels=lease.channels,
            continuous=True,
            interim_results=True,
        )

        async def on_result(results):
            parts.extend(result.text for result in results if result.is_final)
            await self.events.emit("transcriptionProgress", {"final": " ".join(parts), "interim": ""})

        async def on_error(code):
            logger.warning("Recognition error during playback: %s", code)

        restarts: set[asyncio.Task] = set()

        async def on_end():
            if listening:
                task = asyncio.create_task(self._restart_quietly(recognizer))
                restarts.add(task)
                task.add_done_callback(restarts.discard)

        recognizer.on_result = on_result
        recognizer.on_error = on_error
        recognizer.on_end = on_end

        async def pump_microphone():
            frames = max(1, int(lease.sample_rate * self.chunk_interval))
            while True:
                recognizer.accept_audio(await lease.read(frames))

        pump = None
        stopped = False
        try:
            await recognizer.start()
            pump = asyncio.create_task(pump_microphone())
            logger.info("Playing %s for transcription, microphone is listening", recording.file_name)
            await self.device.play(pcm, rate, channels)
            # Catch trailing speech before stopping
            await self._sleep(self.settle_delay)
            listening = False
            self._raise_if_pump_failed(pump)
            await self._stop_pump(pump)
            tail = await lease.release()
            if tail:
                recognizer.accept_audio(tail)
            await recognizer.stop()
            stopped = True
        except (DeviceUnavailable, TranscriptionFault):
            raise
        except Exception as e:
            raise TranscriptionFault(f"Playback transcription failed: {e}") from e
        finally:
            listening = False
            if pump is not None:
                await self._stop_pump(pump)
            if not stopped:
                try:
                    await recognizer.stop()
                except Exception as e:
                    logger.debug("Stopping recognizer failed: %s", e)
            await lease.release()
        return " ".join(parts)

    @staticmethod
    def _raise_if_pump_failed(pump: asyncio.Task):
        if not pump.done() or pump.cancelled() or pump.exception() is None:
            return
        error = pump.exception()
        if isinstance(error, DeviceUnavailable):
            raise error
        raise TranscriptionFault(f"Microphone failed during playback: {error}") from error

    @staticmethod
    async def _stop_pump(pump: asyncio.Task):
        if pump.done():
            if not pump.cancelled() and pump.exception() is not None:
                logger.debug("Microphone pump ended with: %s", pump.exception())
            return
        pump.cancel()
        try:
            await pump
        except asyncio.CancelledError:
            pass

    async def _restart_quietly(self, recognizer):
        try:
            await recognizer.start()
        except Exception as e:
            logger.debug("Recognizer restart during playback failed: %s", e)
