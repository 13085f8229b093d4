import asyncio
import logging
from typing import Sequence

import config
from events import EventEmitter
from processing.retry import RetryPolicy
from processing.speech import RECOVERABLE_ERRORS, SpeechResult

logger = logging.getLogger(__name__)


class LiveTranscription:
    """Runs a recognizer alongside a capture session and accumulates final text.

    The recognizer is expected to stop by itself after silence or transient
    faults. While the session is active every such stop is followed by a
    restart under ``retry_policy``; only ``stop()`` ends the session.

    Emits ``update{final, interim}`` on ``self.events`` for every result batch.
    """

    def __init__(self, capability, *, language: str = config.SPEECH_LANGUAGE,
                 sample_rate: int = config.SAMPLE_RATE, channels: int = config.CHANNELS,
                 retry_policy: RetryPolicy | None = None):
        self.capability = capability
        self.language = language
        self.sample_rate = sample_rate
        self.channels = channels
        self.retry_policy = retry_policy or RetryPolicy()
        self.events = EventEmitter()
        self.is_active = False
        self.restart_attempts = 0
        self._recognizer = None
        self._restart_task: asyncio.Task | None = None
        self._transcript = ""

    @property
    def supported(self) -> bool:
        return self.capability is not None

    @property
    def transcript(self) -> str:
        return self._transcript

    def clear(self):
        self._transcript = ""

    async def start(self) -> bool:
        if self.capability is None:
            logger.warning("Speech recognition not supported on this host")
            return False
        if self.is_active:
            return False

        recognizer = self.capability.create_recognizer(
            language=self.language,
            sample_rate=self.sample_rate,
            channels=self.channels,
            continuous=True,
            interim_results=True,
        )
        recognizer.on_result = self._handle_result
        recognizer.on_error = self._handle_error
        recognizer.on_end = self._handle_end
        self._recognizer = recognizer
        self._transcript = ""
        self.restart_attempts = 0
        self.is_active = True
        try:
            await recognizer.start()
        except Exception as e:
            logger.error("Failed to start live transcription: %s", e)
            self.is_active = False
            self._recognizer = None
            return False
        logger.info("Live transcription started")
        return True

    def feed(self, pcm: bytes):
        if self.is_active and self._recognizer is not None:
            self._recognizer.accept_audio(pcm)

    async def stop(self) -> str:
        self.is_active = False
        if self._restart_task is not None:
            self._restart_task.cancel()
            self._restart_task = None
        recognizer, self._recognizer = self._recognizer, None
        if recognizer is not None:
            try:
                await recognizer.stop()
            except Exception as e:
                logger.debug("Stopping recognizer failed: %s", e)
        transcript = self._transcript.strip()
        logger.info("Live transcription stopped. Transcript length: %d", len(transcript))
        return transcript

    # -- Recognizer callbacks --

    async def _handle_result(self, results: Sequence[SpeechResult]):
        interim = ""
        for result in results:
            if result.is_final:
                self._transcript += result.text + " "
            else:
                interim += result.text
        await self.events.emit("update", {"final": self._transcript, "interim": interim})

    async def _handle_error(self, code: str):
        logger.warning("Speech recognition error: %s", code)
        if code in RECOVERABLE_ERRORS:
            self._schedule_restart(after_fault=True)

    async def _handle_end(self):
        self._schedule_restart(after_fault=False)

    def _schedule_restart(self, after_fault: bool):
        if not self.is_active:
            return
        if self._restart_task is not None and not self._restart_task.done():
            return
        self._restart_task = asyncio.create_task(self._restart(after_fault))

    async def _restart(self, after_fault: bool):
        await self.retry_policy.wait(after_fault)
        if not self.is_active or self._recognizer is None:
            return
        attempt = self.restart_attempts + 1
        if not self.retry_policy.allows(attempt):
            logger.warning("Giving up on speech recognition after %d restarts", self.restart_attempts)
            return
        self.restart_attempts = attempt
        try:
            await self._recognizer.start()
        except Exception as e:
            logger.debug("Recognizer restart %d failed: %s", attempt, e)
            self._restart_task = None
            self._schedule_restart(after_fault=True)
        else:
            logger.debug("Recognizer restarted (attempt %d)", attempt)
