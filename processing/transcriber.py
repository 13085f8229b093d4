import asyncio
import importlib.util
import io
import logging

import config
from processing.speech import ABORTED, NO_SPEECH, CapabilityUnsupported, SpeechResult
from recorder.codecs import pcm_to_wav

logger = logging.getLogger(__name__)

_model_cache = {}

# Consecutive empty windows before the recognizer reports no-speech and ends
NO_SPEECH_WINDOWS = 3


def whisper_language(language: str) -> str:
    """Whisper takes bare ISO codes: en-US -> en."""
    return language.split("-")[0].lower()


class WhisperCapability:
    """Speech-to-text backed by a local faster-whisper model."""

    def __init__(self, model_size: str = config.WHISPER_MODEL, language: str = config.SPEECH_LANGUAGE,
                 window_secs: float = config.LIVE_WINDOW_SECS):
        self.model_size = model_size
        self.language = language
        self.window_secs = window_secs
        self._model = None

    def _load_model(self):
        if self.model_size in _model_cache:
            self._model = _model_cache[self.model_size]
            return

        try:
            from faster_whisper import WhisperModel
        except ImportError as e:
            raise CapabilityUnsupported("faster-whisper is not installed") from e

        # Detect best device
        device = "cpu"
        compute_type = "int8"
        try:
            import torch
            if torch.cuda.is_available():
                device = "cuda"
                compute_type = "float16"
        except ImportError:
            pass

        logger.info(
            "Loading Whisper model '%s' on %s (compute_type=%s)...",
            self.model_size, device, compute_type,
        )
        self._model = WhisperModel(
            self.model_size,
            device=device,
            compute_type=compute_type,
        )
        _model_cache[self.model_size] = self._model
        logger.info("Whisper model loaded")

    @property
    def is_loaded(self) -> bool:
        return self._model is not None or self.model_size in _model_cache

    def transcribe_file(self, audio, language: str | None = None) -> str:
        if self._model is None:
            self._load_model()

        segments, info = self._model.transcribe(
            audio,
            language=whisper_language(language or self.language),
            beam_size=5,
            vad_filter=True,
        )
        text = " ".join(segment.text.strip() for segment in segments if segment.text.strip())
        logger.debug("Transcribed %.1fs of audio (%s)", info.duration, info.language)
        return text

    async def transcribe_artifact(self, data: bytes, mime_type: str) -> str:
        logger.info("Transcribing stored %s artifact (%d bytes)", mime_type, len(data))
        return await asyncio.to_thread(self.transcribe_file, io.BytesIO(data))

    def create_recognizer(self, *, language: str, sample_rate: int, channels: int,
                          continuous: bool = True, interim_results: bool = True) -> "WhisperRecognizer":
        return WhisperRecognizer(self, language=language, sample_rate=sample_rate, channels=channels,
                                 window_secs=self.window_secs, continuous=continuous)


class WhisperRecognizer:
    """Streaming recognizer: buffers fed PCM and transcribes it window by window.

    Every window yields final results only. After ``NO_SPEECH_WINDOWS`` silent
    windows in a row it reports ``no-speech`` and ends, like a browser
    recognizer does after a stretch of silence.
    """

    def __init__(self, capability: WhisperCapability, *, language: str, sample_rate: int,
                 channels: int, window_secs: float, continuous: bool = True):
        self.capability = capability
        self.language = language
        self.sample_rate = sample_rate
        self.channels = channels
        self.window_bytes = max(2, int(window_secs * sample_rate) * channels * 2)
        self.continuous = continuous
        self.on_result = None
        self.on_error = None
        self.on_end = None
        self._queue: asyncio.Queue | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        if self.running:
            raise RuntimeError("Recognizer already started")
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._run())

    def accept_audio(self, pcm: bytes):
        if self.running:
            self._queue.put_nowait(pcm)

    async def stop(self):
        if not self.running:
            return
        self._queue.put_nowait(None)
        await self._task

    async def _run(self):
        buffer = bytearray()
        silent_windows = 0
        try:
            while True:
                pcm = await self._queue.get()
                if pcm is None:
                    if buffer:
                        await self._transcribe_window(bytes(buffer))
                    return
                buffer.extend(pcm)
                if len(buffer) < self.window_bytes:
                    continue
                window = bytes(buffer)
                buffer.clear()
                if await self._transcribe_window(window):
                    silent_windows = 0
                    if not self.continuous:
                        return
                else:
                    silent_windows += 1
                    if silent_windows >= NO_SPEECH_WINDOWS:
                        if self.on_error:
                            await self.on_error(NO_SPEECH)
                        return
        except Exception as e:
            logger.warning("Whisper recognizer aborted: %s", e)
            if self.on_error:
                await self.on_error(ABORTED)
        finally:
            if self.on_end:
                await self.on_end()

    async def _transcribe_window(self, pcm: bytes) -> bool:
        wav = pcm_to_wav(pcm, self.sample_rate, self.channels)
        text = await asyncio.to_thread(self.capability.transcribe_file, io.BytesIO(wav), self.language)
        if not text:
            return False
        if self.on_result:
            await self.on_result([SpeechResult(text=text, is_final=True)])
        return True


def load_capability(model_size: str = config.WHISPER_MODEL,
                    language: str = config.SPEECH_LANGUAGE) -> WhisperCapability | None:
    """Return the Whisper capability, or None when faster-whisper is not installed."""
    if importlib.util.find_spec("faster_whisper") is None:
        logger.warning("faster-whisper not installed, speech-to-text unavailable")
        return None
    return WhisperCapability(model_size=model_size, language=language)
