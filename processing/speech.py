"""Contract between the transcription strategies and a speech-to-text engine.

A capability hands out recognizers. A recognizer is fed 16-bit PCM through
``accept_audio`` once started and reports back through three coroutine
callbacks, mirroring a continuous recognition service:

* ``on_result(results)``: a batch of new ``SpeechResult`` items, interim or final
* ``on_error(code)``: a fault code such as ``"no-speech"`` or ``"aborted"``
* ``on_end()``: the recognizer stopped, whether asked to or on its own

Capabilities that can read a stored artifact directly also implement
``transcribe_artifact(data, mime_type)``.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol, Sequence

NO_SPEECH = "no-speech"
ABORTED = "aborted"
RECOVERABLE_ERRORS = frozenset({NO_SPEECH, ABORTED})


class CapabilityUnsupported(RuntimeError):
    """Raised when the host offers no speech-to-text engine."""


class TranscriptionFault(RuntimeError):
    """Raised when the listening or playback pipeline fails."""


@dataclass(frozen=True)
class SpeechResult:
    text: str
    is_final: bool


ResultCallback = Callable[[Sequence[SpeechResult]], Awaitable[None]]
ErrorCallback = Callable[[str], Awaitable[None]]
EndCallback = Callable[[], Awaitable[None]]


class Recognizer(Protocol):
    on_result: ResultCallback | None
    on_error: ErrorCallback | None
    on_end: EndCallback | None

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def accept_audio(self, pcm: bytes) -> None: ...


class SpeechCapability(Protocol):
    def create_recognizer(self, *, language: str, sample_rate: int, channels: int,
                          continuous: bool = True, interim_results: bool = True) -> Recognizer: ...


def supports_direct_transcription(capability) -> bool:
    return callable(getattr(capability, "transcribe_artifact", None))
