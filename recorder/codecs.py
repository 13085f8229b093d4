import io
import logging
import wave
from dataclasses import dataclass

from pydub import AudioSegment
from pydub.utils import which

import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Codec:
    mime_type: str
    extension: str
    export_format: str
    export_codec: str | None = None


# Best first
CODEC_PREFERENCE = (
    Codec("audio/webm;codecs=opus", "webm", "webm", "libopus"),
    Codec("audio/webm", "webm", "webm"),
    Codec("audio/ogg;codecs=opus", "ogg", "ogg", "libopus"),
    Codec("audio/mp4", "m4a", "ipod", "aac"),
    Codec("audio/mpeg", "mp3", "mp3"),
    Codec("audio/wav", "wav", "wav"),
)
DEFAULT_CODEC = CODEC_PREFERENCE[1]
WAV_CODEC = CODEC_PREFERENCE[-1]


def codec_for_mime(mime_type: str) -> Codec:
    for codec in CODEC_PREFERENCE:
        if codec.mime_type == mime_type:
            return codec
    return DEFAULT_CODEC


def is_supported(codec: Codec) -> bool:
    """WAV is written in-process; everything else needs an ffmpeg/avconv encoder."""
    if codec.export_format == "wav":
        return True
    return which(AudioSegment.converter) is not None


def select_codec(preference=CODEC_PREFERENCE, supported=is_supported) -> Codec:
    for codec in preference:
        if supported(codec):
            return codec
    logger.warning("No preferred codec advertised as supported, trying %s", DEFAULT_CODEC.mime_type)
    return DEFAULT_CODEC


def encode_pcm(pcm: bytes, codec: Codec, sample_rate: int = config.SAMPLE_RATE,
               channels: int = config.CHANNELS) -> bytes:
    """Encode 16-bit little endian PCM into a finished artifact using pydub/ffmpeg."""
    if codec.export_format == "wav":
        return pcm_to_wav(pcm, sample_rate, channels)
    segment = AudioSegment(data=pcm, sample_width=2, frame_rate=sample_rate, channels=channels)
    out = io.BytesIO()
    segment.export(out, format=codec.export_format, codec=codec.export_codec,
                   bitrate=config.AUDIO_BITRATE)
    return out.getvalue()


def pcm_to_wav(pcm: bytes, sample_rate: int, channels: int) -> bytes:
    out = io.BytesIO()
    with wave.open(out, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return out.getvalue()


def decode_artifact(data: bytes, mime_type: str) -> tuple[bytes, int, int]:
    """Decode a stored artifact back to (pcm, sample_rate, channels).
    WAV artifacts are read with the wave module, other formats go through ffmpeg.
    """
    codec = codec_for_mime(mime_type)
    if codec.export_format == "wav":
        with wave.open(io.BytesIO(data), "rb") as wf:
            return wf.readframes(wf.getnframes()), wf.getframerate(), wf.getnchannels()
    segment = AudioSegment.from_file(io.BytesIO(data), format=codec.export_format)
    segment = segment.set_sample_width(2)
    return segment.raw_data, segment.frame_rate, segment.channels
