import asyncio
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class DeviceUnavailable(RuntimeError):
    """Raised when no audio input/output can be opened, or the input is already held."""


@dataclass(frozen=True)
class CaptureConstraints:
    sample_rate: int = 44100
    channels: int = 1
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True


class PyAudioInput:
    """Blocking PortAudio input stream read from a worker thread."""

    def __init__(self, stream, sample_rate: int, channels: int, device_name: str):
        self._stream = stream
        self.sample_rate = sample_rate
        self.channels = channels
        self.device_name = device_name
        self._pending = None

    async def read(self, frames: int) -> bytes:
        loop = asyncio.get_running_loop()
        pending = self._pending = loop.run_in_executor(None, self._read, frames)
        # A cancelled caller leaves the worker read to finish()
        try:
            data = await asyncio.shield(pending)
        except Exception:
            self._pending = None
            raise
        self._pending = None
        return data

    async def finish(self) -> bytes:
        """Wait for a read still blocked on the worker thread and return its audio."""
        pending, self._pending = self._pending, None
        if pending is None:
            return b""
        try:
            return await pending
        except Exception as e:
            logger.debug("Trailing input read failed: %s", e)
            return b""

    def _read(self, frames: int) -> bytes:
        return self._stream.read(frames, exception_on_overflow=False)

    def close(self):
        try:
            self._stream.stop_stream()
            self._stream.close()
        except Exception as e:
            logger.debug("Closing input stream failed: %s", e)


class PyAudioBackend:
    """PortAudio host access through pyaudiowpatch."""

    def __init__(self, input_device_index: int | None = None, output_device_index: int | None = None):
        self.input_device_index = input_device_index
        self.output_device_index = output_device_index
        self._pa = None

    def _get_pa(self):
        if self._pa is None:
            import pyaudiowpatch as pyaudio

            self._pyaudio = pyaudio
            self._pa = pyaudio.PyAudio()
        return self._pa

    def list_devices(self) -> list[dict]:
        pa = self._get_pa()
        devices = []
        for i in range(pa.get_device_count()):
            info = pa.get_device_info_by_index(i)
            devices.append({
                "index": i,
                "name": info["name"],
                "maxInputChannels": info["maxInputChannels"],
                "maxOutputChannels": info["maxOutputChannels"],
                "defaultSampleRate": info["defaultSampleRate"],
                "isLoopback": info.get("isLoopbackDevice", False),
            })
        return devices

    def _find_mic_device(self) -> dict | None:
        pa = self._get_pa()
        if self.input_device_index is not None:
            return pa.get_device_info_by_index(self.input_device_index)
        try:
            return pa.get_default_input_device_info()
        except OSError:
            pass
        for i in range(pa.get_device_count()):
            info = pa.get_device_info_by_index(i)
            if info["maxInputChannels"] > 0 and not info.get("isLoopbackDevice", False):
                return info
        return None

    def _find_output_device(self) -> dict | None:
        pa = self._get_pa()
        if self.output_device_index is not None:
            return pa.get_device_info_by_index(self.output_device_index)
        try:
            return pa.get_default_output_device_info()
        except OSError:
            return None

    async def open_input(self, constraints: CaptureConstraints) -> PyAudioInput:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._open_input, constraints)

    def _open_input(self, constraints: CaptureConstraints) -> PyAudioInput:
        try:
            pa = self._get_pa()
            mic_info = self._find_mic_device()
        except (ImportError, OSError) as e:
            raise DeviceUnavailable(f"Audio host unavailable: {e}") from e
        if not mic_info:
            raise DeviceUnavailable("No audio input device found")

        # PortAudio exposes no echo cancellation / noise suppression switches
        if constraints.echo_cancellation or constraints.noise_suppression:
            logger.debug("Echo cancellation and noise suppression not offered by host, ignored")

        chunk_size = max(1, constraints.sample_rate // 10)
        try:
            stream = pa.open(
                format=self._pyaudio.paInt16,
                channels=constraints.channels,
                rate=constraints.sample_rate,
                input=True,
                input_device_index=mic_info["index"],
                frames_per_buffer=chunk_size,
            )
        except Exception as e:
            raise DeviceUnavailable(f"Could not open {mic_info['name']}: {e}") from e
        logger.info("Microphone: %s", mic_info["name"])
        return PyAudioInput(stream, constraints.sample_rate, constraints.channels, mic_info["name"])

    async def play(self, pcm: bytes, sample_rate: int, channels: int):
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._play, pcm, sample_rate, channels)

    def _play(self, pcm: bytes, sample_rate: int, channels: int):
        try:
            pa = self._get_pa()
            out_info = self._find_output_device()
        except (ImportError, OSError) as e:
            raise DeviceUnavailable(f"Audio host unavailable: {e}") from e
        if not out_info:
            raise DeviceUnavailable("No audio output device found")

        try:
            stream = pa.open(
                format=self._pyaudio.paInt16,
                channels=channels,
                rate=sample_rate,
                output=True,
                output_device_index=out_info["index"],
            )
        except Exception as e:
            raise DeviceUnavailable(f"Could not open {out_info['name']}: {e}") from e
        try:
            stream.write(pcm)
        finally:
            stream.stop_stream()
            stream.close()

    def terminate(self):
        if self._pa:
            self._pa.terminate()
            self._pa = None


class InputLease:
    """An opened input stream held by one owner; closing it frees the device."""

    def __init__(self, device: "AudioDevice", owner: str, stream):
        self._device = device
        self._stream = stream
        self.owner = owner
        self.sample_rate = stream.sample_rate
        self.channels = stream.channels
        self.closed = False

    async def read(self, frames: int) -> bytes:
        if self.closed:
            raise DeviceUnavailable("Input lease already released")
        return await self._stream.read(frames)

    async def release(self) -> bytes:
        """Close once the stream is idle. Returns audio from a read that was still in flight."""
        if self.closed:
            return b""
        tail = await self._stream.finish()
        self.close()
        return tail

    def close(self):
        if self.closed:
            return
        self.closed = True
        try:
            self._stream.close()
        finally:
            self._device._release(self)


class AudioDevice:
    """The single audio input shared by capture, calls and replay transcription.

    ``acquire`` hands the input to one owner at a time; a second owner gets
    ``DeviceUnavailable`` instead of an interleaved stream.
    """

    def __init__(self, backend):
        self._backend = backend
        self._lease: InputLease | None = None
        self._reserved_by: str | None = None

    @property
    def owner(self) -> str | None:
        if self._lease is not None:
            return self._lease.owner
        return self._reserved_by

    async def acquire(self, owner: str, constraints: CaptureConstraints | None = None) -> InputLease:
        if self.owner is not None:
            raise DeviceUnavailable(f"Audio input is in use by {self.owner}")
        self._reserved_by = owner
        try:
            stream = await self._backend.open_input(constraints or CaptureConstraints())
        except DeviceUnavailable:
            raise
        except Exception as e:
            raise DeviceUnavailable(str(e)) from e
        finally:
            self._reserved_by = None
        self._lease = InputLease(self, owner, stream)
        logger.debug("Audio input acquired by %s", owner)
        return self._lease

    def _release(self, lease: InputLease):
        if self._lease is lease:
            self._lease = None
            logger.debug("Audio input released by %s", lease.owner)

    async def play(self, pcm: bytes, sample_rate: int, channels: int):
        await self._backend.play(pcm, sample_rate, channels)

    def list_devices(self) -> list[dict]:
        return self._backend.list_devices()

    def terminate(self):
        if self._lease is not None:
            self._lease.close()
        terminate = getattr(self._backend, "terminate", None)
        if terminate:
            terminate()
