import asyncio
import logging
import time
import uuid
from enum import Enum

import config
from calling.signaling import RegistrationFault, SignalingError
from events import EventEmitter
from recorder.devices import CaptureConstraints, DeviceUnavailable

logger = logging.getLogger(__name__)

DEVICE_OWNER = "call"


class CallState(str, Enum):
    IDLE = "idle"
    REGISTERING = "registering"
    READY = "ready"
    DIALING = "dialing"
    RINGING = "ringing"
    CONNECTED = "connected"


class CallSession:
    """Peer-to-peer voice calls over a signaling transport.

    A call only counts as connected once the remote stream arrives; the
    duration reported by ``callEnded`` is measured from that moment. Calls
    that never connect end without ``callEnded``.

    Events (on ``self.events``):
      peerReady{peer_id}, registrationError{error}, incomingCall{call},
      callStart{remote_peer_id, stream}, callEnded{duration}, callError{error}
    """

    def __init__(self, transport, device, *, peer_id_prefix: str = config.PEER_ID_PREFIX,
                 connect_timeout: float = config.CALL_CONNECT_TIMEOUT_SECS,
                 constraints: CaptureConstraints | None = None,
                 clock=time.monotonic, sleep=asyncio.sleep):
        self.transport = transport
        self.device = device
        self.peer_id_prefix = peer_id_prefix
        self.connect_timeout = connect_timeout
        self.constraints = constraints or CaptureConstraints(
            sample_rate=config.SAMPLE_RATE, channels=config.CHANNELS
        )
        self.events = EventEmitter()
        self._clock = clock
        self._sleep = sleep

        self._state = CallState.IDLE
        self._peer_id: str | None = None
        self._call = None
        self._lease = None
        self._remote_stream = None
        self._connected_at: float | None = None
        self._timer: asyncio.Task | None = None

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def peer_id(self) -> str | None:
        return self._peer_id

    @property
    def active_call(self):
        return self._call

    def get_call_duration(self) -> int:
        if self._state is not CallState.CONNECTED or self._connected_at is None:
            return 0
        return int(self._clock() - self._connected_at)

    def get_state(self) -> dict:
        return {
            "state": self._state.value,
            "peer_id": self._peer_id,
            "remote_peer_id": self._call.peer if self._call is not None else None,
            "duration": self.get_call_duration(),
        }

    # -- Registration --

    async def register(self) -> bool:
        if self._state is not CallState.IDLE:
            return self._state is not CallState.REGISTERING

        self._state = CallState.REGISTERING
        peer_id = f"{self.peer_id_prefix}{uuid.uuid4().hex[:16]}"
        self.transport.on_call = self._on_incoming
        self.transport.on_disconnected = self._on_disconnected
        self.transport.on_error = self._on_transport_error
        try:
            await self.transport.open(peer_id)
        except SignalingError as e:
            error = e if isinstance(e, RegistrationFault) else RegistrationFault(str(e))
            logger.error("Peer registration failed: %s", error)
            self._state = CallState.IDLE
            await self.events.emit("registrationError", {"error": error})
            return False

        self._peer_id = peer_id
        self._state = CallState.READY
        logger.info("Peer ready: %s", peer_id)
        await self.events.emit("peerReady", {"peer_id": peer_id})
        return True

    # -- Calls --

    async def start_call(self, remote_peer_id: str) -> bool:
        if self._state is not CallState.READY:
            logger.warning("Cannot place a call while %s", self._state.value)
            return False

        self._state = CallState.DIALING
        try:
            lease = await self.device.acquire(DEVICE_OWNER, self.constraints)
        except DeviceUnavailable as e:
            logger.error("No local audio for call: %s", e)
            await self._teardown(error=e)
            return False
        if self._state is not CallState.DIALING:
            lease.close()
            return False
        self._lease = lease

        try:
            call = await self.transport.call(remote_peer_id, lease)
        except SignalingError as e:
            logger.error("Could not call %s: %s", remote_peer_id, e)
            await self._teardown(error=e)
            return False
        if self._state is not CallState.DIALING:
            await self._close_quietly(call)
            return False

        self._attach(call)
        self._start_timer(call)
        logger.info("Calling %s", remote_peer_id)
        return True

    async def answer_call(self, call=None) -> bool:
        call = call or self._call
        if self._state is not CallState.RINGING or call is None or call is not self._call:
            logger.warning("No incoming call to answer")
            return False

        try:
            lease = await self.device.acquire(DEVICE_OWNER, self.constraints)
        except DeviceUnavailable as e:
            logger.error("No local audio to answer with: %s", e)
            await self._teardown(error=e)
            return False
        if call is not self._call:
            lease.close()
            return False
        self._lease = lease

        try:
            await call.answer(lease)
        except SignalingError as e:
            logger.error("Could not answer %s: %s", call.peer, e)
            await self._teardown(error=e)
            return False
        self._start_timer(call)
        logger.info("Answered call from %s", call.peer)
        return True

    async def end_call(self) -> int | None:
        """Tear down the current call. Returns the duration when it had connected."""
        return await self._teardown()

    async def destroy(self):
        await self._teardown()
        try:
            await self.transport.close()
        except Exception as e:
            logger.debug("Closing signaling transport failed: %s", e)
        self._peer_id = None
        self._state = CallState.IDLE

    # -- Internals --

    def _attach(self, call):
        self._call = call
        call.on("stream", lambda stream: self._on_stream(call, stream))
        call.on("close", lambda _=None: self._on_call_closed(call))
        call.on("error", lambda error: self._on_call_error(call, error))

    def _start_timer(self, call):
        self._cancel_timer()
        self._timer = asyncio.create_task(self._connect_timeout(call))

    def _cancel_timer(self):
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _connect_timeout(self, call):
        await self._sleep(self.connect_timeout)
        if call is self._call and self._state is not CallState.CONNECTED:
            logger.warning("No remote stream from %s after %.0fs", call.peer, self.connect_timeout)
            await self._teardown(error=TimeoutError(f"Call to {call.peer} timed out"))

    async def _on_stream(self, call, stream):
        if call is not self._call or self._state is CallState.CONNECTED:
            return
        self._cancel_timer()
        self._remote_stream = stream
        self._connected_at = self._clock()
        self._state = CallState.CONNECTED
        logger.info("Call connected with %s", call.peer)
        await self.events.emit("callStart", {"remote_peer_id": call.peer, "stream": stream})

    async def _on_call_closed(self, call):
        if call is self._call:
            logger.info("Call with %s closed by remote", call.peer)
            await self._teardown()

    async def _on_call_error(self, call, error):
        if call is self._call:
            await self._teardown(error=error)

    async def _on_incoming(self, call):
        if self._state is not CallState.READY:
            logger.info("Busy, rejecting call from %s", call.peer)
            await self._close_quietly(call)
            return
        self._state = CallState.RINGING
        self._attach(call)
        logger.info("Incoming call from %s", call.peer)
        await self.events.emit("incomingCall", {"call": call})

    async def _on_disconnected(self):
        logger.warning("Lost connection to signaling server")
        await self._teardown()
        self._state = CallState.IDLE

    async def _on_transport_error(self, error):
        if self._call is not None:
            await self._teardown(error=error)
        else:
            await self.events.emit("callError", {"error": error})

    async def _close_quietly(self, call):
        try:
            await call.close()
        except Exception as e:
            logger.debug("Closing call failed: %s", e)

    async def _teardown(self, error: BaseException | None = None) -> int | None:
        if self._state not in (CallState.DIALING, CallState.RINGING, CallState.CONNECTED):
            return None

        duration = None
        if self._state is CallState.CONNECTED and self._connected_at is not None:
            duration = int(self._clock() - self._connected_at)

        self._cancel_timer()
        call, self._call = self._call, None
        stream, self._remote_stream = self._remote_stream, None
        lease, self._lease = self._lease, None
        self._connected_at = None
        self._state = CallState.READY if self.transport.is_open else CallState.IDLE

        if call is not None:
            await self._close_quietly(call)
        if stream is not None:
            stream.stop()
        if lease is not None:
            lease.close()

        if error is not None:
            await self.events.emit("callError", {"error": error})
        if duration is not None:
            logger.info("Call ended after %ds", duration)
            await self.events.emit("callEnded", {"duration": duration})
        return duration
