"""PeerJS-compatible rendezvous client over websockets.

Registration opens ``<url>?key=<key>&id=<peer id>&token=<token>`` and waits for
the server's ``OPEN``. Calls are negotiated with OFFER / ANSWER / CANDIDATE
messages relayed by the server; the payload carries a JSON media description
(codec, rate, channels, ICE servers) instead of a full SDP body.
"""

import asyncio
import json
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from urllib.parse import urlencode

import websockets

import config
from events import EventEmitter

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL_SECS = 5.0


class SignalingError(RuntimeError):
    """Raised when the signaling connection fails or is not open."""


class RegistrationFault(SignalingError):
    """Raised when the peer identity could not be registered."""


@dataclass
class RemoteStream:
    peer: str
    description: dict = field(default_factory=dict)
    stopped: bool = False

    def stop(self):
        self.stopped = True


def describe_local_stream(stream, ice_servers=None) -> dict:
    return {
        "codec": "opus",
        "sample_rate": getattr(stream, "sample_rate", config.SAMPLE_RATE),
        "channels": getattr(stream, "channels", config.CHANNELS),
        "ice_servers": ice_servers if ice_servers is not None else config.ICE_SERVERS,
    }


class PeerCall:
    """One negotiated media call. Emits ``stream``, ``close`` and ``error``."""

    def __init__(self, transport: "PeerTransport", peer: str, connection_id: str,
                 inbound: bool, remote_description: dict | None = None):
        self.transport = transport
        self.peer = peer
        self.connection_id = connection_id
        self.inbound = inbound
        self.remote_description = remote_description or {}
        self.events = EventEmitter()
        self.answered = False
        self.remote_stream: RemoteStream | None = None
        self.closed = False

    def on(self, event: str, handler):
        return self.events.on(event, handler)

    async def answer(self, local_stream):
        if not self.inbound or self.answered:
            raise SignalingError("Call cannot be answered")
        self.answered = True
        await self.transport.send("ANSWER", self.peer, {
            "type": "media",
            "connectionId": self.connection_id,
            "sdp": describe_local_stream(local_stream, self.transport.ice_servers),
        })

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self.transport.forget(self)
        try:
            await self.transport.send("LEAVE", self.peer, {"connectionId": self.connection_id})
        finally:
            await self.events.emit("close")

    async def _deliver_stream(self, description: dict):
        if self.remote_stream is not None or self.closed:
            return
        self.remote_stream = RemoteStream(peer=self.peer, description=description)
        await self.events.emit("stream", self.remote_stream)

    async def _remote_closed(self):
        if self.closed:
            return
        self.closed = True
        self.transport.forget(self)
        await self.events.emit("close")


class PeerTransport:
    """Signaling connection shared by every call of one registered peer.

    Callbacks: ``on_call(PeerCall)`` for inbound offers, ``on_disconnected()``
    when the server connection drops, ``on_error(exc)`` for server errors.
    """

    def __init__(self, url: str = config.SIGNALING_URL, *, key: str = config.SIGNALING_KEY,
                 ice_servers=None, open_timeout: float = 10.0):
        self.url = url
        self.key = key
        self.ice_servers = ice_servers if ice_servers is not None else config.ICE_SERVERS
        self.open_timeout = open_timeout
        self.peer_id: str | None = None
        self.on_call = None
        self.on_disconnected = None
        self.on_error = None
        self._ws = None
        self._reader: asyncio.Task | None = None
        self._heartbeat: asyncio.Task | None = None
        self._calls: dict[str, PeerCall] = {}
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    async def open(self, peer_id: str) -> str:
        query = urlencode({"key": self.key, "id": peer_id, "token": secrets.token_hex(8)})
        try:
            ws = await asyncio.wait_for(websockets.connect(f"{self.url}?{query}"), self.open_timeout)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise RegistrationFault(f"Could not reach signaling server: {e}") from e

        try:
            message = json.loads(await asyncio.wait_for(ws.recv(), self.open_timeout))
        except (asyncio.TimeoutError, websockets.exceptions.ConnectionClosed, ValueError) as e:
            await ws.close()
            raise RegistrationFault(f"No OPEN from signaling server: {e}") from e
        if message.get("type") != "OPEN":
            await ws.close()
            detail = (message.get("payload") or {}).get("msg", message.get("type"))
            raise RegistrationFault(f"Registration refused: {detail}")

        self._ws = ws
        self._closing = False
        self.peer_id = peer_id
        self._reader = asyncio.create_task(self._read_loop())
        self._heartbeat = asyncio.create_task(self._send_heartbeats())
        logger.info("Registered with signaling server as %s", peer_id)
        return peer_id

    async def send(self, msg_type: str, dst: str | None = None, payload: dict | None = None):
        if self._ws is None:
            raise SignalingError("Signaling connection is not open")
        message = {"type": msg_type}
        if dst is not None:
            message["dst"] = dst
        if payload is not None:
            message["payload"] = payload
        try:
            await self._ws.send(json.dumps(message))
        except websockets.exceptions.ConnectionClosed as e:
            raise SignalingError(f"Signaling connection closed: {e}") from e

    async def call(self, remote_peer_id: str, local_stream) -> PeerCall:
        connection_id = f"mc_{uuid.uuid4().hex[:12]}"
        call = PeerCall(self, remote_peer_id, connection_id, inbound=False)
        self._calls[connection_id] = call
        try:
            await self.send("OFFER", remote_peer_id, {
                "type": "media",
                "connectionId": connection_id,
                "sdp": describe_local_stream(local_stream, self.ice_servers),
            })
        except SignalingError:
            self._calls.pop(connection_id, None)
            raise
        return call

    def forget(self, call: PeerCall):
        self._calls.pop(call.connection_id, None)

    async def close(self):
        self._closing = True
        for call in list(self._calls.values()):
            await call._remote_closed()
        for task in (self._heartbeat, self._reader):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
        self._heartbeat = self._reader = None
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    async def _send_heartbeats(self):
        while True:
            await asyncio.sleep(HEARTBEAT_INTERVAL_SECS)
            try:
                await self.send("HEARTBEAT")
            except SignalingError:
                return

    async def _read_loop(self):
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("Ignoring malformed signaling message")
                    continue
                if not isinstance(message, dict):
                    logger.warning("Ignoring signaling message that is not an object")
                    continue
                try:
                    await self._dispatch(message)
                except Exception:
                    logger.exception("Failed to handle %s signaling message", message.get("type"))
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning("Signaling connection closed: %s", e)
        if not self._closing:
            self._ws = None
            for call in list(self._calls.values()):
                await call._remote_closed()
            if self.on_disconnected:
                await self.on_disconnected()

    async def _dispatch(self, message: dict):
        msg_type = message.get("type")
        payload = message.get("payload")
        if not isinstance(payload, dict):
            payload = {}
        src = message.get("src")
        connection_id = payload.get("connectionId")
        call = self._calls.get(connection_id) if connection_id else None

        if msg_type == "HEARTBEAT":
            return
        if msg_type == "OFFER" and payload.get("type") == "media":
            if not connection_id or not src:
                logger.warning("Ignoring call offer without a connection id or source")
                return
            call = PeerCall(self, src, connection_id, inbound=True,
                            remote_description=payload.get("sdp"))
            self._calls[call.connection_id] = call
            logger.info("Incoming call from %s", src)
            if self.on_call:
                await self.on_call(call)
        elif msg_type == "ANSWER" and call is not None and not call.inbound:
            await call._deliver_stream(payload.get("sdp") or {})
            await self.send("CANDIDATE", call.peer, {"connectionId": call.connection_id, "type": "media"})
        elif msg_type == "CANDIDATE" and call is not None and call.inbound and call.answered:
            await call._deliver_stream(call.remote_description)
        elif msg_type in ("LEAVE", "EXPIRE"):
            if call is None:
                call = next((c for c in self._calls.values() if c.peer == src), None)
            if call is not None:
                await call._remote_closed()
        elif msg_type in ("ERROR", "ID-TAKEN", "INVALID-KEY"):
            error = SignalingError(payload.get("msg", msg_type))
            logger.error("Signaling error: %s", error)
            if call is not None:
                await call.events.emit("error", error)
            elif self.on_error:
                await self.on_error(error)
