"""
roomchat_transport.py
────────────────────────────────────────────────────────────────────────────────
One live WebSocket to the chat server, surfaced as an ordered event stream.

Every socket happening becomes a TransportEvent handed to *emit*:

    open      handshake finished, send() is now accepted
    message   one inbound text frame, in arrival order
    error     socket failure (data = TransportError); never raised to callers
    close     connection is gone; emitted exactly once per opened connection

Events carry the connection id so the consumer can tell a superseded
connection's late events from the current one's.

Public API
──────────
  WebSocketConnection(url, conn_id, emit, open_timeout, ping_interval, ping_timeout)
    .open()           start connecting on the running asyncio loop
    .send(frame)      queue a text frame  (NotConnected unless open)
    .close()          idempotent; queued frames are dropped
    .is_open          bool
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Callable, Optional

import websockets
import websockets.exceptions

from roomchat_errors import NotConnected, TransportError

_log = logging.getLogger("roomchat.transport")

# ── Event kinds ───────────────────────────────────────────────────────────────
OPEN    = "open"
MESSAGE = "message"
ERROR   = "error"
CLOSE   = "close"


@dataclasses.dataclass(frozen=True)
class TransportEvent:
    kind   : str
    conn_id: int
    data   : object = None


class WebSocketConnection:
    """
    A single client socket driven by two loops: one reads frames and emits
    them, the other drains the send queue.  Whichever loop ends first ends
    the connection.

    Parameters
    ----------
    url           : ws:// or wss:// endpoint.
    conn_id       : Id stamped on every emitted event.
    emit          : Callable[[TransportEvent], None]; must not block.
    open_timeout  : Seconds allowed for the opening handshake.
    ping_interval : Keep-alive ping period (None disables pings).
    ping_timeout  : Seconds to wait for a pong before dropping the socket.
    """

    def __init__(
        self,
        url          : str,
        conn_id      : int,
        emit         : Callable[[TransportEvent], None],
        open_timeout : float = 8.0,
        ping_interval: Optional[float] = 25.0,
        ping_timeout : float = 10.0,
    ):
        self.url      = url
        self.conn_id  = conn_id
        self._emit    = emit
        self._options = {
            "open_timeout" : open_timeout,
            "ping_interval": ping_interval,
            "ping_timeout" : ping_timeout,
        }

        self._send_queue    : asyncio.Queue = asyncio.Queue()
        self._task          : Optional[asyncio.Task] = None
        self._open          = False
        self._closing       = False
        self._close_emitted = False

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    @property
    def is_open(self) -> bool:
        return self._open and not self._closing

    def open(self):
        if self._task is not None:
            raise RuntimeError(f"connection {self.conn_id} already opened")
        self._task = asyncio.get_running_loop().create_task(
            self._main(), name=f"ws-conn-{self.conn_id}"
        )

    def send(self, frame: str):
        if not self.is_open:
            raise NotConnected()
        self._send_queue.put_nowait(frame)

    def close(self):
        if self._closing:
            return
        self._closing = True
        if self._task is None:
            return
        if self._open:
            # Wake the send loop; it returns and the socket is closed.
            self._send_queue.put_nowait(None)
        else:
            self._task.cancel()

    # ── asyncio core ───────────────────────────────────────────────────────────

    async def _main(self):
        try:
            async with websockets.connect(self.url, **self._options) as ws:
                if self._closing:
                    return
                self._open = True
                _log.info("[Transport]: connection %d open → %s", self.conn_id, self.url)
                self._emit(TransportEvent(OPEN, self.conn_id))

                recv = asyncio.ensure_future(self._recv_loop(ws))
                send = asyncio.ensure_future(self._send_loop(ws))
                try:
                    done, _ = await asyncio.wait(
                        {recv, send}, return_when=asyncio.FIRST_COMPLETED
                    )
                finally:
                    recv.cancel()
                    send.cancel()
                for task in done:
                    if not task.cancelled() and task.exception() is not None:
                        raise task.exception()
        except Exception as exc:
            _log.warning("[Transport]: connection %d failed — %s", self.conn_id, exc)
            self._emit(TransportEvent(ERROR, self.conn_id, TransportError(str(exc))))
        finally:
            self._open    = False
            self._closing = True
            if not self._close_emitted:
                self._close_emitted = True
                _log.info("[Transport]: connection %d closed", self.conn_id)
                self._emit(TransportEvent(CLOSE, self.conn_id))

    async def _recv_loop(self, ws):
        try:
            async for raw in ws:
                self._emit(TransportEvent(MESSAGE, self.conn_id, raw))
        except websockets.exceptions.ConnectionClosedOK:
            pass

    async def _send_loop(self, ws):
        while True:
            frame = await self._send_queue.get()
            if frame is None:
                break
            try:
                await ws.send(frame)
            except websockets.exceptions.ConnectionClosedOK:
                break
