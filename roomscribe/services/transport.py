"""
Duplex transport to the remote transcription service.

Binary audio segments go out as individual WebSocket messages; text
messages coming back are transcript fragments. Segments submitted while the
transport is not open are dropped, not queued: stale audio from before the
connection (or after it closed) has no value to a live transcript.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol

import aiohttp

from roomscribe.services.segment_capture import Segment


class TransportState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class TransportOpenError(RuntimeError):
    pass


class DuplexConnection(Protocol):
    """The subset of aiohttp's ClientWebSocketResponse the gate relies on."""

    async def send_bytes(self, data: bytes) -> None:
        ...

    def __aiter__(self) -> AsyncIterator[aiohttp.WSMessage]:
        ...

    async def close(self) -> Any:
        ...


ConnectionFactory = Callable[[], Awaitable[DuplexConnection]]
InboundHandler = Callable[[str], None]
StateListener = Callable[[TransportState], None]


def websocket_factory(
    url: str,
    http: aiohttp.ClientSession,
    heartbeat: Optional[float] = 30.0,
) -> ConnectionFactory:
    async def connect() -> DuplexConnection:
        return await http.ws_connect(url, heartbeat=heartbeat)

    return connect


class TransportGate:
    def __init__(self, connect: ConnectionFactory, *, label: str = "transcribe") -> None:
        self._connect = connect
        self._label = label
        self._state = TransportState.CONNECTING
        self._conn: Optional[DuplexConnection] = None
        self._outbound: "asyncio.Queue[Segment]" = asyncio.Queue()
        self._reader_task: Optional["asyncio.Task[None]"] = None
        self._writer_task: Optional["asyncio.Task[None]"] = None
        self._close_task: Optional["asyncio.Task[None]"] = None
        self._inbound_handlers: list[InboundHandler] = []
        self._state_listeners: list[StateListener] = []
        self._closing = False
        self._logger = logging.getLogger("roomscribe.transport")

        self.sent = 0
        self.dropped = 0
        self.received = 0

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is TransportState.OPEN

    @property
    def close_task(self) -> Optional["asyncio.Task[None]"]:
        """Close scheduled by the reader or writer after losing the connection."""
        return self._close_task

    def on_inbound(self, handler: InboundHandler) -> None:
        self._inbound_handlers.append(handler)

    def on_state_change(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    async def open(self) -> None:
        if self._state is not TransportState.CONNECTING:
            raise TransportOpenError(f"Transport cannot open from state {self._state.value}")
        self._logger.info("Transport connecting: %s", self._label)
        try:
            conn = await self._connect()
        except Exception as exc:
            self._logger.warning("Transport open failed: %s: %s", self._label, exc)
            self._set_state(TransportState.CLOSED)
            raise TransportOpenError(f"Could not open transport: {exc}") from exc

        if self._state is TransportState.CLOSED:
            # close() won the race against the handshake.
            await self._close_connection(conn)
            raise TransportOpenError("Transport closed during handshake")

        self._conn = conn
        loop = asyncio.get_running_loop()
        self._writer_task = loop.create_task(self._writer_loop(conn), name=f"transport-writer-{self._label}")
        self._reader_task = loop.create_task(self._reader_loop(conn), name=f"transport-reader-{self._label}")
        self._set_state(TransportState.OPEN)
        self._logger.info("Transport open: %s", self._label)

    def send(self, segment: Segment) -> None:
        if self._state is not TransportState.OPEN:
            self.dropped += 1
            self._logger.debug(
                "Transport %s not open; dropped segment session=%d seq=%d",
                self._state.value,
                segment.session_id,
                segment.sequence,
            )
            return
        self._outbound.put_nowait(segment)

    async def flush(self) -> None:
        """Wait until every segment accepted so far has been written (or dropped)."""
        await self._outbound.join()

    async def close(self) -> None:
        if self._closing:
            task = self._close_task
            if task is not None and task is not asyncio.current_task():
                await asyncio.shield(task)
            return
        self._closing = True
        self._set_state(TransportState.CLOSED)
        current = asyncio.current_task()
        for task in (self._writer_task, self._reader_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._discard_outbound()
        conn, self._conn = self._conn, None
        if conn is not None:
            await self._close_connection(conn)
        self._logger.info(
            "Transport closed: %s sent=%d dropped=%d received=%d",
            self._label,
            self.sent,
            self.dropped,
            self.received,
        )

    async def _writer_loop(self, conn: DuplexConnection) -> None:
        while True:
            segment = await self._outbound.get()
            try:
                if self._state is not TransportState.OPEN:
                    self.dropped += 1
                    continue
                try:
                    await conn.send_bytes(segment.data)
                except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
                    self.dropped += 1
                    self._logger.warning("Transport write failed: %s", exc)
                    self._close_soon()
                    return
                self.sent += 1
            finally:
                self._outbound.task_done()

    async def _reader_loop(self, conn: DuplexConnection) -> None:
        try:
            async for msg in conn:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    self._logger.debug("Ignoring binary inbound message (%d bytes)", len(msg.data))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    self._logger.warning("Transport error frame: %s", msg.data)
                    break
                else:
                    break
        except (aiohttp.ClientError, ConnectionError) as exc:
            self._logger.warning("Transport read failed: %s", exc)
        if self._state is not TransportState.CLOSED:
            self._logger.info("Transport closed by remote: %s", self._label)
            self._close_soon()

    def _close_soon(self) -> None:
        """Close from inside a reader or writer task, which close() would cancel."""
        if self._closing or self._close_task is not None:
            return
        self._close_task = asyncio.get_running_loop().create_task(
            self.close(), name=f"transport-close-{self._label}"
        )

    def _dispatch(self, text: str) -> None:
        if self._state is not TransportState.OPEN:
            return
        self.received += 1
        for handler in list(self._inbound_handlers):
            try:
                handler(text)
            except Exception as exc:
                self._logger.exception("Inbound handler failed: %s", exc)

    def _discard_outbound(self) -> None:
        while True:
            try:
                self._outbound.get_nowait()
            except asyncio.QueueEmpty:
                break
            self.dropped += 1
            self._outbound.task_done()

    async def _close_connection(self, conn: DuplexConnection) -> None:
        try:
            await conn.close()
        except Exception as exc:
            self._logger.debug("Transport connection close error: %s", exc)

    def _set_state(self, state: TransportState) -> None:
        if self._state is state:
            return
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as exc:
                self._logger.warning("Transport state listener failed: %s", exc)
