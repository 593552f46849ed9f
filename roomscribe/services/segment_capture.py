"""
Segment capture with a single active capture session.

The capture side is a small state machine:

    idle --start()--> active --stop()--> stopping --> idle

plus one pending-restart slot. Restart requests that arrive while a restart
is already underway overwrite the slot (latest composite wins), so a burst of
membership changes collapses into one stop/start against the newest
composite instead of one capture per intermediate composition.
"""

from __future__ import annotations

import asyncio
import contextlib
import io
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

import numpy as np
import soundfile as sf

from roomscribe.services.composite import CompositeSource


class CaptureState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    STOPPING = "stopping"


class NoSource(RuntimeError):
    pass


class CaptureAlreadyRunning(RuntimeError):
    pass


@dataclass(frozen=True)
class Segment:
    """One timed chunk of encoded audio."""
    session_id: int
    sequence: int
    data: bytes
    sample_count: int
    samplerate: int
    partial: bool = False
    captured_at: float = 0.0

    @property
    def duration(self) -> float:
        return self.sample_count / float(self.samplerate) if self.samplerate else 0.0


@dataclass
class CaptureSession:
    session_id: int
    composite: CompositeSource
    state: CaptureState = CaptureState.ACTIVE
    next_sequence: int = 0
    started_at: float = field(default_factory=time.time)
    ticker: Optional["asyncio.Task[None]"] = None


class SegmentEncoder:
    """Encodes mono int16 PCM into self-contained WAV segments."""

    def __init__(self, samplerate: int, subtype: str = "PCM_16") -> None:
        self.samplerate = samplerate
        self.subtype = subtype

    def encode(self, samples: np.ndarray) -> bytes:
        buffer = io.BytesIO()
        sf.write(buffer, samples, self.samplerate, format="WAV", subtype=self.subtype)
        return buffer.getvalue()


class SegmentLog:
    """Every segment captured in a session, kept in memory until the session is dropped.

    Segments are recorded whether or not the transport accepted them.
    """

    def __init__(self) -> None:
        self._segments: list[Segment] = []
        self._bytes = 0

    def append(self, segment: Segment) -> None:
        self._segments.append(segment)
        self._bytes += len(segment.data)

    def segments(self) -> list[Segment]:
        return list(self._segments)

    @property
    def total_bytes(self) -> int:
        return self._bytes

    @property
    def duration(self) -> float:
        return sum(segment.duration for segment in self._segments)

    def __len__(self) -> int:
        return len(self._segments)


SegmentSink = Callable[[Segment], None]
StateListener = Callable[[int, CaptureState], None]


class SegmentCapture:
    def __init__(
        self,
        sink: Optional[SegmentSink] = None,
        *,
        interval_ms: int = 1000,
        samplerate: int = 16000,
        encoder: Optional[SegmentEncoder] = None,
    ) -> None:
        self._sink = sink
        self._interval = interval_ms / 1000.0
        self._samplerate = samplerate
        self._encoder = encoder or SegmentEncoder(samplerate)
        self._logger = logging.getLogger("roomscribe.capture")

        self._session: Optional[CaptureSession] = None
        self._session_counter = 0
        self._stopped: Optional[asyncio.Future] = None
        self._pending: Optional[CompositeSource] = None
        self._restart_task: Optional["asyncio.Task[None]"] = None
        self._closed = False
        self._state_listeners: list[StateListener] = []

        self.restarts_requested = 0
        self.restarts_applied = 0
        self.segments_delivered = 0

    def set_sink(self, sink: SegmentSink) -> None:
        self._sink = sink

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    @property
    def state(self) -> CaptureState:
        return self._session.state if self._session else CaptureState.IDLE

    @property
    def session(self) -> Optional[CaptureSession]:
        return self._session

    @property
    def composite(self) -> Optional[CompositeSource]:
        return self._session.composite if self._session else None

    @property
    def restart_pending(self) -> bool:
        return self._pending is not None or (
            self._restart_task is not None and not self._restart_task.done()
        )

    def start(self, composite: CompositeSource) -> CaptureSession:
        if self._session is not None:
            raise CaptureAlreadyRunning(
                f"Capture session {self._session.session_id} is {self._session.state.value}"
            )
        if composite.is_empty:
            raise NoSource("Composite source has no producers")

        self._session_counter += 1
        session = CaptureSession(session_id=self._session_counter, composite=composite)
        self._session = session
        session.ticker = asyncio.get_running_loop().create_task(
            self._run_boundaries(session),
            name=f"capture-boundaries-{session.session_id}",
        )
        self._logger.info(
            "Capture started: session=%d sources=[%s] interval=%.3fs",
            session.session_id,
            composite.describe(),
            self._interval,
        )
        self._emit(session.session_id, CaptureState.ACTIVE)
        return session

    async def stop(self) -> None:
        """Stop the active session; once this returns it delivers nothing more."""
        session = self._session
        if session is None:
            return
        if session.state is CaptureState.STOPPING and self._stopped is not None:
            await asyncio.shield(self._stopped)
            return

        stopped = asyncio.get_running_loop().create_future()
        self._stopped = stopped
        session.state = CaptureState.STOPPING
        self._emit(session.session_id, CaptureState.STOPPING)
        try:
            ticker = session.ticker
            if ticker is not None and not ticker.done():
                ticker.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await ticker
            # The in-flight segment may hold real speech: flush it rather than discard.
            self._close_segment(session, partial=True)
        finally:
            session.state = CaptureState.IDLE
            self._session = None
            self._stopped = None
            stopped.set_result(None)
            self._logger.info(
                "Capture stopped: session=%d segments=%d",
                session.session_id,
                session.next_sequence,
            )
            self._emit(session.session_id, CaptureState.IDLE)

    def request_restart(self, composite: CompositeSource) -> Optional["asyncio.Task[None]"]:
        """Queue a restart against ``composite``, coalescing with any pending one."""
        if self._closed:
            self._logger.debug("Restart ignored after shutdown: [%s]", composite.describe())
            return None
        self.restarts_requested += 1
        if self._pending is not None:
            self._logger.debug("Pending restart superseded by [%s]", composite.describe())
        self._pending = composite
        if self._restart_task is None or self._restart_task.done():
            self._restart_task = asyncio.get_running_loop().create_task(
                self._drain_restarts(),
                name="capture-restart",
            )
        return self._restart_task

    async def restart(self, composite: CompositeSource) -> None:
        task = self.request_restart(composite)
        if task is not None:
            await asyncio.shield(task)

    async def shutdown(self) -> None:
        """Drop pending restarts, let an in-progress one settle, then stop."""
        self._closed = True
        self._pending = None
        task = self._restart_task
        if task is not None and not task.done():
            await asyncio.shield(task)
        await self.stop()

    async def _drain_restarts(self) -> None:
        while self._pending is not None:
            target = self._pending
            self._pending = None
            await self.stop()
            if self._pending is not None:
                continue
            if self._closed:
                break
            if target.is_empty:
                self._logger.info("Restart with no sources: capture stays idle")
                continue
            try:
                self.start(target)
                self.restarts_applied += 1
            except (NoSource, CaptureAlreadyRunning) as exc:
                self._logger.error("Restart could not start capture: %s", exc)

    async def _run_boundaries(self, session: CaptureSession) -> None:
        loop = asyncio.get_running_loop()
        next_boundary = loop.time() + self._interval
        while session.state is CaptureState.ACTIVE:
            await asyncio.sleep(max(0.0, next_boundary - loop.time()))
            next_boundary += self._interval
            if session.state is not CaptureState.ACTIVE:
                break
            self._close_segment(session, partial=False)

    def _close_segment(self, session: CaptureSession, partial: bool) -> None:
        try:
            samples = session.composite.read_mixed()
            if not samples.size:
                if not partial:
                    self._logger.debug("Empty segment boundary: session=%d", session.session_id)
                return
            data = self._encoder.encode(samples)
        except Exception as exc:
            self._logger.exception("Segment encode failed: session=%d: %s", session.session_id, exc)
            return

        segment = Segment(
            session_id=session.session_id,
            sequence=session.next_sequence,
            data=data,
            sample_count=int(samples.size),
            samplerate=self._samplerate,
            partial=partial,
            captured_at=time.time(),
        )
        session.next_sequence += 1
        self.segments_delivered += 1
        if self._sink is None:
            self._logger.warning("No segment sink registered; segment %d lost", segment.sequence)
            return
        try:
            self._sink(segment)
        except Exception as exc:
            self._logger.exception("Segment sink failed: %s", exc)

    def _emit(self, session_id: int, state: CaptureState) -> None:
        for listener in list(self._state_listeners):
            try:
                listener(session_id, state)
            except Exception as exc:
                self._logger.warning("Capture state listener failed: %s", exc)
