"""
Session orchestration: membership events in, transcript out.

    participant events -> AudioSourceSet -> CompositeStreamBuilder
        -> SegmentCapture (restart) -> TransportGate -> remote service
        -> TranscriptAccumulator -> display sinks

Everything runs on one event loop. The orchestrator owns the per-session
state; no other component mutates the source set or the capture session.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from roomscribe.config import ScribeConfig
from roomscribe.services.audio_source_set import (
    LOCAL_IDENTITY,
    AudioProducer,
    AudioSourceSet,
    DuplicateProducer,
)
from roomscribe.services.audio_tracks import AudioTrack, MicrophoneAcquisitionError
from roomscribe.services.composite import CompositeStreamBuilder
from roomscribe.services.membership import (
    PARTICIPANT_CONNECTED,
    PARTICIPANT_DISCONNECTED,
    TRACK_SUBSCRIBED,
    TRACK_UNSUBSCRIBED,
    Room,
    RoomConnector,
    TrackInfo,
)
from roomscribe.services.segment_capture import (
    CaptureAlreadyRunning,
    CaptureState,
    NoSource,
    Segment,
    SegmentCapture,
    SegmentLog,
)
from roomscribe.services.session_join import Credential, SessionJoinError
from roomscribe.services.transcript import (
    LatestTextSink,
    ParticipantTranscriptSink,
    TranscriptAccumulator,
    TranscriptSink,
    get_decoder,
)
from roomscribe.services.transport import (
    ConnectionFactory,
    TransportGate,
    TransportOpenError,
    TransportState,
)


class SessionStartError(RuntimeError):
    pass


class SessionPhase(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


CredentialProvider = Callable[[str], Awaitable[Credential]]
MicrophoneProvider = Callable[[], Awaitable[AudioTrack]]


@dataclass
class SessionState:
    session_id: str
    room_name: str
    sources: AudioSourceSet
    builder: CompositeStreamBuilder
    capture: SegmentCapture
    transport: TransportGate
    accumulator: TranscriptAccumulator
    segments: SegmentLog = field(default_factory=SegmentLog)
    room: Optional[Room] = None
    connected: set[str] = field(default_factory=set)
    awaiting_audio: set[str] = field(default_factory=set)
    retired: list[AudioTrack] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)


class SessionOrchestrator:
    def __init__(
        self,
        *,
        room_name: str,
        config: ScribeConfig,
        fetch_credential: CredentialProvider,
        room_connector: RoomConnector,
        connect_transport: ConnectionFactory,
        acquire_microphone: Optional[MicrophoneProvider] = None,
        sinks: Optional[list[TranscriptSink]] = None,
        session_id: Optional[str] = None,
        flush_timeout: float = 2.0,
    ) -> None:
        self._config = config
        self._fetch_credential = fetch_credential
        self._room_connector = room_connector
        self._acquire_microphone = acquire_microphone
        self._flush_timeout = flush_timeout
        self._logger = logging.getLogger("roomscribe.orchestrator")

        self.latest = LatestTextSink()
        self.by_participant = ParticipantTranscriptSink()
        accumulator = TranscriptAccumulator(
            sinks=[self.latest, self.by_participant, *(sinks or [])],
            decoder=get_decoder(config.transport.message_format),
        )
        self._state = SessionState(
            session_id=session_id or str(uuid.uuid4()),
            room_name=room_name,
            sources=AudioSourceSet(),
            builder=CompositeStreamBuilder(),
            capture=SegmentCapture(
                interval_ms=config.capture.segment_interval_ms,
                samplerate=config.capture.samplerate,
            ),
            transport=TransportGate(connect_transport, label=room_name),
            accumulator=accumulator,
        )
        self._phase = SessionPhase.IDLE
        self._failure: Optional[str] = None
        self._stopped = asyncio.Event()

        state = self._state
        state.sources.subscribe(self._on_sources_changed)
        state.capture.set_sink(self._on_segment)
        state.capture.add_state_listener(self._on_capture_state)
        state.transport.on_inbound(state.accumulator.on_fragment)
        state.transport.on_state_change(self._on_transport_state)

    @property
    def session_id(self) -> str:
        return self._state.session_id

    @property
    def room_name(self) -> str:
        return self._state.room_name

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def transcript(self) -> str:
        return self._state.accumulator.text

    async def start(self) -> None:
        if self._phase is not SessionPhase.IDLE:
            raise SessionStartError(f"Session already {self._phase.value}")
        self._phase = SessionPhase.STARTING
        state = self._state
        start_time = time.perf_counter()
        self._logger.info("Session start: id=%s room=%s", state.session_id, state.room_name)
        try:
            credential = await self._fetch_credential(state.room_name)
            self._ensure_starting()
            room = await self._room_connector.connect(credential)
            state.room = room
            self._ensure_starting()
            self._hook_room(room)

            if self._acquire_microphone is not None:
                track = await self._acquire_microphone()
                if self._phase is not SessionPhase.STARTING:
                    track.release()
                    raise SessionStartError("Session torn down during microphone handshake")
                self._add_producer(LOCAL_IDENTITY, track)

            for info in room.participants():
                self._on_participant_connected(info.identity)
                for track_info in info.tracks:
                    self._on_track_subscribed(info.identity, track_info)

            await state.transport.open()
        except (SessionJoinError, MicrophoneAcquisitionError, TransportOpenError, SessionStartError) as exc:
            self._logger.warning(
                "Session start failed in %.2f ms: id=%s: %s",
                (time.perf_counter() - start_time) * 1000,
                state.session_id,
                exc,
            )
            await self._abort_start(str(exc))
            raise SessionStartError(str(exc)) from exc
        except Exception as exc:
            self._logger.exception("Session start crashed: id=%s", state.session_id)
            reason = f"{type(exc).__name__}: {exc}"
            await self._abort_start(reason)
            raise SessionStartError(reason) from exc

        self._phase = SessionPhase.RUNNING
        duration_ms = (time.perf_counter() - start_time) * 1000
        self._logger.info(
            "Session running in %.2f ms: id=%s producers=%s",
            duration_ms,
            state.session_id,
            state.sources.identities(),
        )

    async def _abort_start(self, reason: str) -> None:
        self._failure = reason
        await self.teardown()
        self._phase = SessionPhase.FAILED

    async def teardown(self) -> None:
        """Stop capture, then close the transport, then release producers."""
        if self._phase in (SessionPhase.STOPPING, SessionPhase.STOPPED, SessionPhase.FAILED):
            if self._phase is SessionPhase.STOPPING:
                await self._stopped.wait()
            return
        self._phase = SessionPhase.STOPPING
        state = self._state
        self._logger.info("Session teardown: id=%s", state.session_id)
        try:
            await state.capture.shutdown()

            if state.transport.is_open:
                try:
                    await asyncio.wait_for(state.transport.flush(), timeout=self._flush_timeout)
                except asyncio.TimeoutError:
                    self._logger.warning("Transport flush timed out; closing with segments queued")
            await state.transport.close()

            for producer in state.sources.clear():
                producer.track.release()
            self._release_retired()

            if state.room is not None:
                state.room.disconnect()
            state.accumulator.close()
        finally:
            self._phase = SessionPhase.STOPPED
            self._stopped.set()
            self._logger.info(
                "Session stopped: id=%s transcript_chars=%d",
                state.session_id,
                len(state.accumulator.text),
            )

    def status(self) -> dict:
        state = self._state
        return {
            "session_id": state.session_id,
            "room_name": state.room_name,
            "phase": self._phase.value,
            "failure": self._failure,
            "producers": state.sources.identities(),
            "awaiting_audio": sorted(state.awaiting_audio),
            "capture": {
                "state": state.capture.state.value,
                "session": state.capture.session.session_id if state.capture.session else None,
                "restarts_requested": state.capture.restarts_requested,
                "restarts_applied": state.capture.restarts_applied,
                "segments": state.capture.segments_delivered,
            },
            "transport": {
                "state": state.transport.state.value,
                "sent": state.transport.sent,
                "dropped": state.transport.dropped,
                "received": state.transport.received,
            },
            "retained": {
                "segments": len(state.segments),
                "bytes": state.segments.total_bytes,
                "seconds": round(state.segments.duration, 3),
            },
            "transcript_chars": len(state.accumulator.text),
            "created_at": state.created_at,
        }

    def _ensure_starting(self) -> None:
        if self._phase is not SessionPhase.STARTING:
            raise SessionStartError("Session torn down during start")

    def _hook_room(self, room: Room) -> None:
        room.on(PARTICIPANT_CONNECTED, self._on_participant_connected)
        room.on(PARTICIPANT_DISCONNECTED, self._on_participant_disconnected)
        room.on(TRACK_SUBSCRIBED, self._on_track_subscribed)
        room.on(TRACK_UNSUBSCRIBED, self._on_track_unsubscribed)

    def _accepting_events(self) -> bool:
        return self._phase in (SessionPhase.STARTING, SessionPhase.RUNNING)

    # ── membership events ──────────────────────────────────────────────

    def _on_participant_connected(self, identity: str) -> None:
        if not self._accepting_events():
            return
        if identity == LOCAL_IDENTITY:
            self._logger.error("Participant identity collides with the local producer: %s", identity)
            return
        state = self._state
        state.connected.add(identity)
        if identity not in state.sources:
            state.awaiting_audio.add(identity)
        self._logger.info("Participant connected: %s", identity)

    def _on_participant_disconnected(self, identity: str) -> None:
        state = self._state
        if identity not in state.connected:
            # Never admitted, including remote claims on LOCAL_IDENTITY.
            self._logger.debug("Ignoring disconnect for unknown participant: %s", identity)
            return
        state.connected.discard(identity)
        state.awaiting_audio.discard(identity)
        if not self._accepting_events():
            return
        self._logger.info("Participant disconnected: %s", identity)
        self._remove_producer(identity)

    def _on_track_subscribed(self, identity: str, info: TrackInfo) -> None:
        if info.kind != "audio" or info.track is None:
            return
        state = self._state
        if not self._accepting_events() or identity not in state.connected:
            # The participant left (or was never admitted) before its audio arrived.
            self._logger.info("Ignoring audio for absent participant: %s", identity)
            info.track.release()
            return
        existing = state.sources.get(identity)
        if existing is not None and existing.track is info.track:
            return
        state.awaiting_audio.discard(identity)
        self._add_producer(identity, info.track)

    def _on_track_unsubscribed(self, identity: str, info: TrackInfo) -> None:
        if info.kind != "audio" or not self._accepting_events():
            return
        if identity not in self._state.connected:
            self._logger.debug("Ignoring unsubscribe for unknown participant: %s", identity)
            return
        self._logger.info("Audio unsubscribed: %s", identity)
        if self._remove_producer(identity):
            self._state.awaiting_audio.add(identity)

    # ── source set and capture ─────────────────────────────────────────

    def _add_producer(self, identity: str, track: AudioTrack) -> None:
        try:
            self._state.sources.add(identity, AudioProducer(identity=identity, track=track))
        except DuplicateProducer as exc:
            self._logger.error("%s", exc)
            track.release()

    def _remove_producer(self, identity: str) -> bool:
        state = self._state
        producer = state.sources.remove(identity)
        if producer is None:
            return False
        composite = state.capture.composite
        if composite is not None and identity in composite.identities:
            # Still read by the running capture; released once it stops.
            state.retired.append(producer.track)
        else:
            producer.track.release()
        return True

    def _on_sources_changed(self, snapshot) -> None:
        if not self._accepting_events():
            return
        state = self._state
        if (
            state.transport.state is TransportState.CONNECTING
            and state.capture.state is CaptureState.IDLE
            and not state.capture.restart_pending
        ):
            # First start happens when the transport opens.
            self._logger.debug("Sources changed before transport open: %s", state.sources.identities())
            return
        composite = state.builder.build(snapshot)
        try:
            state.capture.request_restart(composite)
        except RuntimeError as exc:
            self._logger.error("Capture restart request failed: %s", exc)

    def _on_segment(self, segment: Segment) -> None:
        self._state.segments.append(segment)
        self._state.transport.send(segment)

    def _on_capture_state(self, session_id: int, capture_state: CaptureState) -> None:
        if capture_state is CaptureState.IDLE:
            self._release_retired()

    def _release_retired(self) -> None:
        retired, self._state.retired = self._state.retired, []
        for track in retired:
            track.release()

    def _on_transport_state(self, transport_state: TransportState) -> None:
        state = self._state
        if transport_state is TransportState.OPEN:
            if state.capture.state is not CaptureState.IDLE or state.capture.restart_pending:
                return
            if not len(state.sources):
                self._logger.info("Transport open with no producers; capture waits")
                return
            try:
                state.capture.start(state.builder.build(state.sources.snapshot()))
            except (NoSource, CaptureAlreadyRunning) as exc:
                self._logger.error("Initial capture start failed: %s", exc)
        elif transport_state is TransportState.CLOSED and self._phase is SessionPhase.RUNNING:
            self._logger.warning(
                "Transport closed mid-session: id=%s; further segments are dropped",
                state.session_id,
            )
