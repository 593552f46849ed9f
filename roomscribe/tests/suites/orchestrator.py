"""
Session Orchestrator Test Suite

Drives whole sessions against fake transport, fake rooms and scripted audio:
1. Local mic + remote join mid-capture (one restart, partial delivered first)
2. Membership races (leave before audio, late or duplicate subscriptions)
3. Ordered teardown
4. Start failures surface as SessionStartError
"""
from __future__ import annotations

import asyncio

import aiohttp
import numpy as np
from aiohttp import web
from aiohttp.test_utils import TestServer

from roomscribe.services.audio_source_set import LOCAL_IDENTITY, AudioProducer
from roomscribe.services.audio_tracks import MicrophoneAcquisitionError
from roomscribe.services.membership import (
    PARTICIPANT_CONNECTED,
    PARTICIPANT_DISCONNECTED,
    TRACK_SUBSCRIBED,
    TRACK_UNSUBSCRIBED,
    HubRoomConnector,
    ParticipantInfo,
    RoomHub,
    TrackInfo,
)
from roomscribe.services.orchestrator import SessionOrchestrator, SessionPhase, SessionStartError
from roomscribe.services.segment_capture import CaptureState, Segment
from roomscribe.services.session_join import SessionJoinClient, SessionJoinError
from roomscribe.services.transport import TransportState
from roomscribe.tests.base import TestSuite
from roomscribe.tests.fakes import (
    FakeDialer,
    FakeRoom,
    FakeRoomConnector,
    ScriptedTrack,
    eventually,
    fast_config,
    issue_test_credential,
)


def audio(track: ScriptedTrack) -> TrackInfo:
    return TrackInfo(kind="audio", track=track)


def build_session(room: FakeRoom, dialer: FakeDialer, mic=None, interval_ms: int = 50, **kwargs):
    async def acquire():
        if isinstance(mic, BaseException):
            raise mic
        return mic

    return SessionOrchestrator(
        room_name=room.name,
        config=fast_config(interval_ms=interval_ms),
        fetch_credential=kwargs.pop("fetch_credential", issue_test_credential),
        room_connector=kwargs.pop("room_connector", FakeRoomConnector(room)),
        connect_transport=dialer,
        acquire_microphone=acquire if mic is not None else None,
        **kwargs,
    )


class OrchestratorSuite(TestSuite):
    suite_id = "orchestrator"
    name = "Session Orchestrator"
    description = "Membership-driven capture restarts, transcript flow and teardown"

    def _register_tests(self):
        self.add_test("OR-001", "Remote join mid-capture restarts once, partial first", self._test_join_mid_capture)
        self.add_test("OR-002", "Transcript keeps accumulating through membership churn", self._test_transcript_flow)
        self.add_test("OR-003", "Participant leaving before audio arrives", self._test_leave_before_audio)
        self.add_test("OR-004", "Teardown stops capture, closes transport, then releases", self._test_teardown_order)
        self.add_test("OR-005", "Transport open failure aborts start", self._test_transport_failure)
        self.add_test("OR-006", "Microphone failure aborts start before connecting", self._test_microphone_failure)
        self.add_test("OR-007", "Credential failure aborts start", self._test_credential_failure)
        self.add_test("OR-008", "Identity collisions and duplicate audio are rejected", self._test_collisions)
        self.add_test("OR-009", "Transport loss mid-session degrades to drops", self._test_transport_loss)
        self.add_test("OR-010", "Malformed join response fails start cleanly", self._test_malformed_join)
        self.add_test("OR-011", "Unexpected start error still tears down", self._test_unexpected_start_error)
        self.add_test("OR-012", "Segments dropped while connecting are still retained", self._test_retained_while_connecting)

    async def _test_join_mid_capture(self, ctx: dict):
        hub = RoomHub()
        dialer = FakeDialer()
        mic = ScriptedTrack("mic")

        async def credentials(room_name):
            return hub.issue_credential(room_name)

        orchestrator = build_session(
            FakeRoom("standup"),
            dialer,
            mic=mic,
            interval_ms=200,
            fetch_credential=credentials,
            room_connector=HubRoomConnector(hub),
        )
        await orchestrator.start()
        state = orchestrator.state
        capture = state.capture
        delivered: list[Segment] = []

        def record(segment: Segment) -> None:
            delivered.append(segment)
            state.transport.send(segment)

        capture.set_sink(record)
        try:
            assert orchestrator.phase is SessionPhase.RUNNING
            assert capture.state is CaptureState.ACTIVE
            assert capture.composite.identities == {LOCAL_IDENTITY}

            mic.speak()
            await eventually(lambda: len(dialer.connection.sent) >= 1, timeout=3, message="no segment sent")

            mic.speak()
            room = hub.room("standup")
            room.connect_participant("alice")
            room.publish_audio("alice")
            await eventually(
                lambda: capture.session is not None
                and capture.session.session_id == 2
                and not capture.restart_pending,
                message="restart never applied",
            )
            assert capture.restarts_requested == 1
            assert capture.restarts_applied == 1
            assert capture.composite.identities == {LOCAL_IDENTITY, "alice"}

            room.push_audio("alice", np.full(160, 500, dtype=np.int16))
            await eventually(lambda: any(s.session_id == 2 for s in delivered), timeout=3)
        finally:
            await orchestrator.teardown()

        first_new = next(i for i, s in enumerate(delivered) if s.session_id == 2)
        partials = [i for i, s in enumerate(delivered) if s.session_id == 1 and s.partial]
        assert partials, "in-flight segment was discarded at restart"
        assert partials[-1] < first_new
        assert dialer.connection.sent == [s.data for s in delivered]
        return {
            "passed": True,
            "message": f"{len(delivered)} segments, partial at {partials[-1]}, new session at {first_new}",
        }

    async def _test_transcript_flow(self, ctx: dict):
        room = FakeRoom()
        dialer = FakeDialer()
        orchestrator = build_session(room, dialer, mic=ScriptedTrack("mic"))
        await orchestrator.start()
        conn = dialer.connection
        try:
            conn.feed_text("Hel")
            conn.feed_text("lo ")
            await eventually(lambda: orchestrator.transcript == "Hello ")
            room.emit(PARTICIPANT_CONNECTED, "alice")
            room.emit(TRACK_SUBSCRIBED, "alice", audio(ScriptedTrack("alice")))
            room.emit(PARTICIPANT_DISCONNECTED, "alice")
            conn.feed_text("world")
            await eventually(lambda: orchestrator.transcript == "Hello world")
            assert orchestrator.latest.text == "Hello world"
        finally:
            await orchestrator.teardown()
        conn.feed_text(" ignored")
        await asyncio.sleep(0.02)
        assert orchestrator.transcript == "Hello world"

    async def _test_leave_before_audio(self, ctx: dict):
        room = FakeRoom()
        orchestrator = build_session(room, FakeDialer())
        await orchestrator.start()
        state = orchestrator.state
        capture = state.capture
        try:
            assert capture.state is CaptureState.IDLE

            room.emit(PARTICIPANT_CONNECTED, "bob")
            assert state.awaiting_audio == {"bob"}
            room.emit(PARTICIPANT_DISCONNECTED, "bob")
            late = ScriptedTrack("bob")
            room.emit(TRACK_SUBSCRIBED, "bob", audio(late))
            assert late.released
            assert len(state.sources) == 0
            assert capture.restarts_requested == 0

            carol = ScriptedTrack("carol")
            room.emit(PARTICIPANT_CONNECTED, "carol")
            room.emit(TRACK_SUBSCRIBED, "carol", audio(carol))
            await eventually(lambda: capture.state is CaptureState.ACTIVE)
            assert capture.composite.identities == {"carol"}

            room.emit(TRACK_UNSUBSCRIBED, "carol", audio(carol))
            await eventually(lambda: capture.state is CaptureState.IDLE and not capture.restart_pending)
            assert carol.released
            assert state.awaiting_audio == {"carol"}
        finally:
            await orchestrator.teardown()

    async def _test_teardown_order(self, ctx: dict):
        events: list[str] = []
        mic = ScriptedTrack("mic", events)
        alice = ScriptedTrack("alice", events)
        room = FakeRoom(events=events)
        room.present = [ParticipantInfo("alice", [audio(alice)])]
        dialer = FakeDialer(events=events)
        orchestrator = build_session(room, dialer, mic=mic)
        await orchestrator.start()
        capture = orchestrator.state.capture
        capture.add_state_listener(
            lambda session_id, state: events.append("capture_idle") if state is CaptureState.IDLE else None
        )
        assert capture.composite.identities == {LOCAL_IDENTITY, "alice"}
        mic.speak()

        await orchestrator.teardown()
        await orchestrator.teardown()

        order = {name: events.index(name) for name in events}
        assert order["capture_idle"] < order["transport_closed"], events
        assert order["transport_closed"] < order["released:mic"], events
        assert order["transport_closed"] < order["released:alice"], events
        assert max(order["released:mic"], order["released:alice"]) < order["room_disconnected"], events
        assert events.count("capture_idle") == 1
        assert orchestrator.phase is SessionPhase.STOPPED

        sent = len(dialer.connection.sent)
        mic.speak()
        await asyncio.sleep(0.1)
        assert len(dialer.connection.sent) == sent
        status = orchestrator.status()
        assert status["phase"] == "stopped"
        assert status["capture"]["state"] == "idle"
        assert status["transport"]["state"] == "closed"

    async def _test_transport_failure(self, ctx: dict):
        room = FakeRoom()
        mic = ScriptedTrack("mic")
        orchestrator = build_session(room, FakeDialer(fail=ConnectionRefusedError("refused")), mic=mic)
        try:
            await orchestrator.start()
        except SessionStartError:
            pass
        else:
            raise AssertionError("start() succeeded without a transport")
        assert orchestrator.phase is SessionPhase.FAILED
        assert mic.released
        assert room.disconnected
        assert orchestrator.status()["failure"]

    async def _test_microphone_failure(self, ctx: dict):
        room = FakeRoom()
        dialer = FakeDialer()
        orchestrator = build_session(room, dialer, mic=MicrophoneAcquisitionError("no device"))
        try:
            await orchestrator.start()
        except SessionStartError as exc:
            assert "no device" in str(exc)
        else:
            raise AssertionError("start() succeeded without a microphone")
        assert dialer.attempts == 0
        assert room.disconnected
        assert orchestrator.phase is SessionPhase.FAILED

    async def _test_credential_failure(self, ctx: dict):
        room = FakeRoom()
        connector = FakeRoomConnector(room)

        async def refuse(room_name):
            raise SessionJoinError("Failed to fetch token: HTTP 403")

        orchestrator = build_session(room, FakeDialer(), fetch_credential=refuse, room_connector=connector)
        try:
            await orchestrator.start()
        except SessionStartError:
            pass
        else:
            raise AssertionError("start() succeeded without a credential")
        assert connector.credentials == []
        assert not room.disconnected

    async def _test_collisions(self, ctx: dict):
        room = FakeRoom()
        mic = ScriptedTrack("mic")
        orchestrator = build_session(room, FakeDialer(), mic=mic, interval_ms=10_000)
        await orchestrator.start()
        state = orchestrator.state
        try:
            room.emit(PARTICIPANT_CONNECTED, LOCAL_IDENTITY)
            assert LOCAL_IDENTITY not in state.connected
            assert state.sources.get(LOCAL_IDENTITY).track is mic
            impostor = ScriptedTrack("impostor")
            room.emit(TRACK_SUBSCRIBED, LOCAL_IDENTITY, audio(impostor))
            room.emit(TRACK_UNSUBSCRIBED, LOCAL_IDENTITY, audio(impostor))
            room.emit(PARTICIPANT_DISCONNECTED, LOCAL_IDENTITY)
            room.emit(TRACK_UNSUBSCRIBED, "mallory", audio(ScriptedTrack("mallory")))
            room.emit(PARTICIPANT_DISCONNECTED, "mallory")
            assert impostor.released
            assert state.sources.get(LOCAL_IDENTITY).track is mic
            assert not mic.released
            assert state.capture.restarts_requested == 0

            first, second = ScriptedTrack("alice-1"), ScriptedTrack("alice-2")
            room.emit(PARTICIPANT_CONNECTED, "alice")
            room.emit(TRACK_SUBSCRIBED, "alice", audio(first))
            room.emit(TRACK_SUBSCRIBED, "alice", audio(second))
            room.emit(TRACK_SUBSCRIBED, "alice", TrackInfo(kind="video"))
            assert state.sources.get("alice").track is first
            assert second.released and not first.released
        finally:
            await orchestrator.teardown()
        assert first.released and mic.released

    async def _test_transport_loss(self, ctx: dict):
        dialer = FakeDialer()
        mic = ScriptedTrack("mic")
        orchestrator = build_session(FakeRoom(), dialer, mic=mic, interval_ms=20)
        await orchestrator.start()
        transport = orchestrator.state.transport
        try:
            dialer.connection.hang_up()
            await eventually(lambda: transport.state is TransportState.CLOSED)
            mic.speak()
            await eventually(lambda: transport.dropped >= 1)
            assert orchestrator.phase is SessionPhase.RUNNING
            assert orchestrator.state.capture.state is CaptureState.ACTIVE
        finally:
            await orchestrator.teardown()
        assert orchestrator.phase is SessionPhase.STOPPED

    async def _test_malformed_join(self, ctx: dict):
        async def garbled(request: web.Request) -> web.Response:
            return web.Response(text="<html>oops", content_type="application/json")

        app = web.Application()
        app.router.add_post("/join", garbled)
        server = TestServer(app)
        await server.start_server()
        room = FakeRoom()
        connector = FakeRoomConnector(room)
        dialer = FakeDialer()
        try:
            async with aiohttp.ClientSession() as http:
                client = SessionJoinClient(str(server.make_url("/join")), http)
                orchestrator = build_session(
                    room, dialer, fetch_credential=client.fetch_credential, room_connector=connector
                )
                try:
                    await orchestrator.start()
                except SessionStartError as exc:
                    assert "JSON" in str(exc), exc
                else:
                    raise AssertionError("start() succeeded on a garbled join response")
        finally:
            await server.close()
        assert orchestrator.phase is SessionPhase.FAILED
        assert connector.credentials == []
        assert dialer.attempts == 0
        assert orchestrator.state.transport.state is TransportState.CLOSED

    async def _test_unexpected_start_error(self, ctx: dict):
        room = FakeRoom()
        mic = ScriptedTrack("mic")

        class BrokenConnector(FakeRoomConnector):
            async def connect(self, credential):
                room_handle = await super().connect(credential)
                room_handle.present = None
                return room_handle

        orchestrator = build_session(room, FakeDialer(), mic=mic, room_connector=BrokenConnector(room))
        try:
            await orchestrator.start()
        except SessionStartError as exc:
            assert "TypeError" in str(exc), exc
        else:
            raise AssertionError("start() hid a broken room listing")
        assert orchestrator.phase is SessionPhase.FAILED
        assert mic.released
        assert room.disconnected
        assert orchestrator.status()["failure"].startswith("TypeError")

    async def _test_retained_while_connecting(self, ctx: dict):
        orchestrator = build_session(FakeRoom(), FakeDialer(), interval_ms=20)
        state = orchestrator.state
        mic = ScriptedTrack("mic")
        state.sources.add(LOCAL_IDENTITY, AudioProducer(identity=LOCAL_IDENTITY, track=mic))
        assert state.transport.state is TransportState.CONNECTING
        state.capture.start(state.builder.build(state.sources.snapshot()))
        try:
            mic.speak()
            await eventually(lambda: len(state.segments) >= 1, message="nothing captured")
            mic.speak()
        finally:
            await state.capture.shutdown()
            await orchestrator.teardown()

        retained = state.segments.segments()
        assert len(retained) >= 2, len(retained)
        assert retained[-1].partial
        assert all(segment.data[:4] == b"RIFF" for segment in retained)
        assert state.transport.sent == 0
        assert state.transport.dropped == len(retained)
        status = orchestrator.status()["retained"]
        assert status["segments"] == len(retained)
        assert status["bytes"] == sum(len(segment.data) for segment in retained)
        return {"passed": True, "message": f"{len(retained)} segments retained, all dropped by the gate"}
