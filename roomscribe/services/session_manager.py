from __future__ import annotations

import asyncio
import logging
from typing import Optional

import aiohttp

from roomscribe.config import ScribeConfig
from roomscribe.services.microphone import acquire_microphone
from roomscribe.services.membership import HubRoomConnector, RoomHub
from roomscribe.services.orchestrator import SessionOrchestrator, SessionPhase
from roomscribe.services.session_join import Credential, SessionJoinClient
from roomscribe.services.transcript import BroadcastSink
from roomscribe.services.transport import websocket_factory


class SessionManager:
    """Owns the live sessions and the shared HTTP client they use."""

    def __init__(self, config: ScribeConfig, hub: RoomHub) -> None:
        self._config = config
        self._hub = hub
        self._sessions: dict[str, SessionOrchestrator] = {}
        self._broadcasts: dict[str, BroadcastSink] = {}
        self._http: Optional[aiohttp.ClientSession] = None
        self._logger = logging.getLogger("roomscribe.sessions")

    @property
    def hub(self) -> RoomHub:
        return self._hub

    def _client(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, connect=self._config.transport.connect_timeout)
            )
        return self._http

    async def _local_credential(self, room_name: str) -> Credential:
        return self._hub.issue_credential(room_name)

    def _build(self, room_name: str) -> SessionOrchestrator:
        config = self._config
        http = self._client()
        if config.join.url:
            fetch_credential = SessionJoinClient(config.join.url, http, config.join.timeout).fetch_credential
        else:
            fetch_credential = self._local_credential

        mic_provider = None
        if config.microphone.enabled:
            async def mic_provider():
                return await acquire_microphone(config.microphone, config.capture.samplerate)

        broadcast = BroadcastSink()
        orchestrator = SessionOrchestrator(
            room_name=room_name,
            config=config,
            fetch_credential=fetch_credential,
            room_connector=HubRoomConnector(self._hub),
            connect_transport=websocket_factory(config.transport.url, http, config.transport.heartbeat),
            acquire_microphone=mic_provider,
            sinks=[broadcast],
        )
        self._broadcasts[orchestrator.session_id] = broadcast
        return orchestrator

    async def start_session(self, room_name: str) -> SessionOrchestrator:
        orchestrator = self._build(room_name)
        self._sessions[orchestrator.session_id] = orchestrator
        try:
            await orchestrator.start()
        except Exception:
            self._sessions.pop(orchestrator.session_id, None)
            self._broadcasts.pop(orchestrator.session_id, None)
            self._hub.discard_if_idle(room_name)
            raise
        return orchestrator

    def get(self, session_id: str) -> SessionOrchestrator:
        return self._sessions[session_id]

    def broadcast(self, session_id: str) -> BroadcastSink:
        return self._broadcasts[session_id]

    def list_sessions(self) -> list[dict]:
        return [orchestrator.status() for orchestrator in self._sessions.values()]

    async def stop_session(self, session_id: str) -> dict:
        orchestrator = self._sessions.pop(session_id)
        await orchestrator.teardown()
        self._broadcasts.pop(session_id, None)
        self._hub.discard_if_idle(orchestrator.room_name)
        return orchestrator.status()

    async def shutdown(self) -> None:
        session_ids = list(self._sessions)
        if session_ids:
            self._logger.info("Stopping %d session(s) on shutdown", len(session_ids))
        results = await asyncio.gather(
            *(self.stop_session(session_id) for session_id in session_ids),
            return_exceptions=True,
        )
        for session_id, result in zip(session_ids, results):
            if isinstance(result, Exception):
                self._logger.error("Session %s teardown failed: %s", session_id, result)
        if self._http is not None and not self._http.closed:
            await self._http.close()

    def active_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.phase is SessionPhase.RUNNING)
