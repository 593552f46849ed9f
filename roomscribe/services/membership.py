"""
Room membership: who is in a room and which audio they publish.

Real signaling lives outside this project. ``RoomHub`` is the in-process
provider used by the API: remote participants attach over a WebSocket and
stream raw PCM, and each capture session joins the room through its own
``RoomHandle`` so that every session subscribes to (and releases) its own
copy of each participant's audio track.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

import numpy as np

from roomscribe.services.audio_tracks import AudioTrack, RemoteAudioTrack
from roomscribe.services.session_join import Credential, SessionJoinError


PARTICIPANT_CONNECTED = "participant_connected"
PARTICIPANT_DISCONNECTED = "participant_disconnected"
TRACK_SUBSCRIBED = "track_subscribed"
TRACK_UNSUBSCRIBED = "track_unsubscribed"

ROOM_EVENTS = (
    PARTICIPANT_CONNECTED,
    PARTICIPANT_DISCONNECTED,
    TRACK_SUBSCRIBED,
    TRACK_UNSUBSCRIBED,
)


@dataclass(frozen=True)
class TrackInfo:
    kind: str
    track: Optional[AudioTrack] = None


@dataclass
class ParticipantInfo:
    identity: str
    tracks: list[TrackInfo] = field(default_factory=list)


class Room(Protocol):
    name: str
    local_identity: str

    def participants(self) -> list[ParticipantInfo]:
        ...

    def on(self, event: str, handler: Callable) -> None:
        ...

    def disconnect(self) -> None:
        ...


class RoomConnector(Protocol):
    async def connect(self, credential: Credential) -> Room:
        ...


class RoomHandle:
    """One session's view of a LocalRoom."""

    def __init__(self, room: "LocalRoom", local_identity: str) -> None:
        self.name = room.name
        self.local_identity = local_identity
        self._room: Optional[LocalRoom] = room
        self._handlers: dict[str, list[Callable]] = {event: [] for event in ROOM_EVENTS}
        self._tracks: dict[str, RemoteAudioTrack] = {}
        self._logger = logging.getLogger("roomscribe.membership")

    @property
    def connected(self) -> bool:
        return self._room is not None

    def on(self, event: str, handler: Callable) -> None:
        if event not in self._handlers:
            raise ValueError(f"Unknown room event: {event}")
        self._handlers[event].append(handler)

    def participants(self) -> list[ParticipantInfo]:
        if self._room is None:
            return []
        infos = []
        for identity in self._room.participant_identities():
            info = ParticipantInfo(identity=identity)
            if self._room.is_publishing(identity):
                info.tracks.append(TrackInfo(kind="audio", track=self._open_track(identity)))
            infos.append(info)
        return infos

    def disconnect(self) -> None:
        room, self._room = self._room, None
        if room is None:
            return
        room.detach(self)
        for track in list(self._tracks.values()):
            track.release()
        self._tracks.clear()
        for handlers in self._handlers.values():
            handlers.clear()
        self._logger.info("Left room: %s", self.name)

    def _open_track(self, identity: str) -> RemoteAudioTrack:
        existing = self._tracks.get(identity)
        if existing is not None and not existing.released:
            return existing
        track = RemoteAudioTrack(
            label=f"{self.name}/{identity}",
            on_release=lambda: self._forget_track(identity, track),
        )
        self._tracks[identity] = track
        return track

    def _forget_track(self, identity: str, track: RemoteAudioTrack) -> None:
        if self._tracks.get(identity) is track:
            del self._tracks[identity]

    def _participant_connected(self, identity: str) -> None:
        self._emit(PARTICIPANT_CONNECTED, identity)

    def _participant_disconnected(self, identity: str) -> None:
        self._emit(PARTICIPANT_DISCONNECTED, identity)

    def _audio_published(self, identity: str) -> None:
        self._emit(TRACK_SUBSCRIBED, identity, TrackInfo(kind="audio", track=self._open_track(identity)))

    def _audio_unpublished(self, identity: str) -> None:
        track = self._tracks.get(identity)
        self._emit(TRACK_UNSUBSCRIBED, identity, TrackInfo(kind="audio", track=track))

    def _push(self, identity: str, payload: bytes | np.ndarray, channels: int) -> None:
        track = self._tracks.get(identity)
        if track is not None:
            track.push(payload, channels)

    def _emit(self, event: str, *args) -> None:
        for handler in list(self._handlers[event]):
            try:
                handler(*args)
            except Exception as exc:
                self._logger.exception("Room handler for %s failed: %s", event, exc)


class LocalRoom:
    def __init__(self, name: str) -> None:
        self.name = name
        self._participants: dict[str, bool] = {}
        self._handles: list[RoomHandle] = []
        self._logger = logging.getLogger("roomscribe.membership")

    def join(self, local_identity: str) -> RoomHandle:
        handle = RoomHandle(self, local_identity)
        self._handles.append(handle)
        self._logger.info("Joined room: %s as %s", self.name, local_identity)
        return handle

    def detach(self, handle: RoomHandle) -> None:
        if handle in self._handles:
            self._handles.remove(handle)

    def participant_identities(self) -> list[str]:
        return list(self._participants)

    def is_publishing(self, identity: str) -> bool:
        return self._participants.get(identity, False)

    def connect_participant(self, identity: str) -> None:
        if identity in self._participants:
            return
        self._participants[identity] = False
        self._logger.info("Participant connected: %s/%s", self.name, identity)
        for handle in list(self._handles):
            handle._participant_connected(identity)

    def publish_audio(self, identity: str) -> None:
        if self._participants.get(identity, True):
            return
        self._participants[identity] = True
        for handle in list(self._handles):
            handle._audio_published(identity)

    def unpublish_audio(self, identity: str) -> None:
        if not self._participants.get(identity, False):
            return
        self._participants[identity] = False
        for handle in list(self._handles):
            handle._audio_unpublished(identity)

    def disconnect_participant(self, identity: str) -> None:
        if identity not in self._participants:
            return
        self.unpublish_audio(identity)
        del self._participants[identity]
        self._logger.info("Participant disconnected: %s/%s", self.name, identity)
        for handle in list(self._handles):
            handle._participant_disconnected(identity)

    def push_audio(self, identity: str, payload: bytes | np.ndarray, channels: int = 1) -> None:
        for handle in list(self._handles):
            handle._push(identity, payload, channels)

    @property
    def is_idle(self) -> bool:
        return not self._participants and not self._handles


class RoomHub:
    """Named in-process rooms plus a development credential issuer."""

    def __init__(self) -> None:
        self._rooms: dict[str, LocalRoom] = {}
        self._tokens: dict[str, str] = {}
        self._logger = logging.getLogger("roomscribe.membership")

    def room(self, name: str) -> LocalRoom:
        room = self._rooms.get(name)
        if room is None:
            room = LocalRoom(name)
            self._rooms[name] = room
        return room

    def rooms(self) -> list[str]:
        return list(self._rooms)

    def discard_if_idle(self, name: str) -> None:
        room = self._rooms.get(name)
        if room is not None and room.is_idle:
            del self._rooms[name]

    def issue_credential(self, room_name: str) -> Credential:
        token = secrets.token_urlsafe(24)
        self._tokens[token] = room_name
        self._logger.debug("Credential issued for room=%s", room_name)
        return Credential(room_name=room_name, token=token)

    def validate(self, credential: Credential) -> bool:
        return self._tokens.get(credential.token) == credential.room_name


class HubRoomConnector:
    def __init__(self, hub: RoomHub, local_identity: str = "scribe") -> None:
        self._hub = hub
        self._local_identity = local_identity

    async def connect(self, credential: Credential) -> Room:
        if not self._hub.validate(credential):
            raise SessionJoinError(f"Credential rejected for room {credential.room_name}")
        return self._hub.room(credential.room_name).join(self._local_identity)
