from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from roomscribe.services.audio_tracks import AudioTrack


LOCAL_IDENTITY = "__local__"


class DuplicateProducer(RuntimeError):
    pass


@dataclass(frozen=True)
class AudioProducer:
    identity: str
    track: AudioTrack

    @property
    def is_local(self) -> bool:
        return self.identity == LOCAL_IDENTITY


ChangeListener = Callable[[tuple[AudioProducer, ...]], None]


class AudioSourceSet:
    """Producers currently feeding the session, keyed by identity.

    Every successful add/remove notifies the change listeners with the new
    snapshot; that notification is the only way composition changes reach
    the capture side.
    """

    def __init__(self) -> None:
        self._producers: dict[str, AudioProducer] = {}
        self._listeners: list[ChangeListener] = []
        self._logger = logging.getLogger("roomscribe.sources")

    def subscribe(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def add(self, identity: str, producer: AudioProducer) -> None:
        if identity in self._producers:
            raise DuplicateProducer(f"Producer already present: {identity}")
        self._producers[identity] = producer
        self._logger.info("Producer added: %s (total=%d)", identity, len(self._producers))
        self._notify()

    def remove(self, identity: str) -> Optional[AudioProducer]:
        producer = self._producers.pop(identity, None)
        if producer is None:
            return None
        self._logger.info("Producer removed: %s (total=%d)", identity, len(self._producers))
        self._notify()
        return producer

    def clear(self) -> list[AudioProducer]:
        removed = list(self._producers.values())
        self._producers.clear()
        if removed:
            self._logger.info("Producer set cleared: %d removed", len(removed))
            self._notify()
        return removed

    def snapshot(self) -> tuple[AudioProducer, ...]:
        return tuple(self._producers.values())

    def identities(self) -> list[str]:
        return list(self._producers)

    def get(self, identity: str) -> Optional[AudioProducer]:
        return self._producers.get(identity)

    def __contains__(self, identity: object) -> bool:
        return identity in self._producers

    def __len__(self) -> int:
        return len(self._producers)

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as exc:
                self._logger.exception("Change listener failed: %s", exc)
