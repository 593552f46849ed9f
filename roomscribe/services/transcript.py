"""Utilities for folding streamed transcript fragments into a display."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol


logger = logging.getLogger("roomscribe.transcript")


@dataclass(frozen=True)
class TranscriptFragment:
    text: str
    participant: Optional[str] = None


@dataclass(frozen=True)
class TranscriptUpdate:
    full_text: str
    fragment: TranscriptFragment
    index: int


FragmentDecoder = Callable[[str], Optional[TranscriptFragment]]


def decode_plain(raw: str) -> Optional[TranscriptFragment]:
    """Minimal variant: the whole message is transcript text."""
    return TranscriptFragment(text=raw)


def decode_envelope(raw: str) -> Optional[TranscriptFragment]:
    """
    Richer variant: ``{"type": "transcription", "participant": ..., "text": ...}``.

    Unknown message types and malformed payloads are logged and skipped.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Could not parse transcript message: %s", exc)
        return None
    if not isinstance(data, dict):
        logger.warning("Transcript message is not an object: %r", type(data).__name__)
        return None
    if data.get("type") != "transcription":
        logger.info("Received unknown message type: %s", data.get("type"))
        return None
    text = data.get("text")
    if not isinstance(text, str):
        logger.warning("Transcription message without text")
        return None
    participant = data.get("participant")
    return TranscriptFragment(text=text, participant=str(participant) if participant is not None else None)


_DECODERS: dict[str, FragmentDecoder] = {
    "plain": decode_plain,
    "envelope": decode_envelope,
}


def get_decoder(name: str) -> FragmentDecoder:
    try:
        return _DECODERS[(name or "plain").lower()]
    except KeyError:
        raise ValueError(f"Unsupported transcript message format: {name}") from None


class TranscriptSink(Protocol):
    def publish(self, update: TranscriptUpdate) -> None:
        ...


class LatestTextSink:
    """Minimal display: keeps the full current transcript string."""

    def __init__(self) -> None:
        self.text = ""
        self.publish_count = 0

    def publish(self, update: TranscriptUpdate) -> None:
        self.text = update.full_text
        self.publish_count += 1


class ParticipantTranscriptSink:
    """Richer display: one ordered list of text elements per participant."""

    UNATTRIBUTED = "room"

    def __init__(self) -> None:
        self.elements: dict[str, list[str]] = {}

    def publish(self, update: TranscriptUpdate) -> None:
        participant = update.fragment.participant or self.UNATTRIBUTED
        self.elements.setdefault(participant, []).append(update.fragment.text)

    def to_dict(self) -> dict[str, list[str]]:
        return {name: list(texts) for name, texts in self.elements.items()}


class BroadcastSink:
    """Fans updates out to WebSocket viewers; slow viewers miss updates."""

    def __init__(self, max_backlog: int = 32) -> None:
        self._max_backlog = max_backlog
        self._viewers: set["asyncio.Queue[TranscriptUpdate]"] = set()

    def attach(self) -> "asyncio.Queue[TranscriptUpdate]":
        viewer: "asyncio.Queue[TranscriptUpdate]" = asyncio.Queue(maxsize=self._max_backlog)
        self._viewers.add(viewer)
        return viewer

    def detach(self, viewer: "asyncio.Queue[TranscriptUpdate]") -> None:
        self._viewers.discard(viewer)

    @property
    def viewer_count(self) -> int:
        return len(self._viewers)

    def publish(self, update: TranscriptUpdate) -> None:
        for viewer in list(self._viewers):
            try:
                viewer.put_nowait(update)
            except asyncio.QueueFull:
                logger.debug("Transcript viewer backlog full; update %d skipped", update.index)


class TranscriptAccumulator:
    """Append-only transcript buffer fed by inbound fragments in arrival order."""

    def __init__(
        self,
        sinks: Optional[list[TranscriptSink]] = None,
        decoder: FragmentDecoder = decode_plain,
    ) -> None:
        self._sinks: list[TranscriptSink] = list(sinks or [])
        self._decoder = decoder
        self._text = ""
        self._closed = False
        self.fragment_count = 0

    @property
    def text(self) -> str:
        return self._text

    def add_sink(self, sink: TranscriptSink) -> None:
        self._sinks.append(sink)

    def on_fragment(self, raw: str) -> None:
        if self._closed:
            logger.debug("Fragment after transcript teardown dropped")
            return
        try:
            fragment = self._decoder(raw)
        except Exception as exc:
            logger.exception("Fragment decode failed: %s", exc)
            return
        if fragment is None:
            return

        self._text += fragment.text
        self.fragment_count += 1
        update = TranscriptUpdate(full_text=self._text, fragment=fragment, index=self.fragment_count)
        for sink in list(self._sinks):
            try:
                sink.publish(update)
            except Exception as exc:
                logger.exception("Transcript sink failed: %s", exc)

    def close(self) -> None:
        self._closed = True
