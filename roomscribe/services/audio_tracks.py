"""
AudioTrack abstraction for producers feeding the composite source.

A track is the audio-capable handle behind one producer: the local
microphone or one remote participant's subscribed audio. The capture
pipeline drains tracks without knowing where their samples come from.
"""

from __future__ import annotations

import logging
import queue
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional

import numpy as np


EMPTY_PCM = np.zeros(0, dtype=np.int16)


class MicrophoneAcquisitionError(RuntimeError):
    """The local capture device could not be opened."""


def to_pcm16(payload: bytes | np.ndarray, channels: int = 1) -> np.ndarray:
    """Convert raw int16 bytes (or an array) into a mono int16 array."""
    if isinstance(payload, np.ndarray):
        samples = payload.astype(np.int16, copy=False)
    else:
        samples = np.frombuffer(payload, dtype=np.int16)
    if channels > 1 and samples.size:
        usable = samples.size - (samples.size % channels)
        samples = samples[:usable].reshape(-1, channels).mean(axis=1).astype(np.int16)
    return samples.ravel()


class AudioTrack(ABC):
    """
    Abstract base class for an audio producer's handle.

    Samples are int16 mono at the session sample rate.
    """

    kind = "audio"

    @abstractmethod
    def read(self) -> np.ndarray:
        """
        Drain every sample buffered since the previous read.

        Returns:
            int16 array, empty if nothing arrived.
        """
        pass

    @abstractmethod
    def release(self) -> None:
        """Return the track to its origin. Must be idempotent."""
        pass

    @property
    @abstractmethod
    def released(self) -> bool:
        pass


class BufferedTrack(AudioTrack):
    """Track backed by a thread-safe queue of sample blocks."""

    def __init__(self, label: str, on_release: Optional[Callable[[], None]] = None) -> None:
        self.label = label
        self._blocks: "queue.Queue[np.ndarray]" = queue.Queue()
        self._on_release = on_release
        self._released = threading.Event()
        self._logger = logging.getLogger("roomscribe.tracks")

    def push(self, payload: bytes | np.ndarray, channels: int = 1) -> None:
        if self._released.is_set():
            return
        samples = to_pcm16(payload, channels)
        if samples.size:
            self._blocks.put(samples.copy())

    def read(self) -> np.ndarray:
        blocks = []
        while True:
            try:
                blocks.append(self._blocks.get_nowait())
            except queue.Empty:
                break
        if not blocks:
            return EMPTY_PCM
        return np.concatenate(blocks)

    def release(self) -> None:
        if self._released.is_set():
            return
        self._released.set()
        self._logger.debug("Track released: %s", self.label)
        if self._on_release:
            try:
                self._on_release()
            except Exception as exc:
                self._logger.warning("Track release callback failed for %s: %s", self.label, exc)

    @property
    def released(self) -> bool:
        return self._released.is_set()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.label!r})"


class RemoteAudioTrack(BufferedTrack):
    """
    A remote participant's subscribed audio.

    The membership collaborator pushes PCM into it from whatever thread its
    media arrives on.
    """
