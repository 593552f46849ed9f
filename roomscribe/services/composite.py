"""Composite audio source derived from an AudioSourceSet snapshot."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

import numpy as np

from roomscribe.services.audio_source_set import AudioProducer
from roomscribe.services.audio_tracks import EMPTY_PCM


INT16_MIN = np.iinfo(np.int16).min
INT16_MAX = np.iinfo(np.int16).max


def mix_pcm(blocks: Iterable[np.ndarray]) -> np.ndarray:
    """Sum int16 blocks sample-wise, zero-padding to the longest and saturating."""
    blocks = [b for b in blocks if b.size]
    if not blocks:
        return EMPTY_PCM
    if len(blocks) == 1:
        return blocks[0].astype(np.int16, copy=False)
    length = max(b.size for b in blocks)
    acc = np.zeros(length, dtype=np.int32)
    for block in blocks:
        acc[: block.size] += block.astype(np.int32)
    return np.clip(acc, INT16_MIN, INT16_MAX).astype(np.int16)


@dataclass(frozen=True, eq=False)
class CompositeSource:
    """The logical sum of a fixed set of producers.

    Equality is membership equality: two composites built from snapshots with
    the same identities are equivalent, whatever the tracks hold.
    """

    producers: tuple[AudioProducer, ...] = ()
    identities: frozenset[str] = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "identities", frozenset(p.identity for p in self.producers))

    @property
    def is_empty(self) -> bool:
        return not self.producers

    def __len__(self) -> int:
        return len(self.producers)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CompositeSource):
            return NotImplemented
        return self.identities == other.identities

    def __hash__(self) -> int:
        return hash(self.identities)

    def read_mixed(self) -> np.ndarray:
        """Drain every live track and mix what they buffered."""
        return mix_pcm(p.track.read() for p in self.producers if not p.track.released)

    def describe(self) -> str:
        return ",".join(p.identity for p in self.producers) or "<empty>"


class CompositeStreamBuilder:
    def __init__(self) -> None:
        self._logger = logging.getLogger("roomscribe.composite")
        self.build_count = 0

    def build(self, snapshot: Iterable[AudioProducer]) -> CompositeSource:
        composite = CompositeSource(tuple(snapshot))
        self.build_count += 1
        self._logger.debug(
            "Composite built #%d: %d sources [%s]",
            self.build_count,
            len(composite),
            composite.describe(),
        )
        return composite
