"""Deterministic random utilities.

Every "random" decision in the simulation is derived from a plain string seed.
The seed is hashed with 32-bit FNV-1a and the digest seeds a fresh
:class:`random.Random`, so replaying the same inputs always yields the same
outcome while seeds that differ only in a trailing counter still draw
independently.
"""

from __future__ import annotations

import random
from typing import Sequence, TypeVar

T = TypeVar("T")

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193
_UINT32 = 0xFFFFFFFF


def fnv1a_32(value: str) -> int:
    """Return the 32-bit FNV-1a hash of ``value`` encoded as UTF-8."""

    digest = FNV_OFFSET_BASIS
    for byte in value.encode("utf-8"):
        digest ^= byte
        digest = (digest * FNV_PRIME) & _UINT32
    return digest


def compose_seed(player_id: str, cycle: int, purpose: str, *extra: object) -> str:
    """Build the canonical ``player:cycle:purpose[:extra...]`` seed string."""

    parts = [player_id, str(cycle), purpose]
    parts.extend(str(item) for item in extra)
    return ":".join(parts)


def _generator(seed: str) -> random.Random:
    # nosec B311 - deterministic pseudo-RNG acceptable for game mechanics
    return random.Random(fnv1a_32(seed))


def hash_unit(seed: str) -> float:
    """Map ``seed`` onto [0, 1)."""

    return _generator(seed).random()


def hash_signed(seed: str) -> float:
    """Map ``seed`` onto [-1, 1)."""

    return hash_unit(seed) * 2.0 - 1.0


def hash_range(seed: str, low: float, high: float) -> float:
    return low + hash_unit(seed) * (high - low)


def hash_int(seed: str, low: int, high: int) -> int:
    """Inclusive integer in [low, high] chosen by ``seed``."""

    if high < low:
        raise ValueError("high must be >= low")
    return _generator(seed).randint(low, high)


def hash_chance(seed: str, probability: float) -> bool:
    return hash_unit(seed) < probability


class DeterministicRNG:
    """Wraps :mod:`random` with deterministic replay support."""

    def __init__(self, seed: int) -> None:
        self._seed = seed & _UINT32
        # nosec B311 - deterministic pseudo-RNG acceptable for game mechanics
        self._random = random.Random(self._seed)

    @classmethod
    def from_string(cls, seed: str) -> "DeterministicRNG":
        return cls(fnv1a_32(seed))

    def sample(self, population: Sequence[T], k: int) -> list[T]:
        return self._random.sample(population, k)


__all__ = [
    "DeterministicRNG",
    "compose_seed",
    "fnv1a_32",
    "hash_chance",
    "hash_int",
    "hash_range",
    "hash_signed",
    "hash_unit",
]
