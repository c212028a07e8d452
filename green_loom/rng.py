"""Random sources for mission resolution.

Every draw the engine makes goes through a :class:`RandomSource`, so a
deployment replays exactly from its stored seed.
"""

from __future__ import annotations

import random
from typing import Protocol, Sequence, TypeVar

T = TypeVar("T")

SEED_MASK = 0xFFFFFFFF


class RandomSource(Protocol):
    """Randomness port consumed by the resolution pipeline."""

    def random(self) -> float: ...

    def uniform(self, a: float, b: float) -> float: ...

    def choice(self, seq: Sequence[T]) -> T: ...


class DeterministicRNG:
    """Seeded :class:`RandomSource` stored alongside each deployment."""

    def __init__(self, seed: int) -> None:
        self._seed = seed & SEED_MASK
        # nosec B311 - reproducible draws, not cryptography
        self._random = random.Random(self._seed)

    @property
    def seed(self) -> int:
        return self._seed

    def random(self) -> float:
        return self._random.random()

    def uniform(self, a: float, b: float) -> float:
        return self._random.uniform(a, b)

    def choice(self, seq):
        return self._random.choice(seq)

    def randint(self, a: int, b: int) -> int:
        return self._random.randint(a, b)


def entropy_seed() -> int:
    """Return a fresh 32-bit seed from the operating system entropy pool."""

    return random.SystemRandom().getrandbits(32)


__all__ = ["DeterministicRNG", "RandomSource", "SEED_MASK", "entropy_seed"]
