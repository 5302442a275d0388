"""Deterministic 32-bit pseudo-random source (mulberry32).

The generator core is the pure function :func:`mulberry32`, which maps a state
to ``(value, next_state)``. :class:`SeededRandom` wraps it for callers that
want a mutating convenience object; saving and restoring its state replays
the exact same sequence.
"""

from __future__ import annotations

import math
from typing import MutableSequence, Optional, Sequence, TypeVar

T = TypeVar("T")

_MASK32 = 0xFFFFFFFF
_INCREMENT = 0x6D2B79F5
_TWO_POW_32 = 4294967296.0
# Smallest value fed to log() by the Box-Muller transform.
_GAUSS_FLOOR = 1e-12


def _imul(a: int, b: int) -> int:
    return (a * b) & _MASK32


def mulberry32(state: int) -> tuple[float, int]:
    """Return ``(value in [0, 1), next_state)`` for a 32-bit state."""
    state = (state + _INCREMENT) & _MASK32
    t = _imul(state ^ (state >> 15), state | 1)
    t = ((t + _imul(t ^ (t >> 7), t | 61)) & _MASK32) ^ t
    return ((t ^ (t >> 14)) & _MASK32) / _TWO_POW_32, state


def seed_from_string(text: str) -> int:
    """Java-style 31-multiplier string hash folded to a non-negative 32-bit seed."""
    h = 0
    for ch in text:
        h = (h * 31 + ord(ch)) & _MASK32
    if h & 0x80000000:
        h -= 1 << 32
    return abs(h)


class SeededRandom:
    def __init__(self, seed: int) -> None:
        self.seed = seed
        self._state = seed & _MASK32

    def next(self) -> float:
        value, self._state = mulberry32(self._state)
        return value

    def integer(self, lo: int, hi: int) -> int:
        if hi < lo:
            lo, hi = hi, lo
        return lo + math.floor(self.next() * (hi - lo + 1))

    def uniform(self, lo: float, hi: float) -> float:
        return lo + self.next() * (hi - lo)

    def chance(self, p: float = 0.5) -> bool:
        return self.next() < p

    def pick(self, items: Sequence[T]) -> Optional[T]:
        if not items:
            return None
        return items[self.integer(0, len(items) - 1)]

    def shuffle(self, items: MutableSequence[T]) -> MutableSequence[T]:
        for i in range(len(items) - 1, 0, -1):
            j = self.integer(0, i)
            items[i], items[j] = items[j], items[i]
        return items

    def gaussian(self, mean: float = 0.0, stddev: float = 1.0) -> float:
        u1 = max(self.next(), _GAUSS_FLOOR)
        u2 = self.next()
        z0 = math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)
        return mean + z0 * stddev

    def weighted_pick(self, items: Sequence[tuple[T, float]]) -> Optional[T]:
        if not items:
            return None
        total = sum(max(weight, 0.0) for _, weight in items)
        if total <= 0:
            return items[-1][0]
        roll = self.next() * total
        for item, weight in items:
            roll -= max(weight, 0.0)
            if roll < 0:
                return item
        return items[-1][0]

    def get_state(self) -> int:
        return self._state

    def set_state(self, state: int) -> None:
        self._state = state & _MASK32
