"""Deterministic embedding fakes and vector helpers shared by the tests."""

from __future__ import annotations

import asyncio
import hashlib
import math
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

FAKE_DIM = 8


def hash_vector(text: str, dimension: int = FAKE_DIM) -> list[float]:
    """Deterministic unit vector with signed components derived from *text*."""
    digest = hashlib.sha256(text.encode()).digest()
    raw = [float(b) - 127.5 for b in digest[:dimension]]
    norm = math.sqrt(sum(x * x for x in raw))
    return [x / norm for x in raw]


def unit(similarity: float, dimension: int = FAKE_DIM) -> list[float]:
    """Unit vector whose cosine with ``e1`` is exactly *similarity*."""
    vector = [0.0] * dimension
    vector[0] = similarity
    vector[1] = math.sqrt(max(0.0, 1.0 - similarity * similarity))
    return vector


def e1(dimension: int = FAKE_DIM) -> list[float]:
    vector = [0.0] * dimension
    vector[0] = 1.0
    return vector


class FakeProvider:
    """Deterministic async embedding provider for testing.

    ``vectors`` pins the output for specific texts, ``errors`` makes a text
    raise, and ``delay`` slows every call down.
    """

    def __init__(self, dimension: int = FAKE_DIM) -> None:
        self._dimension = dimension
        self.vectors: dict[str, list[float]] = {}
        self.errors: dict[str, Exception] = {}
        self.delay = 0.0
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0
        self.on_call: Callable[[str], None] | None = None

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.on_call is not None:
                self.on_call(text)
            if self.delay:
                await asyncio.sleep(self.delay)
            if text in self.errors:
                raise self.errors[text]
            if text in self.vectors:
                return list(self.vectors[text])
            return hash_vector(text, self._dimension)
        finally:
            self.active -= 1

    @property
    def dimensions(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return "fake-embedding"
