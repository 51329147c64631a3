"""Deterministic per-scenario image misalignment.

Both displays compute the seed locally, so the imaging overlay starts with
the same offset on every station before any sync message has arrived.
"""

from __future__ import annotations

import math
from typing import Iterator

from linacsim.core.models import SeedOffset

FNV_OFFSET_BASIS = 2166136261
FNV_PRIME = 16777619
LCG_MULTIPLIER = 1664525
LCG_INCREMENT = 1013904223
FALLBACK_SEED = 123456789

_MASK32 = 0xFFFFFFFF

TRANSLATE_X_RANGE = (-40.0, 40.0)
TRANSLATE_Y_RANGE = (-30.0, 30.0)
ROTATE_RANGE_DEG = (-1.2, 1.2)
SCALE_RANGE = (0.99, 1.01)


def _code_units(text: str) -> Iterator[int]:
    """Yield UTF-16 code units, matching how browsers index string characters."""
    data = text.encode("utf-16-le", errors="surrogatepass")
    for i in range(0, len(data), 2):
        yield data[i] | (data[i + 1] << 8)


def stable_hash(text: str) -> int:
    """32-bit FNV-1a hash of ``text``."""
    h = FNV_OFFSET_BASIS
    for unit in _code_units(text or ""):
        h ^= unit
        h = (h * FNV_PRIME) & _MASK32
    return h


def lcg_uniforms(seed_value: int) -> Iterator[float]:
    """Endless stream of uniforms in [0, 1) from a 32-bit LCG."""
    x = (seed_value & _MASK32) or FALLBACK_SEED
    while True:
        x = (LCG_MULTIPLIER * x + LCG_INCREMENT) & _MASK32
        yield x / 4294967296.0


def _round_half_up(v: float) -> float:
    return float(math.floor(v + 0.5))


def seed(scenario_id: str) -> SeedOffset:
    """Derive the initial overlay misalignment for ``scenario_id``."""
    draws = lcg_uniforms(stable_hash(str(scenario_id or "")))

    def draw(bounds):
        lo, hi = bounds
        return lo + (hi - lo) * next(draws)

    return SeedOffset(
        translate_x=_round_half_up(draw(TRANSLATE_X_RANGE)),
        translate_y=_round_half_up(draw(TRANSLATE_Y_RANGE)),
        rotate_deg=draw(ROTATE_RANGE_DEG),
        scale=draw(SCALE_RANGE),
    )
