"""
scsim Essence & Drives

Contains:
- EssenceIndex (bounded well-being scalar with baseline relaxation)
- experience_delta (per-tick change fed into the essence update)
- BaselineDrives / compute_drives (self-preservation and curiosity)
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

import numpy as np

from scsim.config import EssenceConfig

ESSENCE_MIN = 0.0
ESSENCE_MAX = 10.0

# ============================================================================
# PART 1: Essence Index
# ============================================================================


class EssenceIndex:
    """
    Well-being scalar in [0, 10] (0 = dread, 10 = joy), relaxing toward a
    neutral baseline:

        E <- clamp(E + (baseline - E) * decay + delta, 0, 10)

    With `config.locked` the update is skipped and E stays at its initial
    value for the whole run.
    """

    def __init__(self, config: EssenceConfig):
        self.config = config
        start = config.baseline if config.initial is None else config.initial
        self.value = float(np.clip(start, ESSENCE_MIN, ESSENCE_MAX))

    @property
    def locked(self) -> bool:
        return bool(self.config.locked)

    def update(self, delta: float) -> float:
        if self.locked:
            return self.value
        d = float(delta)
        if not math.isfinite(d):
            d = 0.0
        cfg = self.config
        nxt = self.value + (cfg.baseline - self.value) * cfg.decay + d
        self.value = float(min(ESSENCE_MAX, max(ESSENCE_MIN, nxt)))
        return self.value

    def influence_factor(self) -> float:
        """2 * |E - 5|: 0 at neutral, 10 at either extreme."""
        return 2.0 * abs(self.value - 5.0)


def experience_delta(
    signal_deltas: Mapping[int, float],
    cluster_weights: np.ndarray,
    scale: float = 1.0,
) -> float:
    """Weighted sum of this tick's signal changes over the touched clusters.

    Each touched cluster contributes its signal delta weighted by its share
    of the touched clusters' cumulative weight.
    """
    if not signal_deltas:
        return 0.0
    ids = np.fromiter(signal_deltas.keys(), dtype=np.int64, count=len(signal_deltas))
    deltas = np.fromiter(signal_deltas.values(), dtype=np.float64, count=len(signal_deltas))
    w = np.asarray(cluster_weights, dtype=np.float64)[ids]
    total = float(w.sum())
    if total <= 0.0:
        return float(scale) * float(deltas.mean())
    return float(scale) * float(np.dot(w / total, deltas))


# ============================================================================
# PART 2: Baseline Drives
# ============================================================================


@dataclass(frozen=True)
class BaselineDrives:
    preserve: float = 0.0
    curiosity: float = 0.0

    def as_dict(self) -> Dict[str, float]:
        return {'preserve': self.preserve, 'curiosity': self.curiosity}


def compute_drives(
    nearest_distance: float,
    attention_prompt: np.ndarray,
    min_distance: float = 1e-6,
) -> BaselineDrives:
    """
    preserve  = 1 / nearest-neighbour distance (0 when there is no neighbour)
    curiosity = |F|

    Coincident neighbours are clamped to `min_distance` instead of dividing
    by zero.
    """
    if nearest_distance is None or not math.isfinite(nearest_distance):
        preserve = 0.0
    else:
        preserve = 1.0 / max(float(nearest_distance), float(min_distance))
    curiosity = float(np.linalg.norm(np.asarray(attention_prompt, dtype=np.float64)))
    return BaselineDrives(preserve=preserve, curiosity=curiosity)


__all__ = [
    'ESSENCE_MIN',
    'ESSENCE_MAX',
    'EssenceIndex',
    'experience_delta',
    'BaselineDrives',
    'compute_drives',
]
