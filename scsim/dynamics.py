from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import numpy as np

from scsim.config import DynamicsConfig
from scsim.geometry import safe_unit

logger = logging.getLogger('scsim.dynamics')


class MotionState(Enum):
    MOVING = 'moving'
    STALLED = 'stalled'   # only ever seen before the floor is enforced


def classify(velocity: np.ndarray, min_speed: float) -> MotionState:
    speed = float(np.linalg.norm(velocity))
    return MotionState.MOVING if speed >= min_speed else MotionState.STALLED


@dataclass
class IntegrationResult:
    position: np.ndarray
    velocity: np.ndarray
    heading: np.ndarray
    pre_floor_state: MotionState
    injected: bool = False        # speed was zero or non-finite; heading used


def integrate_motion(
    position: np.ndarray,
    velocity: np.ndarray,
    acceleration: np.ndarray,
    config: DynamicsConfig,
    heading: Optional[np.ndarray] = None,
) -> IntegrationResult:
    """
    v' = (v + dt * a) * damping, rescaled to exactly min_speed when slower
    x' = x + dt * v'

    A zero or non-finite velocity is rebuilt along `heading` (or the first axis), so the
    returned state is always MOVING. Inputs are not modified.
    """
    dt = float(config.dt)
    floor = float(config.min_speed)
    x = np.asarray(position, dtype=np.float64)
    v = (np.asarray(velocity, dtype=np.float64) + dt * np.asarray(acceleration, dtype=np.float64)) * float(config.damping)

    state = classify(v, floor)
    injected = False
    direction, speed = safe_unit(v, eps=0.0)
    if not np.isfinite(speed) or speed == 0.0:
        direction = _fallback_direction(heading, x.size)
        injected = True
    if injected or speed < floor:
        v = direction * floor
        # rounding can land a hair under the floor
        while float(np.linalg.norm(v)) < floor:
            v = v * np.nextafter(1.0, 2.0)

    new_heading, _ = safe_unit(v)
    return IntegrationResult(
        position=x + dt * v,
        velocity=v,
        heading=new_heading,
        pre_floor_state=state,
        injected=injected,
    )


def _fallback_direction(heading: Optional[np.ndarray], dimension: int) -> np.ndarray:
    if heading is not None:
        h, n = safe_unit(heading)
        if n > 0.0 and np.isfinite(n):
            return h
    e = np.zeros(dimension, dtype=np.float64)
    e[0] = 1.0
    return e


def compute_acceleration(
    prompt: np.ndarray,
    attention: np.ndarray,
    offsets: np.ndarray,
    preserve_drive: float,
    nearest_offset: Optional[np.ndarray],
    config: DynamicsConfig,
) -> np.ndarray:
    """
    a = accel_gain * F
      + curiosity_gain * sum_j pi_j * (x_j - x)
      - preserve_gain * min(preserve, cap) * unit(x_nn - x)

    Args:
        prompt: attention prompt F for this entity, shape (d,).
        attention: pi row for this entity, shape (n,).
        offsets: x_j - x for every j (minimum image), shape (n, d).
        preserve_drive: self-preservation drive.
        nearest_offset: x_nn - x, or None without neighbours.
    """
    acc = float(config.accel_gain) * np.asarray(prompt, dtype=np.float64)
    pi = np.asarray(attention, dtype=np.float64)
    if pi.size and float(pi.sum()) > 0.0:
        acc = acc + float(config.curiosity_gain) * (pi @ np.asarray(offsets, dtype=np.float64))
    if nearest_offset is not None and preserve_drive > 0.0:
        away, n = safe_unit(nearest_offset)
        if n > 0.0:
            acc = acc - float(config.preserve_gain) * min(float(preserve_drive), float(config.preserve_cap)) * away
    return acc


__all__ = [
    'MotionState',
    'IntegrationResult',
    'classify',
    'integrate_motion',
    'compute_acceleration',
]
