from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np

from scsim.essence import BaselineDrives, EssenceIndex
from scsim.geometry import Pose
from scsim.memory import MemoryGraph
from scsim.policy import Dimension, DimensionResponse
from scsim.state import EntityState


@dataclass
class Entity:
    """Embodied agent: pose, velocity, state, memory and essence.

    Created at init, mutated once per tick by the orchestrator, never removed.
    """
    id: int
    pose: Pose
    velocity: np.ndarray
    state: EntityState
    memory: MemoryGraph
    essence: EssenceIndex
    drives: BaselineDrives = field(default_factory=BaselineDrives)
    responses: Dict[Dimension, DimensionResponse] = field(default_factory=dict)
    attractiveness: float = 1.0
    last_potential: Optional[float] = None

    @property
    def position(self) -> np.ndarray:
        return self.pose.position

    @property
    def speed(self) -> float:
        return float(np.linalg.norm(self.velocity))

    def snapshot(self) -> 'EntitySnapshot':
        return EntitySnapshot(
            id=self.id,
            position=tuple(float(x) for x in self.pose.position),
            orientation=tuple(float(x) for x in self.pose.orientation),
            velocity=tuple(float(x) for x in self.velocity),
            speed=self.speed,
            essence=float(self.essence.value),
            drive_preserve=float(self.drives.preserve),
            drive_curiosity=float(self.drives.curiosity),
            memory_size=self.memory.size,
            cluster_count=self.memory.cluster_count,
        )


@dataclass(frozen=True)
class EntitySnapshot:
    """Read-only view of one entity for external reporting."""
    id: int
    position: Tuple[float, ...]
    orientation: Tuple[float, ...]
    velocity: Tuple[float, ...]
    speed: float
    essence: float
    drive_preserve: float
    drive_curiosity: float
    memory_size: int
    cluster_count: int


__all__ = ['Entity', 'EntitySnapshot']
