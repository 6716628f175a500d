from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree

logger = logging.getLogger('scsim.geometry')


@dataclass
class Pose:
    """Position plus a unit heading (orientation) in 2 or 3 dimensions."""
    position: np.ndarray
    orientation: np.ndarray = field(default=None)  # type: ignore[assignment]

    def __post_init__(self):
        self.position = np.asarray(self.position, dtype=np.float64).copy()
        if self.orientation is None:
            self.orientation = unit_axis(self.position.size)
        else:
            self.orientation = np.asarray(self.orientation, dtype=np.float64).copy()

    @property
    def dimension(self) -> int:
        return int(self.position.size)

    def distance_to(self, other: 'Pose', bounds: Optional[np.ndarray] = None) -> float:
        return float(np.linalg.norm(displacement(self.position, other.position, bounds)))


def unit_axis(dimension: int, axis: int = 0) -> np.ndarray:
    e = np.zeros(int(dimension), dtype=np.float64)
    e[axis] = 1.0
    return e


def displacement(a: np.ndarray, b: np.ndarray, bounds: Optional[np.ndarray] = None) -> np.ndarray:
    """a - b, wrapped to the nearest periodic image when bounds are given.

    Broadcasts, so (n, 1, d) against (1, m, d) yields the full pair table.
    """
    diff = np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64)
    if bounds is not None:
        diff = diff - bounds * np.round(diff / bounds)
    return diff


def apply_periodic_bounds(positions: np.ndarray, bounds: Sequence[float], periodic: bool) -> np.ndarray:
    """Wrap positions into [0, bound) per axis. Returns a new array."""
    out = np.asarray(positions, dtype=np.float64).copy()
    if not periodic:
        return out
    b = np.asarray(bounds, dtype=np.float64)
    out = np.mod(out, b)
    # np.mod can land exactly on the bound for tiny negative inputs
    out[out >= b] = 0.0
    return out


def safe_unit(vec: np.ndarray, eps: float = 1e-12) -> Tuple[np.ndarray, float]:
    """Return (unit vector, norm); a zero vector maps to zeros."""
    v = np.asarray(vec, dtype=np.float64)
    n = float(np.linalg.norm(v))
    if n <= eps:
        return np.zeros_like(v), n
    return v / n, n


class SpatialIndex:
    """Nearest-neighbour index over one tick's committed positions.

    Built once per tick; answers each entity's nearest-other query in
    O(log n) instead of an all-pairs scan.
    """

    def __init__(self, positions: np.ndarray, bounds: Optional[Sequence[float]] = None, periodic: bool = False):
        self.positions = np.asarray(positions, dtype=np.float64)
        self.count = int(self.positions.shape[0])
        self.periodic = bool(periodic)
        self.bounds = np.asarray(bounds, dtype=np.float64) if bounds is not None else None
        boxsize = self.bounds if (self.periodic and self.bounds is not None) else None
        data = self.positions
        if boxsize is not None:
            # cKDTree requires data inside [0, boxsize)
            data = apply_periodic_bounds(data, boxsize, True)
        self._tree = cKDTree(data, boxsize=boxsize) if self.count > 0 else None
        self._data = data

    def nearest(self, index: int) -> Tuple[Optional[int], float]:
        """Nearest other entity to `index`: (neighbour index, distance).

        Returns (None, inf) when the entity has no neighbours.
        """
        if self._tree is None or self.count < 2:
            return None, float('inf')
        dists, idxs = self._tree.query(self._data[index], k=2)
        # with coincident points the query may list `index` second
        for d, j in zip(np.atleast_1d(dists), np.atleast_1d(idxs)):
            if int(j) != int(index) and int(j) < self.count:
                return int(j), float(d)
        return None, float('inf')

    def nearest_all(self) -> Tuple[np.ndarray, np.ndarray]:
        """Vectorised nearest-other for every entity.

        Returns (neighbour indices with -1 for none, distances with inf for none).
        """
        nn = np.full(self.count, -1, dtype=np.int64)
        dist = np.full(self.count, np.inf, dtype=np.float64)
        if self._tree is None or self.count < 2:
            return nn, dist
        dists, idxs = self._tree.query(self._data, k=2)
        rows = np.arange(self.count)
        first_is_self = idxs[:, 0] == rows
        nn[:] = np.where(first_is_self, idxs[:, 1], idxs[:, 0])
        dist[:] = np.where(first_is_self, dists[:, 1], dists[:, 0])
        return nn, dist


__all__ = [
    'Pose',
    'SpatialIndex',
    'apply_periodic_bounds',
    'displacement',
    'safe_unit',
    'unit_axis',
]
