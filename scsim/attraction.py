"""
Attraction field: pairwise kernel potential, its analytic gradient (the
attention prompt) and the neighbour-attention distribution.

All functions here are pure over the committed positions they are given.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Type

import numpy as np

from scsim.geometry import displacement

logger = logging.getLogger('scsim.attraction')


class Kernel(ABC):
    """Radial kernel K(d, sigma) with a closed-form derivative.

    Subclasses implement `value` and `radial_factor`, where the radial factor
    is K'(d) / d so that grad_x K(|x - y|) = radial_factor * (x - y).
    """
    name = 'base'

    def __init__(self, softening: float = 1e-6, min_distance: float = 1e-6):
        self.softening = float(softening)
        self.min_distance = float(min_distance)

    @abstractmethod
    def value(self, d: np.ndarray, sigma) -> np.ndarray:
        raise NotImplementedError

    @abstractmethod
    def radial_factor(self, d: np.ndarray, sigma) -> np.ndarray:
        raise NotImplementedError


class GaussianKernel(Kernel):
    name = 'gaussian'

    def value(self, d, sigma):
        d = np.asarray(d, dtype=np.float64)
        return np.exp(-(d * d) / (2.0 * sigma * sigma))

    def radial_factor(self, d, sigma):
        # K'(d)/d = -K/sigma^2, finite at d = 0
        return -self.value(d, sigma) / (sigma * sigma)


class InverseDistanceKernel(Kernel):
    name = 'inverse_distance'

    def value(self, d, sigma):
        d = np.asarray(d, dtype=np.float64)
        return 1.0 / (d + self.softening)

    def radial_factor(self, d, sigma):
        d = np.asarray(d, dtype=np.float64)
        out = np.zeros_like(d)
        ok = d >= self.min_distance
        # coincident pairs have no defined direction: zero pull in the limit
        out[ok] = -1.0 / ((d[ok] + self.softening) ** 2 * d[ok])
        return out


KERNELS: Dict[str, Type[Kernel]] = {
    GaussianKernel.name: GaussianKernel,
    InverseDistanceKernel.name: InverseDistanceKernel,
}


def register_kernel(cls: Type[Kernel]) -> Type[Kernel]:
    """Register a Kernel subclass under its `name`. Usable as a decorator."""
    KERNELS[cls.name] = cls
    return cls


def make_kernel(name: str, softening: float = 1e-6, min_distance: float = 1e-6) -> Kernel:
    try:
        cls = KERNELS[name]
    except KeyError:
        raise KeyError(f"unknown kernel '{name}' (registered: {', '.join(sorted(KERNELS))})") from None
    return cls(softening=softening, min_distance=min_distance)


def softmax_attention(scores: np.ndarray, lam: float, mask: Optional[np.ndarray] = None) -> np.ndarray:
    """Row-wise softmax(lam * scores), ignoring masked-out entries.

    Rows with no valid entry come back as all zeros.
    """
    s = np.atleast_2d(np.asarray(scores, dtype=np.float64))
    if mask is None:
        mask = np.ones_like(s, dtype=bool)
    else:
        mask = np.atleast_2d(np.asarray(mask, dtype=bool))
    z = np.where(mask, float(lam) * s, -np.inf)
    row_max = np.max(z, axis=1, keepdims=True)
    has_any = np.isfinite(row_max)
    row_max = np.where(has_any, row_max, 0.0)
    e = np.where(mask, np.exp(z - row_max), 0.0)
    total = e.sum(axis=1, keepdims=True)
    out = np.divide(e, total, out=np.zeros_like(e), where=total > 0)
    if np.ndim(scores) == 1:
        return out[0]
    return out


@dataclass
class FieldSnapshot:
    """One tick's field, valid only for the tick it was computed in."""
    potential: np.ndarray              # (n,)
    prompt: np.ndarray                 # (n, d), F_i = -grad Phi_i
    attention: np.ndarray              # (n, n), row i is pi_{i->.}; diagonal zero
    scores: np.ndarray                 # (n, n), a_ij = w_ij K(d_ij)
    degenerate_pairs: List[Tuple[int, int]] = field(default_factory=list)

    @property
    def count(self) -> int:
        return int(self.potential.shape[0])

    @classmethod
    def empty(cls, n: int, dimension: int) -> 'FieldSnapshot':
        return cls(
            potential=np.zeros(n),
            prompt=np.zeros((n, dimension)),
            attention=np.zeros((n, n)),
            scores=np.zeros((n, n)),
        )


def _weight_rows(weights: Optional[np.ndarray], rows: np.ndarray, n: int) -> np.ndarray:
    if weights is None:
        return np.ones((rows.size, n))
    w = np.asarray(weights, dtype=np.float64)
    if w.ndim == 1:
        return np.broadcast_to(w[None, :], (rows.size, n))
    return w[rows]


def compute_field_block(
    positions: np.ndarray,
    rows: np.ndarray,
    kernel: Kernel,
    sigma,
    lam: float,
    weights: Optional[np.ndarray] = None,
    bounds: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, List[Tuple[int, int]]]:
    """Field quantities for a block of entity rows.

    Args:
        positions: (n, d) committed positions of every entity.
        rows: entity indices to evaluate.
        kernel: kernel instance.
        sigma: scalar bandwidth or an (n, n) per-pair table.
        lam: attention selectivity.
        weights: per-target vector (n,) or per-pair table (n, n); None = 1.
        bounds: periodic box for minimum-image displacements, or None.

    Returns:
        (potential, prompt, attention, scores, degenerate_pairs) for `rows`.
    """
    pos = np.asarray(positions, dtype=np.float64)
    rows = np.asarray(rows, dtype=np.int64)
    n = pos.shape[0]

    diff = displacement(pos[rows][:, None, :], pos[None, :, :], bounds)   # (b, n, d)
    dist = np.sqrt(np.einsum('bnd,bnd->bn', diff, diff))
    sig = sigma if np.ndim(sigma) == 0 else np.asarray(sigma, dtype=np.float64)[rows]

    others = np.ones((rows.size, n), dtype=bool)
    others[np.arange(rows.size), rows] = False

    w = _weight_rows(weights, rows, n)
    k = kernel.value(dist, sig)
    scores = np.where(others, w * k, 0.0)
    potential = scores.sum(axis=1)

    factor = np.where(others, w * kernel.radial_factor(dist, sig), 0.0)
    grad = np.einsum('bn,bnd->bd', factor, diff)
    prompt = -grad

    attention = softmax_attention(scores, lam, mask=others)

    degenerate: List[Tuple[int, int]] = []
    close = others & (dist < kernel.min_distance)
    if np.any(close):
        bi, j = np.nonzero(close)
        degenerate = [(int(rows[b]), int(jj)) for b, jj in zip(bi, j)]

    return potential, prompt, attention, scores, degenerate


def compute_field(
    positions: np.ndarray,
    kernel: Kernel,
    sigma,
    lam: float,
    weights: Optional[np.ndarray] = None,
    bounds: Optional[np.ndarray] = None,
    block_size: int = 256,
    executor=None,
) -> FieldSnapshot:
    """Evaluate the whole field, optionally spreading row blocks over an executor.

    Blocks share no mutable state, so the result does not depend on how they
    are scheduled.
    """
    pos = np.asarray(positions, dtype=np.float64)
    n, dim = pos.shape
    if n == 0:
        return FieldSnapshot.empty(0, dim)

    blocks = [np.arange(s, min(s + block_size, n)) for s in range(0, n, max(1, int(block_size)))]

    def _run(rows):
        return compute_field_block(pos, rows, kernel, sigma, lam, weights=weights, bounds=bounds)

    if executor is not None and len(blocks) > 1:
        parts = list(executor.map(_run, blocks))
    else:
        parts = [_run(b) for b in blocks]

    snap = FieldSnapshot(
        potential=np.concatenate([p[0] for p in parts]),
        prompt=np.concatenate([p[1] for p in parts], axis=0),
        attention=np.concatenate([p[2] for p in parts], axis=0),
        scores=np.concatenate([p[3] for p in parts], axis=0),
    )
    for p in parts:
        snap.degenerate_pairs.extend(p[4])
    return snap


__all__ = [
    'Kernel',
    'GaussianKernel',
    'InverseDistanceKernel',
    'KERNELS',
    'register_kernel',
    'make_kernel',
    'softmax_attention',
    'FieldSnapshot',
    'compute_field_block',
    'compute_field',
]
