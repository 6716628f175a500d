"""
Response policy: pick a stance per behavioural dimension from the belief
clusters relevant to that dimension.

Policies are interchangeable through the `ResponsePolicy` interface and the
`POLICIES` registry; only the deterministic variant ships here.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Type

import numpy as np

from scsim.config import PolicyConfig
from scsim.memory import MemoryGraph


class Dimension(Enum):
    TRUTH = 'truth'          # truth / lie
    CIVILITY = 'civility'    # civility / unruliness
    GOOD = 'good'            # good / evil

    @property
    def channel(self) -> int:
        return _CHANNELS[self]


_CHANNELS = {Dimension.TRUTH: 0, Dimension.CIVILITY: 1, Dimension.GOOD: 2}
N_CHANNELS = len(_CHANNELS)


class Stance(Enum):
    POSITIVE = 1     # truth, civility, good
    NEGATIVE = -1    # lie, unruliness, evil
    AMBIGUOUS = 0    # tied or no relevant belief

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class DimensionResponse:
    dimension: Dimension
    stance: Stance
    cluster_id: Optional[int] = None
    signal: float = 0.0
    margin: float = 0.0

    def as_dict(self) -> Dict[str, object]:
        return {
            'stance': self.stance.label,
            'cluster_id': self.cluster_id,
            'signal': self.signal,
        }


def cluster_relevance(centroids: np.ndarray):
    """Dimension channel and pole for each cluster.

    A cluster is relevant to the channel where its centroid has the largest
    magnitude; its pole is the sign of that component (0 for a zero centroid).
    """
    c = np.asarray(centroids, dtype=np.float64)
    if c.size == 0:
        return np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64)
    head = c[:, :N_CHANNELS]
    dims = np.argmax(np.abs(head), axis=1)
    poles = np.sign(head[np.arange(head.shape[0]), dims]).astype(np.int64)
    return dims, poles


class ResponsePolicy(ABC):
    """Maps an entity's belief clusters and essence influence to stances."""

    kind = 'abstract'

    def __init__(self, config: PolicyConfig):
        self.config = config

    @abstractmethod
    def respond(self, graph: MemoryGraph, influence: float) -> Dict[Dimension, DimensionResponse]:
        raise NotImplementedError

    def effective_epsilon(self, influence: float) -> float:
        """Tie window: widest at neutral essence, narrower as influence grows."""
        return float(self.config.tie_epsilon) / (1.0 + max(0.0, float(influence)))


class DeterministicResponsePolicy(ResponsePolicy):
    """
    response_d = argmax_k sigma_k over clusters relevant to d.

    The winner must beat the runner-up (or 0 when it is alone) by more than
    the effective epsilon; otherwise the dimension is AMBIGUOUS. Equal
    signals resolve by ascending cluster id before the margin test, so the
    outcome never depends on dict ordering.
    """

    kind = 'deterministic'

    def respond(self, graph: MemoryGraph, influence: float) -> Dict[Dimension, DimensionResponse]:
        eps = self.effective_epsilon(influence)
        signals = graph.signals()
        dims, poles = cluster_relevance(graph.centroids())
        out: Dict[Dimension, DimensionResponse] = {}
        for dim in Dimension:
            idx = np.nonzero(dims == dim.channel)[0]
            if idx.size == 0:
                out[dim] = DimensionResponse(dim, Stance.AMBIGUOUS)
                continue
            sig = signals[idx]
            order = np.lexsort((idx, -sig))
            win = int(idx[order[0]])
            s_win = float(signals[win])
            s_run = float(signals[int(idx[order[1]])]) if idx.size > 1 else 0.0
            margin = s_win - s_run
            if margin > eps and poles[win] != 0:
                stance = Stance.POSITIVE if poles[win] > 0 else Stance.NEGATIVE
            else:
                stance = Stance.AMBIGUOUS
            out[dim] = DimensionResponse(dim, stance, cluster_id=win, signal=s_win, margin=margin)
        return out


POLICIES: Dict[str, Type[ResponsePolicy]] = {
    DeterministicResponsePolicy.kind: DeterministicResponsePolicy,
}


def register_policy(cls: Type[ResponsePolicy]) -> Type[ResponsePolicy]:
    POLICIES[cls.kind] = cls
    return cls


def make_policy(config: PolicyConfig) -> ResponsePolicy:
    try:
        cls = POLICIES[config.kind]
    except KeyError:
        raise KeyError(f"unknown policy kind '{config.kind}'") from None
    return cls(config)


def attractiveness(responses: Dict[Dimension, DimensionResponse], coupling: float) -> float:
    """Outgoing attraction weight derived from an entity's stances."""
    if not responses:
        return 1.0
    mean = sum(r.stance.value for r in responses.values()) / len(responses)
    return max(0.0, 1.0 + float(coupling) * mean)


__all__ = [
    'Dimension',
    'Stance',
    'DimensionResponse',
    'N_CHANNELS',
    'cluster_relevance',
    'ResponsePolicy',
    'DeterministicResponsePolicy',
    'POLICIES',
    'register_policy',
    'make_policy',
    'attractiveness',
]
