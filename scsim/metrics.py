"""
Run metrics aggregated from per-entity tick traces.

The collector is an ordinary trace-bus subscriber: it never reaches into the
simulation, so anything it reports can be reproduced from a trace log.
"""
from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from scsim.bus import EventType, TraceBus, TraceEvent

logger = logging.getLogger('scsim.metrics')


def _stability(values: np.ndarray, empty: float) -> float:
    """1 / (1 + std/mean); `empty` when the mean is ~0."""
    mean = float(np.mean(values))
    if mean <= 1e-6:
        return empty
    return 1.0 / (1.0 + float(np.std(values)) / mean)


@dataclass
class Metrics:
    tick: int
    attention_entropy: float
    memory_diversity: float
    velocity_stability: float
    identity_coherence: float
    cluster_stability: float
    affective_strength: float
    average_essence: float
    num_entities: int

    @classmethod
    def from_traces(cls, tick: int, traces: Sequence[Dict[str, Any]]) -> 'Metrics':
        if not traces:
            return cls(tick, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 5.0, 0)
        speeds = np.array([t['speed'] for t in traces], dtype=np.float64)
        norms = np.array([t['state_norm'] for t in traces], dtype=np.float64)
        clusters = np.array([t['cluster_count'] for t in traces], dtype=np.float64)
        mean_abs = np.array([t['signal_mean_abs'] for t in traces], dtype=np.float64)
        n_clusters = float(clusters.sum())
        return cls(
            tick=int(tick),
            attention_entropy=float(np.mean([t['activation_entropy'] for t in traces])),
            memory_diversity=float(np.mean([t['signal_std'] if t['cluster_count'] >= 2 else 0.0 for t in traces])),
            velocity_stability=_stability(speeds, 1.0),
            identity_coherence=_stability(norms, 0.0),
            cluster_stability=float(clusters.mean()) / 10.0,
            affective_strength=float(np.dot(mean_abs, clusters) / n_clusters) if n_clusters > 0 else 0.0,
            average_essence=float(np.mean([t['essence'] for t in traces])),
            num_entities=len(traces),
        )

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MetricsCollector:
    """
    Subscribes to a TraceBus and keeps one Metrics row per committed tick.

    Args:
        bus: Bus to subscribe to (None = feed events through `handle`).
        num_entities: When known, a tick is closed as soon as all of its
            traces arrived; otherwise it closes on the next tick or `flush`.
        keep_traces: Also keep the raw per-entity trace rows.
    """

    def __init__(self, bus: Optional[TraceBus] = None, num_entities: Optional[int] = None,
                 keep_traces: bool = False):
        self.num_entities = num_entities
        self.keep_traces = keep_traces
        self.history: List[Metrics] = []
        self.traces: List[Dict[str, Any]] = []
        self.degeneracies = 0
        self.exhaustions = 0
        self._tick: Optional[int] = None
        self._buffer: List[Dict[str, Any]] = []
        self._bus = bus
        if bus is not None:
            bus.subscribe(self.handle)

    def handle(self, event: TraceEvent) -> None:
        if event.type is EventType.NUMERIC_DEGENERACY:
            self.degeneracies += 1
            return
        if event.type is EventType.RESOURCE_EXHAUSTION:
            self.exhaustions += 1
            return
        if event.type is not EventType.TICK_TRACE:
            return
        if self._tick is not None and event.tick != self._tick:
            self.flush()
        self._tick = event.tick
        self._buffer.append(event.payload)
        if self.keep_traces:
            self.traces.append(dict(event.payload))
        if self.num_entities is not None and len(self._buffer) >= self.num_entities:
            self.flush()

    def flush(self) -> Optional[Metrics]:
        if self._tick is None or not self._buffer:
            return None
        m = Metrics.from_traces(self._tick, self._buffer)
        self.history.append(m)
        self._buffer = []
        self._tick = None
        return m

    @property
    def latest(self) -> Optional[Metrics]:
        self.flush()
        return self.history[-1] if self.history else None

    def to_frame(self) -> pd.DataFrame:
        self.flush()
        if not self.history:
            return pd.DataFrame(columns=[f for f in Metrics.__dataclass_fields__])
        return pd.DataFrame([m.as_dict() for m in self.history])

    def traces_frame(self) -> pd.DataFrame:
        """Raw trace rows with position/velocity expanded into columns."""
        if not self.traces:
            return pd.DataFrame()
        df = pd.json_normalize(self.traces, sep='.')
        for col in ('position', 'velocity'):
            if col in df.columns:
                expanded = pd.DataFrame(df[col].tolist(), index=df.index)
                expanded.columns = [f"{col}_{i}" for i in expanded.columns]
                df = pd.concat([df.drop(columns=[col]), expanded], axis=1)
        return df

    def to_csv(self, path: str) -> str:
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        df = self.to_frame()
        df.to_csv(path, index=False)
        logger.info(f"Wrote {len(df)} metrics rows to {path}")
        return path

    def close(self) -> None:
        if self._bus is not None:
            self._bus.unsubscribe(self.handle)
            self._bus = None


__all__ = ['Metrics', 'MetricsCollector']
