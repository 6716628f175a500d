"""
Append-only memory graph with belief-cluster index.

Nodes live in a numpy arena addressed by stable integer index and are never
removed; dormancy is only a small activation value. Clusters keep a running
sum of their members' unit event vectors, so the mean cosine between a new
event and a cluster's members is a single dot product with the centroid and
assignment costs O(clusters), not O(nodes).
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np

from scsim.config import ConfigurationError

logger = logging.getLogger('scsim.memory')

SIGNAL_BOUND = 5.0
# smallest positive double; decayed activations are held at or above it
ACTIVATION_FLOOR = float(np.nextafter(0.0, 1.0))


class _GrowableArray:
    """Amortised append buffer over a numpy array (rows of fixed width)."""

    def __init__(self, width: Optional[int] = None, dtype=np.float64, capacity: int = 64, fill=0):
        self.width = width
        self.dtype = dtype
        self._fill = fill
        shape = (max(1, capacity),) if width is None else (max(1, capacity), int(width))
        self._buf = np.full(shape, fill, dtype=dtype)
        self._n = 0

    def __len__(self) -> int:
        return self._n

    def _grow(self, need: int) -> None:
        cap = self._buf.shape[0]
        if need <= cap:
            return
        new_cap = max(need, cap * 2)
        shape = (new_cap,) if self.width is None else (new_cap, int(self.width))
        buf = np.full(shape, self._fill, dtype=self.dtype)
        buf[:self._n] = self._buf[:self._n]
        self._buf = buf

    def append(self, value) -> int:
        self._grow(self._n + 1)
        i = self._n
        self._buf[i] = value
        self._n += 1
        return i

    def view(self) -> np.ndarray:
        """Live view of the filled region; invalidated by the next append."""
        return self._buf[:self._n]

    def __getitem__(self, idx):
        return self.view()[idx]

    def __setitem__(self, idx, value):
        self.view()[idx] = value


@dataclass(frozen=True)
class MemoryNode:
    """Read-only copy of one arena entry."""
    index: int
    event: np.ndarray
    activation: float
    timestamp: int
    valence: int
    cluster_id: Optional[int]
    alias_of: Optional[int] = None


class BeliefCluster:
    """Membership list over arena nodes plus a view onto the graph's centroid row."""

    def __init__(self, graph: 'MemoryGraph', cluster_id: int, created_at: int):
        self._graph = graph
        self.id = int(cluster_id)
        self.created_at = int(created_at)
        self.members = _GrowableArray(dtype=np.int64, capacity=8, fill=-1)
        self.member_weights = _GrowableArray(dtype=np.float64, capacity=8)
        self.member_active = _GrowableArray(dtype=bool, capacity=8, fill=False)

    @property
    def node_indices(self) -> np.ndarray:
        return self.members.view().copy()

    @property
    def size(self) -> int:
        return len(self.members)

    @property
    def centroid(self) -> np.ndarray:
        return self._graph.centroid(self.id)

    @property
    def weight(self) -> float:
        return float(self._graph._cweight[self.id])

    @property
    def raw_signal(self) -> float:
        return float(self._graph._signal[self.id])

    @property
    def affective_signal(self) -> float:
        return float(np.clip(self.raw_signal, -SIGNAL_BOUND, SIGNAL_BOUND))

    def __repr__(self) -> str:
        return f"BeliefCluster(id={self.id}, size={self.size}, signal={self.affective_signal:.4f})"


@dataclass
class RecordResult:
    """What a single `record` call changed."""
    node: int
    cluster_ids: List[int]
    created_cluster: bool
    similarity: float
    reactivated: List[int] = field(default_factory=list)
    signal_deltas: Dict[int, float] = field(default_factory=dict)
    degenerate: bool = False
    budget_exceeded: bool = False


class MemoryGraph:
    """
    Per-owner append-only memory with belief clusters.

    Args:
        event_dim: Required length of every event vector.
        tau: Similarity threshold for joining an existing cluster.
        disambiguation_margin: Best-vs-runner-up gap below which member
            nodes are compared directly.
        reactivation_threshold: Minimum cosine for a stored node in the
            winning cluster to be reactivated.
        reactivation_gain: Fraction of missing activation restored.
        soft_node_budget: Node count that flags resource exhaustion.
        owner: Owning entity id, used only for log messages.

    Not safe for concurrent writers by itself; every mutating call takes the
    graph lock, and callers get determinism by giving each graph one writer.
    """

    def __init__(
        self,
        event_dim: int,
        tau: float = 0.7,
        disambiguation_margin: float = 0.02,
        reactivation_threshold: float = 0.98,
        reactivation_gain: float = 0.5,
        soft_node_budget: int = 1_000_000,
        owner: Optional[int] = None,
    ):
        if int(event_dim) < 1:
            raise ConfigurationError("event_dim must be >= 1")
        if not (0.0 <= float(tau) <= 1.0):
            raise ConfigurationError("tau must be in [0, 1]")
        self.event_dim = int(event_dim)
        self.tau = float(tau)
        self.disambiguation_margin = float(disambiguation_margin)
        self.reactivation_threshold = float(reactivation_threshold)
        self.reactivation_gain = float(reactivation_gain)
        self.soft_node_budget = int(soft_node_budget)
        self.owner = owner
        self._lock = threading.Lock()

        # node arena
        self._events = _GrowableArray(width=self.event_dim)
        self._units = _GrowableArray(width=self.event_dim)
        self._activation = _GrowableArray()
        self._timestamp = _GrowableArray(dtype=np.int64)
        self._valence = _GrowableArray(dtype=np.int8)
        self._cluster = _GrowableArray(dtype=np.int64, fill=-1)
        self._slot = _GrowableArray(dtype=np.int64, fill=-1)
        self._alias = _GrowableArray(dtype=np.int64, fill=-1)
        # secondary memberships: node -> [(cluster id, slot)]
        self._extra: Dict[int, List[Tuple[int, int]]] = {}

        # cluster table
        self.clusters: Dict[int, BeliefCluster] = {}
        self._centroid_sum = _GrowableArray(width=self.event_dim, capacity=16)
        self._count = _GrowableArray(dtype=np.int64, capacity=16)
        self._cweight = _GrowableArray(capacity=16)
        self._signal = _GrowableArray(capacity=16)

        self._edges = _GrowableArray(width=2, dtype=np.int64)
        self._last_node: Optional[int] = None
        self._next_budget_alert = self.soft_node_budget

    # ------------------------------------------------------------------
    # arena access
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._activation)

    @property
    def size(self) -> int:
        return len(self._activation)

    @property
    def cluster_count(self) -> int:
        return len(self.clusters)

    @property
    def activations(self) -> np.ndarray:
        return self._activation.view().copy()

    @property
    def edges(self) -> np.ndarray:
        return self._edges.view().copy()

    def node(self, index: int) -> MemoryNode:
        i = int(index)
        if not (0 <= i < self.size):
            raise IndexError(f"memory node {i} out of range (size {self.size})")
        cid = int(self._cluster[i])
        alias = int(self._alias[i])
        return MemoryNode(
            index=i,
            event=self._events[i].copy(),
            activation=float(self._activation[i]),
            timestamp=int(self._timestamp[i]),
            valence=int(self._valence[i]),
            cluster_id=cid if cid >= 0 else None,
            alias_of=alias if alias >= 0 else None,
        )

    def iter_nodes(self) -> Iterator[MemoryNode]:
        for i in range(self.size):
            yield self.node(i)

    def memberships(self, index: int) -> List[Tuple[int, float]]:
        """(cluster id, membership weight) for every cluster holding `index`."""
        out = []
        for cid, slot in self._membership_slots(int(index)):
            out.append((cid, float(self.clusters[cid].member_weights[slot])))
        return out

    def _membership_slots(self, i: int) -> List[Tuple[int, int]]:
        slots = []
        cid = int(self._cluster[i])
        if cid >= 0:
            slots.append((cid, int(self._slot[i])))
        slots.extend(self._extra.get(i, ()))
        return slots

    def add_edge(self, src: int, dst: int) -> None:
        if 0 <= src < self.size and 0 <= dst < self.size:
            self._edges.append((int(src), int(dst)))

    # ------------------------------------------------------------------
    # cluster table
    # ------------------------------------------------------------------

    def centroid(self, cluster_id: int) -> np.ndarray:
        c = int(self._count[cluster_id])
        if c <= 0:
            return np.zeros(self.event_dim)
        return self._centroid_sum[cluster_id] / c

    def centroids(self) -> np.ndarray:
        counts = self._count.view().astype(np.float64)
        sums = self._centroid_sum.view()
        return np.divide(sums, counts[:, None], out=np.zeros_like(sums), where=counts[:, None] > 0)

    def signals(self) -> np.ndarray:
        """Clamped affective signal per cluster id."""
        return np.clip(self._signal.view(), -SIGNAL_BOUND, SIGNAL_BOUND)

    def cluster_weights(self) -> np.ndarray:
        return self._cweight.view().copy()

    def similarities(self, unit: np.ndarray) -> np.ndarray:
        """Mean cosine between a unit vector and each cluster's members."""
        if not self.clusters:
            return np.zeros(0)
        return self.centroids() @ unit

    def _new_cluster(self, tick: int) -> BeliefCluster:
        cid = len(self._count)
        self._centroid_sum.append(np.zeros(self.event_dim))
        self._count.append(0)
        self._cweight.append(0.0)
        self._signal.append(0.0)
        cluster = BeliefCluster(self, cid, tick)
        self.clusters[cid] = cluster
        return cluster

    def _join(self, node: int, cluster: BeliefCluster, weight: float) -> None:
        slot = cluster.members.append(node)
        cluster.member_weights.append(weight)
        cluster.member_active.append(True)
        cid = cluster.id
        self._centroid_sum[cid] = self._centroid_sum[cid] + self._units[node]
        self._count[cid] += 1
        self._cweight[cid] += weight
        self._signal[cid] += weight * self._activation[node] * float(self._valence[node])
        if self._cluster[node] < 0:
            self._cluster[node] = cid
            self._slot[node] = slot
        else:
            self._extra.setdefault(node, []).append((cid, slot))

    def _apply_activation_delta(self, node: int, delta: float) -> None:
        self._activation[node] += delta
        v = float(self._valence[node])
        if v == 0.0:
            return
        for cid, slot in self._membership_slots(node):
            w = float(self.clusters[cid].member_weights[slot])
            self._signal[cid] += w * delta * v

    # ------------------------------------------------------------------
    # public operations
    # ------------------------------------------------------------------

    def record(self, event, tick: int, valence: int = 0) -> RecordResult:
        """Append an event node and assign it to a belief cluster.

        The node joins the cluster with the highest mean cosine if that
        exceeds tau; otherwise a new singleton cluster is created. A
        zero-norm event gets similarity 0 everywhere and therefore its own
        cluster.
        """
        e = np.asarray(event, dtype=np.float64).ravel()
        if e.size != self.event_dim:
            raise ConfigurationError(
                f"event length {e.size} does not match configured event_dim {self.event_dim}"
            )
        v = int(np.sign(valence))

        with self._lock:
            norm = float(np.linalg.norm(e))
            degenerate = not np.isfinite(norm) or norm <= 1e-12
            unit = np.zeros(self.event_dim) if degenerate else e / norm

            scores = self.similarities(unit) if not degenerate else np.zeros(len(self._count))
            signal_before = self._signal.view().copy()

            node = self._activation.append(1.0)
            self._events.append(e)
            self._units.append(unit)
            self._timestamp.append(int(tick))
            self._valence.append(v)
            self._cluster.append(-1)
            self._slot.append(-1)
            self._alias.append(-1)
            if self._last_node is not None:
                self._edges.append((self._last_node, node))
            self._last_node = node

            targets, best = self._select_clusters(scores, unit)
            created = False
            reactivated: List[int] = []
            if not targets:
                cluster = self._new_cluster(tick)
                self._join(node, cluster, 1.0)
                targets = [cluster.id]
                created = True
            else:
                for cid in targets:
                    reactivated.extend(self._reactivate(self.clusters[cid], unit, node))
                weight = 1.0 / len(targets)
                for cid in targets:
                    self._join(node, self.clusters[cid], weight)

            deltas: Dict[int, float] = {}
            touched = set(targets)
            for j in reactivated:
                touched.update(cid for cid, _ in self._membership_slots(j))
            for cid in sorted(touched):
                before = float(signal_before[cid]) if cid < signal_before.size else 0.0
                deltas[cid] = float(self._signal[cid]) - before

            exceeded = False
            if self.size > self._next_budget_alert:
                exceeded = True
                self._next_budget_alert *= 2

        return RecordResult(
            node=node,
            cluster_ids=list(targets),
            created_cluster=created,
            similarity=float(best),
            reactivated=reactivated,
            signal_deltas=deltas,
            degenerate=degenerate,
            budget_exceeded=exceeded,
        )

    def _select_clusters(self, scores: np.ndarray, unit: np.ndarray) -> Tuple[List[int], float]:
        if scores.size == 0:
            return [], 0.0
        ids = np.arange(scores.size)
        # descending score, ascending id on ties
        order = np.lexsort((ids, -scores))
        best = int(order[0])
        s1 = float(scores[best])
        if not s1 > self.tau:
            return [], s1
        if order.size < 2:
            return [best], s1
        second = int(order[1])
        s2 = float(scores[second])
        if not (s2 > self.tau and s1 - s2 <= self.disambiguation_margin):
            return [best], s1

        m1 = self._max_member_cosine(best, unit)
        m2 = self._max_member_cosine(second, unit)
        if abs(m1 - m2) <= 1e-12:
            return sorted([best, second]), s1
        return ([best] if m1 > m2 else [second]), s1

    def _max_member_cosine(self, cluster_id: int, unit: np.ndarray) -> float:
        members = self.clusters[cluster_id].members.view()
        if members.size == 0:
            return 0.0
        return float(np.max(self._units.view()[members] @ unit))

    def _reactivate(self, cluster: BeliefCluster, unit: np.ndarray, new_node: int) -> List[int]:
        if self.reactivation_gain <= 0.0 or cluster.size == 0:
            return []
        members = cluster.members.view()
        active = cluster.member_active.view()
        candidates = members[active]
        if candidates.size == 0:
            return []
        cos = self._units.view()[candidates] @ unit
        hit = cos >= self.reactivation_threshold
        if not np.any(hit):
            return []
        nodes = candidates[hit]
        gains = self.reactivation_gain * cos[hit] * (1.0 - self._activation.view()[nodes])
        out = []
        for j, g in zip(nodes, gains):
            j = int(j)
            if g > 0.0:
                self._apply_activation_delta(j, float(g))
                self._edges.append((new_node, j))
                out.append(j)
        return out

    def reactivate(self, index: int, amount: float) -> float:
        """Raise a node's activation by `amount` (capped at 1). Returns the applied delta."""
        i = int(index)
        if not (0 <= i < self.size):
            raise IndexError(f"memory node {i} out of range (size {self.size})")
        with self._lock:
            delta = float(min(max(0.0, amount), 1.0 - self._activation[i]))
            if delta > 0.0:
                self._apply_activation_delta(i, delta)
        return delta

    def decay(self, factor: float) -> None:
        """Multiply every activation (and so every cluster signal) by `factor`."""
        alpha = float(factor)
        if alpha == 1.0:
            return
        with self._lock:
            act = self._activation.view()
            act *= alpha
            if alpha > 0.0:
                np.maximum(act, ACTIVATION_FLOOR, out=act)
            sig = self._signal.view()
            sig *= alpha

    def recompute_signals(self) -> np.ndarray:
        """Exact per-cluster signals from the arena; also resyncs the running sums."""
        with self._lock:
            act = self._activation.view()
            val = self._valence.view().astype(np.float64)
            for cid, cluster in self.clusters.items():
                m = cluster.members.view()
                w = cluster.member_weights.view()
                self._signal[cid] = float(np.sum(w * act[m] * val[m])) if m.size else 0.0
            return self.signals().copy()

    def activation_entropy(self) -> float:
        act = self._activation.view()
        total = float(act.sum())
        if total <= 1e-12:
            return 0.0
        p = act / total
        p = p[p > 1e-12]
        return float(-np.sum(p * np.log(p)))

    def compact_dormant(self, activation_floor: float, min_similarity: float = 0.99) -> int:
        """Fold near-duplicate dormant nodes into an earlier representative.

        A folded node keeps its index, event, timestamp and cluster; its
        membership weight moves to the representative scaled by the
        activation ratio, which leaves every cluster signal unchanged. Only
        primary memberships of nodes with equal valence are folded.

        Returns:
            Number of nodes folded by this call.
        """
        folded = 0
        with self._lock:
            act = self._activation.view()
            units = self._units.view()
            for cid in sorted(self.clusters):
                cluster = self.clusters[cid]
                members = cluster.members.view()
                active = cluster.member_active.view()
                weights = cluster.member_weights.view()
                reps: Dict[int, List[Tuple[int, int]]] = {}
                for slot in range(members.size):
                    j = int(members[slot])
                    if not active[slot] or self._alias[j] >= 0 or int(self._cluster[j]) != cid:
                        continue
                    if act[j] >= activation_floor:
                        continue
                    v = int(self._valence[j])
                    pool = reps.setdefault(v, [])
                    if pool:
                        rep_nodes = np.fromiter((r for r, _ in pool), dtype=np.int64, count=len(pool))
                        cos = units[rep_nodes] @ units[j]
                        k = int(np.argmax(cos))
                        if cos[k] >= min_similarity:
                            r, r_slot = pool[k]
                            gain = weights[slot] * act[j] / act[r]
                            weights[r_slot] += gain
                            self._cweight[cid] += gain - weights[slot]
                            weights[slot] = 0.0
                            active[slot] = False
                            self._alias[j] = r
                            folded += 1
                            continue
                    pool.append((j, slot))
        if folded:
            logger.info(f"memory[{self.owner}] compaction folded {folded} dormant nodes")
        return folded


__all__ = [
    'ACTIVATION_FLOOR',
    'SIGNAL_BOUND',
    'MemoryNode',
    'BeliefCluster',
    'RecordResult',
    'MemoryGraph',
]
