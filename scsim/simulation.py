"""
Tick orchestrator.

Each tick runs five phases with a barrier between them:

    1. field     attraction field, attention and drives from committed geometry
    2. memory    decay, then record one event per entity graph
    3. derive    state update, essence, responses (next tick's attraction inputs)
    4. integrate acceleration and velocity-floor integration (uncommitted)
    5. commit    geometry, trace publication, tick counter

Work inside a phase is mapped over entities in ascending id order, optionally
on a thread pool. Every entity writes only its own graph and state, so the
outcome does not depend on scheduling.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from scsim.attraction import FieldSnapshot, compute_field, make_kernel
from scsim.bus import EventType, TraceBus, TraceEvent
from scsim.config import SimConfig, get_sim_config, validate_sim_config
from scsim.dynamics import IntegrationResult, compute_acceleration, integrate_motion
from scsim.entities import Entity, EntitySnapshot
from scsim.essence import BaselineDrives, EssenceIndex, compute_drives, experience_delta
from scsim.geometry import Pose, SpatialIndex, apply_periodic_bounds, displacement, safe_unit, unit_axis
from scsim.memory import MemoryGraph, RecordResult
from scsim.policy import N_CHANNELS, attractiveness, make_policy
from scsim.rng import RNGRegistry
from scsim.state import EntityState

logger = logging.getLogger('scsim.simulation')

Labeler = Callable[[int, int, Optional[float], np.ndarray], int]


def potential_valence(entity_id: int, tick: int, delta_potential: Optional[float], event: np.ndarray,
                      deadband: float = 1e-3) -> int:
    """Default valence: sign of the potential change, 0 inside the deadband or on the first tick."""
    if delta_potential is None or not math.isfinite(delta_potential):
        return 0
    if abs(delta_potential) <= deadband:
        return 0
    return 1 if delta_potential > 0 else -1


def encode_event(
    velocity: np.ndarray,
    prompt: np.ndarray,
    potential: float,
    delta_potential: Optional[float],
    drives: BaselineDrives,
    event_dim: int,
    stimulus_scale: float,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Event layout:
        [truth, civility, good] | unit(F) | unit(v) | tanh(Phi) | stimulus noise

    truth = cos(v, F), civility = tanh(curiosity - preserve), good = tanh(dPhi),
    each perturbed by the entity's stimulus stream. A full-length noise vector
    is drawn every call so the stream advances identically each tick.
    """
    dim = int(np.asarray(velocity).size)
    noise = rng.normal(0.0, float(stimulus_scale), size=int(event_dim))
    u_f, _ = safe_unit(prompt)
    u_v, _ = safe_unit(velocity)

    out = np.empty(int(event_dim), dtype=np.float64)
    out[0] = float(np.dot(u_v, u_f))
    out[1] = math.tanh(drives.curiosity - drives.preserve)
    out[2] = math.tanh(delta_potential) if delta_potential is not None else 0.0
    out[:N_CHANNELS] += noise[:N_CHANNELS]
    k = N_CHANNELS
    out[k:k + dim] = u_f
    k += dim
    out[k:k + dim] = u_v
    k += dim
    out[k] = math.tanh(float(potential))
    k += 1
    out[k:] = noise[k:]
    return out


@dataclass
class TickTrace:
    """Per-entity record published after every committed tick."""
    tick: int
    entity_id: int
    position: List[float]
    velocity: List[float]
    speed: float
    essence: float
    drive_preserve: float
    drive_curiosity: float
    potential: float
    memory_size: int
    cluster_count: int
    state_norm: float
    activation_entropy: float
    signal_mean_abs: float
    signal_std: float
    responses: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class _Pending:
    """Per-entity results carried across the phase barriers of one tick."""
    drives: BaselineDrives
    event: Optional[np.ndarray] = None
    record: Optional[RecordResult] = None
    motion: Optional[IntegrationResult] = None
    degeneracies: List[Tuple[str, str]] = field(default_factory=list)


class Simulation:
    """
    Deterministic multi-entity field simulation.

    Args:
        config: Validated on construction; None uses the global config.
        labeler: Optional valence callable
            `(entity_id, tick, delta_potential, event) -> {-1, 0, 1}`.
        bus: Trace bus to publish on; a new one is created when omitted.
    """

    def __init__(self, config: Optional[SimConfig] = None, labeler: Optional[Labeler] = None,
                 bus: Optional[TraceBus] = None):
        cfg = config or get_sim_config()
        validate_sim_config(cfg)
        self.config = cfg
        self.bus = bus if bus is not None else TraceBus(log_path=cfg.simulation.trace_log)
        self.rng = RNGRegistry(cfg.simulation.seed)
        self.kernel = make_kernel(cfg.attraction.kernel, cfg.attraction.softening, cfg.geometry.min_distance)
        self.policy = make_policy(cfg.policy)
        self.labeler: Labeler = labeler or partial(potential_valence, deadband=cfg.memory.valence_deadband)

        self.bounds = np.asarray(cfg.geometry.bounds, dtype=np.float64)
        self.periodic = bool(cfg.geometry.periodic)
        self._pair_bounds = self.bounds if self.periodic else None

        workers = int(cfg.simulation.workers)
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix='scsim') if workers > 1 else None
        self._stop = threading.Event()
        self._stop_reported = False
        self.tick = 0

        self.entities: List[Entity] = self._spawn_entities()
        self._stimulus = [self.rng.entity('stimulus', e.id) for e in self.entities]
        self.last_field: Optional[FieldSnapshot] = None

        logger.info(
            f"Simulation '{cfg.name}' initialised: {len(self.entities)} entities, "
            f"dimension={cfg.geometry.dimension}, kernel={self.kernel.name}, policy={self.policy.kind}, "
            f"workers={max(1, workers)}, seed={cfg.simulation.seed}"
        )

    # ------------------------------------------------------------------
    # construction
    # ------------------------------------------------------------------

    def _spawn_entities(self) -> List[Entity]:
        cfg = self.config
        n = int(cfg.simulation.num_entities)
        dim = int(cfg.geometry.dimension)
        init = self.rng.get('init')
        positions = init.uniform(0.0, 1.0, size=(n, dim)) * self.bounds
        directions = init.normal(size=(n, dim))
        traits = self.rng.get('traits').normal(size=(n, cfg.state.trait_dim))

        entities = []
        for i in range(n):
            heading, norm = safe_unit(directions[i])
            if norm == 0.0:
                heading = unit_axis(dim)
            graph = MemoryGraph(
                event_dim=cfg.memory.event_dim,
                tau=cfg.memory.tau,
                disambiguation_margin=cfg.memory.disambiguation_margin,
                reactivation_threshold=cfg.memory.reactivation_threshold,
                reactivation_gain=cfg.memory.reactivation_gain,
                soft_node_budget=cfg.memory.soft_node_budget,
                owner=i,
            )
            entities.append(Entity(
                id=i,
                pose=Pose(positions[i], heading),
                velocity=heading * float(cfg.dynamics.initial_speed),
                state=EntityState(cfg.state, traits[i]),
                memory=graph,
                essence=EssenceIndex(cfg.essence),
            ))
        return entities

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def query(self, entity_id: int) -> EntitySnapshot:
        try:
            entity = self.entities[int(entity_id)]
        except IndexError:
            raise KeyError(f"unknown entity {entity_id}") from None
        return entity.snapshot()

    def snapshot(self) -> List[EntitySnapshot]:
        return [e.snapshot() for e in self.entities]

    def positions(self) -> np.ndarray:
        return np.stack([e.position for e in self.entities]).copy()

    def velocities(self) -> np.ndarray:
        return np.stack([e.velocity for e in self.entities]).copy()

    # ------------------------------------------------------------------
    # control
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Stop before the next tick starts; the current tick always completes."""
        self._stop.set()

    def resume(self) -> None:
        self._stop.clear()
        self._stop_reported = False

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def run(self, steps: Optional[int] = None) -> int:
        """Advance up to `steps` ticks (default: configured num_steps). Returns ticks run."""
        total = self.config.simulation.num_steps if steps is None else int(steps)
        done = 0
        t0 = time.perf_counter()
        for _ in range(total):
            if not self.advance_one_tick():
                break
            done += 1
        logger.info(f"Run finished: {done}/{total} ticks in {time.perf_counter() - t0:.2f}s (tick={self.tick})")
        return done

    def compact_memory(self, activation_floor: float, min_similarity: float = 0.99) -> int:
        """Opt-in compaction of dormant near-duplicates across every entity graph."""
        folded = 0
        for e in self.entities:
            folded += e.memory.compact_dormant(activation_floor, min_similarity)
        return folded

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> 'Simulation':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # tick
    # ------------------------------------------------------------------

    def _map(self, fn, items) -> list:
        if self._executor is not None and len(items) > 1:
            return list(self._executor.map(fn, items))
        return [fn(x) for x in items]

    def advance_one_tick(self) -> bool:
        """Run one full tick. Returns False (and does nothing) after `request_stop`."""
        if self._stop.is_set():
            if not self._stop_reported:
                self._stop_reported = True
                logger.info(f"Stop requested; halted at tick {self.tick}")
                self.bus.publish(TraceEvent(EventType.RUN_STOPPED, self.tick, {'tick': self.tick}))
            return False

        t0 = time.perf_counter()
        field_snap, nn, pending = self._phase_field()
        t1 = time.perf_counter()
        self._map(lambda i: self._phase_memory(i, field_snap, pending[i]), list(range(len(self.entities))))
        t2 = time.perf_counter()
        self._map(lambda i: self._phase_derive(i, field_snap, pending[i]), list(range(len(self.entities))))
        t3 = time.perf_counter()
        positions = self.positions()
        self._map(lambda i: self._phase_integrate(i, positions, field_snap, nn, pending[i]),
                  list(range(len(self.entities))))
        t4 = time.perf_counter()
        self._commit(field_snap, pending)
        logger.debug(
            f"tick {self.tick - 1}: field={t1 - t0:.4f}s memory={t2 - t1:.4f}s "
            f"derive={t3 - t2:.4f}s integrate={t4 - t3:.4f}s commit={time.perf_counter() - t4:.4f}s"
        )
        return True

    def _phase_field(self):
        cfg = self.config
        positions = self.positions()
        weights = np.array([e.attractiveness for e in self.entities], dtype=np.float64)
        snap = compute_field(
            positions,
            self.kernel,
            cfg.attraction.sigma,
            cfg.attraction.lam,
            weights=weights,
            bounds=self._pair_bounds,
            block_size=cfg.attraction.block_size,
            executor=self._executor,
        )
        nn, nn_dist = SpatialIndex(positions, self.bounds, self.periodic).nearest_all()
        pending = []
        for i in range(len(self.entities)):
            d = float(nn_dist[i]) if nn[i] >= 0 else None
            pending.append(_Pending(drives=compute_drives(d, snap.prompt[i], cfg.geometry.min_distance)))
        for i, j in snap.degenerate_pairs:
            pending[i].degeneracies.append(('coincident_pair', f"entity {j} within min_distance"))
        return snap, nn, pending

    def _phase_memory(self, i: int, snap: FieldSnapshot, p: _Pending) -> None:
        cfg = self.config.memory
        entity = self.entities[i]
        potential = float(snap.potential[i])
        delta = None if entity.last_potential is None else potential - entity.last_potential
        event = encode_event(
            entity.velocity, snap.prompt[i], potential, delta, p.drives,
            cfg.event_dim, cfg.stimulus_scale, self._stimulus[i],
        )
        # labelled before the graph is touched so a failure leaves nothing half-applied
        try:
            valence = int(self.labeler(entity.id, self.tick, delta, event))
        except Exception as e:
            valence = 0
            p.degeneracies.append(('labeler_error', f"labeler raised {type(e).__name__}: {e}; valence 0 used"))
        if valence not in (-1, 0, 1):
            p.degeneracies.append(('labeler_error', f"labeler returned {valence}; valence 0 used"))
            valence = 0
        entity.memory.decay(cfg.decay)
        p.event = event
        p.record = entity.memory.record(event, self.tick, valence)
        if p.record.degenerate:
            p.degeneracies.append(('zero_norm_event', f"node {p.record.node} has a zero-norm event"))

    def _phase_derive(self, i: int, snap: FieldSnapshot, p: _Pending) -> None:
        cfg = self.config
        entity = self.entities[i]
        graph = entity.memory
        rec = p.record
        entity.state.update(snap.prompt[i], graph.centroid(rec.cluster_ids[0]))
        delta = experience_delta(rec.signal_deltas, graph.cluster_weights(), cfg.essence.experience_scale)
        entity.essence.update(delta)
        entity.responses = self.policy.respond(graph, entity.essence.influence_factor())
        entity.attractiveness = attractiveness(entity.responses, cfg.policy.response_coupling)

    def _phase_integrate(self, i: int, positions: np.ndarray, snap: FieldSnapshot, nn: np.ndarray,
                         p: _Pending) -> None:
        dyn = self.config.dynamics
        entity = self.entities[i]
        offsets = displacement(positions, positions[i], self._pair_bounds)
        nearest = offsets[int(nn[i])] if nn[i] >= 0 else None
        acc = compute_acceleration(snap.prompt[i], snap.attention[i], offsets, p.drives.preserve, nearest, dyn)
        p.motion = integrate_motion(entity.position, entity.velocity, acc, dyn, heading=entity.pose.orientation)
        if p.motion.injected:
            logger.debug(f"entity {i}: zero velocity at tick {self.tick}, restarted along heading")
            p.degeneracies.append(('zero_velocity', "velocity rebuilt along heading"))

    def _commit(self, snap: FieldSnapshot, pending: List[_Pending]) -> None:
        tick = self.tick
        for entity, p in zip(self.entities, pending):
            m = p.motion
            entity.pose.position = apply_periodic_bounds(m.position, self.bounds, self.periodic)
            entity.pose.orientation = m.heading
            entity.velocity = m.velocity
            entity.drives = p.drives
            entity.last_potential = float(snap.potential[entity.id])
        self.last_field = snap
        self.tick = tick + 1

        # the tick is committed; publication below only reports it
        for entity, p in zip(self.entities, pending):
            for kind, detail in p.degeneracies:
                logger.warning(f"numeric degeneracy at tick {tick}, entity {entity.id}: {kind} ({detail})")
                self.bus.publish(TraceEvent(EventType.NUMERIC_DEGENERACY, tick, {
                    'entity_id': entity.id, 'tick': tick, 'kind': kind, 'detail': detail,
                }))
            if p.record is not None and p.record.budget_exceeded:
                size = entity.memory.size
                logger.warning(f"entity {entity.id} memory graph exceeded soft budget: {size} nodes")
                self.bus.publish(TraceEvent(EventType.RESOURCE_EXHAUSTION, tick, {
                    'entity_id': entity.id, 'tick': tick, 'memory_size': size,
                    'soft_budget': self.config.memory.soft_node_budget,
                }))

        for entity in self.entities:
            trace = self._trace(entity, snap, tick)
            self.bus.publish(TraceEvent(EventType.TICK_TRACE, tick, trace.as_dict()))

    def _trace(self, entity: Entity, snap: FieldSnapshot, tick: int) -> TickTrace:
        graph = entity.memory
        signals = graph.signals()
        return TickTrace(
            tick=tick,
            entity_id=entity.id,
            position=[float(x) for x in entity.position],
            velocity=[float(x) for x in entity.velocity],
            speed=entity.speed,
            essence=float(entity.essence.value),
            drive_preserve=float(entity.drives.preserve),
            drive_curiosity=float(entity.drives.curiosity),
            potential=float(snap.potential[entity.id]),
            memory_size=graph.size,
            cluster_count=graph.cluster_count,
            state_norm=entity.state.norm(),
            activation_entropy=graph.activation_entropy(),
            signal_mean_abs=float(np.mean(np.abs(signals))) if signals.size else 0.0,
            signal_std=float(np.std(signals)) if signals.size else 0.0,
            responses={dim.value: r.as_dict() for dim, r in entity.responses.items()},
        )


__all__ = ['Simulation', 'TickTrace', 'encode_event', 'potential_valence']
