import sys
import unittest
from pathlib import Path

import numpy as np

# Allow direct execution: `python tests/test_simulation.py`
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from scsim.bus import EventType, TraceBus
from scsim.config import SimConfig, min_event_dim
from scsim.policy import Dimension
from scsim.rng import RNGRegistry
from scsim.simulation import Simulation, encode_event, potential_valence
from scsim.essence import BaselineDrives


def _small_config(n=4, seed=7, **overrides) -> SimConfig:
    cfg = SimConfig.default_2d()
    cfg.simulation.num_entities = n
    cfg.simulation.seed = seed
    cfg.geometry.bounds = [4.0, 4.0]
    for key, value in overrides.items():
        section, name = key.split('__')
        setattr(getattr(cfg, section), name, value)
    return cfg


def _collect(bus: TraceBus, name: str = 'test'):
    bus.register_module(name)
    return lambda: bus.receive_all(name)


class ScenarioTests(unittest.TestCase):
    def test_lone_entity_settles_at_speed_floor(self):
        cfg = _small_config(
            n=1,
            memory__decay=1.0,
            dynamics__min_speed=0.05,
            dynamics__damping=0.99,
            dynamics__dt=0.01,
            dynamics__initial_speed=0.051,
        )
        sim = Simulation(cfg)
        drain = _collect(sim.bus)
        self.assertEqual(sim.run(10), 10)
        speeds = [e.payload['speed'] for e in drain() if e.type is EventType.TICK_TRACE]
        self.assertEqual(len(speeds), 10)
        self.assertAlmostEqual(speeds[0], 0.051 * 0.99, places=12)
        for s in speeds[1:]:
            self.assertAlmostEqual(s, 0.05, places=12)
            self.assertGreaterEqual(s, 0.05)
        snap = sim.query(0)
        self.assertAlmostEqual(snap.speed, 0.05, places=12)
        self.assertEqual(snap.drive_preserve, 0.0)
        self.assertEqual(snap.drive_curiosity, 0.0)

    def test_locked_essence_stays_constant(self):
        cfg = _small_config(n=3, essence__locked=True, essence__initial=9.0)
        sim = Simulation(cfg)
        drain = _collect(sim.bus)
        sim.run(1000)
        essences = {e.payload['essence'] for e in drain() if e.type is EventType.TICK_TRACE}
        self.assertEqual(essences, {9.0})
        self.assertTrue(all(s.essence == 9.0 for s in sim.snapshot()))
        # the run had varying affective input
        self.assertTrue(any(e.memory.cluster_count > 1 for e in sim.entities))

    def test_speed_floor_and_bounds_hold_every_tick(self):
        cfg = _small_config(n=6, dynamics__damping=0.5, dynamics__min_speed=0.2)
        sim = Simulation(cfg)
        drain = _collect(sim.bus)
        sim.run(40)
        for ev in drain():
            if ev.type is EventType.TICK_TRACE:
                self.assertGreaterEqual(ev.payload['speed'], 0.2)
                self.assertTrue(all(0.0 <= x < 4.0 for x in ev.payload['position']))
                self.assertTrue(0.0 <= ev.payload['essence'] <= 10.0)

    def test_memory_grows_one_node_per_tick(self):
        sim = Simulation(_small_config(n=3))
        for t in range(1, 16):
            sim.advance_one_tick()
            self.assertTrue(all(e.memory.size == t for e in sim.entities))
        self.assertEqual(sim.tick, 15)

    def test_three_dimensional_world(self):
        cfg = SimConfig.default_3d()
        cfg.simulation.num_entities = 5
        sim = Simulation(cfg)
        sim.run(5)
        pos = sim.positions()
        self.assertEqual(pos.shape, (5, 3))
        self.assertTrue(np.all((pos >= 0.0) & (pos < 10.0)))


class DeterminismTests(unittest.TestCase):
    def _fingerprint(self, sim):
        clusters = [[n.cluster_id for n in e.memory.iter_nodes()] for e in sim.entities]
        signals = [e.memory.signals().copy() for e in sim.entities]
        return sim.positions(), sim.velocities(), clusters, signals, [e.essence.value for e in sim.entities]

    def test_same_seed_same_trajectory(self):
        a = Simulation(_small_config(n=6, seed=3))
        b = Simulation(_small_config(n=6, seed=3))
        a.run(30)
        b.run(30)
        fa, fb = self._fingerprint(a), self._fingerprint(b)
        np.testing.assert_array_equal(fa[0], fb[0])
        np.testing.assert_array_equal(fa[1], fb[1])
        self.assertEqual(fa[2], fb[2])
        for sa, sb in zip(fa[3], fb[3]):
            np.testing.assert_array_equal(sa, sb)
        self.assertEqual(fa[4], fb[4])

    def test_worker_pool_matches_inline(self):
        inline = Simulation(_small_config(n=6, seed=5))
        with Simulation(_small_config(n=6, seed=5, simulation__workers=4)) as pooled:
            inline.run(20)
            pooled.run(20)
            fi, fp = self._fingerprint(inline), self._fingerprint(pooled)
        np.testing.assert_array_equal(fi[0], fp[0])
        self.assertEqual(fi[2], fp[2])
        self.assertEqual(fi[4], fp[4])

    def test_different_seed_differs(self):
        a = Simulation(_small_config(n=4, seed=1))
        b = Simulation(_small_config(n=4, seed=2))
        self.assertFalse(np.array_equal(a.positions(), b.positions()))

    def test_rng_registry_is_order_independent(self):
        r1 = RNGRegistry(9)
        r2 = RNGRegistry(9)
        r1.get('a')
        x = r1.get('b').normal(size=3)
        y = r2.get('b').normal(size=3)
        np.testing.assert_array_equal(x, y)
        self.assertFalse(np.array_equal(RNGRegistry(9).entity('k', 0).normal(size=3),
                                        RNGRegistry(9).entity('k', 1).normal(size=3)))


class DegeneracyTests(unittest.TestCase):
    def test_coincident_entities_are_reported_not_fatal(self):
        sim = Simulation(_small_config(n=2))
        sim.entities[1].pose.position = sim.entities[0].position.copy()
        drain = _collect(sim.bus)
        with self.assertLogs('scsim.simulation', level='WARNING'):
            self.assertTrue(sim.advance_one_tick())
        events = drain()
        kinds = [e.payload['kind'] for e in events if e.type is EventType.NUMERIC_DEGENERACY]
        self.assertEqual(kinds.count('coincident_pair'), 2)
        self.assertTrue(np.all(np.isfinite(sim.positions())))
        self.assertTrue(np.all(np.isfinite(sim.velocities())))
        sim.run(5)
        self.assertTrue(np.all(np.isfinite(sim.positions())))

    def test_budget_crossing_is_reported(self):
        sim = Simulation(_small_config(n=1, memory__soft_node_budget=5))
        drain = _collect(sim.bus)
        with self.assertLogs('scsim.simulation', level='WARNING'):
            sim.run(6)
        ex = [e for e in drain() if e.type is EventType.RESOURCE_EXHAUSTION]
        self.assertEqual(len(ex), 1)
        self.assertEqual(ex[0].tick, 5)
        self.assertEqual(ex[0].payload['memory_size'], 6)
        self.assertEqual(sim.entities[0].memory.size, 6)


class ControlTests(unittest.TestCase):
    def test_stop_between_ticks_and_resume(self):
        sim = Simulation(_small_config(n=3))
        drain = _collect(sim.bus)

        def stopper(event):
            if event.type is EventType.TICK_TRACE and event.tick == 4:
                sim.request_stop()

        sim.bus.subscribe(stopper)
        self.assertEqual(sim.run(10), 5)
        self.assertEqual(sim.tick, 5)
        self.assertFalse(sim.advance_one_tick())
        events = drain()
        self.assertEqual(sum(1 for e in events if e.type is EventType.RUN_STOPPED), 1)
        # every entity got its trace for the last committed tick
        self.assertEqual(sum(1 for e in events if e.type is EventType.TICK_TRACE and e.tick == 4), 3)
        sim.bus.unsubscribe(stopper)
        sim.resume()
        self.assertEqual(sim.run(2), 2)
        self.assertEqual(sim.tick, 7)

    def test_failing_subscriber_does_not_split_the_tick(self):
        sim = Simulation(_small_config(n=3))
        sim.run(2)
        drain = _collect(sim.bus)
        before = sim.positions()

        def broken(event):
            if event.type is EventType.TICK_TRACE:
                raise ValueError('subscriber bug')

        sim.bus.subscribe(broken)
        with self.assertLogs('scsim.bus', level='WARNING'):
            self.assertTrue(sim.advance_one_tick())
        self.assertEqual(sim.tick, 3)
        self.assertIsNotNone(sim.last_field)
        self.assertFalse(np.array_equal(before, sim.positions()))
        self.assertEqual([e.memory.size for e in sim.entities], [3, 3, 3])
        sim.advance_one_tick()
        ticks = [e.tick for e in drain() if e.type is EventType.TICK_TRACE]
        self.assertEqual(ticks, [2, 2, 2, 3, 3, 3])

    def test_query_and_snapshot(self):
        sim = Simulation(_small_config(n=3))
        sim.run(2)
        snap = sim.query(1)
        self.assertEqual(snap.id, 1)
        self.assertEqual(len(snap.position), 2)
        self.assertEqual(snap.memory_size, 2)
        self.assertEqual([s.id for s in sim.snapshot()], [0, 1, 2])
        with self.assertRaises(KeyError):
            sim.query(3)
        # snapshots are copies
        before = sim.query(0).position
        sim.advance_one_tick()
        self.assertNotEqual(before, sim.query(0).position)

    def test_trace_payload(self):
        sim = Simulation(_small_config(n=2))
        drain = _collect(sim.bus)
        sim.advance_one_tick()
        traces = [e.payload for e in drain() if e.type is EventType.TICK_TRACE]
        self.assertEqual([t['entity_id'] for t in traces], [0, 1])
        expected = {
            'tick', 'entity_id', 'position', 'velocity', 'speed', 'essence', 'drive_preserve',
            'drive_curiosity', 'potential', 'memory_size', 'cluster_count', 'state_norm',
            'activation_entropy', 'signal_mean_abs', 'signal_std', 'responses',
        }
        self.assertEqual(set(traces[0]), expected)
        self.assertEqual(set(traces[0]['responses']), {d.value for d in Dimension})
        self.assertEqual(set(traces[0]['responses']['truth']), {'stance', 'cluster_id', 'signal'})

    def test_custom_labeler(self):
        calls = []

        def labeler(entity_id, tick, delta_potential, event):
            calls.append((entity_id, tick, delta_potential))
            return 1

        sim = Simulation(_small_config(n=2), labeler=labeler)
        sim.run(3)
        self.assertEqual([(c[0], c[1]) for c in calls], [(0, 0), (1, 0), (0, 1), (1, 1), (0, 2), (1, 2)])
        self.assertIsNone(calls[0][2])
        self.assertIsNotNone(calls[2][2])
        for e in sim.entities:
            self.assertTrue(np.all(e.memory.recompute_signals() >= 0.0))
            self.assertGreater(float(e.memory.signals().sum()), 0.0)

    def test_failing_labeler_falls_back_to_neutral_valence(self):
        def labeler(entity_id, tick, delta_potential, event):
            if tick == 1 and entity_id == 2:
                raise RuntimeError('label service down')
            return 7 if tick == 2 and entity_id == 0 else 1

        sim = Simulation(_small_config(n=3), labeler=labeler)
        drain = _collect(sim.bus)
        self.assertEqual(sim.run(3), 3)
        self.assertEqual(sim.tick, 3)
        self.assertEqual([e.memory.size for e in sim.entities], [3, 3, 3])
        self.assertEqual(sim.entities[2].memory.node(1).valence, 0)
        self.assertEqual(sim.entities[1].memory.node(1).valence, 1)
        self.assertEqual(sim.entities[0].memory.node(2).valence, 0)
        errors = [(e.tick, e.payload['entity_id']) for e in drain()
                  if e.type is EventType.NUMERIC_DEGENERACY and e.payload['kind'] == 'labeler_error']
        self.assertEqual(errors, [(1, 2), (2, 0)])

    def test_compact_memory(self):
        sim = Simulation(_small_config(n=2, memory__decay=0.5))
        sim.run(30)
        sizes = [e.memory.size for e in sim.entities]
        before = [e.memory.recompute_signals() for e in sim.entities]
        folded = sim.compact_memory(activation_floor=1e-3, min_similarity=0.0)
        self.assertGreaterEqual(folded, 0)
        self.assertEqual([e.memory.size for e in sim.entities], sizes)
        for e, b in zip(sim.entities, before):
            np.testing.assert_allclose(e.memory.recompute_signals(), b, rtol=1e-9, atol=1e-300)


class EventEncodingTests(unittest.TestCase):
    def test_layout(self):
        rng = np.random.default_rng(0)
        e = encode_event(
            velocity=np.array([0.0, 2.0]),
            prompt=np.array([0.0, 3.0]),
            potential=0.5,
            delta_potential=None,
            drives=BaselineDrives(preserve=1.0, curiosity=1.0),
            event_dim=12,
            stimulus_scale=0.0,
            rng=rng,
        )
        self.assertEqual(e.shape, (12,))
        np.testing.assert_allclose(e[:3], [1.0, 0.0, 0.0])
        np.testing.assert_allclose(e[3:5], [0.0, 1.0])
        np.testing.assert_allclose(e[5:7], [0.0, 1.0])
        self.assertAlmostEqual(e[7], np.tanh(0.5))
        np.testing.assert_array_equal(e[8:], np.zeros(4))
        self.assertEqual(min_event_dim(2), 8)

    def test_default_valence(self):
        self.assertEqual(potential_valence(0, 0, None, np.zeros(1)), 0)
        self.assertEqual(potential_valence(0, 1, 0.5, np.zeros(1)), 1)
        self.assertEqual(potential_valence(0, 1, -0.5, np.zeros(1)), -1)
        self.assertEqual(potential_valence(0, 1, 1e-4, np.zeros(1), deadband=1e-3), 0)


if __name__ == "__main__":
    unittest.main()
