import sys
import unittest
from pathlib import Path

import numpy as np

# Allow direct execution: `python tests/test_dynamics.py`
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from scsim.config import DynamicsConfig, StateConfig
from scsim.dynamics import MotionState, classify, compute_acceleration, integrate_motion
from scsim.state import EntityState


class IntegrationTests(unittest.TestCase):
    def setUp(self):
        self.cfg = DynamicsConfig(dt=0.01, min_speed=0.05, damping=0.99)

    def test_damped_update(self):
        res = integrate_motion(np.zeros(2), np.array([1.0, 0.0]), np.zeros(2), self.cfg)
        np.testing.assert_allclose(res.velocity, [0.99, 0.0])
        np.testing.assert_allclose(res.position, [0.0099, 0.0])
        self.assertEqual(res.pre_floor_state, MotionState.MOVING)
        self.assertFalse(res.injected)

    def test_acceleration_is_applied_before_damping(self):
        res = integrate_motion(np.zeros(2), np.array([1.0, 0.0]), np.array([0.0, 10.0]), self.cfg)
        np.testing.assert_allclose(res.velocity, [0.99, 0.099])

    def test_slow_velocity_is_rescaled_along_direction(self):
        res = integrate_motion(np.zeros(3), np.array([0.0, 0.01, 0.0]), np.zeros(3), self.cfg)
        self.assertEqual(res.pre_floor_state, MotionState.STALLED)
        self.assertAlmostEqual(float(np.linalg.norm(res.velocity)), 0.05, places=12)
        self.assertGreaterEqual(float(np.linalg.norm(res.velocity)), 0.05)
        np.testing.assert_allclose(res.heading, [0.0, 1.0, 0.0])

    def test_zero_velocity_uses_heading(self):
        res = integrate_motion(np.zeros(2), np.zeros(2), np.zeros(2), self.cfg, heading=np.array([0.0, -2.0]))
        self.assertTrue(res.injected)
        np.testing.assert_allclose(res.velocity, [0.0, -0.05])
        self.assertEqual(classify(res.velocity, 0.05), MotionState.MOVING)

    def test_zero_velocity_without_heading_uses_first_axis(self):
        res = integrate_motion(np.zeros(3), np.zeros(3), np.zeros(3), self.cfg)
        np.testing.assert_allclose(res.velocity, [0.05, 0.0, 0.0])

    def test_non_finite_velocity_is_rebuilt_at_floor(self):
        for bad in (np.array([np.nan, 0.0]), np.array([np.inf, 1.0]), np.array([-np.inf, np.inf])):
            res = integrate_motion(np.zeros(2), bad, np.zeros(2), self.cfg, heading=np.array([0.0, 1.0]))
            self.assertTrue(res.injected)
            np.testing.assert_allclose(res.velocity, [0.0, 0.05])
            self.assertTrue(np.all(np.isfinite(res.position)))
        res = integrate_motion(np.zeros(2), np.array([1.0, 0.0]), np.array([np.nan, 0.0]), self.cfg,
                               heading=np.array([np.inf, 0.0]))
        np.testing.assert_allclose(res.velocity, [0.05, 0.0])

    def test_floor_holds_for_random_states(self):
        rng = np.random.default_rng(21)
        for _ in range(2000):
            d = int(rng.integers(2, 4))
            scale = 10.0 ** rng.uniform(-12, 1)
            v = rng.normal(size=d) * scale
            a = rng.normal(size=d) * scale
            res = integrate_motion(rng.normal(size=d), v, a, self.cfg)
            self.assertGreaterEqual(float(np.linalg.norm(res.velocity)), self.cfg.min_speed)

    def test_inputs_are_not_modified(self):
        v = np.array([0.001, 0.0])
        x = np.array([1.0, 1.0])
        integrate_motion(x, v, np.zeros(2), self.cfg)
        np.testing.assert_array_equal(v, [0.001, 0.0])
        np.testing.assert_array_equal(x, [1.0, 1.0])


class AccelerationTests(unittest.TestCase):
    def setUp(self):
        self.cfg = DynamicsConfig(accel_gain=0.1, curiosity_gain=0.05, preserve_gain=0.01, preserve_cap=10.0)

    def test_isolated_entity_follows_prompt(self):
        acc = compute_acceleration(np.array([1.0, -2.0]), np.zeros(1), np.zeros((1, 2)), 0.0, None, self.cfg)
        np.testing.assert_allclose(acc, [0.1, -0.2])

    def test_curiosity_pulls_toward_attended(self):
        offsets = np.array([[0.0, 0.0], [2.0, 0.0], [0.0, 4.0]])
        pi = np.array([0.0, 0.5, 0.5])
        acc = compute_acceleration(np.zeros(2), pi, offsets, 0.0, None, self.cfg)
        np.testing.assert_allclose(acc, [0.05, 0.1])

    def test_preserve_pushes_away_and_is_capped(self):
        acc = compute_acceleration(np.zeros(2), np.zeros(2), np.zeros((2, 2)), 2.0, np.array([3.0, 0.0]), self.cfg)
        np.testing.assert_allclose(acc, [-0.02, 0.0])
        capped = compute_acceleration(np.zeros(2), np.zeros(2), np.zeros((2, 2)), 1e6, np.array([0.0, 1.0]), self.cfg)
        np.testing.assert_allclose(capped, [0.0, -0.1])

    def test_coincident_neighbour_gives_no_push(self):
        acc = compute_acceleration(np.zeros(2), np.zeros(2), np.zeros((2, 2)), 1e6, np.zeros(2), self.cfg)
        np.testing.assert_array_equal(acc, [0.0, 0.0])


class EntityStateTests(unittest.TestCase):
    def test_update_law(self):
        cfg = StateConfig(memory_dim=4, context_dim=2, trait_dim=3, decay_alpha=0.5, beta_attention=1.0, gamma_memory=2.0)
        st = EntityState(cfg, traits=np.array([1.0, 2.0, 3.0, 4.0]))
        st.update(np.array([1.0, 1.0]), np.array([0.0, 0.0, 1.0, 1.0, 9.0]))
        np.testing.assert_allclose(st.memory, [1.0, 1.0, 2.0, 2.0])
        np.testing.assert_allclose(st.context, [0.5, 0.5])
        st.update(np.zeros(2), np.zeros(4))
        np.testing.assert_allclose(st.memory, [0.5, 0.5, 1.0, 1.0])
        np.testing.assert_allclose(st.context, [0.5, 0.5])
        np.testing.assert_array_equal(st.traits, [1.0, 2.0, 3.0])
        self.assertAlmostEqual(st.norm(), np.sqrt(2.5))

    def test_traits_are_read_only_and_copy_is_independent(self):
        st = EntityState(StateConfig(memory_dim=3, context_dim=2, trait_dim=2), traits=np.array([1.0, 2.0]))
        with self.assertRaises(ValueError):
            st.traits[0] = 5.0
        other = st.copy()
        other.memory[0] = 3.0
        self.assertEqual(st.memory[0], 0.0)
        self.assertEqual(other.dot(other), 9.0)


if __name__ == "__main__":
    unittest.main()
