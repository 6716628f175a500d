import json
import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

# Allow direct execution: `python tests/test_config.py`
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from scsim.config import (
    ConfigurationError,
    SimConfig,
    min_event_dim,
    set_sim_config,
    get_sim_config,
    validate_sim_config,
)
from scsim.simulation import Simulation


class ConfigValidationTests(unittest.TestCase):
    def test_defaults_are_valid(self):
        self.assertTrue(validate_sim_config(SimConfig.default_2d()))
        self.assertTrue(validate_sim_config(SimConfig.default_3d()))

    def test_collects_every_violation(self):
        cfg = SimConfig.default_2d()
        cfg.attraction.sigma = 0.0
        cfg.dynamics.dt = -1.0
        cfg.memory.tau = 1.5
        with self.assertLogs('scsim.config', level='ERROR'):
            with self.assertRaises(ConfigurationError) as ctx:
                validate_sim_config(cfg)
        msgs = ctx.exception.errors
        self.assertEqual(len(msgs), 3)
        self.assertTrue(any('sigma' in m for m in msgs))
        self.assertTrue(any('dt' in m for m in msgs))
        self.assertTrue(any('tau' in m for m in msgs))

    def test_dimension_and_bounds_mismatch(self):
        cfg = SimConfig.default_2d()
        cfg.geometry.dimension = 3
        with self.assertLogs('scsim.config', level='ERROR'):
            with self.assertRaises(ConfigurationError) as ctx:
                validate_sim_config(cfg)
        self.assertTrue(any('bounds' in m for m in ctx.exception.errors))

    def test_event_dim_must_fit_layout(self):
        self.assertEqual(min_event_dim(2), 8)
        self.assertEqual(min_event_dim(3), 10)
        cfg = SimConfig.default_3d()
        cfg.memory.event_dim = 9
        with self.assertLogs('scsim.config', level='ERROR'):
            with self.assertRaises(ConfigurationError):
                validate_sim_config(cfg)

    def test_unknown_kernel_and_policy(self):
        cfg = SimConfig.default_2d()
        cfg.attraction.kernel = 'cubic'
        cfg.policy.kind = 'learned'
        with self.assertLogs('scsim.config', level='ERROR'):
            with self.assertRaises(ConfigurationError) as ctx:
                validate_sim_config(cfg)
        self.assertEqual(len(ctx.exception.errors), 2)

    def test_simulation_refuses_invalid_config(self):
        cfg = SimConfig.default_2d()
        cfg.dynamics.min_speed = 0.0
        with self.assertLogs('scsim.config', level='ERROR'):
            with self.assertRaises(ConfigurationError):
                Simulation(cfg)


class ConfigLoadingTests(unittest.TestCase):
    def tearDown(self):
        set_sim_config(None)

    def test_json_roundtrip(self):
        cfg = SimConfig.default_3d()
        cfg.memory.tau = 0.8
        cfg.essence.locked = True
        cfg.essence.initial = 9.0
        with tempfile.TemporaryDirectory() as td:
            path = os.path.join(td, 'sub', 'cfg.json')
            cfg.to_json(path)
            loaded = SimConfig.from_json(path)
        self.assertEqual(loaded.to_dict(), cfg.to_dict())
        self.assertEqual(loaded.geometry.dimension, 3)

    def test_unknown_key_is_rejected(self):
        with self.assertRaises(ConfigurationError):
            SimConfig.from_dict({'memory': {'tau': 0.5, 'theta': 1.0}})

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            SimConfig.from_json(os.path.join(tempfile.gettempdir(), 'no_such_scsim_config.json'))

    def test_partial_dict_keeps_defaults(self):
        cfg = SimConfig.from_dict({'simulation': {'num_entities': 3}, 'name': 'small'})
        self.assertEqual(cfg.simulation.num_entities, 3)
        self.assertEqual(cfg.simulation.seed, 42)
        self.assertEqual(cfg.name, 'small')

    def test_env_loading(self):
        env = {
            'SCSIM_MEMORY_TAU': '0.8',
            'SCSIM_GEOMETRY_PERIODIC': 'false',
            'SCSIM_GEOMETRY_BOUNDS': '5,6',
            'SCSIM_SIMULATION_NUM_ENTITIES': '7',
            'SCSIM_ESSENCE_INITIAL': '9',
            'SCSIM_ATTRACTION_KERNEL': 'inverse_distance',
        }
        with mock.patch.dict(os.environ, env):
            cfg = SimConfig.from_env()
        self.assertAlmostEqual(cfg.memory.tau, 0.8)
        self.assertFalse(cfg.geometry.periodic)
        self.assertEqual(cfg.geometry.bounds, [5.0, 6.0])
        self.assertEqual(cfg.simulation.num_entities, 7)
        self.assertEqual(cfg.essence.initial, 9.0)
        self.assertEqual(cfg.attraction.kernel, 'inverse_distance')

    def test_env_parse_failure_is_ignored(self):
        with mock.patch.dict(os.environ, {'SCSIM_DYNAMICS_DT': 'fast'}):
            with self.assertLogs('scsim.config', level='WARNING'):
                cfg = SimConfig.from_env()
        self.assertEqual(cfg.dynamics.dt, 0.01)

    def test_global_config(self):
        cfg = SimConfig(name='global-test')
        set_sim_config(cfg)
        self.assertIs(get_sim_config(), cfg)

    def test_copy_is_deep(self):
        cfg = SimConfig.default_2d()
        other = cfg.copy()
        other.geometry.bounds[0] = 99.0
        self.assertEqual(cfg.geometry.bounds[0], 10.0)
        self.assertEqual(json.loads(json.dumps(cfg.to_dict()))['geometry']['bounds'], [10.0, 10.0])


if __name__ == "__main__":
    unittest.main()
