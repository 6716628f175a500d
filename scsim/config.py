"""
scsim Configuration Module

This module provides the structured configuration object consumed by the
simulation core. It supports loading from JSON files, environment variables,
and programmatic configuration.

Usage:
    # Get the global config (auto-loads from environment)
    from scsim.config import get_sim_config
    config = get_sim_config()

    # Load from a JSON file
    from scsim.config import load_sim_config
    config = load_sim_config('path/to/config.json')

    # Programmatic configuration
    from scsim.config import SimConfig, EssenceConfig, set_sim_config
    config = SimConfig(essence=EssenceConfig(locked=True, initial=9.0))
    set_sim_config(config)

Environment Variables:
    SCSIM_GEOMETRY_DIMENSION - World dimensionality (2 or 3)
    SCSIM_ATTRACTION_SIGMA - Kernel bandwidth
    SCSIM_DYNAMICS_MIN_SPEED - Velocity floor
    SCSIM_SIMULATION_SEED - Root seed
    ... and more (see SimConfig.from_env() for full list)
"""
from __future__ import annotations

import copy
import json
import logging
import os as _os
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional

logger = logging.getLogger('scsim.config')


class ConfigurationError(ValueError):
    """Fatal, init-time configuration problem. Never raised mid-run."""

    def __init__(self, errors):
        if isinstance(errors, str):
            errors = [errors]
        self.errors: List[str] = list(errors)
        super().__init__("; ".join(self.errors))


# =============================================================================
# Section Configurations
# =============================================================================

@dataclass
class GeometryConfig:
    """
    World geometry.

    Attributes:
        dimension: 2 for a plane, 3 for a volume.
        bounds: World extent per axis (one value per dimension).
        periodic: Wrap positions and use minimum-image displacements.
        min_distance: Pair distances below this are treated as coincident.
    """
    dimension: int = 2
    bounds: List[float] = field(default_factory=lambda: [10.0, 10.0])
    periodic: bool = True
    min_distance: float = 1e-6


@dataclass
class AttractionConfig:
    """
    Attraction field parameters.

    Attributes:
        kernel: Registered kernel name ('gaussian' or 'inverse_distance').
        sigma: Kernel bandwidth.
        lam: Selectivity used to turn attraction scores into the
            neighbour-attention distribution.
        softening: Offset added to distances by the inverse-distance kernel.
        block_size: Number of entity rows evaluated per field block.
    """
    kernel: str = 'gaussian'
    sigma: float = 1.0
    lam: float = 0.5
    softening: float = 1e-6
    block_size: int = 256


@dataclass
class StateConfig:
    memory_dim: int = 100
    context_dim: int = 20
    trait_dim: int = 10
    decay_alpha: float = 0.95
    beta_attention: float = 0.5
    gamma_memory: float = 0.3


@dataclass
class MemoryConfig:
    """
    Memory graph and belief-cluster parameters.

    Attributes:
        event_dim: Length of every recorded event vector.
        decay: Per-tick activation multiplier (1.0 disables decay).
        tau: Similarity threshold for joining an existing cluster.
        disambiguation_margin: When the best two clusters score within this
            margin, member nodes are compared directly.
        reactivation_threshold: Minimum cosine for a stored node to be
            reactivated by a new event.
        reactivation_gain: Fraction of the missing activation restored on
            reactivation.
        stimulus_scale: Std of the seeded stimulus noise in event vectors.
        valence_deadband: |delta potential| below this yields valence 0.
        soft_node_budget: Per-entity node count that triggers a
            resource-exhaustion trace event.
    """
    event_dim: int = 16
    decay: float = 0.95
    tau: float = 0.7
    disambiguation_margin: float = 0.02
    reactivation_threshold: float = 0.98
    reactivation_gain: float = 0.5
    stimulus_scale: float = 0.1
    valence_deadband: float = 1e-3
    soft_node_budget: int = 1_000_000


@dataclass
class DynamicsConfig:
    dt: float = 0.01
    min_speed: float = 0.05
    damping: float = 0.99
    accel_gain: float = 0.1
    curiosity_gain: float = 0.05
    preserve_gain: float = 0.01
    preserve_cap: float = 10.0
    initial_speed: float = 0.1


@dataclass
class EssenceConfig:
    """
    Essence index parameters.

    Attributes:
        baseline: Neutral value the index relaxes toward.
        decay: Relaxation rate toward the baseline per tick.
        experience_scale: Gain applied to the per-tick experience delta.
        initial: Starting value (None starts at the baseline).
        locked: Hold the index constant (ablation).
    """
    baseline: float = 5.0
    decay: float = 0.1
    experience_scale: float = 1.0
    initial: Optional[float] = None
    locked: bool = False


@dataclass
class PolicyConfig:
    kind: str = 'deterministic'
    tie_epsilon: float = 0.05
    response_coupling: float = 0.1


@dataclass
class SimulationParams:
    num_entities: int = 10
    num_steps: int = 1000
    seed: int = 42
    workers: int = 1
    trace_log: Optional[str] = None


_SECTIONS = {
    'geometry': GeometryConfig,
    'attraction': AttractionConfig,
    'state': StateConfig,
    'memory': MemoryConfig,
    'dynamics': DynamicsConfig,
    'essence': EssenceConfig,
    'policy': PolicyConfig,
    'simulation': SimulationParams,
}


# =============================================================================
# Master Configuration
# =============================================================================

@dataclass
class SimConfig:
    """
    Master configuration for the simulation core.

    Example:
        config = SimConfig.from_json('config.json')
        config = SimConfig.from_env()
        config = SimConfig.default_3d()
    """
    geometry: GeometryConfig = field(default_factory=GeometryConfig)
    attraction: AttractionConfig = field(default_factory=AttractionConfig)
    state: StateConfig = field(default_factory=StateConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    dynamics: DynamicsConfig = field(default_factory=DynamicsConfig)
    essence: EssenceConfig = field(default_factory=EssenceConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    simulation: SimulationParams = field(default_factory=SimulationParams)
    name: str = 'default'

    @classmethod
    def default_2d(cls) -> 'SimConfig':
        return cls(name='default-2d')

    @classmethod
    def default_3d(cls) -> 'SimConfig':
        return cls(
            geometry=GeometryConfig(dimension=3, bounds=[10.0, 10.0, 10.0]),
            name='default-3d',
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SimConfig':
        kwargs: Dict[str, Any] = {}
        for section, section_cls in _SECTIONS.items():
            raw = data.get(section, {}) or {}
            if not isinstance(raw, dict):
                raise ConfigurationError(f"section '{section}' must be a mapping")
            known = {f.name for f in fields(section_cls)}
            unknown = sorted(set(raw) - known)
            if unknown:
                raise ConfigurationError(f"unknown keys in '{section}': {', '.join(unknown)}")
            kwargs[section] = section_cls(**raw)
        if 'name' in data:
            kwargs['name'] = str(data['name'])
        return cls(**kwargs)

    @classmethod
    def from_json(cls, path: str) -> 'SimConfig':
        """
        Load configuration from a JSON file.

        Raises:
            FileNotFoundError: If the file does not exist.
            json.JSONDecodeError: If the file is not valid JSON.
            ConfigurationError: If a section carries unknown keys.
        """
        if not _os.path.exists(path):
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        return cls.from_dict(data)

    @classmethod
    def from_env(cls) -> 'SimConfig':
        """
        Load configuration from environment variables.

        Environment variables use the SCSIM_ prefix followed by the section
        and field name in uppercase, separated by underscores.

        Examples:
            SCSIM_GEOMETRY_PERIODIC=false
            SCSIM_MEMORY_TAU=0.8
            SCSIM_SIMULATION_NUM_ENTITIES=64
        """
        kwargs = {
            section: section_cls(**_load_from_env(f'SCSIM_{section.upper()}', section_cls))
            for section, section_cls in _SECTIONS.items()
        }
        return cls(**kwargs)

    def copy(self) -> 'SimConfig':
        return copy.deepcopy(self)

    def to_json(self, path: str) -> None:
        parent_dir = _os.path.dirname(path)
        if parent_dir:
            _os.makedirs(parent_dir, exist_ok=True)

        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {section: asdict(getattr(self, section)) for section in _SECTIONS}
        data['name'] = self.name
        return data


# =============================================================================
# Environment Variable Loading
# =============================================================================

def _load_from_env(prefix: str, config_class: type) -> Dict[str, Any]:
    """
    Load configuration values from environment variables.

    Args:
        prefix: Environment variable prefix (e.g., 'SCSIM_MEMORY').
        config_class: Dataclass type to get field information.

    Returns:
        Dictionary of field name to value for fields found in environment.
    """
    result: Dict[str, Any] = {}

    for field_info in fields(config_class):
        env_key = f"{prefix}_{field_info.name}".upper()
        env_val = _os.environ.get(env_key)

        if env_val is None:
            continue
        try:
            # annotations are strings under `from __future__ import annotations`
            field_type = field_info.type
            if isinstance(field_type, str):
                field_type = field_type.lower()

            if field_type in (bool, 'bool'):
                result[field_info.name] = env_val.lower() in ('true', '1', 'yes', 'on')
            elif field_type in (int, 'int'):
                result[field_info.name] = int(env_val)
            elif field_type in (float, 'float'):
                result[field_info.name] = float(env_val)
            elif field_type in ('optional[float]',):
                result[field_info.name] = None if env_val.lower() in ('', 'none') else float(env_val)
            elif field_type in ('list[float]',):
                result[field_info.name] = [float(v) for v in env_val.split(',') if v.strip()]
            elif field_type in ('optional[str]',):
                result[field_info.name] = env_val or None
            else:
                result[field_info.name] = env_val
        except (ValueError, TypeError) as e:
            logger.warning(f"Failed to parse {env_key}={env_val}: {e}")

    return result


# =============================================================================
# Global Configuration Management
# =============================================================================

_global_sim_config: Optional[SimConfig] = None


def get_sim_config() -> SimConfig:
    """
    Get the global configuration, loading it from the environment on first use.
    """
    global _global_sim_config
    if _global_sim_config is None:
        _global_sim_config = SimConfig.from_env()
    return _global_sim_config


def set_sim_config(config: Optional[SimConfig]) -> None:
    global _global_sim_config
    _global_sim_config = config


def load_sim_config(path: str) -> SimConfig:
    """Load configuration from a file and set it as the global configuration."""
    config = SimConfig.from_json(path)
    set_sim_config(config)
    return config


# =============================================================================
# Configuration Validation
# =============================================================================

def min_event_dim(dimension: int) -> int:
    """Smallest event length that fits the channel/prompt/velocity/potential layout."""
    return 3 + 2 * int(dimension) + 1


def validate_sim_config(config: Optional[SimConfig] = None) -> bool:
    """
    Validate configuration values.

    Collects every violation, logs each one, then raises.

    Args:
        config: SimConfig instance to validate. If None, validates global config.

    Returns:
        True when the configuration is valid.

    Raises:
        ConfigurationError: Listing every violation found.
    """
    # late import: the registries live next to their implementations
    from scsim.attraction import KERNELS
    from scsim.policy import POLICIES

    cfg = config or get_sim_config()
    errors = []

    geo = cfg.geometry
    if geo.dimension not in (2, 3):
        errors.append("geometry.dimension must be 2 or 3")
    if len(geo.bounds) != geo.dimension:
        errors.append("geometry.bounds must have one entry per dimension")
    if any(float(b) <= 0 for b in geo.bounds):
        errors.append("geometry.bounds must be positive")
    if geo.min_distance <= 0:
        errors.append("geometry.min_distance must be > 0")

    att = cfg.attraction
    if att.kernel not in KERNELS:
        errors.append(f"attraction.kernel '{att.kernel}' is not registered")
    if att.sigma <= 0:
        errors.append("attraction.sigma must be > 0")
    if att.lam < 0:
        errors.append("attraction.lam must be >= 0")
    if att.softening <= 0:
        errors.append("attraction.softening must be > 0")
    if att.block_size < 1:
        errors.append("attraction.block_size must be >= 1")

    st = cfg.state
    if st.memory_dim < 1 or st.context_dim < 1 or st.trait_dim < 0:
        errors.append("state dimensions must be positive")

    mem = cfg.memory
    if mem.event_dim < min_event_dim(geo.dimension):
        errors.append(
            f"memory.event_dim must be >= {min_event_dim(geo.dimension)} for dimension {geo.dimension}"
        )
    if not (0.0 < mem.decay <= 1.0):
        errors.append("memory.decay must be in (0, 1]")
    if not (0.0 <= mem.tau <= 1.0):
        errors.append("memory.tau must be in [0, 1]")
    if mem.disambiguation_margin < 0:
        errors.append("memory.disambiguation_margin must be >= 0")
    if not (0.0 <= mem.reactivation_gain <= 1.0):
        errors.append("memory.reactivation_gain must be in [0, 1]")
    if mem.soft_node_budget < 1:
        errors.append("memory.soft_node_budget must be >= 1")

    dyn = cfg.dynamics
    if dyn.dt <= 0:
        errors.append("dynamics.dt must be > 0")
    if dyn.min_speed <= 0:
        errors.append("dynamics.min_speed must be > 0")
    if dyn.damping <= 0:
        errors.append("dynamics.damping must be > 0")
    if dyn.preserve_cap < 0:
        errors.append("dynamics.preserve_cap must be >= 0")

    ess = cfg.essence
    if not (0.0 <= ess.baseline <= 10.0):
        errors.append("essence.baseline must be in [0, 10]")
    if ess.initial is not None and not (0.0 <= ess.initial <= 10.0):
        errors.append("essence.initial must be in [0, 10]")
    if not (0.0 <= ess.decay <= 1.0):
        errors.append("essence.decay must be in [0, 1]")

    pol = cfg.policy
    if pol.kind not in POLICIES:
        errors.append(f"policy.kind '{pol.kind}' is not registered")
    if pol.tie_epsilon < 0:
        errors.append("policy.tie_epsilon must be >= 0")

    sim = cfg.simulation
    if sim.num_entities < 1:
        errors.append("simulation.num_entities must be >= 1")
    if sim.num_steps < 0:
        errors.append("simulation.num_steps must be >= 0")
    if sim.workers < 0:
        errors.append("simulation.workers must be >= 0")

    if errors:
        for e in errors:
            logger.error(f"Config validation error: {e}")
        raise ConfigurationError(errors)

    return True


__all__ = [
    'ConfigurationError',
    'GeometryConfig',
    'AttractionConfig',
    'StateConfig',
    'MemoryConfig',
    'DynamicsConfig',
    'EssenceConfig',
    'PolicyConfig',
    'SimulationParams',
    'SimConfig',
    'get_sim_config',
    'set_sim_config',
    'load_sim_config',
    'min_event_dim',
    'validate_sim_config',
]
