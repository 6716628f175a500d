from scsim.config import (
    SimConfig,
    GeometryConfig,
    AttractionConfig,
    StateConfig,
    MemoryConfig,
    DynamicsConfig,
    EssenceConfig,
    PolicyConfig,
    SimulationParams,
    ConfigurationError,
    get_sim_config,
    set_sim_config,
    load_sim_config,
    validate_sim_config,
)
from scsim.geometry import Pose, SpatialIndex, displacement
from scsim.attraction import FieldSnapshot, Kernel, compute_field, make_kernel, register_kernel
from scsim.memory import BeliefCluster, MemoryGraph, MemoryNode
from scsim.essence import BaselineDrives, EssenceIndex, compute_drives
from scsim.policy import Dimension, DimensionResponse, ResponsePolicy, Stance, make_policy, register_policy
from scsim.dynamics import MotionState, integrate_motion
from scsim.entities import Entity, EntitySnapshot
from scsim.bus import EventType, TraceBus, TraceEvent
from scsim.simulation import Simulation, TickTrace
from scsim.metrics import Metrics, MetricsCollector

__version__ = '0.1.0'

__all__ = [name for name in globals().keys() if not name.startswith('_')]
