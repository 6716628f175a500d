import argparse
import logging
import sys
import time

from tqdm import tqdm

from scsim.config import ConfigurationError, SimConfig, min_event_dim
from scsim.metrics import MetricsCollector
from scsim.simulation import Simulation

logger = logging.getLogger('scsim.cli')


def build_parser():
    ap = argparse.ArgumentParser(description='scsim - deterministic multi-entity field simulation')
    ap.add_argument('--config', type=str, default=None, help='JSON configuration file (default: built-in 2D)')
    ap.add_argument('--steps', type=int, default=None, help='Number of ticks (overrides config)')
    ap.add_argument('--seed', type=int, default=None, help='Root seed (overrides config)')
    ap.add_argument('--entities', type=int, default=None, help='Number of entities (overrides config)')
    ap.add_argument('--dimension', type=int, choices=(2, 3), default=None, help='World dimensionality')
    ap.add_argument('--workers', type=int, default=None, help='Worker threads per phase (1 = inline)')
    ap.add_argument('--metrics-csv', type=str, default=None, help='Write per-tick metrics to this CSV')
    ap.add_argument('--trace-log', type=str, default=None, help='Append every trace event to this JSONL file')
    ap.add_argument('--no-progress', action='store_true', help='Disable the progress bar')
    ap.add_argument('--log-level', type=str, default='INFO', help='Logging level')
    return ap


def _resolve_config(args) -> SimConfig:
    config = SimConfig.from_json(args.config) if args.config else SimConfig.default_2d()
    if args.dimension is not None and args.dimension != config.geometry.dimension:
        geo = config.geometry
        # loaded extents are kept; a new axis repeats the last one
        bounds = list(geo.bounds)[:args.dimension]
        if bounds:
            bounds += [bounds[-1]] * (args.dimension - len(bounds))
        geo.dimension = args.dimension
        geo.bounds = bounds
        config.memory.event_dim = max(config.memory.event_dim, min_event_dim(args.dimension))
    if args.steps is not None:
        config.simulation.num_steps = args.steps
    if args.seed is not None:
        config.simulation.seed = args.seed
    if args.entities is not None:
        config.simulation.num_entities = args.entities
    if args.workers is not None:
        config.simulation.workers = args.workers
    if args.trace_log is not None:
        config.simulation.trace_log = args.trace_log
    return config


def main(argv=None):
    ap = build_parser()
    args = ap.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    try:
        config = _resolve_config(args)
        sim = Simulation(config)
    except (ConfigurationError, FileNotFoundError, ValueError) as e:
        logger.error(f"Could not start simulation: {e}")
        return 2

    steps = config.simulation.num_steps
    print(f"===== scsim: {config.name} =====")
    print(f"Dimensionality: {config.geometry.dimension}D | Entities: {config.simulation.num_entities} "
          f"| Steps: {steps} | Seed: {config.simulation.seed}")

    collector = MetricsCollector(sim.bus, num_entities=config.simulation.num_entities)
    t0 = time.time()
    with sim:
        try:
            for _ in tqdm(range(steps), desc='ticks', disable=args.no_progress):
                if not sim.advance_one_tick():
                    break
        except KeyboardInterrupt:
            logger.warning(f"Interrupted at tick {sim.tick}")
    elapsed = time.time() - t0

    final = collector.latest
    print(f"Completed {sim.tick} ticks in {elapsed:.1f}s")
    if final is not None:
        print("===== Final Metrics =====")
        print(f"Attention Entropy:   {final.attention_entropy:.4f}")
        print(f"Memory Diversity:    {final.memory_diversity:.4f}")
        print(f"Velocity Stability:  {final.velocity_stability:.4f}")
        print(f"Identity Coherence:  {final.identity_coherence:.4f}")
        print(f"Cluster Stability:   {final.cluster_stability:.4f}")
        print(f"Affective Strength:  {final.affective_strength:.4f}")
        print(f"Average Essence:     {final.average_essence:.4f}")
    if args.metrics_csv:
        collector.to_csv(args.metrics_csv)
        print(f"Metrics exported to {args.metrics_csv}")
    collector.close()
    return 0


if __name__ == '__main__':
    sys.exit(main())
