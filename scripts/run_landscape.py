#!/usr/bin/env python3
"""
Run a landscape simulation from a YAML config and report the outcome.

Prints the trajectory of total population size and allele frequency,
the final per-cell F_ST, and optionally writes the summary series as
CSV and the per-generation history as .npz. With --trace-lineages, samples
allele lineages from the final state and traces them back to the start.

Usage:
    python scripts/run_landscape.py configs/default.yaml
    python scripts/run_landscape.py configs/default.yaml --scenario configs/wide_seed.yaml
    python scripts/run_landscape.py --generations 50 --expected --output results/run1
    python scripts/run_landscape.py configs/default.yaml --trace-lineages 20
"""

import argparse
import sys
from pathlib import Path

import numpy as np
import pandas as pd

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from landsim.config import default_config, load_config, validate_config
from landsim.genetics import allele_frequencies, compute_fst
from landsim.simulate import config_num_alleles, run_from_config, trace_lineages
from landsim.utils import config_hash, timer


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run a landscape population-genetics simulation")
    parser.add_argument("config", nargs="?", default=None,
                        help="Base YAML config (built-in defaults if omitted)")
    parser.add_argument("--scenario", default=None,
                        help="Scenario YAML merged over the base config")
    parser.add_argument("--seed", type=int, default=None,
                        help="Override simulation.seed")
    parser.add_argument("--generations", type=int, default=None,
                        help="Override simulation.n_generations (ignored if times are set)")
    parser.add_argument("--expected", action="store_true",
                        help="Deterministic expected-value generations")
    parser.add_argument("--save-history", action="store_true",
                        help="Retain and save per-generation breakdowns")
    parser.add_argument("--output", default=None,
                        help="Output directory (default: output.directory from config)")
    parser.add_argument("--trace-lineages", type=int, default=0, metavar="N",
                        help="Trace N allele lineages back through the run")
    return parser.parse_args(argv)


def build_config(args):
    overrides = {'simulation': {}}
    if args.seed is not None:
        overrides['simulation']['seed'] = args.seed
    if args.generations is not None:
        overrides['simulation']['n_generations'] = args.generations
    if args.expected:
        overrides['simulation']['expected'] = True
    if args.save_history or args.trace_lineages > 0:
        overrides['simulation']['retain_history'] = True
    if args.save_history:
        overrides['output'] = {'save_history': True}

    if args.config is not None:
        return load_config(args.config, args.scenario, sweep_overrides=overrides)

    config = default_config()
    for key, value in overrides['simulation'].items():
        setattr(config.simulation, key, value)
    if args.save_history:
        config.output.save_history = True
    validate_config(config)
    return config


def main(argv=None):
    args = parse_args(argv)
    config = build_config(args)
    sim = config.simulation

    print("=" * 60)
    print("LANDSCAPE SIMULATION")
    print("=" * 60)
    print(f"  grid: {config.habitat.nrow} x {config.habitat.ncol}"
          f"  (resolution {config.habitat.resolution})")
    print(f"  genotypes: {config.genetics.genotypes}")
    print(f"  seed: {sim.seed}   mode: {'expected' if sim.expected else 'stochastic'}")
    print(f"  times: {sim.resolved_times()}")
    if args.config is not None:
        print(f"  config: {args.config} (sha256 {config_hash(Path(args.config).read_text())[:12]})")
    print()

    def progress(t, t_end):
        if t == t_end or t % 10 == 0:
            print(f"  generation {t}/{t_end}")

    with timer("simulation"):
        result, population, model = run_from_config(config, progress_callback=progress)

    if result.stopped_early:
        print(f"  stopped early at t={result.final_time}")

    num_alleles = config_num_alleles(config)
    q_cells = allele_frequencies(result.final_N, num_alleles)
    fst = compute_fst(q_cells, weights=result.final_N.sum(axis=1))

    df = pd.DataFrame({'time': result.times})
    for name, values in result.summaries.items():
        df[name] = values

    print()
    print(df.to_string(index=False))
    print()
    print(f"  final total: {result.final_N.sum():.1f}")
    print(f"  occupied cells: {int(np.sum(result.final_N.sum(axis=1) > 0))}"
          f" / {population.n_habitable}")
    print(f"  F_ST: {fst:.4f}")

    out_dir = Path(args.output) if args.output else Path(config.output.directory)
    if args.output or config.output.save_history:
        out_dir.mkdir(parents=True, exist_ok=True)
        df.to_csv(out_dir / "summaries.csv", index=False)
        print(f"  summaries written to {out_dir / 'summaries.csv'}")
    if config.output.save_history and result.history is not None:
        result.history.save(str(out_dir / "history.npz"))
        print(f"  history ({len(result.history)} generations, "
              f"{result.history.memory_estimate_mb():.1f} MB) written to "
              f"{out_dir / 'history.npz'}")

    if args.trace_lineages > 0:
        traces = trace_lineages(config, result, model, args.trace_lineages)
        grid = population.habitat
        moved = []
        for trace in traces:
            if trace.complete:
                start, end = grid.xy_from_cell(trace.cells(population.index)[[0, -1]])
                moved.append(float(np.hypot(*(start - end))))
        print()
        print(f"  lineages traced: {len(moved)} / {len(traces)} complete "
              f"back to t={result.times[0]}")
        if moved:
            print(f"  mean ancestral displacement: {np.mean(moved):.2f} "
                  f"(max {np.max(moved):.2f})")


if __name__ == "__main__":
    main()
