"""
Command-line entry point for the unicorn Markov-chain simulation.

Builds a benchmark TransitionModel, runs one or more experiments and
prints the results table.
"""

import argparse
import logging
import sys
from typing import Dict, List, Optional

from config import (
    DEFAULT_CONFIDENCE_LEVEL,
    DEFAULT_EXPERIMENT_CONFIG,
    DEFAULT_HORIZON_YEARS,
    DEFAULT_INTERVAL_METHOD,
    DEFAULT_PRIOR_STRENGTH,
    INTERVAL_METHODS,
    MARKET_SCENARIOS,
)
from models import ChainError
from simulation import Experiment


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Simulate startups through a Dirichlet-prior Markov chain and "
                    "estimate the unicorn rate."
    )
    parser.add_argument("--trials", type=int, default=DEFAULT_EXPERIMENT_CONFIG['n_trials'],
                        help="Number of independent trials")
    parser.add_argument("--seed", type=int, default=DEFAULT_EXPERIMENT_CONFIG['seed'],
                        help="Root random seed")
    parser.add_argument("--scenario", nargs="+", default=["MARKET"], choices=list(MARKET_SCENARIOS),
                        help="Market scenario(s) for the benchmark priors")
    parser.add_argument("--sampling", choices=["mean", "sample", "both"], default="both",
                        help="Use posterior means, Dirichlet samples, or run both")
    parser.add_argument("--prior-strength", type=float, default=DEFAULT_PRIOR_STRENGTH,
                        help="Total pseudo-count per benchmark table")
    parser.add_argument("--confidence", type=float, default=DEFAULT_CONFIDENCE_LEVEL,
                        help="Confidence level of the unicorn-rate interval")
    parser.add_argument("--method", choices=INTERVAL_METHODS, default=DEFAULT_INTERVAL_METHOD,
                        help="Interval method")
    parser.add_argument("--horizon", type=int, default=DEFAULT_HORIZON_YEARS,
                        help="Year of the forced terminal draw")
    parser.add_argument("--workers", type=int, default=1, help="Worker processes")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--self-test", action="store_true",
                        help="Run the built-in model checks instead of an experiment")
    return parser


def run_self_test() -> int:
    from test_runner import run_all_tests
    results = run_all_tests()
    for r in results:
        status = "PASS" if r['passed'] else "FAIL"
        print(f"[{status}] {r['name']} ({r['category']})")
        print(f"       expected: {r['expected']}")
        print(f"       actual:   {r['actual']}")
    passed = sum(1 for r in results if r['passed'])
    print(f"\nResults: {passed}/{len(results)} checks passed")
    return 0 if passed == len(results) else 1


def config_options_from_args(args: argparse.Namespace) -> Dict:
    sampling = {"mean": False, "sample": True, "both": [False, True]}[args.sampling]
    return {
        'scenario': args.scenario if len(args.scenario) > 1 else args.scenario[0],
        'prior_strength': args.prior_strength,
        'n_trials': args.trials,
        'sampling_mode': sampling,
        'seed': args.seed,
        'confidence_level': args.confidence,
        'interval_method': args.method,
        'horizon_years': args.horizon,
        'workers': args.workers,
    }


def print_table(table_data: Dict[str, List[str]]) -> None:
    columns = list(table_data.keys())
    widths = [max(len(col), *(len(cell) for cell in table_data[col])) for col in columns]
    print("  ".join(col.ljust(w) for col, w in zip(columns, widths)))
    print("  ".join("-" * w for w in widths))
    for row in zip(*table_data.values()):
        print("  ".join(cell.ljust(w) for cell, w in zip(row, widths)))


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    if args.self_test:
        return run_self_test()

    experiment = Experiment()
    try:
        configs = experiment.generate_experiment_configurations(config_options_from_args(args))
        results = experiment.simulate_multiple_strategies(configs)
    except ChainError as e:
        logging.error(f"Simulation error: {e}")
        return 2

    print_table(experiment.format_results_for_output(results))
    return 0


if __name__ == "__main__":
    sys.exit(main())
