"""
Experiment management for unicorn Markov-chain analysis.

This module contains:
- ExperimentResult: immutable summary of one batch of trials
- ExperimentRunner: runs independent trials and tallies terminal outcomes
- Interval helpers for the unicorn rate
- exact_outcome_distribution: terminal distribution of the posterior-mean chain
- Experiment: runs and formats several experiment configurations
"""

import itertools
import logging
import math
from collections import OrderedDict
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np
from scipy import stats

from config import (
    DEFAULT_CONFIDENCE_LEVEL,
    DEFAULT_HORIZON_YEARS,
    DEFAULT_INTERVAL_METHOD,
    DEFAULT_PRIOR_STRENGTH,
    INTERVAL_METHODS,
    MARKET_SCENARIOS,
    TRIALS_PER_CHUNK,
)
from models import (
    ABSORBING_OUTCOMES,
    BOUNDARY_OUTCOMES,
    TERMINAL,
    ChainSimulator,
    ExperimentInterrupted,
    InvalidArgumentError,
    Outcome,
    Stage,
    TransitionModel,
)

logger = logging.getLogger(__name__)

STAGES: List[Stage] = list(Stage)


def _z_score(confidence_level: float) -> float:
    return float(stats.norm.ppf(1 - (1 - confidence_level) / 2))


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


def wilson_interval(successes: int, n: int,
                    confidence_level: float = DEFAULT_CONFIDENCE_LEVEL) -> Tuple[float, float]:
    """
    Wilson score interval for a binomial proportion.

    Args:
        successes: Number of successes
        n: Number of trials
        confidence_level: Two-sided confidence level in (0, 1)

    Returns:
        (low, high), clamped to [0, 1]
    """
    if n <= 0:
        raise InvalidArgumentError(f"Interval needs at least one trial, got {n}")
    ci = stats.binomtest(int(successes), int(n)).proportion_ci(
        confidence_level=confidence_level, method='wilson'
    )
    return _clamp(float(ci.low)), _clamp(float(ci.high))


def normal_interval(successes: int, n: int,
                    confidence_level: float = DEFAULT_CONFIDENCE_LEVEL) -> Tuple[float, float]:
    """Normal-approximation (Wald) interval, clamped to [0, 1]."""
    if n <= 0:
        raise InvalidArgumentError(f"Interval needs at least one trial, got {n}")
    z = _z_score(confidence_level)
    p = successes / n
    half_width = z * math.sqrt(p * (1 - p) / n)
    return _clamp(p - half_width), _clamp(p + half_width)


INTERVALS: Dict[str, Callable[[int, int, float], Tuple[float, float]]] = {
    'wilson': wilson_interval,
    'normal': normal_interval,
}


@dataclass(frozen=True)
class ExperimentResult:
    """
    Terminal-outcome tallies of one batch of trials.

    Attributes:
        n_trials: Number of trials run
        outcome_counts: Trials ending in each absorbing outcome
        unicorn_rate: unicorn count / n_trials
        interval_low, interval_high: Interval for the unicorn rate, within [0, 1]
        confidence_level: Level of the interval
        interval_method: 'wilson' or 'normal'
        use_sampling: Whether probabilities were drawn from the Dirichlet
        seed: Entropy of the root seed sequence; reruns with it reproduce the tallies
        stage_counts: Trials by the highest stage reached
        mean_years: Mean number of simulated years per trial
    """
    n_trials: int
    outcome_counts: Mapping[Outcome, int]
    unicorn_rate: float
    interval_low: float
    interval_high: float
    confidence_level: float
    interval_method: str
    use_sampling: bool
    seed: Optional[int]
    stage_counts: Mapping[Stage, int]
    mean_years: float

    def __post_init__(self):
        object.__setattr__(self, 'outcome_counts', MappingProxyType(dict(self.outcome_counts)))
        object.__setattr__(self, 'stage_counts', MappingProxyType(dict(self.stage_counts)))

    @property
    def unicorn_count(self) -> int:
        return self.outcome_counts[Outcome.UNICORN]

    @property
    def interval(self) -> Tuple[float, float]:
        return self.interval_low, self.interval_high

    def rate(self, outcome: Outcome) -> float:
        return self.outcome_counts.get(outcome, 0) / self.n_trials

    def to_dict(self) -> Dict[str, Any]:
        """Plain values for a reporting layer."""
        return {
            'n_trials': self.n_trials,
            'outcome_counts': {o.value: c for o, c in self.outcome_counts.items()},
            'unicorn_rate': self.unicorn_rate,
            'interval_low': self.interval_low,
            'interval_high': self.interval_high,
            'confidence_level': self.confidence_level,
            'interval_method': self.interval_method,
            'use_sampling': self.use_sampling,
            'seed': self.seed,
            'stage_counts': {s.value: c for s, c in self.stage_counts.items()},
            'mean_years': self.mean_years,
        }


def _run_chunk(transition_model: TransitionModel, use_sampling: bool, horizon_years: int,
               seed_sequence: np.random.SeedSequence, n_trials: int,
               should_stop: Optional[Callable[[], bool]] = None,
               completed_before: int = 0, requested: int = 0) -> Tuple[np.ndarray, np.ndarray, int]:
    """
    Run `n_trials` trials on one random stream.

    Returns:
        (outcome tallies in ABSORBING_OUTCOMES order, tallies by highest
        stage in Stage order, total simulated years)
    """
    simulator = ChainSimulator(
        transition_model,
        use_sampling=use_sampling,
        rng=np.random.default_rng(seed_sequence),
        horizon_years=horizon_years
    )
    outcome_counts = np.zeros(len(ABSORBING_OUTCOMES), dtype=np.int64)
    stage_counts = np.zeros(len(STAGES), dtype=np.int64)
    total_years = 0

    for i in range(n_trials):
        if should_stop is not None and should_stop():
            raise ExperimentInterrupted(completed_before + i, requested)
        trial = simulator.simulate()
        outcome_counts[ABSORBING_OUTCOMES.index(trial.terminal_outcome)] += 1
        stage_counts[trial.highest_stage.position] += 1
        total_years += trial.year

    return outcome_counts, stage_counts, total_years


class ExperimentRunner:
    """
    Runs many independent ChainSimulator trials and summarises them.

    Trials share one TransitionModel and only read it; callers must not
    update the model while a batch is running.

    Attributes:
        confidence_level: Level of the unicorn-rate interval
        interval_method: 'wilson' or 'normal'
        horizon_years: Year of the forced terminal draw
        workers: Number of worker processes (1 runs in-process)
    """

    def __init__(self, confidence_level: float = DEFAULT_CONFIDENCE_LEVEL,
                 interval_method: str = DEFAULT_INTERVAL_METHOD,
                 horizon_years: int = DEFAULT_HORIZON_YEARS,
                 workers: int = 1):
        if not 0 < confidence_level < 1:
            raise InvalidArgumentError(f"Confidence level must be in (0, 1), got {confidence_level}")
        if interval_method not in INTERVAL_METHODS:
            raise InvalidArgumentError(
                f"Unknown interval method {interval_method!r}; expected one of {INTERVAL_METHODS}"
            )
        if horizon_years < 1:
            raise InvalidArgumentError(f"Horizon must be at least one year, got {horizon_years}")
        if workers < 1:
            raise InvalidArgumentError(f"Need at least one worker, got {workers}")

        self.confidence_level = confidence_level
        self.interval_method = interval_method
        self.horizon_years = horizon_years
        self.workers = workers

    def run(self, n_trials: int, transition_model: TransitionModel, sampling_mode: bool = False,
            seed: Optional[int] = None,
            should_stop: Optional[Callable[[], bool]] = None) -> ExperimentResult:
        """
        Run `n_trials` independent trials and summarise their terminal outcomes.

        Args:
            n_trials: Number of trials, at least one
            transition_model: Beliefs shared read-only by every trial
            sampling_mode: Draw probabilities from the Dirichlet at every step
            seed: Root seed; identical seeds give identical tallies
            should_stop: Polled between trials (between chunks with several
                workers); returning True raises ExperimentInterrupted

        Returns:
            ExperimentResult
        """
        if isinstance(n_trials, bool) or not isinstance(n_trials, (int, np.integer)) or n_trials <= 0:
            raise InvalidArgumentError(f"Number of trials must be a positive integer, got {n_trials!r}")
        n_trials = int(n_trials)

        root = np.random.SeedSequence(seed)
        chunk_sizes = [TRIALS_PER_CHUNK] * (n_trials // TRIALS_PER_CHUNK)
        if n_trials % TRIALS_PER_CHUNK:
            chunk_sizes.append(n_trials % TRIALS_PER_CHUNK)
        streams = root.spawn(len(chunk_sizes))

        logger.info(f"Running {n_trials} trials (sampling={sampling_mode}, "
                    f"seed={root.entropy}, workers={self.workers})")

        outcome_counts = np.zeros(len(ABSORBING_OUTCOMES), dtype=np.int64)
        stage_counts = np.zeros(len(STAGES), dtype=np.int64)
        total_years = 0

        if self.workers == 1 or len(chunk_sizes) == 1:
            completed = 0
            for stream, size in zip(streams, chunk_sizes):
                chunk = _run_chunk(transition_model, sampling_mode, self.horizon_years,
                                   stream, size, should_stop, completed, n_trials)
                outcome_counts += chunk[0]
                stage_counts += chunk[1]
                total_years += chunk[2]
                completed += size
                logger.debug(f"  Progress: {completed}/{n_trials} trials complete")
        else:
            with ProcessPoolExecutor(max_workers=self.workers) as executor:
                futures = [
                    executor.submit(_run_chunk, transition_model, sampling_mode,
                                    self.horizon_years, stream, size)
                    for stream, size in zip(streams, chunk_sizes)
                ]
                completed = 0
                for future, size in zip(futures, chunk_sizes):
                    if should_stop is not None and should_stop():
                        executor.shutdown(wait=True, cancel_futures=True)
                        raise ExperimentInterrupted(completed, n_trials)
                    chunk = future.result()
                    outcome_counts += chunk[0]
                    stage_counts += chunk[1]
                    total_years += chunk[2]
                    completed += size
                    logger.debug(f"  Progress: {completed}/{n_trials} trials complete")

        return self._summarise(n_trials, outcome_counts, stage_counts, total_years,
                               sampling_mode, root.entropy)

    def _summarise(self, n_trials: int, outcome_counts: np.ndarray, stage_counts: np.ndarray,
                   total_years: int, sampling_mode: bool, entropy) -> ExperimentResult:
        counts = {o: int(c) for o, c in zip(ABSORBING_OUTCOMES, outcome_counts)}
        unicorns = counts[Outcome.UNICORN]
        low, high = INTERVALS[self.interval_method](unicorns, n_trials, self.confidence_level)

        result = ExperimentResult(
            n_trials=n_trials,
            outcome_counts=counts,
            unicorn_rate=unicorns / n_trials,
            interval_low=low,
            interval_high=high,
            confidence_level=self.confidence_level,
            interval_method=self.interval_method,
            use_sampling=sampling_mode,
            seed=entropy,
            stage_counts={s: int(c) for s, c in zip(STAGES, stage_counts)},
            mean_years=total_years / n_trials
        )
        logger.info(f"Unicorn rate {result.unicorn_rate:.4%} "
                    f"[{low:.4%}, {high:.4%}] over {n_trials} trials")
        return result


def exact_outcome_distribution(transition_model: TransitionModel,
                               horizon_years: int = DEFAULT_HORIZON_YEARS) -> Dict[Outcome, float]:
    """
    Terminal-outcome probabilities of the posterior-mean chain.

    Propagates the probability of being operating at each stage forward
    year by year, collecting absorbed mass, then applies the boundary draw
    to whatever is still operating at the horizon.

    Args:
        transition_model: Beliefs whose posterior means define the chain
        horizon_years: Year of the forced terminal draw

    Returns:
        Probability of each absorbing outcome
    """
    if horizon_years < 1:
        raise InvalidArgumentError(f"Horizon must be at least one year, got {horizon_years}")

    absorbed = {o: 0.0 for o in ABSORBING_OUTCOMES}
    occupancy = np.zeros(len(STAGES))
    occupancy[Stage.SEED.position] = 1.0

    for _ in range(1, horizon_years):
        next_occupancy = np.zeros(len(STAGES))
        for stage in STAGES:
            mass = occupancy[stage.position]
            if mass == 0:
                continue
            belief = transition_model.belief(stage)
            probabilities = belief.mean()
            for outcome, probability in zip(belief.outcomes, probabilities):
                if outcome is Outcome.OPERATING:
                    next_occupancy[stage.position] += mass * probability
                elif outcome is Outcome.NEXT_STAGE:
                    next_occupancy[stage.next().position] += mass * probability
                else:
                    absorbed[outcome] += mass * probability
        occupancy = next_occupancy

    operating = occupancy.sum()
    terminal = transition_model.get_probabilities(TERMINAL)
    for outcome, probability in zip(BOUNDARY_OUTCOMES, terminal):
        absorbed[outcome] += operating * probability
    return absorbed


class ExperimentConfiguration:
    """
    Configuration for one experiment.

    Attributes:
        scenario: Market scenario whose benchmark tables seed the priors
        prior_strength: Total pseudo-count per benchmark table
        n_trials: Number of trials
        sampling_mode: Draw probabilities from the Dirichlet at every step
        seed: Root seed
        confidence_level: Level of the unicorn-rate interval
        interval_method: 'wilson' or 'normal'
        horizon_years: Year of the forced terminal draw
        workers: Worker processes
    """

    def __init__(self, scenario: str = 'MARKET', prior_strength: float = DEFAULT_PRIOR_STRENGTH,
                 n_trials: int = 10000, sampling_mode: bool = False, seed: Optional[int] = None,
                 confidence_level: float = DEFAULT_CONFIDENCE_LEVEL,
                 interval_method: str = DEFAULT_INTERVAL_METHOD,
                 horizon_years: int = DEFAULT_HORIZON_YEARS, workers: int = 1):
        if scenario not in MARKET_SCENARIOS:
            raise InvalidArgumentError(
                f"Unknown market scenario {scenario!r}; expected one of {list(MARKET_SCENARIOS)}"
            )
        if isinstance(n_trials, bool) or not isinstance(n_trials, int) or n_trials <= 0:
            raise InvalidArgumentError(f"Number of trials must be a positive integer, got {n_trials!r}")

        self.scenario = scenario
        self.prior_strength = prior_strength
        self.n_trials = n_trials
        self.sampling_mode = sampling_mode
        self.seed = seed
        self.confidence_level = confidence_level
        self.interval_method = interval_method
        self.horizon_years = horizon_years
        self.workers = workers

    def build_transition_model(self) -> TransitionModel:
        return TransitionModel.from_benchmarks(self.scenario, self.prior_strength, seed=self.seed)

    def build_runner(self) -> ExperimentRunner:
        return ExperimentRunner(
            confidence_level=self.confidence_level,
            interval_method=self.interval_method,
            horizon_years=self.horizon_years,
            workers=self.workers
        )

    def __repr__(self) -> str:
        return (
            f"ExperimentConfiguration(\n"
            f"  Scenario: {self.scenario} (prior strength {self.prior_strength})\n"
            f"  Trials: {self.n_trials:,} (sampling={self.sampling_mode}, seed={self.seed})\n"
            f"  Interval: {self.interval_method} at {self.confidence_level:.0%}\n"
            f"  Horizon: {self.horizon_years} years, workers: {self.workers}\n"
            f")"
        )


class Experiment:
    """
    Runs and compares several experiment configurations.

    This class handles:
    - Expanding list-valued options into one configuration per combination
    - Running each configuration on a fresh benchmark model
    - Formatting results into a metric-by-strategy table
    """

    def __init__(self):
        self.output_variables = OrderedDict([
            ('scenario', {'name': 'Market Scenario', 'format': '{}'}),
            ('sampling_mode', {'name': 'Posterior Sampling', 'format': '{}'}),
            ('n_trials', {'name': 'Trials', 'format': '{:,.0f}'}),
            ('Bankrupt_rate', {'name': 'Bankrupt', 'format': '{:.2%}'}),
            ('Zombie_rate', {'name': 'Zombie', 'format': '{:.2%}'}),
            ('Unicorn_rate', {'name': 'Unicorn', 'format': '{:.2%}'}),
            ('interval_low', {'name': 'Unicorn Interval (low)', 'format': '{:.2%}'}),
            ('interval_high', {'name': 'Unicorn Interval (high)', 'format': '{:.2%}'}),
            ('exact_unicorn_rate', {'name': 'Unicorn (exact, mean chain)', 'format': '{:.2%}'}),
            ('Series C+_reached', {'name': 'Reached Series C+', 'format': '{:.2%}'}),
            ('mean_years', {'name': 'Mean Years Simulated', 'format': '{:.2f}'}),
        ])

    def generate_experiment_configurations(
        self,
        config_options: Dict[str, Any]
    ) -> List[ExperimentConfiguration]:
        """
        Generate one ExperimentConfiguration per combination of list-valued options.

        Args:
            config_options: Option values; list values are expanded.

        Returns:
            List of ExperimentConfiguration objects.
        """
        single_values = {k: v for k, v in config_options.items() if not isinstance(v, list)}
        array_options = {k: v for k, v in config_options.items() if isinstance(v, list)}

        option_names = list(array_options.keys())
        combinations = itertools.product(*array_options.values())

        configurations = []
        for combination in combinations:
            config = single_values.copy()
            config.update(dict(zip(option_names, combination)))
            configurations.append(self.create_experiment_configuration(config))
        return configurations

    def create_experiment_configuration(self, config: Dict[str, Any]) -> ExperimentConfiguration:
        """Create one ExperimentConfiguration, rejecting unknown option names."""
        try:
            return ExperimentConfiguration(**config)
        except TypeError as e:
            raise InvalidArgumentError(f"Invalid experiment configuration: {e}") from e

    def run_experiment(self, config: ExperimentConfiguration) -> Dict[str, Any]:
        """Run one configuration on a fresh benchmark model."""
        transition_model = config.build_transition_model()
        runner = config.build_runner()
        result = runner.run(config.n_trials, transition_model, config.sampling_mode, seed=config.seed)
        return self.get_experiment_outcome(config, transition_model, result)

    def simulate_multiple_strategies(self, configs: List[ExperimentConfiguration]) -> List[Dict]:
        results = []
        for i, config in enumerate(configs, 1):
            logger.info(f"Simulating Strategy {i}")
            result = self.run_experiment(config)
            result['Strategy'] = f'Strategy {i}'
            results.append(result)
        return results

    def get_experiment_outcome(self, config: ExperimentConfiguration,
                               transition_model: TransitionModel,
                               result: ExperimentResult) -> Dict[str, Any]:
        outcome = result.to_dict()
        outcome['scenario'] = config.scenario
        outcome['sampling_mode'] = config.sampling_mode
        for o in ABSORBING_OUTCOMES:
            outcome[f'{o.value}_rate'] = result.rate(o)
        for s in STAGES:
            outcome[f'{s.value}_reached'] = result.stage_counts[s] / result.n_trials
        exact = exact_outcome_distribution(transition_model, config.horizon_years)
        outcome['exact_unicorn_rate'] = exact[Outcome.UNICORN]
        return outcome

    def format_results_for_output(self, results: List[Dict]) -> Dict[str, List]:
        """
        Format results for tabular output.

        Args:
            results: List of result dictionaries

        Returns:
            Dictionary with a 'Metric' column and one column per strategy
        """
        table_data = {'Metric': [details['name'] for details in self.output_variables.values()]}

        for result in results:
            strategy_name = result.get('Strategy', f"Strategy {len(table_data)}")
            strategy_data = []
            for var, details in self.output_variables.items():
                value = result.get(var)
                strategy_data.append('N/A' if value is None else details['format'].format(value))
            table_data[strategy_name] = strategy_data

        return table_data
