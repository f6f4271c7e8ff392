"""
Configuration constants for the unicorn Markov-chain simulation.

This module contains default values for:
- Funding stages and outcome coordinate order
- Simulation horizon
- Benchmark prior tables (market, bull-market, bear-market scenarios)
- Prior strength used to turn probability tables into pseudo-counts
- Interval defaults for experiment summaries
"""

from typing import Dict, List

# Funding stages, in chain order. Everything after Series C collapses into
# Series C+, which loops on itself.
DEFAULT_STAGES: List[str] = [
    'Seed',
    'Series A',
    'Series B',
    'Series C',
    'Series C+'
]

# Coordinate order of every yearly probability vector
OUTCOMES: List[str] = ['Operating', 'Next Stage', 'Bankrupt', 'Unicorn']

# Coordinate order of the year-horizon boundary vector
TERMINAL_OUTCOMES: List[str] = ['Bankrupt', 'Zombie', 'Unicorn']

# Key of the boundary belief in prior tables
TERMINAL_KEY: str = 'Terminal'

# Years simulated before the forced terminal draw
DEFAULT_HORIZON_YEARS: int = 10

# Total pseudo-count given to each probability table when it is turned into
# a Dirichlet concentration vector
DEFAULT_PRIOR_STRENGTH: float = 100.0

# Interval defaults for the unicorn rate
DEFAULT_CONFIDENCE_LEVEL: float = 0.95
DEFAULT_INTERVAL_METHOD: str = 'wilson'
INTERVAL_METHODS: List[str] = ['wilson', 'normal']

# Trials per independently seeded random stream. Chunks, not workers, own
# the streams, so tallies do not depend on the number of workers.
TRIALS_PER_CHUNK: int = 10000

# Yearly transition probabilities by stage, from published benchmark data.
# Seed and Series A tables leave 10% unassigned; the remainder is an
# unlisted exit and is added to Bankrupt.
MARKET: Dict[str, Dict[str, float]] = {
    'Seed': {'Operating': 0.22, 'Next Stage': 0.27, 'Bankrupt': 0.40, 'Unicorn': 0.01},
    'Series A': {'Operating': 0.19, 'Next Stage': 0.30, 'Bankrupt': 0.40, 'Unicorn': 0.01},
    'Series B': {'Operating': 0.43, 'Next Stage': 0.26, 'Bankrupt': 0.29, 'Unicorn': 0.02},
    'Series C': {'Operating': 0.38, 'Next Stage': 0.32, 'Bankrupt': 0.25, 'Unicorn': 0.05},
    'Series C+': {'Operating': 0.38, 'Next Stage': 0.32, 'Bankrupt': 0.25, 'Unicorn': 0.05},
}

MARKET_TERMINAL: Dict[str, float] = {'Bankrupt': 0.20, 'Zombie': 0.75, 'Unicorn': 0.05}

# Illustrative bull-market scenario (not sourced): the MARKET tables shifted
# toward follow-on rounds and unicorn exits.
BULL_MARKET: Dict[str, Dict[str, float]] = {
    'Seed': {'Operating': 0.22, 'Next Stage': 0.35, 'Bankrupt': 0.41, 'Unicorn': 0.02},
    'Series A': {'Operating': 0.19, 'Next Stage': 0.38, 'Bankrupt': 0.41, 'Unicorn': 0.02},
    'Series B': {'Operating': 0.40, 'Next Stage': 0.32, 'Bankrupt': 0.25, 'Unicorn': 0.03},
    'Series C': {'Operating': 0.36, 'Next Stage': 0.34, 'Bankrupt': 0.23, 'Unicorn': 0.07},
    'Series C+': {'Operating': 0.36, 'Next Stage': 0.34, 'Bankrupt': 0.23, 'Unicorn': 0.07},
}

BULL_MARKET_TERMINAL: Dict[str, float] = {'Bankrupt': 0.15, 'Zombie': 0.77, 'Unicorn': 0.08}

# Illustrative bear-market scenario (not sourced): the MARKET tables shifted
# toward shutdowns.
BEAR_MARKET: Dict[str, Dict[str, float]] = {
    'Seed': {'Operating': 0.24, 'Next Stage': 0.20, 'Bankrupt': 0.555, 'Unicorn': 0.005},
    'Series A': {'Operating': 0.22, 'Next Stage': 0.23, 'Bankrupt': 0.545, 'Unicorn': 0.005},
    'Series B': {'Operating': 0.45, 'Next Stage': 0.20, 'Bankrupt': 0.34, 'Unicorn': 0.01},
    'Series C': {'Operating': 0.42, 'Next Stage': 0.25, 'Bankrupt': 0.30, 'Unicorn': 0.03},
    'Series C+': {'Operating': 0.42, 'Next Stage': 0.25, 'Bankrupt': 0.30, 'Unicorn': 0.03},
}

BEAR_MARKET_TERMINAL: Dict[str, float] = {'Bankrupt': 0.30, 'Zombie': 0.67, 'Unicorn': 0.03}

MARKET_SCENARIOS: Dict[str, Dict] = {
    'MARKET': {'stages': MARKET, 'terminal': MARKET_TERMINAL},
    'BULL_MARKET': {'stages': BULL_MARKET, 'terminal': BULL_MARKET_TERMINAL},
    'BEAR_MARKET': {'stages': BEAR_MARKET, 'terminal': BEAR_MARKET_TERMINAL},
}

# Example default experiment. List values are expanded into one
# configuration per combination by Experiment.generate_experiment_configurations.
DEFAULT_EXPERIMENT_CONFIG = {
    'scenario': 'MARKET',
    'prior_strength': DEFAULT_PRIOR_STRENGTH,
    'n_trials': 100000,
    'sampling_mode': [False, True],
    'seed': 2024,
    'confidence_level': DEFAULT_CONFIDENCE_LEVEL,
    'interval_method': DEFAULT_INTERVAL_METHOD,
    'horizon_years': DEFAULT_HORIZON_YEARS,
    'workers': 1
}

# Example configuration comparing market scenarios
SCENARIO_COMPARISON_CONFIG = {
    'scenario': ['BEAR_MARKET', 'MARKET', 'BULL_MARKET'],
    'prior_strength': DEFAULT_PRIOR_STRENGTH,
    'n_trials': 50000,
    'sampling_mode': False,
    'seed': 2024,
    'confidence_level': DEFAULT_CONFIDENCE_LEVEL,
    'interval_method': DEFAULT_INTERVAL_METHOD,
    'horizon_years': DEFAULT_HORIZON_YEARS,
    'workers': 1
}
