"""
Data models for the unicorn Markov-chain simulation.

This module contains the core data classes:
- Stage / Outcome: the funding stages and yearly outcomes of the chain
- TransitionBelief: a Dirichlet belief over the outcomes of one stage
- PriorConfiguration: validated prior pseudo-counts for every stage
- TransitionModel: per-stage beliefs with conjugate updates
- StartupTrial: one simulated startup path
- ChainSimulator: advances a StartupTrial year by year
"""

import logging
from enum import Enum
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
from pydantic import BaseModel, Field, ValidationError, model_validator

from config import (
    DEFAULT_HORIZON_YEARS,
    DEFAULT_PRIOR_STRENGTH,
    DEFAULT_STAGES,
    MARKET_SCENARIOS,
    OUTCOMES,
    TERMINAL_KEY,
    TERMINAL_OUTCOMES,
)

logger = logging.getLogger(__name__)


class ChainError(Exception):
    """Base class for errors raised by the chain model."""


class InvalidStageError(ChainError, KeyError):
    """Stage has no registered belief."""


class InvalidOutcomeError(ChainError, ValueError):
    """Outcome is not valid for the stage or boundary it was applied to."""


class InvalidArgumentError(ChainError, ValueError):
    """Argument outside its valid range (trial counts, pseudo-counts, levels)."""


class ExperimentInterrupted(ChainError):
    """A batch of trials was stopped between trials."""

    def __init__(self, completed_trials: int, requested_trials: int):
        super().__init__(
            f"Experiment interrupted after {completed_trials} of {requested_trials} trials"
        )
        self.completed_trials = completed_trials
        self.requested_trials = requested_trials


class Stage(Enum):
    """Funding stage of a startup, in chain order."""

    SEED = DEFAULT_STAGES[0]
    SERIES_A = DEFAULT_STAGES[1]
    SERIES_B = DEFAULT_STAGES[2]
    SERIES_C = DEFAULT_STAGES[3]
    SERIES_C_PLUS = DEFAULT_STAGES[4]

    def next(self) -> 'Stage':
        """Stage reached after raising a round. Series C+ loops on itself."""
        stages = list(Stage)
        return stages[min(stages.index(self) + 1, len(stages) - 1)]

    @property
    def position(self) -> int:
        return list(Stage).index(self)


class Outcome(Enum):
    """Result of one simulated year."""

    OPERATING = 'Operating'
    NEXT_STAGE = 'Next Stage'
    BANKRUPT = 'Bankrupt'
    UNICORN = 'Unicorn'
    ZOMBIE = 'Zombie'

    @property
    def is_absorbing(self) -> bool:
        return self in (Outcome.BANKRUPT, Outcome.UNICORN, Outcome.ZOMBIE)


# Fixed coordinate orders of the probability vectors
YEARLY_OUTCOMES: List[Outcome] = [Outcome(name) for name in OUTCOMES]
BOUNDARY_OUTCOMES: List[Outcome] = [Outcome(name) for name in TERMINAL_OUTCOMES]
ABSORBING_OUTCOMES: List[Outcome] = [o for o in Outcome if o.is_absorbing]

# Key of the horizon boundary belief
TERMINAL = TERMINAL_KEY

BeliefKey = Union[Stage, str]


def resolve_stage(stage: BeliefKey) -> BeliefKey:
    """Map a Stage, a stage name or the terminal key onto a belief key."""
    if isinstance(stage, Stage):
        return stage
    if stage == TERMINAL:
        return TERMINAL
    try:
        return Stage(stage)
    except ValueError:
        raise InvalidStageError(f"Unknown stage: {stage!r}") from None


def resolve_outcome(outcome: Union[Outcome, str]) -> Outcome:
    if isinstance(outcome, Outcome):
        return outcome
    try:
        return Outcome(outcome)
    except ValueError:
        raise InvalidOutcomeError(f"Unknown outcome: {outcome!r}") from None


def outcomes_for(key: BeliefKey) -> List[Outcome]:
    """Outcomes a belief covers: four for a stage, three at the boundary."""
    return BOUNDARY_OUTCOMES if key == TERMINAL else YEARLY_OUTCOMES


def draw_outcome(probabilities: Sequence[float], outcomes: Sequence[Outcome], u: float) -> Outcome:
    """
    Resolve one uniform draw against a categorical distribution.

    The unit interval is partitioned by cumulative probability in the order
    of `outcomes`. A draw past the cumulative total (round-off) falls into
    the last coordinate.

    Args:
        probabilities: Probability of each outcome
        outcomes: Outcomes in coordinate order
        u: Uniform draw in [0, 1)

    Returns:
        The drawn outcome
    """
    if len(probabilities) != len(outcomes):
        raise InvalidOutcomeError(
            f"Probability vector has {len(probabilities)} entries for {len(outcomes)} outcomes"
        )
    cumulative = 0.0
    for outcome, probability in zip(outcomes, probabilities):
        cumulative += probability
        if u < cumulative:
            return outcome
    return outcomes[-1]


class TransitionBelief:
    """
    Dirichlet belief over the outcomes of one stage (or the boundary).

    Attributes:
        outcomes: Outcomes in coordinate order
        concentration: Dirichlet pseudo-counts, one per outcome, all positive
    """

    def __init__(self, outcomes: Sequence[Outcome], concentration: Sequence[float]):
        self.outcomes = list(outcomes)
        self.concentration = np.array(concentration, dtype=float)

        if self.concentration.shape != (len(self.outcomes),):
            raise InvalidArgumentError(
                f"Expected {len(self.outcomes)} pseudo-counts, got {self.concentration.shape}"
            )
        if not np.all(np.isfinite(self.concentration)) or np.any(self.concentration <= 0):
            raise InvalidArgumentError(
                f"Pseudo-counts must be positive and finite: {self.concentration.tolist()}"
            )

    def index(self, outcome: Outcome) -> int:
        try:
            return self.outcomes.index(outcome)
        except ValueError:
            raise InvalidOutcomeError(
                f"{outcome.value} is not one of {[o.value for o in self.outcomes]}"
            ) from None

    def mean(self) -> np.ndarray:
        """Posterior mean of the categorical probabilities."""
        return self.concentration / self.concentration.sum()

    def sample(self, rng: np.random.Generator) -> np.ndarray:
        """One draw of the categorical probabilities from the Dirichlet."""
        return rng.dirichlet(self.concentration)

    def add(self, outcome: Outcome, count: float = 1) -> None:
        self.concentration[self.index(outcome)] += count

    def as_dict(self) -> Dict[str, float]:
        return {o.value: float(c) for o, c in zip(self.outcomes, self.concentration)}

    def copy(self) -> 'TransitionBelief':
        return TransitionBelief(self.outcomes, self.concentration)

    def __repr__(self) -> str:
        return f"TransitionBelief({self.as_dict()})"


class PriorConfiguration(BaseModel):
    """Prior pseudo-counts for every stage and for the horizon boundary."""
    stages: Dict[str, Dict[str, float]] = Field(description="Pseudo-counts by stage, then outcome")
    terminal: Dict[str, float] = Field(description="Pseudo-counts for the horizon boundary")

    @model_validator(mode='after')
    def check_pseudo_counts(self) -> 'PriorConfiguration':
        missing = [name for name in DEFAULT_STAGES if name not in self.stages]
        if missing:
            raise ValueError(f"Missing priors for stages: {missing}")
        unknown = [name for name in self.stages if name not in DEFAULT_STAGES]
        if unknown:
            raise ValueError(f"Unknown stages in priors: {unknown}")

        tables = [(name, self.stages[name], OUTCOMES) for name in DEFAULT_STAGES]
        tables.append((TERMINAL_KEY, self.terminal, TERMINAL_OUTCOMES))
        for name, table, expected in tables:
            if set(table) != set(expected):
                raise ValueError(
                    f"{name} priors must cover exactly {expected}, got {sorted(table)}"
                )
            for outcome, count in table.items():
                if not count > 0 or not np.isfinite(count):
                    raise ValueError(f"{name} pseudo-count for {outcome} must be positive, got {count}")
        return self

    @classmethod
    def from_probabilities(
        cls,
        stages: Dict[str, Dict[str, float]],
        terminal: Dict[str, float],
        strength: float = DEFAULT_PRIOR_STRENGTH
    ) -> 'PriorConfiguration':
        """
        Build pseudo-counts from probability tables.

        Each table is scaled so its pseudo-counts total `strength`. A stage
        table short of one assigns the missing mass to Bankrupt (unlisted
        exits are failures). Tables over one, and a short boundary table,
        are renormalised.

        Args:
            stages: Probabilities by stage, then outcome
            terminal: Probabilities for the horizon boundary
            strength: Total pseudo-count per table

        Returns:
            Validated PriorConfiguration
        """
        if not strength > 0:
            raise InvalidArgumentError(f"Prior strength must be positive, got {strength}")

        def scale(name: str, table: Dict[str, float]) -> Dict[str, float]:
            total = sum(table.values())
            if not total > 0:
                raise InvalidArgumentError(f"{name} probabilities must have a positive total")
            missing = 1.0 - total
            if missing > 1e-6 and name != TERMINAL_KEY and Outcome.BANKRUPT.value in table:
                logger.info(f"{name} probabilities sum to {total:.4f}; "
                            f"assigning {missing:.4f} to {Outcome.BANKRUPT.value}")
                table = dict(table)
                table[Outcome.BANKRUPT.value] += missing
                total = 1.0
            if abs(total - 1.0) > 1e-6:
                logger.warning(f"{name} probabilities sum to {total:.4f}; renormalising")
            return {outcome: strength * p / total for outcome, p in table.items()}

        try:
            return cls(
                stages={name: scale(name, table) for name, table in stages.items()},
                terminal=scale(TERMINAL_KEY, terminal)
            )
        except ValidationError as e:
            raise InvalidArgumentError(str(e)) from e


class TransitionModel:
    """
    Per-stage Dirichlet beliefs over yearly outcomes.

    Beliefs are updated by adding observed counts to a single coordinate
    (conjugate Dirichlet-categorical update). Updates must not run while a
    batch of trials is reading the same instance; callers apply them between
    batches.

    Attributes:
        beliefs: TransitionBelief by Stage, plus the TERMINAL boundary belief
        rng: Generator used for sampled probabilities when no rng is passed
    """

    def __init__(self, priors: Union[PriorConfiguration, Dict], seed=None):
        if not isinstance(priors, PriorConfiguration):
            try:
                priors = PriorConfiguration(**priors)
            except ValidationError as e:
                raise InvalidArgumentError(str(e)) from e
            except TypeError as e:
                raise InvalidArgumentError(f"Invalid prior configuration: {e}") from e

        self.beliefs: Dict[BeliefKey, TransitionBelief] = {}
        tables = {stage: priors.stages[stage.value] for stage in Stage}
        tables[TERMINAL] = priors.terminal
        for key, table in tables.items():
            outcomes = outcomes_for(key)
            self.beliefs[key] = TransitionBelief(outcomes, [table[o.value] for o in outcomes])
        self.rng = np.random.default_rng(seed)

    @classmethod
    def from_benchmarks(
        cls,
        scenario: str = 'MARKET',
        strength: float = DEFAULT_PRIOR_STRENGTH,
        seed=None
    ) -> 'TransitionModel':
        """Build a model from one of the benchmark market scenarios in config."""
        if scenario not in MARKET_SCENARIOS:
            raise InvalidArgumentError(
                f"Unknown market scenario {scenario!r}; expected one of {list(MARKET_SCENARIOS)}"
            )
        tables = MARKET_SCENARIOS[scenario]
        priors = PriorConfiguration.from_probabilities(
            tables['stages'], tables['terminal'], strength
        )
        return cls(priors, seed=seed)

    def belief(self, stage: BeliefKey) -> TransitionBelief:
        key = resolve_stage(stage)
        if key not in self.beliefs:
            raise InvalidStageError(f"No belief registered for {key!r}")
        return self.beliefs[key]

    def get_probabilities(
        self,
        stage: BeliefKey,
        use_sampling: bool = False,
        rng: Optional[np.random.Generator] = None
    ) -> np.ndarray:
        """
        Probability vector for one stage, in that stage's outcome order.

        Args:
            stage: Stage, stage name, or TERMINAL
            use_sampling: Draw from the Dirichlet instead of taking its mean
            rng: Generator for the draw (defaults to the model's own)

        Returns:
            Array of outcome probabilities summing to one
        """
        belief = self.belief(stage)
        if use_sampling:
            return belief.sample(rng if rng is not None else self.rng)
        return belief.mean()

    def concentrations(self, stage: BeliefKey) -> np.ndarray:
        return self.belief(stage).concentration.copy()

    def _validated_observation(self, stage, outcome, count) -> Tuple[TransitionBelief, Outcome, float]:
        belief = self.belief(stage)
        outcome = resolve_outcome(outcome)
        belief.index(outcome)
        if not count > 0 or not np.isfinite(count):
            raise InvalidArgumentError(f"Observation count must be positive, got {count}")
        return belief, outcome, count

    def update(self, stage: BeliefKey, outcome: Union[Outcome, str], count: float = 1) -> None:
        """Add `count` observations of `outcome` to the belief of `stage`."""
        belief, outcome, count = self._validated_observation(stage, outcome, count)
        belief.add(outcome, count)
        logger.debug(f"Observed {count} x {outcome.value} at {stage}")

    def update_many(self, observations: Iterable[Tuple]) -> int:
        """
        Apply (stage, outcome) or (stage, outcome, count) observations.

        All observations are validated before any is applied.

        Returns:
            Number of observations applied
        """
        validated = []
        for observation in observations:
            if len(observation) == 2:
                stage, outcome = observation
                count = 1
            else:
                stage, outcome, count = observation
            validated.append(self._validated_observation(stage, outcome, count))

        for belief, outcome, count in validated:
            belief.add(outcome, count)
        return len(validated)

    def observe_trial(self, trial: 'StartupTrial') -> int:
        """Apply every transition recorded in a trial's history as an observation."""
        applied = self.update_many(
            (TERMINAL if record.terminal else record.stage, record.outcome)
            for record in trial.history
        )
        logger.info(f"Applied {applied} observations from trial ending {trial.terminal_outcome}")
        return applied

    def snapshot(self) -> Dict:
        """Current pseudo-counts in the shape the constructor accepts."""
        return {
            'stages': {stage.value: self.beliefs[stage].as_dict() for stage in Stage},
            'terminal': self.beliefs[TERMINAL].as_dict()
        }

    def copy(self, seed=None) -> 'TransitionModel':
        return TransitionModel(self.snapshot(), seed=seed)

    def __repr__(self) -> str:
        return f"TransitionModel({self.snapshot()})"


class YearRecord(NamedTuple):
    """One simulated year: the stage drawn from and the outcome realised."""
    year: int
    stage: Stage
    outcome: Outcome
    terminal: bool = False


class StartupTrial:
    """
    Represents one simulated startup path.

    Attributes:
        stage: Current funding stage
        year: Last simulated year (0 before the first transition)
        status: Operating, or the absorbing outcome reached
        rounds_raised: Number of Next Stage transitions, including Series C+ loops
        history: YearRecord for every simulated year
    """

    def __init__(self, stage: Stage = Stage.SEED):
        self.stage = stage
        self.year = 0
        self.status = Outcome.OPERATING
        self.rounds_raised = 0
        self.history: List[YearRecord] = []

    @property
    def is_terminated(self) -> bool:
        return self.status.is_absorbing

    @property
    def terminal_outcome(self) -> Optional[Outcome]:
        return self.status if self.status.is_absorbing else None

    @property
    def path(self) -> List[Tuple[int, Outcome]]:
        return [(record.year, record.outcome) for record in self.history]

    @property
    def highest_stage(self) -> Stage:
        # Stages never move backwards
        return self.stage

    def __repr__(self) -> str:
        return (f"[{self.stage.value}, year {self.year}, {self.status.value}, "
                f"{self.rounds_raised} rounds]")


class ChainSimulator:
    """
    Simulates one startup's yearly progression through the chain.

    Attributes:
        transition_model: Beliefs the yearly probabilities come from (read only)
        use_sampling: Draw probabilities from the Dirichlet at every step
        rng: Random generator; seeded for reproducible trials
        horizon_years: Year of the forced terminal draw
    """

    def __init__(self, transition_model: TransitionModel, use_sampling: bool = False,
                 rng: Optional[np.random.Generator] = None, seed=None,
                 horizon_years: int = DEFAULT_HORIZON_YEARS):
        if horizon_years < 1:
            raise InvalidArgumentError(f"Horizon must be at least one year, got {horizon_years}")
        self.transition_model = transition_model
        self.use_sampling = use_sampling
        self.rng = rng if rng is not None else np.random.default_rng(seed)
        self.horizon_years = horizon_years

    def step(self, trial: StartupTrial) -> Optional[Outcome]:
        """
        Advance a trial by one year.

        Returns:
            The outcome drawn, or None if the trial had already terminated
        """
        if trial.is_terminated or trial.year >= self.horizon_years:
            return None

        year = trial.year + 1
        if year < self.horizon_years:
            probabilities = self.transition_model.get_probabilities(
                trial.stage, self.use_sampling, rng=self.rng
            )
            outcome = draw_outcome(probabilities, YEARLY_OUTCOMES, self.rng.random())
            trial.history.append(YearRecord(year, trial.stage, outcome))

            if outcome is Outcome.NEXT_STAGE:
                trial.stage = trial.stage.next()
                trial.rounds_raised += 1
            elif outcome.is_absorbing:
                trial.status = outcome
        else:
            # Still operating at the horizon: one forced draw
            probabilities = self.transition_model.get_probabilities(
                TERMINAL, self.use_sampling, rng=self.rng
            )
            outcome = draw_outcome(probabilities, BOUNDARY_OUTCOMES, self.rng.random())
            trial.history.append(YearRecord(year, trial.stage, outcome, terminal=True))
            trial.status = outcome

        trial.year = year
        return outcome

    def simulate(self) -> StartupTrial:
        """Run one startup from Seed until it reaches an absorbing outcome."""
        trial = StartupTrial()
        while self.step(trial) is not None:
            pass
        return trial
