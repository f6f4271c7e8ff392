"""
Check runner for the unicorn Markov-chain simulation.

Provides deterministic and statistical checks that validate the
Dirichlet beliefs, the conjugate update, the yearly chain, the terminal
boundary, Monte Carlo tallies and the unicorn-rate interval. Each check
returns a self-describing result dict; `run_all_tests` collects them and
`main.py --self-test` prints them.
"""

import math
from typing import Any, Dict, List

from config import DEFAULT_HORIZON_YEARS
from models import (
    ABSORBING_OUTCOMES,
    TERMINAL,
    YEARLY_OUTCOMES,
    ChainSimulator,
    InvalidArgumentError,
    InvalidOutcomeError,
    Outcome,
    Stage,
    StartupTrial,
    TransitionModel,
)
from simulation import ExperimentRunner, exact_outcome_distribution, wilson_interval


def make_model(scenario='MARKET', strength=100.0):
    """Create the benchmark model used by most checks."""
    return TransitionModel.from_benchmarks(scenario, strength, seed=7)


def failed(check_id, name, category, e):
    return dict(id=check_id, name=name, category=category, description='', expected='',
                actual=str(e), passed=False, details=str(e))


# ---------------------------------------------------------------------------
# Check definitions
# ---------------------------------------------------------------------------

def check_posterior_mean_sums_to_one():
    """Posterior means of every belief form a probability vector."""
    try:
        model = make_model()
        sums = {}
        for key in list(Stage) + [TERMINAL]:
            sums[getattr(key, 'value', key)] = float(model.get_probabilities(key).sum())
        worst = max(abs(s - 1.0) for s in sums.values())

        return dict(
            id='posterior_mean_sums_to_one',
            name='Posterior Mean Normalisation',
            category='deterministic',
            description=(
                'For every stage and for the horizon boundary, the posterior mean '
                'concentration_i / sum(concentration) must sum to 1.'
            ),
            expected='|sum - 1| < 1e-9 for all 6 beliefs',
            actual=f'worst deviation {worst:.2e}',
            passed=worst < 1e-9,
            details=', '.join(f'{k}={v:.12f}' for k, v in sums.items()),
        )
    except Exception as e:
        return failed('posterior_mean_sums_to_one', 'Posterior Mean Normalisation', 'deterministic', e)


def check_update_commutative():
    """Observations applied in either order give the same belief."""
    try:
        first = make_model()
        second = make_model()
        observations = [
            (Stage.SEED, Outcome.NEXT_STAGE, 3),
            (Stage.SEED, Outcome.BANKRUPT, 5),
            (Stage.SERIES_B, Outcome.UNICORN, 1),
            (TERMINAL, Outcome.ZOMBIE, 2),
        ]
        for observation in observations:
            first.update(*observation)
        for observation in reversed(observations):
            second.update(*observation)

        passed = first.snapshot() == second.snapshot()
        return dict(
            id='update_commutative',
            name='Conjugate Update Commutes',
            category='deterministic',
            description=(
                'Applying the same observations forwards and backwards must leave '
                'identical pseudo-counts, since an update is pure vector addition.'
            ),
            expected='identical snapshots',
            actual=f"Seed after updates: {first.snapshot()['stages']['Seed']}",
            passed=passed,
            details='',
        )
    except Exception as e:
        return failed('update_commutative', 'Conjugate Update Commutes', 'deterministic', e)


def check_terminal_rejects_next_stage():
    """Next Stage is not an outcome of the horizon boundary."""
    try:
        model = make_model()
        before = model.snapshot()
        try:
            model.update(TERMINAL, Outcome.NEXT_STAGE)
            raised = 'nothing'
        except InvalidOutcomeError:
            raised = 'InvalidOutcomeError'

        passed = raised == 'InvalidOutcomeError' and model.snapshot() == before
        return dict(
            id='terminal_rejects_next_stage',
            name='Boundary Outcome Validation',
            category='deterministic',
            description=(
                'Updating the horizon boundary with Next Stage must fail with '
                'InvalidOutcomeError and leave the belief untouched.'
            ),
            expected='InvalidOutcomeError, belief unchanged',
            actual=f'raised {raised}, unchanged={model.snapshot() == before}',
            passed=passed,
            details='',
        )
    except Exception as e:
        return failed('terminal_rejects_next_stage', 'Boundary Outcome Validation', 'deterministic', e)


def check_zero_trials_rejected():
    """A batch of zero trials has no defined rate."""
    try:
        try:
            ExperimentRunner().run(0, make_model())
            raised = 'nothing'
        except InvalidArgumentError:
            raised = 'InvalidArgumentError'

        return dict(
            id='zero_trials_rejected',
            name='Zero Trials',
            category='deterministic',
            description='run(n_trials=0) must fail with InvalidArgumentError.',
            expected='InvalidArgumentError',
            actual=f'raised {raised}',
            passed=raised == 'InvalidArgumentError',
            details='',
        )
    except Exception as e:
        return failed('zero_trials_rejected', 'Zero Trials', 'deterministic', e)


def check_trials_terminate():
    """Every trial ends in one absorbing outcome by the horizon."""
    try:
        simulator = ChainSimulator(make_model(), seed=42)
        problems = 0
        horizon_reached = 0
        for _ in range(2000):
            trial = simulator.simulate()
            years = [year for year, _ in trial.path]
            ok = (
                trial.terminal_outcome in ABSORBING_OUTCOMES
                and trial.year <= DEFAULT_HORIZON_YEARS
                and years == list(range(1, trial.year + 1))
                and all(not o.is_absorbing for _, o in trial.path[:-1])
                and trial.path[-1][1] is trial.terminal_outcome
                and (trial.terminal_outcome is not Outcome.ZOMBIE or trial.year == DEFAULT_HORIZON_YEARS)
            )
            problems += not ok
            horizon_reached += trial.year == DEFAULT_HORIZON_YEARS

        return dict(
            id='trials_terminate',
            name='Trial Termination',
            category='deterministic',
            description=(
                '2,000 trials must each end in exactly one of Bankrupt, Unicorn or '
                'Zombie within 10 years, with one recorded outcome per year and '
                'Zombie only at the horizon.'
            ),
            expected='0 malformed paths',
            actual=f'{problems} malformed paths, {horizon_reached} reached the horizon',
            passed=problems == 0,
            details='',
        )
    except Exception as e:
        return failed('trials_terminate', 'Trial Termination', 'deterministic', e)


def check_series_c_plus_self_loop():
    """Raising rounds after Series C keeps the startup at Series C+."""
    try:
        stage = Stage.SEED
        visited = [stage]
        for _ in range(6):
            stage = stage.next()
            visited.append(stage)

        expected = [Stage.SEED, Stage.SERIES_A, Stage.SERIES_B, Stage.SERIES_C,
                    Stage.SERIES_C_PLUS, Stage.SERIES_C_PLUS, Stage.SERIES_C_PLUS]
        return dict(
            id='series_c_plus_self_loop',
            name='Series C+ Self Loop',
            category='deterministic',
            description='Six Next Stage transitions from Seed must stop advancing at Series C+.',
            expected=' -> '.join(s.value for s in expected),
            actual=' -> '.join(s.value for s in visited),
            passed=visited == expected,
            details='',
        )
    except Exception as e:
        return failed('series_c_plus_self_loop', 'Series C+ Self Loop', 'deterministic', e)


def check_determinism():
    """Identical seeds give identical tallies."""
    try:
        model = make_model()
        runner = ExperimentRunner()
        first = runner.run(20000, model, sampling_mode=True, seed=2024)
        second = runner.run(20000, model, sampling_mode=True, seed=2024)
        other = runner.run(20000, model, sampling_mode=True, seed=2025)

        passed = dict(first.outcome_counts) == dict(second.outcome_counts)
        return dict(
            id='determinism',
            name='Seeded Determinism',
            category='deterministic',
            description=(
                'Two runs with the same seed, trial count and model state must '
                'produce identical terminal-outcome tallies.'
            ),
            expected='identical tallies for seed 2024',
            actual=f'{first.to_dict()["outcome_counts"]} vs {second.to_dict()["outcome_counts"]}',
            passed=passed,
            details=f'seed 2025: {other.to_dict()["outcome_counts"]}',
        )
    except Exception as e:
        return failed('determinism', 'Seeded Determinism', 'deterministic', e)


def check_interval_clamped():
    """Interval bounds stay inside [0, 1] at the extremes."""
    try:
        none = wilson_interval(0, 50)
        every = wilson_interval(50, 50)
        passed = (
            0.0 <= none[0] < 1e-12 and 1.0 - 1e-12 < every[1] <= 1.0
            and 0 < none[1] < 1 and 0 < every[0] < 1
        )

        return dict(
            id='interval_clamped',
            name='Interval Clamping',
            category='deterministic',
            description='0/50 and 50/50 successes must give intervals within [0, 1].',
            expected='low=0 for 0/50, high=1 for 50/50',
            actual=f'0/50: [{none[0]:.4f}, {none[1]:.4f}], 50/50: [{every[0]:.4f}, {every[1]:.4f}]',
            passed=passed,
            details='',
        )
    except Exception as e:
        return failed('interval_clamped', 'Interval Clamping', 'deterministic', e)


def check_probability_distribution():
    """Observed first-year rates at Seed match the posterior mean."""
    try:
        model = make_model()
        simulator = ChainSimulator(model, seed=12345)
        n = 50000
        counts = {o: 0 for o in YEARLY_OUTCOMES}
        for _ in range(n):
            counts[simulator.step(StartupTrial())] += 1

        expected = dict(zip(YEARLY_OUTCOMES, model.get_probabilities(Stage.SEED)))
        tolerance = 0.01
        deviations = {o: abs(counts[o] / n - expected[o]) for o in YEARLY_OUTCOMES}
        passed = all(d < tolerance for d in deviations.values())

        return dict(
            id='probability_distribution',
            name='Seed Transition Probabilities',
            category='statistical',
            description=(
                'Across 50,000 first years at Seed, the observed rate of each outcome '
                'must match the posterior mean within 1 percentage point.'
            ),
            expected=', '.join(f'{o.value}={p:.1%}' for o, p in expected.items()),
            actual=', '.join(f'{o.value}={counts[o] / n:.1%}' for o in YEARLY_OUTCOMES),
            passed=passed,
            details=', '.join(f'{o.value} {"OK" if d < tolerance else "FAIL"}' for o, d in deviations.items()),
        )
    except Exception as e:
        return failed('probability_distribution', 'Seed Transition Probabilities', 'statistical', e)


def check_monte_carlo_matches_exact():
    """Posterior-mean tallies agree with the exact terminal distribution."""
    try:
        model = make_model()
        exact = exact_outcome_distribution(model)
        result = ExperimentRunner(confidence_level=0.999).run(50000, model, seed=99)

        covered = result.interval_low <= exact[Outcome.UNICORN] <= result.interval_high
        total = sum(exact.values())
        close = all(abs(result.rate(o) - exact[o]) < 0.01 for o in ABSORBING_OUTCOMES)

        return dict(
            id='monte_carlo_matches_exact',
            name='Monte Carlo vs Exact Distribution',
            category='statistical',
            description=(
                '50,000 posterior-mean trials: the 99.9% Wilson interval must cover the '
                'exact unicorn probability and every outcome rate must be within 1 point.'
            ),
            expected=', '.join(f'{o.value}={p:.2%}' for o, p in exact.items()),
            actual=', '.join(f'{o.value}={result.rate(o):.2%}' for o in ABSORBING_OUTCOMES),
            passed=covered and close and math.isclose(total, 1.0, abs_tol=1e-9),
            details=f'interval [{result.interval_low:.2%}, {result.interval_high:.2%}]',
        )
    except Exception as e:
        return failed('monte_carlo_matches_exact', 'Monte Carlo vs Exact Distribution', 'statistical', e)


def check_sampling_mode_matches_exact():
    """Per-step Dirichlet draws leave the marginal outcome rates unchanged."""
    try:
        model = make_model(strength=20.0)
        exact = exact_outcome_distribution(model)
        result = ExperimentRunner(confidence_level=0.999).run(50000, model, sampling_mode=True, seed=5)
        passed = result.interval_low <= exact[Outcome.UNICORN] <= result.interval_high

        return dict(
            id='sampling_mode_matches_exact',
            name='Sampling Mode Unicorn Rate',
            category='statistical',
            description=(
                'A fresh Dirichlet draw at every step has the posterior mean as its '
                'expectation, so 50,000 sampled trials must still cover the exact '
                'unicorn probability with a 99.9% interval.'
            ),
            expected=f'interval covers {exact[Outcome.UNICORN]:.2%}',
            actual=f'{result.unicorn_rate:.2%} [{result.interval_low:.2%}, {result.interval_high:.2%}]',
            passed=passed,
            details='',
        )
    except Exception as e:
        return failed('sampling_mode_matches_exact', 'Sampling Mode Unicorn Rate', 'statistical', e)


def check_market_benchmark():
    """The MARKET priors reproduce the published unicorn rate of about 2.93%."""
    try:
        rate = exact_outcome_distribution(make_model())[Outcome.UNICORN]
        passed = 0.0258 <= rate <= 0.0327

        return dict(
            id='market_benchmark',
            name='Market Benchmark Unicorn Rate',
            category='statistical',
            description='Exact unicorn probability under the MARKET priors must match the benchmark.',
            expected='2.58% to 3.27%',
            actual=f'{rate:.2%}',
            passed=passed,
            details='',
        )
    except Exception as e:
        return failed('market_benchmark', 'Market Benchmark Unicorn Rate', 'statistical', e)


def check_bull_vs_bear_ordering():
    """Better market tables give a higher unicorn probability."""
    try:
        rates = {
            scenario: exact_outcome_distribution(make_model(scenario))[Outcome.UNICORN]
            for scenario in ['BEAR_MARKET', 'MARKET', 'BULL_MARKET']
        }
        passed = rates['BEAR_MARKET'] < rates['MARKET'] < rates['BULL_MARKET']

        return dict(
            id='bull_vs_bear_ordering',
            name='Market Scenario Ordering',
            category='statistical',
            description='Exact unicorn probability must rise from bear to market to bull tables.',
            expected='bear < market < bull',
            actual=', '.join(f'{k}={v:.2%}' for k, v in rates.items()),
            passed=passed,
            details='',
        )
    except Exception as e:
        return failed('bull_vs_bear_ordering', 'Market Scenario Ordering', 'statistical', e)


def check_observed_unicorns_raise_rate():
    """Feeding unicorn-heavy histories back into the model raises its unicorn rate."""
    try:
        model = make_model()
        before = exact_outcome_distribution(model)[Outcome.UNICORN]
        simulator = ChainSimulator(model, seed=3)

        # Collect the whole batch before updating the model it reads from
        unicorns = []
        while len(unicorns) < 200:
            trial = simulator.simulate()
            if trial.terminal_outcome is Outcome.UNICORN:
                unicorns.append(trial)
        applied = sum(model.observe_trial(trial) for trial in unicorns)
        after = exact_outcome_distribution(model)[Outcome.UNICORN]

        return dict(
            id='observed_unicorns_raise_rate',
            name='Learning From Histories',
            category='statistical',
            description=(
                'Applying the paths of 200 unicorn trials as observations must raise '
                'the exact unicorn probability of the updated model.'
            ),
            expected=f'after > {before:.2%}',
            actual=f'after = {after:.2%} ({applied} observations)',
            passed=after > before,
            details='',
        )
    except Exception as e:
        return failed('observed_unicorns_raise_rate', 'Learning From Histories', 'statistical', e)


CHECKS = [
    check_posterior_mean_sums_to_one,
    check_update_commutative,
    check_terminal_rejects_next_stage,
    check_zero_trials_rejected,
    check_trials_terminate,
    check_series_c_plus_self_loop,
    check_determinism,
    check_interval_clamped,
    # Statistical
    check_probability_distribution,
    check_monte_carlo_matches_exact,
    check_sampling_mode_matches_exact,
    check_market_benchmark,
    check_bull_vs_bear_ordering,
    check_observed_unicorns_raise_rate,
]


def run_all_tests() -> List[Dict[str, Any]]:
    """Execute all checks and return results."""
    results = []
    for check in CHECKS:
        r = check()
        # numpy.bool_ -> bool
        r['passed'] = bool(r['passed'])
        results.append(r)
    return results


def test_all_checks_pass():
    failures = [
        f"{r['name']}: expected {r['expected']}, got {r['actual']} {r['details']}"
        for r in run_all_tests() if not r['passed']
    ]
    assert not failures, '\n'.join(failures)
