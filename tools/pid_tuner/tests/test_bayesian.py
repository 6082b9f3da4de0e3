import asyncio
import math

import numpy as np
import pytest

from tools.pid_tuner.app.bayesian import (
    BayesianOptimizer,
    expected_improvement,
    lower_confidence_bound,
    probability_of_improvement,
)
from tools.pid_tuner.app.models import BayesianConfig, FitnessResult, RunState, SearchSpace


SPACE = SearchSpace.from_limits((0.0, 50.0), (0.0, 10.0), (0.0, 5.0))


def _result(fitness):
    return FitnessResult(
        fitness=fitness,
        itae=0.0,
        overshoot=0.0,
        steady_state_error=0.0,
        oscillation_penalty=0.0,
        sample_count=10,
    )


class BowlRunner:
    def __init__(self, fail_first=0):
        self.calls = []
        self.fail_first = fail_first

    async def run_test(self, gains):
        self.calls.append(gains)
        if len(self.calls) <= self.fail_first:
            return FitnessResult.failure_result("timeout")
        return _result(
            ((gains.kp - 25.0) / 50.0) ** 2
            + ((gains.ki - 3.0) / 10.0) ** 2
            + ((gains.kd - 2.0) / 5.0) ** 2
        )


def test_expected_improvement_matches_closed_form():
    ei = expected_improvement(np.array([1.0]), np.array([0.0]), best=2.0, xi=0.0)
    assert ei[0] == pytest.approx(1.0)

    ei = expected_improvement(np.array([2.0]), np.array([1.0]), best=2.0, xi=0.0)
    # imp = 0, so EI = sigma * pdf(0)
    assert ei[0] == pytest.approx(1.0 / math.sqrt(2.0 * math.pi))

    ei = expected_improvement(np.array([5.0]), np.array([0.0]), best=2.0)
    assert ei[0] == 0.0


def test_probability_of_improvement_and_confidence_bound():
    pi = probability_of_improvement(np.array([2.0, 0.0]), np.array([1.0, 0.0]), best=2.0, xi=0.0)
    assert pi[0] == pytest.approx(0.5)
    assert pi[1] == 1.0

    lcb = lower_confidence_bound(np.array([1.0, 1.0]), np.array([0.1, 1.0]), kappa=2.0)
    # More uncertainty scores higher at equal mean.
    assert lcb[1] > lcb[0]
    assert lcb[0] == pytest.approx(-0.8)


def test_bayesian_improves_on_bootstrap():
    runner = BowlRunner()
    config = BayesianConfig(iterations=25, initial_samples=5)
    bo = BayesianOptimizer(runner, SPACE, config, seed=21)

    result = asyncio.run(bo.run())

    assert len(result.history) == 25
    assert bo.bootstrap_count == 5
    bootstrap_best = min(ev.fitness for ev in result.history[:5])
    assert result.best.fitness <= bootstrap_best
    assert result.best.fitness < 0.05
    assert all(SPACE.contains(ev.gains) for ev in result.history)
    assert bo.state == RunState.STOPPED


@pytest.mark.parametrize("acquisition", ["ucb", "pi"])
def test_other_acquisition_rules_run(acquisition):
    runner = BowlRunner()
    bo = BayesianOptimizer(runner, SPACE, BayesianConfig(iterations=8, initial_samples=3, acquisition=acquisition), seed=2)

    result = asyncio.run(bo.run())

    assert len(result.history) == 8
    assert result.best is not None


def test_failed_bootstrap_points_extend_bootstrap_phase():
    runner = BowlRunner(fail_first=2)
    bo = BayesianOptimizer(runner, SPACE, BayesianConfig(iterations=10, initial_samples=4), seed=3)

    asyncio.run(bo.run())

    assert bo.bootstrap_count == 6
    assert len(runner.calls) == 10


def test_training_data_imputes_failures_with_worst_value():
    runner = BowlRunner(fail_first=1)
    bo = BayesianOptimizer(runner, SPACE, BayesianConfig(iterations=4, initial_samples=4), seed=4)

    asyncio.run(bo.run())
    X, y = bo.training_data()

    assert X.shape == (4, 3)
    assert np.all((X >= 0.0) & (X <= 1.0))
    assert y[0] == max(y[1:])


def test_bootstrap_points_cover_the_space():
    bo = BayesianOptimizer(BowlRunner(), SPACE, BayesianConfig(initial_samples=8), seed=5)
    points = np.array([bo._next_bootstrap_point() for _ in range(8)])

    assert points.shape == (8, 3)
    # Every axis of a scrambled Sobol batch of 8 is stratified: four points per half.
    assert np.all((points < 0.5).sum(axis=0) == 4)
