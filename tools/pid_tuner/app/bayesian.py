import asyncio
import logging
import math
import warnings
from typing import List, Optional

import numpy as np
from scipy.stats import norm, qmc
from sklearn.exceptions import ConvergenceWarning
from sklearn.gaussian_process import GaussianProcessRegressor
from sklearn.gaussian_process.kernels import ConstantKernel, Matern, WhiteKernel

from .models import BayesianConfig, GainVector
from .optimizer_base import BaseOptimizer


logger = logging.getLogger(__name__)


def expected_improvement(mu: np.ndarray, sigma: np.ndarray, best: float, xi: float = 0.01) -> np.ndarray:
    """EI for minimization; falls back to the plain improvement where sigma is zero."""
    mu = np.asarray(mu, dtype=float)
    sigma = np.asarray(sigma, dtype=float)
    imp = best - mu - xi
    with np.errstate(divide="ignore", invalid="ignore"):
        z = imp / sigma
        ei = imp * norm.cdf(z) + sigma * norm.pdf(z)
    return np.where(sigma > 0.0, ei, np.maximum(imp, 0.0))


def probability_of_improvement(mu: np.ndarray, sigma: np.ndarray, best: float, xi: float = 0.01) -> np.ndarray:
    mu = np.asarray(mu, dtype=float)
    sigma = np.asarray(sigma, dtype=float)
    imp = best - mu - xi
    with np.errstate(divide="ignore", invalid="ignore"):
        pi = norm.cdf(imp / sigma)
    return np.where(sigma > 0.0, pi, (imp > 0.0).astype(float))


def lower_confidence_bound(mu: np.ndarray, sigma: np.ndarray, kappa: float = 2.0) -> np.ndarray:
    # Negated so that, like the other rules, larger is better.
    return -(np.asarray(mu, dtype=float) - kappa * np.asarray(sigma, dtype=float))


class BayesianOptimizer(BaseOptimizer):
    """GP-guided search. Every evaluation is one iteration of the budget.

    Until ``initial_samples`` finite observations exist, candidates come from
    a scrambled Sobol sequence. After that a Gaussian process is refit on the
    whole history (failed tests imputed with the worst finite fitness) and
    the next point maximizes the acquisition rule over a candidate pool.
    """

    method = "bayesian"
    config_class = BayesianConfig

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._reset_search()

    def _reset_search(self) -> None:
        self.iteration = 0
        self.bootstrap_count = 0
        self._bootstrap_queue: List[np.ndarray] = []
        self._sobol = qmc.Sobol(d=3, scramble=True, seed=int(self.rng.integers(2 ** 32)))

    async def _search(self) -> None:
        cfg = self.config
        while self.iteration < cfg.iterations:
            if not await self._checkpoint():
                return
            if self.finite_count() < cfg.initial_samples:
                gains = self._from_unit(self._next_bootstrap_point())
                self.bootstrap_count += 1
            else:
                gains = await asyncio.to_thread(self.propose)
            await self._evaluate(gains)
            self.iteration += 1
            await self._progress(self.iteration, cfg.iterations)

    def finite_count(self) -> int:
        return sum(1 for ev in self.history if math.isfinite(ev.fitness))

    def _next_bootstrap_point(self) -> np.ndarray:
        if not self._bootstrap_queue:
            first_batch = 2 ** int(math.ceil(math.log2(max(1, self.config.initial_samples))))
            n = max(self._sobol.num_generated, first_batch)
            self._bootstrap_queue.extend(self._sobol.random(n))
        return self._bootstrap_queue.pop(0)

    def _to_unit(self, gains: GainVector) -> np.ndarray:
        lower = np.array(self.search_space.lower())
        spans = np.array(self.search_space.spans())
        safe = np.where(spans > 0.0, spans, 1.0)
        return (np.array(gains.as_tuple()) - lower) / safe

    def _from_unit(self, point: np.ndarray) -> GainVector:
        lower = np.array(self.search_space.lower())
        spans = np.array(self.search_space.spans())
        return self._to_gains(lower + np.clip(point, 0.0, 1.0) * spans)

    def training_data(self):
        finite = [ev.fitness for ev in self.history if math.isfinite(ev.fitness)]
        if not finite:
            return None, None
        worst = max(finite)
        X = np.array([self._to_unit(ev.gains) for ev in self.history])
        y = np.array([ev.fitness if math.isfinite(ev.fitness) else worst for ev in self.history])
        return X, y

    def fit_surrogate(self) -> Optional[GaussianProcessRegressor]:
        X, y = self.training_data()
        if X is None or len(X) < 2:
            return None
        kernel = (
            ConstantKernel(1.0, (1e-3, 1e3))
            * Matern(length_scale=np.ones(3), length_scale_bounds=(1e-2, 1e2), nu=2.5)
            + WhiteKernel(noise_level=1e-3, noise_level_bounds=(1e-8, 1e0))
        )
        gp = GaussianProcessRegressor(
            kernel=kernel,
            normalize_y=True,
            n_restarts_optimizer=2,
            random_state=int(self.rng.integers(2 ** 31)),
        )
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            gp.fit(X, y)
        return gp

    def candidate_pool(self) -> np.ndarray:
        cfg = self.config
        m = int(math.ceil(math.log2(cfg.candidate_pool)))
        sobol = qmc.Sobol(d=3, scramble=True, seed=int(self.rng.integers(2 ** 32)))
        pool = sobol.random_base2(m)
        if self.best is not None:
            center = self._to_unit(self.best.gains)
            local = center + self.rng.normal(0.0, 0.05, size=(max(1, cfg.candidate_pool // 4), 3))
            pool = np.vstack([pool, np.clip(local, 0.0, 1.0)])
        return pool

    def acquisition(self, mu: np.ndarray, sigma: np.ndarray, best: float) -> np.ndarray:
        cfg = self.config
        if cfg.acquisition == "ucb":
            return lower_confidence_bound(mu, sigma, cfg.kappa)
        if cfg.acquisition == "pi":
            return probability_of_improvement(mu, sigma, best, cfg.xi)
        return expected_improvement(mu, sigma, best, cfg.xi)

    def propose(self) -> GainVector:
        try:
            gp = self.fit_surrogate()
        except (ValueError, np.linalg.LinAlgError) as exc:
            logger.warning("Surrogate fit failed (%s); falling back to a quasi-random point", exc)
            gp = None
        if gp is None or self.best is None:
            return self._from_unit(self._next_bootstrap_point())

        pool = self.candidate_pool()
        mu, sigma = gp.predict(pool, return_std=True)
        scores = self.acquisition(mu, sigma, self.best.fitness)
        idx = int(np.argmax(scores))
        logger.debug("Acquisition %s picked candidate %d: mu=%.4f sigma=%.4f score=%.4g",
                     self.config.acquisition, idx, mu[idx], sigma[idx], scores[idx])
        return self._from_unit(pool[idx])
