import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .models import GainVector, GeneticConfig
from .optimizer_base import BaseOptimizer


@dataclass(frozen=True)
class Individual:
    gains: GainVector
    fitness: float = math.inf


class GeneticAlgorithm(BaseOptimizer):
    """Generational GA over (kp, ki, kd).

    Every generation is an immutable tuple of evaluated individuals. The elite
    is the best individual seen so far; it only changes when a strictly better
    finite fitness shows up, so ``elite_history`` never increases.
    """

    method = "ga"
    config_class = GeneticConfig

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._reset_search()

    def _reset_search(self) -> None:
        self.generation = 0
        self.population: Tuple[Individual, ...] = ()
        self.elite: Optional[Individual] = None
        self.elite_history: List[float] = []

    async def _search(self) -> None:
        cfg = self.config
        candidates = tuple(self._random_gains() for _ in range(cfg.population_size))

        while self.generation < cfg.generations:
            evaluated: List[Individual] = []
            for gains in candidates:
                if not await self._checkpoint():
                    return
                evaluation = await self._evaluate(gains)
                evaluated.append(Individual(gains=gains, fitness=evaluation.fitness))

            self.population = tuple(sorted(evaluated, key=lambda ind: ind.fitness))
            leader = self.population[0]
            if math.isfinite(leader.fitness) and (self.elite is None or leader.fitness < self.elite.fitness):
                self.elite = leader
            self.elite_history.append(self.elite.fitness if self.elite is not None else math.inf)

            self.generation += 1
            await self._progress(self.generation, cfg.generations)
            if self.generation < cfg.generations:
                candidates = self.next_generation(self.population)

    def next_generation(self, population: Sequence[Individual]) -> Tuple[GainVector, ...]:
        cfg = self.config
        valid = [ind for ind in population if math.isfinite(ind.fitness)]
        offspring: List[GainVector] = []

        if cfg.elitism and self.elite is not None:
            offspring.append(self.elite.gains)

        while len(offspring) < cfg.population_size:
            parent1 = self.select(valid)
            parent2 = self.select(valid)
            if parent1 is None or parent2 is None:
                offspring.append(self._random_gains())
                continue

            if self.rng.random() < cfg.crossover_rate:
                child = self.crossover(parent1.gains, parent2.gains)
            else:
                child = np.array(parent1.gains.as_tuple())
            offspring.append(self.mutate(child))

        return tuple(offspring)

    def select(self, valid: Sequence[Individual]) -> Optional[Individual]:
        if not valid:
            return None
        if self.config.selection == "rank":
            ranked = sorted(valid, key=lambda ind: ind.fitness)
            weights = np.arange(len(ranked), 0, -1, dtype=float)
            idx = self.rng.choice(len(ranked), p=weights / weights.sum())
            return ranked[int(idx)]

        best: Optional[Individual] = None
        for _ in range(self.config.tournament_size):
            candidate = valid[int(self.rng.integers(len(valid)))]
            if best is None or candidate.fitness < best.fitness:
                best = candidate
        return best

    def crossover(self, parent1: GainVector, parent2: GainVector) -> np.ndarray:
        alpha = self.rng.random(3)
        p1 = np.array(parent1.as_tuple())
        p2 = np.array(parent2.as_tuple())
        return alpha * p1 + (1.0 - alpha) * p2

    def mutate(self, child: np.ndarray) -> GainVector:
        cfg = self.config
        spans = np.array(self.search_space.spans())
        mask = self.rng.random(3) < cfg.mutation_rate
        noise = self.rng.normal(0.0, 1.0, 3) * cfg.mutation_scale * spans
        return self._to_gains(child + np.where(mask, noise, 0.0))
