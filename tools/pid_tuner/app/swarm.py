import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from .models import GainVector, SwarmConfig
from .optimizer_base import BaseOptimizer


@dataclass
class Particle:
    position: GainVector
    velocity: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    best_position: Optional[GainVector] = None
    best_fitness: float = math.inf
    fitness: float = math.inf


class ParticleSwarmOptimizer(BaseOptimizer):
    method = "pso"
    config_class = SwarmConfig

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._reset_search()

    def _reset_search(self) -> None:
        self.iteration = 0
        self.particles: List[Particle] = []
        self.global_best_position: Optional[GainVector] = None
        self.global_best_fitness = math.inf

    async def _search(self) -> None:
        cfg = self.config
        self.particles = []
        for _ in range(cfg.num_particles):
            position = self._random_gains()
            self.particles.append(Particle(position=position, best_position=position))

        while self.iteration < cfg.iterations:
            for particle in self.particles:
                if not await self._checkpoint():
                    return
                evaluation = await self._evaluate(particle.position)
                particle.fitness = evaluation.fitness
                if math.isfinite(evaluation.fitness):
                    if evaluation.fitness < particle.best_fitness:
                        particle.best_fitness = evaluation.fitness
                        particle.best_position = particle.position
                    if evaluation.fitness < self.global_best_fitness:
                        self.global_best_fitness = evaluation.fitness
                        self.global_best_position = particle.position
                self.move(particle)

            self.iteration += 1
            await self._progress(self.iteration, cfg.iterations)

    def move(self, particle: Particle) -> None:
        if self.global_best_position is None:
            return
        cfg = self.config
        x = np.array(particle.position.as_tuple())
        v = np.array(particle.velocity)
        pbest = np.array(particle.best_position.as_tuple())
        gbest = np.array(self.global_best_position.as_tuple())

        r1 = self.rng.random(3)
        r2 = self.rng.random(3)
        v = (
            cfg.inertia_weight * v
            + cfg.cognitive_weight * r1 * (pbest - x)
            + cfg.social_weight * r2 * (gbest - x)
        )
        v_max = cfg.velocity_clamp * np.array(self.search_space.spans())
        v = np.clip(v, -v_max, v_max)

        particle.velocity = (float(v[0]), float(v[1]), float(v[2]))
        particle.position = self._to_gains(x + v)
