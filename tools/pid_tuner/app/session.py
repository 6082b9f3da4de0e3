import asyncio
import inspect
import logging
from typing import Any, Dict, Optional

from .bayesian import BayesianOptimizer
from .genetic import GeneticAlgorithm
from .models import GainVector, OptimizerResult, RunState, SearchSpace
from .optimizer_base import BaseOptimizer, OptimizerListener
from .swarm import ParticleSwarmOptimizer


logger = logging.getLogger(__name__)

OPTIMIZERS = {
    "ga": GeneticAlgorithm,
    "pso": ParticleSwarmOptimizer,
    "bayesian": BayesianOptimizer,
}


def build_optimizer(method: str,
                    runner: Any,
                    search_space: SearchSpace,
                    config: Optional[Dict[str, Any]] = None,
                    listener: Optional[OptimizerListener] = None,
                    seed: Optional[int] = None) -> BaseOptimizer:
    optimizer_cls = OPTIMIZERS.get(method)
    if optimizer_cls is None:
        raise KeyError("Unknown method_id: %s" % method)
    cfg = optimizer_cls.config_class(**(config or {}))
    return optimizer_cls(runner, search_space, cfg, listener=listener, seed=seed)


class TuningSession:
    """One optimizer run against the device.

    When a baseline is given it is re-applied whenever the optimizer parks on
    pause and once the run ends, so the robot is never left on a candidate.
    """

    def __init__(self,
                 optimizer: BaseOptimizer,
                 runner: Any,
                 baseline: Optional[GainVector] = None,
                 listener: Optional[OptimizerListener] = None) -> None:
        self.optimizer = optimizer
        self.runner = runner
        self.baseline = baseline
        self._listener = listener
        self._task: Optional[asyncio.Task] = None
        optimizer.set_listener(self._on_event)

    @property
    def method(self) -> str:
        return self.optimizer.method

    @property
    def state(self) -> RunState:
        return self.optimizer.state

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self._task is not None:
            raise RuntimeError("Session already started")
        self._task = asyncio.create_task(self._run(), name="tuning-%s" % self.method)
        self._task.add_done_callback(self._log_outcome)
        return self._task

    def _log_outcome(self, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("%s session cancelled", self.method.upper())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s session crashed: %r", self.method.upper(), exc)

    def pause(self) -> None:
        self.optimizer.pause()

    def resume(self) -> None:
        self.optimizer.resume()

    def stop(self) -> None:
        self.optimizer.stop()

    async def wait(self) -> Optional[OptimizerResult]:
        if self._task is None:
            return None
        return await self._task

    async def _run(self) -> OptimizerResult:
        try:
            return await self.optimizer.run()
        finally:
            await self.restore_baseline()

    async def restore_baseline(self) -> None:
        if self.baseline is None:
            return
        try:
            await self.runner.apply_gains(self.baseline)
            logger.info("Restored baseline kp=%.4f ki=%.4f kd=%.4f",
                        self.baseline.kp, self.baseline.ki, self.baseline.kd)
        except Exception as exc:
            logger.warning("Could not restore baseline gains: %s", exc)

    async def _on_event(self, event_type: str, data: Dict[str, Any]) -> None:
        if event_type == "parked":
            await self.restore_baseline()
        if self._listener is not None:
            outcome = self._listener(event_type, data)
            if inspect.isawaitable(outcome):
                await outcome
