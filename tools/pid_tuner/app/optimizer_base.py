import asyncio
import inspect
import logging
import math
from typing import Any, Awaitable, Callable, Dict, List, Optional

import numpy as np
from pydantic import BaseModel

from .models import (
    FAILURE_ERROR,
    Evaluation,
    FitnessResult,
    GainVector,
    OptimizerResult,
    RunState,
    SearchSpace,
)


logger = logging.getLogger(__name__)

OptimizerListener = Callable[[str, Dict[str, Any]], Optional[Awaitable[None]]]


class BaseOptimizer:
    """Run-state machine and evaluation bookkeeping shared by all methods.

    Subclasses implement ``_search`` and call ``_checkpoint`` before every
    evaluation: that is where pause parks the loop and where a stop request
    is observed. An evaluation already in flight is never interrupted.
    """

    method = "base"
    config_class = BaseModel

    def __init__(self,
                 runner: Any,
                 search_space: SearchSpace,
                 config: Optional[BaseModel] = None,
                 listener: Optional[OptimizerListener] = None,
                 seed: Optional[int] = None) -> None:
        if config is None:
            config = self.config_class()
        elif not isinstance(config, self.config_class):
            raise TypeError("%s expects %s" % (type(self).__name__, self.config_class.__name__))
        self.runner = runner
        self.search_space = search_space
        self.config = config
        self.seed = seed
        self._listener = listener

        self._state = RunState.IDLE
        self._stop_requested = False
        self._resume = asyncio.Event()
        self._resume.set()

        self.rng = np.random.default_rng(seed)
        self.history: List[Evaluation] = []
        self.best: Optional[Evaluation] = None

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def set_listener(self, listener: Optional[OptimizerListener]) -> None:
        self._listener = listener

    def pause(self) -> None:
        if self._state != RunState.RUNNING:
            raise RuntimeError("Cannot pause from state %s" % self._state.value)
        if self._stop_requested:
            raise RuntimeError("Cannot pause, stop already requested")
        self._state = RunState.PAUSED
        self._resume.clear()

    def resume(self) -> None:
        if self._state != RunState.PAUSED:
            raise RuntimeError("Cannot resume from state %s" % self._state.value)
        self._state = RunState.RUNNING
        self._resume.set()

    def stop(self) -> None:
        if self._state == RunState.STOPPED:
            return
        if self._state == RunState.IDLE:
            self._state = RunState.STOPPED
            return
        self._stop_requested = True
        self._resume.set()

    def reset(self) -> None:
        if self._state in (RunState.RUNNING, RunState.PAUSED):
            raise RuntimeError("Cannot reset a run in progress")
        self._state = RunState.IDLE
        self._stop_requested = False
        self._resume.set()
        self.rng = np.random.default_rng(self.seed)
        self.history = []
        self.best = None
        self._reset_search()

    async def run(self) -> OptimizerResult:
        if self._state != RunState.IDLE:
            raise RuntimeError("Optimizer already used (state=%s); call reset() first" % self._state.value)
        self._state = RunState.RUNNING
        logger.info("%s run started", self.method.upper())
        await self._emit("state", {"state": RunState.RUNNING.value})
        try:
            await self._search()
        finally:
            self._state = RunState.STOPPED
            self._resume.set()

        if self.best is not None:
            logger.info(
                "%s run finished after %d tests, best fitness=%.4f kp=%.4f ki=%.4f kd=%.4f",
                self.method.upper(), len(self.history), self.best.fitness,
                self.best.gains.kp, self.best.gains.ki, self.best.gains.kd,
            )
        else:
            logger.info("%s run finished after %d tests without a usable result",
                        self.method.upper(), len(self.history))
        await self._emit("state", {"state": RunState.STOPPED.value})
        await self._emit("finished", {
            "tests": len(self.history),
            "stopped_early": self._stop_requested,
            "best": self.best.to_dict() if self.best else None,
        })
        return self.result()

    def result(self) -> OptimizerResult:
        return OptimizerResult(best=self.best, history=list(self.history), state=self._state)

    # Hooks for subclasses

    async def _search(self) -> None:
        raise NotImplementedError

    def _reset_search(self) -> None:
        pass

    # Helpers

    async def _checkpoint(self) -> bool:
        if self._stop_requested:
            return False
        if not self._resume.is_set():
            logger.info("%s paused after %d tests", self.method.upper(), len(self.history))
            await self._emit("state", {"state": RunState.PAUSED.value})
            await self._emit("parked", {"tests": len(self.history)})
            await self._resume.wait()
            if not self._stop_requested:
                await self._emit("state", {"state": RunState.RUNNING.value})
        return not self._stop_requested

    async def _evaluate(self, gains: GainVector) -> Evaluation:
        try:
            result = await self.runner.run_test(gains)
        except Exception as exc:
            logger.exception("%s test raised for kp=%.4f ki=%.4f kd=%.4f",
                             self.method.upper(), gains.kp, gains.ki, gains.kd)
            result = FitnessResult.failure_result(FAILURE_ERROR, error=str(exc), gains=gains.as_dict())

        evaluation = Evaluation(index=len(self.history), gains=gains, result=result)
        self.history.append(evaluation)
        await self._emit("test_result", evaluation.to_dict())

        if self._is_better(evaluation.fitness, self.best):
            self.best = evaluation
            await self._emit("best", evaluation.to_dict())
        return evaluation

    async def _progress(self, iteration: int, total: int) -> None:
        best_fitness = self.best.fitness if self.best is not None else None
        await self._emit("progress", {
            "iteration": iteration,
            "total": total,
            "best_fitness": best_fitness,
        })

    async def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        if self._listener is None:
            return
        data = dict(data, method=self.method)
        outcome = self._listener(event_type, data)
        if inspect.isawaitable(outcome):
            await outcome

    @staticmethod
    def _is_better(fitness: float, current: Optional[Evaluation]) -> bool:
        if not math.isfinite(fitness):
            return False
        return current is None or fitness < current.fitness

    def _random_gains(self) -> GainVector:
        lower = np.array(self.search_space.lower())
        upper = np.array(self.search_space.upper())
        point = lower + self.rng.random(3) * (upper - lower)
        return self._to_gains(point)

    def _to_gains(self, vector: Any) -> GainVector:
        kp, ki, kd = (float(v) for v in vector)
        return self.search_space.clip(kp, ki, kd)
