import asyncio
import logging
import time
from typing import Optional

from .command_catalog import render_param_commands
from .fitness import FitnessEvaluator
from .models import (
    FAILURE_TIMEOUT,
    FAILURE_TRANSPORT,
    FitnessResult,
    GainVector,
    TestRunnerSettings,
)
from .protocol import next_test_id
from .telemetry_stream import Channel, TelemetryStreamAdapter


logger = logging.getLogger(__name__)


class TelemetryTestRunner:
    """Turn "set these gains" into a FitnessResult.

    One call sends the parameter commands, waits for the controller to
    settle, captures a telemetry window and scores it. Calls are serialized so
    two capture windows never overlap on the same channel.
    """

    def __init__(self,
                 channel: Channel,
                 settings: Optional[TestRunnerSettings] = None,
                 stream: Optional[TelemetryStreamAdapter] = None,
                 evaluator: Optional[FitnessEvaluator] = None) -> None:
        self.settings = settings or TestRunnerSettings()
        self._channel = channel
        self._stream = stream or TelemetryStreamAdapter(channel)
        self._evaluator = evaluator or FitnessEvaluator(self.settings.fitness)
        self._slot = asyncio.Lock()

    async def apply_gains(self, gains: GainVector, test_id: Optional[int] = None) -> None:
        for command in render_param_commands(self.settings.loop, gains, test_id):
            await self._channel.send(command)

    async def run_test(self,
                       gains: GainVector,
                       duration_ms: Optional[float] = None,
                       settling_ms: Optional[float] = None) -> FitnessResult:
        duration_ms = self.settings.duration_ms if duration_ms is None else duration_ms
        settling_ms = self.settings.settling_ms if settling_ms is None else settling_ms
        if duration_ms <= 0:
            raise ValueError("duration_ms must be positive")
        if settling_ms < 0:
            raise ValueError("settling_ms must not be negative")
        timeout_s = duration_ms * self.settings.timeout_multiplier / 1000.0

        async with self._slot:
            test_id = next_test_id()
            started = time.monotonic()
            diag = {"gains": gains.as_dict(), "test_id": test_id}

            try:
                await self.apply_gains(gains, test_id)
            except Exception as exc:
                logger.warning(
                    "Test %s send failed kp=%.4f ki=%.4f kd=%.4f: %s",
                    test_id, gains.kp, gains.ki, gains.kd, exc,
                )
                return FitnessResult.failure_result(FAILURE_TRANSPORT, error=str(exc), **diag)

            await asyncio.sleep(settling_ms / 1000.0)

            async with self._stream.open_window(duration_ms, test_id=test_id) as window:
                try:
                    await asyncio.wait_for(window.wait_closed(), timeout=timeout_s)
                except asyncio.TimeoutError:
                    elapsed = time.monotonic() - started
                    logger.warning(
                        "Test %s timed out after %.2fs (limit %.2fs) kp=%.4f ki=%.4f kd=%.4f samples=%d",
                        test_id, elapsed, timeout_s, gains.kp, gains.ki, gains.kd, len(window.samples),
                    )
                    return FitnessResult.failure_result(
                        FAILURE_TIMEOUT,
                        sample_count=len(window.samples),
                        timeout_s=timeout_s,
                        elapsed_s=elapsed,
                        **diag,
                    )
                samples = list(window.samples)
                abort_reason = window.abort_reason
                start_ts = window.start_ts

            elapsed = time.monotonic() - started
            if abort_reason is not None:
                logger.warning(
                    "Test %s aborted by device (%s) kp=%.4f ki=%.4f kd=%.4f",
                    test_id, abort_reason, gains.kp, gains.ki, gains.kd,
                )
                return FitnessResult.failure_result(
                    abort_reason, sample_count=len(samples), elapsed_s=elapsed, **diag
                )

            if not samples:
                logger.warning(
                    "Test %s received no telemetry in %.2fs kp=%.4f ki=%.4f kd=%.4f",
                    test_id, duration_ms / 1000.0, gains.kp, gains.ki, gains.kd,
                )
                return FitnessResult.failure_result(
                    FAILURE_TIMEOUT,
                    sample_count=0,
                    timeout_s=timeout_s,
                    window_s=duration_ms / 1000.0,
                    elapsed_s=elapsed,
                    **diag,
                )

            result = self._evaluator.evaluate(samples, start=start_ts)
            result.detail.update(diag)
            result.detail["elapsed_s"] = elapsed
            if result.failed:
                logger.warning(
                    "Test %s %s (%d samples) kp=%.4f ki=%.4f kd=%.4f",
                    test_id, result.failure, result.sample_count, gains.kp, gains.ki, gains.kd,
                )
            else:
                logger.info(
                    "Test %s fitness=%.4f itae=%.3f overshoot=%.3f sse=%.3f osc=%.2f n=%d",
                    test_id, result.fitness, result.itae, result.overshoot,
                    result.steady_state_error, result.oscillation_penalty, result.sample_count,
                )
            return result
