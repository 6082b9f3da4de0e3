"""Reduce a captured telemetry window to a scalar cost.

The balancing setpoint is zero pitch, so every metric below is computed on
``|pitch|``. Lower fitness is better; ``math.inf`` marks an unusable window.
"""

import math
from typing import Optional, Sequence

from .models import FAILURE_INSUFFICIENT_SAMPLES, FitnessResult, FitnessSettings, TelemetrySample


def itae(samples: Sequence[TelemetrySample], start: Optional[float] = None) -> float:
    """Mean of |pitch| weighted by time since ``start`` (first sample when omitted)."""
    if start is None:
        start = samples[0].timestamp
    total = 0.0
    for s in samples:
        total += abs(s.pitch) * max(0.0, s.timestamp - start)
    return total / len(samples)


def overshoot(samples: Sequence[TelemetrySample]) -> float:
    return max(abs(s.pitch) for s in samples)


def steady_state_error(samples: Sequence[TelemetrySample], fraction: float = 0.3) -> float:
    # Rounded first so 10 * 0.3 gives a tail of 3, not 4.
    tail_count = max(1, int(math.ceil(round(len(samples) * fraction, 9))))
    tail = samples[-tail_count:]
    return sum(abs(s.pitch) for s in tail) / len(tail)


def sign_changes(samples: Sequence[TelemetrySample]) -> int:
    changes = 0
    for prev, curr in zip(samples, samples[1:]):
        if prev.pitch * curr.pitch < 0.0:
            changes += 1
    return changes


def oscillation_penalty(samples: Sequence[TelemetrySample],
                        threshold: float = 0.3,
                        weight: float = 20.0) -> float:
    if len(samples) < 2:
        return 0.0
    rate = sign_changes(samples) / (len(samples) - 1)
    if rate > threshold:
        return rate * weight
    return 0.0


class FitnessEvaluator:
    def __init__(self, settings: Optional[FitnessSettings] = None) -> None:
        self.settings = settings or FitnessSettings()

    def evaluate(self,
                 samples: Sequence[TelemetrySample],
                 start: Optional[float] = None) -> FitnessResult:
        cfg = self.settings
        count = len(samples)
        if count < cfg.min_samples:
            return FitnessResult.failure_result(
                FAILURE_INSUFFICIENT_SAMPLES,
                sample_count=count,
                min_samples=cfg.min_samples,
            )

        weights = cfg.weights
        itae_value = itae(samples, start)
        overshoot_value = overshoot(samples)
        sse_value = steady_state_error(samples, cfg.steady_state_fraction)
        penalty = oscillation_penalty(samples, cfg.oscillation_threshold, weights.oscillation)

        fitness = (
            itae_value * weights.itae
            + overshoot_value * weights.overshoot
            + sse_value * weights.steady_state_error
            + penalty
        )
        return FitnessResult(
            fitness=fitness,
            itae=itae_value,
            overshoot=overshoot_value,
            steady_state_error=sse_value,
            oscillation_penalty=penalty,
            sample_count=count,
        )
