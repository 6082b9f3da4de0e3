import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


FAILURE_TRANSPORT = "transport"
FAILURE_TIMEOUT = "timeout"
FAILURE_INTERRUPTED = "interrupted"
FAILURE_INSUFFICIENT_SAMPLES = "insufficient_samples"
FAILURE_ERROR = "error"


@dataclass(frozen=True)
class GainVector:
    kp: float
    ki: float
    kd: float

    def as_tuple(self) -> tuple:
        return (self.kp, self.ki, self.kd)

    def as_dict(self) -> Dict[str, float]:
        return {"kp": self.kp, "ki": self.ki, "kd": self.kd}

    def is_finite(self) -> bool:
        return all(math.isfinite(v) for v in self.as_tuple())


@dataclass(frozen=True)
class TelemetrySample:
    timestamp: float
    pitch: float
    roll: float = 0.0
    yaw: float = 0.0
    speed: float = 0.0
    extra: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class FitnessResult:
    fitness: float
    itae: float
    overshoot: float
    steady_state_error: float
    oscillation_penalty: float
    sample_count: int
    failure: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return not math.isfinite(self.fitness)

    @classmethod
    def failure_result(cls, kind: str, sample_count: int = 0, **detail: Any) -> "FitnessResult":
        return cls(
            fitness=math.inf,
            itae=0.0,
            overshoot=0.0,
            steady_state_error=0.0,
            oscillation_penalty=0.0,
            sample_count=sample_count,
            failure=kind,
            detail=detail,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fitness": self.fitness if math.isfinite(self.fitness) else None,
            "itae": self.itae,
            "overshoot": self.overshoot,
            "steady_state_error": self.steady_state_error,
            "oscillation_penalty": self.oscillation_penalty,
            "sample_count": self.sample_count,
            "failure": self.failure,
        }


@dataclass(frozen=True)
class Evaluation:
    index: int
    gains: GainVector
    result: FitnessResult

    @property
    def fitness(self) -> float:
        return self.result.fitness

    def to_dict(self) -> Dict[str, Any]:
        data = {"index": self.index}
        data.update(self.gains.as_dict())
        data.update(self.result.to_dict())
        return data


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass
class OptimizerResult:
    best: Optional[Evaluation]
    history: List[Evaluation]
    state: RunState


# Configuration

class GainBounds(BaseModel):
    min: float = Field(..., allow_inf_nan=False)
    max: float = Field(..., allow_inf_nan=False)

    @model_validator(mode="after")
    def _check_order(self) -> "GainBounds":
        if self.min > self.max:
            raise ValueError("bounds inverted: min=%s > max=%s" % (self.min, self.max))
        return self

    @property
    def span(self) -> float:
        return self.max - self.min

    def clip(self, value: float) -> float:
        return self.min if value < self.min else self.max if value > self.max else value


class SearchSpace(BaseModel):
    kp: GainBounds
    ki: GainBounds
    kd: GainBounds

    def bounds(self) -> List[GainBounds]:
        return [self.kp, self.ki, self.kd]

    def lower(self) -> List[float]:
        return [b.min for b in self.bounds()]

    def upper(self) -> List[float]:
        return [b.max for b in self.bounds()]

    def spans(self) -> List[float]:
        return [b.span for b in self.bounds()]

    def clip(self, kp: float, ki: float, kd: float) -> GainVector:
        return GainVector(
            kp=self.kp.clip(float(kp)),
            ki=self.ki.clip(float(ki)),
            kd=self.kd.clip(float(kd)),
        )

    def contains(self, gains: GainVector) -> bool:
        return all(b.min <= v <= b.max for b, v in zip(self.bounds(), gains.as_tuple()))

    @classmethod
    def from_limits(cls,
                    kp: tuple,
                    ki: tuple,
                    kd: tuple) -> "SearchSpace":
        return cls(
            kp=GainBounds(min=kp[0], max=kp[1]),
            ki=GainBounds(min=ki[0], max=ki[1]),
            kd=GainBounds(min=kd[0], max=kd[1]),
        )


class FitnessWeights(BaseModel):
    itae: float = Field(1.0, ge=0.0)
    overshoot: float = Field(10.0, ge=0.0)
    steady_state_error: float = Field(5.0, ge=0.0)
    oscillation: float = Field(20.0, ge=0.0)


class FitnessSettings(BaseModel):
    min_samples: int = Field(5, ge=1)
    oscillation_threshold: float = Field(0.3, ge=0.0, le=1.0)
    steady_state_fraction: float = Field(0.3, gt=0.0, le=1.0)
    weights: FitnessWeights = Field(default_factory=FitnessWeights)


class TestRunnerSettings(BaseModel):
    __test__ = False

    model_config = ConfigDict(extra="forbid")

    duration_ms: float = Field(2000.0, gt=0.0, allow_inf_nan=False)
    settling_ms: float = Field(300.0, ge=0.0, allow_inf_nan=False)
    timeout_multiplier: float = Field(2.0, ge=1.0, allow_inf_nan=False)
    loop: Literal["balance", "speed", "position"] = "balance"
    fitness: FitnessSettings = Field(default_factory=FitnessSettings)


class GeneticConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    population_size: int = Field(20, ge=1)
    generations: int = Field(30, ge=1)
    mutation_rate: float = Field(0.1, ge=0.0, le=1.0)
    mutation_scale: float = Field(0.1, gt=0.0)
    crossover_rate: float = Field(0.7, ge=0.0, le=1.0)
    elitism: bool = True
    selection: Literal["tournament", "rank"] = "tournament"
    tournament_size: int = Field(3, ge=1)


class SwarmConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    num_particles: int = Field(20, ge=1)
    iterations: int = Field(30, ge=1)
    inertia_weight: float = Field(0.7, ge=0.0)
    cognitive_weight: float = Field(1.5, ge=0.0)
    social_weight: float = Field(1.5, ge=0.0)
    velocity_clamp: float = Field(0.2, gt=0.0)


class BayesianConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    iterations: int = Field(25, ge=1)
    initial_samples: int = Field(5, ge=1)
    acquisition: Literal["ei", "ucb", "pi"] = "ei"
    xi: float = Field(0.01, ge=0.0)
    kappa: float = Field(2.0, ge=0.0)
    candidate_pool: int = Field(512, ge=8)


# HTTP API

class ConnectRequest(BaseModel):
    host: str = Field(..., min_length=1)
    port: int = Field(23, ge=1, le=65535)


class DisconnectResponse(BaseModel):
    disconnected: bool


class GainPayload(BaseModel):
    kp: float = Field(..., allow_inf_nan=False)
    ki: float = Field(..., allow_inf_nan=False)
    kd: float = Field(..., allow_inf_nan=False)

    def to_gains(self) -> GainVector:
        return GainVector(kp=self.kp, ki=self.ki, kd=self.kd)


class StartTuningRequest(BaseModel):
    method: Literal["ga", "pso", "bayesian"]
    loop: Literal["balance", "speed", "position"] = "balance"
    search_space: Optional[SearchSpace] = None
    runner: Dict[str, Any] = Field(default_factory=dict)
    config: Dict[str, Any] = Field(default_factory=dict)
    baseline: Optional[GainPayload] = None
    seed: Optional[int] = None


class ConfigFieldDefinition(BaseModel):
    name: str
    type: str
    label: str
    min: Optional[float] = None
    max: Optional[float] = None
    step: Optional[float] = None
    default: Optional[Any] = None
    choices: List[str] = Field(default_factory=list)


class MethodDefinition(BaseModel):
    id: str
    label: str
    fields: List[ConfigFieldDefinition] = Field(default_factory=list)
