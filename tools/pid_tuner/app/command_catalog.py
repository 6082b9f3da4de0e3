from typing import Any, Dict, List, Optional

from .models import ConfigFieldDefinition, GainVector, MethodDefinition, SearchSpace
from .protocol import RequestConfigCommand, SetParamCommand


def _field(name: str,
           field_type: str,
           label: str,
           min_value: float = None,
           max_value: float = None,
           step: float = None,
           default: Any = None,
           choices: Optional[List[str]] = None) -> ConfigFieldDefinition:
    return ConfigFieldDefinition(
        name=name,
        type=field_type,
        label=label,
        min=min_value,
        max=max_value,
        step=step,
        default=default,
        choices=choices or [],
    )


LOOP_PARAM_KEYS: Dict[str, Dict[str, str]] = {
    "balance": {"kp": "kp_b", "ki": "ki_b", "kd": "kd_b"},
    "speed": {"kp": "kp_s", "ki": "ki_s", "kd": "kd_s"},
    "position": {"kp": "kp_p", "ki": "ki_p", "kd": "kd_p"},
}

_LOOP_SEARCH_SPACES: Dict[str, Dict[str, tuple]] = {
    "balance": {"kp": (0.1, 50.0), "ki": (0.0, 10.0), "kd": (0.0, 5.0)},
    "speed": {"kp": (0.01, 5.0), "ki": (0.0, 2.0), "kd": (0.0, 1.0)},
    "position": {"kp": (0.1, 20.0), "ki": (0.0, 5.0), "kd": (0.0, 2.0)},
}


_METHODS: List[MethodDefinition] = [
    MethodDefinition(
        id="ga",
        label="Genetic algorithm",
        fields=[
            _field("population_size", "int", "Population", min_value=2, max_value=200, step=1, default=20),
            _field("generations", "int", "Generations", min_value=1, max_value=500, step=1, default=30),
            _field("mutation_rate", "float", "Mutation rate", min_value=0.0, max_value=1.0, step=0.01, default=0.1),
            _field("crossover_rate", "float", "Crossover rate", min_value=0.0, max_value=1.0, step=0.01, default=0.7),
            _field("selection", "choice", "Selection", default="tournament", choices=["tournament", "rank"]),
        ],
    ),
    MethodDefinition(
        id="pso",
        label="Particle swarm",
        fields=[
            _field("num_particles", "int", "Particles", min_value=2, max_value=200, step=1, default=20),
            _field("iterations", "int", "Iterations", min_value=1, max_value=500, step=1, default=30),
            _field("inertia_weight", "float", "Inertia", min_value=0.0, max_value=1.5, step=0.05, default=0.7),
            _field("cognitive_weight", "float", "Cognitive weight", min_value=0.0, max_value=4.0, step=0.1, default=1.5),
            _field("social_weight", "float", "Social weight", min_value=0.0, max_value=4.0, step=0.1, default=1.5),
        ],
    ),
    MethodDefinition(
        id="bayesian",
        label="Bayesian optimization",
        fields=[
            _field("iterations", "int", "Iterations", min_value=1, max_value=200, step=1, default=25),
            _field("initial_samples", "int", "Bootstrap samples", min_value=1, max_value=50, step=1, default=5),
            _field("acquisition", "choice", "Acquisition", default="ei", choices=["ei", "ucb", "pi"]),
            _field("xi", "float", "Exploration (xi)", min_value=0.0, max_value=1.0, step=0.01, default=0.01),
        ],
    ),
]

_METHODS_BY_ID: Dict[str, MethodDefinition] = {m.id: m for m in _METHODS}


def list_methods() -> List[Dict[str, Any]]:
    return [m.model_dump() for m in _METHODS]


def get_method(method_id: str) -> MethodDefinition:
    method = _METHODS_BY_ID.get(method_id)
    if method is None:
        raise KeyError("Unknown method_id: %s" % method_id)
    return method


def list_loops() -> List[Dict[str, Any]]:
    return [
        {"id": loop, "keys": dict(keys), "search_space": default_search_space(loop).model_dump()}
        for loop, keys in LOOP_PARAM_KEYS.items()
    ]


def param_keys(loop: str) -> Dict[str, str]:
    keys = LOOP_PARAM_KEYS.get(loop)
    if keys is None:
        raise KeyError("Unknown tuning loop: %s" % loop)
    return keys


def default_search_space(loop: str) -> SearchSpace:
    limits = _LOOP_SEARCH_SPACES.get(loop)
    if limits is None:
        raise KeyError("Unknown tuning loop: %s" % loop)
    return SearchSpace.from_limits(limits["kp"], limits["ki"], limits["kd"])


def render_param_commands(loop: str,
                          gains: GainVector,
                          test_id: Optional[int] = None) -> List[SetParamCommand]:
    keys = param_keys(loop)
    return [
        SetParamCommand(key=keys[name], value=value, test_id=test_id)
        for name, value in (("kp", gains.kp), ("ki", gains.ki), ("kd", gains.kd))
    ]


def bootstrap_commands() -> List[RequestConfigCommand]:
    return [RequestConfigCommand()]
