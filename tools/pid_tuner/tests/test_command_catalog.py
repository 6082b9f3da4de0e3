import pytest

from tools.pid_tuner.app.command_catalog import (
    bootstrap_commands,
    default_search_space,
    get_method,
    list_loops,
    list_methods,
    param_keys,
    render_param_commands,
)
from tools.pid_tuner.app.models import GainVector


def test_render_param_commands_one_per_gain_in_order():
    commands = render_param_commands("balance", GainVector(kp=20.0, ki=1.5, kd=0.8), test_id=99)

    assert [c.key for c in commands] == ["kp_b", "ki_b", "kd_b"]
    assert [c.value for c in commands] == [20.0, 1.5, 0.8]
    assert all(c.test_id == 99 for c in commands)


def test_param_keys_per_loop():
    assert param_keys("speed") == {"kp": "kp_s", "ki": "ki_s", "kd": "kd_s"}
    assert param_keys("position")["kd"] == "kd_p"


def test_unknown_loop_raises():
    with pytest.raises(KeyError):
        param_keys("yaw")
    with pytest.raises(KeyError):
        default_search_space("yaw")


def test_default_search_space_balance():
    space = default_search_space("balance")
    assert space.lower() == [0.1, 0.0, 0.0]
    assert space.upper() == [50.0, 10.0, 5.0]


def test_list_loops_includes_keys_and_bounds():
    loops = {loop["id"]: loop for loop in list_loops()}
    assert set(loops) == {"balance", "speed", "position"}
    assert loops["speed"]["search_space"]["kp"] == {"min": 0.01, "max": 5.0}


def test_method_catalog():
    assert [m["id"] for m in list_methods()] == ["ga", "pso", "bayesian"]
    bayes = get_method("bayesian")
    acquisition = [f for f in bayes.fields if f.name == "acquisition"][0]
    assert acquisition.choices == ["ei", "ucb", "pi"]

    with pytest.raises(KeyError):
        get_method("zn")


def test_bootstrap_requests_full_config():
    assert [c.type for c in bootstrap_commands()] == ["request_full_config"]
