import asyncio
import math
import time

import pytest

from tools.pid_tuner.app.models import GainVector, TestRunnerSettings
from tools.pid_tuner.app.protocol import SetParamCommand
from tools.pid_tuner.app.runner import TelemetryTestRunner
from tools.pid_tuner.app.telemetry_stream import Channel, TelemetryStreamAdapter


class FakeChannel(Channel):
    """Replays a telemetry script to every new subscriber.

    ``script`` is either a list of message dicts or a callable receiving the
    last sent test id and returning that list.
    """

    def __init__(self, script=None, fail_send=False):
        self.script = script
        self.fail_send = fail_send
        self.sent = []
        self.subscribers = {}
        self.max_subscribers = 0
        self._token = 0

    async def send(self, command):
        if self.fail_send:
            raise ConnectionError("link down")
        self.sent.append(command)

    def subscribe(self, on_message):
        token = self._token
        self._token += 1
        self.subscribers[token] = on_message
        self.max_subscribers = max(self.max_subscribers, len(self.subscribers))
        if self.script is not None:
            asyncio.get_running_loop().call_soon(self._replay, token)

        def unsubscribe():
            self.subscribers.pop(token, None)

        return unsubscribe

    def _replay(self, token):
        script = self.script
        if callable(script):
            script = script(self.last_test_id)
        for message in script:
            callback = self.subscribers.get(token)
            if callback is None:
                return
            callback(message)

    @property
    def last_test_id(self):
        params = [c for c in self.sent if isinstance(c, SetParamCommand)]
        return params[-1].test_id if params else None


def _telemetry(times_ms, pitch=0.0):
    return [{"type": "telemetry", "pitch": pitch, "timestamp": t} for t in times_ms]


def _settings(**overrides):
    values = {"duration_ms": 100, "settling_ms": 0}
    values.update(overrides)
    return TestRunnerSettings(**values)


GAINS = GainVector(kp=20.0, ki=1.0, kd=0.5)


def test_run_test_collects_window_and_scores():
    channel = FakeChannel(script=_telemetry([1000, 1100, 1200, 1300, 1400, 1500, 1600]))
    runner = TelemetryTestRunner(channel, _settings())

    result = asyncio.run(runner.run_test(GAINS))

    assert result.fitness == 0.0
    assert result.sample_count == 7
    assert [c.key for c in channel.sent] == ["kp_b", "ki_b", "kd_b"]
    assert [c.value for c in channel.sent] == [20.0, 1.0, 0.5]
    assert len({c.test_id for c in channel.sent}) == 1
    assert result.detail["test_id"] == channel.sent[0].test_id
    assert channel.subscribers == {}


def test_run_test_uses_loop_keys():
    channel = FakeChannel(script=_telemetry(range(0, 800, 100)))
    runner = TelemetryTestRunner(channel, _settings(loop="speed"))

    asyncio.run(runner.run_test(GAINS))

    assert [c.key for c in channel.sent] == ["kp_s", "ki_s", "kd_s"]


def test_silent_channel_times_out_within_bound():
    channel = FakeChannel(script=None)
    runner = TelemetryTestRunner(channel, _settings(duration_ms=50, timeout_multiplier=2.0))

    started = time.monotonic()
    result = asyncio.run(runner.run_test(GAINS))
    elapsed = time.monotonic() - started

    assert math.isinf(result.fitness)
    assert result.failure == "timeout"
    assert result.detail["gains"] == GAINS.as_dict()
    assert result.detail["timeout_s"] == pytest.approx(0.1)
    assert result.detail["window_s"] == pytest.approx(0.05)
    assert result.sample_count == 0
    assert elapsed < 2.0
    assert channel.subscribers == {}


def test_stalled_stream_with_enough_samples_is_scored():
    # The device stops after a burst that spans only part of the duration.
    channel = FakeChannel(script=_telemetry([0, 10, 20, 30, 40, 50], pitch=0.2))
    runner = TelemetryTestRunner(channel, _settings())

    result = asyncio.run(runner.run_test(GAINS))

    assert result.failure is None
    assert result.sample_count == 6
    assert result.overshoot == pytest.approx(0.2)


def test_stalled_stream_with_too_few_samples_is_insufficient():
    channel = FakeChannel(script=_telemetry([0, 10, 20]))
    runner = TelemetryTestRunner(channel, _settings())

    result = asyncio.run(runner.run_test(GAINS))

    assert result.failure == "insufficient_samples"
    assert result.sample_count == 3


def test_device_timestamps_do_not_truncate_window():
    # 0.4 - 0.1 is slightly above 0.3 in floating point.
    channel = FakeChannel(script=_telemetry([100, 200, 300, 400, 500]))
    runner = TelemetryTestRunner(channel, _settings(duration_ms=300))

    result = asyncio.run(runner.run_test(GAINS))

    assert result.sample_count == 5


def test_send_failure_is_transport_failure():
    channel = FakeChannel(script=_telemetry(range(0, 800, 100)), fail_send=True)
    runner = TelemetryTestRunner(channel, _settings())

    result = asyncio.run(runner.run_test(GAINS))

    assert math.isinf(result.fitness)
    assert result.failure == "transport"
    assert "link down" in result.detail["error"]
    assert channel.max_subscribers == 0


def test_too_few_samples_is_reported_by_evaluator():
    channel = FakeChannel(script=_telemetry([0, 200, 400, 600]))
    runner = TelemetryTestRunner(channel, _settings())

    result = asyncio.run(runner.run_test(GAINS))

    assert result.failure == "insufficient_samples"
    assert result.sample_count == 4


def test_device_interruption_aborts_window():
    def script(test_id):
        return _telemetry([0, 100]) + [
            {"type": "test_complete", "testId": str(test_id), "success": False},
        ] + _telemetry([200, 300, 400, 500, 600])

    channel = FakeChannel(script=script)
    runner = TelemetryTestRunner(channel, _settings())

    result = asyncio.run(runner.run_test(GAINS))

    assert result.failure == "interrupted"
    assert result.sample_count == 2
    assert channel.subscribers == {}


def test_unrelated_test_complete_is_ignored():
    def script(test_id):
        return _telemetry([0, 100]) + [
            {"type": "test_complete", "testId": 1, "success": False},
            {"type": "test_complete", "testId": test_id, "success": True},
        ] + _telemetry([200, 300, 400, 500])

    channel = FakeChannel(script=script)
    runner = TelemetryTestRunner(channel, _settings())

    result = asyncio.run(runner.run_test(GAINS))

    assert result.failure is None
    assert result.sample_count == 6


def test_concurrent_calls_never_overlap_windows():
    channel = FakeChannel(script=_telemetry(range(0, 800, 100)))
    runner = TelemetryTestRunner(channel, _settings())

    async def scenario():
        return await asyncio.gather(*(runner.run_test(GAINS) for _ in range(3)))

    results = asyncio.run(scenario())

    assert [r.sample_count for r in results] == [8, 8, 8]
    assert channel.max_subscribers == 1
    assert len(channel.sent) == 9


def test_invalid_duration_raises():
    runner = TelemetryTestRunner(FakeChannel())
    with pytest.raises(ValueError):
        asyncio.run(runner.run_test(GAINS, duration_ms=0))


def test_second_window_is_rejected():
    adapter = TelemetryStreamAdapter(FakeChannel())

    async def scenario():
        async with adapter.open_window(100):
            with pytest.raises(RuntimeError):
                async with adapter.open_window(100):
                    pass
        assert adapter.window_open is False

    asyncio.run(scenario())


def test_adapter_subscribe_converts_and_unsubscribes_once():
    channel = FakeChannel(script=[
        {"type": "telemetry", "pitch": 1.5, "timestamp": 2500, "battery": 12.1},
        {"type": "set_param", "key": "kp_b", "value": 1},
        "not json",
    ])
    adapter = TelemetryStreamAdapter(channel)
    received = []

    async def scenario():
        unsubscribe = adapter.subscribe(received.append)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        unsubscribe()
        unsubscribe()

    asyncio.run(scenario())

    assert len(received) == 1
    assert received[0].timestamp == 2.5
    assert received[0].pitch == 1.5
    assert received[0].extra == {"battery": 12.1}
    assert channel.subscribers == {}


def test_samples_without_timestamp_use_arrival_clock():
    # First tick is the window opening, the rest are arrivals.
    ticks = iter([10.0, 10.2, 10.4, 10.6, 10.8])
    channel = FakeChannel(script=[{"type": "telemetry", "pitch": 0.1}] * 4)
    adapter = TelemetryStreamAdapter(channel, clock=lambda: next(ticks))

    async def scenario():
        async with adapter.open_window(50) as window:
            await asyncio.wait_for(window.wait_closed(), timeout=1.0)
            return window

    window = asyncio.run(scenario())

    assert [s.timestamp for s in window.samples] == [10.2, 10.4, 10.6, 10.8]
    assert window.start_ts == pytest.approx(10.0)


def test_window_start_is_back_dated_to_opening():
    ticks = iter([5.0, 5.25, 5.3, 5.35])
    channel = FakeChannel(script=_telemetry([1000, 1050, 1100]))
    adapter = TelemetryStreamAdapter(channel, clock=lambda: next(ticks))

    async def scenario():
        async with adapter.open_window(50) as window:
            await window.wait_closed()
            return window

    window = asyncio.run(scenario())

    assert len(window.samples) == 3
    assert window.start_ts == pytest.approx(0.75)


def test_late_first_sample_still_accrues_time_weighted_error():
    ticks = iter([0.0] + [0.5 + 0.1 * i for i in range(5)])
    channel = FakeChannel(script=_telemetry([0, 100, 200, 300, 400], pitch=1.0))
    stream = TelemetryStreamAdapter(channel, clock=lambda: next(ticks))
    runner = TelemetryTestRunner(channel, _settings(), stream=stream)

    result = asyncio.run(runner.run_test(GAINS))

    # Anchored 0.5s before the first sample: (0.5 + 0.6 + 0.7 + 0.8 + 0.9) / 5
    assert result.failure is None
    assert result.itae == pytest.approx(0.7)
