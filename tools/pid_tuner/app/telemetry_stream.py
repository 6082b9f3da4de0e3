import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional

from .models import FAILURE_INTERRUPTED, TelemetrySample
from .protocol import TelemetryMessage, TestCompleteMessage, decode_message


logger = logging.getLogger(__name__)

SampleCallback = Callable[[TelemetrySample], None]
MessageCallback = Callable[[Any], Optional[Awaitable[None]]]


class Channel:
    """Interface the device link must satisfy.

    ``send`` may raise on transport failure. ``subscribe`` registers a
    listener for decoded device messages and returns a function that removes
    it; several listeners may be registered at once.
    """

    async def send(self, command: Any) -> None:
        raise NotImplementedError

    def subscribe(self, on_message: MessageCallback) -> Callable[[], None]:
        raise NotImplementedError


class TestWindow:
    """Samples captured for one test.

    The window is closed by a timer ``duration_s`` after it was opened, or by
    an abort. ``start_ts`` is the test start expressed on the sample clock.
    """

    __test__ = False

    def __init__(self, duration_s: float, test_id: Optional[int] = None) -> None:
        self.duration_s = duration_s
        self.test_id = test_id
        self.samples: List[TelemetrySample] = []
        self.start_ts: Optional[float] = None
        self.abort_reason: Optional[str] = None
        self._done = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._done.is_set()

    def append(self, sample: TelemetrySample, since_open: float = 0.0) -> None:
        if self.closed:
            return
        if self.start_ts is None:
            # device timestamps run on their own clock, back-date to the open
            self.start_ts = sample.timestamp - max(0.0, since_open)
        self.samples.append(sample)

    def abort(self, reason: str) -> None:
        if self.closed:
            return
        self.abort_reason = reason
        self._done.set()

    def close(self) -> None:
        self._done.set()

    async def wait_closed(self) -> "TestWindow":
        await self._done.wait()
        return self


class TelemetryStreamAdapter:
    def __init__(self,
                 channel: Channel,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self._channel = channel
        self._clock = clock
        self._window: Optional[TestWindow] = None

    @property
    def window_open(self) -> bool:
        return self._window is not None

    def to_sample(self,
                  message: TelemetryMessage,
                  arrival: Optional[float] = None) -> TelemetrySample:
        if message.timestamp is not None:
            ts = message.timestamp / 1000.0
        elif arrival is not None:
            ts = arrival
        else:
            ts = self._clock()
        return TelemetrySample(
            timestamp=ts,
            pitch=message.pitch,
            roll=message.roll,
            yaw=message.yaw,
            speed=message.speed,
            extra=message.extra_fields(),
        )

    def _coerce(self, message: Any) -> Any:
        if isinstance(message, (TelemetryMessage, TestCompleteMessage)):
            return message
        return decode_message(message)

    def subscribe(self, on_sample: SampleCallback) -> Callable[[], None]:
        def on_message(message: Any) -> None:
            decoded = self._coerce(message)
            if isinstance(decoded, TelemetryMessage):
                on_sample(self.to_sample(decoded))

        unsubscribe = self._channel.subscribe(on_message)
        active = True

        def _unsubscribe() -> None:
            nonlocal active
            if active:
                active = False
                unsubscribe()

        return _unsubscribe

    @asynccontextmanager
    async def open_window(self,
                          duration_ms: float,
                          test_id: Optional[int] = None) -> AsyncIterator[TestWindow]:
        """Capture telemetry for ``duration_ms`` measured from subscription.

        Everything delivered before the timer fires belongs to the window,
        whatever timestamps the device put on it.
        """
        if self._window is not None:
            raise RuntimeError("A capture window is already open on this channel")

        window = TestWindow(duration_ms / 1000.0, test_id=test_id)
        opened_at = self._clock()

        def on_message(message: Any) -> None:
            decoded = self._coerce(message)
            if isinstance(decoded, TelemetryMessage):
                arrival = self._clock()
                window.append(self.to_sample(decoded, arrival), arrival - opened_at)
            elif isinstance(decoded, TestCompleteMessage):
                if window.test_id is not None and decoded.test_id == window.test_id and not decoded.success:
                    logger.info("Device reported test %s as interrupted after %d samples",
                                window.test_id, len(window.samples))
                    window.abort(FAILURE_INTERRUPTED)

        self._window = window
        unsubscribe = self._channel.subscribe(on_message)
        timer = asyncio.get_running_loop().call_later(window.duration_s, window.close)
        try:
            yield window
        finally:
            timer.cancel()
            unsubscribe()
            window.close()
            self._window = None
