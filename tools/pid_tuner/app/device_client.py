import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from .protocol import Command, decode_message, encode_command
from .telemetry_stream import Channel, MessageCallback


logger = logging.getLogger(__name__)

ConnectionCallback = Callable[[bool, Optional[str], Optional[int], str], Awaitable[None]]
ErrorCallback = Callable[[str], Awaitable[None]]


async def _noop_connection(connected: bool, host: Optional[str], port: Optional[int], reason: str) -> None:
    return None


async def _noop_error(message: str) -> None:
    return None


class AsyncDeviceClient(Channel):
    """Newline-delimited JSON link to the robot over TCP.

    Incoming lines are decoded once and fanned out to every subscriber;
    lines that are not valid device messages are dropped.
    """

    def __init__(self,
                 on_connection: Optional[ConnectionCallback] = None,
                 on_error: Optional[ErrorCallback] = None,
                 connect_timeout_sec: float = 8.0) -> None:
        self._on_connection = on_connection or _noop_connection
        self._on_error = on_error or _noop_error
        self._connect_timeout_sec = connect_timeout_sec

        self._host: Optional[str] = None
        self._port: Optional[int] = None
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

        self._send_queue: "asyncio.Queue[str]" = asyncio.Queue()
        self._subscribers: Dict[int, MessageCallback] = {}
        self._next_token = 0

        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None

        self._lock = asyncio.Lock()

    def set_callbacks(self, on_connection: ConnectionCallback, on_error: ErrorCallback) -> None:
        self._on_connection = on_connection
        self._on_error = on_error

    @property
    def host(self) -> Optional[str]:
        return self._host

    @property
    def port(self) -> Optional[int]:
        return self._port

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and (not self._writer.is_closing())

    async def connect(self, host: str, port: int) -> None:
        async with self._lock:
            await self._disconnect_locked("reconnecting")

            try:
                reader, writer = await asyncio.wait_for(
                    asyncio.open_connection(host, port), timeout=self._connect_timeout_sec)
            except Exception as exc:
                await self._on_connection(False, host, port, "connect_error")
                await self._on_error("Could not connect to %s:%s (%s)" % (host, port, exc))
                raise

            self._host = host
            self._port = port
            self._reader = reader
            self._writer = writer

            self._reader_task = asyncio.create_task(self._reader_loop(), name="device-reader")
            self._writer_task = asyncio.create_task(self._writer_loop(), name="device-writer")

            logger.info("Connected to %s:%s", host, port)
            await self._on_connection(True, host, port, "connected")

    async def disconnect(self, reason: str = "manual_disconnect") -> None:
        async with self._lock:
            await self._disconnect_locked(reason)

    async def send(self, command: Command) -> None:
        if not self.is_connected:
            raise RuntimeError("Device client is not connected")
        await self._send_queue.put(encode_command(command))

    def subscribe(self, on_message: MessageCallback) -> Callable[[], None]:
        token = self._next_token
        self._next_token += 1
        self._subscribers[token] = on_message

        def unsubscribe() -> None:
            self._subscribers.pop(token, None)

        return unsubscribe

    async def dispatch(self, raw: Any) -> None:
        message = decode_message(raw)
        if message is None:
            return
        for callback in list(self._subscribers.values()):
            try:
                outcome = callback(message)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Subscriber failed on %s message", getattr(message, "type", "?"))

    async def _disconnect_locked(self, reason: str) -> None:
        was_connected = self._writer is not None

        for task in (self._reader_task, self._writer_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()

        self._reader_task = None
        self._writer_task = None

        if self._writer is not None:
            try:
                self._writer.close()
                await self._writer.wait_closed()
            except (OSError, ConnectionError) as exc:
                logger.debug("Error while closing socket: %s", exc)

        self._reader = None
        self._writer = None

        host = self._host
        port = self._port
        self._host = None
        self._port = None

        while not self._send_queue.empty():
            self._send_queue.get_nowait()

        if was_connected:
            logger.info("Disconnected from %s:%s (%s)", host, port, reason)
            await self._on_connection(False, host, port, reason)

    async def _reader_loop(self) -> None:
        try:
            while self._reader is not None:
                raw = await self._reader.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="ignore").strip()
                if line:
                    await self.dispatch(line)
        except asyncio.CancelledError:
            return
        except Exception as exc:
            await self._on_error("Error reading from device: %s" % exc)
        finally:
            if self.is_connected:
                await self.disconnect("remote_disconnect")

    async def _writer_loop(self) -> None:
        try:
            while self._writer is not None:
                line = await self._send_queue.get()
                if self._writer is None or self._writer.is_closing():
                    break
                self._writer.write((line + "\n").encode("utf-8"))
                await self._writer.drain()
        except asyncio.CancelledError:
            return
        except Exception as exc:
            await self._on_error("Error sending to device: %s" % exc)
            if self.is_connected:
                await self.disconnect("writer_error")
