import itertools
import json
import logging
import math
import time
from typing import Annotated, Any, Dict, Iterator, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator


logger = logging.getLogger(__name__)


def normalize_test_id(value: Any) -> Optional[int]:
    """Return the canonical integer form of a test id.

    Devices may echo ids as numbers or as numeric strings, so ``1700000000123``,
    ``"1700000000123"`` and ``1700000000123.0`` all normalize to the same int.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return int(value)
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            return None
        if math.isfinite(number) and number.is_integer():
            return int(number)
    return None


_test_ids: Iterator[int] = itertools.count(int(time.time() * 1000))


def next_test_id() -> int:
    return next(_test_ids)


class _TestIdModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    test_id: Optional[int] = Field(None, alias="testId")

    @field_validator("test_id", mode="before")
    @classmethod
    def _normalize_test_id(cls, value: Any) -> Optional[int]:
        return normalize_test_id(value)


# Outbound commands

class SetParamCommand(_TestIdModel):
    type: Literal["set_param"] = "set_param"
    key: str = Field(..., min_length=1)
    value: float = Field(..., allow_inf_nan=False)


class RequestConfigCommand(BaseModel):
    type: Literal["request_full_config"] = "request_full_config"


Command = Annotated[Union[SetParamCommand, RequestConfigCommand], Field(discriminator="type")]


def encode_command(command: Union[SetParamCommand, RequestConfigCommand]) -> str:
    payload = command.model_dump(by_alias=True, exclude_none=True)
    return json.dumps(payload, separators=(",", ":"))


# Inbound device messages

class TelemetryMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["telemetry"] = "telemetry"
    pitch: float = Field(..., allow_inf_nan=False)
    roll: float = 0.0
    yaw: float = 0.0
    speed: float = 0.0
    timestamp: Optional[float] = None

    def extra_fields(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class ParamMessage(BaseModel):
    type: Literal["set_param"] = "set_param"
    key: str
    value: Any = None


class TestCompleteMessage(_TestIdModel):
    __test__ = False

    type: Literal["test_complete"] = "test_complete"
    success: bool = True


DeviceMessage = Annotated[
    Union[TelemetryMessage, ParamMessage, TestCompleteMessage],
    Field(discriminator="type"),
]

_MESSAGE_ADAPTER: TypeAdapter = TypeAdapter(DeviceMessage)
_MESSAGE_TYPES = ("telemetry", "set_param", "test_complete")


def decode_message(raw: Union[str, bytes, Dict[str, Any]]) -> Optional[Any]:
    """Decode one device line (or an already parsed object) into a DeviceMessage.

    Unknown message types and malformed payloads return None.
    """
    if isinstance(raw, (str, bytes)):
        text = raw.decode("utf-8", errors="ignore") if isinstance(raw, bytes) else raw
        text = text.strip()
        if not text:
            return None
        try:
            data = json.loads(text)
        except ValueError:
            logger.debug("Discarding non-JSON device line: %r", text[:120])
            return None
    else:
        data = raw

    if not isinstance(data, dict):
        return None
    if data.get("type") not in _MESSAGE_TYPES:
        return None

    try:
        return _MESSAGE_ADAPTER.validate_python(data)
    except ValidationError as exc:
        logger.debug("Discarding malformed %s message: %s", data.get("type"), exc.errors()[:1])
        return None
