"""
Wire messages exchanged with the simulator.

Event frames look like 42["event",{...}]: "4" marks a websocket message and
"2" an event. Telemetry arrives as a "telemetry" event; commands go back as
"steer" events, and anything we cannot use is acknowledged with "manual".
"""

import json
import math
import time
import logging
from dataclasses import dataclass
from typing import List, Optional

from pydantic import BaseModel, ValidationError, model_validator

from data.formats.data_format import TelemetryFrame

logger = logging.getLogger(__name__)

EVENT_PREFIX = "42"
TELEMETRY_EVENT = "telemetry"
STEER_EVENT = "steer"
MANUAL_EVENT = "manual"


class TelemetryPayload(BaseModel):
    """Telemetry event data."""
    ptsx: List[float]
    ptsy: List[float]
    x: float
    y: float
    psi: float  # radians
    speed: float
    steering_angle: float
    throttle: float

    @model_validator(mode="after")
    def _check_consistency(self) -> "TelemetryPayload":
        if len(self.ptsx) != len(self.ptsy):
            raise ValueError(f"ptsx/ptsy length mismatch: {len(self.ptsx)} != {len(self.ptsy)}")
        values = [self.x, self.y, self.psi, self.speed, self.steering_angle, self.throttle]
        values.extend(self.ptsx)
        values.extend(self.ptsy)
        if not all(math.isfinite(v) for v in values):
            raise ValueError("telemetry contains non-finite values")
        return self

    def to_frame(self, timestamp: Optional[float] = None) -> TelemetryFrame:
        return TelemetryFrame(
            ptsx=tuple(self.ptsx),
            ptsy=tuple(self.ptsy),
            x=self.x,
            y=self.y,
            psi=self.psi,
            speed=self.speed,
            steering_angle=self.steering_angle,
            throttle=self.throttle,
            timestamp=time.time() if timestamp is None else timestamp,
        )


class SteerPayload(BaseModel):
    """Steer event data."""
    steering_angle: float  # -1.0 to 1.0
    throttle: float
    mpc_x: List[float] = []
    mpc_y: List[float] = []
    next_x: List[float] = []
    next_y: List[float] = []


@dataclass
class InboundMessage:
    """Classified inbound frame."""
    kind: str  # "telemetry", "manual" or "ignore"
    frame: Optional[TelemetryFrame] = None
    reason: Optional[str] = None


def extract_event_data(message: str) -> str:
    """
    Return the JSON array of an event frame, or "" when the frame carries no
    usable data (a null payload or no [...}] body).
    """
    if "null" in message:
        return ""
    start = message.find("[")
    end = message.rfind("}]")
    if start != -1 and end != -1:
        return message[start:end + 2]
    return ""


def decode_message(message: str, timestamp: Optional[float] = None) -> InboundMessage:
    """Classify an inbound frame and parse telemetry when present."""
    if len(message) <= 2 or not message.startswith(EVENT_PREFIX):
        return InboundMessage(kind="ignore", reason="not an event frame")

    data = extract_event_data(message)
    if not data:
        return InboundMessage(kind="manual", reason="no event data")

    try:
        event = json.loads(data)
    except json.JSONDecodeError as e:
        return InboundMessage(kind="manual", reason=f"invalid json: {e}")

    if not isinstance(event, list) or len(event) < 2 or not isinstance(event[0], str):
        return InboundMessage(kind="manual", reason="malformed event")
    if event[0] != TELEMETRY_EVENT:
        return InboundMessage(kind="manual", reason=f"unexpected event '{event[0]}'")

    try:
        payload = TelemetryPayload.model_validate(event[1])
    except ValidationError as e:
        return InboundMessage(kind="manual", reason=f"invalid telemetry: {e.error_count()} errors")

    return InboundMessage(kind="telemetry", frame=payload.to_frame(timestamp))


def encode_event(event: str, payload: Optional[dict] = None) -> str:
    """Build an outbound 42[...] frame."""
    body = json.dumps([event, payload or {}], separators=(",", ":"))
    return f"{EVENT_PREFIX}{body}"


def steer_message(payload: dict) -> str:
    return encode_event(STEER_EVENT, payload)


def manual_message() -> str:
    return encode_event(MANUAL_EVENT)
