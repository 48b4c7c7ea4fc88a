"""
apex_backend/telemetry_packet.py
--------------------------------
Fixed-layout binary telemetry packet (16 bytes, little-endian):

    offset  size  type     field
    0       4     int32    packet_id
    4       4     float32  speed_kmh
    8       4     float32  rpm
    12      4     int32    gear

Bytes past offset 16 are ignored. Values are reported exactly as encoded;
sanity checks (negative speed, silly gears) belong to the caller.
"""

from __future__ import annotations

import struct
from dataclasses import asdict, dataclass
from typing import Any, Dict, Union

from .errors import DecodeError

PACKET_FMT = "<iffi"
PACKET_SIZE = struct.calcsize(PACKET_FMT)  # 16


@dataclass(frozen=True)
class TelemetryPacket:
    packet_id: int
    speed_kmh: float
    rpm: float
    gear: int

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def decode(buffer: Union[bytes, bytearray, memoryview]) -> TelemetryPacket:
    """Decode one packet. Raises DecodeError if fewer than 16 bytes are given."""
    if len(buffer) < PACKET_SIZE:
        raise DecodeError(f"telemetry packet too short: {len(buffer)} bytes, need {PACKET_SIZE}")
    packet_id, speed_kmh, rpm, gear = struct.unpack_from(PACKET_FMT, buffer, 0)
    return TelemetryPacket(packet_id=packet_id, speed_kmh=speed_kmh, rpm=rpm, gear=gear)


def decode_hex(text: str) -> TelemetryPacket:
    try:
        raw = bytes.fromhex(text)
    except (TypeError, ValueError) as ex:
        raise DecodeError(f"payload is not valid hex: {ex}") from ex
    return decode(raw)


def encode(packet: TelemetryPacket) -> bytes:
    """Inverse of decode(); used by tools and tests to build packets."""
    return struct.pack(PACKET_FMT, packet.packet_id, packet.speed_kmh, packet.rpm, packet.gear)
