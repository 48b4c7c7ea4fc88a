"""
apex_backend/telemetry_udp.py
-----------------------------
Passive receiver for raw sim telemetry broadcast over UDP.

Every datagram is logged and run through the packet decoder. Nothing is
stored or re-broadcast; the receiver only keeps counters so the operator can
see that packets are arriving (GET /api/telemetry/status).
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import DecodeError
from .telemetry_packet import TelemetryPacket, decode

log = logging.getLogger("apex.telemetry")


@dataclass
class TelemetryUDPConfig:
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 12000

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TelemetryUDPConfig":
        d = d or {}
        return cls(
            enabled=bool(d.get("enabled", False)),
            host=str(d.get("host", "0.0.0.0")),
            port=int(d.get("port", 12000)),
        )


class _TelemetryProtocol(asyncio.DatagramProtocol):
    def __init__(self, outer: "TelemetryUDPReceiver"):
        self.outer = outer

    def connection_made(self, transport):
        sock = transport.get_extra_info("sockname")
        log.info("Listening for raw telemetry on %s", sock)

    def datagram_received(self, data, addr):
        self.outer.handle_datagram(data, addr)

    def error_received(self, exc):
        log.warning("telemetry udp error: %s", exc)

    def connection_lost(self, exc):
        log.info("telemetry udp closed%s", f": {exc}" if exc else "")


class TelemetryUDPReceiver:
    def __init__(self, cfg: TelemetryUDPConfig):
        self.cfg = cfg
        self._transport: Optional[asyncio.DatagramTransport] = None
        self.packets_received = 0
        self.packets_decoded = 0
        self.decode_errors = 0
        self.last_packet: Optional[TelemetryPacket] = None
        self.last_received_at: Optional[float] = None

    async def start(self) -> None:
        if self._transport is not None or not self.cfg.enabled:
            return
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _TelemetryProtocol(self),
            local_addr=(self.cfg.host, self.cfg.port),
        )
        self._transport = transport

    def stop(self) -> None:
        if self._transport is None:
            return
        try:
            self._transport.close()
        finally:
            self._transport = None

    def is_running(self) -> bool:
        return self._transport is not None

    def handle_datagram(self, data: bytes, addr) -> Optional[TelemetryPacket]:
        self.packets_received += 1
        self.last_received_at = time.time()
        log.debug("Received %d bytes from %s: %s", len(data), addr, data.hex())
        try:
            pkt = decode(data)
        except DecodeError as ex:
            self.decode_errors += 1
            log.debug("undecodable telemetry from %s: %s", addr, ex)
            return None
        self.packets_decoded += 1
        self.last_packet = pkt
        return pkt

    def status(self) -> Dict[str, Any]:
        return {
            "enabled": self.cfg.enabled,
            "running": self.is_running(),
            "host": self.cfg.host,
            "port": self.cfg.port,
            "packets_received": self.packets_received,
            "packets_decoded": self.packets_decoded,
            "decode_errors": self.decode_errors,
            "last_packet": self.last_packet.as_dict() if self.last_packet else None,
        }
