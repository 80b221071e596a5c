"""
Telemetry packets emitted by the supervised worker.

Messages arrive untyped over the IPC channel and are decoded here, at the
boundary, into a closed set of packet types. Anything that does not validate
is not a packet and the caller treats it as a plain log line.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

log = logging.getLogger("WorkerMonitor.Packets")


class PacketType(str, Enum):
    NETWORK_REQUEST = 'NetworkRequest'
    MULTIPART_NETWORK_REQUEST = 'MultipartNetworkRequest'


@dataclass(frozen=True)
class NetworkRequest:
    total_time: float
    error: Optional[int] = None
    type: PacketType = PacketType.NETWORK_REQUEST

    @property
    def is_multipart(self) -> bool:
        return False


@dataclass(frozen=True)
class MultipartNetworkRequest:
    total_time: float
    handle_time: float
    processing_time: float
    error: Optional[int] = None
    type: PacketType = PacketType.MULTIPART_NETWORK_REQUEST

    @property
    def is_multipart(self) -> bool:
        return True


Packet = Union[NetworkRequest, MultipartNetworkRequest]


def _is_number(value: Any) -> bool:
    # bool is an int subclass but never a valid timing
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        return False  # int too large for a float


def _decode_error(message: dict) -> tuple[bool, Optional[int]]:
    error = message.get('error')
    if error is None:
        return True, None
    if not _is_number(error):
        return False, None
    return True, int(error)


def decode_packet(message: Any) -> Optional[Packet]:
    """
    Decodes one IPC message into a packet.

    Returns None for anything that is not a well-formed telemetry packet:
    non-dict payloads, unknown or missing `type` discriminants and packets
    whose required timings are missing or not numeric. Never raises.
    """
    if not isinstance(message, dict):
        return None

    try:
        packet_type = PacketType(message.get('type'))
    except ValueError:
        return None

    total_time = message.get('totalTime')
    if not _is_number(total_time):
        log.debug(f"Dropping {packet_type.value} packet without numeric totalTime: {message!r}")
        return None

    error_ok, error = _decode_error(message)
    if not error_ok:
        log.debug(f"Dropping {packet_type.value} packet with non-numeric error: {message!r}")
        return None

    if packet_type is PacketType.NETWORK_REQUEST:
        return NetworkRequest(total_time=float(total_time), error=error)

    handle_time, processing_time = message.get('handleTime'), message.get('processingTime')
    if not (_is_number(handle_time) and _is_number(processing_time)):
        log.debug(f"Dropping multipart packet without numeric handle/processing time: {message!r}")
        return None

    return MultipartNetworkRequest(
        total_time=float(total_time),
        handle_time=float(handle_time),
        processing_time=float(processing_time),
        error=error,
    )


def encode_packet(packet: Packet) -> dict:
    """Inverse of decode_packet, used by the worker-side channel."""
    message = {'type': packet.type.value, 'totalTime': packet.total_time}
    if isinstance(packet, MultipartNetworkRequest):
        message['handleTime'] = packet.handle_time
        message['processingTime'] = packet.processing_time
    if packet.error is not None:
        message['error'] = packet.error
    return message
