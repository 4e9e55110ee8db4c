"""UDP datagrams carried through the tunnel as base64 text."""

from __future__ import annotations

import base64
import logging
import socket
from dataclasses import dataclass
from typing import Tuple, Union

logger = logging.getLogger(__name__)

BASE64_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
MAX_DECODED_SIZE = 1500
MAX_ENCODED_SIZE = 2048
_U32 = 0xFFFFFFFF


@dataclass
class UdpPacket:
    """A datagram as sent through the tunnel: base64 content and its peer."""

    content: str
    remote_addr: str
    remote_port: int


def base64_encode(data: Union[bytes, bytearray]) -> str:
    """Encode bytes as padded standard base64."""
    return base64.b64encode(bytes(data)).decode("ascii")


def base64_decode(text: Union[str, bytes, bytearray]) -> bytes:
    """Decode base64 text.

    Padding may be left out; any character outside the alphabet, or
    leftover bits that are not zero, raise ValueError.
    """
    if isinstance(text, (bytes, bytearray)):
        text = bytes(text).decode("latin-1")
    acc = 0
    bits = 0
    out = bytearray()
    for ch in text:
        if ch == "=":
            acc = (acc << 6) & _U32
            bits += 6
            if bits >= 8:
                bits -= 8
            continue
        value = BASE64_ALPHABET.find(ch)
        if value < 0:
            raise ValueError(f"invalid base64 character {ch!r}")
        acc = ((acc << 6) | value) & _U32
        bits += 6
        if bits >= 8:
            bits -= 8
            out.append((acc >> bits) & 0xFF)
    if acc & ((1 << bits) - 1):
        raise ValueError("base64 input has non-zero trailing bits")
    return bytes(out)


def encode_datagram(payload: Union[bytes, bytearray], local_ip: str, local_port: int) -> UdpPacket:
    """Wrap a datagram read from the local service for the tunnel."""
    encoded = base64_encode(payload)
    if not 0 < len(encoded) < MAX_ENCODED_SIZE:
        raise ValueError(
            f"encoded datagram length {len(encoded)} outside 1..{MAX_ENCODED_SIZE - 1}"
        )
    return UdpPacket(content=encoded, remote_addr=local_ip, remote_port=local_port)


def decode_datagram(packet: UdpPacket) -> bytes:
    """Return the raw datagram carried by ``packet``."""
    data = base64_decode(packet.content)
    if not 0 < len(data) < MAX_DECODED_SIZE:
        raise ValueError(
            f"decoded datagram length {len(data)} outside 1..{MAX_DECODED_SIZE - 1}"
        )
    return data


def resolve_local_address(host: str, port: int) -> Tuple[str, int]:
    """Resolve ``host`` to an IPv4 address; names are looked up via DNS."""
    try:
        socket.inet_pton(socket.AF_INET, host)
        return host, port
    except (OSError, ValueError):
        pass
    try:
        address = socket.gethostbyname(host)
    except OSError as exc:
        logger.error("gethostbyname %s failed", host)
        raise OSError(f"cannot resolve {host!r}: {exc}") from exc
    return address, port