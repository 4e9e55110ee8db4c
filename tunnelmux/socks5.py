"""SOCKS5 handshake handling for streams arriving through the tunnel."""

from __future__ import annotations

import enum
import ipaddress
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

logger = logging.getLogger(__name__)

SOCKS5_VERSION = 0x05
CMD_CONNECT = 0x01
RESERVED = 0x00
HANDSHAKE_REPLY = bytes([SOCKS5_VERSION, 0x00, 0x00])


class AddrType(enum.IntEnum):
    IPV4 = 0x01
    DOMAIN = 0x03
    IPV6 = 0x04


class Socks5State(enum.Enum):
    INIT = enum.auto()
    HANDSHAKE = enum.auto()
    CONNECT = enum.auto()
    ESTABLISHED = enum.auto()


@dataclass(frozen=True)
class Socks5Addr:
    """A SOCKS5 destination: address type, raw address bytes and port."""

    type: AddrType
    addr: bytes
    port: int

    def host(self) -> str:
        if self.type == AddrType.IPV4:
            return str(ipaddress.IPv4Address(self.addr))
        if self.type == AddrType.IPV6:
            return str(ipaddress.IPv6Address(self.addr))
        return self.addr.decode("utf-8", errors="replace")


def is_socks5_request(data: bytes) -> bool:
    """True when ``data`` starts with a SOCKS5 CONNECT request header."""
    return bytes(data[:3]) == bytes([SOCKS5_VERSION, CMD_CONNECT, RESERVED]) and len(data) >= 3


def parse_socks5_addr(data: bytes) -> Tuple[Socks5Addr, int]:
    """Parse an address starting at its type byte; return it and bytes used."""
    data = bytes(data)
    if not data:
        raise ValueError("empty socks5 address")
    kind = data[0]
    if kind == AddrType.IPV4:
        if len(data) < 7:
            raise ValueError("truncated socks5 ipv4 address")
        return Socks5Addr(AddrType.IPV4, data[1:5], int.from_bytes(data[5:7], "big")), 7
    if kind == AddrType.IPV6:
        if len(data) < 19:
            raise ValueError("truncated socks5 ipv6 address")
        return Socks5Addr(AddrType.IPV6, data[1:17], int.from_bytes(data[17:19], "big")), 19
    if kind == AddrType.DOMAIN:
        if len(data) < 2:
            raise ValueError("truncated socks5 domain address")
        size = data[1]
        end = 2 + size
        if len(data) < end + 2:
            raise ValueError("truncated socks5 domain address")
        port = int.from_bytes(data[end : end + 2], "big")
        return Socks5Addr(AddrType.DOMAIN, data[2:end], port), end + 2
    raise ValueError(f"unknown socks5 address type {kind:#x}")


class Socks5Session:
    """SOCKS5 state for one tunnelled stream.

    ``connect(addr)`` opens the outbound connection and returns an object
    with ``write(data)`` and ``close()``. ``reply(data)`` sends bytes back
    through the tunnel. The owner moves ``state`` to ``CONNECT`` (socks5)
    or ``ESTABLISHED`` (ss5) once the outbound connection is up.
    """

    def __init__(
        self,
        connect: Callable[[Socks5Addr], Any],
        reply: Optional[Callable[[bytes], None]] = None,
        state: Socks5State = Socks5State.INIT,
    ) -> None:
        self.connect = connect
        self.reply = reply
        self.state = state
        self.remote_addr: Optional[Socks5Addr] = None
        self.local: Optional[Any] = None

    def _forward(self, data: bytes) -> int:
        if self.local is None:
            raise RuntimeError("no local connection to forward data to")
        self.local.write(bytes(data))
        return len(data)

    def _open(self, addr: Socks5Addr) -> None:
        self.remote_addr = addr
        local = self.connect(addr)
        if local is None:
            raise ConnectionError(f"socks5 connect to {addr.host()}:{addr.port} failed")
        self.local = local

    def handle_socks5(self, data: bytes) -> int:
        """Process SOCKS5 bytes from the tunnel; return how many were consumed."""
        if self.state == Socks5State.CONNECT:
            return self._forward(data)

        if self.state == Socks5State.INIT and len(data) >= 3:
            logger.debug("socks5 handshake: INIT len %d", len(data))
            if bytes(data[:3]) != bytes([SOCKS5_VERSION, 0x01, 0x00]):
                raise ValueError("socks5 greeting rejected")
            if self.reply is not None:
                self.reply(HANDSHAKE_REPLY)
            self.state = Socks5State.HANDSHAKE
            return 3

        if self.state == Socks5State.HANDSHAKE and len(data) >= 10:
            logger.debug("socks5 request: HANDSHAKE len %d", len(data))
            if not is_socks5_request(data):
                raise ValueError("socks5 request rejected")
            addr, offset = parse_socks5_addr(data[3:])
            if len(data) != offset + 3:
                raise ValueError("unexpected bytes after socks5 request")
            self._open(addr)
            return len(data)

        logger.error("not socks5 protocol, close client")
        if self.local is not None:
            self.local.close()
            self.local = None
        raise ValueError("not socks5 protocol")

    def handle_ss5(self, data: bytes) -> int:
        """Process address-prefixed bytes from the tunnel; return bytes consumed."""
        if self.state == Socks5State.ESTABLISHED:
            return self._forward(data)
        if self.state == Socks5State.INIT and len(data) >= 7:
            logger.debug("ss5 handshake: INIT len %d", len(data))
            addr, offset = parse_socks5_addr(data)
            self._open(addr)
            return offset
        return 0