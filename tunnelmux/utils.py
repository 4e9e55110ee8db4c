"""Small network and host helpers."""

from __future__ import annotations

import socket
import time
from typing import List

import psutil

_PREFERRED_BRIDGES = ("br-lan", "br0")
_LOOPBACK = "lo"


def s_sleep(seconds: float, microseconds: float = 0) -> None:
    """Sleep for ``seconds`` plus ``microseconds``."""
    time.sleep(seconds + microseconds / 1_000_000)


def is_valid_ip_address(address: str) -> bool:
    """True when ``address`` is a dotted-quad IPv4 address."""
    try:
        socket.inet_pton(socket.AF_INET, address)
    except (OSError, ValueError):
        return False
    return True


def dns_unified(name: str) -> str:
    """Lower-case the host part of ``name`` (up to the first '/').

    Raises ValueError when that part has no dot other than a final one.
    """
    has_dot = False
    chars = []
    last = len(name) - 1
    for index, ch in enumerate(name):
        if ch == "/":
            break
        if ch == "." and index != last:
            has_dot = True
        chars.append(ch.lower() if "A" <= ch <= "Z" else ch)
    if not has_dot:
        raise ValueError(f"invalid domain name {name!r}")
    return "".join(chars)


def get_net_ifname() -> str:
    """Pick the interface that identifies this host.

    A bridge named br-lan or br0 with an IPv4 address wins; otherwise the
    last non-loopback interface with a link address is used.
    """
    fallback = ""
    for name, addrs in psutil.net_if_addrs().items():
        for addr in addrs:
            if addr.family == socket.AF_INET:
                if name in _PREFERRED_BRIDGES:
                    return name
            elif addr.family == psutil.AF_LINK and name != _LOOPBACK:
                fallback = name
    if not fallback:
        raise LookupError("no usable network interface found")
    return fallback


def get_net_mac(ifname: str) -> str:
    """Return the hardware address of ``ifname`` as 12 upper-case hex digits."""
    addrs = psutil.net_if_addrs().get(ifname)
    if addrs is None:
        raise OSError(f"no such network interface: {ifname!r}")
    for addr in addrs:
        if addr.family == psutil.AF_LINK and addr.address:
            digits = "".join(ch for ch in addr.address if ch in "0123456789abcdefABCDEF")
            if len(digits) >= 12:
                return digits[:12].upper()
    raise OSError(f"interface {ifname!r} has no hardware address")


def _family_name(family: int) -> str:
    if family == psutil.AF_LINK:
        return "AF_PACKET"
    if family == socket.AF_INET:
        return "AF_INET"
    if family == socket.AF_INET6:
        return "AF_INET6"
    return "???"


def show_net_ifname() -> List[str]:
    """Print every interface address with its family; return the printed lines."""
    counters = psutil.net_io_counters(pernic=True)
    lines: List[str] = []
    for name, addrs in psutil.net_if_addrs().items():
        for addr in addrs:
            family = addr.family
            lines.append("%-8s %s (%d)" % (name, _family_name(family), int(family)))
            if family in (socket.AF_INET, socket.AF_INET6):
                lines.append("\t\taddress: <%s>" % addr.address)
            elif family == psutil.AF_LINK and name in counters:
                stats = counters[name]
                lines.append(
                    "\t\ttx_packets = %10u; rx_packets = %10u"
                    % (stats.packets_sent, stats.packets_recv)
                )
                lines.append(
                    "\t\ttx_bytes   = %10u; rx_bytes   = %10u"
                    % (stats.bytes_sent, stats.bytes_recv)
                )
    for line in lines:
        print(line)
    return lines