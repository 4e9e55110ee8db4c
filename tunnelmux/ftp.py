"""FTP control-channel rewriting for passive-mode data tunnels.

When the FTP server behind the tunnel answers ``227 Entering Passive Mode``
the address it announces is only reachable locally. The reply is rewritten
so that the client connects to the tunnel server's address and the remote
data port instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

logger = logging.getLogger(__name__)

IP_LEN = 16
FTP_PRO_BUF = 256
FTP_PASV_PORT_BLOCK = 256

PASV_CODES = (227, 211, 229)


@dataclass
class Proxy:
    """A proxied connection: its partner endpoint and FTP data-port state."""

    partner: Optional[Any] = None
    proxy_name: Optional[str] = None
    remote_data_port: int = -1


@dataclass
class FtpPasv:
    """Reply code plus the address announced in a passive-mode reply."""

    code: int = -1
    server_ip: str = ""
    server_port: int = -1


def _atoi(text: str) -> int:
    """Parse a leading decimal integer the way C ``atoi`` does."""
    text = text.lstrip(" \t\n\r\v\f")
    sign = 1
    if text[:1] in ("+", "-"):
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    digits = ""
    for ch in text:
        if not ch.isdigit():
            break
        digits += ch
    return sign * int(digits) if digits else 0


def _as_text(data: Union[bytes, bytearray, str]) -> str:
    if isinstance(data, (bytes, bytearray)):
        data = bytes(data).decode("latin-1")
    return data.split("\0", 1)[0]


def pasv_unpack(data: Union[bytes, bytearray, str]) -> Optional[FtpPasv]:
    """Parse a passive-mode reply; None when the reply is not one."""
    text = _as_text(data)
    code = _atoi(text[:3])
    if code not in PASV_CODES:
        return None

    pasv = FtpPasv(code=code)
    if code != 227:
        return pasv

    ip = ""
    ports = ["", ""]
    started = False
    commas = 0
    for ch in text:
        if len(ip) >= IP_LEN:
            break
        if ch == "(":
            started = True
            continue
        if not started:
            continue
        if ch == ")":
            break
        if ch == ",":
            commas += 1
            if commas < 4:
                ip += "."
            continue
        if commas >= 4:
            index = commas - 4
            if index < len(ports) and len(ports[index]) < 4:
                ports[index] += ch
            continue
        ip += ch

    pasv.server_ip = ip
    pasv.server_port = _atoi(ports[0]) * FTP_PASV_PORT_BLOCK + _atoi(ports[1])
    logger.debug("ftp pasv unpack:[%s:%d]", pasv.server_ip, pasv.server_port)
    return pasv


def pasv_pack(pasv: FtpPasv) -> bytes:
    """Build the passive-mode reply for ``pasv``; only code 227 is supported."""
    if pasv.code != 227:
        raise ValueError(f"passive reply code {pasv.code} cannot be packed")
    ip = pasv.server_ip[:IP_LEN].replace(".", ",")
    reply = "227 Entering Passive Mode (%s,%d,%d).\n" % (
        ip,
        pasv.server_port // FTP_PASV_PORT_BLOCK,
        pasv.server_port % FTP_PASV_PORT_BLOCK,
    )
    return reply.encode("latin-1")[: FTP_PRO_BUF - 1]


def rewrite_pasv_reply(
    data: Union[bytes, bytearray],
    server_addr: Optional[str],
    remote_data_port: int,
) -> Tuple[bytes, Optional[FtpPasv], Optional[FtpPasv]]:
    """Rewrite a reply from the local FTP server for the remote client.

    Returns ``(payload, local, remote)``. For replies that are not passive-mode
    replies the payload is ``data`` unchanged and both addresses are None;
    otherwise ``local`` is the announced local data address and ``remote``
    the one the client is told to use.
    """
    local = pasv_unpack(data)
    if local is None:
        return bytes(data), None, None

    if not server_addr:
        raise ValueError("FTP proxy without server address")
    remote = FtpPasv(
        code=local.code,
        server_ip=server_addr[:IP_LEN],
        server_port=remote_data_port,
    )
    if remote.server_port <= 0:
        raise ValueError("remote ftp data port is not initialised")

    payload = pasv_pack(remote)
    logger.debug(
        "set ftp proxy DATA port [local:remote] = [%d:%d]",
        local.server_port,
        remote.server_port,
    )
    return payload, local, remote