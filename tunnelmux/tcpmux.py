"""Stream multiplexing over a single control connection.

Frames carry a fixed 12-byte header (version, type, flags, stream id,
length) in network byte order. Each stream keeps a send window and a
receive window, plus a transmit ring for data that could not be sent
yet and a receive ring for data waiting to be consumed.
"""

from __future__ import annotations

import enum
import logging
import struct
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

VERSION = "3.05.661"
PROTOCOL_VERSION = "0.61.0"
CLIENT_VERSION = 1

PROTO_VERSION = 0
MAX_STREAM_WINDOW_SIZE = 256 * 1024
RBUF_SIZE = 32 * 1024
WBUF_SIZE = 32 * 1024

_HEADER = struct.Struct(">BBHII")
HEADER_SIZE = _HEADER.size
_U32 = 0xFFFFFFFF


class MuxType(enum.IntEnum):
    DATA = 0
    WINDOW_UPDATE = 1
    PING = 2
    GO_AWAY = 3


class MuxFlag(enum.IntFlag):
    ZERO = 0
    SYN = 1
    ACK = 1 << 1
    FIN = 1 << 2
    RST = 1 << 3


class MuxState(enum.IntEnum):
    INIT = 0
    SYN_SEND = 1
    SYN_RECEIVED = 2
    ESTABLISHED = 3
    LOCAL_CLOSE = 4
    REMOTE_CLOSE = 5
    CLOSED = 6
    RESET = 7


class GoAwayReason(enum.IntEnum):
    NORMAL = 0
    PROTO_ERR = 1
    INTERNAL_ERR = 2


@dataclass(frozen=True)
class FrameHeader:
    """A multiplexer frame header."""

    type: int
    flags: int = 0
    stream_id: int = 0
    length: int = 0
    version: int = PROTO_VERSION

    def to_bytes(self) -> bytes:
        return _HEADER.pack(
            self.version,
            int(self.type),
            int(self.flags),
            self.stream_id & _U32,
            self.length & _U32,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "FrameHeader":
        if len(data) < HEADER_SIZE:
            raise ValueError(
                f"frame header needs {HEADER_SIZE} bytes, got {len(data)}"
            )
        version, type_, flags, stream_id, length = _HEADER.unpack_from(data)
        return cls(
            type=type_,
            flags=flags,
            stream_id=stream_id,
            length=length,
            version=version,
        )

    def is_valid(self) -> bool:
        return self.version == PROTO_VERSION and self.type <= MuxType.GO_AWAY


class RingBuffer:
    """A bounded FIFO byte buffer."""

    def __init__(self, capacity: int = RBUF_SIZE) -> None:
        self.capacity = capacity
        self._data = bytearray()

    def __len__(self) -> int:
        return len(self._data)

    def free_space(self) -> int:
        return self.capacity - len(self._data)

    def append(self, data: bytes) -> int:
        if len(data) > self.free_space():
            raise OverflowError(
                f"ring buffer has {self.free_space()} bytes free, "
                f"cannot append {len(data)}"
            )
        self._data += data
        return len(data)

    def pop(self, n: int) -> bytes:
        if n < 0 or n > len(self._data):
            raise ValueError(
                f"cannot pop {n} bytes from ring buffer holding {len(self._data)}"
            )
        out = bytes(self._data[:n])
        del self._data[:n]
        return out


@dataclass
class MuxStream:
    """One logical stream inside a multiplexed session."""

    id: int
    state: MuxState = MuxState.INIT
    recv_window: int = MAX_STREAM_WINDOW_SIZE
    send_window: int = MAX_STREAM_WINDOW_SIZE
    tx_ring: RingBuffer = field(default_factory=lambda: RingBuffer(WBUF_SIZE))
    rx_ring: RingBuffer = field(default_factory=lambda: RingBuffer(RBUF_SIZE))


_CLOSED_STATES = (MuxState.LOCAL_CLOSE, MuxState.CLOSED, MuxState.RESET)


class MuxSession:
    """State of one multiplexed connection.

    Outgoing bytes go to ``writer``; when none is given they collect in
    ``outgoing``. ``on_data(stream_id, data)`` receives stream payloads,
    ``on_close(stream_id)`` is told when a stream is torn down and
    ``on_send_window_open(stream_id)`` when a stalled stream may send again.
    """

    def __init__(
        self,
        writer: Optional[Callable[[bytes], None]] = None,
        *,
        tcp_mux: bool = True,
        on_data: Optional[Callable[[int, bytes], None]] = None,
        on_close: Optional[Callable[[int], None]] = None,
        on_send_window_open: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.tcp_mux = tcp_mux
        self.outgoing = bytearray()
        self._writer = writer if writer is not None else self.outgoing.extend
        self.on_data = on_data
        self.on_close = on_close
        self.on_send_window_open = on_send_window_open
        self.streams: Dict[int, MuxStream] = {}
        self.current_stream: Optional[MuxStream] = None
        self.remote_go_away = False
        self.local_go_away = False
        self._next_id = 1

    # -- session ids and stream table -------------------------------------

    def next_session_id(self) -> int:
        stream_id = self._next_id
        self._next_id += 2
        return stream_id

    def reset_session_id(self) -> None:
        self._next_id = 1

    def open_stream(self, stream_id: int, state: MuxState = MuxState.INIT) -> MuxStream:
        stream = MuxStream(id=stream_id, state=state)
        self.add_stream(stream)
        return stream

    def add_stream(self, stream: MuxStream) -> None:
        self.streams[stream.id] = stream

    def remove_stream(self, stream_id: int) -> Optional[MuxStream]:
        return self.streams.pop(stream_id, None)

    def get_stream(self, stream_id: int) -> Optional[MuxStream]:
        return self.streams.get(stream_id)

    def clear_streams(self) -> None:
        self.streams.clear()

    # -- frame output ------------------------------------------------------

    def _send_frame(self, type_: MuxType, flags: int, stream_id: int, length: int) -> None:
        header = FrameHeader(type=type_, flags=flags, stream_id=stream_id, length=length)
        self._writer(header.to_bytes())

    def _send_win_update(self, flags: int, stream_id: int, delta: int) -> None:
        self._send_frame(MuxType.WINDOW_UPDATE, flags, stream_id, delta)

    def send_window_update_syn(self, stream_id: int) -> None:
        if self.tcp_mux:
            self._send_win_update(MuxFlag.SYN, stream_id, 0)

    def send_window_update_ack(self, stream_id: int, delta: int) -> None:
        # The acknowledgement carries no flags and no delta on the wire.
        if self.tcp_mux:
            self._send_win_update(MuxFlag.ZERO, stream_id, 0)

    def send_window_update_fin(self, stream_id: int) -> None:
        if self.tcp_mux:
            self._send_win_update(MuxFlag.FIN, stream_id, 0)

    def send_window_update_rst(self, stream_id: int) -> None:
        if self.tcp_mux:
            self._send_win_update(MuxFlag.RST, stream_id, 0)

    def send_data_header(self, flags: int, stream_id: int, length: int) -> None:
        if self.tcp_mux:
            self._send_frame(MuxType.DATA, flags, stream_id, length)

    def send_ping(self, ping_id: int) -> None:
        if self.tcp_mux:
            self._send_frame(MuxType.PING, MuxFlag.SYN, 0, ping_id)

    def _send_go_away(self, reason: GoAwayReason) -> None:
        if self.tcp_mux:
            self._send_frame(MuxType.GO_AWAY, 0, 0, reason)

    # -- stream state machine ---------------------------------------------

    @staticmethod
    def _send_flags(stream: MuxStream) -> int:
        if stream.state == MuxState.INIT:
            stream.state = MuxState.SYN_SEND
            return MuxFlag.SYN
        if stream.state == MuxState.SYN_RECEIVED:
            stream.state = MuxState.ESTABLISHED
            return MuxFlag.ACK
        return MuxFlag.ZERO

    def _close_stream(self, stream_id: int) -> None:
        logger.debug("free stream %d", stream_id)
        self.remove_stream(stream_id)
        if self.on_close is not None:
            self.on_close(stream_id)

    def _process_flags(self, flags: int, stream: MuxStream) -> bool:
        close = False
        if flags & MuxFlag.ACK:
            if stream.state == MuxState.SYN_SEND:
                stream.state = MuxState.ESTABLISHED
        elif flags & MuxFlag.FIN:
            if stream.state in (
                MuxState.SYN_SEND,
                MuxState.SYN_RECEIVED,
                MuxState.ESTABLISHED,
            ):
                stream.state = MuxState.REMOTE_CLOSE
            elif stream.state == MuxState.LOCAL_CLOSE:
                stream.state = MuxState.CLOSED
                close = True
            else:
                logger.error("unexpected FIN flag in state %s", stream.state.name)
                return False
        elif flags & MuxFlag.RST:
            stream.state = MuxState.RESET
            close = True

        if close:
            self._close_stream(stream.id)
        return True

    def send_window_update(self, stream: MuxStream, length: int) -> None:
        maximum = MAX_STREAM_WINDOW_SIZE
        delta = ((maximum - length) - stream.recv_window) & _U32
        flags = self._send_flags(stream)
        if delta < maximum // 2 and flags == 0:
            return
        stream.recv_window = (stream.recv_window + delta) & _U32
        self._send_win_update(flags, stream.id, delta)

    def _process_data(self, stream: MuxStream, length: int, flags: int) -> bool:
        if not self._process_flags(flags, stream):
            return False
        if self.get_stream(stream.id) is None:
            return True
        if length > stream.recv_window:
            logger.error(
                "receive window exceeded (remain %d, recv %d)",
                stream.recv_window,
                length,
            )
            return False
        stream.recv_window -= length

        data = stream.rx_ring.pop(length)
        if self.on_data is not None:
            self.on_data(stream.id, data)
        self.send_window_update(stream, len(data))
        return True

    def _incr_send_window(self, header: FrameHeader, stream: MuxStream) -> bool:
        if not self._process_flags(header.flags, stream):
            return False
        if self.get_stream(stream.id) is None:
            return True
        if stream.send_window == 0 and self.on_send_window_open is not None:
            self.on_send_window_open(stream.id)
        stream.send_window += header.length
        return True

    def _incoming_stream(self, stream_id: int) -> bool:
        if self.local_go_away:
            self.send_window_update_rst(stream_id)
            return False
        return True

    # -- frame input -------------------------------------------------------

    def handle_ping(self, header: FrameHeader) -> None:
        if header.flags & MuxFlag.SYN and self.tcp_mux:
            self._send_frame(MuxType.PING, MuxFlag.ACK, 0, header.length)

    def handle_go_away(self, header: FrameHeader) -> None:
        code = header.length
        if code == GoAwayReason.NORMAL:
            self.remote_go_away = True
        elif code == GoAwayReason.PROTO_ERR:
            logger.error("receive protocol error go away")
        elif code == GoAwayReason.INTERNAL_ERR:
            logger.error("receive internal error go away")
        else:
            logger.error("receive unexpected go away")

    def handle_stream(self, header: FrameHeader) -> int:
        """Handle a DATA or WINDOW_UPDATE frame; return the payload length consumed."""
        stream_id = header.stream_id
        flags = header.flags

        if flags & MuxFlag.SYN:
            logger.info("unexpected incoming stream %d", stream_id)
            if not self._incoming_stream(stream_id):
                return 0

        stream = self.get_stream(stream_id)
        if stream is None:
            return 0

        if header.type == MuxType.WINDOW_UPDATE:
            if not self._incr_send_window(header, stream):
                self._send_go_away(GoAwayReason.PROTO_ERR)
            return 0

        if stream.state != MuxState.ESTABLISHED:
            return 0

        if not self._process_data(stream, header.length, flags):
            self._send_go_away(GoAwayReason.PROTO_ERR)
            return 0
        return header.length

    def stream_read(self, stream: MuxStream, data: bytes) -> int:
        """Buffer incoming payload bytes; return how many fitted."""
        if stream.state != MuxState.ESTABLISHED:
            logger.warning(
                "stream %d state is %s: not ESTABLISHED, data len %d",
                stream.id,
                stream.state.name,
                len(data),
            )
        ring = stream.rx_ring
        if ring.free_space() == 0:
            logger.error("ring buffer is full")
            return 0
        accepted = min(len(data), ring.free_space())
        if accepted < len(data):
            logger.info(
                "read data [%d] exceeds ring capacity [%d]", len(data), accepted
            )
        return ring.append(data[:accepted])

    def stream_write(self, stream: MuxStream, data: bytes) -> int:
        """Send data on a stream within its send window; return bytes sent."""
        if stream.state in _CLOSED_STATES:
            logger.info("stream %d state is closed", stream.id)
            return 0

        tx = stream.tx_ring
        if stream.send_window == 0:
            logger.info("stream %d send_window is zero, length %d", stream.id, len(data))
            tx.append(data)
            return 0

        flags = self._send_flags(stream)
        buffered = len(tx)
        if stream.send_window < buffered:
            sent = stream.send_window
            self.send_data_header(flags, stream.id, sent)
            self._write_payload(tx.pop(sent))
            tx.append(data)
        elif stream.send_window < buffered + len(data):
            sent = stream.send_window
            take = sent - buffered
            self.send_data_header(flags, stream.id, sent)
            self._write_payload(tx.pop(buffered) + data[:take])
            tx.append(data[take:])
        else:
            sent = buffered + len(data)
            self.send_data_header(flags, stream.id, sent)
            self._write_payload(tx.pop(buffered) + bytes(data))

        stream.send_window -= sent
        return sent

    def _write_payload(self, payload: bytes) -> None:
        if payload:
            self._writer(payload)

    def stream_close(self, stream: MuxStream) -> bool:
        """Half-close or fully close a stream; True while the stream lives on."""
        if stream.state in (
            MuxState.SYN_SEND,
            MuxState.SYN_RECEIVED,
            MuxState.ESTABLISHED,
        ):
            stream.state = MuxState.LOCAL_CLOSE
            fully_closed = False
        elif stream.state in (MuxState.LOCAL_CLOSE, MuxState.REMOTE_CLOSE):
            stream.state = MuxState.CLOSED
            fully_closed = True
        else:
            return False

        flags = self._send_flags(stream) | MuxFlag.FIN
        self._send_win_update(flags, stream.id, 0)
        if not fully_closed:
            return True
        self._close_stream(stream.id)
        return False