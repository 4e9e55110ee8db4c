# tunnelmux

Building blocks for the client side of a reverse tunnel that exposes
local services through a remote server. The package is a library: it
has no command of its own, and everything is used from Python.

## Modules

### `tunnelmux.tcpmux`

A stream multiplexer over one connection.

- `FrameHeader` is the 12-byte frame header (version, type, flags,
  stream id, length, network byte order). `to_bytes()` packs it,
  `FrameHeader.from_bytes(data)` parses it (raising `ValueError` when
  fewer than 12 bytes are given) and `is_valid()` checks the protocol
  version and that the type is at most `MuxType.GO_AWAY`.
- `MuxType`, `MuxFlag`, `MuxState` and `GoAwayReason` are the frame
  types, flag bits, stream states and go-away codes.
- `RingBuffer` is a bounded FIFO of bytes: `append(data)` raises
  `OverflowError` when the data does not fit, `pop(n)` raises
  `ValueError` when fewer than `n` bytes are held, and `free_space()`
  and `len()` report its fill.
- `MuxStream` holds a stream's id, state, send and receive windows
  (256 KiB each to start) and its transmit and receive rings.
- `MuxSession` keeps the stream table (`open_stream`, `add_stream`,
  `get_stream`, `remove_stream`, `clear_streams`), hands out odd
  stream ids (`next_session_id`, `reset_session_id`), sends window
  updates, data headers and pings, answers incoming pings
  (`handle_ping`), records a normal go-away (`handle_go_away`) and
  processes DATA and WINDOW_UPDATE frames (`handle_stream`).
  `stream_read` buffers incoming payload, `stream_write` sends within
  the send window and holds the rest back, and `stream_close`
  half-closes or fully closes a stream.

Outgoing bytes go to the `writer` callable given to `MuxSession`; when
none is given they collect in `session.outgoing`. The keyword
callbacks `on_data(stream_id, data)`, `on_close(stream_id)` and
`on_send_window_open(stream_id)` report payloads, closed streams and
streams whose send window opens again. With `tcp_mux=False` the
session sends no control frames.

### `tunnelmux.socks5`

- `parse_socks5_addr(data)` parses an IPv4, IPv6 or domain address
  (`AddrType`) starting at its type byte and returns a `Socks5Addr`
  with the number of bytes used; `Socks5Addr.host()` renders the host.
- `is_socks5_request(data)` checks for a SOCKS5 CONNECT header.
- `Socks5Session(connect, reply=None, state=Socks5State.INIT)` drives
  one stream. `handle_socks5(data)` answers the greeting, parses the
  request and calls `connect(addr)`, then forwards data once the owner
  has set the state to `Socks5State.CONNECT`. `handle_ss5(data)` does
  the same for the address-first variant, forwarding in
  `Socks5State.ESTABLISHED`. Both return the number of bytes consumed;
  malformed input raises `ValueError` and a failed connect
  `ConnectionError`.

### `tunnelmux.ftp`

Rewriting of FTP passive-mode replies so the data connection goes
through the tunnel: `pasv_unpack`, `pasv_pack` and
`rewrite_pasv_reply`, with the `FtpPasv` and `Proxy` records.

### `tunnelmux.udp`

UDP datagrams carried as base64 text in a `UdpPacket`:
`encode_datagram`, `decode_datagram`, `base64_encode`, `base64_decode`
(which accepts missing padding and raises `ValueError` on bad input)
and `resolve_local_address`.

### `tunnelmux.zip`

`deflate_write(data, gzip)` compresses to a zlib stream, or a gzip
stream when `gzip` is true. `inflate_read(data, gzip)` decompresses a
zlib stream, or a raw deflate stream (no gzip wrapper) when `gzip` is
true, and raises `zlib.error` on corrupt or truncated input.

### `tunnelmux.utils`

`is_valid_ip_address`, `dns_unified` (lower-cases the host part of a
name and raises `ValueError` when it has no inner dot),
`get_net_ifname` (prefers `br-lan` or `br0`, raises `LookupError` when
nothing fits), `get_net_mac`, `show_net_ifname` (prints the interface
list and returns the printed lines) and `s_sleep`.

### `tunnelmux.tcp_redir`

`TcpRedirectService(local_port, server_addr, remote_port)` listens on
the local port and relays one connection at a time to
`server_addr:remote_port`, closing any further connection while one is
active. `serve()` is the asyncio coroutine, `start()` runs it on a
daemon thread, and `start_tcp_redir_service(local_port, server_addr,
remote_port)` creates and starts a service and returns it.

## Examples

```python
from tunnelmux.tcpmux import FrameHeader, MuxFlag, MuxType

header = FrameHeader(type=MuxType.PING, flags=MuxFlag.SYN, length=7)
assert FrameHeader.from_bytes(header.to_bytes()) == header
```

```python
from tunnelmux.ftp import rewrite_pasv_reply

reply = b"227 Entering Passive Mode (192,168,1,10,195,80).\n"
payload, local, remote = rewrite_pasv_reply(reply, "203.0.113.5", 6001)
# payload == b"227 Entering Passive Mode (203,0,113,5,23,113).\n"
```

```python
from tunnelmux.zip import deflate_write, inflate_read

packed = deflate_write(b"hello tunnel", False)
assert inflate_read(packed, False) == b"hello tunnel"
```

## What the package does not do

It does not log in to a tunnel server, read a configuration file, run
a control loop or start services by itself. The pieces above are meant
to be wired into such a client; socket handling outside
`tunnelmux.tcp_redir` is left to the caller.

## Requirements

Python 3.10 or later. `psutil` is used to enumerate network interfaces.