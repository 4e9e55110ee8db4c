import asyncio
import socket
import socketserver
import threading
from unittest import mock

import pytest

from tunnelmux.tcp_redir import TcpRedirectService, start_tcp_redir_service
from tunnelmux.utils import is_valid_ip_address


async def _echo(reader, writer):
    while True:
        data = await reader.read(1024)
        if not data:
            break
        writer.write(data)
        await writer.drain()
    writer.close()


async def _wait_for(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


async def _start_pair():
    echo = await asyncio.start_server(_echo, "127.0.0.1", 0)
    echo_port = echo.sockets[0].getsockname()[1]
    service = TcpRedirectService(0, "127.0.0.1", echo_port, listen_host="127.0.0.1")
    task = asyncio.ensure_future(service.serve())
    await _wait_for(lambda: service.bound_port is not None or task.done())
    return echo, service, task


async def _stop_pair(echo, task):
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    echo.close()
    await echo.wait_closed()


def test_resolve_server_keeps_ip_address():
    service = TcpRedirectService(0, "10.1.2.3", 7000)
    assert service.resolve_server() == "10.1.2.3"


def test_resolve_server_looks_up_names():
    service = TcpRedirectService(0, "frps.example.com", 7000)
    with mock.patch("socket.gethostbyname", return_value="192.0.2.10") as lookup:
        assert service.resolve_server() == "192.0.2.10"
    lookup.assert_called_once_with("frps.example.com")


def test_resolve_server_localhost_is_ipv4():
    service = TcpRedirectService(0, "localhost", 7000)
    assert is_valid_ip_address(service.resolve_server())


def test_resolve_server_failure_raises():
    service = TcpRedirectService(0, "missing.example.com", 7000)
    with mock.patch("socket.gethostbyname", side_effect=socket.gaierror("no host")):
        with pytest.raises(OSError):
            service.resolve_server()


def test_resolve_server_requires_address():
    with pytest.raises(ValueError):
        TcpRedirectService(0, "", 7000).resolve_server()


@pytest.mark.asyncio
async def test_relays_data_both_ways():
    echo, service, task = await _start_pair()
    reader, writer = await asyncio.open_connection("127.0.0.1", service.bound_port)
    writer.write(b"hello through the tunnel")
    await writer.drain()
    reply = await asyncio.wait_for(reader.readexactly(24), 5)
    assert reply == b"hello through the tunnel"
    writer.close()
    await _stop_pair(echo, task)


@pytest.mark.asyncio
async def test_second_connection_is_rejected_while_first_active():
    echo, service, task = await _start_pair()
    r1, w1 = await asyncio.open_connection("127.0.0.1", service.bound_port)
    w1.write(b"ping")
    await w1.drain()
    assert await asyncio.wait_for(r1.readexactly(4), 5) == b"ping"
    assert service.active is True

    r2, w2 = await asyncio.open_connection("127.0.0.1", service.bound_port)
    assert await asyncio.wait_for(r2.read(10), 5) == b""
    w2.close()

    w1.write(b"still")
    await w1.drain()
    assert await asyncio.wait_for(r1.readexactly(5), 5) == b"still"
    w1.close()
    await _stop_pair(echo, task)


@pytest.mark.asyncio
async def test_new_connection_accepted_after_close():
    echo, service, task = await _start_pair()
    r1, w1 = await asyncio.open_connection("127.0.0.1", service.bound_port)
    w1.write(b"one")
    await w1.drain()
    assert await asyncio.wait_for(r1.readexactly(3), 5) == b"one"
    w1.close()
    await _wait_for(lambda: not service.active)

    r2, w2 = await asyncio.open_connection("127.0.0.1", service.bound_port)
    w2.write(b"two")
    await w2.drain()
    assert await asyncio.wait_for(r2.readexactly(3), 5) == b"two"
    w2.close()
    await _stop_pair(echo, task)


@pytest.mark.asyncio
async def test_unreachable_remote_closes_local_connection():
    probe = socket.socket()
    probe.bind(("127.0.0.1", 0))
    dead_port = probe.getsockname()[1]
    probe.close()

    service = TcpRedirectService(0, "127.0.0.1", dead_port, listen_host="127.0.0.1")
    task = asyncio.ensure_future(service.serve())
    await _wait_for(lambda: service.bound_port is not None)
    reader, writer = await asyncio.open_connection("127.0.0.1", service.bound_port)
    assert await asyncio.wait_for(reader.read(10), 5) == b""
    writer.close()
    await _wait_for(lambda: not service.active)
    assert service.active is False
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


class _EchoHandler(socketserver.BaseRequestHandler):
    def handle(self):
        while True:
            data = self.request.recv(1024)
            if not data:
                return
            self.request.sendall(data)


def test_start_tcp_redir_service_runs_in_background():
    echo = socketserver.ThreadingTCPServer(("127.0.0.1", 0), _EchoHandler)
    echo.daemon_threads = True
    threading.Thread(target=echo.serve_forever, daemon=True).start()
    try:
        service = start_tcp_redir_service(0, "127.0.0.1", echo.server_address[1])
        assert service.bound_port > 0
        with socket.create_connection(("127.0.0.1", service.bound_port), timeout=5) as conn:
            conn.sendall(b"threaded")
            received = b""
            while len(received) < 8:
                chunk = conn.recv(64)
                if not chunk:
                    break
                received += chunk
        assert received == b"threaded"
    finally:
        echo.shutdown()
        echo.server_close()


def test_start_raises_when_server_cannot_be_resolved():
    service = TcpRedirectService(0, "missing.example.com", 7000)
    with mock.patch("socket.gethostbyname", side_effect=socket.gaierror("no host")):
        with pytest.raises(OSError):
            service.start()
    assert service.bound_port is None