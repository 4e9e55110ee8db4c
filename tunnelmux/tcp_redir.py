"""Local TCP redirect: accept one local connection and relay it to the server.

The service listens on a local port and, for each accepted connection,
opens a connection to the tunnel server's remote port and copies bytes in
both directions. Only one connection is relayed at a time; further
connections are closed straight away until the current one ends.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
import threading
from typing import Optional

from .utils import is_valid_ip_address

logger = logging.getLogger(__name__)

_READ_SIZE = 64 * 1024


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    while True:
        data = await reader.read(_READ_SIZE)
        if not data:
            return
        writer.write(data)
        await writer.drain()


async def _close(writer: asyncio.StreamWriter) -> None:
    writer.close()
    with contextlib.suppress(OSError, ConnectionError):
        await writer.wait_closed()


class TcpRedirectService:
    """Relay a single local TCP connection at a time to ``server_addr:remote_port``."""

    def __init__(
        self,
        local_port: int,
        server_addr: str,
        remote_port: int,
        listen_host: str = "0.0.0.0",
    ) -> None:
        self.local_port = local_port
        self.server_addr = server_addr
        self.remote_port = remote_port
        self.listen_host = listen_host
        self.bound_port: Optional[int] = None
        self.active = False
        self._server_ip: Optional[str] = None
        self._ready = threading.Event()
        self._error: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None

    def resolve_server(self) -> str:
        """Return the server's IPv4 address, looking names up when needed."""
        if not self.server_addr:
            raise ValueError("no server address configured")
        if is_valid_ip_address(self.server_addr):
            return self.server_addr
        try:
            address = socket.gethostbyname(self.server_addr)
        except OSError as exc:
            logger.error("gethostbyname failed!")
            raise OSError(f"cannot resolve {self.server_addr!r}: {exc}") from exc
        if not is_valid_ip_address(address):
            logger.error("only support ipv4!")
            raise OSError(f"{self.server_addr!r} did not resolve to an IPv4 address")
        return address

    async def _handle(
        self, local_reader: asyncio.StreamReader, local_writer: asyncio.StreamWriter
    ) -> None:
        if self.active:
            logger.info(
                "Rejecting new connection. Only one connection allowed at a time."
            )
            await _close(local_writer)
            return

        self.active = True
        try:
            try:
                remote_reader, remote_writer = await asyncio.open_connection(
                    self._server_ip, self.remote_port
                )
            except OSError as exc:
                logger.error("connect to remote port failed! %s", exc)
                await _close(local_writer)
                return

            logger.info(
                "connect to remote service [%s:%d] success!",
                self.server_addr,
                self.remote_port,
            )
            tasks = [
                asyncio.ensure_future(_pipe(local_reader, remote_writer)),
                asyncio.ensure_future(_pipe(remote_reader, local_writer)),
            ]
            done, pending = await asyncio.wait(
                tasks, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
            for task in tasks:
                with contextlib.suppress(
                    asyncio.CancelledError, OSError, ConnectionError
                ):
                    await task
            failed = any(
                not task.cancelled() and task.exception() is not None for task in done
            )
            if failed:
                logger.error("connection error")
            else:
                logger.info("connection closed")
            await _close(remote_writer)
            await _close(local_writer)
        finally:
            self.active = False

    async def serve(self) -> None:
        """Listen on the local port and relay connections until cancelled."""
        self._server_ip = self.resolve_server()
        server = await asyncio.start_server(
            self._handle, self.listen_host, self.local_port, reuse_address=True
        )
        self.bound_port = server.sockets[0].getsockname()[1]
        self._ready.set()
        async with server:
            await server.serve_forever()

    def _run(self) -> None:
        try:
            asyncio.run(self.serve())
        except BaseException as exc:  # reported back to start()
            self._error = exc
            self._ready.set()
            if not isinstance(exc, Exception):
                raise

    def start(self) -> threading.Thread:
        """Serve on a background daemon thread once listening has begun."""
        self._ready.clear()
        self._error = None
        thread = threading.Thread(
            target=self._run, name="tcp-redir-worker", daemon=True
        )
        thread.start()
        self._ready.wait()
        if self._error is not None:
            logger.error("create tcp_redir worker thread failed!")
            raise self._error
        logger.info("create tcp_redir worker thread success!")
        self._thread = thread
        return thread


def start_tcp_redir_service(
    local_port: int, server_addr: str, remote_port: int
) -> TcpRedirectService:
    """Start a redirect service on a background thread and return it."""
    service = TcpRedirectService(local_port, server_addr, remote_port)
    service.start()
    return service