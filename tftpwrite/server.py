"""Listener for write requests on the well-known TFTP port.

The listener only decodes requests and hands them to a fixed-size thread pool;
each accepted request becomes one :class:`~tftpwrite.session.TransferSession`
that occupies a worker until it closes. When every worker is busy, new sessions
wait in the pool's unbounded FIFO queue. The client is not told about the wait,
and will usually retransmit its request if it takes longer than its timeout;
requests from a TID that already has a session queued or running are dropped.
"""
from __future__ import annotations

import logging
import socket
import socketserver
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from functools import partial
from pathlib import Path
from typing import Optional, Set, Tuple

from .packets import (
    ErrorCode,
    ErrorPacket,
    PacketReadException,
    TransferMode,
    decode_write_request,
)
from .session import (
    DEFAULT_TIMEOUT,
    MAX_TIMEOUTS,
    RequestDescriptor,
    SessionConfig,
    TransferSession,
)
from .util.io import PathLike

logger = logging.getLogger(__name__)

TFTP_PORT = 69
DEFAULT_WORKERS = 10


def local_address() -> str:
    """The address the host name resolves to, used when no listen address is given."""
    return socket.gethostbyname(socket.gethostname())


class TftpServerRequestHandler(socketserver.BaseRequestHandler):
    """Runs on the listener thread, so it must never block on a transfer."""

    server: TftpServer

    def handle(self) -> None:
        data, sock = self.request
        logger.debug("Request received from %s:%d", *self.client_address)

        try:
            packet = decode_write_request(data)
            if packet.mode is TransferMode.MAIL:
                raise PacketReadException("mail mode is not supported")
        except PacketReadException as e:
            logger.warning("Rejecting request from %s:%d: %s", *self.client_address, e)
            error = ErrorPacket.for_error(ErrorCode.ILLEGAL_TFTP_OPERATION)
            sock.sendto(error.data(), self.client_address)
            return

        request = RequestDescriptor(packet.filename, packet.mode, self.client_address)
        self.server.dispatch(request)


class TftpServer(socketserver.UDPServer):
    def __init__(
        self,
        listen_addr: Optional[str] = None,
        listen_port: int = TFTP_PORT,
        data_directory: PathLike = Path("."),
        workers: int = DEFAULT_WORKERS,
        timeout: float = DEFAULT_TIMEOUT,
        max_timeouts: int = MAX_TIMEOUTS,
        overwrite: bool = True,
    ) -> None:
        if listen_addr is None:
            listen_addr = local_address()
        self.session_config = SessionConfig(
            root_dir=data_directory,
            timeout=timeout,
            max_timeouts=max_timeouts,
            overwrite=overwrite,
            bind_addr=listen_addr,
        )
        self.pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="session")
        self._active_tids: Set[Tuple[str, int]] = set()
        self._active_lock = threading.Lock()
        super().__init__((listen_addr, listen_port), TftpServerRequestHandler)
        listen_addr_, listen_port_ = self.socket.getsockname()
        logger.info(
            "Serving on %s:%d with %d workers", listen_addr_, listen_port_, workers
        )

    def dispatch(self, request: RequestDescriptor) -> Optional[Future]:
        with self._active_lock:
            if request.tid in self._active_tids:
                logger.debug("Dropping repeated %s, its session is pending", request)
                return None
            self._active_tids.add(request.tid)

        logger.info("Accepted %s", request)
        session = TransferSession(request, self.session_config)
        future = self.pool.submit(session.run)
        future.add_done_callback(partial(self._session_done, request))
        return future

    def _session_done(self, request: RequestDescriptor, future: Future) -> None:
        with self._active_lock:
            self._active_tids.discard(request.tid)
        if future.cancelled():
            logger.warning("Session for %s was cancelled before it started", request)
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Session for %s crashed", request, exc_info=exc)

    def handle_error(self, request, client_address) -> None:
        logger.exception("Error while handling request from %s:%d", *client_address)

    def server_close(self) -> None:
        """Stop listening, then wait for running transfers to finish."""
        super().server_close()
        self.pool.shutdown(wait=True)
