"""Server side of a single write transfer.

A session is created for every accepted write request. It talks to the client
from its own ephemeral socket, so the well-known port stays free for new
requests, and it only accepts packets from the client's transfer ID (TID).

    INIT -> AWAIT_DATA -> FINAL_DALLY -> CLOSED

Every state may jump straight to CLOSED on a fatal error. Receiving with a
timeout is the only place a session blocks, and the timeout doubles as the
retransmission clock.
"""
from __future__ import annotations

import logging
import socket
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Tuple

from .logging import TransferLogAdapter
from .packets import (
    MAX_BLOCK_NUMBER,
    MAX_DATA_PACKET_SIZE,
    AckPacket,
    DataPacket,
    ErrorCode,
    ErrorPacket,
    IPacket,
    PacketReadException,
    TransferMode,
    read_packet,
)
from .util.io import PathLike, open_sink, to_path

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
MAX_TIMEOUTS = 5
BAD_BLOCK_MESSAGE = "Bad BlockNum Received"

# one byte more than the largest valid packet, so oversized datagrams are
# seen as such instead of being silently truncated to a valid length
RECV_BUFFER_SIZE = MAX_DATA_PACKET_SIZE + 1

TID = Tuple[str, int]
SinkOpener = Callable[[PathLike, str, bool], BinaryIO]


def next_block(block_number: int) -> int:
    return (block_number + 1) & MAX_BLOCK_NUMBER


def previous_block(block_number: int) -> int:
    return (block_number - 1) & MAX_BLOCK_NUMBER


class SessionState(Enum):
    INIT = "init"
    AWAIT_DATA = "await_data"
    FINAL_DALLY = "final_dally"
    CLOSED = "closed"


class SessionConfig:
    """Settings shared by every session a server spawns."""

    __slots__ = ("root_dir", "timeout", "max_timeouts", "overwrite", "bind_addr")

    def __init__(
        self,
        root_dir: PathLike = Path("."),
        timeout: float = DEFAULT_TIMEOUT,
        max_timeouts: int = MAX_TIMEOUTS,
        overwrite: bool = True,
        bind_addr: str = "0.0.0.0",
    ) -> None:
        self.root_dir = to_path(root_dir)
        self.timeout = timeout
        self.max_timeouts = max_timeouts
        self.overwrite = overwrite
        self.bind_addr = bind_addr


class RequestDescriptor:

    __slots__ = ("filename", "mode", "tid")

    def __init__(self, filename: str, mode: TransferMode, tid: TID) -> None:
        self.filename = filename
        self.mode = mode
        self.tid = tid

    def __str__(self) -> str:
        return (
            f"<{self.__class__.__name__} {self.filename!r} ({self.mode.value}) "
            f"from {self.tid[0]}:{self.tid[1]}>"
        )


class TransferState(ABC):

    state: SessionState

    def __str__(self) -> str:
        return f"<{self.__class__.__name__}>"

    @abstractmethod
    def run(self, session: TransferSession) -> TransferState:
        """Perform one step of the protocol and return the state to move to."""


class InitialState(TransferState):
    """Open the sink and accept the request with Ack 0, or refuse it."""

    state = SessionState.INIT

    def run(self, session: TransferSession) -> TransferState:
        try:
            session.open_sink()
        except OSError as e:
            session.log.warning("Could not open %r: %s", session.filename, e)
            return session.fail(ErrorCode.ACCESS_VIOLATION)

        session.expected_block = 1
        session.send_ack(0)
        return AwaitDataState()


class AwaitDataState(TransferState):
    state = SessionState.AWAIT_DATA

    def run(self, session: TransferSession) -> TransferState:
        received = session.receive()
        if received is None:
            session.timeout_count += 1
            if session.timeout_count > session.config.max_timeouts:
                session.log.info(
                    "Giving up after %d consecutive timeouts", session.timeout_count
                )
                return ClosedState()
            session.log.debug(
                "Timeout %d, resending %s", session.timeout_count, session.last_ack
            )
            session.send(session.last_ack)
            return self

        session.timeout_count = 0
        data, sender = received

        if sender != session.tid:
            session.log.warning("Packet from unknown TID %s:%d", *sender)
            session.send(ErrorPacket.for_error(ErrorCode.UNKNOWN_TRANSFER_ID), sender)
            return self

        try:
            packet = read_packet(data)
        except PacketReadException as e:
            session.log.warning("Undecodable packet: %s", e)
            return session.fail(ErrorCode.ILLEGAL_TFTP_OPERATION)

        if not isinstance(packet, DataPacket):
            session.log.warning("Expected DATA, received %s", packet.opcode.name)
            return session.fail(ErrorCode.ILLEGAL_TFTP_OPERATION)

        if packet.block_number == previous_block(session.expected_block):
            # the client missed our ack and resent the block
            session.log.debug("Duplicate block %d", packet.block_number)
            session.send(session.last_ack)
            return self

        if packet.block_number != session.expected_block:
            session.log.warning(
                "Expected block %d, received block %d",
                session.expected_block,
                packet.block_number,
            )
            return session.fail(ErrorCode.NOT_DEFINED, BAD_BLOCK_MESSAGE)

        try:
            session.write(packet.raw_data)
        except OSError as e:
            session.log.error("Writing %r failed: %s", session.filename, e)
            return session.fail(ErrorCode.DISK_FULL_OR_ALLOCATION_EXCEEDED)

        session.send_ack(packet.block_number)
        if packet.end_of_data:
            return FinalDallyState(packet.block_number)

        session.expected_block = next_block(session.expected_block)
        return self


class FinalDallyState(TransferState):
    """The last block is written and acked. Wait one timeout in case the client
    lost that ack and sends the block again.
    """

    state = SessionState.FINAL_DALLY

    def __init__(self, final_block: int) -> None:
        self.final_block = final_block

    def __str__(self) -> str:
        return f"<{self.__class__.__name__} (block {self.final_block:d})>"

    def run(self, session: TransferSession) -> TransferState:
        received = session.receive()
        if received is None:
            return ClosedState()

        data, sender = received
        if sender == session.tid and self._is_final_block(data):
            session.log.debug("Final block resent, resending %s", session.last_ack)
            session.send(session.last_ack)
            return self

        session.log.debug("Unexpected packet while dallying, closing")
        return ClosedState()

    def _is_final_block(self, data: bytes) -> bool:
        try:
            packet = read_packet(data)
        except PacketReadException:
            return False
        return isinstance(packet, DataPacket) and packet.block_number == self.final_block


class ClosedState(TransferState):
    state = SessionState.CLOSED

    def run(self, session: TransferSession) -> TransferState:
        return self


class TransferSession:
    """Receives one file from one client. Not thread safe; a session belongs to
    the worker running it.
    """

    def __init__(
        self,
        request: RequestDescriptor,
        config: Optional[SessionConfig] = None,
        sink_opener: SinkOpener = open_sink,
    ) -> None:
        self.tid = request.tid
        self.filename = request.filename
        self.mode = request.mode
        self.config = config if config is not None else SessionConfig()
        self.log = TransferLogAdapter(logger, self.tid)

        self._sink_opener = sink_opener
        self.sink: Optional[BinaryIO] = None
        self.sock: Optional[socket.socket] = None

        self.expected_block = 1
        self.last_ack: Optional[AckPacket] = None
        self.timeout_count = 0
        self.bytes_written = 0
        self._state: TransferState = InitialState()

    def __str__(self) -> str:
        return f"<{self.__class__.__name__} {self.filename!r} {self._state}>"

    @property
    def state(self) -> SessionState:
        return self._state.state

    @property
    def local_port(self) -> Optional[int]:
        if self.sock is None:
            return None
        return self.sock.getsockname()[1]

    def connect(self) -> None:
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind((self.config.bind_addr, 0))
        self.sock.settimeout(self.config.timeout)
        self.log.debug("Session socket bound to port %d", self.local_port)

    def run(self) -> None:
        """Drive the transfer to completion. Never raises for I/O failures."""
        self.log.info("Receiving %r (%s)", self.filename, self.mode.value)
        try:
            if self.sock is None:
                self.connect()
            while self.state is not SessionState.CLOSED:
                new_state = self._state.run(self)
                if new_state is not self._state:
                    self.log.debug("State transition: %s -> %s", self._state, new_state)
                self._state = new_state
        except OSError:
            self.log.exception("Socket error, terminating transfer")
            self._state = ClosedState()
        finally:
            self.close()
        self.log.info(
            "Transfer of %r finished, %d bytes written", self.filename, self.bytes_written
        )

    def close(self) -> None:
        if self.sink is not None:
            try:
                self.sink.close()
            except OSError as e:
                self.log.error("Closing %r failed: %s", self.filename, e)
            self.sink = None
        if self.sock is not None:
            self.sock.close()
            self.sock = None

    def open_sink(self) -> None:
        self.sink = self._sink_opener(
            self.config.root_dir, self.filename, self.config.overwrite
        )

    def write(self, payload: bytes) -> None:
        self.sink.write(payload)
        self.bytes_written += len(payload)

    def receive(self) -> Optional[Tuple[bytes, TID]]:
        """Wait for the next datagram; None if the timeout expired first."""
        try:
            data, sender = self.sock.recvfrom(RECV_BUFFER_SIZE)
        except socket.timeout:
            return None
        except ConnectionRefusedError:
            # ICMP port unreachable for an earlier send; the client has gone
            self.log.debug("Client port unreachable")
            return None
        self.log.debug("Received %d bytes from %s:%d", len(data), *sender)
        return data, sender

    def send(self, packet: IPacket, addr: Optional[TID] = None) -> None:
        self.sock.sendto(packet.data(), addr if addr is not None else self.tid)

    def send_ack(self, block_number: int) -> None:
        self.last_ack = AckPacket(block_number)
        self.log.debug("Sending %s", self.last_ack)
        self.send(self.last_ack)

    def fail(self, error: ErrorCode, message: Optional[str] = None) -> TransferState:
        packet = ErrorPacket.for_error(error, message)
        self.log.info("Terminating transfer with %s", error.name)
        self.send(packet)
        return ClosedState()
