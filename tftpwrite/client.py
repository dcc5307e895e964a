"""Write-only TFTP client.

Mostly a harness for exercising the server: besides plain uploads it can send
chosen data blocks twice, the way a client that lost an ack would.
"""
from __future__ import annotations

import io
import logging
import socket
from functools import partial
from typing import Iterable, Iterator, Optional, Union

from .packets import (
    MAX_BLOCK_SIZE,
    AckPacket,
    DataPacket,
    ErrorPacket,
    IPacket,
    ProtocolException,
    TransferMode,
    TransferTimeout,
    WriteRequestPacket,
    encode_netascii,
    read_packet,
)
from .server import TFTP_PORT
from .session import DEFAULT_TIMEOUT, MAX_TIMEOUTS, next_block, previous_block
from .util.io import PathLike, to_path

logger = logging.getLogger(__name__)


class TftpPacketClient:
    def __init__(
        self,
        server_ip: str,
        server_port: int = TFTP_PORT,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
    ) -> None:
        self.server_ip = socket.gethostbyname(server_ip)
        self.timeout = timeout
        self.sock: Optional[socket.socket] = None
        self.initial_server_port: int = server_port
        self.server_port: Optional[int] = None
        self.client_port: Optional[int] = None

    def connect(self) -> None:
        logger.debug("Initializing socket")
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("0.0.0.0", 0))
        self.sock.settimeout(self.timeout)
        self.client_port = self.sock.getsockname()[1]
        self.server_port = None
        logger.info("Client TID = %d", self.client_port)

    def close(self) -> None:
        if self.sock is not None:
            self.sock.close()
            self.sock = None

    def receive(self) -> IPacket:
        """Next packet from the server's TID. Raises socket.timeout when the
        server stays silent for longer than the timeout.
        """
        while True:
            data, (sender_ip, sender_port) = self.sock.recvfrom(65536)
            logger.debug("Received data from %s:%d", sender_ip, sender_port)

            if sender_ip != self.server_ip:
                continue
            if self.server_port is None:
                # the first reply comes from the port of the server's session
                self.server_port = sender_port
                break
            if self.server_port == sender_port:
                break

        return read_packet(data)

    def send(self, packet: IPacket) -> None:
        self.sock.sendto(
            packet.data(),
            (self.server_ip, (self.server_port or self.initial_server_port)),
        )


class TftpClient:
    def __init__(
        self,
        server_ip: str,
        server_port: int = TFTP_PORT,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = MAX_TIMEOUTS,
        duplicate_blocks: Iterable[int] = (),
    ) -> None:
        self.packet_client = TftpPacketClient(server_ip, server_port, timeout)
        self.max_retries = max_retries
        self.duplicate_blocks = frozenset(duplicate_blocks)

    def upload_file(
        self,
        remote_filename: str,
        local_filepath: PathLike,
        mode: TransferMode = TransferMode.NETASCII,
    ) -> None:
        with to_path(local_filepath).open("rb") as fh:
            self._write(
                str(remote_filename), iter(partial(fh.read, MAX_BLOCK_SIZE), b""), mode
            )

    def write_file(
        self,
        remote_filename: str,
        data: Union[str, bytes, io.IOBase],
        mode: TransferMode = TransferMode.NETASCII,
    ) -> None:
        if isinstance(data, str):
            data = io.BytesIO(encode_netascii(data))
        elif isinstance(data, bytes):
            data = io.BytesIO(data)

        self._write(
            str(remote_filename), iter(partial(data.read, MAX_BLOCK_SIZE), b""), mode
        )

    def _write(
        self,
        remote_filename: str,
        input_data: Iterator[bytes],
        mode: TransferMode = TransferMode.NETASCII,
    ) -> None:
        self.packet_client.connect()
        try:
            wrq = WriteRequestPacket(filename=remote_filename, mode=mode)
            logger.debug("Sending %s", wrq)
            self._exchange(wrq, 0)

            block_number = 0
            while True:
                # an empty final block marks the end when the data is a
                # multiple of the block size
                chunk = next(input_data, b"")
                block_number = next_block(block_number)
                data_packet = DataPacket(block_number, chunk)
                self._exchange(data_packet, block_number)
                if data_packet.end_of_data:
                    break
        finally:
            self.packet_client.close()

        logger.info("Write of %r complete", remote_filename)

    def _exchange(self, packet: IPacket, ack_block: int) -> None:
        """Send ``packet`` until it is acked with ``ack_block``."""
        self._send(packet)
        timeouts = 0
        while True:
            try:
                response = self.packet_client.receive()
            except socket.timeout:
                timeouts += 1
                if timeouts > self.max_retries:
                    raise TransferTimeout(
                        f"No ack for block {ack_block} after {self.max_retries} retries"
                    ) from None
                logger.warning("Timeout waiting for ack %d, resending", ack_block)
                self._send(packet)
                continue

            if isinstance(response, ErrorPacket):
                raise ProtocolException(
                    f"[{response.error_code}] {response.error_message or response.error}"
                )
            if not isinstance(response, AckPacket):
                raise ProtocolException(
                    f"Expected Ack or Err, received {response.opcode.name}"
                )

            if response.block_number == ack_block:
                return
            if response.block_number == previous_block(ack_block):
                # late ack for a duplicate we sent; answering it would double
                # every following packet
                logger.debug("Ignoring stale ack %d", response.block_number)
                continue
            raise ProtocolException(
                f"Ack received with block_number {response.block_number}, "
                f"expected {ack_block}"
            )

    def _send(self, packet: IPacket) -> None:
        self.packet_client.send(packet)
        if isinstance(packet, DataPacket) and packet.block_number in self.duplicate_blocks:
            logger.info("Sending block %d twice", packet.block_number)
            self.packet_client.send(packet)
