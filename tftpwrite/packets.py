"""Packet codec for the write half of TFTP (revision 2).

Ref: https://datatracker.ietf.org/doc/html/rfc1350/

Every integer field on the wire is an unsigned 16 bit big-endian value. Read
requests are recognised by opcode but have no implementation, so they fail to
decode like any other malformed packet.
"""
from __future__ import annotations

import struct
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Optional, Type

NUL = b"\x00"
MAX_BLOCK_SIZE = 512
DATA_HEADER_SIZE = 4
MAX_DATA_PACKET_SIZE = DATA_HEADER_SIZE + MAX_BLOCK_SIZE
MAX_BLOCK_NUMBER = 0xFFFF


def encode_netascii(s: str) -> bytes:
    return s.encode("latin-1")


def decode_netascii(data: bytes) -> str:
    return data.decode("latin-1")


class ErrorCode(Enum):
    NOT_DEFINED = 0
    FILE_NOT_FOUND = 1
    ACCESS_VIOLATION = 2
    DISK_FULL_OR_ALLOCATION_EXCEEDED = 3
    ILLEGAL_TFTP_OPERATION = 4
    UNKNOWN_TRANSFER_ID = 5
    FILE_ALREADY_EXISTS = 6
    NO_SUCH_USER = 7


class TransferMode(Enum):
    NETASCII = "netascii"
    OCTET = "octet"
    MAIL = "mail"


class Opcode(Enum):
    READ_REQUEST = 1
    WRITE_REQUEST = 2
    DATA = 3
    ACKNOWLEDGEMENT = 4
    ERROR = 5

    @property
    def implementation(self) -> Optional[Type[IPacket]]:
        return _IPACKET_REGISTRY.get(self.value)


_IPACKET_REGISTRY: Dict[int, Type[IPacket]] = {}


class TftpException(Exception):
    pass


class PacketReadException(TftpException):
    pass


class ProtocolException(TftpException):
    pass


class TransferTimeout(TftpException):
    pass


class IPacket(ABC):
    """See Section 5 of RFC 1350."""

    opcode: Opcode

    def __init_subclass__(cls, **__) -> None:
        if cls.opcode.value in _IPACKET_REGISTRY:
            raise ValueError(f"Implementation for Opcode {cls.opcode} already exists")
        _IPACKET_REGISTRY[cls.opcode.value] = cls

    def __str__(self) -> str:
        description = " | ".join(f"{k}={v!r}" for k, v in vars(self).items())
        return f"<{self.__class__.__name__} {description}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, IPacket):
            return NotImplemented
        return type(self) is type(other) and vars(self) == vars(other)

    def __hash__(self) -> int:
        return hash((type(self), self.data()))

    def __setattr__(self, name: str, value) -> None:
        if name in self.__dict__:
            raise AttributeError(f"{self.__class__.__name__} is immutable")
        super().__setattr__(name, value)

    @abstractmethod
    def data(self) -> bytes:
        """Serialize the instance to bytes matching the packet format."""

    @classmethod
    @abstractmethod
    def from_data(cls, data: bytes) -> IPacket:
        """Deserialize the instance from bytes."""

    @classmethod
    def _check_opcode(cls, data: bytes) -> None:
        if len(data) < 2:
            raise PacketReadException("Unexpected packet length (no opcode)")
        (opcode,) = struct.unpack("!H", data[:2])
        if opcode != cls.opcode.value:
            raise PacketReadException(
                f"Expected opcode {cls.opcode.value} ({cls.opcode.name}), got {opcode}"
            )


def _check_block_number(block_number: int) -> None:
    if not 0 <= block_number <= MAX_BLOCK_NUMBER:
        raise ValueError(f"block_number must be in [0, {MAX_BLOCK_NUMBER}]")


class WriteRequestPacket(IPacket):
    """
           2 bytes    string    1 byte    string    1 byte
          -------------------------------------------------
    WRQ   |   02  |  Filename  |   0  |    Mode    |   0  |
          -------------------------------------------------
    """

    opcode = Opcode.WRITE_REQUEST

    # ! = network (big-endian)
    structure = "!H{filename_size:d}sc{mode_size:d}sc"

    def __init__(self, filename: str, mode: TransferMode) -> None:
        self.filename = filename
        self.mode = mode

    @classmethod
    def from_data(cls, data: bytes) -> WriteRequestPacket:
        cls._check_opcode(data)
        fields = data[2:].split(NUL)
        # filename, mode and the empty remainder after the last terminator
        if len(fields) != 3 or fields[2]:
            raise PacketReadException("Packet does not meet expected format")
        filename_block, mode_block, _ = fields
        if not filename_block:
            raise PacketReadException("Filename is empty")

        try:
            mode = TransferMode(decode_netascii(mode_block).lower())
        except ValueError:
            raise PacketReadException(f"Unknown transfer mode {mode_block!r}") from None

        return WriteRequestPacket(decode_netascii(filename_block), mode)

    def data(self) -> bytes:
        """Encodes the request, always in netascii."""
        filename = encode_netascii(self.filename)
        mode = encode_netascii(self.mode.value)
        structure = self.structure.format(
            filename_size=len(filename), mode_size=len(mode)
        )
        return struct.pack(structure, self.opcode.value, filename, NUL, mode, NUL)


class DataPacket(IPacket):
    """
     2 bytes     2 bytes      n bytes
     ----------------------------------
    | Opcode |   Block #  |   Data     |
     ----------------------------------
    """

    opcode = Opcode.DATA

    def __init__(self, block_number: int, data: bytes) -> None:
        _check_block_number(block_number)
        if len(data) > MAX_BLOCK_SIZE:
            raise ValueError(f"data must be at most {MAX_BLOCK_SIZE} bytes")
        self.block_number = block_number
        self.raw_data = bytes(data)

    @property
    def end_of_data(self) -> bool:
        return len(self.raw_data) < MAX_BLOCK_SIZE

    def data(self) -> bytes:
        return struct.pack("!HH", self.opcode.value, self.block_number) + self.raw_data

    @classmethod
    def from_data(cls, data: bytes) -> DataPacket:
        cls._check_opcode(data)
        if len(data) < DATA_HEADER_SIZE:
            raise PacketReadException("Unexpected packet length (packet too small)")
        if len(data) > MAX_DATA_PACKET_SIZE:
            raise PacketReadException("Unexpected packet length (packet too large)")
        (block_number,) = struct.unpack("!H", data[2:4])
        return DataPacket(block_number, data[DATA_HEADER_SIZE:])


class AckPacket(IPacket):
    """
      2 bytes     2 bytes
     ---------------------
    | Opcode |   Block #  |
     ---------------------
    """

    opcode = Opcode.ACKNOWLEDGEMENT

    def __init__(self, block_number: int) -> None:
        _check_block_number(block_number)
        self.block_number = block_number

    @classmethod
    def from_data(cls, data: bytes) -> AckPacket:
        cls._check_opcode(data)
        if len(data) != 4:
            raise PacketReadException("Unexpected packet length")
        (block_number,) = struct.unpack("!H", data[2:])
        return AckPacket(block_number)

    def data(self) -> bytes:
        return struct.pack("!HH", self.opcode.value, self.block_number)


class ErrorPacket(IPacket):
    """
     2 bytes     2 bytes      string    1 byte
     -----------------------------------------
    | Opcode |  ErrorCode |   ErrMsg   |   0  |
     -----------------------------------------

    Only NOT_DEFINED errors carry a message; every other code is sent with an
    empty ErrMsg since the code itself says everything.
    """

    opcode = Opcode.ERROR

    def __init__(self, error_code: int, error_message: Optional[str] = None) -> None:
        if not 0 <= error_code <= 0xFFFF:
            raise ValueError("error_code must fit in 16 bits")
        self.error_code = error_code
        self.error_message = error_message or None

    @classmethod
    def for_error(
        cls, error: ErrorCode, error_message: Optional[str] = None
    ) -> ErrorPacket:
        if error is not ErrorCode.NOT_DEFINED:
            error_message = None
        return cls(error.value, error_message)

    @property
    def error(self) -> Optional[ErrorCode]:
        try:
            return ErrorCode(self.error_code)
        except ValueError:
            return None

    def data(self) -> bytes:
        result = struct.pack("!HH", self.opcode.value, self.error_code)
        if self.error is ErrorCode.NOT_DEFINED and self.error_message:
            result += encode_netascii(self.error_message)
        return result + NUL

    @classmethod
    def from_data(cls, data: bytes) -> ErrorPacket:
        cls._check_opcode(data)
        if len(data) < 4:
            raise PacketReadException("Unexpected packet length (packet too small)")
        (error_code,) = struct.unpack("!H", data[2:4])
        message = data[4:]
        if message.endswith(NUL):
            message = message[:-1]
        return ErrorPacket(error_code, decode_netascii(message) or None)


def read_packet(data: bytes) -> IPacket:
    """Decode any supported packet, dispatching on its opcode."""
    if len(data) < 2:
        raise PacketReadException("Unexpected packet length (no opcode)")
    opcode_int = int.from_bytes(data[:2], "big")
    try:
        opcode = Opcode(opcode_int)
    except ValueError:
        raise PacketReadException(f"Unknown opcode {opcode_int}") from None

    packet_class = opcode.implementation
    if packet_class is None:
        raise PacketReadException(f"{opcode.name} packets are not supported")

    return packet_class.from_data(data)


def decode_write_request(data: bytes) -> WriteRequestPacket:
    packet = read_packet(data)
    if not isinstance(packet, WriteRequestPacket):
        raise PacketReadException(
            f"Expected {Opcode.WRITE_REQUEST.name}, received {packet.opcode.name}"
        )
    return packet
