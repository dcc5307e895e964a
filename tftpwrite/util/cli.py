from __future__ import annotations

import argparse
from enum import Enum
from typing import Any, Sequence, Type


def add_verbose(parser: argparse.ArgumentParser) -> None:
    """Adds standardized verbose option to parser."""
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=False,
        help="Increase logging information printed to screen.",
    )


def add_retry_options(parser: argparse.ArgumentParser, timeout: float, retries: int):
    parser.add_argument(
        "-t",
        "--timeout",
        type=positive_float,
        default=timeout,
        help=f"Seconds to wait for a packet before retransmitting (default {timeout}).",
    )
    parser.add_argument(
        "-r",
        "--retries",
        type=positive_int,
        default=retries,
        help=f"Consecutive timeouts tolerated before giving up (default {retries}).",
    )


def positive_int(s: str) -> int:
    value = int(s)
    if value <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {s}")
    return value


def positive_float(s: str) -> float:
    value = float(s)
    if value <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive number, got {s}")
    return value


class EnumAction(argparse.Action):
    """Argparse handling for Enums with string values, matched case-insensitively."""

    _enum: Type[Enum]

    def __init__(self, **kwargs) -> None:
        enum_type = kwargs.pop("type", None)

        if enum_type is None:
            raise ValueError("Argument 'type' missing")

        if not issubclass(enum_type, Enum):
            raise TypeError(f"Expected type Enum, found {enum_type}")

        kwargs.setdefault("choices", tuple(e.value for e in enum_type))
        kwargs["type"] = str.lower

        super().__init__(**kwargs)
        self._enum = enum_type

    def __call__(
        self,
        parser: argparse.ArgumentParser,
        namespace: argparse.Namespace,
        values: str | Sequence[Any] | None,
        option_string: str | None = None,
    ) -> None:
        setattr(namespace, self.dest, self._enum(values))
