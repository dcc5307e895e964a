from __future__ import annotations

import logging
import sys
from enum import Enum
from typing import Any, List, MutableMapping, Optional, Tuple

from .util.io import PathLike, to_path


class AnsiEscapeCode:

    ESCAPE: str = "\x1b"
    value: int

    def __and__(self, other: AnsiEscapeCode) -> CompoundAnsiEscapeCode:
        if not isinstance(other, AnsiEscapeCode):
            raise TypeError
        return CompoundAnsiEscapeCode([self]) & other

    def __str__(self) -> str:
        return f"{self.ESCAPE}[{self.value}m"


class CompoundAnsiEscapeCode(AnsiEscapeCode):
    def __init__(self, codes: List[AnsiEscapeCode]) -> None:
        self.codes = codes

    def __and__(self, other: AnsiEscapeCode) -> CompoundAnsiEscapeCode:
        if isinstance(other, CompoundAnsiEscapeCode):
            return CompoundAnsiEscapeCode(self.codes + other.codes)
        elif isinstance(other, AnsiEscapeCode):
            return CompoundAnsiEscapeCode(self.codes + [other])
        else:
            raise TypeError

    def __str__(self) -> str:
        value = ";".join(f"{x.value}" for x in self.codes)
        return f"{self.ESCAPE}[{value}m"


class Special(AnsiEscapeCode, Enum):
    RESET = 0


class Color(AnsiEscapeCode, Enum):
    RED = 31
    GREEN = 32
    YELLOW = 33
    CYAN = 36
    BRIGHT_BLACK = 90


class SGR(AnsiEscapeCode, Enum):
    BOLD = 1
    DOUBLE_UNDERLINED = 21


PLAIN_FORMAT = (
    "[%(asctime)s]  %(levelname)-8s | %(threadName)s | %(name)s - %(message)s"
)


class ColoredFormatter(logging.Formatter):
    """Formatter for terminals. Sessions run on pool threads, so the thread name
    is part of every line.
    """

    COLORS = {
        logging.DEBUG: Color.BRIGHT_BLACK,
        logging.WARNING: Color.YELLOW,
        logging.ERROR: Color.RED,
        logging.CRITICAL: Color.RED & SGR.DOUBLE_UNDERLINED,
    }

    def __init__(self) -> None:
        super().__init__()
        self._formatters = {}

    def _formatter(self, levelno: int) -> logging.Formatter:
        if levelno not in self._formatters:
            color = self.COLORS.get(levelno, "")
            log_format = (
                f"{Special.RESET}{Color.GREEN}[%(asctime)s]  "
                f"{Special.RESET}{color}%(levelname)-8s | "
                f"{Special.RESET}{Color.CYAN}%(threadName)s "
                f"{Special.RESET}{color}| %(name)s - %(message)s "
                f"{Special.RESET}{Color.BRIGHT_BLACK}(%(filename)s:%(lineno)d)"
                f"{Special.RESET}"
            )
            self._formatters[levelno] = logging.Formatter(log_format)
        return self._formatters[levelno]

    def format(self, record: logging.LogRecord) -> str:
        return self._formatter(record.levelno).format(record)


class UserLogger:
    def __init__(self, logger: logging.Logger = None) -> None:
        if logger is None:
            # root logger
            self.logger = logging.getLogger(None)
        else:
            self.logger = logger

    def _add(self, handler: logging.Handler, level: int) -> UserLogger:
        handler.setLevel(level)
        self.logger.addHandler(handler)
        if self.logger.level == logging.NOTSET:
            self.logger.setLevel(level)
        else:
            self.logger.setLevel(min(self.logger.level, level))
        return self

    def add_stderr(self, level=logging.INFO) -> UserLogger:
        handler = logging.StreamHandler(stream=sys.stderr)
        if sys.stderr.isatty():
            handler.setFormatter(ColoredFormatter())
        else:
            handler.setFormatter(logging.Formatter(PLAIN_FORMAT))
        return self._add(handler, level)

    def add_file(self, filepath: PathLike, level=logging.DEBUG) -> UserLogger:
        handler = logging.FileHandler(to_path(filepath), encoding="utf-8")
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT))
        return self._add(handler, level)


class TransferLogAdapter(logging.LoggerAdapter):
    """Prefixes every message with the client's transfer ID."""

    def __init__(
        self, logger: logging.Logger, tid: Tuple[str, int], extra: Optional[dict] = None
    ) -> None:
        super().__init__(logger, extra or {})
        self.tid = tid

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        return f"[{self.tid[0]}:{self.tid[1]}] {msg}", kwargs
