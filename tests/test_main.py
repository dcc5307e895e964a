from __future__ import annotations

import logging
import threading

import pytest

from tftpwrite import __main__ as entry_point
from tftpwrite import packets
from tftpwrite.logging import ColoredFormatter, TransferLogAdapter
from tftpwrite.server import DEFAULT_WORKERS, TFTP_PORT


class TestArgumentParser:
    def test_server_defaults(self) -> None:
        args = entry_point._build_parser().parse_args(["server"])
        assert args.listen is None
        assert args.port == TFTP_PORT
        assert args.workers == DEFAULT_WORKERS
        assert args.timeout == 5.0
        assert args.retries == 5
        assert not args.no_overwrite

    def test_client_options(self) -> None:
        args = entry_point._build_parser().parse_args(
            [
                "client",
                "-s",
                "localhost",
                "-m",
                "OCTET",
                "--duplicate",
                "2",
                "--duplicate",
                "5",
                "local.bin",
                "remote.bin",
            ]
        )
        assert args.mode is packets.TransferMode.OCTET
        assert args.duplicate == [2, 5]
        assert args.remote == "remote.bin"

    @pytest.mark.parametrize("value", ("0", "-3"))
    def test_workers_must_be_positive(self, value: str) -> None:
        with pytest.raises(SystemExit):
            entry_point._build_parser().parse_args(["server", "-w", value])

    def test_client_upload_failure__exit_code(self, tmp_path) -> None:
        missing = tmp_path / "missing.txt"
        assert (
            entry_point.main(["client", "-s", "127.0.0.1", str(missing), "remote"]) == 1
        )


class TestLogging:
    def test_transfer_adapter_prefixes_tid(self, caplog) -> None:
        adapter = TransferLogAdapter(
            logging.getLogger("tftpwrite.test"), ("10.0.0.1", 4321)
        )
        with caplog.at_level(logging.INFO, logger="tftpwrite.test"):
            adapter.info("Receiving %r", "out.txt")
        assert caplog.messages == ["[10.0.0.1:4321] Receiving 'out.txt'"]

    def test_colored_formatter_includes_thread_name(self) -> None:
        record = logging.LogRecord(
            "tftpwrite.session", logging.WARNING, __file__, 1, "hello", None, None
        )
        formatted = ColoredFormatter().format(record)
        assert threading.current_thread().name in formatted
        assert "hello" in formatted
        assert "\x1b[33m" in formatted
