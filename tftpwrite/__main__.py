from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from .client import TftpClient
from .logging import UserLogger
from .packets import TftpException, TransferMode
from .server import DEFAULT_WORKERS, TFTP_PORT, TftpServer
from .session import DEFAULT_TIMEOUT, MAX_TIMEOUTS
from .util import cli
from .util.io import parse_path

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    argument_parser = argparse.ArgumentParser(
        prog="tftpwrite",
        description="Write-only Trivial File Transfer Protocol (TFTP) server and client.",
    )

    subcommands = argument_parser.add_subparsers(
        title="command", dest="command", required=True
    )
    server_parser = subcommands.add_parser("server", help="TFTP write server")
    client_parser = subcommands.add_parser("client", help="TFTP write client")
    for parser in (server_parser, client_parser):
        cli.add_verbose(parser)
        cli.add_retry_options(parser, DEFAULT_TIMEOUT, MAX_TIMEOUTS)

    server_parser.add_argument(
        "-l",
        "--listen",
        help="IP address or hostname to listen on. "
        "By default the address the host name resolves to.",
        default=None,
        type=str,
    )
    server_parser.add_argument(
        "-p", "--port", help="Port to listen on.", type=int, default=TFTP_PORT
    )
    server_parser.add_argument(
        "-d",
        "--data_dir",
        help="Directory that relative filenames are written to.",
        type=parse_path,
        default=Path("."),
    )
    server_parser.add_argument(
        "-w",
        "--workers",
        help="Maximum number of concurrent transfers; further requests queue.",
        type=cli.positive_int,
        default=DEFAULT_WORKERS,
    )
    server_parser.add_argument(
        "--no-overwrite",
        help="Refuse requests for files that already exist.",
        action="store_true",
        default=False,
    )
    server_parser.add_argument(
        "--log-file", help="Also write debug logs to this file.", type=parse_path
    )

    client_parser.add_argument(
        "-s",
        "--server",
        type=str,
        help="IP or hostname of remote TFTP server.",
        required=True,
    )
    client_parser.add_argument(
        "-p",
        "--port",
        type=int,
        default=TFTP_PORT,
        help="Port of remote TFTP server.",
    )
    client_parser.add_argument(
        "-m",
        "--mode",
        default=TransferMode.NETASCII,
        help="Transfer mode.",
        type=TransferMode,
        action=cli.EnumAction,
    )
    client_parser.add_argument(
        "--duplicate",
        help="Send this data block twice, to exercise duplicate handling. "
        "May be given more than once.",
        action="append",
        type=int,
        metavar="BLOCK",
    )
    client_parser.add_argument("local", type=parse_path, help="File to upload.")
    client_parser.add_argument("remote", type=str, help="Filename on the server.")
    return argument_parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parsed_args = _build_parser().parse_args(argv)

    user_logger = UserLogger().add_stderr(
        logging.DEBUG if parsed_args.verbose else logging.INFO
    )

    if parsed_args.command == "server":
        if parsed_args.log_file is not None:
            user_logger.add_file(parsed_args.log_file)
        with TftpServer(
            parsed_args.listen,
            parsed_args.port,
            data_directory=parsed_args.data_dir,
            workers=parsed_args.workers,
            timeout=parsed_args.timeout,
            max_timeouts=parsed_args.retries,
            overwrite=not parsed_args.no_overwrite,
        ) as server:
            try:
                server.serve_forever()
            except KeyboardInterrupt:
                logger.error("KeyboardInterrupt detected, exiting")
                return 1
    else:
        client = TftpClient(
            parsed_args.server,
            parsed_args.port,
            timeout=parsed_args.timeout,
            max_retries=parsed_args.retries,
            duplicate_blocks=parsed_args.duplicate or (),
        )
        logger.debug("Uploading %s -> %s", parsed_args.local, parsed_args.remote)
        try:
            client.upload_file(
                parsed_args.remote, parsed_args.local, mode=parsed_args.mode
            )
        except (OSError, TftpException) as e:
            logger.error("Upload failed: %s", e)
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
