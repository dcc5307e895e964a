from __future__ import annotations

import logging
import os
import socket
import threading
import time
from pathlib import Path

import pytest

from tftpwrite import client, packets, server, session


@pytest.fixture
def tftp_server(tmp_path: Path):
    instance = server.TftpServer(
        "127.0.0.1", 0, data_directory=tmp_path, workers=2, timeout=0.2
    )
    server_thread = threading.Thread(
        target=instance.serve_forever, name="Thread-Server", daemon=True
    )
    server_thread.start()
    yield instance
    instance.shutdown()
    server_thread.join()
    instance.server_close()


def send_raw_request(address, data: bytes) -> packets.IPacket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.settimeout(2)
    try:
        sock.sendto(data, address)
        response, sender = sock.recvfrom(1024)
    finally:
        sock.close()
    assert sender == address
    return packets.read_packet(response)


class TestClientServerIntegration:
    def test_write_text(self, tftp_server, tmp_path) -> None:
        expected = "Hello World"

        tftp_client = client.TftpClient(*tftp_server.server_address, timeout=1.0)
        tftp_client.write_file(remote_filename="test.txt", data=expected)

        tftp_server.shutdown()
        tftp_server.server_close()
        assert (tmp_path / "test.txt").read_text() == expected

    @pytest.mark.parametrize("size", (0, 512, 3 * 512 + 7))
    def test_upload_binary_with_duplicates(self, tftp_server, tmp_path, size) -> None:
        expected = os.urandom(size)
        local = tmp_path / "local.bin"
        local.write_bytes(expected)

        tftp_client = client.TftpClient(
            *tftp_server.server_address, timeout=1.0, duplicate_blocks={1, 2, 4}
        )
        tftp_client.upload_file("remote.bin", local, mode=packets.TransferMode.OCTET)

        tftp_server.shutdown()
        tftp_server.server_close()
        assert (tmp_path / "remote.bin").read_bytes() == expected

    def test_unwritable_destination__access_violation(self, tftp_server) -> None:
        tftp_client = client.TftpClient(*tftp_server.server_address, timeout=1.0)
        with pytest.raises(packets.ProtocolException, match=r"\[2\]"):
            tftp_client.write_file("no/such/dir/test.txt", "data")

    def test_transfers_queue_when_pool_is_busy(self, tmp_path) -> None:
        instance = server.TftpServer(
            "127.0.0.1", 0, data_directory=tmp_path, workers=1, timeout=0.2
        )
        server_thread = threading.Thread(target=instance.serve_forever, daemon=True)
        server_thread.start()

        errors = []

        def upload(name: str) -> None:
            tftp_client = client.TftpClient(*instance.server_address, timeout=3.0)
            try:
                tftp_client.write_file(name, name * 300)
            except packets.TftpException as e:
                errors.append(e)

        uploads = [
            threading.Thread(target=upload, args=(name,)) for name in ("a", "b", "c")
        ]
        try:
            for thread in uploads:
                thread.start()
            for thread in uploads:
                thread.join(10)
        finally:
            instance.shutdown()
            server_thread.join()
            instance.server_close()

        assert errors == []
        for name in ("a", "b", "c"):
            assert (tmp_path / name).read_text() == name * 300

    def test_resent_request_while_queued__does_not_truncate(self, tmp_path) -> None:
        instance = server.TftpServer(
            "127.0.0.1",
            0,
            data_directory=tmp_path,
            workers=1,
            timeout=0.3,
            max_timeouts=1,
        )
        server_thread = threading.Thread(target=instance.serve_forever, daemon=True)
        server_thread.start()

        # a client that never sends data keeps the only worker busy
        blocker = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.settimeout(2)
        expected = b"z" * 700
        try:
            blocker.sendto(
                packets.WriteRequestPacket(
                    "blocker.bin", packets.TransferMode.OCTET
                ).data(),
                instance.server_address,
            )
            assert packets.read_packet(blocker.recv(1024)) == packets.AckPacket(0)

            # shorter than the queue wait, so the request is resent while queued
            tftp_client = client.TftpClient(
                *instance.server_address, timeout=0.2, max_retries=10
            )
            tftp_client.write_file("out.bin", expected, mode=packets.TransferMode.OCTET)
        finally:
            instance.shutdown()
            server_thread.join()
            instance.server_close()
            blocker.close()

        assert (tmp_path / "out.bin").read_bytes() == expected

    def test_repeated_request__dispatched_once(self, tmp_path, monkeypatch) -> None:
        instance = server.TftpServer("127.0.0.1", 0, data_directory=tmp_path)
        started = threading.Event()
        release = threading.Event()

        def hold(self) -> None:
            started.set()
            release.wait(5)

        monkeypatch.setattr(session.TransferSession, "run", hold)
        request = session.RequestDescriptor(
            "out.txt", packets.TransferMode.OCTET, ("127.0.0.1", 40000)
        )
        try:
            first = instance.dispatch(request)
            assert started.wait(2)
            assert instance.dispatch(request) is None
            release.set()
            first.result(5)
            # the TID is released by a done-callback that may still be running
            deadline = time.monotonic() + 5
            while instance.dispatch(request) is None:
                assert time.monotonic() < deadline
                time.sleep(0.01)
        finally:
            release.set()
            instance.server_close()


class TestMalformedRequests:
    @pytest.mark.parametrize(
        "data",
        (
            packets.AckPacket(0).data(),
            b"\x00\x01file.txt\x00netascii\x00",
            b"\x00\x02file.txt\x00mail\x00",
            b"\x00\x02file.txt",
            b"\xff\xff",
            b"",
        ),
    )
    def test_illegal_operation_and_keeps_serving(
        self, tftp_server, tmp_path, data
    ) -> None:
        response = send_raw_request(tftp_server.server_address, data)
        assert response == packets.ErrorPacket.for_error(
            packets.ErrorCode.ILLEGAL_TFTP_OPERATION
        )

        tftp_client = client.TftpClient(*tftp_server.server_address, timeout=1.0)
        tftp_client.write_file("after.txt", "still here")
        tftp_server.shutdown()
        tftp_server.server_close()
        assert (tmp_path / "after.txt").read_text() == "still here"

    def test_crashing_session_does_not_stop_server(
        self, tftp_server, tmp_path, monkeypatch, caplog
    ) -> None:
        original_run = session.TransferSession.run
        crashed = threading.Event()

        def crash_once(self) -> None:
            if not crashed.is_set():
                crashed.set()
                raise RuntimeError("boom")
            original_run(self)

        monkeypatch.setattr(session.TransferSession, "run", crash_once)

        with caplog.at_level(logging.ERROR, logger="tftpwrite.server"):
            silent = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                silent.sendto(
                    packets.WriteRequestPacket(
                        "lost.txt", packets.TransferMode.OCTET
                    ).data(),
                    tftp_server.server_address,
                )
                assert crashed.wait(2)
            finally:
                silent.close()

            tftp_client = client.TftpClient(*tftp_server.server_address, timeout=1.0)
            tftp_client.write_file("ok.txt", "fine")

        assert "crashed" in caplog.text
        tftp_server.shutdown()
        tftp_server.server_close()
        assert (tmp_path / "ok.txt").read_text() == "fine"


def test_default_listen_address_is_resolved_host(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(server, "local_address", lambda: "127.0.0.1")
    instance = server.TftpServer(listen_port=0, data_directory=tmp_path)
    try:
        assert instance.server_address[0] == "127.0.0.1"
        assert instance.session_config.bind_addr == "127.0.0.1"
    finally:
        instance.server_close()
