"""Integration tests for the device-link command line tool."""

import json
import socket
import socketserver
import threading
import time

import pytest
from click.testing import CliRunner

from device_link import DelimiterDecoder, LineDecoder, Notification, SessionEvent
from device_link.cli import build_decoder, format_notification, main, unescape

pytestmark = pytest.mark.integration


class DeviceHandler(socketserver.StreamRequestHandler):
    """Answers PWR? with PWR1 and anything unknown with ERR 1."""

    def handle(self):
        for line in self.rfile:
            command = line.strip()
            self.server.received.append(command)
            if command == b"PWR?":
                self.wfile.write(b"PWR1\r\n")
            elif command.startswith(b"SET"):
                continue
            else:
                self.wfile.write(b"ERR 1\r\n")


class DeviceServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self):
        super().__init__(("127.0.0.1", 0), DeviceHandler)
        self.received = []


@pytest.fixture
def device():
    server = DeviceServer()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def runner():
    return CliRunner()


def port_of(server) -> str:
    return str(server.server_address[1])


class TestRequestCommand:
    """Tests for `device-link request`."""

    def test_prints_matching_reply(self, device, runner):
        """The matched reply is printed and the exit code is 0."""
        result = runner.invoke(
            main, ["request", "127.0.0.1", port_of(device), "PWR?", "--expect", r"PWR\d"]
        )

        assert result.exit_code == 0, result.output
        assert result.output.strip() == "PWR1"

    def test_error_reply_exits_nonzero(self, device, runner):
        """A reply matching --error exits with status 1."""
        result = runner.invoke(
            main,
            ["request", "127.0.0.1", port_of(device), "FOO", "-e", "OK", "-x", r"ERR \d"],
        )

        assert result.exit_code == 1
        assert "Device error: ERR 1" in result.output

    def test_timeout_exits_nonzero(self, device, runner):
        """No matching reply within --timeout exits with status 1."""
        result = runner.invoke(
            main,
            ["request", "127.0.0.1", port_of(device), "SET 1", "-e", "OK", "-t", "0.2"],
        )

        assert result.exit_code == 1
        assert "Timeout while waiting for response!" in result.output


class TestSendCommand:
    """Tests for `device-link send`."""

    def test_command_reaches_device(self, device, runner):
        """The command is written with the end-of-line suffix."""
        result = runner.invoke(
            main, ["send", "127.0.0.1", port_of(device), "SET 5", "--eol", "\\r\\n"]
        )

        assert result.exit_code == 0, result.output
        for _ in range(100):
            if device.received:
                break
            time.sleep(0.01)
        assert device.received == [b"SET 5"]

    def test_connection_refused(self, runner):
        """An unreachable device exits with status 1."""
        with socket.socket() as sock:
            sock.bind(("127.0.0.1", 0))
            port = str(sock.getsockname()[1])

        result = runner.invoke(main, ["send", "127.0.0.1", port, "SET 5"])

        assert result.exit_code == 1
        assert "Error: Failed to connect to 127.0.0.1" in result.output

    def test_invalid_port(self, runner):
        """Out of range ports are reported as usage errors."""
        result = runner.invoke(main, ["send", "127.0.0.1", "70000", "SET 5"])

        assert result.exit_code == 2


class TestMonitorCommand:
    """Tests for `device-link monitor`."""

    def test_prints_lifecycle_until_close(self, device, runner):
        """Without reconnecting, monitor exits after the idle close."""
        result = runner.invoke(
            main, ["monitor", "127.0.0.1", port_of(device), "-t", "0.2", "-r", "0", "--json"]
        )

        assert result.exit_code == 0, result.output
        kinds = [json.loads(line)["kind"] for line in result.output.splitlines() if line.startswith("{")]
        assert kinds == ["connect", "timeout", "error", "close"]


class TestHelpers:
    """Tests for CLI helper functions."""

    def test_unescape_keeps_non_ascii(self):
        """Escapes expand while non-ASCII text passes through unchanged."""
        assert unescape("\\r\\n") == "\r\n"
        assert unescape("é\\n") == "é\n"
        assert unescape("€;") == "€;"

    def test_build_decoder(self):
        """--delimiter selects the decoder."""
        assert build_decoder("", "utf-8") is None
        assert isinstance(build_decoder("\\n", "utf-8"), LineDecoder)

        decoder = build_decoder("\\r", "utf-8")
        assert isinstance(decoder, DelimiterDecoder)
        assert decoder.delimiter == b"\r"

    def test_format_notification(self):
        """Notifications render as text or JSON lines."""
        notification = Notification(kind=SessionEvent.DATA, payload=b"PWR1")

        text = format_notification(notification, as_json=False)
        data = json.loads(format_notification(notification, as_json=True))

        assert text.endswith("data: b'PWR1'")
        assert data["kind"] == "data"
        assert data["payload"] == "PWR1"
