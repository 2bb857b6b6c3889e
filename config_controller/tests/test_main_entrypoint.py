from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from config_controller.src.__main__ import JSONFormatter, main, redact_sensitive_text


def _make_record(msg: str = "test message", exc_info: object = None) -> logging.LogRecord:
    return logging.LogRecord(
        name="test.logger",
        level=logging.INFO,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,  # type: ignore[arg-type]
    )


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(_make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed
        assert "error" not in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = _make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(_make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_exception_text(self) -> None:
        try:
            raise ValueError("password=hunter2")
        except ValueError:
            record = _make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "hunter2" not in parsed["error"]
        assert "[REDACTED]" in parsed["error"]


class TestRedaction:
    def test_redacts_credentials(self) -> None:
        message = redact_sensitive_text(
            "token=abc123 password=hunter2 Authorization: Bearer abc.def.ghi"
        )

        assert "abc123" not in message
        assert "hunter2" not in message
        assert "abc.def.ghi" not in message

    def test_redacts_decryption_keys_and_encrypted_values(self) -> None:
        message = redact_sensitive_text(
            "decryption_key=Zm9vYmFy value=encrypted:gAAAAABkX3Q-token_="
        )

        assert "Zm9vYmFy" not in message
        assert "gAAAAABkX3Q-token_" not in message
        assert "encrypted:[REDACTED]" in message

    def test_leaves_plain_messages_untouched(self) -> None:
        message = "ConfigMap for default/my-secret updated. Updating secret."

        assert redact_sensitive_text(message) == message


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    @staticmethod
    def _mock_controller() -> MagicMock:
        mock_controller = MagicMock()
        mock_controller.ready = threading.Event()

        def fake_run_forever(shutdown_event: threading.Event | None = None) -> None:
            if shutdown_event is not None:
                shutdown_event.set()

        mock_controller.run_forever.side_effect = fake_run_forever
        return mock_controller

    def test_main_wires_components(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("HEALTH_PORT", "9090")
        mock_controller = self._mock_controller()
        core_api = SimpleNamespace()

        with (
            patch("config_controller.src.__main__.load_kube_configuration") as mock_load,
            patch("config_controller.src.__main__.build_core_client", return_value=core_api),
            patch(
                "config_controller.src.__main__.build_controller_from_env",
                return_value=mock_controller,
            ) as mock_build,
            patch("config_controller.src.__main__.start_health_server") as mock_health,
        ):
            mock_health.return_value = MagicMock()
            main()

        mock_load.assert_called_once()
        assert mock_build.call_args.kwargs["core_api"] is core_api
        mock_controller.run_forever.assert_called_once()
        assert mock_health.call_args.kwargs["ready"] is mock_controller.ready
        assert mock_health.call_args.kwargs["port"] == 9090
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_rejects_invalid_health_port(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HEALTH_PORT", "70000")

        with (
            patch("config_controller.src.__main__.load_kube_configuration"),
            patch("config_controller.src.__main__.build_core_client"),
            patch(
                "config_controller.src.__main__.build_controller_from_env",
                return_value=self._mock_controller(),
            ),
            patch("config_controller.src.__main__.start_health_server") as mock_health,
            pytest.raises(ValueError, match="HEALTH_PORT"),
        ):
            main()

        mock_health.assert_not_called()

    def test_main_registers_signal_handlers(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("HEALTH_PORT", raising=False)
        registered_signals: list[int] = []
        original_signal = signal.signal

        def tracking_signal(signum: int, handler: object) -> object:
            registered_signals.append(signum)
            return original_signal(signum, signal.SIG_DFL)

        with (
            patch("config_controller.src.__main__.load_kube_configuration"),
            patch("config_controller.src.__main__.build_core_client"),
            patch(
                "config_controller.src.__main__.build_controller_from_env",
                return_value=self._mock_controller(),
            ),
            patch("config_controller.src.__main__.start_health_server") as mock_health,
            patch("config_controller.src.__main__.signal.signal", side_effect=tracking_signal),
        ):
            mock_health.return_value = MagicMock()
            main()

        assert signal.SIGTERM in registered_signals
        assert signal.SIGINT in registered_signals
