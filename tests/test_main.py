"""Entry point tests."""

import logging
import sys

import pytest
import structlog

from messenger_fanout import main


def test_configure_logging_json(capsys):
    main.configure_logging("info", "json")
    structlog.get_logger().info("test.event", key="value")
    out = capsys.readouterr().out
    assert '"event": "test.event"' in out
    assert '"key": "value"' in out


def test_configure_logging_filters_level(capsys):
    main.configure_logging("warning", "text")
    structlog.get_logger().info("hidden.event")
    assert "hidden.event" not in capsys.readouterr().out


def test_missing_config_exits(monkeypatch, tmp_path, capsys):
    monkeypatch.setattr(sys, "argv", ["messenger-fanout", "-c", str(tmp_path / "missing.yaml")])

    with pytest.raises(SystemExit) as exc_info:
        main.run()

    assert exc_info.value.code == 1
    assert "Error" in capsys.readouterr().err


def test_invalid_config_exits(monkeypatch, tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("broker:\n  backend: kafka\n")
    monkeypatch.setattr(sys, "argv", ["messenger-fanout", "-c", str(path)])

    with pytest.raises(SystemExit) as exc_info:
        main.run()

    assert exc_info.value.code == 1


def test_run_serves_app(monkeypatch, tmp_path):
    path = tmp_path / "fanout.yaml"
    path.write_text(
        "broker:\n  backend: memory\n"
        "server:\n  host: 0.0.0.0\n  port: 4100\n"
        "logging:\n  level: warning\n  format: text\n"
    )
    monkeypatch.setattr(sys, "argv", ["messenger-fanout", "-c", str(path)])
    calls = []
    monkeypatch.setattr(main.uvicorn, "run", lambda app, **kw: calls.append((app, kw)))

    main.run()

    app, kwargs = calls[0]
    assert app.state.service.config.server.port == 4100
    assert kwargs["host"] == "0.0.0.0"
    assert kwargs["port"] == 4100
    assert kwargs["log_config"] is None


def test_uvicorn_records_share_renderer(capsys):
    main.configure_logging("info", "json")
    logging.getLogger("uvicorn.error").info("Application startup complete.")
    logging.getLogger("aio_pika").info("Connection established")

    err = capsys.readouterr().err
    assert '"event": "Application startup complete."' in err
    assert '"level": "info"' in err
    assert "Connection established" not in err
