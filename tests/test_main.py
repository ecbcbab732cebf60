"""
Unit tests for the command line entry point.
"""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from main import build_server, main, parse_args
from stereocast.config import create_default_config, save_config_to_json


class TestArguments:

    def test_defaults(self):
        args = parse_args(["--config", "calib.json"])

        assert args.port is None
        assert args.window_ms == 200
        assert args.detector == "hog_svm"
        assert args.max_buffer_depth == 64
        assert not args.no_disparity
        assert args.max_message_size == 0

    def test_config_required(self):
        with pytest.raises(SystemExit):
            parse_args([])


class TestStartup:

    def test_missing_calibration_exits_with_error(self, tmp_path):
        assert main(["--config", str(tmp_path / "missing.json")]) == 1

    def test_build_server(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PORT", "8123")
        path = tmp_path / "calib.json"
        save_config_to_json(create_default_config(image_size=(320, 240)), str(path))

        server = build_server(parse_args(["--config", str(path), "--max-buffer-depth", "0"]))

        assert server.settings.port == 8123
        assert server.settings.max_buffer_depth is None
        assert server.settings.max_message_size is None
        server.close()

    def test_explicit_port_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PORT", "8123")
        path = tmp_path / "calib.json"
        save_config_to_json(create_default_config(), str(path))

        server = build_server(parse_args(["--config", str(path), "--port", "9000"]))

        assert server.settings.port == 9000
        server.close()

    def test_message_size_limit(self, tmp_path):
        path = tmp_path / "calib.json"
        save_config_to_json(create_default_config(), str(path))

        server = build_server(parse_args(["--config", str(path), "--max-message-size", "8388608"]))

        assert server.settings.max_message_size == 8388608
        server.close()
