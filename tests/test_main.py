"""Tests for configuration loading and process wiring."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from cec_mqtt import main as main_module
from cec_mqtt.const import DEFAULTS
from cec_mqtt.exceptions import CecError, MqttError

from conftest import wait_for_awaits


@pytest.fixture
def options_file(tmp_path):
    path = tmp_path / "options.json"
    path.write_text(json.dumps({"topic_prefix": "home/tv", "cec_port": "/dev/ttyUSB0", "log_only": True}))
    return path


class TestLoadConfig:
    def test_options_file_overrides_defaults(self, options_file):
        config = main_module._load_config(main_module._parse_args(["--config", str(options_file)]))

        assert config["topic_prefix"] == "home/tv"
        assert config["cec_port"] == "/dev/ttyUSB0"
        assert config["log_only"] is True
        assert config["mqtt_broker"] == DEFAULTS["mqtt_broker"]

    def test_flags_override_options_file(self, options_file):
        args = main_module._parse_args(
            ["--config", str(options_file), "--topic-prefix", "den", "--broker", "tcp://mqtt:1883", "--debug"]
        )
        config = main_module._load_config(args)

        assert config["topic_prefix"] == "den"
        assert config["mqtt_broker"] == "tcp://mqtt:1883"
        assert config["debug_logging"] is True
        assert config["cec_port"] == "/dev/ttyUSB0"

    def test_missing_explicit_options_file_raises(self, tmp_path):
        args = main_module._parse_args(["--config", str(tmp_path / "missing.json")])

        with pytest.raises(FileNotFoundError):
            main_module._load_config(args)

    def test_invalid_options_file_raises(self, tmp_path):
        path = tmp_path / "options.json"
        path.write_text("{not json")

        with pytest.raises(json.JSONDecodeError):
            main_module._load_config(main_module._parse_args(["--config", str(path)]))


@pytest.fixture
def cec_connection(mock_cec):
    mock_cec.commands = asyncio.Queue(maxsize=10)
    mock_cec.key_presses = asyncio.Queue(maxsize=10)
    mock_cec.source_activations = asyncio.Queue(maxsize=10)
    mock_cec.messages = asyncio.Queue(maxsize=10)
    return mock_cec


class TestMain:
    @pytest.mark.asyncio
    async def test_runs_until_stopped(self, options_file, cec_connection, mock_mqtt_client):
        mock_mqtt_client.connect = AsyncMock()
        mock_mqtt_client.disconnect = AsyncMock()
        stop_event = asyncio.Event()

        with patch.object(main_module.CecConnection, "open", AsyncMock(return_value=cec_connection)), \
                patch.object(main_module, "MqttClient", MagicMock(return_value=mock_mqtt_client)) as client_cls:
            task = asyncio.create_task(main_module.main(["--config", str(options_file)], stop_event))
            # Six snapshot publishes, then "online"
            await wait_for_awaits(mock_mqtt_client.publish, 7)
            cec_connection.messages.put_nowait("<< 10:8f")
            await wait_for_awaits(mock_mqtt_client.publish, 8)
            stop_event.set()
            await asyncio.wait_for(task, 2)

        assert client_cls.call_args.kwargs["status_topic"] == "home/tv/cec/bridge/status"
        published = [c.args[:2] for c in mock_mqtt_client.publish.await_args_list]
        assert published[6] == ("home/tv/cec/bridge/status", "online")
        # log_only: only the classified hex topic is published
        assert published[7] == ("home/tv/cec/message/hex/rx", "10:8f")
        assert published[-1] == ("home/tv/cec/bridge/status", "offline")
        mock_mqtt_client.disconnect.assert_awaited_once()
        cec_connection.destroy.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_mqtt_failure_closes_cec_connection(self, options_file, cec_connection, mock_mqtt_client):
        mock_mqtt_client.connect = AsyncMock(side_effect=MqttError("Could not connect"))
        mock_mqtt_client.connected = False

        with patch.object(main_module.CecConnection, "open", AsyncMock(return_value=cec_connection)), \
                patch.object(main_module, "MqttClient", MagicMock(return_value=mock_mqtt_client)):
            with pytest.raises(MqttError):
                await main_module.main(["--config", str(options_file)], asyncio.Event())

        cec_connection.destroy.assert_awaited_once()
        mock_mqtt_client.publish.assert_not_awaited()

    def test_run_exits_on_startup_failure(self):
        with patch.object(main_module, "main", AsyncMock(side_effect=CecError("unable to open"))):
            with pytest.raises(SystemExit) as exc_info:
                main_module.run()

        assert exc_info.value.code == 1

    @pytest.mark.parametrize(
        "options",
        [{"cec_log_level": "x"}, {"cec_open_timeout": "soon"}],
    )
    def test_run_exits_on_invalid_option_value(self, tmp_path, monkeypatch, caplog, options):
        path = tmp_path / "options.json"
        path.write_text(json.dumps(options))
        monkeypatch.setattr("sys.argv", ["cec-mqtt", "--config", str(path)])
        open_connection = AsyncMock()

        with patch.object(main_module.CecConnection, "open", open_connection):
            with pytest.raises(SystemExit) as exc_info:
                main_module.run()

        assert exc_info.value.code == 1
        assert "Startup failed" in caplog.text
        open_connection.assert_not_awaited()

    def test_run_exits_on_invalid_options_file(self, tmp_path, monkeypatch):
        path = tmp_path / "options.json"
        path.write_text("{not json")
        monkeypatch.setattr("sys.argv", ["cec-mqtt", "--config", str(path)])

        with pytest.raises(SystemExit) as exc_info:
            main_module.run()

        assert exc_info.value.code == 1
