import argparse
import asyncio
import json
import logging
import os
import signal
import sys

from .bridge import CecMqttBridge
from .cec_connection import CecConnection
from .const import DEFAULTS, OPTIONS_PATH, TOPIC_BRIDGE_STATUS
from .exceptions import CecError, MqttError
from .mqtt_client import MqttClient
from .topics import namespace

log = logging.getLogger("cec_mqtt")


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="cec-mqtt",
        description="Bridge HDMI-CEC events and commands to an MQTT broker",
    )
    parser.add_argument("--config", help=f"JSON options file (default {OPTIONS_PATH})")
    parser.add_argument("--cec-port", dest="cec_port", help="CEC adapter port, empty to autodetect")
    parser.add_argument("--cec-device-name", dest="cec_device_name", help="OSD name announced on the bus")
    parser.add_argument("--cec-client", dest="cec_client_path", help="Path to the cec-client binary")
    parser.add_argument("--broker", dest="mqtt_broker", help="MQTT broker URL, e.g. tcp://localhost:1883")
    parser.add_argument("--topic-prefix", dest="topic_prefix", help="Prefix for every MQTT topic")
    parser.add_argument(
        "--log-only", dest="log_only", action="store_true", default=None,
        help="Do not republish raw CEC messages on cec/message",
    )
    parser.add_argument(
        "--debug", dest="debug_logging", action="store_true", default=None,
        help="Debug logging",
    )
    return parser.parse_args(argv)


def _load_config(args):
    config = dict(DEFAULTS)

    path = args.config or OPTIONS_PATH
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            config.update(json.load(f))
    elif args.config:
        raise FileNotFoundError(f"Options file not found: {path}")

    # Command line flags override the options file
    for key, value in vars(args).items():
        if key != "config" and value is not None:
            config[key] = value

    return config


def _configure_logging(config):
    level = logging.DEBUG if config.get("debug_logging") else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )


async def main(argv=None, stop_event=None):
    config = _load_config(_parse_args(argv))
    _configure_logging(config)

    prefix = config.get("topic_prefix", "")
    status_topic = namespace(prefix, TOPIC_BRIDGE_STATUS)

    cec = await CecConnection.open(
        config.get("cec_port", ""),
        config["cec_device_name"],
        client_path=config["cec_client_path"],
        log_level=int(config["cec_log_level"]),
        open_timeout=float(config["cec_open_timeout"]),
        scan_timeout=float(config["cec_scan_timeout"]),
    )
    mqtt = None
    tasks = []
    try:
        mqtt = MqttClient(config, status_topic=status_topic)
        await mqtt.connect()

        bridge = CecMqttBridge(cec, mqtt, prefix)
        await bridge.start()

        tasks = [
            asyncio.create_task(bridge.publish_commands(cec.commands)),
            asyncio.create_task(bridge.publish_key_presses(cec.key_presses)),
            asyncio.create_task(bridge.publish_source_activations(cec.source_activations)),
            asyncio.create_task(bridge.publish_messages(cec.messages, bool(config.get("log_only")))),
        ]
        await mqtt.publish(status_topic, "online", retain=True)
        log.info("Started")

        if stop_event is None:
            stop_event = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                try:
                    loop.add_signal_handler(sig, stop_event.set)
                except NotImplementedError:
                    pass

        await stop_event.wait()
        log.info("Shutting down")
    finally:
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                log.exception("Error stopping forwarding task")
        if tasks:
            await mqtt.publish(status_topic, "offline", retain=True)
        if mqtt is not None and mqtt.connected:
            await mqtt.disconnect()
        await cec.destroy()
        log.info("Exit")


def run():
    try:
        asyncio.run(main())
    except (CecError, MqttError, OSError, ValueError) as exc:
        log.critical("Startup failed: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    run()
