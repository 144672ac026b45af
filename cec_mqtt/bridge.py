import asyncio
import json
import logging
import math
from dataclasses import dataclass

from .const import (
    DIRECTION_RX,
    TOPIC_COMMAND_RX,
    TOPIC_COMMAND_TX,
    TOPIC_KEY,
    TOPIC_KEY_SEND,
    TOPIC_MESSAGE,
    TOPIC_MESSAGE_HEX_RX,
    TOPIC_MESSAGE_HEX_TX,
    TOPIC_SOURCE_ACTIVE,
    TOPIC_SOURCE_NAME,
    TOPIC_SOURCE_POWER,
)
from .exceptions import CecError, MalformedRequestError
from .topics import classify_message, namespace

log = logging.getLogger("cec_mqtt.bridge")


def _bool_payload(value):
    return "true" if value else "false"


@dataclass(frozen=True)
class KeySendRequest:
    address: int
    key: str

    @classmethod
    def from_payload(cls, payload):
        """Decode a ``{"address": 4, "key": "0x41"}`` payload.

        Raises MalformedRequestError on invalid JSON, a non-object, or missing
        or mistyped fields. ``address`` is truncated to an integer.
        """
        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, TypeError) as exc:
            raise MalformedRequestError(f"invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise MalformedRequestError("payload is not a JSON object")

        address = data.get("address")
        if isinstance(address, bool) or not isinstance(address, (int, float)) or not math.isfinite(address):
            raise MalformedRequestError(f"'address' must be a number, got {address!r}")
        key = data.get("key")
        if not isinstance(key, str):
            raise MalformedRequestError(f"'key' must be a string, got {key!r}")
        return cls(address=int(address), key=key)


class CecMqttBridge:
    """Translates CEC bus events to MQTT topics and MQTT requests to CEC traffic.

    ``start()`` subscribes the command handlers and publishes the retained
    device snapshot. The forwarding loops (``publish_commands`` and friends)
    are started by the caller, one task per CEC event queue.
    """

    def __init__(self, cec, mqtt, topic_prefix=""):
        self.cec = cec
        self.mqtt = mqtt
        self.topic_prefix = topic_prefix or ""
        # Serializes every CEC transmit / key send issued by this bridge
        self._send_lock = asyncio.Lock()

    def topic(self, subtopic):
        return namespace(self.topic_prefix, subtopic)

    async def start(self):
        log.info("Creating CEC MQTT bridge")
        handlers = {
            TOPIC_KEY_SEND: self._on_key_send,
            TOPIC_COMMAND_TX: self._on_command_send,
        }
        for subtopic, handler in handlers.items():
            await self.mqtt.subscribe(self.topic(subtopic), handler, qos=1)

        await self._publish_devices()
        log.info("CEC MQTT bridge initialized")

    async def _publish_devices(self):
        devices = await self.cec.list()
        for key, device in devices.items():
            log.info(
                "Connected device %s: logical address=%s active source=%s osd name=%s "
                "physical address=%s power status=%s vendor=%s",
                key, device.logical_address, device.active_source, device.osd_name,
                device.physical_address, device.power_status, device.vendor,
            )
            address = device.logical_address
            await self.publish_mqtt(
                TOPIC_SOURCE_ACTIVE.format(address=address), _bool_payload(device.active_source), True
            )
            await self.publish_mqtt(TOPIC_SOURCE_NAME.format(address=address), device.osd_name, True)
            await self.publish_mqtt(TOPIC_SOURCE_POWER.format(address=address), device.power_status, True)

    async def publish_mqtt(self, subtopic, message, retained):
        return await self.mqtt.publish(self.topic(subtopic), message, retain=retained)

    # ------------------------------------------------------------------
    # Forwarding loops (CEC -> MQTT)
    # ------------------------------------------------------------------

    async def _forward(self, name, queue, handle):
        """Feed each event from ``queue`` to ``handle`` until cancelled."""
        try:
            while True:
                event = await queue.get()
                try:
                    await handle(event)
                except Exception:
                    log.exception("Error forwarding %s event %s", name, event)
        except asyncio.CancelledError:
            log.info("%s forwarding cancelled", name)
            raise

    async def publish_commands(self, commands):
        async def handle(command):
            log.debug("Command: %s", command.command_string)
            await self.publish_mqtt(TOPIC_COMMAND_RX, command.command_string, False)

        await self._forward("command", commands, handle)

    async def publish_key_presses(self, key_presses):
        async def handle(key_press):
            log.debug("Key press: code=%s duration=%s", key_press.key_code, key_press.duration)
            if key_press.duration == 0:
                await self.publish_mqtt(TOPIC_KEY, str(key_press.key_code), False)

        await self._forward("key press", key_presses, handle)

    async def publish_source_activations(self, source_activations):
        async def handle(activation):
            log.debug(
                "Source activation: logical address=%s state=%s",
                activation.logical_address, activation.state,
            )
            await self.publish_mqtt(
                TOPIC_SOURCE_ACTIVE.format(address=activation.logical_address),
                _bool_payload(activation.state),
                True,
            )

        await self._forward("source activation", source_activations, handle)

    async def publish_messages(self, messages, log_only=False):
        async def handle(message):
            log.debug("Message: %s", message)
            if not log_only:
                await self.publish_mqtt(TOPIC_MESSAGE, message, False)
            classified = classify_message(message)
            if classified is None:
                return
            direction, hex_part = classified
            log.debug("CEC message payload match: direction=%s hex=%s", direction, hex_part)
            if direction == DIRECTION_RX:
                await self.publish_mqtt(TOPIC_MESSAGE_HEX_RX, hex_part, True)
            else:
                await self.publish_mqtt(TOPIC_MESSAGE_HEX_TX, hex_part, True)

        await self._forward("message", messages, handle)

    # ------------------------------------------------------------------
    # Command handlers (MQTT -> CEC)
    # ------------------------------------------------------------------

    async def _on_command_send(self, topic, payload):
        if not payload:
            return
        async with self._send_lock:
            await self.publish_mqtt(TOPIC_COMMAND_TX, "", False)
            log.debug("Sending command: %s", payload)
            try:
                await self.cec.transmit(payload)
            except CecError as exc:
                log.warning("Could not transmit CEC command %r: %s", payload, exc)

    async def _on_key_send(self, topic, payload):
        if not payload:
            return
        try:
            request = KeySendRequest.from_payload(payload)
        except MalformedRequestError as exc:
            log.error("Could not parse key send payload %r: %s", payload, exc)
            return
        if not request.key:
            return
        async with self._send_lock:
            await self.publish_mqtt(TOPIC_KEY_SEND, "", False)
            log.debug("Sending key: address=%s key=%s", request.address, request.key)
            try:
                await self.cec.key_send(request.address, request.key)
            except CecError as exc:
                log.warning("Could not send CEC key %r to %s: %s", request.key, request.address, exc)
