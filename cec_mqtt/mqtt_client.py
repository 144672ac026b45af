import asyncio
import logging
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt

from .exceptions import MqttError

log = logging.getLogger("cec_mqtt.mqtt")

DEFAULT_PORT = 1883
SUPPORTED_SCHEMES = ("tcp", "mqtt")


def parse_broker_url(url):
    """Split ``tcp://host:port`` into (host, port)."""
    parts = urlsplit(url if "://" in url else f"tcp://{url}")
    if parts.scheme not in SUPPORTED_SCHEMES:
        raise MqttError(f"Unsupported MQTT broker scheme: {url}")
    if not parts.hostname:
        raise MqttError(f"MQTT broker URL has no host: {url}")
    return parts.hostname, parts.port or DEFAULT_PORT


class MqttClient:
    def __init__(self, config, status_topic=None):
        self.config = config
        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=config.get("mqtt_client_id", "cec_mqtt"),
        )
        self._subscriptions = {}
        self._pending_subscribes = {}
        self._loop = None
        self._connected = False
        self._connack = None

        user = config.get("mqtt_user")
        password = config.get("mqtt_pass")
        if user:
            self.client.username_pw_set(user, password)

        if status_topic:
            self.client.will_set(status_topic, "offline", qos=1, retain=True)

        self.client.on_message = self._on_message
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_subscribe = self._on_subscribe

        self._host, self._port = parse_broker_url(config.get("mqtt_broker", "tcp://localhost:1883"))
        self._connect_timeout = float(config.get("mqtt_connect_timeout", 10))
        self._connect_attempts = max(1, int(config.get("mqtt_connect_attempts", 1)))
        self._retry_delay = float(config.get("mqtt_retry_delay", 10))
        self._publish_timeout = float(config.get("mqtt_publish_timeout", 10))

    @property
    def connected(self):
        return self._connected

    async def connect(self):
        """Connect and wait for the broker's CONNACK. Raises MqttError when every attempt fails."""
        self._loop = asyncio.get_running_loop()
        for attempt in range(1, self._connect_attempts + 1):
            self._connack = self._loop.create_future()
            try:
                await self._loop.run_in_executor(
                    None, self.client.connect, self._host, self._port, 60
                )
                self.client.loop_start()
                await asyncio.wait_for(self._connack, self._connect_timeout)
                log.info("Connected to MQTT broker at %s:%s", self._host, self._port)
                return
            except (OSError, MqttError, asyncio.TimeoutError) as exc:
                self.client.loop_stop()
                reason = str(exc) or "timed out waiting for CONNACK"
                if attempt == self._connect_attempts:
                    raise MqttError(
                        f"Could not connect to MQTT broker {self._host}:{self._port}: {reason}"
                    ) from exc
                log.error(
                    "MQTT connection failed (attempt %d/%d): %s, retrying in %ss",
                    attempt, self._connect_attempts, reason, self._retry_delay,
                )
                await asyncio.sleep(self._retry_delay)

    async def publish(self, topic, payload, qos=1, retain=False):
        """Publish and wait until paho reports the message as sent.

        Returns False (after logging) when the publish failed or timed out.
        """
        info = self.client.publish(topic, payload, qos=qos, retain=retain)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, info.wait_for_publish, self._publish_timeout)
        except (ValueError, RuntimeError) as exc:
            log.warning("MQTT publish to %s failed: %s", topic, exc)
            return False
        if not info.is_published():
            log.warning("MQTT publish to %s not confirmed within %ss", topic, self._publish_timeout)
            return False
        return True

    async def subscribe(self, topic_filter, callback, qos=1):
        """Register ``callback(topic, payload)`` and wait for the broker's SUBACK.

        The callback is dropped again when the subscription fails, so it is
        not renewed on reconnect.
        """
        if not self._connected:
            raise MqttError(f"Cannot subscribe to {topic_filter}: not connected")
        # Registered before SUBACK so retained messages that follow it are dispatched
        self._subscriptions[topic_filter] = (callback, qos)
        try:
            await self._request_subscribe(topic_filter, qos)
        except (MqttError, asyncio.CancelledError):
            self._subscriptions.pop(topic_filter, None)
            raise
        log.info("Subscribed to %s", topic_filter)

    async def _request_subscribe(self, topic_filter, qos):
        result, mid = self.client.subscribe(topic_filter, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MqttError(f"Subscribe to {topic_filter} failed: {mqtt.error_string(result)}")
        future = asyncio.get_running_loop().create_future()
        self._pending_subscribes[mid] = future
        try:
            reason_codes = await asyncio.wait_for(future, self._connect_timeout)
        except asyncio.TimeoutError:
            raise MqttError(f"Subscribe to {topic_filter} not acknowledged") from None
        finally:
            self._pending_subscribes.pop(mid, None)
        if any(code.is_failure for code in reason_codes):
            raise MqttError(f"Broker rejected subscription to {topic_filter}: {reason_codes}")

    def _on_message(self, client, userdata, msg):
        payload = msg.payload.decode("utf-8", errors="replace")
        if not self._loop:
            return
        for topic_filter, (callback, _qos) in list(self._subscriptions.items()):
            if mqtt.topic_matches_sub(topic_filter, msg.topic):
                asyncio.run_coroutine_threadsafe(
                    self._safe_callback(callback, msg.topic, payload),
                    self._loop,
                )

    @staticmethod
    async def _safe_callback(callback, topic, payload):
        try:
            await callback(topic, payload)
        except Exception:
            log.exception("Error in MQTT callback for %s", topic)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code == 0:
            self._connected = True
            log.info("MQTT connected")
            for topic_filter, (_callback, qos) in self._subscriptions.items():
                self.client.subscribe(topic_filter, qos=qos)
            self._loop.call_soon_threadsafe(self._resolve_connack, None)
        else:
            log.error("MQTT connect failed with reason code %s", reason_code)
            self._loop.call_soon_threadsafe(
                self._resolve_connack, MqttError(f"Broker refused connection: {reason_code}")
            )

    def _resolve_connack(self, error):
        if self._connack is None or self._connack.done():
            return
        if error is None:
            self._connack.set_result(True)
        else:
            self._connack.set_exception(error)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        self._loop.call_soon_threadsafe(self._resolve_subscribe, mid, reason_code_list)

    def _resolve_subscribe(self, mid, reason_code_list):
        future = self._pending_subscribes.get(mid)
        if future is not None and not future.done():
            future.set_result(reason_code_list)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self._connected = False
        if reason_code != 0:
            log.warning("MQTT unexpected disconnect (rc=%s), auto-reconnecting", reason_code)

    async def disconnect(self):
        # Allow pending publishes to drain
        await asyncio.sleep(0.5)
        self.client.disconnect()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.client.loop_stop)
