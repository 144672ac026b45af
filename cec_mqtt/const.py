OPTIONS_PATH = "/data/options.json"

DEFAULTS = {
    "cec_port": "/dev/ttyACM0",
    "cec_device_name": "cec-mqtt",
    "cec_client_path": "cec-client",
    "cec_log_level": 12,  # notice + traffic
    "cec_open_timeout": 30,
    "cec_scan_timeout": 30,
    "mqtt_broker": "tcp://localhost:1883",
    "mqtt_user": "",
    "mqtt_pass": "",
    "mqtt_client_id": "cec_mqtt",
    "mqtt_connect_timeout": 10,
    "mqtt_connect_attempts": 1,
    "mqtt_retry_delay": 10,
    "mqtt_publish_timeout": 10,
    "topic_prefix": "",
    "log_only": False,
    "debug_logging": False,
}

# Capacity of each CEC event queue handed to a forwarding loop
EVENT_QUEUE_SIZE = 10

# CEC follower safety timeout: a held key with no repeat inside this window
# (seconds) counts as released
KEY_RELEASE_TIMEOUT = 0.55

# Subtopics, namespaced with the configured prefix at publish/subscribe time
TOPIC_SOURCE_ACTIVE = "cec/source/{address}/active"
TOPIC_SOURCE_NAME = "cec/source/{address}/name"
TOPIC_SOURCE_POWER = "cec/source/{address}/power"
TOPIC_COMMAND_RX = "cec/command/rx"
TOPIC_COMMAND_TX = "cec/command/tx"
TOPIC_KEY = "cec/key"
TOPIC_KEY_SEND = "cec/key/send"
TOPIC_MESSAGE = "cec/message"
TOPIC_MESSAGE_HEX_RX = "cec/message/hex/rx"
TOPIC_MESSAGE_HEX_TX = "cec/message/hex/tx"
TOPIC_BRIDGE_STATUS = "cec/bridge/status"

# ">> 10:8f" / "<< 04" at the start of a traffic line
MESSAGE_PATTERN = r"^(>>|<<)\s([0-9A-Fa-f]{2}(?::[0-9A-Fa-f]{2})*)"

DIRECTION_TX = ">>"
DIRECTION_RX = "<<"
