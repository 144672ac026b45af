class CecError(Exception):
    """The CEC adapter could not be opened or refused an operation."""


class MqttError(Exception):
    """The broker connection or a subscription could not be established."""


class MalformedRequestError(ValueError):
    """An inbound MQTT request payload does not have the expected shape."""
