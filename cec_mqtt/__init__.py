"""Bridge between an HDMI-CEC bus and an MQTT broker."""
