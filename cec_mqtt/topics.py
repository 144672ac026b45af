import re

from .const import MESSAGE_PATTERN

_MESSAGE_RE = re.compile(MESSAGE_PATTERN)


def namespace(topic_prefix, subtopic):
    """Return ``subtopic`` under ``topic_prefix``, or verbatim when no prefix is set."""
    if topic_prefix and topic_prefix.strip():
        return f"{topic_prefix}/{subtopic}"
    return subtopic


def classify_message(message):
    """Split a raw CEC traffic line into (direction, hex bytes).

    Returns None for lines that are not ``>> aa:bb`` / ``<< aa:bb`` traffic.
    """
    match = _MESSAGE_RE.match(message)
    if match is None:
        return None
    return match.group(1), match.group(2)
