import re
from dataclasses import dataclass

from .const import DIRECTION_RX, KEY_RELEASE_TIMEOUT
from .exceptions import CecError

LOGICAL_ADDRESS_NAMES = {
    0x0: "TV",
    0x1: "Recorder 1",
    0x2: "Recorder 2",
    0x3: "Tuner 1",
    0x4: "Playback 1",
    0x5: "Audio",
    0x6: "Tuner 2",
    0x7: "Tuner 3",
    0x8: "Playback 2",
    0x9: "Recorder 3",
    0xA: "Tuner 4",
    0xB: "Playback 3",
    0xC: "Reserved 1",
    0xD: "Reserved 2",
    0xE: "Free use",
    0xF: "Broadcast",
}

OPCODE_NAMES = {
    0x00: "feature abort",
    0x04: "image view on",
    0x0D: "text view on",
    0x32: "set menu language",
    0x36: "standby",
    0x44: "user control pressed",
    0x45: "user control released",
    0x46: "give osd name",
    0x47: "set osd name",
    0x70: "system audio mode request",
    0x71: "give audio status",
    0x72: "set system audio mode",
    0x7A: "report audio status",
    0x7D: "give system audio mode status",
    0x7E: "system audio mode status",
    0x80: "routing change",
    0x81: "routing information",
    0x82: "active source",
    0x83: "give physical address",
    0x84: "report physical address",
    0x85: "request active source",
    0x86: "set stream path",
    0x87: "device vendor id",
    0x89: "vendor command",
    0x8A: "vendor remote button down",
    0x8B: "vendor remote button up",
    0x8C: "give device vendor id",
    0x8D: "menu request",
    0x8E: "menu status",
    0x8F: "give device power status",
    0x90: "report power status",
    0x91: "get menu language",
    0x9D: "inactive source",
    0x9E: "cec version",
    0x9F: "get cec version",
    0xA0: "vendor command with id",
    0xFF: "abort",
}

OPCODE_USER_CONTROL_PRESSED = 0x44
OPCODE_USER_CONTROL_RELEASED = 0x45
OPCODE_ACTIVE_SOURCE = 0x82
OPCODE_INACTIVE_SOURCE = 0x9D

# User control codes accepted by name on cec/key/send
KEY_CODES = {
    "select": 0x00,
    "up": 0x01,
    "down": 0x02,
    "left": 0x03,
    "right": 0x04,
    "right_up": 0x05,
    "right_down": 0x06,
    "left_up": 0x07,
    "left_down": 0x08,
    "root_menu": 0x09,
    "setup_menu": 0x0A,
    "contents_menu": 0x0B,
    "favorite_menu": 0x0C,
    "exit": 0x0D,
    "top_menu": 0x10,
    "dvd_menu": 0x11,
    "number_entry_mode": 0x1D,
    "number11": 0x1E,
    "number12": 0x1F,
    "number0": 0x20,
    "number1": 0x21,
    "number2": 0x22,
    "number3": 0x23,
    "number4": 0x24,
    "number5": 0x25,
    "number6": 0x26,
    "number7": 0x27,
    "number8": 0x28,
    "number9": 0x29,
    "dot": 0x2A,
    "enter": 0x2B,
    "clear": 0x2C,
    "next_favorite": 0x2F,
    "channel_up": 0x30,
    "channel_down": 0x31,
    "previous_channel": 0x32,
    "sound_select": 0x33,
    "input_select": 0x34,
    "display_information": 0x35,
    "help": 0x36,
    "page_up": 0x37,
    "page_down": 0x38,
    "power": 0x40,
    "volume_up": 0x41,
    "volume_down": 0x42,
    "mute": 0x43,
    "play": 0x44,
    "stop": 0x45,
    "pause": 0x46,
    "record": 0x47,
    "rewind": 0x48,
    "fast_forward": 0x49,
    "eject": 0x4A,
    "forward": 0x4B,
    "backward": 0x4C,
    "stop_record": 0x4D,
    "pause_record": 0x4E,
    "angle": 0x50,
    "sub_picture": 0x51,
    "video_on_demand": 0x52,
    "electronic_program_guide": 0x53,
    "timer_programming": 0x54,
    "initial_configuration": 0x55,
    "select_broadcast_type": 0x56,
    "select_sound_presentation": 0x57,
    "play_function": 0x60,
    "pause_play_function": 0x61,
    "record_function": 0x62,
    "pause_record_function": 0x63,
    "stop_function": 0x64,
    "mute_function": 0x65,
    "restore_volume_function": 0x66,
    "tune_function": 0x67,
    "select_media_function": 0x68,
    "select_av_input_function": 0x69,
    "select_audio_input_function": 0x6A,
    "power_toggle_function": 0x6B,
    "power_off_function": 0x6C,
    "power_on_function": 0x6D,
    "f1_blue": 0x71,
    "f2_red": 0x72,
    "f3_green": 0x73,
    "f4_yellow": 0x74,
    "f5": 0x75,
    "data": 0x76,
}

MAX_FRAME_LENGTH = 16

# "TRAFFIC: [          1234]\t<< 10:8f"
LOG_LINE_RE = re.compile(r"^(ERROR|WARNING|NOTICE|TRAFFIC|DEBUG|LOG):\s+\[\s*\d+\]\s+(.*)$")
TRAFFIC_RE = re.compile(r"^(>>|<<)\s+([0-9A-Fa-f]{2}(?::[0-9A-Fa-f]{2})*)\s*$")
OCTETS_RE = re.compile(r"^[0-9A-Fa-f]{2}(?::[0-9A-Fa-f]{2})*$")
OWN_ADDRESS_RE = re.compile(r"logical address\(es\) = .*?\(([0-9A-Fa-f])\)")
DEVICE_HEADER_RE = re.compile(r"^device #([0-9A-Fa-f]+):\s*(.*)$")


@dataclass(frozen=True)
class DeviceInfo:
    logical_address: int
    active_source: bool
    osd_name: str
    physical_address: str
    power_status: str
    vendor: str


@dataclass(frozen=True)
class CecFrame:
    direction: str
    initiator: int
    destination: int
    opcode: int | None
    parameters: bytes

    @property
    def inbound(self):
        return self.direction == DIRECTION_RX


@dataclass(frozen=True)
class CecCommand:
    initiator: int
    destination: int
    opcode: int
    parameters: bytes

    @property
    def command_string(self):
        """Human readable rendering, e.g. ``Playback 1 (4) -> TV (0): active source (82) 10:00``."""
        text = (
            f"{address_name(self.initiator)} ({self.initiator:X}) -> "
            f"{address_name(self.destination)} ({self.destination:X}): "
            f"{OPCODE_NAMES.get(self.opcode, 'unknown')} ({self.opcode:02X})"
        )
        if self.parameters:
            text += " " + ":".join(f"{b:02X}" for b in self.parameters)
        return text


@dataclass(frozen=True)
class KeyPress:
    key_code: int
    duration: int  # 0 on the initial press, milliseconds held afterwards


@dataclass(frozen=True)
class SourceActivation:
    logical_address: int
    state: bool


def address_name(address):
    return LOGICAL_ADDRESS_NAMES.get(address, "Unknown")


class CecProtocol:
    """
    Text protocol spoken with libCEC's cec-client.
    Parses its log and scan output and builds the commands written to its stdin.
    """

    # --- Output parsing ---

    @staticmethod
    def parse_log_line(line):
        """Return the message text of a ``LEVEL: [ts] text`` line, or None."""
        match = LOG_LINE_RE.match(line.strip())
        if match is None:
            return None
        return match.group(2)

    @staticmethod
    def parse_frame(message):
        """Decode ``<< 4f:82:10:00`` into a CecFrame, or None for non-traffic text."""
        match = TRAFFIC_RE.match(message.strip())
        if match is None:
            return None
        octets = bytes(int(part, 16) for part in match.group(2).split(":"))
        return CecFrame(
            direction=match.group(1),
            initiator=octets[0] >> 4,
            destination=octets[0] & 0x0F,
            opcode=octets[1] if len(octets) > 1 else None,
            parameters=octets[2:],
        )

    @staticmethod
    def parse_own_address(message):
        match = OWN_ADDRESS_RE.search(message)
        if match is None:
            return None
        return int(match.group(1), 16)

    @staticmethod
    def parse_scan(lines):
        """Parse the ``CEC bus information`` block printed by ``scan``.

        Returns a dict of device name -> DeviceInfo.
        """
        devices = {}
        current = None

        def _flush():
            if current is None:
                return
            devices[current["key"]] = DeviceInfo(
                logical_address=current["logical_address"],
                active_source=current.get("active source", "no") == "yes",
                osd_name=current.get("osd string", ""),
                physical_address=current.get("address", ""),
                power_status=current.get("power status", "unknown"),
                vendor=current.get("vendor", ""),
            )

        for raw in lines:
            line = raw.strip()
            header = DEVICE_HEADER_RE.match(line)
            if header:
                _flush()
                current = {
                    "key": header.group(2) or f"device {header.group(1)}",
                    "logical_address": int(header.group(1), 16),
                }
                continue
            if current is None or ":" not in line:
                continue
            field, value = line.split(":", 1)
            current[field.strip().lower()] = value.strip()
        _flush()
        return devices

    # --- Commands ---

    @staticmethod
    def build_transmit(command):
        """Validate a ``10:8F`` style frame and return the cec-client ``tx`` line."""
        text = (command or "").strip()
        if not OCTETS_RE.match(text):
            raise CecError(f"Invalid CEC command: {command!r}")
        if len(text.split(":")) > MAX_FRAME_LENGTH:
            raise CecError(f"CEC command longer than {MAX_FRAME_LENGTH} bytes: {command!r}")
        return f"tx {text.upper()}"

    @staticmethod
    def build_key_press(own_address, address, key_code):
        header = ((own_address & 0x0F) << 4) | (address & 0x0F)
        return f"tx {header:02X}:{OPCODE_USER_CONTROL_PRESSED:02X}:{key_code:02X}"

    @staticmethod
    def build_key_release(own_address, address):
        header = ((own_address & 0x0F) << 4) | (address & 0x0F)
        return f"tx {header:02X}:{OPCODE_USER_CONTROL_RELEASED:02X}"

    @staticmethod
    def parse_key(key):
        """Resolve a key token (``0x41``, ``65`` or ``volume_up``) to a user control code."""
        token = str(key).strip().lower()
        try:
            if token.startswith("0x"):
                code = int(token, 16)
            elif token.isdigit():
                code = int(token)
            else:
                code = KEY_CODES[token]
        except (KeyError, ValueError):
            raise CecError(f"Unknown CEC key: {key!r}") from None
        if not 0 <= code <= 0xFF:
            raise CecError(f"CEC key code out of range: {key!r}")
        return code


class KeyPressTracker:
    """Turns User Control Pressed/Released frames into KeyPress events.

    The first press of a key reports duration 0; repeats while the key is held
    and the final release report the held time in milliseconds (at least 1).
    A press arriving more than ``release_timeout`` seconds after the previous
    one starts a new press, since the release frame was lost.
    """

    def __init__(self, clock, release_timeout=KEY_RELEASE_TIMEOUT):
        self._clock = clock
        self._release_timeout = release_timeout
        self._held_key = None
        self._held_since = 0.0
        self._last_press = 0.0

    def _held_ms(self):
        return max(1, int((self._clock() - self._held_since) * 1000))

    def pressed(self, key_code):
        now = self._clock()
        repeat = self._held_key == key_code and now - self._last_press <= self._release_timeout
        self._last_press = now
        if repeat:
            return KeyPress(key_code, self._held_ms())
        self._held_key = key_code
        self._held_since = now
        return KeyPress(key_code, 0)

    def released(self):
        if self._held_key is None:
            return None
        event = KeyPress(self._held_key, self._held_ms())
        self._held_key = None
        return event


class SourceTracker:
    """Follows Active Source / Inactive Source frames on the bus."""

    def __init__(self):
        self.active = None

    def activated(self, address):
        events = []
        if self.active is not None and self.active != address:
            events.append(SourceActivation(self.active, False))
        self.active = address
        events.append(SourceActivation(address, True))
        return events

    def deactivated(self, address):
        if self.active == address:
            self.active = None
        return [SourceActivation(address, False)]
