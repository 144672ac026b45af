"""Tests for topic namespacing and raw message classification."""

import pytest

from cec_mqtt.topics import classify_message, namespace


class TestNamespace:
    def test_empty_prefix_returns_subtopic(self):
        assert namespace("", "cec/key") == "cec/key"

    def test_prefix_is_joined_with_slash(self):
        assert namespace("home/tv", "cec/key") == "home/tv/cec/key"

    def test_whitespace_prefix_is_ignored(self):
        assert namespace("  ", "x") == "x"

    def test_none_prefix_is_ignored(self):
        assert namespace(None, "cec/message") == "cec/message"


class TestClassifyMessage:
    def test_outbound_frame(self):
        assert classify_message(">> 10:8F") == (">>", "10:8F")

    def test_inbound_single_octet(self):
        assert classify_message("<< 04") == ("<<", "04")

    def test_trailing_text_is_not_captured(self):
        assert classify_message("<< 0f:87:00:e0:91 (vendor id)") == ("<<", "0f:87:00:e0:91")

    @pytest.mark.parametrize(
        "message",
        [
            "hello world",
            ">>10:8F",
            ">> 1",
            "TRAFFIC: [ 1234]\t>> 10:8F",
            "<<  10:8F",
        ],
    )
    def test_non_traffic_lines_do_not_match(self, message):
        assert classify_message(message) is None
