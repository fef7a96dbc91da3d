import re
import pytest
from iot_hub.utils.helpers import (
    as_float, coerce_identifier, device_measurements, generate_client_id, node_display_name,
    node_measurements, parse_payload, topic_prefix
)


@pytest.mark.parametrize("raw,expected", [
    ({"a": 1}, {"a": 1}),
    ('{"a": 1}', {"a": 1}),
    (b'{"a": 1}', {"a": 1}),
    ("not json", None),
    ("[1, 2]", None),
    ("null", None),
    (b"\xff\xfe", None),
    (None, None),
    (42, None),
])
def test_parse_payload(raw, expected):
    assert parse_payload(raw) == expected


@pytest.mark.parametrize("pattern,prefix", [
    ("SensorData/#", "SensorData"),
    ("OTA/+/response", "OTA"),
    ("site/a/BLEGatewayData/#", "site/a/BLEGatewayData"),
    ("Exact/Topic", "Exact/Topic"),
])
def test_topic_prefix(pattern, prefix):
    assert topic_prefix(pattern) == prefix


def test_device_measurements_keep_everything_but_the_id():
    payload = {"device_id": "D1", "temperature": 1, "nested": {"x": [1, 2]}, "flag": None}
    assert device_measurements(payload) == {"temperature": 1, "nested": {"x": [1, 2]}, "flag": None}


def test_node_measurements_filter():
    payload = {"gateway_id": "GW", "mac": "AA", "temperature": 0, "humidity": None, "battery": 9}
    assert node_measurements(payload) == {"temperature": 0}


@pytest.mark.parametrize("name,expected", [
    ("Freezer", "Freezer"),
    ("  Freezer ", "Freezer"),
    ("   ", "AA:BB"),
    ("", "AA:BB"),
    (None, "AA:BB"),
    (12, "AA:BB"),
])
def test_node_display_name(name, expected):
    assert node_display_name(name, "AA:BB") == expected


@pytest.mark.parametrize("value,expected", [
    ("D1", "D1"),
    (" D1 ", "D1"),
    (7, "7"),
    ("", None),
    ("  ", None),
    (None, None),
    (True, None),
    ({"id": 1}, None),
])
def test_coerce_identifier(value, expected):
    assert coerce_identifier(value) == expected


def test_as_float():
    assert as_float("-70") == -70.0
    assert as_float(-70) == -70.0
    assert as_float("weak") is None
    assert as_float(None) is None


def test_client_id_format():
    first, second = generate_client_id(), generate_client_id()
    assert re.fullmatch(r"ws_\d{20}_\d{6}", first)
    assert first != second
