# tests/test_10_config.py
import json

import pytest
import pytz

from alarm_recorder.config_manager import (
    BYTES_PER_GB,
    ClassMapType,
    DefaultType,
    DetectedClassType,
    FixedType,
    load_config,
    load_config_file,
    parse_server_url,
)
from alarm_recorder.errors import ConfigError


def test_defaults_with_only_save_dir(tmp_path):
    cfg = load_config({"save_dir": str(tmp_path)})

    assert cfg.save_dir == str(tmp_path)
    assert cfg.endpoint is None
    assert cfg.record_seconds == 10
    assert cfg.trigger_classes == frozenset()
    assert cfg.threshold_for(3) == 1
    assert cfg.retention.enabled is False
    assert cfg.retention.poll_interval_sec == 300
    assert isinstance(cfg.type_policy, DefaultType)
    assert cfg.video_url_field == "safetyUrl"
    assert cfg.fourcc == "mp4v"
    assert cfg.timezone is None


def test_nested_configure_block_is_unwrapped(tmp_path):
    cfg = load_config({
        "configure": {
            "save_dir": str(tmp_path),
            "server_url": "http://10.0.0.5:8080/api/alarm",
            "deviceId": "cam-7",
        }
    })

    assert cfg.report.device_id == "cam-7"
    assert cfg.endpoint.port == 8080


def test_missing_save_dir_is_fatal():
    with pytest.raises(ConfigError, match="save_dir"):
        load_config({"server_url": "http://h/x"})


def test_wrong_value_type_names_the_key(tmp_path):
    with pytest.raises(ConfigError, match="record_seconds"):
        load_config({"save_dir": str(tmp_path), "record_seconds": "10"})


def test_limits_are_clamped(tmp_path):
    cfg = load_config({
        "save_dir": str(tmp_path),
        "record_seconds": 0,
        "cleanup_interval_seconds": 5,
        "retention_days": -3,
        "retention_max_gb": 2,
        "min_trigger_frames": {"0": 0, "x": 3, "2": 4},
        "trigger_classes": [0, "1", 2, True],
    })

    assert cfg.record_seconds == 1
    assert cfg.retention.poll_interval_sec == 30
    assert cfg.retention.max_age_days == 0
    assert cfg.retention.max_total_bytes == 2 * BYTES_PER_GB
    assert cfg.per_class_min_trigger_frames == {0: 1, 2: 4}
    assert cfg.threshold_for(2) == 4
    assert cfg.threshold_for(9) == 1
    assert cfg.trigger_classes == frozenset({0, 2})


def test_global_min_trigger_frames(tmp_path):
    cfg = load_config({"save_dir": str(tmp_path), "min_trigger_frames": 5})
    assert cfg.threshold_for(0) == 5
    assert cfg.threshold_for(42) == 5


@pytest.mark.parametrize(
    "raw_type, expected",
    [
        (7, FixedType(7)),
        ("class_id", DetectedClassType()),
        ("classid", DetectedClassType()),
        ("label", DetectedClassType()),
        ({"0": 10, "1": 2}, ClassMapType({0: 10, 1: 2})),
        ({}, DefaultType()),
        ("something", DefaultType()),
        ([1, 2], DefaultType()),
    ],
)
def test_type_policy_variants(tmp_path, raw_type, expected):
    cfg = load_config({"save_dir": str(tmp_path), "type": raw_type})
    assert cfg.type_policy == expected


def test_unknown_video_url_field_falls_back(tmp_path):
    cfg = load_config({"save_dir": str(tmp_path), "video_url_field": "fooUrl"})
    assert cfg.video_url_field == "safetyUrl"

    cfg = load_config({"save_dir": str(tmp_path), "video_url_field": "brakeUrl"})
    assert cfg.video_url_field == "brakeUrl"


def test_fourcc_must_be_four_chars(tmp_path):
    with pytest.raises(ConfigError, match="fourcc"):
        load_config({"save_dir": str(tmp_path), "fourcc": "h26"})


def test_http_timeout_must_be_positive(tmp_path):
    with pytest.raises(ConfigError, match="http_timeout_sec"):
        load_config({"save_dir": str(tmp_path), "http_timeout_sec": 0})


def test_timezone_resolution(tmp_path):
    cfg = load_config({"save_dir": str(tmp_path), "timezone": "Asia/Shanghai"})
    assert cfg.timezone.zone == "Asia/Shanghai"

    cfg = load_config({"save_dir": str(tmp_path), "timezone": "Mars/Olympus_Mons"})
    assert cfg.timezone is pytz.utc


def test_unparsable_server_url_disables_alarms(tmp_path):
    cfg = load_config({"save_dir": str(tmp_path), "server_url": "alarm.local/api"})
    assert cfg.server_url == "alarm.local/api"
    assert cfg.endpoint is None


def test_load_config_file(tmp_path):
    path = tmp_path / "recorder.json"
    path.write_text(json.dumps({"save_dir": str(tmp_path / "media"), "record_seconds": 4}))

    cfg = load_config_file(path)
    assert cfg.record_seconds == 4


def test_load_config_file_errors(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config_file(tmp_path / "missing.json")

    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(ConfigError, match="Invalid JSON"):
        load_config_file(bad)

    not_utf8 = tmp_path / "latin.json"
    not_utf8.write_bytes(b'{"save_dir": "\xff\xfe"}')
    with pytest.raises(ConfigError, match="Cannot read"):
        load_config_file(not_utf8)

    not_object = tmp_path / "list.json"
    not_object.write_text("[1, 2]")
    with pytest.raises(ConfigError):
        load_config_file(not_object)


@pytest.mark.parametrize(
    "url, scheme, host, port, path",
    [
        ("http://10.0.0.5/api/alarm", "http", "10.0.0.5", 80, "/api/alarm"),
        ("https://alarm.example.com/x", "https", "alarm.example.com", 443, "/x"),
        ("http://h:8080/a/b?c=1", "http", "h", 8080, "/a/b?c=1"),
        ("https://h:9443/", "https", "h", 9443, "/"),
    ],
)
def test_parse_server_url(url, scheme, host, port, path):
    ep = parse_server_url(url)
    assert (ep.scheme, ep.host, ep.port, ep.path) == (scheme, host, port, path)


@pytest.mark.parametrize(
    "url",
    ["", "http://h", "http://h:8080", "ftp://h/x", "h/x", "http:///x", "http://h:port/x"],
)
def test_parse_server_url_rejects(url):
    assert parse_server_url(url) is None


def test_endpoint_url_includes_port():
    assert parse_server_url("http://h/api").url == "http://h:80/api"
