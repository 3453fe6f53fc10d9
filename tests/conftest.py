# tests/conftest.py
from datetime import datetime
from pathlib import Path

import numpy as np
import pytest
import requests

from alarm_recorder.alarm_reporter import AlarmReporter
from alarm_recorder.config_manager import load_config
from alarm_recorder.event_aggregator import EventAggregator
from alarm_recorder.segment_recorder import SegmentRecorder
from alarm_recorder.trigger_engine import TriggerEngine


FIXED_NOW = datetime(2024, 5, 1, 12, 30, 45)


def make_image(width: int = 64, height: int = 48, value: int = 0):
    return np.full((height, width, 3), value, dtype=np.uint8)


class FakeWriter:
    """Stands in for cv2.VideoWriter; touches the file on open like a real encoder."""

    def __init__(self, path, fourcc, fps, size, opened=True):
        self.path = path
        self.fourcc = fourcc
        self.fps = fps
        self.size = size
        self.frames = []
        self.released = False
        self._opened = opened
        if opened:
            Path(path).write_bytes(b"\x00" * 16)

    def isOpened(self):
        return self._opened

    def write(self, img):
        self.frames.append(img.shape)

    def release(self):
        self.released = True


class WriterFactory:
    def __init__(self, opened=True):
        self.opened = opened
        self.writers = []

    def __call__(self, path, fourcc, fps, size):
        writer = FakeWriter(path, fourcc, fps, size, opened=self.opened)
        self.writers.append(writer)
        return writer


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeResponse:
    def __init__(self, status_code=200, content=b"ok"):
        self.status_code = status_code
        self.content = content


class FakeSession:
    def __init__(self, status_code=200, exc=None, respond=True):
        self.status_code = status_code
        self.exc = exc
        self.respond = respond
        self.posts = []
        self.closed = False

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        if not self.respond:
            return None
        return FakeResponse(self.status_code)

    def close(self):
        self.closed = True


class SnapshotRecorder:
    """Snapshot writer that creates an empty file and remembers the path.

    With ``ok=False`` it behaves like a failed ``imwrite``: nothing is
    written and ``False`` is returned.
    """

    def __init__(self, ok=True):
        self.ok = ok
        self.paths = []

    def __call__(self, frame, path):
        if not self.ok:
            self.paths.append(path)
            return False
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        Path(path).write_bytes(b"jpg")
        self.paths.append(path)
        return True


class EngineHarness:
    def __init__(self, tmp_path, writer_opened=True, snapshot_ok=True, **overrides):
        raw = {
            "save_dir": str(tmp_path / "alarms"),
            "server_url": "http://alarm.local:8080/api/alarm",
            "base_file_url": "http://files.local/static",
            "record_seconds": 10,
            "deviceId": "cam-01",
        }
        raw.update(overrides)
        self.config = load_config(raw)
        self.clock = FakeClock()
        self.writers = WriterFactory(opened=writer_opened)
        self.session = FakeSession()
        self.snapshots = SnapshotRecorder(ok=snapshot_ok)
        self.recorder = SegmentRecorder(
            self.config.record_seconds,
            fourcc=self.config.fourcc,
            writer_factory=self.writers,
            clock=self.clock,
        )
        self.reporter = AlarmReporter(self.config, session=self.session)
        self.aggregator = EventAggregator(
            self.config.save_dir, self.reporter, snapshot_writer=self.snapshots
        )
        self.engine = TriggerEngine(
            self.config, self.recorder, self.aggregator, wall_clock=lambda: FIXED_NOW
        )


@pytest.fixture
def harness_factory(tmp_path):
    def _make(**kwargs):
        return EngineHarness(tmp_path, **kwargs)
    return _make


@pytest.fixture
def request_exception():
    return requests.ConnectionError("connection refused")
