"""
system_runner.py — Top-level orchestrator for the alarm recorder.

Builds every subsystem from one configuration file, wires them together and
manages graceful shutdown.  No recording logic lives here; it is glue.

Run
───
    alarm-recorder --config /etc/alarm/recorder.json

    # replay a file through channel 0 with per-frame detections
    alarm-recorder --config recorder.json \
                   --source clip.mp4 --detections clip.jsonl --channel 0

Each line of the detections file holds the detections of the frame with
the same index, e.g. ``[{"class_id": 2, "score": 0.91}]``.  Frames past the
last line get no detections.

Dependency graph
────────────────

    recorder.json
         │
         ▼
    load_config_file ──► RecorderConfig
                              │
         ┌────────────────────┼──────────────────────┐
         ▼                    ▼                      ▼
    SegmentRecorder     AlarmReporter      RetentionCleanupService
         │  ▲                 │                      ▲
         │  └─ OpenPathRegistry ─────────────────────┘
         ▼                    ▼
    TriggerEngine ◄──── EventAggregator
         ▲
    ChannelWorker ◄──── VideoCapture replay (optional)

Shutdown order
──────────────
1. Stop channel workers  → no more frames are processed
2. Release open writers  → unfinished segments are closed unreported
3. Stop retention        → sweeper thread exits
4. Close the HTTP session
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Iterator, List, Optional

import cv2  # type: ignore

from .alarm_reporter import AlarmReporter
from .channel_worker import ChannelWorker
from .config_manager import load_config_file
from .data_models import Detection, Frame
from .errors import ConfigError
from .event_aggregator import EventAggregator
from .json_logging import configure_logging, get_logger
from .retention import RetentionCleanupService
from .segment_recorder import OpenPathRegistry, SegmentRecorder
from .trigger_engine import TriggerEngine

log = get_logger("system_runner")


# ---------------------------------------------------------------------------
# Detection input
# ---------------------------------------------------------------------------

def parse_detections(raw: Any) -> List[Detection]:
    """Build detections from ``[{"class_id": 2, "score": 0.9}, ...]``.

    Entries that are not objects or lack an integer ``class_id`` are skipped.
    """
    detections: List[Detection] = []
    if not isinstance(raw, list):
        return detections
    for item in raw:
        if not isinstance(item, dict):
            continue
        class_id = item.get("class_id")
        if not isinstance(class_id, int) or isinstance(class_id, bool):
            continue
        score = item.get("score", 0.0)
        box = item.get("box")
        detections.append(
            Detection(
                class_id=class_id,
                score=float(score) if isinstance(score, (int, float)) else 0.0,
                box=tuple(box) if isinstance(box, list) and len(box) == 4 else None,
            )
        )
    return detections


def iter_detection_lines(path: Optional[str | Path]) -> Iterator[List[Detection]]:
    """Yield one detection list per line of a JSON-lines file, then ``[]`` forever."""
    if path is not None:
        with open(path, "r", encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    yield []
                    continue
                try:
                    yield parse_detections(json.loads(line))
                except json.JSONDecodeError as exc:
                    log.warning(
                        "Invalid detections line",
                        extra={"path": str(path), "line": lineno, "error": str(exc)},
                    )
                    yield []
    while True:
        yield []


# ---------------------------------------------------------------------------
# SystemRunner
# ---------------------------------------------------------------------------

class SystemRunner:
    """Owns the lifecycle of every subsystem and wires them together.

    Construction is separated from startup so that the object can be
    inspected or tested before any threads are launched.

    Args:
        config_path: Path to the recorder JSON configuration.
        source: Optional video file to replay through ``channel``.
        detections_path: JSON-lines detections paired with ``source``.
        channel: Channel id assigned to the replayed source.
        log_level: Overrides the configured ``log_level`` when given.
        session: HTTP session handed to the :class:`AlarmReporter`.
        writer_factory: Encoder factory handed to the :class:`SegmentRecorder`.

    Raises:
        SystemExit: With code 1 if the configuration cannot be loaded.
    """

    def __init__(
        self,
        config_path: str | Path,
        source: Optional[str] = None,
        detections_path: Optional[str] = None,
        channel: int = 0,
        log_level: Optional[str] = None,
        session: Optional[Any] = None,
        writer_factory: Optional[Any] = None,
    ) -> None:
        self._source = source
        self._detections_path = detections_path
        self._channel = channel
        self._shutdown_event = threading.Event()

        # ── 1. Configuration ─────────────────────────────────────────────
        configure_logging(log_level or "INFO")
        log.info("Loading configuration", extra={"config_path": str(config_path)})
        try:
            self._config = load_config_file(config_path)
        except ConfigError as exc:
            log.error("Failed to load configuration", extra={"error": str(exc)})
            sys.exit(1)
        configure_logging(log_level or self._config.log_level)

        try:
            Path(self._config.save_dir).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            log.warning(
                "Cannot create save_dir",
                extra={"save_dir": self._config.save_dir, "error": str(exc)},
            )

        # ── 2. Recording pipeline ────────────────────────────────────────
        self._open_paths = OpenPathRegistry()
        self._recorder = SegmentRecorder(
            record_seconds=self._config.record_seconds,
            fourcc=self._config.fourcc,
            open_paths=self._open_paths,
            writer_factory=writer_factory,
        )
        self._reporter = AlarmReporter(self._config, session=session)
        if not self._reporter.enabled:
            log.warning("No alarm endpoint configured; alarms will not be sent")
        self._aggregator = EventAggregator(self._config.save_dir, self._reporter)
        self._engine = TriggerEngine(self._config, self._recorder, self._aggregator)

        # ── 3. Retention ──────────────────────────────────────────────────
        self._retention = RetentionCleanupService(
            self._config.save_dir,
            self._config.retention,
            open_paths=self._open_paths,
        )

        self._workers: List[ChannelWorker] = []

    @property
    def config(self):
        return self._config

    @property
    def engine(self) -> TriggerEngine:
        return self._engine

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Start all subsystems and block until done.

        With a replay source this returns once the file has been consumed;
        otherwise it blocks until :meth:`shutdown` is called.
        """
        log.info(
            "Starting all subsystems",
            extra={"save_dir": self._config.save_dir, "source": self._source},
        )
        self._retention.start()

        try:
            if self._source:
                self._replay(self._source)
            else:
                log.info("No source given; running retention only")
                self._shutdown_event.wait()
                log.info("Shutdown event received; beginning ordered teardown")
        finally:
            self._teardown()

    def shutdown(self) -> None:
        """Signal :meth:`run` to begin an ordered teardown.

        Safe to call from a signal handler, another thread, or a test.
        Idempotent.
        """
        self._shutdown_event.set()

    def _replay(self, source: str) -> None:
        """Feed every frame of ``source`` through one channel worker."""
        cap = cv2.VideoCapture(source)
        if not cap.isOpened():
            log.error("Cannot open source", extra={"source": source})
            return

        fps = cap.get(cv2.CAP_PROP_FPS)
        frame_rate = (int(round(fps)), 1) if fps and fps > 0 else None
        worker = ChannelWorker(self._channel, self._engine)
        self._workers.append(worker)
        worker.start()

        frames = 0
        detections = iter_detection_lines(self._detections_path)
        try:
            while not self._shutdown_event.is_set():
                ok, img = cap.read()
                if not ok:
                    break
                worker.submit(
                    Frame(channel_id=self._channel, image=img, frame_rate=frame_rate),
                    next(detections),
                    block=True,
                )
                frames += 1
        finally:
            cap.release()
            detections.close()

        worker.submit(Frame(channel_id=self._channel, end_of_stream=True), [], block=True)
        log.info("Replay finished", extra={"source": source, "frames": frames})
        worker.stop(drain=not self._shutdown_event.is_set())

    # ------------------------------------------------------------------
    # Ordered teardown
    # ------------------------------------------------------------------

    def _teardown(self) -> None:
        """Stop every subsystem in dependency order."""
        for worker in self._workers:
            log.info("Stopping ChannelWorker", extra={"channel": worker.channel})
            try:
                worker.stop()
            except Exception as exc:  # noqa: BLE001
                log.error("Error stopping ChannelWorker", extra={"error": str(exc)})

        self._engine.release_all()

        log.info("Stopping RetentionCleanupService")
        try:
            self._retention.stop()
        except Exception as exc:  # noqa: BLE001
            log.error("Error stopping RetentionCleanupService", extra={"error": str(exc)})

        self._reporter.close()
        log.info("Teardown complete")


# ---------------------------------------------------------------------------
# Signal handling
# ---------------------------------------------------------------------------

def _install_signal_handlers(runner: SystemRunner) -> None:
    """Register SIGINT and SIGTERM handlers that trigger graceful shutdown."""
    def _handler(signum: int, _frame: Any) -> None:
        log.info(
            "Signal received; initiating graceful shutdown",
            extra={"signal": signal.Signals(signum).name},
        )
        runner.shutdown()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


# ---------------------------------------------------------------------------
# CLI entry-point
# ---------------------------------------------------------------------------

def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="alarm-recorder",
        description="Event-triggered video recorder and alarm reporter",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--config",
        required=True,
        help="Path to the recorder JSON configuration file.",
    )
    parser.add_argument(
        "--source",
        default=None,
        help="Video file to replay through the recorder.",
    )
    parser.add_argument(
        "--detections",
        default=None,
        help="JSON-lines file with one detection list per frame of --source.",
    )
    parser.add_argument(
        "--channel",
        type=int,
        default=0,
        help="Channel id assigned to --source.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        dest="log_level",
        help="Log level; overrides the configured log_level.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    """Parse arguments, build the runner, install signal handlers, and run.

    Exits with code 0 on clean shutdown and code 1 on startup failure.
    """
    args = _parse_args(argv)

    runner = SystemRunner(
        config_path=args.config,
        source=args.source,
        detections_path=args.detections,
        channel=args.channel,
        log_level=args.log_level,
    )

    _install_signal_handlers(runner)

    # run() blocks until the replay ends or shutdown() is called.
    runner.run()
    sys.exit(0)


if __name__ == "__main__":
    main()
