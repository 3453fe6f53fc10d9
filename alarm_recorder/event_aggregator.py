"""
event_aggregator.py — Buffer fire events per segment and flush them on close.

Several distinct classes may fire while one segment is open.  Each gets its
own snapshot and :class:`PendingEvent`, and all of them are reported with
the segment's single shared video once it closes.  When no segment could be
opened, events are reported immediately without a video (bypass mode).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Sequence

from .alarm_reporter import AlarmReporter
from .data_models import ChannelState, Frame, PendingEvent
from .json_logging import get_logger
from .segment_recorder import save_snapshot

SnapshotWriter = Callable[[Frame, str], bool]


def channel_dir(save_dir: str, channel: int) -> Path:
    return Path(save_dir) / f"ch_{channel}"


def base_path(save_dir: str, channel: int, timestr: str, resolved_type: int) -> str:
    """``<save_dir>/ch_<c>/<timestr>_type<t>`` without an extension."""
    return str(channel_dir(save_dir, channel) / f"{timestr}_type{resolved_type}")


def secondary_snapshot_path(
    save_dir: str, channel: int, timestr: str, class_id: int, resolved_type: int
) -> str:
    return str(channel_dir(save_dir, channel) / f"{timestr}_cls{class_id}_type{resolved_type}.jpg")


class EventAggregator:
    """Turns fire events into snapshots, pending events and alarm reports.

    Args:
        save_dir: Storage root.
        reporter: Alarm sink.
        snapshot_writer: ``(frame, path) -> bool``; defaults to
            :func:`~alarm_recorder.segment_recorder.save_snapshot`.
    """

    def __init__(
        self,
        save_dir: str,
        reporter: AlarmReporter,
        snapshot_writer: SnapshotWriter = save_snapshot,
    ) -> None:
        self._save_dir = save_dir
        self._reporter = reporter
        self._snapshot_writer = snapshot_writer
        self._log = get_logger("event_aggregator")

    # ------------------------------------------------------------------
    # Fire events
    # ------------------------------------------------------------------

    def report_bypass(
        self,
        channel: int,
        frame: Frame,
        classes: Sequence[int],
        base: str,
        resolved_type: int,
        datetime_str: str,
    ) -> None:
        """Report each class at once with one shared snapshot and no video."""
        img_path = base + ".jpg"
        self._snapshot_writer(frame, img_path)
        self._log.warning(
            "Writer unavailable; reporting without video",
            extra={"channel": channel, "classes": list(classes), "img_path": img_path},
        )
        for _ in classes:
            self._reporter.post_alarm(channel, img_path, "", datetime_str, resolved_type)

    def add_segment_events(
        self,
        channel: int,
        state: ChannelState,
        frame: Frame,
        classes: Sequence[int],
        timestr: str,
        resolved_type: int,
        datetime_str: str,
    ) -> None:
        """Buffer one pending event per newly-fired class.

        The first class to fire in a segment gets the primary snapshot name
        (matching the video's base name); every later class gets a
        ``_cls<id>`` name.
        """
        base = base_path(self._save_dir, channel, timestr, resolved_type)
        for class_id in classes:
            if not state.pending_events:
                img_path = base + ".jpg"
            else:
                img_path = secondary_snapshot_path(
                    self._save_dir, channel, timestr, class_id, resolved_type
                )
            self._snapshot_writer(frame, img_path)
            state.pending_events.append(
                PendingEvent(
                    class_id=class_id,
                    resolved_type=resolved_type,
                    snapshot_path=img_path,
                    datetime_str=datetime_str,
                )
            )
            state.suppressed_classes.add(class_id)

    # ------------------------------------------------------------------
    # Segment close
    # ------------------------------------------------------------------

    def flush(self, channel: int, state: ChannelState) -> int:
        """Report every buffered event with the shared video path.

        An empty segment's video is deleted instead.  Pending events and
        suppression are cleared either way.

        Returns:
            Number of events reported.
        """
        video_path = state.pending_video_path
        events = list(state.pending_events)
        try:
            if not events:
                self._remove_orphan_video(channel, video_path)
                return 0

            self._log.info(
                "Segment end",
                extra={
                    "channel": channel,
                    "video_path": video_path,
                    "events": len(events),
                    "detail": ",".join(str(ev) for ev in events),
                },
            )
            for ev in events:
                self._reporter.post_alarm(
                    channel, ev.snapshot_path, video_path, ev.datetime_str, ev.resolved_type
                )
                self._log.info(
                    "Posted event",
                    extra={
                        "channel": channel,
                        "class_id": ev.class_id,
                        "type": ev.resolved_type,
                        "img_path": ev.snapshot_path,
                    },
                )
            return len(events)
        finally:
            state.pending_events.clear()
            state.suppressed_classes.clear()

    def _remove_orphan_video(self, channel: int, video_path: str) -> None:
        if not video_path:
            return
        try:
            os.remove(video_path)
        except OSError as exc:
            self._log.warning(
                "Segment end (no events) remove failed",
                extra={"channel": channel, "video_path": video_path, "error": str(exc)},
            )
            return
        self._log.info(
            "Segment end (no events) removed video",
            extra={"channel": channel, "video_path": video_path},
        )
