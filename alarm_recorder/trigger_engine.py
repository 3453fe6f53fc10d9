"""
trigger_engine.py — Per-channel trigger state machine and frame driver.

Every inbound ``(frame, detections)`` pair goes through
:meth:`TriggerEngine.process_frame`:

    ┌──────────────────────────────────────────────────────────────────┐
    │  1. candidate classes = detected ids ∩ filter (or all valid ids) │
    │  2. candidates → bump streaks, collect first-time threshold hits │
    │     that are not suppressed; reset in-scope classes that missed  │
    │  3. no candidates → reset every in-scope streak                  │
    │  4. newly fired → open segment (or bypass) and buffer events     │
    │  5. recording → append frame; deadline reached → close + flush   │
    └──────────────────────────────────────────────────────────────────┘

Segment deadlines are fixed when the segment opens.  A class that fired
stays suppressed until the segment closes, however long its streak runs.

Thread-safety contract
──────────────────────
The registry lock is held only to look up or create a channel's state.
Each channel is fed by exactly one worker, so its state needs no further
locking.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from .config_manager import RecorderConfig
from .data_models import ChannelState, Detection, Frame
from .errors import WriterOpenError
from .event_aggregator import EventAggregator, base_path
from .json_logging import get_logger
from .segment_recorder import SegmentRecorder
from .type_resolver import resolve_type

log = get_logger("trigger")


# ---------------------------------------------------------------------------
# Channel registry
# ---------------------------------------------------------------------------

class ChannelRegistry:
    """Lock-guarded ``channel id → ChannelState`` map, created on first use."""

    def __init__(self) -> None:
        self._channels: Dict[int, ChannelState] = {}
        self._lock = threading.Lock()

    def get(self, channel: int) -> ChannelState:
        with self._lock:
            state = self._channels.get(channel)
            if state is None:
                state = ChannelState()
                self._channels[channel] = state
                log.debug("Channel state created", extra={"channel": channel})
            return state

    def items(self) -> List[tuple[int, ChannelState]]:
        with self._lock:
            return list(self._channels.items())

    def __contains__(self, channel: object) -> bool:
        with self._lock:
            return channel in self._channels

    def __len__(self) -> int:
        with self._lock:
            return len(self._channels)


# ---------------------------------------------------------------------------
# Pure streak logic (no side-effects, fully unit-testable)
# ---------------------------------------------------------------------------

def candidate_classes(
    detections: Iterable[Optional[Detection]],
    trigger_classes: Set[int] | frozenset,
) -> List[int]:
    """Distinct in-scope class ids of a frame, in first-seen order."""
    seen: List[int] = []
    for det in detections:
        if det is None or det.class_id < 0:
            continue
        if trigger_classes and det.class_id not in trigger_classes:
            continue
        if det.class_id not in seen:
            seen.append(det.class_id)
    return seen


def update_streaks(
    counts: Dict[int, int],
    candidates: Sequence[int],
    trigger_classes: Set[int] | frozenset,
    threshold_for: Callable[[int], int],
    suppressed: Set[int],
) -> List[int]:
    """Advance the per-class streak counters for one frame.

    Args:
        counts: Per-class consecutive-frame counters, updated in place.
        candidates: In-scope class ids seen on this frame.
        trigger_classes: Configured filter; empty means every class.
        threshold_for: Threshold lookup per class id.
        suppressed: Classes that already fired in the current segment.

    Returns:
        Classes whose streak reached their threshold on this frame for the
        first time and that are not suppressed, in candidate order.
    """
    if not candidates:
        if trigger_classes:
            for class_id in trigger_classes:
                counts[class_id] = 0
        else:
            counts.clear()
        return []

    fired: List[int] = []
    for class_id in candidates:
        prev = counts.get(class_id, 0)
        counts[class_id] = prev + 1
        need = threshold_for(class_id)
        if counts[class_id] >= need and prev < need and class_id not in suppressed:
            fired.append(class_id)

    present = set(candidates)
    for class_id in list(counts):
        in_scope = not trigger_classes or class_id in trigger_classes
        if in_scope and class_id not in present:
            counts[class_id] = 0
    return fired


# ---------------------------------------------------------------------------
# TriggerEngine
# ---------------------------------------------------------------------------

class TriggerEngine:
    """Drives segment recording and event reporting from detections.

    Args:
        config: Validated recorder configuration.
        recorder: Segment encoder lifecycle owner.
        aggregator: Snapshot / pending-event / report handler.
        registry: Channel state map; a fresh one is created when omitted.
        wall_clock: Returns the current local :class:`datetime` used for
            file names and report timestamps.  Defaults to ``datetime.now``
            in the configured timezone.
    """

    def __init__(
        self,
        config: RecorderConfig,
        recorder: SegmentRecorder,
        aggregator: EventAggregator,
        registry: Optional[ChannelRegistry] = None,
        wall_clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config
        self._recorder = recorder
        self._aggregator = aggregator
        self._registry = registry if registry is not None else ChannelRegistry()
        self._wall_clock = wall_clock or (lambda: datetime.now(config.timezone))

    @property
    def registry(self) -> ChannelRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Per-frame entry point
    # ------------------------------------------------------------------

    def process_frame(self, frame: Frame, detections: Sequence[Optional[Detection]]) -> List[int]:
        """Consume one frame of one channel.

        Returns:
            The classes that fired on this frame (empty for most frames).
        """
        if frame.end_of_stream or frame.best_image() is None:
            log.debug(
                "Skipping frame without image data",
                extra={"channel": frame.channel_id, "end_of_stream": frame.end_of_stream},
            )
            return []

        channel = frame.channel_id
        state = self._registry.get(channel)

        candidates = candidate_classes(detections, self._config.trigger_classes)
        fired = update_streaks(
            state.consecutive_counts,
            candidates,
            self._config.trigger_classes,
            self._config.threshold_for,
            state.suppressed_classes,
        )

        if fired:
            self._on_fire(channel, state, frame, detections, fired)

        if state.recording:
            self._recorder.append(state, frame)
            if self._recorder.is_expired(state):
                self.close_segment(channel, state)

        return fired

    # ------------------------------------------------------------------
    # Segment transitions
    # ------------------------------------------------------------------

    def _on_fire(
        self,
        channel: int,
        state: ChannelState,
        frame: Frame,
        detections: Sequence[Optional[Detection]],
        fired: List[int],
    ) -> None:
        log.info(
            "Trigger",
            extra={"channel": channel, "per_class": dict(state.consecutive_counts), "fired": fired},
        )
        now = self._wall_clock()
        timestr = now.strftime("%Y%m%d_%H%M%S")
        datetime_str = now.strftime("%Y-%m-%d %H:%M:%S")
        resolved_type = resolve_type(self._config.type_policy, detections)
        classes = [c for c in fired if c not in state.suppressed_classes]

        if not state.recording:
            base = base_path(self._config.save_dir, channel, timestr, resolved_type)
            video_path = base + ".mp4"
            try:
                self._recorder.start(channel, state, frame, video_path)
            except WriterOpenError as exc:
                log.error(
                    "Segment start failed",
                    extra={"channel": channel, "video_path": video_path, "error": str(exc)},
                )
                state.pending_video_path = video_path
                state.pending_events.clear()
                state.suppressed_classes.clear()
                self._aggregator.report_bypass(
                    channel, frame, classes, base, resolved_type, datetime_str
                )
                return
            log.info(
                "Segment start",
                extra={
                    "channel": channel,
                    "video_path": video_path,
                    "classes": classes,
                    "type": resolved_type,
                },
            )

        self._aggregator.add_segment_events(
            channel, state, frame, classes, timestr, resolved_type, datetime_str
        )

    def close_segment(self, channel: int, state: ChannelState) -> int:
        """Release the writer and flush the segment's events.

        Returns:
            Number of events reported.
        """
        self._recorder.stop(state)
        return self._aggregator.flush(channel, state)

    def release_all(self) -> None:
        """Release every open writer without reporting (shutdown path)."""
        for channel, state in self._registry.items():
            if state.recording:
                log.warning(
                    "Releasing unfinished segment",
                    extra={
                        "channel": channel,
                        "video_path": state.pending_video_path,
                        "pending_events": len(state.pending_events),
                    },
                )
                self._recorder.stop(state)
