"""
segment_recorder.py — Per-channel video segment encoding and snapshot writing.

Responsibilities:
  - Open one OpenCV ``VideoWriter`` per channel when a segment starts, lock
    in the frame size and rate, and fix the segment deadline.
  - Append every frame of an active segment, resizing frames that do not
    match the locked-in size.
  - Release the writer when the segment closes.
  - Track paths that are currently being written so the retention sweeper
    can leave them alone.
  - Write JPEG snapshots (best effort, never raises).
"""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional, Set, Tuple

import cv2  # type: ignore

from .data_models import ChannelState, Frame
from .errors import SnapshotWriteError, WriterOpenError
from .json_logging import get_logger

log = get_logger("segment_recorder")

FPS_FALLBACK = 25

WriterFactory = Callable[[str, int, float, Tuple[int, int]], Any]


def _default_writer_factory(path: str, fourcc: int, fps: float, size: Tuple[int, int]) -> Any:
    return cv2.VideoWriter(path, fourcc, fps, size)


# ---------------------------------------------------------------------------
# OpenPathRegistry: segments currently being written
# ---------------------------------------------------------------------------

class OpenPathRegistry:
    """Thread-safe set of file paths that an encoder currently holds open.

    Shared by the :class:`SegmentRecorder` (writer side) and the retention
    sweeper (reader side).
    """

    def __init__(self) -> None:
        self._paths: Set[str] = set()
        self._lock = threading.Lock()

    @staticmethod
    def _key(path: str | Path) -> str:
        return str(Path(path).resolve())

    def add(self, path: str | Path) -> None:
        with self._lock:
            self._paths.add(self._key(path))

    def discard(self, path: str | Path) -> None:
        with self._lock:
            self._paths.discard(self._key(path))

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, (str, Path)):
            return False
        key = self._key(path)
        with self._lock:
            return key in self._paths

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

def _write_snapshot(frame: Frame, filepath: str) -> None:
    """Write ``frame`` to ``filepath`` as an image.

    Raises:
        SnapshotWriteError: If the frame has no image or OpenCV fails.
    """
    img = frame.best_image()
    if img is None:
        raise SnapshotWriteError(f"Frame has no image data for '{filepath}'")
    try:
        Path(filepath).parent.mkdir(parents=True, exist_ok=True)
        ok = cv2.imwrite(filepath, img)
    except (OSError, cv2.error) as exc:
        raise SnapshotWriteError(f"Cannot write snapshot '{filepath}': {exc}", cause=exc) from exc
    if not ok:
        raise SnapshotWriteError(f"cv2.imwrite returned False for '{filepath}'")


def save_snapshot(frame: Frame, filepath: str) -> bool:
    """Write a snapshot image, logging instead of raising on failure.

    Args:
        frame: Source frame; the annotated image is preferred.
        filepath: Destination path; parent directories are created.

    Returns:
        ``True`` if the image was written.
    """
    try:
        _write_snapshot(frame, filepath)
    except SnapshotWriteError as exc:
        log.error("saveSnapshot error", extra={"path": filepath, "error": str(exc)})
        return False
    return True


# ---------------------------------------------------------------------------
# SegmentRecorder
# ---------------------------------------------------------------------------

class SegmentRecorder:
    """Owns the encoder lifecycle for every channel's active segment.

    The encoder handle itself lives on the channel's :class:`ChannelState`
    so that at most one writer per channel can exist.

    Args:
        record_seconds: Fixed segment length measured from the opening fire.
        fourcc: OpenCV FourCC string (e.g. ``"mp4v"``).
        open_paths: Registry updated with the path of every open segment.
        writer_factory: ``(path, fourcc, fps, (w, h)) -> writer``; defaults to
            :class:`cv2.VideoWriter`.  The writer must provide
            ``isOpened()``, ``write(img)`` and ``release()``.
        clock: Monotonic clock used for segment deadlines.
    """

    def __init__(
        self,
        record_seconds: int,
        fourcc: str = "mp4v",
        open_paths: Optional[OpenPathRegistry] = None,
        writer_factory: Optional[WriterFactory] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._record_seconds = record_seconds
        self._fourcc_str = fourcc
        self._open_paths = open_paths if open_paths is not None else OpenPathRegistry()
        self._writer_factory = writer_factory or _default_writer_factory
        self._clock = clock

    @property
    def open_paths(self) -> OpenPathRegistry:
        return self._open_paths

    @staticmethod
    def resolve_fps(state: ChannelState, frame: Frame) -> int:
        """Previously locked fps, else the stream's rate, else the fallback."""
        if state.fps > 0:
            return state.fps
        if frame.frame_rate is not None:
            num, den = frame.frame_rate
            if den != 0:
                return max(1, num // max(1, den))
        return FPS_FALLBACK

    def start(self, channel: int, state: ChannelState, frame: Frame, filepath: str) -> None:
        """Open a writer for a new segment on ``channel``.

        On success the state is marked recording, the deadline is fixed at
        ``now + record_seconds`` and the segment's event buffers are cleared.

        Raises:
            WriterOpenError: If the frame has no usable size or the encoder
                cannot be opened.  ``state`` is left idle.
        """
        width, height = frame.width, frame.height
        if width <= 0 or height <= 0:
            raise WriterOpenError(f"Frame has no usable size ({width}x{height})")

        fps = self.resolve_fps(state, frame)
        try:
            Path(filepath).parent.mkdir(parents=True, exist_ok=True)
            fourcc = cv2.VideoWriter_fourcc(*self._fourcc_str)
            writer = self._writer_factory(filepath, fourcc, float(fps), (width, height))
        except (OSError, cv2.error) as exc:
            raise WriterOpenError(f"startRecording error for '{filepath}': {exc}", cause=exc) from exc

        if writer is None or not writer.isOpened():
            if writer is not None:
                writer.release()
            raise WriterOpenError(f"open VideoWriter failed: {filepath}")

        state.width = width
        state.height = height
        state.fps = fps
        state.writer = writer
        state.recording = True
        state.segment_deadline = self._clock() + self._record_seconds
        state.pending_video_path = filepath
        state.pending_events.clear()
        state.suppressed_classes.clear()
        self._open_paths.add(filepath)

        log.debug(
            "VideoWriter opened",
            extra={"channel": channel, "video_path": filepath, "fps": fps, "size": [width, height]},
        )

    def append(self, state: ChannelState, frame: Frame) -> bool:
        """Write one frame to the active segment, resizing it if needed.

        Returns:
            ``True`` if the frame reached the encoder.  Encoder faults are
            logged and the frame is dropped; the segment stays open until
            its deadline.
        """
        if not state.recording or state.writer is None:
            return False
        img = frame.best_image()
        if img is None:
            return False
        try:
            if img.shape[1] != state.width or img.shape[0] != state.height:
                img = cv2.resize(img, (state.width, state.height))
            state.writer.write(img)
        except Exception as exc:  # noqa: BLE001
            log.error(
                "VideoWriter write failed",
                extra={"video_path": state.pending_video_path, "error": str(exc)},
            )
            return False
        return True

    def is_expired(self, state: ChannelState) -> bool:
        """``True`` once the active segment has reached its deadline."""
        return state.recording and self._clock() >= state.segment_deadline

    def stop(self, state: ChannelState) -> None:
        """Release the writer and return the channel to idle."""
        if state.writer is not None:
            try:
                state.writer.release()
            except Exception as exc:  # noqa: BLE001
                log.error(
                    "VideoWriter release failed",
                    extra={"video_path": state.pending_video_path, "error": str(exc)},
                )
        state.writer = None
        state.recording = False
        if state.pending_video_path:
            self._open_paths.discard(state.pending_video_path)
