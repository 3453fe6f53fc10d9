"""
Data models for frames, detections and per-channel recorder state
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

import numpy as np


@dataclass
class Detection:
    """One detected object on a frame."""
    class_id: int
    score: float = 0.0
    box: Optional[Tuple[float, float, float, float]] = None


@dataclass
class Frame:
    """A decoded frame delivered by the upstream pipeline.

    ``osd_image`` is the annotated rendering, if the pipeline produced one;
    it is preferred over ``image`` for snapshots and video.
    """
    channel_id: int
    image: Optional[np.ndarray] = None
    osd_image: Optional[np.ndarray] = None
    frame_rate: Optional[Tuple[int, int]] = None
    end_of_stream: bool = False

    def best_image(self) -> Optional[np.ndarray]:
        """Return the annotated image if present, else the raw one."""
        if self.osd_image is not None:
            return self.osd_image
        return self.image

    @property
    def width(self) -> int:
        img = self.best_image()
        return int(img.shape[1]) if img is not None and img.ndim >= 2 else 0

    @property
    def height(self) -> int:
        img = self.best_image()
        return int(img.shape[0]) if img is not None and img.ndim >= 2 else 0


@dataclass(frozen=True)
class PendingEvent:
    """An event buffered until its segment closes."""
    class_id: int
    resolved_type: int
    snapshot_path: str
    datetime_str: str

    def __str__(self):
        return f"{{cls={self.class_id},type={self.resolved_type}}}"


@dataclass
class ChannelState:
    """Recording state for a single channel.

    Owned by the trigger engine's registry and mutated only by the worker
    thread serving that channel.
    """
    recording: bool = False
    segment_deadline: float = 0.0
    writer: Optional[Any] = None
    fps: int = 0
    width: int = 0
    height: int = 0
    pending_video_path: str = ""
    consecutive_counts: Dict[int, int] = field(default_factory=dict)
    suppressed_classes: Set[int] = field(default_factory=set)
    pending_events: List[PendingEvent] = field(default_factory=list)
