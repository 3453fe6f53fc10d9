"""
channel_worker.py — One consumer thread per channel.

Producers hand ``(frame, detections)`` packets to :meth:`ChannelWorker.submit`;
the worker thread feeds them one at a time, in order, to
:meth:`TriggerEngine.process_frame`.  The thread waits on the queue with a
bounded timeout so a stop request is noticed promptly even when no frames
arrive.
"""

from __future__ import annotations

import queue
import threading
from typing import Optional, Sequence, Tuple

from .data_models import Detection, Frame
from .json_logging import get_logger
from .trigger_engine import TriggerEngine

DEFAULT_QUEUE_SIZE = 64
DEFAULT_WAIT_TIMEOUT_SEC = 0.5

Packet = Tuple[Frame, Sequence[Optional[Detection]]]


class ChannelWorker:
    """Serialises frame processing for a single channel.

    Args:
        channel: Channel id served by this worker.
        engine: Shared trigger engine.
        maxsize: Queue capacity; ``0`` means unbounded.  When full, the
            oldest queued packet is dropped to make room.
        wait_timeout: Seconds the thread blocks on an empty queue before
            re-checking its running flag.
    """

    def __init__(
        self,
        channel: int,
        engine: TriggerEngine,
        maxsize: int = DEFAULT_QUEUE_SIZE,
        wait_timeout: float = DEFAULT_WAIT_TIMEOUT_SEC,
    ) -> None:
        self._channel = channel
        self._engine = engine
        self._queue: "queue.Queue[Packet]" = queue.Queue(maxsize=maxsize)
        self._wait_timeout = wait_timeout
        self._running = False
        self._draining = False
        self._processed = 0
        self._dropped = 0
        self._thread: Optional[threading.Thread] = None
        self._log = get_logger(f"worker.ch{channel}")

    @property
    def channel(self) -> int:
        return self._channel

    @property
    def processed(self) -> int:
        return self._processed

    @property
    def dropped(self) -> int:
        return self._dropped

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the worker thread.  Idempotent; a stopped worker can be restarted."""
        if self._running or self.is_alive():
            return
        self._running = True
        self._draining = False
        self._thread = threading.Thread(
            target=self._worker_loop,
            name=f"channel-worker-{self._channel}",
            daemon=True,
        )
        self._thread.start()
        self._log.info("ChannelWorker started", extra={"channel": self._channel})

    def stop(self, drain: bool = False, timeout: Optional[float] = None) -> None:
        """Stop the worker thread and wait for it to join.

        Args:
            drain: Process every packet already queued before exiting.
            timeout: Join timeout in seconds; ``None`` waits indefinitely.
        """
        if not self._running and not self.is_alive():
            return
        if drain:
            self._draining = True
        else:
            self._running = False
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._running = False
        self._log.info(
            "ChannelWorker stopped",
            extra={
                "channel": self._channel,
                "processed": self._processed,
                "dropped": self._dropped,
                "unprocessed": self._queue.qsize(),
            },
        )

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def submit(
        self,
        frame: Frame,
        detections: Sequence[Optional[Detection]],
        block: bool = False,
    ) -> None:
        """Queue one packet.

        Args:
            frame: Decoded frame for this worker's channel.
            detections: Detections for ``frame``.
            block: Wait for queue space instead of dropping the oldest
                packet.  Suitable for file sources that can be paced.
        """
        packet: Packet = (frame, list(detections))
        if block:
            self._queue.put(packet)
            return
        while True:
            try:
                self._queue.put_nowait(packet)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    continue
                self._dropped += 1
                self._log.warning(
                    "Queue full; dropped oldest frame",
                    extra={"channel": self._channel, "dropped": self._dropped},
                )

    # ------------------------------------------------------------------
    # Consumer loop
    # ------------------------------------------------------------------

    def _worker_loop(self) -> None:
        while self._running:
            try:
                frame, detections = self._queue.get(timeout=self._wait_timeout)
            except queue.Empty:
                if self._draining:
                    break
                continue
            try:
                self._engine.process_frame(frame, detections)
            except Exception:  # noqa: BLE001
                self._log.exception(
                    "Unhandled error in worker loop",
                    extra={"channel": self._channel},
                )
            self._processed += 1
