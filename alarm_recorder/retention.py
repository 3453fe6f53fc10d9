"""
retention.py — Background age/capacity cleanup of stored media.

A single daemon thread wakes every ``poll_interval_sec`` seconds and runs
two passes over the storage root:

1. **Age pass** — delete media files last modified more than
   ``max_age_days`` ago.
2. **Capacity pass** — while the total size of media files exceeds
   ``max_total_bytes``, delete the oldest file.

Only ``.mp4``, ``.jpg`` and ``.jpeg`` files are ever touched.  Paths held
open by a segment writer are skipped.  A file that cannot be inspected or
removed is skipped; nothing short of :meth:`stop` ends the loop.
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from .config_manager import RetentionPolicy
from .json_logging import get_logger
from .segment_recorder import OpenPathRegistry

MEDIA_EXTENSIONS = frozenset({".mp4", ".jpg", ".jpeg"})
SECONDS_PER_DAY = 24 * 3600
_STOP_CHECK_SEC = 1.0


@dataclass
class _MediaFile:
    path: Path
    size: int
    mtime: float


@dataclass
class CleanupResult:
    """Outcome of one cleanup cycle."""

    age_deleted: int = 0
    age_bytes: int = 0
    capacity_deleted: int = 0
    capacity_bytes: int = 0
    remaining_bytes: Optional[int] = None


def is_media_file(path: Path) -> bool:
    return path.suffix.lower() in MEDIA_EXTENSIONS


class RetentionCleanupService:
    """Enforces a :class:`RetentionPolicy` on the storage root.

    Args:
        save_dir: Storage root to sweep recursively.
        policy: Age and capacity limits plus the poll interval.
        open_paths: Paths currently being written; never deleted.
        clock: Wall-clock source (``time.time``) compared with file mtimes.
    """

    def __init__(
        self,
        save_dir: str | Path,
        policy: RetentionPolicy,
        open_paths: Optional[OpenPathRegistry] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._save_dir = Path(save_dir) if save_dir else None
        self._policy = policy
        self._open_paths = open_paths if open_paths is not None else OpenPathRegistry()
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._log = get_logger("retention")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def should_run(self) -> bool:
        """A storage root is set and at least one limit is enabled."""
        return self._save_dir is not None and self._policy.enabled

    def start(self) -> bool:
        """Start the sweeper thread if :attr:`should_run`.

        Returns:
            ``True`` if a thread was started.  Idempotent.
        """
        if not self.should_run:
            self._log.info("Retention disabled")
            return False
        if self._thread is not None and self._thread.is_alive():
            return True
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="retention-cleanup",
            daemon=True,
        )
        self._thread.start()
        self._log.info(
            "RetentionCleanupService started",
            extra={
                "save_dir": str(self._save_dir),
                "max_age_days": self._policy.max_age_days,
                "max_total_bytes": self._policy.max_total_bytes,
                "poll_interval_sec": self._policy.poll_interval_sec,
            },
        )
        return True

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the sweeper thread to exit and wait for it to join.

        A thread still inside a cycle after ``timeout`` is kept, so
        :meth:`is_running` keeps reporting it.
        """
        self._stop_event.set()
        if self._thread is None:
            return
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            self._log.warning(
                "RetentionCleanupService did not stop within timeout",
                extra={"timeout": timeout},
            )
            return
        self._thread = None
        self._log.info("RetentionCleanupService stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:  # noqa: BLE001
                self._log.exception(
                    "Unhandled error in cleanup loop",
                    extra={"save_dir": str(self._save_dir)},
                )
            self._sleep_interval()

    def _sleep_interval(self) -> None:
        """Sleep for the poll interval, waking at least once per second."""
        deadline = time.monotonic() + self._policy.poll_interval_sec
        while not self._stop_event.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self._stop_event.wait(min(_STOP_CHECK_SEC, remaining))

    # ------------------------------------------------------------------
    # Cleanup passes
    # ------------------------------------------------------------------

    def run_once(self, now: Optional[float] = None) -> CleanupResult:
        """Run one age pass and one capacity pass.

        Args:
            now: Wall-clock timestamp to age files against; defaults to the
                service clock.

        Returns:
            Counts of deleted files and bytes.
        """
        result = CleanupResult()
        if self._save_dir is None or not self._save_dir.is_dir():
            return result
        now = self._clock() if now is None else now

        if self._policy.max_age_days > 0:
            result.age_deleted, result.age_bytes = self._age_pass(now)
        if self._policy.max_total_bytes > 0:
            (
                result.capacity_deleted,
                result.capacity_bytes,
                result.remaining_bytes,
            ) = self._capacity_pass()

        if result.age_deleted or result.capacity_deleted:
            self._log.info(
                "Retention cycle",
                extra={
                    "save_dir": str(self._save_dir),
                    "age_deleted": result.age_deleted,
                    "age_bytes": result.age_bytes,
                    "capacity_deleted": result.capacity_deleted,
                    "capacity_bytes": result.capacity_bytes,
                },
            )
        return result

    def _iter_media(self) -> Iterator[_MediaFile]:
        """Yield every recognised media file not held open by a writer."""
        for dirpath, _dirnames, filenames in os.walk(self._save_dir):
            for name in filenames:
                path = Path(dirpath) / name
                if not is_media_file(path):
                    continue
                try:
                    st = path.stat()
                except OSError:
                    continue
                if not path.is_file():
                    continue
                if path in self._open_paths:
                    continue
                yield _MediaFile(path=path, size=st.st_size, mtime=st.st_mtime)

    def _remove(self, path: Path) -> bool:
        try:
            path.unlink()
        except OSError as exc:
            self._log.warning("Could not delete media file", extra={"path": str(path), "error": str(exc)})
            return False
        return True

    def _age_pass(self, now: float) -> tuple[int, int]:
        cutoff = now - self._policy.max_age_days * SECONDS_PER_DAY
        deleted = freed = 0
        for media in list(self._iter_media()):
            if media.mtime < cutoff and self._remove(media.path):
                deleted += 1
                freed += media.size
        return deleted, freed

    def _capacity_pass(self) -> tuple[int, int, int]:
        files: List[_MediaFile] = list(self._iter_media())
        total = sum(f.size for f in files)
        cap = self._policy.max_total_bytes
        deleted = freed = 0
        if total <= cap:
            return deleted, freed, total

        files.sort(key=lambda f: f.mtime)
        for media in files:
            if total <= cap:
                break
            if self._remove(media.path):
                deleted += 1
                freed += media.size
                total = max(0, total - media.size)
        return deleted, freed, total
