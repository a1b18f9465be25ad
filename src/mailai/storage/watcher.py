"""Watch the configuration file and report meaningful changes."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from dotenv import dotenv_values

from ..core.config import meaningful_values

LOGGER = logging.getLogger(__name__)

Snapshot = dict[str, str | None]


class ConfigWatcher:
    """Poll a ``.env`` style file and fire ``on_change`` for meaningful edits.

    Counter and stats keys are filtered out, so writes from the counters
    store never count as a configuration change. Programmatic writes must
    still run inside :meth:`paused`; on exit the watcher takes a fresh
    baseline of the file, absorbing whatever was written.
    """

    def __init__(
        self,
        path: Path | str,
        on_change: Callable[[Snapshot, Snapshot], None],
        *,
        interval: float = 2.0,
    ) -> None:
        """Initialise the watcher; call :meth:`start` or :meth:`run` to begin."""
        self.path = Path(path)
        self._on_change = on_change
        self._interval = interval
        self._lock = threading.Lock()
        self._paused = 0
        self._stamp: tuple[int, int] | None = None
        self._snapshot: Snapshot = {}
        self._triggered = False

    @property
    def is_paused(self) -> bool:
        with self._lock:
            return self._paused > 0

    def start(self) -> None:
        """Record the current file state as the baseline."""
        self._rebaseline()

    @contextmanager
    def paused(self) -> Iterator[None]:
        """Suspend change detection while the caller writes the file."""
        with self._lock:
            self._paused += 1
        try:
            yield
        finally:
            with self._lock:
                self._paused -= 1
                resume = self._paused == 0
            if resume:
                self._rebaseline()

    def check(self) -> bool:
        """Compare the file with the baseline; return ``True`` if a restart is due."""
        if self._triggered or self.is_paused:
            return False
        stamp = self._stat()
        if stamp == self._stamp:
            return False

        current = self._read_snapshot()
        previous = self._snapshot
        self._stamp = stamp
        if current == previous:
            LOGGER.debug(
                "Configuration file changed but no significant updates detected"
            )
            return False

        self._snapshot = current
        self._triggered = True
        changed = sorted(
            key
            for key in set(previous) | set(current)
            if previous.get(key) != current.get(key)
        )
        LOGGER.info(
            "Configuration changed (%s), restarting application", ", ".join(changed)
        )
        self._on_change(previous, current)
        return True

    async def run(self, stop: asyncio.Event) -> None:
        """Check the file every ``interval`` seconds until ``stop`` is set."""
        self.start()
        LOGGER.debug("Watching %s for configuration changes", self.path)
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._interval)
            except TimeoutError:
                pass
            if stop.is_set():
                break
            if self.check():
                break

    # Internal helpers ---------------------------------------------------------
    def _rebaseline(self) -> None:
        self._stamp = self._stat()
        self._snapshot = self._read_snapshot()

    def _stat(self) -> tuple[int, int] | None:
        try:
            info = self.path.stat()
        except FileNotFoundError:
            return None
        except OSError as exc:
            LOGGER.warning("Could not stat %s: %s", self.path, exc)
            return self._stamp
        return (info.st_mtime_ns, info.st_size)

    def _read_snapshot(self) -> Snapshot:
        if not self.path.is_file():
            return {}
        try:
            values = dotenv_values(self.path, interpolate=False)
        except (OSError, UnicodeDecodeError) as exc:
            LOGGER.warning("Could not read %s: %s", self.path, exc)
            return self._snapshot
        return meaningful_values(values)


__all__ = ["ConfigWatcher", "Snapshot"]
