"""Durable quota counters kept in a line-oriented ``KEY=value`` file."""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
from collections.abc import Callable, Iterator, Mapping
from contextlib import AbstractContextManager, contextmanager, nullcontext
from datetime import datetime
from pathlib import Path
from typing import IO, TYPE_CHECKING

from dotenv import dotenv_values

from ..core.datetime_utils import local_now, midnight_millis
from ..core.errors import PersistenceError
from ..core.interfaces import CounterStore
from ..core.models import Counters, EmailStats

if TYPE_CHECKING:
    from .watcher import ConfigWatcher

LOGGER = logging.getLogger(__name__)

KEY_PROCESSED = "MAILAI_STATS_PROCESSED"
KEY_SKIPPED = "MAILAI_STATS_SKIPPED"
KEY_ANSWERED = "MAILAI_STATS_ANSWERED"
KEY_BCC = "MAILAI_STATS_BCC"
KEY_LAST_RESET = "MAILAI_LAST_RESET"
KEY_DAILY_COUNT = "MAILAI_DAILY_COUNT"
KEY_SENDER_HISTORY = "MAILAI_SENDER_HISTORY"


class PersistentCounterStore(CounterStore):
    """Read and patch counter keys in place, leaving every other line alone.

    The backing file may be a dedicated state file or the operator's ``.env``
    itself. When a :class:`ConfigWatcher` observes the same path, writes run
    inside its ``paused()`` scope so the watcher never reacts to them.
    """

    def __init__(
        self,
        path: Path | str,
        *,
        watcher: ConfigWatcher | None = None,
        clock: Callable[[], datetime] = local_now,
    ) -> None:
        """Initialise the store for ``path``; the file need not exist yet."""
        self.path = Path(path)
        self._watcher = watcher
        self._clock = clock

    def attach_watcher(self, watcher: ConfigWatcher | None) -> None:
        """Suspend ``watcher`` around every subsequent write."""
        self._watcher = watcher

    # Public API ---------------------------------------------------------------
    def load(self) -> Counters:
        """Return persisted counters; bad or missing keys fall back to defaults."""
        values = self._read_values_or_empty()
        return Counters(
            daily_count=_parse_int(values, KEY_DAILY_COUNT, 0),
            last_reset=_parse_int(
                values, KEY_LAST_RESET, midnight_millis(self._clock())
            ),
            sender_history=_parse_sender_history(values.get(KEY_SENDER_HISTORY)),
        )

    def load_stats(self) -> EmailStats:
        """Return the aggregate stats persisted by a previous run."""
        values = self._read_values_or_empty()
        return EmailStats(
            processed=_parse_int(values, KEY_PROCESSED, 0),
            skipped=_parse_int(values, KEY_SKIPPED, 0),
            answered=_parse_int(values, KEY_ANSWERED, 0),
            bcc_copied=_parse_int(values, KEY_BCC, 0),
        )

    def save(self, counters: Counters, stats: EmailStats | None = None) -> bool:
        """Patch the counter keys into the file; return ``False`` on failure."""
        updates = serialize_counters(counters, stats)
        try:
            with self._paused():
                content = self._read_text()
                patched = apply_updates(content, updates)
                if patched == content:
                    LOGGER.debug("Counters unchanged; skipping write to %s", self.path)
                    return True
                self._write_text(patched)
        except PersistenceError as exc:
            LOGGER.error("Failed to update counters in %s: %s", self.path, exc)
            return False
        LOGGER.debug("Updated statistics and quotas in %s", self.path)
        return True

    # Internal helpers ---------------------------------------------------------
    def _paused(self) -> AbstractContextManager[object]:
        if self._watcher is None:
            return nullcontext()
        return self._watcher.paused()

    def _read_values_or_empty(self) -> Mapping[str, str | None]:
        try:
            return self._read_values()
        except PersistenceError as exc:
            LOGGER.warning("Could not read counters from %s: %s", self.path, exc)
            return {}

    def _read_values(self) -> Mapping[str, str | None]:
        if not self.path.is_file():
            return {}
        try:
            return dotenv_values(self.path, interpolate=False)
        except (OSError, UnicodeDecodeError) as exc:
            raise PersistenceError(str(exc)) from exc

    def _read_text(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except (OSError, UnicodeDecodeError) as exc:
            raise PersistenceError(f"read failed: {exc}") from exc

    def _write_text(self, content: str) -> None:
        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            with _temporary_sibling(directory, self.path.name) as (handle, temp_path):
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
                handle.close()
                if self.path.exists():
                    shutil.copymode(self.path, temp_path)
                os.replace(temp_path, self.path)
        except OSError as exc:
            raise PersistenceError(f"write failed: {exc}") from exc


@contextmanager
def _temporary_sibling(directory: Path, name: str) -> Iterator[tuple[IO[str], Path]]:
    """Yield an open temp file next to the target; remove it if left behind."""
    handle = tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", dir=directory, prefix=f".{name}.", delete=False
    )
    temp_path = Path(handle.name)
    try:
        yield handle, temp_path
    finally:
        if not handle.closed:
            handle.close()
        if temp_path.exists():
            temp_path.unlink()


def serialize_counters(
    counters: Counters, stats: EmailStats | None = None
) -> dict[str, str]:
    """Return the ``KEY -> value`` lines representing ``counters`` and ``stats``."""
    updates: dict[str, str] = {}
    if stats is not None:
        updates[KEY_PROCESSED] = str(stats.processed)
        updates[KEY_SKIPPED] = str(stats.skipped)
        updates[KEY_ANSWERED] = str(stats.answered)
        updates[KEY_BCC] = str(stats.bcc_copied)
    updates[KEY_LAST_RESET] = str(counters.last_reset)
    updates[KEY_DAILY_COUNT] = str(counters.daily_count)
    updates[KEY_SENDER_HISTORY] = json.dumps(
        [[sender, stamp] for sender, stamp in counters.sender_history.items()],
        separators=(",", ":"),
    )
    return updates


def apply_updates(content: str, updates: Mapping[str, str]) -> str:
    """Replace each ``KEY=...`` line in place, appending keys that are absent."""
    for key, value in updates.items():
        line = f"{key}={value}"
        pattern = re.compile(rf"^{re.escape(key)}=.*$", re.MULTILINE)
        content, count = pattern.subn(lambda _match, line=line: line, content, count=1)
        if count == 0:
            if content and not content.endswith("\n"):
                content += "\n"
            content += line + "\n"
    return content


def _parse_int(values: Mapping[str, str | None], key: str, default: int) -> int:
    raw = values.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw.strip())
    except ValueError:
        LOGGER.warning("Ignoring malformed %s=%r; using %s", key, raw, default)
        return default


def _parse_sender_history(raw: str | None) -> dict[str, int]:
    """Decode the JSON list of ``[sender, millis]`` pairs; anything else is empty."""
    if raw is None or raw.strip() == "":
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        LOGGER.warning(
            "Error parsing %s: %s, resetting sender history", KEY_SENDER_HISTORY, exc
        )
        return {}

    if not isinstance(parsed, list) or not all(
        isinstance(item, list) and len(item) == 2 for item in parsed
    ):
        LOGGER.warning(
            "%s is not in the expected format, resetting sender history",
            KEY_SENDER_HISTORY,
        )
        return {}

    history: dict[str, int] = {}
    for sender, stamp in parsed:
        try:
            history[str(sender)] = int(stamp)
        except (TypeError, ValueError):
            LOGGER.warning(
                "%s holds a non-numeric timestamp for %s, resetting sender history",
                KEY_SENDER_HISTORY,
                sender,
            )
            return {}
    return history


__all__ = [
    "KEY_ANSWERED",
    "KEY_BCC",
    "KEY_DAILY_COUNT",
    "KEY_LAST_RESET",
    "KEY_PROCESSED",
    "KEY_SENDER_HISTORY",
    "KEY_SKIPPED",
    "PersistentCounterStore",
    "apply_updates",
    "serialize_counters",
]
