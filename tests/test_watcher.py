"""Tests for the configuration file watcher."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

from mailai.core.models import Counters
from mailai.storage import ConfigWatcher, PersistentCounterStore

BASE = "MAILAI_MODE=production\nMAILAI_PERSONA_SUPPORT=Support\n"


def _touch(path: Path, content: str) -> None:
    """Write ``content`` and push mtime forward so the change is always visible."""

    before = path.stat().st_mtime_ns if path.exists() else 0
    path.write_text(content, encoding="utf-8")
    os.utime(path, ns=(before + 10_000_000, before + 10_000_000))


def test_meaningful_change_fires_once(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(BASE, encoding="utf-8")
    changes: list[tuple[dict, dict]] = []
    watcher = ConfigWatcher(env_file, lambda prev, cur: changes.append((prev, cur)))
    watcher.start()

    _touch(env_file, BASE.replace("production", "development"))

    assert watcher.check() is True
    assert watcher.check() is False
    [(previous, current)] = changes
    assert previous["MAILAI_MODE"] == "production"
    assert current["MAILAI_MODE"] == "development"


def test_stats_only_change_is_ignored(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(BASE, encoding="utf-8")
    changes: list[object] = []
    watcher = ConfigWatcher(env_file, lambda prev, cur: changes.append(cur))
    watcher.start()

    _touch(env_file, BASE + "MAILAI_STATS_PROCESSED=3\nMAILAI_DAILY_COUNT=1\n")

    assert watcher.check() is False
    assert changes == []


def test_paused_writes_are_absorbed(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(BASE, encoding="utf-8")
    changes: list[object] = []
    watcher = ConfigWatcher(env_file, lambda prev, cur: changes.append(cur))
    watcher.start()

    with watcher.paused():
        assert watcher.is_paused
        _touch(env_file, BASE + "MAILAI_DEBUG_MODE=true\n")
        assert watcher.check() is False

    assert not watcher.is_paused
    assert watcher.check() is False
    assert changes == []


def test_counter_store_writes_never_trigger_restart(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(BASE, encoding="utf-8")
    changes: list[object] = []
    watcher = ConfigWatcher(env_file, lambda prev, cur: changes.append(cur))
    watcher.start()
    store = PersistentCounterStore(env_file, watcher=watcher)

    store.save(Counters(daily_count=2, last_reset=0, sender_history={"a@x.com": 1}))

    assert watcher.check() is False
    assert changes == []
    assert "MAILAI_DAILY_COUNT=2" in env_file.read_text(encoding="utf-8")


def test_run_stops_after_change(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(BASE, encoding="utf-8")
    changes: list[object] = []

    async def scenario() -> None:
        stop = asyncio.Event()
        watcher = ConfigWatcher(
            env_file, lambda prev, cur: changes.append(cur), interval=0.01
        )
        task = asyncio.create_task(watcher.run(stop))
        await asyncio.sleep(0.05)
        _touch(env_file, BASE + "MAILAI_MAX_EMAILS_PER_DAY=20\n")
        await asyncio.wait_for(task, timeout=5)

    asyncio.run(scenario())

    assert len(changes) == 1


def test_run_exits_when_stopped(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(BASE, encoding="utf-8")

    async def scenario() -> None:
        stop = asyncio.Event()
        watcher = ConfigWatcher(env_file, lambda prev, cur: None, interval=0.01)
        task = asyncio.create_task(watcher.run(stop))
        stop.set()
        await asyncio.wait_for(task, timeout=5)

    asyncio.run(scenario())
