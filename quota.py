#!/usr/bin/env python3
"""
Daily quota tracker for commentary generation.

Keeps a single ``{"day": "YYYY-MM-DD", "count": N}`` JSON document on disk.
The day key is the UTC calendar date; when the stored key differs from today
the document is reset to zero (not accumulated) and persisted before use.

Read or write failures raise QuotaStorageError. The tracker never assumes zero
usage on ambiguity, so a broken quota file stops spending instead of risking
the external cost cap.

The read-modify-write in record_use() is serialized within one process only.
Concurrent summarize stages in separate processes are not supported; the
pipeline lock guarantees a single summarize stage at a time.
"""

import json
import os
import tempfile
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from config import config, get_logger
from errors import QuotaStorageError

# Module-specific logger
logger = get_logger("quota")


def today_key_utc() -> str:
    """Current UTC date as YYYY-MM-DD."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


class QuotaTracker:
    """Persistent, day-keyed usage counter."""

    def __init__(self, state_path: Optional[str] = None, today: Optional[Callable[[], str]] = None):
        self.state_path = state_path or config.RATE_STATE_PATH
        self._today = today or today_key_utc
        self._lock = threading.Lock()

    def _load(self) -> Optional[Dict[str, object]]:
        """Read the stored document; None when it does not exist yet."""
        try:
            with open(self.state_path, "r", encoding="utf-8") as f:
                raw = f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise QuotaStorageError(f"Cannot read quota state {self.state_path}: {e}") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise QuotaStorageError(f"Corrupt quota state {self.state_path}: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("day"), str):
            raise QuotaStorageError(f"Malformed quota state {self.state_path}: {raw[:200]!r}")
        count = data.get("count")
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise QuotaStorageError(f"Malformed quota count in {self.state_path}: {count!r}")
        return {"day": data["day"], "count": count}

    def _save(self, state: Dict[str, object]) -> None:
        """Persist atomically (write to a temp file, then rename over the target)."""
        directory = os.path.dirname(os.path.abspath(self.state_path))
        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".quota-", suffix=".json", dir=directory)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.state_path)
            tmp_path = None
        except OSError as e:
            raise QuotaStorageError(f"Cannot write quota state {self.state_path}: {e}") from e
        finally:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)

    def _current(self) -> Dict[str, object]:
        today = self._today()
        state = self._load()
        if state is None or state["day"] != today:
            if state is not None:
                logger.info(f"Quota day rolled over from {state['day']} to {today}; resetting count")
            state = {"day": today, "count": 0}
            self._save(state)
        return state

    def get_state(self) -> Dict[str, object]:
        """Return today's ``{"day", "count"}``, resetting on day rollover."""
        with self._lock:
            return self._current()

    def can_consume(self, cap: int) -> bool:
        """True while today's count is below ``cap``."""
        return int(self.get_state()["count"]) < int(cap)

    def remaining(self, cap: int) -> int:
        return max(0, int(cap) - int(self.get_state()["count"]))

    def record_use(self, cap: Optional[int] = None) -> int:
        """Consume one unit and return the new count.

        When ``cap`` is given the stored count is never pushed past it; the
        call then leaves the count unchanged and logs a warning.
        """
        with self._lock:
            state = self._current()
            count = int(state["count"])
            if cap is not None and count >= int(cap):
                logger.warning(f"Quota cap {cap} already reached for {state['day']}; not incrementing")
                return count
            state["count"] = count + 1
            self._save(state)
            return count + 1
