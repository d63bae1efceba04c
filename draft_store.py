"""Schema-versioned draft envelopes kept in local storage, plus debounced autosave."""

from __future__ import annotations

import copy
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict


logger = logging.getLogger("tpsync.drafts")

DRAFT_SCHEMA_VERSION = 1
NEW_DRAFT_ID = "new"
DEFAULT_AUTOSAVE_MS = 2000


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def draft_key(record_id: str | None) -> str:
    return f"draft:{record_id or NEW_DRAFT_ID}"


def make_envelope(
    techpack: dict,
    current_tab: int = 0,
    has_unsaved_changes: bool = True,
    last_saved: str | None = None,
) -> dict:
    return {
        "version": DRAFT_SCHEMA_VERSION,
        "saved_at": _now(),
        "techpack": copy.deepcopy(techpack),
        "current_tab": current_tab,
        "has_unsaved_changes": has_unsaved_changes,
        "last_saved": last_saved,
    }


def _is_valid_envelope(envelope: Any) -> bool:
    return (
        isinstance(envelope, dict)
        and envelope.get("version") == DRAFT_SCHEMA_VERSION
        and isinstance(envelope.get("techpack"), dict)
    )


class DraftStore:
    """Draft envelopes over a key/value store.

    Storage failures never reach the caller: a lost draft write is logged and
    the in-memory state stays authoritative.
    """

    def __init__(self, kv) -> None:
        self._kv = kv

    def save(self, key: str, envelope: dict) -> bool:
        try:
            self._kv.set(key, envelope)
        except Exception as exc:
            logger.warning("draft_save_failed key=%s error=%s", key, exc)
            return False
        logger.debug("draft_saved key=%s", key)
        return True

    def load(self, key: str) -> dict | None:
        try:
            envelope = self._kv.get(key)
        except Exception as exc:
            logger.warning("draft_unreadable key=%s error=%s", key, exc)
            self.clear(key)
            return None
        if envelope is None:
            return None
        if not _is_valid_envelope(envelope):
            version = envelope.get("version") if isinstance(envelope, dict) else None
            logger.info("draft_schema_mismatch key=%s version=%s", key, version)
            self.clear(key)
            return None
        return envelope

    def clear(self, key: str) -> None:
        try:
            self._kv.delete(key)
        except Exception as exc:
            logger.warning("draft_clear_failed key=%s error=%s", key, exc)

    def move(self, src: str, dst: str) -> None:
        envelope = self.load(src)
        if envelope is None:
            return
        if self.save(dst, envelope):
            self.clear(src)


class DraftAutosaver:
    def __init__(
        self,
        store: DraftStore,
        interval_ms: int = DEFAULT_AUTOSAVE_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._interval = max(0, interval_ms) / 1000.0
        self._clock = clock
        self._pending: Dict[str, tuple[float, dict]] = {}
        self._stopped: set[str] = set()

    def schedule(self, key: str, envelope: dict) -> bool:
        if key in self._stopped:
            return False
        self._pending[key] = (self._clock() + self._interval, copy.deepcopy(envelope))
        return True

    def pending(self, key: str) -> bool:
        return key in self._pending

    def flush_due(self) -> list[str]:
        now = self._clock()
        written = []
        for key in [k for k, (deadline, _) in self._pending.items() if deadline <= now]:
            _, envelope = self._pending.pop(key)
            self._store.save(key, envelope)
            written.append(key)
        return written

    def flush(self, key: str | None = None) -> list[str]:
        keys = [key] if key is not None else list(self._pending)
        written = []
        for item in keys:
            entry = self._pending.pop(item, None)
            if entry is None:
                continue
            self._store.save(item, entry[1])
            written.append(item)
        return written

    def cancel(self, key: str) -> None:
        self._pending.pop(key, None)

    def stop(self, key: str) -> None:
        self.flush(key)
        self._stopped.add(key)

    def resume(self, key: str) -> None:
        self._stopped.discard(key)
