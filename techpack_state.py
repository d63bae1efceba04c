"""Observable owner of the tech pack being edited.

The container holds the live record plus editor flags, pushes every change to
its subscribers and delegates persistence to the draft store, the transport,
the list cache and the revision ledger.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Dict, List

from tpsync.errors import TechPackError, ValidationError

from draft_store import DraftAutosaver, DraftStore, draft_key, make_envelope
from reconcile import (
    MODE_SERVER_REFRESH,
    MODE_USER_EDIT,
    empty_techpack,
    merge_draft,
    merge_server_snapshot,
    normalize_techpack,
)
from techpack_validation import ITEM_SECTIONS, content_payload, validate_for_save


logger = logging.getLogger("tpsync.state")

State = Dict[str, Any]
Handler = Callable[[State], None]


def _initial_state() -> State:
    return {
        "techpack": empty_techpack(),
        "current_tab": 0,
        "has_unsaved_changes": False,
        "is_loading": False,
        "is_saving": False,
        "last_saved": None,
        "edit_seq": 0,
        "error": None,
    }


class TechPackState:
    def __init__(
        self,
        transport,
        drafts: DraftStore,
        autosaver: DraftAutosaver,
        listing=None,
        ledger=None,
    ) -> None:
        self._transport = transport
        self._drafts = drafts
        self._autosaver = autosaver
        self._listing = listing
        self._ledger = ledger
        self._state = _initial_state()
        self._key: str | None = None
        self._subs: List[Handler] = []
        self._in_flight: set[str] = set()

    @property
    def state(self) -> State:
        return copy.deepcopy(self._state)

    @property
    def techpack(self) -> dict:
        return copy.deepcopy(self._state["techpack"])

    @property
    def draft_key(self) -> str | None:
        return self._key

    def subscribe(self, handler: Handler) -> Handler:
        self._subs.append(handler)
        return handler

    def unsubscribe(self, handler: Handler) -> bool:
        try:
            self._subs.remove(handler)
            return True
        except ValueError:
            return False

    def _notify(self) -> None:
        for handler in list(self._subs):
            try:
                handler(copy.deepcopy(self._state))
            except Exception:
                logger.exception("state_subscriber_failed handler=%r", handler)

    def _set(self, **changes: Any) -> None:
        self._state.update(changes)
        self._notify()

    def _envelope(self) -> dict:
        return make_envelope(
            self._state["techpack"],
            current_tab=self._state["current_tab"],
            has_unsaved_changes=self._state["has_unsaved_changes"],
            last_saved=self._state["last_saved"],
        )

    def _schedule_draft(self) -> None:
        if self._key is not None:
            self._autosaver.schedule(self._key, self._envelope())

    def _load_draft(self, key: str, base: dict) -> State:
        state = _initial_state()
        state["techpack"] = base
        envelope = self._drafts.load(key)
        if envelope is None:
            return state
        draft = envelope["techpack"]
        if base.get("id") and draft.get("id") and draft["id"] != base["id"]:
            logger.warning("draft_id_mismatch key=%s draft_id=%s", key, draft["id"])
            self._drafts.clear(key)
            return state
        state["techpack"] = merge_draft(base, draft)
        state["current_tab"] = envelope.get("current_tab") or 0
        state["has_unsaved_changes"] = bool(envelope.get("has_unsaved_changes"))
        state["last_saved"] = envelope.get("last_saved")
        logger.info("draft_restored key=%s", key)
        return state

    # lifecycle

    def open_new(self) -> State:
        self._leave()
        self._key = draft_key(None)
        self._autosaver.resume(self._key)
        self._state = self._load_draft(self._key, empty_techpack())
        self._notify()
        return self.state

    def open(self, record_id: str) -> State:
        self._leave()
        self._key = draft_key(record_id)
        self._autosaver.resume(self._key)
        self._state = _initial_state()
        self._set(is_loading=True)
        try:
            base = normalize_techpack(self._transport.get_record(record_id))
        except TechPackError as exc:
            logger.warning("techpack_load_failed id=%s error=%s", record_id, exc)
            if self._drafts.load(self._key) is None:
                self._set(is_loading=False, error=str(exc))
                raise
            fallback = empty_techpack()
            fallback["id"] = record_id
            self._state = self._load_draft(self._key, fallback)
            self._state["error"] = str(exc)
            self._notify()
            return self.state
        self._state = self._load_draft(self._key, base)
        self._notify()
        return self.state

    def _leave(self) -> None:
        if self._key is None:
            return
        self._autosaver.stop(self._key)

    def close(self) -> None:
        self._leave()
        self._key = None
        self._state = _initial_state()
        self._notify()

    def refresh(self) -> State:
        record_id = self._state["techpack"].get("id")
        if not record_id:
            return self.state
        record = normalize_techpack(self._transport.get_record(record_id))
        self._state = merge_server_snapshot(self._state, record, MODE_SERVER_REFRESH)
        self._notify()
        return self.state

    # edits

    def _edit(self, payload: dict) -> None:
        self._state = merge_server_snapshot(self._state, payload, MODE_USER_EDIT)
        self._schedule_draft()
        self._notify()

    def _section(self, section: str) -> list:
        if section not in ITEM_SECTIONS:
            raise ValueError(f"Unknown section: {section}")
        return copy.deepcopy(self._state["techpack"].get(section) or [])

    def update_article_info(self, changes: dict) -> None:
        self._edit({"articleInfo": dict(changes)})

    def add_item(self, section: str, item: dict) -> None:
        items = self._section(section)
        items.append(dict(item))
        self._edit({section: items})

    def update_item(self, section: str, index: int, changes: dict) -> None:
        items = self._section(section)
        if index < 0 or index >= len(items):
            raise IndexError(f"{section} has no item at {index}")
        items[index] = {**items[index], **changes, "id": items[index].get("id")}
        self._edit({section: items})

    def remove_item(self, section: str, index: int) -> None:
        items = self._section(section)
        if index < 0 or index >= len(items):
            raise IndexError(f"{section} has no item at {index}")
        del items[index]
        self._edit({section: items})

    def set_packing_notes(self, text: str) -> None:
        self._edit({"packingNotes": text or ""})

    def set_current_tab(self, tab: int) -> None:
        self._state["current_tab"] = tab
        if self._state["has_unsaved_changes"]:
            self._schedule_draft()
        self._notify()

    # persistence

    def save(self) -> dict | None:
        key = self._key or draft_key(None)
        if key in self._in_flight:
            logger.info("save_skipped_in_flight key=%s", key)
            return None
        techpack = self._state["techpack"]
        issues = validate_for_save(techpack)
        if issues:
            err = ValidationError("Tech pack is not ready to save", issues)
            self._set(error=str(err))
            raise err
        record_id = techpack.get("id") or ""
        created = not record_id
        payload = content_payload(techpack)
        issued_seq = self._state["edit_seq"]
        self._in_flight.add(key)
        self._set(is_saving=True, error=None)
        try:
            if created:
                raw = self._transport.create_record(payload)
            else:
                raw = self._transport.update_record(record_id, payload)
            record = normalize_techpack(raw)
            merged = merge_server_snapshot(self._state, record, MODE_SERVER_REFRESH, issued_seq)
        except TechPackError as exc:
            logger.warning("techpack_save_failed key=%s error=%s", key, exc)
            self._autosaver.cancel(key)
            self._drafts.save(key, self._envelope())
            self._set(is_saving=False, error=str(exc))
            raise
        finally:
            self._in_flight.discard(key)

        self._state = merged
        self._state["is_saving"] = False
        new_key = draft_key(record["id"])
        self._autosaver.cancel(key)
        if self._state["edit_seq"] == issued_seq:
            self._drafts.clear(key)
        elif new_key != key:
            self._drafts.move(key, new_key)
        if new_key != key:
            self._autosaver.stop(key)
            self._autosaver.resume(new_key)
            if self._key == key:
                self._key = new_key
        if self._state["has_unsaved_changes"]:
            self._schedule_draft()
        logger.info("techpack_saved id=%s version=%s created=%s", record["id"], record["version"], created)
        if self._listing is not None:
            self._listing.record_saved(record, created)
        if self._ledger is not None:
            try:
                self._ledger.load_revisions(record["id"])
            except TechPackError as exc:
                logger.warning("ledger_reload_failed id=%s error=%s", record["id"], exc)
        self._notify()
        return record

    def discard_changes(self) -> State:
        record_id = self._state["techpack"].get("id")
        base = normalize_techpack(self._transport.get_record(record_id)) if record_id else empty_techpack()
        if self._key is not None:
            self._autosaver.cancel(self._key)
            self._drafts.clear(self._key)
        state = _initial_state()
        state["techpack"] = base
        state["current_tab"] = self._state["current_tab"]
        state["last_saved"] = self._state["last_saved"]
        self._state = state
        self._notify()
        return self.state

    def revert_to_revision(self, revision_id: str, reason: str | None = None) -> str:
        record_id = self._state["techpack"].get("id")
        if not record_id:
            raise ValidationError("Only saved tech packs have revisions", [])
        if self._ledger is None:
            raise TechPackError("No revision ledger configured")
        new_revision_id = self._ledger.revert_to_revision(record_id, revision_id, reason)
        try:
            record = normalize_techpack(self._transport.get_record(record_id))
        except TechPackError as exc:
            logger.warning("revert_reload_failed id=%s new_revision=%s error=%s", record_id, new_revision_id, exc)
            self._set(error=f"Reverted on the server as revision {new_revision_id}, but reloading failed: {exc}")
            raise
        cleared = dict(self._state, has_unsaved_changes=False)
        self._state = merge_server_snapshot(cleared, record, MODE_SERVER_REFRESH)
        if self._key is not None:
            self._autosaver.cancel(self._key)
            self._drafts.clear(self._key)
        if self._listing is not None:
            self._listing.record_saved(record, False)
        self._notify()
        return new_revision_id

    def load_revisions(self, page: int = 1) -> dict:
        record_id = self._state["techpack"].get("id")
        if not record_id or self._ledger is None:
            return {"revisions": [], "pagination": {"page": 1, "limit": 0, "total": 0, "pages": 0}}
        return self._ledger.load_revisions(record_id, page=page)

    def tick(self) -> list[str]:
        return self._autosaver.flush_due()
