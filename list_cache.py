"""Persisted last-seen list page with optimistic mutations and background reload."""

from __future__ import annotations

import copy
import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from tpsync.errors import ServerError, ShapeMismatchError, TechPackError, TransportUnavailableError

from reconcile import normalize_list_response, normalize_techpack, summarize_techpack
from techpack_validation import normalize_article_code, normalize_status


logger = logging.getLogger("tpsync.list")

LIST_SCHEMA_VERSION = 1
LIST_CACHE_KEY = "list:techpacks"
PENDING_PREFIX = "pending-"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def clamp_page(page: int, total_pages: int) -> int:
    if page < 1 or total_pages < 1 or page > total_pages:
        return 1
    return page


def _total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if total > 0 else 0


class ListCache:
    def __init__(self, kv, key: str = LIST_CACHE_KEY, default_limit: int = 20) -> None:
        self._kv = kv
        self._key = key
        self._default_limit = default_limit

    def read(self) -> dict | None:
        try:
            entry = self._kv.get(self._key)
        except Exception as exc:
            logger.warning("list_cache_unreadable key=%s error=%s", self._key, exc)
            self._drop()
            return None
        if entry is None:
            return None
        if (
            not isinstance(entry, dict)
            or entry.get("version") != LIST_SCHEMA_VERSION
            or not isinstance(entry.get("items"), list)
        ):
            logger.info("list_cache_schema_mismatch key=%s", self._key)
            self._drop()
            return None
        return entry

    def _drop(self) -> None:
        try:
            self._kv.delete(self._key)
        except Exception as exc:
            logger.warning("list_cache_clear_failed key=%s error=%s", self._key, exc)

    def _store(self, entry: dict) -> dict:
        try:
            self._kv.set(self._key, entry)
        except Exception as exc:
            logger.warning("list_cache_write_failed key=%s error=%s", self._key, exc)
        return entry

    def write(self, result: dict, params: Dict[str, Any] | None = None) -> dict:
        entry = {
            "version": LIST_SCHEMA_VERSION,
            "saved_at": _now(),
            "params": copy.deepcopy(params or {}),
            "items": copy.deepcopy(result.get("items") or []),
            "total": int(result.get("total") or 0),
            "page": int(result.get("page") or 1),
            "limit": int(result.get("limit") or self._default_limit),
            "total_pages": int(result.get("total_pages") or 0),
        }
        return self._store(entry)

    def restore(self, entry: dict | None) -> None:
        if entry is None:
            self._drop()
        else:
            self._store(entry)

    def _mutate(self, fn) -> dict:
        entry = self.read()
        if entry is None:
            entry = {
                "version": LIST_SCHEMA_VERSION,
                "saved_at": _now(),
                "params": {},
                "items": [],
                "total": 0,
                "page": 1,
                "limit": self._default_limit,
                "total_pages": 0,
            }
        entry = copy.deepcopy(entry)
        fn(entry)
        limit = max(1, int(entry.get("limit") or self._default_limit))
        entry["total"] = max(0, int(entry["total"]))
        entry["total_pages"] = _total_pages(entry["total"], limit)
        entry["page"] = clamp_page(int(entry.get("page") or 1), entry["total_pages"])
        entry["saved_at"] = _now()
        return self._store(entry)

    def optimistic_insert(self, item: dict) -> dict:
        def apply(entry: dict) -> None:
            items = entry["items"]
            for idx, existing in enumerate(items):
                if existing.get("id") == item.get("id"):
                    items[idx] = copy.deepcopy(item)
                    return
            items.insert(0, copy.deepcopy(item))
            limit = max(1, int(entry.get("limit") or self._default_limit))
            del items[limit:]
            entry["total"] = int(entry.get("total") or 0) + 1

        return self._mutate(apply)

    def optimistic_remove(self, record_id: str) -> dict:
        def apply(entry: dict) -> None:
            before = len(entry["items"])
            entry["items"] = [i for i in entry["items"] if i.get("id") != record_id]
            if len(entry["items"]) < before:
                entry["total"] = int(entry.get("total") or 0) - 1

        return self._mutate(apply)

    def optimistic_replace(self, record_id: str, item: dict) -> dict:
        def apply(entry: dict) -> None:
            for idx, existing in enumerate(entry["items"]):
                if existing.get("id") == record_id:
                    merged = dict(existing)
                    merged.update(copy.deepcopy(item))
                    if not item.get("pending"):
                        merged.pop("pending", None)
                    entry["items"][idx] = merged
                    return

        return self._mutate(apply)


def _payload_summary(payload: dict, base: dict | None = None) -> dict:
    summary = dict(base or {})
    info = payload.get("articleInfo") if isinstance(payload.get("articleInfo"), dict) else {}
    if "articleCode" in info:
        summary["articleCode"] = normalize_article_code(info["articleCode"])
    for key in ("productName", "season", "supplier"):
        if key in info:
            summary[key] = info[key] or ""
    if "status" in payload:
        summary["status"] = normalize_status(payload["status"])
    summary["updatedAt"] = _now()
    return summary


class TechPackListing:
    """List view over the transport with a persisted fallback.

    Mutations patch the cache before the request goes out. A failed write puts
    the previous entry back; a successful one is followed by a reload whose
    result replaces the optimistic entry.
    """

    def __init__(self, transport, cache: ListCache, page_size: int = 20, max_page_size: int = 100) -> None:
        self._transport = transport
        self._cache = cache
        self._page_size = page_size
        self._max_page_size = max_page_size

    @property
    def cache(self) -> ListCache:
        return self._cache

    def _limit(self, limit: int | None) -> int:
        return max(1, min(int(limit or self._page_size), self._max_page_size))

    def _fetch(self, page: int, limit: int, q: str | None, status: str | None) -> dict:
        payload = self._transport.list_records(page, limit, q=q, status=status)
        result = normalize_list_response(payload, page, limit)
        if page > max(result["total_pages"], 1):
            logger.info("list_page_clamped page=%s total_pages=%s", page, result["total_pages"])
            page = 1
            payload = self._transport.list_records(page, limit, q=q, status=status)
            result = normalize_list_response(payload, page, limit)
        params = {"page": result["page"], "limit": limit, "q": q, "status": status}
        self._cache.write(result, params)
        return result

    def list(self, page: int = 1, limit: int | None = None, q: str | None = None, status: str | None = None) -> dict:
        limit = self._limit(limit)
        try:
            result = self._fetch(max(1, page), limit, q, status)
        except (TransportUnavailableError, ServerError, ShapeMismatchError) as exc:
            entry = self._cache.read()
            if entry is None:
                raise
            logger.warning("list_from_cache error=%s", exc)
            return {
                "items": copy.deepcopy(entry["items"]),
                "total": entry["total"],
                "page": entry["page"],
                "limit": entry["limit"],
                "total_pages": entry["total_pages"],
                "from_cache": True,
            }
        return {**result, "from_cache": False}

    def refresh(self) -> dict | None:
        entry = self._cache.read() or {}
        params = entry.get("params") or {}
        page = clamp_page(int(entry.get("page") or params.get("page") or 1), int(entry.get("total_pages") or 0))
        try:
            return self._fetch(page, self._limit(params.get("limit")), params.get("q"), params.get("status"))
        except TechPackError as exc:
            logger.warning("list_refresh_failed error=%s", exc)
            return None

    def create(self, payload: dict) -> dict:
        snapshot = self._cache.read()
        provisional = _payload_summary(payload, {"status": "draft", "version": 0})
        provisional.update({"id": f"{PENDING_PREFIX}{uuid.uuid4().hex}", "pending": True})
        self._cache.optimistic_insert(provisional)
        try:
            record = normalize_techpack(self._transport.create_record(payload))
        except TechPackError:
            self._cache.restore(snapshot)
            raise
        self._cache.optimistic_remove(provisional["id"])
        self._cache.optimistic_insert(summarize_techpack(record))
        self.refresh()
        return record

    def update(self, record_id: str, payload: dict) -> dict:
        snapshot = self._cache.read()
        current = next((i for i in (snapshot or {}).get("items", []) if i.get("id") == record_id), None)
        if current is not None:
            self._cache.optimistic_replace(record_id, _payload_summary(payload, current))
        try:
            record = normalize_techpack(self._transport.update_record(record_id, payload))
        except TechPackError:
            self._cache.restore(snapshot)
            raise
        self._cache.optimistic_replace(record_id, summarize_techpack(record))
        self.refresh()
        return record

    def delete(self, record_id: str) -> None:
        snapshot = self._cache.read()
        self._cache.optimistic_remove(record_id)
        try:
            self._transport.delete_record(record_id)
        except TechPackError:
            self._cache.restore(snapshot)
            raise
        self.refresh()

    def record_saved(self, record: dict, created: bool) -> None:
        summary = summarize_techpack(record)
        if created:
            self._cache.optimistic_insert(summary)
        else:
            self._cache.optimistic_replace(record["id"], summary)
        self.refresh()
