"""Shape adapters and merge rules between server payloads and live client state.

Everything in here is pure: inputs are never mutated and no I/O happens. Any
payload that cannot be turned into a canonical object raises
``ShapeMismatchError`` so callers treat the operation as failed and merge
nothing.
"""

from __future__ import annotations

import copy
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List

from tpsync.errors import ShapeMismatchError

from techpack_validation import (
    ITEM_SECTIONS,
    compute_completeness,
    ensure_item_id,
    normalize_article_code,
    normalize_status,
    sanitize_colorway,
)


MODE_USER_EDIT = "user_edit"
MODE_SERVER_REFRESH = "server_refresh"

ARTICLE_DEFAULTS = {
    "articleCode": "",
    "productName": "",
    "gender": "Unisex",
    "productClass": "",
    "fitType": "Regular",
    "supplier": "",
    "technicalDesigner": "",
    "fabricDescription": "",
    "season": "Spring",
    "lifecycleStage": "Concept",
    "brand": "",
    "collection": "",
    "notes": "",
}
ARTICLE_FIELDS = tuple(ARTICLE_DEFAULTS)

IDENTITY_FIELDS = ("id", "version", "status", "createdBy", "updatedBy", "createdAt", "updatedAt")

_SECTION_ALIASES = {
    "bom": ("bom", "materials"),
    "measurements": ("measurements",),
    "howToMeasures": ("howToMeasures", "howToMeasure", "construction"),
    "colorways": ("colorways",),
}
_COLLECTION_WRAPPERS = ("items", "data", "rows", "results")
_RECORD_MARKERS = ("id", "_id", "articleInfo", "articleCode", "productName", "bom", "materials")
_VERSION_RE = re.compile(r"^[vV]?(\d+)(?:\.0+)?$")

REVISION_STATUSES = ("pending", "approved", "rejected")
CHANGE_TYPES = ("create", "update", "rollback")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def empty_techpack() -> dict:
    record = {
        "id": "",
        "articleInfo": dict(ARTICLE_DEFAULTS),
        "bom": [],
        "measurements": [],
        "howToMeasures": [],
        "colorways": [],
        "packingNotes": "",
        "sharedWith": [],
        "status": "draft",
        "version": 0,
        "createdBy": "",
        "updatedBy": "",
        "createdAt": None,
        "updatedAt": None,
    }
    record["completeness"] = compute_completeness(record)
    return record


def parse_version(value: Any, path: str = "version") -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ShapeMismatchError("Version is not a number", path)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        match = _VERSION_RE.match(value.strip())
        if match:
            return int(match.group(1))
    raise ShapeMismatchError(f"Unrecognized version {value!r}", path)


def _person(value: Any) -> str:
    if isinstance(value, dict):
        name = value.get("name") or " ".join(
            part for part in (value.get("firstName"), value.get("lastName")) if part
        )
        return str(name or value.get("email") or value.get("id") or value.get("_id") or "")
    return "" if value is None else str(value)


def _ident(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("id") or value.get("_id")
    return "" if value is None else str(value)


def _looks_like_record(obj: dict) -> bool:
    return any(key in obj for key in _RECORD_MARKERS)


def _unwrap(payload: Any, keys: tuple[str, ...], is_target) -> Any:
    current = payload
    for _ in range(4):
        if not isinstance(current, dict):
            return current
        if current.get("success") is False or current.get("ok") is False:
            raise ShapeMismatchError("Payload reports failure", "$")
        if is_target(current):
            return current
        for key in keys:
            if key in current and isinstance(current[key], (dict, list)):
                current = current[key]
                break
        else:
            return current
    return current


def _collection(record: dict, section: str) -> List[dict]:
    raw = None
    for name in _SECTION_ALIASES[section]:
        if record.get(name) is not None:
            raw = record[name]
            break
    if raw is None:
        return []
    if isinstance(raw, dict):
        for wrapper in _COLLECTION_WRAPPERS:
            if isinstance(raw.get(wrapper), list):
                raw = raw[wrapper]
                break
        else:
            raise ShapeMismatchError(f"Unrecognized {section} collection", section)
    if not isinstance(raw, list):
        raise ShapeMismatchError(f"Unrecognized {section} collection", section)
    items = []
    for idx, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ShapeMismatchError(f"{section} item is not an object", f"{section}[{idx}]")
        items.append(ensure_item_id(copy.deepcopy(item)))
    return items


def _article_info(record: dict) -> dict:
    info = dict(ARTICLE_DEFAULTS)
    nested = record.get("articleInfo")
    if nested is not None and not isinstance(nested, dict):
        raise ShapeMismatchError("articleInfo is not an object", "articleInfo")
    nested = nested or {}
    flat = dict(record)
    if "productName" not in flat and isinstance(flat.get("name"), str):
        flat["productName"] = flat["name"]
    for key in ARTICLE_FIELDS:
        if nested.get(key) not in (None, ""):
            info[key] = nested[key]
        elif flat.get(key) not in (None, ""):
            info[key] = flat[key]
    for key, value in nested.items():
        if key not in info:
            info[key] = copy.deepcopy(value)
    info["technicalDesigner"] = _person(info.get("technicalDesigner"))
    info["articleCode"] = normalize_article_code(info.get("articleCode"))
    return info


def normalize_techpack(payload: Any) -> dict:
    record = _unwrap(payload, ("techpack", "data"), _looks_like_record)
    if not isinstance(record, dict) or not _looks_like_record(record):
        raise ShapeMismatchError("No tech pack record in payload", "$")
    out = {
        "id": _ident(record.get("id") or record.get("_id")),
        "articleInfo": _article_info(record),
    }
    for section in ITEM_SECTIONS:
        out[section] = _collection(record, section)
    notes = record.get("packingNotes")
    out["packingNotes"] = "" if notes is None else str(notes)
    shared = record.get("sharedWith")
    out["sharedWith"] = copy.deepcopy(shared) if isinstance(shared, list) else []
    out["status"] = normalize_status(record.get("status"))
    out["version"] = parse_version(record.get("version"))
    out["createdBy"] = _person(record.get("createdBy"))
    out["updatedBy"] = _person(record.get("updatedBy"))
    out["createdAt"] = record.get("createdAt")
    out["updatedAt"] = record.get("updatedAt")
    out["completeness"] = compute_completeness(out)
    return out


def summarize_techpack(record: dict) -> dict:
    info = record.get("articleInfo") or {}
    return {
        "id": record.get("id") or "",
        "articleCode": info.get("articleCode") or "",
        "productName": info.get("productName") or "",
        "status": normalize_status(record.get("status")),
        "version": record.get("version") or 0,
        "season": info.get("season") or "",
        "supplier": info.get("supplier") or "",
        "updatedAt": record.get("updatedAt"),
    }


def _first(source: dict, *keys: str) -> Any:
    for key in keys:
        if source.get(key) is not None:
            return source[key]
    return None


def _int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _page_meta(source: dict, count: int, page: int, limit: int) -> dict:
    meta = source.get("pagination") if isinstance(source.get("pagination"), dict) else source
    limit = max(1, _int(_first(meta, "limit", "itemsPerPage"), limit))
    total = _int(_first(meta, "total", "totalItems"), count)
    pages = _first(meta, "pages", "totalPages")
    return {
        "page": max(1, _int(_first(meta, "page", "currentPage"), page)),
        "limit": limit,
        "total": total,
        "pages": _int(pages, math.ceil(total / limit) if total else 0),
    }


def normalize_list_response(payload: Any, page: int = 1, limit: int = 20) -> dict:
    if isinstance(payload, dict) and (payload.get("success") is False or payload.get("ok") is False):
        raise ShapeMismatchError("Payload reports failure", "$")
    source: dict = {}
    rows: Any = None
    if isinstance(payload, list):
        rows = payload
    elif isinstance(payload, dict):
        source = payload
        data = payload.get("data")
        if isinstance(data, list):
            rows = data
        elif isinstance(data, dict):
            source = data
        if rows is None:
            rows = _first(source, "items", "techpacks", "results")
    if not isinstance(rows, list):
        raise ShapeMismatchError("No list of tech packs in payload", "$")
    items = []
    for idx, row in enumerate(rows):
        if not isinstance(row, dict):
            raise ShapeMismatchError("List item is not an object", f"items[{idx}]")
        items.append(summarize_techpack(normalize_techpack(row)))
    meta = _page_meta(source, len(items), page, limit)
    return {
        "items": items,
        "total": meta["total"],
        "page": meta["page"],
        "limit": meta["limit"],
        "total_pages": meta["pages"],
    }


def _comment(raw: Any) -> dict:
    if not isinstance(raw, dict):
        return {"user": "", "message": str(raw), "createdAt": None}
    return {
        "user": _person(_first(raw, "user", "userName", "createdBy")),
        "message": str(_first(raw, "message", "comment", "text") or ""),
        "createdAt": _first(raw, "createdAt", "timestamp"),
    }


def normalize_revision(payload: Any) -> dict:
    rev = _unwrap(payload, ("revision", "data"), lambda d: "version" in d and ("id" in d or "_id" in d))
    if not isinstance(rev, dict) or not (rev.get("id") or rev.get("_id")):
        raise ShapeMismatchError("No revision in payload", "$")
    status = str(rev.get("status") or "pending").lower()
    change_type = str(rev.get("changeType") or "update").lower()
    changes = rev.get("changes") if isinstance(rev.get("changes"), dict) else {}
    reverted_from = rev.get("revertedFrom")
    return {
        "id": _ident(rev.get("id") or rev.get("_id")),
        "techpackId": _ident(rev.get("techpackId") or rev.get("techPackId")),
        "version": parse_version(rev.get("version")),
        "status": status if status in REVISION_STATUSES else "pending",
        "changeType": change_type if change_type in CHANGE_TYPES else "update",
        "changes": {
            "summary": str(changes.get("summary") or ""),
            "details": copy.deepcopy(changes.get("details") or {}),
            "diff": copy.deepcopy(changes.get("diff") or {}),
        },
        "snapshot": copy.deepcopy(rev.get("snapshot") or {}),
        "snapshotHash": rev.get("snapshotHash"),
        "comments": [_comment(c) for c in rev.get("comments") or []],
        "statusReason": rev.get("statusReason") or rev.get("approvedReason") or None,
        "revertedFrom": None if reverted_from in (None, "") else parse_version(reverted_from, "revertedFrom"),
        "revertedFromId": _ident(rev.get("revertedFromId")) or None,
        "createdBy": _person(rev.get("createdBy")),
        "createdAt": rev.get("createdAt"),
        "updatedAt": rev.get("updatedAt"),
    }


def normalize_revision_list(payload: Any, page: int = 1, limit: int = 20) -> dict:
    source: dict = {}
    rows: Any = None
    if isinstance(payload, list):
        rows = payload
    elif isinstance(payload, dict):
        if payload.get("success") is False or payload.get("ok") is False:
            raise ShapeMismatchError("Payload reports failure", "$")
        source = payload
        data = payload.get("data")
        if isinstance(data, list):
            rows = data
        elif isinstance(data, dict):
            source = data
        if rows is None:
            rows = _first(source, "revisions", "items")
    if not isinstance(rows, list):
        raise ShapeMismatchError("No list of revisions in payload", "$")
    revisions = [normalize_revision(row) for row in rows]
    revisions.sort(key=lambda r: r["version"], reverse=True)
    return {"revisions": revisions, "pagination": _page_meta(source, len(revisions), page, limit)}


def normalize_revert_response(payload: Any) -> dict:
    body = payload
    if isinstance(body, dict) and (body.get("success") is False or body.get("ok") is False):
        raise ShapeMismatchError("Payload reports failure", "$")
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        body = body["data"]
    if not isinstance(body, dict):
        raise ShapeMismatchError("Revert response is not an object", "$")
    new_revision = body.get("newRevision") if isinstance(body.get("newRevision"), dict) else {}
    new_id = _ident(body.get("newRevisionId") or new_revision.get("id") or new_revision.get("_id"))
    if not new_id:
        raise ShapeMismatchError("Revert response has no new revision id", "newRevisionId")
    version = _first(body, "newVersion") or new_revision.get("version")
    reverted_from = _first(body, "revertedFrom") or new_revision.get("revertedFrom")
    techpack = body.get("techpack") or body.get("techPack")
    return {
        "new_revision_id": new_id,
        "new_version": None if version is None else parse_version(version, "newVersion"),
        "reverted_from": None if reverted_from is None else parse_version(reverted_from, "revertedFrom"),
        "techpack": normalize_techpack(techpack) if isinstance(techpack, dict) else None,
    }


def _revision_ref(value: Any, path: str) -> dict:
    if not isinstance(value, dict) or not _ident(value):
        raise ShapeMismatchError("Comparison is missing a revision reference", path)
    return {
        "id": _ident(value),
        "version": parse_version(value.get("version"), f"{path}.version"),
        "createdBy": _person(value.get("createdBy") or value.get("createdByName")),
        "createdAt": value.get("createdAt"),
    }


def normalize_comparison(payload: Any) -> dict:
    body = payload
    if isinstance(body, dict) and (body.get("success") is False or body.get("ok") is False):
        raise ShapeMismatchError("Payload reports failure", "$")
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        body = body["data"]
    if not isinstance(body, dict) or not isinstance(body.get("comparison"), dict):
        raise ShapeMismatchError("Comparison response has no comparison", "comparison")
    comparison = body["comparison"]
    return {
        "from_revision": _revision_ref(body.get("fromRevision"), "fromRevision"),
        "to_revision": _revision_ref(body.get("toRevision"), "toRevision"),
        "summary": str(comparison.get("summary") or ""),
        "details": copy.deepcopy(comparison.get("details") or {}),
        "diff": copy.deepcopy(comparison.get("diff") or comparison.get("diffData") or {}),
        "has_more": bool(comparison.get("hasMore")),
    }


def merge_draft(base: dict, draft_techpack: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in (draft_techpack or {}).items():
        if value is None:
            continue
        if key == "articleInfo" and isinstance(value, dict):
            info = dict(merged.get("articleInfo") or {})
            info.update({k: copy.deepcopy(v) for k, v in value.items() if v is not None})
            merged["articleInfo"] = info
        else:
            merged[key] = copy.deepcopy(value)
    merged["completeness"] = compute_completeness(merged)
    return merged


def apply_payload(current: dict, payload: Dict[str, Any]) -> dict:
    result = copy.deepcopy(current)
    for key, value in (payload or {}).items():
        if key == "completeness":
            continue
        if key == "id":
            if value and result.get("id") and value != result["id"]:
                raise ShapeMismatchError("Record id cannot change", "id")
            result["id"] = value or result.get("id") or ""
        elif key == "articleInfo":
            info = dict(result.get("articleInfo") or {})
            info.update(copy.deepcopy(value or {}))
            result["articleInfo"] = info
        elif key == "colorways":
            result["colorways"] = [sanitize_colorway(item) for item in value or []]
        elif key in ITEM_SECTIONS:
            result[key] = [ensure_item_id(item) for item in copy.deepcopy(value or [])]
        else:
            result[key] = copy.deepcopy(value)
    result["completeness"] = compute_completeness(result)
    return result


def merge_server_snapshot(state: dict, record: dict, mode: str, issued_seq: int | None = None) -> dict:
    """Merge ``record`` into the live ``state`` and return the new state.

    ``MODE_USER_EDIT`` treats ``record`` as a partial payload typed by the
    operator. ``MODE_SERVER_REFRESH`` treats it as a canonical server record;
    edits made after ``issued_seq`` (or any unsaved edits when no ticket is
    given) survive and only identity, status and audit fields are adopted.
    """
    out = copy.deepcopy(state)
    local = out.get("techpack") or empty_techpack()
    if mode == MODE_USER_EDIT:
        out["techpack"] = apply_payload(local, record)
        out["has_unsaved_changes"] = True
        out["edit_seq"] = int(out.get("edit_seq") or 0) + 1
        return out
    if mode != MODE_SERVER_REFRESH:
        raise ValueError(f"Unknown merge mode: {mode}")
    incoming_id = record.get("id") or ""
    if local.get("id") and not incoming_id:
        raise ShapeMismatchError("Server record has no id", "id")
    if local.get("id") and local["id"] != incoming_id:
        raise ShapeMismatchError("Server record id does not match the open record", "id")
    edit_seq = int(out.get("edit_seq") or 0)
    edits_pending = bool(out.get("has_unsaved_changes")) and (issued_seq is None or edit_seq != issued_seq)
    if edits_pending:
        merged = copy.deepcopy(local)
        for key in IDENTITY_FIELDS:
            if key in record:
                merged[key] = copy.deepcopy(record[key])
        merged["completeness"] = compute_completeness(merged)
        out["techpack"] = merged
        out["has_unsaved_changes"] = True
    else:
        merged = copy.deepcopy(record)
        merged["completeness"] = compute_completeness(merged)
        out["techpack"] = merged
        out["has_unsaved_changes"] = False
        out["last_saved"] = _now()
    return out
