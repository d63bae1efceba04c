"""In-memory tech pack store with its revision ledger, and a transport over it."""

from __future__ import annotations

import copy
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

from tpsync.content_hash import CONTENT_FIELDS, content_hash
from tpsync.errors import RevisionStateError, ServerError, TransportUnavailableError, ValidationError, issue

from clone_engine import build_clone, validate_clone_request
from reconcile import ARTICLE_DEFAULTS, normalize_techpack
from revision_ledger import check_transition
from techpack_validation import ITEM_SECTIONS, compute_completeness, normalize_status, sanitize_colorway, validate_for_save

from app.revision_diff import compare_techpacks
from app.transport import TechPackTransport


COMPARE_DIFF_LIMIT = 100


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _not_found(kind: str, ident: str) -> ServerError:
    return ServerError(f"{kind} not found", status=404, code="NOT_FOUND", field_errors=[issue("NOT_FOUND", f"{kind} {ident} not found", "id")])


def _invalid(message: str, issues: List[dict]) -> ServerError:
    return ServerError(message, status=400, code="VALIDATION_ERROR", field_errors=issues)


def _revision_brief(rev: dict) -> dict:
    return {"id": rev["id"], "version": rev["version"], "createdBy": rev["createdBy"], "createdAt": rev["createdAt"]}


class MemoryTechPackStore:
    """Records plus an append-only revision ledger.

    Every create, update and revert appends exactly one revision whose version
    equals the record's new version. A clone starts with an empty ledger.
    Revisions only ever change status and comments after creation.
    """

    def __init__(self) -> None:
        self._records: Dict[str, dict] = {}
        self._revisions: Dict[str, dict] = {}
        self._order: Dict[str, int] = {}
        self._seq = 0

    def _touch(self, record_id: str) -> None:
        self._seq += 1
        self._order[record_id] = self._seq

    def _check_article_code(self, record: dict, exclude_id: str | None = None) -> None:
        code = record["articleInfo"].get("articleCode")
        for other in self._records.values():
            if other["id"] == exclude_id or other["status"] == "archived":
                continue
            if other["articleInfo"].get("articleCode") == code:
                raise _invalid(
                    "Article code already exists",
                    [issue("ARTICLE_CODE_TAKEN", f"Article code {code} already exists", "articleCode")],
                )

    def _validate(self, record: dict) -> None:
        issues = validate_for_save(record)
        if issues:
            raise _invalid("Validation failed", issues)

    def _append_revision(
        self,
        record: dict,
        change_type: str,
        changes: dict,
        actor: str,
        reverted_from: dict | None = None,
    ) -> dict:
        now = _now()
        snapshot = {key: copy.deepcopy(record.get(key)) for key in CONTENT_FIELDS}
        revision = {
            "id": str(uuid.uuid4()),
            "techpackId": record["id"],
            "version": record["version"],
            "status": "pending",
            "changeType": change_type,
            "changes": changes,
            "snapshot": snapshot,
            "snapshotHash": content_hash(snapshot),
            "comments": [],
            "statusReason": None,
            "revertedFrom": reverted_from["version"] if reverted_from else None,
            "revertedFromId": reverted_from["id"] if reverted_from else None,
            "createdBy": actor,
            "createdAt": now,
            "updatedAt": now,
        }
        self._revisions[revision["id"]] = revision
        return copy.deepcopy(revision)

    def _insert(self, record: dict) -> dict:
        record["id"] = str(uuid.uuid4())
        record["completeness"] = compute_completeness(record)
        self._records[record["id"]] = record
        self._touch(record["id"])
        return copy.deepcopy(record)

    def _store_new(self, record: dict, actor: str, summary: str) -> tuple[dict, dict]:
        self._insert(record)
        changes = compare_techpacks({}, record)
        changes["summary"] = summary
        revision = self._append_revision(record, "create", changes, actor)
        return copy.deepcopy(record), revision

    def create(self, values: dict, actor: str) -> tuple[dict, dict]:
        record = normalize_techpack({**copy.deepcopy(values), "id": "pending"})
        record["colorways"] = [sanitize_colorway(c) for c in record["colorways"]]
        self._validate(record)
        self._check_article_code(record)
        now = _now()
        record.update(
            {
                "status": normalize_status(values.get("status")),
                "version": 1,
                "sharedWith": [],
                "createdBy": actor,
                "updatedBy": actor,
                "createdAt": now,
                "updatedAt": now,
            }
        )
        return self._store_new(record, actor, "Initial version.")

    def get(self, record_id: str) -> dict:
        record = self._records.get(record_id)
        if record is None:
            raise _not_found("Tech pack", record_id)
        return copy.deepcopy(record)

    def _apply(self, record_id: str, values: dict, actor: str, change_type: str, reverted_from: dict | None = None) -> tuple[dict, dict]:
        old = self.get(record_id)
        new = copy.deepcopy(old)
        if isinstance(values.get("articleInfo"), dict):
            info = dict(ARTICLE_DEFAULTS)
            info.update(old.get("articleInfo") or {})
            info.update(copy.deepcopy(values["articleInfo"]))
            new["articleInfo"] = info
        for section in ITEM_SECTIONS:
            if section in values:
                new[section] = copy.deepcopy(values[section] or [])
        if "packingNotes" in values:
            new["packingNotes"] = values["packingNotes"] or ""
        if "status" in values:
            new["status"] = normalize_status(values["status"])
        new = normalize_techpack(new)
        new["colorways"] = [sanitize_colorway(c) for c in new["colorways"]]
        self._validate(new)
        self._check_article_code(new, exclude_id=record_id)
        new.update(
            {
                "version": old["version"] + 1,
                "updatedBy": actor,
                "updatedAt": _now(),
                "sharedWith": old.get("sharedWith") or [],
                "createdBy": old.get("createdBy"),
                "createdAt": old.get("createdAt"),
            }
        )
        new["completeness"] = compute_completeness(new)
        self._records[record_id] = new
        self._touch(record_id)
        changes = compare_techpacks(old, new)
        if reverted_from is not None:
            changes["summary"] = f"Reverted to version {reverted_from['version']}. {changes['summary']}"
        revision = self._append_revision(new, change_type, changes, actor, reverted_from)
        return copy.deepcopy(new), revision

    def update(self, record_id: str, values: dict, actor: str) -> tuple[dict, dict]:
        return self._apply(record_id, values, actor, "update")

    def delete(self, record_id: str, actor: str) -> dict:
        record = self._records.get(record_id)
        if record is None:
            raise _not_found("Tech pack", record_id)
        record["status"] = "archived"
        record["updatedBy"] = actor
        record["updatedAt"] = _now()
        self._touch(record_id)
        return copy.deepcopy(record)

    def clone(self, source_id: str, identity: dict, sections: List[str] | None, actor: str) -> dict:
        source = self.get(source_id)
        try:
            request = validate_clone_request(
                identity.get("productName"), identity.get("articleCode"), sections, identity.get("season")
            )
        except ValidationError as exc:
            raise _invalid(exc.message, exc.issues) from exc
        record = build_clone(source, request, actor)
        self._check_article_code(record)
        return self._insert(record)

    def list(self, page: int = 1, limit: int = 20, q: str | None = None, status: str | None = None) -> dict:
        wanted = normalize_status(status) if status else None
        needle = (q or "").strip().lower()
        rows = []
        for record in self._records.values():
            if wanted is None and record["status"] == "archived":
                continue
            if wanted is not None and record["status"] != wanted:
                continue
            if needle:
                info = record["articleInfo"]
                haystack = " ".join(str(info.get(k) or "") for k in ("productName", "articleCode", "supplier")).lower()
                if needle not in haystack:
                    continue
            rows.append(record)
        rows.sort(key=lambda r: self._order.get(r["id"], 0), reverse=True)
        limit = max(1, limit)
        total = len(rows)
        start = (max(1, page) - 1) * limit
        return {
            "items": [copy.deepcopy(r) for r in rows[start : start + limit]],
            "total": total,
            "page": max(1, page),
            "limit": limit,
            "total_pages": math.ceil(total / limit) if total else 0,
        }

    def list_revisions(self, record_id: str, page: int = 1, limit: int = 20) -> dict:
        self.get(record_id)
        rows = sorted(
            (r for r in self._revisions.values() if r["techpackId"] == record_id),
            key=lambda r: r["version"],
            reverse=True,
        )
        limit = max(1, limit)
        start = (max(1, page) - 1) * limit
        return {
            "revisions": [copy.deepcopy(r) for r in rows[start : start + limit]],
            "pagination": {
                "page": max(1, page),
                "limit": limit,
                "total": len(rows),
                "pages": math.ceil(len(rows) / limit) if rows else 0,
            },
        }

    def get_revision(self, revision_id: str) -> dict:
        revision = self._revisions.get(revision_id)
        if revision is None:
            raise _not_found("Revision", revision_id)
        return copy.deepcopy(revision)

    def compare_revisions(self, record_id: str, from_id: str | None, to_id: str | None) -> dict:
        if not from_id or not to_id:
            raise _invalid(
                'Both "from" and "to" revision ids are required',
                [issue("COMPARE_IDS_REQUIRED", "Revision id is required", "from" if not from_id else "to")],
            )
        self.get(record_id)
        older = self.get_revision(from_id)
        newer = self.get_revision(to_id)
        if older["techpackId"] != record_id or newer["techpackId"] != record_id:
            raise _invalid(
                "Revisions must belong to the tech pack",
                [issue("REVISION_RECORD_MISMATCH", "Revision belongs to another tech pack", "from")],
            )
        if not older.get("snapshot") or not newer.get("snapshot"):
            raise _invalid(
                "One or both revisions are missing snapshot data",
                [issue("SNAPSHOT_MISSING", "Snapshot data missing for this revision", "snapshot")],
            )
        comparison = compare_techpacks(older["snapshot"], newer["snapshot"])
        diff = comparison["diff"]
        has_more = len(diff) > COMPARE_DIFF_LIMIT
        if has_more:
            comparison["diff"] = {k: diff[k] for k in list(diff)[:COMPARE_DIFF_LIMIT]}
        comparison["hasMore"] = has_more
        return {"fromRevision": _revision_brief(older), "toRevision": _revision_brief(newer), "comparison": comparison}

    def revert(self, record_id: str, revision_id: str, actor: str, reason: str | None = None) -> tuple[dict, dict]:
        target = self.get_revision(revision_id)
        if target["techpackId"] != record_id:
            raise _not_found("Revision", revision_id)
        if target["changeType"] == "rollback":
            raise _invalid(
                "Cannot revert to a rollback revision",
                [issue("REVERT_ROLLBACK_NOT_ALLOWED", "Cannot revert to a rollback revision", "revisionId")],
            )
        if not target.get("snapshot"):
            raise _invalid(
                "Revision has no snapshot",
                [issue("SNAPSHOT_MISSING", "Snapshot data missing for this revision", "revisionId")],
            )
        values = copy.deepcopy(target["snapshot"])
        record, revision = self._apply(record_id, values, actor, "rollback", reverted_from=target)
        if reason:
            self._revisions[revision["id"]]["statusReason"] = reason
            revision["statusReason"] = reason
        return record, revision

    def _set_status(self, revision_id: str, target: str, reason: str | None) -> dict:
        revision = self._revisions.get(revision_id)
        if revision is None:
            raise _not_found("Revision", revision_id)
        try:
            check_transition(revision["status"], target)
        except RevisionStateError as exc:
            raise ServerError(exc.message, status=409, code="REVISION_STATE_INVALID") from exc
        revision["status"] = target
        revision["statusReason"] = reason or None
        revision["updatedAt"] = _now()
        return copy.deepcopy(revision)

    def approve(self, revision_id: str, actor: str, reason: str | None = None) -> dict:
        return self._set_status(revision_id, "approved", reason)

    def reject(self, revision_id: str, actor: str, reason: str | None) -> dict:
        if not (reason or "").strip():
            raise _invalid("Reason is required", [issue("REJECT_REASON_REQUIRED", "Reason is required", "reason")])
        return self._set_status(revision_id, "rejected", reason.strip())

    def add_comment(self, revision_id: str, actor: str, text: str | None) -> dict:
        revision = self._revisions.get(revision_id)
        if revision is None:
            raise _not_found("Revision", revision_id)
        if not (text or "").strip():
            raise _invalid("Comment is required", [issue("COMMENT_REQUIRED", "Comment text is required", "comment")])
        now = _now()
        revision["comments"].append({"user": actor, "message": text.strip(), "createdAt": now})
        revision["updatedAt"] = now
        return copy.deepcopy(revision)


class MemoryTransport(TechPackTransport):
    """Transport over a ``MemoryTechPackStore`` answering with bare shapes.

    ``offline`` makes every call fail as unreachable; ``failing`` holds
    operation names that fail the same way.
    """

    def __init__(self, store: MemoryTechPackStore | None = None, actor: str = "local") -> None:
        self.store = store or MemoryTechPackStore()
        self.actor = actor
        self.offline = False
        self.failing: set[str] = set()
        self.calls: List[str] = []

    def _call(self, operation: str) -> None:
        self.calls.append(operation)
        if self.offline or operation in self.failing:
            raise TransportUnavailableError(f"{operation} failed: offline", operation=operation)

    def list_records(self, page: int, limit: int, q: str | None = None, status: str | None = None) -> Any:
        self._call("list_records")
        result = self.store.list(page, limit, q=q, status=status)
        return {
            "items": result["items"],
            "total": result["total"],
            "page": result["page"],
            "totalPages": result["total_pages"],
        }

    def create_record(self, payload: dict) -> Any:
        self._call("create_record")
        record, _ = self.store.create(payload, self.actor)
        return record

    def clone_record(self, source_id: str, identity: dict, sections: List[str]) -> Any:
        self._call("clone_record")
        return self.store.clone(source_id, identity, sections, self.actor)

    def get_record(self, record_id: str) -> Any:
        self._call("get_record")
        return self.store.get(record_id)

    def update_record(self, record_id: str, payload: dict) -> Any:
        self._call("update_record")
        record, _ = self.store.update(record_id, payload, self.actor)
        return record

    def delete_record(self, record_id: str) -> Any:
        self._call("delete_record")
        return self.store.delete(record_id, self.actor)

    def list_revisions(self, record_id: str, page: int = 1, limit: int = 20) -> Any:
        self._call("list_revisions")
        return self.store.list_revisions(record_id, page, limit)

    def get_revision(self, revision_id: str) -> Any:
        self._call("get_revision")
        return self.store.get_revision(revision_id)

    def compare_revisions(self, record_id: str, from_id: str, to_id: str) -> Any:
        self._call("compare_revisions")
        return self.store.compare_revisions(record_id, from_id, to_id)

    def revert_revision(self, record_id: str, revision_id: str, reason: str | None = None) -> Any:
        self._call("revert_revision")
        record, revision = self.store.revert(record_id, revision_id, self.actor, reason)
        return {
            "newRevisionId": revision["id"],
            "newVersion": revision["version"],
            "revertedFrom": revision["revertedFrom"],
            "techpack": record,
        }

    def approve_revision(self, revision_id: str, reason: str | None = None) -> Any:
        self._call("approve_revision")
        return self.store.approve(revision_id, self.actor, reason)

    def reject_revision(self, revision_id: str, reason: str) -> Any:
        self._call("reject_revision")
        return self.store.reject(revision_id, self.actor, reason)

    def add_comment(self, revision_id: str, text: str) -> Any:
        self._call("add_comment")
        return self.store.add_comment(revision_id, self.actor, text)
