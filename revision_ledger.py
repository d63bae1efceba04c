"""Client view of a record's revision history and the approval state machine."""

from __future__ import annotations

import copy
import logging
from typing import Dict

from tpsync.errors import RevisionStateError, TechPackError, ValidationError, issue

from reconcile import normalize_comparison, normalize_revert_response, normalize_revision, normalize_revision_list


logger = logging.getLogger("tpsync.ledger")

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"

TRANSITIONS = {
    PENDING: (APPROVED, REJECTED),
    APPROVED: (),
    REJECTED: (),
}


def check_transition(current: str, target: str) -> None:
    if target not in TRANSITIONS.get(current, ()):
        raise RevisionStateError(
            f"Revision cannot move from {current} to {target}",
            current=current,
            target=target,
        )


class RevisionLedger:
    def __init__(self, transport, page_size: int = 20) -> None:
        self._transport = transport
        self._page_size = page_size
        self._ledgers: Dict[str, dict] = {}
        self._highlighted: Dict[str, str] = {}

    def cached(self, record_id: str) -> dict | None:
        ledger = self._ledgers.get(record_id)
        return copy.deepcopy(ledger) if ledger is not None else None

    def highlighted(self, record_id: str) -> str | None:
        return self._highlighted.get(record_id)

    def forget(self, record_id: str) -> None:
        self._ledgers.pop(record_id, None)
        self._highlighted.pop(record_id, None)

    def load_revisions(self, record_id: str, page: int = 1, limit: int | None = None) -> dict:
        limit = limit or self._page_size
        payload = self._transport.list_revisions(record_id, page=page, limit=limit)
        ledger = normalize_revision_list(payload, page, limit)
        self._ledgers[record_id] = ledger
        logger.debug("ledger_loaded record=%s count=%s", record_id, len(ledger["revisions"]))
        return copy.deepcopy(ledger)

    def get_revision(self, revision_id: str) -> dict:
        return normalize_revision(self._transport.get_revision(revision_id))

    def compare_revisions(self, record_id: str, from_id: str, to_id: str) -> dict:
        missing = [name for name, value in (("from", from_id), ("to", to_id)) if not value]
        if missing:
            raise ValidationError(
                "Pick two revisions to compare",
                [issue("COMPARE_IDS_REQUIRED", "Revision id is required", name) for name in missing],
            )
        return normalize_comparison(self._transport.compare_revisions(record_id, from_id, to_id))

    def revert_to_revision(self, record_id: str, revision_id: str, reason: str | None = None) -> str:
        known = self._find(revision_id)
        if known is not None and known["changeType"] == "rollback":
            raise ValidationError(
                "Cannot revert to a rollback revision",
                [issue("REVERT_ROLLBACK_NOT_ALLOWED", "Pick the revision the rollback restored", "revisionId")],
            )
        payload = self._transport.revert_revision(record_id, revision_id, reason=reason)
        result = normalize_revert_response(payload)
        new_id = result["new_revision_id"]
        self._highlighted[record_id] = new_id
        logger.info(
            "revision_reverted record=%s target=%s new_revision=%s", record_id, revision_id, new_id
        )
        try:
            self.load_revisions(record_id)
        except TechPackError as exc:
            logger.warning("ledger_reload_failed record=%s error=%s", record_id, exc)
        return new_id

    def _find(self, revision_id: str) -> dict | None:
        for ledger in self._ledgers.values():
            for rev in ledger["revisions"]:
                if rev["id"] == revision_id:
                    return rev
        return None

    def _replace(self, revision: dict) -> None:
        for ledger in self._ledgers.values():
            for idx, rev in enumerate(ledger["revisions"]):
                if rev["id"] == revision["id"]:
                    ledger["revisions"][idx] = copy.deepcopy(revision)

    def _transition(self, revision_id: str, target: str) -> None:
        known = self._find(revision_id)
        if known is not None:
            check_transition(known["status"], target)

    def approve(self, revision_id: str, reason: str | None = None) -> dict:
        self._transition(revision_id, APPROVED)
        revision = normalize_revision(self._transport.approve_revision(revision_id, reason=reason))
        self._replace(revision)
        logger.info("revision_approved revision=%s", revision_id)
        return revision

    def reject(self, revision_id: str, reason: str) -> dict:
        if not (reason or "").strip():
            raise ValidationError(
                "Rejection needs a reason",
                [issue("REJECT_REASON_REQUIRED", "Reason is required", "reason")],
            )
        self._transition(revision_id, REJECTED)
        revision = normalize_revision(self._transport.reject_revision(revision_id, reason.strip()))
        self._replace(revision)
        logger.info("revision_rejected revision=%s", revision_id)
        return revision

    def add_comment(self, revision_id: str, text: str) -> dict:
        if not (text or "").strip():
            raise ValidationError(
                "Comment is empty",
                [issue("COMMENT_REQUIRED", "Comment text is required", "comment")],
            )
        revision = normalize_revision(self._transport.add_comment(revision_id, text.strip()))
        self._replace(revision)
        return revision
