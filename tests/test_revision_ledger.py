import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from tpsync.errors import RevisionStateError, ServerError, TransportUnavailableError, ValidationError

from app.stores import MemoryTransport
from revision_ledger import RevisionLedger, check_transition


def _payload(notes: str) -> dict:
    return {"articleInfo": {"articleCode": "LED1", "productName": "Jacket"}, "packingNotes": notes}


class TestTransitions(unittest.TestCase):
    def test_pending_can_move_once(self) -> None:
        check_transition("pending", "approved")
        check_transition("pending", "rejected")

    def test_terminal_states(self) -> None:
        for current in ("approved", "rejected"):
            for target in ("approved", "rejected", "pending"):
                with self.assertRaises(RevisionStateError):
                    check_transition(current, target)


class TestRevisionLedger(unittest.TestCase):
    def setUp(self) -> None:
        self.transport = MemoryTransport()
        self.ledger = RevisionLedger(self.transport)
        record, _ = self.transport.store.create(_payload("v1"), "u1")
        self.record_id = record["id"]
        self.transport.store.update(self.record_id, _payload("v2"), "u1")
        self.transport.store.update(self.record_id, _payload("v3"), "u1")

    def test_one_revision_per_save_newest_first(self) -> None:
        ledger = self.ledger.load_revisions(self.record_id)
        self.assertEqual([r["version"] for r in ledger["revisions"]], [3, 2, 1])
        self.assertEqual([r["changeType"] for r in ledger["revisions"]], ["update", "update", "create"])
        self.assertEqual(ledger["pagination"]["total"], 3)
        self.assertEqual(self.transport.store.get(self.record_id)["version"], 3)

    def test_revert_grows_ledger(self) -> None:
        ledger = self.ledger.load_revisions(self.record_id)
        first = ledger["revisions"][-1]
        new_id = self.ledger.revert_to_revision(self.record_id, first["id"])
        self.assertEqual(self.ledger.highlighted(self.record_id), new_id)
        after = self.ledger.cached(self.record_id)["revisions"]
        self.assertEqual(len(after), 4)
        newest = after[0]
        self.assertEqual(newest["id"], new_id)
        self.assertEqual(newest["version"], 4)
        self.assertEqual(newest["changeType"], "rollback")
        self.assertEqual(newest["revertedFrom"], 1)
        self.assertEqual(newest["revertedFromId"], first["id"])
        self.assertEqual(newest["snapshotHash"], first["snapshotHash"])
        self.assertEqual(self.transport.store.get(self.record_id)["packingNotes"], "v1")

    def test_revert_retry_creates_another_rollback(self) -> None:
        first = self.ledger.load_revisions(self.record_id)["revisions"][-1]
        self.ledger.revert_to_revision(self.record_id, first["id"])
        self.ledger.revert_to_revision(self.record_id, first["id"])
        versions = [r["version"] for r in self.ledger.cached(self.record_id)["revisions"]]
        self.assertEqual(versions, [5, 4, 3, 2, 1])

    def test_revert_to_rollback_is_refused(self) -> None:
        first = self.ledger.load_revisions(self.record_id)["revisions"][-1]
        rollback_id = self.ledger.revert_to_revision(self.record_id, first["id"])
        calls = len(self.transport.calls)
        with self.assertRaises(ValidationError):
            self.ledger.revert_to_revision(self.record_id, rollback_id)
        self.assertEqual(len(self.transport.calls), calls)
        fresh = RevisionLedger(self.transport)
        with self.assertRaises(ServerError) as ctx:
            fresh.revert_to_revision(self.record_id, rollback_id)
        self.assertEqual(ctx.exception.status, 400)
        self.assertEqual(ctx.exception.field_errors[0]["code"], "REVERT_ROLLBACK_NOT_ALLOWED")
        self.assertEqual(self.transport.store.get(self.record_id)["version"], 4)

    def test_compare_revisions(self) -> None:
        revisions = self.ledger.load_revisions(self.record_id)["revisions"]
        result = self.ledger.compare_revisions(self.record_id, revisions[-1]["id"], revisions[0]["id"])
        self.assertEqual(result["from_revision"]["version"], 1)
        self.assertEqual(result["to_revision"]["version"], 3)
        self.assertEqual(result["details"], {"packingNotes": {"modified": 1}})
        self.assertEqual(result["diff"]["packingNotes"], {"old": "v1", "new": "v3"})
        self.assertFalse(result["has_more"])

    def test_compare_needs_both_ids(self) -> None:
        newest = self.ledger.load_revisions(self.record_id)["revisions"][0]
        calls = len(self.transport.calls)
        with self.assertRaises(ValidationError):
            self.ledger.compare_revisions(self.record_id, "", newest["id"])
        self.assertEqual(len(self.transport.calls), calls)

    def test_compare_rejects_missing_snapshot_and_foreign_revision(self) -> None:
        revisions = self.ledger.load_revisions(self.record_id)["revisions"]
        _, other_rev = self.transport.store.create(
            {"articleInfo": {"articleCode": "LED2", "productName": "Coat"}}, "u1"
        )
        with self.assertRaises(ServerError) as ctx:
            self.ledger.compare_revisions(self.record_id, other_rev["id"], revisions[0]["id"])
        self.assertEqual(ctx.exception.status, 400)
        self.assertEqual(ctx.exception.field_errors[0]["code"], "REVISION_RECORD_MISMATCH")
        self.transport.store._revisions[revisions[-1]["id"]]["snapshot"] = {}
        with self.assertRaises(ServerError) as ctx:
            self.ledger.compare_revisions(self.record_id, revisions[-1]["id"], revisions[0]["id"])
        self.assertEqual(ctx.exception.status, 400)
        self.assertEqual(ctx.exception.field_errors[0]["code"], "SNAPSHOT_MISSING")

    def test_failed_revert_leaves_cache(self) -> None:
        ledger = self.ledger.load_revisions(self.record_id)
        self.transport.offline = True
        with self.assertRaises(TransportUnavailableError):
            self.ledger.revert_to_revision(self.record_id, ledger["revisions"][-1]["id"])
        self.assertEqual(self.ledger.cached(self.record_id), ledger)
        self.assertIsNone(self.ledger.highlighted(self.record_id))

    def test_approve_then_reject_rejected_client_side(self) -> None:
        rev = self.ledger.load_revisions(self.record_id)["revisions"][0]
        approved = self.ledger.approve(rev["id"], "looks right")
        self.assertEqual(approved["status"], "approved")
        self.assertEqual(self.ledger.cached(self.record_id)["revisions"][0]["status"], "approved")
        calls = len(self.transport.calls)
        with self.assertRaises(RevisionStateError):
            self.ledger.reject(rev["id"], "changed my mind")
        self.assertEqual(len(self.transport.calls), calls)

    def test_server_enforces_state_machine_for_unknown_revision(self) -> None:
        rev = self.ledger.load_revisions(self.record_id)["revisions"][0]
        self.ledger.approve(rev["id"])
        fresh = RevisionLedger(self.transport)
        with self.assertRaises(ServerError) as ctx:
            fresh.approve(rev["id"])
        self.assertEqual(ctx.exception.status, 409)

    def test_reject_requires_reason(self) -> None:
        rev = self.ledger.load_revisions(self.record_id)["revisions"][0]
        calls = len(self.transport.calls)
        with self.assertRaises(ValidationError):
            self.ledger.reject(rev["id"], "   ")
        self.assertEqual(len(self.transport.calls), calls)
        rejected = self.ledger.reject(rev["id"], "wrong fabric")
        self.assertEqual(rejected["statusReason"], "wrong fabric")

    def test_comments_on_any_state(self) -> None:
        rev = self.ledger.load_revisions(self.record_id)["revisions"][0]
        self.ledger.reject(rev["id"], "no")
        updated = self.ledger.add_comment(rev["id"], "  fixed in next version ")
        self.assertEqual(updated["comments"][0]["message"], "fixed in next version")
        self.assertEqual(updated["comments"][0]["user"], "local")
        with self.assertRaises(ValidationError):
            self.ledger.add_comment(rev["id"], "")


if __name__ == "__main__":
    unittest.main()
