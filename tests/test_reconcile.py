import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from tpsync.errors import ShapeMismatchError

from reconcile import (
    MODE_SERVER_REFRESH,
    MODE_USER_EDIT,
    apply_payload,
    empty_techpack,
    merge_draft,
    merge_server_snapshot,
    normalize_comparison,
    normalize_list_response,
    normalize_revert_response,
    normalize_revision,
    normalize_revision_list,
    normalize_techpack,
    summarize_techpack,
)


RECORD = {
    "id": "tp1",
    "articleInfo": {"articleCode": "AC1", "productName": "Shirt"},
    "bom": [{"id": "b1", "material": "Cotton"}],
    "status": "draft",
    "version": 2,
}


class TestNormalizeTechpack(unittest.TestCase):
    def _assert_canonical(self, payload) -> None:
        out = normalize_techpack(payload)
        self.assertEqual(out["id"], "tp1")
        self.assertEqual(out["articleInfo"]["productName"], "Shirt")
        self.assertEqual(out["bom"][0]["material"], "Cotton")
        self.assertEqual(out["version"], 2)

    def test_bare_record(self) -> None:
        self._assert_canonical(RECORD)

    def test_techpack_wrapper(self) -> None:
        self._assert_canonical({"techpack": RECORD})

    def test_data_wrapper(self) -> None:
        self._assert_canonical({"data": RECORD})

    def test_success_data_techpack(self) -> None:
        self._assert_canonical({"success": True, "data": {"techpack": RECORD}})

    def test_ok_envelope(self) -> None:
        self._assert_canonical({"ok": True, "techpack": RECORD, "errors": [], "warnings": []})

    def test_legacy_flat_shape(self) -> None:
        legacy = {
            "_id": "tp1",
            "name": "Shirt",
            "articleCode": "ac1",
            "supplier": "Mill Co",
            "materials": {"items": [{"_id": "b1", "material": "Cotton"}]},
            "howToMeasure": [{"step": 1}],
            "status": "Pending Approval",
            "version": "V2",
        }
        out = normalize_techpack(legacy)
        self._assert_canonical(legacy)
        self.assertEqual(out["articleInfo"]["articleCode"], "AC1")
        self.assertEqual(out["articleInfo"]["supplier"], "Mill Co")
        self.assertEqual(out["bom"][0]["id"], "b1")
        self.assertEqual(len(out["howToMeasures"]), 1)
        self.assertTrue(out["howToMeasures"][0]["id"])
        self.assertEqual(out["status"], "in_review")
        self.assertEqual(out["measurements"], [])
        self.assertEqual(out["colorways"], [])

    def test_numeric_string_version(self) -> None:
        self.assertEqual(normalize_techpack({**RECORD, "version": "5"})["version"], 5)

    def test_populated_people_flattened(self) -> None:
        out = normalize_techpack({**RECORD, "createdBy": {"firstName": "Ana", "lastName": "Lee"}})
        self.assertEqual(out["createdBy"], "Ana Lee")

    def test_completeness_recomputed(self) -> None:
        out = normalize_techpack({**RECORD, "completeness": {"isComplete": True}})
        self.assertFalse(out["completeness"]["isComplete"])
        self.assertIn("Colorways", out["completeness"]["missingItems"])

    def test_failure_envelope_rejected(self) -> None:
        with self.assertRaises(ShapeMismatchError):
            normalize_techpack({"success": False, "message": "nope"})

    def test_unrecognized_shapes_rejected(self) -> None:
        with self.assertRaises(ShapeMismatchError):
            normalize_techpack({"unexpected": 1})
        with self.assertRaises(ShapeMismatchError):
            normalize_techpack({**RECORD, "bom": "cotton"})
        with self.assertRaises(ShapeMismatchError):
            normalize_techpack({**RECORD, "version": "latest"})
        with self.assertRaises(ShapeMismatchError):
            normalize_techpack([RECORD])


class TestNormalizeList(unittest.TestCase):
    def test_items_shape(self) -> None:
        out = normalize_list_response({"items": [RECORD], "total": 41, "page": 2, "totalPages": 3}, 2, 20)
        self.assertEqual(out["items"][0]["articleCode"], "AC1")
        self.assertEqual((out["total"], out["page"], out["limit"], out["total_pages"]), (41, 2, 20, 3))

    def test_data_list_shape(self) -> None:
        out = normalize_list_response({"data": [RECORD], "total": 1}, 1, 10)
        self.assertEqual(out["total"], 1)
        self.assertEqual(out["total_pages"], 1)

    def test_success_pagination_shape(self) -> None:
        payload = {
            "success": True,
            "data": {
                "techpacks": [RECORD, {**RECORD, "id": "tp2"}],
                "pagination": {"currentPage": 1, "totalPages": 4, "totalItems": 8, "itemsPerPage": 2},
            },
        }
        out = normalize_list_response(payload)
        self.assertEqual([i["id"] for i in out["items"]], ["tp1", "tp2"])
        self.assertEqual((out["total"], out["page"], out["limit"], out["total_pages"]), (8, 1, 2, 4))

    def test_ok_pagination_shape(self) -> None:
        payload = {"ok": True, "techpacks": [RECORD], "pagination": {"page": 1, "limit": 20, "total": 1, "totalPages": 1}}
        out = normalize_list_response(payload)
        self.assertEqual(out["items"][0]["productName"], "Shirt")

    def test_bare_list(self) -> None:
        out = normalize_list_response([RECORD], 1, 20)
        self.assertEqual((out["total"], out["total_pages"]), (1, 1))

    def test_empty_list(self) -> None:
        out = normalize_list_response({"items": [], "total": 0}, 1, 20)
        self.assertEqual((out["total"], out["total_pages"]), (0, 0))

    def test_missing_rows_rejected(self) -> None:
        with self.assertRaises(ShapeMismatchError):
            normalize_list_response({"count": 3})


class TestNormalizeRevisions(unittest.TestCase):
    def test_revision_fields(self) -> None:
        rev = normalize_revision(
            {
                "data": {
                    "_id": "r1",
                    "techPackId": {"_id": "tp1"},
                    "version": "v3",
                    "status": "Approved",
                    "changeType": "rollback",
                    "revertedFrom": "2",
                    "comments": [{"user": {"name": "Kim"}, "comment": "ok"}],
                }
            }
        )
        self.assertEqual(rev["id"], "r1")
        self.assertEqual(rev["techpackId"], "tp1")
        self.assertEqual(rev["version"], 3)
        self.assertEqual(rev["status"], "approved")
        self.assertEqual(rev["changeType"], "rollback")
        self.assertEqual(rev["revertedFrom"], 2)
        self.assertEqual(rev["comments"][0], {"user": "Kim", "message": "ok", "createdAt": None})

    def test_list_sorted_newest_first_with_alt_pagination(self) -> None:
        payload = {
            "success": True,
            "data": {
                "revisions": [{"id": "a", "version": 1}, {"id": "c", "version": 3}, {"id": "b", "version": 2}],
                "pagination": {"currentPage": 1, "itemsPerPage": 10, "totalItems": 3, "totalPages": 1},
            },
        }
        out = normalize_revision_list(payload)
        self.assertEqual([r["version"] for r in out["revisions"]], [3, 2, 1])
        self.assertEqual(out["pagination"], {"page": 1, "limit": 10, "total": 3, "pages": 1})

    def test_list_plain_pagination(self) -> None:
        payload = {"revisions": [{"id": "a", "version": 1}], "pagination": {"page": 2, "limit": 1, "total": 2, "pages": 2}}
        self.assertEqual(normalize_revision_list(payload)["pagination"]["page"], 2)

    def test_revert_response_variants(self) -> None:
        self.assertEqual(normalize_revert_response({"newRevisionId": "r9"})["new_revision_id"], "r9")
        nested = normalize_revert_response({"data": {"newRevision": {"_id": "r9", "version": 4, "revertedFrom": 1}}})
        self.assertEqual((nested["new_revision_id"], nested["new_version"], nested["reverted_from"]), ("r9", 4, 1))
        with self.assertRaises(ShapeMismatchError):
            normalize_revert_response({"data": {}})

    def test_comparison_envelope(self) -> None:
        payload = {
            "success": True,
            "data": {
                "fromRevision": {"_id": "r1", "version": "v1", "createdByName": "Ana"},
                "toRevision": {"_id": "r3", "version": 3},
                "comparison": {"summary": "Bom: 1 added", "details": {"bom": {"added": 1}}, "diffData": {"bom.x": {}}, "hasMore": True},
            },
        }
        result = normalize_comparison(payload)
        self.assertEqual(result["from_revision"], {"id": "r1", "version": 1, "createdBy": "Ana", "createdAt": None})
        self.assertEqual(result["to_revision"]["version"], 3)
        self.assertEqual(result["diff"], {"bom.x": {}})
        self.assertTrue(result["has_more"])
        with self.assertRaises(ShapeMismatchError):
            normalize_comparison({"data": {"fromRevision": {"_id": "r1"}}})


class TestMerges(unittest.TestCase):
    def test_merge_draft_prefers_populated_fields(self) -> None:
        base = normalize_techpack(RECORD)
        draft = {"articleInfo": {"productName": "Draft Shirt", "articleCode": None}, "bom": [], "packingNotes": None}
        merged = merge_draft(base, draft)
        self.assertEqual(merged["articleInfo"]["productName"], "Draft Shirt")
        self.assertEqual(merged["articleInfo"]["articleCode"], "AC1")
        self.assertEqual(merged["bom"], [])
        self.assertEqual(merged["packingNotes"], "")

    def test_apply_payload_rules(self) -> None:
        current = normalize_techpack({**RECORD, "measurements": [{"id": "m1"}]})
        out = apply_payload(current, {"articleInfo": {"season": "Fall"}, "bom": [], "packingNotes": "flat"})
        self.assertEqual(out["articleInfo"]["productName"], "Shirt")
        self.assertEqual(out["articleInfo"]["season"], "Fall")
        self.assertEqual(out["bom"], [])
        self.assertEqual(out["measurements"], [{"id": "m1"}])
        self.assertEqual(out["packingNotes"], "flat")
        self.assertEqual(current["bom"][0]["id"], "b1")

    def test_apply_payload_rejects_id_change(self) -> None:
        with self.assertRaises(ShapeMismatchError):
            apply_payload(normalize_techpack(RECORD), {"id": "other"})

    def _state(self, techpack: dict, unsaved: bool, seq: int) -> dict:
        return {"techpack": techpack, "has_unsaved_changes": unsaved, "edit_seq": seq, "last_saved": None}

    def test_user_edit_marks_unsaved(self) -> None:
        state = self._state(normalize_techpack(RECORD), False, 0)
        out = merge_server_snapshot(state, {"packingNotes": "x"}, MODE_USER_EDIT)
        self.assertTrue(out["has_unsaved_changes"])
        self.assertEqual(out["edit_seq"], 1)
        self.assertFalse(state["has_unsaved_changes"])

    def test_refresh_replaces_when_no_edits_since_issue(self) -> None:
        local = normalize_techpack({**RECORD, "packingNotes": "sent"})
        server = normalize_techpack({**RECORD, "packingNotes": "sent", "version": 3})
        out = merge_server_snapshot(self._state(local, True, 4), server, MODE_SERVER_REFRESH, issued_seq=4)
        self.assertFalse(out["has_unsaved_changes"])
        self.assertEqual(out["techpack"]["version"], 3)
        self.assertIsNotNone(out["last_saved"])

    def test_refresh_keeps_edits_made_after_issue(self) -> None:
        local = normalize_techpack({**RECORD, "packingNotes": "typed later"})
        server = normalize_techpack({**RECORD, "packingNotes": "sent", "version": 3, "updatedBy": "srv"})
        out = merge_server_snapshot(self._state(local, True, 5), server, MODE_SERVER_REFRESH, issued_seq=4)
        self.assertTrue(out["has_unsaved_changes"])
        self.assertEqual(out["techpack"]["packingNotes"], "typed later")
        self.assertEqual(out["techpack"]["version"], 3)
        self.assertEqual(out["techpack"]["updatedBy"], "srv")

    def test_background_refresh_keeps_unsaved_edits(self) -> None:
        local = normalize_techpack({**RECORD, "packingNotes": "mine"})
        server = normalize_techpack({**RECORD, "packingNotes": "theirs"})
        out = merge_server_snapshot(self._state(local, True, 1), server, MODE_SERVER_REFRESH)
        self.assertEqual(out["techpack"]["packingNotes"], "mine")

    def test_refresh_with_other_id_is_mismatch(self) -> None:
        state = self._state(normalize_techpack(RECORD), False, 0)
        with self.assertRaises(ShapeMismatchError):
            merge_server_snapshot(state, {**normalize_techpack(RECORD), "id": "tp2"}, MODE_SERVER_REFRESH)

    def test_refresh_without_id_keeps_assigned_id(self) -> None:
        state = self._state(normalize_techpack(RECORD), False, 0)
        idless = normalize_techpack({"articleInfo": {"articleCode": "A1"}})
        with self.assertRaises(ShapeMismatchError):
            merge_server_snapshot(state, idless, MODE_SERVER_REFRESH)
        with self.assertRaises(ShapeMismatchError):
            merge_server_snapshot(self._state(normalize_techpack(RECORD), True, 3), idless, MODE_SERVER_REFRESH)
        self.assertEqual(state["techpack"]["id"], "tp1")

    def test_new_record_adopts_assigned_id(self) -> None:
        state = self._state(empty_techpack(), True, 2)
        out = merge_server_snapshot(state, normalize_techpack(RECORD), MODE_SERVER_REFRESH, issued_seq=2)
        self.assertEqual(out["techpack"]["id"], "tp1")

    def test_summary(self) -> None:
        summary = summarize_techpack(normalize_techpack(RECORD))
        self.assertEqual(summary["id"], "tp1")
        self.assertEqual(summary["articleCode"], "AC1")
        self.assertEqual(summary["season"], "Spring")


if __name__ == "__main__":
    unittest.main()
