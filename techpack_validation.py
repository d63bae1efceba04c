"""Field rules for tech pack records: sanitization, the save gate, completeness."""

from __future__ import annotations

import copy
import re
import uuid
from typing import Any, Dict, List

from tpsync.errors import Issue, issue


ARTICLE_CODE_RE = re.compile(r"^[A-Z0-9_-]+$")
HEX_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")
DEFAULT_HEX = "#000000"

STATUSES = ("draft", "in_review", "approved", "rejected", "archived")
_LEGACY_STATUS = {
    "draft": "draft",
    "process": "in_review",
    "in review": "in_review",
    "in_review": "in_review",
    "pending approval": "in_review",
    "pending_approval": "in_review",
    "pending": "in_review",
    "approved": "approved",
    "approve": "approved",
    "rejected": "rejected",
    "reject": "rejected",
    "archived": "archived",
    "inactive": "archived",
}

APPROVAL_STATUSES = ("Pending", "Approved", "Rejected")
PRODUCTION_STATUSES = ("Lab Dip", "Bulk Fabric", "Finished")
COLORWAY_REQUIRED = ("name", "code", "placement", "materialType")

ITEM_SECTIONS = ("bom", "measurements", "howToMeasures", "colorways")

COMPLETENESS_CHECKS = (
    "Article Code",
    "Product Name",
    "Fabric Description",
    "Bill of Materials",
    "Measurement Chart",
    "Colorways",
)


def normalize_status(value: Any) -> str:
    if not isinstance(value, str):
        return "draft"
    key = value.strip().lower().replace("-", " ")
    return _LEGACY_STATUS.get(key) or _LEGACY_STATUS.get(key.replace(" ", "_")) or "draft"


def normalize_article_code(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().upper()


def validate_article_code(value: Any, path: str = "articleInfo.articleCode") -> List[Issue]:
    code = normalize_article_code(value)
    if not code:
        return [issue("ARTICLE_CODE_REQUIRED", "Article code is required", path)]
    if not ARTICLE_CODE_RE.match(code):
        return [
            issue(
                "ARTICLE_CODE_INVALID",
                "Article code may only contain uppercase letters, digits, hyphens and underscores",
                path,
                {"value": value},
            )
        ]
    return []


def slug_code(name: Any) -> str:
    if not isinstance(name, str):
        return ""
    return re.sub(r"[^A-Z0-9]+", "-", name.upper()).strip("-")


def new_item_id() -> str:
    return uuid.uuid4().hex


def ensure_item_id(item: dict) -> dict:
    out = dict(item)
    if not out.get("id"):
        legacy = out.get("_id")
        out["id"] = str(legacy) if legacy else new_item_id()
    out.pop("_id", None)
    return out


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value.strip() if isinstance(value, str) else str(value)


def sanitize_colorway(raw: Any) -> dict:
    """Fill colorway defaults; leaves required text fields empty when unknown."""
    item = ensure_item_id(raw if isinstance(raw, dict) else {})
    item["name"] = _text(item.get("name"))
    code = _text(item.get("code"))
    item["code"] = code or slug_code(item["name"])
    item["placement"] = _text(item.get("placement"))
    item["materialType"] = _text(item.get("materialType"))
    hex_color = _text(item.get("hexColor"))
    item["hexColor"] = hex_color if HEX_COLOR_RE.match(hex_color) else DEFAULT_HEX
    pantone = _text(item.get("pantoneCode"))
    if pantone:
        item["pantoneCode"] = pantone
    else:
        item.pop("pantoneCode", None)
    if item.get("approvalStatus") not in APPROVAL_STATUSES:
        item["approvalStatus"] = "Pending"
    if item.get("productionStatus") not in PRODUCTION_STATUSES:
        item["productionStatus"] = "Lab Dip"
    parts = item.get("parts")
    item["parts"] = [copy.deepcopy(p) for p in parts] if isinstance(parts, list) else []
    return item


def validate_colorway(item: dict, index: int) -> List[Issue]:
    issues: List[Issue] = []
    for key in COLORWAY_REQUIRED:
        if not _text(item.get(key)):
            issues.append(issue("COLORWAY_FIELD_REQUIRED", f"Colorway {key} is required", f"colorways[{index}].{key}"))
    return issues


def validate_for_save(record: dict) -> List[Issue]:
    issues: List[Issue] = []
    info = record.get("articleInfo") if isinstance(record.get("articleInfo"), dict) else {}
    if not _text(info.get("productName")):
        issues.append(issue("PRODUCT_NAME_REQUIRED", "Product name is required", "articleInfo.productName"))
    issues.extend(validate_article_code(info.get("articleCode")))
    colorways = record.get("colorways") or []
    for idx, raw in enumerate(colorways):
        issues.extend(validate_colorway(sanitize_colorway(raw), idx))
    return issues


def compute_completeness(record: dict) -> dict:
    info = record.get("articleInfo") if isinstance(record.get("articleInfo"), dict) else {}
    satisfied = {
        "Article Code": bool(_text(info.get("articleCode"))),
        "Product Name": bool(_text(info.get("productName"))),
        "Fabric Description": bool(_text(info.get("fabricDescription"))),
        "Bill of Materials": bool(record.get("bom")),
        "Measurement Chart": bool(record.get("measurements")),
        "Colorways": bool(record.get("colorways")),
    }
    missing = [name for name in COMPLETENESS_CHECKS if not satisfied[name]]
    done = len(COMPLETENESS_CHECKS) - len(missing)
    return {
        "isComplete": not missing,
        "missingItems": missing,
        "completionPercentage": round(100 * done / len(COMPLETENESS_CHECKS)),
    }


def content_payload(record: dict) -> Dict[str, Any]:
    """Strip identity/audit fields; what the client sends on create/update."""
    payload = {
        "articleInfo": copy.deepcopy(record.get("articleInfo") or {}),
        "packingNotes": record.get("packingNotes") or "",
        "status": normalize_status(record.get("status")),
    }
    for section in ITEM_SECTIONS:
        payload[section] = copy.deepcopy(record.get(section) or [])
    payload["articleInfo"]["articleCode"] = normalize_article_code(payload["articleInfo"].get("articleCode"))
    payload["colorways"] = [sanitize_colorway(c) for c in payload["colorways"]]
    return payload
