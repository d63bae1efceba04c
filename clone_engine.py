"""Copy selected sections of a tech pack into a fresh record."""

from __future__ import annotations

import copy
import logging
from datetime import datetime, timezone
from typing import Iterable, List

from tpsync.errors import Issue, ServerError, ValidationError, issue

from reconcile import ARTICLE_DEFAULTS, empty_techpack, normalize_techpack
from techpack_validation import compute_completeness, new_item_id, normalize_article_code, validate_article_code


logger = logging.getLogger("tpsync.clone")

SECTION_FIELDS = {
    "ArticleInfo": "articleInfo",
    "BOM": "bom",
    "Measurements": "measurements",
    "Construction": "howToMeasures",
    "Colorways": "colorways",
    "Packing": "packingNotes",
}
CLONE_SECTIONS = tuple(SECTION_FIELDS)
DEFAULT_SECTIONS = tuple(s for s in CLONE_SECTIONS if s != "Colorways")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def validate_clone_request(
    new_product_name: str | None,
    new_article_code: str | None,
    sections: Iterable[str] | None = None,
    season: str | None = None,
) -> dict:
    issues: List[Issue] = []
    name = (new_product_name or "").strip()
    if not name:
        issues.append(issue("PRODUCT_NAME_REQUIRED", "Product name is required", "productName"))
    issues.extend(validate_article_code(new_article_code, "articleCode"))
    selected = list(DEFAULT_SECTIONS) if sections is None else list(sections)
    if not selected:
        issues.append(issue("SECTIONS_REQUIRED", "Select at least one section to copy", "sections"))
    unknown = [s for s in selected if s not in SECTION_FIELDS]
    if unknown:
        issues.append(
            issue("SECTION_UNKNOWN", f"Unknown sections: {', '.join(map(str, unknown))}", "sections", {"allowed": list(CLONE_SECTIONS)})
        )
    if issues:
        raise ValidationError("Clone request is invalid", issues)
    request = {
        "productName": name,
        "articleCode": normalize_article_code(new_article_code),
        "sections": [s for s in CLONE_SECTIONS if s in selected],
    }
    if season and season.strip():
        request["season"] = season.strip()
    return request


def _fresh_items(items: list) -> list:
    out = []
    for item in items or []:
        copied = copy.deepcopy(item)
        copied.pop("_id", None)
        copied["id"] = new_item_id()
        out.append(copied)
    return out


def build_clone(source: dict, request: dict, actor: str, now: str | None = None) -> dict:
    """Return a new unsaved record built from ``source``.

    Unselected sections start empty. Identity, sharing, comments and history
    never carry over.
    """
    stamp = now or _now()
    clone = empty_techpack()
    selected = set(request.get("sections") or DEFAULT_SECTIONS)
    if "ArticleInfo" in selected:
        info = dict(ARTICLE_DEFAULTS)
        info.update(copy.deepcopy(source.get("articleInfo") or {}))
        clone["articleInfo"] = info
    for section, field in SECTION_FIELDS.items():
        if section == "ArticleInfo" or section not in selected:
            continue
        if field == "packingNotes":
            clone[field] = source.get(field) or ""
        else:
            clone[field] = _fresh_items(source.get(field) or [])
    clone["articleInfo"]["productName"] = request["productName"]
    clone["articleInfo"]["articleCode"] = request["articleCode"]
    if request.get("season"):
        clone["articleInfo"]["season"] = request["season"]
    clone.update(
        {
            "status": "draft",
            "version": 1,
            "sharedWith": [],
            "createdBy": actor,
            "updatedBy": actor,
            "createdAt": stamp,
            "updatedAt": stamp,
        }
    )
    clone["completeness"] = compute_completeness(clone)
    return clone


def _field_issues(exc: ServerError) -> List[Issue]:
    out = []
    for err in exc.field_errors:
        out.append(issue(err.get("code") or "SERVER_FIELD_ERROR", err.get("message") or exc.message, err.get("path")))
    return out


class CloneEngine:
    def __init__(self, transport) -> None:
        self._transport = transport

    def clone(
        self,
        source_id: str,
        new_product_name: str,
        new_article_code: str,
        sections: Iterable[str] | None = None,
        season: str | None = None,
    ) -> dict:
        request = validate_clone_request(new_product_name, new_article_code, sections, season)
        identity = {k: v for k, v in request.items() if k != "sections"}
        try:
            payload = self._transport.clone_record(source_id, identity, request["sections"])
        except ServerError as exc:
            if exc.field_errors:
                raise ValidationError(exc.message, _field_issues(exc)) from exc
            raise
        record = normalize_techpack(payload)
        logger.info("techpack_cloned source=%s clone=%s sections=%s", source_id, record["id"], ",".join(request["sections"]))
        return record
