"""Change summaries recorded on each revision."""

from __future__ import annotations

import re
from typing import Any, Dict

from tpsync.canonical_json import canonical_dumps


TRACKED_SECTIONS = ("bom", "measurements", "howToMeasures", "colorways")


def start_case(name: str) -> str:
    words = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", name).replace("_", " ").split()
    return " ".join(w[:1].upper() + w[1:] for w in words)


def _same(a: Any, b: Any) -> bool:
    return canonical_dumps(a) == canonical_dumps(b)


def _by_id(items: Any) -> Dict[str, dict]:
    out: Dict[str, dict] = {}
    for idx, item in enumerate(items or []):
        if isinstance(item, dict):
            out[str(item.get("id") or item.get("_id") or f"#{idx}")] = item
    return out


def summarize(details: Dict[str, dict]) -> str:
    parts = []
    for section, counts in details.items():
        changes = [f"{counts[key]} {key}" for key in ("added", "modified", "removed") if counts.get(key)]
        if changes:
            parts.append(f"{start_case(section)}: {', '.join(changes)}")
    return ". ".join(parts) or "Minor updates."


def compare_techpacks(old: dict | None, new: dict) -> dict:
    old = old or {}
    details: Dict[str, dict] = {}
    diff: Dict[str, dict] = {}

    for section in TRACKED_SECTIONS:
        before = _by_id(old.get(section))
        after = _by_id(new.get(section))
        added = [k for k in after if k not in before]
        removed = [k for k in before if k not in after]
        modified = [k for k in after if k in before and not _same(before[k], after[k])]
        for key in added:
            diff[f"{section}.{key}"] = {"old": None, "new": after[key]}
        for key in removed:
            diff[f"{section}.{key}"] = {"old": before[key], "new": None}
        for key in modified:
            diff[f"{section}.{key}"] = {"old": before[key], "new": after[key]}
        if added or removed or modified:
            details[section] = {"added": len(added), "removed": len(removed), "modified": len(modified)}

    old_info = old.get("articleInfo") or {}
    new_info = new.get("articleInfo") or {}
    changed = 0
    for field in sorted(set(old_info) | set(new_info)):
        if not _same(old_info.get(field), new_info.get(field)):
            diff[f"articleInfo.{field}"] = {"old": old_info.get(field), "new": new_info.get(field)}
            changed += 1
    if changed:
        details["articleInfo"] = {"modified": changed}

    if (old.get("packingNotes") or "") != (new.get("packingNotes") or ""):
        diff["packingNotes"] = {"old": old.get("packingNotes"), "new": new.get("packingNotes")}
        details["packingNotes"] = {"modified": 1}

    return {"summary": summarize(details), "details": details, "diff": diff}
