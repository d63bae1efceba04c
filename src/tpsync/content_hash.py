"""Digest of the user-authored content of a tech pack."""

from __future__ import annotations

import hashlib
from typing import Any

from .canonical_json import canonical_dumps


CONTENT_FIELDS = ("articleInfo", "bom", "measurements", "howToMeasures", "colorways", "packingNotes")


def content_hash(record: Any) -> str:
    """Return ``sha256:<hex>`` over the content fields of ``record``.

    Identity, status and audit fields are left out so two revisions with the
    same product content hash equal.
    """
    content = {}
    if isinstance(record, dict):
        content = {key: record.get(key) for key in CONTENT_FIELDS if key in record}
    digest = hashlib.sha256(canonical_dumps(content).encode("utf-8")).hexdigest()
    return f"sha256:{digest}"
