"""Wire the client engines together from settings."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from clone_engine import CloneEngine
from draft_store import DraftAutosaver, DraftStore
from list_cache import ListCache, TechPackListing
from revision_ledger import RevisionLedger
from techpack_state import TechPackState

from app.config import Settings, load_settings
from app.kv import FileKeyValueStore
from app.transport import HttpTransport, StaticTokenProvider, TechPackTransport, TokenProvider


@dataclass
class TechPackClient:
    transport: TechPackTransport
    drafts: DraftStore
    autosaver: DraftAutosaver
    listing: TechPackListing
    ledger: RevisionLedger
    cloner: CloneEngine
    state: TechPackState


def build_client(
    settings: Settings | None = None,
    transport: TechPackTransport | None = None,
    kv=None,
    token_provider: TokenProvider | None = None,
    clock=None,
) -> TechPackClient:
    settings = settings or load_settings()
    if transport is None:
        transport = HttpTransport(
            settings.api_url,
            token_provider=token_provider or StaticTokenProvider(),
            timeout=settings.http_timeout,
        )
    if kv is None:
        kv = FileKeyValueStore(Path(settings.state_dir))
    drafts = DraftStore(kv)
    if clock is None:
        autosaver = DraftAutosaver(drafts, interval_ms=settings.autosave_ms)
    else:
        autosaver = DraftAutosaver(drafts, interval_ms=settings.autosave_ms, clock=clock)
    listing = TechPackListing(
        transport,
        ListCache(kv, default_limit=settings.page_size),
        page_size=settings.page_size,
        max_page_size=settings.max_page_size,
    )
    ledger = RevisionLedger(transport, page_size=settings.page_size)
    state = TechPackState(transport, drafts, autosaver, listing=listing, ledger=ledger)
    return TechPackClient(
        transport=transport,
        drafts=drafts,
        autosaver=autosaver,
        listing=listing,
        ledger=ledger,
        cloner=CloneEngine(transport),
        state=state,
    )
