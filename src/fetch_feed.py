# fetch_feed.py
# Walk the private activity feed (newest first) and collect candidate duel ids.
# Stops on: page cap, an empty page, or (incremental/windowed) the first entry
# created at or before the boundary. Malformed payloads are skipped.

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import aiohttp

from http_utils import HttpRetryExhausted, SlidingWindowLimiter, api_get_json
from settings import SyncSettings
from utils import parse_created, utc_iso

logger = logging.getLogger("ggstats.feed")

STOP_PAGE_CAP = "page_cap"
STOP_EXHAUSTED = "exhausted"
STOP_BOUNDARY = "boundary"


class FeedFetchError(Exception):
    """A feed page could not be fetched. Fatal to the run."""


class FeedPayloadError(ValueError):
    """A feed entry's payload is not one of the known shapes."""


# ---------- Payload union ----------

@dataclass(frozen=True)
class SingleEvent:
    event: Dict[str, Any]


@dataclass(frozen=True)
class EventBatch:
    events: List[Dict[str, Any]]


FeedPayload = Union[SingleEvent, EventBatch]


@dataclass(frozen=True)
class FeedEntry:
    created: Optional[int]   # epoch ms, None if unreadable
    payload: Any


def decode_payload(raw: Any) -> FeedPayload:
    """
    The feed ships payloads as JSON strings: either one event object or an
    array of {"payload": {...}} sub-events.
    """
    data = raw
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise FeedPayloadError(f"invalid JSON payload: {e}") from e
    if isinstance(data, dict):
        return SingleEvent(data)
    if isinstance(data, list):
        events = []
        for sub in data:
            inner = sub.get("payload") if isinstance(sub, dict) else None
            if isinstance(inner, dict):
                events.append(inner)
        if data and not events:
            raise FeedPayloadError("event array without any {\"payload\": {...}} items")
        return EventBatch(events)
    raise FeedPayloadError(f"unrecognized payload type {type(data).__name__}")


def extract_game_ids(payload: FeedPayload, game_mode: str) -> List[str]:
    events = [payload.event] if isinstance(payload, SingleEvent) else payload.events
    out = []
    for ev in events:
        gid = ev.get("gameId")
        if ev.get("gameMode") == game_mode and isinstance(gid, str) and gid:
            out.append(gid)
    return out


def parse_feed_entries(body: Any) -> List[FeedEntry]:
    if not isinstance(body, dict) or not isinstance(body.get("entries"), list):
        raise FeedFetchError(f"unexpected feed body type={type(body).__name__}")
    out = []
    for e in body["entries"]:
        if not isinstance(e, dict):
            out.append(FeedEntry(None, None))
            continue
        out.append(FeedEntry(parse_created(e.get("created")), e.get("payload")))
    return out


# ---------- Fetch ----------

async def fetch_feed_page(
    session: aiohttp.ClientSession,
    limiter: Optional[SlidingWindowLimiter],
    settings: SyncSettings,
    page: int,
) -> List[FeedEntry]:
    params = {"count": settings.page_size, "page": page}
    try:
        status, body = await api_get_json(
            session, limiter, settings.feed_url, params, max_retries=settings.max_retries
        )
    except HttpRetryExhausted as e:
        raise FeedFetchError(f"Failed to fetch activity feed (page {page}): {e}") from e
    if not (200 <= status < 300) or body is None:
        raise FeedFetchError(f"Failed to fetch activity feed (page {page}): status={status}")
    return parse_feed_entries(body)


# ---------- Walker ----------

@dataclass
class FeedPage:
    index: int
    entries: List[FeedEntry]
    game_ids: Dict[str, Optional[int]]   # candidates on this page, in feed order


@dataclass
class WalkResult:
    candidates: Dict[str, Optional[int]] = field(default_factory=dict)  # gameId -> created (ms)
    pages_scanned: int = 0
    entries_scanned: int = 0
    malformed: int = 0
    stop_reason: Optional[str] = None
    oldest_seen: Optional[int] = None
    newest_seen: Optional[int] = None

    @property
    def max_created(self) -> Optional[int]:
        vals = [c for c in self.candidates.values() if c is not None]
        return max(vals) if vals else None


class FeedWalker:
    """
    Pages the feed from page 0. boundary=None never stops early (full mode).
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        settings: SyncSettings,
        boundary: Optional[int] = None,
        limiter: Optional[SlidingWindowLimiter] = None,
    ):
        self.session = session
        self.settings = settings
        self.boundary = boundary
        self.limiter = limiter
        self.result = WalkResult()

    def _scan_entry(self, entry: FeedEntry, page_ids: Dict[str, Optional[int]]) -> None:
        res = self.result
        res.entries_scanned += 1
        if entry.created is not None:
            res.oldest_seen = entry.created if res.oldest_seen is None else min(res.oldest_seen, entry.created)
            res.newest_seen = entry.created if res.newest_seen is None else max(res.newest_seen, entry.created)
        try:
            payload = decode_payload(entry.payload)
        except FeedPayloadError as e:
            res.malformed += 1
            logger.debug(f"[feed] skip entry created={utc_iso(entry.created)}: {e}")
            return
        for gid in extract_game_ids(payload, self.settings.game_mode):
            if gid not in res.candidates:
                res.candidates[gid] = entry.created
                page_ids[gid] = entry.created

    async def pages(self) -> AsyncIterator[FeedPage]:
        page = 0
        while True:
            if page >= self.settings.max_pages:
                logger.warning(f"[feed] reached max page limit of {self.settings.max_pages}")
                self.result.stop_reason = STOP_PAGE_CAP
                return

            entries = await fetch_feed_page(self.session, self.limiter, self.settings, page)
            self.result.pages_scanned += 1
            if not entries:
                logger.info(f"[feed] empty page {page}; history exhausted")
                self.result.stop_reason = STOP_EXHAUSTED
                return

            kept: List[FeedEntry] = []
            page_ids: Dict[str, Optional[int]] = {}
            hit_boundary = False
            for entry in entries:
                if (
                    self.boundary is not None
                    and entry.created is not None
                    and entry.created <= self.boundary
                ):
                    self.result.oldest_seen = (
                        entry.created if self.result.oldest_seen is None
                        else min(self.result.oldest_seen, entry.created)
                    )
                    hit_boundary = True
                    break
                kept.append(entry)
                self._scan_entry(entry, page_ids)

            last = entries[-1].created
            logger.info(
                f"[feed] page={page} entries={len(entries)} kept={len(kept)} new_ids={len(page_ids)} "
                f"oldest_on_page={utc_iso(last)}"
            )
            yield FeedPage(page, kept, page_ids)

            if hit_boundary:
                logger.info(f"[feed] reached boundary {utc_iso(self.boundary)} on page {page}")
                self.result.stop_reason = STOP_BOUNDARY
                return

            page += 1
            if self.settings.page_delay > 0:
                await asyncio.sleep(self.settings.page_delay)

    async def walk(self) -> WalkResult:
        async for _ in self.pages():
            pass
        return self.result


async def walk_feed(
    session: aiohttp.ClientSession,
    settings: SyncSettings,
    boundary: Optional[int] = None,
    limiter: Optional[SlidingWindowLimiter] = None,
) -> WalkResult:
    return await FeedWalker(session, settings, boundary, limiter).walk()
