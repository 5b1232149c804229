# sync_duels.py
# One sync run: walk feed -> resolve duels -> persist new ones -> advance watermark.
# Round ids are only returned once their duels are durable.
#
# Modes:
#   incremental  stop at the stored watermark
#   windowed     stop at now - N days
#   full         never stop early (page cap still applies)

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp

from fetch_duels import resolve_duels
from fetch_feed import STOP_EXHAUSTED, STOP_PAGE_CAP, FeedWalker, WalkResult
from http_utils import SlidingWindowLimiter
from process_rounds import DispatchReport, dispatch_rounds
from settings import SyncSettings
from utils import day_key, ensure_list, now_ms, utc_iso

logger = logging.getLogger("ggstats.sync")

MODE_INCREMENTAL = "incremental"
MODE_WINDOWED = "windowed"
MODE_FULL = "full"
MODES = (MODE_INCREMENTAL, MODE_WINDOWED, MODE_FULL)

DAY_MS = 24 * 60 * 60 * 1000


class LedgerError(Exception):
    pass


# ---------- Remote ledger (the /api endpoints of sync_server) ----------

class RemoteLedger:
    def __init__(self, session: aiohttp.ClientSession, base_url: str):
        self.session = session
        self.base = base_url.rstrip("/")

    async def _json(self, method: str, path: str, payload: Any = None) -> Dict[str, Any]:
        async with self.session.request(method, f"{self.base}{path}", json=payload) as resp:
            status = resp.status
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                raise LedgerError(f"Received an invalid response from the server ({path}, status={status}).")
        if status >= 400 or not isinstance(data, dict):
            msg = data.get("message") if isinstance(data, dict) else None
            raise LedgerError(msg or f"Server returned status={status} for {path}")
        return data

    async def get_last_sync(self) -> int:
        data = await self._json("GET", "/api/last-sync")
        return int(data.get("lastSync") or 0)

    async def advance_last_sync(self, ts: int) -> int:
        data = await self._json("POST", "/api/last-sync", {"lastSync": int(ts)})
        return int(data.get("lastSync") or 0)

    async def sync(self, duels: List[Dict[str, Any]]) -> Dict[str, Any]:
        data = await self._json("POST", "/api/sync", duels)
        if data.get("status") != "success":
            raise LedgerError(data.get("message") or "Server returned an error.")
        return data

    async def missing_round_ids(self) -> List[str]:
        data = await self._json("GET", "/api/missing-rounds")
        return list(data.get("roundIds") or [])


async def _call(fn: Callable, *args):
    """Await async ledger methods; run blocking ones (SQLite) off the loop."""
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    return await asyncio.to_thread(fn, *args)


# ---------- Run context / result ----------

@dataclass(frozen=True)
class SyncContext:
    mode: str
    watermark: int                 # read once at run start
    boundary: Optional[int]        # None -> full scan
    started_ms: int


@dataclass
class SyncResult:
    mode: str
    watermark_before: int
    watermark_after: int
    found: int = 0
    resolved: int = 0
    added_count: int = 0
    rounds_to_process: List[str] = field(default_factory=list)
    rounds_total: int = 0
    pages_scanned: int = 0
    stop_reason: Optional[str] = None
    partial: bool = False
    stats_by_day: Dict[str, Dict[str, int]] = field(default_factory=dict)

    @property
    def skipped(self) -> int:
        return self.found - self.added_count

    @property
    def rounds_skipped(self) -> int:
        return self.rounds_total - len(self.rounds_to_process)


def build_context(mode: str, watermark: int, days: Optional[int] = None, now: Optional[int] = None) -> SyncContext:
    if mode not in MODES:
        raise ValueError(f"unknown sync mode {mode!r}; expected one of {MODES}")
    now = now_ms() if now is None else now
    if mode == MODE_INCREMENTAL:
        boundary = watermark
    elif mode == MODE_WINDOWED:
        if not days or days < 1:
            raise ValueError("windowed sync needs days >= 1")
        boundary = now - days * DAY_MS
    else:
        boundary = None
    return SyncContext(mode=mode, watermark=watermark, boundary=boundary, started_ms=now)


def walk_covers_watermark(walk: WalkResult, watermark: int) -> bool:
    """True when the walk reached everything newer than the watermark."""
    if walk.stop_reason == STOP_EXHAUSTED:
        return True
    return walk.oldest_seen is not None and walk.oldest_seen <= watermark


def stats_by_day(duels: List[Dict[str, Any]], added_ids: set) -> Dict[str, Dict[str, int]]:
    out: Dict[str, Dict[str, int]] = {}
    for d in duels:
        key = day_key(d.get("created"))
        if key is None:
            continue
        day = out.setdefault(key, {"duels": 0, "locations": 0})
        day["duels"] += 1
        if d.get("gameId") in added_ids:
            day["locations"] += len(ensure_list(d.get("rounds")))
    return dict(sorted(out.items(), reverse=True))


# ---------- Orchestrator ----------

async def run_sync(
    mode: str,
    ledger: Any,
    session: aiohttp.ClientSession,
    settings: SyncSettings,
    days: Optional[int] = None,
    limiter: Optional[SlidingWindowLimiter] = None,
    now: Optional[int] = None,
) -> SyncResult:
    watermark = int(await _call(ledger.get_last_sync) or 0)
    ctx = build_context(mode, watermark, days, now)
    logger.info(
        f"[sync] start mode={ctx.mode} watermark={utc_iso(ctx.watermark)} boundary={utc_iso(ctx.boundary)}"
    )

    walker = FeedWalker(session, settings, ctx.boundary, limiter)
    walk = await walker.walk()
    result = SyncResult(
        mode=ctx.mode,
        watermark_before=ctx.watermark,
        watermark_after=ctx.watermark,
        found=len(walk.candidates),
        pages_scanned=walk.pages_scanned,
        stop_reason=walk.stop_reason,
    )
    logger.info(
        f"[sync] feed done pages={walk.pages_scanned} entries={walk.entries_scanned} "
        f"candidates={result.found} malformed={walk.malformed} stop={walk.stop_reason}"
    )

    duels: List[Dict[str, Any]] = []
    if walk.candidates:
        resolved = await resolve_duels(session, settings, walk.candidates, limiter)
        duels = list(resolved.values())
    result.resolved = len(duels)
    result.rounds_total = sum(len(ensure_list(d.get("rounds"))) for d in duels)

    # persistence failure propagates; the watermark stays where it was
    if duels:
        res = await _call(ledger.sync, duels)
        result.added_count = int(res.get("addedCount") or 0)
        result.rounds_to_process = list(res.get("roundsToProcess") or [])

    added_ids = {r.rpartition("_")[0] for r in result.rounds_to_process}
    result.stats_by_day = stats_by_day(duels, added_ids)

    covered = walk_covers_watermark(walk, ctx.watermark)
    result.partial = walk.stop_reason == STOP_PAGE_CAP and not covered
    newest = walk.max_created
    if newest is not None and newest > ctx.watermark:
        if covered:
            result.watermark_after = int(await _call(ledger.advance_last_sync, newest))
        elif result.partial:
            logger.warning(
                f"[sync] page cap hit before reaching watermark {utc_iso(ctx.watermark)}; "
                f"watermark not advanced, older history may be missing"
            )
        else:
            logger.info(f"[sync] window starts after watermark {utc_iso(ctx.watermark)}; watermark held")

    logger.info(
        f"[sync] done found={result.found} added={result.added_count} skipped={result.skipped} "
        f"rounds_new={len(result.rounds_to_process)} rounds_skipped={result.rounds_skipped} "
        f"watermark={utc_iso(result.watermark_after)} partial={result.partial}"
    )
    return result


async def sync_and_enrich(
    mode: str,
    ledger: Any,
    session: aiohttp.ClientSession,
    settings: SyncSettings,
    enrich: Optional[Callable[[str], Awaitable[Dict[str, Any]]]] = None,
    days: Optional[int] = None,
    limiter: Optional[SlidingWindowLimiter] = None,
) -> Tuple[SyncResult, Optional[DispatchReport]]:
    result = await run_sync(mode, ledger, session, settings, days=days, limiter=limiter)
    report = None
    if enrich is not None and result.rounds_to_process:
        report = await dispatch_rounds(result.rounds_to_process, enrich, settings.round_delay)
    return result, report


async def enrich_missing(
    ledger: Any,
    enrich: Callable[[str], Awaitable[Dict[str, Any]]],
    delay: float = 0.05,
) -> DispatchReport:
    """Dispatch every stored round that still has no embedding (retries earlier failures)."""
    if isinstance(ledger, RemoteLedger):
        round_ids = await ledger.missing_round_ids()
    else:
        round_ids = await asyncio.to_thread(lambda: list(ledger.iter_missing_round_ids()))
    logger.info(f"[enrich] sweep found {len(round_ids)} rounds without an embedding")
    return await dispatch_rounds(round_ids, enrich, delay)


def sync_blocking(mode: str, ledger: Any, settings: SyncSettings, days: Optional[int] = None) -> SyncResult:
    """Notebook-safe wrapper: opens its own session; reuses a running loop if there is one."""
    import nest_asyncio
    import http_utils

    async def _run():
        limiter = SlidingWindowLimiter(settings.rate_max, settings.rate_window)
        async with http_utils.build_session(settings.cookie, limit=settings.batch_size * 2) as session:
            return await run_sync(mode, ledger, session, settings, days=days, limiter=limiter)

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(_run())
    # notebook: a loop is already running, let it re-enter
    nest_asyncio.apply(loop)
    return loop.run_until_complete(_run())


def format_summary(result: SyncResult, report: Optional[DispatchReport] = None) -> str:
    lines = [
        f"Total Duels Found: {result.found}",
        f"New Duels Added: {result.added_count}",
        f"Duels Skipped: {result.skipped}",
        f"New Locations: {len(result.rounds_to_process)}",
    ]
    for day, s in result.stats_by_day.items():
        lines.append(f"  {day}: Found {s['duels']} duels ({s['locations']} new locations)")
    if result.rounds_skipped > 0:
        lines.append(f"Skipped {result.rounds_skipped} locations (already processed).")
    if report is not None:
        lines.append(f"Embeddings: {report.succeeded}/{report.attempted} ok, {len(report.failed)} failed")
    lines.append(f"Last sync: {utc_iso(result.watermark_after) or 'never'}")
    if result.partial:
        lines.append(
            "PARTIAL SYNC: page limit reached before the last sync point; "
            "run again with a higher --max-pages to close the gap."
        )
    return "\n".join(lines)
