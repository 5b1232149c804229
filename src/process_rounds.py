# process_rounds.py
# Sequential per-round enrichment (image embeddings) for newly stored rounds.
# One round failing never stops the loop; the enrichment step itself skips
# rounds that already have an embedding, so a later sweep can retry safely.

import asyncio
import importlib
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import aiohttp

from DuelsDB import DuelsDB
from utils import split_round_id

logger = logging.getLogger("ggstats.enrich")

STREETVIEW_URL = "https://maps.googleapis.com/maps/api/streetview"

EnrichFn = Callable[[str], Awaitable[Dict[str, Any]]]
EmbedFn = Callable[[bytes], Awaitable[List[float]]]


class EnrichmentError(Exception):
    pass


@dataclass
class DispatchReport:
    attempted: int = 0
    succeeded: int = 0
    failed: List[str] = field(default_factory=list)


async def dispatch_rounds(
    round_ids: Sequence[str],
    enrich: EnrichFn,
    delay: float = 0.05,
) -> DispatchReport:
    report = DispatchReport()
    total = len(round_ids)
    for i, rid in enumerate(round_ids, start=1):
        report.attempted += 1
        logger.info(f"[enrich] generating embedding for round {i} of {total} ({rid})")
        try:
            res = await enrich(rid)
            report.succeeded += 1
            logger.debug(f"[enrich] {rid}: {res.get('message') if isinstance(res, dict) else res}")
        except Exception as e:
            report.failed.append(rid)
            logger.error(f"[enrich] failed to process round {rid}: {type(e).__name__}: {e}")
        if delay > 0 and i < total:
            await asyncio.sleep(delay)
    logger.info(f"[enrich] done attempted={report.attempted} ok={report.succeeded} failed={len(report.failed)}")
    return report


# ---------- Remote step: POST /api/process-round ----------

class ProcessRoundClient:
    def __init__(self, session: aiohttp.ClientSession, base_url: str):
        self.session = session
        self.url = f"{base_url.rstrip('/')}/api/process-round"

    async def __call__(self, rid: str) -> Dict[str, Any]:
        async with self.session.post(self.url, json={"roundId": rid}) as resp:
            text = await resp.text()
        try:
            res = json.loads(text)
        except json.JSONDecodeError:
            raise EnrichmentError(f"invalid response from the server for round {rid}")
        if not isinstance(res, dict) or res.get("status") != "success":
            msg = res.get("message") or res.get("error") if isinstance(res, dict) else None
            raise EnrichmentError(msg or f"server returned an error for round {rid}")
        return res


# ---------- Local step ----------

def get_fov(zoom: Optional[float]) -> int:
    if zoom is None:
        return 90
    return {1: 60, 2: 40, 3: 20}.get(round(zoom), 90)


def streetview_params(panorama: Dict[str, Any], api_key: str) -> Dict[str, Any]:
    return {
        "size": "640x640",
        "location": f"{panorama['lat']},{panorama['lng']}",
        "fov": get_fov(panorama.get("zoom")),
        "heading": panorama["heading"],
        "pitch": panorama.get("pitch") or 0,
        "key": api_key,
    }


def has_panorama(rnd: Dict[str, Any]) -> bool:
    pano = rnd.get("panorama") if isinstance(rnd, dict) else None
    return isinstance(pano, dict) and all(pano.get(k) is not None for k in ("lat", "lng", "heading"))


async def fetch_streetview_image(
    session: aiohttp.ClientSession, panorama: Dict[str, Any], api_key: Optional[str]
) -> bytes:
    if not api_key:
        raise EnrichmentError("Street View API key is missing.")
    async with session.get(STREETVIEW_URL, params=streetview_params(panorama, api_key)) as resp:
        if resp.status != 200:
            raise EnrichmentError(f"Failed to fetch Street View image: status={resp.status}")
        return await resp.read()


def load_embedder(path: str) -> EmbedFn:
    """'package.module:function' -> async embed(image_bytes). Sync callables run in a thread."""
    mod_name, _, attr = path.partition(":")
    if not mod_name or not attr:
        raise ValueError(f"embedder must look like 'module:function', got {path!r}")
    fn = getattr(importlib.import_module(mod_name), attr)
    if inspect.iscoroutinefunction(fn):
        return fn

    async def _embed(image: bytes) -> List[float]:
        return await asyncio.to_thread(fn, image)

    return _embed


class RoundEnricher:
    """
    Local process-round: embedding exists -> skip; panorama missing -> skip;
    otherwise fetch the image, embed it, store the vector under the round id.
    The embedding model is injected (embed(image_bytes) -> list of floats).
    """

    def __init__(
        self,
        db: DuelsDB,
        embed: EmbedFn,
        session: Optional[aiohttp.ClientSession] = None,
        api_key: Optional[str] = None,
        fetch_image: Optional[Callable[[Dict[str, Any]], Awaitable[bytes]]] = None,
    ):
        self.db = db
        self.embed = embed
        self.session = session
        self.api_key = api_key
        self._fetch_image = fetch_image

    async def fetch_image(self, panorama: Dict[str, Any]) -> bytes:
        if self._fetch_image is not None:
            return await self._fetch_image(panorama)
        if self.session is None:
            raise EnrichmentError("no HTTP session for Street View")
        return await fetch_streetview_image(self.session, panorama, self.api_key)

    async def process_round(self, rid: str) -> Dict[str, Any]:
        split_round_id(rid)  # ValueError on a malformed id
        if await asyncio.to_thread(self.db.has_embedding, rid):
            logger.info(f"[enrich] embedding for {rid} already exists. Skipping.")
            return {"status": "success", "message": f"Skipped {rid}, already exists."}

        rnd = await asyncio.to_thread(self.db.get_round, rid)
        if rnd is None:
            raise EnrichmentError(f"Could not find duel data for round {rid}")
        if not has_panorama(rnd):
            logger.warning(f"[enrich] skipping round {rid} due to missing panorama data.")
            return {"status": "success", "message": f"Skipped {rid}, missing data."}

        image = await self.fetch_image(rnd["panorama"])
        vector = await self.embed(image)
        if not vector:
            raise EnrichmentError("embedding model returned an empty vector")
        await asyncio.to_thread(self.db.save_embedding, rid, vector)
        logger.info(f"[enrich] saved embedding for {rid} dims={len(vector)}")
        return {"status": "success", "message": f"Processed {rid}."}

    async def __call__(self, rid: str) -> Dict[str, Any]:
        return await self.process_round(rid)
