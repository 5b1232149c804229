# fetch_duels.py
# Resolve candidate duel ids into full duel records.
# Concurrent inside a batch, blocking delay between batches.
# A duel that can't be fetched is dropped for this run, never fatal.

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional

import aiohttp

from http_utils import HttpRetryExhausted, SlidingWindowLimiter, api_get_json
from settings import SyncSettings

logger = logging.getLogger("ggstats.resolve")


async def fetch_duel(
    session: aiohttp.ClientSession,
    limiter: Optional[SlidingWindowLimiter],
    settings: SyncSettings,
    game_id: str,
) -> Optional[Dict[str, Any]]:
    url = f"{settings.duels_url.rstrip('/')}/{game_id}"
    try:
        status, duel = await api_get_json(session, limiter, url, max_retries=settings.max_retries)
    except HttpRetryExhausted as e:
        logger.debug(f"[resolve] drop {game_id}: {e}")
        return None
    except Exception as e:
        logger.debug(f"[resolve] drop {game_id}: {type(e).__name__}: {e}")
        return None
    if not (200 <= status < 300) or not isinstance(duel, dict):
        logger.debug(f"[resolve] drop {game_id}: status={status}")
        return None
    return duel


async def resolve_duels(
    session: aiohttp.ClientSession,
    settings: SyncSettings,
    candidates: Mapping[str, Optional[int]],
    limiter: Optional[SlidingWindowLimiter] = None,
) -> Dict[str, Dict[str, Any]]:
    """
    candidates: gameId -> created (epoch ms) from the feed.
    Returns gameId -> duel, each duel stamped with 'created' from the feed.
    """
    ids: List[str] = list(candidates)
    results: Dict[str, Dict[str, Any]] = {}
    batch = settings.batch_size

    for i in range(0, len(ids), batch):
        chunk = ids[i:i + batch]
        logger.info(f"[resolve] fetching duel details {i + 1}-{i + len(chunk)} of {len(ids)}")
        duels = await asyncio.gather(*(fetch_duel(session, limiter, settings, gid) for gid in chunk))
        for gid, duel in zip(chunk, duels):
            if duel is None:
                continue
            duel = dict(duel)
            duel.setdefault("gameId", gid)
            duel["created"] = candidates[gid]
            results[gid] = duel

        # cool down between waves, not after the last one
        if i + batch < len(ids) and settings.batch_delay > 0:
            await asyncio.sleep(settings.batch_delay)

    dropped = len(ids) - len(results)
    logger.info(f"[resolve] resolved={len(results)} dropped={dropped}")
    return results
