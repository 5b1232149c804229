# http_utils.py
# Shared aiohttp plumbing: global sliding-window rate limit and GET with retries.

import asyncio
import json
import logging
import random
import time
from collections import deque
from typing import Any, Dict, Optional, Tuple

import aiohttp

from settings import DEFAULT_HEADERS

logger = logging.getLogger("ggstats.http")

RETRY_STATUSES = {408, 420, 429, 500, 502, 503, 504}


class HttpRetryExhausted(Exception):
    pass


# ---------- Rate Limiter (sliding window) ----------

class SlidingWindowLimiter:
    def __init__(self, max_calls: int, window_sec: float):
        self.max_calls = max_calls
        self.window = window_sec
        self._dq = deque()  # monotonic times
        self._lock = asyncio.Lock()

    async def acquire(self):
        while True:
            async with self._lock:
                now = time.monotonic()
                # drop stale
                while self._dq and (now - self._dq[0]) > self.window:
                    self._dq.popleft()
                if len(self._dq) < self.max_calls:
                    self._dq.append(now)
                    return
                # need to wait
                wait = self.window - (now - self._dq[0]) + random.uniform(0.01, 0.05)
                wait = max(0.01, min(wait, self.window))
                logger.debug(f"[rate] stall {wait:.3f}s; q={len(self._dq)}/{self.max_calls}")
            await asyncio.sleep(wait)


def build_session(cookie: Optional[str] = None, limit: int = 20) -> aiohttp.ClientSession:
    cookies = {"_ncfa": cookie} if cookie else None
    timeout = aiohttp.ClientTimeout(total=30)
    conn = aiohttp.TCPConnector(limit=limit, ttl_dns_cache=60)
    return aiohttp.ClientSession(timeout=timeout, connector=conn, cookies=cookies, headers=DEFAULT_HEADERS)


# ---------- HTTP GET with retries ----------

async def api_get_json(
    session: aiohttp.ClientSession,
    limiter: Optional[SlidingWindowLimiter],
    url: str,
    params: Optional[Dict[str, Any]] = None,
    max_retries: int = 4,
    backoff: float = 0.5,
) -> Tuple[int, Any]:
    """
    Returns (status, data). data is the decoded JSON on 2xx, else None.
    Retries 408/429/5xx and connection errors with jittered backoff;
    any other status comes straight back to the caller.
    Raises HttpRetryExhausted once retries run out.
    """
    attempt = 0
    status: Optional[int] = None

    while attempt < max_retries:
        attempt += 1
        if limiter is not None:
            await limiter.acquire()
        try:
            async with session.get(url, params=params, timeout=aiohttp.ClientTimeout(total=20)) as resp:
                status = resp.status
                text = await resp.text()

                if 200 <= status < 300:
                    try:
                        return status, json.loads(text)
                    except json.JSONDecodeError:
                        logger.warning(f"[http] JSON parse error len={len(text)} url={url} params={params}")
                        return status, None

                if status in RETRY_STATUSES:
                    ra = resp.headers.get("Retry-After") if resp.headers else None
                    try:
                        sleep_s = float(ra) if ra else backoff * random.uniform(0.4, 0.9)
                    except ValueError:
                        sleep_s = backoff * random.uniform(0.4, 0.9)
                    backoff = min(backoff * 2.0, 8.0)
                    logger.debug(f"[http] retry {attempt}/{max_retries} status={status} sleep={sleep_s:.2f} url={url}")
                    await asyncio.sleep(sleep_s)
                    continue

                logger.debug(f"[http] non-retriable status={status} url={url} body[:200]={text[:200]!r}")
                return status, None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            sleep_s = backoff * random.uniform(0.4, 0.9)
            backoff = min(backoff * 2.0, 8.0)
            logger.debug(f"[http] exception {type(e).__name__} retry {attempt}/{max_retries} sleep={sleep_s:.2f} url={url}")
            await asyncio.sleep(sleep_s)
            continue

    raise HttpRetryExhausted(f"status={status} url={url} params={params}")
