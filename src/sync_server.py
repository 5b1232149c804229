#!/usr/bin/env python3
# sync_server.py
# HTTP face of the ledger, for a remote sync client and the dashboard.
#   GET  /api/last-sync       -> {"lastSync": ms-or-0}
#   POST /api/last-sync       {"lastSync": ms} -> forward-only advance
#   POST /api/sync            [duel, ...] -> {status, message, addedCount, totalCount, roundsToProcess}
#   POST /api/process-round   {"roundId"} -> {status, message}   (idempotent)
#   GET  /api/duels           -> every stored duel, newest first
#   GET  /api/missing-rounds  -> {"roundIds": [...]} stored rounds without an embedding

import argparse
import asyncio
import json
import logging
import sqlite3
from typing import Optional

from aiohttp import web

from DuelsDB import DuelsDB
from process_rounds import RoundEnricher, load_embedder
from settings import load_settings
from setup_logger import setup_logger
from utils import split_round_id

logger = logging.getLogger("ggstats.server")

DB_KEY = web.AppKey("db", DuelsDB)
ENRICHER_KEY = web.AppKey("enricher", object)
SYNC_LOCK_KEY = web.AppKey("sync_lock", asyncio.Lock)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


@web.middleware
async def cors_middleware(request: web.Request, handler):
    if request.method == "OPTIONS":
        return web.Response(status=204, headers=CORS_HEADERS)
    resp = await handler(request)
    resp.headers.update(CORS_HEADERS)
    return resp


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"status": "error", "message": message}, status=status)


async def _read_json(request: web.Request):
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


# ---------- Handlers ----------

async def get_last_sync(request: web.Request) -> web.Response:
    db = request.app[DB_KEY]
    return web.json_response({"lastSync": await asyncio.to_thread(db.get_last_sync)})


async def post_last_sync(request: web.Request) -> web.Response:
    body = await _read_json(request)
    ts = body.get("lastSync") if isinstance(body, dict) else None
    if isinstance(ts, bool) or not isinstance(ts, int) or ts < 0:
        return _error(400, "Invalid request body, expected an integer lastSync.")
    db = request.app[DB_KEY]
    async with request.app[SYNC_LOCK_KEY]:
        stored = await asyncio.to_thread(db.advance_last_sync, ts)
    return web.json_response({"status": "success", "lastSync": stored})


async def post_sync(request: web.Request) -> web.Response:
    body = await _read_json(request)
    if not isinstance(body, list):
        return _error(400, "Invalid data format. Expected an array of duels.")
    db = request.app[DB_KEY]
    try:
        async with request.app[SYNC_LOCK_KEY]:
            res = await asyncio.to_thread(db.sync, body)
    except sqlite3.Error as e:
        logger.error(f"[server] sync failed: {type(e).__name__}: {e}")
        return _error(500, f"Failed to persist duels: {e}")
    logger.info(f"[server] sync received={len(body)} added={res['addedCount']}")
    return web.json_response(res)


async def post_process_round(request: web.Request) -> web.Response:
    body = await _read_json(request)
    rid = body.get("roundId") if isinstance(body, dict) else None
    if not isinstance(rid, str) or not rid:
        return _error(400, "Invalid request body, expected a roundId.")
    try:
        split_round_id(rid)
    except ValueError as e:
        return _error(400, str(e))

    enricher: Optional[RoundEnricher] = request.app.get(ENRICHER_KEY)
    if enricher is None:
        return _error(503, "No embedding model configured.")
    try:
        res = await enricher.process_round(rid)
    except Exception as e:
        # image fetch, embedder and storage failures all come back as JSON
        logger.error(f"[server] process-round {rid} failed: {type(e).__name__}: {e}")
        return _error(500, f"Failed to process round: {e}")
    return web.json_response(res)


async def get_duels(request: web.Request) -> web.Response:
    db = request.app[DB_KEY]
    duels = await asyncio.to_thread(lambda: list(db.iter_duels()))
    return web.json_response(duels)


async def get_missing_rounds(request: web.Request) -> web.Response:
    db = request.app[DB_KEY]
    rids = await asyncio.to_thread(lambda: list(db.iter_missing_round_ids()))
    return web.json_response({"roundIds": rids})

def create_app(db: DuelsDB, enricher: Optional[RoundEnricher] = None) -> web.Application:
    app = web.Application(middlewares=[cors_middleware], client_max_size=64 * 1024 ** 2)
    app[DB_KEY] = db
    app[SYNC_LOCK_KEY] = asyncio.Lock()
    if enricher is not None:
        app[ENRICHER_KEY] = enricher
    app.router.add_get("/api/last-sync", get_last_sync)
    app.router.add_post("/api/last-sync", post_last_sync)
    app.router.add_post("/api/sync", post_sync)
    app.router.add_post("/api/process-round", post_process_round)
    app.router.add_get("/api/duels", get_duels)
    app.router.add_get("/api/missing-rounds", get_missing_rounds)
    return app


# ---------- Main ----------

def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Serve the duel ledger over HTTP (last-sync, sync, process-round, duels).")
    p.add_argument("--data-root", default=None, help="Folder holding duels.sqlite and logs/ (default: GGSTATS_DATA_ROOT or data)")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8080)
    p.add_argument("--embedder", default=None, help="Embedding callable as 'module:function' (enables process-round)")
    return p.parse_args()


def main():
    args = parse_args()
    settings = load_settings().with_overrides(data_root=args.data_root)
    setup_logger(settings.data_root, prefix="server", level=settings.log_level)

    db = DuelsDB(settings.data_root)
    enricher = None
    if args.embedder:
        enricher = RoundEnricher(db, load_embedder(args.embedder), api_key=settings.streetview_key)

    async def _attach_session(app: web.Application):
        # Street View fetches share one client session for the server's lifetime
        if enricher is not None:
            from http_utils import build_session
            enricher.session = build_session()
            yield
            await enricher.session.close()
        else:
            yield

    app = create_app(db, enricher)
    app.cleanup_ctx.append(_attach_session)
    logger.info(f"[server] db={db.sqlite_path} duels={db.count_duels()} embedder={args.embedder}")
    try:
        web.run_app(app, host=args.host, port=args.port)
    finally:
        db.close()


if __name__ == "__main__":
    main()
