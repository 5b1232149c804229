#!/usr/bin/env python3
import argparse
import asyncio
import os
import sys
from pathlib import Path

from DuelsDB import DuelsDB
from fetch_feed import FeedFetchError
from http_utils import SlidingWindowLimiter, build_session
from process_rounds import ProcessRoundClient, RoundEnricher, load_embedder
from settings import load_settings
from setup_logger import setup_logger
from sync_duels import (
    MODES,
    MODE_INCREMENTAL,
    MODE_WINDOWED,
    RemoteLedger,
    enrich_missing,
    format_summary,
    sync_and_enrich,
)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PARTIAL = 2


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync duels from the activity feed into the local duel DB")
    parser.add_argument(
        "--mode",
        choices=MODES,
        default=MODE_INCREMENTAL,
        help="incremental: new games since the last sync; windowed: last --days days; full: entire history",
    )
    parser.add_argument("--days", type=int, default=None, help="Days of history for --mode windowed")
    parser.add_argument(
        "--data-root",
        default=None,
        help="Folder holding duels.sqlite and logs/ (default: GGSTATS_DATA_ROOT or data)",
    )
    parser.add_argument("--max-pages", type=int, default=None, help="Feed page cap (default: 200)")
    parser.add_argument(
        "--remote",
        default=None,
        help="Base URL of a sync_server to use as the ledger instead of the local DB",
    )
    parser.add_argument("--embedder", default=None, help="Local embedding callable as 'module:function'")
    parser.add_argument("--no-enrich", action="store_true", help="Store duels only; skip round embeddings")
    parser.add_argument("--export", default=None, help="Write all rounds to this Parquet file after syncing")
    parser.add_argument(
        "--enrich-missing",
        action="store_true",
        help="After syncing, enrich every stored round that has no embedding yet (retries earlier failures)",
    )

    args = parser.parse_args(argv)
    if args.mode == MODE_WINDOWED and not args.days:
        parser.error("--mode windowed needs --days")
    if args.export and args.remote:
        parser.error("--export reads the local DB; it cannot be combined with --remote")
    if args.enrich_missing and args.no_enrich:
        parser.error("--enrich-missing and --no-enrich contradict each other")
    return args


class SyncLock:
    """One sync per data root at a time."""

    def __init__(self, data_root: str | Path):
        self.path = Path(data_root) / "sync.lock"

    def __enter__(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            raise RuntimeError(f"another sync is running (remove {self.path} if it is stale)")
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        return self

    def __exit__(self, *exc):
        self.path.unlink(missing_ok=True)


async def main_async(args: argparse.Namespace) -> int:
    settings = load_settings().with_overrides(
        data_root=args.data_root,
        max_pages=args.max_pages,
        server_url=args.remote,
    )
    logger = setup_logger(settings.data_root, prefix="sync", level=settings.log_level)
    if not settings.cookie:
        logger.warning("[start] GGSTATS_COOKIE is not set; the feed will likely refuse the request")

    limiter = SlidingWindowLimiter(settings.rate_max, settings.rate_window)
    db = None
    async with build_session(settings.cookie, limit=settings.batch_size * 2) as session:
        if settings.server_url:
            ledger = RemoteLedger(session, settings.server_url)
        else:
            db = DuelsDB(settings.data_root)
            ledger = db

        enrich = None
        if not args.no_enrich:
            if args.embedder and db is not None:
                enrich = RoundEnricher(db, load_embedder(args.embedder), session=session,
                                       api_key=settings.streetview_key)
            elif settings.server_url:
                enrich = ProcessRoundClient(session, settings.server_url)
            else:
                logger.info("[start] no embedder or server configured; new rounds will not be enriched")
        if args.export and db is None:
            logger.warning(f"[start] --export ignored: ledger is remote ({settings.server_url})")

        logger.info(
            f"[start] mode={args.mode} days={args.days} ledger={settings.server_url or db.sqlite_path} "
            f"max_pages={settings.max_pages} rate={settings.rate_max}/{settings.rate_window}s"
        )
        try:
            # the sweep covers this run's new rounds too, so they are not dispatched twice
            result, report = await sync_and_enrich(
                args.mode, ledger, session, settings,
                enrich=None if args.enrich_missing else enrich,
                days=args.days, limiter=limiter,
            )
            if args.enrich_missing and enrich is not None:
                report = await enrich_missing(ledger, enrich, settings.round_delay)
            if args.export and db is not None:
                n = db.export_rounds_parquet(args.export)
                logger.info(f"[export] wrote {n} rounds to {args.export}")
        finally:
            if db is not None:
                db.close()

    print(format_summary(result, report))
    return EXIT_PARTIAL if result.partial else EXIT_OK


def main(argv=None):
    """
    Main entry point: one sync run against the local DB (or a remote server),
    then embeddings for the rounds it added.
    """
    args = parse_args(argv)
    data_root = args.data_root or load_settings().data_root
    try:
        with SyncLock(data_root):
            code = asyncio.run(main_async(args))
    except FeedFetchError as e:
        print(f"Sync failed: {e}", file=sys.stderr)
        code = EXIT_FAILED
    except KeyboardInterrupt:
        code = EXIT_FAILED
    except Exception as e:
        print(f"Sync failed: {type(e).__name__}: {e}", file=sys.stderr)
        code = EXIT_FAILED
    sys.exit(code)


if __name__ == "__main__":
    main()
