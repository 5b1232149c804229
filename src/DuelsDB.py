# DuelsDB.py
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from utils import ensure_list, parse_created, round_id, round_ids_for, split_round_id

logger = logging.getLogger("ggstats.db")

LAST_SYNC_KEY = "lastSyncTimestamp"

DDL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS duels (
  game_id    TEXT PRIMARY KEY,
  created_ms INTEGER NOT NULL,     -- feed timestamp (epoch ms)
  rounds     INTEGER NOT NULL,     -- number of rounds in the duel
  payload    TEXT NOT NULL         -- full duel JSON, never rewritten
);

CREATE TABLE IF NOT EXISTS sync_state (
  key   TEXT PRIMARY KEY,
  value INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS round_embeddings (
  round_id  TEXT PRIMARY KEY,      -- '<gameId>_<roundIndex>', 1-based
  embedding TEXT NOT NULL          -- JSON list of floats
);

CREATE INDEX IF NOT EXISTS idx_duels_created ON duels(created_ms);
"""

INSERT_DUEL = """
INSERT OR IGNORE INTO duels (game_id, created_ms, rounds, payload)
VALUES (?, ?, ?, ?);
"""

ADVANCE_LAST_SYNC = """
INSERT INTO sync_state (key, value)
VALUES (?, ?)
ON CONFLICT(key) DO UPDATE SET
  value = MAX(value, excluded.value);
"""

INSERT_EMBEDDING = """
INSERT OR IGNORE INTO round_embeddings (round_id, embedding)
VALUES (?, ?);
"""


class DuelsDB:
    """
    Ingestion ledger for one tracked user:
      - SQLite file at: data_root / 'duels.sqlite'
      - duels are append-only; a gameId is stored at most once
      - 'lastSyncTimestamp' in sync_state is the watermark; it only moves forward
      - round embeddings live in their own table keyed by round id

    Methods:
      - __init__(data_root)
      - close()
      - get_last_sync() / advance_last_sync(ts)
      - has_duel(game_id) / existing_ids(ids)
      - sync(duels)  -> {status, message, addedCount, totalCount, roundsToProcess}
      - get_duel / get_round / iter_duels / count_duels / export_rounds_parquet
      - has_embedding / save_embedding / get_embedding / iter_missing_round_ids
    """

    def __init__(self, data_root: str | Path):
        self.data_root = Path(data_root)
        self.data_root.mkdir(parents=True, exist_ok=True)
        self.sqlite_path = self.data_root / "duels.sqlite"
        self.conn = sqlite3.connect(self.sqlite_path.as_posix(), check_same_thread=False)

        with self.conn:
            self.conn.executescript(DDL)

    def close(self) -> None:
        if getattr(self, "conn", None):
            self.conn.close()
            self.conn = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # -------------------- Watermark --------------------

    def get_last_sync(self) -> int:
        row = self.conn.execute(
            "SELECT value FROM sync_state WHERE key = ?;", (LAST_SYNC_KEY,)
        ).fetchone()
        return int(row[0]) if row else 0

    def advance_last_sync(self, ts: int) -> int:
        """Move the watermark to ts if ts is newer. Returns the stored value."""
        with self.conn:
            self.conn.execute(ADVANCE_LAST_SYNC, (LAST_SYNC_KEY, int(ts)))
        return self.get_last_sync()

    # -------------------- Duels --------------------

    def has_duel(self, game_id: str) -> bool:
        row = self.conn.execute("SELECT 1 FROM duels WHERE game_id = ?;", (game_id,)).fetchone()
        return row is not None

    def existing_ids(self, game_ids: Iterable[str]) -> set[str]:
        ids = list(dict.fromkeys(game_ids))
        found: set[str] = set()
        # stay under SQLite's host-parameter limit
        for i in range(0, len(ids), 500):
            chunk = ids[i:i + 500]
            marks = ",".join("?" * len(chunk))
            rows = self.conn.execute(
                f"SELECT game_id FROM duels WHERE game_id IN ({marks});", chunk
            ).fetchall()
            found.update(r[0] for r in rows)
        return found

    def sync(self, duels: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Persist the duels that aren't stored yet, in one transaction.
        Records without a gameId are ignored. Raises on any write failure,
        in which case nothing from this call is kept.
        """
        candidates: Dict[str, Dict[str, Any]] = {}
        for d in duels:
            if isinstance(d, dict) and d.get("gameId") and d["gameId"] not in candidates:
                candidates[str(d["gameId"])] = d

        existing = self.existing_ids(candidates)
        to_add = [d for gid, d in candidates.items() if gid not in existing]

        added = 0
        rounds_to_process: List[str] = []
        if to_add:
            with self.conn:
                for d in to_add:
                    created = parse_created(d.get("created")) or 0
                    n_rounds = len(ensure_list(d.get("rounds")))
                    cur = self.conn.execute(
                        INSERT_DUEL,
                        (str(d["gameId"]), created, n_rounds, json.dumps(d, ensure_ascii=False)),
                    )
                    # only real inserts produce rounds
                    if cur.rowcount > 0:
                        added += 1
                        rounds_to_process.extend(round_ids_for(d))
            logger.info(f"[db] added {added} duels ({len(rounds_to_process)} rounds)")

        total = self.count_duels()
        if not added:
            message = "Sync complete. No new duels to add."
        else:
            message = f"Successfully added {added} new duels."
        return {
            "status": "success",
            "message": message,
            "addedCount": added,
            "totalCount": total,
            "roundsToProcess": rounds_to_process,
        }

    def get_duel(self, game_id: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT payload FROM duels WHERE game_id = ?;", (game_id,)).fetchone()
        return json.loads(row[0]) if row else None

    def get_round(self, rid: str) -> Optional[Dict[str, Any]]:
        game_id, idx = split_round_id(rid)
        duel = self.get_duel(game_id)
        if duel is None:
            return None
        rounds = ensure_list(duel.get("rounds"))
        if idx > len(rounds):
            return None
        return rounds[idx - 1]

    def iter_duels(self) -> Iterator[Dict[str, Any]]:
        """All stored duels, newest first."""
        cur = self.conn.execute("SELECT payload FROM duels ORDER BY created_ms DESC, game_id;")
        for (payload,) in cur:
            yield json.loads(payload)

    def count_duels(self) -> int:
        (n,) = self.conn.execute("SELECT COUNT(*) FROM duels;").fetchone()
        return int(n)

    def export_rounds_parquet(self, path: str | Path) -> int:
        """
        Flatten every stored round into one row (duel fields prefixed 'duel.')
        and write it to Parquet for the dashboard. Returns the row count.
        """
        import pandas as pd

        rows = []
        for duel in self.iter_duels():
            for i, rnd in enumerate(ensure_list(duel.get("rounds")), start=1):
                rows.append({
                    "roundId": round_id(duel["gameId"], i),
                    "duel": {
                        "gameId": duel["gameId"],
                        "created": duel.get("created"),
                        "mapName": (duel.get("options") or {}).get("map", {}).get("name"),
                        "winningTeamId": (duel.get("result") or {}).get("winningTeamId"),
                    },
                    "round": rnd if isinstance(rnd, dict) else {"value": rnd},
                })
        df = pd.json_normalize(rows, sep=".")
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        df.to_parquet(path, index=False)
        return len(df)

    # -------------------- Embeddings --------------------

    def has_embedding(self, rid: str) -> bool:
        row = self.conn.execute("SELECT 1 FROM round_embeddings WHERE round_id = ?;", (rid,)).fetchone()
        return row is not None

    def save_embedding(self, rid: str, embedding: List[float]) -> bool:
        with self.conn:
            cur = self.conn.execute(INSERT_EMBEDDING, (rid, json.dumps([float(x) for x in embedding])))
        return cur.rowcount > 0

    def get_embedding(self, rid: str) -> Optional[List[float]]:
        row = self.conn.execute("SELECT embedding FROM round_embeddings WHERE round_id = ?;", (rid,)).fetchone()
        return json.loads(row[0]) if row else None

    def iter_missing_round_ids(self) -> Iterator[str]:
        """Round ids of stored duels with no embedding yet, newest duel first."""
        done = {r[0] for r in self.conn.execute("SELECT round_id FROM round_embeddings;")}
        rows = self.conn.execute(
            "SELECT game_id, rounds FROM duels ORDER BY created_ms DESC, game_id;"
        ).fetchall()
        for game_id, n_rounds in rows:
            for i in range(1, int(n_rounds) + 1):
                rid = round_id(game_id, i)
                if rid not in done:
                    yield rid
