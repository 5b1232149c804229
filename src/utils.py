from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import json
import os
import time

def ensure_list(x):
    if x is None: return []
    if isinstance(x, list): return x
    if isinstance(x, str):
        try:
            v = json.loads(x)
            return v if isinstance(v, list) else [x]
        except Exception:
            return [x]
    return [x]

def env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except Exception:
        return default

def env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, str(default)))
    except Exception:
        return default

def env_str(name: str, default: str) -> str:
    v = os.environ.get(name)
    return v if v and v.strip() else default

def now_ms() -> int:
    return int(time.time() * 1000)

def utc_iso(ts_ms: Optional[int]) -> Optional[str]:
    if not ts_ms:
        return None
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")

def parse_created(value: Any) -> Optional[int]:
    """
    Normalize a feed/duel timestamp to epoch milliseconds.
    Accepts ints/floats (already ms), digit strings and ISO-8601 strings.
    Returns None when the value can't be read.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if not isinstance(value, str) or not value.strip():
        return None
    s = value.strip()
    if s.isdigit():
        return int(s)
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)

def round_id(game_id: str, round_index: int) -> str:
    return f"{game_id}_{round_index}"

def split_round_id(rid: str) -> tuple[str, int]:
    """'abc_3' -> ('abc', 3). Raises ValueError on anything else."""
    game_id, sep, idx = rid.rpartition("_")
    if not sep or not game_id or not idx.isdigit() or int(idx) < 1:
        raise ValueError(f"invalid round id: {rid!r}")
    return game_id, int(idx)

def round_ids_for(duel: Dict[str, Any]) -> List[str]:
    game_id = duel.get("gameId")
    rounds = ensure_list(duel.get("rounds"))
    return [round_id(game_id, i) for i in range(1, len(rounds) + 1)]

def day_key(ts_ms: Optional[int]) -> Optional[str]:
    if not ts_ms:
        return None
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
