# settings.py
# Env knobs (overridable from the CLI):
#   GGSTATS_DATA_ROOT=data
#   GGSTATS_COOKIE=<_ncfa session cookie>
#   GGSTATS_PAGE_SIZE=25  GGSTATS_MAX_PAGES=200  GGSTATS_PAGE_DELAY=0.1
#   GGSTATS_BATCH_SIZE=10  GGSTATS_BATCH_DELAY=1.0  GGSTATS_ROUND_DELAY=0.05
#   GGSTATS_RATE_MAX=40  GGSTATS_RATE_WINDOW=10
#   GGSTATS_LOG_LEVEL=INFO

from dataclasses import dataclass, replace
from typing import Optional

from utils import env_float, env_int, env_str

FEED_URL = "https://www.geoguessr.com/api/v4/feed/private"
DUELS_URL = "https://game-server.geoguessr.com/api/duels"

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "ggstats-db/0.1",
}


@dataclass(frozen=True)
class SyncSettings:
    data_root: str = "data"
    cookie: Optional[str] = None
    feed_url: str = FEED_URL
    duels_url: str = DUELS_URL
    game_mode: str = "Duels"
    page_size: int = 25
    max_pages: int = 200
    page_delay: float = 0.1
    batch_size: int = 10
    batch_delay: float = 1.0
    round_delay: float = 0.05
    rate_max: int = 40
    rate_window: float = 10.0
    max_retries: int = 4
    log_level: str = "INFO"
    server_url: Optional[str] = None
    streetview_key: Optional[str] = None

    def with_overrides(self, **kw) -> "SyncSettings":
        return replace(self, **{k: v for k, v in kw.items() if v is not None})


def load_settings() -> SyncSettings:
    return SyncSettings(
        data_root=env_str("GGSTATS_DATA_ROOT", "data"),
        cookie=env_str("GGSTATS_COOKIE", "") or None,
        feed_url=env_str("GGSTATS_FEED_URL", FEED_URL),
        duels_url=env_str("GGSTATS_DUELS_URL", DUELS_URL),
        game_mode=env_str("GGSTATS_GAME_MODE", "Duels"),
        page_size=max(1, env_int("GGSTATS_PAGE_SIZE", 25)),
        max_pages=max(1, env_int("GGSTATS_MAX_PAGES", 200)),
        page_delay=max(0.0, env_float("GGSTATS_PAGE_DELAY", 0.1)),
        batch_size=max(1, env_int("GGSTATS_BATCH_SIZE", 10)),
        batch_delay=max(0.0, env_float("GGSTATS_BATCH_DELAY", 1.0)),
        round_delay=max(0.0, env_float("GGSTATS_ROUND_DELAY", 0.05)),
        rate_max=max(1, env_int("GGSTATS_RATE_MAX", 40)),
        rate_window=max(0.1, env_float("GGSTATS_RATE_WINDOW", 10.0)),
        max_retries=max(1, env_int("GGSTATS_MAX_RETRIES", 4)),
        log_level=env_str("GGSTATS_LOG_LEVEL", "INFO").upper(),
        server_url=env_str("GGSTATS_SERVER_URL", "") or None,
        streetview_key=env_str("GGSTATS_STREETVIEW_KEY", "") or None,
    )
