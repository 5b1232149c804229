import sys
from pathlib import Path

import pytest

project_root = Path(__file__).resolve().parents[1]
src_path = project_root / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from settings import SyncSettings  # noqa: E402

from http_fakes import FakeGeoApi  # noqa: E402


@pytest.fixture
def settings(tmp_path) -> SyncSettings:
    return SyncSettings(
        data_root=str(tmp_path),
        feed_url="https://feed.test/api/v4/feed/private",
        duels_url="https://game.test/api/duels",
        page_size=2,
        max_pages=50,
        page_delay=0,
        batch_size=2,
        batch_delay=0,
        round_delay=0,
        max_retries=2,
    )


@pytest.fixture
def api(settings) -> FakeGeoApi:
    return FakeGeoApi(settings)
