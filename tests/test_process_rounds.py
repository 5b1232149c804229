import asyncio

import pytest

from DuelsDB import DuelsDB
from http_fakes import FakeResponse, FakeSession, make_duel
from process_rounds import (
    EnrichmentError,
    ProcessRoundClient,
    RoundEnricher,
    dispatch_rounds,
    get_fov,
    load_embedder,
    streetview_params,
)


@pytest.fixture
def db(tmp_path):
    d = DuelsDB(tmp_path)
    d.sync([dict(make_duel("g1", rounds=2), created=100)])
    yield d
    d.close()


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_sweep():
    attempted = []

    async def enrich(rid):
        attempted.append(rid)
        if rid == "g_2":
            raise RuntimeError("inference quota")
        return {"status": "success"}

    report = await dispatch_rounds(["g_1", "g_2", "g_3"], enrich, delay=0)

    assert attempted == ["g_1", "g_2", "g_3"]
    assert report.attempted == 3
    assert report.succeeded == 2
    assert report.failed == ["g_2"]


@pytest.mark.asyncio
async def test_dispatch_is_sequential():
    running = []
    overlap = []

    async def enrich(rid):
        running.append(rid)
        await asyncio.sleep(0)
        overlap.append(len(running))
        running.remove(rid)
        return {}

    await dispatch_rounds(["a_1", "a_2", "a_3"], enrich, delay=0)

    assert overlap == [1, 1, 1]


@pytest.mark.parametrize("zoom,fov", [(None, 90), (0, 90), (1, 60), (2, 40), (3, 20), (1.2, 60), (4, 90)])
def test_get_fov(zoom, fov):
    assert get_fov(zoom) == fov


def test_streetview_params():
    params = streetview_params({"lat": 1.5, "lng": -2.5, "heading": 45, "zoom": 2}, "KEY")
    assert params["location"] == "1.5,-2.5"
    assert params["fov"] == 40
    assert params["pitch"] == 0
    assert params["key"] == "KEY"


@pytest.mark.asyncio
async def test_enricher_stores_embedding_once(db):
    calls = []

    async def fetch_image(pano):
        calls.append(pano["lat"])
        return b"jpeg"

    async def embed(image):
        assert image == b"jpeg"
        return [0.5, 0.25]

    enricher = RoundEnricher(db, embed, fetch_image=fetch_image)

    first = await enricher.process_round("g1_2")
    second = await enricher.process_round("g1_2")

    assert first["status"] == second["status"] == "success"
    assert "already exists" in second["message"]
    assert db.get_embedding("g1_2") == [0.5, 0.25]
    assert calls == [12.0]


@pytest.mark.asyncio
async def test_enricher_skips_round_without_panorama(tmp_path):
    duel = make_duel("g2", rounds=1)
    del duel["rounds"][0]["panorama"]
    with DuelsDB(tmp_path) as db:
        db.sync([duel])

        async def embed(image):
            raise AssertionError("should not embed")

        res = await RoundEnricher(db, embed, fetch_image=embed).process_round("g2_1")

        assert res["status"] == "success"
        assert "missing data" in res["message"]
        assert not db.has_embedding("g2_1")


@pytest.mark.asyncio
async def test_enricher_unknown_round_is_an_error(db):
    async def embed(image):
        return [1.0]

    with pytest.raises(EnrichmentError):
        await RoundEnricher(db, embed, fetch_image=embed).process_round("nope_1")


@pytest.mark.asyncio
async def test_enricher_needs_streetview_key(db):
    async def embed(image):
        return [1.0]

    session = FakeSession(lambda *a: FakeResponse(200, b"img"))
    with pytest.raises(EnrichmentError):
        await RoundEnricher(db, embed, session=session).process_round("g1_1")


@pytest.mark.asyncio
async def test_enricher_fetches_streetview(db):
    async def embed(image):
        assert image == b"img"
        return [1.0, 2.0]

    session = FakeSession(lambda *a: FakeResponse(200, b"img"))

    await RoundEnricher(db, embed, session=session, api_key="KEY").process_round("g1_1")

    method, url, params = session.calls[0]
    assert url.endswith("/streetview")
    assert params["location"] == "11.0,20.0"
    assert db.get_embedding("g1_1") == [1.0, 2.0]


@pytest.mark.asyncio
async def test_process_round_client_success():
    session = FakeSession(lambda *a: FakeResponse(200, {"status": "success", "message": "ok"}))
    client = ProcessRoundClient(session, "http://server.test/")

    res = await client("g1_1")

    assert res["message"] == "ok"
    assert session.calls == [("POST", "http://server.test/api/process-round", {"roundId": "g1_1"})]


@pytest.mark.asyncio
@pytest.mark.parametrize("resp", [
    FakeResponse(500, {"status": "error", "message": "Failed to process round."}),
    FakeResponse(200, "<html>gateway</html>"),
])
async def test_process_round_client_errors(resp):
    client = ProcessRoundClient(FakeSession(lambda *a: resp), "http://server.test")

    with pytest.raises(EnrichmentError):
        await client("g1_1")


@pytest.mark.asyncio
async def test_load_embedder_wraps_sync_callables():
    embed = load_embedder("json:loads")

    assert await embed(b"[1, 2]") == [1, 2]
    with pytest.raises(ValueError):
        load_embedder("json")
