import aiohttp
import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from DuelsDB import DuelsDB
from http_fakes import make_duel
from process_rounds import ProcessRoundClient, RoundEnricher
from sync_duels import MODE_INCREMENTAL, LedgerError, RemoteLedger, sync_and_enrich
from sync_server import create_app


async def _fake_image(panorama):
    return b"jpeg"


async def _fake_embed(image):
    return [0.1, 0.2, 0.3]


@pytest.fixture
def db(tmp_path):
    d = DuelsDB(tmp_path / "server")
    yield d
    d.close()


@pytest_asyncio.fixture
async def client(db):
    enricher = RoundEnricher(db, _fake_embed, fetch_image=_fake_image)
    async with TestClient(TestServer(create_app(db, enricher))) as c:
        yield c


@pytest.mark.asyncio
async def test_last_sync_starts_at_zero(client):
    resp = await client.get("/api/last-sync")

    assert resp.status == 200
    assert await resp.json() == {"lastSync": 0}
    assert resp.headers["Access-Control-Allow-Origin"] == "*"


@pytest.mark.asyncio
async def test_last_sync_only_moves_forward(client):
    await client.post("/api/last-sync", json={"lastSync": 900})
    resp = await client.post("/api/last-sync", json={"lastSync": 100})

    assert (await resp.json())["lastSync"] == 900
    bad = await client.post("/api/last-sync", json={"lastSync": "soon"})
    assert bad.status == 400


@pytest.mark.asyncio
async def test_sync_endpoint(client):
    duels = [dict(make_duel("a", rounds=2), created=100), dict(make_duel("b", rounds=1), created=90)]

    first = await (await client.post("/api/sync", json=duels)).json()
    second = await (await client.post("/api/sync", json=duels)).json()

    assert first["status"] == "success"
    assert first["addedCount"] == 2
    assert first["roundsToProcess"] == ["a_1", "a_2", "b_1"]
    assert second["addedCount"] == 0
    assert second["totalCount"] == 2


@pytest.mark.asyncio
async def test_sync_rejects_non_arrays(client):
    resp = await client.post("/api/sync", json={"gameId": "a"})

    assert resp.status == 400
    assert (await resp.json())["status"] == "error"


@pytest.mark.asyncio
async def test_process_round_is_idempotent(client, db):
    await client.post("/api/sync", json=[dict(make_duel("a", rounds=1), created=100)])

    first = await (await client.post("/api/process-round", json={"roundId": "a_1"})).json()
    second = await (await client.post("/api/process-round", json={"roundId": "a_1"})).json()

    assert first["status"] == second["status"] == "success"
    assert "already exists" in second["message"]
    assert db.get_embedding("a_1") == [0.1, 0.2, 0.3]


@pytest.mark.asyncio
@pytest.mark.parametrize("body,status", [({}, 400), ({"roundId": "a"}, 400), ({"roundId": "zzz_1"}, 500)])
async def test_process_round_errors(client, body, status):
    resp = await client.post("/api/process-round", json=body)

    assert resp.status == status


@pytest.mark.asyncio
async def test_process_round_without_model(db):
    async with TestClient(TestServer(create_app(db))) as c:
        resp = await c.post("/api/process-round", json={"roundId": "a_1"})

    assert resp.status == 503


@pytest.mark.asyncio
async def test_duels_read_interface(client):
    await client.post("/api/sync", json=[
        dict(make_duel("old", rounds=1), created=10),
        dict(make_duel("new", rounds=1), created=20),
    ])

    resp = await client.get("/api/duels")

    assert [d["gameId"] for d in await resp.json()] == ["new", "old"]


@pytest.mark.asyncio
async def test_preflight(client):
    resp = await client.options("/api/sync")

    assert resp.status == 204
    assert "POST" in resp.headers["Access-Control-Allow-Methods"]


@pytest.mark.asyncio
async def test_remote_sync_round_trip(client, db, api, settings):
    for gid, created in [("g100", 100), ("g90", 90), ("g80", 80), ("g70", 70)]:
        api.add_duel_entry(gid, created, rounds=2)
    db.advance_last_sync(85)
    base = str(client.make_url("/"))
    ledger = RemoteLedger(client.session, base)

    result, report = await sync_and_enrich(
        MODE_INCREMENTAL, ledger, api.session(), settings,
        enrich=ProcessRoundClient(client.session, base),
    )

    assert result.added_count == 2
    assert result.rounds_to_process == ["g100_1", "g100_2", "g90_1", "g90_2"]
    assert report.succeeded == 4
    assert db.get_last_sync() == 100
    assert db.has_embedding("g90_2")


@pytest.mark.asyncio
async def test_remote_ledger_surfaces_server_errors(client):
    ledger = RemoteLedger(client.session, str(client.make_url("/")) + "nowhere")

    with pytest.raises(LedgerError):
        await ledger.get_last_sync()


@pytest.mark.asyncio
async def test_process_round_failure_is_a_json_error_with_cors(db):
    async def unreachable(panorama):
        raise aiohttp.ClientConnectionError("street view unreachable")

    db.sync([dict(make_duel("g1", rounds=1), created=100)])
    enricher = RoundEnricher(db, _fake_embed, fetch_image=unreachable)
    async with TestClient(TestServer(create_app(db, enricher))) as c:
        resp = await c.post("/api/process-round", json={"roundId": "g1_1"})
        body = await resp.json()

    assert resp.status == 500
    assert resp.content_type == "application/json"
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert body["status"] == "error"
    assert "street view unreachable" in body["message"]
    assert not db.has_embedding("g1_1")


@pytest.mark.asyncio
async def test_missing_rounds_over_http(client, db):
    await client.post("/api/sync", json=[dict(make_duel("a", rounds=2), created=100)])
    db.save_embedding("a_1", [0.1])
    ledger = RemoteLedger(client.session, str(client.make_url("/")))

    resp = await client.get("/api/missing-rounds")

    assert (await resp.json()) == {"roundIds": ["a_2"]}
    assert await ledger.missing_round_ids() == ["a_2"]


@pytest.mark.asyncio
async def test_ledger_calls_run_off_the_event_loop(client, monkeypatch):
    import asyncio

    offloaded = []
    real_to_thread = asyncio.to_thread

    async def recording_to_thread(fn, *args, **kwargs):
        offloaded.append(getattr(fn, "__name__", repr(fn)))
        return await real_to_thread(fn, *args, **kwargs)

    monkeypatch.setattr(asyncio, "to_thread", recording_to_thread)

    await client.post("/api/sync", json=[dict(make_duel("a", rounds=1), created=100)])
    await client.get("/api/duels")
    await client.post("/api/process-round", json={"roundId": "a_1"})

    assert "sync" in offloaded
    assert "<lambda>" in offloaded
    assert {"has_embedding", "get_round", "save_embedding"} <= set(offloaded)
