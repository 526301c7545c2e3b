import pytest
from fastapi.testclient import TestClient

import main
from ledger import InteractionLedger

SONG = {"contract": "0xabc", "tokenId": "1", "name": "Radio", "audio": "ipfs://QmRadio"}
KEY = "ipfs-QmRadio"


@pytest.fixture
def client(store, repair_queue, settings):
    ledger = InteractionLedger(store, settings, repair_executor=repair_queue)
    main.app.dependency_overrides[main.get_ledger] = lambda: ledger
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


def test_root_and_status(client):
    assert client.get("/").json() == {"message": "Media Interaction Ledger API"}
    status = client.get("/test").json()
    assert status["database"] == "✅ memory"


def test_toggle_and_list_likes(client):
    response = client.post("/api/likes/7/toggle", json=SONG)
    assert response.status_code == 200
    assert response.json() == {"liked": True, "media_key": KEY}

    liked = client.get("/api/likes/7").json()
    assert [item["name"] for item in liked] == ["Radio"]

    status = client.post("/api/likes/7/status", json=SONG).json()
    assert status == {"liked": True, "like_count": 1, "media_key": KEY}

    assert client.post("/api/likes/7/toggle", json=SONG).json()["liked"] is False


def test_validation_errors_are_400(client):
    assert client.post("/api/likes/0/toggle", json=SONG).status_code == 400
    unkeyed = {"contract": "0xabc", "tokenId": "1"}
    assert client.post("/api/likes/7/toggle", json=unkeyed).status_code == 400


def test_store_outage_is_503(client, store):
    store.fail_commits = 1
    response = client.post("/api/likes/7/toggle", json=SONG)
    assert response.status_code == 503


def test_play_flow_and_top_played(client):
    started = client.post("/api/plays/3/start", json=SONG).json()
    assert started == {"media_key": KEY, "state": "armed", "counted": False}

    first = client.post("/api/plays/3/progress", json={"media_key": KEY, "current_time": 10, "duration": 100})
    assert first.json()["counted"] is False
    second = client.post("/api/plays/3/progress", json={"media_key": KEY, "current_time": 30, "duration": 100})
    assert second.json() == {"media_key": KEY, "state": "counted", "counted": True}
    again = client.post("/api/plays/3/progress", json={"media_key": KEY, "current_time": 40, "duration": 100})
    assert again.json()["counted"] is False

    assert client.post(f"/api/plays/reset/{KEY}").json()["sessions_reset"] == 1
    assert [item["name"] for item in client.get("/api/plays/3/recent").json()] == ["Radio"]

    synced = client.post("/api/admin/sync-top-played").json()
    assert synced == {"ranked": [KEY], "removed": []}
    top = client.get("/api/top-played").json()
    assert top[0]["rank"] == 1 and top[0]["play_count"] == 1


def test_recent_limit_must_be_positive(client):
    assert client.get("/api/plays/3/recent?limit=-1").status_code == 422
    assert client.get("/api/plays/3/recent?limit=2").json() == []


def test_progress_without_start_is_untracked(client):
    response = client.post("/api/plays/3/progress", json={"media_key": "nope", "current_time": 30, "duration": 100})
    assert response.json()["state"] == "untracked"


def test_admin_cleanup_and_repair(client, store):
    store.set("users", "5", {"fid": 5, "liked_nfts": [SONG]})
    report = client.post("/api/admin/cleanup-likes/5").json()
    assert report == {"fid": 5, "migrated": 1, "unkeyed": 0, "failed": 0}
    assert client.post(f"/api/admin/repair/{KEY}").json() == {"media_key": KEY, "outcome": "recreated"}
