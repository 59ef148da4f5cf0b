"""
Tests for the NoteSpine HTTP API.

Run with: pytest notespine/test_server.py -v
"""

import pytest
from fastapi.testclient import TestClient

from notespine import server
from notespine.config import SpineConfig
from notespine.spine import NoteSpine


@pytest.fixture
def spine(tmp_path, monkeypatch):
    spine = NoteSpine(SpineConfig(data_dir=tmp_path, max_records=5))
    monkeypatch.setattr(server, "_spine", spine)
    yield spine
    spine.close()


@pytest.fixture
def client(spine):
    return TestClient(server.app)


def add_note(client, body, tags=(), source="Effective Go"):
    response = client.post("/notes", json={"source": source, "body": body, "tags": list(tags)})
    assert response.status_code == 200
    return response.json()["id"]


class TestNotes:

    def test_ingest_and_get(self, client):
        note_id = add_note(client, "channels are simple to learn", ["go"])

        response = client.get(f"/notes/{note_id}")
        assert response.status_code == 200
        data = response.json()
        assert data["body"] == "channels are simple to learn"
        assert data["tags"] == ["go"]

    def test_get_missing_is_404(self, client):
        assert client.get("/notes/999").status_code == 404

    def test_delete(self, client):
        note_id = add_note(client, "channels are simple to learn", ["go"])

        assert client.delete(f"/notes/{note_id}").status_code == 200
        assert client.get(f"/notes/{note_id}").status_code == 404
        assert client.delete(f"/notes/{note_id}").status_code == 404

    def test_storage_full_is_507(self, client):
        for i in range(5):
            add_note(client, f"note {i}")
        response = client.post("/notes", json={"source": "s", "body": "one too many"})
        assert response.status_code == 507


class TestQuery:

    def test_text_query(self, client):
        first = add_note(client, "goroutines and channels", ["go"])
        second = add_note(client, "channels in python asyncio", ["python"])

        response = client.post("/query", json={"query": "channels"})
        assert response.status_code == 200
        data = response.json()
        assert data["ids"] == [second, first]
        assert data["count"] == 2
        assert data["results"][0]["body"] == "channels in python asyncio"

        response = client.post("/query", json={"query": "channels AND tag:go"})
        assert response.json()["ids"] == [first]

    def test_dict_query(self, client):
        note_id = add_note(client, "select statement", ["go"])
        response = client.post("/query", json={"expr": {"and": [{"term": "select"}, {"tag": "go"}]}})
        assert response.json()["ids"] == [note_id]

    def test_empty_query(self, client):
        add_note(client, "anything")
        response = client.post("/query", json={"query": ""})
        assert response.status_code == 200
        assert response.json()["ids"] == []

    @pytest.mark.parametrize("payload", [
        {"query": "channels AND"},
        {"query": "(channels"},
        {"expr": {"xor": []}},
        {"query": "channels", "expr": {"term": "channels"}},
        {"query": "channels", "rank": "popularity"},
    ])
    def test_bad_query_is_400(self, client, payload):
        assert client.post("/query", json=payload).status_code == 400

    def test_timeout_is_408(self, client):
        add_note(client, "slow note")
        response = client.post("/query", json={"query": "slow", "timeout_ms": 0})
        assert response.status_code == 408

    def test_limit(self, client):
        for i in range(4):
            add_note(client, f"limited note {i}")
        response = client.post("/query", json={"query": "limited", "limit": 2})
        assert response.json()["count"] == 2


class TestMaintenance:

    def test_compact(self, client, spine):
        keep = add_note(client, "kept")
        gone = add_note(client, "gone")
        client.delete(f"/notes/{gone}")

        response = client.post("/compact")
        assert response.status_code == 200
        assert response.json()["compacted"] is True
        assert spine.store.all_ids() == {keep}

    def test_compact_below_threshold(self, client):
        add_note(client, "kept")
        response = client.post("/compact", params={"force": "false"})
        assert response.json()["compacted"] is False

    def test_health_stats_metrics(self, client):
        add_note(client, "observed")

        health = client.get("/health").json()
        assert health["status"] == "healthy"
        assert health["records"] == 1

        stats = client.get("/stats").json()
        assert stats["store"]["live_records"] == 1

        metrics = client.get("/metrics").json()
        assert metrics["latency"]["note_append"]["count"] == 1

    def test_snapshot(self, client):
        add_note(client, "snapshotted")
        response = client.post("/snapshot")
        assert response.json()["success"] is True
