"""
Integration Tests — /api/v1/documents, /api/v1/bots, /api/v1/queue
═══════════════════════════════════════════════════════════════════
Full FastAPI routing with the DocumentService dependency overridden to run
over the in-memory fakes. Jobs enqueued by the routes run eagerly through
the real Celery task (`wired_tasks`).

How to run
──────────
  pytest -m integration tests/integration/test_documents_api.py -v
"""

from __future__ import annotations

import uuid
from unittest.mock import patch

import pytest

from tests.conftest import SAMPLE_TEXT, TEST_BOT_ID, make_document, minutes_ago

BASE = "/api/v1"


# ─────────────────────────────────────────────────────────────────────────────
# POST /documents/{id}/process
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestProcessEndpoint:

    async def test_accepts_and_processes_document(self, async_client, wired_tasks, repo, storage_objects):
        doc = repo.add(make_document("txt"))
        storage_objects[doc.file_path] = SAMPLE_TEXT.encode()

        resp = await async_client.post(f"{BASE}/documents/{doc.id}/process")

        assert resp.status_code == 202
        body = resp.json()
        assert body["document_id"] == str(doc.id)
        assert body["job_id"]
        assert body["was_stale"] is False
        assert repo.documents[doc.id].status == "completed"

    async def test_completed_document_returns_200_without_job(self, async_client, repo):
        doc = repo.add(make_document(status="completed"))

        resp = await async_client.post(f"{BASE}/documents/{doc.id}/process")

        assert resp.status_code == 200
        assert resp.json()["job_id"] is None
        assert resp.json()["message"] == "Document already processed."

    async def test_unknown_document_is_404(self, async_client):
        resp = await async_client.post(f"{BASE}/documents/{uuid.uuid4()}/process")

        assert resp.status_code == 404
        assert resp.json()["detail"]["error_code"] == "DOCUMENT_NOT_FOUND"

    async def test_live_processing_document_is_409(self, async_client, repo):
        doc = repo.add(make_document(status="processing", processing_started_at=minutes_ago(2)))

        resp = await async_client.post(f"{BASE}/documents/{doc.id}/process")

        assert resp.status_code == 409
        assert resp.json()["detail"]["error_code"] == "DOCUMENT_BUSY"

    async def test_queue_outage_is_503(self, async_client, repo):
        doc = repo.add(make_document())

        with patch("knowledge_pipeline.workers.tasks.process_document") as task:
            task.apply_async.side_effect = ConnectionError("broker down")
            resp = await async_client.post(f"{BASE}/documents/{doc.id}/process")

        assert resp.status_code == 503
        assert resp.json()["detail"]["error_code"] == "QUEUE_ERROR"

    async def test_invalid_id_is_422(self, async_client):
        resp = await async_client.post(f"{BASE}/documents/not-a-uuid/process")

        assert resp.status_code == 422
        assert resp.json()["error_code"] == "VALIDATION_ERROR"


# ─────────────────────────────────────────────────────────────────────────────
# Status, fetch, delete
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestDocumentEndpoints:

    async def test_status_of_completed_document(self, async_client, repo):
        doc = repo.add(make_document(status="completed", chunk_count=5))

        resp = await async_client.get(f"{BASE}/documents/{doc.id}/status")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "completed"
        assert body["progress"] == 100
        assert body["chunk_count"] == 5

    async def test_status_poll_repairs_stale_document(self, async_client, wired_tasks, repo, storage_objects):
        doc = repo.add(make_document(status="processing", processing_started_at=minutes_ago(45)))
        storage_objects[doc.file_path] = SAMPLE_TEXT.encode()

        resp = await async_client.get(f"{BASE}/documents/{doc.id}/status")

        assert resp.status_code == 200
        assert resp.json()["was_stale"] is True
        # The re-queued job ran eagerly before the status was re-read
        assert resp.json()["status"] == "completed"

    async def test_fetch_of_uploaded_file_is_400(self, async_client, repo):
        doc = repo.add(make_document("pdf"))

        resp = await async_client.post(f"{BASE}/documents/{doc.id}/fetch")

        assert resp.status_code == 400
        assert resp.json()["detail"]["error_code"] == "SOURCE_NOT_FETCHABLE"

    async def test_delete_document(self, async_client, repo):
        doc = repo.add(make_document())

        resp = await async_client.delete(f"{BASE}/documents/{doc.id}")

        assert resp.status_code == 200
        assert resp.json()["deleted"] is True
        assert doc.id not in repo.documents

    async def test_overview(self, async_client, repo):
        repo.add(make_document(status="error", error_message="boom"))

        resp = await async_client.get(f"{BASE}/documents/overview")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status_counts"] == {"error": 1}
        assert body["recent_errors"][0]["error_message"] == "boom"


# ─────────────────────────────────────────────────────────────────────────────
# Bots + queue + health
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestBotAndQueueEndpoints:

    async def test_search_after_processing(self, async_client, wired_tasks, repo, storage_objects):
        doc = repo.add(make_document("txt"))
        storage_objects[doc.file_path] = SAMPLE_TEXT.encode()
        await async_client.post(f"{BASE}/documents/{doc.id}/process")

        resp = await async_client.post(
            f"{BASE}/bots/{TEST_BOT_ID}/search", json={"query": "similarity search", "top_k": 3},
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["degraded"] is False
        assert 0 < len(body["matches"]) <= 3
        assert {m["document_id"] for m in body["matches"]} == {str(doc.id)}

    async def test_search_rejects_empty_query(self, async_client):
        resp = await async_client.post(f"{BASE}/bots/{TEST_BOT_ID}/search", json={"query": ""})
        assert resp.status_code == 422

    async def test_delete_bot_vectors(self, async_client):
        resp = await async_client.delete(f"{BASE}/bots/{TEST_BOT_ID}/vectors")

        assert resp.status_code == 200
        assert resp.json()["bot_id"] == str(TEST_BOT_ID)

    async def test_queue_status_healthy(self, async_client):
        resp = await async_client.get(f"{BASE}/queue/status")

        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
        assert resp.json()["redis"] == "connected"

    async def test_queue_status_unreachable_is_503(self, async_client, job_store, monkeypatch):
        monkeypatch.setattr(job_store, "ping", lambda: False)

        resp = await async_client.get(f"{BASE}/queue/status")

        assert resp.status_code == 503
        assert resp.json()["status"] == "degraded"

    async def test_health(self, async_client):
        resp = await async_client.get("/health")

        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "service": "knowledge-pipeline-api"}
