"""
Integration Tests — enqueue → Celery task → worker → processor
═══════════════════════════════════════════════════════════════
Celery runs eagerly (TASK_ALWAYS_EAGER=true), so DocumentService.request_processing
drives a job through every attempt before it returns.

What is mocked vs real
──────────────────────
  ✅ Real: DocumentService, JobQueue, Celery task + retry policy, DocumentTask
           hooks, DocumentWorker, DocumentProcessor, chunker, vector store
           (in-memory backend), job store and event stream (in-memory)
  🔲 Mock: PostgreSQL        (FakeDocumentRepository)
  🔲 Mock: S3 storage        (storage fixture)
  🔲 Mock: OpenAI embeddings (FakeEmbeddingModel)

How to run
──────────
  pytest -m integration tests/integration/test_pipeline.py -v
"""

from __future__ import annotations

import pytest

from knowledge_pipeline.workers.events import EventKind
from knowledge_pipeline.workers.queue import JobState
from tests.conftest import OTHER_BOT_ID, SAMPLE_TEXT, TEST_BOT_ID, make_document


class AlwaysFailing:
    def __init__(self) -> None:
        self.calls = 0

    async def process(self, document):
        self.calls += 1
        raise RuntimeError("Embedding error: upstream 503")


# ─────────────────────────────────────────────────────────────────────────────
# Happy path
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestPipelineSuccess:

    async def test_txt_document_completes_end_to_end(
        self, wired_tasks, service, repo, storage_objects, vector_store, job_store, event_stream
    ):
        doc = repo.add(make_document("txt"))
        storage_objects[doc.file_path] = SAMPLE_TEXT.encode()

        response = await service.request_processing(doc.id)

        row = repo.documents[doc.id]
        assert row.status == "completed"
        assert row.chunk_count == await vector_store.count(str(TEST_BOT_ID)) > 0
        assert row.retry_count == 0
        assert row.processing_metadata["job_id"] == response.job_id
        assert row.processing_metadata["worker_id"] == "test-worker"

        record = job_store.get(response.job_id)
        assert record.state == JobState.COMPLETED
        assert record.progress == 100
        assert record.result["chunks_created"] == row.chunk_count

        progress = [e.progress for e in event_stream.of_kind(EventKind.PROGRESS)]
        assert progress == [10, 20, 90, 100]
        assert len(event_stream.of_kind(EventKind.COMPLETED)) == 1

        status = await service.get_status(doc.id)
        assert status.progress == 100

    async def test_forced_reprocessing_replaces_vectors(
        self, wired_tasks, service, repo, storage_objects, vector_store
    ):
        doc = repo.add(make_document("txt"))
        storage_objects[doc.file_path] = SAMPLE_TEXT.encode()

        await service.request_processing(doc.id)
        first = {r.id for r in vector_store.records()}
        await service.request_processing(doc.id, force=True)
        second = {r.id for r in vector_store.records()}

        assert repo.documents[doc.id].status == "completed"
        assert len(second) == len(first)
        assert first.isdisjoint(second)

    async def test_search_only_sees_own_bot(self, wired_tasks, service, repo, storage_objects):
        mine = repo.add(make_document("txt", file_path="bots/mine/notes.txt"))
        theirs = repo.add(make_document("txt", bot_id=OTHER_BOT_ID, file_path="bots/theirs/notes.txt"))
        storage_objects[mine.file_path] = SAMPLE_TEXT.encode()
        storage_objects[theirs.file_path] = SAMPLE_TEXT.encode()
        await service.request_processing(mine.id)
        await service.request_processing(theirs.id)

        results = await service.search(TEST_BOT_ID, "similarity search", top_k=50)

        assert results.matches
        assert {m.document_id for m in results.matches} == {str(mine.id)}


# ─────────────────────────────────────────────────────────────────────────────
# Retry policy
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestPipelineRetries:

    async def test_failing_job_is_attempted_three_times(
        self, wired_tasks, service, repo, job_store, event_stream
    ):
        failing = AlwaysFailing()
        wired_tasks["processor_factory"] = lambda store: failing
        doc = repo.add(make_document("txt"))

        response = await service.request_processing(doc.id)

        assert failing.calls == 3
        row = repo.documents[doc.id]
        assert row.status == "error"
        assert row.error_message == "Embedding error: upstream 503"
        assert row.retry_count == 3

        record = job_store.get(response.job_id)
        assert record.state == JobState.FAILED
        assert record.attempts == 3
        failed = event_stream.of_kind(EventKind.FAILED)
        assert [e.document_id for e in failed] == [str(doc.id)]

    async def test_exhausted_document_is_left_for_the_operator(
        self, wired_tasks, service, repo
    ):
        wired_tasks["processor_factory"] = lambda store: AlwaysFailing()
        doc = repo.add(make_document("txt"))
        await service.request_processing(doc.id)

        summary = await service.sweep_pending()

        assert summary["found"] == 0
        assert repo.documents[doc.id].status == "error"

    async def test_missing_source_object_fails_with_extraction_error(self, wired_tasks, service, repo):
        doc = repo.add(make_document("txt"))

        await service.request_processing(doc.id)

        row = repo.documents[doc.id]
        assert row.status == "error"
        assert row.error_message.startswith("Text extraction error")
