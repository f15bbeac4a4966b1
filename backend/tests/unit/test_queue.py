"""
Unit Tests — Job queue, job store and lifecycle events
══════════════════════════════════════════════════════

The Celery task is patched out: these tests cover what JobQueue and the
stores add on top of the broker (priority, bookkeeping, retention, stall
detection), not delivery itself.
"""

from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock, patch

import pytest
import redis

from knowledge_pipeline.workers.events import (
    EventKind,
    InMemoryEventStream,
    QueueEvent,
    RedisEventStream,
)
from knowledge_pipeline.workers.queue import (
    InMemoryJobStore,
    JobPayload,
    JobPriority,
    JobQueue,
    JobQueueError,
    JobState,
    RedisJobStore,
    backoff_delay,
)


def _payload(file_type: str = "txt", document_id: str = "11111111-1111-1111-1111-111111111111") -> JobPayload:
    return JobPayload(
        document_id=document_id,
        bot_id="aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa",
        user_id=None,
        file_path=f"bots/a/documents/file.{file_type}",
        file_type=file_type,
        file_name=f"file.{file_type}",
    )


@pytest.fixture
def mock_task():
    with patch("knowledge_pipeline.workers.tasks.process_document") as task:
        yield task


# ─────────────────────────────────────────────────────────────────────────────
# Priority + backoff
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestPolicy:

    def test_pdf_jobs_outrank_everything_else(self):
        assert JobPriority.for_file_type("pdf") is JobPriority.HIGH
        for kind in ("docx", "txt", "webpage", "video"):
            assert JobPriority.for_file_type(kind) is JobPriority.NORMAL
        assert JobPriority.HIGH > JobPriority.NORMAL

    def test_backoff_doubles_from_two_seconds(self):
        assert [backoff_delay(r) for r in range(3)] == [2.0, 4.0, 8.0]


# ─────────────────────────────────────────────────────────────────────────────
# JobQueue.enqueue
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestJobQueue:

    def test_enqueue_publishes_with_priority_and_job_id(self, job_store, mock_task):
        job_id = JobQueue(store=job_store).enqueue(_payload("pdf"))

        kwargs = mock_task.apply_async.call_args.kwargs
        assert kwargs["task_id"] == job_id
        assert kwargs["priority"] == 9
        assert kwargs["kwargs"]["file_type"] == "pdf"
        assert kwargs["kwargs"]["document_id"] == "11111111-1111-1111-1111-111111111111"

    def test_enqueue_records_waiting_job(self, job_store, mock_task):
        job_id = JobQueue(store=job_store).enqueue(_payload())

        record = job_store.get(job_id)
        assert record.state == JobState.WAITING
        assert job_store.latest_for_document(record.document_id).job_id == job_id
        assert job_store.metrics()["waiting"] == 1

    def test_explicit_priority_overrides_file_type(self, job_store, mock_task):
        JobQueue(store=job_store).enqueue(_payload("txt"), priority=JobPriority.HIGH)
        assert mock_task.apply_async.call_args.kwargs["priority"] == int(JobPriority.HIGH)

    def test_broker_failure_raises_and_marks_job_failed(self, job_store, mock_task):
        mock_task.apply_async.side_effect = ConnectionError("broker down")

        with pytest.raises(JobQueueError, match="broker down"):
            JobQueue(store=job_store).enqueue(_payload())

        metrics = job_store.metrics()
        assert metrics["failed"] == 1
        assert metrics["waiting"] == 0


# ─────────────────────────────────────────────────────────────────────────────
# InMemoryJobStore
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestInMemoryJobStore:

    def test_attempt_lifecycle(self, job_store):
        job_store.record_enqueued("j1", _payload(), JobPriority.NORMAL)

        job_store.mark_active("j1", attempt=1)
        job_store.heartbeat("j1", progress=20)
        assert job_store.metrics() == {"waiting": 0, "active": 1, "completed": 0, "failed": 0}
        assert job_store.get("j1").progress == 20

        job_store.mark_retrying("j1", "Embedding error: 429")
        record = job_store.get("j1")
        assert (record.state, record.progress, record.error) == (JobState.WAITING, 0, "Embedding error: 429")
        assert job_store.metrics()["active"] == 0

        job_store.mark_active("j1", attempt=2)
        job_store.mark_completed("j1", {"success": True, "chunks_created": 4})
        record = job_store.get("j1")
        assert record.state == JobState.COMPLETED
        assert record.attempts == 2
        assert record.progress == 100
        assert record.result == {"success": True, "chunks_created": 4}

    def test_retention_limits_evict_oldest(self):
        store = InMemoryJobStore(keep_completed=2, keep_failed=1)
        for job_id in ("a", "b", "c"):
            store.record_enqueued(job_id, _payload(document_id=job_id), JobPriority.NORMAL)
            store.mark_completed(job_id, {})
        for job_id in ("x", "y"):
            store.mark_failed(job_id, "boom")

        assert store.get("a") is None
        assert store.get("c") is not None
        assert store.get("x") is None
        assert store.metrics()["completed"] == 2
        assert store.metrics()["failed"] == 1

    def test_find_stalled_uses_heartbeat_age(self, job_store):
        job_store.record_enqueued("j1", _payload(), JobPriority.NORMAL)
        job_store.mark_active("j1", attempt=1)

        assert job_store.find_stalled(older_than_seconds=3600) == []
        assert [r.job_id for r in job_store.find_stalled(older_than_seconds=-1)] == ["j1"]

    def test_finished_jobs_are_never_stalled(self, job_store):
        job_store.mark_active("j1", attempt=1)
        job_store.mark_failed("j1", "boom")
        assert job_store.find_stalled(older_than_seconds=-1) == []


# ─────────────────────────────────────────────────────────────────────────────
# Redis backends (no live Redis)
# ─────────────────────────────────────────────────────────────────────────────

class FakeRedis:
    """
    The subset of redis-py (decode_responses=True) that RedisJobStore uses.
    Pipelines queue calls and run them in order on execute().
    """

    def __init__(self) -> None:
        self.strings: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.lists: dict[str, list[str]] = {}

    # strings
    def get(self, key):
        return self.strings.get(key)

    def set(self, key, value, ex=None):
        self.strings[key] = str(value)
        return True

    def incr(self, key):
        self.strings[key] = str(int(self.strings.get(key, 0)) + 1)
        return int(self.strings[key])

    def decr(self, key):
        self.strings[key] = str(int(self.strings.get(key, 0)) - 1)
        return int(self.strings[key])

    def expire(self, key, seconds):
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            for space in (self.strings, self.hashes, self.zsets, self.lists):
                if space.pop(key, None) is not None:
                    removed += 1
        return removed

    # hashes
    def hset(self, key, field=None, value=None, mapping=None):
        fields = dict(mapping or {})
        if field is not None:
            fields[field] = value
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in fields.items()})
        return len(fields)

    def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    # sorted sets
    def zadd(self, key, mapping, xx=False):
        zset = self.zsets.setdefault(key, {})
        for member, score in mapping.items():
            if xx and member not in zset:
                continue
            zset[member] = float(score)
        return len(mapping)

    def zrem(self, key, member):
        return 1 if self.zsets.get(key, {}).pop(member, None) is not None else 0

    def zcard(self, key):
        return len(self.zsets.get(key, {}))

    def zrangebyscore(self, key, low, high):
        low, high = float(low), float(high)
        items = sorted(self.zsets.get(key, {}).items(), key=lambda kv: kv[1])
        return [member for member, score in items if low <= score <= high]

    # lists
    def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)
        return len(self.lists[key])

    def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        return items[start:] if end == -1 else items[start:end + 1]

    def ltrim(self, key, start, end):
        self.lists[key] = self.lrange(key, start, end)
        return True

    def llen(self, key):
        return len(self.lists.get(key, []))

    def pipeline(self):
        return _FakePipeline(self)


class _FakePipeline:
    def __init__(self, client: FakeRedis) -> None:
        self._client = client
        self._calls: list = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self._calls.append((getattr(self._client, name), args, kwargs))
            return self
        return queue

    def execute(self):
        calls, self._calls = self._calls, []
        return [fn(*args, **kwargs) for fn, args, kwargs in calls]


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def redis_store(fake_redis) -> RedisJobStore:
    return RedisJobStore(client=fake_redis, keep_completed=2, keep_failed=1)


@pytest.mark.unit
class TestRedisJobStore:

    def test_attempt_retry_then_complete(self, redis_store):
        redis_store.record_enqueued("j1", _payload(), JobPriority.HIGH)
        assert redis_store.metrics() == {"waiting": 1, "active": 0, "completed": 0, "failed": 0}

        redis_store.mark_active("j1", attempt=1)
        redis_store.heartbeat("j1", 20)
        assert redis_store.metrics() == {"waiting": 0, "active": 1, "completed": 0, "failed": 0}
        assert redis_store.get("j1").progress == 20

        redis_store.mark_retrying("j1", "Embedding error: 503")
        record = redis_store.get("j1")
        assert (record.state, record.progress, record.error) == (JobState.WAITING, 0, "Embedding error: 503")
        assert redis_store.metrics() == {"waiting": 1, "active": 0, "completed": 0, "failed": 0}

        redis_store.mark_active("j1", attempt=2)
        redis_store.mark_completed("j1", {"success": True, "chunks_created": 4})

        record = redis_store.latest_for_document(_payload().document_id)
        assert record.job_id == "j1"
        assert record.state == JobState.COMPLETED
        assert record.attempts == 2
        assert record.progress == 100
        assert record.result == {"success": True, "chunks_created": 4}
        assert record.finished_at is not None
        assert redis_store.metrics() == {"waiting": 0, "active": 0, "completed": 1, "failed": 0}

    def test_exhausted_job_ends_failed(self, redis_store):
        redis_store.record_enqueued("j1", _payload(), JobPriority.NORMAL)
        for attempt in (1, 2, 3):
            redis_store.mark_active("j1", attempt=attempt)
            if attempt < 3:
                redis_store.mark_retrying("j1", "boom")
        redis_store.mark_failed("j1", "boom")

        record = redis_store.get("j1")
        assert (record.state, record.attempts, record.error) == (JobState.FAILED, 3, "boom")
        assert redis_store.metrics() == {"waiting": 0, "active": 0, "completed": 0, "failed": 1}

    def test_job_failed_before_it_started_leaves_the_waiting_count(self, redis_store):
        redis_store.record_enqueued("j1", _payload(), JobPriority.NORMAL)
        redis_store.mark_failed("j1", "enqueue failed: broker down")

        assert redis_store.metrics()["waiting"] == 0

    def test_completed_jobs_beyond_retention_are_deleted(self, redis_store, fake_redis):
        for job_id in ("j1", "j2", "j3"):
            redis_store.record_enqueued(job_id, _payload(document_id=job_id), JobPriority.NORMAL)
            redis_store.mark_active(job_id, attempt=1)
            redis_store.mark_completed(job_id, {"success": True})

        assert redis_store.metrics()["completed"] == 2
        assert fake_redis.lists[RedisJobStore._key(JobState.COMPLETED)] == ["j3", "j2"]
        assert redis_store.get("j1") is None
        assert redis_store.get("j2").state == JobState.COMPLETED

    def test_failed_jobs_beyond_retention_are_deleted(self, redis_store):
        for job_id in ("j1", "j2"):
            redis_store.record_enqueued(job_id, _payload(document_id=job_id), JobPriority.NORMAL)
            redis_store.mark_active(job_id, attempt=1)
            redis_store.mark_failed(job_id, "boom")

        assert redis_store.metrics()["failed"] == 1
        assert redis_store.get("j1") is None
        assert redis_store.get("j2").state == JobState.FAILED

    def test_find_stalled_uses_last_heartbeat(self, redis_store, fake_redis):
        redis_store.record_enqueued("j1", _payload(), JobPriority.NORMAL)
        redis_store.mark_active("j1", attempt=1)
        fake_redis.zsets[RedisJobStore._key("active")]["j1"] = time.time() - 600

        assert [r.job_id for r in redis_store.find_stalled(older_than_seconds=120)] == ["j1"]

        redis_store.heartbeat("j1")
        assert redis_store.find_stalled(older_than_seconds=120) == []

    def test_heartbeat_does_not_revive_a_finished_job(self, redis_store):
        redis_store.record_enqueued("j1", _payload(), JobPriority.NORMAL)
        redis_store.mark_active("j1", attempt=1)
        redis_store.mark_completed("j1", {"success": True})

        redis_store.heartbeat("j1")

        assert redis_store.metrics()["active"] == 0
        assert redis_store.find_stalled(older_than_seconds=-1) == []



@pytest.mark.unit
class TestRedisBackends:

    def test_job_store_ping_false_when_redis_down(self):
        client = MagicMock()
        client.ping.side_effect = redis.ConnectionError("refused")
        assert RedisJobStore(client=client).ping() is False

    def test_job_store_keys_are_prefixed(self):
        client = MagicMock()
        client.get.return_value = None
        assert RedisJobStore(client=client).latest_for_document("doc-9") is None
        client.get.assert_called_once_with("document-processing:doc:doc-9")

    def test_event_publish_swallows_redis_errors(self):
        client = MagicMock()
        client.publish.side_effect = redis.ConnectionError("refused")
        stream = RedisEventStream(client=client, channel="events")

        stream.publish(QueueEvent.failed("j1", "doc-1", "boom"))

        client.publish.assert_called_once()
        assert client.publish.call_args.args[0] == "events"


# ─────────────────────────────────────────────────────────────────────────────
# Events
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestEvents:

    def test_json_round_trip_drops_empty_fields(self):
        event = QueueEvent.completed("j1", "doc-1", {"success": True, "chunks_created": 3})
        raw = event.to_json()

        assert '"error"' not in raw
        restored = QueueEvent.from_json(raw)
        assert restored.kind is EventKind.COMPLETED
        assert restored.result == {"success": True, "chunks_created": 3}
        assert restored.progress == 100

    def test_in_memory_subscribers_receive_published_events(self):
        stream = InMemoryEventStream()
        stop = threading.Event()
        received: list[QueueEvent] = []

        def consume():
            for event in stream.subscribe(stop):
                received.append(event)
                stop.set()

        consumer = threading.Thread(target=consume)
        consumer.start()
        deadline = time.monotonic() + 2
        while not stream._subscribers and time.monotonic() < deadline:
            time.sleep(0.01)

        stream.publish(QueueEvent.stalled("j1", "doc-1"))
        consumer.join(timeout=2)

        assert [e.kind for e in received] == [EventKind.STALLED]
        assert stream.of_kind(EventKind.STALLED)[0].job_id == "j1"
