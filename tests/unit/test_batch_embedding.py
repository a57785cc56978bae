"""
Unit tests for the batch embedding processor and its work queue.
"""
from datetime import datetime, timezone

import numpy as np
import pytest

from smart_topics.core.errors import ErrorKind, TopicEngineError
from smart_topics.core.records import Document, EmbeddingRecord
from smart_topics.semantic.batch_embedding import BatchEmbeddingProcessor, BatchQueue, EmbeddingTarget
from smart_topics.semantic.embedding_service import build_embedding_text, content_hash

NOW = datetime(2025, 3, 1, tzinfo=timezone.utc)


def _doc(doc_id, title, body=None):
    return Document(
        id=doc_id,
        owner_id="u1",
        title=title,
        excerpt=None,
        content_text=body,
        created_at=NOW,
        updated_at=NOW,
    )


def _target(i):
    return EmbeddingTarget(document_id=f"d{i}", text=f"text {i}", content_hash=str(i))


class MemoryStore:
    """Embedding half of the topic store, in memory."""

    def __init__(self, records=None):
        self.records = {r.document_id: r for r in (records or [])}
        self.upserts = []

    async def get_embeddings(self, owner_id, document_ids):
        return {d: self.records[d] for d in document_ids if d in self.records}

    async def upsert_embeddings(self, owner_id, records):
        self.upserts.append([r.document_id for r in records])
        for record in records:
            self.records[record.document_id] = record


class CountingProvider:
    """Returns a distinct vector per text; rejects batches that are too big."""

    model_name = "counting-v1"

    def __init__(self, max_batch=None, reject_text=None):
        self.max_batch = max_batch
        self.reject_text = reject_text
        self.calls = []

    async def embed(self, texts):
        self.calls.append(list(texts))
        if self.max_batch is not None and len(texts) > self.max_batch:
            raise TopicEngineError(ErrorKind.PAYLOAD_TOO_LARGE, "Embedding request entity too large")
        if self.reject_text is not None and any(self.reject_text in t for t in texts):
            raise TopicEngineError(
                ErrorKind.PAYLOAD_TOO_LARGE, "Embedding request entity too large", details={"status": 413}
            )
        return [[1.0, float(len(t)), 0.5] for t in texts]


class TestBatchQueue:
    """Tests for the explicit work stack."""

    def test_chunks_in_order(self):
        queue = BatchQueue([_target(i) for i in range(5)], batch_size=2)
        assert len(queue) == 3
        popped = [[t.document_id for t in queue.pop()] for _ in range(3)]
        assert popped == [["d0", "d1"], ["d2", "d3"], ["d4"]]
        assert not queue

    def test_split_processes_first_half_next(self):
        queue = BatchQueue([_target(i) for i in range(4)], batch_size=4)
        batch = queue.pop()
        queue.split(batch)
        assert [t.document_id for t in queue.pop()] == ["d0", "d1"]
        assert [t.document_id for t in queue.pop()] == ["d2", "d3"]

    def test_empty_batches_are_not_pushed(self):
        queue = BatchQueue([], batch_size=3)
        queue.push([])
        assert len(queue) == 0


class TestBatchEmbeddingProcessor:
    """Tests for BatchEmbeddingProcessor."""

    @pytest.mark.asyncio
    async def test_computes_and_stores_missing_embeddings(self):
        store = MemoryStore()
        provider = CountingProvider()
        processor = BatchEmbeddingProcessor(provider, store, batch_size=2)

        run = await processor.ensure_embeddings("u1", [_doc("a", "Alpha"), _doc("b", "Beta"), _doc("c", "Gamma")])

        assert set(run.vectors) == {"a", "b", "c"}
        assert run.stats.computed == 3
        assert run.stats.provider_calls == 2
        assert store.upserts == [["a", "b"], ["c"]]
        assert store.records["a"].model == "counting-v1"
        assert store.records["a"].content_hash == content_hash("Alpha")

    @pytest.mark.asyncio
    async def test_reuses_valid_cache(self):
        text = build_embedding_text("Alpha", None, None)
        cached = EmbeddingRecord("a", "counting-v1", content_hash(text), np.array([0.0, 1.0, 0.0]))
        store = MemoryStore([cached])
        provider = CountingProvider()
        processor = BatchEmbeddingProcessor(provider, store)

        run = await processor.ensure_embeddings("u1", [_doc("a", "Alpha")])

        assert provider.calls == []
        assert run.stats.cached == 1
        assert np.allclose(run.vectors["a"], [0.0, 1.0, 0.0])

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "record",
        [
            EmbeddingRecord("a", "older-model", content_hash("Alpha"), np.array([0.0, 1.0, 0.0])),
            EmbeddingRecord("a", "counting-v1", content_hash("Alpha (old)"), np.array([0.0, 1.0, 0.0])),
        ],
    )
    async def test_model_or_text_change_invalidates_cache(self, record):
        store = MemoryStore([record])
        provider = CountingProvider()
        processor = BatchEmbeddingProcessor(provider, store)

        run = await processor.ensure_embeddings("u1", [_doc("a", "Alpha")])

        assert provider.calls == [["Alpha"]]
        assert run.stats.computed == 1
        assert store.records["a"].model == "counting-v1"

    @pytest.mark.asyncio
    async def test_empty_documents_are_skipped(self):
        processor = BatchEmbeddingProcessor(CountingProvider(), MemoryStore())
        run = await processor.ensure_embeddings("u1", [_doc("a", "  "), _doc("b", "Beta")])
        assert run.usable_ids(["a", "b"]) == ["b"]
        assert run.stats.empty == 1

    @pytest.mark.asyncio
    async def test_too_large_batches_are_bisected(self):
        provider = CountingProvider(max_batch=2)
        store = MemoryStore()
        processor = BatchEmbeddingProcessor(provider, store, batch_size=8)
        docs = [_doc(f"d{i}", f"Note {i}") for i in range(7)]

        run = await processor.ensure_embeddings("u1", docs)

        assert set(run.vectors) == {d.id for d in docs}
        assert run.stats.splits > 0
        assert provider.calls[0] == [d.title for d in docs]
        # Halves are processed first-half-first, so the original order survives.
        assert store.upserts == [["d0"], ["d1", "d2"], ["d3", "d4"], ["d5", "d6"]]

    @pytest.mark.asyncio
    async def test_single_document_too_large_is_reported(self):
        provider = CountingProvider(reject_text="HUGE")
        processor = BatchEmbeddingProcessor(provider, MemoryStore(), batch_size=4)
        docs = [_doc("a", "small"), _doc("b", "HUGE note"), _doc("c", "fine")]

        with pytest.raises(TopicEngineError) as exc:
            await processor.ensure_embeddings("u1", docs)

        assert exc.value.kind == ErrorKind.PAYLOAD_TOO_LARGE
        assert exc.value.details["document_id"] == "b"
        assert exc.value.details["sample_text_chars"] == len("HUGE note")
        assert "EMBEDDING_BATCH_SIZE" in exc.value.hint

    @pytest.mark.asyncio
    async def test_other_provider_errors_propagate(self):
        class BrokenProvider:
            model_name = "broken"

            async def embed(self, texts):
                raise TopicEngineError(ErrorKind.CONFIGURATION, "Embedding provider is misconfigured")

        processor = BatchEmbeddingProcessor(BrokenProvider(), MemoryStore())
        with pytest.raises(TopicEngineError) as exc:
            await processor.ensure_embeddings("u1", [_doc("a", "Alpha"), _doc("b", "Beta")])
        assert exc.value.kind == ErrorKind.CONFIGURATION
