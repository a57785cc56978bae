"""
Batch Embedding Processor - Keep note embeddings current with few provider calls.

For every note the embedding input is rebuilt and hashed; a stored vector is
reused when it was produced by the current model for the same hash. The
remaining notes are sent to the provider in batches. When a provider rejects a
batch as too large, the batch is split in half and both halves go back on the
work stack, down to single notes.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np
from loguru import logger

from smart_topics.core.errors import ErrorKind, TopicEngineError
from smart_topics.core.records import Document, EmbeddingRecord
from smart_topics.semantic.embedding_service import (
    PAYLOAD_HINT,
    EmbeddingProvider,
    build_embedding_text,
    content_hash,
)

if TYPE_CHECKING:
    from smart_topics.db.store import TopicStore


@dataclass
class EmbeddingTarget:
    """A note prepared for embedding."""

    document_id: str
    text: str
    content_hash: str


class BatchQueue:
    """
    Explicit work stack of pending embedding batches.

    Batches are popped from the front of the logical order; a split batch is
    pushed back so its first half is processed next.
    """

    def __init__(self, items: list[EmbeddingTarget] | None = None, batch_size: int = 64):
        self.batch_size = max(1, batch_size)
        self._stack: list[list[EmbeddingTarget]] = []
        items = items or []
        chunks = [items[i : i + self.batch_size] for i in range(0, len(items), self.batch_size)]
        for chunk in reversed(chunks):
            self.push(chunk)

    def push(self, batch: list[EmbeddingTarget]) -> None:
        if batch:
            self._stack.append(batch)

    def pop(self) -> list[EmbeddingTarget]:
        return self._stack.pop()

    def split(self, batch: list[EmbeddingTarget]) -> None:
        """Requeue both halves of a batch; the first half is popped next."""
        mid = max(1, len(batch) // 2)
        self.push(batch[mid:])
        self.push(batch[:mid])

    def __len__(self) -> int:
        return len(self._stack)

    def __bool__(self) -> bool:
        return bool(self._stack)


@dataclass
class EmbeddingRunStats:
    """Counters for one embedding pass."""

    documents: int = 0
    cached: int = 0
    computed: int = 0
    empty: int = 0
    provider_calls: int = 0
    splits: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "documents": self.documents,
            "cached": self.cached,
            "computed": self.computed,
            "empty": self.empty,
            "provider_calls": self.provider_calls,
            "splits": self.splits,
        }


@dataclass
class EmbeddingRun:
    """Vectors available for this run, keyed by document id."""

    vectors: dict[str, np.ndarray] = field(default_factory=dict)
    targets: list[EmbeddingTarget] = field(default_factory=list)
    stats: EmbeddingRunStats = field(default_factory=EmbeddingRunStats)

    def usable_ids(self, order: list[str]) -> list[str]:
        """Document ids (in the given order) that have a non-empty vector."""
        return [doc_id for doc_id in order if doc_id in self.vectors]


class BatchEmbeddingProcessor:
    """
    Generate and cache embeddings for a user's notes.

    Example:
        >>> processor = BatchEmbeddingProcessor(provider, store, batch_size=16)
        >>> run = await processor.ensure_embeddings("user-1", documents)
        >>> print(run.stats.to_dict())
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        store: TopicStore,
        batch_size: int = 64,
        max_chars: int | None = 8000,
    ):
        self.provider = provider
        self.store = store
        self.batch_size = max(1, batch_size)
        self.max_chars = max_chars

    @property
    def model_name(self) -> str:
        return self.provider.model_name

    def prepare(self, documents: list[Document]) -> list[EmbeddingTarget]:
        """Build embedding text and hash for every document."""
        targets = []
        for doc in documents:
            text = build_embedding_text(doc.title, doc.excerpt, doc.content_text, self.max_chars)
            targets.append(EmbeddingTarget(doc.id, text, content_hash(text)))
        return targets

    async def ensure_embeddings(self, owner_id: str, documents: list[Document]) -> EmbeddingRun:
        """
        Return a vector for every document that has (or can get) a valid embedding.

        Raises:
            TopicEngineError: CONFIGURATION/PROVIDER failures propagate unchanged;
                PAYLOAD_TOO_LARGE is raised only once a single note is rejected.
        """
        run = EmbeddingRun(targets=self.prepare(documents))
        run.stats.documents = len(run.targets)
        if not run.targets:
            return run

        existing = await self.store.get_embeddings(owner_id, [t.document_id for t in run.targets])

        pending: list[EmbeddingTarget] = []
        for target in run.targets:
            record = existing.get(target.document_id)
            if record is not None and record.is_valid_for(self.model_name, target.content_hash):
                run.vectors[target.document_id] = np.asarray(record.vector, dtype=np.float64)
                run.stats.cached += 1
            elif target.text:
                pending.append(target)
            else:
                run.stats.empty += 1

        logger.info(
            f"Embeddings for owner {owner_id}: {run.stats.cached} cached, "
            f"{len(pending)} to compute (model={self.model_name}, batch_size={self.batch_size})"
        )

        queue = BatchQueue(pending, self.batch_size)
        while queue:
            batch = queue.pop()
            try:
                run.stats.provider_calls += 1
                vectors = await self.provider.embed([t.text for t in batch])
            except TopicEngineError as e:
                if e.kind != ErrorKind.PAYLOAD_TOO_LARGE:
                    raise
                if len(batch) > 1:
                    run.stats.splits += 1
                    logger.warning(f"Embedding batch of {len(batch)} too large, splitting")
                    queue.split(batch)
                    continue
                raise TopicEngineError(
                    ErrorKind.PAYLOAD_TOO_LARGE,
                    "Embedding request entity too large",
                    hint=PAYLOAD_HINT,
                    details={
                        **e.details,
                        "document_id": batch[0].document_id,
                        "sample_text_chars": len(batch[0].text),
                    },
                ) from e

            await self._store_batch(owner_id, batch, vectors, run)

        return run

    async def _store_batch(
        self,
        owner_id: str,
        batch: list[EmbeddingTarget],
        vectors: list[list[float]],
        run: EmbeddingRun,
    ) -> None:
        records = []
        for target, values in zip(batch, vectors):
            # Round through float32 so this run sees exactly what later runs read back.
            vector = np.asarray(values, dtype=np.float32).astype(np.float64)
            if vector.size == 0 or not np.any(vector):
                logger.warning(f"Provider returned an empty embedding for note {target.document_id}")
                run.stats.empty += 1
                continue
            records.append(
                EmbeddingRecord(
                    document_id=target.document_id,
                    model=self.model_name,
                    content_hash=target.content_hash,
                    vector=vector,
                )
            )

        if records:
            await self.store.upsert_embeddings(owner_id, records)
        for record in records:
            run.vectors[record.document_id] = record.vector
        run.stats.computed += len(records)
