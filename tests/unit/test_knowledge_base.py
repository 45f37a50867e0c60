"""Unit tests for the KnowledgeBase facade over store and index."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from knowledge_rag.errors import EmbeddingError, InvalidInputError, NotFoundError
from knowledge_rag.models import Document
from knowledge_rag.storage.knowledge_base import KnowledgeBase
from knowledge_rag.storage.vector_index import VectorIndex

MakeDocument = Callable[..., Document]


# ── Commit and delete ──────────────────────────────────────────────────


class TestCommit:
    def test_commit_stores_record_and_vectors(self, kb: KnowledgeBase, make_document: MakeDocument) -> None:
        kb.commit(make_document("doc_a", [[1.0, 0.0], [0.0, 1.0]]))
        assert kb.get_document("doc_a") is not None
        assert len(kb.index) == 2

    def test_failed_indexing_rolls_back_record(self, make_document: MakeDocument) -> None:
        kb = KnowledgeBase.in_memory(dimensions=3)
        with pytest.raises(EmbeddingError):
            kb.commit(make_document("doc_a", [[1.0, 0.0]]))
        assert kb.get_document("doc_a") is None
        assert len(kb.index) == 0

    def test_delete_removes_record_and_vectors(self, kb: KnowledgeBase, make_document: MakeDocument) -> None:
        kb.commit(make_document("doc_a", [[1.0, 0.0]]))
        kb.commit(make_document("doc_b", [[0.0, 1.0]]))
        assert kb.delete_document("doc_a") is True
        assert kb.delete_document("doc_a") is False
        assert kb.index.document_ids() == {"doc_b"}

    def test_invalid_document_id_rejected(self, kb: KnowledgeBase) -> None:
        with pytest.raises(InvalidInputError):
            kb.get_document("../etc/passwd")


class TestUpdateMetadata:
    def test_tags_are_normalized(self, kb: KnowledgeBase, make_document: MakeDocument) -> None:
        kb.commit(make_document("doc_a", [[1.0]]))
        updated = kb.update_document_metadata("doc_a", tags=[" x ", "y", "x", ""])
        assert updated.metadata.tags == ["x", "y"]

    def test_missing_document_raises(self, kb: KnowledgeBase) -> None:
        with pytest.raises(NotFoundError):
            kb.update_document_metadata("doc_missing", custom_metadata={"a": 1})

    def test_non_serialisable_metadata_rejected(self, kb: KnowledgeBase, make_document: MakeDocument) -> None:
        kb.commit(make_document("doc_a", [[1.0]]))
        with pytest.raises(InvalidInputError):
            kb.update_document_metadata("doc_a", custom_metadata={"when": object()})


# ── Search join ────────────────────────────────────────────────────────


class TestSearch:
    def test_results_join_chunk_and_document(self, kb: KnowledgeBase, make_document: MakeDocument) -> None:
        kb.commit(make_document("doc_a", [[1.0, 0.0], [0.0, 1.0]]))
        results = kb.search([0.0, 1.0], k=1)
        assert len(results) == 1
        assert results[0].chunk.id == "doc_a_chunk_1"
        assert results[0].document.id == "doc_a"
        assert results[0].distance == pytest.approx(1.0 - results[0].score)

    def test_hits_of_missing_documents_are_dropped(self, kb: KnowledgeBase, make_document: MakeDocument) -> None:
        kb.commit(make_document("doc_a", [[1.0, 0.0]]))
        kb.commit(make_document("doc_b", [[0.9, 0.1]]))
        kb.store.delete("doc_a")
        assert [r.document.id for r in kb.search([1.0, 0.0], k=5)] == ["doc_b"]

    def test_document_filter_does_not_starve_k(self, kb: KnowledgeBase, make_document: MakeDocument) -> None:
        kb.commit(make_document("doc_close", [[1.0, 0.0], [0.99, 0.01], [0.98, 0.02]]))
        kb.commit(make_document("doc_far", [[0.2, 0.8]], tags=["wanted"]))
        results = kb.search([1.0, 0.0], k=1, document_filter=lambda d: "wanted" in d.metadata.tags)
        assert [r.document.id for r in results] == ["doc_far"]

    def test_only_returned_documents_are_copied(
        self, kb: KnowledgeBase, make_document: MakeDocument, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        for i in range(10):
            kb.commit(make_document(f"doc_{i}", [[1.0, i / 10]], tags=["wanted"] if i == 7 else []))
        copied: list[str] = []
        real_get = kb.store.get

        def counting_get(document_id: str) -> Document | None:
            copied.append(document_id)
            return real_get(document_id)

        monkeypatch.setattr(kb.store, "get", counting_get)
        results = kb.search([1.0, 0.0], k=3, document_filter=lambda d: "wanted" in d.metadata.tags)

        assert [r.document.id for r in results] == ["doc_7"]
        assert copied == ["doc_7"]

    def test_results_do_not_alias_stored_documents(self, kb: KnowledgeBase, make_document: MakeDocument) -> None:
        kb.commit(make_document("doc_a", [[1.0, 0.0]], tags=["t"]))
        kb.search([1.0, 0.0], k=1)[0].document.metadata.tags.append("mutated")
        assert kb.get_document("doc_a").metadata.tags == ["t"]


# ── Stats ──────────────────────────────────────────────────────────────


def test_stats_summarise_collection(kb: KnowledgeBase, make_document: MakeDocument) -> None:
    kb.commit(make_document("doc_a", [[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]], file_type="md"))
    kb.commit(make_document("doc_b", [[1.0, 0.0]]))
    stats = kb.get_stats()
    assert stats.total_documents == 2
    assert stats.total_chunks == 4
    assert stats.collection_size == 4
    assert stats.average_chunks_per_document == 2.0
    assert stats.file_types == {"md": 1, "txt": 1}
    assert stats.dimensions == 2


def test_stats_of_empty_collection(kb: KnowledgeBase) -> None:
    stats = kb.get_stats()
    assert stats.total_documents == 0
    assert stats.average_chunks_per_document == 0.0
    assert stats.dimensions is None


# ── Reopening from disk ────────────────────────────────────────────────


class TestOpen:
    def test_restart_reloads_documents_and_index(self, tmp_path: Path, make_document: MakeDocument) -> None:
        document = make_document("doc_a", [[1.0, 0.0], [0.0, 1.0]], tags=["t"])
        KnowledgeBase.open(tmp_path).commit(document)

        reopened = KnowledgeBase.open(tmp_path)
        assert reopened.get_document("doc_a") == document
        assert [r.chunk.id for r in reopened.search([0.0, 1.0], k=1)] == ["doc_a_chunk_1"]
        assert (tmp_path / "documents" / "doc_a.json").is_file()
        assert (tmp_path / "vector_index.json").is_file()

    def test_orphan_vectors_are_removed_on_open(self, tmp_path: Path, make_document: MakeDocument) -> None:
        orphan = make_document("doc_gone", [[1.0, 0.0]])
        VectorIndex(tmp_path / "vector_index.json").upsert(orphan.id, orphan.chunks)

        reopened = KnowledgeBase.open(tmp_path)
        assert len(reopened.index) == 0
        assert reopened.search([1.0, 0.0], k=5) == []


# ── Concurrent readers ─────────────────────────────────────────────────


def _run_in_thread(target: Callable[[], Any]) -> tuple[threading.Thread, dict[str, Any]]:
    outcome: dict[str, Any] = {}

    def _worker() -> None:
        try:
            outcome["value"] = target()
        except Exception as exc:
            outcome["error"] = exc

    thread = threading.Thread(target=_worker, daemon=True)
    thread.start()
    return thread, outcome


class TestConcurrentReaders:
    def test_readers_never_see_a_commit_that_rolls_back(
        self, kb: KnowledgeBase, make_document: MakeDocument, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        indexing = threading.Event()

        def slow_failing_upsert(document_id: str, chunks: list) -> None:
            indexing.set()
            time.sleep(0.3)
            raise EmbeddingError("index unavailable", source=document_id)

        monkeypatch.setattr(kb.index, "upsert", slow_failing_upsert)
        thread, outcome = _run_in_thread(lambda: kb.commit(make_document("doc_a", [[1.0, 0.0]])))
        assert indexing.wait(timeout=5)

        assert kb.get_document("doc_a") is None
        assert kb.list_documents() == []
        assert kb.search([1.0, 0.0], k=5) == []
        assert kb.get_stats().total_documents == 0

        thread.join(timeout=5)
        assert isinstance(outcome["error"], EmbeddingError)

    def test_readers_see_record_only_with_its_vectors(
        self, kb: KnowledgeBase, make_document: MakeDocument, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        indexing = threading.Event()
        real_upsert = kb.index.upsert

        def slow_upsert(document_id: str, chunks: list) -> None:
            indexing.set()
            time.sleep(0.2)
            real_upsert(document_id, chunks)

        monkeypatch.setattr(kb.index, "upsert", slow_upsert)
        thread, outcome = _run_in_thread(lambda: kb.commit(make_document("doc_a", [[1.0, 0.0], [0.0, 1.0]])))
        assert indexing.wait(timeout=5)

        document = kb.get_document("doc_a")
        assert document is not None
        assert kb.index.chunk_ids("doc_a") == ["doc_a_chunk_0", "doc_a_chunk_1"]
        assert [d.id for d in kb.list_documents()] == ["doc_a"]

        thread.join(timeout=5)
        assert "error" not in outcome

    def test_delete_during_search_is_not_an_error(
        self, kb: KnowledgeBase, make_document: MakeDocument
    ) -> None:
        kb.commit(make_document("doc_a", [[1.0, 0.0]]))
        kb.commit(make_document("doc_b", [[0.9, 0.1]]))
        filtering = threading.Event()

        def slow_filter(document: Document) -> bool:
            filtering.set()
            time.sleep(0.2)
            return True

        thread, outcome = _run_in_thread(lambda: kb.search([1.0, 0.0], k=5, document_filter=slow_filter))
        assert filtering.wait(timeout=5)
        assert kb.delete_document("doc_a") is True

        thread.join(timeout=5)
        assert "error" not in outcome
        assert {r.document.id for r in outcome["value"]} == {"doc_a", "doc_b"}
        assert [r.document.id for r in kb.search([1.0, 0.0], k=5)] == ["doc_b"]
