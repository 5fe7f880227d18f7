"""
Tests for lexical and vector retrieval and the knowledge store backends.
"""

from unittest.mock import Mock

import pytest

from chat_relay.retrieval import (
    CHUNK_SEPARATOR,
    LexicalRetriever,
    RetrievalEngine,
    VectorRetriever,
    coverage_score,
    extract_query_terms,
    format_fts_query,
)
from knowledge_store import KnowledgeIndex, MemoryVectorStore, chunk_text


class FakeIndex:
    def __init__(self, chunks):
        self.chunks = chunks
        self.queries = []

    def search(self, query, limit=20):
        self.queries.append((query, limit))
        return self.chunks[:limit]


class TestQueryHelpers:
    """FTS query formatting and term extraction"""

    def test_format_strips_punctuation_and_adds_prefix(self):
        assert format_fts_query("reset password?") == '"reset"* OR "password"*'

    def test_format_quotes_operator_words(self):
        assert format_fts_query("cats AND dogs") == '"cats"* OR "AND"* OR "dogs"*'

    def test_format_empty_when_only_punctuation(self):
        assert format_fts_query("?!.") == ""

    def test_terms_are_lowercase_distinct_in_order(self):
        assert extract_query_terms("VPN setup, vpn Setup again") == ["vpn", "setup", "again"]

    def test_terms_keep_cjk_runs(self):
        assert extract_query_terms("如何 reset") == ["如何", "reset"]

    def test_coverage(self):
        assert coverage_score(["vpn", "setup"], "How to set up the VPN") == 0.5
        assert coverage_score(["vpn"], "nothing here") == 0.0
        assert coverage_score([], "anything") == 0.0


class TestLexicalRetriever:
    """Recall, coverage re-rank and tracing"""

    def test_reranks_by_coverage_and_records_trace(self):
        index = FakeIndex(
            [
                {"content": "VPN overview", "source": "a.md"},
                {"content": "VPN setup guide", "source": "b.md"},
                {"content": "Printer setup", "source": "c.md"},
            ]
        )

        result = LexicalRetriever(index).retrieve("vpn setup")

        assert index.queries == [('"vpn"* OR "setup"*', 20)]
        assert result.context.split(CHUNK_SEPARATOR)[0] == "[Source: b.md]\nVPN setup guide"
        trace = result.trace
        assert trace.terms == ["vpn", "setup"]
        assert trace.recall_count == 3
        assert trace.reranked_count == 3
        first = trace.items[0]
        assert (first.rank, first.original_rank, first.rank_delta) == (1, 2, 1)
        assert first.score == 1.0

    def test_ties_keep_recall_order(self):
        index = FakeIndex([{"content": f"vpn note {i}", "source": f"{i}.md"} for i in range(3)])

        result = LexicalRetriever(index).retrieve("vpn")

        assert [item.original_rank for item in result.trace.items] == [1, 2, 3]
        assert all(item.rank_delta == 0 for item in result.trace.items)

    def test_keeps_top_n(self):
        index = FakeIndex([{"content": f"vpn {i}", "source": "s"} for i in range(8)])

        result = LexicalRetriever(index, top_n=5).retrieve("vpn")

        assert result.trace.recall_count == 8
        assert result.trace.reranked_count == 5
        assert len(result.context.split(CHUNK_SEPARATOR)) == 5

    def test_duplicate_content_appears_once(self):
        index = FakeIndex([{"content": "same", "source": "a"}, {"content": "same", "source": "b"}])

        result = LexicalRetriever(index).retrieve("same")

        assert result.context == "[Source: a]\nsame"
        assert len(result.trace.items) == 2

    def test_blank_query_skips_index(self):
        index = FakeIndex([{"content": "x", "source": "s"}])

        result = LexicalRetriever(index).retrieve("   ")

        assert result.context == ""
        assert index.queries == []

    def test_no_hits(self):
        result = LexicalRetriever(FakeIndex([])).retrieve("vpn")
        assert result.context == ""
        assert result.trace.recall_count == 0

    def test_index_failure_is_reported_in_trace(self):
        index = Mock()
        index.search.side_effect = RuntimeError("fts5: syntax error")

        result = LexicalRetriever(index).retrieve("vpn")

        assert result.context == ""
        assert result.trace.error == "fts5: syntax error"
        assert "Error: fts5: syntax error" in result.trace.render()

    def test_trace_dict(self):
        result = LexicalRetriever(FakeIndex([{"content": "vpn\nsetup", "source": "a"}])).retrieve("vpn")
        data = result.trace.to_dict()
        assert data["query"] == "vpn"
        assert data["items"][0]["preview"] == "vpn setup..."
        assert data["items"][0]["rank_delta"] == 0


class TestVectorRetriever:
    """Memory lookup through the embedder and vector store"""

    def test_search_builds_memories(self):
        store = Mock()
        store.search_top_k.return_value = [
            {"id": 4, "score": 0.9, "text": "User is vegetarian"},
            {"id": 5, "score": 0.5, "text": ""},
        ]
        retriever = VectorRetriever(Mock(), store)

        memories = retriever.search_memories([0.1, 0.2], 3)

        store.search_top_k.assert_called_once_with([0.1, 0.2], 3)
        assert len(memories) == 1
        assert memories[0].text == "User is vegetarian"
        assert memories[0].score == pytest.approx(0.9)
        assert memories[0].source_id == "4"

    def test_zero_k_skips_store(self):
        store = Mock()
        assert VectorRetriever(Mock(), store).search_memories([0.1], 0) == []
        store.search_top_k.assert_not_called()

    def test_embed_failure_returns_none(self):
        embedder = Mock()
        embedder.embed.side_effect = RuntimeError("offline")
        assert VectorRetriever(embedder, Mock()).embed_query("hello") is None

    def test_engine_without_backends(self):
        engine = RetrievalEngine()
        assert engine.embed_query("hello") is None
        assert engine.search_memories([0.1], 3) == []
        assert engine.retrieve_knowledge("vpn").context == ""


class TestKnowledgeIndex:
    """SQLite FTS5 backend"""

    def test_chunk_text_respects_size_and_overlap(self):
        chunks = chunk_text("a" * 25, chunk_size=10, overlap=2)
        assert all(len(c) <= 10 for c in chunks)
        assert "".join(chunks).count("a") >= 25

    def test_chunk_text_merges_short_paragraphs(self):
        assert chunk_text("one\n\ntwo", chunk_size=100, overlap=10) == ["one\n\ntwo"]

    def test_chunk_text_rejects_bad_overlap(self):
        with pytest.raises(ValueError):
            chunk_text("x", chunk_size=10, overlap=10)

    def test_add_and_search(self):
        index = KnowledgeIndex()
        assert index.add_document("vpn.md", "Connect to the VPN before deploying.") == 1
        index.add_document("printer.md", "The printer is on floor two.")

        hits = index.search(format_fts_query("vpn deploy"))

        assert [hit["source"] for hit in hits] == ["vpn.md"]
        assert index.count() == 2
        index.close()

    def test_retriever_over_real_index(self):
        index = KnowledgeIndex()
        index.add_document("guide.md", "Reset your password from the account page.")
        index.add_document("faq.md", "Passwords expire every ninety days.")

        result = LexicalRetriever(index).retrieve("reset password")

        assert result.context.startswith("[Source: guide.md]")
        assert result.trace.recall_count == 2
        index.close()

    def test_operator_words_do_not_break_search(self):
        index = KnowledgeIndex()
        index.add_document("pets.md", "Cats and dogs get along.")

        result = LexicalRetriever(index).retrieve("cats AND dogs NEAR")

        assert result.trace.error is None
        assert result.context == "[Source: pets.md]\nCats and dogs get along."
        assert index.search(format_fts_query("NOT")) == []
        index.close()

    def test_clear(self):
        index = KnowledgeIndex()
        index.add_document("a", "alpha")
        index.clear()
        assert index.count() == 0
        index.close()

    def test_empty_source_rejected(self):
        index = KnowledgeIndex()
        with pytest.raises(ValueError):
            index.add_document(" ", "text")
        index.close()


class TestMemoryVectorStore:
    """FAISS backend with persistence"""

    store_cls = MemoryVectorStore

    def test_search_ranks_by_cosine(self, tmp_path):
        store = self.store_cls(tmp_path)
        store.save("likes tea", [1.0, 0.0])
        store.save("lives in Porto", [0.0, 1.0])

        hits = store.search_top_k([0.9, 0.1], 2)

        assert [hit["text"] for hit in hits] == ["likes tea", "lives in Porto"]
        assert hits[0]["score"] > hits[1]["score"]
        assert "created_at" in hits[0]["metadata"]

    def test_persists_and_reloads(self, tmp_path):
        store = self.store_cls(tmp_path)
        store.save("likes tea", [1.0, 0.0])

        reloaded = self.store_cls(tmp_path)
        assert reloaded.load() is True
        assert len(reloaded) == 1
        assert reloaded.search_top_k([1.0, 0.0], 1)[0]["text"] == "likes tea"

    def test_load_without_files(self, tmp_path):
        assert self.store_cls(tmp_path / "missing").load() is False

    def test_empty_store_returns_nothing(self):
        assert self.store_cls().search_top_k([1.0, 0.0], 3) == []

    def test_dimension_mismatch(self):
        store = self.store_cls()
        store.save("a", [1.0, 0.0])
        with pytest.raises(ValueError):
            store.save("b", [1.0, 0.0, 0.0])
