"""
Tests for the HTTP surface: chat routes and the unified server.
"""

import json
import time
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

import server
from chat_relay.api import create_app
from chat_relay.errors import NetworkError
from chat_relay.models import TurnStatus
from chat_relay.retrieval import LexicalRetriever, RetrievalEngine, VectorRetriever
from chat_relay.stores import current_turns
from knowledge_store import KnowledgeIndex

from conftest import ScriptedAdapter, SlowTrigger, collect


def _lines(response):
    return [json.loads(line) for line in response.text.splitlines() if line.strip()]


@pytest.fixture
def client_for(make_service):
    def factory(adapters, **kwargs):
        service = make_service(adapters, **kwargs)
        return TestClient(create_app(service=service)), service

    return factory


class TestChatEndpoint:
    """POST /chat streams NDJSON events"""

    def test_streams_deltas_and_done(self, client_for):
        client, _ = client_for({"a": ScriptedAdapter(["Hel", "lo"])})

        response = client.post("/chat", json={"session_id": "s1", "message": "Hi"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-ndjson")
        events = _lines(response)
        assert [e["type"] for e in events] == ["delta", "delta", "done"]
        assert events[-1]["text"] == "Hello"
        assert events[-1]["provider_id"] == "a"

    def test_fallback_notice_is_streamed(self, client_for):
        client, _ = client_for({"a": ScriptedAdapter([], error=NetworkError("down")), "b": ScriptedAdapter(["ok"])})

        events = _lines(client.post("/chat", json={"session_id": "s1", "message": "Hi"}))

        assert [e["type"] for e in events] == ["notice", "delta", "done"]
        assert events[0]["provider_id"] == "b"

    def test_empty_message_rejected(self, client_for):
        client, _ = client_for({"a": ScriptedAdapter(["x"])})
        response = client.post("/chat", json={"session_id": "s1", "message": "   "})
        assert response.status_code == 422

    def test_unknown_provider_is_404(self, client_for):
        client, _ = client_for({"a": ScriptedAdapter(["x"])})
        response = client.post("/chat", json={"session_id": "s1", "message": "Hi", "provider_id": "zzz"})
        assert response.status_code == 404

    def test_unknown_model_is_400(self, client_for):
        client, _ = client_for({"a": ScriptedAdapter(["x"])})
        response = client.post("/chat", json={"session_id": "s1", "message": "Hi", "model_id": "nope"})
        assert response.status_code == 400

    def test_busy_session_is_409(self, client_for):
        adapter = ScriptedAdapter(["x"], block_after=1)
        client, service = client_for({"a": adapter})
        events = service.stream_chat("s1", "first")
        assert adapter.blocked.wait(2)

        response = client.post("/chat", json={"session_id": "s1", "message": "second"})

        assert response.status_code == 409
        service.pause("s1")
        collect(events)
        contents = [t["content"] for t in service.get_history("s1")["turns"]]
        assert "second" not in contents


class TestSessionEndpoints:
    """Cancel, rollback, history and session listing"""

    def test_cancel_active_and_idle(self, client_for):
        adapter = ScriptedAdapter(["x"], block_after=1)
        client, service = client_for({"a": adapter})
        events = service.stream_chat("s1", "Hi")
        assert adapter.blocked.wait(2)

        assert client.post("/chat/s1/cancel").json() == {"success": True, "message": "Generation cancelled"}
        collect(events)
        assert client.post("/chat/s1/cancel").json()["success"] is False

    def test_rollback_streams_new_answer(self, client_for):
        client, _ = client_for({"a": ScriptedAdapter(["answer"])})
        client.post("/chat", json={"session_id": "s1", "message": "Hi"})

        response = client.post("/chat/s1/rollback")

        assert [e["type"] for e in _lines(response)] == ["delta", "done"]
        turns = client.get("/chat/history/s1").json()["turns"]
        assert [(t["role"], t["content"]) for t in turns] == [("user", "Hi"), ("assistant", "answer")]

    def test_rollback_without_history_is_noop(self, client_for):
        client, _ = client_for({"a": ScriptedAdapter(["x"])})

        response = client.post("/chat/empty/rollback")

        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_history_and_sessions(self, client_for):
        client, _ = client_for({"a": ScriptedAdapter(["Hello"])})
        client.post("/chat", json={"session_id": "s1", "message": "Hi"})

        history = client.get("/chat/history/s1").json()
        sessions = client.get("/chat/sessions").json()["sessions"]

        assert history["streaming"] is False
        assert [t["status"] for t in history["turns"]] == ["done", "done"]
        assert sessions[0]["session_id"] == "s1"
        assert sessions[0]["message_count"] == 2
        assert sessions[0]["last_message"] == "Hello"

    def test_unknown_history_is_404(self, client_for):
        client, _ = client_for({"a": ScriptedAdapter()})
        assert client.get("/chat/history/missing").status_code == 404


class TestProviderEndpoints:
    """Provider and model discovery"""

    def test_list_providers(self, client_for):
        client, _ = client_for({"a": ScriptedAdapter(), "b": ScriptedAdapter()})

        providers = client.get("/providers").json()["providers"]

        assert [p["id"] for p in providers] == ["a", "b"]
        assert providers[0]["active"] is True
        assert providers[0]["models"] == ["a1", "a2"]

    def test_list_models(self, client_for):
        client, _ = client_for({"a": ScriptedAdapter(models=["a1", "a9"])})

        body = client.get("/providers/a/models").json()

        assert [m["model_id"] for m in body["models"]] == ["a1", "a9"]

    def test_unknown_provider_models_is_404(self, client_for):
        client, _ = client_for({"a": ScriptedAdapter()})
        assert client.get("/providers/zzz/models").status_code == 404


class TestServer:
    """Unified server with knowledge and memory routes"""

    @pytest.fixture
    def setup(self, make_service, tmp_path):
        index = KnowledgeIndex()
        memory_store = Mock()
        adapter = ScriptedAdapter(["Hi there"], reply="[0]")
        service = make_service(
            {"a": adapter},
            retrieval=RetrievalEngine(lexical=LexicalRetriever(index)),
            memory_store=memory_store,
        )
        app = server.create_app(str(tmp_path / "logs"), service=service, knowledge_index=index)
        yield TestClient(app), service, memory_store
        index.close()

    def test_health(self, setup):
        client, _, _ = setup
        assert client.get("/health").json() == {"status": "ok"}

    def test_index_and_query_knowledge(self, setup):
        client, _, _ = setup

        added = client.post("/knowledge/documents", json={"source": "vpn.md", "text": "Connect to the VPN first."})
        result = client.post("/knowledge/query", json={"query": "vpn"}).json()

        assert added.json() == {"source": "vpn.md", "chunks": 1}
        assert result["context"] == "[Source: vpn.md]\nConnect to the VPN first."
        assert result["trace"]["recall_count"] == 1
        assert result["panel"].startswith("[Retrieval analysis]")

    def test_blank_document_rejected(self, setup):
        client, _, _ = setup
        response = client.post("/knowledge/documents", json={"source": "a", "text": " "})
        assert response.status_code == 422

    def test_chat_uses_knowledge_context(self, setup):
        client, service, _ = setup
        client.post("/knowledge/documents", json={"source": "vpn.md", "text": "Connect to the VPN first."})

        client.post("/chat", json={"session_id": "s1", "message": "vpn help"})

        adapter = service.adapter_factory.adapters["a"]
        sent = adapter.calls[0]["messages"][-1].content
        assert sent.startswith("[Context from Knowledge Base]")
        assert sent.endswith("[User Question]\nvpn help")

    def test_flush_memory_curates_buffered_candidates(self, setup):
        client, service, memory_store = setup
        service.memory.process("I prefer tea", [1.0, 0.0])

        response = client.post("/memory/flush")

        assert response.json() == {"flushed": 1}
        memory_store.save.assert_called_once_with("I prefer tea", [1.0, 0.0])


class TestServiceLifecycle:
    """Cleanup when a stream cannot start, is abandoned, or the service stops"""

    def test_failed_start_removes_user_turn(self, make_service):
        service = make_service({"a": ScriptedAdapter(["x"])})
        service.fallback.start = Mock(side_effect=RuntimeError("store down"))

        with pytest.raises(RuntimeError):
            service.stream_chat("s1", "Hi")

        assert current_turns(service.messages, "s1") == []

    def test_abandoned_stream_frees_session(self, make_service, chat_config):
        chat_config.stream_queue_size = 2
        chat_config.consumer_timeout = 0.3
        service = make_service({"a": ScriptedAdapter([f"c{i}" for i in range(200)])})

        events = service.stream_chat("s1", "Hi")
        del events
        deadline = time.monotonic() + 3
        while service.is_streaming("s1") and time.monotonic() < deadline:
            time.sleep(0.05)

        assert service.is_streaming("s1") is False
        statuses = [t.status for t in current_turns(service.messages, "s1")]
        assert statuses == [TurnStatus.DONE, TurnStatus.CANCELLED]

    def test_shutdown_curates_candidates_still_queued(self, make_service):
        memory_store = Mock()
        memory_store.search_top_k.return_value = []
        embedder = Mock()
        embedder.embed.return_value = [1.0, 0.0]
        service = make_service(
            {"a": ScriptedAdapter(["ok"], reply="[0]")},
            retrieval=RetrievalEngine(vector=VectorRetriever(embedder, memory_store)),
            memory_store=memory_store,
        )
        service.memory.trigger = SlowTrigger()

        collect(service.stream_chat("s1", "I prefer tea"))
        service.shutdown()

        memory_store.save.assert_called_once_with("I prefer tea", [1.0, 0.0])
