"""
Tests for outbound message construction and session titles.
"""

from unittest.mock import Mock

from chat_relay.config import OpenAIProviderConfig
from chat_relay.errors import NetworkError
from chat_relay.messages import MEMORY_HEADER, MessageConstructor, augment_with_knowledge
from chat_relay.models import ChatTurn, RetrievedMemory, Role
from chat_relay.retrieval import RetrievalEngine
from chat_relay.stores import InMemoryMessageStore
from chat_relay.titles import TitleGenerator, clean_title, fallback_title

from conftest import ScriptedAdapter


def _store(*pairs):
    store = InMemoryMessageStore()
    for index, (role, content) in enumerate(pairs):
        store.upsert_turn(ChatTurn(session_id="s1", role=role, content=content, created_at=100.0 + index))
    return store


def _retrieval(memories=None, embedding=(0.1, 0.2)):
    engine = Mock(spec=RetrievalEngine)
    engine.embed_query.return_value = list(embedding) if embedding is not None else None
    engine.search_memories.return_value = memories or []
    return engine


class TestMessageConstructor:
    """History, memories and knowledge around the user input"""

    def test_history_excludes_system_turns_and_trailing_user(self):
        store = _store(
            (Role.USER, "Hi"),
            (Role.ASSISTANT, "Hello"),
            (Role.SYSTEM, "Request failed"),
            (Role.USER, "How are you?"),
        )

        result = MessageConstructor(store).construct("s1", "How are you?", system_prompt="Be brief.")

        assert [(m.role, m.content) for m in result.messages] == [
            (Role.SYSTEM, "Be brief."),
            (Role.USER, "Hi"),
            (Role.ASSISTANT, "Hello"),
            (Role.USER, "How are you?"),
        ]

    def test_history_limit_keeps_latest_turns(self):
        store = _store(*[(Role.USER if i % 2 == 0 else Role.ASSISTANT, f"t{i}") for i in range(6)])

        result = MessageConstructor(store).construct("s1", "next", history_limit=2)

        assert [m.content for m in result.messages] == ["t4", "t5", "next"]

    def test_history_limit_counts_turns_before_the_new_input(self):
        store = _store(
            (Role.USER, "q1"),
            (Role.ASSISTANT, "a1"),
            (Role.USER, "q2"),
            (Role.ASSISTANT, "a2"),
            (Role.USER, "q3"),
        )

        result = MessageConstructor(store).construct("s1", "q3", history_limit=2)

        assert [m.content for m in result.messages] == ["q2", "a2", "q3"]

    def test_zero_history_limit(self):
        store = _store((Role.USER, "old"), (Role.ASSISTANT, "reply"))

        result = MessageConstructor(store).construct("s1", "new", history_limit=0)

        assert [m.content for m in result.messages] == ["new"]

    def test_memories_go_before_the_user_message(self):
        retrieval = _retrieval([RetrievedMemory(text="User is vegetarian", score=0.9)])

        result = MessageConstructor(_store(), retrieval).construct("s1", "Dinner ideas?", top_k=2)

        retrieval.search_memories.assert_called_once_with([0.1, 0.2], 2)
        memory_block = result.messages[-2]
        assert memory_block.role == Role.SYSTEM
        assert memory_block.content.startswith(MEMORY_HEADER)
        assert "- User is vegetarian" in memory_block.content
        assert result.messages[-1].content == "Dinner ideas?"
        assert result.embedding == [0.1, 0.2]

    def test_no_memory_block_without_hits(self):
        result = MessageConstructor(_store(), _retrieval([])).construct("s1", "Hello")
        assert [m.role for m in result.messages] == [Role.USER]

    def test_knowledge_context_wraps_user_message(self):
        result = MessageConstructor(_store()).construct(
            "s1",
            "How do I connect?",
            retrieve_knowledge=lambda query: "[Source: vpn.md]\nUse the VPN.",
        )

        assert result.messages[-1].content == (
            "[Context from Knowledge Base]\n[Source: vpn.md]\nUse the VPN.\n\n[User Question]\nHow do I connect?"
        )
        assert result.knowledge_context.startswith("[Source: vpn.md]")

    def test_explicit_knowledge_context_skips_retrieval(self):
        retrieve = Mock(return_value="ignored")

        result = MessageConstructor(_store()).construct("s1", "q", knowledge_context="given", retrieve_knowledge=retrieve)

        retrieve.assert_not_called()
        assert result.knowledge_context == "given"

    def test_auto_triggered_skips_memory_and_knowledge(self):
        retrieval = _retrieval([RetrievedMemory(text="x", score=1.0)])
        retrieve = Mock(return_value="ctx")

        result = MessageConstructor(_store(), retrieval).construct(
            "s1", "auto", is_auto_triggered=True, retrieve_knowledge=retrieve
        )

        retrieval.embed_query.assert_not_called()
        retrieve.assert_not_called()
        assert [m.content for m in result.messages] == ["auto"]

    def test_retrieval_failures_do_not_abort(self):
        retrieval = _retrieval()
        retrieval.search_memories.side_effect = RuntimeError("index gone")

        def broken(query):
            raise RuntimeError("fts down")

        result = MessageConstructor(_store(), retrieval).construct("s1", "hello", retrieve_knowledge=broken)

        assert [m.content for m in result.messages] == ["hello"]
        assert result.memories == []

    def test_blank_context_is_not_wrapped(self):
        assert augment_with_knowledge("q", "  ") == "q"


PROVIDER = OpenAIProviderConfig(id="a")


class TestTitles:
    """Session title generation"""

    def test_model_title_is_cleaned(self):
        adapter = ScriptedAdapter(reply='"Trip planning"\nextra line')

        title = TitleGenerator("Title it").generate("Help me plan a trip", adapter, PROVIDER, "a1")

        assert title == "Trip planning"
        sent = adapter.generate_calls[0]["messages"]
        assert sent[0].role == Role.SYSTEM
        assert sent[1].content == "Help me plan a trip"

    def test_failure_falls_back_to_prefix(self):
        adapter = ScriptedAdapter(error=NetworkError("down"))

        title = TitleGenerator("Title it").generate("A rather long first message here", adapter, PROVIDER, "a1")

        assert title == "A rather long first "

    def test_empty_reply_falls_back(self):
        assert TitleGenerator("x").generate("Hello", ScriptedAdapter(reply="  "), PROVIDER, "a1") == "Hello"

    def test_no_model_falls_back(self):
        assert TitleGenerator("x").generate("Hello", None, None, None) == "Hello"

    def test_clean_title_truncates(self):
        assert len(clean_title("x" * 80)) == 30
        assert fallback_title("a\n b") == "a b"
