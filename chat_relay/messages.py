"""Builds the outbound message list for a chat request."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .models import ChatMessage, RetrievedMemory, Role
from .retrieval import RetrievalEngine
from .stores import MessageStore, current_turns, non_system

logger = logging.getLogger(__name__)

MEMORY_HEADER = "[Long-term memory: relevant facts from the user's earlier conversations]"
MEMORY_INTRO = "The following was retrieved from long-term memory for the current question:"
MEMORY_FOOTER = (
    "Note: this is long-term background memory, not the history of the current "
    "conversation. Use it when relevant and ignore it when it is unrelated to the user."
)


def format_memory_block(memories: List[RetrievedMemory]) -> str:
    bullet_list = "\n".join(f"- {memory.text}" for memory in memories)
    return f"{MEMORY_HEADER}\n{MEMORY_INTRO}\n\n{bullet_list}\n\n{MEMORY_FOOTER}"


def augment_with_knowledge(text: str, knowledge_context: str) -> str:
    if not knowledge_context or not knowledge_context.strip():
        return text
    return f"[Context from Knowledge Base]\n{knowledge_context}\n\n[User Question]\n{text}"


@dataclass
class ConstructionResult:
    messages: List[ChatMessage]
    embedding: Optional[List[float]] = None
    knowledge_context: str = ""
    memories: List[RetrievedMemory] = field(default_factory=list)


class MessageConstructor:
    def __init__(self, message_store: MessageStore, retrieval: Optional[RetrievalEngine] = None) -> None:
        self.message_store = message_store
        self.retrieval = retrieval

    def construct(
        self,
        session_id: str,
        text: str,
        *,
        is_auto_triggered: bool = False,
        knowledge_context: Optional[str] = None,
        retrieve_knowledge: Optional[Callable[[str], str]] = None,
        system_prompt: Optional[str] = None,
        top_k: int = 3,
        history_limit: int = 10,
    ) -> ConstructionResult:
        """Assemble history, memories and knowledge context around ``text``.

        The user turn for ``text`` may already be persisted; a trailing user
        turn in the history window is dropped so the input is sent once.
        """
        if knowledge_context is None:
            knowledge_context = ""
            if not is_auto_triggered and retrieve_knowledge is not None:
                try:
                    knowledge_context = retrieve_knowledge(text) or ""
                except Exception:
                    logger.exception("Knowledge retrieval failed for session %s", session_id)

        turns = sorted(non_system(current_turns(self.message_store, session_id)), key=lambda t: t.created_at)
        if turns and turns[-1].role == Role.USER:
            turns.pop()
        window = turns[-history_limit:] if history_limit > 0 else []
        history = [ChatMessage(turn.role, turn.content) for turn in window]

        embedding: Optional[List[float]] = None
        memories: List[RetrievedMemory] = []
        if not is_auto_triggered and self.retrieval is not None and text.strip():
            try:
                embedding = self.retrieval.embed_query(text)
                if embedding is not None:
                    memories = self.retrieval.search_memories(embedding, top_k)
                    logger.debug("Found %d related memories for session %s", len(memories), session_id)
            except Exception:
                logger.exception("Memory search failed for session %s", session_id)

        messages: List[ChatMessage] = []
        if system_prompt:
            messages.append(ChatMessage(Role.SYSTEM, system_prompt))
        messages.extend(history)
        if memories:
            messages.append(ChatMessage(Role.SYSTEM, format_memory_block(memories)))
        messages.append(ChatMessage(Role.USER, augment_with_knowledge(text, knowledge_context)))

        return ConstructionResult(
            messages=messages,
            embedding=embedding,
            knowledge_context=knowledge_context,
            memories=memories,
        )
