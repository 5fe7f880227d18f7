"""Unified FastAPI server exposing chat, knowledge retrieval and memory."""

from __future__ import annotations

import argparse
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field, validator
import uvicorn

from chat_relay import ChatConfig, ChatService
from chat_relay.api import config_from_args, register_chat_routes
from chat_relay.retrieval import LexicalRetriever, RetrievalEngine, VectorRetriever
from chat_relay.utils import setup_logging
from knowledge_store import EmbeddingClient, EmbeddingConfig, KnowledgeConfig, KnowledgeIndex, MemoryVectorStore

logger = logging.getLogger(__name__)


# ---------- Request Models ----------
class DocumentRequest(BaseModel):
    source: str = Field(..., description="File name or URL shown with retrieved chunks.")
    text: str = Field(..., description="Plain-text document body to index.")

    @validator("source", "text")
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


class KnowledgeQueryRequest(BaseModel):
    query: str

    @validator("query")
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


# ---------- FastAPI Factory ----------
def create_app(
    log_dir: str = "./logs",
    chat_config: Optional[ChatConfig] = None,
    *,
    knowledge_config: Optional[KnowledgeConfig] = None,
    embedding_config: Optional[EmbeddingConfig] = None,
    service: Optional[ChatService] = None,
    knowledge_index: Optional[KnowledgeIndex] = None,
) -> FastAPI:
    setup_logging(log_dir, logging.INFO)

    knowledge_config = knowledge_config or KnowledgeConfig()
    index = knowledge_index or KnowledgeIndex(
        knowledge_config.index_path,
        chunk_size=knowledge_config.chunk_size,
        chunk_overlap=knowledge_config.chunk_overlap,
    )
    if service is None:
        memory_store = MemoryVectorStore(knowledge_config.memory_dir)
        memory_store.load()
        retrieval = RetrievalEngine(
            vector=VectorRetriever(EmbeddingClient(embedding_config), memory_store),
            lexical=LexicalRetriever(index),
        )
        service = ChatService(chat_config, retrieval=retrieval, memory_store=memory_store)

    app = FastAPI(title="Chat Relay Server", version="0.1.0")
    app.state.service = service
    app.state.knowledge_index = index

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    register_chat_routes(app)

    @app.post("/knowledge/documents")
    async def add_document(request: DocumentRequest) -> Dict[str, Any]:
        logger.info("Indexing document %s", request.source)
        try:
            chunks = await run_in_threadpool(app.state.knowledge_index.add_document, request.source, request.text)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Indexing failed for %s", request.source)
            raise HTTPException(status_code=500, detail="Indexing failed") from exc
        return {"source": request.source, "chunks": chunks}

    @app.post("/knowledge/query")
    async def query_knowledge(request: KnowledgeQueryRequest) -> Dict[str, Any]:
        result = await run_in_threadpool(app.state.service.retrieve_knowledge, request.query)
        return {"context": result.context, "trace": result.trace.to_dict(), "panel": result.trace.render()}

    @app.post("/memory/flush")
    async def flush_memory() -> Dict[str, int]:
        try:
            flushed = await run_in_threadpool(app.state.service.flush_memory)
        except Exception as exc:
            logger.exception("Memory flush failed")
            raise HTTPException(status_code=500, detail="Memory flush failed") from exc
        return {"flushed": flushed}

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.service.shutdown()
        app.state.knowledge_index.close()

    return app


# ---------- CLI ----------
def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the chat relay server with knowledge retrieval and memory.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=8010, help="Port to bind.")
    parser.add_argument("--log_dir", default="./logs", help="Directory for application logs.")
    parser.add_argument("--config", help="JSON file with providers and chat settings.")
    parser.add_argument("--provider", help="Active provider id (overrides the config file).")
    parser.add_argument("--model", help="Active model id (overrides the config file).")
    parser.add_argument("--history_limit", type=int, help="History turns sent with each request.")
    parser.add_argument("--disable_context", action="store_true", help="Disable knowledge-base context injection.")
    parser.add_argument("--disable_titles", action="store_true", help="Disable session title generation.")
    parser.add_argument("--embedding_endpoint", default="http://localhost:8001/v1/embeddings", help="Embeddings endpoint.")
    parser.add_argument("--embedding_model", help="Model name sent to the embeddings endpoint.")
    parser.add_argument("--memory_dir", default="./data/memory", help="Directory for persisted memory vectors.")
    parser.add_argument("--index_path", default="./data/knowledge.db", help="SQLite file for the knowledge index.")
    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> None:
    args = parse_args(argv)
    app = create_app(
        args.log_dir,
        config_from_args(args),
        knowledge_config=KnowledgeConfig(memory_dir=args.memory_dir, index_path=args.index_path),
        embedding_config=EmbeddingConfig(endpoint=args.embedding_endpoint, model=args.embedding_model),
    )
    logger.info("Starting chat relay server on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
