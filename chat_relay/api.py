"""FastAPI entry point for the chat relay."""

from __future__ import annotations

import argparse
import json
import logging
from typing import Iterator, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, validator
import uvicorn

from .config import ChatConfig, load_config
from .errors import ProviderNotFoundError, SessionBusyError
from .models import StreamEvent
from .service import ChatService
from .utils import setup_logging

logger = logging.getLogger(__name__)

NDJSON = "application/x-ndjson"


class ChatRequest(BaseModel):
    session_id: str = Field(..., description="Unique chat session identifier.")
    message: str = Field(..., description="User message to send to the model.")
    provider_id: Optional[str] = Field(None, description="Provider override; defaults to the active provider.")
    model_id: Optional[str] = Field(None, description="Model override; defaults to the active model.")
    enable_context: Optional[bool] = Field(None, description="Inject knowledge-base context for this request.")
    system_prompt: Optional[str] = Field(None, description="Optional system prompt override for this request.")
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, gt=0)

    @validator("session_id", "message")
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


class RollbackRequest(BaseModel):
    provider_id: Optional[str] = None
    model_id: Optional[str] = None
    system_prompt: Optional[str] = None


class OperationResponse(BaseModel):
    success: bool
    message: str = ""


class TurnModel(BaseModel):
    id: str
    session_id: str
    role: str
    content: str
    status: str
    created_at: float
    parent_id: Optional[str] = None


class HistoryResponse(BaseModel):
    session_id: str
    title: str = ""
    updated_at: float = 0.0
    streaming: bool = False
    turns: List[TurnModel] = Field(default_factory=list)


def ndjson_stream(events: Iterator[StreamEvent]) -> Iterator[str]:
    """Serialise events as one JSON object per line.

    Closing this generator (client disconnect) closes ``events`` and so
    cancels the underlying task.
    """
    try:
        for event in events:
            yield json.dumps(event.to_dict(), ensure_ascii=False) + "\n"
    finally:
        close = getattr(events, "close", None)
        if close is not None:
            close()


def register_chat_routes(app: FastAPI) -> None:
    """Attach the chat endpoints; handlers read ``app.state.service``."""

    @app.post("/chat")
    def chat(request: ChatRequest):
        try:
            events = app.state.service.stream_chat(
                request.session_id,
                request.message,
                provider_id=request.provider_id,
                model_id=request.model_id,
                enable_context=request.enable_context,
                system_prompt=request.system_prompt,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
            )
        except SessionBusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ProviderNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Chat request failed")
            raise HTTPException(status_code=500, detail="Chat request failed") from exc

        return StreamingResponse(ndjson_stream(events), media_type=NDJSON)

    @app.post("/chat/{session_id}/cancel", response_model=OperationResponse)
    def cancel(session_id: str):
        result = app.state.service.pause(session_id)
        return {"success": result.success, "message": result.message}

    @app.post("/chat/{session_id}/rollback")
    def rollback(session_id: str, request: Optional[RollbackRequest] = None):
        request = request or RollbackRequest()
        try:
            result = app.state.service.rollback(
                session_id,
                provider_id=request.provider_id,
                model_id=request.model_id,
                system_prompt=request.system_prompt,
            )
        except SessionBusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ProviderNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Rollback failed for session %s", session_id)
            raise HTTPException(status_code=500, detail="Rollback failed") from exc

        if not result.success or result.events is None:
            return {"success": False, "message": result.message}
        return StreamingResponse(ndjson_stream(result.events), media_type=NDJSON)

    @app.get("/chat/history/{session_id}", response_model=HistoryResponse)
    def history(session_id: str):
        try:
            return app.state.service.get_history(session_id)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/chat/sessions")
    def sessions():
        return {"sessions": app.state.service.list_sessions()}

    @app.get("/providers")
    def providers():
        return {"providers": app.state.service.list_providers()}

    @app.get("/providers/{provider_id}/models")
    def provider_models(provider_id: str):
        try:
            models = app.state.service.list_models(provider_id)
        except ProviderNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Listing models failed for provider %s", provider_id)
            raise HTTPException(status_code=500, detail="Listing models failed") from exc
        return {
            "provider_id": provider_id,
            "models": [{"model_id": m.model_id, "display_name": m.display_name} for m in models],
        }


def create_app(
    chat_config: Optional[ChatConfig] = None,
    *,
    log_dir: Optional[str] = None,
    service: Optional[ChatService] = None,
) -> FastAPI:
    if log_dir:
        setup_logging(log_dir, logging.INFO)

    app = FastAPI(title="Chat Relay", version="0.1.0")
    app.state.service = service or ChatService(chat_config)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    register_chat_routes(app)

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.service.shutdown()

    return app


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the chat relay with streaming responses.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=8004, help="Port to bind.")
    parser.add_argument("--log_dir", help="Directory for application logs.")
    parser.add_argument("--config", help="JSON file with providers and chat settings.")
    parser.add_argument("--provider", help="Active provider id (overrides the config file).")
    parser.add_argument("--model", help="Active model id (overrides the config file).")
    parser.add_argument("--history_limit", type=int, help="History turns sent with each request.")
    parser.add_argument("--disable_context", action="store_true", help="Disable knowledge-base context injection.")
    parser.add_argument("--disable_titles", action="store_true", help="Disable session title generation.")
    return parser.parse_args(argv)


def config_from_args(args: argparse.Namespace) -> ChatConfig:
    config = load_config(args.config) if args.config else ChatConfig()
    if args.provider:
        config.active_provider_id = args.provider
    if args.model:
        config.active_model_id = args.model
    if args.history_limit is not None:
        config.history_limit = args.history_limit
    if args.disable_context:
        config.enable_context = False
    if args.disable_titles:
        config.enable_titles = False
    return config


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    app = create_app(config_from_args(args), log_dir=args.log_dir)
    logger.info("Starting chat relay on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
