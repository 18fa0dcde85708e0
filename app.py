import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, HTTPException, Request, Response, UploadFile
from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool
from pydantic import BaseModel

import config
import storage
from chat_history import InvalidIdError, get_chat_history, new_message_id
from conversation import (
    HistoryRewriteError,
    MessageNotFoundError,
    SessionEmptyError,
    delete_message,
    format_history,
    list_messages,
    question_from_request,
    record_user_message,
    remove_duplicates,
    stream_answer,
)
from rag import RagIndex, check_document_type, generate_title, ingest_document, stream_chat_completion
from security import enforce_auth, get_user_id

logging.basicConfig(
    level=logging.DEBUG if config.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("rag_chat.app")

ANONYMOUS_USER = "anonymous"
SERVICE_UNAVAILABLE = "Service temporarily unavailable. Please try again later."


# -----------------------------
# FastAPI app
# -----------------------------
app = FastAPI(title="RAG Chat API")

rag = RagIndex()


class ChatMessage(BaseModel):
    role: str = "user"
    content: Optional[str] = None


class ChatCompletionRequest(BaseModel):
    messages: List[ChatMessage] = []
    context: Optional[Dict[str, Any]] = None
    sessionState: Optional[Any] = None


@app.on_event("startup")
def startup_event():
    config.log_env_config()
    rag.load()


def service_unavailable(message: str = SERVICE_UNAVAILABLE) -> HTTPException:
    return HTTPException(status_code=503, detail=message)


def require_user_id(request: Request, body: Optional[Dict[str, Any]] = None) -> str:
    user_id = get_user_id(request, body)
    if not user_id:
        raise HTTPException(status_code=400, detail="Invalid or missing userId in the request")
    return user_id


@app.get("/api/status")
def status(request: Request):
    enforce_auth(request)
    return {
        "ready": rag.is_ready(),
        "chunks": len(rag.meta),
        "dim": rag.dim,
        "history_backend": config.history_backend(),
        "model_backend": config.model_backend(),
    }


@app.post("/api/chats/stream")
def post_chats(request: Request, req: ChatCompletionRequest):
    enforce_auth(request)
    body = req.model_dump()
    question = question_from_request(body["messages"])
    if not question:
        raise HTTPException(status_code=400, detail="Invalid or missing messages in the request body")

    user_id = get_user_id(request, body) or ANONYMOUS_USER
    session_id = (req.context or {}).get("sessionId") or new_message_id()
    logger.info("userId: %s, sessionId: %s", user_id, session_id)

    try:
        history = get_chat_history(session_id, user_id)
        record_user_message(history, question)
        history_text = format_history(history.get_messages())

        hits = rag.search(question, k=config.TOP_K) if rag.is_ready() else []
        chunks = stream_chat_completion(question, history_text, hits)
        ai_message_id = new_message_id()

        if not history.get_context().get("title"):
            try:
                title = generate_title(question)
                logger.info("Title for session: %s", title)
                history.set_context({"title": title})
            except Exception as exc:
                logger.warning("Could not generate a title for session %s: %s", session_id, exc)
    except InvalidIdError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception:
        logger.exception("Error when processing chat-post request")
        raise service_unavailable()

    return StreamingResponse(
        stream_answer(chunks, session_id, ai_message_id, history),
        media_type="application/x-ndjson",
    )


@app.get("/api/chats")
def list_sessions(request: Request):
    enforce_auth(request)
    user_id = require_user_id(request)
    try:
        sessions = get_chat_history(None, user_id).get_all_sessions()
    except InvalidIdError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception:
        logger.exception("Error when listing sessions")
        raise service_unavailable()
    return sessions


@app.get("/api/chats/{session_id}/messages")
def get_messages(request: Request, session_id: str):
    enforce_auth(request)
    user_id = get_user_id(request) or ANONYMOUS_USER
    try:
        messages = list_messages(get_chat_history(session_id, user_id))
    except InvalidIdError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception:
        logger.exception("Error when getting messages")
        raise service_unavailable()
    return {"messages": messages}


@app.post("/api/chats/{session_id}/cleanup")
def cleanup_duplicates(request: Request, session_id: str):
    enforce_auth(request)
    user_id = get_user_id(request) or ANONYMOUS_USER
    try:
        return remove_duplicates(get_chat_history(session_id, user_id))
    except InvalidIdError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception:
        logger.exception("Error when cleaning duplicates")
        raise service_unavailable()


@app.delete("/api/chats/{session_id}", status_code=204)
def delete_chats(request: Request, session_id: str):
    enforce_auth(request)
    user_id = require_user_id(request)
    try:
        get_chat_history(session_id, user_id).clear()
    except Exception as exc:
        logger.error("Error when processing chats-delete request: %s", exc)
        raise HTTPException(status_code=404, detail="Session not found")
    return Response(status_code=204)


async def _read_optional_json(request: Request) -> Dict[str, Any]:
    raw = (await request.body()).decode("utf-8", errors="ignore").strip()
    if not raw or raw == "{}":
        return {}
    try:
        body = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.debug("Body parse warning (not critical): %s", exc)
        return {}
    return body if isinstance(body, dict) else {}


@app.delete("/api/chats/{session_id}/messages/{message_id}")
async def delete_chat_message(request: Request, session_id: str, message_id: str):
    enforce_auth(request)
    body = await _read_optional_json(request)
    user_id = require_user_id(request, body)
    logger.info("Delete message %s from session %s (user %s)", message_id, session_id, user_id)

    def _delete():
        return delete_message(get_chat_history(session_id, user_id), session_id, user_id, message_id)

    # Storage calls block; keep them off the event loop.
    try:
        return await run_in_threadpool(_delete)
    except (InvalidIdError, SessionEmptyError, MessageNotFoundError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except HistoryRewriteError:
        logger.exception("Error during message deletion update")
        raise service_unavailable("Failed to update chat history after message deletion")
    except Exception:
        logger.exception("Error when deleting message")
        raise service_unavailable()


def _discard_document(name: Optional[str]) -> None:
    if not name:
        return
    try:
        storage.delete_document(name)
    except Exception as exc:
        logger.warning("Could not remove rejected document %s: %s", name, exc)


@app.post("/api/documents")
def upload_document(request: Request, file: UploadFile = File(...)):
    enforce_auth(request)
    if not file.filename:
        raise HTTPException(status_code=400, detail="A file is required")
    try:
        check_document_type(file.filename)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    data = file.file.read()
    name = None
    try:
        name = storage.save_document(file.filename, data)
        result = ingest_document(rag, name, data)
    except ValueError as exc:
        _discard_document(name)
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception:
        logger.exception("Error when uploading document %s", file.filename)
        _discard_document(name)
        raise service_unavailable()
    return {"message": "File uploaded successfully.", **result}


# No password check: citation links are opened directly by the browser and cannot carry x-app-password.
@app.get("/api/documents/{filename}")
def get_document(filename: str):
    try:
        data = storage.load_document(filename)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if data is None:
        raise HTTPException(status_code=404, detail="Document not found")
    return Response(content=data, media_type=storage.content_type_for(filename))


# Entry point for: python app.py
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=7071)
