"""
Message-history reconciliation for chat sessions.

Everything here works against a ChatMessageHistory and never talks to a model:
recording user questions without duplicating retried requests, committing a
streamed answer exactly once, deleting a single message by rewriting the
session, and cleaning up duplicates left behind by older clients.
"""
import json
import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional

from chat_history import (
    AI,
    HUMAN,
    ChatMessageHistory,
    get_message_id,
    make_message,
    new_message_id,
    now_iso,
    set_message_id,
)

logger = logging.getLogger("rag_chat.conversation")

# Per-message fields that must never leak into session metadata.
MESSAGE_FIELDS = {"messageId", "content", "role", "messageIndex", "isFirst", "isLast"}


class ConversationError(Exception):
    pass


class SessionEmptyError(ConversationError):
    pass


class MessageNotFoundError(ConversationError):
    pass


class HistoryRewriteError(ConversationError):
    pass


def _content(msg: Dict[str, Any]) -> str:
    content = msg.get("content")
    return content if isinstance(content, str) else ""


def is_duplicate_question(messages: List[Dict[str, Any]], question: str) -> bool:
    wanted = question.strip()
    return any(m.get("type") == HUMAN and _content(m).strip() == wanted for m in messages)


def record_user_message(history: ChatMessageHistory, question: str) -> str:
    """Persists the user's question unless a retried request already stored it. Returns its id."""
    existing = history.get_messages()

    if is_duplicate_question(existing, question):
        matches = [m for m in existing if m.get("type") == HUMAN and _content(m) == question]
        message_id = (get_message_id(matches[-1]) if matches else None) or new_message_id()
        logger.info("Using existing user message ID: %s", message_id)
        return message_id

    message_id = new_message_id()
    history.add_message(make_message(HUMAN, question, message_id))
    logger.info("Added new user message with ID: %s", message_id)
    return message_id


def format_history(messages: List[Dict[str, Any]]) -> str:
    lines = []
    for msg in messages:
        role = "User" if msg.get("type") == HUMAN else "Assistant"
        lines.append(f"{role} (ID: {get_message_id(msg) or 'no-id'}): {_content(msg)}")
    return "\n".join(lines)


def commit_ai_message(history: ChatMessageHistory, text: str, message_id: str) -> bool:
    answer = text.strip()
    if not answer:
        return False

    existing = history.get_messages()
    if any(m.get("type") == AI and _content(m).strip() == answer for m in existing):
        logger.info("AI response already exists, skipping duplicate")
        return False

    history.add_message(make_message(AI, text, message_id))
    logger.info("Added AI response with ID: %s", message_id)
    return True


def delta_line(content: str, session_id: str, message_id: str) -> str:
    chunk = {
        "delta": {"content": content, "role": "assistant"},
        "context": {"sessionId": session_id, "messageId": message_id},
    }
    return json.dumps(chunk, ensure_ascii=False) + "\n"


def stream_answer(
    chunks: Iterable[str],
    session_id: str,
    message_id: str,
    history: ChatMessageHistory,
) -> Iterator[str]:
    """
    Yields one NDJSON delta per model fragment while buffering the full answer.
    The answer is committed once, after the last fragment; a stream that is
    closed early commits nothing.
    """
    parts: List[str] = []
    for chunk in chunks:
        if not chunk:
            continue
        parts.append(chunk)
        yield delta_line(chunk, session_id, message_id)

    try:
        commit_ai_message(history, "".join(parts), message_id)
    except Exception:
        # The client already has the answer; only the history write is lost.
        logger.exception("Error saving AI message %s for session %s", message_id, session_id)


def list_messages(history: ChatMessageHistory) -> List[Dict[str, Any]]:
    roles = {HUMAN: "user", AI: "assistant"}
    return [
        {
            "id": get_message_id(msg) or new_message_id(),
            "content": _content(msg),
            "role": roles.get(msg.get("type"), "unknown"),
            "timestamp": msg.get("timestamp") or now_iso(),
            "type": msg.get("type"),
        }
        for msg in history.get_messages()
    ]


def session_metadata(
    first: Dict[str, Any],
    context: Dict[str, Any],
    session_id: str,
    user_id: str,
) -> Dict[str, Any]:
    kwargs = first.get("additional_kwargs") or {}
    metadata = {k: v for k, v in kwargs.items() if k not in MESSAGE_FIELDS and v is not None}
    metadata.update(
        {
            "title": kwargs.get("title") or context.get("title"),
            "sessionId": kwargs.get("sessionId") or session_id,
            "userId": kwargs.get("userId") or user_id,
            "createdAt": kwargs.get("createdAt") or first.get("timestamp"),
            "updatedAt": now_iso(),
        }
    )
    return metadata


def _rewrite(history: ChatMessageHistory, messages: List[Dict[str, Any]], context: Dict[str, Any]) -> None:
    try:
        history.clear()
        for i, msg in enumerate(messages):
            history.add_message(msg)
            logger.debug("Re-added message %d/%d", i + 1, len(messages))
        if context:
            history.set_context(context)
    except Exception as exc:
        raise HistoryRewriteError(f"Failed to rewrite session {history.session_id}: {exc}") from exc


def delete_message(
    history: ChatMessageHistory,
    session_id: str,
    user_id: str,
    message_id: str,
) -> Dict[str, Any]:
    messages = history.get_messages()
    logger.info("Found %d messages in session %s", len(messages), session_id)
    if not messages:
        raise SessionEmptyError("No messages found in the specified session")

    if not any(get_message_id(m) == message_id for m in messages):
        raise MessageNotFoundError(f"Message with ID {message_id} not found in session")

    remaining = [m for m in messages if get_message_id(m) != message_id]
    context = history.get_context()
    metadata = session_metadata(messages[0], context, session_id, user_id)

    total = len(remaining)
    for i, msg in enumerate(remaining):
        own = msg.get("additional_kwargs") or {}
        msg["additional_kwargs"] = {
            **metadata,
            **own,
            "messageId": own.get("messageId") or get_message_id(msg),
            "messageIndex": i,
            "isFirst": i == 0,
            "isLast": i == total - 1,
        }

    _rewrite(history, remaining, context)
    logger.info("Deleted message %s from session %s", message_id, session_id)

    return {
        "success": True,
        "deletedMessageId": message_id,
        "remainingMessages": total,
        "preservedMetadata": list(metadata.keys()),
    }


def remove_duplicates(history: ChatMessageHistory) -> Dict[str, Any]:
    messages = history.get_messages()
    unique: List[Dict[str, Any]] = []
    seen = set()
    assigned_ids = 0

    for msg in messages:
        key = f"{msg.get('type')}:{_content(msg)}"
        if key in seen:
            continue
        seen.add(key)
        if not get_message_id(msg):
            set_message_id(msg, new_message_id())
            assigned_ids += 1
        unique.append(msg)

    removed = len(messages) - len(unique)
    if removed or assigned_ids:
        _rewrite(history, unique, history.get_context())
        logger.info(
            "Removed %d duplicate messages (%d ids assigned) from session %s",
            removed,
            assigned_ids,
            history.session_id,
        )

    return {"success": True, "removedDuplicates": removed, "totalMessages": len(unique)}


def question_from_request(messages: Optional[List[Dict[str, Any]]]) -> Optional[str]:
    if not messages:
        return None
    last = messages[-1]
    content = last.get("content") if isinstance(last, dict) else None
    if not isinstance(content, str) or not content:
        return None
    return content
