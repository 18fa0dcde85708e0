import os
import json
import time
import logging
from typing import Any, Dict, Iterator, List, Optional

import httpx

logger = logging.getLogger("rag_chat.client")

API_BASE_URL = os.getenv("RAG_CHAT_API_URL", "")


def get_completion(
    messages: List[Dict[str, Any]],
    context: Optional[Dict[str, Any]] = None,
    chunk_interval_ms: int = 30,
    api_url: str = "",
) -> Iterator[Dict[str, Any]]:
    """
    Streams a chat completion and yields each delta chunk, e.g.
    {"delta": {"content": "...", "role": "assistant"}, "context": {"sessionId": ..., "messageId": ...}}.

    Lines without a delta are skipped. Every delta is held back for chunk_interval_ms
    so the text renders at a steady pace.
    """
    base_url = api_url or API_BASE_URL
    payload: Dict[str, Any] = {"messages": messages, "stream": True}
    if context:
        payload["context"] = context

    with httpx.stream("POST", f"{base_url}/api/chats/stream", json=payload, timeout=None) as response:
        if response.is_error:
            response.read()
            raise RuntimeError(f"HTTP {response.status_code}: {response.text or response.reason_phrase}")
        for line in response.iter_lines():
            line = line.strip()
            if not line:
                continue
            chunk = json.loads(line)
            if not chunk.get("delta"):
                continue
            time.sleep(chunk_interval_ms / 1000)
            yield chunk


def delete_message(message_id: str, session_id: str, user_id: str, api_url: Optional[str] = None) -> Dict[str, Any]:
    base_url = api_url or API_BASE_URL
    url = f"{base_url}/api/chats/{session_id}/messages/{message_id}"
    logger.debug("DELETE %s (user %s)", url, user_id)

    response = httpx.request(
        "DELETE",
        url,
        headers={"Content-Type": "application/json", "X-User-Id": user_id},
        # userId is repeated in the body for proxies that drop custom headers
        content=json.dumps({"messageId": message_id, "sessionId": session_id, "userId": user_id}),
    )
    if response.is_error:
        logger.error("Delete message failed: %s %s", response.status_code, response.text)
        raise RuntimeError(f"HTTP {response.status_code}: {response.text or response.reason_phrase}")
    return response.json()


def get_citation_url(citation: str, api_url: Optional[str] = None) -> str:
    return f"{api_url or API_BASE_URL}/api/documents/{citation}"
