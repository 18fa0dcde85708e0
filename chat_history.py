import re
import copy
import json
import uuid
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from azure.core.exceptions import ResourceNotFoundError
from azure.cosmos import CosmosClient, PartitionKey
from azure.cosmos.exceptions import CosmosResourceNotFoundError

import config
import storage
from security import get_azure_credential

logger = logging.getLogger("rag_chat.history")

HUMAN = "human"
AI = "ai"

# Session and user ids end up in file names, blob paths and Cosmos ids.
ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-@.]{1,128}$")


class ChatHistoryError(Exception):
    pass


class SessionNotFoundError(ChatHistoryError):
    pass


class InvalidIdError(ChatHistoryError):
    pass


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def new_message_id() -> str:
    return str(uuid.uuid4())


def validate_id(value: Optional[str], kind: str) -> str:
    if not value or not ID_PATTERN.match(value):
        raise InvalidIdError(f"Invalid {kind}: {value!r}")
    return value


# -----------------------------
# Message identity
# -----------------------------
def get_message_id(msg: Optional[Dict[str, Any]]) -> Optional[str]:
    if not msg:
        return None
    for holder in ("additional_kwargs", "response_metadata"):
        fields = msg.get(holder)
        if isinstance(fields, dict) and fields.get("messageId"):
            return fields["messageId"]
    return msg.get("messageId") or msg.get("id") or None


def set_message_id(msg: Dict[str, Any], message_id: str) -> Dict[str, Any]:
    msg["additional_kwargs"] = {**(msg.get("additional_kwargs") or {}), "messageId": message_id}
    msg["response_metadata"] = {**(msg.get("response_metadata") or {}), "messageId": message_id}
    msg["messageId"] = message_id
    return msg


def make_message(message_type: str, content: str, message_id: Optional[str] = None) -> Dict[str, Any]:
    msg: Dict[str, Any] = {
        "type": message_type,
        "content": content,
        "additional_kwargs": {},
        "response_metadata": {},
        "timestamp": now_iso(),
    }
    if message_id:
        set_message_id(msg, message_id)
    return msg


# -----------------------------
# Stores
# -----------------------------
class ChatMessageHistory:
    """
    History of one (user, session) pair.

    A session is stored as a single document: {"messages": [...], "context": {...}}.
    Subclasses only know how to read, write and delete that document.
    """

    backend = "base"

    def __init__(self, session_id: Optional[str], user_id: str):
        # session_id may be None for a handle that only lists the user's sessions
        self.session_id = validate_id(session_id, "sessionId") if session_id is not None else None
        self.user_id = validate_id(user_id, "userId")

    def _read_session(self) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def _write_session(self, session: Dict[str, Any]) -> None:
        raise NotImplementedError

    def _delete_session(self) -> bool:
        raise NotImplementedError

    def get_all_sessions(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def _load(self) -> Dict[str, Any]:
        session = self._read_session() or {}
        session.setdefault("messages", [])
        session.setdefault("context", {})
        return session

    def get_messages(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._load()["messages"])

    def add_message(self, msg: Dict[str, Any]) -> None:
        session = self._load()
        item = copy.deepcopy(msg)
        item.setdefault("timestamp", now_iso())
        session["messages"].append(item)
        self._write_session(session)

    def get_context(self) -> Dict[str, Any]:
        return dict(self._load()["context"])

    def set_context(self, context: Dict[str, Any]) -> None:
        session = self._load()
        session["context"] = {**session["context"], **context}
        self._write_session(session)

    def clear(self) -> None:
        """Removes the session's messages and its context."""
        if not self._delete_session():
            raise SessionNotFoundError(f"Session {self.session_id} not found")


class FileSystemChatMessageHistory(ChatMessageHistory):
    backend = "file"

    def _path(self):
        return config.CHAT_HISTORY_DIR / f"{self.user_id}.json"

    def _read_all(self) -> Dict[str, Any]:
        path = self._path()
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ChatHistoryError(f"Corrupt chat history file {path}: {exc}") from exc
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: Dict[str, Any]) -> None:
        config.CHAT_HISTORY_DIR.mkdir(parents=True, exist_ok=True)
        self._path().write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")

    def _read_session(self):
        return copy.deepcopy(self._read_all().get(self.session_id))

    def _write_session(self, session):
        data = self._read_all()
        data[self.session_id] = session
        self._write_all(data)

    def _delete_session(self):
        data = self._read_all()
        if self.session_id not in data:
            return False
        del data[self.session_id]
        self._write_all(data)
        return True

    def get_all_sessions(self):
        return [
            {"id": session_id, "title": (session.get("context") or {}).get("title")}
            for session_id, session in self._read_all().items()
        ]


class BlobChatMessageHistory(ChatMessageHistory):
    backend = "blob"

    def _blob_name(self, session_id: Optional[str] = None) -> str:
        return f"chats/{self.user_id}/{session_id or self.session_id}.json"

    def _get_blob_client(self, blob_name: str):
        return storage.container_client().get_blob_client(blob_name)

    def _read_session(self):
        blob = self._get_blob_client(self._blob_name())
        if not blob.exists():
            return None
        return json.loads(blob.download_blob().readall())

    def _write_session(self, session):
        payload = {**session, "sessionId": self.session_id, "userId": self.user_id, "last_updated": now_iso()}
        self._get_blob_client(self._blob_name()).upload_blob(json.dumps(payload, ensure_ascii=False), overwrite=True)

    def _delete_session(self):
        try:
            self._get_blob_client(self._blob_name()).delete_blob()
        except ResourceNotFoundError:
            return False
        return True

    def get_all_sessions(self):
        container = storage.container_client()
        sessions = []
        for blob in container.list_blobs(name_starts_with=f"chats/{self.user_id}/"):
            data = json.loads(container.get_blob_client(blob.name).download_blob().readall())
            session_id = data.get("sessionId") or blob.name.rsplit("/", 1)[-1][: -len(".json")]
            sessions.append({"id": session_id, "title": (data.get("context") or {}).get("title")})
        return sessions


_cosmos_container = None


def cosmos_container():
    global _cosmos_container
    if _cosmos_container is None:
        credential = config.AZURE_COSMOSDB_NOSQL_KEY or get_azure_credential()
        client = CosmosClient(config.AZURE_COSMOSDB_NOSQL_ENDPOINT, credential=credential)
        database = client.create_database_if_not_exists(id=config.AZURE_COSMOSDB_DATABASE)
        _cosmos_container = database.create_container_if_not_exists(
            id=config.AZURE_COSMOSDB_CONTAINER,
            partition_key=PartitionKey(path="/userId"),
        )
        logger.info(
            "Connected to Cosmos DB container %s/%s",
            config.AZURE_COSMOSDB_DATABASE,
            config.AZURE_COSMOSDB_CONTAINER,
        )
    return _cosmos_container


class CosmosChatMessageHistory(ChatMessageHistory):
    backend = "cosmosdb"

    def _read_session(self):
        try:
            item = cosmos_container().read_item(item=self.session_id, partition_key=self.user_id)
        except CosmosResourceNotFoundError:
            return None
        return {"messages": item.get("messages", []), "context": item.get("context", {})}

    def _write_session(self, session):
        cosmos_container().upsert_item(
            {
                "id": self.session_id,
                "userId": self.user_id,
                "messages": session["messages"],
                "context": session["context"],
            }
        )

    def _delete_session(self):
        try:
            cosmos_container().delete_item(item=self.session_id, partition_key=self.user_id)
        except CosmosResourceNotFoundError:
            return False
        return True

    def get_all_sessions(self):
        items = cosmos_container().query_items(
            query="SELECT c.id, c.context FROM c WHERE c.userId = @userId",
            parameters=[{"name": "@userId", "value": self.user_id}],
            partition_key=self.user_id,
        )
        return [{"id": item["id"], "title": (item.get("context") or {}).get("title")} for item in items]


BACKENDS = {
    "cosmosdb": CosmosChatMessageHistory,
    "blob": BlobChatMessageHistory,
    "file": FileSystemChatMessageHistory,
}


def get_chat_history(session_id: Optional[str], user_id: str) -> ChatMessageHistory:
    backend = config.history_backend()
    if backend == "file":
        logger.debug("No Azure storage configured, using local chat history files")
    return BACKENDS[backend](session_id, user_id)
