import os
import pathlib
import logging
from typing import Optional

from dotenv import load_dotenv

DOTENV_LOADED = load_dotenv()
logger = logging.getLogger("rag_chat.config")


# -----------------------------
# Configuration (env vars)
# -----------------------------
# Azure OpenAI (when unset, an Ollama OpenAI-compatible endpoint is used)
AZURE_OPENAI_API_ENDPOINT = os.getenv("AZURE_OPENAI_API_ENDPOINT")
AZURE_OPENAI_API_VERSION = os.getenv("AZURE_OPENAI_API_VERSION", "2024-10-21")
AZURE_OPENAI_API_DEPLOYMENT_NAME = os.getenv("AZURE_OPENAI_API_DEPLOYMENT_NAME", "chat")
AZURE_OPENAI_API_EMBEDDINGS_DEPLOYMENT_NAME = os.getenv(
    "AZURE_OPENAI_API_EMBEDDINGS_DEPLOYMENT_NAME", "embeddings"
)

# Local models
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434/v1")
OLLAMA_CHAT_MODEL = os.getenv("OLLAMA_CHAT_MODEL", "llama3.1:latest")
OLLAMA_EMBEDDINGS_MODEL = os.getenv("OLLAMA_EMBEDDINGS_MODEL", "nomic-embed-text:latest")

# Chat history storage
AZURE_COSMOSDB_NOSQL_ENDPOINT = os.getenv("AZURE_COSMOSDB_NOSQL_ENDPOINT")
AZURE_COSMOSDB_NOSQL_KEY = os.getenv("AZURE_COSMOSDB_NOSQL_KEY")
AZURE_COSMOSDB_DATABASE = os.getenv("AZURE_COSMOSDB_DATABASE", "chatHistoryDB")
AZURE_COSMOSDB_CONTAINER = os.getenv("AZURE_COSMOSDB_CONTAINER", "chatHistory")
CHAT_HISTORY_DIR = pathlib.Path(os.getenv("CHAT_HISTORY_DIR", ".data/chat_history"))

# Azure Storage (chat history fallback + uploaded documents)
AZURE_STORAGE_ACCOUNT = os.getenv("AZURE_STORAGE_ACCOUNT")
AZURE_STORAGE_CONTAINER = os.getenv("AZURE_STORAGE_CONTAINER")
AZURE_STORAGE_CONNECTION_STRING = os.getenv("AZURE_STORAGE_CONNECTION_STRING")

# Retrieval
FAISS_STORE_FOLDER = pathlib.Path(os.getenv("FAISS_STORE_FOLDER", ".faiss"))
DOCUMENTS_DIR = pathlib.Path(os.getenv("DOCUMENTS_DIR", ".data/documents"))
CHUNK_TOKENS = int(os.getenv("RAG_CHUNK_TOKENS", "1500"))
CHUNK_OVERLAP = int(os.getenv("RAG_CHUNK_OVERLAP", "100"))
TOP_K = int(os.getenv("RAG_TOP_K", "3"))

# App access
APP_PASSWORD = os.getenv("APP_PASSWORD")
AUTH_REQUIRED = bool(APP_PASSWORD)

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

SECRET_KEYS = {"AZURE_COSMOSDB_NOSQL_KEY", "AZURE_STORAGE_CONNECTION_STRING", "APP_PASSWORD"}


def storage_configured() -> bool:
    return bool(
        AZURE_STORAGE_CONNECTION_STRING or (AZURE_STORAGE_ACCOUNT and AZURE_STORAGE_CONTAINER)
    )


def history_backend() -> str:
    if AZURE_COSMOSDB_NOSQL_ENDPOINT:
        return "cosmosdb"
    if storage_configured():
        return "blob"
    return "file"


def model_backend() -> str:
    return "azure-openai" if AZURE_OPENAI_API_ENDPOINT else "ollama"


def _format_env_value(key: str, value: Optional[str]) -> str:
    if value is None:
        return "<unset>"
    if not isinstance(value, str):
        return str(value)
    if key in SECRET_KEYS:
        if value == "":
            return "<unset>"
        return f"****{value[-4:]}" if len(value) > 4 else "****"
    if value == "":
        return "<empty>"
    return value


def log_env_config() -> None:
    values = {
        "AZURE_OPENAI_API_ENDPOINT": AZURE_OPENAI_API_ENDPOINT,
        "AZURE_OPENAI_API_DEPLOYMENT_NAME": AZURE_OPENAI_API_DEPLOYMENT_NAME,
        "AZURE_OPENAI_API_EMBEDDINGS_DEPLOYMENT_NAME": AZURE_OPENAI_API_EMBEDDINGS_DEPLOYMENT_NAME,
        "OLLAMA_BASE_URL": OLLAMA_BASE_URL,
        "OLLAMA_CHAT_MODEL": OLLAMA_CHAT_MODEL,
        "OLLAMA_EMBEDDINGS_MODEL": OLLAMA_EMBEDDINGS_MODEL,
        "AZURE_COSMOSDB_NOSQL_ENDPOINT": AZURE_COSMOSDB_NOSQL_ENDPOINT,
        "AZURE_COSMOSDB_NOSQL_KEY": AZURE_COSMOSDB_NOSQL_KEY,
        "AZURE_COSMOSDB_DATABASE": AZURE_COSMOSDB_DATABASE,
        "AZURE_COSMOSDB_CONTAINER": AZURE_COSMOSDB_CONTAINER,
        "AZURE_STORAGE_ACCOUNT": AZURE_STORAGE_ACCOUNT,
        "AZURE_STORAGE_CONTAINER": AZURE_STORAGE_CONTAINER,
        "AZURE_STORAGE_CONNECTION_STRING": AZURE_STORAGE_CONNECTION_STRING,
        "CHAT_HISTORY_DIR": str(CHAT_HISTORY_DIR),
        "FAISS_STORE_FOLDER": str(FAISS_STORE_FOLDER),
        "DOCUMENTS_DIR": str(DOCUMENTS_DIR),
        "RAG_CHUNK_TOKENS": CHUNK_TOKENS,
        "RAG_CHUNK_OVERLAP": CHUNK_OVERLAP,
        "RAG_TOP_K": TOP_K,
        "APP_PASSWORD": APP_PASSWORD,
        "AUTH_REQUIRED": AUTH_REQUIRED,
        "HISTORY_BACKEND": history_backend(),
        "MODEL_BACKEND": model_backend(),
    }

    logger.info("dotenv loaded: %s", DOTENV_LOADED)
    logger.info("Environment configuration:")
    for key, value in values.items():
        logger.info("  %s=%s", key, _format_env_value(key, value))
