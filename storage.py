import logging
import pathlib
from typing import Optional

from azure.core.exceptions import ResourceNotFoundError
from azure.identity import DefaultAzureCredential
from azure.storage.blob import BlobServiceClient, ContainerClient, ContentSettings

import config

logger = logging.getLogger("rag_chat.storage")

DOCUMENTS_PREFIX = "documents/"

CONTENT_TYPES = {
    ".pdf": "application/pdf",
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".html": "text/html",
    ".htm": "text/html",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


def azure_blob_service_client() -> BlobServiceClient:
    if config.AZURE_STORAGE_CONNECTION_STRING:
        return BlobServiceClient.from_connection_string(config.AZURE_STORAGE_CONNECTION_STRING)

    if not config.AZURE_STORAGE_ACCOUNT:
        raise RuntimeError("Missing AZURE_STORAGE_ACCOUNT (or AZURE_STORAGE_CONNECTION_STRING).")

    account_url = f"https://{config.AZURE_STORAGE_ACCOUNT}.blob.core.windows.net"
    cred = DefaultAzureCredential(exclude_interactive_browser_credential=False)
    return BlobServiceClient(account_url=account_url, credential=cred)


def container_client() -> ContainerClient:
    return azure_blob_service_client().get_container_client(config.AZURE_STORAGE_CONTAINER)


def content_type_for(filename: str) -> str:
    return CONTENT_TYPES.get(pathlib.Path(filename).suffix.lower(), "application/octet-stream")


def _safe_name(filename: str) -> str:
    name = pathlib.PurePosixPath(filename.replace("\\", "/")).name
    if not name or name in {".", ".."}:
        raise ValueError(f"Invalid document name: {filename!r}")
    return name


def save_document(filename: str, data: bytes) -> str:
    """Stores an uploaded document so citations can link back to it. Returns the stored name."""
    name = _safe_name(filename)
    if config.storage_configured():
        blob = container_client().get_blob_client(DOCUMENTS_PREFIX + name)
        blob.upload_blob(
            data,
            overwrite=True,
            content_settings=ContentSettings(content_type=content_type_for(name)),
        )
        logger.info("Uploaded document %s to blob storage", name)
    else:
        config.DOCUMENTS_DIR.mkdir(parents=True, exist_ok=True)
        (config.DOCUMENTS_DIR / name).write_bytes(data)
        logger.info("Saved document %s to %s", name, config.DOCUMENTS_DIR)
    return name


def delete_document(filename: str) -> None:
    name = _safe_name(filename)
    if config.storage_configured():
        try:
            container_client().get_blob_client(DOCUMENTS_PREFIX + name).delete_blob()
        except ResourceNotFoundError:
            pass
        return

    path = config.DOCUMENTS_DIR / name
    if path.exists():
        path.unlink()


def load_document(filename: str) -> Optional[bytes]:
    name = _safe_name(filename)
    if config.storage_configured():
        blob = container_client().get_blob_client(DOCUMENTS_PREFIX + name)
        try:
            return blob.download_blob().readall()
        except ResourceNotFoundError:
            return None

    path = config.DOCUMENTS_DIR / name
    if not path.exists():
        return None
    return path.read_bytes()
