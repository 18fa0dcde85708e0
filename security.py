import json
import base64
import logging
from typing import Any, Callable, Dict, Optional

from azure.identity import DefaultAzureCredential, get_bearer_token_provider
from fastapi import HTTPException, Request

import config

logger = logging.getLogger("rag_chat.security")

AZURE_OPENAI_SCOPE = "https://cognitiveservices.azure.com/.default"

_credential: Optional[DefaultAzureCredential] = None


def get_azure_credential() -> DefaultAzureCredential:
    global _credential
    if _credential is None:
        _credential = DefaultAzureCredential()
    return _credential


def get_azure_openai_token_provider() -> Callable[[], str]:
    return get_bearer_token_provider(get_azure_credential(), AZURE_OPENAI_SCOPE)


def enforce_auth(request: Request) -> None:
    if not config.AUTH_REQUIRED:
        return
    password = request.headers.get("x-app-password", "")
    if not password or password != config.APP_PASSWORD:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _principal_user_id(header_value: str) -> Optional[str]:
    try:
        decoded = base64.b64decode(header_value).decode("utf-8")
        principal = json.loads(decoded)
    except (ValueError, UnicodeDecodeError) as exc:
        logger.warning("Ignoring malformed x-ms-client-principal header: %s", exc)
        return None
    if not isinstance(principal, dict):
        return None
    return principal.get("userId") or None


def get_user_id(request: Request, body: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """
    Resolve the caller's user id, in order of preference:
    - the App Service / Static Web Apps principal header
    - body.context.userId (chat protocol requests)
    - body.userId
    - the X-User-Id header
    """
    principal = request.headers.get("x-ms-client-principal")
    if principal:
        user_id = _principal_user_id(principal)
        if user_id:
            return user_id

    if isinstance(body, dict):
        context = body.get("context")
        if isinstance(context, dict) and context.get("userId"):
            return str(context["userId"])
        if body.get("userId"):
            return str(body["userId"])

    return request.headers.get("x-user-id") or None
