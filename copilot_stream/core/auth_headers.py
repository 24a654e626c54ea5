"""
Auth Headers
============

Builds the authentication and context headers the stream request carries.
Credentials come from the identity provider's session; this module only
formats them.

Rules:
- X-Tenant-ID must be a UUID, never a slug
- X-User-ID is the session user's id
- Authorization carries the session's access token
"""

from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union
import re

from pydantic import BaseModel, ConfigDict, Field

from copilot_stream.config.logging import get_logger

logger = get_logger(__name__)

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

HeaderInput = Union[Mapping[str, str], Iterable[Tuple[str, str]], None]


class AuthUser(BaseModel):
    id: Optional[str] = None
    tenant_id: Optional[str] = Field(None, alias="tenantId")
    email: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class AuthSession(BaseModel):
    """Session as handed over by the identity provider."""

    user: Optional[AuthUser] = None
    access_token: Optional[str] = Field(None, alias="accessToken")

    model_config = ConfigDict(populate_by_name=True)


class ApiContext(BaseModel):
    """Optional conversation context forwarded as X-* headers."""

    session_id: Optional[str] = Field(None, alias="sessionId")
    conversation_id: Optional[str] = Field(None, alias="conversationId")
    thread_id: Optional[str] = Field(None, alias="threadId")
    workspace_id: Optional[str] = Field(None, alias="workspaceId")
    agent_id: Optional[str] = Field(None, alias="agentId")

    model_config = ConfigDict(populate_by_name=True)


_CONTEXT_HEADERS = (
    ("session_id", "X-Session-ID"),
    ("conversation_id", "X-Conversation-ID"),
    ("thread_id", "X-Thread-ID"),
    ("workspace_id", "X-Workspace-ID"),
    ("agent_id", "X-Agent-ID"),
)


def is_uuid(value: Optional[str]) -> bool:
    return bool(value) and UUID_PATTERN.match(value) is not None  # type: ignore[arg-type]


def merge_headers(*inputs: HeaderInput) -> Dict[str, str]:
    """Merge header maps or pair lists left to right; later values win."""
    merged: Dict[str, str] = {}
    for item in inputs:
        if not item:
            continue
        pairs: Iterable[Any] = item.items() if isinstance(item, Mapping) else item
        for key, value in pairs:
            merged[key] = value
    return merged


def create_auth_headers(
    session: Union[AuthSession, Mapping[str, Any], None],
    context: Union[ApiContext, Mapping[str, Any], None] = None,
) -> Dict[str, str]:
    """
    Build auth and context headers from a session.

    Args:
        session: Identity session (model or its wire dict)
        context: Optional conversation context

    Returns:
        Header map; empty when there is no session user
    """
    if session is None:
        return {}
    if not isinstance(session, AuthSession):
        session = AuthSession.model_validate(session)
    if session.user is None:
        return {}

    headers: Dict[str, str] = {}

    if session.access_token:
        headers["Authorization"] = f"Bearer {session.access_token}"

    tenant_id = session.user.tenant_id
    if tenant_id:
        if is_uuid(tenant_id):
            headers["X-Tenant-ID"] = tenant_id
        else:
            logger.error("Session tenant_id is not a UUID, header omitted", tenant_id=tenant_id)

    if session.user.id:
        headers["X-User-ID"] = session.user.id

    if context is not None:
        if not isinstance(context, ApiContext):
            context = ApiContext.model_validate(context)
        for field_name, header in _CONTEXT_HEADERS:
            value = getattr(context, field_name)
            if value:
                headers[header] = value

    return headers
