"""Presence HTTP endpoints for authenticated clients.

Endpoints:
    GET /api/users/online - Users currently connected, excluding the caller
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from app.chat.service import ChatService, get_chat_service
from app.errors import AuthError

from .schemas import Identity
from .service import extract_bearer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["users"])


async def get_current_identity(
    authorization: Optional[str] = Header(None),
    chat: ChatService = Depends(get_chat_service),
) -> Identity:
    """Resolve the caller's identity from an ``Authorization: Bearer`` header.

    Raises:
        HTTPException: 401 if no credential was sent, 403 if it is invalid
            or expired.
    """
    token = extract_bearer(authorization)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail="Missing token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return await chat.authenticator.authenticate(token)
    except AuthError as e:
        raise HTTPException(status_code=403, detail=e.reason)


@router.get("/users/online", response_model=List[Identity])
async def list_online_users(
    identity: Identity = Depends(get_current_identity),
    chat: ChatService = Depends(get_chat_service),
) -> List[Identity]:
    """List online users other than the caller."""
    return chat.presence.list_online(excluding=identity.userId)
