"""Auth router for the authenticated user's own presence.

Endpoints:
    GET  /auth/me       - The authenticated user
    PUT  /auth/status   - Manual status switch (online | away)
    POST /auth/logout   - Persist offline status and lastSeen
    GET  /users/{id}/presence - Stored status plus live presence of any user
"""
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from app.chat.manager import PRESENCE_ROOM
from app.chat.protocol import ServerEvent
from app.chat.runtime import ChatRuntime
from app.errors import NotFoundError, ValidationError
from app.store.schemas import User, UserStatus

from .dependencies import get_current_user, runtime_dependency

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])
users_router = APIRouter(prefix="/users", tags=["users"])


class StatusUpdateRequest(BaseModel):
    """Request body for a manual status switch."""
    status: UserStatus


@router.get("/me")
async def me(user: User = Depends(get_current_user)) -> dict:
    return user.model_dump(mode="json")


@router.put("/status")
async def update_status(
    request: StatusUpdateRequest,
    user: User = Depends(get_current_user),
    runtime: ChatRuntime = Depends(runtime_dependency),
) -> dict:
    """Switch between online and away.

    Away only makes sense while connected; offline is reserved for
    disconnect and logout.
    """
    if request.status == UserStatus.OFFLINE:
        raise ValidationError("Use /auth/logout to go offline")
    if request.status == UserStatus.AWAY and not runtime.presence.is_online(user.id):
        raise ValidationError("Away status requires a live connection")

    await run_in_threadpool(runtime.store.update_user_status, user.id, request.status)
    await runtime.manager.publish(
        PRESENCE_ROOM,
        ServerEvent.USER_STATUS_CHANGE.value,
        {"userId": user.id, "status": request.status.value},
    )
    logger.info("[Presence] %s set status to %s", user.id, request.status.value)
    return {"userId": user.id, "status": request.status.value}


@router.post("/logout")
async def logout(
    user: User = Depends(get_current_user),
    runtime: ChatRuntime = Depends(runtime_dependency),
) -> dict:
    await run_in_threadpool(runtime.store.update_user_status, user.id, UserStatus.OFFLINE)
    logger.info("[Presence] %s logged out", user.id)
    return {"success": True}


@users_router.get("/{user_id}/presence")
async def user_presence(
    user_id: str,
    _: User = Depends(get_current_user),
    runtime: ChatRuntime = Depends(runtime_dependency),
) -> dict:
    target = await run_in_threadpool(runtime.store.find_user_by_id, user_id)
    if target is None:
        raise NotFoundError("User", user_id)
    return {
        "userId": target.id,
        "status": target.status.value,
        "isOnline": runtime.presence.is_online(target.id),
        "lastSeen": target.lastSeen.isoformat() if target.lastSeen else None,
    }
