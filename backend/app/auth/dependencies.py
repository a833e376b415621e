"""FastAPI dependencies for bearer-token authentication."""
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.concurrency import run_in_threadpool

from app.chat.runtime import ChatRuntime, get_runtime
from app.errors import AuthenticationError
from app.store.schemas import User

# auto_error=False so a missing header surfaces as our 401 JSON, not FastAPI's 403.
_bearer = HTTPBearer(auto_error=False)


def runtime_dependency() -> ChatRuntime:
    return get_runtime()


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    runtime: ChatRuntime = Depends(runtime_dependency),
) -> User:
    """Resolve the ``Authorization: Bearer`` token to a stored user.

    Raises:
        AuthenticationError: No header, bad token, or unknown user.
    """
    if credentials is None:
        raise AuthenticationError("Authentication required")
    user_id = runtime.tokens.verify(credentials.credentials)
    user = await run_in_threadpool(runtime.store.find_user_by_id, user_id)
    if user is None:
        raise AuthenticationError("Unknown user")
    return user
