from typing import Optional

from fastapi import HTTPException
from starlette.requests import Request

# Set by the upstream auth provider after it has authenticated the caller
USER_HEADER = "X-User-ID"


def get_user_id_from_request(request: Request) -> Optional[int]:
    raw = (request.headers.get(USER_HEADER) or "").strip()
    if not raw:
        return None
    try:
        uid = int(raw)
    except ValueError:
        return None
    return uid if uid > 0 else None


def get_current_user_id(request: Request) -> Optional[int]:
    """Dependency: caller's user id, or None for anonymous buyers."""
    return get_user_id_from_request(request)


def require_user_id(request: Request) -> int:
    """Dependency that requires a signed-in caller."""
    uid = get_user_id_from_request(request)
    if uid is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return uid
