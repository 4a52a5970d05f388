"""Caller attribution for FastAPI routes."""

from fastapi import Header, HTTPException
from supabase import create_client

from linkflow.config import settings


def user_from_jwt(token: str) -> str:
    client = create_client(settings.supabase_url, settings.supabase_anon_key)
    user_response = client.auth.get_user(token)
    if user_response is None or user_response.user is None:
        raise ValueError("no user for token")
    return user_response.user.id


async def get_current_user_id(
    authorization: str = Header(None),
    x_user_id: str = Header(None),
) -> str:
    """Resolve the calling user's id.

    In ``header`` mode an upstream gateway has already authenticated the request and
    passes the id in ``X-User-Id``. In ``supabase`` mode the bearer token is validated.
    """
    if settings.auth_mode == "supabase":
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="Missing or invalid token")
        token = authorization.replace("Bearer ", "")
        try:
            return user_from_jwt(token)
        except Exception:
            raise HTTPException(status_code=401, detail="Invalid token")

    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id
