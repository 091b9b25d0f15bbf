from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from .config import get_settings
from .database import get_db_session
from .sessions import SessionRegistry


def get_db() -> Session:
    yield from get_db_session()


def require_token(authorization: Optional[str] = Header(default=None)) -> str:
    settings = get_settings()
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    if token != settings.api_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return token


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.sessions
