"""FastAPI dependencies for request-scoped identity and shared services."""

from __future__ import annotations

import hmac
from typing import Any

import jwt
from fastapi import Depends, HTTPException, Request, status

from decision_rooms.config import Settings, get_settings
from decision_rooms.data import DataStoreProtocol, ParticipantRecord
from decision_rooms.jwt_utils import decode_access_token


def _extract_token(request: Request) -> str:
    auth_header = request.headers.get("authorization") or request.headers.get("Authorization")
    if not auth_header or not auth_header.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    return auth_header.split(" ", 1)[1]


def get_data_store(request: Request) -> DataStoreProtocol:
    store = getattr(request.app.state, "data_store", None)
    if not store:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Data store unavailable")
    return store


def get_current_participant(
    request: Request,
    settings: Settings = Depends(get_settings),
    store: DataStoreProtocol = Depends(get_data_store),
) -> ParticipantRecord:
    """Verify the bearer token and upsert the caller's local profile projection."""

    token = _extract_token(request)
    try:
        payload: dict[str, Any] = decode_access_token(token, settings=settings)
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    sub = payload.get("sub")
    if not sub or not isinstance(sub, str):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing subject")
    ctx = payload.get("ctx") or {}
    display_name = ctx.get("display_name") or f"Participant-{sub[:8]}"

    return store.upsert_participant(
        participant_id=sub,
        display_name=display_name,
        organisation=ctx.get("organisation"),
        role=ctx.get("role"),
        country=ctx.get("country"),
        event_id=ctx.get("event_id"),
    )


def require_operator(request: Request, settings: Settings = Depends(get_settings)) -> None:
    if not settings.operator_api_key:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Operator endpoints are disabled")
    provided = request.headers.get("x-operator-key") or ""
    if not hmac.compare_digest(provided, settings.operator_api_key):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid operator key")
