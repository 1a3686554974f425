"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Header

from calls.errors import AuthRequiredError
from db.repository import CallRepository
from signaling.hub import SignalingHub


@lru_cache(maxsize=1)
def _repository_factory() -> CallRepository:
    return CallRepository()


def get_repository() -> CallRepository:
    return _repository_factory()


@lru_cache(maxsize=1)
def _hub_factory() -> SignalingHub:
    return SignalingHub()


def get_signaling_hub() -> SignalingHub:
    return _hub_factory()


def get_current_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str:
    # Authentication lives in front of this service; it forwards the identity.
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise AuthRequiredError()
    return user_id
