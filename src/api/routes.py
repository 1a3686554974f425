"""FastAPI routes exposing call records to participants."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from sqlalchemy.exc import NoResultFound

from api.dependencies import get_current_user_id, get_repository
from api.schemas import CountResponse, UpdatedResponse
from calls.errors import CallNotFoundError
from calls.schemas import ONGOING_STATUSES, CallHistoryView, CallSessionView
from config.settings import get_settings
from db.repository import CallRepository

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/calls", tags=["calls"])


@router.get("/history", response_model=list[CallHistoryView])
async def list_call_history(
    limit: Annotated[int | None, Query(ge=1, le=200)] = None,
    user_id: str = Depends(get_current_user_id),
    repo: CallRepository = Depends(get_repository),
) -> list[CallHistoryView]:
    entries = await repo.list_history(user_id, limit=limit or get_settings().history_page_size)
    return [CallHistoryView.model_validate(entry) for entry in entries]


@router.get("/ongoing", response_model=list[CallSessionView])
async def list_ongoing_calls(
    user_id: str = Depends(get_current_user_id),
    repo: CallRepository = Depends(get_repository),
) -> list[CallSessionView]:
    sessions = await repo.list_sessions(user_id, statuses=ONGOING_STATUSES)
    return [CallSessionView.model_validate(session) for session in sessions]


@router.get("/missed/unread-count", response_model=CountResponse)
async def unread_missed_count(
    user_id: str = Depends(get_current_user_id),
    repo: CallRepository = Depends(get_repository),
) -> CountResponse:
    return CountResponse(count=await repo.count_unread_missed(user_id))


@router.post("/missed/read", response_model=UpdatedResponse)
async def mark_missed_read(
    user_id: str = Depends(get_current_user_id),
    repo: CallRepository = Depends(get_repository),
) -> UpdatedResponse:
    updated = await repo.mark_missed_read(user_id)
    LOGGER.info("Marked %d missed call(s) read for %s", updated, user_id)
    return UpdatedResponse(updated=updated)


@router.get("/{call_id}", response_model=CallSessionView)
async def get_call(
    call_id: str,
    user_id: str = Depends(get_current_user_id),
    repo: CallRepository = Depends(get_repository),
) -> CallSessionView:
    try:
        row = await repo.get_session(call_id)
    except NoResultFound as exc:
        raise CallNotFoundError() from exc
    session = CallSessionView.model_validate(row)
    # Non-participants get the same answer as for a missing call.
    if user_id not in (session.initiator_id, session.recipient_id):
        raise CallNotFoundError()
    return session
