"""API-facing Pydantic models."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


class CountResponse(BaseModel):
    count: int


class UpdatedResponse(BaseModel):
    updated: int


class RelayFrame(BaseModel):
    """A client frame on the signaling relay WebSocket."""

    action: Literal["subscribe", "unsubscribe", "publish"]
    topic: str = Field(min_length=1)
    payload: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _publish_needs_payload(self) -> RelayFrame:
        if self.action == "publish" and self.payload is None:
            raise ValueError("publish frames carry a payload")
        return self
