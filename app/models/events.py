"""Pydantic models for session events and responses."""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class TextEvent(BaseModel):
    kind: Literal["text"]
    value: str = Field(..., max_length=4000)
    expected_step: str | None = None


class SelectionEvent(BaseModel):
    kind: Literal["selection"]
    item_index: int | None = Field(default=None, ge=0)
    value: str | None = Field(default=None, max_length=500)
    expected_step: str | None = None


class ControlEvent(BaseModel):
    kind: Literal["control"]
    action: str = Field(..., min_length=1, max_length=40)
    target: str | None = None
    preserve_earlier_stages: bool = False
    item_index: int | None = Field(default=None, ge=0)
    to_index: int | None = Field(default=None, ge=0)
    value: str | None = Field(default=None, max_length=4000)
    expected_step: str | None = None


SessionEvent = Annotated[Union[TextEvent, SelectionEvent, ControlEvent], Field(discriminator="kind")]


class EventRequest(BaseModel):
    event: SessionEvent
