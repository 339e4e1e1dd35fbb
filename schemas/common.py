"""Shared schema primitives for engine records and results."""

from __future__ import annotations

from typing import Union

from pydantic import BaseModel, ConfigDict

EntityId = Union[int, str]


class StrictIgnoreRequest(BaseModel):
    """Inbound payload base with strict typing and ignored unknown fields."""

    model_config = ConfigDict(extra="ignore", strict=True)


class StrictResponse(BaseModel):
    """Response/result base with strict typing and forbidden unknown fields."""

    model_config = ConfigDict(extra="forbid")
