"""
Application record tracked by the pipeline engine.

An ``Application`` is immutable: every stage change produces a new record via
``model_copy(update=...)``, so a held record doubles as a rollback snapshot.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import ConfigDict, Field, field_validator, model_validator

from schemas.common import EntityId, StrictResponse


# Column names board rows use for the same fields
_STAGE_ALIASES = ("job_status", "stage", "status")
_CHANGED_AT_ALIASES = ("status_changed_at",)

_CORE_FIELDS = {"id", "current_stage", "high_water_stage", "stage_changed_at", "payload"}


class Application(StrictResponse):
    """One tracked job application.

    Accepts flat remote rows: known stage aliases are mapped onto
    ``current_stage``/``stage_changed_at`` and every other column is kept in
    the opaque ``payload``.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: EntityId
    current_stage: str
    high_water_stage: Optional[str] = None
    stage_changed_at: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def collect_payload(cls, data: Any) -> Any:
        """Map alias columns and fold unknown columns into ``payload``."""
        if not isinstance(data, dict):
            return data

        data = dict(data)
        if "current_stage" not in data:
            for alias in _STAGE_ALIASES:
                if alias in data:
                    data["current_stage"] = data.pop(alias)
                    break
            else:
                data["current_stage"] = None
        if "stage_changed_at" not in data:
            for alias in _CHANGED_AT_ALIASES:
                if alias in data:
                    data["stage_changed_at"] = data.pop(alias)
                    break

        extras = {k: v for k, v in data.items() if k not in _CORE_FIELDS}
        if extras:
            payload = dict(data.get("payload") or {})
            payload.update(extras)
            data = {k: v for k, v in data.items() if k in _CORE_FIELDS}
            data["payload"] = payload
        return data

    @field_validator("id", mode="before")
    @classmethod
    def validate_id(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("Invalid application ID type: expected integer or string, got bool")
        if isinstance(value, int) and value < 1:
            raise ValueError(f"Invalid application ID: {value} must be a positive integer (>= 1)")
        if isinstance(value, str) and not value.strip():
            raise ValueError("Invalid application ID: cannot be empty")
        return value

    @field_validator("current_stage", mode="before")
    @classmethod
    def validate_current_stage(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            # Rows without a status sit in the first column, as on the board
            return ""
        return value

    def with_stage(
        self,
        stage: str,
        high_water_stage: Optional[str],
        stage_changed_at: Optional[str],
    ) -> "Application":
        """Return a copy positioned at ``stage``."""
        return self.model_copy(
            update={
                "current_stage": stage,
                "high_water_stage": high_water_stage,
                "stage_changed_at": stage_changed_at,
            }
        )
