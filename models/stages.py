"""
Centralized stage catalog for the application pipeline.

This module is the single source of truth for stage names and their order.
It defines:

- ``PipelineStage``: the default board columns as a ``(str, Enum)`` so that
  members compare equal to plain strings and serialize naturally.
- ``StageSchema``: an immutable, ordered catalog that answers ordinal,
  progression and transition questions for any stage list, including custom
  catalogs loaded from YAML.

Exit stages (Rejected, Withdrawn) are *non-progressing*: reaching them says
nothing about stages beyond the one the application occupied before.
"""

from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple, Union

import yaml

from models.errors import create_invalid_stage_error, create_validation_error


class PipelineStage(str, Enum):
    """Default board columns, in pipeline order.

    Forward pipeline:
        Interested -> Applied -> Phone Screen -> Interview -> Offer

    Exit outcomes (reachable from any stage, never counted as progress):
        Rejected, Withdrawn
    """

    INTERESTED = "Interested"
    APPLIED = "Applied"
    PHONE_SCREEN = "Phone Screen"
    INTERVIEW = "Interview"
    OFFER = "Offer"
    REJECTED = "Rejected"
    WITHDRAWN = "Withdrawn"


DEFAULT_EXIT_STAGES = (PipelineStage.REJECTED.value, PipelineStage.WITHDRAWN.value)


def _normalize_key(name: str) -> str:
    return " ".join(name.split()).casefold()


class StageSchema:
    """
    Ordered, fixed stage catalog.

    Instances are immutable and side-effect free. Ordinals follow list order,
    so exit stages listed last have the highest ordinals; callers must use
    ``is_progressing`` before comparing an exit stage against the funnel.
    """

    __slots__ = ("_stages", "_exit", "_ordinals", "_lookup")

    def __init__(self, stages: Iterable[str], exit_stages: Iterable[str] = ()):
        stages = tuple(str(s) for s in stages)
        exit_set = frozenset(str(s) for s in exit_stages)

        if not stages:
            raise create_validation_error("Invalid stage catalog: no stages defined")

        lookup: Dict[str, str] = {}
        for stage in stages:
            if not stage.strip():
                raise create_validation_error("Invalid stage catalog: empty stage name")
            key = _normalize_key(stage)
            if key in lookup:
                raise create_validation_error(f"Invalid stage catalog: duplicate stage '{stage}'")
            lookup[key] = stage

        unknown_exits = sorted(exit_set.difference(stages))
        if unknown_exits:
            raise create_validation_error(
                f"Invalid stage catalog: exit stages not in catalog: {', '.join(unknown_exits)}"
            )
        if all(stage in exit_set for stage in stages):
            raise create_validation_error(
                "Invalid stage catalog: at least one progressing stage is required"
            )

        self._stages: Tuple[str, ...] = stages
        self._exit = exit_set
        self._ordinals = {stage: index for index, stage in enumerate(stages)}
        self._lookup = lookup

    @classmethod
    def default(cls) -> "StageSchema":
        """Build the catalog of the default board columns."""
        return cls([stage.value for stage in PipelineStage], DEFAULT_EXIT_STAGES)

    @classmethod
    def from_mapping(cls, data: Any) -> "StageSchema":
        """
        Build a catalog from a mapping of the form::

            stages: [Wishlist, Applied, Onsite, Offer, Declined]
            exit_stages: [Declined]

        Raises:
            PipelineError: If the mapping is malformed
        """
        if not isinstance(data, dict):
            raise create_validation_error("Invalid stage catalog: expected a mapping")
        stages = data.get("stages")
        if not isinstance(stages, list):
            raise create_validation_error("Invalid stage catalog: 'stages' must be a list")
        exit_stages = data.get("exit_stages") or []
        if not isinstance(exit_stages, list):
            raise create_validation_error("Invalid stage catalog: 'exit_stages' must be a list")
        return cls(stages, exit_stages)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "StageSchema":
        """Load a custom catalog from a YAML file."""
        try:
            data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise create_validation_error(f"Invalid stage catalog YAML: {e}") from e
        return cls.from_mapping(data)

    @property
    def stages(self) -> Tuple[str, ...]:
        return self._stages

    @property
    def progressing_stages(self) -> Tuple[str, ...]:
        return tuple(s for s in self._stages if s not in self._exit)

    @property
    def exit_stages(self) -> Tuple[str, ...]:
        return tuple(s for s in self._stages if s in self._exit)

    @property
    def default_stage(self) -> str:
        """First progressing stage; where unrecognized remote stages land."""
        return self.progressing_stages[0]

    def __contains__(self, stage: object) -> bool:
        return isinstance(stage, str) and stage in self._ordinals

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StageSchema):
            return NotImplemented
        return self._stages == other._stages and self._exit == other._exit

    def __hash__(self) -> int:
        return hash((self._stages, self._exit))

    def __repr__(self) -> str:
        return f"StageSchema(stages={list(self._stages)!r}, exit_stages={list(self.exit_stages)!r})"

    def normalize(self, name: Any) -> Optional[str]:
        """
        Resolve a stage name case- and whitespace-insensitively.

        Returns:
            Canonical stage name, or None if the name is not in the catalog

        Examples:
            >>> StageSchema.default().normalize("  phone   SCREEN ")
            'Phone Screen'
            >>> StageSchema.default().normalize("Ghosted") is None
            True
        """
        if not isinstance(name, str):
            return None
        return self._lookup.get(_normalize_key(name))

    def require(self, name: Any) -> str:
        """
        Resolve a stage name or reject it.

        Raises:
            InvalidStage: If the name is not in the catalog
        """
        stage = self.normalize(name)
        if stage is None:
            raise create_invalid_stage_error(name)
        return stage

    def ordinal(self, stage: str) -> int:
        """Position of ``stage`` in the catalog."""
        try:
            return self._ordinals[stage]
        except (KeyError, TypeError):
            return self._ordinals[self.require(stage)]

    def is_progressing(self, stage: str) -> bool:
        return stage in self._ordinals and stage not in self._exit

    def is_valid_transition(self, from_stage: str, to_stage: str) -> bool:
        """
        Every move between catalog stages is valid, backward moves included.

        Users legitimately correct mis-filed applications, so the catalog
        never forbids a transition; see ``utils.stage_policy`` for warnings.
        """
        return from_stage in self and to_stage in self

    def max_progress(self, first: Optional[str], second: Optional[str]) -> Optional[str]:
        """The further-progressed of two high-water candidates (None = nothing reached)."""
        candidates = [s for s in (first, second) if s is not None and self.is_progressing(s)]
        if not candidates:
            return None
        return max(candidates, key=self.ordinal)
