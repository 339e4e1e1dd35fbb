"""
Funnel aggregation over the application set.

Produces the two statistical views the board and analytics panels need:

- current distribution: how many applications sit in each stage right now
- cumulative funnel: how many applications ever reached each stage

The cumulative funnel is driven by each application's high-water mark, not by
its current stage. An application moved from Applied to Phone Screen still
counts as having applied, and a rejection after Interview still counts as
having reached Interview.
"""

from typing import Dict, Iterable, List

from models.application import Application
from models.stages import StageSchema
from schemas.pipeline import FunnelSnapshot, StageConversion


def safe_rate(numerator: int, denominator: int) -> float:
    """Ratio guarded against an empty denominator (0.0, never NaN)."""
    return numerator / denominator if denominator else 0.0


def compute_distributions(
    entities: Iterable[Application], schema: StageSchema
) -> tuple[Dict[str, int], Dict[str, int], int]:
    """
    Count current and cumulative stage membership in one linear pass.

    Args:
        entities: Applications to aggregate
        schema: Stage catalog providing order and progression

    Returns:
        Tuple of (current_by_stage, cumulative_by_stage, total)
    """
    current = {stage: 0 for stage in schema.stages}
    cumulative = {stage: 0 for stage in schema.stages}
    progressing = schema.progressing_stages
    total = 0

    for entity in entities:
        total += 1
        current[entity.current_stage] += 1

        high_water = entity.high_water_stage
        if high_water is None:
            continue
        # progressing stages are listed in ordinal order
        reached = schema.ordinal(high_water)
        for stage in progressing:
            if schema.ordinal(stage) > reached:
                break
            cumulative[stage] += 1

    # Exit stages are terminal snapshots, not funnel steps
    for stage in schema.exit_stages:
        cumulative[stage] = current[stage]

    return current, cumulative, total


def compute_conversion_rates(
    cumulative_by_stage: Dict[str, int], schema: StageSchema
) -> List[StageConversion]:
    """
    Conversion between each pair of adjacent progressing stages.

    Rate for ``A -> B`` is ``cumulative[B] / cumulative[A]``.
    """
    progressing = schema.progressing_stages
    return [
        StageConversion(
            from_stage=from_stage,
            to_stage=to_stage,
            rate=safe_rate(cumulative_by_stage[to_stage], cumulative_by_stage[from_stage]),
        )
        for from_stage, to_stage in zip(progressing, progressing[1:])
    ]


def compute_funnel(entities: Iterable[Application], schema: StageSchema) -> FunnelSnapshot:
    """
    Build a complete aggregate snapshot.

    Examples:
        >>> schema = StageSchema.default()
        >>> apps = [
        ...     Application(id=1, current_stage="Phone Screen", high_water_stage="Phone Screen"),
        ...     Application(id=2, current_stage="Applied", high_water_stage="Applied"),
        ... ]
        >>> snapshot = compute_funnel(apps, schema)
        >>> snapshot.cumulative_by_stage["Applied"]
        2
        >>> snapshot.current_by_stage["Applied"]
        1
    """
    current, cumulative, total = compute_distributions(entities, schema)
    progressing = schema.progressing_stages
    return FunnelSnapshot(
        total=total,
        current_by_stage=current,
        cumulative_by_stage=cumulative,
        conversion_rates=compute_conversion_rates(cumulative, schema),
        overall_conversion=safe_rate(cumulative[progressing[-1]], cumulative[progressing[0]]),
    )
