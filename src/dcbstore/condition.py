"""Append condition evaluation.

A condition permits the append only if the high-water mark of its query,
recomputed inside the writing transaction, has not moved past the position
the caller observed when it read. Sequences only grow, so any newer matching
event pushes the observed mark above `after` and the check fails.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .models import AppendCondition, AppendResult
from .query import compile_highest_sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Verdict:
    """Result of evaluating an append condition against current state."""

    permit: bool
    observed: int
    after: int

    def to_result(self) -> AppendResult:
        """Denied outcome as an AppendResult."""
        return AppendResult.rejected(after=self.after, observed=self.observed)


def evaluate(condition: AppendCondition | None, observed: int) -> Verdict:
    """Compare the recomputed high-water mark with the caller's position.

    Args:
        condition: Condition supplied with the append (None permits)
        observed: highest_sequence(condition.fail_if_events_match) computed
            inside the same atomic unit as the insert

    Returns:
        Verdict with permit=True iff observed <= condition.after
    """
    if condition is None:
        return Verdict(permit=True, observed=observed, after=observed)

    permit = observed <= condition.after
    if not permit:
        logger.debug(
            f"Append condition denied: after={condition.after}, observed={observed}"
        )
    return Verdict(permit=permit, observed=observed, after=condition.after)


def compile_guard(condition: AppendCondition) -> tuple[str, list]:
    """SQL boolean guard equivalent to evaluate(condition, ...).permit.

    Embedded in `INSERT ... SELECT ... WHERE <guard>` so the check and the
    first row's insert are a single statement.
    """
    sub_sql, params = compile_highest_sequence(condition.fail_if_events_match)
    return f"{sub_sql} <= ?", params + [condition.after]
