"""Browse escalation plan: an ordered list of (credit, window) attempts.

The first attempt is modest; the second opens a fresh link with more credit and a
longer window. Both grow with the expected-batch hint and are clamped to fixed bounds.
"""
from __future__ import annotations

from dataclasses import dataclass

from inspector.app.domain.models import BrowseAttempt, BrowseTimeouts


@dataclass(frozen=True)
class EscalationTuning:
    credit_multiplier: int = 10
    first_credit_floor: int = 100
    first_credit_ceiling: int = 1000
    second_credit_floor: int = 200
    second_credit_ceiling: int = 2000
    first_window_floor: float = 8.0
    first_window_ceiling: float = 20.0
    second_extension: float = 10.0
    second_extension_cap: float = 20.0
    window_per_hint: float = 0.05


def clamp(value: float, floor: float, ceiling: float) -> float:
    return max(floor, min(ceiling, value))


def scaled_credit(hint: int, multiplier: int, floor: int, ceiling: int) -> int:
    return int(clamp(max(1, hint) * multiplier, floor, ceiling))


def plan_browse_attempts(
    hint: int,
    tuning: EscalationTuning,
    timeouts: BrowseTimeouts | None = None,
) -> list[BrowseAttempt]:
    hint = max(1, int(hint))
    first_credit = scaled_credit(hint, tuning.credit_multiplier, tuning.first_credit_floor, tuning.first_credit_ceiling)
    second_credit = scaled_credit(
        hint, tuning.credit_multiplier * 2, tuning.second_credit_floor, tuning.second_credit_ceiling
    )

    first_window = clamp(
        tuning.first_window_floor + hint * tuning.window_per_hint,
        tuning.first_window_floor,
        tuning.first_window_ceiling,
    )
    extension = min(tuning.second_extension_cap, tuning.second_extension + hint * tuning.window_per_hint)
    second_window = first_window + extension

    if timeouts is not None and timeouts.first_pass_window_seconds is not None:
        first_window = timeouts.first_pass_window_seconds
    if timeouts is not None and timeouts.second_pass_window_seconds is not None:
        second_window = timeouts.second_pass_window_seconds

    return [
        BrowseAttempt(credit=first_credit, window_seconds=first_window),
        BrowseAttempt(credit=second_credit, window_seconds=second_window),
    ]
