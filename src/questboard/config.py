"""Load optional questboard configuration from `.questboard/config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .constants import CONFIG_FILE, DEFAULT_CAPACITY_MINUTES, DEFAULT_TASK_MINUTES
from .io_utils import load_data_with_error


@dataclass
class DeckSettings:
    min_items: int = 3
    max_items: int = 7
    priority_weights: dict[str, int] = field(
        default_factory=lambda: {"urgent": 1000, "high": 500, "medium": 200, "low": 100}
    )
    in_progress_bonus: int = 300
    age_cap_days: int = 100
    # (max estimated minutes, bonus) checked in order; first match wins.
    quick_win_bonuses: list[tuple[int, int]] = field(default_factory=lambda: [(30, 15), (60, 10), (120, 5)])
    default_estimated_minutes: int = DEFAULT_TASK_MINUTES
    default_capacity_minutes: int = DEFAULT_CAPACITY_MINUTES


@dataclass
class AssignmentSettings:
    top_weight: int = 100
    competency_weight: int = 40
    frustration_penalty: int = 100
    # Penalty charged at 100% utilization; scales linearly with workload/capacity.
    workload_penalty: int = 100
    alternatives: int = 2
    default_task_minutes: int = DEFAULT_TASK_MINUTES


@dataclass
class UnlockSettings:
    ready_threshold: float = 0.5
    max_passes: int = 0


@dataclass
class OrchestrationSettings:
    stale_hours: int = 48
    member_decks: bool = True


@dataclass
class QuestboardConfig:
    deck: DeckSettings = field(default_factory=DeckSettings)
    assignment: AssignmentSettings = field(default_factory=AssignmentSettings)
    unlock: UnlockSettings = field(default_factory=UnlockSettings)
    orchestration: OrchestrationSettings = field(default_factory=OrchestrationSettings)


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _int(raw: Any, default: int, *, minimum: int = 0) -> int:
    if isinstance(raw, bool):
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value >= minimum else default


def _fraction(raw: Any, default: float) -> float:
    if isinstance(raw, bool):
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    return value if 0.0 < value <= 1.0 else default


def _deck_settings(raw: Any) -> DeckSettings:
    base = DeckSettings()
    if not isinstance(raw, dict):
        return base
    min_items = _int(raw.get("min_items"), base.min_items, minimum=0)
    max_items = _int(raw.get("max_items"), base.max_items, minimum=1)
    if min_items > max_items:
        min_items, max_items = base.min_items, base.max_items

    weights = dict(base.priority_weights)
    raw_weights = raw.get("priority_weights")
    if isinstance(raw_weights, dict):
        for name in weights:
            weights[name] = _int(raw_weights.get(name), weights[name])

    bonuses = base.quick_win_bonuses
    raw_bonuses = raw.get("quick_win_bonuses")
    if isinstance(raw_bonuses, list):
        parsed: list[tuple[int, int]] = []
        for entry in raw_bonuses:
            if isinstance(entry, (list, tuple)) and len(entry) == 2:
                limit, bonus = _int(entry[0], -1), _int(entry[1], -1)
                if limit > 0 and bonus >= 0:
                    parsed.append((limit, bonus))
        bonuses = sorted(parsed) if parsed else bonuses

    return DeckSettings(
        min_items=min_items,
        max_items=max_items,
        priority_weights=weights,
        in_progress_bonus=_int(raw.get("in_progress_bonus"), base.in_progress_bonus),
        age_cap_days=_int(raw.get("age_cap_days"), base.age_cap_days),
        quick_win_bonuses=bonuses,
        default_estimated_minutes=_int(raw.get("default_estimated_minutes"), base.default_estimated_minutes, minimum=1),
        default_capacity_minutes=_int(raw.get("default_capacity_minutes"), base.default_capacity_minutes, minimum=1),
    )


def _assignment_settings(raw: Any) -> AssignmentSettings:
    base = AssignmentSettings()
    if not isinstance(raw, dict):
        return base
    return AssignmentSettings(
        top_weight=_int(raw.get("top_weight"), base.top_weight),
        competency_weight=_int(raw.get("competency_weight"), base.competency_weight),
        frustration_penalty=_int(raw.get("frustration_penalty"), base.frustration_penalty),
        workload_penalty=_int(raw.get("workload_penalty"), base.workload_penalty),
        alternatives=_int(raw.get("alternatives"), base.alternatives),
        default_task_minutes=_int(raw.get("default_task_minutes"), base.default_task_minutes, minimum=1),
    )


def parse_config(data: dict[str, Any]) -> QuestboardConfig:
    """Build a :class:`QuestboardConfig` from a raw mapping, ignoring bad values."""
    unlock = UnlockSettings(
        ready_threshold=_fraction(_get_nested(data, "unlock", "ready_threshold"), UnlockSettings.ready_threshold),
        max_passes=_int(_get_nested(data, "unlock", "max_passes"), UnlockSettings.max_passes),
    )
    member_decks = _get_nested(data, "orchestration", "member_decks")
    orchestration = OrchestrationSettings(
        stale_hours=_int(_get_nested(data, "orchestration", "stale_hours"), OrchestrationSettings.stale_hours, minimum=1),
        member_decks=member_decks if isinstance(member_decks, bool) else OrchestrationSettings.member_decks,
    )
    return QuestboardConfig(
        deck=_deck_settings(data.get("deck")),
        assignment=_assignment_settings(data.get("assignment")),
        unlock=unlock,
        orchestration=orchestration,
    )


def load_config(state_dir: Path) -> tuple[QuestboardConfig, str | None]:
    """Load the optional config file from *state_dir*.

    Returns:
        A tuple of `(config, error_message)`. A missing file yields defaults and
        no error; an unreadable one yields defaults and the parse error.
    """
    path = state_dir / CONFIG_FILE
    data, err = load_data_with_error(path, {})
    if err:
        return QuestboardConfig(), err
    return parse_config(data), None
