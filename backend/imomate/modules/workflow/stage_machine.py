from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from ...domain.common import days_between, iso


PipelineStage = str


OPPORTUNITY_STAGES: tuple[PipelineStage, ...] = (
    "qualification",
    "prospecting",
    "viewing",
    "negotiation",
    "documentation",
    "closing",
    "completed",
)

OPPORTUNITY_STATUSES: tuple[str, ...] = ("active", "completed", "cancelled", "paused")

# Days an opportunity may sit in a stage before it needs attention.
STAGE_MAX_DAYS: dict[PipelineStage, int] = {
    "qualification": 7,
    "prospecting": 14,
    "viewing": 14,
    "negotiation": 7,
    "documentation": 14,
    "closing": 7,
}

TERMINAL_STAGE: PipelineStage = "completed"


def is_valid_stage(stage: Any) -> bool:
    return str(stage or "") in OPPORTUNITY_STAGES


def open_entry(stage: PipelineStage, at: datetime) -> dict[str, Any]:
    return {"stage": stage, "enteredAt": iso(at), "exitedAt": None, "duration": 0}


def advance_history(
    history: Iterable[dict[str, Any]] | None,
    new_stage: PipelineStage,
    at: datetime,
) -> list[dict[str, Any]]:
    """
    Close the open (last) entry with its whole-day duration and append a new
    open entry for `new_stage`. Returns a new list; the input is not mutated.
    """
    out = [dict(e) for e in (history or []) if isinstance(e, dict)]
    if out:
        last = out[-1]
        if not last.get("exitedAt"):
            last["exitedAt"] = iso(at)
            last["duration"] = days_between(last.get("enteredAt"), at) or 0
    out.append(open_entry(new_stage, at))
    return out


def current_entry(history: Iterable[dict[str, Any]] | None) -> dict[str, Any] | None:
    entries = [e for e in (history or []) if isinstance(e, dict)]
    return entries[-1] if entries else None


def days_in_current_stage(opportunity: dict[str, Any], now: datetime) -> int | None:
    entry = current_entry(opportunity.get("stageHistory"))
    if entry and entry.get("stage") == opportunity.get("stage"):
        return days_between(entry.get("enteredAt"), now)
    return days_between(opportunity.get("createdAt"), now)
