"""Pure pipeline calculations over opportunity dicts."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from ..common import as_float, days_between, dig, parse_iso, round_half_up


STAGE_BASE_PROBABILITY: dict[str, int] = {
    "qualification": 10,
    "prospecting": 20,
    "viewing": 35,
    "negotiation": 60,
    "documentation": 75,
    "closing": 90,
    "completed": 100,
}

DEFAULT_COMMISSION_RATES: dict[str, float] = {
    "seller": 5.0,
    "landlord": 5.0,
}
FALLBACK_COMMISSION_RATE = 2.5

PRIORITY_ORDER: dict[str, int] = {"critical": 0, "high": 1, "medium": 2, "low": 3}

HIGH_VALUE_THRESHOLD = 200_000
LOW_PROBABILITY_THRESHOLD = 30


def calculate_probability(opportunity: dict[str, Any]) -> int:
    stage = str(opportunity.get("stage") or "qualification")
    status = str(opportunity.get("status") or "active")
    if status == "cancelled":
        return 0
    if stage == "completed" or status == "completed":
        return 100

    p = STAGE_BASE_PROBABILITY.get(stage, 0)
    if opportunity.get("type") == "buyer" and dig(opportunity, "requirements.financing.financingApproved"):
        p += 10
    if str(opportunity.get("urgency") or "") == "immediate":
        p += 5
    if opportunity.get("proposals"):
        p += 5
    # 100 is reserved for completed deals.
    return max(0, min(99, p))


def commission_rate(opportunity: dict[str, Any]) -> float:
    rate = opportunity.get("commissionRate")
    if rate is not None:
        return as_float(rate)
    return DEFAULT_COMMISSION_RATES.get(str(opportunity.get("type") or ""), FALLBACK_COMMISSION_RATE)


def calculate_commission(opportunity: dict[str, Any]) -> float:
    commission = opportunity.get("commission")
    if isinstance(commission, dict) and commission.get("type") == "fixed":
        return round(as_float(commission.get("amount")), 2)
    return round(as_float(opportunity.get("value")) * commission_rate(opportunity) / 100, 2)


def calculate_priority(opportunity: dict[str, Any]) -> str:
    value = as_float(opportunity.get("value"))
    probability = as_float(opportunity.get("probability"))
    urgency = str(opportunity.get("urgency") or "")

    points = 0
    if value >= 500_000:
        points += 3
    elif value >= HIGH_VALUE_THRESHOLD:
        points += 2
    elif value >= 50_000:
        points += 1

    if probability >= 70:
        points += 2
    elif probability >= 40:
        points += 1

    if urgency == "immediate":
        points += 2
    elif urgency in ("1month", "3months"):
        points += 1

    if opportunity.get("stage") in ("documentation", "closing"):
        points += 1

    if points >= 6:
        return "critical"
    if points >= 4:
        return "high"
    if points >= 2:
        return "medium"
    return "low"


def weighted_value(opportunity: dict[str, Any]) -> float:
    return as_float(opportunity.get("value")) * as_float(opportunity.get("probability")) / 100


def attention_reasons(
    opportunity: dict[str, Any],
    *,
    now: datetime,
    inactivity_days: int = 7,
    stage_max_days: dict[str, int],
    days_in_stage: int | None,
) -> list[str]:
    reasons: list[str] = []

    last = dig(opportunity, "metadata.lastInteraction")
    idle = days_between(last, now) if last else None
    if idle is None:
        reasons.append("No recorded activity")
    elif idle > inactivity_days:
        reasons.append(f"No activity for {idle} days")

    stage = str(opportunity.get("stage") or "")
    max_days = stage_max_days.get(stage)
    if max_days is not None and days_in_stage is not None and days_in_stage > max_days:
        reasons.append(f"In {stage} stage for {days_in_stage} days")

    close = parse_iso(opportunity.get("expectedCloseDate"))
    if close is not None and close < now:
        reasons.append("Past expected close date")

    if (
        as_float(opportunity.get("value")) > HIGH_VALUE_THRESHOLD
        and as_float(opportunity.get("probability")) < LOW_PROBABILITY_THRESHOLD
    ):
        reasons.append("High value but low probability")

    return reasons


def period_start(period: str, now: datetime) -> datetime:
    days = {"week": 7, "month": 30, "quarter": 90, "year": 365}.get(str(period or "month"), 30)
    return now - timedelta(days=days)


def summarize_metrics(opportunities: list[dict[str, Any]], *, since: datetime) -> dict[str, Any]:
    in_period = [
        o for o in opportunities
        if (parse_iso(o.get("createdAt")) or since) >= since
    ]
    completed = [o for o in in_period if o.get("status") == "completed"]
    cancelled = [o for o in in_period if o.get("status") == "cancelled"]
    active = [o for o in in_period if o.get("status") == "active"]

    close_days = []
    for o in completed:
        closed = parse_iso(o.get("closedAt"))
        if closed is not None:
            d = days_between(o.get("createdAt"), closed)
            if d is not None:
                close_days.append(d)

    expected = 0.0
    for o in active:
        expected += calculate_commission(o) * as_float(o.get("probability")) / 100
    for o in completed:
        expected += calculate_commission(o)

    total = len(in_period)
    return {
        "total": total,
        "active": len(active),
        "completed": len(completed),
        "cancelled": len(cancelled),
        "conversionRate": round_half_up(len(completed) / total * 100) if total else 0,
        "averageDaysToClose": round_half_up(sum(close_days) / len(close_days)) if close_days else 0,
        "totalValue": round(sum(as_float(o.get("value")) for o in in_period), 2),
        "expectedCommission": round(expected, 2),
    }
