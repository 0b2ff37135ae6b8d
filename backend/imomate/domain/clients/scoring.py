"""
Client scoring.

The point tables and weights here are relied on by existing client data and
reports; change them only together with a data migration.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any, Iterable

from ..common import as_float, iso, parse_iso, round_half_up, utc_now


ENGAGEMENT_WINDOW_DAYS = 30
POINTS_PER_INTERACTION = 10

# (minimum annual income, points), checked top-down.
INCOME_BRACKETS: tuple[tuple[float, int], ...] = (
    (100_000, 40),
    (60_000, 30),
    (40_000, 20),
    (20_000, 10),
)
CREDIT_APPROVED_POINTS = 30
HAS_CREDIT_POINTS = 10
SPOUSE_INCOME_STEP = 5_000
SPOUSE_MAX_POINTS = 20

URGENCY_POINTS: dict[str, int] = {
    "immediate": 50,
    "3months": 30,
    "6months": 20,
    "year": 10,
}

WEIGHTS = {"engagement": 0.3, "financial": 0.4, "urgency": 0.3}


def engagement_score(interactions: Iterable[dict[str, Any]], *, now: datetime) -> int:
    cutoff = now - timedelta(days=ENGAGEMENT_WINDOW_DAYS)
    recent = 0
    for it in interactions or []:
        if not isinstance(it, dict):
            continue
        when = parse_iso(it.get("date") or it.get("timestamp"))
        if when is not None and cutoff <= when <= now:
            recent += 1
    return min(100, recent * POINTS_PER_INTERACTION)


def income_points(annual_income: Any) -> int:
    income = as_float(annual_income)
    for threshold, points in INCOME_BRACKETS:
        if income >= threshold:
            return points
    return 0


def financial_score(client: dict[str, Any]) -> int:
    fin = client.get("financial") if isinstance(client.get("financial"), dict) else {}
    # Flat fields are accepted too (quick imports store income at the top level).
    income = fin.get("annualIncome", client.get("annualIncome"))
    credit_approved = bool(fin.get("creditApproved", client.get("creditApproved")))
    has_credit = bool(fin.get("hasCredit", client.get("hasCredit")))

    points = income_points(income)
    if credit_approved:
        points += CREDIT_APPROVED_POINTS
    if has_credit:
        points += HAS_CREDIT_POINTS

    spouse = client.get("spouse") if isinstance(client.get("spouse"), dict) else {}
    spouse_income = as_float(spouse.get("annualIncome"))
    if spouse_income > 0:
        points += min(SPOUSE_MAX_POINTS, math.floor(spouse_income / SPOUSE_INCOME_STEP))

    return min(100, points)


def urgency_score(qualifications: Iterable[dict[str, Any]]) -> int:
    best = 0
    for q in qualifications or []:
        if not isinstance(q, dict):
            continue
        if q.get("type") != "buyer" or not q.get("isActive", True):
            continue
        prefs = q.get("preferences") if isinstance(q.get("preferences"), dict) else {}
        best = max(best, URGENCY_POINTS.get(str(prefs.get("urgency") or ""), 0))
    return best


def score_category(overall: int) -> str:
    if overall >= 80:
        return "A"
    if overall >= 50:
        return "B"
    return "C"


def calculate_client_score(
    client: dict[str, Any],
    interactions: Iterable[dict[str, Any]] | None = None,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Score a client from its own fields plus interactions (defaults to the
    client's stored `interactions`). Deterministic for a given `now`.
    """
    at = now or utc_now()
    history = interactions if interactions is not None else (client.get("interactions") or [])

    engagement = engagement_score(history, now=at)
    financial = financial_score(client)
    urgency = urgency_score(client.get("qualifications") or [])
    overall = round_half_up(
        WEIGHTS["engagement"] * engagement
        + WEIGHTS["financial"] * financial
        + WEIGHTS["urgency"] * urgency
    )
    overall = max(0, min(100, overall))
    return {
        "engagement": engagement,
        "financial": financial,
        "urgency": urgency,
        "overall": overall,
        "category": score_category(overall),
        "calculatedAt": iso(at),
    }


def zero_score(*, now: datetime | None = None) -> dict[str, Any]:
    return {
        "engagement": 0,
        "financial": 0,
        "urgency": 0,
        "overall": 0,
        "category": "C",
        "calculatedAt": iso(now or utc_now()),
    }
