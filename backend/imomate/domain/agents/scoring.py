"""Derived metrics for external agents (partners, competitors, self)."""

from __future__ import annotations

from typing import Any, Iterable

from ..common import as_float, as_int, round_half_up
from ..validation import check_email, check_phone


RESPONSE_TIME_POINTS: dict[str, int] = {
    "immediate": 30,
    "fast": 20,
    "normal": 10,
    "slow": 5,
}
QUALITY_POINTS: dict[str, int] = {
    "excellent": 30,
    "good": 20,
    "neutral": 10,
    "difficult": 0,
}
SUCCESS_RATE_WEIGHT = 0.4
RESPONSE_ORDER = ("immediate", "fast", "normal", "slow")
MAX_PERCENTAGE_COMMISSION = 10


def _rel(agent: dict[str, Any]) -> dict[str, Any]:
    r = agent.get("relationship")
    return r if isinstance(r, dict) else {}


def calculate_success_rate(agent: dict[str, Any]) -> int:
    rel = _rel(agent)
    ok = as_int(rel.get("successfulDeals"))
    total = ok + as_int(rel.get("failedDeals"))
    if total == 0:
        return 0
    return round_half_up(ok / total * 100)


def calculate_reliability_score(agent: dict[str, Any]) -> int:
    rel = _rel(agent)
    score = RESPONSE_TIME_POINTS.get(str(rel.get("responseTime") or ""), 0)
    score += round_half_up(calculate_success_rate(agent) * SUCCESS_RATE_WEIGHT)
    score += QUALITY_POINTS.get(str(rel.get("quality") or ""), 0)
    return score


def rating_for(score: int) -> str:
    if score >= 70:
        return "A"
    if score >= 40:
        return "B"
    return "C"


def get_agent_rating(agent: dict[str, Any]) -> str:
    return rating_for(calculate_reliability_score(agent))


def is_top_performer(agent: dict[str, Any]) -> bool:
    rel = _rel(agent)
    return (
        rel.get("quality") == "excellent"
        and calculate_success_rate(agent) >= 75
        and rel.get("responseTime") != "slow"
    )


def is_high_performer(agent: dict[str, Any]) -> bool:
    return get_agent_rating(agent) == "A" and as_int(_rel(agent).get("totalDealsTogether")) >= 5


def get_agent_badges(agent: dict[str, Any]) -> list[dict[str, str]]:
    rel = _rel(agent)
    prof = agent.get("professional") if isinstance(agent.get("professional"), dict) else {}
    badges: list[dict[str, str]] = []
    if is_top_performer(agent):
        badges.append({"key": "top_performer", "label": "Top Performer"})
    if as_int(rel.get("totalDealsTogether")) >= 10:
        badges.append({"key": "frequent_partner", "label": "Frequent Partner"})
    if rel.get("responseTime") == "immediate":
        badges.append({"key": "immediate_responder", "label": "Immediate Responder"})
    if as_int(prof.get("yearsExperience")) >= 10:
        badges.append({"key": "veteran", "label": "Veteran"})
    return badges


def derive_agent_metrics(agent: dict[str, Any]) -> dict[str, Any]:
    score = calculate_reliability_score(agent)
    return {
        "successRate": calculate_success_rate(agent),
        "reliabilityScore": score,
        "rating": rating_for(score),
        "badges": get_agent_badges(agent),
    }


def format_commission(commission: dict[str, Any] | None) -> str:
    c = commission or {}
    if c.get("type") == "percentage":
        return f"{as_float(c.get('standardRate')):g}%"
    if c.get("type") == "fixed":
        return f"€{as_float(c.get('standardRate')):,.0f}".replace(",", " ")
    return "Negotiable"


def validate_agent(agent: dict[str, Any]) -> dict[str, str]:
    errs: dict[str, str] = {}
    if len(str(agent.get("name") or "").strip()) < 2:
        errs["name"] = "Agent name is required"

    contact = agent.get("contactInfo") if isinstance(agent.get("contactInfo"), dict) else {}
    phone = contact.get("phone")
    email = contact.get("email")
    if not phone and not email:
        errs["contactInfo"] = "At least one contact (phone or email) is required"
    phone_err = check_phone(phone)
    if phone_err:
        errs["contactInfo.phone"] = phone_err
    email_err = check_email(email)
    if email_err:
        errs["contactInfo.email"] = email_err

    commission = agent.get("commission") if isinstance(agent.get("commission"), dict) else {}
    if commission.get("type", "percentage") == "percentage" and "standardRate" in commission:
        rate = as_float(commission.get("standardRate"))
        if rate < 0 or rate > MAX_PERCENTAGE_COMMISSION:
            errs["commission.standardRate"] = "Commission must be between 0% and 10%"
    return errs


def filter_agents(agents: Iterable[dict[str, Any]], filters: dict[str, Any] | None) -> list[dict[str, Any]]:
    f = filters or {}
    out: list[dict[str, Any]] = []
    term = str(f.get("search") or "").strip().lower()
    for a in agents:
        rel = _rel(a)
        prof = a.get("professional") if isinstance(a.get("professional"), dict) else {}
        if f.get("status") and a.get("status") != f["status"]:
            continue
        if f.get("type") and a.get("type") != f["type"]:
            continue
        if f.get("quality") and rel.get("quality") != f["quality"]:
            continue
        if f.get("area") and f["area"] not in (prof.get("workingAreas") or []):
            continue
        if f.get("minRating") and str(a.get("rating") or get_agent_rating(a)) > str(f["minRating"]):
            # Letter ratings compare inversely: "A" < "B" < "C".
            continue
        if term:
            contact = a.get("contactInfo") if isinstance(a.get("contactInfo"), dict) else {}
            haystack = [a.get("name"), a.get("agency"), contact.get("email"), contact.get("phone")]
            if not any(term in str(h or "").lower() for h in haystack):
                continue
        out.append(a)
    return out


def _sort_key(sort_by: str):
    if sort_by in ("rating", "reliability"):
        return lambda a: calculate_reliability_score(a)
    if sort_by == "successRate":
        return lambda a: calculate_success_rate(a)
    if sort_by == "deals":
        return lambda a: as_int(_rel(a).get("totalDealsTogether"))
    if sort_by == "responseTime":
        return lambda a: RESPONSE_ORDER.index(_rel(a).get("responseTime")) if _rel(a).get("responseTime") in RESPONSE_ORDER else len(RESPONSE_ORDER)
    if sort_by == "recent":
        return lambda a: str(_rel(a).get("lastContactDate") or "")
    return lambda a: str(a.get("name") or "").lower()


def sort_agents(agents: Iterable[dict[str, Any]], sort_by: str = "name", order: str = "asc") -> list[dict[str, Any]]:
    return sorted(agents, key=_sort_key(sort_by), reverse=(order == "desc"))
