"""Mapping from a client qualification to the opportunity it backs."""

from __future__ import annotations

from typing import Any

from ..common import as_float, dig


TYPE_LABELS: dict[str, str] = {
    "buyer": "Purchase",
    "seller": "Sale",
    "tenant": "Rental search",
    "landlord": "Rental listing",
    "investor": "Investment",
    "developer": "Development",
    "propertyManager": "Property management",
}

BUYER_URGENCY_POINTS: dict[str, int] = {
    "immediate": 30,
    "1month": 25,
    "3months": 20,
    "6months": 10,
    "year": 5,
    "flexible": 5,
}


def buyer_score(preferences: dict[str, Any]) -> str:
    """A/B/C readiness of a buyer from financing, timeline and clarity of requirements."""
    prefs = preferences or {}
    points = 0

    financing = prefs.get("financing") if isinstance(prefs.get("financing"), dict) else {}
    if financing.get("financingApproved"):
        points += 20
    elif financing.get("hasFinancing"):
        points += 10

    max_budget = as_float(dig(prefs, "budget.max"))
    down = as_float(financing.get("downPayment"))
    if max_budget > 0 and down >= max_budget * 0.2:
        points += 20
    elif max_budget > 0 and down >= max_budget * 0.1:
        points += 10

    points += BUYER_URGENCY_POINTS.get(str(prefs.get("urgency") or ""), 0)

    if prefs.get("propertyTypes"):
        points += 10
    if prefs.get("locations"):
        points += 10
    if prefs.get("motivation"):
        points += 10

    if points >= 70:
        return "A"
    if points >= 40:
        return "B"
    return "C"


def qualification_value(qtype: str, prefs: dict[str, Any]) -> float:
    if qtype in ("buyer", "investor", "developer"):
        return as_float(dig(prefs, "budget.max"))
    if qtype == "seller":
        return as_float(prefs.get("askingPrice"))
    if qtype == "tenant":
        return as_float(prefs.get("maxRent")) * 12
    if qtype == "landlord":
        return as_float(prefs.get("rent")) * 12
    if qtype == "propertyManager":
        return as_float(prefs.get("portfolioValue"))
    return 0.0


def qualification_problems(qtype: str, prefs: dict[str, Any]) -> dict[str, str]:
    errs: dict[str, str] = {}
    if qtype in ("buyer", "investor", "developer"):
        lo = dig(prefs, "budget.min")
        hi = dig(prefs, "budget.max")
        if lo is not None and hi is not None and as_float(lo) > as_float(hi):
            errs["preferences.budget.min"] = "Minimum budget must not exceed maximum"
    for key in ("askingPrice", "maxRent", "rent", "portfolioValue"):
        if key in prefs and as_float(prefs.get(key)) < 0:
            errs[f"preferences.{key}"] = "Must not be negative"
    return errs


def opportunity_from_qualification(client: dict[str, Any], qualification: dict[str, Any]) -> dict[str, Any]:
    """
    Build the (unsaved) opportunity fields for a qualification. Stage history,
    probability and priority are filled in by the pipeline.
    """
    qtype = str(qualification.get("type") or "")
    prefs = qualification.get("preferences") if isinstance(qualification.get("preferences"), dict) else {}
    client_name = str(client.get("name") or "").strip()

    urgency = prefs.get("timeline") if qtype == "seller" else prefs.get("urgency")
    out: dict[str, Any] = {
        "clientId": client.get("id"),
        "clientName": client_name,
        "qualificationId": qualification.get("id"),
        "type": qtype,
        "title": f"{TYPE_LABELS.get(qtype, qtype.title())} - {client_name}",
        "value": qualification_value(qtype, prefs),
        "requirements": dict(prefs),
        "urgency": str(urgency) if urgency else None,
        "createdFrom": "qualification",
        "isActive": True,
    }
    if prefs.get("expectedCloseDate"):
        out["expectedCloseDate"] = prefs.get("expectedCloseDate")
    if qtype == "buyer":
        out["buyerScore"] = buyer_score(prefs)
    return out
