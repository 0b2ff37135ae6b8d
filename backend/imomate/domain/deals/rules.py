from __future__ import annotations

from datetime import datetime
from typing import Any

from ..common import as_float, as_int, days_between, dig, parse_iso


DEAL_STAGES: tuple[str, ...] = (
    "lead",
    "visita_agendada",
    "visita_realizada",
    "proposta",
    "negociacao",
    "fechado",
    "perdido",
)

STAGE_PROBABILITY: dict[str, int] = {
    "lead": 10,
    "visita_agendada": 25,
    "visita_realizada": 40,
    "proposta": 60,
    "negociacao": 75,
    "fechado": 100,
    "perdido": 0,
}

STAGE_STATUS: dict[str, str] = {"fechado": "won", "perdido": "lost"}

INACTIVITY_DAYS = 7


def status_for_stage(stage: str) -> str:
    return STAGE_STATUS.get(stage, "active")


def calculate_deal_probability(deal: dict[str, Any]) -> int:
    stage = str(deal.get("stage") or "lead")
    if stage in STAGE_STATUS:
        return STAGE_PROBABILITY[stage]

    p = STAGE_PROBABILITY.get(stage, 0)
    interest = dig(deal, "scoring.buyerInterestLevel")
    if interest is not None:
        if as_int(interest) >= 8:
            p += 10
        elif as_int(interest) <= 3:
            p -= 10
    if as_int(dig(deal, "competition.otherOffers")) > 0:
        p -= 10
    return max(0, min(100, p))


def deal_attention_reasons(deal: dict[str, Any], *, now: datetime) -> list[str]:
    if deal.get("status", "active") != "active":
        return []

    reasons: list[str] = []
    follow_up = parse_iso(deal.get("nextFollowUpDate"))
    if follow_up is not None and follow_up < now:
        reasons.append("Follow-up overdue")

    idle = days_between(deal.get("lastActivityAt") or deal.get("updatedAt"), now)
    if idle is not None and idle > INACTIVITY_DAYS:
        reasons.append(f"No activity for {idle} days")

    if as_int(dig(deal, "competition.otherOffers")) > 0 and deal.get("stage") == "visita_realizada":
        reasons.append("Competing offers")
    return reasons


def calculate_commission(sale_price: Any, percentage: Any) -> float:
    return as_float(sale_price) * as_float(percentage) / 100


def calculate_total_deal_commission(deal: dict[str, Any]) -> dict[str, float]:
    """
    Commission on the agreed price. Buyer side uses the representation
    percentage; seller side applies only when both sides are represented.
    """
    price = as_float(dig(deal, "pricing.finalPrice"))
    if price <= 0:
        return {"buyerSide": 0.0, "sellerSide": 0.0, "total": 0.0}
    buyer = calculate_commission(price, dig(deal, "representation.commissionPercentage"))
    seller = calculate_commission(price, dig(deal, "representation.sellerCommissionPercentage"))
    return {"buyerSide": round(buyer, 2), "sellerSide": round(seller, 2), "total": round(buyer + seller, 2)}


def validate_deal(deal: dict[str, Any]) -> dict[str, str]:
    errs: dict[str, str] = {}
    if not str(dig(deal, "property.address") or "").strip():
        errs["property.address"] = "Property address is required"
    if as_float(dig(deal, "pricing.askingPrice")) <= 0:
        errs["pricing.askingPrice"] = "Asking price is required"
    if not deal.get("clientId"):
        errs["clientId"] = "Client is required"
    if not deal.get("opportunityId"):
        errs["opportunityId"] = "Opportunity is required"
    stage = deal.get("stage")
    if stage is not None and stage not in DEAL_STAGES:
        errs["stage"] = f"Unknown deal stage: {stage}"
    return errs
