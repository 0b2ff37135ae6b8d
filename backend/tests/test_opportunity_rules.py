from __future__ import annotations

from datetime import datetime, timezone

from imomate.domain.opportunities.derivation import buyer_score, opportunity_from_qualification, qualification_value
from imomate.domain.opportunities.rules import (
    attention_reasons,
    calculate_commission,
    calculate_priority,
    calculate_probability,
    summarize_metrics,
)
from imomate.modules.workflow.stage_machine import STAGE_MAX_DAYS, advance_history, open_entry

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_probability_by_stage_and_signals():
    assert calculate_probability({"stage": "qualification"}) == 10
    assert calculate_probability({"stage": "negotiation", "proposals": [{"id": "p"}]}) == 65
    assert calculate_probability(
        {
            "stage": "closing",
            "type": "buyer",
            "urgency": "immediate",
            "proposals": [{"id": "p"}],
            "requirements": {"financing": {"financingApproved": True}},
        }
    ) == 99
    assert calculate_probability({"stage": "completed"}) == 100
    assert calculate_probability({"stage": "closing", "status": "cancelled"}) == 0


def test_commission_rates():
    assert calculate_commission({"type": "seller", "value": 300000}) == 15000.0
    assert calculate_commission({"type": "buyer", "value": 300000}) == 7500.0
    assert calculate_commission({"type": "buyer", "value": 300000, "commissionRate": 3}) == 9000.0
    assert calculate_commission({"value": 1, "commission": {"type": "fixed", "amount": 4500}}) == 4500.0


def test_priority_points():
    assert calculate_priority({"value": 600000, "probability": 75, "urgency": "immediate"}) == "critical"
    assert calculate_priority({"value": 250000, "probability": 45, "urgency": "3months"}) == "high"
    assert calculate_priority({"value": 60000, "probability": 40}) == "medium"
    assert calculate_priority({"value": 10000, "probability": 10}) == "low"


def test_attention_reasons():
    opp = {
        "stage": "negotiation",
        "value": 300000,
        "probability": 20,
        "expectedCloseDate": "2024-02-01",
        "metadata": {"lastInteraction": "2024-02-10T12:00:00Z"},
    }
    reasons = attention_reasons(opp, now=NOW, inactivity_days=7, stage_max_days=STAGE_MAX_DAYS, days_in_stage=9)
    assert reasons == [
        "No activity for 20 days",
        "In negotiation stage for 9 days",
        "Past expected close date",
        "High value but low probability",
    ]
    fresh = {"stage": "viewing", "value": 1000, "probability": 35, "metadata": {"lastInteraction": "2024-02-29T12:00:00Z"}}
    assert attention_reasons(fresh, now=NOW, stage_max_days=STAGE_MAX_DAYS, days_in_stage=3) == []


def test_stage_history_closes_previous_entry():
    h = [open_entry("qualification", datetime(2024, 2, 20, tzinfo=timezone.utc))]
    h2 = advance_history(h, "prospecting", NOW)
    assert h[0]["exitedAt"] is None
    assert h2[0]["duration"] == 10
    assert h2[0]["exitedAt"] == "2024-03-01T12:00:00Z"
    assert h2[1] == {"stage": "prospecting", "enteredAt": "2024-03-01T12:00:00Z", "exitedAt": None, "duration": 0}


def test_buyer_score_and_values():
    strong = {
        "budget": {"min": 200000, "max": 300000},
        "financing": {"financingApproved": True, "downPayment": 60000},
        "urgency": "immediate",
        "propertyTypes": ["apartment"],
        "locations": ["Lisboa"],
    }
    assert buyer_score(strong) == "A"
    assert buyer_score({"urgency": "3months", "financing": {"hasFinancing": True}, "locations": ["Porto"]}) == "B"
    assert buyer_score({}) == "C"

    assert qualification_value("tenant", {"maxRent": 1200}) == 14400
    assert qualification_value("landlord", {"rent": 900}) == 10800
    assert qualification_value("seller", {"askingPrice": 350000}) == 350000


def test_opportunity_from_seller_qualification():
    opp = opportunity_from_qualification(
        {"id": "cli_1", "name": "Maria Silva"},
        {"id": "q1", "type": "seller", "preferences": {"askingPrice": 350000, "timeline": "3months"}},
    )
    assert opp["title"] == "Sale - Maria Silva"
    assert opp["value"] == 350000
    assert opp["urgency"] == "3months"
    assert opp["createdFrom"] == "qualification"
    assert "buyerScore" not in opp


def test_metrics_summary():
    since = datetime(2024, 2, 1, tzinfo=timezone.utc)
    opps = [
        {"status": "completed", "type": "seller", "value": 200000, "createdAt": "2024-02-01T00:00:00Z", "closedAt": "2024-02-21T00:00:00Z"},
        {"status": "active", "type": "buyer", "value": 100000, "probability": 50, "createdAt": "2024-02-10T00:00:00Z"},
        {"status": "cancelled", "type": "buyer", "value": 50000, "createdAt": "2024-02-11T00:00:00Z"},
        {"status": "active", "type": "buyer", "value": 999999, "createdAt": "2023-01-01T00:00:00Z"},
    ]
    m = summarize_metrics(opps, since=since)
    assert m["total"] == 3
    assert m["conversionRate"] == 33
    assert m["averageDaysToClose"] == 20
    assert m["totalValue"] == 350000
    # 10000 (completed seller) + 2500 * 0.5
    assert m["expectedCommission"] == 11250.0
