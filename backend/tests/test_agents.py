from __future__ import annotations

from imomate.domain.agents.scoring import (
    calculate_reliability_score,
    calculate_success_rate,
    format_commission,
    get_agent_badges,
    get_agent_rating,
    is_high_performer,
    validate_agent,
)
from imomate.modules.agents.agent_service import AgentService


def _agent(**rel):
    base = {"responseTime": "immediate", "successfulDeals": 8, "failedDeals": 2, "quality": "good"}
    base.update(rel)
    return {
        "name": "Rita Sousa",
        "agency": "Casa Lisboa",
        "contactInfo": {"phone": "912345678", "email": "rita@casalisboa.pt"},
        "relationship": base,
    }


def test_reliability_scenario():
    agent = _agent()
    assert calculate_success_rate(agent) == 80
    assert calculate_reliability_score(agent) == 82
    assert get_agent_rating(agent) == "A"


def test_rating_buckets_and_empty_history():
    assert calculate_success_rate(_agent(successfulDeals=0, failedDeals=0)) == 0
    # normal 10 + 0 + neutral 10
    assert get_agent_rating(_agent(responseTime="normal", successfulDeals=0, failedDeals=0, quality="neutral")) == "C"
    # fast 20 + round(50*0.4)=20 + neutral 10
    assert get_agent_rating(_agent(responseTime="fast", successfulDeals=1, failedDeals=1, quality="neutral")) == "B"


def test_badges():
    agent = _agent(quality="excellent", totalDealsTogether=12)
    agent["professional"] = {"yearsExperience": 15}
    keys = [b["key"] for b in get_agent_badges(agent)]
    assert keys == ["top_performer", "frequent_partner", "immediate_responder", "veteran"]

    slow = _agent(quality="excellent", responseTime="slow", totalDealsTogether=9)
    assert get_agent_badges(slow) == []


def test_high_performer_needs_deal_volume():
    assert is_high_performer(_agent(totalDealsTogether=5)) is True
    assert is_high_performer(_agent(totalDealsTogether=4)) is False


def test_validate_agent():
    assert validate_agent(_agent()) == {}
    errs = validate_agent({"name": "R", "contactInfo": {}, "commission": {"type": "percentage", "standardRate": 12}})
    assert set(errs) == {"name", "contactInfo", "commission.standardRate"}
    assert validate_agent({"name": "Rita", "contactInfo": {"email": "x"}})["contactInfo.email"] == "Invalid email address"


def test_format_commission():
    assert format_commission({"type": "percentage", "standardRate": 2.5}) == "2.5%"
    assert format_commission({"type": "fixed", "standardRate": 5000}) == "€5 000"
    assert format_commission(None) == "Negotiable"


def test_service_stores_derived_metrics(table, clock):
    svc = AgentService("t1", table=table, clock=clock)
    res = svc.create({**_agent(), "rating": "C", "reliabilityScore": 1})
    assert res["ok"] is True
    agent = res["data"]
    assert agent["reliabilityScore"] == 82
    assert agent["rating"] == "A"
    assert agent["successRate"] == 80
    assert [b["key"] for b in agent["badges"]] == ["immediate_responder"]

    bad = svc.create({"name": "X"})
    assert bad["code"] == "validation"


def test_deal_outcomes_and_interactions_recompute(table, clock):
    svc = AgentService("t1", table=table, clock=clock)
    agent = svc.create(_agent(successfulDeals=0, failedDeals=0, responseTime="normal", quality="neutral"))["data"]
    assert agent["rating"] == "C"

    for _ in range(3):
        agent = svc.record_deal_outcome(agent["id"], successful=True)["data"]
    assert agent["relationship"]["successfulDeals"] == 3
    assert agent["relationship"]["totalDealsTogether"] == 3
    assert agent["successRate"] == 100
    assert agent["reliabilityScore"] == 60
    assert agent["rating"] == "B"

    out = svc.add_interaction(agent["id"], {"type": "call", "description": "Discussed listing"})["data"]
    assert out["interactions"][0]["type"] == "call"
    assert out["relationship"]["lastContactDate"] == "2024-03-01T09:00:00Z"
    assert out["relationship"]["firstContactDate"] == "2024-03-01T09:00:00Z"

    assert svc.update(agent["id"], {"relationship.quality": "excellent"})["data"]["rating"] == "A"
    assert svc.update(agent["id"], {"contactInfo": {}})["code"] == "validation"


def test_list_filters_and_sorts(table, clock):
    svc = AgentService("t1", table=table, clock=clock)
    svc.create({**_agent(quality="difficult", responseTime="slow"), "name": "Zeca Lopes"})
    svc.create({**_agent(), "name": "Ana Reis", "type": "partner"})
    gone = svc.create({**_agent(), "name": "Bruno Dias"})["data"]
    svc.delete(gone["id"])

    names = [a["name"] for a in svc.list()["data"]]
    assert names == ["Ana Reis", "Zeca Lopes"]
    assert [a["name"] for a in svc.list({"type": "partner"})["data"]] == ["Ana Reis"]
    assert [a["name"] for a in svc.list(sort_by="reliability", order="desc")["data"]] == ["Ana Reis", "Zeca Lopes"]
    assert [a["name"] for a in svc.list({"minRating": "A"})["data"]] == ["Ana Reis"]
    assert [a["name"] for a in svc.list({"search": "zeca"})["data"]] == ["Zeca Lopes"]
