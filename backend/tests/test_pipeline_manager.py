from __future__ import annotations

from imomate.modules.clients.client_service import ClientRegistry
from imomate.modules.opportunities.opportunity_service import PipelineManager


def _setup(table, clock):
    client = ClientRegistry("t1", table=table, clock=clock).quick_add({"name": "Maria Silva"})["data"]
    return PipelineManager("t1", table=table, clock=clock, actor_id="u1"), client


def _create(pm, client, **fields):
    res = pm.create_opportunity({"clientId": client["id"], "type": "buyer", "value": 250000, **fields})
    assert res["ok"] is True, res
    return res["data"]


def test_manual_opportunity_starts_in_qualification(table, clock):
    pm, client = _setup(table, clock)
    opp = _create(pm, client)
    assert opp["createdFrom"] == "manual"
    assert opp["clientName"] == "Maria Silva"
    assert opp["status"] == "active"
    assert opp["probability"] == 10
    assert opp["priority"] == "medium"
    assert opp["metadata"]["totalInteractions"] == 1
    assert opp["path"] == f"clients/{client['id']}/opportunities/{opp['id']}"


def test_create_opportunity_requires_existing_client(table, clock):
    pm, _ = _setup(table, clock)
    assert pm.create_opportunity({"clientId": "cli_missing", "type": "buyer"})["code"] == "not_found"


def test_stage_history_tracks_every_move(table, clock):
    pm, client = _setup(table, clock)
    opp = _create(pm, client)
    stages = ["prospecting", "viewing", "negotiation", "viewing"]
    for stage in stages:
        clock.advance(days=2, hours=3)
        res = pm.move_to_stage(opp["id"], stage)
        assert res["ok"] is True

    history = pm.get(opp["id"])["data"]["stageHistory"]
    assert len(history) == len(stages) + 1
    assert [h["stage"] for h in history] == ["qualification", *stages]
    for entry in history[:-1]:
        assert isinstance(entry["duration"], int)
        assert entry["duration"] == 2
        assert entry["exitedAt"] is not None
    assert history[-1]["duration"] == 0
    assert history[-1]["exitedAt"] is None


def test_invalid_stage_is_rejected(table, clock):
    pm, client = _setup(table, clock)
    opp = _create(pm, client)
    res = pm.move_to_stage(opp["id"], "signed")
    assert res["code"] == "validation"
    assert res["field"] == "stage"


def test_complete_and_reopen(table, clock):
    pm, client = _setup(table, clock)
    opp = _create(pm, client)
    clock.advance(days=30)
    done = pm.complete(opp["id"])["data"]
    assert done["status"] == "completed"
    assert done["probability"] == 100
    assert done["closedAt"] == "2024-03-31T09:00:00Z"
    assert done["activities"][-1]["type"] == "completed"

    reopened = pm.move_to_stage(opp["id"], "closing")["data"]
    assert reopened["status"] == "active"
    assert reopened["closedAt"] is None
    assert reopened["probability"] == 90


def test_cancel_pause_reactivate(table, clock):
    pm, client = _setup(table, clock)
    opp = _create(pm, client, urgency="immediate")

    paused = pm.pause(opp["id"], "Client travelling")["data"]
    assert paused["status"] == "paused"
    assert paused["pauseReason"] == "Client travelling"

    active = pm.reactivate(opp["id"])["data"]
    assert active["status"] == "active"
    assert active["pausedAt"] is None
    assert active["probability"] == 15

    cancelled = pm.cancel(opp["id"], "Bought elsewhere")["data"]
    assert cancelled["status"] == "cancelled"
    assert cancelled["probability"] == 0
    assert cancelled["cancellationReason"] == "Bought elsewhere"
    assert [a["type"] for a in cancelled["activities"]] == ["created", "paused", "reactivated", "cancelled"]
    assert cancelled["metadata"]["totalInteractions"] == 4


def test_proposal_advances_viewing_to_negotiation(table, clock):
    pm, client = _setup(table, clock)
    opp = _create(pm, client)
    pm.move_to_stage(opp["id"], "viewing")
    clock.advance(days=1)

    res = pm.add_proposal(opp["id"], {"amount": 240000, "notes": "Below asking"})
    assert res["ok"] is True
    out = res["data"]
    assert out["stage"] == "negotiation"
    assert out["proposals"][0]["amount"] == 240000
    assert out["proposals"][0]["status"] == "pending"
    assert [h["stage"] for h in out["stageHistory"]] == ["qualification", "viewing", "negotiation"]
    assert out["probability"] == 65

    assert pm.add_proposal(opp["id"], {"amount": 0})["code"] == "validation"


def test_notes_viewings_and_activities_append(table, clock):
    pm, client = _setup(table, clock)
    opp = _create(pm, client)
    pm.add_note(opp["id"], "Wants a balcony")
    pm.schedule_viewing(opp["id"], {"scheduledAt": "2024-03-05T15:00:00Z", "propertyRef": "PT-123"})
    out = pm.add_activity(opp["id"], "call", "Follow-up call", {"minutes": 5})["data"]

    assert [n["text"] for n in out["notes"]] == ["Wants a balcony"]
    assert out["viewings"][0]["status"] == "scheduled"
    assert out["viewings"][0]["propertyRef"] == "PT-123"
    assert [a["type"] for a in out["activities"]] == ["created", "note", "viewing_scheduled", "call"]
    assert out["activities"][-1]["performedBy"] == "u1"
    assert out["metadata"]["totalInteractions"] == 4

    assert pm.add_note(opp["id"], "  ")["code"] == "validation"
    assert pm.schedule_viewing(opp["id"], {})["code"] == "validation"


def test_update_routes_stage_and_ignores_owned_lists(table, clock):
    pm, client = _setup(table, clock)
    opp = _create(pm, client)
    out = pm.update_opportunity(
        opp["id"], {"value": 600000, "stage": "closing", "activities": [], "probability": 1, "urgency": "immediate"}
    )["data"]
    assert out["value"] == 600000
    assert out["stage"] == "closing"
    assert out["probability"] == 95
    assert out["priority"] == "critical"
    assert len(out["activities"]) == 2
    assert len(out["stageHistory"]) == 2


def test_link_deal_is_idempotent(table, clock):
    pm, client = _setup(table, clock)
    opp = _create(pm, client)
    pm.link_deal(opp["id"], "deal_1")
    out = pm.link_deal(opp["id"], "deal_1")["data"]
    assert out["deals"] == ["deal_1"]


def test_needing_attention_sorted_by_priority(table, clock):
    pm, client = _setup(table, clock)
    small = _create(pm, client, value=1000)
    clock.advance(minutes=1)
    big = _create(pm, client, value=600000, urgency="immediate")
    clock.advance(minutes=1)
    fresh = _create(pm, client, value=1000)
    clock.advance(days=10, minutes=5)
    pm.add_note(fresh["id"], "Still interested")
    done = _create(pm, client)
    pm.complete(done["id"])

    res = pm.get_opportunities_needing_attention()
    assert res["ok"] is True
    flagged = res["data"]
    assert [f["opportunity"]["id"] for f in flagged[:2]] == [big["id"], small["id"]]
    assert flagged[0]["priority"] == "high"
    assert "No activity for 10 days" in flagged[0]["reasons"]
    assert "In qualification stage for 10 days" in flagged[0]["reasons"]
    ids = [f["opportunity"]["id"] for f in flagged]
    assert done["id"] not in ids
    assert next(f for f in flagged if f["opportunity"]["id"] == fresh["id"])["reasons"] == [
        "In qualification stage for 10 days"
    ]


def test_pipeline_view_and_metrics(table, clock):
    pm, client = _setup(table, clock)
    a = _create(pm, client, value=100000)
    b = _create(pm, client, value=200000)
    pm.move_to_stage(b["id"], "negotiation")
    c = _create(pm, client, value=300000)
    pm.cancel(c["id"])

    view = pm.get_pipeline_view()["data"]
    assert view["stages"]["qualification"]["count"] == 1
    assert view["stages"]["negotiation"]["weightedValue"] == 120000.0
    assert view["totals"] == {"count": 2, "value": 300000.0, "weightedValue": 130000.0}
    assert "completed" not in view["stages"]

    metrics = pm.get_metrics("month")["data"]
    assert metrics["total"] == 3
    assert metrics["cancelled"] == 1
    assert metrics["active"] == 2
    assert pm.get_metrics("decade")["code"] == "validation"

    assert {o["id"] for o in pm.get_by_client(client["id"])["data"]} == {a["id"], b["id"], c["id"]}
