"""
Opportunity pipeline.

Opportunity is the pipeline aggregate for a client's intent (buy, sell, rent,
...). Stage moves freely between the known stages; status (active, paused,
cancelled, completed) overlays the stage. Stage history, activities, notes,
proposals and viewings are append-only lists owned by the opportunity and are
only ever rewritten together with it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from ...domain.common import Clock, iso, new_id, utc_now
from ...domain.opportunities.rules import (
    PRIORITY_ORDER,
    attention_reasons,
    calculate_priority,
    calculate_probability,
    period_start,
    summarize_metrics,
    weighted_value,
)
from ...errors import NotFound, ValidationError, ok, returns_result
from ...observability.logging import get_logger
from ...repositories.base_repository import apply_patch, require_tenant
from ...repositories.crm_repos import clients_repo, opportunities_repo
from ...settings import settings
from ..workflow.stage_machine import (
    OPPORTUNITY_STAGES,
    STAGE_MAX_DAYS,
    TERMINAL_STAGE,
    advance_history,
    days_in_current_stage,
    is_valid_stage,
    open_entry,
)


log = get_logger("opportunity_pipeline")

# Owned lists and links that callers cannot overwrite through update_opportunity.
OWNED_FIELDS = (
    "stageHistory",
    "activities",
    "notes",
    "proposals",
    "viewings",
    "deals",
    "linkedBuyerDeals",
    "metadata",
    "clientId",
    "qualificationId",
    "createdFrom",
    "status",
    "closedAt",
    "cancelledAt",
    "pausedAt",
    "reactivatedAt",
)

Patch = dict[str, Any]


class PipelineManager:
    def __init__(
        self,
        tenant_id: str,
        *,
        table: Any | None = None,
        clock: Clock | None = None,
        actor_id: str | None = None,
    ):
        self.tenant_id = require_tenant(tenant_id)
        self.actor_id = actor_id
        self._clock = clock or utc_now
        self.repo = opportunities_repo(table=table, clock=self._clock)
        self.clients = clients_repo(table=table, clock=self._clock)

    # --- patch builders (pure over the current document) ---

    def _activity(self, kind: str, description: str, at: datetime, data: dict[str, Any] | None = None) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "id": new_id("act"),
            "type": kind,
            "description": description,
            "timestamp": iso(at),
            "performedBy": self.actor_id,
        }
        if data:
            entry["data"] = data
        return entry

    def activity_patch(self, current: dict[str, Any], activity: dict[str, Any]) -> Patch:
        meta = dict(current.get("metadata") or {})
        meta["lastInteraction"] = activity["timestamp"]
        meta["totalInteractions"] = int(meta.get("totalInteractions") or 0) + 1
        return {
            "activities": [*(current.get("activities") or []), activity],
            "metadata": meta,
        }

    def _finalize(self, current: dict[str, Any], patch: Patch) -> Patch:
        merged = apply_patch(current, patch)
        patch["probability"] = calculate_probability(merged)
        merged["probability"] = patch["probability"]
        patch["priority"] = calculate_priority(merged)
        return patch

    def stage_patch(self, current: dict[str, Any], new_stage: str, at: datetime, *, note: str | None = None) -> Patch:
        stage = str(new_stage or "").strip()
        if not is_valid_stage(stage):
            raise ValidationError(
                message=f"Invalid stage: {stage or '(empty)'}. Valid stages: {', '.join(OPPORTUNITY_STAGES)}",
                field="stage",
            )
        old = current.get("stage")
        patch: Patch = {
            "stage": stage,
            "stageHistory": advance_history(current.get("stageHistory"), stage, at),
        }
        if stage == TERMINAL_STAGE:
            patch.update({"status": "completed", "closedAt": iso(at), "isActive": False})
        elif current.get("status") == "completed":
            patch.update({"status": "active", "closedAt": None, "isActive": True})
        data = {"from": old, "to": stage}
        if note:
            data["note"] = note
        kind = "completed" if stage == TERMINAL_STAGE else "stage_change"
        patch.update(self.activity_patch(current, self._activity(kind, f"Stage changed from {old} to {stage}", at, data)))
        return patch

    def cancel_patch(self, current: dict[str, Any], reason: str | None, at: datetime) -> Patch:
        text = str(reason or "").strip() or None
        patch: Patch = {
            "status": "cancelled",
            "isActive": False,
            "cancelledAt": iso(at),
            "cancellationReason": text,
        }
        patch.update(self.activity_patch(current, self._activity("cancelled", text or "Opportunity cancelled", at)))
        return self._finalize(current, patch)

    def pause_patch(self, current: dict[str, Any], reason: str | None, at: datetime) -> Patch:
        text = str(reason or "").strip() or None
        patch: Patch = {"status": "paused", "pausedAt": iso(at), "pauseReason": text}
        patch.update(self.activity_patch(current, self._activity("paused", text or "Opportunity paused", at)))
        return self._finalize(current, patch)

    def reactivate_patch(self, current: dict[str, Any], at: datetime) -> Patch:
        patch: Patch = {
            "status": "active",
            "isActive": True,
            "reactivatedAt": iso(at),
            "pausedAt": None,
            "pauseReason": None,
        }
        patch.update(self.activity_patch(current, self._activity("reactivated", "Opportunity reactivated", at)))
        return self._finalize(current, patch)

    # --- preparation (used by the qualification deriver) ---

    def prepare_opportunity(self, data: dict[str, Any]) -> dict[str, Any]:
        """Initialize pipeline fields on new opportunity data and validate it. Nothing is written."""
        at = self._clock()
        client_id = str(data.get("clientId") or "").strip()
        if not client_id:
            raise ValidationError(message="clientId is required", field="clientId")
        stage = str(data.get("stage") or "qualification")
        if not is_valid_stage(stage):
            raise ValidationError(message=f"Invalid stage: {stage}", field="stage")

        base = {k: v for k, v in data.items() if k not in OWNED_FIELDS or k in ("clientId", "qualificationId", "createdFrom")}
        base.update(
            {
                "clientId": client_id,
                "stage": stage,
                "status": "completed" if stage == TERMINAL_STAGE else "active",
                "stageHistory": [open_entry(stage, at)],
                "activities": [],
                "metadata": {"lastInteraction": None, "totalInteractions": 0},
            }
        )
        origin = base.get("createdFrom") or "manual"
        base.update(self.activity_patch(base, self._activity("created", f"Opportunity created ({origin})", at)))
        base["probability"] = calculate_probability(base)
        base["priority"] = calculate_priority(base)
        return self.repo.prepare_create(
            self.tenant_id,
            base,
            parent_path=f"clients/{client_id}",
            actor_id=self.actor_id,
        )

    def _mutate(self, opportunity_id: str, build: Callable[[dict[str, Any], datetime], Patch]) -> dict[str, Any]:
        current = self.repo.fetch(self.tenant_id, opportunity_id)
        if current.get("isDeleted"):
            raise NotFound(message="Opportunity not found")
        patch = build(current, self._clock())
        doc = self.repo.prepare_replace(current, patch, actor_id=self.actor_id)
        self.repo.save(doc, must_exist=True)
        return doc

    # --- public operations ---

    @returns_result
    def create_opportunity(self, data: dict[str, Any]) -> dict[str, Any]:
        client = self.clients.fetch(self.tenant_id, str((data or {}).get("clientId") or ""))
        doc = self.prepare_opportunity(
            {**(data or {}), "clientName": client.get("name"), "createdFrom": "manual"}
        )
        self.repo.save(doc, must_exist=False)
        log.info("opportunity_created", opportunity_id=doc["id"], client_id=doc["clientId"], type=doc["type"])
        return ok(doc)

    @returns_result
    def get(self, opportunity_id: str) -> dict[str, Any]:
        return ok(self.repo.fetch(self.tenant_id, opportunity_id))

    @returns_result
    def update_opportunity(self, opportunity_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        def _build(current: dict[str, Any], at: datetime) -> Patch:
            incoming = {k: v for k, v in (patch or {}).items() if k.split(".")[0] not in OWNED_FIELDS}
            new_stage = incoming.pop("stage", None)
            incoming.pop("probability", None)
            incoming.pop("priority", None)
            out: Patch = dict(incoming)
            if new_stage is not None and new_stage != current.get("stage"):
                out.update(self.stage_patch(apply_patch(current, incoming), new_stage, at))
            return self._finalize(current, out)

        doc = self._mutate(opportunity_id, _build)
        return ok(doc)

    @returns_result
    def move_to_stage(self, opportunity_id: str, new_stage: str, *, note: str | None = None) -> dict[str, Any]:
        doc = self._mutate(
            opportunity_id,
            lambda current, at: self._finalize(current, self.stage_patch(current, new_stage, at, note=note)),
        )
        log.info("opportunity_stage_moved", opportunity_id=doc["id"], stage=doc["stage"], status=doc["status"])
        return ok(doc)

    def complete(self, opportunity_id: str, *, note: str | None = None) -> dict[str, Any]:
        return self.move_to_stage(opportunity_id, TERMINAL_STAGE, note=note)

    @returns_result
    def cancel(self, opportunity_id: str, reason: str | None = None) -> dict[str, Any]:
        doc = self._mutate(opportunity_id, lambda current, at: self.cancel_patch(current, reason, at))
        log.info("opportunity_cancelled", opportunity_id=doc["id"])
        return ok(doc)

    @returns_result
    def pause(self, opportunity_id: str, reason: str | None = None) -> dict[str, Any]:
        return ok(self._mutate(opportunity_id, lambda current, at: self.pause_patch(current, reason, at)))

    @returns_result
    def reactivate(self, opportunity_id: str) -> dict[str, Any]:
        return ok(self._mutate(opportunity_id, self.reactivate_patch))

    @returns_result
    def add_activity(
        self,
        opportunity_id: str,
        kind: str,
        description: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        kind = str(kind or "").strip()
        if not kind:
            raise ValidationError(message="Activity type is required", field="type")
        doc = self._mutate(
            opportunity_id,
            lambda current, at: self.activity_patch(current, self._activity(kind, str(description or ""), at, data)),
        )
        return ok(doc)

    @returns_result
    def add_note(self, opportunity_id: str, text: str) -> dict[str, Any]:
        body = str(text or "").strip()
        if not body:
            raise ValidationError(message="Note text is required", field="text")

        def _build(current: dict[str, Any], at: datetime) -> Patch:
            note = {"id": new_id("note"), "text": body, "createdAt": iso(at), "createdBy": self.actor_id}
            patch: Patch = {"notes": [*(current.get("notes") or []), note]}
            patch.update(self.activity_patch(current, self._activity("note", body[:120], at)))
            return patch

        return ok(self._mutate(opportunity_id, _build))

    @returns_result
    def schedule_viewing(self, opportunity_id: str, viewing: dict[str, Any]) -> dict[str, Any]:
        v = viewing or {}
        if not v.get("scheduledAt"):
            raise ValidationError(message="Viewing date is required", field="scheduledAt")

        def _build(current: dict[str, Any], at: datetime) -> Patch:
            entry = {
                **v,
                "id": new_id("view"),
                "status": "scheduled",
                "scheduledAt": v.get("scheduledAt"),
            }
            patch: Patch = {"viewings": [*(current.get("viewings") or []), entry]}
            desc = f"Viewing scheduled for {entry['scheduledAt']}"
            patch.update(self.activity_patch(current, self._activity("viewing_scheduled", desc, at, {"viewingId": entry["id"]})))
            return patch

        return ok(self._mutate(opportunity_id, _build))

    @returns_result
    def add_proposal(self, opportunity_id: str, proposal: dict[str, Any]) -> dict[str, Any]:
        p = proposal or {}
        try:
            amount = float(p.get("amount") or 0)
        except (TypeError, ValueError) as e:
            raise ValidationError(message="Proposal amount must be a number", field="amount") from e
        if amount <= 0:
            raise ValidationError(message="Proposal amount must be positive", field="amount")

        def _build(current: dict[str, Any], at: datetime) -> Patch:
            entry = {**p, "id": new_id("prop"), "amount": amount, "status": "pending", "submittedAt": iso(at)}
            patch: Patch = {"proposals": [*(current.get("proposals") or []), entry]}
            patch.update(
                self.activity_patch(current, self._activity("proposal", f"Proposal of {amount:.2f} submitted", at, {"proposalId": entry["id"]}))
            )
            if current.get("stage") == "viewing":
                patch.update(self.stage_patch(apply_patch(current, patch), "negotiation", at, note="Proposal submitted"))
            return self._finalize(current, patch)

        return ok(self._mutate(opportunity_id, _build))

    def link_deal_patch(self, current: dict[str, Any], deal_id: str, at: datetime) -> Patch:
        deals = list(current.get("deals") or [])
        if deal_id in deals:
            return {}
        patch: Patch = {"deals": [*deals, deal_id]}
        patch.update(self.activity_patch(current, self._activity("deal_linked", f"Deal {deal_id} linked", at, {"dealId": deal_id})))
        return patch

    @returns_result
    def link_deal(self, opportunity_id: str, deal_id: str) -> dict[str, Any]:
        did = str(deal_id or "").strip()
        if not did:
            raise ValidationError(message="deal_id is required", field="dealId")
        return ok(self._mutate(opportunity_id, lambda current, at: self.link_deal_patch(current, did, at)))

    # --- queries ---

    def list_opportunities(
        self,
        *,
        filters: Any = None,
        order_by: tuple[str, str] | None = None,
        page_size: int | None = None,
        cursor: str | None = None,
        include_deleted: bool = False,
    ) -> dict[str, Any]:
        return self.repo.list(
            self.tenant_id,
            filters=filters,
            order_by=order_by,
            page_size=page_size,
            cursor=cursor,
            include_deleted=include_deleted,
        )

    @returns_result
    def get_by_client(self, client_id: str) -> dict[str, Any]:
        cid = str(client_id or "").strip()
        return ok(list(self.repo.iter_docs(self.tenant_id, filters=[("clientId", "==", cid)])))

    @returns_result
    def get_pipeline_view(self) -> dict[str, Any]:
        stages: dict[str, dict[str, Any]] = {
            s: {"count": 0, "value": 0.0, "weightedValue": 0.0, "opportunities": []}
            for s in OPPORTUNITY_STAGES
            if s != TERMINAL_STAGE
        }
        for opp in self.repo.iter_docs(self.tenant_id, filters=[("status", "==", "active")]):
            bucket = stages.get(str(opp.get("stage") or ""))
            if bucket is None:
                continue
            bucket["count"] += 1
            bucket["value"] += float(opp.get("value") or 0)
            bucket["weightedValue"] += weighted_value(opp)
            bucket["opportunities"].append(opp["id"])
        totals = {
            "count": sum(b["count"] for b in stages.values()),
            "value": round(sum(b["value"] for b in stages.values()), 2),
            "weightedValue": round(sum(b["weightedValue"] for b in stages.values()), 2),
        }
        for b in stages.values():
            b["value"] = round(b["value"], 2)
            b["weightedValue"] = round(b["weightedValue"], 2)
        return ok({"stages": stages, "totals": totals})

    @returns_result
    def get_metrics(self, period: str = "month") -> dict[str, Any]:
        if period not in ("week", "month", "quarter", "year"):
            raise ValidationError(message=f"Unknown period: {period}", field="period")
        now = self._clock()
        opps = list(self.repo.iter_docs(self.tenant_id))
        return ok({"period": period, **summarize_metrics(opps, since=period_start(period, now))})

    @returns_result
    def get_opportunities_needing_attention(self, *, inactivity_days: int | None = None) -> dict[str, Any]:
        now = self._clock()
        idle_days = int(inactivity_days if inactivity_days is not None else settings.attention_inactivity_days)
        flagged: list[dict[str, Any]] = []
        for opp in self.repo.iter_docs(self.tenant_id, filters=[("status", "==", "active")]):
            reasons = attention_reasons(
                opp,
                now=now,
                inactivity_days=idle_days,
                stage_max_days=STAGE_MAX_DAYS,
                days_in_stage=days_in_current_stage(opp, now),
            )
            if reasons:
                flagged.append({"opportunity": opp, "reasons": reasons, "priority": calculate_priority(opp)})
        flagged.sort(key=lambda f: PRIORITY_ORDER.get(f["priority"], len(PRIORITY_ORDER)))
        return ok(flagged)
