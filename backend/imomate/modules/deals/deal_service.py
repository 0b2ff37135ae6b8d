"""
Buyer-side deals: one property pursuit under an opportunity, with its own
viewings, offers and activity log.

Deals are written under `clients/{cid}/opportunities/{oid}/deals/{did}`. Older
data kept deals directly under `clients/{cid}/deals/{did}`; client-scoped
listings match on the `clients/{cid}/` path prefix so both layouts are read.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from ...db.dynamodb.errors import DdbError
from ...domain.common import Clock, as_float, iso, utc_now
from ...domain.deals.rules import (
    DEAL_STAGES,
    calculate_deal_probability,
    calculate_total_deal_commission,
    deal_attention_reasons,
    status_for_stage,
    validate_deal,
)
from ...errors import CrmError, NotFound, ValidationError, ok, returns_result
from ...observability.logging import get_logger
from ...repositories.base_repository import apply_patch, require_tenant, write_atomically
from ...repositories.crm_repos import deal_activities_repo, deals_repo, offers_repo, viewings_repo
from ..opportunities.opportunity_service import PipelineManager


log = get_logger("deal_service")

OFFER_RESPONSES = ("accepted", "rejected", "countered")
SELLER_TYPES = ("seller", "landlord")
# Deal fields changed only through dedicated operations.
MANAGED_FIELDS = ("clientId", "opportunityId", "status", "probability", "linkedSellerOpportunityId", "lastActivityAt")


def stage_is_before(current: Any, target: str) -> bool:
    """True when `current` is an open stage earlier in the funnel than `target`."""
    if current in ("fechado", "perdido"):
        return False
    try:
        return DEAL_STAGES.index(str(current or "lead")) < DEAL_STAGES.index(target)
    except ValueError:
        return True


class DealService:
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
        self.deals = deals_repo(table=table, clock=self._clock)
        self.viewings = viewings_repo(table=table, clock=self._clock)
        self.offers = offers_repo(table=table, clock=self._clock)
        self.activities = deal_activities_repo(table=table, clock=self._clock)
        self.pipeline = PipelineManager(tenant_id, table=table, clock=self._clock, actor_id=actor_id)

    @property
    def table(self):
        return self.deals.table

    # --- helpers ---

    def _fetch_live(self, repo, doc_id: str) -> dict[str, Any]:
        doc = repo.fetch(self.tenant_id, doc_id)
        if doc.get("isDeleted"):
            raise NotFound(message=f"{repo.entity_name} not found")
        return doc

    def _stage_patch(self, stage: str, at: datetime) -> dict[str, Any]:
        if stage not in DEAL_STAGES:
            raise ValidationError(
                message=f"Invalid deal stage: {stage or '(empty)'}. Valid stages: {', '.join(DEAL_STAGES)}",
                field="stage",
            )
        return {"stage": stage, "status": status_for_stage(stage), "lastActivityAt": iso(at)}

    def _deal_doc(self, current: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
        merged = apply_patch(current, patch)
        patch = {**patch, "probability": calculate_deal_probability(merged)}
        return self.deals.prepare_replace(current, patch, actor_id=self.actor_id)

    def log_activity(
        self,
        deal: dict[str, Any],
        kind: str,
        description: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Append to the deal's activity log. Failures are logged, never raised."""
        try:
            doc = self.activities.prepare_create(
                self.tenant_id,
                {
                    "dealId": deal["id"],
                    "type": kind,
                    "description": description,
                    "date": iso(self._clock()),
                    "data": data or {},
                },
                parent_path=deal["path"],
                actor_id=self.actor_id,
            )
            return self.activities.save(doc, must_exist=False)
        except (CrmError, DdbError) as e:
            log.warning("deal_activity_write_failed", deal_id=deal.get("id"), activity_type=kind, error=str(e))
            return None

    def _children(self, repo, deal_id: str) -> list[dict[str, Any]]:
        return list(repo.iter_docs(self.tenant_id, filters=[("dealId", "==", deal_id)]))

    # --- deals ---

    @returns_result
    def create_deal(self, opportunity_id: str, data: dict[str, Any]) -> dict[str, Any]:
        opp = self._fetch_live(self.pipeline.repo, opportunity_id)
        raw = {k: v for k, v in (data or {}).items() if k not in MANAGED_FIELDS}
        raw.update({"clientId": opp["clientId"], "opportunityId": opp["id"]})
        raw.setdefault("stage", "lead")
        errs = validate_deal(raw)
        if errs:
            raise ValidationError(message="Invalid deal", errors=errs)

        now = self._clock()
        raw.update(
            {
                "status": status_for_stage(raw["stage"]),
                "probability": calculate_deal_probability(raw),
                "lastActivityAt": iso(now),
            }
        )
        deal = self.deals.prepare_create(self.tenant_id, raw, parent_path=opp["path"], actor_id=self.actor_id)
        opp_patch = self.pipeline.link_deal_patch(opp, deal["id"], now)
        opp_doc = self.pipeline.repo.prepare_replace(opp, opp_patch, actor_id=self.actor_id)
        write_atomically(self.table, [(self.deals, deal, False), (self.pipeline.repo, opp_doc, True)])
        log.info("deal_created", deal_id=deal["id"], opportunity_id=opp["id"], client_id=deal["clientId"])
        self.log_activity(deal, "created", "Deal created")
        return ok(deal)

    @returns_result
    def get_deal(self, deal_id: str) -> dict[str, Any]:
        deal = self.deals.fetch(self.tenant_id, deal_id)
        return ok(deal, commission=calculate_total_deal_commission(deal))

    @returns_result
    def list_deals(self, opportunity_id: str) -> dict[str, Any]:
        oid = str(opportunity_id or "").strip()
        return ok(list(self.deals.iter_docs(self.tenant_id, filters=[("opportunityId", "==", oid)])))

    @returns_result
    def list_client_deals(self, client_id: str) -> dict[str, Any]:
        cid = str(client_id or "").strip()
        if not cid:
            raise ValidationError(message="client_id is required", field="clientId")
        return ok(list(self.deals.iter_docs(self.tenant_id, filters=[("path", "begins_with", f"clients/{cid}/")])))

    @returns_result
    def update_deal(self, deal_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        current = self._fetch_live(self.deals, deal_id)
        incoming = {k: v for k, v in (patch or {}).items() if k.split(".")[0] not in MANAGED_FIELDS}
        new_stage = incoming.pop("stage", None)
        if new_stage is not None and new_stage != current.get("stage"):
            incoming.update(self._stage_patch(new_stage, self._clock()))
        errs = validate_deal(apply_patch(current, incoming))
        if errs:
            raise ValidationError(message="Invalid deal", errors=errs)
        doc = self._deal_doc(current, incoming)
        self.deals.save(doc, must_exist=True)
        return ok(doc)

    @returns_result
    def update_stage(self, deal_id: str, stage: str, *, note: str | None = None, lost_reason: str | None = None) -> dict[str, Any]:
        current = self._fetch_live(self.deals, deal_id)
        patch = self._stage_patch(str(stage or "").strip(), self._clock())
        if patch["stage"] == "perdido":
            patch["lostReason"] = lost_reason or note
        doc = self._deal_doc(current, patch)
        self.deals.save(doc, must_exist=True)
        log.info("deal_stage_changed", deal_id=doc["id"], stage=doc["stage"], status=doc["status"])
        self.log_activity(
            doc,
            "stage_change",
            f"Stage changed from {current.get('stage')} to {doc['stage']}",
            {"from": current.get("stage"), "to": doc["stage"], "note": note},
        )
        return ok(doc)

    @returns_result
    def delete_deal(self, deal_id: str) -> dict[str, Any]:
        deal = self.deals.fetch(self.tenant_id, deal_id)
        removed = 0
        for repo in (self.viewings, self.offers, self.activities):
            for child in self._children(repo, deal["id"]):
                res = repo.soft_delete(self.tenant_id, child["id"], actor_id=self.actor_id)
                if res.get("ok"):
                    removed += 1
                else:
                    log.warning("deal_child_delete_failed", deal_id=deal["id"], child_id=child["id"], error=res.get("error"))
        res = self.deals.soft_delete(self.tenant_id, deal["id"], actor_id=self.actor_id)
        if res.get("ok"):
            log.info("deal_deleted", deal_id=deal["id"], children=removed)
        return res

    # --- viewings ---

    @returns_result
    def add_viewing(self, deal_id: str, data: dict[str, Any]) -> dict[str, Any]:
        deal = self._fetch_live(self.deals, deal_id)
        raw = dict(data or {})
        if not raw.get("scheduledAt"):
            raise ValidationError(message="Viewing date is required", field="scheduledAt")
        raw.update({"dealId": deal["id"], "status": "scheduled"})
        viewing = self.viewings.prepare_create(self.tenant_id, raw, parent_path=deal["path"], actor_id=self.actor_id)

        now = self._clock()
        patch: dict[str, Any] = {"lastActivityAt": iso(now)}
        if stage_is_before(deal.get("stage"), "visita_agendada"):
            patch.update(self._stage_patch("visita_agendada", now))
        deal_doc = self._deal_doc(deal, patch)
        write_atomically(self.table, [(self.viewings, viewing, False), (self.deals, deal_doc, True)])
        self.log_activity(deal_doc, "viewing_scheduled", f"Viewing scheduled for {viewing['scheduledAt']}", {"viewingId": viewing["id"]})
        return ok(viewing, deal=deal_doc)

    @returns_result
    def complete_viewing(self, viewing_id: str, feedback: dict[str, Any] | None = None) -> dict[str, Any]:
        viewing = self._fetch_live(self.viewings, viewing_id)
        if viewing.get("status") == "completed":
            raise ValidationError(message="Viewing already completed", field="status")
        deal = self._fetch_live(self.deals, viewing["dealId"])
        fb = dict(feedback or {})
        interest = None
        if fb.get("interestLevel") is not None:
            try:
                interest = max(0, min(10, int(fb["interestLevel"])))
            except (TypeError, ValueError) as e:
                raise ValidationError(message="Interest level must be a number from 0 to 10", field="feedback.interestLevel") from e
        now = self._clock()
        viewing_doc = self.viewings.prepare_replace(
            viewing,
            {"status": "completed", "completedAt": iso(now), "feedback": fb},
            actor_id=self.actor_id,
        )
        patch: dict[str, Any] = {"lastActivityAt": iso(now)}
        if stage_is_before(deal.get("stage"), "visita_realizada"):
            patch.update(self._stage_patch("visita_realizada", now))
        if interest is not None:
            patch["scoring.buyerInterestLevel"] = interest
        deal_doc = self._deal_doc(deal, patch)
        write_atomically(self.table, [(self.viewings, viewing_doc, True), (self.deals, deal_doc, True)])
        self.log_activity(deal_doc, "viewing_completed", "Viewing completed", {"viewingId": viewing_doc["id"]})
        return ok(viewing_doc, deal=deal_doc)

    @returns_result
    def list_viewings(self, deal_id: str) -> dict[str, Any]:
        docs = self._children(self.viewings, str(deal_id or ""))
        docs.sort(key=lambda v: str(v.get("scheduledAt") or ""))
        return ok(docs)

    # --- offers ---

    @returns_result
    def submit_offer(self, deal_id: str, data: dict[str, Any]) -> dict[str, Any]:
        deal = self._fetch_live(self.deals, deal_id)
        raw = dict(data or {})
        amount = as_float(raw.get("amount"))
        if amount <= 0:
            raise ValidationError(message="Offer amount must be positive", field="amount")
        now = self._clock()
        existing = self._children(self.offers, deal["id"])
        raw.update(
            {
                "dealId": deal["id"],
                "amount": amount,
                "offerNumber": len(existing) + 1,
                "status": "pending",
                "submittedAt": iso(now),
            }
        )
        offer = self.offers.prepare_create(self.tenant_id, raw, parent_path=deal["path"], actor_id=self.actor_id)

        patch: dict[str, Any] = {"pricing.currentOffer": amount, "lastActivityAt": iso(now)}
        if stage_is_before(deal.get("stage"), "proposta"):
            patch.update(self._stage_patch("proposta", now))
        deal_doc = self._deal_doc(deal, patch)
        write_atomically(self.table, [(self.offers, offer, False), (self.deals, deal_doc, True)])
        log.info("offer_submitted", deal_id=deal["id"], offer_id=offer["id"], offer_number=offer["offerNumber"])
        self.log_activity(deal_doc, "offer_submitted", f"Offer #{offer['offerNumber']} submitted", {"offerId": offer["id"], "amount": amount})
        return ok(offer, deal=deal_doc)

    @returns_result
    def respond_to_offer(
        self,
        offer_id: str,
        response: str,
        *,
        counter_amount: float | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        if response not in OFFER_RESPONSES:
            raise ValidationError(message=f"Invalid offer response: {response}", field="status")
        if response == "countered" and as_float(counter_amount) <= 0:
            raise ValidationError(message="Counter amount is required", field="counterAmount")
        offer = self._fetch_live(self.offers, offer_id)
        if offer.get("status") != "pending":
            raise ValidationError(message=f"Offer already {offer.get('status')}", field="status")
        deal = self._fetch_live(self.deals, offer["dealId"])

        now = self._clock()
        offer_patch: dict[str, Any] = {"status": response, "respondedAt": iso(now), "responseNotes": notes}
        if response == "countered":
            offer_patch["counterAmount"] = as_float(counter_amount)
        offer_doc = self.offers.prepare_replace(offer, offer_patch, actor_id=self.actor_id)

        patch: dict[str, Any] = {"lastActivityAt": iso(now)}
        if response == "accepted":
            patch["pricing.finalPrice"] = offer_doc["amount"]
            if stage_is_before(deal.get("stage"), "negociacao"):
                patch.update(self._stage_patch("negociacao", now))
        deal_doc = self._deal_doc(deal, patch)
        write_atomically(self.table, [(self.offers, offer_doc, True), (self.deals, deal_doc, True)])
        self.log_activity(
            deal_doc,
            f"offer_{response}",
            f"Offer #{offer_doc.get('offerNumber')} {response}",
            {"offerId": offer_doc["id"]},
        )
        return ok(offer_doc, deal=deal_doc)

    @returns_result
    def list_offers(self, deal_id: str) -> dict[str, Any]:
        docs = self._children(self.offers, str(deal_id or ""))
        docs.sort(key=lambda o: int(o.get("offerNumber") or 0))
        return ok(docs)

    # --- activities ---

    @returns_result
    def add_activity(self, deal_id: str, kind: str, description: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
        deal = self._fetch_live(self.deals, deal_id)
        kind = str(kind or "").strip()
        if not kind:
            raise ValidationError(message="Activity type is required", field="type")
        deal_doc = self._deal_doc(deal, {"lastActivityAt": iso(self._clock())})
        self.deals.save(deal_doc, must_exist=True)
        return ok(self.log_activity(deal_doc, kind, str(description or ""), data))

    @returns_result
    def list_activities(self, deal_id: str) -> dict[str, Any]:
        docs = self._children(self.activities, str(deal_id or ""))
        docs.sort(key=lambda a: str(a.get("date") or a.get("createdAt") or ""), reverse=True)
        return ok(docs)

    # --- cross-links / queries ---

    @returns_result
    def link_seller_opportunity(self, deal_id: str, seller_opportunity_id: str) -> dict[str, Any]:
        deal = self._fetch_live(self.deals, deal_id)
        seller = self._fetch_live(self.pipeline.repo, seller_opportunity_id)
        if seller.get("type") not in SELLER_TYPES:
            raise ValidationError(message="Linked opportunity must be a seller or landlord opportunity", field="linkedSellerOpportunityId")
        deal_doc = self._deal_doc(deal, {"linkedSellerOpportunityId": seller["id"], "lastActivityAt": iso(self._clock())})
        buyers = list(seller.get("linkedBuyerDeals") or [])
        if deal["id"] not in buyers:
            buyers.append(deal["id"])
        seller_doc = self.pipeline.repo.prepare_replace(seller, {"linkedBuyerDeals": buyers}, actor_id=self.actor_id)
        write_atomically(self.table, [(self.deals, deal_doc, True), (self.pipeline.repo, seller_doc, True)])
        log.info("deal_linked_to_seller", deal_id=deal["id"], seller_opportunity_id=seller["id"])
        return ok(deal_doc, sellerOpportunity=seller_doc)

    @returns_result
    def get_deals_needing_attention(self) -> dict[str, Any]:
        now = self._clock()
        flagged = []
        for deal in self.deals.iter_docs(self.tenant_id, filters=[("status", "==", "active")]):
            reasons = deal_attention_reasons(deal, now=now)
            if reasons:
                flagged.append({"deal": deal, "reasons": reasons})
        return ok(flagged)
