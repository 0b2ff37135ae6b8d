"""
Qualification -> opportunity derivation.

Every active qualification on a client is backed by exactly one opportunity.
The opportunity and the client (with the qualification's `opportunityId` set)
are written in one transaction, so a qualification never points at an
opportunity that does not exist.
"""

from __future__ import annotations

from typing import Any, get_args

from ...domain.clients.scoring import calculate_client_score
from ...domain.common import Clock, iso, new_id, utc_now
from ...domain.opportunities.derivation import opportunity_from_qualification, qualification_problems
from ...domain.schemas import QualificationType
from ...errors import DerivationFailure, NotFound, ValidationError, ok, returns_result
from ...observability.logging import get_logger
from ...repositories.base_repository import require_tenant, write_atomically
from ...repositories.crm_repos import clients_repo
from .opportunity_service import PipelineManager


log = get_logger("qualification_deriver")

QUALIFICATION_TYPES: tuple[str, ...] = get_args(QualificationType)


class QualificationDeriver:
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
        self.pipeline = PipelineManager(tenant_id, table=table, clock=self._clock, actor_id=actor_id)
        self.opportunities = self.pipeline.repo
        self.clients = clients_repo(table=table, clock=self._clock)

    @property
    def table(self):
        return self.clients.table

    def normalize_qualification(self, data: dict[str, Any]) -> dict[str, Any]:
        q = dict(data or {})
        qtype = str(q.get("type") or "").strip()
        if qtype not in QUALIFICATION_TYPES:
            raise ValidationError(
                message=f"Invalid qualification type: {qtype or '(empty)'}",
                field="type",
            )
        prefs = q.get("preferences") if isinstance(q.get("preferences"), dict) else {}
        errs = qualification_problems(qtype, prefs)
        if errs:
            raise ValidationError(message="Invalid qualification preferences", errors=errs)
        q.update(
            {
                "id": str(q.get("id") or "").strip() or new_id("qual"),
                "type": qtype,
                "isActive": bool(q.get("isActive", True)),
                "preferences": prefs,
                "opportunityId": q.get("opportunityId") or None,
                "createdAt": q.get("createdAt") or iso(self._clock()),
            }
        )
        return q

    def build(self, client: dict[str, Any], qualification: dict[str, Any]) -> dict[str, Any]:
        """Prepare (but do not write) the opportunity backing `qualification`."""
        try:
            return self.pipeline.prepare_opportunity(opportunity_from_qualification(client, qualification))
        except ValidationError as e:
            log.warning(
                "opportunity_derivation_invalid",
                client_id=client.get("id"),
                qualification_id=qualification.get("id"),
                errors=e.errors,
            )
            raise DerivationFailure(
                message=f"Could not derive opportunity for {qualification.get('type')} qualification: {e.message}",
                errors=e.errors,
                qualification_id=qualification.get("id"),
            ) from e

    def existing_opportunity(self, qualification: dict[str, Any]) -> dict[str, Any] | None:
        opp_id = qualification.get("opportunityId")
        if not opp_id:
            return None
        try:
            opp = self.opportunities.fetch(self.tenant_id, opp_id)
        except NotFound:
            return None
        return None if opp.get("isDeleted") else opp

    def _with_qualification(self, client: dict[str, Any], qualification: dict[str, Any]) -> list[dict[str, Any]]:
        quals = [dict(q) for q in (client.get("qualifications") or []) if q.get("id") != qualification["id"]]
        quals.append(qualification)
        return quals

    def _client_patch(self, client: dict[str, Any], qualifications: list[dict[str, Any]]) -> dict[str, Any]:
        merged = {**client, "qualifications": qualifications}
        return {
            "qualifications": qualifications,
            "clientScore": calculate_client_score(merged, now=self._clock()),
        }

    def derive(self, client: dict[str, Any], qualification: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any], dict[str, Any]]:
        """
        Create the backing opportunity and store the linked qualification on the
        client, atomically. Returns (client, qualification, opportunity).
        """
        existing = self.existing_opportunity(qualification)
        if existing is not None:
            return client, qualification, existing

        opp = self.build(client, qualification)
        linked = {**qualification, "opportunityId": opp["id"]}
        patch = self._client_patch(client, self._with_qualification(client, linked))
        client_doc = self.clients.prepare_replace(client, patch, actor_id=self.actor_id)
        write_atomically(self.table, [(self.opportunities, opp, False), (self.clients, client_doc, True)])
        log.info(
            "opportunity_derived",
            client_id=client_doc["id"],
            qualification_id=linked["id"],
            opportunity_id=opp["id"],
            type=opp["type"],
        )
        return client_doc, linked, opp

    def _live_client(self, client_id: str) -> dict[str, Any]:
        client = self.clients.fetch(self.tenant_id, client_id)
        if client.get("isDeleted"):
            raise NotFound(message="Client not found")
        return client

    # --- public operations ---

    @returns_result
    def derive_opportunity(self, client_id: str, qualification_id: str) -> dict[str, Any]:
        client = self._live_client(client_id)
        qual = next((q for q in client.get("qualifications") or [] if q.get("id") == qualification_id), None)
        if qual is None:
            raise NotFound(message="Qualification not found")
        if not qual.get("isActive", True):
            raise ValidationError(message="Qualification is not active", field="isActive")
        client_doc, linked, opp = self.derive(client, qual)
        return ok(opp, client=client_doc, qualification=linked)

    @returns_result
    def add_qualification(self, client_id: str, qualification: dict[str, Any]) -> dict[str, Any]:
        client = self._live_client(client_id)
        qual = {**self.normalize_qualification(qualification), "opportunityId": None}
        if not qual["isActive"]:
            patch = self._client_patch(client, self._with_qualification(client, qual))
            client_doc = self.clients.prepare_replace(client, patch, actor_id=self.actor_id)
            self.clients.save(client_doc, must_exist=True)
            return ok(qual, client=client_doc, opportunity=None)
        client_doc, linked, opp = self.derive(client, qual)
        return ok(linked, client=client_doc, opportunity=opp)

    @returns_result
    def remove_qualification(self, client_id: str, qualification_id: str) -> dict[str, Any]:
        client = self._live_client(client_id)
        quals = list(client.get("qualifications") or [])
        target = next((q for q in quals if q.get("id") == qualification_id), None)
        if target is None:
            raise NotFound(message="Qualification not found")

        remaining = [q for q in quals if q.get("id") != qualification_id]
        client_doc = self.clients.prepare_replace(client, self._client_patch(client, remaining), actor_id=self.actor_id)
        writes = [(self.clients, client_doc, True)]

        cancelled = None
        opp = self.existing_opportunity(target)
        if opp is not None and opp.get("status") not in ("cancelled", "completed"):
            patch = self.pipeline.cancel_patch(opp, "Qualification removed", self._clock())
            cancelled = self.opportunities.prepare_replace(opp, patch, actor_id=self.actor_id)
            writes.append((self.opportunities, cancelled, True))

        write_atomically(self.table, writes)
        log.info(
            "qualification_removed",
            client_id=client_doc["id"],
            qualification_id=qualification_id,
            cancelled_opportunity_id=cancelled["id"] if cancelled else None,
        )
        return ok(client_doc, cancelledOpportunity=cancelled)
