from __future__ import annotations

from typing import Any

from ...domain.agents.scoring import derive_agent_metrics, filter_agents, sort_agents, validate_agent
from ...domain.common import Clock, iso, new_id, utc_now
from ...errors import NotFound, ValidationError, ok, returns_result
from ...observability.logging import get_logger
from ...repositories.base_repository import apply_patch, require_tenant
from ...repositories.crm_repos import agents_repo


log = get_logger("agent_service")

DERIVED_FIELDS = ("successRate", "reliabilityScore", "rating", "badges")


class AgentService:
    """External agents; derived metrics are recomputed and stored on every write."""

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
        self.repo = agents_repo(table=table, clock=self._clock)

    def _checked(self, agent: dict[str, Any]) -> dict[str, Any]:
        errs = validate_agent(agent)
        if errs:
            raise ValidationError(message="Invalid agent", errors=errs)
        return derive_agent_metrics(agent)

    def _fetch_live(self, agent_id: str) -> dict[str, Any]:
        agent = self.repo.fetch(self.tenant_id, agent_id)
        if agent.get("isDeleted"):
            raise NotFound(message="Agent not found")
        return agent

    def _write(self, current: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
        clean = {k: v for k, v in patch.items() if k not in DERIVED_FIELDS}
        merged = apply_patch(current, clean)
        clean.update(self._checked(merged))
        doc = self.repo.prepare_replace(current, clean, actor_id=self.actor_id)
        self.repo.save(doc, must_exist=True)
        return doc

    @returns_result
    def create(self, data: dict[str, Any]) -> dict[str, Any]:
        raw = {k: v for k, v in (data or {}).items() if k not in DERIVED_FIELDS}
        raw.update(self._checked(raw))
        doc = self.repo.prepare_create(self.tenant_id, raw, actor_id=self.actor_id)
        self.repo.save(doc, must_exist=False)
        log.info("agent_created", agent_id=doc["id"], rating=doc["rating"])
        return ok(doc)

    @returns_result
    def get(self, agent_id: str) -> dict[str, Any]:
        return ok(self.repo.fetch(self.tenant_id, agent_id))

    @returns_result
    def update(self, agent_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        return ok(self._write(self._fetch_live(agent_id), dict(patch or {})))

    def delete(self, agent_id: str) -> dict[str, Any]:
        return self.repo.soft_delete(self.tenant_id, agent_id, actor_id=self.actor_id)

    @returns_result
    def list(
        self,
        filters: dict[str, Any] | None = None,
        *,
        sort_by: str = "name",
        order: str = "asc",
    ) -> dict[str, Any]:
        agents = list(self.repo.iter_docs(self.tenant_id))
        return ok(sort_agents(filter_agents(agents, filters), sort_by, order))

    @returns_result
    def add_interaction(self, agent_id: str, interaction: dict[str, Any]) -> dict[str, Any]:
        it = dict(interaction or {})
        kind = str(it.get("type") or "").strip()
        if not kind:
            raise ValidationError(message="Interaction type is required", field="type")
        current = self._fetch_live(agent_id)
        when = str(it.get("date") or "").strip() or iso(self._clock())
        entry = {**it, "id": new_id("int"), "type": kind, "description": str(it.get("description") or ""), "date": when}
        patch = {
            "interactions": [*(current.get("interactions") or []), entry],
            "relationship.lastContactDate": when,
        }
        if not (current.get("relationship") or {}).get("firstContactDate"):
            patch["relationship.firstContactDate"] = when
        return ok(self._write(current, patch))

    @returns_result
    def record_deal_outcome(self, agent_id: str, successful: bool) -> dict[str, Any]:
        current = self._fetch_live(agent_id)
        rel = current.get("relationship") or {}
        patch: dict[str, Any] = {
            "relationship.totalDealsTogether": int(rel.get("totalDealsTogether") or 0) + 1,
            "relationship.activeDeals": max(0, int(rel.get("activeDeals") or 0) - 1),
        }
        key = "successfulDeals" if successful else "failedDeals"
        patch[f"relationship.{key}"] = int(rel.get(key) or 0) + 1
        doc = self._write(current, patch)
        log.info("agent_deal_outcome_recorded", agent_id=doc["id"], successful=bool(successful), rating=doc["rating"])
        return ok(doc)
