"""
Client registry: client lifecycle, duplicate detection and scoring.

Phones are stored cleaned without the `+351` prefix, emails lowercased
and NIFs as bare digits, so duplicate checks are plain equality filters.
"""

from __future__ import annotations

import re
from typing import Any, Iterable

from ...db.dynamodb.errors import DdbError
from ...domain.clients.scoring import calculate_client_score, zero_score
from ...domain.common import Clock, dig, iso, new_id, utc_now
from ...domain.validation import (
    check_cc,
    check_email,
    check_name,
    check_nif,
    check_phone,
    check_postal_code,
    canonical_phone,
    collect_errors,
)
from ...errors import DuplicateFound, NotFound, ValidationError, ok, returns_result
from ...observability.logging import get_logger
from ...repositories.base_repository import apply_patch, require_tenant, write_atomically
from ...repositories.crm_repos import clients_repo
from ...repositories.tenant_profile_repo import TenantCounters
from ..opportunities.qualification_deriver import QualificationDeriver


log = get_logger("client_registry")

DUPLICATE_FIELDS = ("email", "phone", "nif")
CLIENT_COUNT = "clientCount"

# Managed by the registry itself; ignored in caller patches.
MANAGED_FIELDS = ("clientScore", "interactions", "isQuickAdd", "profileComplete", "needsRepair", "repairReason")
SCORE_INPUTS = ("financial", "spouse", "qualifications", "annualIncome", "creditApproved", "hasCredit")


def normalize_contact(data: dict[str, Any]) -> dict[str, Any]:
    out = dict(data or {})
    if "email" in out:
        out["email"] = str(out.get("email") or "").strip().lower() or None
    if "phone" in out:
        out["phone"] = canonical_phone(out.get("phone")) or None
    if "nif" in out:
        out["nif"] = re.sub(r"\D", "", str(out.get("nif") or "")) or None
    if "name" in out:
        out["name"] = str(out.get("name") or "").strip()
    return out


def is_profile_complete(client: dict[str, Any]) -> bool:
    return bool(
        client.get("nif")
        and client.get("dateOfBirth")
        and dig(client, "address.street")
        and dig(client, "address.postalCode")
        and dig(client, "address.city")
    )


def client_field_errors(data: dict[str, Any], *, partial: bool = False) -> dict[str, str]:
    """Format checks for the client fields present in `data` (all of them unless `partial`)."""
    checks: dict[str, str | None] = {}
    if not partial or "name" in data:
        checks["name"] = check_name(data.get("name"))
    if "email" in data:
        checks["email"] = check_email(data.get("email"))
    if "phone" in data:
        checks["phone"] = check_phone(data.get("phone"))
    if "alternatePhone" in data:
        checks["alternatePhone"] = check_phone(data.get("alternatePhone"))
    if "nif" in data:
        checks["nif"] = check_nif(data.get("nif"))
    if "cc" in data:
        checks["cc"] = check_cc(data.get("cc"))
    postal = data.get("address.postalCode", dig(data, "address.postalCode"))
    if postal:
        checks["address.postalCode"] = check_postal_code(postal)
    spouse = data.get("spouse") if isinstance(data.get("spouse"), dict) else {}
    if spouse:
        checks["spouse.email"] = check_email(spouse.get("email"))
        checks["spouse.phone"] = check_phone(spouse.get("phone"))
        checks["spouse.nif"] = check_nif(spouse.get("nif"))
    return collect_errors(checks)


class ClientRegistry:
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
        self.repo = clients_repo(table=table, clock=self._clock)
        self.deriver = QualificationDeriver(tenant_id, table=table, clock=self._clock, actor_id=actor_id)
        self.counters = TenantCounters(table=table, clock=self._clock)

    @property
    def table(self):
        return self.repo.table

    # --- helpers (raise) ---

    def find_duplicate(
        self,
        candidate: dict[str, Any],
        fields: Iterable[str] = DUPLICATE_FIELDS,
        *,
        exclude_id: str | None = None,
    ) -> tuple[str, dict[str, Any]] | None:
        """First match in `fields` order wins; later fields are not checked."""
        for f in fields:
            value = candidate.get(f)
            if not value:
                continue
            found = self.repo.find_first(self.tenant_id, [(f, "==", value)], exclude_id=exclude_id)
            if found is not None:
                return f, found
        return None

    def _reject_duplicate(self, candidate: dict[str, Any], fields: Iterable[str], *, exclude_id: str | None = None) -> None:
        dup = self.find_duplicate(candidate, fields, exclude_id=exclude_id)
        if dup is None:
            return
        f, existing = dup
        log.info("client_duplicate_rejected", field=f, existing_client_id=existing.get("id"))
        raise DuplicateFound(
            message=f"{f} already exists: {candidate.get(f)}",
            field=f,
            conflict=existing,
        )

    def _score(self, client: dict[str, Any]) -> dict[str, Any]:
        return calculate_client_score(client, now=self._clock())

    def _bump_client_count(self, doc: dict[str, Any]) -> dict[str, Any]:
        try:
            self.counters.increment(self.tenant_id, CLIENT_COUNT, 1)
            return doc
        except DdbError as e:
            log.warning("client_count_increment_failed", client_id=doc["id"], error=str(e))
        flagged = {**doc, "needsRepair": True, "repairReason": "client_count"}
        try:
            self.repo.save(flagged, must_exist=True)
        except DdbError as e:
            log.error("client_repair_flag_failed", client_id=doc["id"], error=str(e))
            return doc
        return flagged

    def _fetch_live(self, client_id: str) -> dict[str, Any]:
        client = self.repo.fetch(self.tenant_id, client_id)
        if client.get("isDeleted"):
            raise NotFound(message="Client not found")
        return client

    def _replace(self, current: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
        doc = self.repo.prepare_replace(current, patch, actor_id=self.actor_id)
        self.repo.save(doc, must_exist=True)
        return doc

    # --- creation ---

    @returns_result
    def quick_add(self, data: dict[str, Any]) -> dict[str, Any]:
        raw = data or {}
        errs = collect_errors(
            {
                "name": check_name(raw.get("name")),
                "phone": check_phone(raw.get("phone")),
                "email": check_email(raw.get("email")),
            }
        )
        if errs:
            raise ValidationError(message="Invalid client data", errors=errs)

        clean = normalize_contact({k: raw.get(k) for k in ("name", "phone", "email")})
        self._reject_duplicate(clean, ("email", "phone"))

        extra = {k: v for k, v in raw.items() if k in ("leadSource", "notes", "tags")}
        doc = self.repo.prepare_create(
            self.tenant_id,
            {
                **extra,
                **clean,
                "isQuickAdd": True,
                "profileComplete": False,
                "clientScore": zero_score(now=self._clock()),
            },
            actor_id=self.actor_id,
        )
        self.repo.save(doc, must_exist=False)
        log.info("client_created", client_id=doc["id"], quick_add=True)
        return ok(self._bump_client_count(doc))

    @returns_result
    def create_full(self, data: dict[str, Any]) -> dict[str, Any]:
        """
        Validated creation. The client and one opportunity per active
        qualification are written in a single transaction; any derivation
        failure aborts the whole create.
        """
        raw = dict(data or {})
        errs = client_field_errors(raw)
        if not raw.get("phone") and not raw.get("email"):
            errs.setdefault("phone", "Phone or email is required")
        if errs:
            raise ValidationError(message="Invalid client data", errors=errs)

        clean = normalize_contact(raw)
        self._reject_duplicate(clean, DUPLICATE_FIELDS)

        client_id = new_id(self.repo.id_prefix)
        stub = {"id": client_id, "name": clean["name"]}
        quals: list[dict[str, Any]] = []
        opps: list[dict[str, Any]] = []
        for q in raw.get("qualifications") or []:
            qual = {**self.deriver.normalize_qualification(q), "opportunityId": None}
            if qual["isActive"]:
                opp = self.deriver.build(stub, qual)
                qual["opportunityId"] = opp["id"]
                opps.append(opp)
            quals.append(qual)

        clean.update(
            {
                "qualifications": quals,
                "isQuickAdd": False,
                "profileComplete": True,
                "interactions": list(raw.get("interactions") or []),
            }
        )
        clean["clientScore"] = self._score(clean)
        for f in ("needsRepair", "repairReason"):
            clean.pop(f, None)
        doc = self.repo.prepare_create(self.tenant_id, clean, doc_id=client_id, actor_id=self.actor_id)

        if opps:
            write_atomically(
                self.table,
                [(self.repo, doc, False), *((self.deriver.opportunities, o, False) for o in opps)],
            )
        else:
            self.repo.save(doc, must_exist=False)
        log.info("client_created", client_id=doc["id"], quick_add=False, opportunities=len(opps))
        return ok(self._bump_client_count(doc), opportunities=opps)

    # --- reads ---

    @returns_result
    def get(self, client_id: str) -> dict[str, Any]:
        return ok(self.repo.fetch(self.tenant_id, client_id))

    def list(
        self,
        *,
        tag: str | None = None,
        marital_status: str | None = None,
        category: str | None = None,
        filters: Any = None,
        order_by: tuple[str, str] | None = None,
        page_size: int | None = None,
        cursor: str | None = None,
        include_deleted: bool = False,
    ) -> dict[str, Any]:
        conds: list[tuple[str, str, Any]] = []
        if isinstance(filters, dict):
            conds.extend((k, "==", v) for k, v in filters.items())
        elif filters:
            conds.extend(filters)
        if tag:
            conds.append(("tags", "array-contains", tag))
        if marital_status:
            conds.append(("maritalStatus", "==", marital_status))
        if category:
            conds.append(("clientScore.category", "==", category))
        return self.repo.list(
            self.tenant_id,
            filters=conds,
            order_by=order_by,
            page_size=page_size,
            cursor=cursor,
            include_deleted=include_deleted,
        )

    def search(self, term: str) -> dict[str, Any]:
        return self.repo.search(self.tenant_id, term, ["name", "email", "phone", "nif"])

    @returns_result
    def check_duplicates(self, candidate: dict[str, Any]) -> dict[str, Any]:
        """Email, then phone, then NIF; returns the first match or None."""
        dup = self.find_duplicate(normalize_contact({k: (candidate or {}).get(k) for k in DUPLICATE_FIELDS}))
        if dup is None:
            return ok(None)
        f, existing = dup
        return ok({"field": f, "client": existing})

    @returns_result
    def get_client_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "total": 0,
            "quickAdd": 0,
            "profileComplete": 0,
            "byCategory": {"A": 0, "B": 0, "C": 0},
            "byMaritalStatus": {},
            "withEmail": 0,
            "withFinancialInfo": 0,
            "married": 0,
        }
        for c in self.repo.iter_docs(self.tenant_id):
            stats["total"] += 1
            if c.get("isQuickAdd"):
                stats["quickAdd"] += 1
            if c.get("profileComplete"):
                stats["profileComplete"] += 1
            cat = str(dig(c, "clientScore.category") or "C")
            stats["byCategory"][cat] = stats["byCategory"].get(cat, 0) + 1
            ms = c.get("maritalStatus")
            if ms:
                stats["byMaritalStatus"][ms] = stats["byMaritalStatus"].get(ms, 0) + 1
            if ms in ("married", "union"):
                stats["married"] += 1
            if c.get("email"):
                stats["withEmail"] += 1
            if dig(c, "financial.annualIncome"):
                stats["withFinancialInfo"] += 1
        return ok(stats)

    # --- mutations ---

    @returns_result
    def update(self, client_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        incoming = {k: v for k, v in (patch or {}).items() if k.split(".")[0] not in MANAGED_FIELDS}
        errs = client_field_errors(incoming, partial=True)
        if errs:
            raise ValidationError(message="Invalid client data", errors=errs)
        incoming = normalize_contact(incoming)

        current = self._fetch_live(client_id)
        changed = {f: incoming[f] for f in DUPLICATE_FIELDS if f in incoming and incoming[f] != current.get(f)}
        if changed:
            self._reject_duplicate(changed, DUPLICATE_FIELDS, exclude_id=current["id"])

        writes: list[tuple[Any, dict[str, Any], bool]] = []
        if "qualifications" in incoming:
            incoming["qualifications"], opp_writes = self._reconcile_qualifications(current, incoming)
            writes.extend(opp_writes)

        merged = apply_patch(current, incoming)
        if is_profile_complete(merged) and not current.get("profileComplete"):
            incoming.update({"profileComplete": True, "isQuickAdd": False})
        if any(k.split(".")[0] in SCORE_INPUTS for k in incoming):
            incoming["clientScore"] = self._score(merged)

        doc = self.repo.prepare_replace(current, incoming, actor_id=self.actor_id)
        if writes:
            write_atomically(self.table, [(self.repo, doc, True), *writes])
        else:
            self.repo.save(doc, must_exist=True)
        log.info("client_updated", client_id=doc["id"], fields=sorted(incoming))
        return ok(doc)

    def _reconcile_qualifications(
        self,
        current: dict[str, Any],
        incoming: dict[str, Any],
    ) -> tuple[list[dict[str, Any]], list[tuple[Any, dict[str, Any], bool]]]:
        """
        New active qualifications get an opportunity; dropped ones have theirs
        cancelled. Returns the linked qualification list and the opportunity writes.
        """
        opps_repo = self.deriver.opportunities
        before = {q.get("id"): q for q in current.get("qualifications") or []}
        stub = {"id": current["id"], "name": incoming.get("name") or current.get("name")}
        quals: list[dict[str, Any]] = []
        writes: list[tuple[Any, dict[str, Any], bool]] = []
        for q in incoming.get("qualifications") or []:
            qual = self.deriver.normalize_qualification(q)
            prior = before.get(qual["id"])
            if prior is not None and prior.get("opportunityId"):
                qual["opportunityId"] = prior["opportunityId"]
            if qual["isActive"] and self.deriver.existing_opportunity(qual) is None:
                opp = self.deriver.build(stub, qual)
                qual["opportunityId"] = opp["id"]
                writes.append((opps_repo, opp, False))
            quals.append(qual)

        kept = {q["id"] for q in quals}
        now = self._clock()
        for qid, q in before.items():
            if qid in kept:
                continue
            opp = self.deriver.existing_opportunity(q)
            if opp is not None and opp.get("status") not in ("cancelled", "completed"):
                patch = self.deriver.pipeline.cancel_patch(opp, "Qualification removed", now)
                writes.append((opps_repo, opps_repo.prepare_replace(opp, patch, actor_id=self.actor_id), True))
        return quals, writes

    def delete(self, client_id: str) -> dict[str, Any]:
        res = self.repo.soft_delete(self.tenant_id, client_id, actor_id=self.actor_id)
        if res.get("ok"):
            log.info("client_deleted", client_id=client_id)
        return res

    def restore(self, client_id: str) -> dict[str, Any]:
        return self.repo.restore(self.tenant_id, client_id, actor_id=self.actor_id)

    @returns_result
    def update_tags(
        self,
        client_id: str,
        add: Iterable[str] | None = None,
        remove: Iterable[str] | None = None,
    ) -> dict[str, Any]:
        current = self._fetch_live(client_id)
        drop = {str(t).strip() for t in remove or () if str(t).strip()}
        tags = [t for t in current.get("tags") or [] if t not in drop]
        for t in add or ():
            t = str(t).strip()
            if t and t not in tags and t not in drop:
                tags.append(t)
        return ok(self._replace(current, {"tags": tags}))

    @returns_result
    def record_contact(self, client_id: str, contact: dict[str, Any] | None = None) -> dict[str, Any]:
        c = contact or {}
        current = self._fetch_live(client_id)
        when = str(c.get("date") or "").strip() or iso(self._clock())
        entry = {**c, "type": str(c.get("type") or "note"), "note": c.get("note"), "date": when}
        interactions = [*(current.get("interactions") or []), entry]
        merged = {**current, "interactions": interactions}
        patch = {
            "interactions": interactions,
            "metadata.lastContactAt": when,
            "clientScore": self._score(merged),
        }
        return ok(self._replace(current, patch))

    def add_qualification(self, client_id: str, qualification: dict[str, Any]) -> dict[str, Any]:
        return self.deriver.add_qualification(client_id, qualification)

    def remove_qualification(self, client_id: str, qualification_id: str) -> dict[str, Any]:
        return self.deriver.remove_qualification(client_id, qualification_id)

    @returns_result
    def recalculate_score(self, client_id: str) -> dict[str, Any]:
        current = self._fetch_live(client_id)
        return ok(self._replace(current, {"clientScore": self._score(current)}))

    @returns_result
    def link_spouse_as_client(self, client_id: str) -> dict[str, Any]:
        """
        Promote the embedded spouse to a client of its own, reusing an existing
        client with the same NIF or email. Both records end up pointing at each
        other; the two writes go in one transaction.
        """
        client = self._fetch_live(client_id)
        spouse = dict(client.get("spouse") or {})
        if not str(spouse.get("name") or "").strip():
            raise ValidationError(message="Client has no spouse to link", field="spouse")

        if spouse.get("clientId"):
            try:
                linked = self.repo.fetch(self.tenant_id, spouse["clientId"])
            except NotFound:
                linked = None
            if linked is not None and not linked.get("isDeleted"):
                return ok(linked, client=client, created=False)

        lookup = normalize_contact({"nif": spouse.get("nif"), "email": spouse.get("email")})
        match = self.find_duplicate(lookup, ("nif", "email"), exclude_id=client["id"])
        back_link = {
            "name": client.get("name"),
            "phone": client.get("phone"),
            "email": client.get("email"),
            "nif": client.get("nif"),
            "clientId": client["id"],
        }

        if match is not None:
            other = match[1]
            current_link = dig(other, "spouse.clientId")
            if current_link and current_link != client["id"]:
                try:
                    linked_elsewhere = self.repo.fetch(self.tenant_id, current_link)
                except NotFound:
                    linked_elsewhere = None
                if linked_elsewhere is not None and not linked_elsewhere.get("isDeleted"):
                    raise ValidationError(
                        message=f"Matching client {other['id']} is already linked to another spouse",
                        field="spouse.clientId",
                    )
                log.warning(
                    "spouse_stale_link_replaced",
                    client_id=other["id"],
                    previous_spouse_client_id=current_link,
                    spouse_client_id=client["id"],
                )
            other_doc = self.repo.prepare_replace(
                other,
                {"spouse": {**(other.get("spouse") or {}), **back_link}, "maritalStatus": client.get("maritalStatus") or other.get("maritalStatus")},
                actor_id=self.actor_id,
            )
            created = False
        else:
            seed = normalize_contact(
                {k: spouse.get(k) for k in ("name", "phone", "email", "nif", "cc", "dateOfBirth", "profession")}
            )
            seed = {k: v for k, v in seed.items() if v}
            seed.update(
                {
                    "maritalStatus": client.get("maritalStatus"),
                    "spouse": back_link,
                    "referredBy": client.get("name"),
                    "leadSource": "spouse",
                    "address": client.get("address") or {},
                    "isQuickAdd": False,
                }
            )
            if spouse.get("annualIncome"):
                seed["financial"] = {"annualIncome": spouse.get("annualIncome")}
            seed["profileComplete"] = is_profile_complete(seed)
            seed["clientScore"] = self._score(seed)
            other_doc = self.repo.prepare_create(self.tenant_id, seed, actor_id=self.actor_id)
            created = True

        spouse["clientId"] = other_doc["id"]
        client_doc = self.repo.prepare_replace(client, {"spouse": spouse}, actor_id=self.actor_id)
        write_atomically(self.table, [(self.repo, client_doc, True), (self.repo, other_doc, not created)])
        log.info("spouse_linked", client_id=client_doc["id"], spouse_client_id=other_doc["id"], created=created)
        if created:
            other_doc = self._bump_client_count(other_doc)
        return ok(other_doc, client=client_doc, created=created)
