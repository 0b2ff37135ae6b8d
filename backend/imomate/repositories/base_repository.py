"""
Tenant-scoped repository.

Every CRM collection (clients, opportunities, deals, agents, ...) is stored in
the single main table under the tenant's partition:

    pk     = TENANT#{tenantId}
    sk     = {COLLECTION}#{id}
    gsi1pk = TENANT#{tenantId}#{COLLECTION}      (GSI1: list by creation time)
    gsi1sk = {createdAt}#{id}

The conceptual document path (`clients/{cid}/opportunities/{oid}`) is kept on
each item as `path`/`parentPath`. Public operations return `{"ok": ...}`
results; `fetch`/`prepare_*`/`item_for` raise and are meant for services that
compose several writes into one transaction.
"""

from __future__ import annotations

import copy
from typing import Any, Callable, Iterable, Iterator

from boto3.dynamodb.conditions import Attr, Key
from pydantic import BaseModel

from ..db.dynamodb.errors import DdbConflict
from ..db.dynamodb.table import get_main_table
from ..domain.common import Clock, dig, iso, new_id, utc_now
from ..domain.schemas import validate_document
from ..errors import DuplicateFound, NotFound, Unauthorized, ValidationError, ok, returns_result
from ..observability.context import get_actor_id
from ..observability.logging import get_logger
from ..settings import settings
from .subscriptions import Subscription


log = get_logger("tenant_repository")

GSI_NAME = "GSI1"

STORAGE_FIELDS = ("pk", "sk", "gsi1pk", "gsi1sk", "collection", "entityType")
SYSTEM_FIELDS = (
    "id",
    "tenantId",
    "path",
    "parentPath",
    "createdAt",
    "updatedAt",
    "createdBy",
    "updatedBy",
    "isDeleted",
    "deletedAt",
    "deletedBy",
)
IMMUTABLE_FIELDS = ("id", "tenantId", "createdAt", "createdBy")
# Fields only the repository itself may change after creation.
PROTECTED_FIELDS = IMMUTABLE_FIELDS + ("path", "parentPath", "isDeleted", "deletedAt", "deletedBy") + STORAGE_FIELDS

Filter = tuple[str, str, Any]


def tenant_pk(tenant_id: str) -> str:
    return f"TENANT#{tenant_id}"


def require_tenant(tenant_id: Any) -> str:
    tid = str(tenant_id or "").strip()
    if not tid or "#" in tid:
        raise ValidationError(message="tenant_id is required", field="tenantId")
    return tid


def apply_patch(doc: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """
    Shallow merge with dotted-key support: `{"address.city": "Porto"}` sets a
    nested field without replacing the rest of `address`.
    """
    out = copy.deepcopy(doc)
    for k, v in (patch or {}).items():
        if "." not in k:
            out[k] = v
            continue
        parts = k.split(".")
        cur = out
        for p in parts[:-1]:
            nxt = cur.get(p)
            if not isinstance(nxt, dict):
                nxt = {}
                cur[p] = nxt
            cur = nxt
        cur[parts[-1]] = v
    return out


def _condition_for(field: str, op: str, value: Any):
    a = Attr(field)
    if op in ("==", "="):
        return a.eq(value)
    if op == "!=":
        return a.ne(value)
    if op == "<":
        return a.lt(value)
    if op == "<=":
        return a.lte(value)
    if op == ">":
        return a.gt(value)
    if op == ">=":
        return a.gte(value)
    if op == "in":
        return a.is_in(list(value or []))
    if op == "array-contains":
        return a.contains(value)
    if op == "begins_with":
        return a.begins_with(value)
    if op == "exists":
        return a.exists() if value else a.not_exists()
    raise ValidationError(message=f"Unsupported filter operator: {op}", field=field)


def order_docs(docs: list[dict[str, Any]], field: str, *, ascending: bool) -> list[dict[str, Any]]:
    """Sort by a (dotted) field; documents missing it go last."""
    present = [d for d in docs if dig(d, field) is not None]
    missing = [d for d in docs if dig(d, field) is None]
    present.sort(key=lambda d: dig(d, field), reverse=not ascending)
    return present + missing


def normalize_filters(filters: Any) -> list[Filter]:
    """Accept `{field: value}` (equality) or an iterable of (field, op, value)."""
    if not filters:
        return []
    if isinstance(filters, dict):
        return [(str(k), "==", v) for k, v in filters.items()]
    out: list[Filter] = []
    for f in filters:
        field, op, value = f
        out.append((str(field), str(op), value))
    return out


class TenantRepository:
    def __init__(
        self,
        collection: str,
        *,
        entity_name: str,
        id_prefix: str,
        schema: type[BaseModel] | None = None,
        table: Any | None = None,
        clock: Clock | None = None,
    ):
        self.collection = str(collection)
        self.entity_name = entity_name
        self.id_prefix = id_prefix
        self.schema = schema
        self._table = table
        self._clock = clock or utc_now

    # --- keys / items ---

    @property
    def table(self):
        return self._table if self._table is not None else get_main_table()

    def now_iso(self) -> str:
        return iso(self._clock())

    def key(self, tenant_id: str, doc_id: str) -> dict[str, str]:
        return {"pk": tenant_pk(tenant_id), "sk": f"{self.collection.upper()}#{doc_id}"}

    def index_pk(self, tenant_id: str) -> str:
        return f"{tenant_pk(tenant_id)}#{self.collection.upper()}"

    def item_for(self, doc: dict[str, Any]) -> dict[str, Any]:
        return {
            **doc,
            **self.key(doc["tenantId"], doc["id"]),
            "gsi1pk": self.index_pk(doc["tenantId"]),
            "gsi1sk": f"{doc['createdAt']}#{doc['id']}",
            "collection": self.collection,
            "entityType": self.entity_name,
        }

    @staticmethod
    def doc_from_item(item: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in item.items() if k not in STORAGE_FIELDS}

    def _validate(self, doc: dict[str, Any]) -> dict[str, Any]:
        if self.schema is None:
            return doc
        normalized, errs = validate_document(self.schema, doc)
        if errs:
            raise ValidationError(message=f"Invalid {self.entity_name.lower()}", errors=errs)
        return normalized

    # --- building blocks (raise) ---

    def prepare_create(
        self,
        tenant_id: str,
        data: dict[str, Any],
        *,
        parent_path: str | None = None,
        doc_id: str | None = None,
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        """Stamp system fields and validate a new document. Nothing is written."""
        tid = require_tenant(tenant_id)
        did = str(doc_id or "").strip() or new_id(self.id_prefix)
        actor = actor_id or get_actor_id()
        now = self.now_iso()
        base = f"{parent_path}/" if parent_path else ""
        incoming = {k: v for k, v in (data or {}).items() if k not in SYSTEM_FIELDS and k not in STORAGE_FIELDS}
        doc = {
            **incoming,
            "id": did,
            "tenantId": tid,
            "path": f"{base}{self.collection}/{did}",
            "parentPath": parent_path,
            "createdAt": now,
            "updatedAt": now,
            "createdBy": actor,
            "updatedBy": actor,
            "isDeleted": False,
            "deletedAt": None,
            "deletedBy": None,
        }
        return self._validate(doc)

    def prepare_replace(
        self,
        current: dict[str, Any],
        patch: dict[str, Any],
        *,
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        """Merge a patch into a fetched document, keeping protected fields."""
        clean = {k: v for k, v in (patch or {}).items() if k.split(".")[0] not in PROTECTED_FIELDS}
        merged = apply_patch(current, clean)
        merged["updatedAt"] = self.now_iso()
        merged["updatedBy"] = actor_id or get_actor_id() or current.get("updatedBy")
        return self._validate(merged)

    def fetch(self, tenant_id: str, doc_id: str) -> dict[str, Any]:
        tid = require_tenant(tenant_id)
        did = str(doc_id or "").strip()
        if not did:
            raise NotFound(message=f"{self.entity_name} not found")
        item = self.table.get_item(key=self.key(tid, did))
        if not item or item.get("collection", self.collection) != self.collection:
            raise NotFound(message=f"{self.entity_name} not found")
        if str(item.get("tenantId") or "") != tid:
            log.warning(
                "tenant_mismatch_on_read",
                collection=self.collection,
                requested_tenant=tid,
                doc_id=did,
            )
            raise Unauthorized(message="Document not found")
        return self.doc_from_item(item)

    def save(self, doc: dict[str, Any], *, must_exist: bool) -> dict[str, Any]:
        cond = "attribute_exists(pk)" if must_exist else "attribute_not_exists(pk)"
        try:
            self.table.put_item(item=self.item_for(doc), condition_expression=cond)
        except DdbConflict as e:
            if must_exist:
                raise NotFound(message=f"{self.entity_name} not found") from e
            raise DuplicateFound(message=f"id already exists: {doc['id']}", field="id") from e
        return doc

    def find_first(self, tenant_id: str, filters: Any, *, exclude_id: str | None = None) -> dict[str, Any] | None:
        for doc in self.iter_docs(tenant_id, filters=filters):
            if exclude_id and doc.get("id") == exclude_id:
                continue
            return doc
        return None

    def ensure_unique(
        self,
        tenant_id: str,
        doc: dict[str, Any],
        unique_fields: Iterable[str],
        *,
        exclude_id: str | None = None,
    ) -> None:
        # Query-then-write: two concurrent creates can both pass this check.
        for field in unique_fields or ():
            value = dig(doc, field)
            if value in (None, ""):
                continue
            existing = self.find_first(tenant_id, [(field, "==", value)], exclude_id=exclude_id)
            if existing:
                raise DuplicateFound(
                    message=f"{field} already exists: {value}",
                    field=field,
                    conflict=existing,
                )

    def _filter_expression(
        self,
        filters: Any,
        *,
        include_deleted: bool,
    ):
        expr = None
        if not include_deleted:
            expr = Attr("isDeleted").eq(False)
        for field, op, value in normalize_filters(filters):
            cond = _condition_for(field, op, value)
            expr = cond if expr is None else (expr & cond)
        return expr

    def _scope(self, tenant_id: str) -> str:
        return self.index_pk(tenant_id)

    def query_docs(
        self,
        tenant_id: str,
        *,
        filters: Any = None,
        include_deleted: bool = False,
        ascending: bool = False,
        limit: int,
        cursor: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """
        Collect up to `limit` matching documents starting at `cursor`.
        DynamoDB applies Limit before FilterExpression, so pages are refilled
        until `limit` matches are found or the index is exhausted.
        """
        tid = require_tenant(tenant_id)
        expr = self._filter_expression(filters, include_deleted=include_deleted)
        out: list[dict[str, Any]] = []
        token = cursor
        while True:
            page = self.table.query_page(
                index_name=GSI_NAME,
                key_condition_expression=Key("gsi1pk").eq(self.index_pk(tid)),
                filter_expression=expr,
                scan_index_forward=ascending,
                limit=max(1, limit - len(out)),
                next_token=token,
                scope=self._scope(tid),
            )
            for item in page.items:
                if str(item.get("tenantId") or "") != tid:
                    log.warning("tenant_mismatch_in_query", collection=self.collection, requested_tenant=tid)
                    continue
                out.append(self.doc_from_item(item))
            token = page.next_token
            if not token or len(out) >= limit:
                return out, token

    def iter_docs(
        self,
        tenant_id: str,
        *,
        filters: Any = None,
        include_deleted: bool = False,
        ascending: bool = True,
        max_docs: int | None = None,
    ) -> Iterator[dict[str, Any]]:
        batch = settings.max_page_size
        token: str | None = None
        seen = 0
        while True:
            want = batch if max_docs is None else min(batch, max_docs - seen)
            if want <= 0:
                return
            docs, token = self.query_docs(
                tenant_id,
                filters=filters,
                include_deleted=include_deleted,
                ascending=ascending,
                limit=want,
                cursor=token,
            )
            for d in docs:
                seen += 1
                yield d
            if not token:
                return

    # --- public operations (results) ---

    @returns_result
    def create(
        self,
        tenant_id: str,
        data: dict[str, Any],
        *,
        unique_fields: Iterable[str] | None = None,
        parent_path: str | None = None,
        doc_id: str | None = None,
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        doc = self.prepare_create(tenant_id, data, parent_path=parent_path, doc_id=doc_id, actor_id=actor_id)
        if unique_fields:
            self.ensure_unique(doc["tenantId"], doc, unique_fields)
        self.save(doc, must_exist=False)
        log.info("document_created", collection=self.collection, doc_id=doc["id"], tenant_id=doc["tenantId"])
        return ok(doc)

    @returns_result
    def get_by_id(self, tenant_id: str, doc_id: str) -> dict[str, Any]:
        return ok(self.fetch(tenant_id, doc_id))

    @returns_result
    def update(
        self,
        tenant_id: str,
        doc_id: str,
        patch: dict[str, Any],
        *,
        unique_fields: Iterable[str] | None = None,
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        current = self.fetch(tenant_id, doc_id)
        doc = self.prepare_replace(current, patch, actor_id=actor_id)
        if unique_fields:
            changed = [f for f in unique_fields if dig(doc, f) != dig(current, f)]
            self.ensure_unique(doc["tenantId"], doc, changed, exclude_id=doc["id"])
        self.save(doc, must_exist=True)
        return ok(doc)

    @returns_result
    def soft_delete(self, tenant_id: str, doc_id: str, *, actor_id: str | None = None) -> dict[str, Any]:
        current = self.fetch(tenant_id, doc_id)
        if current.get("isDeleted"):
            return ok(current)
        now = self.now_iso()
        actor = actor_id or get_actor_id()
        doc = {**current, "isDeleted": True, "deletedAt": now, "deletedBy": actor, "updatedAt": now, "updatedBy": actor}
        self.save(doc, must_exist=True)
        log.info("document_soft_deleted", collection=self.collection, doc_id=doc["id"])
        return ok(doc)

    @returns_result
    def restore(self, tenant_id: str, doc_id: str, *, actor_id: str | None = None) -> dict[str, Any]:
        current = self.fetch(tenant_id, doc_id)
        if not current.get("isDeleted"):
            return ok(current)
        doc = {
            **current,
            "isDeleted": False,
            "deletedAt": None,
            "deletedBy": None,
            "updatedAt": self.now_iso(),
            "updatedBy": actor_id or get_actor_id(),
        }
        self.save(doc, must_exist=True)
        return ok(doc)

    @returns_result
    def hard_delete(self, tenant_id: str, doc_id: str) -> dict[str, Any]:
        current = self.fetch(tenant_id, doc_id)
        self.table.delete_item(key=self.key(current["tenantId"], current["id"]))
        log.info("document_hard_deleted", collection=self.collection, doc_id=current["id"])
        return ok({"id": current["id"]})

    @returns_result
    def list(
        self,
        tenant_id: str,
        *,
        filters: Any = None,
        order_by: tuple[str, str] | None = None,
        page_size: int | None = None,
        cursor: str | None = None,
        include_deleted: bool = False,
    ) -> dict[str, Any]:
        size = max(1, min(settings.max_page_size, int(page_size or settings.default_page_size)))
        field, direction = order_by or ("createdAt", "desc")
        ascending = str(direction).lower() == "asc"
        docs, token = self.query_docs(
            tenant_id,
            filters=filters,
            include_deleted=include_deleted,
            ascending=ascending if field == "createdAt" else False,
            limit=size,
            cursor=cursor,
        )
        if field != "createdAt":
            # The index orders by creation time; other orderings apply within the page.
            docs = order_docs(docs, field, ascending=ascending)
        return ok(docs, nextToken=token, hasMore=bool(token))

    @returns_result
    def count(self, tenant_id: str, filters: Any = None, *, include_deleted: bool = False) -> dict[str, Any]:
        n = sum(1 for _ in self.iter_docs(tenant_id, filters=filters, include_deleted=include_deleted))
        return ok(n)

    @returns_result
    def search(
        self,
        tenant_id: str,
        term: str,
        fields: Iterable[str] | None = None,
        *,
        max_results: int | None = None,
    ) -> dict[str, Any]:
        """
        Case-insensitive substring match over the first `search_scan_limit`
        non-deleted documents (oldest first). Not an index: documents beyond
        the scan window are never matched.
        """
        needle = str(term or "").strip().lower()
        require_tenant(tenant_id)
        if len(needle) < 2:
            return ok([])
        keys = list(fields or ["name"])
        cap = int(max_results or settings.search_max_results)
        hits: list[dict[str, Any]] = []
        for doc in self.iter_docs(tenant_id, max_docs=settings.search_scan_limit):
            if any(needle in str(dig(doc, k) or "").lower() for k in keys):
                hits.append(doc)
                if len(hits) >= cap:
                    break
        return ok(hits)

    @returns_result
    def batch_create(
        self,
        tenant_id: str,
        items: Iterable[dict[str, Any]],
        *,
        parent_path: str | None = None,
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        docs: list[dict[str, Any]] = []
        errors: dict[str, str] = {}
        for i, data in enumerate(items or []):
            try:
                docs.append(self.prepare_create(tenant_id, data, parent_path=parent_path, actor_id=actor_id))
            except ValidationError as e:
                for k, msg in (e.errors or {"__root__": e.message}).items():
                    errors[f"items[{i}].{k}"] = msg
        if errors:
            raise ValidationError(message=f"Invalid {self.entity_name.lower()} batch", errors=errors)
        if docs:
            self.table.batch_put(items=[self.item_for(d) for d in docs])
        log.info("documents_batch_created", collection=self.collection, count=len(docs))
        return ok(docs)

    @returns_result
    def get_stats(self, tenant_id: str) -> dict[str, Any]:
        total = 0
        deleted = 0
        for doc in self.iter_docs(tenant_id, include_deleted=True):
            total += 1
            if doc.get("isDeleted"):
                deleted += 1
        return ok({"total": total, "active": total - deleted, "deleted": deleted})

    def subscribe(
        self,
        tenant_id: str,
        callback: Callable[[dict[str, Any]], None],
        *,
        filters: Any = None,
        order_by: tuple[str, str] | None = None,
        include_deleted: bool = False,
        interval_s: float | None = None,
        autostart: bool = True,
    ) -> Subscription:
        """
        Poll the collection and push the full matching snapshot to `callback`
        on the first poll and whenever it changes. Call `unsubscribe()` to stop.
        """
        tid = require_tenant(tenant_id)

        field, direction = order_by or ("createdAt", "desc")
        ascending = str(direction).lower() == "asc"

        @returns_result
        def _snapshot() -> dict[str, Any]:
            # Walks every index page.
            docs = list(
                self.iter_docs(
                    tid,
                    filters=filters,
                    include_deleted=include_deleted,
                    ascending=ascending if field == "createdAt" else False,
                )
            )
            if field != "createdAt":
                docs = order_docs(docs, field, ascending=ascending)
            return ok(docs)

        sub = Subscription(
            poll=_snapshot,
            callback=callback,
            interval_s=interval_s if interval_s is not None else settings.subscription_poll_seconds,
            name=f"{self.collection}:{tid}",
        )
        if autostart:
            sub.start()
        return sub


def write_atomically(table: Any, writes: Iterable[tuple[TenantRepository, dict[str, Any], bool]]) -> None:
    """
    Persist several documents in one TransactWriteItems call. Each write is
    (repository, document, must_exist); new documents must not exist yet.
    """
    puts = [
        table.tx_put(
            item=repo.item_for(doc),
            condition_expression="attribute_exists(pk)" if must_exist else "attribute_not_exists(pk)",
        )
        for repo, doc, must_exist in writes
    ]
    table.transact_write(puts=puts)
