from __future__ import annotations

from typing import Any

from ..db.dynamodb.table import get_main_table
from ..domain.common import Clock, iso, utc_now
from .base_repository import require_tenant, tenant_pk


def tenant_profile_key(tenant_id: str) -> dict[str, str]:
    return {"pk": tenant_pk(require_tenant(tenant_id)), "sk": "PROFILE"}


class TenantCounters:
    """Per-tenant usage counters (subscription-limit bookkeeping)."""

    def __init__(self, *, table: Any | None = None, clock: Clock | None = None):
        self._table = table
        self._clock = clock or utc_now

    @property
    def table(self):
        return self._table if self._table is not None else get_main_table()

    def increment(self, tenant_id: str, counter: str, by: int = 1) -> int:
        attrs = self.table.update_item(
            key=tenant_profile_key(tenant_id),
            update_expression="SET updatedAt = :u, entityType = :t, tenantId = :tid ADD #c :n",
            expression_attribute_names={"#c": counter},
            expression_attribute_values={
                ":u": iso(self._clock()),
                ":t": "TenantProfile",
                ":tid": require_tenant(tenant_id),
                ":n": int(by),
            },
            return_values="ALL_NEW",
        )
        return int((attrs or {}).get(counter) or 0)

    def get(self, tenant_id: str) -> dict[str, Any]:
        item = self.table.get_item(key=tenant_profile_key(tenant_id)) or {}
        return {k: v for k, v in item.items() if k not in ("pk", "sk", "entityType")}
