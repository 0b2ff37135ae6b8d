from __future__ import annotations

from typing import Any

from ..domain.common import Clock
from ..domain.schemas import Agent, Client, Deal, DealActivity, Offer, Opportunity, Viewing
from .base_repository import TenantRepository


def clients_repo(*, table: Any | None = None, clock: Clock | None = None) -> TenantRepository:
    return TenantRepository("clients", entity_name="Client", id_prefix="cli", schema=Client, table=table, clock=clock)


def opportunities_repo(*, table: Any | None = None, clock: Clock | None = None) -> TenantRepository:
    return TenantRepository(
        "opportunities", entity_name="Opportunity", id_prefix="opp", schema=Opportunity, table=table, clock=clock
    )


def deals_repo(*, table: Any | None = None, clock: Clock | None = None) -> TenantRepository:
    return TenantRepository("deals", entity_name="Deal", id_prefix="deal", schema=Deal, table=table, clock=clock)


def viewings_repo(*, table: Any | None = None, clock: Clock | None = None) -> TenantRepository:
    return TenantRepository("viewings", entity_name="Viewing", id_prefix="view", schema=Viewing, table=table, clock=clock)


def offers_repo(*, table: Any | None = None, clock: Clock | None = None) -> TenantRepository:
    return TenantRepository("offers", entity_name="Offer", id_prefix="offer", schema=Offer, table=table, clock=clock)


def deal_activities_repo(*, table: Any | None = None, clock: Clock | None = None) -> TenantRepository:
    return TenantRepository(
        "activities", entity_name="DealActivity", id_prefix="act", schema=DealActivity, table=table, clock=clock
    )


def agents_repo(*, table: Any | None = None, clock: Clock | None = None) -> TenantRepository:
    return TenantRepository("agents", entity_name="Agent", id_prefix="agent", schema=Agent, table=table, clock=clock)
