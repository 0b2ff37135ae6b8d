"""
Entity schemas validated at the repository boundary.

Models allow extra keys so callers can carry fields the CRM does not interpret
(UI hints, import provenance); known fields are type-checked and defaulted.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError


QualificationType = Literal[
    "buyer", "seller", "tenant", "landlord", "investor", "developer", "propertyManager"
]
OpportunityStage = Literal[
    "qualification", "prospecting", "viewing", "negotiation", "documentation", "closing", "completed"
]
OpportunityStatus = Literal["active", "completed", "cancelled", "paused"]
Priority = Literal["critical", "high", "medium", "low"]
DealStage = Literal[
    "lead", "visita_agendada", "visita_realizada", "proposta", "negociacao", "fechado", "perdido"
]
DealStatus = Literal["active", "won", "lost"]
MaritalStatus = Literal["single", "married", "union", "divorced", "widowed"]
RelationshipQuality = Literal["excellent", "good", "neutral", "difficult"]
ResponseTime = Literal["immediate", "fast", "normal", "slow"]


class _Model(BaseModel):
    model_config = ConfigDict(extra="allow")


class Document(_Model):
    id: str | None = None
    tenantId: str | None = None
    path: str | None = None
    parentPath: str | None = None
    createdAt: str | None = None
    updatedAt: str | None = None
    createdBy: str | None = None
    updatedBy: str | None = None
    isDeleted: bool = False
    deletedAt: str | None = None
    deletedBy: str | None = None


# ---- clients ----


class Address(_Model):
    street: str | None = None
    postalCode: str | None = None
    city: str | None = None
    district: str | None = None
    country: str = "Portugal"


class Financial(_Model):
    annualIncome: float | None = None
    creditApproved: bool = False
    hasCredit: bool = False
    creditAmount: float | None = None
    bank: str | None = None


class Spouse(_Model):
    name: str | None = None
    phone: str | None = None
    email: str | None = None
    nif: str | None = None
    cc: str | None = None
    dateOfBirth: str | None = None
    profession: str | None = None
    annualIncome: float | None = None
    clientId: str | None = None


class Qualification(_Model):
    id: str
    type: QualificationType
    isActive: bool = True
    preferences: dict[str, Any] = Field(default_factory=dict)
    opportunityId: str | None = None
    createdAt: str | None = None


class ClientScore(_Model):
    engagement: int = Field(default=0, ge=0, le=100)
    financial: int = Field(default=0, ge=0, le=100)
    urgency: int = Field(default=0, ge=0, le=100)
    overall: int = Field(default=0, ge=0, le=100)
    category: Literal["A", "B", "C"] = "C"
    calculatedAt: str | None = None


class Interaction(_Model):
    type: str = "note"
    note: str | None = None
    date: str


class ClientMetadata(_Model):
    lastContactAt: str | None = None
    nextFollowUpAt: str | None = None
    totalDeals: int = 0
    activeDeals: int = 0
    completedDeals: int = 0
    totalVolume: float = 0


class Client(Document):
    name: str
    phone: str | None = None
    email: str | None = None
    alternatePhone: str | None = None
    alternateEmail: str | None = None
    nif: str | None = None
    cc: str | None = None
    ccValidity: str | None = None
    dateOfBirth: str | None = None
    profession: str | None = None
    contactPreference: str | None = None
    address: Address = Field(default_factory=Address)
    financial: Financial = Field(default_factory=Financial)
    maritalStatus: MaritalStatus | None = None
    spouse: Spouse | None = None
    qualifications: list[Qualification] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    leadSource: str | None = None
    referredBy: str | None = None
    notes: str | None = None
    interactions: list[Interaction] = Field(default_factory=list)
    clientScore: ClientScore = Field(default_factory=ClientScore)
    metadata: ClientMetadata = Field(default_factory=ClientMetadata)
    isQuickAdd: bool = False
    profileComplete: bool = False
    needsRepair: bool = False
    repairReason: str | None = None


# ---- opportunities ----


class StageHistoryEntry(_Model):
    stage: OpportunityStage
    enteredAt: str
    exitedAt: str | None = None
    duration: int = Field(default=0, ge=0)


class Activity(_Model):
    id: str
    type: str
    description: str = ""
    timestamp: str
    performedBy: str | None = None


class Note(_Model):
    id: str
    text: str
    createdAt: str
    createdBy: str | None = None


class ScheduledViewing(_Model):
    id: str
    status: Literal["scheduled", "completed", "cancelled"] = "scheduled"
    scheduledAt: str | None = None
    propertyRef: str | None = None
    notes: str | None = None


class Proposal(_Model):
    id: str
    amount: float = Field(default=0, ge=0)
    status: Literal["pending", "accepted", "rejected", "countered"] = "pending"
    submittedAt: str
    notes: str | None = None


class OpportunityMetadata(_Model):
    lastInteraction: str | None = None
    totalInteractions: int = 0


class Opportunity(Document):
    clientId: str
    clientName: str | None = None
    qualificationId: str | None = None
    type: QualificationType
    title: str | None = None
    stage: OpportunityStage = "qualification"
    status: OpportunityStatus = "active"
    value: float = Field(default=0, ge=0)
    probability: int = Field(default=0, ge=0, le=100)
    priority: Priority = "low"
    commissionRate: float | None = Field(default=None, ge=0, le=100)
    commission: dict[str, Any] | None = None
    createdFrom: Literal["qualification", "manual"] = "manual"
    isActive: bool = True
    requirements: dict[str, Any] = Field(default_factory=dict)
    urgency: str | None = None
    buyerScore: Literal["A", "B", "C"] | None = None
    expectedCloseDate: str | None = None
    stageHistory: list[StageHistoryEntry] = Field(default_factory=list)
    activities: list[Activity] = Field(default_factory=list)
    notes: list[Note] = Field(default_factory=list)
    proposals: list[Proposal] = Field(default_factory=list)
    viewings: list[ScheduledViewing] = Field(default_factory=list)
    deals: list[str] = Field(default_factory=list)
    linkedBuyerDeals: list[str] = Field(default_factory=list)
    metadata: OpportunityMetadata = Field(default_factory=OpportunityMetadata)
    closedAt: str | None = None
    cancelledAt: str | None = None
    cancellationReason: str | None = None
    pausedAt: str | None = None
    pauseReason: str | None = None
    reactivatedAt: str | None = None


# ---- buyer deals ----


class DealProperty(_Model):
    reference: str | None = None
    address: str | None = None
    type: str | None = None
    bedrooms: int | None = None
    area: float | None = None
    listingUrl: str | None = None


class DealPricing(_Model):
    askingPrice: float | None = Field(default=None, ge=0)
    marketValue: float | None = None
    currentOffer: float | None = None
    finalPrice: float | None = None


class DealAgent(_Model):
    agentId: str | None = None
    name: str | None = None
    agency: str | None = None
    phone: str | None = None
    email: str | None = None


class DealRepresentation(_Model):
    type: Literal["buyer_agent", "dual_agent", "none"] = "buyer_agent"
    commissionPercentage: float = Field(default=2.5, ge=0, le=100)
    sellerCommissionPercentage: float | None = Field(default=None, ge=0, le=100)


class DealScoring(_Model):
    buyerInterestLevel: int = Field(default=5, ge=0, le=10)
    propertyMatchScore: int = Field(default=0, ge=0, le=100)
    urgencyLevel: Literal["low", "normal", "urgent"] = "normal"


class DealCompetition(_Model):
    otherInterested: int = Field(default=0, ge=0)
    otherOffers: int = Field(default=0, ge=0)
    notes: str | None = None


class Deal(Document):
    clientId: str
    opportunityId: str | None = None
    property: DealProperty = Field(default_factory=DealProperty)
    pricing: DealPricing = Field(default_factory=DealPricing)
    propertyAgent: DealAgent = Field(default_factory=DealAgent)
    representation: DealRepresentation = Field(default_factory=DealRepresentation)
    scoring: DealScoring = Field(default_factory=DealScoring)
    competition: DealCompetition = Field(default_factory=DealCompetition)
    stage: DealStage = "lead"
    status: DealStatus = "active"
    probability: int = Field(default=10, ge=0, le=100)
    linkedSellerOpportunityId: str | None = None
    nextFollowUpDate: str | None = None
    lastActivityAt: str | None = None
    lostReason: str | None = None
    notes: str | None = None


class Viewing(Document):
    dealId: str
    status: Literal["scheduled", "completed", "cancelled"] = "scheduled"
    scheduledAt: str
    durationMinutes: int = 30
    attendees: list[str] = Field(default_factory=list)
    feedback: dict[str, Any] | None = None
    completedAt: str | None = None
    notes: str | None = None


class Offer(Document):
    dealId: str
    offerNumber: int = 1
    amount: float = Field(gt=0)
    conditions: list[str] = Field(default_factory=list)
    status: Literal["pending", "accepted", "rejected", "countered", "withdrawn"] = "pending"
    submittedAt: str | None = None
    respondedAt: str | None = None
    counterAmount: float | None = None
    responseNotes: str | None = None


class DealActivity(Document):
    dealId: str
    type: str
    description: str = ""
    date: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


# ---- agents ----


class AgentContact(_Model):
    phone: str | None = None
    email: str | None = None
    whatsapp: str | None = None


class AgentProfessional(_Model):
    workingAreas: list[str] = Field(default_factory=list)
    specializations: list[str] = Field(default_factory=list)
    languages: list[str] = Field(default_factory=list)
    yearsExperience: int = Field(default=0, ge=0)


class AgentRelationship(_Model):
    quality: RelationshipQuality = "neutral"
    responseTime: ResponseTime = "normal"
    totalDealsTogether: int = Field(default=0, ge=0)
    activeDeals: int = Field(default=0, ge=0)
    successfulDeals: int = Field(default=0, ge=0)
    failedDeals: int = Field(default=0, ge=0)
    firstContactDate: str | None = None
    lastContactDate: str | None = None
    notes: str | None = None


class AgentCommission(_Model):
    type: Literal["percentage", "fixed", "split"] = "percentage"
    standardRate: float = 2.5
    negotiable: bool = True
    splitAgreement: str | None = None


class AgentInteraction(_Model):
    id: str
    type: str
    description: str = ""
    date: str
    outcome: str | None = None


class AgentBadge(_Model):
    key: str
    label: str


class Agent(Document):
    name: str
    agency: str | None = None
    licenseNumber: str | None = None
    type: Literal["external", "partner", "competitor", "self"] = "external"
    status: Literal["active", "inactive", "blacklisted"] = "active"
    contactInfo: AgentContact = Field(default_factory=AgentContact)
    professional: AgentProfessional = Field(default_factory=AgentProfessional)
    relationship: AgentRelationship = Field(default_factory=AgentRelationship)
    commission: AgentCommission = Field(default_factory=AgentCommission)
    interactions: list[AgentInteraction] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    successRate: int = 0
    reliabilityScore: int = 0
    rating: Literal["A", "B", "C"] = "C"
    badges: list[AgentBadge] = Field(default_factory=list)


def validate_document(model: type[BaseModel], obj: Any) -> tuple[dict[str, Any], dict[str, str]]:
    """
    Validate and normalize an entity, returning (normalized_dict, errors).
    Errors are keyed by dotted field path so they can be shown inline.
    """
    try:
        m = model.model_validate(obj or {})
        return (m.model_dump(mode="json"), {})
    except ValidationError as e:
        errs: dict[str, str] = {}
        for it in e.errors(include_url=False):
            loc = ".".join(str(x) for x in (it.get("loc") or [])) or "__root__"
            errs.setdefault(loc, str(it.get("msg") or "Invalid value"))
        return ({}, errs)
