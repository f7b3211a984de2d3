"""Pydantic shapes for canonical listings, due-diligence reports and API payloads."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, field_validator

# ---------------------------------------------------------------------------
# Canonical listing
# ---------------------------------------------------------------------------


class Location(BaseModel):
    address: str | None = None
    city: str = ""
    state: str = ""
    zip: str | None = None
    country: str | None = None


class FinancialData(BaseModel):
    # Absent means unknown; never stored as 0.
    asking_price: float | None = None
    annual_revenue: float | None = None
    cash_flow: float | None = None
    gross_profit_margin: float | None = None
    established_year: int | None = None
    employees: int | None = None
    monthly_revenue: float | None = None
    monthly_profit: float | None = None
    asking_multiple: float | None = None


class ContactInfo(BaseModel):
    broker_name: str | None = None
    broker_email: str | None = None
    broker_phone: str | None = None
    listing_url: str | None = None
    description: str | None = None
    seller_financing: bool | None = None


class DigitalAssetDetails(BaseModel):
    kind: Literal["digital_asset"] = "digital_asset"
    website_included: bool | None = None
    training_included: bool | None = None
    reason_for_sale: str | None = None
    tech_stack: list[str] = []
    traffic_stats: dict[str, Any] = {}
    social_following: dict[str, int] = {}
    verified: bool = False


class FranchiseDetails(BaseModel):
    kind: Literal["franchise"] = "franchise"
    franchise_name: str | None = None
    franchise_fee: float | None = None
    royalty_rate: float | None = None
    training_included: bool | None = None
    verified: bool = False


class CommercialPropertyDetails(BaseModel):
    kind: Literal["commercial_property"] = "commercial_property"
    square_feet: int | None = None
    lease_type: str | None = None
    occupancy_rate: float | None = None
    verified: bool = False


class SocialPostDetails(BaseModel):
    kind: Literal["social_post"] = "social_post"
    platform: str | None = None
    post_url: str | None = None
    engagement: dict[str, int] = {}
    verified: bool = False


SourceDetails = Annotated[
    Union[DigitalAssetDetails, FranchiseDetails, CommercialPropertyDetails, SocialPostDetails],
    Field(discriminator="kind"),
]


class Listing(BaseModel):
    id: str | None = None
    source: str
    external_id: str
    name: str
    industry: str = ""
    location: Location = Field(default_factory=Location)
    financial_data: FinancialData = Field(default_factory=FinancialData)
    contact_info: ContactInfo = Field(default_factory=ContactInfo)
    details: SourceDetails | None = None
    price_range: str | None = None
    provenance: list[str] = []
    quality_score: int = 0
    risk_score: int = 0
    created_at: datetime | None = None
    last_updated: datetime | None = None

    @property
    def provenance_tag(self) -> str:
        return f"{self.source}:{self.external_id}"


class RawRecord(BaseModel):
    """One source-native record as yielded by an adapter."""
    source: str
    external_id: str | None = None
    data: dict[str, Any] = {}


class ItemOutcome(str, Enum):
    IMPORTED = "imported"
    SKIPPED = "skipped"
    ERROR = "error"


class NormalizedRecord(BaseModel):
    listing: Listing
    rejected_fields: list[str] = []


# ---------------------------------------------------------------------------
# Due diligence
# ---------------------------------------------------------------------------


class RiskComponents(BaseModel):
    financial_health: int
    legal_risk: int
    operational_risk: int
    market_risk: int


class RiskAssessment(BaseModel):
    composite_score: int
    grade: Literal["A", "B", "C", "D", "F"]
    components: RiskComponents
    recommendations: list[str] = []


class ConfidenceInterval(BaseModel):
    low: float = 0.0
    high: float = 0.0


class ROIProjection(BaseModel):
    projected_roi: float = 0.0
    break_even_months: int = 0
    risk_adjusted_return: float = 0.0
    confidence_interval: ConfidenceInterval = Field(default_factory=ConfidenceInterval)


class SBAChecks(BaseModel):
    size_standard: bool
    industry_eligibility: bool
    financial_health: bool


class SBAAssessment(BaseModel):
    qualified: bool
    qualification_score: float
    checks: SBAChecks
    max_loan_amount: float
    recommendations: list[str] = []


class DueDiligenceAnalysis(BaseModel):
    risk_assessment: RiskAssessment
    roi_projection: ROIProjection
    sba_assessment: SBAAssessment


class DueDiligenceReport(DueDiligenceAnalysis):
    id: str | None = None
    listing_id: str
    organization_id: str
    investment_amount: float
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Search, import and stats payloads
# ---------------------------------------------------------------------------

SORT_FIELDS = ("price", "revenue", "cash_flow", "quality_score", "created_at")


class SearchQuery(BaseModel):
    keywords: str | None = None
    industries: list[str] = []
    city: str | None = None
    state: str | None = None
    min_price: float | None = None
    max_price: float | None = None
    min_revenue: float | None = None
    max_revenue: float | None = None
    min_cash_flow: float | None = None
    max_cash_flow: float | None = None
    sort_by: str = "quality_score"
    sort_order: Literal["asc", "desc"] = "desc"
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)

    @field_validator("sort_by")
    @classmethod
    def valid_sort(cls, v: str) -> str:
        if v not in SORT_FIELDS:
            raise ValueError(f"sort_by must be one of {', '.join(SORT_FIELDS)}")
        return v

    @field_validator("state")
    @classmethod
    def upper_state(cls, v: str | None) -> str | None:
        return v.strip().upper() if v else None


class SearchResults(BaseModel):
    listings: list[Listing]
    total_count: int
    has_more: bool


class SourceImportResult(BaseModel):
    source: str
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    rejected_fields: int = 0
    error_message: str | None = None


class ImportSummary(BaseModel):
    sources: list[SourceImportResult]

    @property
    def imported(self) -> int:
        return sum(r.imported for r in self.sources)

    @property
    def skipped(self) -> int:
        return sum(r.skipped for r in self.sources)

    @property
    def errors(self) -> int:
        return sum(r.errors for r in self.sources)

    def totals(self) -> dict[str, int]:
        return {"imported": self.imported, "skipped": self.skipped, "errors": self.errors}


class StatsOut(BaseModel):
    total: int
    avg_quality_score: float | None = None
    avg_risk_score: float | None = None
    by_industry: dict[str, int]
    by_state: dict[str, int]
    by_source: dict[str, int]
    reports: int
