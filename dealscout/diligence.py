"""Due-diligence analysis: risk components, ROI projection and SBA eligibility.

Every function here except :func:`generate_due_diligence_report` is pure and
total: missing data degrades a component to its baseline or a zero
projection, it never raises.
"""
from __future__ import annotations

import logging
import math

from dealscout.errors import ListingNotFound
from dealscout.schemas import (
    ConfidenceInterval,
    DueDiligenceAnalysis,
    DueDiligenceReport,
    Listing,
    RiskAssessment,
    RiskComponents,
    ROIProjection,
    SBAAssessment,
    SBAChecks,
)
from dealscout.store import SqlListingStore
from dealscout.utils import clamp, utc_now

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Reference tables
# ---------------------------------------------------------------------------

PROHIBITED_INDUSTRIES = ("cannabis", "cryptocurrency", "gambling", "adult")
REGULATED_INDUSTRIES = ("healthcare", "finance", "food service")
GROWTH_INDUSTRIES = ("technology", "healthcare", "e-commerce", "renewable")
DECLINING_INDUSTRIES = ("retail", "print media", "coal", "traditional manufacturing")
SBA_INELIGIBLE_INDUSTRIES = ("gambling", "adult entertainment", "pyramid sales")

BUSINESS_FRIENDLY_STATES = frozenset({"TX", "FL", "NV", "WY", "DE"})
CHALLENGING_STATES = frozenset({"CA", "NY", "IL"})

WEIGHTS = {"financial_health": 0.4, "legal_risk": 0.2, "operational_risk": 0.2, "market_risk": 0.2}
GRADE_BOUNDS = ((20, "A"), (40, "B"), (60, "C"), (80, "D"))

SBA_SIZE_STANDARD = 35_000_000
SBA_MIN_REVENUE = 50_000
SBA_MAX_LOAN = 5_000_000
SBA_LOAN_TO_PRICE = 0.9
SBA_QUALIFYING_SCORE = 0.7


def _mentions(industry: str, terms: tuple[str, ...]) -> bool:
    folded = industry.casefold()
    return any(term in folded for term in terms)


# ---------------------------------------------------------------------------
# Risk components
# ---------------------------------------------------------------------------


def financial_health_risk(listing: Listing, current_year: int) -> int:
    fin = listing.financial_data
    score = 50
    revenue = fin.annual_revenue
    if revenue is not None:
        if revenue > 1_000_000:
            score -= 10
        elif revenue < 250_000:
            score += 15
    if revenue and fin.cash_flow is not None:
        margin = fin.cash_flow / revenue
        if margin > 0.15:
            score -= 15
        elif margin < 0.05:
            score += 20
    if fin.established_year is not None:
        age = current_year - fin.established_year
        if age > 10:
            score -= 10
        elif age < 3:
            score += 15
    return clamp(score)


def legal_risk(listing: Listing) -> int:
    score = 30
    if _mentions(listing.industry, PROHIBITED_INDUSTRIES):
        score += 30
    elif _mentions(listing.industry, REGULATED_INDUSTRIES):
        score += 15
    return clamp(score)


def operational_risk(listing: Listing) -> int:
    score = 40
    state = listing.location.state.upper()
    if state in BUSINESS_FRIENDLY_STATES:
        score -= 10
    elif state in CHALLENGING_STATES:
        score += 10
    if listing.quality_score < 50:
        score += 20
    elif listing.quality_score > 80:
        score -= 10
    return clamp(score)


def market_risk(listing: Listing) -> int:
    score = 45
    if _mentions(listing.industry, GROWTH_INDUSTRIES):
        score -= 15
    elif _mentions(listing.industry, DECLINING_INDUSTRIES):
        score += 20
    return clamp(score)


def composite_score(components: RiskComponents) -> int:
    weighted = sum(getattr(components, name) * weight for name, weight in WEIGHTS.items())
    # round half up
    return clamp(math.floor(weighted + 0.5))


def risk_grade(score: int) -> str:
    for bound, grade in GRADE_BOUNDS:
        if score <= bound:
            return grade
    return "F"


def risk_recommendations(score: int, grade: str) -> list[str]:
    recommendations: list[str] = []
    if score > 60:
        recommendations += [
            "Consider additional due diligence before proceeding",
            "Negotiate lower asking price to compensate for higher risk",
            "Secure additional financing contingencies",
        ]
    if grade in ("A", "B"):
        recommendations += [
            "Strong acquisition candidate with manageable risk profile",
            "Consider expediting due diligence to secure deal",
        ]
    recommendations += [
        "Verify all financial statements with accountant review",
        "Conduct on-site operational assessment",
        "Review all contracts and legal obligations",
    ]
    return recommendations


def assess_risk(listing: Listing, current_year: int) -> RiskAssessment:
    components = RiskComponents(
        financial_health=financial_health_risk(listing, current_year),
        legal_risk=legal_risk(listing),
        operational_risk=operational_risk(listing),
        market_risk=market_risk(listing),
    )
    score = composite_score(components)
    grade = risk_grade(score)
    return RiskAssessment(
        composite_score=score,
        grade=grade,
        components=components,
        recommendations=risk_recommendations(score, grade),
    )


# ---------------------------------------------------------------------------
# ROI
# ---------------------------------------------------------------------------


def project_roi(listing: Listing, investment: float, composite: int) -> ROIProjection:
    """Simple payback projection.

    All zeros when cash flow or revenue is unknown, cash flow is zero, or the
    investment is not positive. A negative cash flow gives a negative return
    and ``break_even_months`` of 0, since the investment is never paid back.
    """
    fin = listing.financial_data
    if fin.cash_flow is None or fin.annual_revenue is None or fin.cash_flow == 0 or investment <= 0:
        return ROIProjection()
    roi = fin.cash_flow / investment * 100
    adjustment = max(0.5, 1 - composite / 100)
    band = sorted((roi * 0.7, roi * 1.3))
    return ROIProjection(
        projected_roi=round(roi, 2),
        break_even_months=round(investment / (fin.cash_flow / 12)) if fin.cash_flow > 0 else 0,
        risk_adjusted_return=round(roi * adjustment, 2),
        confidence_interval=ConfidenceInterval(low=round(band[0], 2), high=round(band[1], 2)),
    )


# ---------------------------------------------------------------------------
# SBA
# ---------------------------------------------------------------------------


def assess_sba(listing: Listing) -> SBAAssessment:
    fin = listing.financial_data
    revenue = fin.annual_revenue
    checks = SBAChecks(
        size_standard=revenue is None or revenue <= SBA_SIZE_STANDARD,
        industry_eligibility=not listing.industry or not _mentions(listing.industry, SBA_INELIGIBLE_INDUSTRIES),
        financial_health=revenue is not None and revenue > SBA_MIN_REVENUE,
    )
    passed = sum((checks.size_standard, checks.industry_eligibility, checks.financial_health))
    score = passed / 3
    qualified = score >= SBA_QUALIFYING_SCORE
    price = fin.asking_price
    max_loan = min(SBA_MAX_LOAN, price * SBA_LOAN_TO_PRICE) if price and price > 0 else 0.0
    return SBAAssessment(
        qualified=qualified,
        qualification_score=round(score, 4),
        checks=checks,
        max_loan_amount=round(max_loan, 2),
        recommendations=(
            ["Strong SBA loan candidate", "Prepare comprehensive loan application"]
            if qualified else
            ["Improve financial documentation", "Consider alternative financing"]
        ),
    )


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def analyze_listing(listing: Listing, investment: float, current_year: int) -> DueDiligenceAnalysis:
    risk = assess_risk(listing, current_year)
    return DueDiligenceAnalysis(
        risk_assessment=risk,
        roi_projection=project_roi(listing, investment, risk.composite_score),
        sba_assessment=assess_sba(listing),
    )


def generate_due_diligence_report(
    store: SqlListingStore,
    listing_id: str,
    organization_id: str,
    *,
    investment: float,
    current_year: int | None = None,
) -> DueDiligenceReport:
    """Analyze a stored listing and append the resulting report.

    Raises :class:`ListingNotFound` for an unknown id. Repeated calls append
    repeated reports.
    """
    listing = store.get_listing(listing_id)
    if listing is None:
        raise ListingNotFound(listing_id)
    analysis = analyze_listing(listing, investment, current_year or utc_now().year)
    report = store.add_report(DueDiligenceReport(
        listing_id=listing_id,
        organization_id=organization_id,
        investment_amount=investment,
        **analysis.model_dump(),
    ))
    log.info(
        "Due diligence report %s for %s: composite=%d grade=%s",
        report.id, listing_id, report.risk_assessment.composite_score, report.risk_assessment.grade,
    )
    return report
