"""Quality and risk scoring for canonical listings.

Both scorers are pure functions of a listing and a :class:`SourceProfile`;
the point tables below are heuristics and sources tune them only through
their profile.
"""
from __future__ import annotations

from dealscout.dedup import is_remote_location
from dealscout.profiles import SourceProfile
from dealscout.schemas import Listing
from dealscout.utils import clamp

# ---------------------------------------------------------------------------
# Quality
# ---------------------------------------------------------------------------

LONG_DESCRIPTION_CHARS = 100


def base_quality(listing: Listing) -> int:
    fin = listing.financial_data
    contact = listing.contact_info
    loc = listing.location
    points = 0
    if fin.asking_price is not None:
        points += 10
    if fin.annual_revenue is not None or fin.monthly_revenue is not None:
        points += 10
    if fin.cash_flow is not None or fin.monthly_profit is not None:
        points += 10
    if fin.established_year is not None:
        points += 10
    if contact.broker_name or contact.broker_email:
        points += 10
    if contact.broker_phone:
        points += 10
    if contact.listing_url:
        points += 5
    if loc.city and loc.state:
        points += 10
    if loc.zip:
        points += 5
    if contact.description:
        points += 10 if len(contact.description) > LONG_DESCRIPTION_CHARS else 5
    return points


def quality_score(listing: Listing, profile: SourceProfile) -> int:
    return clamp(base_quality(listing) + profile.quality_delta(listing))


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------

HIGH_RISK_INDUSTRIES = ("restaurant", "retail", "entertainment", "media & publishing")

# (exclusive upper bound on age in years, points)
AGE_BANDS: tuple[tuple[int, int], ...] = ((1, 30), (2, 25), (5, 15), (10, 10))
MATURE_AGE_POINTS = 5


def age_points(established_year: int | None, current_year: int) -> int:
    age = current_year - established_year if established_year is not None else 0
    for upper, points in AGE_BANDS:
        if age < upper:
            return points
    return MATURE_AGE_POINTS


def is_high_risk_industry(industry: str) -> bool:
    folded = industry.casefold()
    return any(term in folded for term in HIGH_RISK_INDUSTRIES)


def risk_score(listing: Listing, profile: SourceProfile, current_year: int) -> int:
    fin = listing.financial_data
    points = age_points(fin.established_year, current_year)
    if fin.annual_revenue is None and fin.monthly_revenue is None:
        points += 20
    points += profile.risk_delta(listing)
    if is_high_risk_industry(listing.industry):
        points += 10
    if is_remote_location(listing.location):
        points += 5
    return clamp(points)


def score_listing(listing: Listing, profile: SourceProfile, current_year: int) -> Listing:
    """Return a copy of *listing* with both scores filled in."""
    return listing.model_copy(update={
        "quality_score": quality_score(listing, profile),
        "risk_score": risk_score(listing, profile, current_year),
    })
