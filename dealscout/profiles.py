"""Per-source scoring profiles.

A profile is the only thing a source contributes to scoring: a flat signed
adjustment for quality and for risk, plus conditional adjustments keyed by a
closed set of listing signals. Every source is scored by the same algorithm
in :mod:`dealscout.scoring`.
"""
from __future__ import annotations

import logging
from typing import Any

import yaml
from pydantic import BaseModel, field_validator

from dealscout.config import Settings
from dealscout.schemas import DigitalAssetDetails, FranchiseDetails, Listing
from dealscout.utils import slugify

log = logging.getLogger(__name__)

SIGNALS = (
    "verified",
    "tech_stack",
    "traffic_stats",
    "no_traffic_stats",
    "franchise",
    "address",
    "employees",
    "monthly_revenue",
    "broker_phone",
)


def listing_signals(listing: Listing) -> set[str]:
    """Return the profile signals that hold for *listing*."""
    details = listing.details
    signals: set[str] = set()
    if details is not None and details.verified:
        signals.add("verified")
    if isinstance(details, DigitalAssetDetails):
        if details.tech_stack:
            signals.add("tech_stack")
        if details.traffic_stats:
            signals.add("traffic_stats")
    if "traffic_stats" not in signals:
        signals.add("no_traffic_stats")
    if isinstance(details, FranchiseDetails):
        signals.add("franchise")
    if listing.location.address:
        signals.add("address")
    if listing.financial_data.employees is not None:
        signals.add("employees")
    if listing.financial_data.monthly_revenue is not None:
        signals.add("monthly_revenue")
    if listing.contact_info.broker_phone:
        signals.add("broker_phone")
    return signals


class SourceProfile(BaseModel):
    key: str
    label: str
    quality_adjustment: int = 0
    risk_adjustment: int = 0
    quality_signals: dict[str, int] = {}
    risk_signals: dict[str, int] = {}

    @field_validator("quality_signals", "risk_signals")
    @classmethod
    def known_signals(cls, v: dict[str, int]) -> dict[str, int]:
        unknown = set(v) - set(SIGNALS)
        if unknown:
            raise ValueError(f"unknown signals: {', '.join(sorted(unknown))}")
        return v

    def quality_delta(self, listing: Listing) -> int:
        signals = listing_signals(listing)
        return self.quality_adjustment + sum(p for s, p in self.quality_signals.items() if s in signals)

    def risk_delta(self, listing: Listing) -> int:
        signals = listing_signals(listing)
        return self.risk_adjustment + sum(p for s, p in self.risk_signals.items() if s in signals)


# ---------------------------------------------------------------------------
# Built-in profiles
# ---------------------------------------------------------------------------

_DEFAULTS: tuple[SourceProfile, ...] = (
    SourceProfile(key="bizbuysell", label="BizBuySell"),
    SourceProfile(key="flippa", label="Flippa",
                  quality_signals={"tech_stack": 5, "traffic_stats": 5},
                  risk_signals={"no_traffic_stats": 10}),
    SourceProfile(key="crexi", label="Crexi",
                  quality_signals={"address": 5, "employees": 5}),
    SourceProfile(key="acquire", label="Acquire",
                  quality_signals={"tech_stack": 5, "employees": 5}),
    SourceProfile(key="craigslist", label="Craigslist", risk_adjustment=10),
    SourceProfile(key="twitter", label="Twitter", quality_adjustment=-10, risk_adjustment=15),
    SourceProfile(key="empire_flippers", label="Empire Flippers",
                  quality_signals={"verified": 10, "traffic_stats": 5},
                  risk_signals={"verified": -5}),
    SourceProfile(key="fe_international", label="FE International",
                  quality_signals={"verified": 10, "employees": 5},
                  risk_signals={"verified": -5}),
    SourceProfile(key="loopnet", label="LoopNet",
                  quality_signals={"address": 10, "broker_phone": 5}),
    SourceProfile(key="microacquire", label="MicroAcquire", risk_adjustment=5,
                  quality_signals={"tech_stack": 5, "monthly_revenue": 5}),
    SourceProfile(key="bizquest", label="BizQuest",
                  quality_signals={"franchise": 10, "address": 5}),
    SourceProfile(key="reddit", label="Reddit", quality_adjustment=-15, risk_adjustment=20),
    SourceProfile(key="linkedin", label="LinkedIn", risk_adjustment=10,
                  quality_signals={"verified": 10, "employees": 5}),
)

DEFAULT_PROFILES: dict[str, SourceProfile] = {p.key: p for p in _DEFAULTS}


def source_key(name: str) -> str:
    """Map a display name or slug ("Empire Flippers", "empire-flippers") to a profile key."""
    return slugify(name)


def _apply_override(base: SourceProfile, override: dict[str, Any]) -> SourceProfile:
    data = base.model_dump()
    for field in ("label", "quality_adjustment", "risk_adjustment", "quality_signals", "risk_signals"):
        if field in override:
            data[field] = override[field]
    return SourceProfile.model_validate(data)


def load_profiles(settings: Settings | None = None) -> dict[str, SourceProfile]:
    """Built-in profiles merged with the optional YAML override file.

    A malformed file or entry is logged and ignored; the built-in table stays in force.
    """
    profiles = dict(DEFAULT_PROFILES)
    if settings is None:
        return profiles
    try:
        overrides = settings.load_source_profile_overrides()
    except (OSError, yaml.YAMLError) as exc:
        log.warning("Ignoring source profile overrides (%s): %s", settings.source_profiles_file, exc)
        return profiles
    for raw_key, override in overrides.items():
        key = source_key(raw_key)
        base = profiles.get(key) or SourceProfile(key=key, label=raw_key)
        try:
            profiles[key] = _apply_override(base, override)
        except ValueError as exc:
            log.warning("Ignoring override for source %s: %s", key, exc)
    return profiles


def get_profile(name: str, profiles: dict[str, SourceProfile] | None = None) -> SourceProfile:
    """Profile for *name*; unknown sources get a neutral profile."""
    key = source_key(name)
    table = profiles if profiles is not None else DEFAULT_PROFILES
    return table.get(key) or SourceProfile(key=key, label=name)
