from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from dealscout.utils import new_id, utc_now


class Base(DeclarativeBase):
    pass


class BusinessListing(Base):
    __tablename__ = "business_listings"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    industry: Mapped[str] = mapped_column(String(200), default="")
    location: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    financial_data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    contact_info: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    source_details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    price_range: Mapped[str | None] = mapped_column(String(32), nullable=True)
    quality_score: Mapped[int] = mapped_column(Integer, default=0)
    risk_score: Mapped[int] = mapped_column(Integer, default=0)
    data_sources: Mapped[list[str]] = mapped_column(JSON, default=list)
    # Lookup columns mirrored from the JSON documents for dedup and search
    name_key: Mapped[str] = mapped_column(String(300), index=True)
    city_key: Mapped[str] = mapped_column(String(200), default="", index=True)
    state: Mapped[str] = mapped_column(String(8), default="", index=True)
    listing_url: Mapped[str | None] = mapped_column(String(1000), nullable=True, index=True)
    asking_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    annual_revenue: Mapped[float | None] = mapped_column(Float, nullable=True)
    cash_flow: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    sources: Mapped[list[ListingSource]] = relationship(
        "ListingSource", back_populates="listing", cascade="all, delete-orphan", lazy="selectin",
    )


class ListingSource(Base):
    """One provenance tag ("source:external_id"); the unique index keeps tags disjoint across listings."""
    __tablename__ = "listing_sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    listing_id: Mapped[str] = mapped_column(String(32), ForeignKey("business_listings.id"), nullable=False, index=True)
    tag: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    source: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    listing: Mapped[BusinessListing] = relationship("BusinessListing", back_populates="sources")


class DueDiligenceReportRecord(Base):
    __tablename__ = "due_diligence_reports"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    business_listing_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    organization_id: Mapped[str] = mapped_column(String(200), nullable=False)
    investment_amount: Mapped[float] = mapped_column(Float, nullable=False)
    risk_assessment: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    roi_projection: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    sba_assessment: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class ImportRun(Base):
    __tablename__ = "import_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # running | success | failed
    filters_json: Mapped[str] = mapped_column(Text, default="{}")
    imported: Mapped[int] = mapped_column(Integer, default=0)
    skipped: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str] = mapped_column(Text, default="")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
