from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

PIPELINE_STAGES = (
    "Deal Flow", "Initial Review", "First Meeting", "Due Diligence",
    "Term Sheet", "Portfolio", "Passed",
)
RISK_RATINGS = ("High", "Medium", "Low")
ISSUE_STATUSES = ("Open", "In Progress", "Resolved", "Accepted Risk")


def new_startup_id() -> str:
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    pass


class Startup(Base):
    __tablename__ = "startups"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_startup_id)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    sector: Mapped[str] = mapped_column(String(200), default="")
    stage: Mapped[str] = mapped_column(String(100), default="")
    country: Mapped[str] = mapped_column(String(100), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    rank: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    pipeline_stage: Mapped[str] = mapped_column(String(50), default="Deal Flow")
    user_id: Mapped[str] = mapped_column(String(64), default="")

    # JSON bags (stored as text, decoded with utils.json_parse)
    company_info_json: Mapped[str] = mapped_column(Text, default="{}")
    team_info_json: Mapped[str] = mapped_column(Text, default="{}")
    market_info_json: Mapped[str] = mapped_column(Text, default="{}")
    product_info_json: Mapped[str] = mapped_column(Text, default="{}")
    business_model_info_json: Mapped[str] = mapped_column(Text, default="{}")
    sales_info_json: Mapped[str] = mapped_column(Text, default="{}")
    competitive_info_json: Mapped[str] = mapped_column(Text, default="{}")
    risk_info_json: Mapped[str] = mapped_column(Text, default="{}")
    opportunity_info_json: Mapped[str] = mapped_column(Text, default="{}")
    ai_scores_json: Mapped[str] = mapped_column(Text, default="{}")
    legal_diligence_json: Mapped[str] = mapped_column(Text, default="{}")
    custom_data_json: Mapped[str] = mapped_column(Text, default="{}")
    custom_schema_json: Mapped[str] = mapped_column(Text, default="{}")

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    threshold_issues: Mapped[list[ThresholdIssue]] = relationship(
        "ThresholdIssue", back_populates="startup", cascade="all, delete-orphan",
    )


class ThresholdIssue(Base):
    __tablename__ = "threshold_issues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    startup_id: Mapped[str] = mapped_column(String(64), ForeignKey("startups.id"), nullable=False)
    category: Mapped[str] = mapped_column(String(200), nullable=False)
    issue: Mapped[str] = mapped_column(Text, nullable=False)
    risk_rating: Mapped[str] = mapped_column(String(20), nullable=False)  # High | Medium | Low
    mitigation: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(30), default="Open")
    source: Mapped[str] = mapped_column(String(100), default="Manual")
    identified_date: Mapped[str] = mapped_column(String(10), nullable=False)  # YYYY-MM-DD
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    startup: Mapped[Startup] = relationship("Startup", back_populates="threshold_issues")


class UserShortlist(Base):
    __tablename__ = "user_shortlists"
    __table_args__ = (UniqueConstraint("user_id", "startup_id", name="uq_shortlist_user_startup"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    startup_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("startups.id", ondelete="CASCADE"), nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class UserSession(Base):
    """Session tokens issued by the authentication provider."""
    __tablename__ = "user_sessions"

    token: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class StoreFlag(Base):
    __tablename__ = "store_flags"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text, default="")
